"""
FastAPI application factory.

Exposes the SessionRuntimeManager over HTTP, plus a WebSocket per session
that attaches a subscriber and streams event envelopes (and accepts
confirmation responses).
"""

from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator
from uuid import uuid4

import structlog
from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from .. import __version__
from ..agent.core import RunRequest
from ..agent.session import SessionRuntimeManager
from ..config import Settings, get_settings
from ..errors import RunAlreadyActiveError
from ..events import EventEnvelope
from ..store.base import SessionRecord
from ..store.sql import SqlSessionStore
from ..tools.registry import ToolRegistry

logger = structlog.get_logger()


class CreateSessionRequest(BaseModel):
    """Session creation request."""
    title: str | None = None
    provider: str = "openai"


class StartRunRequest(BaseModel):
    """Run request: either a plain prompt or provider-shaped items."""
    prompt: str | None = None
    items: list[dict[str, Any]] = Field(default_factory=list)
    title: str | None = None
    model: str | None = None
    reasoning_effort: str | None = None
    auto_mode: bool = False
    working_dir: str | None = None


class ConfirmationResponse(BaseModel):
    """A human decision on a pending confirmation."""
    allow: bool


def _session_dict(record: SessionRecord, include_history: bool = False) -> dict[str, Any]:
    data = {
        "id": record.id,
        "title": record.title,
        "provider": record.provider,
        "created_at": record.created_at.isoformat(),
        "updated_at": record.updated_at.isoformat(),
        "runtime": record.runtime.to_dict() if record.runtime else None,
        "message_count": len(record.history),
    }
    if include_history:
        data["history"] = record.history
    return data


def create_app(
    settings: Settings | None = None,
    manager: SessionRuntimeManager | None = None,
    tools: ToolRegistry | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    With no ``manager``, the lifespan opens the SQL store from settings and
    builds one around ``tools``.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan handler."""
        if getattr(app.state, "manager", None) is None:
            store = await SqlSessionStore.open(
                settings.database_url,
                working_dir=".",
                persist_image_max_chars=settings.persist_image_max_chars,
            )
            app.state.manager = SessionRuntimeManager(store, tools or ToolRegistry(), settings=settings)
            logger.info("Session runtime ready", database_url=settings.database_url)

        yield

        await app.state.manager.shutdown()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="agent-runtime",
        description="LLM agent runtime with tool execution and session replay",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.manager = manager

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def get_manager(request: Request) -> SessionRuntimeManager:
        if request.app.state.manager is None:
            raise HTTPException(status_code=500, detail="Runtime not initialized")
        return request.app.state.manager

    # ------------------------------------------------------------------ #
    # Health
    # ------------------------------------------------------------------ #
    @app.get("/api/health")
    async def health_check():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "version": __version__,
            "llm_configured": bool(settings.anthropic_api_key or settings.openai_api_key),
            "default_model": settings.default_model,
        }

    # ------------------------------------------------------------------ #
    # Sessions
    # ------------------------------------------------------------------ #
    @app.post("/api/sessions")
    async def create_session(body: CreateSessionRequest, request: Request):
        """Create an empty session."""
        manager = get_manager(request)
        record = await manager.store.create(title=body.title, provider=body.provider)
        return _session_dict(record)

    @app.get("/api/sessions")
    async def list_sessions(request: Request):
        """List sessions of the workspace."""
        manager = get_manager(request)
        records = await manager.store.list()
        return {"sessions": [_session_dict(r) for r in records]}

    @app.get("/api/sessions/{session_id}")
    async def get_session(session_id: str, request: Request):
        """Get one session with its history."""
        manager = get_manager(request)
        record = await manager.store.get(session_id)
        if record is None:
            raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
        return _session_dict(record, include_history=True)

    # ------------------------------------------------------------------ #
    # Runs
    # ------------------------------------------------------------------ #
    @app.post("/api/sessions/{session_id}/runs", status_code=202)
    async def start_run(session_id: str, body: StartRunRequest, request: Request):
        """Start a run in the background. Progress is streamed over the WebSocket."""
        manager = get_manager(request)
        items = list(body.items)
        if body.prompt:
            items.append({"role": "user", "content": body.prompt})

        try:
            manager.start_run(RunRequest(
                session_id=session_id,
                items=items,
                title=body.title,
                model=body.model,
                reasoning_effort=body.reasoning_effort,
                auto_mode=body.auto_mode,
                working_dir=body.working_dir,
            ))
        except RunAlreadyActiveError as e:
            raise HTTPException(status_code=409, detail=str(e))

        return manager.get_status(session_id)

    @app.get("/api/sessions/{session_id}/status")
    async def get_status(session_id: str, request: Request):
        """Get the status of the current or last run."""
        return get_manager(request).get_status(session_id)

    @app.post("/api/sessions/{session_id}/stop")
    async def stop_run(session_id: str, request: Request):
        """Stop the active run."""
        stopped = await get_manager(request).stop(session_id)
        return {"stopped": stopped}

    @app.post("/api/sessions/{session_id}/tools/{call_id}/cancel")
    async def cancel_tool(session_id: str, call_id: str, request: Request):
        """Cancel one in-flight tool call."""
        cancelled = get_manager(request).cancel_tool(session_id, call_id)
        return {"cancelled": cancelled}

    @app.post("/api/sessions/{session_id}/confirmations/{confirmation_id}")
    async def respond_confirmation(
        session_id: str,
        confirmation_id: str,
        body: ConfirmationResponse,
        request: Request,
    ):
        """Answer a pending confirmation request."""
        resolved = await get_manager(request).handle_confirmation_response(
            session_id, confirmation_id, body.allow
        )
        return {"resolved": resolved}

    # ------------------------------------------------------------------ #
    # Event stream
    # ------------------------------------------------------------------ #
    @app.websocket("/ws/sessions/{session_id}")
    async def session_events(websocket: WebSocket, session_id: str):
        """Stream envelopes for a session; accepts {"type": "confirm", "id", "allow"} messages."""
        manager = websocket.app.state.manager
        await websocket.accept()
        subscriber_id = f"ws-{uuid4().hex[:8]}"

        async def send(envelope: EventEnvelope) -> None:
            await websocket.send_json(envelope.to_dict())

        await manager.attach(session_id, subscriber_id, send)
        try:
            while True:
                message = await websocket.receive_json()
                if message.get("type") == "confirm" and message.get("id"):
                    await manager.handle_confirmation_response(
                        session_id, message["id"], bool(message.get("allow"))
                    )
                elif message.get("type") == "stop":
                    await manager.stop(session_id)
        except WebSocketDisconnect:
            logger.debug("WebSocket disconnected", session_id=session_id, subscriber_id=subscriber_id)
        finally:
            await manager.detach(session_id, subscriber_id)

    return app
