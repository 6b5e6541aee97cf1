"""
Session runtime management.

One runtime record per conversation id holds the attached subscribers, the
pending confirmations and the current (or last) run with its replay buffer.
Every event of a run is buffered (if replayable) and broadcast to every
subscriber; a subscriber attaching mid-run first gets the buffer, then the
still-pending confirmations, then live events.
"""

import asyncio
import secrets
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

import structlog

from ..errors import RunAlreadyActiveError
from ..events import (
    REPLAYABLE_CHANNELS,
    AgentEvent,
    ConfirmRequest,
    ConfirmResolved,
    EventEnvelope,
    StreamDone,
    StreamError,
    Subscriber,
)
from ..llm.base import SystemPromptParts
from ..store.base import RunStatus, RuntimeRecord, SessionStore, utcnow
from ..tools.confirmation import ConfirmationBroker, ConfirmationRequest, PendingConfirmation
from ..tools.registry import ToolRegistry
from .core import AdapterFactory, AgentSession, RunRequest

if TYPE_CHECKING:
    from ..config import Settings

logger = structlog.get_logger()

STOPPED_MESSAGE = "Run stopped by user."
MIN_BUFFER_EVENTS = 50

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def _base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def new_run_id() -> str:
    return f"run-{_base36(int(time.time() * 1000))}-{secrets.token_hex(3)}"


@dataclass
class RunState:
    """One execution of the agent loop."""

    id: str
    buffer: deque
    status: RunStatus = "running"
    started_at: datetime = field(default_factory=utcnow)
    completed_at: datetime | None = None
    agent: AgentSession | None = None
    task: asyncio.Task | None = None

    @property
    def is_running(self) -> bool:
        return self.status == "running"


@dataclass
class Runtime:
    """Per-conversation state that outlives individual runs."""

    session_id: str
    subscribers: dict[str, Subscriber] = field(default_factory=dict)
    broker: ConfirmationBroker = field(default_factory=ConfirmationBroker)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    run: RunState | None = None


class SessionRuntimeManager:
    """Owns runtimes, fans out events and brokers confirmations.

    Subscribers are async callables receiving EventEnvelopes. They are called
    while the runtime lock is held, so a subscriber must not call back into
    the manager directly; schedule a task instead.
    """

    def __init__(
        self,
        store: SessionStore,
        tools: ToolRegistry,
        settings: "Settings | None" = None,
        adapter_factory: AdapterFactory | None = None,
        prompt_parts: SystemPromptParts | None = None,
        max_buffer_events: int | None = None,
    ):
        if settings is None:
            from ..config import get_settings
            settings = get_settings()

        self.store = store
        self.tools = tools
        self.settings = settings
        self.adapter_factory = adapter_factory
        self.prompt_parts = prompt_parts
        self.max_buffer_events = max(MIN_BUFFER_EVENTS, max_buffer_events or settings.max_buffer_events)
        self._runtimes: dict[str, Runtime] = {}
        self._tasks: set[asyncio.Task] = set()

    def ensure_runtime(self, session_id: str) -> Runtime:
        """Get or create the runtime record of a conversation."""
        runtime = self._runtimes.get(session_id)
        if runtime is None:
            runtime = Runtime(session_id=session_id)
            self._runtimes[session_id] = runtime
        return runtime

    def get_runtime(self, session_id: str) -> Runtime | None:
        return self._runtimes.get(session_id)

    # Runs

    def _begin_run(self, request: RunRequest) -> tuple[Runtime, RunState]:
        runtime = self.ensure_runtime(request.session_id)
        if runtime.run is not None and runtime.run.is_running:
            raise RunAlreadyActiveError(request.session_id)

        run = RunState(id=new_run_id(), buffer=deque(maxlen=self.max_buffer_events))
        runtime.run = run

        async def emit(event: AgentEvent) -> None:
            await self._on_agent_event(runtime, run, event)

        async def confirm(confirmation: ConfirmationRequest) -> bool:
            return await self.request_confirmation(request.session_id, confirmation)

        run.agent = AgentSession(
            store=self.store,
            tools=self.tools,
            emit=emit,
            request_confirmation=confirm,
            settings=self.settings,
            adapter_factory=self.adapter_factory,
            prompt_parts=self.prompt_parts,
        )
        logger.info("Run started", session_id=request.session_id, run_id=run.id)
        return runtime, run

    async def _drive(self, runtime: Runtime, run: RunState, request: RunRequest) -> None:
        await self._persist_runtime(runtime.session_id, run)
        try:
            await run.agent.run(request)
        except Exception as e:
            run.status = "error"
            logger.error("Run failed", session_id=runtime.session_id, run_id=run.id, error=str(e))
        finally:
            if run.status == "running":
                run.status = "completed"
            if run.completed_at is None:
                run.completed_at = utcnow()
            await self._persist_runtime(runtime.session_id, run)
            logger.info("Run finished", session_id=runtime.session_id, run_id=run.id, status=run.status)

    async def run(self, request: RunRequest) -> None:
        """Run the agent to completion. Rejects if a run is already active.

        Errors inside the run are reported as events and in the runtime
        status, never raised to the caller.
        """
        runtime, run = self._begin_run(request)
        await self._drive(runtime, run, request)

    def start_run(self, request: RunRequest) -> asyncio.Task:
        """Start a run in the background and return its task."""
        runtime, run = self._begin_run(request)
        task = asyncio.create_task(self._drive(runtime, run, request))
        run.task = task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def stop(self, session_id: str) -> bool:
        """Stop the active run. Pending confirmations are denied."""
        runtime = self._runtimes.get(session_id)
        if runtime is None or runtime.run is None or not runtime.run.is_running:
            return False

        run = runtime.run
        run.status = "error"
        run.completed_at = utcnow()
        await self._persist_runtime(session_id, run)

        await self._publish(runtime, run, StreamError(message=STOPPED_MESSAGE))

        for confirmation_id in runtime.broker.deny_all():
            await self._publish(runtime, run, ConfirmResolved(
                id=confirmation_id,
                allow=False,
                session_id=session_id,
            ))

        if run.agent is not None:
            run.agent.stop()

        logger.info("Run stopped", session_id=session_id, run_id=run.id)
        return True

    def cancel_tool(self, session_id: str, call_id: str) -> bool:
        """Cancel one in-flight tool call of the active run."""
        runtime = self._runtimes.get(session_id)
        if runtime is None or runtime.run is None or runtime.run.agent is None:
            return False
        return runtime.run.agent.cancel_tool(call_id)

    def get_status(self, session_id: str) -> dict[str, Any]:
        """Get the status of the current or last run; idle when there is none."""
        runtime = self._runtimes.get(session_id)
        if runtime is None or runtime.run is None:
            return {"status": "idle", "run_id": None, "started_at": None, "completed_at": None}
        run = runtime.run
        return {
            "status": run.status,
            "run_id": run.id,
            "started_at": run.started_at.isoformat(),
            "completed_at": run.completed_at.isoformat() if run.completed_at else None,
        }

    async def wait(self, session_id: str) -> None:
        """Wait for a background run to finish."""
        runtime = self._runtimes.get(session_id)
        if runtime is not None and runtime.run is not None and runtime.run.task is not None:
            await asyncio.shield(runtime.run.task)

    async def shutdown(self, timeout: float = 10.0) -> None:
        """Stop every active run and wait for the background tasks.

        Tasks still blocked (e.g. in a provider request) after ``timeout``
        seconds are cancelled.
        """
        for session_id, runtime in list(self._runtimes.items()):
            if runtime.run is not None and runtime.run.is_running:
                await self.stop(session_id)
        if not self._tasks:
            return

        _, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        for task in pending:
            logger.warning("Cancelling run task at shutdown")
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    # Subscribers

    async def attach(self, session_id: str, subscriber_id: str, subscriber: Subscriber) -> None:
        """Attach a subscriber: replay the buffer, then pending confirmations, then go live."""
        runtime = self.ensure_runtime(session_id)
        async with runtime.lock:
            run = runtime.run
            replay = list(run.buffer) if run is not None else []
            for envelope in replay:
                await subscriber(envelope)

            run_id = run.id if run is not None else None
            for pending in runtime.broker.list_pending():
                await subscriber(EventEnvelope(session_id, run_id, self._confirm_request_event(session_id, pending)))

            runtime.subscribers[subscriber_id] = subscriber

        logger.debug("Subscriber attached", session_id=session_id, subscriber_id=subscriber_id, replayed=len(replay))

    async def detach(self, session_id: str, subscriber_id: str) -> None:
        runtime = self._runtimes.get(session_id)
        if runtime is None:
            return
        async with runtime.lock:
            runtime.subscribers.pop(subscriber_id, None)
        logger.debug("Subscriber detached", session_id=session_id, subscriber_id=subscriber_id)

    # Confirmations

    def _confirm_request_event(self, session_id: str, pending: PendingConfirmation) -> ConfirmRequest:
        request = pending.request
        return ConfirmRequest(
            id=pending.id,
            call_id=request.call_id,
            name=request.name,
            arguments=request.arguments,
            preview=request.preview,
            session_id=session_id,
            working_dir=request.working_dir,
            auto_mode=request.auto_mode,
        )

    async def request_confirmation(self, session_id: str, request: ConfirmationRequest) -> bool:
        """Ask subscribers to approve a tool call and wait for the answer. No timeout."""
        runtime = self.ensure_runtime(session_id)
        pending = runtime.broker.create(request)
        await self._publish(runtime, runtime.run, self._confirm_request_event(session_id, pending))
        return await pending.future

    async def handle_confirmation_response(self, session_id: str, confirmation_id: str, allow: bool) -> bool:
        """Resolve a pending confirmation. Unknown or already resolved ids are ignored."""
        runtime = self._runtimes.get(session_id)
        if runtime is None:
            return False
        if not runtime.broker.resolve(confirmation_id, allow):
            logger.debug("Ignoring confirmation response", session_id=session_id, confirmation_id=confirmation_id)
            return False
        await self._publish(runtime, runtime.run, ConfirmResolved(
            id=confirmation_id,
            allow=bool(allow),
            session_id=session_id,
        ))
        return True

    # Event plumbing

    async def _on_agent_event(self, runtime: Runtime, run: RunState, event: AgentEvent) -> None:
        if isinstance(event, StreamError):
            run.status = "error"
            if run.completed_at is None:
                run.completed_at = utcnow()
        elif isinstance(event, StreamDone) and run.status != "error":
            run.status = "completed"
            run.completed_at = utcnow()
        await self._publish(runtime, run, event)

    async def _publish(self, runtime: Runtime, run: RunState | None, event: AgentEvent) -> None:
        envelope = EventEnvelope(runtime.session_id, run.id if run is not None else None, event)
        async with runtime.lock:
            if run is not None and envelope.channel in REPLAYABLE_CHANNELS:
                run.buffer.append(envelope)
            await self._broadcast_locked(runtime, envelope)

    async def _broadcast_locked(self, runtime: Runtime, envelope: EventEnvelope) -> None:
        for subscriber_id, subscriber in list(runtime.subscribers.items()):
            try:
                await subscriber(envelope)
            except Exception as e:
                logger.warning(
                    "Removing failing subscriber",
                    session_id=runtime.session_id,
                    subscriber_id=subscriber_id,
                    error=str(e),
                )
                runtime.subscribers.pop(subscriber_id, None)

    async def _persist_runtime(self, session_id: str, run: RunState) -> None:
        try:
            await self.store.update_runtime(session_id, RuntimeRecord(
                status=run.status,
                started_at=run.started_at,
                completed_at=run.completed_at,
                updated_at=utcnow(),
            ))
        except Exception as e:
            logger.warning("Failed to persist runtime status", session_id=session_id, error=str(e))
