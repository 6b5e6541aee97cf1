"""
Command-line interface for agent-runtime.
"""

import argparse
import asyncio
import sys
from pathlib import Path

import structlog
import uvicorn

from .config import get_settings
from .events import ConfirmRequest, EventEnvelope, ReasoningSummary, StreamChunk, StreamDone, StreamError, ToolResultEvent, ToolStart

structlog.configure(
    processors=[
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.dev.ConsoleRenderer(colors=True),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()


def main() -> None:
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        prog="agent-runtime",
        description="agent-runtime - an LLM agent loop with tools, compaction and replay",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    serve_parser = subparsers.add_parser("serve", help="Start the API server")
    serve_parser.add_argument("--host", default=None, help="Host to bind to")
    serve_parser.add_argument("--port", type=int, default=None, help="Port to bind to")
    serve_parser.add_argument("--reload", action="store_true", help="Enable auto-reload")

    run_parser = subparsers.add_parser("run", help="Send one prompt and stream the answer")
    run_parser.add_argument("prompt", help="Prompt text")
    run_parser.add_argument("--session", default=None, help="Session id to continue")
    run_parser.add_argument("--model", default=None, help="Model to use")
    run_parser.add_argument("--effort", default=None, help="Reasoning effort")
    run_parser.add_argument("--auto", action="store_true", help="Auto mode (skip confirmations where allowed)")

    subparsers.add_parser("sessions", help="List sessions of the current directory")

    config_parser = subparsers.add_parser("config", help="Show configuration")
    config_parser.add_argument("--check", action="store_true", help="Check configuration validity")

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    if args.command == "serve":
        settings = get_settings()
        run_server(args.host or settings.host, args.port or settings.port, args.reload)
    elif args.command == "run":
        asyncio.run(run_prompt(args.prompt, args.session, args.model, args.effort, args.auto))
    elif args.command == "sessions":
        asyncio.run(list_sessions())
    elif args.command == "config":
        show_config(args.check)
    else:
        parser.print_help()


def run_server(host: str, port: int, reload: bool) -> None:
    """Run the FastAPI server."""
    logger.info("Starting agent-runtime server", host=host, port=port)

    uvicorn.run(
        "agent_runtime.api.app:create_app",
        host=host,
        port=port,
        reload=reload,
        factory=True,
        log_level="info",
    )


async def _ask_confirmation(manager, session_id: str, event: ConfirmRequest) -> None:
    preview = event.preview or {}
    print(f"\n[confirm] {event.name}: {preview.get('path') or preview.get('text') or event.arguments}")
    answer = await asyncio.to_thread(input, "Allow? [y/N] ")
    await manager.handle_confirmation_response(session_id, event.id, answer.strip().lower() in ("y", "yes"))


async def run_prompt(
    prompt: str,
    session_id: str | None,
    model: str | None,
    effort: str | None,
    auto_mode: bool,
) -> None:
    """Run one prompt against a session in the current directory."""
    from .agent.core import RunRequest
    from .agent.session import SessionRuntimeManager
    from .store.sql import SqlSessionStore
    from .tools.registry import ToolRegistry

    settings = get_settings()
    working_dir = str(Path.cwd())
    store = await SqlSessionStore.open(
        settings.database_url,
        working_dir=working_dir,
        persist_image_max_chars=settings.persist_image_max_chars,
    )

    if session_id is None or await store.get(session_id) is None:
        record = await store.create(session_id=session_id)
        session_id = record.id
        print(f"Session: {session_id}")

    manager = SessionRuntimeManager(store, ToolRegistry(), settings=settings)
    pending: set[asyncio.Task] = set()

    async def printer(envelope: EventEnvelope) -> None:
        event = envelope.event
        if isinstance(event, StreamChunk):
            print(event.text, end="", flush=True)
        elif isinstance(event, ReasoningSummary):
            print(f"\n[thinking] {event.text}")
        elif isinstance(event, ToolStart):
            print(f"\n[tool] {event.name} ({event.id})")
        elif isinstance(event, ToolResultEvent):
            print(f"[result] {event.result[:200]}")
        elif isinstance(event, StreamError):
            print(f"\n[error] {event.message}", file=sys.stderr)
        elif isinstance(event, StreamDone):
            print()
        elif isinstance(event, ConfirmRequest):
            # Subscribers run under the runtime lock; answer from a separate task
            task = asyncio.create_task(_ask_confirmation(manager, envelope.session_id, event))
            pending.add(task)
            task.add_done_callback(pending.discard)

    await manager.attach(session_id, "cli", printer)
    await manager.run(RunRequest(
        session_id=session_id,
        items=[{"role": "user", "content": prompt}],
        title=prompt.splitlines()[0][:60] if prompt.strip() else None,
        model=model,
        reasoning_effort=effort,
        auto_mode=auto_mode,
        working_dir=working_dir,
    ))
    await manager.detach(session_id, "cli")


async def list_sessions() -> None:
    """List sessions of the current directory."""
    from .store.sql import SqlSessionStore

    settings = get_settings()
    store = await SqlSessionStore.open(settings.database_url, working_dir=str(Path.cwd()))
    records = await store.list()

    if not records:
        print("No sessions.")
        return

    print(f"\n{'ID':<38} {'Provider':<10} {'Status':<10} {'Updated':<20} Title")
    print("-" * 100)

    for record in records:
        status = record.runtime.status if record.runtime else "idle"
        updated = record.updated_at.strftime("%Y-%m-%d %H:%M:%S")
        print(f"{record.id:<38} {record.provider:<10} {status:<10} {updated:<20} {record.title}")


def show_config(check: bool) -> None:
    """Show current configuration."""
    settings = get_settings()

    def mask(value: str) -> str:
        if not value:
            return "(not set)"
        return value[:4] + "..." + value[-4:] if len(value) > 10 else "****"

    print("\n=== agent-runtime Configuration ===\n")

    print("Server:")
    print(f"  Host: {settings.host}")
    print(f"  Port: {settings.port}")
    print(f"  Debug: {settings.debug}")
    print(f"  Database: {settings.database_url}")

    print("\nLLM Providers:")
    print(f"  Default Model: {settings.default_model}")
    print(f"  Reasoning Effort: {settings.default_reasoning_effort}")
    print(f"  OpenAI Key: {mask(settings.openai_api_key)}")
    print(f"  Anthropic Key: {mask(settings.anthropic_api_key)}")

    print("\nRetry:")
    print(f"  Budget: {settings.retry_budget_ms} ms")
    print(f"  Base / Max Delay: {settings.retry_base_delay_ms} / {settings.retry_max_delay_ms} ms")
    print(f"  Poll Timeout: {settings.response_poll_timeout_ms or '(none)'}")

    print("\nImages:")
    print(f"  Max Dimension: {settings.tool_image_max_dim}")
    print(f"  Max Bytes: {settings.tool_image_max_bytes}")
    print(f"  Request / Persist Limit: {settings.effective_request_image_max_chars} / {settings.persist_image_max_chars}")

    if check:
        print("\n=== Configuration Check ===\n")
        issues = []
        if not settings.openai_api_key and not settings.anthropic_api_key:
            issues.append("No LLM provider API key configured")
        from .llm.models import get_model_provider
        provider = get_model_provider(settings.default_model)
        if not settings.api_key_for(provider):
            issues.append(f"Default model {settings.default_model} needs a {provider} API key")

        if issues:
            print("Issues found:")
            for issue in issues:
                print(f"  - {issue}")
        else:
            print("Configuration looks good!")

    print()


if __name__ == "__main__":
    main()
