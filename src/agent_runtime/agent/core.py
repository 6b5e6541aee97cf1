"""
Core agent loop.

An AgentSession owns one conversation for the duration of a run. It:
1. Loads the session and locks (or switches) its provider
2. Appends the caller's new items and persists them
3. Loops request -> tool execution -> append until the model stops calling tools
4. Routes sensitive tool calls through the confirmation handshake
5. Compacts the history before the loop and every few tool iterations
6. Writes the final history and emits a terminal done event, whatever happens
"""

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Awaitable, Callable

import structlog

from ..errors import ProviderMismatchError
from ..events import (
    EventSink,
    Monitor,
    ReasoningSummary,
    StreamChunk,
    StreamDone,
    StreamError,
    ToolArgs,
    ToolResultEvent,
    discard_event,
)
from ..llm.base import (
    HistoryItem,
    ProviderAdapter,
    ReasoningPart,
    SystemPromptParts,
    TextPart,
    ToolCall,
    ToolCallPart,
)
from ..llm.models import get_model_provider
from ..store.base import DEFAULT_TITLE, SessionStore
from ..tools.base import ToolResult
from ..tools.cancel import CancelToken
from ..tools.confirmation import ConfirmationRequest, build_preview, needs_confirmation
from ..tools.gateway import ToolGateway, parse_tool_arguments
from ..tools.images import ToolImageProcessor
from ..tools.registry import ToolRegistry
from .compaction import compact, default_compaction_config, needs_compaction
from .history import TransientItems, build_persistable_history, build_request_history
from .prompt import build_system_prompt_parts
from .summarizer import create_llm_summarizer
from .tokens import estimate_history_tokens

if TYPE_CHECKING:
    from ..config import Settings

logger = structlog.get_logger()

CANCELLED_BY_USER = "Error: action cancelled by user"
STOPPED_RESULT = "Error: Run stopped by user."

ConfirmationRequester = Callable[[ConfirmationRequest], Awaitable[bool]]
AdapterFactory = Callable[[str, "Settings"], ProviderAdapter]


@dataclass
class RunRequest:
    """What a host asks the agent to do."""

    session_id: str
    items: list[HistoryItem] = field(default_factory=list)
    title: str | None = None
    model: str | None = None
    reasoning_effort: str | None = None
    auto_mode: bool = False
    working_dir: str | None = None


def _default_adapter_factory(model: str, settings: "Settings") -> ProviderAdapter:
    from ..llm.factory import create_adapter
    return create_adapter(model, settings)


class AgentSession:
    """Runs the agent loop for one conversation.

    Events go to ``emit``; confirmations go to ``request_confirmation``. Both
    are normally provided by the SessionRuntimeManager.
    """

    def __init__(
        self,
        store: SessionStore,
        tools: ToolRegistry,
        emit: EventSink | None = None,
        request_confirmation: ConfirmationRequester | None = None,
        settings: "Settings | None" = None,
        adapter_factory: AdapterFactory | None = None,
        prompt_parts: SystemPromptParts | None = None,
    ):
        if settings is None:
            from ..config import get_settings
            settings = get_settings()

        self.store = store
        self.tools = tools
        self.emit = emit or discard_event
        self.request_confirmation = request_confirmation
        self.settings = settings
        self.adapter_factory = adapter_factory or _default_adapter_factory
        self.prompt_parts = prompt_parts

        self.gateway = ToolGateway(
            emit=self.emit,
            image_processor=ToolImageProcessor(settings.image_config()),
        )
        self._transients = TransientItems()
        self._tokens: dict[str, CancelToken] = {}
        self._stopped = False
        self._changed = False

    @property
    def is_stopped(self) -> bool:
        return self._stopped

    def stop(self) -> None:
        """Ask the loop to stop at its next safe point and cancel running tools."""
        self._stopped = True
        for token in list(self._tokens.values()):
            token.cancel()
        self._tokens.clear()
        logger.info("Agent stop requested")

    def cancel_tool(self, call_id: str) -> bool:
        """Cancel one in-flight tool call. Returns False if it is not running."""
        token = self._tokens.get(call_id)
        if token is None:
            return False
        token.cancel()
        return True

    async def run(self, request: RunRequest) -> None:
        """Run the loop until the model stops calling tools or the run is stopped.

        Uncaught errors are reported as a stream-error event and re-raised;
        a stream-done event is always emitted last. A stop requested before
        the run starts is honoured.
        """
        self._changed = False
        session_id = request.session_id
        history: list[HistoryItem] | None = None

        try:
            record = await self.store.get(session_id)
            if record is None:
                logger.warning("Session not found", session_id=session_id)
                await self.emit(StreamError(message=f"Session {session_id} not found"))
                return

            model = request.model or self.settings.default_model
            model_provider = get_model_provider(model)

            if record.provider != model_provider:
                if record.history:
                    error = ProviderMismatchError(record.provider, model_provider)
                    logger.warning(
                        "Provider mismatch",
                        session_id=session_id,
                        session_provider=record.provider,
                        model_provider=model_provider,
                    )
                    await self.emit(StreamError(message=str(error)))
                    return
                await self.store.set_provider(session_id, model_provider)
                logger.info("Switched session provider", session_id=session_id, provider=model_provider)

            adapter = self.adapter_factory(model, self.settings)
            history, changed = adapter.normalize_history(list(record.history))
            self._changed = changed

            new_items, _ = adapter.normalize_history(list(request.items))
            if new_items:
                history.extend(new_items)
                await self.store.append_history(session_id, new_items)

            if request.title and record.title == DEFAULT_TITLE:
                await self.store.rename(session_id, request.title)

            prompt = self.prompt_parts or build_system_prompt_parts(request.working_dir)
            tool_definitions = self.tools.get_definitions()
            effort = request.reasoning_effort or self.settings.default_reasoning_effort
            interval = max(1, self.settings.compaction_check_interval)

            history = await self._maybe_compact(session_id, adapter, model, history, "initial", 0)

            iteration = 0
            while not self._stopped:
                iteration += 1
                await self._emit_metrics(adapter, history, "request", iteration)

                response = await adapter.request(
                    build_request_history(
                        history,
                        self._transients,
                        self.settings.effective_request_image_max_chars,
                    ),
                    prompt,
                    tool_definitions,
                    effort,
                    is_stopping=lambda: self._stopped,
                )

                # Single-use items have now been sent once
                history = self._transients.remove_from(history)
                history.extend(response.items)
                self._changed = True

                results: list[tuple[ToolCall, ToolResult]] = []
                for part in response.parts:
                    if isinstance(part, ReasoningPart):
                        await self.emit(ReasoningSummary(text=part.text))
                    elif isinstance(part, TextPart):
                        await self.emit(StreamChunk(text=part.text))
                    elif isinstance(part, ToolCallPart):
                        result = await self._handle_tool_call(part.call, request)
                        results.append((part.call, result))

                if results:
                    shaped = adapter.tool_result_items(results)
                    history.extend(shaped.items)
                    self._transients.add(shaped.transient)
                    self._transients.add_variants(shaped.request_variants)

                await self._checkpoint(session_id, history)

                if not response.tool_called:
                    break

                if iteration % interval == 0 and not self._stopped:
                    history = await self._maybe_compact(session_id, adapter, model, history, "loop", iteration)

        except Exception as e:
            logger.error("Agent run failed", session_id=session_id, error=str(e), error_type=type(e).__name__)
            await self.emit(StreamError(message=str(e), detail=type(e).__name__))
            raise

        finally:
            if history is not None:
                await self._final_write(session_id, history)
            await self.emit(StreamDone())

    async def _handle_tool_call(self, call: ToolCall, request: RunRequest) -> ToolResult:
        """Confirm (if needed) and execute one tool call; always returns a result."""
        await self.emit(ToolArgs(id=call.id, name=call.name, delta=call.arguments))

        if self._stopped:
            return await self._error_result(call, STOPPED_RESULT)

        tool = self.tools.get(call.name)
        if tool is None:
            logger.warning("No handler for tool", tool_name=call.name, call_id=call.id)
            return await self._error_result(call, f"Error: No handler for {call.name}")

        if needs_confirmation(call.name, request.auto_mode):
            allowed = await self._confirm(call, request)
            if not allowed or self._stopped:
                logger.info("Tool call denied", tool_name=call.name, call_id=call.id)
                return await self._error_result(call, CANCELLED_BY_USER)

        token = CancelToken()
        self._tokens[call.id] = token
        try:
            return await self.gateway.execute(call.name, call.id, call.arguments, tool, token)
        finally:
            self._tokens.pop(call.id, None)

    async def _confirm(self, call: ToolCall, request: RunRequest) -> bool:
        if self.request_confirmation is None:
            logger.warning("No confirmation handler, denying", tool_name=call.name)
            return False
        parsed = parse_tool_arguments(call.arguments)
        args = parsed.value if isinstance(parsed.value, dict) else {}
        return await self.request_confirmation(ConfirmationRequest(
            call_id=call.id,
            name=call.name,
            arguments=call.arguments,
            preview=build_preview(call.name, args),
            working_dir=request.working_dir,
            auto_mode=request.auto_mode,
        ))

    async def _error_result(self, call: ToolCall, text: str) -> ToolResult:
        await self.emit(ToolResultEvent(id=call.id, name=call.name, result=text))
        return ToolResult(output=text, success=False, error=text)

    async def _emit_metrics(self, adapter: ProviderAdapter, history: list[HistoryItem], phase: str, iteration: int) -> None:
        metrics = estimate_history_tokens(history, adapter.provider_name)
        await self.emit(Monitor(
            type="context_metrics",
            data={**metrics.to_dict(), "phase": phase, "iteration": iteration, "provider": adapter.provider_name},
        ))

    async def _maybe_compact(
        self,
        session_id: str,
        adapter: ProviderAdapter,
        model: str,
        history: list[HistoryItem],
        phase: str,
        iteration: int,
    ) -> list[HistoryItem]:
        """Compact when over budget; compaction problems never fail the run."""
        provider = adapter.provider_name
        config = default_compaction_config(provider, model)

        await self._emit_metrics(adapter, history, phase, iteration)
        if not needs_compaction(history, config, provider):
            return history

        # Single-use image items never start a turn
        def is_user_message(item: HistoryItem) -> bool:
            return not self._transients.is_transient(item) and adapter.is_user_message(item)

        try:
            result = await compact(
                history,
                config,
                create_llm_summarizer(adapter, config.summary_model),
                provider=provider,
                is_user_message=is_user_message,
            )
        except Exception as e:
            logger.error("Compaction failed", session_id=session_id, error=str(e))
            return history

        if not result.compacted:
            return history

        await self.emit(Monitor(type="compaction", data={
            "provider": provider,
            "turns_summarized": result.turns_summarized,
            "original_tokens": result.original_tokens,
            "new_tokens": result.new_tokens,
        }))
        self._changed = True
        await self._checkpoint(session_id, result.history)
        return result.history

    def _persistable(self, history: list[HistoryItem]) -> list[HistoryItem]:
        return build_persistable_history(history, self._transients, self.settings.persist_image_max_chars)

    async def _checkpoint(self, session_id: str, history: list[HistoryItem]) -> None:
        """Best-effort write that leaves the session timestamp alone."""
        try:
            await self.store.set_history(session_id, self._persistable(history), update_timestamp=False)
        except Exception as e:
            logger.warning("Incremental history write failed", session_id=session_id, error=str(e))

    async def _final_write(self, session_id: str, history: list[HistoryItem]) -> None:
        """Write the final history (or touch the session); retried once."""
        for attempt in (1, 2):
            try:
                if self._changed:
                    await self.store.set_history(session_id, self._persistable(history))
                else:
                    await self.store.touch(session_id)
                return
            except Exception as e:
                logger.warning(
                    "Final history write failed",
                    session_id=session_id,
                    attempt=attempt,
                    error=str(e),
                )
