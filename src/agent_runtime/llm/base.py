"""
Base classes for provider adapters.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Literal, Union

from .breaker import CacheControlBreaker, get_cache_control_breaker
from .gate import RequestGate
from .retry import RetryConfig, retry

if TYPE_CHECKING:
    from ..tools.base import ToolResult

ReasoningEffort = Literal["low", "medium", "high", "xhigh"]

HistoryItem = dict[str, Any]


def as_dict(obj: Any) -> dict[str, Any]:
    """Convert an SDK model (or a plain dict) into a plain dict."""
    if isinstance(obj, dict):
        return obj
    if hasattr(obj, "model_dump"):
        return obj.model_dump(exclude_none=True)
    return dict(vars(obj))


def get_field(obj: Any, key: str, default: Any = None) -> Any:
    """Read a field from either an SDK model or a dict."""
    if isinstance(obj, dict):
        return obj.get(key, default)
    return getattr(obj, key, default)


@dataclass
class ToolDefinition:
    """Definition of a tool that the LLM can use."""

    name: str
    description: str
    parameters: dict[str, Any]


@dataclass
class ToolCall:
    """A tool call made by the LLM. ``arguments`` is the raw JSON text."""

    id: str
    name: str
    arguments: str


@dataclass
class SystemPromptParts:
    """System prompt split into a cacheable prefix and a per-workspace suffix."""

    static: str
    dynamic: str = ""

    @property
    def combined(self) -> str:
        return "\n\n".join(part for part in (self.static, self.dynamic) if part)


@dataclass
class ReasoningPart:
    text: str


@dataclass
class TextPart:
    text: str


@dataclass
class ToolCallPart:
    call: ToolCall


ResponsePart = Union[ReasoningPart, TextPart, ToolCallPart]


@dataclass
class AdapterResponse:
    """Outcome of one model request.

    ``items`` are the new history items produced by the model, in order.
    ``parts`` are the user-visible units (reasoning, text, tool calls) in the
    order they should be surfaced.
    """

    items: list[HistoryItem] = field(default_factory=list)
    parts: list[ResponsePart] = field(default_factory=list)
    raw_response: Any = None

    @property
    def tool_calls(self) -> list[ToolCall]:
        return [p.call for p in self.parts if isinstance(p, ToolCallPart)]

    @property
    def tool_called(self) -> bool:
        return any(isinstance(p, ToolCallPart) for p in self.parts)


@dataclass
class ShapedToolResults:
    """History items carrying tool results, plus their single-use parts.

    ``transient`` items are sent with the next request only and never stored.
    ``request_variants`` pairs a stored item with the richer copy (e.g. one
    carrying an inline image) that replaces it in the next request only.
    """

    items: list[HistoryItem] = field(default_factory=list)
    transient: list[HistoryItem] = field(default_factory=list)
    request_variants: list[tuple[HistoryItem, HistoryItem]] = field(default_factory=list)


class ProviderAdapter(ABC):
    """Translates provider-neutral requests into one backend's wire shape."""

    def __init__(
        self,
        model: str,
        client: Any,
        retry_config: RetryConfig | None = None,
        cache_breaker: CacheControlBreaker | None = None,
        request_gate: RequestGate | None = None,
    ):
        self.model = model
        self.client = client
        self.retry_config = retry_config or RetryConfig()
        self.cache_breaker = cache_breaker or get_cache_control_breaker()
        self.request_gate = request_gate or RequestGate()

    async def _call(self, fn: Callable[[], Awaitable[Any]], config: RetryConfig | None = None) -> Any:
        """Retry ``fn`` with each attempt going through the request gate."""
        return await retry(lambda: self.request_gate.run(fn), config or self.retry_config)

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Get the provider name."""
        pass

    @abstractmethod
    async def request(
        self,
        history: list[HistoryItem],
        prompt: SystemPromptParts,
        tools: list[ToolDefinition],
        reasoning_effort: ReasoningEffort = "high",
        is_stopping: Callable[[], bool] | None = None,
    ) -> AdapterResponse:
        """Send the history to the model and translate its answer."""
        pass

    @abstractmethod
    def tool_result_items(self, results: list[tuple[ToolCall, "ToolResult"]]) -> ShapedToolResults:
        """Shape executed tool results into history items."""
        pass

    @abstractmethod
    def normalize_history(self, items: list[HistoryItem]) -> tuple[list[HistoryItem], bool]:
        """Convert items into this provider's native shape. Returns (items, changed)."""
        pass

    @abstractmethod
    def is_user_message(self, item: HistoryItem) -> bool:
        """Check if an item starts a new conversation turn."""
        pass

    @abstractmethod
    def user_text_item(self, text: str) -> HistoryItem:
        """Build a plain user message item."""
        pass

    @abstractmethod
    async def complete(self, system: str, prompt: str, max_tokens: int = 2000, model: str | None = None) -> str:
        """Run a single tool-free completion and return its text."""
        pass
