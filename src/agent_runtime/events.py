"""
Typed events emitted by an agent run.

Each channel has its own event class, so the payload shape of a channel is
fixed by its dataclass. Hosts receive events wrapped in an EventEnvelope.
"""

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, ClassVar, Union


class Channel(str, Enum):
    """Event channels exposed to hosts."""

    STREAM_CHUNK = "stream-chunk"
    STREAM_ERROR = "stream-error"
    STREAM_DONE = "stream-done"
    TOOL_START = "tool-start"
    TOOL_ARGS = "tool-args"
    TOOL_EXEC = "tool-exec"
    TOOL_RESULT = "tool-result"
    REASONING_SUMMARY = "reasoning-summary"
    MONITOR = "monitor"
    CONFIRM_REQUEST = "confirm-request"
    CONFIRM_RESOLVED = "confirm-resolved"


# Channels kept in a run's replay buffer
REPLAYABLE_CHANNELS = frozenset({
    Channel.MONITOR,
    Channel.STREAM_CHUNK,
    Channel.STREAM_ERROR,
    Channel.STREAM_DONE,
    Channel.TOOL_START,
    Channel.TOOL_ARGS,
    Channel.TOOL_EXEC,
    Channel.TOOL_RESULT,
    Channel.REASONING_SUMMARY,
})


@dataclass
class StreamChunk:
    channel: ClassVar[Channel] = Channel.STREAM_CHUNK
    text: str


@dataclass
class StreamError:
    channel: ClassVar[Channel] = Channel.STREAM_ERROR
    message: str
    detail: str | None = None


@dataclass
class StreamDone:
    channel: ClassVar[Channel] = Channel.STREAM_DONE


@dataclass
class ToolStart:
    channel: ClassVar[Channel] = Channel.TOOL_START
    id: str
    name: str


@dataclass
class ToolArgs:
    channel: ClassVar[Channel] = Channel.TOOL_ARGS
    id: str
    name: str
    delta: str


@dataclass
class ToolExec:
    channel: ClassVar[Channel] = Channel.TOOL_EXEC
    id: str
    name: str
    arguments: str
    normalized_arguments: str
    repaired: bool = False


@dataclass
class ToolResultEvent:
    channel: ClassVar[Channel] = Channel.TOOL_RESULT
    id: str
    name: str
    result: str
    data: Any = None


@dataclass
class ReasoningSummary:
    channel: ClassVar[Channel] = Channel.REASONING_SUMMARY
    text: str


@dataclass
class Monitor:
    """Telemetry: context metrics and compaction reports."""

    channel: ClassVar[Channel] = Channel.MONITOR
    type: str
    data: dict[str, Any] = field(default_factory=dict)


@dataclass
class ConfirmRequest:
    channel: ClassVar[Channel] = Channel.CONFIRM_REQUEST
    id: str
    call_id: str
    name: str
    arguments: str
    preview: dict[str, Any] | None
    session_id: str
    working_dir: str | None = None
    auto_mode: bool = False


@dataclass
class ConfirmResolved:
    channel: ClassVar[Channel] = Channel.CONFIRM_RESOLVED
    id: str
    allow: bool
    session_id: str


AgentEvent = Union[
    StreamChunk,
    StreamError,
    StreamDone,
    ToolStart,
    ToolArgs,
    ToolExec,
    ToolResultEvent,
    ReasoningSummary,
    Monitor,
    ConfirmRequest,
    ConfirmResolved,
]


@dataclass
class EventEnvelope:
    """An event addressed to the subscribers of one conversation."""

    session_id: str
    run_id: str | None
    event: AgentEvent

    @property
    def channel(self) -> Channel:
        return self.event.channel

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "run_id": self.run_id,
            "channel": self.channel.value,
            "payload": asdict(self.event),
        }


EventSink = Callable[[AgentEvent], Awaitable[None]]
Subscriber = Callable[[EventEnvelope], Awaitable[None]]


async def discard_event(event: AgentEvent) -> None:
    """Event sink that drops everything."""
    return None
