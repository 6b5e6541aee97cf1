"""
Tests for the session runtime manager.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from agent_runtime.agent.core import CANCELLED_BY_USER, RunRequest
from agent_runtime.agent.session import STOPPED_MESSAGE, SessionRuntimeManager, new_run_id
from agent_runtime.config import Settings
from agent_runtime.errors import RunAlreadyActiveError
from agent_runtime.events import REPLAYABLE_CHANNELS, Channel, ConfirmRequest, ConfirmResolved, StreamDone, StreamError
from agent_runtime.llm import ResponsesAdapter
from agent_runtime.llm.base import AdapterResponse, SystemPromptParts, TextPart, ToolCall, ToolCallPart
from agent_runtime.store import MemorySessionStore
from agent_runtime.tools import ToolRegistry


class GatedResponses(ResponsesAdapter):
    """Replays canned responses; each request waits for the gate."""

    def __init__(self, *responses):
        super().__init__("gpt-5.1", MagicMock())
        self.responses = list(responses)
        self.gate = asyncio.Event()
        self.gate.set()

    async def request(self, history, prompt, tools, reasoning_effort="high", is_stopping=None):
        await self.gate.wait()
        return self.responses.pop(0)


def text_response(text: str) -> AdapterResponse:
    return AdapterResponse(
        items=[{"type": "message", "role": "assistant", "content": [{"type": "output_text", "text": text}]}],
        parts=[TextPart(text)],
    )


def write_response() -> AdapterResponse:
    args = '{"filePath": "notes.txt", "content": "hello"}'
    return AdapterResponse(
        items=[{"type": "function_call", "call_id": "c1", "name": "create_file", "arguments": args}],
        parts=[ToolCallPart(ToolCall(id="c1", name="create_file", arguments=args))],
    )


async def setup(adapter, tools=None, **kwargs):
    store = MemorySessionStore()
    record = await store.create()
    manager = SessionRuntimeManager(
        store,
        tools or ToolRegistry(),
        settings=Settings(_env_file=None),
        adapter_factory=lambda model, settings: adapter,
        prompt_parts=SystemPromptParts(static="rules"),
        **kwargs,
    )
    return store, record.id, manager


def collector():
    envelopes = []

    async def subscriber(envelope):
        envelopes.append(envelope)

    return envelopes, subscriber


def request(session_id: str, text: str = "hi") -> RunRequest:
    return RunRequest(session_id=session_id, items=[{"role": "user", "content": text}])


def test_new_run_id_format():
    """Test run id shape and uniqueness."""
    first, second = new_run_id(), new_run_id()
    assert first.startswith("run-")
    assert first != second


@pytest.mark.asyncio
async def test_status_idle_without_run():
    """Test the status of a session that never ran."""
    _, session_id, manager = await setup(GatedResponses())

    assert manager.get_status(session_id) == {
        "status": "idle",
        "run_id": None,
        "started_at": None,
        "completed_at": None,
    }


@pytest.mark.asyncio
async def test_run_completes_and_late_attach_replays():
    """Test that a finished run can still be replayed by a new subscriber."""
    store, session_id, manager = await setup(GatedResponses(text_response("Hello")))
    live, live_subscriber = collector()
    await manager.attach(session_id, "live", live_subscriber)

    await manager.run(request(session_id))

    status = manager.get_status(session_id)
    assert status["status"] == "completed"
    assert status["completed_at"] is not None
    assert live[-1].channel == Channel.STREAM_DONE

    late, late_subscriber = collector()
    await manager.attach(session_id, "late", late_subscriber)

    assert [e.channel for e in late] == [e.channel for e in live]
    assert all(e.run_id == status["run_id"] for e in late)
    assert any(e.channel == Channel.STREAM_CHUNK and e.event.text == "Hello" for e in late)
    assert (await store.get(session_id)).runtime.status == "completed"


@pytest.mark.asyncio
async def test_second_run_rejected_while_active():
    """Test that only one run per session may be active."""
    adapter = GatedResponses(text_response("one"))
    adapter.gate.clear()
    _, session_id, manager = await setup(adapter)

    task = manager.start_run(request(session_id))
    await asyncio.sleep(0)
    assert manager.get_status(session_id)["status"] == "running"

    with pytest.raises(RunAlreadyActiveError):
        manager.start_run(request(session_id, "two"))

    adapter.gate.set()
    await asyncio.wait_for(task, 5)
    assert manager.get_status(session_id)["status"] == "completed"


@pytest.mark.asyncio
async def test_confirmation_resolves_once_and_late_attach_sees_pending():
    """Test the confirmation handshake end to end."""
    create_file = AsyncMock(return_value="written")
    tools = ToolRegistry()
    tools.register_function("create_file", "Create a file", create_file)
    _, session_id, manager = await setup(GatedResponses(write_response(), text_response("Done")), tools)

    seen = asyncio.Event()
    envelopes = []

    async def subscriber(envelope):
        envelopes.append(envelope)
        if isinstance(envelope.event, ConfirmRequest):
            seen.set()

    await manager.attach(session_id, "ui", subscriber)
    task = manager.start_run(request(session_id, "write notes"))
    await asyncio.wait_for(seen.wait(), 5)

    confirm = next(e.event for e in envelopes if isinstance(e.event, ConfirmRequest))
    assert confirm.name == "create_file"
    assert confirm.preview["path"] == "notes.txt"

    late, late_subscriber = collector()
    await manager.attach(session_id, "late", late_subscriber)
    assert isinstance(late[-1].event, ConfirmRequest)
    assert late[-1].event.id == confirm.id

    assert await manager.handle_confirmation_response(session_id, confirm.id, True)
    assert not await manager.handle_confirmation_response(session_id, confirm.id, False)

    await asyncio.wait_for(task, 5)

    create_file.assert_awaited_once()
    resolved = [e.event for e in envelopes if isinstance(e.event, ConfirmResolved)]
    assert len(resolved) == 1
    assert resolved[0].allow is True
    assert manager.get_status(session_id)["status"] == "completed"


@pytest.mark.asyncio
async def test_stop_denies_pending_confirmation():
    """Test that stopping a run waiting on a confirmation denies it."""
    create_file = AsyncMock()
    tools = ToolRegistry()
    tools.register_function("create_file", "Create a file", create_file)
    store, session_id, manager = await setup(GatedResponses(write_response(), text_response("never")), tools)

    seen = asyncio.Event()
    envelopes = []

    async def subscriber(envelope):
        envelopes.append(envelope)
        if isinstance(envelope.event, ConfirmRequest):
            seen.set()

    await manager.attach(session_id, "ui", subscriber)
    task = manager.start_run(request(session_id, "write notes"))
    await asyncio.wait_for(seen.wait(), 5)

    assert await manager.stop(session_id)
    await asyncio.wait_for(task, 5)

    create_file.assert_not_awaited()
    events = [e.event for e in envelopes]
    assert any(isinstance(e, StreamError) and e.message == STOPPED_MESSAGE for e in events)
    assert any(isinstance(e, ConfirmResolved) and e.allow is False for e in events)
    assert isinstance(events[-1], StreamDone)
    assert manager.get_status(session_id)["status"] == "error"

    history = (await store.get(session_id)).history
    outputs = [i["output"] for i in history if i.get("type") == "function_call_output"]
    assert outputs == [CANCELLED_BY_USER]
    assert not await manager.stop(session_id)


@pytest.mark.asyncio
async def test_failing_subscriber_is_removed():
    """Test that a subscriber that raises is dropped and others keep receiving."""
    _, session_id, manager = await setup(GatedResponses(text_response("Hello")))

    async def broken(envelope):
        raise RuntimeError("socket closed")

    good, good_subscriber = collector()
    await manager.attach(session_id, "broken", broken)
    await manager.attach(session_id, "good", good_subscriber)

    await manager.run(request(session_id))

    assert list(manager.get_runtime(session_id).subscribers) == ["good"]
    assert good[-1].channel == Channel.STREAM_DONE


@pytest.mark.asyncio
async def test_detach_stops_delivery():
    """Test that a detached subscriber gets nothing more."""
    _, session_id, manager = await setup(GatedResponses(text_response("Hello")))
    received, subscriber = collector()

    await manager.attach(session_id, "ui", subscriber)
    await manager.detach(session_id, "ui")
    await manager.run(request(session_id))

    assert received == []


@pytest.mark.asyncio
async def test_replay_buffer_is_bounded():
    """Test that the buffer size has a floor of 50 events."""
    _, session_id, manager = await setup(GatedResponses(text_response("Hello")), max_buffer_events=10)

    await manager.run(request(session_id))

    assert manager.get_runtime(session_id).run.buffer.maxlen == 50


class SteppedResponses(GatedResponses):
    """Each request announces itself and waits to be released."""

    def __init__(self, *responses):
        super().__init__(*responses)
        self.started: asyncio.Queue = asyncio.Queue()
        self.releases: asyncio.Queue = asyncio.Queue()

    async def request(self, history, prompt, tools, reasoning_effort="high", is_stopping=None):
        await self.started.put(len(self.responses))
        await self.releases.get()
        return self.responses.pop(0)


def read_response(*call_ids: str) -> AdapterResponse:
    args = '{"path": "a.txt"}'
    return AdapterResponse(
        items=[{"type": "function_call", "call_id": c, "name": "read_file", "arguments": args} for c in call_ids],
        parts=[ToolCallPart(ToolCall(id=c, name="read_file", arguments=args)) for c in call_ids],
    )


@pytest.mark.asyncio
async def test_attach_mid_run_replays_then_streams_live():
    """Test that a subscriber attaching mid-run gets the buffer, then live events in order."""
    tools = ToolRegistry()
    tools.register_function("read_file", "Read a file", AsyncMock(return_value="contents"))
    adapter = SteppedResponses(read_response("c1"), text_response("Done"))
    _, session_id, manager = await setup(adapter, tools)
    early, early_subscriber = collector()
    await manager.attach(session_id, "early", early_subscriber)

    task = manager.start_run(request(session_id, "read a.txt"))
    await asyncio.wait_for(adapter.started.get(), 5)
    adapter.releases.put_nowait(None)
    await asyncio.wait_for(adapter.started.get(), 5)

    buffered = list(manager.get_runtime(session_id).run.buffer)
    assert any(e.channel == Channel.TOOL_RESULT for e in buffered)

    late, late_subscriber = collector()
    await manager.attach(session_id, "late", late_subscriber)
    assert late == buffered
    assert late == early

    adapter.releases.put_nowait(None)
    await asyncio.wait_for(task, 5)

    assert len(late) > len(buffered)
    assert late == early
    live = late[len(buffered):]
    assert any(e.channel == Channel.STREAM_CHUNK and e.event.text == "Done" for e in live)
    assert live[-1].channel == Channel.STREAM_DONE


@pytest.mark.asyncio
async def test_replay_keeps_the_most_recent_events_in_order():
    """Test that an overflowing buffer evicts the oldest events first."""
    tools = ToolRegistry()
    tools.register_function("read_file", "Read a file", AsyncMock(return_value="contents"))
    calls = [f"c{i}" for i in range(20)]
    _, session_id, manager = await setup(
        GatedResponses(read_response(*calls), text_response("Done")),
        tools,
        max_buffer_events=50,
    )
    everything, subscriber = collector()
    await manager.attach(session_id, "ui", subscriber)

    await manager.run(request(session_id, "read them all"))

    replayable = [e for e in everything if e.channel in REPLAYABLE_CHANNELS]
    assert len(replayable) > 50

    late, late_subscriber = collector()
    await manager.attach(session_id, "late", late_subscriber)

    assert late == replayable[-50:]
    assert late[-1].channel == Channel.STREAM_DONE


@pytest.mark.asyncio
async def test_shutdown_cancels_stuck_runs():
    """Test that shutdown stops runs blocked in a provider request."""
    adapter = GatedResponses(text_response("never"))
    adapter.gate.clear()
    _, session_id, manager = await setup(adapter)

    task = manager.start_run(request(session_id))
    await asyncio.sleep(0)
    await manager.shutdown(timeout=0.05)

    assert task.done()
    assert manager.get_status(session_id)["status"] == "error"
