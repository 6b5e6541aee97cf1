"""
Tests for the agent loop.
"""

import base64
from io import BytesIO
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from PIL import Image

from agent_runtime.agent.compaction import CompactionResult, segment_into_turns
from agent_runtime.agent.core import CANCELLED_BY_USER, STOPPED_RESULT, AgentSession, RunRequest
from agent_runtime.config import Settings
from agent_runtime.events import Monitor, StreamChunk, StreamDone, StreamError, ToolResultEvent
from agent_runtime.llm import MessagesAdapter, ResponsesAdapter
from agent_runtime.llm.base import AdapterResponse, SystemPromptParts, TextPart, ToolCall, ToolCallPart
from agent_runtime.store import MemorySessionStore
from agent_runtime.tools import ToolRegistry

PROMPT = SystemPromptParts(static="static rules")


class ScriptedResponses(ResponsesAdapter):
    """Responses adapter that replays canned responses and records requests."""

    def __init__(self, *responses):
        super().__init__("gpt-5.1", MagicMock())
        self.responses = list(responses)
        self.requests = []

    async def request(self, history, prompt, tools, reasoning_effort="high", is_stopping=None):
        self.requests.append(history)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


class ScriptedMessages(MessagesAdapter):
    """Messages adapter that replays canned responses."""

    def __init__(self, *responses):
        super().__init__("claude-sonnet-4.5", MagicMock())
        self.responses = list(responses)
        self.requests = []

    async def request(self, history, prompt, tools, reasoning_effort="high", is_stopping=None):
        self.requests.append(history)
        return self.responses.pop(0)


def text_response(text: str) -> AdapterResponse:
    return AdapterResponse(
        items=[{"type": "message", "role": "assistant", "content": [{"type": "output_text", "text": text}]}],
        parts=[TextPart(text)],
    )


def tool_response(*calls: tuple[str, str, str]) -> AdapterResponse:
    items = [
        {"type": "function_call", "call_id": call_id, "name": name, "arguments": args}
        for call_id, name, args in calls
    ]
    parts = [ToolCallPart(ToolCall(id=call_id, name=name, arguments=args)) for call_id, name, args in calls]
    return AdapterResponse(items=items, parts=parts)


def png_base64() -> str:
    buf = BytesIO()
    Image.new("RGB", (64, 64), (0, 120, 200)).save(buf, format="PNG")
    return base64.b64encode(buf.getvalue()).decode("ascii")


@pytest.fixture
def settings(tmp_path):
    return Settings(_env_file=None, tool_image_dir=tmp_path / "images")


def make_agent(store, tools, settings, adapter, events, confirm=None):
    async def emit(event):
        events.append(event)

    return AgentSession(
        store=store,
        tools=tools,
        emit=emit,
        request_confirmation=confirm,
        settings=settings,
        adapter_factory=lambda model, _settings: adapter,
        prompt_parts=PROMPT,
    )


def outputs_by_call(history):
    return {item["call_id"]: item["output"] for item in history if item.get("type") == "function_call_output"}


@pytest.mark.asyncio
async def test_simple_text_turn(settings):
    """Test one request with a plain answer."""
    store = MemorySessionStore()
    record = await store.create()
    adapter = ScriptedResponses(text_response("Hello there"))
    events = []
    agent = make_agent(store, ToolRegistry(), settings, adapter, events)

    await agent.run(RunRequest(session_id=record.id, items=[{"role": "user", "content": "hi"}], title="Greeting"))

    assert [e.text for e in events if isinstance(e, StreamChunk)] == ["Hello there"]
    assert isinstance(events[-1], StreamDone)
    assert any(isinstance(e, Monitor) and e.type == "context_metrics" for e in events)

    loaded = await store.get(record.id)
    assert loaded.title == "Greeting"
    assert loaded.history[0] == {"role": "user", "content": "hi"}
    assert loaded.history[1]["role"] == "assistant"


@pytest.mark.asyncio
async def test_tool_loop_runs_until_no_tool_calls(settings):
    """Test that tool results are appended and the loop continues."""
    store = MemorySessionStore()
    record = await store.create()
    read_file = AsyncMock(return_value="file contents")
    tools = ToolRegistry()
    tools.register_function("read_file", "Read a file", read_file)
    adapter = ScriptedResponses(
        tool_response(("c1", "read_file", '{"path": "a.txt"}')),
        text_response("The file says hi"),
    )
    events = []
    agent = make_agent(store, tools, settings, adapter, events)

    await agent.run(RunRequest(session_id=record.id, items=[{"role": "user", "content": "read a.txt"}]))

    read_file.assert_awaited_once()
    assert len(adapter.requests) == 2
    assert outputs_by_call(adapter.requests[1]) == {"c1": "file contents"}

    history = (await store.get(record.id)).history
    assert outputs_by_call(history) == {"c1": "file contents"}
    assert history[-1]["content"][0]["text"] == "The file says hi"


@pytest.mark.asyncio
async def test_missing_handler_returns_error_result(settings):
    """Test that an unknown tool gets an error result instead of failing the run."""
    store = MemorySessionStore()
    record = await store.create()
    adapter = ScriptedResponses(tool_response(("c1", "nonexistent", "{}")), text_response("ok"))
    events = []
    agent = make_agent(store, ToolRegistry(), settings, adapter, events)

    await agent.run(RunRequest(session_id=record.id, items=[{"role": "user", "content": "go"}]))

    history = (await store.get(record.id)).history
    assert outputs_by_call(history) == {"c1": "Error: No handler for nonexistent"}
    assert any(isinstance(e, ToolResultEvent) and e.id == "c1" for e in events)


@pytest.mark.asyncio
async def test_denied_confirmation_cancels_call(settings):
    """Test that a denied file write never runs."""
    store = MemorySessionStore()
    record = await store.create()
    create_file = AsyncMock()
    tools = ToolRegistry()
    tools.register_function("create_file", "Create a file", create_file)
    confirm = AsyncMock(return_value=False)
    adapter = ScriptedResponses(
        tool_response(("c1", "create_file", '{"filePath": "a.txt", "content": "x"}')),
        text_response("Understood"),
    )
    events = []
    agent = make_agent(store, tools, settings, adapter, events, confirm=confirm)

    await agent.run(RunRequest(session_id=record.id, items=[{"role": "user", "content": "write"}], working_dir="/w"))

    create_file.assert_not_awaited()
    request = confirm.await_args.args[0]
    assert request.name == "create_file"
    assert request.preview["path"] == "a.txt"
    assert request.working_dir == "/w"
    assert outputs_by_call((await store.get(record.id)).history) == {"c1": CANCELLED_BY_USER}


@pytest.mark.asyncio
async def test_auto_mode_skips_confirmation(settings):
    """Test that auto mode runs sensitive tools without asking."""
    store = MemorySessionStore()
    record = await store.create()
    create_file = AsyncMock(return_value="written")
    tools = ToolRegistry()
    tools.register_function("create_file", "Create a file", create_file)
    confirm = AsyncMock()
    adapter = ScriptedResponses(tool_response(("c1", "create_file", "{}")), text_response("done"))
    agent = make_agent(store, tools, settings, adapter, [], confirm=confirm)

    await agent.run(RunRequest(session_id=record.id, items=[{"role": "user", "content": "write"}], auto_mode=True))

    confirm.assert_not_awaited()
    create_file.assert_awaited_once()


@pytest.mark.asyncio
async def test_stop_gives_every_call_a_result(settings):
    """Test that calls after a stop get a stopped result and the loop ends."""
    store = MemorySessionStore()
    record = await store.create()
    tools = ToolRegistry()
    agent = None

    async def stopping_tool():
        agent.stop()
        return "partial"

    tools.register_function("read_file", "Read a file", stopping_tool)
    adapter = ScriptedResponses(
        tool_response(("c1", "read_file", "{}"), ("c2", "read_file", "{}")),
        text_response("never requested"),
    )
    agent = make_agent(store, tools, settings, adapter, [])

    await agent.run(RunRequest(session_id=record.id, items=[{"role": "user", "content": "go"}]))

    assert agent.is_stopped
    assert len(adapter.requests) == 1
    assert outputs_by_call((await store.get(record.id)).history) == {"c1": "partial", "c2": STOPPED_RESULT}


@pytest.mark.asyncio
async def test_screenshot_image_sent_once_and_never_stored(settings):
    """Test that an inline screenshot rides along with exactly one request."""
    store = MemorySessionStore()
    record = await store.create()
    tools = ToolRegistry()
    tools.register_function("screenshot_preview", "Screenshot", AsyncMock(return_value={"data": png_base64()}))
    tools.register_function("read_file", "Read a file", AsyncMock(return_value="text"))
    adapter = ScriptedResponses(
        tool_response(("c1", "screenshot_preview", "{}")),
        tool_response(("c2", "read_file", "{}")),
        text_response("Looks good"),
    )
    agent = make_agent(store, tools, settings, adapter, [])

    await agent.run(RunRequest(session_id=record.id, items=[{"role": "user", "content": "check the page"}]))

    def has_image(history):
        return any(
            isinstance(item.get("content"), list)
            and any(isinstance(p, dict) and p.get("type") == "input_image" for p in item["content"])
            for item in history
        )

    assert not has_image(adapter.requests[0])
    assert has_image(adapter.requests[1])
    assert not has_image(adapter.requests[2])
    assert not has_image((await store.get(record.id)).history)


@pytest.mark.asyncio
async def test_provider_mismatch_is_rejected(settings):
    """Test that a session with history cannot switch providers."""
    store = MemorySessionStore()
    record = await store.create(provider="openai")
    await store.append_history(record.id, [{"role": "user", "content": "earlier"}])
    factory = MagicMock()
    events = []

    async def emit(event):
        events.append(event)

    agent = AgentSession(store, ToolRegistry(), emit=emit, settings=settings, adapter_factory=factory, prompt_parts=PROMPT)
    await agent.run(RunRequest(session_id=record.id, items=[{"role": "user", "content": "hi"}], model="claude-sonnet-4.5"))

    factory.assert_not_called()
    errors = [e for e in events if isinstance(e, StreamError)]
    assert "does not match" in errors[0].message
    assert isinstance(events[-1], StreamDone)
    assert len((await store.get(record.id)).history) == 1


@pytest.mark.asyncio
async def test_empty_session_switches_provider(settings):
    """Test that an empty session adopts the selected model's provider."""
    store = MemorySessionStore()
    record = await store.create(provider="openai")
    adapter = ScriptedMessages(AdapterResponse(
        items=[{"role": "assistant", "content": [{"type": "text", "text": "Hi from Claude"}]}],
        parts=[TextPart("Hi from Claude")],
    ))
    agent = make_agent(store, ToolRegistry(), settings, adapter, [])

    await agent.run(RunRequest(session_id=record.id, items=[{"role": "user", "content": "hi"}], model="claude-sonnet-4.5"))

    loaded = await store.get(record.id)
    assert loaded.provider == "anthropic"
    assert loaded.history[-1]["content"][0]["text"] == "Hi from Claude"


@pytest.mark.asyncio
async def test_missing_session_reports_error(settings):
    """Test that running an unknown session emits an error and done."""
    events = []
    agent = make_agent(MemorySessionStore(), ToolRegistry(), settings, ScriptedResponses(), events)

    await agent.run(RunRequest(session_id="missing"))

    assert isinstance(events[0], StreamError)
    assert "missing" in events[0].message
    assert isinstance(events[-1], StreamDone)


@pytest.mark.asyncio
async def test_adapter_failure_is_reported_and_raised(settings):
    """Test that a provider failure ends the run with error then done."""
    store = MemorySessionStore()
    record = await store.create()
    adapter = ScriptedResponses(RuntimeError("provider exploded"))
    events = []
    agent = make_agent(store, ToolRegistry(), settings, adapter, events)

    with pytest.raises(RuntimeError):
        await agent.run(RunRequest(session_id=record.id, items=[{"role": "user", "content": "hi"}]))

    assert isinstance(events[-2], StreamError)
    assert events[-2].message == "provider exploded"
    assert isinstance(events[-1], StreamDone)
    assert (await store.get(record.id)).history == [{"role": "user", "content": "hi"}]


@pytest.mark.asyncio
async def test_compaction_runs_before_the_loop(settings):
    """Test that an oversized history is compacted before the first request."""
    store = MemorySessionStore()
    record = await store.create()
    history = []
    for i in range(30):
        history.append({"role": "user", "content": f"request {i} " + "x" * 30_000})
        history.append({"type": "message", "role": "assistant", "content": [{"type": "output_text", "text": "ok"}]})
    await store.set_history(record.id, history)

    adapter = ScriptedResponses(text_response("continuing"))
    adapter.complete = AsyncMock(return_value="Summary of earlier work")
    events = []
    agent = make_agent(store, ToolRegistry(), settings, adapter, events)

    await agent.run(RunRequest(session_id=record.id, items=[{"role": "user", "content": "next"}]))

    assert any(isinstance(e, Monitor) and e.type == "compaction" for e in events)
    sent = adapter.requests[0]
    assert len(sent) < len(history)
    assert "Summary of earlier work" in sent[0]["content"]


def claude_tool_response(call_id: str, name: str) -> AdapterResponse:
    return AdapterResponse(
        items=[{"role": "assistant", "content": [{"type": "tool_use", "id": call_id, "name": name, "input": {}}]}],
        parts=[ToolCallPart(ToolCall(id=call_id, name=name, arguments="{}"))],
    )


def claude_text_response(text: str) -> AdapterResponse:
    return AdapterResponse(
        items=[{"role": "assistant", "content": [{"type": "text", "text": text}]}],
        parts=[TextPart(text)],
    )


def has_image_block(value) -> bool:
    if isinstance(value, dict):
        return value.get("type") == "image" or any(has_image_block(v) for v in value.values())
    if isinstance(value, list):
        return any(has_image_block(v) for v in value)
    return False


@pytest.mark.asyncio
async def test_claude_screenshot_image_sent_once_and_never_stored(settings):
    """Test that a screenshot rides inside the tool_result of exactly one Messages request."""
    store = MemorySessionStore()
    record = await store.create(provider="anthropic")
    tools = ToolRegistry()
    tools.register_function("screenshot_preview", "Screenshot", AsyncMock(return_value={"data": png_base64()}))
    tools.register_function("read_file", "Read a file", AsyncMock(return_value="text"))
    adapter = ScriptedMessages(
        claude_tool_response("t1", "screenshot_preview"),
        claude_tool_response("t2", "read_file"),
        claude_text_response("Looks good"),
    )
    agent = make_agent(store, tools, settings, adapter, [])

    await agent.run(RunRequest(
        session_id=record.id,
        items=[{"role": "user", "content": "check the page"}],
        model="claude-sonnet-4.5",
    ))

    assert not has_image_block(adapter.requests[0])
    assert has_image_block(adapter.requests[1])
    result_block = adapter.requests[1][-1]["content"][0]
    assert result_block["type"] == "tool_result"
    assert result_block["content"][1]["type"] == "image"
    assert not has_image_block(adapter.requests[2])

    stored = (await store.get(record.id)).history
    assert not has_image_block(stored)
    stored_result = stored[2]["content"][0]
    assert stored_result["tool_use_id"] == "t1"
    assert isinstance(stored_result["content"], str)


@pytest.mark.asyncio
async def test_single_use_image_does_not_start_a_turn(settings):
    """Test that compaction sees the screenshot item as part of the current turn."""
    settings.compaction_check_interval = 1
    store = MemorySessionStore()
    record = await store.create()
    tools = ToolRegistry()
    tools.register_function("screenshot_preview", "Screenshot", AsyncMock(return_value={"data": png_base64()}))
    adapter = ScriptedResponses(
        tool_response(("c1", "screenshot_preview", "{}")),
        text_response("Looks good"),
    )
    seen = []

    async def fake_compact(history, config, summarizer, provider="openai", is_user_message=None):
        has_image = any(
            isinstance(item.get("content"), list)
            and any(isinstance(p, dict) and p.get("type") == "input_image" for p in item["content"])
            for item in history
        )
        seen.append((has_image, len(segment_into_turns(history, is_user_message))))
        return CompactionResult(compacted=False, history=history)

    with patch("agent_runtime.agent.core.needs_compaction", return_value=True), \
            patch("agent_runtime.agent.core.compact", new=fake_compact):
        agent = make_agent(store, tools, settings, adapter, [])
        await agent.run(RunRequest(session_id=record.id, items=[{"role": "user", "content": "check the page"}]))

    assert (True, 1) in seen
    assert all(turns == 1 for _, turns in seen)


@pytest.mark.asyncio
async def test_compaction_is_rechecked_every_five_iterations(settings):
    """Test that the loop checks compaction again after every fifth tool iteration."""
    store = MemorySessionStore()
    record = await store.create()
    tools = ToolRegistry()
    tools.register_function("read_file", "Read a file", AsyncMock(return_value="text"))
    adapter = ScriptedResponses(
        *[tool_response((f"c{i}", "read_file", "{}")) for i in range(6)],
        text_response("done"),
    )
    compactions = []

    async def fake_compact(history, config, summarizer, provider="openai", is_user_message=None):
        compactions.append(len(history))
        return CompactionResult(compacted=False, history=history)

    events = []
    with patch("agent_runtime.agent.core.needs_compaction", return_value=True), \
            patch("agent_runtime.agent.core.compact", new=fake_compact):
        agent = make_agent(store, tools, settings, adapter, events)
        await agent.run(RunRequest(session_id=record.id, items=[{"role": "user", "content": "read"}]))

    assert len(adapter.requests) == 7
    assert len(compactions) == 2
    loop_checks = [
        e.data["iteration"] for e in events
        if isinstance(e, Monitor) and e.type == "context_metrics" and e.data["phase"] == "loop"
    ]
    assert loop_checks == [5]


class FlakyFinalWriteStore(MemorySessionStore):
    """Fails the first ``failures`` final (timestamp-updating) history writes."""

    def __init__(self, failures: int):
        super().__init__()
        self.failures = failures
        self.final_writes = 0

    async def set_history(self, session_id, history, update_timestamp=True):
        if update_timestamp:
            self.final_writes += 1
            if self.final_writes <= self.failures:
                raise OSError("database is locked")
        await super().set_history(session_id, history, update_timestamp)


@pytest.mark.asyncio
async def test_final_write_is_retried_once(settings):
    """Test that a failed final write is attempted a second time."""
    store = FlakyFinalWriteStore(failures=1)
    record = await store.create()
    before = (await store.get(record.id)).updated_at
    events = []
    agent = make_agent(store, ToolRegistry(), settings, ScriptedResponses(text_response("Hi")), events)

    await agent.run(RunRequest(session_id=record.id, items=[{"role": "user", "content": "hi"}]))

    assert store.final_writes == 2
    loaded = await store.get(record.id)
    assert loaded.history[-1]["role"] == "assistant"
    assert loaded.updated_at >= before
    assert isinstance(events[-1], StreamDone)
    assert not any(isinstance(e, StreamError) for e in events)


@pytest.mark.asyncio
async def test_final_write_gives_up_after_two_attempts(settings):
    """Test that a run still finishes when both final write attempts fail."""
    store = FlakyFinalWriteStore(failures=2)
    record = await store.create()
    events = []
    agent = make_agent(store, ToolRegistry(), settings, ScriptedResponses(text_response("Hi")), events)

    await agent.run(RunRequest(session_id=record.id, items=[{"role": "user", "content": "hi"}]))

    assert store.final_writes == 2
    assert isinstance(events[-1], StreamDone)
