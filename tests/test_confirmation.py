"""
Tests for the confirmation handshake.
"""

import asyncio

import pytest

from agent_runtime.tools.confirmation import (
    ConfirmationBroker,
    ConfirmationRequest,
    build_preview,
    needs_confirmation,
)


def test_needs_confirmation():
    """Test which tools must be approved."""
    assert needs_confirmation("create_file", auto_mode=False)
    assert needs_confirmation("create_diff", auto_mode=False)
    assert needs_confirmation("terminal_input", auto_mode=False)
    assert not needs_confirmation("read_file", auto_mode=False)


def test_auto_mode_skips_confirmation():
    """Test that auto mode approves everything."""
    assert not needs_confirmation("create_file", auto_mode=True)
    assert not needs_confirmation("terminal_input", auto_mode=True)


def test_build_preview_shapes():
    """Test previews for each sensitive tool."""
    file_preview = build_preview("create_file", {"filePath": "a.py", "content": "x" * 5000})
    assert file_preview["type"] == "file"
    assert file_preview["path"] == "a.py"
    assert len(file_preview["content"]) < 5000

    diff_preview = build_preview("create_diff", {"filePath": "b.py", "oldText": "a", "newText": "b"})
    assert diff_preview == {"type": "diff", "path": "b.py", "oldText": "a", "newText": "b"}

    terminal_preview = build_preview("terminal_input", {"text": "ls"})
    assert terminal_preview["terminal_id"] == "default"
    assert terminal_preview["newline"] is False

    assert build_preview("read_file", {}) is None


@pytest.mark.asyncio
async def test_broker_resolves_once():
    """Test that a confirmation resolves exactly once."""
    broker = ConfirmationBroker()
    pending = broker.create(ConfirmationRequest(call_id="c1", name="create_file", arguments="{}"))

    assert pending.id.startswith("confirm-")
    assert broker.list_pending() == [pending]

    assert broker.resolve(pending.id, True)
    assert not broker.resolve(pending.id, False)
    assert await pending.future is True
    assert len(broker) == 0


@pytest.mark.asyncio
async def test_broker_ignores_unknown_ids():
    """Test that unknown confirmation ids are ignored."""
    broker = ConfirmationBroker()
    assert not broker.resolve("confirm-unknown", True)


@pytest.mark.asyncio
async def test_broker_deny_all():
    """Test that stopping denies every pending confirmation."""
    broker = ConfirmationBroker()
    first = broker.create(ConfirmationRequest(call_id="c1", name="create_file", arguments="{}"))
    second = broker.create(ConfirmationRequest(call_id="c2", name="create_diff", arguments="{}"))

    denied = broker.deny_all()

    assert denied == [first.id, second.id]
    results = await asyncio.gather(first.future, second.future)
    assert results == [False, False]
    assert broker.list_pending() == []
