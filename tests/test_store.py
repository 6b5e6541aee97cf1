"""
Tests for session stores.
"""

import pytest
import pytest_asyncio

from agent_runtime.errors import SessionNotFoundError
from agent_runtime.sanitize import IMAGE_PLACEHOLDER
from agent_runtime.store import MemorySessionStore, RuntimeRecord, SqlSessionStore, workspace_key
from agent_runtime.store.base import DEFAULT_TITLE, utcnow

BIG_IMAGE = "data:image/png;base64," + "A" * 50_000


@pytest_asyncio.fixture(params=["memory", "sql"])
async def store(request, tmp_path):
    if request.param == "memory":
        return MemorySessionStore(working_dir="/work/project", persist_image_max_chars=1_000)
    return await SqlSessionStore.open(
        f"sqlite+aiosqlite:///{tmp_path / 'sessions.db'}",
        working_dir="/work/project",
        persist_image_max_chars=1_000,
    )


def test_workspace_key_is_stable():
    """Test that workspace keys are short and deterministic."""
    assert workspace_key("/a") == workspace_key("/a")
    assert workspace_key("/a") != workspace_key("/b")
    assert len(workspace_key("/a")) == 16


def test_runtime_record_round_trip():
    """Test runtime record serialization."""
    record = RuntimeRecord(status="running", started_at=utcnow())
    restored = RuntimeRecord.from_dict(record.to_dict())

    assert restored.status == "running"
    assert restored.started_at == record.started_at
    assert RuntimeRecord.from_dict(None) is None


@pytest.mark.asyncio
async def test_create_and_get(store):
    """Test creating a session with defaults."""
    record = await store.create()
    loaded = await store.get(record.id)

    assert loaded.id == record.id
    assert loaded.title == DEFAULT_TITLE
    assert loaded.provider == "openai"
    assert loaded.history == []
    assert await store.get("missing") is None


@pytest.mark.asyncio
async def test_history_append_and_set(store):
    """Test appending and replacing history."""
    record = await store.create(title="Work", provider="anthropic")

    await store.append_history(record.id, [{"role": "user", "content": "one"}])
    await store.append_history(record.id, [{"role": "assistant", "content": "two"}])
    assert [i["content"] for i in (await store.get(record.id)).history] == ["one", "two"]

    await store.set_history(record.id, [{"role": "user", "content": "only"}])
    assert (await store.get(record.id)).history == [{"role": "user", "content": "only"}]


@pytest.mark.asyncio
async def test_large_images_are_scrubbed(store):
    """Test that inline images over the limit never reach the store."""
    record = await store.create()
    item = {
        "role": "user",
        "content": [
            {"type": "input_text", "text": "look"},
            {"type": "input_image", "image_url": BIG_IMAGE, "filename": "shot.png"},
        ],
    }

    await store.set_history(record.id, [item])

    stored = (await store.get(record.id)).history[0]["content"]
    assert stored[1]["type"] == "input_text"
    assert stored[1]["text"].startswith(IMAGE_PLACEHOLDER)
    assert "shot.png" in stored[1]["text"]
    assert item["content"][1]["image_url"] == BIG_IMAGE


@pytest.mark.asyncio
async def test_set_history_without_timestamp(store):
    """Test that checkpoint writes leave updated_at alone."""
    record = await store.create()
    before = (await store.get(record.id)).updated_at

    await store.set_history(record.id, [{"role": "user", "content": "x"}], update_timestamp=False)
    assert (await store.get(record.id)).updated_at == before

    await store.touch(record.id)
    assert (await store.get(record.id)).updated_at >= before


@pytest.mark.asyncio
async def test_rename_provider_and_runtime(store):
    """Test metadata updates."""
    record = await store.create()

    await store.rename(record.id, "Renamed")
    await store.set_provider(record.id, "anthropic")
    await store.update_runtime(record.id, RuntimeRecord(status="completed", started_at=utcnow(), completed_at=utcnow()))

    loaded = await store.get(record.id)
    assert loaded.title == "Renamed"
    assert loaded.provider == "anthropic"
    assert loaded.runtime.status == "completed"
    assert loaded.runtime.completed_at is not None


@pytest.mark.asyncio
async def test_missing_session_raises(store):
    """Test that writes to an unknown session fail."""
    with pytest.raises(SessionNotFoundError):
        await store.append_history("missing", [])
    with pytest.raises(SessionNotFoundError):
        await store.rename("missing", "x")


@pytest.mark.asyncio
async def test_list_sorted_by_update(store):
    """Test that list returns the most recently updated first."""
    first = await store.create(title="first")
    second = await store.create(title="second")
    await store.touch(first.id)

    titles = [r.title for r in await store.list()]
    assert titles == ["first", "second"]


@pytest.mark.asyncio
async def test_sql_sessions_are_scoped_by_workspace(tmp_path):
    """Test that two workspaces sharing a database do not see each other."""
    url = f"sqlite+aiosqlite:///{tmp_path / 'shared.db'}"
    store_a = await SqlSessionStore.open(url, working_dir="/a")
    store_b = await SqlSessionStore.open(url, working_dir="/b")

    record = await store_a.create(session_id="same-id")
    await store_b.create(session_id="same-id", title="other")

    assert (await store_a.get("same-id")).title == DEFAULT_TITLE
    assert (await store_b.get("same-id")).title == "other"
    assert [r.id for r in await store_a.list()] == [record.id]
