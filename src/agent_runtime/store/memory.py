"""
In-process session store.
"""

from typing import Any
from uuid import uuid4

from ..errors import SessionNotFoundError
from .base import DEFAULT_PROVIDER, DEFAULT_TITLE, RuntimeRecord, SessionRecord, SessionStore, utcnow


class MemorySessionStore(SessionStore):
    """Keeps sessions in a dict. Records are copied in and out, like a real store."""

    def __init__(self, working_dir: str = ".", persist_image_max_chars: int = 20_000):
        super().__init__(working_dir, persist_image_max_chars)
        self._sessions: dict[tuple[str, str], SessionRecord] = {}

    def _require(self, session_id: str) -> SessionRecord:
        record = self._sessions.get((self.workspace, session_id))
        if record is None:
            raise SessionNotFoundError(session_id)
        return record

    async def get(self, session_id: str) -> SessionRecord | None:
        record = self._sessions.get((self.workspace, session_id))
        return record.copy() if record else None

    async def create(
        self,
        title: str | None = None,
        provider: str = DEFAULT_PROVIDER,
        session_id: str | None = None,
    ) -> SessionRecord:
        record = SessionRecord(
            id=session_id or str(uuid4()),
            title=title or DEFAULT_TITLE,
            provider=provider,
        )
        self._sessions[(self.workspace, record.id)] = record
        return record.copy()

    async def rename(self, session_id: str, title: str) -> None:
        record = self._require(session_id)
        record.title = title
        record.updated_at = utcnow()

    async def set_provider(self, session_id: str, provider: str) -> None:
        self._require(session_id).provider = provider

    async def set_history(
        self,
        session_id: str,
        history: list[dict[str, Any]],
        update_timestamp: bool = True,
    ) -> None:
        record = self._require(session_id)
        record.history = self.sanitize(history)
        if update_timestamp:
            record.updated_at = utcnow()

    async def append_history(self, session_id: str, items: list[dict[str, Any]]) -> None:
        record = self._require(session_id)
        record.history.extend(self.sanitize(items))
        record.updated_at = utcnow()

    async def touch(self, session_id: str) -> None:
        self._require(session_id).updated_at = utcnow()

    async def update_runtime(self, session_id: str, runtime: RuntimeRecord) -> None:
        self._require(session_id).runtime = RuntimeRecord(**vars(runtime))

    async def list(self) -> list[SessionRecord]:
        records = [r.copy() for (ws, _), r in self._sessions.items() if ws == self.workspace]
        return sorted(records, key=lambda r: r.updated_at, reverse=True)
