"""
SQL session store (SQLAlchemy async, aiosqlite by default).
"""

from datetime import timezone
from typing import Any
from uuid import uuid4

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..errors import SessionNotFoundError
from ..models import StoredSession, init_database
from .base import DEFAULT_PROVIDER, DEFAULT_TITLE, RuntimeRecord, SessionRecord, SessionStore, utcnow

logger = structlog.get_logger()


def _aware(value):
    # SQLite hands back naive datetimes
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_record(row: StoredSession) -> SessionRecord:
    return SessionRecord(
        id=row.id,
        title=row.title,
        provider=row.provider,
        history=list(row.history or []),
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
        runtime=RuntimeRecord.from_dict(row.runtime),
    )


class SqlSessionStore(SessionStore):
    """Stores sessions in one table keyed by (workspace, id)."""

    def __init__(
        self,
        session_maker: async_sessionmaker,
        working_dir: str = ".",
        persist_image_max_chars: int = 20_000,
    ):
        super().__init__(working_dir, persist_image_max_chars)
        self.session_maker = session_maker

    @classmethod
    async def open(
        cls,
        database_url: str,
        working_dir: str = ".",
        persist_image_max_chars: int = 20_000,
    ) -> "SqlSessionStore":
        """Create tables if needed and return a store bound to ``working_dir``."""
        session_maker = await init_database(database_url)
        logger.info("Session database ready", database_url=database_url)
        return cls(session_maker, working_dir, persist_image_max_chars)

    async def _require(self, db: AsyncSession, session_id: str) -> StoredSession:
        row = await db.get(StoredSession, (self.workspace, session_id))
        if row is None:
            raise SessionNotFoundError(session_id)
        return row

    async def get(self, session_id: str) -> SessionRecord | None:
        async with self.session_maker() as db:
            row = await db.get(StoredSession, (self.workspace, session_id))
            return _to_record(row) if row else None

    async def create(
        self,
        title: str | None = None,
        provider: str = DEFAULT_PROVIDER,
        session_id: str | None = None,
    ) -> SessionRecord:
        now = utcnow()
        row = StoredSession(
            workspace=self.workspace,
            id=session_id or str(uuid4()),
            title=title or DEFAULT_TITLE,
            provider=provider,
            history=[],
            runtime=None,
            created_at=now,
            updated_at=now,
        )
        async with self.session_maker() as db:
            db.add(row)
            await db.commit()
        logger.info("Created new session", session_id=row.id, workspace=self.workspace)
        return _to_record(row)

    async def rename(self, session_id: str, title: str) -> None:
        async with self.session_maker() as db:
            row = await self._require(db, session_id)
            row.title = title
            row.updated_at = utcnow()
            await db.commit()

    async def set_provider(self, session_id: str, provider: str) -> None:
        async with self.session_maker() as db:
            row = await self._require(db, session_id)
            row.provider = provider
            await db.commit()

    async def set_history(
        self,
        session_id: str,
        history: list[dict[str, Any]],
        update_timestamp: bool = True,
    ) -> None:
        async with self.session_maker() as db:
            row = await self._require(db, session_id)
            row.history = self.sanitize(history)
            if update_timestamp:
                row.updated_at = utcnow()
            await db.commit()

    async def append_history(self, session_id: str, items: list[dict[str, Any]]) -> None:
        async with self.session_maker() as db:
            row = await self._require(db, session_id)
            # Reassign so the JSON column is flagged dirty
            row.history = list(row.history or []) + self.sanitize(items)
            row.updated_at = utcnow()
            await db.commit()

    async def touch(self, session_id: str) -> None:
        async with self.session_maker() as db:
            row = await self._require(db, session_id)
            row.updated_at = utcnow()
            await db.commit()

    async def update_runtime(self, session_id: str, runtime: RuntimeRecord) -> None:
        async with self.session_maker() as db:
            row = await self._require(db, session_id)
            row.runtime = runtime.to_dict()
            await db.commit()

    async def list(self) -> list[SessionRecord]:
        async with self.session_maker() as db:
            result = await db.execute(
                select(StoredSession)
                .where(StoredSession.workspace == self.workspace)
                .order_by(StoredSession.updated_at.desc())
            )
            return [_to_record(row) for row in result.scalars().all()]
