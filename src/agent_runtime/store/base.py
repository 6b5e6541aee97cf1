"""
Session persistence interface.

Sessions are keyed by (workspace, session id); the workspace key is a short
hash of the project directory, so two checkouts never share conversations.
"""

import copy
import hashlib
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Literal

from ..sanitize import PERSIST_TEXT_MAX_CHARS, scrub_history

DEFAULT_TITLE = "New Chat"
DEFAULT_PROVIDER = "openai"

RunStatus = Literal["idle", "running", "completed", "error"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def workspace_key(working_dir: str | Path) -> str:
    """Short SHA-256 of the resolved working directory."""
    resolved = str(Path(working_dir).expanduser().resolve())
    return hashlib.sha256(resolved.encode("utf-8")).hexdigest()[:16]


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str) and value:
        return datetime.fromisoformat(value)
    return None


@dataclass
class RuntimeRecord:
    """Last known run status of a session."""

    status: RunStatus = "idle"
    started_at: datetime | None = None
    completed_at: datetime | None = None
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "updated_at": _iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "RuntimeRecord | None":
        if not data:
            return None
        return cls(
            status=data.get("status") or "idle",
            started_at=_parse(data.get("started_at")),
            completed_at=_parse(data.get("completed_at")),
            updated_at=_parse(data.get("updated_at")) or utcnow(),
        )


@dataclass
class SessionRecord:
    """A stored conversation."""

    id: str
    title: str = DEFAULT_TITLE
    provider: str = DEFAULT_PROVIDER
    history: list[dict[str, Any]] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    runtime: RuntimeRecord | None = None

    def copy(self) -> "SessionRecord":
        return copy.deepcopy(self)


class SessionStore(ABC):
    """Read/write contract the agent runtime needs from persistence."""

    def __init__(self, working_dir: str | Path = ".", persist_image_max_chars: int = 20_000):
        self.working_dir = str(working_dir)
        self.workspace = workspace_key(working_dir)
        self.persist_image_max_chars = persist_image_max_chars

    def sanitize(self, history: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Drop large inline images and clamp oversized text before writing."""
        return copy.deepcopy(scrub_history(history, self.persist_image_max_chars, PERSIST_TEXT_MAX_CHARS))

    @abstractmethod
    async def get(self, session_id: str) -> SessionRecord | None:
        """Get a session, or None if it does not exist."""
        pass

    @abstractmethod
    async def create(
        self,
        title: str | None = None,
        provider: str = DEFAULT_PROVIDER,
        session_id: str | None = None,
    ) -> SessionRecord:
        """Create an empty session."""
        pass

    @abstractmethod
    async def rename(self, session_id: str, title: str) -> None:
        pass

    @abstractmethod
    async def set_provider(self, session_id: str, provider: str) -> None:
        pass

    @abstractmethod
    async def set_history(
        self,
        session_id: str,
        history: list[dict[str, Any]],
        update_timestamp: bool = True,
    ) -> None:
        """Replace the stored history."""
        pass

    @abstractmethod
    async def append_history(self, session_id: str, items: list[dict[str, Any]]) -> None:
        pass

    @abstractmethod
    async def touch(self, session_id: str) -> None:
        """Refresh the updated timestamp only."""
        pass

    @abstractmethod
    async def update_runtime(self, session_id: str, runtime: RuntimeRecord) -> None:
        pass

    @abstractmethod
    async def list(self) -> list[SessionRecord]:
        """List sessions of this workspace, most recently updated first."""
        pass
