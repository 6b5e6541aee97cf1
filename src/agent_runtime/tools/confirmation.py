"""
Confirmation handshake for sensitive tool calls.

File writes, diffs and terminal input must be approved by a human before
they run, unless the session is in auto mode. A pending confirmation has no
timeout: it resolves exactly once, either from a human response or from the
run being stopped (which denies it).
"""

import asyncio
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import structlog

from .images import clamp_string

logger = structlog.get_logger()

CONFIRMATION_TOOLS = frozenset({"create_file", "create_diff", "terminal_input"})


def needs_confirmation(tool_name: str, auto_mode: bool) -> bool:
    """Check if a tool call must be approved by the user."""
    if auto_mode:
        return False
    return tool_name in CONFIRMATION_TOOLS


def build_preview(tool_name: str, args: dict[str, Any]) -> dict[str, Any] | None:
    """Build a compact preview of what a sensitive call will do."""
    if tool_name == "create_file":
        return {
            "type": "file",
            "path": args.get("filePath") or "",
            "content": clamp_string(str(args.get("content") or ""), 1200),
            "encoding": args.get("encoding"),
        }

    if tool_name == "create_diff":
        return {
            "type": "diff",
            "path": args.get("filePath") or "",
            "oldText": clamp_string(str(args.get("oldText") or ""), 800),
            "newText": clamp_string(str(args.get("newText") or ""), 800),
        }

    if tool_name == "terminal_input":
        return {
            "type": "terminal_input",
            "text": clamp_string(str(args.get("text") or ""), 300),
            "newline": bool(args.get("newline")),
            "terminal_id": args.get("terminal_id") or "default",
        }

    return None


def new_confirmation_id() -> str:
    return f"confirm-{int(time.time() * 1000):x}-{secrets.token_hex(3)}"


@dataclass
class ConfirmationRequest:
    """What the agent asks a human to approve."""

    call_id: str
    name: str
    arguments: str
    preview: dict[str, Any] | None = None
    working_dir: str | None = None
    auto_mode: bool = False
    id: str | None = None


@dataclass
class PendingConfirmation:
    """A confirmation waiting for a human decision."""

    id: str
    request: ConfirmationRequest
    future: asyncio.Future
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_pending(self) -> bool:
        return not self.future.done()


class ConfirmationBroker:
    """Holds pending confirmations for one conversation."""

    def __init__(self):
        self._pending: dict[str, PendingConfirmation] = {}

    def create(self, request: ConfirmationRequest) -> PendingConfirmation:
        """Register a pending confirmation. Allocates an id when none is given."""
        confirmation_id = request.id or new_confirmation_id()
        request.id = confirmation_id

        loop = asyncio.get_running_loop()
        pending = PendingConfirmation(
            id=confirmation_id,
            request=request,
            future=loop.create_future(),
        )
        self._pending[confirmation_id] = pending

        logger.info(
            "Confirmation requested",
            confirmation_id=confirmation_id,
            tool=request.name,
            call_id=request.call_id,
        )
        return pending

    def resolve(self, confirmation_id: str, allow: bool) -> bool:
        """Resolve a pending confirmation. Returns False if it was unknown or already resolved."""
        pending = self._pending.pop(confirmation_id, None)
        if pending is None or not pending.is_pending:
            return False

        pending.future.set_result(bool(allow))
        logger.info(
            "Confirmation resolved",
            confirmation_id=confirmation_id,
            tool=pending.request.name,
            allow=bool(allow),
        )
        return True

    def deny_all(self) -> list[str]:
        """Deny every pending confirmation. Returns the ids that were denied."""
        denied = []
        for confirmation_id in list(self._pending):
            if self.resolve(confirmation_id, False):
                denied.append(confirmation_id)
        return denied

    def get(self, confirmation_id: str) -> PendingConfirmation | None:
        return self._pending.get(confirmation_id)

    def list_pending(self) -> list[PendingConfirmation]:
        """List all pending confirmations in creation order."""
        return [p for p in self._pending.values() if p.is_pending]

    def __len__(self) -> int:
        return len(self._pending)
