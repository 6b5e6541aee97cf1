"""
Cooperative cancellation for tool execution.
"""

import asyncio
from typing import Callable

import structlog

from ..errors import ToolCancelledError

logger = structlog.get_logger()


class CancelToken:
    """Cancellation token handed to a running tool handler.

    Handlers poll ``is_cancelled``, call ``raise_if_cancelled()`` at safe
    points, or await ``wait()`` alongside their own work.

    Example:
        token = CancelToken()

        async def handler(path: str, cancel_token: CancelToken):
            for chunk in read_chunks(path):
                cancel_token.raise_if_cancelled()
                ...

        token.cancel()  # from the session's stop()
    """

    def __init__(self):
        self._cancelled = False
        self._event: asyncio.Event | None = None
        self._callbacks: list[Callable[[], None]] = []

    def cancel(self) -> None:
        """Request cancellation. Idempotent; callbacks run once."""
        if self._cancelled:
            return
        self._cancelled = True

        if self._event is not None:
            self._event.set()

        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                logger.warning("Cancel callback failed", error=str(e))

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    def on_cancel(self, callback: Callable[[], None]) -> None:
        """Register a callback; runs immediately if already cancelled."""
        if self._cancelled:
            callback()
            return
        self._callbacks.append(callback)

    async def wait(self) -> None:
        """Block until cancel() is called."""
        if self._cancelled:
            return
        if self._event is None:
            self._event = asyncio.Event()
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise ToolCancelledError()
