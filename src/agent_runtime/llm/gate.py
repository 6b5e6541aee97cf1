"""
Process-wide concurrency gate for model requests.

Every network call of an adapter (create, retrieve, complete) goes through
the gate, inside the retry loop, so backoff sleeps never hold a slot.
"""

import asyncio
from typing import Awaitable, Callable, TypeVar

import structlog

logger = structlog.get_logger()

T = TypeVar("T")


class RequestGate:
    """Counting gate in front of model requests. A limit of 0 means unlimited."""

    def __init__(self, limit: int = 0):
        self.limit = max(0, limit)
        self.active = 0
        self.waiting = 0
        self._semaphore: asyncio.Semaphore | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

    @property
    def unlimited(self) -> bool:
        return self.limit == 0

    def _get_semaphore(self) -> asyncio.Semaphore:
        # A semaphore belongs to one event loop
        loop = asyncio.get_running_loop()
        if self._semaphore is None or self._loop is not loop:
            self._semaphore = asyncio.Semaphore(self.limit)
            self._loop = loop
        return self._semaphore

    async def run(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Await ``fn()`` once a slot is free."""
        if self.unlimited:
            return await fn()

        semaphore = self._get_semaphore()
        if semaphore.locked():
            logger.debug("Waiting for a model request slot", limit=self.limit, active=self.active)

        self.waiting += 1
        try:
            await semaphore.acquire()
        finally:
            self.waiting -= 1

        self.active += 1
        try:
            return await fn()
        finally:
            self.active -= 1
            semaphore.release()


_gate: RequestGate | None = None


def get_request_gate(limit: int) -> RequestGate:
    """Get the process-wide gate, replacing it if the configured limit changed."""
    global _gate
    limit = max(0, limit)
    if _gate is None or _gate.limit != limit:
        if _gate is not None:
            logger.info("Request concurrency limit changed", old=_gate.limit, new=limit)
        _gate = RequestGate(limit)
    return _gate
