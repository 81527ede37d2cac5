"""
Per-session mutual exclusion for reconciliation.

Two terminal-chunk deliveries for the same session (client retry,
network duplicate) must not merge concurrently: both would pass the
"sentinel exists?" check and publish twice. Holding a per-session lock
across the whole reconcile makes that check race-free.

Locks are asyncio locks, so they serialize work within one event loop.
A multi-process deployment has to route a session's terminal chunk to a
single worker for the guarantee to hold.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

logger = logging.getLogger(__name__)


class SessionLockRegistry:
    """
    Hands out one asyncio.Lock per session id.

    Entries are reference counted and dropped once nobody holds or waits
    on them, so the registry doesn't grow with every session ever seen.
    """

    def __init__(self) -> None:
        self._locks: dict[int, asyncio.Lock] = {}
        self._refcounts: dict[int, int] = {}

    @asynccontextmanager
    async def hold(self, session_id: int) -> AsyncIterator[None]:
        """Acquire the session's lock for the duration of the block."""
        lock = self._locks.setdefault(session_id, asyncio.Lock())
        self._refcounts[session_id] = self._refcounts.get(session_id, 0) + 1

        if lock.locked():
            logger.info(
                "Waiting for in-flight reconciliation",
                extra={"session_id": session_id}
            )

        try:
            async with lock:
                yield
        finally:
            self._refcounts[session_id] -= 1
            if self._refcounts[session_id] == 0:
                del self._refcounts[session_id]
                del self._locks[session_id]

    def is_held(self, session_id: int) -> bool:
        lock = self._locks.get(session_id)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)
