"""
Keyed Locks
===========

Process-wide registry of per-key ``asyncio.Lock`` objects.

Ticket operations hold the lock for their ticket id for the whole
read-modify-write. Entries are reference counted and dropped when no task
holds or waits on them, so the registry does not grow with ticket volume.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict


class KeyedLockRegistry:
    """Explicitly started/closed registry injected into services."""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = {}
        self._closed = False

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        """Serialize all work on ``key``."""
        if self._closed:
            raise RuntimeError("Lock registry is closed")

        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._waiters[key] = self._waiters.get(key, 0) + 1

        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                del self._locks[key]

    def is_held(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)

    def close(self) -> None:
        """Refuse new holders; called on service shutdown."""
        self._closed = True
