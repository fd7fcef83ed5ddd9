"""In-process keyed locks for planning and progress writes."""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Dict, Hashable

from .errors import ConcurrencyConflict


logger = logging.getLogger(__name__)


class KeyedLocks:
    """
    One asyncio.Lock per key while anyone holds or waits for it.

    Entries are dropped when the last holder or waiter leaves, so the table
    only holds keys that are in use.
    """

    def __init__(self, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        self._locks: Dict[Hashable, asyncio.Lock] = {}
        self._users: Dict[Hashable, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    def locked(self, key: Hashable) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, key: Hashable, timeout: float = None):
        """Acquire the key's lock or raise ConcurrencyConflict after the timeout."""
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] = self._users.get(key, 0) + 1
        wait = self.timeout_seconds if timeout is None else timeout
        try:
            try:
                await asyncio.wait_for(lock.acquire(), timeout=wait)
            except asyncio.TimeoutError:
                logger.warning(f"Lock wait timed out for {key}")
                raise ConcurrencyConflict(f"Another operation holds {key}; retry later")
            try:
                yield
            finally:
                lock.release()
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]
