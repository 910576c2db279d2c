# backend/msa_inventory/utils/locks.py
import asyncio
from contextlib import asynccontextmanager
from typing import Dict

from msa_inventory.core.exceptions import ConcurrencyConflict


class KeyedLock:
    """
    One asyncio.Lock per key, created on demand and dropped when idle.

    Used to make the read-check-write sequence on a single item linearizable
    while operations on different items run in parallel.
    """

    def __init__(self, timeout: float = 30.0):
        self.timeout = timeout
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            try:
                await asyncio.wait_for(lock.acquire(), timeout=self.timeout)
            except asyncio.TimeoutError as e:
                raise ConcurrencyConflict(
                    f"Another operation is still in progress on {key}; please retry",
                    {"key": key},
                ) from e
            try:
                yield
            finally:
                lock.release()
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                self._locks.pop(key, None)

    def is_locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()
