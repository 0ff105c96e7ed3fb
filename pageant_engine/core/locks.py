"""
Keyed asyncio locks.

Serializes writers that share a key (one subcategory's certification
record, one judge's scores within a subcategory) while writers on
different keys run in parallel.
Locks are dropped as soon as no task holds or waits on them, so the
registry never grows with the number of keys ever seen.

This is in-process serialization only. Cross-process safety comes from the
database: row locks (``SELECT ... FOR UPDATE``) and compare-and-set updates.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Dict, Hashable, AsyncIterator

logger = logging.getLogger(__name__)


class KeyedLockRegistry:

    def __init__(self, name: str):
        self.name = name
        self._locks: Dict[Hashable, asyncio.Lock] = {}
        self._users: Dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._users[key] = self._users.get(key, 0) + 1
        try:
            if lock.locked():
                logger.debug(f"[{self.name}] waiting for key={key!r}")
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def is_held(self, key: Hashable) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)


# One record per subcategory
certification_locks = KeyedLockRegistry("certification")
# One key per (judge, subcategory): a judge's score writes and their own certification
judge_scope_locks = KeyedLockRegistry("judge_scope")
