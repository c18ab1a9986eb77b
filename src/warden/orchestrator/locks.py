"""
Per-user critical sections.

Checking whether a user already has a worker and creating one is not atomic
against the store, so everything that creates or tears down a user's worker
runs while holding that user's lock.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator


class UserLocks:
    def __init__(self):
        self._locks: dict[int, asyncio.Lock] = {}

    def lock_for(self, user_id: int) -> asyncio.Lock:
        return self._locks.setdefault(user_id, asyncio.Lock())

    def locked(self, user_id: int) -> bool:
        lock = self._locks.get(user_id)
        return bool(lock and lock.locked())

    @asynccontextmanager
    async def hold(self, user_id: int) -> AsyncIterator[None]:
        async with self.lock_for(user_id):
            yield
