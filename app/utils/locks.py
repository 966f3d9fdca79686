from __future__ import annotations

import asyncio
import functools
from contextlib import asynccontextmanager
from typing import Dict, Hashable


class KeyedLocks:
    """One asyncio.Lock per key, released from the registry once idle.

    Waiters on an asyncio.Lock are woken in FIFO order, so events for the same
    key run in the order their tasks first reached ``hold``.
    """

    def __init__(self):
        self._locks: Dict[Hashable, asyncio.Lock] = {}
        self._users: Dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable):
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                self._users.pop(key, None)
                self._locks.pop(key, None)

    def __len__(self) -> int:
        return len(self._locks)


customer_locks = KeyedLocks()


def shielded(fn):
    """Let a multi-write step finish even when its caller is cancelled.

    The caller still sees the cancellation (or its timeout); the writes keep
    going to completion in their own task.
    """

    @functools.wraps(fn)
    async def wrapper(*args, **kwargs):
        return await asyncio.shield(fn(*args, **kwargs))

    return wrapper
