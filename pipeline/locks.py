"""Per-book asyncio locks."""

import asyncio
import weakref


class BookLocks:
    """Hands out one asyncio.Lock per key; unused locks are garbage collected."""

    def __init__(self):
        self._locks = weakref.WeakValueDictionary()

    def get(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock
