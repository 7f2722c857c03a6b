"""Keyed mutual exclusion for per-account sequencing."""

from __future__ import annotations

import asyncio
import weakref
from typing import Hashable


class KeyedLocks:
    """One :class:`asyncio.Lock` per key, created on first use.

    Locks are held weakly, so an entry disappears once no task references
    it.  Callers must keep the returned lock in a local for as long as they
    use it::

        lock = locks.get((chain_tag, address))
        async with lock:
            ...
    """

    def __init__(self) -> None:
        self._locks: "weakref.WeakValueDictionary[Hashable, asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )

    def get(self, key: Hashable) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def __contains__(self, key: Hashable) -> bool:
        return key in self._locks

    def __len__(self) -> int:
        return len(self._locks)
