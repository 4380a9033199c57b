"""
Request coalescing for cache-miss thundering herd protection.

When N discovery workers ask for the same mirror canister or bridge address
at once, only the first should reach the canister. The rest wait on a
per-key asyncio.Lock and then re-check the cache.
"""

import asyncio
from typing import Any, Awaitable, Callable, Hashable

from cknft_bridge.services.cache import MISSING


class RequestCoalescer:
    """Per-key single-flight, owned by the cache it protects."""

    def __init__(self):
        # key -> (lock, callers holding or waiting on it)
        self._locks: dict[Hashable, tuple[asyncio.Lock, int]] = {}

    def _acquire_ref(self, key: Hashable) -> asyncio.Lock:
        lock, users = self._locks.get(key, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        self._locks[key] = (lock, users + 1)
        return lock

    def _release_ref(self, key: Hashable) -> None:
        lock, users = self._locks[key]
        if users <= 1:
            # Last user gone; the next caller starts a fresh lock
            del self._locks[key]
        else:
            self._locks[key] = (lock, users - 1)

    def in_flight(self, key: Hashable) -> bool:
        entry = self._locks.get(key)
        return entry is not None and entry[0].locked()

    def __len__(self) -> int:
        return len(self._locks)

    async def run(
        self,
        key: Hashable,
        fetch_fn: Callable[[], Awaitable[Any]],
        recheck_fn: Callable[[], Any],
    ) -> Any:
        """Coalesce concurrent requests for the same cache key.

        The caller that gets the lock first runs ``fetch_fn``, which must
        populate the cache. Later callers re-check through ``recheck_fn``
        once the lock is released. If that still returns MISSING, the first
        fetch failed without caching anything, so they fetch themselves.
        """
        lock = self._acquire_ref(key)
        try:
            async with lock:
                cached = recheck_fn()
                if cached is not MISSING:
                    return cached
                return await fetch_fn()
        finally:
            self._release_ref(key)
