from __future__ import annotations

import asyncio
import time
from typing import Dict, Protocol, Tuple


class CounterStore(Protocol):
    """Fixed-window counters shared by the rate limiters.

    ``increment`` returns the post-increment count for ``key`` and starts a new
    window of ``window_seconds`` when the key is absent or its window elapsed.
    """

    async def increment(self, key: str, window_seconds: int) -> int: ...

    async def get(self, key: str) -> int: ...

    async def ttl(self, key: str) -> int: ...

    async def reset(self, key: str) -> None: ...

    def verify_connection(self) -> None: ...


class MemoryCounterStore:
    """Process-local counters.

    Each process keeps its own view, so limits enforced through this store are
    per instance. Use the Redis-backed store when running more than one.
    """

    # expired windows are swept every this many increments
    prune_interval = 256

    def __init__(self) -> None:
        self._counters: Dict[str, Tuple[int, float]] = {}
        self._lock = asyncio.Lock()
        self._increments = 0

    def _clock(self) -> float:
        return time.monotonic()

    def _prune(self, now: float) -> None:
        expired = [key for key, (_, expires_at) in self._counters.items() if expires_at <= now]
        for key in expired:
            del self._counters[key]

    def _live(self, key: str, now: float) -> Tuple[int, float] | None:
        entry = self._counters.get(key)
        if entry is None:
            return None
        if entry[1] <= now:
            self._counters.pop(key, None)
            return None
        return entry

    async def increment(self, key: str, window_seconds: int) -> int:
        window = max(1, int(window_seconds))
        async with self._lock:
            now = self._clock()
            self._increments += 1
            if self._increments % self.prune_interval == 0:
                self._prune(now)
            entry = self._live(key, now)
            if entry is None:
                count, expires_at = 0, now + window
            else:
                count, expires_at = entry
            count += 1
            self._counters[key] = (count, expires_at)
            return count

    async def get(self, key: str) -> int:
        async with self._lock:
            entry = self._live(key, self._clock())
            return entry[0] if entry else 0

    async def ttl(self, key: str) -> int:
        async with self._lock:
            now = self._clock()
            entry = self._live(key, now)
            if entry is None:
                return 0
            return max(1, int(entry[1] - now))

    async def reset(self, key: str) -> None:
        async with self._lock:
            self._counters.pop(key, None)

    def verify_connection(self) -> None:
        return None
