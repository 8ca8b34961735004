"""In-memory sliding-window rate limiting and per-key serialization."""
from __future__ import annotations

import asyncio
import math
import time
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Deque, Dict
from weakref import WeakValueDictionary


SWEEP_INTERVAL_SECONDS = 60


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    retry_after: int = 0


class RateLimiter:
    """Provide in-memory rate limiting with asyncio locking."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._attempts: Dict[str, Deque[float]] = {}
        self._windows: Dict[str, int] = {}
        self._next_sweep = 0.0
        self._lock = asyncio.Lock()

    async def hit(self, key: str, max_requests: int, window_seconds: int) -> RateDecision:
        """Record a request for the key unless the window is already full."""
        async with self._lock:
            now = self._clock()
            if now >= self._next_sweep:
                self._sweep(now)
                self._next_sweep = now + SWEEP_INTERVAL_SECONDS

            window_start = now - window_seconds
            bucket = self._attempts.get(key)
            if bucket is not None:
                while bucket and bucket[0] < window_start:
                    bucket.popleft()
                if len(bucket) >= max_requests:
                    retry_after = max(1, math.ceil(bucket[0] + window_seconds - now))
                    return RateDecision(allowed=False, retry_after=retry_after)
            else:
                bucket = self._attempts[key] = deque()

            bucket.append(now)
            self._windows[key] = window_seconds
            return RateDecision(allowed=True)

    def _sweep(self, now: float) -> None:
        # Drop keys whose newest request has left its window.
        for key, bucket in list(self._attempts.items()):
            if not bucket or bucket[-1] < now - self._windows.get(key, 0):
                del self._attempts[key]
                self._windows.pop(key, None)

    def reset(self) -> None:
        self._attempts.clear()
        self._windows.clear()
        self._next_sweep = 0.0


class KeyedLocks:
    """Hand out one ``asyncio.Lock`` per key so check-then-write runs serially."""

    def __init__(self) -> None:
        self._locks: WeakValueDictionary[str, asyncio.Lock] = WeakValueDictionary()

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        async with lock:
            yield


rate_limiter = RateLimiter()
