from __future__ import annotations
import asyncio
import time
from typing import Dict, Tuple


class RateLimiter:
    """Fixed-window counter per key, kept in process memory.

    Good for a single worker; use the redis backend when several workers
    share the limits.
    """

    def __init__(self, clock=time.monotonic) -> None:
        self.clock = clock
        self._windows: Dict[str, Tuple[float, int]] = {}
        self._lock = asyncio.Lock()

    async def hit(self, key: str, limit: int,
                  window: int) -> Tuple[bool, int]:
        """(allowed, retry_after_seconds)"""
        now = self.clock()
        async with self._lock:
            started, count = self._windows.get(key, (now, 0))
            if now - started >= window:
                started, count = now, 0
            count += 1
            self._windows[key] = (started, count)
            if len(self._windows) > 10000:
                self._evict(now, window)
        if count > limit:
            return False, max(1, int(started + window - now + 0.999))
        return True, 0

    def _evict(self, now: float, window: int) -> None:
        stale = [k for k, (started, _) in self._windows.items()
                 if now - started >= window]
        for k in stale:
            del self._windows[k]
