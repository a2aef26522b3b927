from __future__ import annotations
from typing import Tuple
import redis.asyncio as redis


# ---- keys
def k_rl(key: str) -> str: return f"rl:{key}"


class RateLimiter:
    def __init__(self, r: redis.Redis) -> None:
        self.r = r

    async def hit(self, key: str, limit: int,
                  window: int) -> Tuple[bool, int]:
        """(allowed, retry_after_seconds); INCR + EXPIRE NX in one trip."""
        pipe = self.r.pipeline(transaction=True)
        pipe.incr(k_rl(key))
        pipe.expire(k_rl(key), window, nx=True)
        pipe.ttl(k_rl(key))
        count, _, ttl = await pipe.execute()
        if int(count) > limit:
            return False, max(1, int(ttl) if ttl and int(ttl) > 0 else window)
        return True, 0
