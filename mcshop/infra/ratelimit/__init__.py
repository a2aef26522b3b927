from typing import Optional, Tuple
import redis.asyncio as redis

from ... import config

BACKEND = config.RATE_LIMIT_BACKEND  # 'memory' | 'redis'

if BACKEND == "redis":
    from ._redis import RateLimiter as _RateLimiter
else:
    from ._memory import RateLimiter as _RateLimiter


def limits_for(path: str) -> Tuple[int, int]:
    for prefix, limits in config.RATE_LIMITS:
        if path.startswith(prefix):
            return limits
    return config.RATE_LIMIT_DEFAULT


def bucket_for(path: str) -> str:
    for prefix, _ in config.RATE_LIMITS:
        if path.startswith(prefix):
            return prefix
    return "*"


# Factory keeps server.py simple and constructor-agnostic:
def new_limiter(*, r: Optional[redis.Redis] = None):
    if BACKEND == "redis":
        if r is None:
            raise RuntimeError("RateLimiter(redis) requires r=redis.Redis")
        return _RateLimiter(r=r)
    return _RateLimiter()


RateLimiter = _RateLimiter
__all__ = ["RateLimiter", "new_limiter", "limits_for", "bucket_for",
           "BACKEND"]
