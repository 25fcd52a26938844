"""
Keyed Window Counters

Fixed-window request counters scoped by key + window, backed by Redis in
deployments and by a lock-guarded dict in a single process.
"""

import logging
import threading
import time
from typing import Dict, Optional, Tuple

import redis.asyncio as redis

from .protocols import WindowCounterStoreProtocol

logger = logging.getLogger(__name__)


def window_start(now: float, window_seconds: int) -> int:
    return int(now // window_seconds) * window_seconds


class RedisWindowCounterStore:
    """Window counters in Redis; keys expire with their window"""

    def __init__(self, redis_url: str, prefix: str = "campaign_engine:ratelimit"):
        self.redis = redis.from_url(redis_url, decode_responses=True)
        self.prefix = prefix

    async def hit(self, key: str, window_seconds: int) -> int:
        bucket = window_start(time.time(), window_seconds)
        redis_key = f"{self.prefix}:{key}:{bucket}"
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.incr(redis_key)
            pipe.expire(redis_key, window_seconds)
            count, _ = await pipe.execute()
        return int(count)

    async def close(self) -> None:
        await self.redis.aclose()


class LocalWindowCounterStore:
    """In-process window counters"""

    def __init__(self):
        self._counts: Dict[Tuple[str, int], int] = {}
        self._lock = threading.Lock()

    async def hit(self, key: str, window_seconds: int) -> int:
        now = time.time()
        bucket = window_start(now, window_seconds)
        with self._lock:
            self._evict(now, window_seconds)
            count = self._counts.get((key, bucket), 0) + 1
            self._counts[(key, bucket)] = count
        return count

    def _evict(self, now: float, window_seconds: int) -> None:
        oldest = window_start(now, window_seconds) - window_seconds
        for stale in [k for k in self._counts if k[1] < oldest]:
            del self._counts[stale]


class RateLimiter:
    """Allows at most `limit` hits per key per window"""

    def __init__(
        self,
        store: Optional[WindowCounterStoreProtocol] = None,
        limit: int = 120,
        window_seconds: int = 60,
    ):
        self.store = store or LocalWindowCounterStore()
        self.limit = limit
        self.window_seconds = window_seconds

    async def allow(self, key: str) -> bool:
        try:
            count = await self.store.hit(key, self.window_seconds)
        except Exception as e:
            logger.warning(f"Rate limit store unavailable, allowing {key}: {e}")
            return True
        return count <= self.limit


__all__ = [
    "LocalWindowCounterStore",
    "RateLimiter",
    "RedisWindowCounterStore",
    "window_start",
]
