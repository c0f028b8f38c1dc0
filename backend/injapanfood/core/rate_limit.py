from __future__ import annotations

import logging
import math
import time
from collections import defaultdict, deque
from typing import TYPE_CHECKING, Callable, DefaultDict, Deque, Hashable

from fastapi import HTTPException, status

if TYPE_CHECKING:
    from redis.asyncio import Redis as RedisClient

WindowBucket = Deque[float]

logger = logging.getLogger(__name__)


def _too_many_requests(retry_after_seconds: int) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        detail="Too many requests",
        headers={"Retry-After": str(max(1, retry_after_seconds))},
    )


def _prune(bucket: WindowBucket, now: float, window_seconds: int) -> None:
    while bucket and now - bucket[0] > window_seconds:
        bucket.popleft()


class RateLimiter:
    """
    Sliding-window limiter owned by the application instance.

    Counts live in process memory unless a Redis client is supplied, in which
    case a fixed window per identifier is shared across workers. Redis errors
    fall back to the in-memory window.

    Args:
        key: namespace for the counters (e.g., "coupons:validate").
        limit: max hits allowed per identifier in the window.
        window_seconds: window length in seconds.
        redis: optional async Redis client.
        clock: time source, injectable for tests.
    """

    def __init__(
        self,
        *,
        key: str,
        limit: int,
        window_seconds: int,
        redis: "RedisClient | None" = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.key = key
        self.limit = int(limit)
        self.window_seconds = max(1, int(window_seconds))
        self.redis = redis
        self._clock = clock
        self.buckets: DefaultDict[Hashable, WindowBucket] = defaultdict(deque)
        self._last_sweep = clock()

    def reset(self) -> None:
        self.buckets.clear()

    def _sweep(self, now: float) -> None:
        # Identifiers with no hits left in the window are dropped, at most once per window.
        if now - self._last_sweep < self.window_seconds:
            return
        self._last_sweep = now
        for identifier in list(self.buckets):
            bucket = self.buckets[identifier]
            _prune(bucket, now, self.window_seconds)
            if not bucket:
                del self.buckets[identifier]

    def _hit_memory(self, identifier: Hashable, now: float) -> None:
        self._sweep(now)
        bucket = self.buckets[identifier]
        _prune(bucket, now, self.window_seconds)
        if len(bucket) >= self.limit:
            retry_after = int(math.ceil(bucket[0] + self.window_seconds - now)) if bucket else 1
            raise _too_many_requests(retry_after)
        bucket.append(now)

    async def _hit_redis(self, identifier: Hashable, now: float) -> bool:
        if self.redis is None:
            return False
        try:
            now_int = int(now)
            window = now_int // self.window_seconds
            redis_key = f"rate_limit:{self.key}:{identifier}:{window}"
            count = await self.redis.incr(redis_key)
            if int(count) == 1:
                await self.redis.expire(redis_key, self.window_seconds)
        except Exception as exc:
            logger.warning("redis_rate_limit_failed", extra={"limiter": self.key, "error": str(exc)})
            return False
        if int(count) > self.limit:
            raise _too_many_requests(self.window_seconds - (now_int % self.window_seconds))
        return True

    async def hit(self, identifier: Hashable) -> None:
        if self.limit <= 0:
            return
        now = self._clock()
        if not await self._hit_redis(identifier, now):
            self._hit_memory(identifier, now)
