"""Sliding-window rate limiters for outbound email.

The limiter is a throttle, not a correctness mechanism: the in-memory
variant resets on restart and is per-process. Use the Redis variant when
several instances must share one window.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections import defaultdict, deque
from collections.abc import Callable
from typing import Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@runtime_checkable
class RateLimiter(Protocol):
    async def hit(self, key: str) -> bool:
        """Record a send for ``key``; False if the window is already full."""
        ...


class InMemoryRateLimiter:
    """Per-key deque of accepted-send timestamps.

    Keys whose newest send has left the window are swept at most once per
    window, so memory tracks recent recipients rather than every recipient
    seen since start-up.
    """

    def __init__(
        self,
        limit: int = 100,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._limit = limit
        self._window = window_seconds
        self._clock = clock
        self._hits: dict[str, deque[float]] = defaultdict(deque)
        self._last_sweep = clock()

    @property
    def tracked_keys(self) -> int:
        return len(self._hits)

    async def hit(self, key: str) -> bool:
        now = self._clock()
        if now - self._last_sweep >= self._window:
            self._sweep(now)
        hits = self._hits[key]
        while hits and now - hits[0] >= self._window:
            hits.popleft()
        if len(hits) >= self._limit:
            return False
        hits.append(now)
        return True

    def _sweep(self, now: float) -> None:
        stale = [key for key, hits in self._hits.items() if not hits or now - hits[-1] >= self._window]
        for key in stale:
            del self._hits[key]
        self._last_sweep = now

    def reset(self) -> None:
        self._hits.clear()


class RedisRateLimiter:
    """Sorted-set sliding window shared across processes.

    Key pattern: ``ratelimit:email:{key}``; members are unique per send,
    scored by wall-clock time.

    The count and the add run as two pipelines, so senders racing on one
    key can each see room and together exceed the limit by a few sends.
    That is acceptable for a throttle; it is not a quota.
    """

    _KEY_PREFIX = "ratelimit:email"

    def __init__(self, redis_client, limit: int = 100, window_seconds: float = 60.0):
        self._redis = redis_client
        self._limit = limit
        self._window = window_seconds

    @classmethod
    def from_url(cls, url: str, limit: int = 100, window_seconds: float = 60.0) -> RedisRateLimiter:
        import redis.asyncio as redis_lib

        return cls(redis_lib.from_url(url, decode_responses=True), limit, window_seconds)

    async def hit(self, key: str) -> bool:
        redis_key = f"{self._KEY_PREFIX}:{key}"
        now = time.time()
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.zremrangebyscore(redis_key, 0, now - self._window)
                pipe.zcard(redis_key)
                _, count = await pipe.execute()
            if count >= self._limit:
                return False
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.zadd(redis_key, {f"{now}:{uuid.uuid4().hex}": now})
                pipe.expire(redis_key, int(self._window) + 1)
                await pipe.execute()
            return True
        except Exception:
            # Redis down: throttle is best-effort, allow the send
            logger.warning("Redis unavailable for rate limit, allowing %s", key, exc_info=True)
            return True
