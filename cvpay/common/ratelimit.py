"""Fixed-window request limiting behind a swappable counter store.

Counters live in an injectable store so several API replicas can share them
through Redis, while tests and single-process dev runs use the in-memory one.
"""

import threading
from collections import OrderedDict
from time import time
from typing import Protocol

import redis

from cvpay.common.config import settings
from cvpay.common.logging import logger


class RateLimitStore(Protocol):
    def hit(self, key: str, window_seconds: int) -> int:
        """Count one request for `key` in the current window and return the total."""


class InMemoryRateLimitStore:
    """Process-local window counters; fine for one worker, not for a fleet.

    Windows are kept in expiry order so stale keys are dropped on every hit
    and the map only holds keys seen within the last window.
    """

    def __init__(self, clock=time) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._windows: OrderedDict[str, tuple[int, float]] = OrderedDict()

    def __len__(self) -> int:
        return len(self._windows)

    def _evict_expired(self, now: float) -> None:
        while self._windows:
            key, (_, reset_at) = next(iter(self._windows.items()))
            if reset_at > now:
                break
            del self._windows[key]

    def hit(self, key: str, window_seconds: int) -> int:
        now = self._clock()
        with self._lock:
            self._evict_expired(now)
            count, reset_at = self._windows.get(key, (0, 0.0))
            if now >= reset_at:
                count, reset_at = 0, now + window_seconds
                self._windows.pop(key, None)
            count += 1
            self._windows[key] = (count, reset_at)
            return count


class RedisRateLimitStore:
    """Shared window counters using INCR + EXPIRE."""

    def __init__(self, client: redis.Redis) -> None:
        self.client = client

    def hit(self, key: str, window_seconds: int) -> int:
        window = int(time() // window_seconds)
        redis_key = f"ratelimit:{key}:{window}"
        pipe = self.client.pipeline()
        pipe.incr(redis_key)
        pipe.expire(redis_key, window_seconds * 2)
        count, _ = pipe.execute()
        return int(count)


class RateLimiter:
    """Allow at most `limit` hits per key per window."""

    def __init__(self, store: RateLimitStore, limit: int, window_seconds: int = 60) -> None:
        self.store = store
        self.limit = limit
        self.window_seconds = window_seconds

    def allow(self, key: str) -> bool:
        try:
            count = self.store.hit(key, self.window_seconds)
        except redis.RedisError as exc:
            # Fail open while the counter store is unreachable.
            logger.warning("rate_limit_store_unavailable key=%s error=%s", key, exc)
            return True
        return count <= self.limit


def build_rate_limiter() -> RateLimiter:
    """Create the limiter selected by `RATE_LIMIT_BACKEND`."""

    if settings.rate_limit_backend == "redis":
        store: RateLimitStore = RedisRateLimitStore(redis.Redis.from_url(settings.redis_url, decode_responses=True))
    else:
        store = InMemoryRateLimitStore()
    return RateLimiter(store, limit=settings.rate_limit_per_minute)
