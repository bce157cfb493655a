"""Per-channel outbound rate limiting (per minute and per hour windows)."""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import Protocol

import redis

from alertrelay_engine.config.models import RateLimitConfig

WINDOWS = (("minute", 60), ("hour", 3600))


class RateLimiter(Protocol):
    def allow(self, key: str) -> bool:
        """Consume one slot for ``key``; False when a window is exhausted."""
        ...


class InMemoryRateLimiter:
    def __init__(self, config: RateLimitConfig, clock: Callable[[], float] = time.time) -> None:
        """Create an in-memory rate limiter for a single process."""
        self._limits = {"minute": config.per_minute, "hour": config.per_hour}
        self._clock = clock
        self._counts: dict[tuple[str, str], tuple[int, float]] = {}

    def allow(self, key: str) -> bool:
        """Return True if the key is within every window; only then is a slot consumed."""
        now = self._clock()
        updated = {}
        for name, window in WINDOWS:
            count, start = self._counts.get((key, name), (0, now))
            if now - start >= window:
                count, start = 0, now
            if count + 1 > self._limits[name]:
                return False
            updated[(key, name)] = (count + 1, start)
        self._counts.update(updated)
        return True


class RedisRateLimiter:
    def __init__(self, config: RateLimitConfig, client: redis.Redis | None = None) -> None:
        """Create a Redis-backed rate limiter shared by every dispatcher process."""
        if client is None:
            if not config.redis_url:
                raise ValueError("REDIS_URL is required for Redis rate limiting.")
            client = redis.Redis.from_url(config.redis_url, decode_responses=True)
        self._limits = {"minute": config.per_minute, "hour": config.per_hour}
        self._client = client

    def allow(self, key: str) -> bool:
        """Return True if the key is within every window."""
        now = time.time()
        with self._client.pipeline() as pipe:
            for name, window in WINDOWS:
                redis_key = f"relay:rate:{key}:{name}:{int(now // window)}"
                pipe.incr(redis_key)
                pipe.expire(redis_key, window)
            results = pipe.execute()
        counts = results[0::2]
        return all(
            int(count) <= self._limits[name] for count, (name, _) in zip(counts, WINDOWS)
        )


def build_rate_limiter(config: RateLimitConfig) -> RateLimiter:
    """Return the configured rate limiter implementation."""
    if config.redis_url:
        return RedisRateLimiter(config)
    return InMemoryRateLimiter(config)
