"""
Rate limit stores the engine forwards checks to.

The engine never counts; a store owns the counters and must update them
atomically per scope key. ``RedisRateLimitStore`` is a fixed-window counter
shared across engine replicas, ``InMemoryRateLimitStore`` is process-local
and meant for tests and single-node deployments.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

import redis.asyncio as redis

from shared.errors import CollaboratorError
from shared.logging import get_logger


@dataclass
class RateLimitCheck:
    """Outcome of a store check."""
    allowed: bool
    remaining: int
    reset_at: float
    current_count: int = 0


class RateLimitStore:
    """Interface for rate limit stores."""

    async def check(self, scope_key: str, limit: int, window_seconds: int) -> RateLimitCheck:
        raise NotImplementedError

    async def close(self):
        return None


class InMemoryRateLimitStore(RateLimitStore):
    """Fixed-window counters held in process memory.

    Expired windows are swept at most once per ``sweep_interval`` seconds, so
    keys of subjects that stop calling do not accumulate.
    """

    def __init__(self, sweep_interval: float = 60.0):
        # scope key -> (window start, count, window end)
        self._windows: Dict[str, Tuple[float, int, float]] = {}
        self._lock = asyncio.Lock()
        self.sweep_interval = sweep_interval
        self._next_sweep = 0.0

    @property
    def tracked_keys(self) -> int:
        return len(self._windows)

    def _sweep(self, now: float):
        if now < self._next_sweep:
            return
        expired = [key for key, (_, _, window_end) in self._windows.items() if window_end <= now]
        for key in expired:
            del self._windows[key]
        self._next_sweep = now + self.sweep_interval

    async def check(self, scope_key: str, limit: int, window_seconds: int) -> RateLimitCheck:
        async with self._lock:
            now = time.time()
            self._sweep(now)

            window_start, count, _ = self._windows.get(scope_key, (now, 0, now + window_seconds))
            if now - window_start >= window_seconds:
                window_start, count = now, 0

            count += 1
            self._windows[scope_key] = (window_start, count, window_start + window_seconds)

        return RateLimitCheck(
            allowed=count <= limit,
            remaining=max(0, limit - count),
            reset_at=window_start + window_seconds,
            current_count=count,
        )

    async def reset(self, scope_key: Optional[str] = None):
        async with self._lock:
            if scope_key is None:
                self._windows.clear()
            else:
                self._windows.pop(scope_key, None)


class RedisRateLimitStore(RateLimitStore):
    """Fixed-window counter in Redis, one key per scope."""

    def __init__(self, redis_url: str, key_prefix: str = "policy_rate_limit", client: Optional[redis.Redis] = None):
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self.logger = get_logger("policy.rate_limit_store.redis")
        self._redis: Optional[redis.Redis] = client

    async def _get_redis(self) -> redis.Redis:
        """Get Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(
                self.redis_url,
                decode_responses=True,
                socket_connect_timeout=1,
                socket_timeout=1,
            )
        return self._redis

    def _make_key(self, scope_key: str) -> str:
        return f"{self.key_prefix}:{scope_key}"

    async def check(self, scope_key: str, limit: int, window_seconds: int) -> RateLimitCheck:
        key = self._make_key(scope_key)

        try:
            client = await self._get_redis()
            # INCR and TTL run in one MULTI/EXEC so the count is atomic per key
            async with client.pipeline(transaction=True) as pipeline:
                pipeline.incr(key)
                pipeline.ttl(key)
                count, ttl = await pipeline.execute()

            if ttl is None or ttl < 0:
                await client.expire(key, window_seconds)
                ttl = window_seconds

        except redis.RedisError as e:
            self.logger.error("Rate limit store error", scope_key=scope_key, error=str(e))
            raise CollaboratorError("rate_limit_store", str(e), details={"scope_key": scope_key})

        count = int(count)
        if count > limit:
            self.logger.warning(
                "Rate limit exceeded",
                scope_key=scope_key,
                current_count=count,
                limit=limit
            )

        return RateLimitCheck(
            allowed=count <= limit,
            remaining=max(0, limit - count),
            reset_at=time.time() + int(ttl),
            current_count=count,
        )

    async def reset(self, scope_key: str) -> bool:
        """Reset the counter for a scope key."""
        try:
            client = await self._get_redis()
            await client.delete(self._make_key(scope_key))
            self.logger.info("Rate limit reset", scope_key=scope_key)
            return True
        except redis.RedisError as e:
            self.logger.error("Rate limit reset error", scope_key=scope_key, error=str(e))
            return False

    async def close(self):
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
