"""
Call spacing for upstream CEP providers.

Every provider call goes through `slot()`: it bounds how many calls run at
once and keeps consecutive call starts at least `min_interval_seconds`
apart. The Redis variant extends the spacing across processes; when Redis
is unreachable it falls back to per-process spacing.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional
from uuid import uuid4

import redis.asyncio as aioredis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


class MinIntervalRateLimiter:
    """
    Per-process limiter: at most `max_concurrent` calls in flight, and call
    starts spaced by at least `min_interval_seconds`.
    """

    def __init__(self, min_interval_seconds: float, max_concurrent: int = 1):
        if min_interval_seconds < 0:
            raise ValueError("min_interval_seconds must be >= 0")
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")

        self.min_interval_seconds = min_interval_seconds
        self.max_concurrent = max_concurrent

        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._spacing_lock = asyncio.Lock()
        self._last_start: Optional[float] = None

        self.stats: Dict[str, Any] = {"calls": 0, "waits": 0, "total_wait_seconds": 0.0}

    async def _wait_for_turn(self) -> None:
        async with self._spacing_lock:
            now = time.monotonic()
            if self._last_start is not None:
                wait = self._last_start + self.min_interval_seconds - now
                if wait > 0:
                    self.stats["waits"] += 1
                    self.stats["total_wait_seconds"] += wait
                    await asyncio.sleep(wait)
                    now = time.monotonic()
            self._last_start = now

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        async with self._semaphore:
            await self._wait_for_turn()
            self.stats["calls"] += 1
            yield

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.stats,
            "min_interval_seconds": self.min_interval_seconds,
            "max_concurrent": self.max_concurrent,
        }

    async def close(self) -> None:
        pass


class RedisIntervalRateLimiter:
    """
    Cross-process limiter.

    A call may start only after it wins `SET key token NX PX interval_ms`;
    the key expiring is what opens the next slot. Concurrency is still
    bounded per process.
    """

    def __init__(
        self,
        redis_client: aioredis.Redis,
        key: str,
        min_interval_seconds: float,
        max_concurrent: int = 1,
        poll_floor_seconds: float = 0.01,
    ):
        self.redis_client = redis_client
        self.key = key
        self.min_interval_seconds = min_interval_seconds
        self.interval_ms = max(1, int(round(min_interval_seconds * 1000)))
        self.poll_floor_seconds = poll_floor_seconds

        # Local spacing doubles as the fallback when Redis is down
        self._local = MinIntervalRateLimiter(min_interval_seconds, max_concurrent)
        self._fallback_active = False

        self.stats: Dict[str, Any] = {"calls": 0, "redis_waits": 0, "fallback_calls": 0}

    async def _acquire_distributed(self) -> bool:
        """Block until this process owns the next slot. False if Redis failed."""
        token = uuid4().hex
        try:
            while True:
                acquired = await self.redis_client.set(self.key, token, nx=True, px=self.interval_ms)
                if acquired:
                    if self._fallback_active:
                        logger.info("Redis rate limiting restored")
                        self._fallback_active = False
                    return True

                self.stats["redis_waits"] += 1
                remaining_ms = await self.redis_client.pttl(self.key)
                wait = remaining_ms / 1000.0 if remaining_ms and remaining_ms > 0 else self.poll_floor_seconds
                await asyncio.sleep(max(wait, self.poll_floor_seconds))
        except RedisError as e:
            if not self._fallback_active:
                logger.warning(f"Redis rate limiter unavailable, falling back to local spacing: {e}")
                self._fallback_active = True
            return False

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        async with self._local._semaphore:
            if not self.min_interval_seconds or not await self._acquire_distributed():
                if self._fallback_active:
                    self.stats["fallback_calls"] += 1
                await self._local._wait_for_turn()
            self.stats["calls"] += 1
            yield

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.stats,
            "key": self.key,
            "min_interval_seconds": self.min_interval_seconds,
            "fallback_active": self._fallback_active,
        }

    async def close(self) -> None:
        try:
            await self.redis_client.aclose()
        except RedisError as e:
            logger.warning(f"Error closing Redis connection: {e}")
