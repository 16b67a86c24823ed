"""Tests for provider call spacing."""

import asyncio
import time
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from cep_crawler.rate_limiter import MinIntervalRateLimiter, RedisIntervalRateLimiter, create_rate_limiter

from conftest import make_settings


@pytest.mark.parametrize("interval,concurrent", [(-0.1, 1), (0.1, 0)])
def test_invalid_arguments(interval, concurrent):
    with pytest.raises(ValueError):
        MinIntervalRateLimiter(interval, max_concurrent=concurrent)


@pytest.mark.asyncio
async def test_call_starts_are_spaced():
    """Consecutive call starts are at least the interval apart."""
    limiter = MinIntervalRateLimiter(0.05)
    starts = []

    async def call():
        async with limiter.slot():
            starts.append(time.monotonic())

    await asyncio.gather(*(call() for _ in range(4)))

    starts.sort()
    gaps = [later - earlier for earlier, later in zip(starts, starts[1:])]
    assert all(gap >= 0.045 for gap in gaps)
    assert limiter.stats["calls"] == 4
    assert limiter.stats["waits"] == 3


@pytest.mark.asyncio
async def test_concurrency_is_bounded():
    limiter = MinIntervalRateLimiter(0, max_concurrent=1)
    in_flight = 0
    peak = 0

    async def call():
        nonlocal in_flight, peak
        async with limiter.slot():
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1

    await asyncio.gather(*(call() for _ in range(5)))

    assert peak == 1


@pytest.mark.asyncio
async def test_zero_interval_never_waits():
    limiter = MinIntervalRateLimiter(0, max_concurrent=3)

    for _ in range(3):
        async with limiter.slot():
            pass

    assert limiter.get_stats()["waits"] == 0
    assert limiter.get_stats()["max_concurrent"] == 3


@pytest.mark.asyncio
async def test_redis_limiter_acquires_slot():
    client = AsyncMock()
    client.set.return_value = True
    limiter = RedisIntervalRateLimiter(client, key="test:key", min_interval_seconds=0.35)

    async with limiter.slot():
        pass

    client.set.assert_awaited_once()
    args, kwargs = client.set.call_args
    assert args[0] == "test:key"
    assert kwargs == {"nx": True, "px": 350}
    assert limiter.stats["calls"] == 1
    assert limiter.stats["redis_waits"] == 0


@pytest.mark.asyncio
async def test_redis_limiter_waits_for_key_expiry():
    """A lost race sleeps for the remaining TTL and retries."""
    client = AsyncMock()
    client.set.side_effect = [None, True]
    client.pttl.return_value = 20
    limiter = RedisIntervalRateLimiter(client, key="test:key", min_interval_seconds=0.05)

    async with limiter.slot():
        pass

    assert client.set.await_count == 2
    client.pttl.assert_awaited_once_with("test:key")
    assert limiter.stats["redis_waits"] == 1


@pytest.mark.asyncio
async def test_redis_failure_falls_back_to_local_spacing():
    client = AsyncMock()
    client.set.side_effect = RedisConnectionError("connection refused")
    limiter = RedisIntervalRateLimiter(client, key="test:key", min_interval_seconds=0.01)

    async with limiter.slot():
        pass
    async with limiter.slot():
        pass

    stats = limiter.get_stats()
    assert stats["fallback_active"] is True
    assert stats["fallback_calls"] == 2
    assert stats["calls"] == 2


@pytest.mark.asyncio
async def test_redis_recovery_clears_fallback():
    client = AsyncMock()
    client.set.side_effect = [RedisConnectionError("down"), True]
    limiter = RedisIntervalRateLimiter(client, key="test:key", min_interval_seconds=0.01)

    async with limiter.slot():
        pass
    assert limiter.get_stats()["fallback_active"] is True

    async with limiter.slot():
        pass
    assert limiter.get_stats()["fallback_active"] is False


@pytest.mark.asyncio
async def test_redis_limiter_close():
    client = AsyncMock()
    limiter = RedisIntervalRateLimiter(client, key="test:key", min_interval_seconds=0.1)

    await limiter.close()

    client.aclose.assert_awaited_once()


def test_create_rate_limiter_local():
    limiter = create_rate_limiter(make_settings(min_request_interval_ms=350, max_concurrent_calls=2))

    assert isinstance(limiter, MinIntervalRateLimiter)
    assert limiter.min_interval_seconds == pytest.approx(0.35)
    assert limiter.max_concurrent == 2


def test_create_rate_limiter_redis():
    settings = make_settings(rate_limiter_backend="redis", redis_url="redis://localhost:6379/0")

    limiter = create_rate_limiter(settings)

    assert isinstance(limiter, RedisIntervalRateLimiter)
    assert limiter.key == settings.redis_rate_limit_key
