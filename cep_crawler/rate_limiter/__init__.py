"""
Rate limiting for upstream provider calls.
"""

import logging
from typing import Union

import redis.asyncio as aioredis

from ..config.settings import CrawlerSettings
from .limiter import MinIntervalRateLimiter, RedisIntervalRateLimiter

logger = logging.getLogger(__name__)

RateLimiter = Union[MinIntervalRateLimiter, RedisIntervalRateLimiter]

__all__ = ["MinIntervalRateLimiter", "RedisIntervalRateLimiter", "RateLimiter", "create_rate_limiter"]


def create_rate_limiter(settings: CrawlerSettings) -> RateLimiter:
    """Factory function to create the rate limiter selected in settings"""
    if settings.rate_limiter_backend == "redis":
        assert settings.redis_url is not None, "Redis URL is required"
        client = aioredis.from_url(settings.redis_url, socket_connect_timeout=5, socket_timeout=5)
        logger.info(f"Using Redis rate limiter at key {settings.redis_rate_limit_key}")
        return RedisIntervalRateLimiter(
            client,
            key=settings.redis_rate_limit_key,
            min_interval_seconds=settings.min_request_interval_seconds,
            max_concurrent=settings.max_concurrent_calls,
        )

    return MinIntervalRateLimiter(
        settings.min_request_interval_seconds,
        max_concurrent=settings.max_concurrent_calls,
    )
