"""
Provider health monitoring: per-provider circuit breakers and their aggregate.
"""

from typing import Iterable

from ..config.settings import CrawlerSettings
from ..provider.base import CepProvider
from .composite import CompositeHealthMonitor
from .monitor import HealthMonitor, ProviderHealthMonitor, wait_until_healthy

__all__ = [
    "HealthMonitor",
    "ProviderHealthMonitor",
    "CompositeHealthMonitor",
    "wait_until_healthy",
    "create_health_monitor",
]


def create_health_monitor(providers: Iterable[CepProvider], settings: CrawlerSettings) -> CompositeHealthMonitor:
    """One leaf monitor per provider, folded into a composite."""
    composite = CompositeHealthMonitor(
        poll_interval_seconds=settings.health_wait_poll_seconds,
        default_wait_timeout_seconds=settings.health_wait_timeout_seconds,
    )
    for provider in providers:
        composite.register(
            ProviderHealthMonitor(
                provider.name,
                provider.probe,
                failure_threshold=settings.health_failure_threshold,
                check_interval_seconds=settings.health_check_interval_seconds,
                poll_interval_seconds=settings.health_wait_poll_seconds,
                default_wait_timeout_seconds=settings.health_wait_timeout_seconds,
            )
        )
    return composite
