"""
Composite health monitor aggregating several provider monitors.

The system can proceed as long as any one registered provider is usable.
"""

import asyncio
import logging
from typing import Iterable, List, Optional

from ..core.types import HealthRecord, utc_now
from .monitor import HealthMonitor, wait_until_healthy

logger = logging.getLogger(__name__)


class CompositeHealthMonitor:
    """
    Folds a list of monitors into one: healthy when any member is healthy.

    Exposes the same contract as ProviderHealthMonitor so callers do not need
    to know whether they hold one provider or several.
    """

    def __init__(
        self,
        monitors: Optional[Iterable[HealthMonitor]] = None,
        poll_interval_seconds: float = 5.0,
        default_wait_timeout_seconds: float = 30.0,
    ):
        self._monitors: List[HealthMonitor] = list(monitors or [])
        self.poll_interval_seconds = poll_interval_seconds
        self.default_wait_timeout_seconds = default_wait_timeout_seconds

    @property
    def name(self) -> str:
        return f"Composite({', '.join(m.name for m in self._monitors)})"

    @property
    def monitors(self) -> List[HealthMonitor]:
        return list(self._monitors)

    def register(self, monitor: HealthMonitor) -> None:
        self._monitors.append(monitor)
        logger.info(f"Registered health monitor for {monitor.name}")

    def monitor_for(self, provider_name: str) -> Optional[HealthMonitor]:
        for monitor in self._monitors:
            if monitor.name == provider_name:
                return monitor
        return None

    def is_healthy(self) -> bool:
        return any(m.is_healthy() for m in self._monitors)

    async def check_health(self) -> bool:
        """Probe every member, even after one succeeds, so each keeps its own state current."""
        if not self._monitors:
            return False
        results = await asyncio.gather(*(m.check_health() for m in self._monitors))
        return any(results)

    def status(self) -> HealthRecord:
        statuses = [m.status() for m in self._monitors]
        healthy_count = sum(1 for s in statuses if s.is_healthy)

        return HealthRecord(
            provider_name=self.name,
            is_healthy=healthy_count > 0,
            last_check_at=utc_now(),
            consecutive_failures=min((s.consecutive_failures for s in statuses), default=0),
            unhealthy_members=len(statuses) - healthy_count,
        )

    def healthy_providers(self) -> List[str]:
        return [m.name for m in self._monitors if m.is_healthy()]

    def unhealthy_providers(self) -> List[str]:
        return [m.name for m in self._monitors if not m.is_healthy()]

    async def wait_for_healthy(self, timeout: Optional[float] = None) -> None:
        await wait_until_healthy(
            self,
            timeout if timeout is not None else self.default_wait_timeout_seconds,
            self.poll_interval_seconds,
        )

    async def start(self) -> None:
        for monitor in self._monitors:
            await monitor.start()

    async def stop(self) -> None:
        for monitor in self._monitors:
            await monitor.stop()
