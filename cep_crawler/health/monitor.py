"""
Provider health monitoring.

A ProviderHealthMonitor wraps one async probe function and tracks whether the
provider behind it is usable. Degradation is slow (the flag only drops after
`failure_threshold` consecutive failed probes) and recovery is fast (one good
probe restores it). A background task re-probes on a fixed period.
"""

import asyncio
import logging
import threading
import time
from typing import Awaitable, Callable, Optional, Protocol, runtime_checkable

from ..core.exceptions import UpstreamUnavailable
from ..core.types import HealthRecord, utc_now

logger = logging.getLogger(__name__)

Probe = Callable[[], Awaitable[bool]]


@runtime_checkable
class HealthMonitor(Protocol):
    """Contract shared by leaf and composite monitors"""

    @property
    def name(self) -> str: ...

    def is_healthy(self) -> bool: ...

    def status(self) -> HealthRecord: ...

    async def check_health(self) -> bool: ...

    async def wait_for_healthy(self, timeout: Optional[float] = None) -> None: ...

    async def start(self) -> None: ...

    async def stop(self) -> None: ...


async def wait_until_healthy(monitor: HealthMonitor, timeout: float, poll_interval: float) -> None:
    """
    Poll `monitor` until it reports healthy or `timeout` seconds elapse.

    Raises:
        UpstreamUnavailable: If no healthy signal arrives before the deadline
    """
    deadline = time.monotonic() + timeout

    while not monitor.is_healthy():
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            break

        logger.info(f"Waiting for {monitor.name} to become healthy...")
        await monitor.check_health()

        if monitor.is_healthy():
            break

        remaining = deadline - time.monotonic()
        if remaining <= 0:
            break
        await asyncio.sleep(min(poll_interval, remaining))

    if not monitor.is_healthy():
        raise UpstreamUnavailable(f"{monitor.name} is not available", status=monitor.status())


class ProviderHealthMonitor:
    """
    Circuit-breaker style health tracker for a single provider.

    The current state is an immutable HealthRecord replaced under a lock, so
    readers always see a consistent snapshot without waiting on a probe.
    """

    def __init__(
        self,
        provider_name: str,
        probe: Probe,
        failure_threshold: int = 3,
        check_interval_seconds: float = 60.0,
        poll_interval_seconds: float = 5.0,
        default_wait_timeout_seconds: float = 30.0,
    ):
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")

        self.provider_name = provider_name
        self.probe = probe
        self.failure_threshold = failure_threshold
        self.check_interval_seconds = check_interval_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.default_wait_timeout_seconds = default_wait_timeout_seconds

        self._record = HealthRecord(provider_name=provider_name)
        self._record_lock = threading.Lock()
        self._check_lock = asyncio.Lock()

        self._task: Optional[asyncio.Task[None]] = None
        self._stop_event = asyncio.Event()

    @property
    def name(self) -> str:
        return self.provider_name

    def is_healthy(self) -> bool:
        return self._record.is_healthy

    def status(self) -> HealthRecord:
        return self._record

    def _publish(self, record: HealthRecord) -> None:
        with self._record_lock:
            self._record = record

    async def check_health(self) -> bool:
        """
        Run the probe once and update the health record.

        Returns:
            True if this probe succeeded
        """
        async with self._check_lock:
            logger.debug(f"Checking {self.provider_name} health...")
            try:
                probe_ok = bool(await self.probe())
                error: Optional[str] = None if probe_ok else "health probe returned false"
            except Exception as e:
                probe_ok = False
                error = str(e)

            previous = self._record
            now = utc_now()

            if probe_ok:
                self._publish(HealthRecord(provider_name=self.provider_name, is_healthy=True, last_check_at=now))
                if not previous.is_healthy:
                    logger.info(f"{self.provider_name} service is healthy")
                return True

            failures = previous.consecutive_failures + 1
            tripped = failures >= self.failure_threshold
            self._publish(
                HealthRecord(
                    provider_name=self.provider_name,
                    is_healthy=previous.is_healthy and not tripped,
                    last_check_at=now,
                    consecutive_failures=failures,
                )
            )

            if tripped:
                logger.error(
                    f"{self.provider_name} service is down ({failures} consecutive failures)",
                    extra={"provider": self.provider_name, "error": error},
                )
            else:
                logger.warning(f"{self.provider_name} health check failed: {error}")
            return False

    async def wait_for_healthy(self, timeout: Optional[float] = None) -> None:
        await wait_until_healthy(
            self,
            timeout if timeout is not None else self.default_wait_timeout_seconds,
            self.poll_interval_seconds,
        )

    async def start(self) -> None:
        """Run an initial check and start the periodic background probe."""
        if self._task is not None and not self._task.done():
            logger.warning(f"Health monitor for {self.provider_name} is already running")
            return

        self._stop_event.clear()
        await self.check_health()
        self._task = asyncio.create_task(self._periodic_check_loop())
        logger.info(f"Started {self.provider_name} health monitor with {self.check_interval_seconds}s interval")

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None

    async def _periodic_check_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.check_interval_seconds)
                break
            except asyncio.TimeoutError:
                pass

            try:
                await self.check_health()
            except Exception as e:
                logger.error(f"Periodic health check for {self.provider_name} crashed: {e}")
