"""
CEP lookup worker.

Pulls work items from the broker, gates each one on provider health and the
global rate limiter, calls the provider, and persists the outcome through
the orchestrator before the message is acknowledged.
"""

import asyncio
import logging
import signal
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence
from uuid import uuid4

from ..broker import Broker, create_broker, decode_work_item
from ..config.settings import CrawlerSettings, get_cached_settings
from ..core.exceptions import JobNotFound
from ..core.types import BrokerMessage, MessageDisposition, WorkerStatus, WorkItem
from ..health import CompositeHealthMonitor, create_health_monitor
from ..orchestrator import CrawlOrchestrator
from ..provider import CepProvider, create_providers
from ..rate_limiter import RateLimiter, create_rate_limiter
from ..state import create_job_store
from ..utils.logging import WorkerLoggerAdapter, get_crawler_logger
from .error_handler import ItemErrorHandler, ItemOutcome

logger = logging.getLogger(__name__)


class WorkerStats(dict[str, Any]):
    """Extended dict for worker statistics with type hints"""

    def __init__(self):
        super().__init__(
            {
                "worker_started_at": datetime.now(timezone.utc),
                "messages_received": 0,
                "items_processed": 0,
                "items_successful": 0,
                "items_failed": 0,
                "duplicates_skipped": 0,
                "processing_time_total": 0.0,
                "rate_limit_wait_total": 0.0,
                "dispositions": {d.value: 0 for d in MessageDisposition},
                "errors_by_type": {},
            }
        )

    def record_message_received(self, count: int = 1):
        self["messages_received"] += count

    def record_disposition(self, disposition: MessageDisposition, processing_time: float):
        self["dispositions"][disposition.value] += 1
        self["processing_time_total"] += processing_time

    def record_item(self, success: bool):
        self["items_processed"] += 1
        if success:
            self["items_successful"] += 1
        else:
            self["items_failed"] += 1

    def record_error(self, error_type: str):
        if error_type not in self["errors_by_type"]:
            self["errors_by_type"][error_type] = 0
        self["errors_by_type"][error_type] += 1

    def get_summary(self) -> Dict[str, Any]:
        """Get summary statistics for reporting"""
        uptime = datetime.now(timezone.utc) - self["worker_started_at"]
        handled = sum(self["dispositions"].values())

        return {
            "uptime_seconds": uptime.total_seconds(),
            "messages_received": self["messages_received"],
            "items_processed": self["items_processed"],
            "items_successful": self["items_successful"],
            "items_failed": self["items_failed"],
            "success_rate": self["items_successful"] / max(1, self["items_processed"]),
            "duplicates_skipped": self["duplicates_skipped"],
            "dispositions": dict(self["dispositions"]),
            "average_processing_time": self["processing_time_total"] / max(1, handled),
            "rate_limit_wait_total": self["rate_limit_wait_total"],
            "errors_by_type": dict(self["errors_by_type"]),
        }


class CepWorker:
    """
    Processes CEP work items one provider call at a time.

    Components not passed in are built from settings in initialize().
    """

    def __init__(
        self,
        settings: Optional[CrawlerSettings] = None,
        orchestrator: Optional[CrawlOrchestrator] = None,
        broker: Optional[Broker] = None,
        providers: Optional[Sequence[CepProvider]] = None,
        health_monitor: Optional[CompositeHealthMonitor] = None,
        rate_limiter: Optional[RateLimiter] = None,
        worker_id: Optional[str] = None,
    ):
        self.settings = settings or get_cached_settings()
        self.worker_id = worker_id or self.settings.worker_id or f"worker-{uuid4().hex[:8]}"

        self.status = WorkerStatus.STARTING
        self._shutdown_requested = False
        self._main_task: Optional[asyncio.Task[None]] = None

        self.orchestrator = orchestrator
        self.broker = broker
        self.providers: List[CepProvider] = list(providers or [])
        self.health_monitor = health_monitor
        self.rate_limiter = rate_limiter
        self.error_handler = ItemErrorHandler()

        self.stats = WorkerStats()
        self.item_log = WorkerLoggerAdapter(get_crawler_logger("cep_crawler.worker.items"), self.worker_id)

        self.max_empty_polls = 3  # Number of empty polls before brief sleep
        self.empty_poll_sleep_seconds = 5.0
        self.empty_poll_count = 0

        logger.info(f"Initialized CEP worker {self.worker_id}", extra={"worker_id": self.worker_id})

    async def initialize(self):
        """Initialize all worker components"""
        try:
            logger.info(f"Initializing CEP worker {self.worker_id}...")

            if not self.providers:
                self.providers = create_providers(self.settings)
            if self.health_monitor is None:
                self.health_monitor = create_health_monitor(self.providers, self.settings)
            if self.broker is None:
                self.broker = create_broker(self.settings)
                await self.broker.initialize()
            if self.rate_limiter is None:
                self.rate_limiter = create_rate_limiter(self.settings)
            if self.orchestrator is None:
                self.orchestrator = CrawlOrchestrator(
                    create_job_store(self.settings), self.broker, self.health_monitor, self.settings
                )

            await self.health_monitor.start()

            self.status = WorkerStatus.RUNNING
            logger.info(
                f"CEP worker {self.worker_id} initialized",
                extra={"providers": [p.name for p in self.providers], "healthy": self.health_monitor.is_healthy()},
            )

        except Exception as e:
            self.status = WorkerStatus.ERROR
            logger.error(f"Failed to initialize CEP worker: {e}")
            raise

    def _components(self):
        assert self.orchestrator is not None, "Worker not properly initialized"
        assert self.broker is not None, "Worker not properly initialized"
        assert self.health_monitor is not None, "Worker not properly initialized"
        assert self.rate_limiter is not None, "Worker not properly initialized"
        return self.orchestrator, self.broker, self.health_monitor, self.rate_limiter

    async def run(self):
        """
        Main worker loop. Runs until shutdown is requested.
        """
        if self.status != WorkerStatus.RUNNING:
            raise RuntimeError("Worker must be initialized before running")

        logger.info(f"Starting CEP worker main loop for {self.worker_id}")

        try:
            while not self._shutdown_requested:
                try:
                    await self.process_batch()

                except asyncio.CancelledError:
                    logger.info("Main loop cancelled, shutting down...")
                    break

                except Exception as e:
                    logger.error(f"Error in main loop: {e}")
                    self.stats.record_error("main_loop_error")
                    await asyncio.sleep(5)

        except Exception as e:
            self.status = WorkerStatus.ERROR
            logger.error(f"Fatal error in worker main loop: {e}")
            raise
        finally:
            if self.status != WorkerStatus.ERROR:
                self.status = WorkerStatus.STOPPING
            logger.info(f"CEP worker {self.worker_id} main loop stopped")

    async def process_batch(self) -> List[MessageDisposition]:
        """Receive and process one batch of messages"""
        _, broker, _, _ = self._components()

        messages = await broker.receive_messages(max_messages=self.settings.receive_batch_size)

        if not messages:
            self.empty_poll_count += 1
            if self.empty_poll_count >= self.max_empty_polls:
                logger.debug("No messages available, brief sleep...")
                await asyncio.sleep(self.empty_poll_sleep_seconds)
                self.empty_poll_count = 0
            return []

        self.empty_poll_count = 0
        self.stats.record_message_received(len(messages))
        logger.debug(f"Processing {len(messages)} CEP messages")

        # The rate limiter serialises the provider calls; everything else overlaps
        results = await asyncio.gather(*(self.process_message(m) for m in messages), return_exceptions=True)

        dispositions: List[MessageDisposition] = []
        for message, result in zip(messages, results):
            if isinstance(result, BaseException):
                logger.error(f"Unhandled error processing message {message.message_id}: {result}")
                self.stats.record_error("message_processing_error")
                dispositions.append(MessageDisposition.FAILED)
            else:
                dispositions.append(result)
        return dispositions

    async def process_message(self, message: BrokerMessage) -> MessageDisposition:
        """
        Handle one broker message end to end.

        The message is acknowledged only after the outcome is persisted.
        """
        start_time = time.monotonic()
        disposition = await self._process_message(message)
        self.stats.record_disposition(disposition, time.monotonic() - start_time)
        return disposition

    async def _process_message(self, message: BrokerMessage) -> MessageDisposition:
        orchestrator, broker, health_monitor, _ = self._components()

        item = decode_work_item(message.body)
        if item is None:
            logger.warning(f"Dropping message {message.message_id} with invalid body")
            self.stats.record_error("invalid_message")
            return await self._ack(message, MessageDisposition.DROPPED)

        self.item_log.log_item_started(item.job_id, item.item_key, receive_count=message.receive_count)

        try:
            await orchestrator.mark_running(item.job_id)
        except JobNotFound:
            logger.warning(
                f"Dropping message {message.message_id} for unknown job {item.job_id}",
                extra={"job_id": item.job_id, "item_key": item.item_key},
            )
            self.stats.record_error("unknown_job")
            return await self._ack(message, MessageDisposition.DROPPED)

        try:
            already_recorded = await orchestrator.is_item_recorded(item.job_id, item.item_key)
            if already_recorded:
                await orchestrator.finish_if_complete(item.job_id)
        except Exception as e:
            logger.error(
                f"Failed to check for an existing result for {item.item_key} in job {item.job_id}: {e}",
                extra={"job_id": item.job_id, "item_key": item.item_key},
            )
            self.stats.record_error("persistence_error")
            return MessageDisposition.FAILED

        if already_recorded:
            # Redelivery of an item that is already accounted for; no provider call
            self.stats["duplicates_skipped"] += 1
            return await self._ack(message, MessageDisposition.ACKED)

        if not health_monitor.is_healthy():
            self.item_log.log_item_deferred(item.job_id, item.item_key, reason="no healthy provider")
            await broker.release(message, delay_seconds=self.settings.retry_visibility_seconds)
            return MessageDisposition.DEFERRED

        provider = self._select_provider()
        outcome = await self._lookup(provider, item)

        try:
            inserted = await orchestrator.record_and_advance(
                item.job_id,
                item.item_key,
                outcome.success,
                payload=outcome.payload,
                error_message=outcome.error_message,
            )
        except Exception as e:
            # Leave the message in flight: the visibility timeout redelivers it
            logger.error(
                f"Failed to persist outcome for {item.item_key} in job {item.job_id}: {e}",
                extra={"job_id": item.job_id, "item_key": item.item_key},
            )
            self.stats.record_error("persistence_error")
            return MessageDisposition.FAILED

        if not inserted:
            # Another delivery recorded this key while the lookup ran
            self.stats["duplicates_skipped"] += 1
            return await self._ack(message, MessageDisposition.ACKED)

        self.stats.record_item(outcome.success)
        if outcome.success:
            self.item_log.log_item_completed(item.job_id, item.item_key, provider=provider.name)
        else:
            error_type = outcome.error_type.value if outcome.error_type else "unknown"
            self.stats.record_error(error_type)
            self.item_log.log_item_failed(
                item.job_id, item.item_key, error_type, outcome.error_message, retryable=outcome.retryable
            )

        if outcome.retryable:
            await broker.release(message, delay_seconds=self.settings.retry_visibility_seconds)
            return MessageDisposition.RETRY

        return await self._ack(message, MessageDisposition.ACKED)

    def _select_provider(self) -> CepProvider:
        """First configured provider whose monitor is healthy, else the first provider."""
        _, _, health_monitor, _ = self._components()
        if not self.providers:
            raise RuntimeError("No CEP providers configured")

        for provider in self.providers:
            monitor = health_monitor.monitor_for(provider.name)
            if monitor is not None and monitor.is_healthy():
                return provider
        return self.providers[0]

    async def _lookup(self, provider: CepProvider, item: WorkItem) -> ItemOutcome:
        _, _, _, rate_limiter = self._components()

        wait_started = time.monotonic()
        async with rate_limiter.slot():
            waited = time.monotonic() - wait_started
            if waited > 0.001:
                self.stats["rate_limit_wait_total"] += waited
                self.item_log.log_rate_limited(waited, item_key=item.item_key)

            try:
                result = await provider.fetch(item.item_key)
            except Exception as e:
                return self.error_handler.classify_exception(item.item_key, e)

        return self.error_handler.classify_result(item.item_key, result)

    async def _ack(self, message: BrokerMessage, disposition: MessageDisposition) -> MessageDisposition:
        _, broker, _, _ = self._components()
        try:
            await broker.ack(message)
        except Exception as e:
            logger.error(f"Failed to acknowledge message {message.message_id}: {e}")
            self.stats.record_error("ack_error")
            return MessageDisposition.FAILED
        return disposition

    def get_status(self) -> Dict[str, Any]:
        """Get current worker status"""
        return {
            "worker_id": self.worker_id,
            "status": self.status.value,
            "uptime_seconds": (datetime.now(timezone.utc) - self.stats["worker_started_at"]).total_seconds(),
            "shutdown_requested": self._shutdown_requested,
            "providers": [p.name for p in self.providers],
            "components_initialized": {
                "orchestrator": self.orchestrator is not None,
                "broker": self.broker is not None,
                "health_monitor": self.health_monitor is not None,
                "rate_limiter": self.rate_limiter is not None,
            },
        }

    def get_stats(self) -> Dict[str, Any]:
        """Get comprehensive worker statistics"""
        stats: Dict[str, Any] = self.stats.get_summary()
        stats["error_handler"] = self.error_handler.get_stats()

        if self.broker:
            stats["broker"] = self.broker.get_stats()
        if self.rate_limiter:
            stats["rate_limiter"] = self.rate_limiter.get_stats()
        if self.orchestrator:
            stats["orchestrator"] = self.orchestrator.get_stats()
        if self.health_monitor:
            stats["health"] = {
                "healthy_providers": self.health_monitor.healthy_providers(),
                "unhealthy_providers": self.health_monitor.unhealthy_providers(),
            }

        return stats

    async def health_check(self) -> Dict[str, Any]:
        """Perform comprehensive health check"""
        health: Dict[str, Any] = {
            "status": "healthy",
            "worker_status": self.status.value,
            "worker_id": self.worker_id,
            "components": {},
        }

        try:
            if self.health_monitor:
                await self.health_monitor.check_health()
                record = self.health_monitor.status()
                health["components"]["providers"] = {
                    "status": "healthy" if record.is_healthy else "unhealthy",
                    "healthy": self.health_monitor.healthy_providers(),
                    "unhealthy": self.health_monitor.unhealthy_providers(),
                }

            if self.broker:
                health["components"]["broker"] = await self.broker.health_check()

            if self.orchestrator:
                health["components"]["store"] = await self.orchestrator.store.health_check()

            component_statuses = [comp.get("status", "unknown") for comp in health["components"].values()]
            if any(status == "unhealthy" for status in component_statuses):
                health["status"] = "unhealthy"

        except Exception as e:
            health["status"] = "unhealthy"
            health["error"] = str(e)

        return health

    async def shutdown(self):
        """Gracefully shutdown the worker"""
        logger.info(f"Shutting down CEP worker {self.worker_id}...")
        self._shutdown_requested = True
        self.status = WorkerStatus.STOPPING

        try:
            if self._main_task and not self._main_task.done() and self._main_task is not asyncio.current_task():
                self._main_task.cancel()
                try:
                    await self._main_task
                except asyncio.CancelledError:
                    pass

            # Shutdown components in reverse order of initialization
            if self.health_monitor:
                await self.health_monitor.stop()

            if self.rate_limiter:
                await self.rate_limiter.close()

            for provider in self.providers:
                await provider.close()

            if self.broker:
                await self.broker.close()

            self.status = WorkerStatus.STOPPED
            logger.info(f"CEP worker {self.worker_id} shutdown complete")

        except Exception as e:
            logger.error(f"Error during shutdown: {e}")
            self.status = WorkerStatus.ERROR

    def setup_signal_handlers(self):
        """Setup signal handlers for graceful shutdown"""

        def signal_handler(sig: int, frame: Any):
            logger.info(f"Received signal {sig}, requesting shutdown...")
            asyncio.create_task(self.shutdown())

        signal.signal(signal.SIGTERM, signal_handler)
        signal.signal(signal.SIGINT, signal_handler)
