"""
Crawl orchestrator.

Accepts range lookup requests, persists the job, fans the range out into
one broker message per CEP, and owns the job lifecycle: result recording,
progress counting and the transition to `finished`.
"""

import asyncio
import logging
import re
from typing import Any, Dict, List, Optional
from uuid import uuid4

from ..broker.base import Broker
from ..config.settings import CrawlerSettings
from ..core.exceptions import (
    DuplicateItemResult,
    EnqueueError,
    InvalidRange,
    PartialEnqueueError,
    StoreError,
    UpstreamUnavailable,
)
from ..core.types import CreateJobResult, ItemResult, Job, ResultsPage, WorkItem, utc_now
from ..health.monitor import HealthMonitor
from ..state.base import JobStore

logger = logging.getLogger(__name__)

JOB_ID_PATTERN = re.compile(r"^[0-9a-f]{32}$")
DIGITS_PATTERN = re.compile(r"[0-9]+")
ENQUEUE_BATCH_SIZE = 10  # SQS send_message_batch limit


def validate_range(range_start: str, range_end: str, max_items: int, key_width: Optional[int] = None) -> int:
    """
    Check a requested key range and return the number of keys it covers.

    Raises:
        InvalidRange: If either key is not all ASCII digits, the widths differ (or
            differ from `key_width`), start > end, or the span exceeds `max_items`
    """
    if not DIGITS_PATTERN.fullmatch(range_start or "") or not DIGITS_PATTERN.fullmatch(range_end or ""):
        raise InvalidRange("Range bounds must contain only digits", range_start, range_end)
    if len(range_start) != len(range_end):
        raise InvalidRange("Range bounds must have the same width", range_start, range_end)
    if key_width is not None and len(range_start) != key_width:
        raise InvalidRange(f"Range bounds must be {key_width} digits long", range_start, range_end)

    start, end = int(range_start), int(range_end)
    if start > end:
        raise InvalidRange("Range start must be less than or equal to range end", range_start, range_end)

    total = end - start + 1
    if total > max_items:
        raise InvalidRange(f"Range too large: maximum {max_items} CEPs per request", range_start, range_end)
    return total


def _build_result(
    job_id: str, item_key: str, success: bool, payload: Optional[Dict[str, Any]], error_message: Optional[str]
) -> ItemResult:
    return ItemResult(
        job_id=job_id,
        item_key=item_key,
        success=success,
        payload=payload if success else None,
        error_message=None if success else error_message,
    )


def is_valid_job_id(job_id: str) -> bool:
    return bool(JOB_ID_PATTERN.match(job_id or ""))


class CrawlOrchestrator:
    """
    Entry point for range lookup jobs.

    Safe to share between the API process and any number of workers: every
    counter change is delegated to the store as a single atomic operation.
    """

    def __init__(
        self,
        store: JobStore,
        broker: Broker,
        health_monitor: HealthMonitor,
        settings: CrawlerSettings,
    ):
        self.store = store
        self.broker = broker
        self.health_monitor = health_monitor
        self.settings = settings

        self.stats: Dict[str, int] = {
            "jobs_created": 0,
            "jobs_rejected_unhealthy": 0,
            "jobs_partially_enqueued": 0,
            "jobs_finished": 0,
            "duplicate_outcomes": 0,
        }

    async def _ensure_upstream_healthy(self) -> None:
        if self.health_monitor.is_healthy():
            return
        # One fresh check before refusing; the cached flag may be stale
        if await self.health_monitor.check_health():
            return

        self.stats["jobs_rejected_unhealthy"] += 1
        status = self.health_monitor.status()
        logger.warning(
            "Rejecting crawl request: no healthy CEP provider",
            extra={
                "provider": status.provider_name,
                "consecutive_failures": status.consecutive_failures,
                "unhealthy_members": status.unhealthy_members,
            },
        )
        raise UpstreamUnavailable("CEP provider is currently unavailable", status)

    async def create_job(self, range_start: str, range_end: str) -> CreateJobResult:
        """
        Validate the range, persist a pending job and enqueue one work item per key.

        Raises:
            InvalidRange: If the range is malformed (nothing persisted)
            UpstreamUnavailable: If no provider is healthy (nothing persisted)
            PartialEnqueueError: If the broker failed after the job was persisted
        """
        total_items = validate_range(
            range_start, range_end, self.settings.max_items_per_job, key_width=self.settings.key_width
        )
        await self._ensure_upstream_healthy()

        now = utc_now()
        job = Job(
            id=uuid4().hex,
            range_start=range_start,
            range_end=range_end,
            total_items=total_items,
            created_at=now,
            updated_at=now,
        )
        await self.store.create_job(job)
        self.stats["jobs_created"] += 1

        logger.info(
            f"Created crawl job {job.id} for {range_start}-{range_end}",
            extra={"job_id": job.id, "total_items": total_items},
        )

        await self._enqueue_range(job)

        return CreateJobResult(job_id=job.id, total_items=total_items)

    async def _enqueue_range(self, job: Job) -> None:
        width = len(job.range_start)
        start = int(job.range_start)
        enqueued = 0

        for offset in range(0, job.total_items, ENQUEUE_BATCH_SIZE):
            batch: List[WorkItem] = [
                WorkItem(job_id=job.id, item_key=str(start + i).zfill(width))
                for i in range(offset, min(offset + ENQUEUE_BATCH_SIZE, job.total_items))
            ]
            try:
                await self.broker.send_work_items(batch)
            except EnqueueError as e:
                self.stats["jobs_partially_enqueued"] += 1
                logger.error(
                    f"Enqueue failed for job {job.id} after {enqueued} of {job.total_items} items: {e}",
                    extra={"job_id": job.id, "enqueued": enqueued, "failed_ids": e.failed_ids},
                )
                raise PartialEnqueueError(job.id, enqueued, job.total_items) from e

            enqueued += len(batch)
            # Let cancellation and other tasks in between batches
            await asyncio.sleep(0)

        logger.debug(f"Enqueued {enqueued} work items for job {job.id}")

    async def get_status(self, job_id: str) -> Optional[Job]:
        if not is_valid_job_id(job_id):
            return None
        return await self.store.get_job(job_id)

    async def get_results(self, job_id: str, page: int = 1, page_size: int = 50) -> Optional[ResultsPage]:
        """
        One page of results, newest first.

        Returns None if the job does not exist; a page past the end is empty.
        """
        if page < 1:
            raise ValueError("page must be >= 1")
        if page_size < 1:
            raise ValueError("page_size must be >= 1")

        if not is_valid_job_id(job_id) or not await self.store.job_exists(job_id):
            return None

        offset = (page - 1) * page_size
        items, total = await asyncio.gather(
            self.store.list_item_results(job_id, offset, page_size),
            self.store.count_item_results(job_id),
        )
        return ResultsPage(job_id=job_id, items=items, page=page, page_size=page_size, total=total)

    async def record_item_outcome(
        self,
        job_id: str,
        item_key: str,
        success: bool,
        payload: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None,
    ) -> bool:
        """
        Store the outcome of one lookup.

        Returns:
            True if inserted, False if a result for this key already existed
        """
        result = _build_result(job_id, item_key, success, payload, error_message)
        try:
            await self.store.insert_item_result(result)
        except DuplicateItemResult:
            self.stats["duplicate_outcomes"] += 1
            logger.info(
                f"Result for {item_key} in job {job_id} already recorded; skipping",
                extra={"job_id": job_id, "item_key": item_key},
            )
            return False
        return True

    async def advance_progress(self, job_id: str, success: bool) -> Optional[Job]:
        """
        Count one processed item and finish the job on the last one.

        Returns:
            The job after the increment, or None if it was already fully counted
        """
        job = await self.store.increment_progress(job_id, success)
        if job is None:
            return None
        return await self._finish_if_complete(job)

    async def record_and_advance(
        self,
        job_id: str,
        item_key: str,
        success: bool,
        payload: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None,
    ) -> bool:
        """
        Store the outcome of one lookup and count it in a single store write.

        A failure leaves neither the result nor the increment behind, so a
        redelivered message can record the item again.

        Returns:
            True if recorded and counted, False if the key was already recorded
            or the job was already fully counted
        """
        result = _build_result(job_id, item_key, success, payload, error_message)
        try:
            job = await self.store.record_and_advance(result)
        except DuplicateItemResult:
            self.stats["duplicate_outcomes"] += 1
            logger.info(
                f"Result for {item_key} in job {job_id} already recorded; skipping",
                extra={"job_id": job_id, "item_key": item_key},
            )
            await self.finish_if_complete(job_id)
            return False

        if job is None:
            return False
        await self._finish_if_complete(job)
        return True

    async def is_item_recorded(self, job_id: str, item_key: str) -> bool:
        return await self.store.item_result_exists(job_id, item_key)

    async def finish_if_complete(self, job_id: str) -> Optional[Job]:
        """Finish a fully counted job that is still open. Used after duplicate deliveries."""
        job = await self.store.get_job(job_id)
        if job is None:
            return None
        return await self._finish_if_complete(job)

    async def _finish_if_complete(self, job: Job) -> Job:
        if job.processed_count < job.total_items or job.is_terminal:
            return job

        if await self.store.mark_finished(job.id, utc_now()):
            self.stats["jobs_finished"] += 1
            logger.info(
                f"Crawl job {job.id} finished",
                extra={
                    "job_id": job.id,
                    "success_count": job.success_count,
                    "error_count": job.error_count,
                },
            )
            job = await self.store.get_job(job.id) or job
        return job

    async def mark_running(self, job_id: str) -> bool:
        """
        Flip a pending job to running. Store failures are logged, not raised.

        Raises:
            JobNotFound: If the job does not exist
        """
        try:
            return await self.store.mark_running(job_id, utc_now())
        except StoreError as e:
            logger.warning(f"Failed to mark job {job_id} as running: {e}", extra={"job_id": job_id})
            return False

    def get_stats(self) -> Dict[str, int]:
        return dict(self.stats)
