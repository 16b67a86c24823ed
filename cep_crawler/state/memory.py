"""
In-memory job store for local development and tests.

Provides the same interface and conditional semantics as DynamoDBJobStore;
a single asyncio lock stands in for the store-side atomicity.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from ..core.exceptions import DuplicateItemResult, JobNotFound, StoreError
from ..core.types import ItemResult, Job, JobStatus, utc_now

logger = logging.getLogger(__name__)


class InMemoryJobStore:
    def __init__(self) -> None:
        self._jobs: Dict[str, Job] = {}
        self._results: Dict[Tuple[str, str], ItemResult] = {}
        self._results_by_job: Dict[str, List[ItemResult]] = {}
        self._lock = asyncio.Lock()

        self.stats = {
            "jobs_created": 0,
            "results_inserted": 0,
            "duplicate_results": 0,
            "increments": 0,
        }

        logger.info("Initialized in-memory job store")

    async def create_job(self, job: Job) -> None:
        async with self._lock:
            if job.id in self._jobs:
                raise StoreError(f"Job {job.id} already exists")
            self._jobs[job.id] = job.model_copy()
            self._results_by_job[job.id] = []
            self.stats["jobs_created"] += 1

    async def get_job(self, job_id: str) -> Optional[Job]:
        job = self._jobs.get(job_id)
        return job.model_copy() if job is not None else None

    async def job_exists(self, job_id: str) -> bool:
        return job_id in self._jobs

    async def insert_item_result(self, result: ItemResult) -> None:
        key = (result.job_id, result.item_key)
        async with self._lock:
            if key in self._results:
                self.stats["duplicate_results"] += 1
                raise DuplicateItemResult(result.job_id, result.item_key)
            self._store_result(result)

    def _store_result(self, result: ItemResult) -> None:
        stored = result.model_copy()
        self._results[(result.job_id, result.item_key)] = stored
        self._results_by_job.setdefault(result.job_id, []).append(stored)
        self.stats["results_inserted"] += 1

    def _increment(self, job_id: str, success: bool) -> Optional[Job]:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFound(job_id)
        if job.processed_count >= job.total_items:
            return None

        updated = job.model_copy(
            update={
                "processed_count": job.processed_count + 1,
                "success_count": job.success_count + (1 if success else 0),
                "error_count": job.error_count + (0 if success else 1),
                "updated_at": utc_now(),
            }
        )
        self._jobs[job_id] = updated
        self.stats["increments"] += 1
        return updated.model_copy()

    async def increment_progress(self, job_id: str, success: bool) -> Optional[Job]:
        async with self._lock:
            return self._increment(job_id, success)

    async def item_result_exists(self, job_id: str, item_key: str) -> bool:
        return (job_id, item_key) in self._results

    async def record_and_advance(self, result: ItemResult) -> Optional[Job]:
        async with self._lock:
            if (result.job_id, result.item_key) in self._results:
                self.stats["duplicate_results"] += 1
                raise DuplicateItemResult(result.job_id, result.item_key)

            job = self._increment(result.job_id, result.success)
            if job is not None:
                self._store_result(result)
            return job

    async def mark_finished(self, job_id: str, finished_at: datetime) -> bool:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFound(job_id)
            if job.is_terminal or job.processed_count != job.total_items:
                return False
            self._jobs[job_id] = job.model_copy(
                update={"status": JobStatus.FINISHED, "finished_at": finished_at, "updated_at": utc_now()}
            )
            return True

    async def mark_running(self, job_id: str, started_at: datetime) -> bool:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFound(job_id)
            if job.status != JobStatus.PENDING:
                return False
            self._jobs[job_id] = job.model_copy(
                update={"status": JobStatus.RUNNING, "started_at": started_at, "updated_at": utc_now()}
            )
            return True

    async def list_item_results(self, job_id: str, offset: int, limit: int) -> List[ItemResult]:
        results = self._results_by_job.get(job_id, [])
        newest_first = list(reversed(results))
        return [r.model_copy() for r in newest_first[offset : offset + limit]]

    async def count_item_results(self, job_id: str) -> int:
        return len(self._results_by_job.get(job_id, []))

    async def health_check(self) -> Dict[str, Any]:
        return {"status": "healthy", "jobs": len(self._jobs), "results": len(self._results), "stats": self.stats}
