"""
Job store contract.

Every counter change and every uniqueness check happens inside the store as
a single atomic or conditional operation, so several worker processes can
share one store without read-modify-write races.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from ..core.types import ItemResult, Job


@runtime_checkable
class JobStore(Protocol):
    async def create_job(self, job: Job) -> None: ...

    async def get_job(self, job_id: str) -> Optional[Job]: ...

    async def job_exists(self, job_id: str) -> bool: ...

    async def insert_item_result(self, result: ItemResult) -> None:
        """
        Raises:
            DuplicateItemResult: If a result for (job_id, item_key) already exists
        """
        ...

    async def increment_progress(self, job_id: str, success: bool) -> Optional[Job]:
        """
        Add one to processed_count and to success_count or error_count.

        The increment is applied only while processed_count < total_items.

        Returns:
            The job as read back after the increment, or None if the job is
            already fully counted

        Raises:
            JobNotFound: If the job does not exist
        """
        ...

    async def item_result_exists(self, job_id: str, item_key: str) -> bool: ...

    async def record_and_advance(self, result: ItemResult) -> Optional[Job]:
        """
        Insert `result` and count it against its job as one atomic write.

        Either both the result and the increment land or neither does.

        Returns:
            The job as read back after the increment, or None if the job is
            already fully counted (nothing written)

        Raises:
            DuplicateItemResult: If a result for (job_id, item_key) already exists
            JobNotFound: If the job does not exist
        """
        ...

    async def mark_finished(self, job_id: str, finished_at: datetime) -> bool:
        """Set status=finished once processed_count == total_items; False if already terminal."""
        ...

    async def mark_running(self, job_id: str, started_at: datetime) -> bool:
        """Flip pending -> running; False for any other current status."""
        ...

    async def list_item_results(self, job_id: str, offset: int, limit: int) -> List[ItemResult]:
        """Results for a job, newest first."""
        ...

    async def count_item_results(self, job_id: str) -> int: ...

    async def health_check(self) -> Dict[str, Any]: ...
