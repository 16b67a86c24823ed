"""
DynamoDB-backed job store.

Progress counters use atomic ADD updates guarded by
`processed_count < total_items`; result uniqueness and status transitions
are conditional writes. A result and its progress increment are committed
together in one TransactWrite. No operation reads a value, changes it in
Python and writes it back.
"""

import logging
from datetime import datetime
from itertools import islice
from typing import Any, Dict, List, Optional

from pynamodb.connection import Connection
from pynamodb.exceptions import DoesNotExist
from pynamodb.expressions.operand import Path
from pynamodb.transactions import TransactWrite

from ..config.settings import CrawlerSettings
from ..core.exceptions import (
    ConditionalCheckFailedError,
    DuplicateItemResult,
    JobNotFound,
    StoreError,
    TransactionCanceledError,
)
from ..core.types import ItemResult, Job, JobStatus, utc_now
from .client import DynamoDBClient
from .models import CrawlJobModel, ItemResultModel

logger = logging.getLogger(__name__)

# TransactWrite sends puts before updates
RESULT_PUT_INDEX = 0
JOB_UPDATE_INDEX = 1


class DynamoDBJobStore:
    def __init__(self, settings: CrawlerSettings, client: Optional[DynamoDBClient] = None):
        self.settings = settings
        self.client = client or DynamoDBClient(settings)
        self._transaction_connection: Optional[Connection] = None

    async def create_job(self, job: Job) -> None:
        model = CrawlJobModel.from_job(job)

        def _create() -> None:
            model.save(condition=CrawlJobModel.job_id.does_not_exist())

        try:
            await self.client.run(_create, "create_job")
        except ConditionalCheckFailedError as e:
            raise StoreError(f"Job {job.id} already exists", e) from e

        logger.debug(f"Created job {job.id} with {job.total_items} items")

    async def get_job(self, job_id: str) -> Optional[Job]:
        def _get() -> Optional[Job]:
            try:
                return CrawlJobModel.get(job_id).to_job()
            except DoesNotExist:
                return None

        return await self.client.run(_get, "get_job")

    async def job_exists(self, job_id: str) -> bool:
        def _count() -> int:
            return CrawlJobModel.count(job_id, limit=1)

        return await self.client.run(_count, "job_exists") > 0

    async def insert_item_result(self, result: ItemResult) -> None:
        model = ItemResultModel.from_result(result)

        def _insert() -> None:
            model.save(condition=ItemResultModel.item_key.does_not_exist())

        try:
            await self.client.run(_insert, "insert_item_result")
        except ConditionalCheckFailedError:
            raise DuplicateItemResult(result.job_id, result.item_key)

    async def increment_progress(self, job_id: str, success: bool) -> Optional[Job]:
        counter = CrawlJobModel.success_count if success else CrawlJobModel.error_count

        def _increment() -> Job:
            job = CrawlJobModel(job_id)
            job.update(
                actions=[
                    CrawlJobModel.processed_count.add(1),
                    counter.add(1),
                    CrawlJobModel.updated_at.set(utc_now()),
                ],
                condition=(
                    CrawlJobModel.job_id.exists()
                    & (CrawlJobModel.processed_count < Path(CrawlJobModel.total_items))
                ),
            )
            # update() refreshes the instance from the ALL_NEW response
            return job.to_job()

        try:
            return await self.client.run(_increment, "increment_progress")
        except ConditionalCheckFailedError:
            if not await self.job_exists(job_id):
                raise JobNotFound(job_id)
            logger.warning(f"Job {job_id} is already fully counted; increment skipped")
            return None

    async def item_result_exists(self, job_id: str, item_key: str) -> bool:
        def _count() -> int:
            return ItemResultModel.count(job_id, ItemResultModel.item_key == item_key, limit=1)

        return await self.client.run(_count, "item_result_exists") > 0

    def _connection(self) -> Connection:
        if self._transaction_connection is None:
            self._transaction_connection = Connection(
                region=self.settings.aws_region,
                host=self.settings.localstack_endpoint,
                aws_access_key_id=self.settings.aws_access_key_id,
                aws_secret_access_key=self.settings.aws_secret_access_key,
                aws_session_token=self.settings.aws_session_token,
            )
        return self._transaction_connection

    async def record_and_advance(self, result: ItemResult) -> Optional[Job]:
        model = ItemResultModel.from_result(result)
        counter = CrawlJobModel.success_count if result.success else CrawlJobModel.error_count

        def _commit() -> None:
            with TransactWrite(connection=self._connection()) as transaction:
                transaction.save(model, condition=ItemResultModel.item_key.does_not_exist())
                transaction.update(
                    CrawlJobModel(result.job_id),
                    actions=[
                        CrawlJobModel.processed_count.add(1),
                        counter.add(1),
                        CrawlJobModel.updated_at.set(utc_now()),
                    ],
                    condition=(
                        CrawlJobModel.job_id.exists()
                        & (CrawlJobModel.processed_count < Path(CrawlJobModel.total_items))
                    ),
                )

        try:
            await self.client.run(_commit, "record_and_advance")
        except TransactionCanceledError as e:
            if e.failed_item(RESULT_PUT_INDEX):
                raise DuplicateItemResult(result.job_id, result.item_key)
            if e.failed_item(JOB_UPDATE_INDEX):
                if not await self.job_exists(result.job_id):
                    raise JobNotFound(result.job_id)
                logger.warning(f"Job {result.job_id} is already fully counted; {result.item_key} not recorded")
                return None
            raise

        def _read_back() -> Optional[Job]:
            try:
                return CrawlJobModel.get(result.job_id, consistent_read=True).to_job()
            except DoesNotExist:
                return None

        return await self.client.run(_read_back, "record_and_advance_read")

    async def mark_finished(self, job_id: str, finished_at: datetime) -> bool:
        def _finish() -> None:
            CrawlJobModel(job_id).update(
                actions=[
                    CrawlJobModel.status.set(JobStatus.FINISHED.value),
                    CrawlJobModel.finished_at.set(finished_at),
                    CrawlJobModel.updated_at.set(utc_now()),
                ],
                condition=(
                    CrawlJobModel.status.is_in(JobStatus.PENDING.value, JobStatus.RUNNING.value)
                    & (CrawlJobModel.processed_count == Path(CrawlJobModel.total_items))
                ),
            )

        try:
            await self.client.run(_finish, "mark_finished")
            return True
        except ConditionalCheckFailedError:
            if not await self.job_exists(job_id):
                raise JobNotFound(job_id)
            return False

    async def mark_running(self, job_id: str, started_at: datetime) -> bool:
        def _start() -> None:
            CrawlJobModel(job_id).update(
                actions=[
                    CrawlJobModel.status.set(JobStatus.RUNNING.value),
                    CrawlJobModel.started_at.set(started_at),
                    CrawlJobModel.updated_at.set(utc_now()),
                ],
                condition=CrawlJobModel.status == JobStatus.PENDING.value,
            )

        try:
            await self.client.run(_start, "mark_running")
            return True
        except ConditionalCheckFailedError:
            if not await self.job_exists(job_id):
                raise JobNotFound(job_id)
            return False

    async def list_item_results(self, job_id: str, offset: int, limit: int) -> List[ItemResult]:
        def _list() -> List[ItemResult]:
            query = ItemResultModel.by_creation.query(job_id, scan_index_forward=False, limit=offset + limit)
            return [model.to_result() for model in islice(query, offset, offset + limit)]

        return await self.client.run(_list, "list_item_results")

    async def count_item_results(self, job_id: str) -> int:
        def _count() -> int:
            return ItemResultModel.count(job_id)

        return await self.client.run(_count, "count_item_results")

    async def health_check(self) -> Dict[str, Any]:
        def _describe() -> Dict[str, Any]:
            return {
                "jobs_table": CrawlJobModel.describe_table().get("TableStatus"),
                "results_table": ItemResultModel.describe_table().get("TableStatus"),
            }

        try:
            tables = await self.client.run(_describe, "describe_tables")
            return {"status": "healthy", "tables": tables, "stats": self.client.get_stats()}
        except StoreError as e:
            return {"status": "unhealthy", "error": str(e)}
