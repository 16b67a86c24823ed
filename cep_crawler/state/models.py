"""
DynamoDB models for crawl jobs and per-CEP results.

Job counters are plain number attributes so workers can bump them with
atomic ADD updates. Results are keyed by (job_id, item_key), which makes
the duplicate check a conditional put.
"""

from __future__ import annotations

from datetime import datetime, timezone

from pynamodb.attributes import (
    BooleanAttribute,
    JSONAttribute,
    NumberAttribute,
    UnicodeAttribute,
    UTCDateTimeAttribute,
)
from pynamodb.indexes import AllProjection, LocalSecondaryIndex
from pynamodb.models import Model

from ..config.settings import CrawlerSettings, get_cached_settings
from ..core.types import ItemResult, Job, JobStatus


def _now() -> datetime:
    return datetime.now(timezone.utc)


class CrawlJobModel(Model):
    """One row per crawl request."""

    class Meta:  # type: ignore[reportIncompatibleVariableOverride]
        table_name = "cep-crawl-jobs"
        region = "us-east-1"
        host = None  # Set to the LocalStack endpoint for devlocal
        billing_mode = "PAY_PER_REQUEST"

    job_id = UnicodeAttribute(hash_key=True)

    range_start = UnicodeAttribute()
    range_end = UnicodeAttribute()
    total_items = NumberAttribute()

    processed_count = NumberAttribute(default=0)
    success_count = NumberAttribute(default=0)
    error_count = NumberAttribute(default=0)

    status = UnicodeAttribute(default=JobStatus.PENDING.value)
    started_at = UTCDateTimeAttribute(null=True)
    finished_at = UTCDateTimeAttribute(null=True)

    created_at = UTCDateTimeAttribute(default=_now)
    updated_at = UTCDateTimeAttribute(default=_now)

    @classmethod
    def from_job(cls, job: Job) -> "CrawlJobModel":
        return cls(
            job.id,
            range_start=job.range_start,
            range_end=job.range_end,
            total_items=job.total_items,
            processed_count=job.processed_count,
            success_count=job.success_count,
            error_count=job.error_count,
            status=job.status.value,
            started_at=job.started_at,
            finished_at=job.finished_at,
            created_at=job.created_at,
            updated_at=job.updated_at,
        )

    def to_job(self) -> Job:
        return Job(
            id=self.job_id,
            range_start=self.range_start,
            range_end=self.range_end,
            total_items=int(self.total_items),
            processed_count=int(self.processed_count),
            success_count=int(self.success_count),
            error_count=int(self.error_count),
            status=JobStatus(self.status),
            started_at=self.started_at,
            finished_at=self.finished_at,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


class ResultsByCreationIndex(LocalSecondaryIndex["ItemResultModel"]):
    """
    LSI ordering a job's results by insertion time.

    Queried with scan_index_forward=False for newest-first pages.
    """

    class Meta:
        index_name = "ResultsByCreationIndex"
        projection = AllProjection()

    job_id = UnicodeAttribute(hash_key=True)
    created_seq = UnicodeAttribute(range_key=True)


class ItemResultModel(Model):
    """One row per (job, CEP) outcome."""

    class Meta:  # type: ignore[reportIncompatibleVariableOverride]
        table_name = "cep-crawl-results"
        region = "us-east-1"
        host = None
        billing_mode = "PAY_PER_REQUEST"

    job_id = UnicodeAttribute(hash_key=True)
    item_key = UnicodeAttribute(range_key=True)

    success = BooleanAttribute()
    payload = JSONAttribute(null=True)
    error_message = UnicodeAttribute(null=True)
    retry_count = NumberAttribute(default=0)

    created_at = UTCDateTimeAttribute(default=_now)
    # ISO timestamp plus item key, so ties on created_at still sort deterministically
    created_seq = UnicodeAttribute()

    by_creation = ResultsByCreationIndex()

    @staticmethod
    def sequence_key(created_at: datetime, item_key: str) -> str:
        return f"{created_at.astimezone(timezone.utc).isoformat()}#{item_key}"

    @classmethod
    def from_result(cls, result: ItemResult) -> "ItemResultModel":
        return cls(
            result.job_id,
            result.item_key,
            success=result.success,
            payload=result.payload,
            error_message=result.error_message,
            retry_count=result.retry_count,
            created_at=result.created_at,
            created_seq=cls.sequence_key(result.created_at, result.item_key),
        )

    def to_result(self) -> ItemResult:
        return ItemResult(
            job_id=self.job_id,
            item_key=self.item_key,
            success=bool(self.success),
            payload=self.payload,
            error_message=self.error_message,
            retry_count=int(self.retry_count or 0),
            created_at=self.created_at,
        )


def initialize_models(settings: CrawlerSettings | None = None) -> None:
    """
    Point the models at the configured tables, region and endpoint.

    Must run before the first request: pynamodb caches the connection per
    model class once it is created.
    """
    settings = settings or get_cached_settings()

    for model, table_name in (
        (CrawlJobModel, settings.dynamodb_jobs_table),
        (ItemResultModel, settings.dynamodb_results_table),
    ):
        model.Meta.table_name = table_name
        model.Meta.region = settings.aws_region
        model.Meta.host = settings.localstack_endpoint
        if settings.aws_access_key_id:
            model.Meta.aws_access_key_id = settings.aws_access_key_id
        if settings.aws_secret_access_key:
            model.Meta.aws_secret_access_key = settings.aws_secret_access_key
        if settings.aws_session_token:
            model.Meta.aws_session_token = settings.aws_session_token


def create_tables_if_not_exist() -> None:
    """Create both tables if they don't exist (local development)."""
    if not CrawlJobModel.exists():
        CrawlJobModel.create_table(wait=True, billing_mode="PAY_PER_REQUEST")

    if not ItemResultModel.exists():
        ItemResultModel.create_table(wait=True, billing_mode="PAY_PER_REQUEST")


if __name__ == "__main__":
    # CLI utility for table management
    import sys

    if len(sys.argv) < 2:
        print("Usage: python -m cep_crawler.state.models [create|describe|delete]")
        sys.exit(1)

    command = sys.argv[1]

    initialize_models()

    if command == "create":
        print("Creating DynamoDB tables...")
        create_tables_if_not_exist()
        print("Tables created successfully!")

    elif command == "describe":
        for model in (CrawlJobModel, ItemResultModel):
            print(f"{model.__name__}:")
            print(f"  Table name: {model.Meta.table_name}")
            print(f"  Exists: {model.exists()}")

    elif command == "delete":
        print("Deleting DynamoDB tables...")
        for model in (CrawlJobModel, ItemResultModel):
            if model.exists():
                model.delete_table()
        print("Tables deleted!")

    else:
        print(f"Unknown command: {command}")
        sys.exit(1)
