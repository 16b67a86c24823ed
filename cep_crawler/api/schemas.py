"""
Request and response schemas for the crawl API.
"""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from ..core.types import HealthRecord, ItemResult, Job, ResultsPage

CEP_PATTERN = r"^[0-9]{8}$"


class CrawlCreateRequest(BaseModel):
    cep_start: str = Field(..., pattern=CEP_PATTERN, description="First CEP of the range (8 digits)")
    cep_end: str = Field(..., pattern=CEP_PATTERN, description="Last CEP of the range (8 digits)")


class CrawlResponse(BaseModel):
    crawl_id: str
    message: str
    total_ceps: int


class CrawlStatusResponse(BaseModel):
    crawl_id: str
    cep_start: str
    cep_end: str
    total_ceps: int
    processed_count: int
    success_count: int
    error_count: int
    status: Literal["pending", "running", "finished", "failed"]
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_job(cls, job: Job) -> "CrawlStatusResponse":
        return cls(
            crawl_id=job.id,
            cep_start=job.range_start,
            cep_end=job.range_end,
            total_ceps=job.total_items,
            processed_count=job.processed_count,
            success_count=job.success_count,
            error_count=job.error_count,
            status=job.status.value,
            started_at=job.started_at,
            finished_at=job.finished_at,
            created_at=job.created_at,
            updated_at=job.updated_at,
        )


class CrawlResultItem(BaseModel):
    cep: str
    success: bool
    data: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_result(cls, result: ItemResult) -> "CrawlResultItem":
        return cls(
            cep=result.item_key,
            success=result.success,
            data=result.payload,
            error_message=result.error_message,
            created_at=result.created_at,
        )


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int


class CrawlResultsResponse(BaseModel):
    crawl_id: str
    results: List[CrawlResultItem] = Field(default_factory=list)
    pagination: Pagination

    @classmethod
    def from_page(cls, page: ResultsPage) -> "CrawlResultsResponse":
        return cls(
            crawl_id=page.job_id,
            results=[CrawlResultItem.from_result(r) for r in page.items],
            pagination=Pagination(
                page=page.page,
                limit=page.page_size,
                total=page.total,
                total_pages=page.total_pages,
            ),
        )


class HealthStatus(BaseModel):
    status: Literal["ok", "degraded", "down"]
    providers: List[HealthRecord] = Field(default_factory=list)
