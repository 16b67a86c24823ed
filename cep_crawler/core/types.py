"""
Core types for the CEP range crawler.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class WorkerStatus(str, Enum):
    """Worker instance status"""

    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    ERROR = "error"


class JobStatus(str, Enum):
    """Crawl job status. Transitions only move forward."""

    PENDING = "pending"
    RUNNING = "running"
    FINISHED = "finished"
    FAILED = "failed"


class ItemErrorType(str, Enum):
    """Types of per-item lookup failures"""

    NOT_FOUND = "not_found"
    RATE_LIMITED = "rate_limited"
    TRANSIENT = "transient"


class MessageDisposition(str, Enum):
    """What the worker did with a broker message"""

    ACKED = "acked"
    RETRY = "retry"
    DROPPED = "dropped"
    DEFERRED = "deferred"
    FAILED = "failed"


class Job(BaseModel):
    """One range lookup request and its aggregate progress"""

    id: str
    range_start: str
    range_end: str
    total_items: int = Field(ge=1)
    processed_count: int = 0
    success_count: int = 0
    error_count: int = 0
    status: JobStatus = JobStatus.PENDING
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def is_terminal(self) -> bool:
        return self.status in (JobStatus.FINISHED, JobStatus.FAILED)


class ItemResult(BaseModel):
    """Persisted outcome of one item lookup"""

    job_id: str
    item_key: str
    success: bool
    payload: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    retry_count: int = 0  # reserved, never incremented
    created_at: datetime = Field(default_factory=utc_now)


class WorkItem(BaseModel):
    """Work item carried by the broker"""

    model_config = ConfigDict(frozen=True)

    job_id: str = Field(min_length=1)
    item_key: str = Field(min_length=1)


class BrokerMessage(BaseModel):
    """A message delivered by a broker"""

    message_id: str
    receipt_handle: str
    body: Optional[str] = None
    receive_count: int = 1


class ProviderResult(BaseModel):
    """Result of one provider lookup"""

    success: bool
    payload: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    not_found: bool = False
    rate_limited: bool = False
    status_code: Optional[int] = None


class HealthRecord(BaseModel):
    """Health snapshot for one provider (or an aggregate of several)"""

    model_config = ConfigDict(frozen=True)

    provider_name: str
    is_healthy: bool = False
    last_check_at: Optional[datetime] = None
    consecutive_failures: int = 0
    # Aggregates only: members currently unhealthy
    unhealthy_members: int = 0


class CreateJobResult(BaseModel):
    job_id: str
    total_items: int
    message: str = "Crawl request created successfully"


class ResultsPage(BaseModel):
    """One page of item results, newest first"""

    job_id: str
    items: List[ItemResult] = Field(default_factory=list)
    page: int
    page_size: int
    total: int

    @property
    def total_pages(self) -> int:
        if self.total == 0:
            return 0
        return -(-self.total // self.page_size)
