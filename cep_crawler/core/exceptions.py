"""
Custom exceptions for the CEP range crawler.
"""

from typing import Optional

from .types import HealthRecord


class CepCrawlerError(Exception):
    """Base exception for all crawler errors."""

    pass


class InvalidRange(CepCrawlerError):
    """Requested key range is malformed, inverted or too large."""

    def __init__(self, message: str, range_start: Optional[str] = None, range_end: Optional[str] = None):
        super().__init__(message)
        self.range_start = range_start
        self.range_end = range_end


class UpstreamUnavailable(CepCrawlerError):
    """No registered provider is currently healthy."""

    def __init__(self, message: str, status: Optional[HealthRecord] = None):
        super().__init__(message)
        self.status = status


class ItemFailure(CepCrawlerError):
    """Per-item lookup failure."""

    retryable = False

    def __init__(self, item_key: str, message: str):
        super().__init__(message)
        self.item_key = item_key


class ItemNotFound(ItemFailure):
    """Key does not exist upstream. Terminal."""

    pass


class ItemTransientFailure(ItemFailure):
    """Network error, bad response or upstream throttling. Redelivered by the broker."""

    retryable = True

    def __init__(self, item_key: str, message: str, rate_limited: bool = False):
        super().__init__(item_key, message)
        self.rate_limited = rate_limited


class DuplicateItemResult(CepCrawlerError):
    """A result for (job_id, item_key) has already been stored."""

    def __init__(self, job_id: str, item_key: str):
        super().__init__(f"Result for item {item_key} in job {job_id} already exists")
        self.job_id = job_id
        self.item_key = item_key


class JobNotFound(CepCrawlerError):
    """Job id is unknown to the store."""

    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class EnqueueError(CepCrawlerError):
    """Broker rejected one or more work items."""

    def __init__(self, message: str, failed_ids: Optional[list[str]] = None):
        super().__init__(message)
        self.failed_ids = failed_ids or []


class PartialEnqueueError(CepCrawlerError):
    """Job was persisted but not every work item reached the broker."""

    def __init__(self, job_id: str, enqueued: int, total_items: int):
        super().__init__(f"Job {job_id}: enqueued {enqueued} of {total_items} items before the broker failed")
        self.job_id = job_id
        self.enqueued = enqueued
        self.total_items = total_items


class StoreError(CepCrawlerError):
    """Persistence layer failure."""

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        super().__init__(message)
        self.original_error = original_error


class ThrottlingError(StoreError):
    """Store is throttling requests."""

    pass


class ConditionalCheckFailedError(StoreError):
    """Conditional write was rejected."""

    pass


class TransactionCanceledError(StoreError):
    """Transactional write was cancelled; `reasons` holds one code (or None) per item."""

    def __init__(self, message: str, original_error: Optional[Exception] = None, reasons: Optional[list] = None):
        super().__init__(message, original_error)
        self.reasons: list[Optional[str]] = list(reasons or [])

    def failed_item(self, index: int) -> bool:
        return index < len(self.reasons) and self.reasons[index] == "ConditionalCheckFailed"
