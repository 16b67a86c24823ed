"""
Job and result persistence for the CEP range crawler.
"""

from ..config.settings import CrawlerSettings
from .base import JobStore
from .memory import InMemoryJobStore

__all__ = [
    "JobStore",
    "InMemoryJobStore",
    "create_job_store",
]


def create_job_store(settings: CrawlerSettings) -> JobStore:
    """
    Factory function to create the job store selected in settings.

    Returns:
        DynamoDBJobStore, or InMemoryJobStore for local single-process runs
    """
    if settings.store_backend == "memory":
        return InMemoryJobStore()

    # Imported lazily so the in-memory path never configures pynamodb models
    from .dynamodb_store import DynamoDBJobStore

    return DynamoDBJobStore(settings)
