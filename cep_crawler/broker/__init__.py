"""
Message broker integration for CEP work items.
"""

from ..config.settings import CrawlerSettings
from .base import Broker, QueueStats
from .codec import decode_work_item, encode_work_item, work_item_id
from .memory import InMemoryBroker
from .sqs import SQSBroker

__all__ = [
    "Broker",
    "QueueStats",
    "InMemoryBroker",
    "SQSBroker",
    "encode_work_item",
    "decode_work_item",
    "work_item_id",
    "create_broker",
]


def create_broker(settings: CrawlerSettings) -> Broker:
    """
    Factory function to create the broker selected in settings.

    Returns:
        SQSBroker, or InMemoryBroker for local single-process runs
    """
    if settings.broker_backend == "memory":
        return InMemoryBroker(visibility_timeout_seconds=settings.visibility_timeout_seconds)
    return SQSBroker(settings)
