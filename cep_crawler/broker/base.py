"""
Broker contract and queue statistics shared by the SQS and in-memory brokers.
"""

from typing import Any, Dict, List, Protocol, Sequence, runtime_checkable

from pydantic import BaseModel

from ..core.types import BrokerMessage, WorkItem


class QueueStats(BaseModel):
    """Statistics for queue operations"""

    messages_sent: int = 0
    messages_send_failed: int = 0
    messages_received: int = 0
    messages_acked: int = 0
    messages_released: int = 0
    duplicates_suppressed: int = 0
    batch_operations: int = 0
    api_errors: int = 0


@runtime_checkable
class Broker(Protocol):
    async def initialize(self) -> None: ...

    async def send_work_items(self, items: Sequence[WorkItem]) -> int:
        """
        Enqueue work items.

        Returns:
            Number of items accepted

        Raises:
            EnqueueError: If any item is rejected
        """
        ...

    async def receive_messages(self, max_messages: int = 10) -> List[BrokerMessage]: ...

    async def ack(self, message: BrokerMessage) -> None:
        """Remove a processed message from the queue."""
        ...

    async def release(self, message: BrokerMessage, delay_seconds: int = 0) -> None:
        """Hand a message back for redelivery after `delay_seconds`."""
        ...

    async def health_check(self) -> Dict[str, Any]: ...

    def get_stats(self) -> Dict[str, Any]: ...

    async def close(self) -> None: ...
