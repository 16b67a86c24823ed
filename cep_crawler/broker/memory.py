"""
In-process broker for local development and tests.

Mimics the SQS behaviour the worker relies on: messages stay in flight
until acknowledged, released messages come back (optionally after a delay),
and ids act as deduplication keys while a message is queued or in flight.
"""

import asyncio
import logging
import time
from collections import deque
from typing import Any, Deque, Dict, List, Sequence, Tuple
from uuid import uuid4

from ..core.types import BrokerMessage, WorkItem
from .base import QueueStats
from .codec import encode_work_item

logger = logging.getLogger(__name__)


class InMemoryBroker:
    def __init__(self, visibility_timeout_seconds: float = 60.0):
        self.visibility_timeout_seconds = visibility_timeout_seconds

        # (available_at, message_id, body, receive_count)
        self._ready: Deque[Tuple[float, str, str, int]] = deque()
        self._in_flight: Dict[str, Tuple[float, str, str, int]] = {}  # receipt_handle -> (deadline, id, body, count)
        self._known_ids: set[str] = set()
        self._lock = asyncio.Lock()

        self.stats = QueueStats()

    async def initialize(self) -> None:
        logger.info("In-memory broker initialized")

    async def send_work_items(self, items: Sequence[WorkItem]) -> int:
        now = time.monotonic()
        accepted = 0
        async with self._lock:
            for item in items:
                message = encode_work_item(item)
                if message["id"] in self._known_ids:
                    self.stats.duplicates_suppressed += 1
                    logger.debug(f"Suppressed duplicate message {message['id']}")
                    continue
                self._known_ids.add(message["id"])
                self._ready.append((now, message["id"], message["body"], 0))
                accepted += 1
            self.stats.messages_sent += accepted
            self.stats.batch_operations += 1
        return accepted

    def _requeue_expired(self, now: float) -> None:
        expired = [handle for handle, entry in self._in_flight.items() if entry[0] <= now]
        for handle in expired:
            _, message_id, body, count = self._in_flight.pop(handle)
            self._ready.append((now, message_id, body, count))

    async def receive_messages(self, max_messages: int = 10) -> List[BrokerMessage]:
        now = time.monotonic()
        messages: List[BrokerMessage] = []
        async with self._lock:
            self._requeue_expired(now)
            deferred: List[Tuple[float, str, str, int]] = []

            while self._ready and len(messages) < max_messages:
                available_at, message_id, body, count = self._ready.popleft()
                if available_at > now:
                    deferred.append((available_at, message_id, body, count))
                    continue
                handle = uuid4().hex
                self._in_flight[handle] = (now + self.visibility_timeout_seconds, message_id, body, count + 1)
                messages.append(
                    BrokerMessage(message_id=message_id, receipt_handle=handle, body=body, receive_count=count + 1)
                )

            self._ready.extendleft(reversed(deferred))
            self.stats.messages_received += len(messages)
        return messages

    async def ack(self, message: BrokerMessage) -> None:
        async with self._lock:
            entry = self._in_flight.pop(message.receipt_handle, None)
            if entry is None:
                logger.warning(f"Ack for unknown receipt handle {message.receipt_handle}")
                return
            self._known_ids.discard(entry[1])
            self.stats.messages_acked += 1

    async def release(self, message: BrokerMessage, delay_seconds: int = 0) -> None:
        async with self._lock:
            entry = self._in_flight.pop(message.receipt_handle, None)
            if entry is None:
                logger.warning(f"Release for unknown receipt handle {message.receipt_handle}")
                return
            _, message_id, body, count = entry
            self._ready.append((time.monotonic() + delay_seconds, message_id, body, count))
            self.stats.messages_released += 1

    def pending_count(self) -> int:
        return len(self._ready)

    def in_flight_count(self) -> int:
        return len(self._in_flight)

    async def health_check(self) -> Dict[str, Any]:
        return {
            "status": "healthy",
            "ready": self.pending_count(),
            "in_flight": self.in_flight_count(),
        }

    def get_stats(self) -> Dict[str, Any]:
        return self.stats.model_dump()

    async def close(self) -> None:
        logger.info("In-memory broker closed")
