"""
SQS broker for CEP work items.

Sends work items in batches, receives them with long polling, deletes them
once processed and hands failed ones back through the visibility timeout so
the queue's own redrive policy decides when to give up.
"""

import logging
from typing import Any, Dict, List, Optional, Sequence

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from ..config.settings import CrawlerSettings
from ..core.exceptions import EnqueueError
from ..core.types import BrokerMessage, WorkItem
from ..utils.retry import NETWORK_RETRY_CONFIG, AsyncRetrier
from .base import QueueStats
from .codec import encode_work_item

logger = logging.getLogger(__name__)

RETRYABLE_AWS_ERRORS = (BotoCoreError, ClientError)


class SQSBroker:
    """
    SQS-backed broker.

    FIFO queues (url ending in `.fifo`) get the work item id as the
    deduplication id and the job id as the message group.
    """

    def __init__(self, settings: CrawlerSettings, sqs_client: Optional[Any] = None):
        if not settings.sqs_queue_url:
            raise ValueError("sqs_queue_url is required for the SQS broker")

        self.settings = settings
        self.queue_url: str = settings.sqs_queue_url
        self.is_fifo = self.queue_url.endswith(".fifo")
        self.retrier = AsyncRetrier(NETWORK_RETRY_CONFIG)

        self._sqs_client: Optional[Any] = sqs_client

        # Batch processing configuration
        self.max_batch_size = 10  # SQS limit
        self.receive_wait_time = settings.receive_wait_seconds
        self.visibility_timeout = settings.visibility_timeout_seconds

        self.stats = QueueStats()

        logger.info(f"SQS broker configured for {self.queue_url}")

    async def initialize(self) -> None:
        """Create the SQS client and validate queue access"""
        try:
            if self._sqs_client is None:
                if self.settings.localstack_endpoint:
                    self._sqs_client = boto3.client(
                        "sqs",
                        endpoint_url=self.settings.localstack_endpoint,
                        aws_access_key_id=self.settings.aws_access_key_id,
                        aws_secret_access_key=self.settings.aws_secret_access_key,
                        region_name=self.settings.aws_region,
                    )
                    logger.debug(f"Using local SQS endpoint: {self.settings.localstack_endpoint}")
                else:
                    session = boto3.Session(region_name=self.settings.aws_region)
                    self._sqs_client = session.client("sqs")

            await self._get_queue_attributes()
            logger.info("SQS broker initialized successfully")

        except Exception as e:
            logger.error(f"Failed to initialize SQS broker: {e}")
            raise

    def _client(self) -> Any:
        if self._sqs_client is None:
            raise RuntimeError("SQS client not initialized")
        return self._sqs_client

    async def _get_queue_attributes(self) -> Dict[str, str]:
        client = self._client()

        def _get_attributes() -> Dict[str, Any]:
            return client.get_queue_attributes(
                QueueUrl=self.queue_url,
                AttributeNames=["ApproximateNumberOfMessages", "ApproximateNumberOfMessagesNotVisible"],
            )

        try:
            response = await self.retrier.call_sync(_get_attributes, RETRYABLE_AWS_ERRORS)
            return response.get("Attributes", {})
        except Exception as e:
            logger.error(f"Failed to get queue attributes for {self.queue_url}: {e}")
            self.stats.api_errors += 1
            raise

    def _batch_entry(self, index: int, item: WorkItem) -> Dict[str, Any]:
        message = encode_work_item(item)
        entry: Dict[str, Any] = {
            "Id": str(index),
            "MessageBody": message["body"],
            "MessageAttributes": {
                "work_item_id": {"StringValue": message["id"], "DataType": "String"},
                "job_id": {"StringValue": item.job_id, "DataType": "String"},
            },
        }
        if self.is_fifo:
            entry["MessageDeduplicationId"] = message["id"]
            entry["MessageGroupId"] = item.job_id
        return entry

    async def send_work_items(self, items: Sequence[WorkItem]) -> int:
        """
        Send work items in batches of up to 10.

        Raises:
            EnqueueError: On a failed batch call or any per-entry failure
        """
        client = self._client()
        sent = 0

        for start in range(0, len(items), self.max_batch_size):
            batch = list(items[start : start + self.max_batch_size])
            entries = [self._batch_entry(i, item) for i, item in enumerate(batch)]

            def _send_batch() -> Dict[str, Any]:
                return client.send_message_batch(QueueUrl=self.queue_url, Entries=entries)

            try:
                response = await self.retrier.call_sync(_send_batch, RETRYABLE_AWS_ERRORS)
            except Exception as e:
                self.stats.api_errors += 1
                self.stats.messages_send_failed += len(batch)
                logger.error(f"Failed to send message batch: {e}")
                raise EnqueueError(f"Failed to send batch of {len(batch)} messages: {e}") from e

            self.stats.batch_operations += 1
            failed = response.get("Failed", [])
            sent += len(batch) - len(failed)
            self.stats.messages_sent += len(batch) - len(failed)

            if failed:
                self.stats.messages_send_failed += len(failed)
                failed_ids = [encode_work_item(batch[int(f["Id"])])["id"] for f in failed]
                for failure in failed:
                    logger.error(f"Message send failure: {failure}")
                raise EnqueueError(f"{len(failed)} of {len(batch)} messages were rejected", failed_ids)

        logger.debug(f"Sent {sent} work items to {self.queue_url}")
        return sent

    async def receive_messages(self, max_messages: int = 10) -> List[BrokerMessage]:
        client = self._client()

        def _receive() -> Dict[str, Any]:
            return client.receive_message(
                QueueUrl=self.queue_url,
                MaxNumberOfMessages=min(max_messages, self.max_batch_size),
                WaitTimeSeconds=self.receive_wait_time,
                VisibilityTimeout=self.visibility_timeout,
                AttributeNames=["ApproximateReceiveCount"],
            )

        try:
            response = await self.retrier.call_sync(_receive, RETRYABLE_AWS_ERRORS)
        except Exception as e:
            logger.error(f"Failed to receive messages from {self.queue_url}: {e}")
            self.stats.api_errors += 1
            return []

        messages = [
            BrokerMessage(
                message_id=raw["MessageId"],
                receipt_handle=raw["ReceiptHandle"],
                body=raw.get("Body"),
                receive_count=int(raw.get("Attributes", {}).get("ApproximateReceiveCount", 1)),
            )
            for raw in response.get("Messages", [])
        ]
        self.stats.messages_received += len(messages)
        return messages

    async def ack(self, message: BrokerMessage) -> None:
        """Delete a processed message. Errors propagate so the caller knows the ack did not land."""
        client = self._client()

        def _delete() -> Dict[str, Any]:
            return client.delete_message(QueueUrl=self.queue_url, ReceiptHandle=message.receipt_handle)

        try:
            await self.retrier.call_sync(_delete, RETRYABLE_AWS_ERRORS)
        except Exception as e:
            logger.error(f"Failed to delete message {message.message_id}: {e}")
            self.stats.api_errors += 1
            raise
        self.stats.messages_acked += 1

    async def release(self, message: BrokerMessage, delay_seconds: int = 0) -> None:
        """Make a message visible again after `delay_seconds` so SQS redelivers it."""
        client = self._client()

        def _change_visibility() -> Dict[str, Any]:
            return client.change_message_visibility(
                QueueUrl=self.queue_url,
                ReceiptHandle=message.receipt_handle,
                VisibilityTimeout=max(0, delay_seconds),
            )

        try:
            await self.retrier.call_sync(_change_visibility, RETRYABLE_AWS_ERRORS)
            self.stats.messages_released += 1
        except Exception as e:
            # The visibility timeout still expires on its own; redelivery is only delayed.
            logger.warning(f"Failed to release message {message.message_id}: {e}")
            self.stats.api_errors += 1

    async def get_queue_depth(self) -> Dict[str, int]:
        attributes = await self._get_queue_attributes()
        visible = int(attributes.get("ApproximateNumberOfMessages", 0))
        in_flight = int(attributes.get("ApproximateNumberOfMessagesNotVisible", 0))
        return {"visible": visible, "in_flight": in_flight, "total": visible + in_flight}

    async def health_check(self) -> Dict[str, Any]:
        health: Dict[str, Any] = {"status": "healthy", "sqs_client_initialized": self._sqs_client is not None}
        try:
            health["queue_depth"] = await self.get_queue_depth()
        except Exception as e:
            health["status"] = "unhealthy"
            health["error"] = str(e)
        return health

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.stats.model_dump(),
            "configuration": {
                "queue_url": self.queue_url,
                "fifo": self.is_fifo,
                "receive_wait_time": self.receive_wait_time,
                "visibility_timeout": self.visibility_timeout,
            },
        }

    async def close(self) -> None:
        # boto3 clients don't need explicit closing
        logger.info("SQS broker closed")
