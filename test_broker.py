"""Tests for the in-memory and SQS brokers."""

import json
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from cep_crawler.broker import InMemoryBroker, SQSBroker, create_broker
from cep_crawler.core.exceptions import EnqueueError
from cep_crawler.core.types import BrokerMessage, WorkItem
from cep_crawler.utils.retry import AsyncRetrier, RetryConfig

from conftest import make_settings


def _items(count: int, job_id: str = "job1"):
    return [WorkItem(job_id=job_id, item_key=str(i).zfill(8)) for i in range(1, count + 1)]


class TestInMemoryBroker:
    @pytest.mark.asyncio
    async def test_duplicate_ids_are_suppressed_while_queued(self, broker):
        assert await broker.send_work_items(_items(2)) == 2
        assert await broker.send_work_items(_items(2)) == 0

        assert broker.pending_count() == 2
        assert broker.get_stats()["duplicates_suppressed"] == 2

    @pytest.mark.asyncio
    async def test_ack_removes_message(self, broker):
        await broker.send_work_items(_items(1))

        [message] = await broker.receive_messages(10)
        assert broker.in_flight_count() == 1
        assert message.receive_count == 1

        await broker.ack(message)
        assert broker.in_flight_count() == 0
        assert await broker.receive_messages(10) == []

    @pytest.mark.asyncio
    async def test_release_redelivers(self, broker):
        await broker.send_work_items(_items(1))
        [message] = await broker.receive_messages(10)

        await broker.release(message, delay_seconds=0)
        [again] = await broker.receive_messages(10)

        assert again.message_id == message.message_id
        assert again.receive_count == 2

    @pytest.mark.asyncio
    async def test_release_delay_hides_message(self, broker):
        await broker.send_work_items(_items(1))
        [message] = await broker.receive_messages(10)

        await broker.release(message, delay_seconds=60)

        assert await broker.receive_messages(10) == []
        assert broker.pending_count() == 1

    @pytest.mark.asyncio
    async def test_visibility_timeout_expiry_redelivers(self):
        broker = InMemoryBroker(visibility_timeout_seconds=0)
        await broker.send_work_items(_items(1))
        await broker.receive_messages(10)

        [again] = await broker.receive_messages(10)

        assert again.receive_count == 2

    @pytest.mark.asyncio
    async def test_unknown_receipt_handle_is_ignored(self, broker):
        stale = BrokerMessage(message_id="m1", receipt_handle="expired")

        await broker.ack(stale)
        await broker.release(stale)

        assert broker.get_stats()["messages_acked"] == 0


class TestSQSBroker:
    QUEUE_URL = "http://localhost:4566/000000000000/cep-work-items"

    def _broker(self, client, queue_url=QUEUE_URL) -> SQSBroker:
        settings = make_settings(broker_backend="sqs", sqs_queue_url=queue_url)
        broker = SQSBroker(settings, sqs_client=client)
        broker.retrier = AsyncRetrier(RetryConfig(max_attempts=1, base_delay=0, jitter=False))
        return broker

    @pytest.mark.asyncio
    async def test_send_in_batches_of_ten(self):
        client = MagicMock()
        client.send_message_batch.return_value = {"Successful": [], "Failed": []}

        sent = await self._broker(client).send_work_items(_items(25))

        assert sent == 25
        sizes = [len(c.kwargs["Entries"]) for c in client.send_message_batch.call_args_list]
        assert sizes == [10, 10, 5]
        entry = client.send_message_batch.call_args_list[0].kwargs["Entries"][0]
        assert json.loads(entry["MessageBody"]) == {"job_id": "job1", "item_key": "00000001"}
        assert "MessageDeduplicationId" not in entry

    @pytest.mark.asyncio
    async def test_fifo_queue_sets_dedup_and_group(self):
        client = MagicMock()
        client.send_message_batch.return_value = {"Failed": []}

        await self._broker(client, queue_url=self.QUEUE_URL + ".fifo").send_work_items(_items(1))

        entry = client.send_message_batch.call_args.kwargs["Entries"][0]
        assert entry["MessageDeduplicationId"] == "job1-00000001"
        assert entry["MessageGroupId"] == "job1"

    @pytest.mark.asyncio
    async def test_partial_batch_failure(self):
        client = MagicMock()
        client.send_message_batch.return_value = {"Failed": [{"Id": "1", "Code": "InternalError"}]}

        with pytest.raises(EnqueueError) as exc_info:
            await self._broker(client).send_work_items(_items(3))

        assert exc_info.value.failed_ids == ["job1-00000002"]

    @pytest.mark.asyncio
    async def test_batch_call_failure(self):
        client = MagicMock()
        client.send_message_batch.side_effect = ClientError(
            {"Error": {"Code": "AWS.SimpleQueueService.NonExistentQueue", "Message": "missing"}}, "SendMessageBatch"
        )

        with pytest.raises(EnqueueError):
            await self._broker(client).send_work_items(_items(1))

    @pytest.mark.asyncio
    async def test_receive_ack_release(self):
        client = MagicMock()
        client.receive_message.return_value = {
            "Messages": [
                {
                    "MessageId": "m1",
                    "ReceiptHandle": "h1",
                    "Body": '{"job_id": "job1", "item_key": "00000001"}',
                    "Attributes": {"ApproximateReceiveCount": "3"},
                }
            ]
        }
        broker = self._broker(client)

        [message] = await broker.receive_messages(10)
        await broker.ack(message)
        await broker.release(message, delay_seconds=30)

        assert message.receive_count == 3
        client.delete_message.assert_called_once_with(QueueUrl=self.QUEUE_URL, ReceiptHandle="h1")
        client.change_message_visibility.assert_called_once_with(
            QueueUrl=self.QUEUE_URL, ReceiptHandle="h1", VisibilityTimeout=30
        )

    @pytest.mark.asyncio
    async def test_receive_failure_returns_empty(self):
        client = MagicMock()
        client.receive_message.side_effect = ClientError({"Error": {"Code": "Throttling"}}, "ReceiveMessage")

        assert await self._broker(client).receive_messages(10) == []

    @pytest.mark.asyncio
    async def test_ack_failure_propagates(self):
        client = MagicMock()
        client.delete_message.side_effect = ClientError({"Error": {"Code": "ReceiptHandleIsInvalid"}}, "DeleteMessage")

        with pytest.raises(Exception):
            await self._broker(client).ack(BrokerMessage(message_id="m1", receipt_handle="h1"))

    @pytest.mark.asyncio
    async def test_health_check(self):
        client = MagicMock()
        client.get_queue_attributes.return_value = {
            "Attributes": {"ApproximateNumberOfMessages": "4", "ApproximateNumberOfMessagesNotVisible": "1"}
        }

        health = await self._broker(client).health_check()

        assert health["status"] == "healthy"
        assert health["queue_depth"] == {"visible": 4, "in_flight": 1, "total": 5}


def test_create_broker():
    assert isinstance(create_broker(make_settings()), InMemoryBroker)
    assert isinstance(create_broker(make_settings(broker_backend="sqs", sqs_queue_url="http://q")), SQSBroker)
