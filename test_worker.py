"""Tests for the CEP lookup worker."""

from unittest.mock import AsyncMock

import aiohttp
import pytest

from cep_crawler.broker import InMemoryBroker, encode_work_item
from cep_crawler.core.exceptions import ItemNotFound, StoreError
from cep_crawler.core.types import (
    BrokerMessage,
    ItemResult,
    JobStatus,
    MessageDisposition,
    ProviderResult,
    WorkItem,
)
from cep_crawler.orchestrator import CrawlOrchestrator
from cep_crawler.rate_limiter import MinIntervalRateLimiter
from cep_crawler.worker import CepWorker


def _worker(settings, orchestrator, broker, provider, monitor) -> CepWorker:
    return CepWorker(
        settings=settings,
        orchestrator=orchestrator,
        broker=broker,
        providers=[provider],
        health_monitor=monitor,
        rate_limiter=MinIntervalRateLimiter(0),
        worker_id="test-worker",
    )


@pytest.fixture
def worker(settings, orchestrator, broker, provider, healthy_monitor):
    return _worker(settings, orchestrator, broker, provider, healthy_monitor)


@pytest.mark.asyncio
async def test_batch_runs_job_to_completion(worker, orchestrator, store, broker, provider):
    provider.results["00000002"] = ProviderResult(success=False, not_found=True, status_code=200)
    created = await orchestrator.create_job("00000001", "00000003")

    dispositions = await worker.process_batch()

    assert dispositions == [MessageDisposition.ACKED] * 3
    job = await store.get_job(created.job_id)
    assert job.status == JobStatus.FINISHED
    assert job.started_at is not None
    assert job.success_count == 2
    assert job.error_count == 1
    assert broker.pending_count() == 0
    assert broker.in_flight_count() == 0

    results = {r.item_key: r for r in await store.list_item_results(created.job_id, 0, 10)}
    assert results["00000001"].payload == {"cep": "00000001", "uf": "SP"}
    assert results["00000002"].error_message == "CEP not found"

    stats = worker.get_stats()
    assert stats["items_successful"] == 2
    assert stats["items_failed"] == 1
    assert stats["errors_by_type"] == {"not_found": 1}


@pytest.mark.asyncio
async def test_rate_limited_item_is_released_then_acked_on_redelivery(worker, orchestrator, store, broker, provider):
    provider.results["00000001"] = ProviderResult(success=False, rate_limited=True, status_code=429)
    created = await orchestrator.create_job("00000001", "00000001")

    assert await worker.process_batch() == [MessageDisposition.RETRY]
    assert broker.pending_count() == 1

    job = await store.get_job(created.job_id)
    assert job.processed_count == 1
    assert job.error_count == 1

    assert await worker.process_batch() == [MessageDisposition.ACKED]
    assert broker.pending_count() == 0
    assert worker.stats["duplicates_skipped"] == 1
    # Counted once and looked up once despite two deliveries
    assert (await store.get_job(created.job_id)).processed_count == 1
    assert provider.calls == ["00000001"]


@pytest.mark.asyncio
async def test_redelivery_after_store_failure_finishes_job(settings, store, provider, healthy_monitor):
    broker = InMemoryBroker(visibility_timeout_seconds=0)
    orchestrator = CrawlOrchestrator(store, broker, healthy_monitor, settings)
    worker = _worker(settings, orchestrator, broker, provider, healthy_monitor)
    created = await orchestrator.create_job("00000001", "00000001")

    real_write = store.record_and_advance

    async def fail_once(result):
        store.record_and_advance = real_write
        raise StoreError("DynamoDB unavailable")

    store.record_and_advance = fail_once

    assert await worker.process_batch() == [MessageDisposition.FAILED]
    assert await worker.process_batch() == [MessageDisposition.ACKED]

    job = await store.get_job(created.job_id)
    assert job.processed_count == 1
    assert job.success_count == 1
    assert job.status == JobStatus.FINISHED
    assert await store.count_item_results(created.job_id) == 1
    assert broker.in_flight_count() == 0


@pytest.mark.asyncio
async def test_redelivery_of_counted_item_finishes_open_job(worker, orchestrator, store, broker, provider):
    created = await orchestrator.create_job("00000001", "00000001")
    # Result recorded and counted, but the finish transition never happened
    await store.record_and_advance(ItemResult(job_id=created.job_id, item_key="00000001", success=True, payload={}))
    assert (await store.get_job(created.job_id)).status == JobStatus.PENDING

    assert await worker.process_batch() == [MessageDisposition.ACKED]

    assert provider.calls == []
    assert (await store.get_job(created.job_id)).status == JobStatus.FINISHED


@pytest.mark.asyncio
async def test_existence_check_failure_leaves_message_in_flight(worker, orchestrator, broker, provider):
    await orchestrator.create_job("00000001", "00000001")
    orchestrator.is_item_recorded = AsyncMock(side_effect=StoreError("DynamoDB unavailable"))

    assert await worker.process_batch() == [MessageDisposition.FAILED]
    assert provider.calls == []
    assert broker.in_flight_count() == 1


@pytest.mark.asyncio
async def test_provider_raising_item_not_found_is_terminal(worker, orchestrator, store, broker, provider):
    provider.fetch = AsyncMock(side_effect=ItemNotFound("00000001", "CEP not found"))
    created = await orchestrator.create_job("00000001", "00000001")

    assert await worker.process_batch() == [MessageDisposition.ACKED]

    job = await store.get_job(created.job_id)
    assert job.error_count == 1
    assert job.status == JobStatus.FINISHED
    assert broker.pending_count() == 0
    assert worker.get_stats()["errors_by_type"] == {"not_found": 1}


@pytest.mark.asyncio
async def test_provider_exception_is_retryable(worker, orchestrator, broker, provider):
    provider.fetch = AsyncMock(side_effect=aiohttp.ClientConnectionError("connection reset"))
    await orchestrator.create_job("00000001", "00000001")

    assert await worker.process_batch() == [MessageDisposition.RETRY]
    assert worker.get_stats()["errors_by_type"] == {"transient": 1}


@pytest.mark.asyncio
async def test_invalid_body_is_dropped(settings, orchestrator, provider, healthy_monitor):
    broker = AsyncMock()
    worker = _worker(settings, orchestrator, broker, provider, healthy_monitor)
    message = BrokerMessage(message_id="m1", receipt_handle="h1", body="not json")

    assert await worker.process_message(message) == MessageDisposition.DROPPED
    broker.ack.assert_awaited_once_with(message)
    assert provider.calls == []


@pytest.mark.asyncio
async def test_unknown_job_is_dropped(worker, broker, provider):
    await broker.send_work_items([WorkItem(job_id="f" * 32, item_key="00000001")])

    assert await worker.process_batch() == [MessageDisposition.DROPPED]
    assert broker.pending_count() == 0
    assert broker.in_flight_count() == 0
    assert provider.calls == []


@pytest.mark.asyncio
async def test_unhealthy_upstream_defers_without_lookup(
    settings, orchestrator, store, broker, provider, unhealthy_monitor
):
    created = await orchestrator.create_job("00000001", "00000001")
    worker = _worker(settings, orchestrator, broker, provider, unhealthy_monitor)

    assert await worker.process_batch() == [MessageDisposition.DEFERRED]
    assert provider.calls == []
    assert broker.pending_count() == 1
    assert (await store.get_job(created.job_id)).processed_count == 0


@pytest.mark.asyncio
async def test_persistence_failure_leaves_message_in_flight(worker, orchestrator, broker):
    await orchestrator.create_job("00000001", "00000001")
    orchestrator.record_and_advance = AsyncMock(side_effect=StoreError("DynamoDB unavailable"))

    assert await worker.process_batch() == [MessageDisposition.FAILED]
    assert broker.in_flight_count() == 1
    assert broker.pending_count() == 0


@pytest.mark.asyncio
async def test_ack_failure_is_reported(settings, orchestrator, provider, healthy_monitor):
    created = await orchestrator.create_job("00000001", "00000001")
    broker = AsyncMock()
    broker.ack.side_effect = RuntimeError("receipt handle expired")
    worker = _worker(settings, orchestrator, broker, provider, healthy_monitor)
    body = encode_work_item(WorkItem(job_id=created.job_id, item_key="00000001"))["body"]

    disposition = await worker.process_message(BrokerMessage(message_id="m1", receipt_handle="h1", body=body))

    assert disposition == MessageDisposition.FAILED


@pytest.mark.asyncio
async def test_empty_poll(worker):
    worker.empty_poll_sleep_seconds = 0

    assert await worker.process_batch() == []
    assert worker.empty_poll_count == 1


@pytest.mark.asyncio
async def test_health_check_and_shutdown(worker, provider):
    health = await worker.health_check()

    assert health["status"] == "healthy"
    assert set(health["components"]) == {"providers", "broker", "store"}

    await worker.shutdown()
    assert worker.get_status()["status"] == "stopped"
    assert provider.closed is True
