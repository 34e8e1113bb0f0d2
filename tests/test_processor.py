"""Tests for the delivery processor and worker pool."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from conftest import RecordingTransport

from courier.exceptions import DeliveryError, QueueError, StorageError
from courier.models import (
    DeliveryJob,
    DeliveryLog,
    DeliveryPayload,
    DeliveryResult,
    utc_now,
)
from courier.queue import InMemoryDeliveryQueue
from courier.storage import InMemoryDeliveryLogStore, InMemoryEndpointRegistry
from courier.webhooks import (
    ENDPOINT_DISABLED,
    ENDPOINT_NOT_FOUND,
    DeliveryProcessor,
    HttpDeliveryWorker,
    WorkerPool,
)


@pytest.fixture
def processor(
    store: InMemoryDeliveryLogStore,
    registry: InMemoryEndpointRegistry,
    worker: HttpDeliveryWorker,
) -> DeliveryProcessor:
    return DeliveryProcessor(store, registry, worker)


def job_for(payload: DeliveryPayload, attempt: int = 1, endpoint_id: str = "whk_test123"):
    return DeliveryJob(endpoint_id=endpoint_id, payload=payload, attempt=attempt)


class TestDeliveryProcessor:
    """Tests for DeliveryProcessor.process."""

    @pytest.mark.asyncio
    async def test_success_marks_delivered(
        self,
        processor: DeliveryProcessor,
        store: InMemoryDeliveryLogStore,
        payload: DeliveryPayload,
    ) -> None:
        """A 2xx response delivers the series."""
        result = await processor.process(job_for(payload))

        assert result is not None and result.success
        log = await store.get_log("whk_test123", payload.id)
        assert log is not None
        assert log.status == "delivered"
        assert log.last_status_code == 200
        assert log.delivered_at is not None

    @pytest.mark.asyncio
    async def test_creates_log_when_missing(
        self,
        processor: DeliveryProcessor,
        store: InMemoryDeliveryLogStore,
        payload: DeliveryPayload,
    ) -> None:
        """Jobs without a log (e.g. enqueued directly) get one created."""
        assert await store.get_log("whk_test123", payload.id) is None
        await processor.process(job_for(payload))
        assert await store.get_log("whk_test123", payload.id) is not None

    @pytest.mark.asyncio
    async def test_failure_schedules_retry(
        self,
        store: InMemoryDeliveryLogStore,
        registry: InMemoryEndpointRegistry,
        payload: DeliveryPayload,
    ) -> None:
        """A failed first attempt moves the series to retrying with backoff."""
        recorder = RecordingTransport([503], body="busy")
        processor = DeliveryProcessor(
            store, registry, HttpDeliveryWorker(transport=recorder.transport)
        )
        before = utc_now()

        result = await processor.process(job_for(payload))

        assert result is not None and not result.success
        log = await store.get_log("whk_test123", payload.id)
        assert log is not None
        assert log.status == "retrying"
        assert log.attempt == 2
        assert log.last_status_code == 503
        assert log.last_response_body == "busy"
        assert log.next_retry_at is not None
        assert before + timedelta(seconds=5) <= log.next_retry_at
        assert log.next_retry_at <= utc_now() + timedelta(seconds=5)

    @pytest.mark.asyncio
    async def test_backoff_uses_job_attempt(
        self,
        store: InMemoryDeliveryLogStore,
        registry: InMemoryEndpointRegistry,
        payload: DeliveryPayload,
    ) -> None:
        """The second failed attempt waits twice the base delay."""
        log = DeliveryLog.start("whk_test123", payload, attempt=2, max_attempts=3)
        await store.create_log(log)
        recorder = RecordingTransport([500])
        processor = DeliveryProcessor(
            store, registry, HttpDeliveryWorker(transport=recorder.transport)
        )
        before = utc_now()

        await processor.process(job_for(payload, attempt=2))

        stored = await store.get_log("whk_test123", payload.id)
        assert stored is not None and stored.next_retry_at is not None
        assert stored.attempt == 3
        assert before + timedelta(seconds=10) <= stored.next_retry_at

    @pytest.mark.asyncio
    async def test_last_attempt_fails_series(
        self,
        store: InMemoryDeliveryLogStore,
        registry: InMemoryEndpointRegistry,
        payload: DeliveryPayload,
    ) -> None:
        """Failing the final attempt marks the series failed."""
        await store.create_log(DeliveryLog.start("whk_test123", payload, attempt=3))
        recorder = RecordingTransport([500])
        processor = DeliveryProcessor(
            store, registry, HttpDeliveryWorker(transport=recorder.transport)
        )

        await processor.process(job_for(payload, attempt=3))

        log = await store.get_log("whk_test123", payload.id)
        assert log is not None
        assert log.status == "failed"
        assert log.next_retry_at is None

    @pytest.mark.asyncio
    async def test_terminal_log_skipped(
        self,
        processor: DeliveryProcessor,
        store: InMemoryDeliveryLogStore,
        recorder: RecordingTransport,
        payload: DeliveryPayload,
    ) -> None:
        """Delivered series are never delivered again."""
        log = DeliveryLog.start("whk_test123", payload)
        log.record_result(DeliveryResult(success=True, status_code=200), 5)
        await store.create_log(log)

        assert await processor.process(job_for(payload)) is None
        assert recorder.requests == []

    @pytest.mark.asyncio
    async def test_stale_job_skipped(
        self,
        processor: DeliveryProcessor,
        store: InMemoryDeliveryLogStore,
        recorder: RecordingTransport,
        payload: DeliveryPayload,
    ) -> None:
        """A job for an attempt the series already moved past does nothing."""
        log = DeliveryLog.start("whk_test123", payload)
        log.record_result(DeliveryResult(success=False, status_code=500), 5)
        await store.create_log(log)

        assert await processor.process(job_for(payload, attempt=1)) is None
        assert recorder.requests == []
        stored = await store.get_log("whk_test123", payload.id)
        assert stored is not None and stored.status == "retrying"

    @pytest.mark.asyncio
    async def test_missing_endpoint_fails(
        self,
        processor: DeliveryProcessor,
        store: InMemoryDeliveryLogStore,
        recorder: RecordingTransport,
        payload: DeliveryPayload,
    ) -> None:
        """Deliveries to deleted endpoints fail without an HTTP call."""
        await processor.process(job_for(payload, endpoint_id="whk_deleted"))

        log = await store.get_log("whk_deleted", payload.id)
        assert log is not None
        assert log.status == "failed"
        assert log.last_error == ENDPOINT_NOT_FOUND
        assert recorder.requests == []

    @pytest.mark.asyncio
    async def test_disabled_endpoint_fails(
        self,
        store: InMemoryDeliveryLogStore,
        worker: HttpDeliveryWorker,
        recorder: RecordingTransport,
        make_endpoint,
        payload: DeliveryPayload,
    ) -> None:
        """Deliveries to disabled endpoints fail without an HTTP call."""
        registry = InMemoryEndpointRegistry([make_endpoint(id="whk_off", is_active=False)])
        processor = DeliveryProcessor(store, registry, worker)

        await processor.process(job_for(payload, endpoint_id="whk_off"))

        log = await store.get_log("whk_off", payload.id)
        assert log is not None
        assert log.status == "failed"
        assert log.last_error == ENDPOINT_DISABLED
        assert recorder.requests == []

    @pytest.mark.asyncio
    async def test_unbuildable_request_fails(
        self,
        store: InMemoryDeliveryLogStore,
        registry: InMemoryEndpointRegistry,
        payload: DeliveryPayload,
    ) -> None:
        """DeliveryError from the worker fails the series permanently."""
        worker = MagicMock(spec=HttpDeliveryWorker)
        worker.deliver = AsyncMock(side_effect=DeliveryError("Cannot build webhook request"))
        processor = DeliveryProcessor(store, registry, worker)

        assert await processor.process(job_for(payload)) is None

        log = await store.get_log("whk_test123", payload.id)
        assert log is not None
        assert log.status == "failed"
        assert log.last_error == "Cannot build webhook request"

    @pytest.mark.asyncio
    async def test_duplicate_job_records_once(
        self,
        processor: DeliveryProcessor,
        store: InMemoryDeliveryLogStore,
        payload: DeliveryPayload,
    ) -> None:
        """The same job processed twice concurrently leaves one consistent log."""
        job = job_for(payload)

        await asyncio.gather(processor.process(job), processor.process(job))

        page, total = await store.list_logs("whk_test123")
        assert total == 1
        assert page[0].status == "delivered"
        assert page[0].attempt == 1
        assert page[0].version == 1

    @pytest.mark.asyncio
    async def test_result_dropped_when_log_moved_on(
        self,
        store: InMemoryDeliveryLogStore,
        registry: InMemoryEndpointRegistry,
        payload: DeliveryPayload,
    ) -> None:
        """A result is not written over a log another worker already finished."""
        log = await store.create_log(DeliveryLog.start("whk_test123", payload))

        async def deliver_after_race(*args, **kwargs) -> DeliveryResult:
            current = await store.get_log("whk_test123", payload.id)
            assert current is not None
            current.record_result(DeliveryResult(success=True, status_code=200), 5)
            await store.update_log(current, expected_version=current.version)
            return DeliveryResult(success=False, status_code=500)

        worker = MagicMock(spec=HttpDeliveryWorker)
        worker.deliver = AsyncMock(side_effect=deliver_after_race)
        processor = DeliveryProcessor(store, registry, worker)

        await processor.process(job_for(payload))

        stored = await store.get_log_by_id(log.id)
        assert stored is not None
        assert stored.status == "delivered"
        assert stored.last_status_code == 200

    @pytest.mark.asyncio
    async def test_store_outage_propagates(
        self,
        registry: InMemoryEndpointRegistry,
        worker: HttpDeliveryWorker,
        payload: DeliveryPayload,
    ) -> None:
        """Persistent store failures are raised so the job is nacked."""
        store = MagicMock(spec=InMemoryDeliveryLogStore)
        store.get_log = AsyncMock(side_effect=StorageError("database unavailable"))
        processor = DeliveryProcessor(store, registry, worker)

        with pytest.raises(StorageError):
            await processor.process(job_for(payload))
        assert store.get_log.await_count == 3


class TestWorkerPool:
    """Tests for WorkerPool."""

    @pytest.mark.asyncio
    async def test_processes_and_acks(
        self,
        processor: DeliveryProcessor,
        queue: InMemoryDeliveryQueue,
        store: InMemoryDeliveryLogStore,
        payload: DeliveryPayload,
    ) -> None:
        """Workers deliver queued jobs and ack them."""
        pool = WorkerPool(queue, processor, concurrency=2, poll_timeout_seconds=0.05)
        await queue.enqueue(job_for(payload))

        await pool.start()
        assert pool.running
        for _ in range(100):
            if (await queue.stats()).completed == 1:
                break
            await asyncio.sleep(0.01)
        await pool.stop()

        assert not pool.running
        log = await store.get_log("whk_test123", payload.id)
        assert log is not None and log.status == "delivered"
        assert (await queue.stats()).completed == 1

    @pytest.mark.asyncio
    async def test_nacks_on_processor_error(
        self, queue: InMemoryDeliveryQueue, payload: DeliveryPayload
    ) -> None:
        """Jobs whose processing raises are nacked for redelivery."""
        processor = MagicMock(spec=DeliveryProcessor)
        processor.process = AsyncMock(side_effect=StorageError("down"))
        queue.nack = AsyncMock(return_value=True)  # type: ignore[method-assign]
        pool = WorkerPool(
            queue,
            processor,
            concurrency=1,
            poll_timeout_seconds=0.05,
            redelivery_delay_seconds=2.0,
        )
        job = job_for(payload)
        await queue.enqueue(job)

        await pool.start()
        for _ in range(100):
            if queue.nack.await_count:
                break
            await asyncio.sleep(0.01)
        await pool.stop()

        queue.nack.assert_awaited_with(job.job_id, "down", delay_ms=2000)

    @pytest.mark.asyncio
    async def test_survives_dequeue_errors(self, payload: DeliveryPayload) -> None:
        """Queue outages do not kill the consumers."""
        calls = 0

        async def flaky_dequeue(timeout: float | None = None) -> DeliveryJob | None:
            nonlocal calls
            calls += 1
            if calls == 1:
                raise QueueError("down")
            await asyncio.sleep(timeout or 0)
            return None

        queue = MagicMock(spec=InMemoryDeliveryQueue)
        queue.dequeue = AsyncMock(side_effect=flaky_dequeue)
        processor = MagicMock(spec=DeliveryProcessor)
        pool = WorkerPool(queue, processor, concurrency=1, poll_timeout_seconds=0.01)

        await pool.start()
        await asyncio.sleep(0.05)
        await pool.stop()

        assert queue.dequeue.await_count >= 2
        processor.process.assert_not_called()

    @pytest.mark.asyncio
    async def test_stop_cancels_after_grace(self, payload: DeliveryPayload) -> None:
        """Jobs still running after the grace period are cancelled."""
        queue = InMemoryDeliveryQueue()
        processor = MagicMock(spec=DeliveryProcessor)

        async def hang(job: DeliveryJob) -> None:
            await asyncio.sleep(10)

        processor.process = AsyncMock(side_effect=hang)
        pool = WorkerPool(
            queue, processor, concurrency=1, poll_timeout_seconds=0.01, grace_seconds=0.05
        )
        await queue.enqueue(job_for(payload))

        await pool.start()
        for _ in range(100):
            if processor.process.await_count:
                break
            await asyncio.sleep(0.01)
        await pool.stop()

        assert not pool.running
        assert (await queue.stats()).completed == 0

    @pytest.mark.asyncio
    async def test_start_is_idempotent(
        self, processor: DeliveryProcessor, queue: InMemoryDeliveryQueue
    ) -> None:
        """Starting a running pool does not add workers."""
        pool = WorkerPool(queue, processor, concurrency=2, poll_timeout_seconds=0.01)
        await pool.start()
        tasks = list(pool._tasks)
        await pool.start()
        assert pool._tasks == tasks
        await pool.stop()
