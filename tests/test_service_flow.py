"""End-to-end delivery flows through CourierService with in-memory backends."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest
from conftest import RecordingTransport

from courier.config import Settings
from courier.exceptions import ConfigurationError, NotFoundError
from courier.models import WebhookEndpoint, utc_now
from courier.queue import InMemoryDeliveryQueue, RedisDeliveryQueue
from courier.service import CourierService, get_queue
from courier.storage import InMemoryDeliveryLogStore, InMemoryEndpointRegistry
from courier.webhooks import HttpDeliveryWorker


def build_service(
    endpoint: WebhookEndpoint, statuses: list[int]
) -> tuple[CourierService, RecordingTransport]:
    recorder = RecordingTransport(statuses)
    service = CourierService(
        store=InMemoryDeliveryLogStore(),
        registry=InMemoryEndpointRegistry([endpoint]),
        queue=InMemoryDeliveryQueue(),
        worker=HttpDeliveryWorker(transport=recorder.transport),
        settings=Settings(_env_file=None, worker_poll_timeout_seconds=0.05),
    )
    return service, recorder


async def run_next_job(service: CourierService) -> None:
    job = await service.queue.dequeue(timeout=0)
    assert job is not None
    await service.processor.process(job)
    await service.queue.ack(job.job_id)


class TestDeliveryFlow:
    """Trigger, deliver, retry and finish a delivery series."""

    @pytest.mark.asyncio
    async def test_retry_then_success(self, endpoint: WebhookEndpoint) -> None:
        """A 500 followed by a 200 ends delivered on attempt 2."""
        service, recorder = build_service(endpoint, [500, 200])

        [log_id] = await service.trigger.trigger("user.created", "user_1", {"id": "user_1"})
        started = utc_now()
        await run_next_job(service)

        log = await service.store.get_log_by_id(log_id)
        assert log is not None
        assert log.status == "retrying"
        assert log.attempt == 2
        assert log.next_retry_at is not None
        assert started + timedelta(seconds=5) <= log.next_retry_at
        assert log.next_retry_at <= utc_now() + timedelta(seconds=5)

        # Not due yet
        assert await service.scheduler.sweep_retries(utc_now()) == 0

        assert await service.scheduler.sweep_retries(log.next_retry_at) == 1
        await run_next_job(service)

        log = await service.store.get_log_by_id(log_id)
        assert log is not None
        assert log.status == "delivered"
        assert log.attempt == 2
        assert log.last_status_code == 200
        assert len(recorder.requests) == 2
        # Same payload id on every attempt
        assert len({request.headers["X-Webhook-Delivery"] for request in recorder.requests}) == 1

    @pytest.mark.asyncio
    async def test_exhausted_retries(self, endpoint: WebhookEndpoint) -> None:
        """Three failures end the series failed with no further job."""
        service, recorder = build_service(endpoint, [500])

        [log_id] = await service.trigger.trigger("user.created", "user_1", {"id": "user_1"})
        await run_next_job(service)
        for _ in range(2):
            log = await service.store.get_log_by_id(log_id)
            assert log is not None and log.next_retry_at is not None
            assert await service.scheduler.sweep_retries(log.next_retry_at) == 1
            await run_next_job(service)

        log = await service.store.get_log_by_id(log_id)
        assert log is not None
        assert log.status == "failed"
        assert log.attempt == 3
        assert log.last_error == "HTTP 500"
        assert len(recorder.requests) == 3
        assert await service.scheduler.sweep_retries(utc_now() + timedelta(days=1)) == 0
        assert await service.queue.dequeue(timeout=0) is None

    @pytest.mark.asyncio
    async def test_duplicate_job_delivered_once(self, endpoint: WebhookEndpoint) -> None:
        """A redelivered job does not create a second row or attempt."""
        service, recorder = build_service(endpoint, [200])

        [log_id] = await service.trigger.trigger("user.created", "user_1", {"id": "user_1"})
        job = await service.queue.dequeue(timeout=0)
        assert job is not None

        await asyncio.gather(service.processor.process(job), service.processor.process(job))

        page, total = await service.store.list_logs(endpoint.id)
        assert total == 1
        assert page[0].id == log_id
        assert page[0].status == "delivered"
        assert page[0].version == 1

    @pytest.mark.asyncio
    async def test_running_service_delivers(self, endpoint: WebhookEndpoint) -> None:
        """With workers started, triggered events are delivered in the background."""
        service, recorder = build_service(endpoint, [200])

        async with service:
            await service.start()
            assert service.running
            [log_id] = await service.trigger.trigger(
                "credit.low", "user_1", {"balance": 2, "threshold": 10}
            )
            for _ in range(100):
                log = await service.store.get_log_by_id(log_id)
                if log is not None and log.status == "delivered":
                    break
                await asyncio.sleep(0.01)

        assert not service.running
        log = await service.store.get_log_by_id(log_id)
        assert log is not None and log.status == "delivered"
        assert len(recorder.requests) == 1


class TestServiceQueries:
    """Tests for the read side of CourierService."""

    @pytest.mark.asyncio
    async def test_get_logs_scoped_to_owner(self, endpoint: WebhookEndpoint) -> None:
        """Logs are only visible to the endpoint owner."""
        service, _ = build_service(endpoint, [200])
        await service.trigger.trigger("user.created", "user_1", {"id": "user_1"})

        logs, total = await service.get_logs("user_1", endpoint.id)
        assert total == 1
        assert logs[0].endpoint_id == endpoint.id

        with pytest.raises(NotFoundError):
            await service.get_logs("user_2", endpoint.id)

    @pytest.mark.asyncio
    async def test_delivery_stats(self, endpoint: WebhookEndpoint) -> None:
        """Stats count an owner's endpoints and deliveries by status."""
        service, _ = build_service(endpoint, [200])
        await service.trigger.trigger("user.created", "user_1", {"id": "user_1"})
        await service.trigger.trigger("user.created", "user_1", {"id": "user_1"})
        await run_next_job(service)

        stats = await service.delivery_stats("user_1")
        assert stats.total_webhooks == 1
        assert stats.active_webhooks == 1
        assert stats.total_deliveries == 2
        assert stats.successful_deliveries == 1
        assert stats.pending_deliveries == 1

        empty = await service.delivery_stats("user_nobody")
        assert empty.total_webhooks == 0
        assert empty.total_deliveries == 0

    @pytest.mark.asyncio
    async def test_health(self, endpoint: WebhookEndpoint) -> None:
        """Health reports the queue and background task state."""
        service, _ = build_service(endpoint, [200])

        health = await service.health()
        assert health == {
            "status": "healthy",
            "queue": "connected",
            "queue_backend": "memory",
            "workers_running": False,
            "scheduler_running": False,
        }


class TestServiceFactory:
    """Tests for CourierService.create and get_queue."""

    def test_create_defaults(self) -> None:
        """Defaults wire in-memory backends."""
        service = CourierService.create(Settings(_env_file=None, worker_concurrency=3))
        assert isinstance(service.store, InMemoryDeliveryLogStore)
        assert isinstance(service.queue, InMemoryDeliveryQueue)
        assert service.pool.concurrency == 3
        assert service.trigger.max_attempts == 3

    def test_get_queue_redis(self) -> None:
        """The redis backend builds a RedisDeliveryQueue."""
        queue = get_queue(
            Settings(_env_file=None, queue_backend="redis", redis_url="redis://localhost:6379/0")
        )
        assert isinstance(queue, RedisDeliveryQueue)

    def test_get_queue_redis_without_url(self) -> None:
        """Missing redis URL is a configuration error."""
        settings = Settings(_env_file=None).model_copy(update={"queue_backend": "redis"})
        with pytest.raises(ConfigurationError):
            get_queue(settings)
