"""Courier service wiring and lifecycle.

Builds the delivery core from settings and runs its background parts (the
worker pool and the periodic scheduler tasks).

Example:
    ```python
    from courier.service import CourierService

    async with CourierService.create() as courier:
        await courier.start()
        await courier.trigger.trigger("user.created", "user_123", {"id": "user_123"})
        ...
        await courier.stop()
    ```
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from courier.config import Settings
from courier.exceptions import ConfigurationError, NotFoundError
from courier.logging import get_logger
from courier.models import DeliveryLog, DeliveryStats, QueueStats
from courier.queue import DeliveryQueue, InMemoryDeliveryQueue, RedisDeliveryQueue
from courier.storage import (
    DeliveryLogStore,
    EndpointRegistry,
    InMemoryDeliveryLogStore,
    InMemoryEndpointRegistry,
)
from courier.webhooks import (
    BackgroundRunner,
    DeliveryProcessor,
    HttpDeliveryWorker,
    RetryScheduler,
    WebhookTrigger,
    WorkerPool,
)

logger = get_logger(__name__)


def get_queue(settings: Settings) -> DeliveryQueue:
    """Create the delivery queue selected by `settings.queue_backend`."""
    if settings.queue_backend == "redis":
        if not settings.redis_url:
            raise ConfigurationError("COURIER_REDIS_URL is required for the redis queue backend")
        return RedisDeliveryQueue(
            settings.redis_url,
            queue_name=settings.queue_name,
            visibility_timeout_seconds=settings.visibility_timeout_seconds,
            max_redeliveries=settings.max_redeliveries,
        )
    return InMemoryDeliveryQueue(
        visibility_timeout_seconds=settings.visibility_timeout_seconds,
        max_redeliveries=settings.max_redeliveries,
    )


@dataclass
class CourierService:
    """The delivery core with injected store, registry, queue and worker.

    Attributes:
        store: Delivery log store.
        registry: Endpoint registry (read by the core).
        queue: Delivery queue.
        worker: HTTP delivery worker.
        settings: Configuration settings.
    """

    store: DeliveryLogStore
    registry: EndpointRegistry
    queue: DeliveryQueue
    worker: HttpDeliveryWorker
    settings: Settings

    trigger: WebhookTrigger = field(init=False, repr=False)
    processor: DeliveryProcessor = field(init=False, repr=False)
    scheduler: RetryScheduler = field(init=False, repr=False)
    pool: WorkerPool = field(init=False, repr=False)
    runner: BackgroundRunner = field(init=False, repr=False)

    def __post_init__(self) -> None:
        s = self.settings
        self.trigger = WebhookTrigger(
            self.store,
            self.registry,
            self.queue,
            self.worker,
            max_attempts=s.default_max_attempts,
        )
        self.processor = DeliveryProcessor(
            self.store,
            self.registry,
            self.worker,
            retry_base_delay_seconds=s.retry_base_delay_seconds,
            retry_max_delay_seconds=s.retry_max_delay_seconds,
            response_body_log_limit=s.response_body_log_limit,
        )
        self.scheduler = RetryScheduler(
            self.store,
            self.queue,
            batch_size=s.retry_sweep_batch_size,
            stale_pending_seconds=s.stale_pending_seconds,
            retention_days=s.log_retention_days,
        )
        self.pool = WorkerPool(
            self.queue,
            self.processor,
            concurrency=s.worker_concurrency,
            poll_timeout_seconds=s.worker_poll_timeout_seconds,
            redelivery_delay_seconds=s.redelivery_delay_seconds,
            grace_seconds=s.delivery_timeout_seconds + 5,
        )
        self.runner = BackgroundRunner(
            self.scheduler.periodic_tasks(
                sweep_interval_seconds=s.retry_sweep_interval_seconds,
                reclaim_interval_seconds=s.reclaim_interval_seconds,
                cleanup_interval_seconds=s.cleanup_interval_seconds,
            )
        )

    @classmethod
    def create(
        cls,
        settings: Settings | None = None,
        store: DeliveryLogStore | None = None,
        registry: EndpointRegistry | None = None,
    ) -> CourierService:
        """Create a CourierService with default dependencies.

        The store and registry default to the in-memory implementations; a
        deployment passes its own persistent ones.

        Args:
            settings: Optional settings. Uses defaults if None.
            store: Optional delivery log store.
            registry: Optional endpoint registry.
        """
        if settings is None:
            settings = Settings()

        return cls(
            store=store or InMemoryDeliveryLogStore(),
            registry=registry or InMemoryEndpointRegistry(),
            queue=get_queue(settings),
            worker=HttpDeliveryWorker(
                timeout_seconds=settings.delivery_timeout_seconds,
                max_response_bytes=settings.max_response_bytes,
                max_redirects=settings.max_redirects,
                user_agent=settings.user_agent,
            ),
            settings=settings,
        )

    async def connect(self) -> None:
        """Open store, registry, queue and HTTP client connections."""
        await self.store.connect()
        await self.registry.connect()
        await self.queue.connect()
        await self.worker.connect()
        logger.info("Courier connected", queue_backend=self.settings.queue_backend)

    async def close(self) -> None:
        """Stop background work and release all connections."""
        await self.stop()
        await self.worker.close()
        await self.queue.close()
        await self.registry.close()
        await self.store.close()

    async def __aenter__(self) -> CourierService:
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    @property
    def running(self) -> bool:
        return self.pool.running or self.runner.running

    async def start(self) -> None:
        """Start the worker pool and the periodic scheduler tasks."""
        await self.pool.start()
        await self.runner.start()

    async def stop(self) -> None:
        """Stop the periodic tasks, then let in-flight deliveries finish."""
        await self.runner.stop()
        await self.pool.stop()

    async def get_logs(
        self,
        owner_id: str,
        endpoint_id: str,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[DeliveryLog], int]:
        """Page through an owner's endpoint logs, newest first.

        Raises:
            NotFoundError: If the endpoint does not exist or belongs to
                another owner.
        """
        endpoint = await self.registry.get_endpoint(endpoint_id)
        if endpoint is None or endpoint.owner_id != owner_id:
            raise NotFoundError("webhook_endpoint", endpoint_id)
        return await self.store.list_logs(endpoint_id, limit=limit, offset=offset)

    async def delivery_stats(self, owner_id: str) -> DeliveryStats:
        """Endpoint and delivery counts for one owner."""
        endpoints = await self.registry.list_endpoints(owner_id)
        endpoint_ids = [endpoint.id for endpoint in endpoints]
        counts = await self.store.count_by_status(endpoint_ids) if endpoint_ids else {}

        return DeliveryStats(
            total_webhooks=len(endpoints),
            active_webhooks=sum(1 for endpoint in endpoints if endpoint.is_active),
            total_deliveries=sum(counts.values()),
            successful_deliveries=counts.get("delivered", 0),
            failed_deliveries=counts.get("failed", 0),
            pending_deliveries=counts.get("pending", 0),
            retrying_deliveries=counts.get("retrying", 0),
        )

    async def queue_stats(self) -> QueueStats:
        """Current delivery queue counts."""
        return await self.queue.stats()

    async def health(self) -> dict[str, Any]:
        """Liveness of the queue backend and background tasks."""
        queue_ok = await self.queue.ping()
        return {
            "status": "healthy" if queue_ok else "unhealthy",
            "queue": "connected" if queue_ok else "unavailable",
            "queue_backend": self.settings.queue_backend,
            "workers_running": self.pool.running,
            "scheduler_running": self.runner.running,
        }


__all__ = ["CourierService", "get_queue"]
