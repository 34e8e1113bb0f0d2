"""Producer entry point: fan an event out to subscribed endpoints.

`trigger` validates synchronously, then for each subscribed endpoint writes
a pending delivery log and enqueues a job. It never waits for HTTP.
`test` is the one synchronous path: a single attempt, made inline, whose
finished log is returned to the caller.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from courier.exceptions import CourierError, NotFoundError
from courier.logging import get_logger
from courier.models import (
    DeliveryJob,
    DeliveryLog,
    DeliveryPayload,
    DeliveryResult,
    generate_id,
    validate_event_data,
    validate_event_type,
)

if TYPE_CHECKING:
    from courier.queue import DeliveryQueue
    from courier.storage import DeliveryLogStore, EndpointRegistry

    from .delivery import HttpDeliveryWorker

logger = get_logger(__name__)

TEST_PAYLOAD_PREFIX = "test"


class WebhookTrigger:
    """Creates delivery series for producer events.

    Example:
        ```python
        trigger = WebhookTrigger(store, registry, queue, worker)
        log_ids = await trigger.trigger("credit.low", "user_123", {"balance": 4, "threshold": 10})
        ```
    """

    def __init__(
        self,
        store: DeliveryLogStore,
        registry: EndpointRegistry,
        queue: DeliveryQueue,
        worker: HttpDeliveryWorker,
        max_attempts: int = 3,
    ) -> None:
        self._store = store
        self._registry = registry
        self._queue = queue
        self._worker = worker
        self.max_attempts = max_attempts

    async def trigger(
        self,
        event_type: str,
        owner_id: str,
        data: dict[str, Any],
        metadata: dict[str, Any] | None = None,
    ) -> list[str]:
        """Fan an event out to every active endpoint of the owner subscribed to it.

        All endpoints receive the same payload (one payload id). A failure
        for one endpoint is logged and does not affect the others; a log
        written without its job is recovered by the stale-pending reclaim.

        Args:
            event_type: One of the known event types.
            owner_id: Owner whose endpoints receive the event.
            data: Event data, validated against the event type's schema.
            metadata: Optional opaque context.

        Returns:
            IDs of the delivery logs created.

        Raises:
            ValidationError: Unknown event type or invalid data.
        """
        valid_type = validate_event_type(event_type)
        normalized = validate_event_data(valid_type, data)

        endpoints = await self._registry.find_subscribed(owner_id, valid_type)
        if not endpoints:
            logger.debug("No subscribed webhooks", event_type=valid_type, owner_id=owner_id)
            return []

        payload = DeliveryPayload(
            event_type=valid_type,
            owner_id=owner_id,
            data=normalized,
            metadata=metadata,
        )

        log_ids: list[str] = []
        for endpoint in endpoints:
            try:
                log = await self._store.create_log(
                    DeliveryLog.start(endpoint.id, payload, max_attempts=self.max_attempts)
                )
            except CourierError as e:
                logger.error(
                    "Failed to create delivery log",
                    endpoint_id=endpoint.id,
                    payload_id=payload.id,
                    error=e.message,
                )
                continue
            log_ids.append(log.id)

            try:
                await self._queue.enqueue(DeliveryJob.for_log(log))
            except CourierError as e:
                logger.error(
                    "Failed to enqueue delivery",
                    endpoint_id=endpoint.id,
                    payload_id=payload.id,
                    error=e.message,
                )

        logger.info(
            "Webhooks triggered",
            event_type=valid_type,
            owner_id=owner_id,
            payload_id=payload.id,
            webhook_count=len(endpoints),
            queued=len(log_ids),
        )
        return log_ids

    async def test(
        self,
        endpoint_id: str,
        owner_id: str,
        event_type: str,
        data: dict[str, Any] | None = None,
    ) -> DeliveryLog:
        """Deliver a test event to one endpoint right now.

        Test deliveries get one attempt, no retries, and are not queued.
        The endpoint is tried even if it is inactive.

        Raises:
            NotFoundError: If the endpoint does not exist or belongs to
                another owner.
            ValidationError: Unknown event type.
        """
        valid_type = validate_event_type(event_type)

        endpoint = await self._registry.get_endpoint(endpoint_id)
        if endpoint is None or endpoint.owner_id != owner_id:
            raise NotFoundError("webhook_endpoint", endpoint_id)

        payload = DeliveryPayload(
            id=generate_id(TEST_PAYLOAD_PREFIX),
            event_type=valid_type,
            owner_id=owner_id,
            data=data if data is not None else {"test": True},
            metadata={"test": True},
        )
        log = await self._store.create_log(
            DeliveryLog.start(endpoint.id, payload, max_attempts=1)
        )

        try:
            result = await self._worker.deliver(endpoint, payload)
        except CourierError as e:
            result = DeliveryResult(success=False, error=e.message)

        finished = log.model_copy(deep=True).record_result(result, retry_delay_seconds=0)
        saved = await self._store.update_log(finished, expected_version=log.version)

        logger.info(
            "Webhook test completed",
            endpoint_id=endpoint_id,
            owner_id=owner_id,
            event_type=valid_type,
            success=result.success,
            status_code=result.status_code,
        )
        return saved


__all__ = [
    "TEST_PAYLOAD_PREFIX",
    "WebhookTrigger",
]
