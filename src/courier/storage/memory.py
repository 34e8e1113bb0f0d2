"""In-memory delivery log store and endpoint registry.

Suitable for tests and single-process deployments. Every read returns a
deep copy so callers can mutate logs freely before a conditional write.
"""

from __future__ import annotations

import asyncio
from collections import Counter
from datetime import datetime
from typing import TYPE_CHECKING, Any

from courier.exceptions import (
    ConcurrencyConflictError,
    DuplicateDeliveryError,
    NotFoundError,
    ValidationError,
)
from courier.logging import get_logger
from courier.models import TERMINAL_STATUSES, WebhookEndpoint, utc_now

from .base import DeliveryLogStore, EndpointRegistry

if TYPE_CHECKING:
    from courier.models import DeliveryLog, DeliveryStatus, EventType

logger = get_logger(__name__)

_STATUSES: tuple[DeliveryStatus, ...] = ("pending", "delivered", "retrying", "failed")


class InMemoryDeliveryLogStore(DeliveryLogStore):
    """Delivery log store backed by dicts and guarded by one asyncio.Lock.

    Example:
        ```python
        store = InMemoryDeliveryLogStore()
        log = await store.create_log(DeliveryLog.start(endpoint.id, payload))
        log.record_result(result, retry_delay_seconds=5)
        await store.update_log(log, expected_version=0)
        ```
    """

    def __init__(self) -> None:
        self._logs: dict[str, DeliveryLog] = {}
        self._by_series: dict[tuple[str, str], str] = {}
        self._lock = asyncio.Lock()

    async def create_log(self, log: DeliveryLog) -> DeliveryLog:
        key = (log.endpoint_id, log.payload.id)
        async with self._lock:
            if key in self._by_series:
                raise DuplicateDeliveryError(log.endpoint_id, log.payload.id)
            stored = log.model_copy(deep=True, update={"version": 0})
            self._logs[stored.id] = stored
            self._by_series[key] = stored.id
        logger.debug("Delivery log created", log_id=stored.id, endpoint_id=log.endpoint_id)
        return stored.model_copy(deep=True)

    async def get_log(self, endpoint_id: str, payload_id: str) -> DeliveryLog | None:
        async with self._lock:
            log_id = self._by_series.get((endpoint_id, payload_id))
            if log_id is None:
                return None
            return self._logs[log_id].model_copy(deep=True)

    async def get_log_by_id(self, log_id: str) -> DeliveryLog | None:
        async with self._lock:
            log = self._logs.get(log_id)
            return log.model_copy(deep=True) if log else None

    async def update_log(self, log: DeliveryLog, expected_version: int) -> DeliveryLog:
        async with self._lock:
            current = self._logs.get(log.id)
            if current is None:
                raise NotFoundError("delivery_log", log.id)
            if current.version != expected_version:
                raise ConcurrencyConflictError(log.id, expected_version, current.version)

            stored = log.model_copy(
                deep=True,
                update={
                    "version": expected_version + 1,
                    "updated_at": max(log.updated_at, utc_now()),
                },
            )
            self._logs[log.id] = stored
            return stored.model_copy(deep=True)

    async def list_due_retries(self, now: datetime, limit: int = 100) -> list[DeliveryLog]:
        async with self._lock:
            due = [
                log
                for log in self._logs.values()
                if log.status == "retrying"
                and log.next_retry_at is not None
                and log.next_retry_at <= now
            ]
            due.sort(key=lambda log: log.next_retry_at or now)
            return [log.model_copy(deep=True) for log in due[:limit]]

    async def list_stale_pending(self, cutoff: datetime, limit: int = 100) -> list[DeliveryLog]:
        async with self._lock:
            stale = [
                log
                for log in self._logs.values()
                if log.status == "pending" and log.updated_at < cutoff
            ]
            stale.sort(key=lambda log: log.updated_at)
            return [log.model_copy(deep=True) for log in stale[:limit]]

    async def delete_terminal_before(self, cutoff: datetime) -> int:
        async with self._lock:
            expired = [
                log
                for log in self._logs.values()
                if log.status in TERMINAL_STATUSES and log.created_at < cutoff
            ]
            for log in expired:
                del self._logs[log.id]
                del self._by_series[(log.endpoint_id, log.payload.id)]
        return len(expired)

    async def list_logs(
        self,
        endpoint_id: str,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[DeliveryLog], int]:
        async with self._lock:
            matching = [log for log in self._logs.values() if log.endpoint_id == endpoint_id]
        matching.sort(key=lambda log: log.created_at, reverse=True)
        page = matching[offset : offset + limit]
        return [log.model_copy(deep=True) for log in page], len(matching)

    async def count_by_status(
        self,
        endpoint_ids: list[str] | None = None,
    ) -> dict[DeliveryStatus, int]:
        wanted = set(endpoint_ids) if endpoint_ids is not None else None
        async with self._lock:
            counts = Counter(
                log.status
                for log in self._logs.values()
                if wanted is None or log.endpoint_id in wanted
            )
        return {status: counts.get(status, 0) for status in _STATUSES}


class InMemoryEndpointRegistry(EndpointRegistry):
    """Endpoint registry held in a dict.

    Stands in for the external CRUD service. Besides the read side used by
    the delivery core it offers the write operations that service performs.
    """

    def __init__(self, endpoints: list[WebhookEndpoint] | None = None) -> None:
        self._endpoints: dict[str, WebhookEndpoint] = {}
        for endpoint in endpoints or []:
            self._endpoints[endpoint.id] = endpoint

    async def create_endpoint(
        self,
        owner_id: str,
        url: str,
        events: list[EventType] | None = None,
        description: str | None = None,
    ) -> WebhookEndpoint:
        """Register a new endpoint with a freshly generated secret.

        Raises:
            ValidationError: If the URL or event types are invalid.
        """
        from courier.webhooks.signing import new_secret

        fields: dict[str, Any] = {
            "owner_id": owner_id,
            "url": url,
            "secret": new_secret(),
            "description": description,
        }
        if events is not None:
            fields["events"] = events

        try:
            endpoint = WebhookEndpoint(**fields)
        except ValueError as e:
            raise _as_validation_error(e) from e

        self._endpoints[endpoint.id] = endpoint
        logger.info("Webhook endpoint created", endpoint_id=endpoint.id, owner_id=owner_id)
        return endpoint.model_copy(deep=True)

    async def add_endpoint(self, endpoint: WebhookEndpoint) -> WebhookEndpoint:
        """Store an already-built endpoint as is."""
        self._endpoints[endpoint.id] = endpoint.model_copy(deep=True)
        return endpoint

    async def get_endpoint(self, endpoint_id: str) -> WebhookEndpoint | None:
        endpoint = self._endpoints.get(endpoint_id)
        return endpoint.model_copy(deep=True) if endpoint else None

    async def list_endpoints(self, owner_id: str | None = None) -> list[WebhookEndpoint]:
        return [
            endpoint.model_copy(deep=True)
            for endpoint in self._endpoints.values()
            if owner_id is None or endpoint.owner_id == owner_id
        ]

    async def update_endpoint(self, endpoint_id: str, **updates: Any) -> WebhookEndpoint:
        """Apply field updates to an endpoint.

        Raises:
            NotFoundError: If the endpoint does not exist.
            ValidationError: If an updated field is invalid.
        """
        endpoint = self._endpoints.get(endpoint_id)
        if endpoint is None:
            raise NotFoundError("webhook_endpoint", endpoint_id)

        updated = endpoint.model_copy(deep=True)
        try:
            for key, value in updates.items():
                setattr(updated, key, value)
        except ValueError as e:
            raise _as_validation_error(e) from e
        updated.updated_at = utc_now()

        self._endpoints[endpoint_id] = updated
        return updated.model_copy(deep=True)

    async def toggle_endpoint(self, endpoint_id: str, is_active: bool) -> WebhookEndpoint:
        """Enable or disable deliveries to an endpoint."""
        return await self.update_endpoint(endpoint_id, is_active=is_active)

    async def delete_endpoint(self, endpoint_id: str) -> bool:
        """Remove an endpoint. Returns False if it did not exist."""
        removed = self._endpoints.pop(endpoint_id, None)
        if removed is not None:
            logger.info("Webhook endpoint deleted", endpoint_id=endpoint_id)
        return removed is not None


def _as_validation_error(error: ValueError) -> ValidationError:
    errors = getattr(error, "errors", None)
    if callable(errors):
        first = errors()[0]
        field = ".".join(str(part) for part in first.get("loc", ())) or "endpoint"
        message = str(first.get("msg", error)).removeprefix("Value error, ")
        return ValidationError(field, message)
    return ValidationError("endpoint", str(error))


__all__ = [
    "InMemoryDeliveryLogStore",
    "InMemoryEndpointRegistry",
]
