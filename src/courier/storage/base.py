"""Storage interfaces for the delivery core.

The delivery log store is the single source of truth for delivery state.
It must support a conditional (version-checked) write per log so that two
workers processing a redelivered job cannot overwrite each other.

The endpoint registry is owned by an external CRUD service; the core only
reads from it.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from courier.models import DeliveryLog, DeliveryStatus, WebhookEndpoint


class DeliveryLogStore(ABC):
    """Durable record of every delivery series and its lifecycle state."""

    async def connect(self) -> None:
        """Open connections. Called once at process startup."""

    async def close(self) -> None:
        """Release connections. Called once at shutdown."""

    async def __aenter__(self) -> DeliveryLogStore:
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    @abstractmethod
    async def create_log(self, log: DeliveryLog) -> DeliveryLog:
        """Insert a new log.

        Raises:
            DuplicateDeliveryError: If a log exists for (endpoint_id, payload.id).
        """

    @abstractmethod
    async def get_log(self, endpoint_id: str, payload_id: str) -> DeliveryLog | None:
        """Look up the log of a delivery series."""

    @abstractmethod
    async def get_log_by_id(self, log_id: str) -> DeliveryLog | None:
        """Look up a log by its own ID."""

    @abstractmethod
    async def update_log(self, log: DeliveryLog, expected_version: int) -> DeliveryLog:
        """Write a log if the stored version still equals `expected_version`.

        The stored copy gets `version = expected_version + 1`.

        Raises:
            NotFoundError: If the log does not exist.
            ConcurrencyConflictError: If another writer got there first.
        """

    @abstractmethod
    async def list_due_retries(self, now: datetime, limit: int = 100) -> list[DeliveryLog]:
        """Logs with status retrying and next_retry_at <= now, oldest due first."""

    @abstractmethod
    async def list_stale_pending(self, cutoff: datetime, limit: int = 100) -> list[DeliveryLog]:
        """Pending logs whose updated_at is older than `cutoff`."""

    @abstractmethod
    async def delete_terminal_before(self, cutoff: datetime) -> int:
        """Delete delivered/failed logs created before `cutoff`. Returns the count."""

    @abstractmethod
    async def list_logs(
        self,
        endpoint_id: str,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[DeliveryLog], int]:
        """Page through an endpoint's logs, newest first, with the total count."""

    @abstractmethod
    async def count_by_status(
        self,
        endpoint_ids: list[str] | None = None,
    ) -> dict[DeliveryStatus, int]:
        """Count logs per status, optionally restricted to some endpoints."""


class EndpointRegistry(ABC):
    """Read access to registered webhook endpoints."""

    async def connect(self) -> None:
        """Open connections. Called once at process startup."""

    async def close(self) -> None:
        """Release connections. Called once at shutdown."""

    @abstractmethod
    async def get_endpoint(self, endpoint_id: str) -> WebhookEndpoint | None:
        """Get an endpoint by ID, or None if it was deleted."""

    @abstractmethod
    async def list_endpoints(self, owner_id: str | None = None) -> list[WebhookEndpoint]:
        """List endpoints, optionally for one owner."""

    async def find_subscribed(self, owner_id: str, event_type: str) -> list[WebhookEndpoint]:
        """Active endpoints of `owner_id` subscribed to `event_type`."""
        endpoints = await self.list_endpoints(owner_id)
        return [endpoint for endpoint in endpoints if endpoint.subscribes_to(event_type)]
