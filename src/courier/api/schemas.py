"""Pydantic schemas for API request/response models."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from courier.models import DeliveryLog, DeliveryStatus, QueueStats


class TriggerRequest(BaseModel):
    """Request body for the internal trigger endpoint.

    Accepts camelCase (`eventType`, `ownerId`) or snake_case keys.
    `userId` is accepted as a synonym of `ownerId`.
    """

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    event_type: str = Field(
        min_length=1,
        validation_alias=AliasChoices("event_type", "eventType"),
        description="Event type to trigger",
    )
    owner_id: str = Field(
        min_length=1,
        validation_alias=AliasChoices("owner_id", "ownerId", "userId"),
        description="Owner whose endpoints receive the event",
    )
    data: dict[str, Any] = Field(description="Event data")
    metadata: dict[str, Any] | None = Field(default=None, description="Opaque context")


class TriggerResponse(BaseModel):
    """Response for a triggered event.

    Attributes:
        success: Always True when the event was accepted.
        queued: Number of deliveries queued.
        log_ids: Delivery log IDs created.
    """

    success: bool = True
    queued: int
    log_ids: list[str]


class WebhookTestRequest(BaseModel):
    """Request body for a test delivery."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    event_type: str = Field(
        min_length=1,
        validation_alias=AliasChoices("event_type", "eventType"),
        description="Event type of the test payload",
    )
    data: dict[str, Any] | None = Field(
        default=None,
        validation_alias=AliasChoices("data", "payload"),
        description="Test payload data (defaults to {'test': true})",
    )


class DeliveryLogResponse(BaseModel):
    """Response model for a delivery log."""

    id: str
    endpoint_id: str
    event_type: str
    payload: dict[str, Any]
    status: DeliveryStatus
    status_code: int | None
    response_body: str | None
    error: str | None
    attempt: int
    max_attempts: int
    next_retry_at: datetime | None
    delivered_at: datetime | None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_log(cls, log: DeliveryLog) -> DeliveryLogResponse:
        return cls(
            id=log.id,
            endpoint_id=log.endpoint_id,
            event_type=log.event_type,
            payload=log.payload.model_dump(mode="json", by_alias=True, exclude_none=True),
            status=log.status,
            status_code=log.last_status_code,
            response_body=log.last_response_body,
            error=log.last_error,
            attempt=log.attempt,
            max_attempts=log.max_attempts,
            next_retry_at=log.next_retry_at,
            delivered_at=log.delivered_at,
            created_at=log.created_at,
            updated_at=log.updated_at,
        )


class DeliveryLogsResponse(BaseModel):
    """Page of delivery logs, newest first."""

    logs: list[DeliveryLogResponse]
    total: int
    limit: int
    offset: int


class HealthResponse(BaseModel):
    """Response model for the internal health check."""

    status: str
    version: str
    queue: str
    queue_backend: str
    workers_running: bool
    scheduler_running: bool
    timestamp: datetime


class WebhookCounts(BaseModel):
    total: int
    active: int


class LogCounts(BaseModel):
    total: int
    by_status: dict[str, int]


class InternalStatsResponse(BaseModel):
    """Service-wide queue and delivery counts."""

    queue: QueueStats
    webhooks: WebhookCounts
    logs: LogCounts
