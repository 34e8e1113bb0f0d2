"""Delivery models: wire payload, delivery log state machine, queue jobs.

A delivery series is every attempt (first try plus retries) of one payload
to one endpoint. The series is tracked by exactly one DeliveryLog, keyed by
(endpoint_id, payload.id).
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from courier.exceptions import InvalidTransitionError

from .base import generate_id, truncate, utc_now
from .events import EventType

# Delivery status
DeliveryStatus = Literal["pending", "delivered", "retrying", "failed"]

TERMINAL_STATUSES: frozenset[str] = frozenset({"delivered", "failed"})

# Characters of receiver response kept on the log
RESPONSE_BODY_LIMIT = 4096


class DeliveryPayload(BaseModel):
    """Notification body POSTed to receivers.

    Serialized with camelCase keys. The `id` is shared by every attempt of
    a delivery series so receivers can deduplicate.

    Attributes:
        id: Delivery series identifier.
        event_type: Event type.
        timestamp: When the event was triggered.
        owner_id: Owner the event belongs to.
        data: Event-specific payload data.
        metadata: Optional free-form context from the producer.
    """

    model_config = ConfigDict(
        extra="forbid",
        alias_generator=to_camel,
        populate_by_name=True,
    )

    id: str = Field(default_factory=lambda: generate_id("evt"))
    event_type: EventType = Field(description="Event type")
    timestamp: datetime = Field(default_factory=utc_now)
    owner_id: str = Field(description="Owner the event belongs to")
    data: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] | None = Field(default=None)

    def to_json_bytes(self) -> bytes:
        """Exact bytes that are signed and sent."""
        return self.model_dump_json(by_alias=True, exclude_none=True).encode("utf-8")


class DeliveryResult(BaseModel):
    """Outcome of exactly one HTTP attempt.

    Infrastructure failures (DNS, refused connection, timeout) set `error`
    and leave `status_code` empty.
    """

    model_config = ConfigDict(extra="forbid")

    success: bool
    status_code: int | None = None
    response_body: str | None = None
    error: str | None = None
    duration_ms: int = Field(default=0, ge=0)

    @property
    def failure_reason(self) -> str | None:
        """Short description of why the attempt failed, None on success."""
        if self.success:
            return None
        if self.error:
            return self.error
        if self.status_code is not None:
            return f"HTTP {self.status_code}"
        return "Unknown error"


class DeliveryLog(BaseModel):
    """Durable state of one delivery series to one endpoint.

    States: pending -> {delivered | retrying | failed},
    retrying -> {delivered | retrying | failed}. Delivered and failed are
    terminal; transition methods refuse to touch them.

    Attributes:
        id: Unique identifier for this log.
        endpoint_id: Target endpoint.
        event_type: Event type of the payload.
        payload: Full payload, replayed on every retry.
        status: Current state.
        last_status_code: HTTP status of the latest attempt.
        last_response_body: Truncated response body of the latest attempt.
        last_error: Failure description of the latest attempt.
        attempt: Attempt number the series is on (1-based).
        max_attempts: Attempts allowed before the series fails.
        next_retry_at: When the next attempt is due; set iff status is retrying.
        delivered_at: When the receiver accepted the payload.
        created_at: When the series started.
        updated_at: Last state change.
        version: Optimistic concurrency token, bumped by the store on every write.
    """

    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=lambda: generate_id("dlv"))
    endpoint_id: str
    event_type: EventType
    payload: DeliveryPayload
    status: DeliveryStatus = Field(default="pending")
    last_status_code: int | None = None
    last_response_body: str | None = None
    last_error: str | None = None
    attempt: int = Field(default=1, ge=1)
    max_attempts: int = Field(default=3, ge=1)
    next_retry_at: datetime | None = None
    delivered_at: datetime | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    version: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def _check_invariants(self) -> DeliveryLog:
        if self.attempt > self.max_attempts:
            raise ValueError(
                f"attempt ({self.attempt}) must not exceed max_attempts ({self.max_attempts})"
            )
        if (self.status == "retrying") != (self.next_retry_at is not None):
            raise ValueError("next_retry_at must be set if and only if status is 'retrying'")
        return self

    @classmethod
    def start(
        cls,
        endpoint_id: str,
        payload: DeliveryPayload,
        attempt: int = 1,
        max_attempts: int = 3,
    ) -> DeliveryLog:
        """Create the pending log that opens a delivery series."""
        return cls(
            endpoint_id=endpoint_id,
            event_type=payload.event_type,
            payload=payload,
            attempt=attempt,
            max_attempts=max_attempts,
        )

    @property
    def is_terminal(self) -> bool:
        """Whether the series has finished (delivered or failed)."""
        return self.status in TERMINAL_STATUSES

    def _require(self, allowed: set[str], action: str) -> None:
        if self.status not in allowed:
            raise InvalidTransitionError(self.status, action)

    def record_result(
        self,
        result: DeliveryResult,
        retry_delay_seconds: float,
        now: datetime | None = None,
        body_limit: int = RESPONSE_BODY_LIMIT,
    ) -> DeliveryLog:
        """Apply the outcome of the current attempt.

        Args:
            result: Outcome of the HTTP attempt.
            retry_delay_seconds: Backoff for the attempt that just failed.
            now: Transition time (defaults to the current UTC time).
            body_limit: Characters of response body to keep.

        Returns:
            Self, now delivered, retrying or failed.
        """
        self._require({"pending", "retrying"}, "record a result for")
        now = now or utc_now()

        self.last_status_code = result.status_code
        self.last_response_body = truncate(result.response_body, body_limit)
        self.last_error = result.failure_reason

        if result.success:
            self.status = "delivered"
            self.delivered_at = now
            self.next_retry_at = None
        elif self.attempt < self.max_attempts:
            self.status = "retrying"
            self.next_retry_at = now + timedelta(seconds=retry_delay_seconds)
            self.attempt += 1
        else:
            self.status = "failed"
            self.next_retry_at = None

        self.updated_at = now
        return self

    def mark_failed(self, error: str, now: datetime | None = None) -> DeliveryLog:
        """Fail the series permanently, without further retries."""
        self._require({"pending", "retrying"}, "fail")
        now = now or utc_now()
        self.status = "failed"
        self.last_error = error
        self.next_retry_at = None
        self.updated_at = now
        return self

    def claim_for_retry(self, now: datetime | None = None) -> DeliveryLog:
        """Move a due retry back to pending before its job is enqueued."""
        self._require({"retrying"}, "claim")
        self.status = "pending"
        self.next_retry_at = None
        self.updated_at = now or utc_now()
        return self

    def release_claim(self, retry_at: datetime, now: datetime | None = None) -> DeliveryLog:
        """Undo a claim whose job could not be enqueued."""
        self._require({"pending"}, "release")
        self.status = "retrying"
        self.next_retry_at = retry_at
        self.updated_at = now or utc_now()
        return self

    def touch(self, now: datetime | None = None) -> DeliveryLog:
        """Refresh updated_at of a pending log that is being re-enqueued."""
        self._require({"pending"}, "touch")
        self.updated_at = now or utc_now()
        return self


class DeliveryJob(BaseModel):
    """Unit of work carried by the delivery queue.

    Jobs are immutable; every state change goes to the DeliveryLog.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    job_id: str = Field(default_factory=lambda: generate_id("job"))
    endpoint_id: str
    payload: DeliveryPayload
    attempt: int = Field(default=1, ge=1)
    max_attempts: int = Field(default=3, ge=1)
    not_before: datetime | None = None

    @classmethod
    def for_log(cls, log: DeliveryLog) -> DeliveryJob:
        """Job for the attempt the log is currently on."""
        return cls(
            endpoint_id=log.endpoint_id,
            payload=log.payload,
            attempt=log.attempt,
            max_attempts=log.max_attempts,
        )


class QueueStats(BaseModel):
    """Job counts exposed for health and ops dashboards."""

    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0
    paused: bool = False


class DeliveryStats(BaseModel):
    """Per-owner endpoint and delivery counts."""

    total_webhooks: int = 0
    active_webhooks: int = 0
    total_deliveries: int = 0
    successful_deliveries: int = 0
    failed_deliveries: int = 0
    pending_deliveries: int = 0
    retrying_deliveries: int = 0


__all__ = [
    "RESPONSE_BODY_LIMIT",
    "TERMINAL_STATUSES",
    "DeliveryJob",
    "DeliveryLog",
    "DeliveryPayload",
    "DeliveryResult",
    "DeliveryStats",
    "DeliveryStatus",
    "QueueStats",
]
