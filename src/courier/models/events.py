"""Event types and per-event data schemas.

Producers send free-form dicts; each event type has a permissive schema
that checks the fields receivers rely on and keeps everything else.
Validation happens once, at the trigger boundary.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, get_args

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from courier.exceptions import ValidationError

# Event types that can trigger webhooks
EventType = Literal[
    "user.created",
    "credit.depleted",
    "credit.low",
    "service.completed",
    "service.failed",
]

# All available event types for subscription
ALL_EVENT_TYPES: list[EventType] = list(get_args(EventType))


class EventData(BaseModel):
    """Base for event data schemas: camelCase on the wire, extra keys kept."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )


class UserCreatedData(EventData):
    """Data for `user.created`."""

    id: str = Field(description="ID of the new user")
    email: str | None = Field(default=None, description="Email address")
    verified: bool = Field(default=False, description="Whether the email is verified")
    roles: list[str] = Field(default_factory=list, description="Assigned roles")
    created_at: datetime | None = Field(default=None, description="When the user was created")


class CreditDepletedData(EventData):
    """Data for `credit.depleted`."""

    balance: float = Field(description="Balance after the transaction")
    previous_balance: float | None = Field(default=None)
    transaction_id: str | None = Field(default=None)
    transaction_type: str | None = Field(default=None)
    amount: float | None = Field(default=None)
    depleted_at: datetime | None = Field(default=None)


class CreditLowData(EventData):
    """Data for `credit.low`."""

    balance: float = Field(description="Current balance")
    threshold: float = Field(description="Threshold the balance fell below")
    low_credit_at: datetime | None = Field(default=None)


class ServiceCompletedData(EventData):
    """Data for `service.completed`."""

    request_id: str = Field(description="ID of the completed request")
    service: str | None = Field(default=None)
    model: str | None = Field(default=None)
    tokens: int | None = Field(default=None, ge=0)
    credits: float | None = Field(default=None)
    duration: float | None = Field(default=None, ge=0)
    completed_at: datetime | None = Field(default=None)


class ServiceFailedData(EventData):
    """Data for `service.failed`."""

    request_id: str = Field(description="ID of the failed request")
    service: str | None = Field(default=None)
    model: str | None = Field(default=None)
    error_code: str | None = Field(default=None)
    error_message: str | None = Field(default=None)
    duration: float | None = Field(default=None, ge=0)
    failed_at: datetime | None = Field(default=None)


EVENT_DATA_SCHEMAS: dict[str, type[EventData]] = {
    "user.created": UserCreatedData,
    "credit.depleted": CreditDepletedData,
    "credit.low": CreditLowData,
    "service.completed": ServiceCompletedData,
    "service.failed": ServiceFailedData,
}


def validate_event_type(event_type: str) -> EventType:
    """Check that `event_type` belongs to the closed enumeration.

    Raises:
        ValidationError: If the event type is unknown.
    """
    if event_type not in ALL_EVENT_TYPES:
        raise ValidationError(
            "event_type",
            f"Invalid event type '{event_type}'. Expected one of: {', '.join(ALL_EVENT_TYPES)}",
        )
    return event_type  # type: ignore[return-value]


def validate_event_types(event_types: list[str]) -> list[EventType]:
    """Validate a subscription list; duplicates are removed, order is kept."""
    if not event_types:
        raise ValidationError("events", "At least one event type is required")
    validated: list[EventType] = []
    for event_type in event_types:
        checked = validate_event_type(event_type)
        if checked not in validated:
            validated.append(checked)
    return validated


def validate_event_data(event_type: str, data: Any) -> dict[str, Any]:
    """Validate event data against the schema for `event_type`.

    Args:
        event_type: A known event type.
        data: Producer-supplied data.

    Returns:
        Normalized data as a JSON-compatible dict with camelCase keys.

    Raises:
        ValidationError: If the event type is unknown or the data does not match.
    """
    validate_event_type(event_type)
    if not isinstance(data, dict):
        raise ValidationError("data", "Event data must be an object")

    schema = EVENT_DATA_SCHEMAS[event_type]
    try:
        model = schema.model_validate(data)
    except PydanticValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(part) for part in first["loc"]) or "data"
        raise ValidationError(f"data.{location}", first["msg"]) from e

    return model.model_dump(mode="json", by_alias=True, exclude_none=True)


__all__ = [
    "ALL_EVENT_TYPES",
    "EVENT_DATA_SCHEMAS",
    "CreditDepletedData",
    "CreditLowData",
    "EventData",
    "EventType",
    "ServiceCompletedData",
    "ServiceFailedData",
    "UserCreatedData",
    "validate_event_data",
    "validate_event_type",
    "validate_event_types",
]
