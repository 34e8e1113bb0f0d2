"""Models for Courier.

Endpoint and event types:
    - WebhookEndpoint: Registered delivery target (read-only for the core)
    - EventType / ALL_EVENT_TYPES: Closed enumeration of event types
    - Event data schemas: One permissive schema per event type

Delivery types:
    - DeliveryPayload: Wire body sent to receivers
    - DeliveryLog: Durable state machine of one delivery series
    - DeliveryJob: Unit of work on the delivery queue
    - DeliveryResult: Outcome of one HTTP attempt
    - QueueStats / DeliveryStats: Ops counters
"""

from .base import generate_id, truncate, utc_now
from .delivery import (
    RESPONSE_BODY_LIMIT,
    TERMINAL_STATUSES,
    DeliveryJob,
    DeliveryLog,
    DeliveryPayload,
    DeliveryResult,
    DeliveryStats,
    DeliveryStatus,
    QueueStats,
)
from .events import (
    ALL_EVENT_TYPES,
    EVENT_DATA_SCHEMAS,
    CreditDepletedData,
    CreditLowData,
    EventData,
    EventType,
    ServiceCompletedData,
    ServiceFailedData,
    UserCreatedData,
    validate_event_data,
    validate_event_type,
    validate_event_types,
)
from .webhook import WebhookEndpoint, validate_endpoint_url

__all__ = [
    # Helpers
    "generate_id",
    "truncate",
    "utc_now",
    # Events
    "ALL_EVENT_TYPES",
    "EVENT_DATA_SCHEMAS",
    "EventData",
    "EventType",
    "UserCreatedData",
    "CreditDepletedData",
    "CreditLowData",
    "ServiceCompletedData",
    "ServiceFailedData",
    "validate_event_data",
    "validate_event_type",
    "validate_event_types",
    # Endpoints
    "WebhookEndpoint",
    "validate_endpoint_url",
    # Deliveries
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
