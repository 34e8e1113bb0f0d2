"""Courier: reliable webhook delivery.

Turns internal domain events into signed, at-least-once HTTP notifications
to third-party endpoints, with durable retry scheduling and replay-resistant
HMAC-SHA256 signatures.

Quick Start:
    from courier.service import CourierService

    async with CourierService.create() as courier:
        await courier.start()

        # Producers fire and forget
        await courier.trigger.trigger(
            "credit.low",
            owner_id="user_123",
            data={"balance": 4, "threshold": 10},
        )

Receivers verify with:
    from courier.webhooks import verify_with_timestamp

    result = verify_with_timestamp(body, signature, timestamp, secret)
"""

__version__ = "0.1.0"

# Configuration
from .config import Settings, settings

# Exceptions
from .exceptions import (
    ConcurrencyConflictError,
    ConfigurationError,
    CourierError,
    DeliveryError,
    DuplicateDeliveryError,
    InvalidTransitionError,
    NotFoundError,
    QueueError,
    StorageError,
    ValidationError,
)

# Models
from .models import (
    ALL_EVENT_TYPES,
    DeliveryJob,
    DeliveryLog,
    DeliveryPayload,
    DeliveryResult,
    DeliveryStats,
    DeliveryStatus,
    EventType,
    QueueStats,
    WebhookEndpoint,
)

# Service
from .service import CourierService

__all__ = [
    "__version__",
    # Configuration
    "Settings",
    "settings",
    # Exceptions
    "ConcurrencyConflictError",
    "ConfigurationError",
    "CourierError",
    "DeliveryError",
    "DuplicateDeliveryError",
    "InvalidTransitionError",
    "NotFoundError",
    "QueueError",
    "StorageError",
    "ValidationError",
    # Models
    "ALL_EVENT_TYPES",
    "DeliveryJob",
    "DeliveryLog",
    "DeliveryPayload",
    "DeliveryResult",
    "DeliveryStats",
    "DeliveryStatus",
    "EventType",
    "QueueStats",
    "WebhookEndpoint",
    # Service
    "CourierService",
]
