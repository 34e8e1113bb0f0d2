"""Courier exception hierarchy.

Provides structured exceptions for error handling throughout the codebase.
All exceptions inherit from CourierError for easy catching.
"""

from __future__ import annotations


class CourierError(Exception):
    """Base exception for all Courier errors.

    Attributes:
        message: Human-readable error description.
        code: Machine-readable error code for API responses.
    """

    code: str = "courier_error"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict[str, object]:
        """Convert exception to API-friendly dictionary."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
            }
        }


class ValidationError(CourierError):
    """Invalid input provided.

    Raised synchronously to producers when an event type, event data or
    endpoint URL fails validation. Never retried.

    Attributes:
        field: The field that failed validation.
        message: Description of the validation failure.
    """

    code: str = "validation_error"

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        super().__init__(f"{field}: {message}")

    def to_dict(self) -> dict[str, object]:
        """Convert exception to API-friendly dictionary."""
        return {
            "error": {
                "code": self.code,
                "field": self.field,
                "message": self.message,
            }
        }


class NotFoundError(CourierError):
    """Resource not found.

    Attributes:
        resource_type: Type of resource (e.g., "webhook_endpoint").
        resource_id: ID of the missing resource.
    """

    code: str = "not_found"

    def __init__(self, resource_type: str, resource_id: str) -> None:
        self.resource_type = resource_type
        self.resource_id = resource_id
        super().__init__(f"{resource_type} not found: {resource_id}")

    def to_dict(self) -> dict[str, object]:
        """Convert exception to API-friendly dictionary."""
        return {
            "error": {
                "code": self.code,
                "resource_type": self.resource_type,
                "resource_id": self.resource_id,
                "message": self.message,
            }
        }


class StorageError(CourierError):
    """Delivery log store or endpoint registry operation failed."""

    code: str = "storage_error"


class DuplicateDeliveryError(StorageError):
    """A delivery log already exists for (endpoint_id, payload_id)."""

    code: str = "duplicate_delivery"

    def __init__(self, endpoint_id: str, payload_id: str) -> None:
        self.endpoint_id = endpoint_id
        self.payload_id = payload_id
        super().__init__(f"Delivery log already exists for {endpoint_id}/{payload_id}")


class ConcurrencyConflictError(StorageError):
    """Conditional update lost a race with another writer.

    Attributes:
        log_id: ID of the delivery log that was modified concurrently.
        expected_version: Version the caller read.
        actual_version: Version currently stored.
    """

    code: str = "concurrency_conflict"

    def __init__(self, log_id: str, expected_version: int, actual_version: int) -> None:
        self.log_id = log_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Delivery log {log_id} changed concurrently "
            f"(expected version {expected_version}, found {actual_version})"
        )


class QueueError(CourierError):
    """Delivery queue unavailable or operation failed."""

    code: str = "queue_error"


class DeliveryError(CourierError):
    """Permanent delivery failure.

    Raised when a request cannot be built at all (for example the payload
    cannot be serialized or signed). The series is failed without retries.
    """

    code: str = "delivery_error"


class InvalidTransitionError(CourierError):
    """Delivery log state transition not allowed from the current status."""

    code: str = "invalid_transition"

    def __init__(self, current: str, action: str) -> None:
        self.current = current
        self.action = action
        super().__init__(f"Cannot {action} a delivery in status '{current}'")


class ConfigurationError(CourierError):
    """Configuration error.

    Raised when required configuration is missing or invalid.
    """

    code: str = "configuration_error"
