"""Webhook delivery core for Courier.

Provides signing, HTTP delivery, queue consumers, retry scheduling and the
producer-facing trigger.

Example:
    ```python
    from courier.webhooks import WebhookTrigger, sign, verify

    # Producer side
    await trigger.trigger("service.completed", "user_123", {"requestId": "req_1"})

    # Receiver side
    assert verify(body, headers["X-Webhook-Signature"], secret)
    ```
"""

from .delivery import DELIVERY_HEADER, EVENT_HEADER, HttpDeliveryWorker, InsecureURLError
from .processor import ENDPOINT_DISABLED, ENDPOINT_NOT_FOUND, DeliveryProcessor, WorkerPool
from .scheduler import BackgroundRunner, PeriodicTask, RetryScheduler, backoff
from .signing import (
    SIGNATURE_HEADER,
    SIGNATURE_PREFIX,
    TIMESTAMP_HEADER,
    SignedHeaders,
    VerificationResult,
    extract_signature_headers,
    new_secret,
    sign,
    sign_with_timestamp,
    signature_headers,
    verify,
    verify_with_timestamp,
)
from .trigger import TEST_PAYLOAD_PREFIX, WebhookTrigger

__all__ = [
    # Signing
    "SIGNATURE_HEADER",
    "SIGNATURE_PREFIX",
    "TIMESTAMP_HEADER",
    "SignedHeaders",
    "VerificationResult",
    "extract_signature_headers",
    "new_secret",
    "sign",
    "sign_with_timestamp",
    "signature_headers",
    "verify",
    "verify_with_timestamp",
    # Delivery
    "DELIVERY_HEADER",
    "EVENT_HEADER",
    "HttpDeliveryWorker",
    "InsecureURLError",
    # Consumers
    "ENDPOINT_DISABLED",
    "ENDPOINT_NOT_FOUND",
    "DeliveryProcessor",
    "WorkerPool",
    # Scheduling
    "BackgroundRunner",
    "PeriodicTask",
    "RetryScheduler",
    "backoff",
    # Trigger
    "TEST_PAYLOAD_PREFIX",
    "WebhookTrigger",
]
