"""Storage backends for Courier.

The delivery log store persists one row per delivery series and supports
version-checked writes. The endpoint registry is read by the core.

Example:
    ```python
    from courier.storage import InMemoryDeliveryLogStore

    async with InMemoryDeliveryLogStore() as store:
        log = await store.create_log(DeliveryLog.start(endpoint.id, payload))
        due = await store.list_due_retries(utc_now())
    ```
"""

from .base import DeliveryLogStore, EndpointRegistry
from .memory import InMemoryDeliveryLogStore, InMemoryEndpointRegistry
from .retry import conflict_retrying, storage_retry

__all__ = [
    "DeliveryLogStore",
    "EndpointRegistry",
    "InMemoryDeliveryLogStore",
    "InMemoryEndpointRegistry",
    "conflict_retrying",
    "storage_retry",
]
