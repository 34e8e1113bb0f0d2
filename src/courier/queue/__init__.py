"""Delivery queues.

Example:
    ```python
    from courier.queue import InMemoryDeliveryQueue

    queue = InMemoryDeliveryQueue(visibility_timeout_seconds=120)
    await queue.enqueue(DeliveryJob.for_log(log))
    job = await queue.dequeue(timeout=1.0)
    await queue.ack(job.job_id)
    ```
"""

from .base import DeliveryQueue, visible_delay_seconds
from .memory import InMemoryDeliveryQueue
from .redis import RedisDeliveryQueue

__all__ = [
    "DeliveryQueue",
    "InMemoryDeliveryQueue",
    "RedisDeliveryQueue",
    "visible_delay_seconds",
]
