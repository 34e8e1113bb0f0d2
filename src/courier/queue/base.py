"""Delivery queue interface.

Queues give at-least-once semantics: a dequeued job is leased, and a lease
that is neither acked nor nacked before the visibility timeout expires makes
the job visible again. Consumers must therefore be idempotent.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

from courier.models import utc_now

if TYPE_CHECKING:
    from courier.models import DeliveryJob, QueueStats


def visible_delay_seconds(job: DeliveryJob, delay_ms: int = 0) -> float:
    """Seconds until a job may be handed out, honoring `job.not_before`."""
    delay = max(0, delay_ms) / 1000
    if job.not_before is not None:
        delay = max(delay, (job.not_before - utc_now()).total_seconds())
    return delay


class DeliveryQueue(ABC):
    """Durable FIFO of delivery jobs with delayed visibility and leases."""

    async def connect(self) -> None:
        """Open connections. Called once at process startup."""

    async def close(self) -> None:
        """Release connections. Called once at shutdown."""

    async def __aenter__(self) -> DeliveryQueue:
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    @abstractmethod
    async def enqueue(self, job: DeliveryJob, delay_ms: int = 0) -> str:
        """Add a job, visible to consumers after `delay_ms`.

        Returns:
            The job ID.

        Raises:
            QueueError: If the queue is unavailable.
        """

    @abstractmethod
    async def dequeue(self, timeout: float | None = None) -> DeliveryJob | None:
        """Lease the next visible job.

        Args:
            timeout: Seconds to wait for a job; None waits indefinitely.

        Returns:
            The leased job, or None if nothing became visible in time or the
            queue is paused.
        """

    @abstractmethod
    async def ack(self, job_id: str) -> None:
        """Mark a leased job completed and forget it."""

    @abstractmethod
    async def nack(self, job_id: str, error: str, delay_ms: int = 0) -> bool:
        """Give a leased job back after a processing error.

        Returns:
            True if the job will be redelivered, False if it exhausted its
            redeliveries and was moved to failed.
        """

    @abstractmethod
    async def stats(self) -> QueueStats:
        """Current job counts."""

    @abstractmethod
    async def pause(self) -> None:
        """Stop handing out jobs. Enqueueing still works."""

    @abstractmethod
    async def resume(self) -> None:
        """Resume handing out jobs."""

    async def ping(self) -> bool:
        """Whether the backend is reachable."""
        return True
