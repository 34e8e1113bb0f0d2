"""In-process delivery queue.

Jobs are lost on restart; the retry sweep and stale-pending reclaim rebuild
the queue from the delivery log store. Use the Redis queue when that is not
acceptable.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
from collections import deque

from courier.exceptions import QueueError
from courier.logging import get_logger
from courier.models import DeliveryJob, QueueStats

from .base import DeliveryQueue, visible_delay_seconds

logger = get_logger(__name__)


class InMemoryDeliveryQueue(DeliveryQueue):
    """Single-process queue with delayed jobs and visibility-timeout leases.

    Args:
        visibility_timeout_seconds: Lease length of a dequeued job.
        max_redeliveries: Nacks or expired leases tolerated before a job fails.
    """

    def __init__(
        self,
        visibility_timeout_seconds: float = 120.0,
        max_redeliveries: int = 3,
    ) -> None:
        self.visibility_timeout_seconds = visibility_timeout_seconds
        self.max_redeliveries = max_redeliveries

        self._jobs: dict[str, DeliveryJob] = {}
        self._waiting: deque[str] = deque()
        self._delayed: list[tuple[float, int, str]] = []
        self._leases: dict[str, float] = {}
        self._redeliveries: dict[str, int] = {}
        self._seq = itertools.count()
        self._completed = 0
        self._failed = 0
        self._paused = False
        self._closed = False
        self._cond = asyncio.Condition()

    def _now(self) -> float:
        return asyncio.get_running_loop().time()

    async def close(self) -> None:
        async with self._cond:
            self._closed = True
            self._cond.notify_all()

    async def enqueue(self, job: DeliveryJob, delay_ms: int = 0) -> str:
        async with self._cond:
            if self._closed:
                raise QueueError("Delivery queue is closed")
            if job.job_id in self._jobs:
                return job.job_id

            self._jobs[job.job_id] = job
            delay = visible_delay_seconds(job, delay_ms)
            if delay > 0:
                heapq.heappush(self._delayed, (self._now() + delay, next(self._seq), job.job_id))
            else:
                self._waiting.append(job.job_id)
            self._cond.notify_all()
        return job.job_id

    def _promote(self, now: float) -> None:
        while self._delayed and self._delayed[0][0] <= now:
            _, _, job_id = heapq.heappop(self._delayed)
            self._waiting.append(job_id)

        expired = [job_id for job_id, deadline in self._leases.items() if deadline <= now]
        for job_id in expired:
            del self._leases[job_id]
            if self._count_redelivery(job_id, "lease expired"):
                self._waiting.append(job_id)

    def _count_redelivery(self, job_id: str, error: str) -> bool:
        count = self._redeliveries.get(job_id, 0) + 1
        if count > self.max_redeliveries:
            self._jobs.pop(job_id, None)
            self._redeliveries.pop(job_id, None)
            self._failed += 1
            logger.warning("Queue job failed", job_id=job_id, error=error, redeliveries=count - 1)
            return False
        self._redeliveries[job_id] = count
        return True

    def _next_wakeup(self, now: float) -> float | None:
        candidates = list(self._leases.values())
        if self._delayed:
            candidates.append(self._delayed[0][0])
        if not candidates:
            return None
        return max(0.0, min(candidates) - now)

    async def dequeue(self, timeout: float | None = None) -> DeliveryJob | None:
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout

        async with self._cond:
            while True:
                if self._closed:
                    return None

                now = loop.time()
                self._promote(now)
                if not self._paused and self._waiting:
                    job_id = self._waiting.popleft()
                    self._leases[job_id] = now + self.visibility_timeout_seconds
                    return self._jobs[job_id]

                wait = None if self._paused else self._next_wakeup(now)
                if deadline is not None:
                    remaining = deadline - now
                    if remaining <= 0:
                        return None
                    wait = remaining if wait is None else min(wait, remaining)

                try:
                    await asyncio.wait_for(self._cond.wait(), wait)
                except TimeoutError:
                    pass

    async def ack(self, job_id: str) -> None:
        async with self._cond:
            if self._leases.pop(job_id, None) is None:
                return
            self._jobs.pop(job_id, None)
            self._redeliveries.pop(job_id, None)
            self._completed += 1

    async def nack(self, job_id: str, error: str, delay_ms: int = 0) -> bool:
        async with self._cond:
            if self._leases.pop(job_id, None) is None:
                return False
            if not self._count_redelivery(job_id, error):
                return False

            if delay_ms > 0:
                ready_at = self._now() + delay_ms / 1000
                heapq.heappush(self._delayed, (ready_at, next(self._seq), job_id))
            else:
                self._waiting.append(job_id)
            self._cond.notify_all()
            return True

    async def stats(self) -> QueueStats:
        async with self._cond:
            self._promote(self._now())
            return QueueStats(
                waiting=len(self._waiting),
                active=len(self._leases),
                completed=self._completed,
                failed=self._failed,
                delayed=len(self._delayed),
                paused=self._paused,
            )

    async def pause(self) -> None:
        async with self._cond:
            self._paused = True
        logger.info("Delivery queue paused")

    async def resume(self) -> None:
        async with self._cond:
            self._paused = False
            self._cond.notify_all()
        logger.info("Delivery queue resumed")
