"""Retry scheduling and periodic maintenance.

The scheduler is the only component that re-enqueues delivery series:
- `sweep_retries` re-enqueues series whose backoff has elapsed
- `reclaim_stale_pending` re-enqueues series whose job was lost
- `cleanup_logs` deletes finished series past the retention window

`BackgroundRunner` drives these on fixed intervals inside the process.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from courier.exceptions import ConcurrencyConflictError, QueueError, StorageError
from courier.logging import get_logger
from courier.models import DeliveryJob, utc_now

if TYPE_CHECKING:
    from courier.models import DeliveryLog
    from courier.queue import DeliveryQueue
    from courier.storage import DeliveryLogStore

logger = get_logger(__name__)

# Receives the current UTC time, returns an optional summary for the log
TaskFn = Callable[[datetime], Awaitable[str | None]]


def backoff(attempt: int, base_delay: float = 5.0, max_delay: float = 300.0) -> float:
    """Delay in seconds before retrying after `attempt` failed.

    base_delay * 2^(attempt-1), capped at max_delay: 5s, 10s, 20s, ... 300s.
    Attempts below 1 are treated as 1.
    """
    exponent = max(1, attempt) - 1
    if exponent >= 64:
        return float(max_delay)
    return float(min(max_delay, base_delay * 2**exponent))


@dataclass
class PeriodicTask:
    """A named coroutine run every `interval_seconds`."""

    name: str
    fn: TaskFn
    interval_seconds: float


class BackgroundRunner:
    """Runs periodic tasks in-process, one asyncio task each.

    A failing run is logged and the task keeps its schedule; one task's
    failure never affects the others.
    """

    def __init__(self, tasks: Sequence[PeriodicTask]) -> None:
        self.tasks = list(tasks)
        self._running: list[asyncio.Task[None]] = []

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._running)

    async def start(self) -> None:
        if self.running:
            return
        self._running = [
            asyncio.create_task(self._loop(task), name=f"courier-{task.name}")
            for task in self.tasks
        ]
        logger.info("Background runner started", tasks=[task.name for task in self.tasks])

    async def stop(self) -> None:
        for task in self._running:
            task.cancel()
        await asyncio.gather(*self._running, return_exceptions=True)
        self._running = []
        logger.info("Background runner stopped")

    async def _loop(self, task: PeriodicTask) -> None:
        while True:
            await asyncio.sleep(task.interval_seconds)
            await self.run_once(task)

    @staticmethod
    async def run_once(task: PeriodicTask) -> None:
        """Run one task now, logging instead of raising on failure."""
        try:
            summary = await task.fn(utc_now())
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Background task failed", task=task.name)
            return
        if summary:
            logger.info("Background task completed", task=task.name, summary=summary)


class RetryScheduler:
    """Re-enqueues delivery series from the log store.

    A due row is claimed with a conditional `retrying -> pending` write
    before its job is enqueued, so concurrent sweeps never produce two
    outstanding jobs for one series.

    Example:
        ```python
        scheduler = RetryScheduler(store, queue)
        requeued = await scheduler.sweep_retries()
        ```
    """

    def __init__(
        self,
        store: DeliveryLogStore,
        queue: DeliveryQueue,
        batch_size: int = 100,
        stale_pending_seconds: float = 900.0,
        retention_days: int = 30,
    ) -> None:
        self._store = store
        self._queue = queue
        self.batch_size = batch_size
        self.stale_pending_seconds = stale_pending_seconds
        self.retention_days = retention_days

    async def sweep_retries(self, now: datetime | None = None) -> int:
        """Enqueue every retrying series whose next_retry_at has passed.

        Returns:
            Number of series enqueued.
        """
        now = now or utc_now()
        due = await self._store.list_due_retries(now, limit=self.batch_size)

        enqueued = 0
        for log in due:
            claimed = await self._claim(log, now)
            if claimed is None:
                continue

            try:
                await self._queue.enqueue(DeliveryJob.for_log(claimed))
            except QueueError as e:
                logger.warning(
                    "Retry enqueue failed, releasing claim",
                    log_id=log.id,
                    endpoint_id=log.endpoint_id,
                    error=str(e),
                )
                await self._release(claimed, now)
                continue

            enqueued += 1
            logger.debug(
                "Retry enqueued",
                log_id=log.id,
                endpoint_id=log.endpoint_id,
                attempt=claimed.attempt,
            )

        if enqueued:
            logger.info("Retry sweep enqueued deliveries", count=enqueued, due=len(due))
        return enqueued

    async def _claim(self, log: DeliveryLog, now: datetime) -> DeliveryLog | None:
        try:
            return await self._store.update_log(
                log.model_copy(deep=True).claim_for_retry(now),
                expected_version=log.version,
            )
        except ConcurrencyConflictError:
            logger.debug("Retry already claimed", log_id=log.id)
            return None

    async def _release(self, claimed: DeliveryLog, now: datetime) -> None:
        try:
            await self._store.update_log(
                claimed.model_copy(deep=True).release_claim(retry_at=now, now=now),
                expected_version=claimed.version,
            )
        except StorageError as e:
            # Left pending; the stale-pending reclaim picks it up
            logger.error("Failed to release retry claim", log_id=claimed.id, error=str(e))

    async def reclaim_stale_pending(self, now: datetime | None = None) -> int:
        """Re-enqueue pending series that nobody has touched for too long.

        Covers a job lost between writing the log and enqueueing it, and a
        claimed retry whose enqueue and release both failed.

        Returns:
            Number of series re-enqueued.
        """
        now = now or utc_now()
        cutoff = now - timedelta(seconds=self.stale_pending_seconds)
        stale = await self._store.list_stale_pending(cutoff, limit=self.batch_size)

        reclaimed = 0
        for log in stale:
            try:
                touched = await self._store.update_log(
                    log.model_copy(deep=True).touch(now),
                    expected_version=log.version,
                )
            except ConcurrencyConflictError:
                continue

            try:
                await self._queue.enqueue(DeliveryJob.for_log(touched))
            except QueueError as e:
                logger.warning("Stale delivery enqueue failed", log_id=log.id, error=str(e))
                continue
            reclaimed += 1

        if reclaimed:
            logger.warning("Reclaimed stale pending deliveries", count=reclaimed)
        return reclaimed

    async def cleanup_logs(self, now: datetime | None = None) -> int:
        """Delete delivered and failed logs older than the retention window."""
        now = now or utc_now()
        cutoff = now - timedelta(days=self.retention_days)
        deleted = await self._store.delete_terminal_before(cutoff)
        if deleted:
            logger.info("Old delivery logs deleted", count=deleted, cutoff=cutoff.isoformat())
        return deleted

    def periodic_tasks(
        self,
        sweep_interval_seconds: float = 60.0,
        reclaim_interval_seconds: float = 300.0,
        cleanup_interval_seconds: float = 3600.0,
    ) -> list[PeriodicTask]:
        """Periodic tasks for a BackgroundRunner."""

        async def sweep(now: datetime) -> str | None:
            count = await self.sweep_retries(now)
            return f"enqueued={count}" if count else None

        async def reclaim(now: datetime) -> str | None:
            count = await self.reclaim_stale_pending(now)
            return f"reclaimed={count}" if count else None

        async def cleanup(now: datetime) -> str | None:
            count = await self.cleanup_logs(now)
            return f"deleted={count}" if count else None

        return [
            PeriodicTask("retry_sweep", sweep, sweep_interval_seconds),
            PeriodicTask("stale_pending_reclaim", reclaim, reclaim_interval_seconds),
            PeriodicTask("log_cleanup", cleanup, cleanup_interval_seconds),
        ]


__all__ = [
    "BackgroundRunner",
    "PeriodicTask",
    "RetryScheduler",
    "TaskFn",
    "backoff",
]
