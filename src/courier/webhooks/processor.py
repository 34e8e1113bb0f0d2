"""Queue consumers: the delivery processor and the worker pool.

The processor turns one DeliveryJob into at most one HTTP attempt and one
conditional write to the delivery log. It is safe to run the same job twice:
the second run finds the log already moved past the job's attempt and does
nothing.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from courier.exceptions import DeliveryError, DuplicateDeliveryError, QueueError
from courier.logging import bind_context, delivery_context, get_logger
from courier.models import RESPONSE_BODY_LIMIT, DeliveryLog
from courier.storage.retry import conflict_retrying, storage_retry

from .scheduler import backoff

if TYPE_CHECKING:
    from courier.models import DeliveryJob, DeliveryResult
    from courier.queue import DeliveryQueue
    from courier.storage import DeliveryLogStore, EndpointRegistry

    from .delivery import HttpDeliveryWorker

logger = get_logger(__name__)

ENDPOINT_NOT_FOUND = "endpoint_not_found"
ENDPOINT_DISABLED = "endpoint_disabled"


def _owns(log: DeliveryLog, job: DeliveryJob) -> bool:
    """Whether `job` is the outstanding attempt of the series tracked by `log`."""
    return log.status == "pending" and log.attempt == job.attempt


class DeliveryProcessor:
    """Processes one delivery job end to end.

    Steps: load (or create) the series log, skip it if finished or if this
    job is stale, check the endpoint, make one HTTP attempt, then record the
    outcome with a version-checked write.
    """

    def __init__(
        self,
        store: DeliveryLogStore,
        registry: EndpointRegistry,
        worker: HttpDeliveryWorker,
        retry_base_delay_seconds: float = 5.0,
        retry_max_delay_seconds: float = 300.0,
        response_body_log_limit: int = RESPONSE_BODY_LIMIT,
    ) -> None:
        self._store = store
        self._registry = registry
        self._worker = worker
        self.retry_base_delay_seconds = retry_base_delay_seconds
        self.retry_max_delay_seconds = retry_max_delay_seconds
        self.response_body_log_limit = response_body_log_limit

    async def process(self, job: DeliveryJob) -> DeliveryResult | None:
        """Process one job.

        Returns:
            The HTTP attempt's result, or None when no attempt was made
            (finished series, stale job, missing or disabled endpoint,
            unbuildable request).

        Raises:
            StorageError: If the store stays unavailable; the job should be
                nacked and redelivered.
        """
        with delivery_context(job.endpoint_id, job.payload.id, job.attempt):
            log = await self._load_or_create(job)

            if log.is_terminal:
                logger.info("Delivery already finished, skipping", status=log.status)
                return None
            if not _owns(log, job):
                logger.info(
                    "Stale delivery job, skipping",
                    status=log.status,
                    log_attempt=log.attempt,
                )
                return None

            endpoint = await self._registry.get_endpoint(job.endpoint_id)
            if endpoint is None:
                await self._fail(log, job, ENDPOINT_NOT_FOUND)
                return None
            if not endpoint.is_active:
                await self._fail(log, job, ENDPOINT_DISABLED)
                return None

            try:
                result = await self._worker.deliver(endpoint, job.payload)
            except DeliveryError as e:
                logger.error("Webhook request could not be built", error=e.message)
                await self._fail(log, job, e.message)
                return None

            updated = await self._record(log, job, result)
            if updated is not None:
                self._log_outcome(updated, result)
            return result

    @storage_retry
    async def _load_or_create(self, job: DeliveryJob) -> DeliveryLog:
        log = await self._store.get_log(job.endpoint_id, job.payload.id)
        if log is not None:
            return log

        try:
            return await self._store.create_log(
                DeliveryLog.start(
                    job.endpoint_id,
                    job.payload,
                    attempt=job.attempt,
                    max_attempts=job.max_attempts,
                )
            )
        except DuplicateDeliveryError:
            # Another worker created it first
            existing = await self._store.get_log(job.endpoint_id, job.payload.id)
            assert existing is not None
            return existing

    async def _record(
        self,
        log: DeliveryLog,
        job: DeliveryJob,
        result: DeliveryResult,
    ) -> DeliveryLog | None:
        delay = backoff(job.attempt, self.retry_base_delay_seconds, self.retry_max_delay_seconds)

        current: DeliveryLog | None = log
        async for attempt in conflict_retrying():
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    current = await self._store.get_log(job.endpoint_id, job.payload.id)
                if current is None or not _owns(current, job):
                    logger.info("Delivery log moved on, dropping result")
                    return None

                updated = current.model_copy(deep=True).record_result(
                    result,
                    retry_delay_seconds=delay,
                    body_limit=self.response_body_log_limit,
                )
                return await self._store.update_log(updated, expected_version=current.version)
        return None

    async def _fail(self, log: DeliveryLog, job: DeliveryJob, reason: str) -> None:
        current: DeliveryLog | None = log
        async for attempt in conflict_retrying():
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    current = await self._store.get_log(job.endpoint_id, job.payload.id)
                if current is None or not _owns(current, job):
                    return

                failed = current.model_copy(deep=True).mark_failed(reason)
                await self._store.update_log(failed, expected_version=current.version)
        logger.warning("Delivery failed permanently", reason=reason)

    @staticmethod
    def _log_outcome(log: DeliveryLog, result: DeliveryResult) -> None:
        if log.status == "delivered":
            logger.info(
                "Webhook delivered",
                status_code=result.status_code,
                duration_ms=result.duration_ms,
            )
        elif log.status == "retrying":
            logger.warning(
                "Webhook delivery failed, retry scheduled",
                status_code=result.status_code,
                error=result.failure_reason,
                next_attempt=log.attempt,
                next_retry_at=log.next_retry_at.isoformat() if log.next_retry_at else None,
            )
        else:
            logger.warning(
                "Webhook delivery failed, attempts exhausted",
                status_code=result.status_code,
                error=result.failure_reason,
                attempts=log.attempt,
            )


class WorkerPool:
    """N concurrent consumers of the delivery queue.

    Each consumer acks a job once the processor returns and nacks it when
    the processor raises (store or queue unavailable). Stopping is
    cooperative: consumers finish their current job, then any stragglers
    are cancelled after `grace_seconds`.

    Example:
        ```python
        pool = WorkerPool(queue, processor, concurrency=5)
        await pool.start()
        ...
        await pool.stop()
        ```
    """

    def __init__(
        self,
        queue: DeliveryQueue,
        processor: DeliveryProcessor,
        concurrency: int = 5,
        poll_timeout_seconds: float = 1.0,
        redelivery_delay_seconds: float = 5.0,
        grace_seconds: float = 35.0,
    ) -> None:
        self._queue = queue
        self._processor = processor
        self.concurrency = concurrency
        self.poll_timeout_seconds = poll_timeout_seconds
        self.redelivery_delay_seconds = redelivery_delay_seconds
        self.grace_seconds = grace_seconds
        self._stopping = asyncio.Event()
        self._tasks: list[asyncio.Task[None]] = []

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    async def start(self) -> None:
        if self.running:
            return
        self._stopping.clear()
        self._tasks = [
            asyncio.create_task(self._consume(index), name=f"courier-worker-{index}")
            for index in range(self.concurrency)
        ]
        logger.info("Worker pool started", concurrency=self.concurrency)

    async def stop(self) -> None:
        if not self._tasks:
            return
        self._stopping.set()
        _, pending = await asyncio.wait(self._tasks, timeout=self.grace_seconds)
        for task in pending:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Worker pool stopped", cancelled=len(pending))

    async def _consume(self, index: int) -> None:
        bind_context(worker=index)
        while not self._stopping.is_set():
            try:
                job = await self._queue.dequeue(timeout=self.poll_timeout_seconds)
            except QueueError as e:
                logger.error("Dequeue failed", error=str(e))
                await asyncio.sleep(self.poll_timeout_seconds)
                continue
            if job is None:
                continue

            try:
                await self._processor.process(job)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception("Delivery job failed", job_id=job.job_id)
                await self._nack(job, e)
                continue

            try:
                await self._queue.ack(job.job_id)
            except QueueError as e:
                # The lease expires and the job is redelivered; the processor skips it
                logger.error("Ack failed", job_id=job.job_id, error=str(e))

    async def _nack(self, job: DeliveryJob, error: Exception) -> None:
        try:
            requeued = await self._queue.nack(
                job.job_id,
                str(error),
                delay_ms=int(self.redelivery_delay_seconds * 1000),
            )
        except QueueError as e:
            logger.error("Nack failed", job_id=job.job_id, error=str(e))
            return
        if not requeued:
            logger.error("Delivery job dropped after repeated errors", job_id=job.job_id)


__all__ = [
    "ENDPOINT_DISABLED",
    "ENDPOINT_NOT_FOUND",
    "DeliveryProcessor",
    "WorkerPool",
]
