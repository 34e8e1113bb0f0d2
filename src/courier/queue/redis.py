"""Redis-backed durable delivery queue.

Layout under the `courier:{queue_name}:` namespace:
    jobs          hash    job_id -> serialized DeliveryJob
    waiting       list    job ids ready to be handed out (FIFO)
    delayed       zset    job ids scored by visibility time (ms)
    active        zset    leased job ids scored by lease deadline (ms)
    redeliveries  hash    job_id -> redelivery count
    completed     string  counter
    failed        string  counter
    paused        string  present while the queue is paused

Storing a job and scheduling it run in one Lua script, as do promotion of due
jobs, recovery of expired leases and leasing the next job. A job is never
stored without being scheduled, and concurrent consumers never lease the same
job.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Iterator
from contextlib import contextmanager

import redis.asyncio as aioredis
from redis.commands.core import AsyncScript
from redis.exceptions import RedisError

from courier.exceptions import QueueError
from courier.logging import get_logger
from courier.models import DeliveryJob, QueueStats
from courier.storage.retry import storage_retry

from .base import DeliveryQueue, visible_delay_seconds

logger = get_logger(__name__)

# Poll interval while waiting for a job to become visible
_POLL_INTERVAL_SECONDS = 0.2


@contextmanager
def _translate_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except RedisError as e:
        raise QueueError(f"Redis {operation} failed: {e}") from e


class RedisDeliveryQueue(DeliveryQueue):
    """Durable queue on Redis with delayed jobs and visibility-timeout leases.

    Example:
        ```python
        queue = RedisDeliveryQueue("redis://localhost:6379/0")
        async with queue:
            await queue.enqueue(job)
            leased = await queue.dequeue(timeout=1.0)
            await queue.ack(leased.job_id)
        ```
    """

    _ENQUEUE_SCRIPT = """
    if redis.call('HSETNX', KEYS[1], ARGV[1], ARGV[2]) == 0 then
        return 0
    end
    local ready_at = tonumber(ARGV[3])
    if ready_at > 0 then
        redis.call('ZADD', KEYS[3], ready_at, ARGV[1])
    else
        redis.call('RPUSH', KEYS[2], ARGV[1])
    end
    return 1
    """

    _LEASE_SCRIPT = """
    local now = tonumber(ARGV[1])
    local lease_ms = tonumber(ARGV[2])
    local max_redeliveries = tonumber(ARGV[3])

    -- Promote delayed jobs that are due
    local due = redis.call('ZRANGEBYSCORE', KEYS[2], '-inf', now)
    for _, id in ipairs(due) do
        redis.call('ZREM', KEYS[2], id)
        redis.call('RPUSH', KEYS[1], id)
    end

    -- Recover leases whose consumer never acked
    local expired = redis.call('ZRANGEBYSCORE', KEYS[3], '-inf', now)
    for _, id in ipairs(expired) do
        redis.call('ZREM', KEYS[3], id)
        local count = redis.call('HINCRBY', KEYS[4], id, 1)
        if count > max_redeliveries then
            redis.call('HDEL', KEYS[4], id)
            redis.call('HDEL', KEYS[6], id)
            redis.call('INCR', KEYS[5])
        else
            redis.call('RPUSH', KEYS[1], id)
        end
    end

    if redis.call('EXISTS', KEYS[7]) == 1 then
        return false
    end

    local id = redis.call('LPOP', KEYS[1])
    if not id then
        return false
    end
    redis.call('ZADD', KEYS[3], now + lease_ms, id)
    return {id, redis.call('HGET', KEYS[6], id)}
    """

    def __init__(
        self,
        redis_url: str,
        queue_name: str = "webhook-delivery",
        visibility_timeout_seconds: float = 120.0,
        max_redeliveries: int = 3,
        client: aioredis.Redis | None = None,
    ) -> None:
        self.redis_url = redis_url
        self.queue_name = queue_name
        self.visibility_timeout_seconds = visibility_timeout_seconds
        self.max_redeliveries = max_redeliveries

        self._client = client
        self._owns_client = client is None
        self._lease_script: AsyncScript | None = None
        self._enqueue_script: AsyncScript | None = None

        prefix = f"courier:{queue_name}:"
        self._jobs_key = f"{prefix}jobs"
        self._waiting_key = f"{prefix}waiting"
        self._delayed_key = f"{prefix}delayed"
        self._active_key = f"{prefix}active"
        self._redeliveries_key = f"{prefix}redeliveries"
        self._completed_key = f"{prefix}completed"
        self._failed_key = f"{prefix}failed"
        self._paused_key = f"{prefix}paused"

    @property
    def client(self) -> aioredis.Redis:
        if self._client is None:
            raise QueueError("Redis queue is not connected")
        return self._client

    async def connect(self) -> None:
        if self._client is None:
            self._client = aioredis.Redis.from_url(self.redis_url, decode_responses=True)
        self._lease_script = self._client.register_script(self._LEASE_SCRIPT)
        self._enqueue_script = self._client.register_script(self._ENQUEUE_SCRIPT)

        with _translate_errors("ping"):
            await self._client.ping()
        logger.info("Redis delivery queue connected", queue_name=self.queue_name)

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except (RedisError, QueueError):
            return False

    @staticmethod
    def _now_ms() -> int:
        return int(time.time() * 1000)

    @storage_retry
    async def enqueue(self, job: DeliveryJob, delay_ms: int = 0) -> str:
        if self._enqueue_script is None:
            raise QueueError("Redis queue is not connected")

        delay = visible_delay_seconds(job, delay_ms)
        ready_at = self._now_ms() + int(delay * 1000) if delay > 0 else 0
        with _translate_errors("enqueue"):
            # HSETNX keeps a re-enqueued job id from being scheduled twice
            await self._enqueue_script(
                keys=[self._jobs_key, self._waiting_key, self._delayed_key],
                args=[job.job_id, job.model_dump_json(), ready_at],
            )
        return job.job_id

    async def _lease_next(self) -> DeliveryJob | None:
        if self._lease_script is None:
            raise QueueError("Redis queue is not connected")

        while True:
            with _translate_errors("dequeue"):
                leased = await self._lease_script(
                    keys=[
                        self._waiting_key,
                        self._delayed_key,
                        self._active_key,
                        self._redeliveries_key,
                        self._failed_key,
                        self._jobs_key,
                        self._paused_key,
                    ],
                    args=[
                        self._now_ms(),
                        int(self.visibility_timeout_seconds * 1000),
                        self.max_redeliveries,
                    ],
                )
            if not leased:
                return None

            job_id = leased[0]
            raw = leased[1] if len(leased) > 1 else None
            if raw is not None:
                return DeliveryJob.model_validate_json(raw)

            # Job body vanished (acked elsewhere); drop the orphaned lease
            with _translate_errors("dequeue"):
                await self.client.zrem(self._active_key, job_id)

    async def dequeue(self, timeout: float | None = None) -> DeliveryJob | None:
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            job = await self._lease_next()
            if job is not None:
                return job

            if deadline is None:
                await asyncio.sleep(_POLL_INTERVAL_SECONDS)
                continue
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            await asyncio.sleep(min(_POLL_INTERVAL_SECONDS, remaining))

    @storage_retry
    async def ack(self, job_id: str) -> None:
        with _translate_errors("ack"):
            removed = await self.client.zrem(self._active_key, job_id)
            if not removed:
                return
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.hdel(self._jobs_key, job_id)
                pipe.hdel(self._redeliveries_key, job_id)
                pipe.incr(self._completed_key)
                await pipe.execute()

    async def nack(self, job_id: str, error: str, delay_ms: int = 0) -> bool:
        with _translate_errors("nack"):
            removed = await self.client.zrem(self._active_key, job_id)
            if not removed:
                return False

            count = await self.client.hincrby(self._redeliveries_key, job_id, 1)
            if count > self.max_redeliveries:
                async with self.client.pipeline(transaction=True) as pipe:
                    pipe.hdel(self._jobs_key, job_id)
                    pipe.hdel(self._redeliveries_key, job_id)
                    pipe.incr(self._failed_key)
                    await pipe.execute()
                logger.warning(
                    "Queue job failed", job_id=job_id, error=error, redeliveries=count - 1
                )
                return False

            if delay_ms > 0:
                await self.client.zadd(self._delayed_key, {job_id: self._now_ms() + delay_ms})
            else:
                await self.client.rpush(self._waiting_key, job_id)
        return True

    @storage_retry
    async def stats(self) -> QueueStats:
        with _translate_errors("stats"):
            async with self.client.pipeline(transaction=False) as pipe:
                pipe.llen(self._waiting_key)
                pipe.zcard(self._active_key)
                pipe.get(self._completed_key)
                pipe.get(self._failed_key)
                pipe.zcard(self._delayed_key)
                pipe.exists(self._paused_key)
                waiting, active, completed, failed, delayed, paused = await pipe.execute()

        return QueueStats(
            waiting=int(waiting or 0),
            active=int(active or 0),
            completed=int(completed or 0),
            failed=int(failed or 0),
            delayed=int(delayed or 0),
            paused=bool(paused),
        )

    async def pause(self) -> None:
        with _translate_errors("pause"):
            await self.client.set(self._paused_key, "1")
        logger.info("Delivery queue paused", queue_name=self.queue_name)

    async def resume(self) -> None:
        with _translate_errors("resume"):
            await self.client.delete(self._paused_key)
        logger.info("Delivery queue resumed", queue_name=self.queue_name)
