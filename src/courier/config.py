"""Configuration management for Courier."""

import logging
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Courier configuration loaded from environment variables.

    All settings can be overridden via environment variables with
    the COURIER_ prefix. For example:
        COURIER_QUEUE_BACKEND=redis
        COURIER_REDIS_URL=redis://localhost:6379/0
        COURIER_WORKER_CONCURRENCY=10
    """

    # Environment
    env: Literal["development", "production", "test"] = Field(
        default="development",
        description="Environment: development, production, or test",
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level",
    )
    log_format: Literal["json", "text"] = Field(
        default="json",
        description="Log output format",
    )

    # Outbound HTTP
    delivery_timeout_seconds: float = Field(
        default=30.0,
        gt=0.0,
        le=300.0,
        description="Connect + total timeout for one delivery attempt",
    )
    max_response_bytes: int = Field(
        default=1024 * 1024,
        ge=1024,
        description="Maximum response body read from a receiver before the attempt fails",
    )
    max_redirects: int = Field(
        default=5,
        ge=0,
        le=20,
        description="Maximum redirect hops followed per attempt",
    )
    response_body_log_limit: int = Field(
        default=4096,
        ge=0,
        description="Characters of response body kept on the delivery log",
    )
    user_agent: str = Field(
        default="Courier-Webhook/0.1",
        description="User-Agent header sent to receivers",
    )

    # Retry policy
    default_max_attempts: int = Field(
        default=3,
        ge=1,
        le=20,
        description="Attempts per delivery series before it is marked failed",
    )
    retry_base_delay_seconds: float = Field(
        default=5.0,
        gt=0.0,
        description="Backoff delay after the first failed attempt (doubles each attempt)",
    )
    retry_max_delay_seconds: float = Field(
        default=300.0,
        gt=0.0,
        description="Upper bound for the backoff delay",
    )

    # Periodic tasks
    retry_sweep_interval_seconds: float = Field(
        default=60.0,
        gt=0.0,
        description="How often due retries are re-enqueued",
    )
    retry_sweep_batch_size: int = Field(
        default=100,
        ge=1,
        le=10000,
        description="Maximum delivery logs re-enqueued per sweep",
    )
    stale_pending_seconds: float = Field(
        default=900.0,
        gt=0.0,
        description=(
            "Pending deliveries untouched for this long are re-enqueued. "
            "Recovers rows whose job was lost between log write and enqueue."
        ),
    )
    reclaim_interval_seconds: float = Field(
        default=300.0,
        gt=0.0,
        description="How often stale pending deliveries are reclaimed",
    )
    log_retention_days: int = Field(
        default=30,
        ge=1,
        description="Delivered/failed logs older than this are deleted",
    )
    cleanup_interval_seconds: float = Field(
        default=3600.0,
        gt=0.0,
        description="How often the retention cleanup runs",
    )

    # Worker pool
    worker_concurrency: int = Field(
        default=5,
        ge=1,
        le=256,
        description="Number of concurrent delivery workers",
    )
    worker_poll_timeout_seconds: float = Field(
        default=1.0,
        gt=0.0,
        description="How long a worker blocks on an empty queue before re-checking shutdown",
    )

    # Queue
    queue_backend: Literal["memory", "redis"] = Field(
        default="memory",
        description="Delivery queue backend: 'memory' (single process) or 'redis' (durable)",
    )
    redis_url: str | None = Field(
        default=None,
        description="Redis URL for the durable queue (e.g., redis://localhost:6379/0)",
    )
    queue_name: str = Field(
        default="webhook-delivery",
        description="Queue name, used as the Redis key namespace",
    )
    visibility_timeout_seconds: float = Field(
        default=120.0,
        gt=0.0,
        description="Lease duration of a dequeued job before it becomes visible again",
    )
    max_redeliveries: int = Field(
        default=3,
        ge=0,
        description="Times a job is redelivered after worker infrastructure errors",
    )
    redelivery_delay_seconds: float = Field(
        default=5.0,
        ge=0.0,
        description="Delay before a nacked job becomes visible again",
    )

    # Receiver-side verification defaults
    signature_max_age_seconds: int = Field(
        default=300,
        ge=1,
        description="Replay window for timestamped signature verification",
    )

    model_config = {
        "env_prefix": "COURIER_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
    }

    @model_validator(mode="after")
    def validate_retry_delays(self) -> "Settings":
        """Backoff cap must not be below the base delay."""
        if self.retry_max_delay_seconds < self.retry_base_delay_seconds:
            raise ValueError(
                f"retry_max_delay_seconds ({self.retry_max_delay_seconds}) must be at least "
                f"retry_base_delay_seconds ({self.retry_base_delay_seconds})"
            )
        return self

    @model_validator(mode="after")
    def validate_queue_settings(self) -> "Settings":
        """Validate queue backend settings.

        - The redis backend needs a URL
        - A lease shorter than one delivery attempt would redeliver jobs
          that are still in flight
        """
        if self.queue_backend == "redis" and not self.redis_url:
            raise ValueError("COURIER_REDIS_URL must be set when COURIER_QUEUE_BACKEND=redis")

        if self.visibility_timeout_seconds <= self.delivery_timeout_seconds:
            raise ValueError(
                f"visibility_timeout_seconds ({self.visibility_timeout_seconds}) must exceed "
                f"delivery_timeout_seconds ({self.delivery_timeout_seconds})"
            )

        if self.env == "production" and self.queue_backend == "memory":
            logger.warning(
                "In-memory delivery queue in production: queued jobs are lost on restart"
            )
        return self


# Global settings instance
settings = Settings()
