"""Structured logging for Courier.

Every event carries `service` and `env`, and values that could leak an
endpoint secret or a live signature are masked before rendering. Worker
tasks add `worker`, and each delivery attempt adds `endpoint_id`,
`payload_id` and `attempt` through `delivery_context`.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from structlog.typing import EventDict, Processor, WrappedLogger

SERVICE_NAME = "courier"
REDACTED = "[redacted]"

# Lowercased keys masked anywhere in an event, including nested header dicts
SENSITIVE_KEYS = frozenset(
    {
        "secret",
        "signing_secret",
        "authorization",
        "signature",
        "x-webhook-signature",
    }
)

_configured = False


def _redact(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {
            key: REDACTED if str(key).lower() in SENSITIVE_KEYS else _redact(item)
            for key, item in value.items()
        }
    return value


def redact_secrets(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """Mask secret and signature values, including inside header mappings."""
    for key, value in event_dict.items():
        if key.lower() in SENSITIVE_KEYS:
            event_dict[key] = REDACTED
        elif isinstance(value, Mapping):
            event_dict[key] = _redact(value)
    return event_dict


def add_service_info(env: str) -> Processor:
    def processor(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
        event_dict.setdefault("service", SERVICE_NAME)
        event_dict.setdefault("env", env)
        return event_dict

    return processor


def configure_logging(
    level: str = "INFO",
    format: str = "json",
    env: str = "development",
) -> None:
    """Configure structured logging for Courier.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        format: Output format - "json" for production, "text" for development.
        env: Deployment environment stamped on every event.

    Example:
        ```python
        from courier.logging import configure_logging, get_logger

        configure_logging(level="DEBUG", format="text", env="development")
        logger = get_logger(__name__)
        logger.info("Worker pool started", concurrency=5)
        ```
    """
    global _configured

    log_level = getattr(logging, level.upper(), logging.INFO)

    # Standard library logging must not duplicate structlog output
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=log_level,
    )

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        add_service_info(env),
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        redact_secrets,
        structlog.processors.StackInfoRenderer(),
    ]

    if format.lower() == "json":
        renderer: list[Processor] = [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        renderer = [structlog.dev.ConsoleRenderer(colors=True)]

    structlog.configure(
        processors=[*shared_processors, *renderer],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    _configured = True


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a logger, configuring defaults on first use."""
    if not _configured:
        configure_logging()

    return structlog.get_logger(name)  # type: ignore[no-any-return]


def bind_context(**kwargs: object) -> None:
    """Bind values to all later events of the current asyncio task."""
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()


def unbind_context(*keys: str) -> None:
    structlog.contextvars.unbind_contextvars(*keys)


@contextmanager
def delivery_context(endpoint_id: str, payload_id: str, attempt: int) -> Iterator[None]:
    """Bind delivery identifiers for the duration of one job.

    Example:
        ```python
        with delivery_context(job.endpoint_id, job.payload.id, job.attempt):
            logger.info("Delivering")  # includes endpoint_id, payload_id, attempt
        ```
    """
    structlog.contextvars.bind_contextvars(
        endpoint_id=endpoint_id,
        payload_id=payload_id,
        attempt=attempt,
    )
    try:
        yield
    finally:
        structlog.contextvars.unbind_contextvars("endpoint_id", "payload_id", "attempt")
