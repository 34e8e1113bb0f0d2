"""Retry utilities for store and queue operations.

Short, bounded retries for infrastructure hiccups. Anything that still
fails after these retries is left for the periodic sweeps to recover.
"""

from __future__ import annotations

import logging

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry,
    retry_if_exception,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from courier.exceptions import (
    ConcurrencyConflictError,
    DuplicateDeliveryError,
    QueueError,
    StorageError,
)

logger = logging.getLogger(__name__)

_TRANSIENT_ERRORS = (StorageError, QueueError)

# Conflicts and duplicates are answers from the store, not outages
_DEFINITIVE_ERRORS = (ConcurrencyConflictError, DuplicateDeliveryError)


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, _TRANSIENT_ERRORS) and not isinstance(exc, _DEFINITIVE_ERRORS)


def _log_retry(retry_state: RetryCallState) -> None:
    """Log retry attempts with context."""
    if retry_state.attempt_number >= 1:
        logger.warning(
            "Retrying store/queue operation",
            extra={
                "attempt": retry_state.attempt_number,
                "fn_name": retry_state.fn.__name__ if retry_state.fn else "unknown",
                "exception": str(retry_state.outcome.exception()) if retry_state.outcome else None,
            },
        )


# Decorator for retrying transient store/queue errors
storage_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
    retry=retry_if_exception(_is_transient),
    before_sleep=_log_retry,
    reraise=True,
)


def conflict_retrying(max_attempts: int = 5) -> AsyncRetrying:
    """Retry loop for optimistic read-modify-write cycles.

    Example:
        ```python
        async for attempt in conflict_retrying():
            with attempt:
                current = await store.get_log(endpoint_id, payload_id)
                await store.update_log(change(current), expected_version=current.version)
        ```
    """
    return AsyncRetrying(
        stop=stop_after_attempt(max_attempts),
        retry=retry_if_exception_type(ConcurrencyConflictError),
        reraise=True,
    )
