"""HMAC-SHA256 webhook signatures with replay-window checks.

Senders only need `sign` / `signature_headers`. Receivers verify with
`verify_with_timestamp`, which rejects requests outside the replay window
before the signature is even checked.

Every function here is pure and never raises on malformed input.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
import time
from collections.abc import Mapping
from typing import Literal

from pydantic import BaseModel

SIGNATURE_PREFIX = "sha256="
SIGNATURE_HEADER = "X-Webhook-Signature"
TIMESTAMP_HEADER = "X-Webhook-Timestamp"

DEFAULT_MAX_AGE_SECONDS = 300

_HEX_DIGITS = frozenset("0123456789abcdefABCDEF")

VerificationFailure = Literal[
    "missing_signature",
    "invalid_timestamp",
    "timestamp_out_of_window",
    "invalid_signature",
]


class SignedHeaders(BaseModel):
    """Signature and timestamp header values for one request."""

    signature: str
    timestamp: str


class VerificationResult(BaseModel):
    """Outcome of a timestamped verification. `reason` is set when invalid."""

    valid: bool
    reason: VerificationFailure | None = None


def _digest(payload: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def sign(payload: bytes, secret: str) -> str:
    """Compute the signature header value for a payload.

    Args:
        payload: Raw serialized body bytes, exactly as sent.
        secret: Endpoint signing secret.

    Returns:
        Signature in format "sha256=<64 lowercase hex chars>".
    """
    return f"{SIGNATURE_PREFIX}{_digest(payload, secret)}"


def sign_with_timestamp(
    payload: bytes,
    secret: str,
    timestamp: int | None = None,
) -> SignedHeaders:
    """Sign a payload and stamp it with the send time.

    The timestamp travels in its own header and is not part of the signed
    bytes; receivers combine both checks.

    Args:
        payload: Raw serialized body bytes.
        secret: Endpoint signing secret.
        timestamp: Unix seconds; defaults to now.
    """
    if timestamp is None:
        timestamp = int(time.time())
    return SignedHeaders(signature=sign(payload, secret), timestamp=str(timestamp))


def verify(payload: bytes, signature_header: str | None, secret: str) -> bool:
    """Verify a signature header against a payload.

    Uses constant-time comparison. Returns False for a missing header, a
    wrong prefix, wrong length, non-hex characters or non-bytes payloads.
    """
    if not isinstance(signature_header, str) or not isinstance(secret, str):
        return False
    if not isinstance(payload, (bytes, bytearray)):
        return False
    if not signature_header.startswith(SIGNATURE_PREFIX):
        return False

    received = signature_header[len(SIGNATURE_PREFIX) :]
    if len(received) != hashlib.sha256().digest_size * 2:
        return False
    if not set(received) <= _HEX_DIGITS:
        return False

    try:
        expected = _digest(bytes(payload), secret)
    except UnicodeEncodeError:
        return False
    return hmac.compare_digest(expected, received.lower())


def verify_with_timestamp(
    payload: bytes,
    signature_header: str | None,
    timestamp_header: str | None,
    secret: str,
    max_age_seconds: int = DEFAULT_MAX_AGE_SECONDS,
    now: float | None = None,
) -> VerificationResult:
    """Verify a signature and reject requests outside the replay window.

    The window is symmetric: a timestamp too far in the past (stale replay)
    or in the future (clock skew) is rejected before the signature check.

    Args:
        payload: Raw body bytes as received.
        signature_header: Value of X-Webhook-Signature.
        timestamp_header: Value of X-Webhook-Timestamp (unix seconds).
        secret: Endpoint signing secret.
        max_age_seconds: Replay window in seconds.
        now: Current unix time; defaults to the wall clock.

    Returns:
        VerificationResult with `valid` and, when invalid, a `reason`.
    """
    if not signature_header:
        return VerificationResult(valid=False, reason="missing_signature")

    raw_timestamp = timestamp_header.strip() if isinstance(timestamp_header, str) else ""
    if not (raw_timestamp.isascii() and raw_timestamp.isdigit()):
        return VerificationResult(valid=False, reason="invalid_timestamp")

    timestamp = int(raw_timestamp)
    current = time.time() if now is None else now
    if abs(current - timestamp) > max_age_seconds:
        return VerificationResult(valid=False, reason="timestamp_out_of_window")

    if not verify(payload, signature_header, secret):
        return VerificationResult(valid=False, reason="invalid_signature")

    return VerificationResult(valid=True)


def new_secret() -> str:
    """Generate an endpoint signing secret (32 random bytes, hex encoded)."""
    return secrets.token_hex(32)


def signature_headers(
    payload: bytes,
    secret: str,
    timestamp: int | None = None,
) -> dict[str, str]:
    """Headers that authenticate one outbound request."""
    signed = sign_with_timestamp(payload, secret, timestamp)
    return {
        "Content-Type": "application/json",
        SIGNATURE_HEADER: signed.signature,
        TIMESTAMP_HEADER: signed.timestamp,
    }


def extract_signature_headers(
    headers: Mapping[str, str | list[str] | None],
) -> tuple[str | None, str | None]:
    """Pull signature and timestamp values out of received headers.

    Header names are matched case-insensitively; for repeated headers the
    first value wins.

    Returns:
        (signature, timestamp), either of which may be None.
    """
    lowered = {key.lower(): value for key, value in headers.items()}

    def first(name: str) -> str | None:
        value = lowered.get(name.lower())
        if isinstance(value, list):
            return value[0] if value else None
        return value

    return first(SIGNATURE_HEADER), first(TIMESTAMP_HEADER)


__all__ = [
    "DEFAULT_MAX_AGE_SECONDS",
    "SIGNATURE_HEADER",
    "SIGNATURE_PREFIX",
    "TIMESTAMP_HEADER",
    "SignedHeaders",
    "VerificationResult",
    "extract_signature_headers",
    "new_secret",
    "sign",
    "sign_with_timestamp",
    "signature_headers",
    "verify",
    "verify_with_timestamp",
]
