"""Webhook endpoint model and URL validation.

Endpoints are owned by the registry; the delivery core only reads them.
"""

from __future__ import annotations

import ipaddress
from datetime import datetime
from typing import Any
from urllib.parse import urlsplit

from pydantic import BaseModel, ConfigDict, Field, field_validator

from courier.exceptions import ValidationError

from .base import generate_id, utc_now
from .events import ALL_EVENT_TYPES, EventType, validate_event_types

# Hostnames that always resolve to the local machine or a private network
_BLOCKED_HOSTNAMES = {"localhost", "localhost.localdomain", "ip6-localhost", "ip6-loopback"}
_BLOCKED_SUFFIXES = (".localhost", ".local", ".internal", ".localdomain")


def _is_blocked_address(address: ipaddress.IPv4Address | ipaddress.IPv6Address) -> bool:
    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped is not None:
        address = address.ipv4_mapped
    return (
        address.is_loopback
        or address.is_link_local
        or address.is_private
        or address.is_reserved
        or address.is_multicast
        or address.is_unspecified
    )


def validate_endpoint_url(url: str) -> str:
    """Validate a webhook endpoint URL.

    Rules:
    - scheme must be https
    - a host is required and credentials in the URL are rejected
    - loopback, link-local, private, reserved, multicast and unspecified
      IP literals are rejected, as are localhost-style hostnames

    Hostnames are not resolved here; a public name pointing at a private
    address is not detected at registration time.

    Args:
        url: Candidate endpoint URL.

    Returns:
        The URL, stripped of surrounding whitespace.

    Raises:
        ValidationError: If the URL is not acceptable.
    """
    candidate = url.strip()
    try:
        parts = urlsplit(candidate)
        port = parts.port
    except ValueError as e:
        raise ValidationError("url", f"Invalid webhook URL: {e}") from e

    if parts.scheme.lower() != "https":
        raise ValidationError("url", "Webhook URL must use HTTPS")

    host = (parts.hostname or "").rstrip(".").lower()
    if not host:
        raise ValidationError("url", "Webhook URL must include a host")

    if parts.username is not None or parts.password is not None:
        raise ValidationError("url", "Webhook URL must not contain credentials")

    if port == 0:
        raise ValidationError("url", "Webhook URL port is invalid")

    if host in _BLOCKED_HOSTNAMES or host.endswith(_BLOCKED_SUFFIXES):
        raise ValidationError("url", f"Webhook host '{host}' is not publicly routable")

    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        return candidate

    if _is_blocked_address(address):
        raise ValidationError("url", f"Webhook host '{host}' is a private or reserved address")

    return candidate


class WebhookEndpoint(BaseModel):
    """A registered delivery target.

    Attributes:
        id: Unique identifier for this endpoint.
        owner_id: Owner whose events are delivered here.
        url: HTTPS URL receiving POSTed events.
        secret: Shared secret for HMAC-SHA256 signatures. Never exposed after creation.
        events: Event types this endpoint subscribes to.
        is_active: Whether deliveries are made to this endpoint.
        description: Optional human-readable description.
        created_at: When the endpoint was registered.
        updated_at: When the endpoint was last modified.
    """

    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    id: str = Field(default_factory=lambda: generate_id("whk"))
    owner_id: str = Field(min_length=1, description="Owner of this endpoint")
    url: str = Field(description="HTTPS endpoint to receive events")
    secret: str = Field(min_length=1, repr=False, description="Shared HMAC secret")
    events: list[EventType] = Field(
        default_factory=lambda: list(ALL_EVENT_TYPES),
        description="Event types to subscribe to",
    )
    is_active: bool = Field(default=True, description="Whether the endpoint is active")
    description: str | None = Field(default=None, description="Human-readable description")
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator("url")
    @classmethod
    def _check_url(cls, value: str) -> str:
        try:
            return validate_endpoint_url(value)
        except ValidationError as e:
            raise ValueError(e.message) from e

    @field_validator("events")
    @classmethod
    def _check_events(cls, value: list[EventType]) -> list[EventType]:
        try:
            return validate_event_types(list(value))
        except ValidationError as e:
            raise ValueError(e.message) from e

    def subscribes_to(self, event_type: str) -> bool:
        """Check if this endpoint is active and subscribed to the event type."""
        return self.is_active and event_type in self.events

    def public_dict(self) -> dict[str, Any]:
        """JSON-ready view without the signing secret."""
        return self.model_dump(mode="json", exclude={"secret"})


__all__ = [
    "WebhookEndpoint",
    "validate_endpoint_url",
]
