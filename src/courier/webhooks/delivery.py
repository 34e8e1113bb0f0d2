"""HTTP delivery of signed webhook payloads.

One call to `HttpDeliveryWorker.deliver` makes exactly one POST. The worker
never retries on its own and never raises for delivery outcomes: HTTP
errors, timeouts and connection failures all come back as a DeliveryResult.
Retry policy lives in the delivery log and the retry scheduler.
"""

from __future__ import annotations

import asyncio
import time
from typing import TYPE_CHECKING, Any

import httpx
from pydantic_core import PydanticSerializationError

from courier.exceptions import DeliveryError
from courier.logging import get_logger
from courier.models import DeliveryResult

from .signing import signature_headers

if TYPE_CHECKING:
    from courier.models import DeliveryPayload, WebhookEndpoint

logger = get_logger(__name__)

EVENT_HEADER = "X-Webhook-Event"
DELIVERY_HEADER = "X-Webhook-Delivery"

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_MAX_RESPONSE_BYTES = 1024 * 1024
DEFAULT_MAX_REDIRECTS = 5
DEFAULT_USER_AGENT = "Courier-Webhook/0.1"


class InsecureURLError(httpx.RequestError):
    """A request or redirect target does not use HTTPS."""


async def _require_tls(request: httpx.Request) -> None:
    # Runs for the first request and for every redirect hop
    if request.url.scheme != "https":
        raise InsecureURLError(
            f"Refusing to send webhook over {request.url.scheme}: {request.url}",
            request=request,
        )


class HttpDeliveryWorker:
    """Sends one signed POST per call and classifies the outcome.

    Example:
        ```python
        async with HttpDeliveryWorker(timeout_seconds=10) as worker:
            result = await worker.deliver(endpoint, payload)
            if not result.success:
                print(result.failure_reason)
        ```
    """

    def __init__(
        self,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_response_bytes: int = DEFAULT_MAX_RESPONSE_BYTES,
        max_redirects: int = DEFAULT_MAX_REDIRECTS,
        user_agent: str = DEFAULT_USER_AGENT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the delivery worker.

        Args:
            timeout_seconds: Total time limit of one attempt, body read included.
            max_response_bytes: Response bytes read before the attempt fails.
            max_redirects: Redirect hops followed (each must stay on HTTPS).
            user_agent: User-Agent header value.
            transport: Optional transport override (tests use httpx.MockTransport).
        """
        self.timeout_seconds = timeout_seconds
        self.max_response_bytes = max_response_bytes
        self.max_redirects = max_redirects
        self.user_agent = user_agent
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def _build_client(self) -> httpx.AsyncClient:
        kwargs: dict[str, Any] = {
            "timeout": httpx.Timeout(self.timeout_seconds),
            "follow_redirects": self.max_redirects > 0,
            "max_redirects": self.max_redirects,
            "headers": {"User-Agent": self.user_agent},
            "event_hooks": {"request": [_require_tls]},
        }
        if self._transport is not None:
            kwargs["transport"] = self._transport
        return httpx.AsyncClient(**kwargs)

    async def connect(self) -> None:
        """Create the shared HTTP client."""
        if self._client is None:
            self._client = self._build_client()

    async def close(self) -> None:
        """Close the shared HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> HttpDeliveryWorker:
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    def build_request(
        self,
        endpoint: WebhookEndpoint,
        payload: DeliveryPayload,
    ) -> tuple[bytes, dict[str, str]]:
        """Serialize and sign a payload for one endpoint.

        Returns:
            (body, headers). The signature covers exactly `body`.

        Raises:
            DeliveryError: If the payload cannot be serialized or signed.
        """
        try:
            body = payload.to_json_bytes()
            headers = signature_headers(body, endpoint.secret)
        except (PydanticSerializationError, TypeError, ValueError) as e:
            raise DeliveryError(f"Cannot build webhook request: {e}") from e

        headers[EVENT_HEADER] = payload.event_type
        headers[DELIVERY_HEADER] = payload.id
        return body, headers

    async def deliver(
        self,
        endpoint: WebhookEndpoint,
        payload: DeliveryPayload,
    ) -> DeliveryResult:
        """POST a signed payload to an endpoint.

        Returns:
            DeliveryResult; `success` is True only for a 2xx response that
            fit within the response size limit.

        Raises:
            DeliveryError: Only when the request cannot be built at all.
        """
        body, headers = self.build_request(endpoint, payload)
        if self._client is None:
            await self.connect()
        assert self._client is not None

        started = time.monotonic()

        def elapsed_ms() -> int:
            return int((time.monotonic() - started) * 1000)

        try:
            # httpx timeouts apply per operation; this bounds the whole attempt
            async with asyncio.timeout(self.timeout_seconds):
                async with self._client.stream(
                    "POST", endpoint.url, content=body, headers=headers
                ) as response:
                    text, too_large = await self._read_body(response)
                    status_code = response.status_code
        except (httpx.TimeoutException, TimeoutError):
            return DeliveryResult(
                success=False,
                error=f"Request timed out after {self.timeout_seconds:g}s",
                duration_ms=elapsed_ms(),
            )
        except httpx.TooManyRedirects:
            return DeliveryResult(
                success=False,
                error=f"Exceeded {self.max_redirects} redirects",
                duration_ms=elapsed_ms(),
            )
        except httpx.RequestError as e:
            return DeliveryResult(
                success=False,
                error=str(e) or type(e).__name__,
                duration_ms=elapsed_ms(),
            )
        except Exception as e:
            logger.exception(
                "Unexpected webhook delivery error",
                endpoint_id=endpoint.id,
                payload_id=payload.id,
            )
            return DeliveryResult(
                success=False,
                error=f"Unexpected error: {e}",
                duration_ms=elapsed_ms(),
            )

        if too_large:
            return DeliveryResult(
                success=False,
                status_code=status_code,
                error=f"Response body exceeded {self.max_response_bytes} bytes",
                duration_ms=elapsed_ms(),
            )

        return DeliveryResult(
            success=200 <= status_code < 300,
            status_code=status_code,
            response_body=text,
            duration_ms=elapsed_ms(),
        )

    async def _read_body(self, response: httpx.Response) -> tuple[str | None, bool]:
        """Read at most `max_response_bytes`. Returns (text, too_large)."""
        chunks: list[bytes] = []
        received = 0
        async for chunk in response.aiter_bytes():
            received += len(chunk)
            if received > self.max_response_bytes:
                return None, True
            chunks.append(chunk)

        if not chunks:
            return None, False
        raw = b"".join(chunks)
        return raw.decode(response.encoding or "utf-8", errors="replace"), False


__all__ = [
    "DELIVERY_HEADER",
    "EVENT_HEADER",
    "HttpDeliveryWorker",
    "InsecureURLError",
]
