"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import sys
from collections.abc import Callable
from pathlib import Path

import httpx
import pytest

# Add tests directory to path so helpers can be imported
tests_dir = Path(__file__).parent
if str(tests_dir) not in sys.path:
    sys.path.insert(0, str(tests_dir))

from courier.models import DeliveryPayload, WebhookEndpoint  # noqa: E402
from courier.queue import InMemoryDeliveryQueue  # noqa: E402
from courier.storage import InMemoryDeliveryLogStore, InMemoryEndpointRegistry  # noqa: E402
from courier.webhooks import HttpDeliveryWorker  # noqa: E402

TEST_SECRET = "a" * 64


class RecordingTransport:
    """httpx.MockTransport wrapper that records requests and replays scripted statuses.

    Statuses are consumed in order; the last one repeats once the script
    runs out.
    """

    def __init__(self, statuses: list[int] | None = None, body: str = "ok") -> None:
        self.statuses = list(statuses or [200])
        self.body = body
        self.requests: list[httpx.Request] = []
        self.transport = httpx.MockTransport(self._handle)

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        index = min(len(self.requests), len(self.statuses)) - 1
        return httpx.Response(self.statuses[index], text=self.body)


@pytest.fixture
def make_endpoint() -> Callable[..., WebhookEndpoint]:
    """Factory for valid endpoints."""

    def factory(**overrides: object) -> WebhookEndpoint:
        fields: dict[str, object] = {
            "owner_id": "user_1",
            "url": "https://example.com/webhook",
            "secret": TEST_SECRET,
        }
        fields.update(overrides)
        return WebhookEndpoint(**fields)  # type: ignore[arg-type]

    return factory


@pytest.fixture
def endpoint(make_endpoint: Callable[..., WebhookEndpoint]) -> WebhookEndpoint:
    return make_endpoint(id="whk_test123")


@pytest.fixture
def payload() -> DeliveryPayload:
    return DeliveryPayload(
        id="evt_test456",
        event_type="service.completed",
        owner_id="user_1",
        data={"requestId": "req_1", "tokens": 42},
    )


@pytest.fixture
def store() -> InMemoryDeliveryLogStore:
    return InMemoryDeliveryLogStore()


@pytest.fixture
def registry(endpoint: WebhookEndpoint) -> InMemoryEndpointRegistry:
    return InMemoryEndpointRegistry([endpoint])


@pytest.fixture
def queue() -> InMemoryDeliveryQueue:
    return InMemoryDeliveryQueue(visibility_timeout_seconds=60, max_redeliveries=3)


@pytest.fixture
def recorder() -> RecordingTransport:
    return RecordingTransport([200])


@pytest.fixture
def worker(recorder: RecordingTransport) -> HttpDeliveryWorker:
    return HttpDeliveryWorker(timeout_seconds=5, transport=recorder.transport)
