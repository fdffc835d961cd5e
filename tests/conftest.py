"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import sys
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import httpx
import pytest

from webhook_relay.models import EndpointSpec, WebhookEndpoint, WebhookEvent
from webhook_relay.storage import InMemoryDeliveryStore, InMemoryEndpointStore
from webhook_relay.webhooks import DeliveryProcessor, EventDispatcher

# Add tests directory to path so test modules can import the helpers below
tests_dir = Path(__file__).parent
if str(tests_dir) not in sys.path:
    sys.path.insert(0, str(tests_dir))

SCOPE_ID = "league_1"
OTHER_SCOPE_ID = "league_2"
RECEIVER_URL = "https://receiver.example.com/hooks"


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 3, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class Receiver:
    """Subscriber stand-in for httpx.MockTransport.

    Answers with the scripted statuses in order, repeating the last one, and
    records every request it sees. ``error`` makes every request raise.
    """

    def __init__(self, statuses: Sequence[int] = (200,), body: str = "ok") -> None:
        self.statuses = list(statuses)
        self.body = body
        self.error: Exception | None = None
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        index = min(len(self.requests), len(self.statuses)) - 1
        return httpx.Response(self.statuses[index], text=self.body)

    @property
    def calls(self) -> int:
        return len(self.requests)


@pytest.fixture
def clock() -> FakeClock:
    """Create a fake clock starting at a fixed instant."""
    return FakeClock()


@pytest.fixture
def endpoints() -> InMemoryEndpointStore:
    return InMemoryEndpointStore()


@pytest.fixture
def deliveries() -> InMemoryDeliveryStore:
    return InMemoryDeliveryStore()


@pytest.fixture
def receiver() -> Receiver:
    return Receiver()


@pytest.fixture
async def http_client(receiver: Receiver) -> AsyncIterator[httpx.AsyncClient]:
    """HTTP client whose requests are answered by the receiver fixture."""
    client = httpx.AsyncClient(transport=httpx.MockTransport(receiver))
    yield client
    await client.aclose()


@pytest.fixture
def processor(
    endpoints: InMemoryEndpointStore,
    deliveries: InMemoryDeliveryStore,
    http_client: httpx.AsyncClient,
    clock: FakeClock,
) -> DeliveryProcessor:
    return DeliveryProcessor(endpoints, deliveries, client=http_client, clock=clock)


@pytest.fixture
def dispatcher(
    endpoints: InMemoryEndpointStore,
    deliveries: InMemoryDeliveryStore,
    clock: FakeClock,
) -> EventDispatcher:
    return EventDispatcher(endpoints, deliveries, clock=clock)


@pytest.fixture
def make_endpoint(
    endpoints: InMemoryEndpointStore,
) -> Callable[..., Awaitable[WebhookEndpoint]]:
    """Register an endpoint in the in-memory store.

    Keyword arguments override EndpointSpec fields; ``scope_id`` picks the tenant.
    """

    async def _make(scope_id: str = SCOPE_ID, **overrides: Any) -> WebhookEndpoint:
        fields: dict[str, Any] = {
            "name": "Receiver",
            "url": RECEIVER_URL,
            "events": [WebhookEvent.RESERVATION_CREATED],
        }
        fields.update(overrides)
        return await endpoints.create(scope_id, "user_1", EndpointSpec(**fields))

    return _make
