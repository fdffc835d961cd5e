"""Tests for the delivery processor.

HTTP traffic goes through httpx.MockTransport; time is a FakeClock, so retry
schedules are checked without sleeping.
"""

from __future__ import annotations

import asyncio
import json
from datetime import timedelta
from unittest.mock import create_autospec, patch

import httpx
import pytest
import structlog
from conftest import RECEIVER_URL, SCOPE_ID, FakeClock, Receiver

from webhook_relay.models import DeliveryStatus, EndpointPatch, WebhookEvent
from webhook_relay.storage import InMemoryDeliveryStore, InMemoryEndpointStore
from webhook_relay.webhooks import (
    INACTIVE_ENDPOINT_ERROR,
    TIMEOUT_ERROR,
    DeliveryProcessor,
    EventDispatcher,
    verify,
)

EVENT = WebhookEvent.RESERVATION_CREATED


async def run_until_settled(processor: DeliveryProcessor, clock: FakeClock, max_passes=20):
    """Run passes, jumping the clock past each backoff, until nothing is due."""
    for _ in range(max_passes):
        await processor.process_due()
        clock.advance(minutes=6)
    return await processor.process_due()


class TestSuccessfulDelivery:
    """Tests for the happy path."""

    @pytest.mark.asyncio
    async def test_first_attempt_success(
        self, make_endpoint, dispatcher, processor, deliveries, receiver, clock
    ) -> None:
        """2xx on the first attempt: pending -> delivered with one attempt."""
        await make_endpoint()
        [queued] = await dispatcher.trigger(SCOPE_ID, EVENT, {"id": "res_1"})
        assert queued.status == DeliveryStatus.PENDING

        assert await processor.process_due() == 1

        stored = await deliveries.get(queued.id)
        assert stored.status == DeliveryStatus.DELIVERED
        assert stored.attempts == 1
        assert stored.delivered_at == clock.now
        assert stored.response.status == 200
        assert stored.response.body == "ok"
        assert stored.error is None
        assert stored.claim_token is None
        assert receiver.calls == 1

    @pytest.mark.asyncio
    async def test_request_is_signed(
        self, make_endpoint, dispatcher, processor, endpoints, receiver
    ) -> None:
        """The signature header verifies against the exact body sent."""
        endpoint = await make_endpoint()
        [queued] = await dispatcher.trigger(SCOPE_ID, EVENT, {"id": "res_1"})
        await processor.process_due()

        request = receiver.requests[0]
        secret = await endpoints.get_secret(endpoint.id, SCOPE_ID)
        assert request.method == "POST"
        assert str(request.url) == RECEIVER_URL
        assert verify(request.content, request.headers["X-Webhook-Signature"], secret)
        assert request.content == queued.payload.serialize()
        assert json.loads(request.content)["data"] == {"id": "res_1"}

    @pytest.mark.asyncio
    async def test_protocol_headers(self, make_endpoint, dispatcher, processor, receiver) -> None:
        await make_endpoint()
        [queued] = await dispatcher.trigger(SCOPE_ID, EVENT, {"id": "res_1"})
        await processor.process_due()

        headers = receiver.requests[0].headers
        assert headers["Content-Type"] == "application/json"
        assert headers["User-Agent"] == "FieldReservations-Webhook/1.0"
        assert headers["X-Webhook-Event"] == "reservation.created"
        assert headers["X-Webhook-ID"] == queued.id
        envelope = json.loads(receiver.requests[0].content)
        assert headers["X-Webhook-Timestamp"] == envelope["timestamp"]
        assert headers["X-Webhook-Timestamp"].endswith("Z")

    @pytest.mark.asyncio
    async def test_static_headers_cannot_override_protocol(
        self, make_endpoint, dispatcher, processor, receiver
    ) -> None:
        await make_endpoint(
            headers={
                "Authorization": "Bearer abc",
                "x-webhook-signature": "forged",
                "content-type": "text/plain",
            }
        )
        await dispatcher.trigger(SCOPE_ID, EVENT, {"id": "res_1"})
        await processor.process_due()

        request = receiver.requests[0]
        assert request.headers["Authorization"] == "Bearer abc"
        assert request.headers["Content-Type"] == "application/json"
        assert request.headers.get_list("X-Webhook-Signature") != ["forged"]
        assert len(request.headers.get_list("X-Webhook-Signature")) == 1

    @pytest.mark.asyncio
    async def test_nothing_due_returns_zero(self, processor, receiver) -> None:
        assert await processor.process_due() == 0
        assert receiver.calls == 0

    @pytest.mark.asyncio
    async def test_delivered_once_across_lease_expiry(
        self, make_endpoint, dispatcher, processor, deliveries, receiver, clock
    ) -> None:
        """A delivered row is not sent again once its claim lease would have expired."""
        await make_endpoint()
        [queued] = await dispatcher.trigger(SCOPE_ID, EVENT, {"id": "res_1"})

        await processor.process_due()
        clock.advance(seconds=61)
        assert await processor.process_due() == 0

        stored = await deliveries.get(queued.id)
        assert stored.status == DeliveryStatus.DELIVERED
        assert stored.attempts == 1
        assert receiver.calls == 1


class TestOutcomeLogging:
    """Tests for the structured log line written after each attempt."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("status", "method", "message"),
        [
            (200, "info", "Delivery succeeded"),
            (503, "info", "Delivery retry scheduled"),
        ],
    )
    async def test_outcome_logged_with_event_type(
        self, status, method, message, make_endpoint, dispatcher, processor, receiver
    ) -> None:
        receiver.statuses = [status]
        await make_endpoint()
        [queued] = await dispatcher.trigger(SCOPE_ID, EVENT, {"id": "res_1"})
        logger = create_autospec(structlog.stdlib.BoundLogger, instance=True)

        with patch("webhook_relay.webhooks.processor.logger", logger):
            await processor.process_due()

        call = getattr(logger, method).call_args
        assert call.args == (message,)
        assert call.kwargs["event_type"] == "reservation.created"
        assert call.kwargs["delivery_id"] == queued.id
        assert call.kwargs["attempt"] == 1
        logger.error.assert_not_called()

    @pytest.mark.asyncio
    async def test_inactive_endpoint_logged_as_failure(
        self, make_endpoint, dispatcher, processor, endpoints
    ) -> None:
        endpoint = await make_endpoint()
        await dispatcher.trigger(SCOPE_ID, EVENT, {"id": "res_1"})
        await endpoints.update(endpoint.id, SCOPE_ID, EndpointPatch(is_active=False))
        logger = create_autospec(structlog.stdlib.BoundLogger, instance=True)

        with patch("webhook_relay.webhooks.processor.logger", logger):
            await processor.process_due()

        call = logger.warning.call_args
        assert call.args == ("Delivery failed",)
        assert call.kwargs["error"] == INACTIVE_ENDPOINT_ERROR
        assert call.kwargs["event_type"] == "reservation.created"

    @pytest.mark.asyncio
    async def test_logging_failure_keeps_outcome(
        self, make_endpoint, dispatcher, processor, deliveries, receiver
    ) -> None:
        """The new state is stored before the outcome is logged."""
        await make_endpoint()
        [queued] = await dispatcher.trigger(SCOPE_ID, EVENT, {"id": "res_1"})
        logger = create_autospec(structlog.stdlib.BoundLogger, instance=True)
        logger.info.side_effect = RuntimeError("log sink closed")

        with patch("webhook_relay.webhooks.processor.logger", logger):
            await processor.process_due()

        stored = await deliveries.get(queued.id)
        assert stored.status == DeliveryStatus.DELIVERED
        assert stored.claim_token is None
        assert receiver.calls == 1


class TestRetries:
    """Tests for failure handling and backoff."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("retry_attempts", [0, 1, 3, 5])
    async def test_permanent_failure_attempts(
        self, retry_attempts, make_endpoint, dispatcher, processor, deliveries, receiver, clock
    ) -> None:
        """retry_attempts = N gives exactly N + 1 HTTP attempts, then failed."""
        receiver.statuses = [500]
        receiver.body = "boom"
        await make_endpoint(retry_attempts=retry_attempts)
        [queued] = await dispatcher.trigger(SCOPE_ID, EVENT, {"id": "res_1"})

        await run_until_settled(processor, clock)

        stored = await deliveries.get(queued.id)
        assert receiver.calls == retry_attempts + 1
        assert stored.status == DeliveryStatus.FAILED
        assert stored.attempts == retry_attempts + 1
        assert stored.error == "HTTP 500: boom"
        assert stored.next_retry_at is None
        assert stored.delivered_at is None

    @pytest.mark.asyncio
    async def test_backoff_schedule(
        self, make_endpoint, dispatcher, processor, deliveries, receiver, clock
    ) -> None:
        """Retries are scheduled 1s, 2s, 4s, 8s, 16s after each failure."""
        receiver.statuses = [503]
        await make_endpoint(retry_attempts=5)
        [queued] = await dispatcher.trigger(SCOPE_ID, EVENT, {"id": "res_1"})

        for expected in (1, 2, 4, 8, 16):
            await processor.process_due()
            stored = await deliveries.get(queued.id)
            assert stored.status == DeliveryStatus.RETRYING
            assert stored.next_retry_at == clock.now + timedelta(seconds=expected)

            # Not due a moment before the scheduled time.
            clock.advance(seconds=expected - 0.5)
            assert await processor.process_due() == 0
            clock.advance(seconds=0.5)

        await processor.process_due()
        assert (await deliveries.get(queued.id)).status == DeliveryStatus.FAILED

    @pytest.mark.asyncio
    async def test_recovers_after_transient_failure(
        self, make_endpoint, dispatcher, processor, deliveries, receiver, clock
    ) -> None:
        receiver.statuses = [500, 502, 204]
        await make_endpoint()
        [queued] = await dispatcher.trigger(SCOPE_ID, EVENT, {"id": "res_1"})

        await run_until_settled(processor, clock)

        stored = await deliveries.get(queued.id)
        assert stored.status == DeliveryStatus.DELIVERED
        assert stored.attempts == 3
        assert stored.error is None
        assert stored.response.status == 204

    @pytest.mark.asyncio
    async def test_non_2xx_is_failure(
        self, make_endpoint, dispatcher, processor, deliveries, receiver
    ) -> None:
        """Redirects and client errors are failures too."""
        receiver.statuses = [302]
        receiver.body = ""
        await make_endpoint(retry_attempts=0)
        [queued] = await dispatcher.trigger(SCOPE_ID, EVENT, {"id": "res_1"})

        await processor.process_due()

        stored = await deliveries.get(queued.id)
        assert stored.status == DeliveryStatus.FAILED
        assert stored.error == "HTTP 302: "

    @pytest.mark.asyncio
    async def test_error_body_truncated(
        self, make_endpoint, dispatcher, processor, deliveries, receiver
    ) -> None:
        receiver.statuses = [500]
        receiver.body = "x" * 5000
        await make_endpoint(retry_attempts=0)
        [queued] = await dispatcher.trigger(SCOPE_ID, EVENT, {"id": "res_1"})

        await processor.process_due()

        stored = await deliveries.get(queued.id)
        assert stored.error == "HTTP 500: " + "x" * 1000

    @pytest.mark.asyncio
    async def test_transport_error_message_recorded(
        self, make_endpoint, dispatcher, processor, deliveries, receiver, clock
    ) -> None:
        receiver.error = httpx.ConnectError("Connection refused")
        await make_endpoint()
        [queued] = await dispatcher.trigger(SCOPE_ID, EVENT, {"id": "res_1"})

        await processor.process_due()

        stored = await deliveries.get(queued.id)
        assert stored.status == DeliveryStatus.RETRYING
        assert stored.attempts == 1
        assert stored.error == "Connection refused"
        assert stored.response is None
        assert stored.next_retry_at == clock.now + timedelta(seconds=1)

    @pytest.mark.asyncio
    async def test_httpx_timeout_recorded(
        self, make_endpoint, dispatcher, processor, deliveries, receiver
    ) -> None:
        receiver.error = httpx.ReadTimeout("timed out")
        await make_endpoint()
        [queued] = await dispatcher.trigger(SCOPE_ID, EVENT, {"id": "res_1"})

        await processor.process_due()

        stored = await deliveries.get(queued.id)
        assert stored.error == TIMEOUT_ERROR
        assert stored.status == DeliveryStatus.RETRYING

    @pytest.mark.asyncio
    async def test_slow_receiver_hits_deadline(
        self, endpoints, deliveries, make_endpoint, clock
    ) -> None:
        """A receiver slower than the endpoint timeout is abandoned."""

        async def slow(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(5)
            return httpx.Response(200)

        async with httpx.AsyncClient(transport=httpx.MockTransport(slow)) as client:
            processor = DeliveryProcessor(endpoints, deliveries, client=client, clock=clock)
            dispatcher = EventDispatcher(endpoints, deliveries, clock=clock)
            await make_endpoint(timeout=1000)
            [queued] = await dispatcher.trigger(SCOPE_ID, EVENT, {"id": "res_1"})

            await processor.process_due()

        stored = await deliveries.get(queued.id)
        assert stored.error == TIMEOUT_ERROR
        assert stored.attempts == 1
        assert stored.status == DeliveryStatus.RETRYING


class TestInactiveEndpoints:
    """Tests for deliveries whose endpoint is gone or disabled."""

    @pytest.mark.asyncio
    async def test_deactivated_endpoint_fails_without_http(
        self, make_endpoint, dispatcher, processor, endpoints, deliveries, receiver, clock
    ) -> None:
        receiver.statuses = [500, 200]
        endpoint = await make_endpoint()
        [queued] = await dispatcher.trigger(SCOPE_ID, EVENT, {"id": "res_1"})
        await processor.process_due()
        assert (await deliveries.get(queued.id)).status == DeliveryStatus.RETRYING

        await endpoints.update(endpoint.id, SCOPE_ID, EndpointPatch(is_active=False))
        clock.advance(seconds=1)
        await processor.process_due()

        stored = await deliveries.get(queued.id)
        assert stored.status == DeliveryStatus.FAILED
        assert stored.error == INACTIVE_ENDPOINT_ERROR
        assert stored.attempts == 1
        assert receiver.calls == 1

    @pytest.mark.asyncio
    async def test_deleted_endpoint_fails_without_http(
        self, make_endpoint, dispatcher, processor, endpoints, deliveries, receiver
    ) -> None:
        endpoint = await make_endpoint()
        [queued] = await dispatcher.trigger(SCOPE_ID, EVENT, {"id": "res_1"})
        await endpoints.delete(endpoint.id, SCOPE_ID)

        await processor.process_due()

        stored = await deliveries.get(queued.id)
        assert stored.status == DeliveryStatus.FAILED
        assert stored.attempts == 0
        assert receiver.calls == 0


class TestIsolation:
    """Tests that deliveries do not affect each other."""

    @pytest.mark.asyncio
    async def test_one_failure_does_not_affect_another(
        self, endpoints, deliveries, make_endpoint, clock
    ) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "down.example.com":
                raise httpx.ConnectError("Name or service not known")
            return httpx.Response(200)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            processor = DeliveryProcessor(endpoints, deliveries, client=client, clock=clock)
            dispatcher = EventDispatcher(endpoints, deliveries, clock=clock)
            up = await make_endpoint(url="https://up.example.com/hook")
            down = await make_endpoint(url="https://down.example.com/hook")
            created = await dispatcher.trigger(SCOPE_ID, EVENT, {"id": "res_1"})

            assert await processor.process_due() == 2

        by_endpoint = {d.webhook_id: await deliveries.get(d.id) for d in created}
        assert by_endpoint[up.id].status == DeliveryStatus.DELIVERED
        assert by_endpoint[down.id].status == DeliveryStatus.RETRYING

    @pytest.mark.asyncio
    async def test_store_crash_is_contained(
        self, make_endpoint, dispatcher, endpoints, deliveries, http_client, clock
    ) -> None:
        """An exception while processing one delivery does not fail the pass."""

        class FlakyEndpoints(InMemoryEndpointStore):
            async def get_by_id(self, endpoint_id):
                raise RuntimeError("endpoint lookup failed")

        flaky = FlakyEndpoints()
        processor = DeliveryProcessor(flaky, deliveries, client=http_client, clock=clock)
        await make_endpoint()
        await dispatcher.trigger(SCOPE_ID, EVENT, {"id": "res_1"})

        assert await processor.process_due() == 1

    @pytest.mark.asyncio
    async def test_batch_size_bounds_a_pass(
        self, endpoints, deliveries, make_endpoint, http_client, receiver, clock
    ) -> None:
        processor = DeliveryProcessor(
            endpoints, deliveries, client=http_client, clock=clock, batch_size=2
        )
        dispatcher = EventDispatcher(endpoints, deliveries, clock=clock)
        for _ in range(3):
            await make_endpoint()
        await dispatcher.trigger(SCOPE_ID, EVENT, {"id": "res_1"})

        assert await processor.process_due() == 2
        assert await processor.process_due() == 1
        assert receiver.calls == 3


class TestConcurrentPasses:
    """Tests for overlapping processing passes."""

    @pytest.mark.asyncio
    async def test_overlapping_passes_deliver_once(
        self, endpoints, make_endpoint, clock
    ) -> None:
        deliveries = InMemoryDeliveryStore()
        receiver = Receiver()

        async def handler(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(0.01)
            return receiver(request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            first = DeliveryProcessor(endpoints, deliveries, client=client, clock=clock)
            second = DeliveryProcessor(endpoints, deliveries, client=client, clock=clock)
            dispatcher = EventDispatcher(endpoints, deliveries, clock=clock)
            await make_endpoint()
            await make_endpoint()
            await dispatcher.trigger(SCOPE_ID, EVENT, {"id": "res_1"})

            counts = await asyncio.gather(first.process_due(), second.process_due())

        assert sum(counts) == 2
        assert receiver.calls == 2


class TestClientOwnership:
    """Tests for HTTP client lifecycle."""

    @pytest.mark.asyncio
    async def test_owned_client_closed(self, endpoints, deliveries) -> None:
        processor = DeliveryProcessor(endpoints, deliveries)
        await processor.aclose()
        assert processor.client.is_closed

    @pytest.mark.asyncio
    async def test_injected_client_left_open(self, endpoints, deliveries, http_client) -> None:
        processor = DeliveryProcessor(endpoints, deliveries, client=http_client)
        await processor.aclose()
        assert not http_client.is_closed
