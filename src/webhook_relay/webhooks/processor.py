"""Delivery processor: claim due deliveries, sign, POST, record the outcome.

A processing pass never raises for an individual delivery. Transport errors,
non-2xx responses and timeouts are recorded on the delivery row and fed into
the retry policy.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta

import httpx

from webhook_relay.config import DEFAULT_USER_AGENT
from webhook_relay.logging import get_logger
from webhook_relay.models import (
    Clock,
    DeliveryResponse,
    DeliveryStatus,
    WebhookDelivery,
    WebhookEndpoint,
    format_timestamp,
    utc_now,
)
from webhook_relay.storage import DeliveryStore, EndpointStore

from .retry import decide_retry
from .signing import (
    DELIVERY_ID_HEADER,
    EVENT_HEADER,
    SIGNATURE_HEADER,
    TIMESTAMP_HEADER,
    sign,
)

logger = get_logger(__name__)

DEFAULT_BATCH_SIZE = 50
DEFAULT_CLAIM_TTL = timedelta(seconds=60)
INACTIVE_ENDPOINT_ERROR = "Webhook endpoint is inactive"
TIMEOUT_ERROR = "Request timeout"
MAX_ERROR_BODY_CHARS = 1000


class DeliveryProcessor:
    """Dispatches claimed deliveries concurrently.

    Handles:
    - Claiming a batch of due deliveries from the delivery store
    - Signing the canonical body and building protocol headers
    - Enforcing the per-endpoint deadline
    - Applying the retry policy and persisting the outcome under the claim

    Example:
        ```python
        processor = DeliveryProcessor(endpoints, deliveries)
        processed = await processor.process_due()
        await processor.aclose()
        ```
    """

    def __init__(
        self,
        endpoints: EndpointStore,
        deliveries: DeliveryStore,
        client: httpx.AsyncClient | None = None,
        clock: Clock = utc_now,
        batch_size: int = DEFAULT_BATCH_SIZE,
        user_agent: str = DEFAULT_USER_AGENT,
        claim_ttl: timedelta = DEFAULT_CLAIM_TTL,
    ) -> None:
        """Initialize the processor.

        Args:
            endpoints: Endpoint store, joined with each claimed delivery.
            deliveries: Delivery store acting as the work queue.
            client: Shared HTTP client. One is created (and owned) if omitted.
            clock: Time source for scheduling and timestamps.
            batch_size: Maximum deliveries claimed per pass.
            user_agent: User-Agent header value.
            claim_ttl: Lease on claimed deliveries; must outlive the longest timeout.
        """
        self._endpoints = endpoints
        self._deliveries = deliveries
        self._owns_client = client is None
        self._client = client if client is not None else httpx.AsyncClient()
        self._clock = clock
        self.batch_size = batch_size
        self._user_agent = user_agent
        self._claim_ttl = claim_ttl

    @property
    def client(self) -> httpx.AsyncClient:
        """HTTP client used for deliveries."""
        return self._client

    async def aclose(self) -> None:
        """Close the HTTP client if this processor created it."""
        if self._owns_client:
            await self._client.aclose()

    async def process_due(self) -> int:
        """Run one processing pass.

        Returns:
            Number of deliveries claimed (and attempted) in this pass.
        """
        claimed = await self._deliveries.claim_due(
            self._clock(), self.batch_size, self._claim_ttl
        )
        if not claimed:
            return 0

        logger.debug("Claimed deliveries", count=len(claimed))
        results = await asyncio.gather(
            *(self._process_one(delivery) for delivery in claimed),
            return_exceptions=True,
        )
        for delivery, result in zip(claimed, results, strict=True):
            if isinstance(result, BaseException):
                logger.error(
                    "Delivery processing crashed",
                    delivery_id=delivery.id,
                    webhook_id=delivery.webhook_id,
                    error=repr(result),
                )
        return len(claimed)

    async def _process_one(self, delivery: WebhookDelivery) -> WebhookDelivery:
        endpoint = await self._endpoints.get_by_id(delivery.webhook_id)
        return await self.dispatch(delivery, endpoint)

    def build_headers(
        self, delivery: WebhookDelivery, endpoint: WebhookEndpoint, signature: str
    ) -> dict[str, str]:
        """Endpoint static headers overlaid by the protocol headers."""
        protocol = {
            "Content-Type": "application/json",
            "User-Agent": self._user_agent,
            SIGNATURE_HEADER: signature,
            EVENT_HEADER: delivery.event.value,
            DELIVERY_ID_HEADER: delivery.id,
            TIMESTAMP_HEADER: format_timestamp(delivery.created_at),
        }
        reserved = {name.lower() for name in protocol}
        headers = {k: v for k, v in endpoint.headers.items() if k.lower() not in reserved}
        headers.update(protocol)
        return headers

    async def dispatch(
        self, delivery: WebhookDelivery, endpoint: WebhookEndpoint | None
    ) -> WebhookDelivery:
        """Attempt one delivery and persist the outcome.

        Args:
            delivery: A claimed (or otherwise owned) delivery.
            endpoint: Its endpoint, or None if it was deleted.

        Returns:
            The delivery with its new state.
        """
        if endpoint is None or not endpoint.is_active:
            delivery.mark_failed(INACTIVE_ENDPOINT_ERROR, self._clock())
            if await self._persist(delivery):
                self._log_outcome(delivery)
            return delivery

        body = delivery.payload.serialize()
        signature = sign(body, endpoint.secret.get_secret_value())
        headers = self.build_headers(delivery, endpoint, signature)

        delivery.attempts += 1
        response: DeliveryResponse | None = None
        error: str | None = None
        try:
            response = await asyncio.wait_for(
                self._post(endpoint, body, headers), timeout=endpoint.timeout / 1000
            )
        except (TimeoutError, httpx.TimeoutException):
            error = TIMEOUT_ERROR
        except Exception as exc:
            error = str(exc) or exc.__class__.__name__

        now = self._clock()
        if response is not None:
            delivery.record_response(response, now)
        if response is not None and response.is_success:
            delivery.mark_delivered(now)
        else:
            if response is not None:
                error = f"HTTP {response.status}: {response.body[:MAX_ERROR_BODY_CHARS]}"
            self._schedule_retry(delivery, endpoint, error or TIMEOUT_ERROR, now)

        if await self._persist(delivery):
            self._log_outcome(delivery)
        return delivery

    async def _post(
        self, endpoint: WebhookEndpoint, body: bytes, headers: dict[str, str]
    ) -> DeliveryResponse:
        async with self._client.stream(
            "POST",
            endpoint.url,
            content=body,
            headers=headers,
            timeout=endpoint.timeout / 1000,
        ) as response:
            try:
                raw = await response.aread()
                text = raw.decode(response.encoding or "utf-8", errors="replace")
            except httpx.HTTPError:
                text = ""
            return DeliveryResponse(
                status=response.status_code,
                body=text,
                headers=dict(response.headers),
            )

    @staticmethod
    def _schedule_retry(
        delivery: WebhookDelivery, endpoint: WebhookEndpoint, error: str, now: datetime
    ) -> None:
        decision = decide_retry(delivery.attempts, endpoint.retry_attempts, now)
        if decision.should_retry and decision.next_retry_at is not None:
            delivery.mark_retrying(error, decision.next_retry_at, now)
        else:
            delivery.mark_failed(error, now)

    async def _persist(self, delivery: WebhookDelivery) -> bool:
        """Write the outcome. Returns False if the claim was lost."""
        if delivery.claim_token is None:
            await self._deliveries.save(delivery)
            return True
        if not await self._deliveries.complete(delivery, delivery.claim_token):
            logger.warning(
                "Delivery claim lost, outcome dropped",
                delivery_id=delivery.id,
                status=delivery.status.value,
            )
            return False
        delivery.release_claim()
        return True

    @staticmethod
    def _log_outcome(delivery: WebhookDelivery) -> None:
        fields = {
            "delivery_id": delivery.id,
            "webhook_id": delivery.webhook_id,
            "event_type": delivery.event.value,
            "attempt": delivery.attempts,
        }
        if delivery.status == DeliveryStatus.DELIVERED:
            status_code = delivery.response.status if delivery.response else None
            logger.info("Delivery succeeded", status_code=status_code, **fields)
        elif delivery.status == DeliveryStatus.RETRYING:
            next_retry_at = delivery.next_retry_at
            logger.info(
                "Delivery retry scheduled",
                next_retry_at=next_retry_at.isoformat() if next_retry_at else None,
                error=delivery.error,
                **fields,
            )
        else:
            logger.warning("Delivery failed", error=delivery.error, **fields)
