"""In-process endpoint and delivery stores.

Useful for tests and single-process deployments. Records are copied on the
way in and out so callers never share mutable state with the store. None of
the operations await between reading and writing a row, which makes each one
atomic on the event loop, including the claim step.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from uuid import uuid4

from webhook_relay.exceptions import NotFoundError
from webhook_relay.models import (
    DeliveryPage,
    DeliveryStatus,
    EndpointPatch,
    EndpointSpec,
    WebhookDelivery,
    WebhookEndpoint,
    WebhookEvent,
    utc_now,
)

from .base import DEFAULT_PAGE_SIZE, DeliveryStore, EndpointStore


class InMemoryEndpointStore(EndpointStore):
    """Endpoint store backed by a dict."""

    def __init__(self) -> None:
        self._endpoints: dict[str, WebhookEndpoint] = {}

    def _owned(self, endpoint_id: str, scope_id: str) -> WebhookEndpoint | None:
        endpoint = self._endpoints.get(endpoint_id)
        if endpoint is None or endpoint.scope_id != scope_id:
            return None
        return endpoint

    async def create(
        self, scope_id: str, actor_id: str | None, spec: EndpointSpec
    ) -> WebhookEndpoint:
        endpoint = WebhookEndpoint.from_spec(scope_id, actor_id, spec)
        self._endpoints[endpoint.id] = endpoint
        return endpoint.model_copy(deep=True)

    async def update(
        self, endpoint_id: str, scope_id: str, patch: EndpointPatch
    ) -> WebhookEndpoint:
        endpoint = self._owned(endpoint_id, scope_id)
        if endpoint is None:
            raise NotFoundError("webhook_endpoint", endpoint_id)
        updated = endpoint.apply_patch(patch, utc_now())
        self._endpoints[endpoint_id] = updated
        return updated.model_copy(deep=True)

    async def delete(self, endpoint_id: str, scope_id: str) -> None:
        if self._owned(endpoint_id, scope_id) is None:
            raise NotFoundError("webhook_endpoint", endpoint_id)
        del self._endpoints[endpoint_id]

    async def get(self, endpoint_id: str, scope_id: str) -> WebhookEndpoint | None:
        endpoint = self._owned(endpoint_id, scope_id)
        return endpoint.model_copy(deep=True) if endpoint else None

    async def list(self, scope_id: str) -> list[WebhookEndpoint]:
        endpoints = [e for e in self._endpoints.values() if e.scope_id == scope_id]
        endpoints.sort(key=lambda e: e.created_at, reverse=True)
        return [e.model_copy(deep=True) for e in endpoints]

    async def list_subscribed(
        self, scope_id: str, event: WebhookEvent
    ) -> list[WebhookEndpoint]:
        return [
            e.model_copy(deep=True)
            for e in self._endpoints.values()
            if e.scope_id == scope_id and e.subscribes_to(event)
        ]

    async def get_by_id(self, endpoint_id: str) -> WebhookEndpoint | None:
        endpoint = self._endpoints.get(endpoint_id)
        return endpoint.model_copy(deep=True) if endpoint else None


class InMemoryDeliveryStore(DeliveryStore):
    """Delivery store backed by a dict, ordered by insertion."""

    def __init__(self) -> None:
        self._deliveries: dict[str, WebhookDelivery] = {}

    async def create_many(self, deliveries: list[WebhookDelivery]) -> None:
        for delivery in deliveries:
            self._deliveries[delivery.id] = delivery.model_copy(deep=True)

    async def get(self, delivery_id: str) -> WebhookDelivery | None:
        delivery = self._deliveries.get(delivery_id)
        return delivery.model_copy(deep=True) if delivery else None

    async def save(self, delivery: WebhookDelivery) -> None:
        self._deliveries[delivery.id] = delivery.model_copy(deep=True)

    async def claim_due(
        self, now: datetime, limit: int, lease: timedelta
    ) -> list[WebhookDelivery]:
        claimed: list[WebhookDelivery] = []
        for delivery in self._deliveries.values():
            if len(claimed) >= limit:
                break
            if not delivery.is_due(now) or delivery.is_claimed(now):
                continue
            delivery.claim_token = uuid4().hex
            delivery.claimed_until = now + lease
            claimed.append(delivery.model_copy(deep=True))
        return claimed

    async def complete(self, delivery: WebhookDelivery, claim_token: str) -> bool:
        current = self._deliveries.get(delivery.id)
        if current is None or current.claim_token != claim_token:
            return False
        stored = delivery.model_copy(deep=True)
        stored.release_claim()
        self._deliveries[delivery.id] = stored
        return True

    async def list(
        self,
        webhook_id: str,
        *,
        status: DeliveryStatus | None = None,
        event: WebhookEvent | None = None,
        limit: int = DEFAULT_PAGE_SIZE,
        offset: int = 0,
    ) -> DeliveryPage:
        matching = [
            d
            for d in self._deliveries.values()
            if d.webhook_id == webhook_id
            and (status is None or d.status == status)
            and (event is None or d.event == event)
        ]
        matching.sort(key=lambda d: d.created_at, reverse=True)
        page = matching[offset : offset + limit]
        return DeliveryPage(
            deliveries=[d.model_copy(deep=True) for d in page],
            total=len(matching),
        )
