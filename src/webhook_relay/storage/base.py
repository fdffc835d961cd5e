"""Store interfaces for endpoints and deliveries.

The delivery store doubles as the work queue: ``pending`` and ``retrying``
rows are the queue, and ``claim_due`` hands a batch to exactly one processor
by writing a claim token and lease in a single conditional update.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timedelta

from webhook_relay.exceptions import DeliveryStateError, NotFoundError
from webhook_relay.models import (
    DeliveryPage,
    DeliveryStatus,
    EndpointPatch,
    EndpointSpec,
    WebhookDelivery,
    WebhookEndpoint,
    WebhookEvent,
)

DEFAULT_PAGE_SIZE = 20


class EndpointStore(ABC):
    """Tenant-scoped CRUD for subscriber endpoints.

    Every scoped operation treats an endpoint owned by another scope exactly
    like a missing one.
    """

    @abstractmethod
    async def create(
        self, scope_id: str, actor_id: str | None, spec: EndpointSpec
    ) -> WebhookEndpoint:
        """Register an endpoint with a newly generated secret."""

    @abstractmethod
    async def update(
        self, endpoint_id: str, scope_id: str, patch: EndpointPatch
    ) -> WebhookEndpoint:
        """Apply a partial update. Raises NotFoundError."""

    @abstractmethod
    async def delete(self, endpoint_id: str, scope_id: str) -> None:
        """Remove an endpoint; its deliveries are kept. Raises NotFoundError."""

    @abstractmethod
    async def get(self, endpoint_id: str, scope_id: str) -> WebhookEndpoint | None:
        """Fetch an endpoint owned by the scope."""

    @abstractmethod
    async def list(self, scope_id: str) -> list[WebhookEndpoint]:
        """All endpoints of a scope, newest first."""

    @abstractmethod
    async def list_subscribed(
        self, scope_id: str, event: WebhookEvent
    ) -> list[WebhookEndpoint]:
        """Active endpoints of a scope subscribed to the event."""

    @abstractmethod
    async def get_by_id(self, endpoint_id: str) -> WebhookEndpoint | None:
        """Unscoped lookup, used only to join deliveries with their endpoint."""

    async def get_secret(self, endpoint_id: str, scope_id: str) -> str | None:
        """Explicit accessor for the raw signing secret."""
        endpoint = await self.get(endpoint_id, scope_id)
        if endpoint is None:
            return None
        return endpoint.secret.get_secret_value()


class DeliveryStore(ABC):
    """Persistence and queue operations for delivery rows."""

    @abstractmethod
    async def create_many(self, deliveries: list[WebhookDelivery]) -> None:
        """Insert newly fanned-out deliveries."""

    @abstractmethod
    async def get(self, delivery_id: str) -> WebhookDelivery | None:
        """Fetch a delivery by ID."""

    @abstractmethod
    async def save(self, delivery: WebhookDelivery) -> None:
        """Unconditionally write a delivery."""

    @abstractmethod
    async def claim_due(
        self, now: datetime, limit: int, lease: timedelta
    ) -> list[WebhookDelivery]:
        """Atomically claim up to ``limit`` due, unclaimed deliveries.

        A delivery is due when it is pending or retrying and its
        ``next_retry_at`` is unset or not after ``now``. Claimed rows get a
        fresh ``claim_token`` and ``claimed_until = now + lease``; rows whose
        lease has expired are claimable again.
        """

    @abstractmethod
    async def complete(self, delivery: WebhookDelivery, claim_token: str) -> bool:
        """Write the outcome of a dispatch and release the claim.

        The write only happens while ``claim_token`` still owns the row.

        Returns:
            False if the claim was lost and nothing was written.
        """

    @abstractmethod
    async def list(
        self,
        webhook_id: str,
        *,
        status: DeliveryStatus | None = None,
        event: WebhookEvent | None = None,
        limit: int = DEFAULT_PAGE_SIZE,
        offset: int = 0,
    ) -> DeliveryPage:
        """Delivery history of an endpoint, newest first."""

    async def retry(self, delivery_id: str, now: datetime) -> WebhookDelivery:
        """Reset a failed delivery to pending, keeping its attempt count.

        Raises:
            NotFoundError: If the delivery does not exist.
            DeliveryStateError: If the delivery is not failed.
        """
        delivery = await self.get(delivery_id)
        if delivery is None:
            raise NotFoundError("webhook_delivery", delivery_id)
        check_retryable(delivery)
        delivery.reset_for_retry(now)
        await self.save(delivery)
        return delivery


def check_retryable(delivery: WebhookDelivery) -> None:
    """Only failed deliveries may be queued again by an operator.

    Raises:
        DeliveryStateError: The delivery succeeded or is still queued.
    """
    if delivery.status == DeliveryStatus.DELIVERED:
        raise DeliveryStateError(
            delivery.id, delivery.status.value, "Cannot retry a successful delivery"
        )
    if delivery.status != DeliveryStatus.FAILED:
        raise DeliveryStateError(
            delivery.id, delivery.status.value, "Delivery is already being processed"
        )
