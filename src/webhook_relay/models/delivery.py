"""Delivery records and their state machine.

    pending  -> delivered | retrying | failed
    retrying -> delivered | retrying | failed
    delivered, failed: terminal (only an operator retry re-opens a failed row)

Transitions go through the ``mark_*`` methods so that ``attempts`` only grows,
``delivered_at`` is set exactly when the row becomes delivered, and a delivered
row always carries a 2xx response.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .base import generate_id, utc_now
from .events import WebhookEvent
from .payload import WebhookPayload


class DeliveryStatus(str, Enum):
    """Lifecycle state of a delivery."""

    PENDING = "pending"
    RETRYING = "retrying"
    DELIVERED = "delivered"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (DeliveryStatus.DELIVERED, DeliveryStatus.FAILED)


ACTIVE_STATUSES = (DeliveryStatus.PENDING, DeliveryStatus.RETRYING)


class DeliveryResponse(BaseModel):
    """Raw outcome of the most recent HTTP attempt."""

    model_config = ConfigDict(extra="forbid")

    status: int
    body: str = ""
    headers: dict[str, str] = Field(default_factory=dict)

    @property
    def is_success(self) -> bool:
        return 200 <= self.status <= 299


class WebhookDelivery(BaseModel):
    """One payload being sent to one endpoint, with its retry lifecycle.

    Attributes:
        id: Delivery ID (also sent as X-Webhook-ID).
        webhook_id: Owning endpoint.
        scope_id: Tenant of the owning endpoint.
        event: Event kind of the payload.
        payload: Immutable envelope.
        status: Current state.
        attempts: HTTP attempts made so far.
        next_retry_at: Earliest time a retrying delivery may be re-dispatched.
        response: Response of the most recent attempt, if any.
        error: Failure reason of the most recent attempt.
        delivered_at: Set once, when the delivery succeeds.
        claim_token: Token of the processor currently dispatching the row.
        claimed_until: Lease expiry of that claim.
    """

    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=lambda: generate_id("dlv"))
    webhook_id: str
    scope_id: str
    event: WebhookEvent
    payload: WebhookPayload
    status: DeliveryStatus = DeliveryStatus.PENDING
    attempts: int = Field(default=0, ge=0)
    next_retry_at: datetime | None = None
    response: DeliveryResponse | None = None
    error: str | None = None
    delivered_at: datetime | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    claim_token: str | None = None
    claimed_until: datetime | None = None

    @model_validator(mode="after")
    def _check_terminal_invariants(self) -> WebhookDelivery:
        if self.delivered_at is not None and self.status != DeliveryStatus.DELIVERED:
            raise ValueError("delivered_at is only set on delivered deliveries")
        if (
            self.status == DeliveryStatus.DELIVERED
            and self.response is not None
            and not self.response.is_success
        ):
            raise ValueError("a delivered delivery must have a 2xx response")
        return self

    def is_due(self, now: datetime) -> bool:
        """Eligible for dispatch at ``now``, ignoring claims."""
        if self.status not in ACTIVE_STATUSES:
            return False
        return self.next_retry_at is None or self.next_retry_at <= now

    def is_claimed(self, now: datetime) -> bool:
        """Another processor holds a live lease on this delivery."""
        return self.claimed_until is not None and self.claimed_until > now

    def record_response(self, response: DeliveryResponse, now: datetime) -> None:
        self.response = response
        self.updated_at = now

    def mark_delivered(self, now: datetime) -> None:
        """Transition to delivered. Terminal."""
        self.status = DeliveryStatus.DELIVERED
        self.delivered_at = now
        self.next_retry_at = None
        self.error = None
        self.updated_at = now

    def mark_retrying(self, error: str, next_retry_at: datetime, now: datetime) -> None:
        """Schedule another attempt no earlier than ``next_retry_at``."""
        self.status = DeliveryStatus.RETRYING
        self.error = error
        self.next_retry_at = next_retry_at
        self.updated_at = now

    def mark_failed(self, error: str, now: datetime) -> None:
        """Transition to failed. Terminal; ``error`` keeps the last reason."""
        self.status = DeliveryStatus.FAILED
        self.error = error
        self.next_retry_at = None
        self.updated_at = now

    def reset_for_retry(self, now: datetime) -> None:
        """Operator override: queue again without resetting ``attempts``."""
        self.status = DeliveryStatus.PENDING
        self.next_retry_at = None
        self.error = None
        self.updated_at = now

    def release_claim(self) -> None:
        self.claim_token = None
        self.claimed_until = None


class DeliveryPage(BaseModel):
    """One page of delivery history plus the total matching count."""

    deliveries: list[WebhookDelivery]
    total: int = Field(ge=0)
