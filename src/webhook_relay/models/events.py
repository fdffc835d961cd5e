"""Closed enumeration of domain events that can be delivered to webhooks."""

from __future__ import annotations

from collections.abc import Iterable
from enum import Enum


class WebhookEvent(str, Enum):
    """Domain event kinds, grouped by resource.

    Adding a kind is a schema change: subscribers validate against this set
    and unknown strings are rejected at registration and trigger time.
    """

    USER_CREATED = "user.created"
    USER_UPDATED = "user.updated"
    USER_DELETED = "user.deleted"
    TEAM_CREATED = "team.created"
    TEAM_UPDATED = "team.updated"
    TEAM_DELETED = "team.deleted"
    FIELD_CREATED = "field.created"
    FIELD_UPDATED = "field.updated"
    FIELD_DELETED = "field.deleted"
    RESERVATION_CREATED = "reservation.created"
    RESERVATION_UPDATED = "reservation.updated"
    RESERVATION_CANCELLED = "reservation.cancelled"
    RESERVATION_CONFIRMED = "reservation.confirmed"
    PAYMENT_PROCESSED = "payment.processed"
    PAYMENT_FAILED = "payment.failed"
    SYNC_COMPLETED = "sync.completed"
    SYNC_FAILED = "sync.failed"

    @property
    def resource(self) -> str:
        """Resource group of the event, e.g. "reservation"."""
        return self.value.split(".", 1)[0]

    @classmethod
    def for_resource(cls, resource: str) -> list[WebhookEvent]:
        """All event kinds belonging to a resource group."""
        return [event for event in cls if event.resource == resource]


ALL_EVENTS: list[WebhookEvent] = list(WebhookEvent)


def dedupe_events(events: Iterable[WebhookEvent]) -> list[WebhookEvent]:
    """Drop repeated event kinds, keeping first-seen order."""
    return list(dict.fromkeys(events))
