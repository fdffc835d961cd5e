"""Sample payloads for test deliveries.

Lets tenants exercise their receivers with realistic data for every event
kind before real events flow.
"""

from __future__ import annotations

import copy
from datetime import datetime
from typing import Any
from uuid import uuid4

from webhook_relay.models import WebhookEvent, utc_now

_RESERVATION = {
    "field": {"id": "field-1", "name": "Test Field"},
    "user": {"id": "user-1", "name": "Test User", "email": "test@example.com"},
    "startTime": "10:00",
    "endTime": "12:00",
    "cost": 100,
}

_SAMPLES: dict[WebhookEvent, dict[str, Any]] = {
    WebhookEvent.USER_CREATED: {
        "email": "test@example.com",
        "fullName": "Test User",
        "role": "member",
        "isApproved": True,
    },
    WebhookEvent.TEAM_CREATED: {
        "name": "Test Team",
        "ageGroup": "U-12",
        "division": "A",
        "memberCount": 15,
    },
    WebhookEvent.FIELD_CREATED: {
        "name": "Test Field",
        "type": "soccer",
        "address": "123 Test Street, Test City",
        "hourlyRate": 50,
        "status": "available",
    },
    WebhookEvent.RESERVATION_CREATED: {**_RESERVATION, "status": "confirmed"},
    WebhookEvent.RESERVATION_CANCELLED: {
        **_RESERVATION,
        "status": "cancelled",
        "cancellationReason": "Test cancellation",
    },
    WebhookEvent.PAYMENT_PROCESSED: {
        "amount": 100,
        "currency": "USD",
        "status": "succeeded",
        "reservation": {"id": "reservation-1"},
        "stripePaymentId": "pi_test_123456789",
    },
    WebhookEvent.PAYMENT_FAILED: {
        "amount": 100,
        "currency": "USD",
        "status": "failed",
        "reservation": {"id": "reservation-1"},
        "error": "Payment method declined",
    },
    WebhookEvent.SYNC_COMPLETED: {
        "source": "sportsconnect",
        "result": {
            "users": {"created": 5, "updated": 3, "errors": []},
            "teams": {"created": 2, "updated": 1, "errors": []},
            "fields": {"created": 1, "updated": 0, "errors": []},
            "reservations": {"created": 10, "updated": 2, "errors": []},
        },
        "duration": 30000,
    },
    WebhookEvent.SYNC_FAILED: {
        "source": "sportsconnect",
        "error": "API connection timeout",
        "partialResult": {
            "users": {"created": 2, "updated": 1, "errors": ["Invalid email format"]},
            "teams": {"created": 0, "updated": 0, "errors": ["Team name already exists"]},
        },
    },
}

# Updates and confirmations share the shape of the creation sample.
_ALIASES = {
    WebhookEvent.USER_UPDATED: WebhookEvent.USER_CREATED,
    WebhookEvent.TEAM_UPDATED: WebhookEvent.TEAM_CREATED,
    WebhookEvent.FIELD_UPDATED: WebhookEvent.FIELD_CREATED,
    WebhookEvent.RESERVATION_UPDATED: WebhookEvent.RESERVATION_CREATED,
    WebhookEvent.RESERVATION_CONFIRMED: WebhookEvent.RESERVATION_CREATED,
}


def sample_payload(event: WebhookEvent, now: datetime | None = None) -> dict[str, Any]:
    """Build a realistic ``data`` snapshot for a test delivery of ``event``."""
    now = now or utc_now()
    data: dict[str, Any] = {
        "id": f"test-{uuid4().hex[:9]}",
        "createdAt": now.isoformat(),
        "updatedAt": now.isoformat(),
    }
    template = _SAMPLES.get(_ALIASES.get(event, event))
    if template is None:
        data["message"] = "Test event data"
        return data

    data.update(copy.deepcopy(template))
    if event.resource == "reservation":
        data["date"] = now.date().isoformat()
    return data
