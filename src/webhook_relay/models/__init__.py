"""Webhook relay data models.

Endpoints:
    - EndpointSpec / EndpointPatch: validated registration and update input
    - WebhookEndpoint: a registered subscriber with its signing secret

Events and envelopes:
    - WebhookEvent: closed enumeration of deliverable event kinds
    - WebhookPayload: canonical envelope (ScopeInfo, TriggeredBy)

Deliveries:
    - WebhookDelivery: one payload to one endpoint, with retry state
    - DeliveryStatus, DeliveryResponse, DeliveryPage
"""

from .base import Clock, format_timestamp, generate_id, utc_now
from .delivery import (
    ACTIVE_STATUSES,
    DeliveryPage,
    DeliveryResponse,
    DeliveryStatus,
    WebhookDelivery,
)
from .endpoint import (
    DEFAULT_RETRY_ATTEMPTS,
    DEFAULT_TIMEOUT_MS,
    MAX_RETRY_ATTEMPTS,
    MAX_TIMEOUT_MS,
    MIN_TIMEOUT_MS,
    EndpointPatch,
    EndpointSpec,
    WebhookEndpoint,
    generate_secret,
    parse_patch,
    parse_spec,
)
from .events import ALL_EVENTS, WebhookEvent
from .payload import UNKNOWN_SCOPE_NAME, ScopeInfo, TriggeredBy, WebhookPayload

__all__ = [
    # Base
    "Clock",
    "format_timestamp",
    "generate_id",
    "utc_now",
    # Events
    "ALL_EVENTS",
    "WebhookEvent",
    # Endpoints
    "DEFAULT_RETRY_ATTEMPTS",
    "DEFAULT_TIMEOUT_MS",
    "MAX_RETRY_ATTEMPTS",
    "MAX_TIMEOUT_MS",
    "MIN_TIMEOUT_MS",
    "EndpointPatch",
    "EndpointSpec",
    "WebhookEndpoint",
    "generate_secret",
    "parse_patch",
    "parse_spec",
    # Envelope
    "UNKNOWN_SCOPE_NAME",
    "ScopeInfo",
    "TriggeredBy",
    "WebhookPayload",
    # Deliveries
    "ACTIVE_STATUSES",
    "DeliveryPage",
    "DeliveryResponse",
    "DeliveryStatus",
    "WebhookDelivery",
]
