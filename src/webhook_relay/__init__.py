"""webhook-relay: reliable outbound webhooks for multi-tenant applications.

Tenants register HTTP endpoints for domain events. Triggering an event writes
one delivery per subscribed endpoint; a processor signs each body with
HMAC-SHA256, POSTs it, and retries failures with exponential backoff.

Quick Start:
    from webhook_relay import WebhookManager

    async with WebhookManager.create() as webhooks:
        await webhooks.register_endpoint(
            "league_1",
            "user_42",
            {"name": "CRM", "url": "https://crm.example.com/hooks", "events": ["payment.processed"]},
        )
        await webhooks.trigger("league_1", "payment.processed", {"amount": 100})

Delivery lifecycle:
    pending -> delivered | retrying | failed
    retrying -> delivered | retrying | failed
"""

__version__ = "0.1.0"

# Configuration
from .config import Settings

# Exceptions
from .exceptions import (
    ConfigurationError,
    DeliveryStateError,
    EndpointLimitError,
    NotFoundError,
    StorageError,
    ValidationError,
    WebhookError,
)

# Logging
from .logging import (
    bind_context,
    clear_context,
    configure_logging,
    get_logger,
    unbind_context,
)

# Models
from .models import (
    ALL_EVENTS,
    DeliveryPage,
    DeliveryResponse,
    DeliveryStatus,
    EndpointPatch,
    EndpointSpec,
    ScopeInfo,
    TriggeredBy,
    WebhookDelivery,
    WebhookEndpoint,
    WebhookEvent,
    WebhookPayload,
)

# Storage
from .storage import (
    DeliveryStore,
    EndpointStore,
    InMemoryDeliveryStore,
    InMemoryEndpointStore,
    QdrantStorage,
)

# Delivery
from .webhooks import (
    DeliveryProcessor,
    DeliveryWorker,
    EventDispatcher,
    WebhookManager,
    sign,
    verify,
)

__all__ = [
    "__version__",
    # Configuration
    "Settings",
    # Exceptions
    "ConfigurationError",
    "DeliveryStateError",
    "EndpointLimitError",
    "NotFoundError",
    "StorageError",
    "ValidationError",
    "WebhookError",
    # Logging
    "bind_context",
    "clear_context",
    "configure_logging",
    "get_logger",
    "unbind_context",
    # Models
    "ALL_EVENTS",
    "DeliveryPage",
    "DeliveryResponse",
    "DeliveryStatus",
    "EndpointPatch",
    "EndpointSpec",
    "ScopeInfo",
    "TriggeredBy",
    "WebhookDelivery",
    "WebhookEndpoint",
    "WebhookEvent",
    "WebhookPayload",
    # Storage
    "DeliveryStore",
    "EndpointStore",
    "InMemoryDeliveryStore",
    "InMemoryEndpointStore",
    "QdrantStorage",
    # Delivery
    "DeliveryProcessor",
    "DeliveryWorker",
    "EventDispatcher",
    "WebhookManager",
    "sign",
    "verify",
]
