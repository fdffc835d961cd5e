"""Webhook fan-out, signing and delivery.

Example:
    ```python
    from webhook_relay.webhooks import DeliveryProcessor, EventDispatcher

    dispatcher = EventDispatcher(endpoints, deliveries)
    await dispatcher.trigger("league_1", "payment.processed", payment)

    processor = DeliveryProcessor(endpoints, deliveries)
    await processor.process_due()
    ```
"""

from .dispatcher import EventDispatcher, ScopeResolver, coerce_event
from .manager import (
    WebhookManager,
    trigger_payment_event,
    trigger_reservation_event,
    trigger_sync_event,
    trigger_user_event,
)
from .processor import (
    INACTIVE_ENDPOINT_ERROR,
    TIMEOUT_ERROR,
    DeliveryProcessor,
)
from .retry import RetryDecision, backoff_delay, decide_retry
from .samples import sample_payload
from .signing import (
    DELIVERY_ID_HEADER,
    EVENT_HEADER,
    SIGNATURE_HEADER,
    TIMESTAMP_HEADER,
    sign,
    verify,
)
from .worker import DeliveryWorker

__all__ = [
    "DELIVERY_ID_HEADER",
    "EVENT_HEADER",
    "INACTIVE_ENDPOINT_ERROR",
    "SIGNATURE_HEADER",
    "TIMEOUT_ERROR",
    "TIMESTAMP_HEADER",
    "DeliveryProcessor",
    "DeliveryWorker",
    "EventDispatcher",
    "RetryDecision",
    "ScopeResolver",
    "WebhookManager",
    "backoff_delay",
    "coerce_event",
    "decide_retry",
    "sample_payload",
    "sign",
    "trigger_payment_event",
    "trigger_reservation_event",
    "trigger_sync_event",
    "trigger_user_event",
    "verify",
]
