"""Fan-out of domain events into delivery rows.

Triggering never performs network I/O: it writes one ``pending`` delivery per
subscribed endpoint and hands off to the processor through ``on_enqueued``.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from webhook_relay.exceptions import ValidationError
from webhook_relay.models import (
    Clock,
    ScopeInfo,
    TriggeredBy,
    WebhookDelivery,
    WebhookEvent,
    WebhookPayload,
    utc_now,
)
from webhook_relay.storage import DeliveryStore, EndpointStore

logger = logging.getLogger(__name__)

ScopeResolver = Callable[[str], Awaitable[ScopeInfo | None]]
EnqueueHook = Callable[[list[WebhookDelivery]], None]


def coerce_event(event: WebhookEvent | str) -> WebhookEvent:
    """Accept an event kind or its string value; reject unknown strings."""
    if isinstance(event, WebhookEvent):
        return event
    try:
        return WebhookEvent(event)
    except ValueError as exc:
        raise ValidationError("event", f"Unknown webhook event: {event!r}") from exc


class EventDispatcher:
    """Creates deliveries for every endpoint subscribed to an event.

    Example:
        ```python
        dispatcher = EventDispatcher(endpoints, deliveries, on_enqueued=worker_kick)
        await dispatcher.trigger("league_1", "reservation.created", {"id": "res_9"})
        ```
    """

    def __init__(
        self,
        endpoints: EndpointStore,
        deliveries: DeliveryStore,
        scope_resolver: ScopeResolver | None = None,
        clock: Clock = utc_now,
        on_enqueued: EnqueueHook | None = None,
    ) -> None:
        """Initialize the dispatcher.

        Args:
            endpoints: Endpoint store used to find subscribers.
            deliveries: Delivery store receiving the new rows.
            scope_resolver: Async lookup of tenant display metadata.
            clock: Time source for envelope timestamps.
            on_enqueued: Called with the new deliveries after they are stored.
        """
        self._endpoints = endpoints
        self._deliveries = deliveries
        self._scope_resolver = scope_resolver
        self._clock = clock
        self._on_enqueued = on_enqueued

    async def _resolve_scope(self, scope_id: str) -> ScopeInfo:
        if self._scope_resolver is None:
            return ScopeInfo.unknown(scope_id)
        try:
            scope = await self._scope_resolver(scope_id)
        except Exception as exc:
            logger.warning("Scope lookup failed for %s: %s", scope_id, exc)
            return ScopeInfo.unknown(scope_id)
        return scope if scope is not None else ScopeInfo.unknown(scope_id)

    async def trigger(
        self,
        scope_id: str,
        event: WebhookEvent | str,
        data: Any,
        previous: Any = None,
        triggered_by: TriggeredBy | None = None,
    ) -> list[WebhookDelivery]:
        """Enqueue one delivery per subscribed endpoint.

        Args:
            scope_id: Tenant the event belongs to.
            event: Event kind.
            data: Snapshot of the affected resource.
            previous: Prior snapshot, for update events.
            triggered_by: Actor attribution.

        Returns:
            The created deliveries (empty when nobody subscribes).

        Raises:
            ValidationError: If ``event`` is not a known event kind.
        """
        event = coerce_event(event)
        endpoints = await self._endpoints.list_subscribed(scope_id, event)
        if not endpoints:
            logger.debug("No webhooks subscribed to %s in scope %s", event.value, scope_id)
            return []

        now = self._clock()
        payload = WebhookPayload(
            event=event,
            timestamp=now,
            data=data,
            previous=previous,
            scope=await self._resolve_scope(scope_id),
            triggered_by=triggered_by,
        )
        deliveries = [
            WebhookDelivery(
                webhook_id=endpoint.id,
                scope_id=scope_id,
                event=event,
                payload=payload,
                created_at=now,
                updated_at=now,
            )
            for endpoint in endpoints
        ]
        await self._deliveries.create_many(deliveries)
        logger.info(
            "Queued %d deliveries for %s in scope %s", len(deliveries), event.value, scope_id
        )

        if self._on_enqueued is not None:
            try:
                self._on_enqueued(deliveries)
            except Exception:
                logger.exception("Delivery kick failed after enqueueing %s", event.value)

        return deliveries
