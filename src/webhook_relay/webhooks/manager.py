"""WebhookManager: the API domain code and admin surfaces talk to.

Wires the endpoint store, delivery store, dispatcher, processor and
background worker together with explicit dependencies (no module-level
singleton).

Example:
    ```python
    from webhook_relay import Settings, WebhookManager

    async with WebhookManager.create(Settings()) as webhooks:
        endpoint = await webhooks.register_endpoint(
            "league_1",
            "user_42",
            {"name": "CRM", "url": "https://crm.example.com/hooks", "events": ["reservation.created"]},
        )
        await webhooks.trigger("league_1", "reservation.created", {"id": "res_9"})
    ```
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from datetime import timedelta
from typing import Any

import httpx

from webhook_relay.config import Settings
from webhook_relay.exceptions import (
    EndpointLimitError,
    NotFoundError,
    ValidationError,
)
from webhook_relay.logging import configure_logging, get_logger
from webhook_relay.models import (
    Clock,
    DeliveryPage,
    DeliveryStatus,
    EndpointPatch,
    EndpointSpec,
    TriggeredBy,
    WebhookDelivery,
    WebhookEndpoint,
    WebhookEvent,
    parse_patch,
    parse_spec,
    utc_now,
)
from webhook_relay.storage import (
    DEFAULT_PAGE_SIZE,
    DeliveryStore,
    EndpointStore,
    InMemoryDeliveryStore,
    InMemoryEndpointStore,
    QdrantStorage,
    check_retryable,
)

from .dispatcher import EventDispatcher, ScopeResolver, coerce_event
from .processor import DeliveryProcessor
from .samples import sample_payload
from .worker import DeliveryWorker

logger = get_logger(__name__)

MAX_PAGE_SIZE = 100


class WebhookManager:
    """Facade over endpoint registration, event triggering and delivery history.

    Provides:
    - Endpoint CRUD with validation, a per-scope limit and an optional URL probe
    - trigger(): enqueue deliveries, then kick processing without waiting for it
    - Delivery history and operator retry
    - Lifecycle of the background worker and owned resources
    """

    def __init__(
        self,
        endpoints: EndpointStore,
        deliveries: DeliveryStore,
        processor: DeliveryProcessor,
        *,
        scope_resolver: ScopeResolver | None = None,
        settings: Settings | None = None,
        clock: Clock = utc_now,
        worker: DeliveryWorker | None = None,
    ) -> None:
        """Initialize the manager.

        Args:
            endpoints: Endpoint store.
            deliveries: Delivery store.
            processor: Delivery processor sharing the same stores.
            scope_resolver: Async lookup of tenant display metadata.
            settings: Limits and worker interval. Defaults are used if None.
            clock: Time source.
            worker: Background worker. One is built from settings if None.
        """
        self.settings = settings or Settings()
        self.endpoints = endpoints
        self.deliveries = deliveries
        self.processor = processor
        self._clock = clock
        self.worker = worker or DeliveryWorker(
            processor, interval_seconds=self.settings.poll_interval_seconds
        )
        self.dispatcher = EventDispatcher(
            endpoints,
            deliveries,
            scope_resolver=scope_resolver,
            clock=clock,
            on_enqueued=self._on_enqueued,
        )
        self._storage: QdrantStorage | None = None
        self._tasks: set[asyncio.Task[int]] = set()

    @classmethod
    def create(
        cls,
        settings: Settings | None = None,
        client: httpx.AsyncClient | None = None,
        scope_resolver: ScopeResolver | None = None,
    ) -> WebhookManager:
        """Create a manager with backends and logging chosen by settings.

        Args:
            settings: Optional settings. Uses defaults if None.
            client: Shared HTTP client for deliveries and probes.
            scope_resolver: Async lookup of tenant display metadata.

        Returns:
            Manager; call ``initialize()`` (or use ``async with``) before use.
        """
        if settings is None:
            settings = Settings()
        configure_logging(settings.log_level, settings.log_format)

        storage: QdrantStorage | None = None
        endpoints: EndpointStore
        deliveries: DeliveryStore
        if settings.storage_backend == "qdrant":
            storage = QdrantStorage(
                url=settings.qdrant_url,
                api_key=settings.qdrant_api_key,
                prefix=settings.collection_prefix,
            )
            endpoints, deliveries = storage.endpoints, storage.deliveries
        else:
            endpoints, deliveries = InMemoryEndpointStore(), InMemoryDeliveryStore()

        processor = DeliveryProcessor(
            endpoints,
            deliveries,
            client=client,
            batch_size=settings.batch_size,
            user_agent=settings.user_agent,
            claim_ttl=timedelta(seconds=settings.claim_ttl_seconds),
        )
        manager = cls(
            endpoints,
            deliveries,
            processor,
            scope_resolver=scope_resolver,
            settings=settings,
        )
        manager._storage = storage
        return manager

    async def initialize(self) -> None:
        """Prepare storage (collections, connections)."""
        if self._storage is not None:
            await self._storage.initialize()

    def start(self) -> None:
        """Start background processing of queued deliveries."""
        self.worker.start()

    async def close(self) -> None:
        """Stop the worker, finish in-flight passes, release owned resources."""
        await self.worker.stop()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        await self.processor.aclose()
        if self._storage is not None:
            await self._storage.close()

    async def __aenter__(self) -> WebhookManager:
        await self.initialize()
        self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    # Endpoints

    async def register_endpoint(
        self,
        scope_id: str,
        actor_id: str | None,
        spec: EndpointSpec | Mapping[str, Any],
        *,
        probe: bool = False,
    ) -> WebhookEndpoint:
        """Register a new endpoint with a generated signing secret.

        Raises:
            ValidationError: Invalid configuration or failed URL probe.
            EndpointLimitError: The scope already has the maximum endpoints.
        """
        spec = parse_spec(spec)
        existing = await self.endpoints.list(scope_id)
        if len(existing) >= self.settings.max_endpoints_per_scope:
            raise EndpointLimitError(self.settings.max_endpoints_per_scope)
        if probe:
            await self.probe_url(str(spec.url))

        endpoint = await self.endpoints.create(scope_id, actor_id, spec)
        logger.info(
            "Webhook endpoint registered",
            scope_id=scope_id,
            webhook_id=endpoint.id,
            events=[e.value for e in endpoint.events],
        )
        return endpoint

    async def update_endpoint(
        self,
        scope_id: str,
        endpoint_id: str,
        patch: EndpointPatch | Mapping[str, Any],
        *,
        probe: bool = False,
    ) -> WebhookEndpoint:
        """Apply a partial update. The secret never changes.

        Raises:
            ValidationError: Invalid configuration or failed URL probe.
            NotFoundError: Endpoint missing or owned by another scope.
        """
        patch = parse_patch(patch)
        if probe and patch.url is not None:
            await self.probe_url(str(patch.url))
        endpoint = await self.endpoints.update(endpoint_id, scope_id, patch)
        logger.info("Webhook endpoint updated", scope_id=scope_id, webhook_id=endpoint_id)
        return endpoint

    async def delete_endpoint(self, scope_id: str, endpoint_id: str) -> None:
        """Delete an endpoint. Queued deliveries fail on their next pass."""
        await self.endpoints.delete(endpoint_id, scope_id)
        logger.info("Webhook endpoint deleted", scope_id=scope_id, webhook_id=endpoint_id)

    async def get_endpoint(self, scope_id: str, endpoint_id: str) -> WebhookEndpoint | None:
        return await self.endpoints.get(endpoint_id, scope_id)

    async def list_endpoints(self, scope_id: str) -> list[WebhookEndpoint]:
        return await self.endpoints.list(scope_id)

    async def get_endpoint_secret(self, scope_id: str, endpoint_id: str) -> str:
        """Reveal the raw signing secret of an endpoint.

        Raises:
            NotFoundError: Endpoint missing or owned by another scope.
        """
        secret = await self.endpoints.get_secret(endpoint_id, scope_id)
        if secret is None:
            raise NotFoundError("webhook_endpoint", endpoint_id)
        return secret

    async def probe_url(self, url: str) -> None:
        """Check that a URL answers a HEAD request (405 is accepted).

        Raises:
            ValidationError: The URL is unreachable or answered with an error.
        """
        try:
            response = await self.processor.client.head(
                url,
                timeout=self.settings.probe_timeout_seconds,
                headers={"User-Agent": self.settings.user_agent},
            )
        except httpx.HTTPError as exc:
            raise ValidationError("url", f"Webhook URL is not reachable: {exc}") from exc
        if not response.is_success and response.status_code != 405:
            raise ValidationError(
                "url", f"Webhook URL returned status {response.status_code}"
            )

    # Events

    async def trigger(
        self,
        scope_id: str,
        event: WebhookEvent | str,
        data: Any,
        previous: Any = None,
        triggered_by: TriggeredBy | None = None,
    ) -> list[WebhookDelivery]:
        """Enqueue deliveries for an event and kick processing.

        Returns as soon as the deliveries are stored; delivery outcomes are
        only visible through delivery history.
        """
        return await self.dispatcher.trigger(
            scope_id, event, data, previous=previous, triggered_by=triggered_by
        )

    async def send_test_event(
        self,
        scope_id: str,
        event: WebhookEvent | str,
        data: Any = None,
        triggered_by: TriggeredBy | None = None,
    ) -> list[WebhookDelivery]:
        """Trigger an event with sample data so tenants can test receivers."""
        event = coerce_event(event)
        if data is None:
            data = sample_payload(event, self._clock())
        return await self.trigger(scope_id, event, data, triggered_by=triggered_by)

    def _on_enqueued(self, deliveries: list[WebhookDelivery]) -> None:
        self.kick()

    def kick(self) -> None:
        """Start processing soon without waiting for it."""
        if self.worker.running:
            self.worker.kick()
            return
        task = asyncio.create_task(self.processor.process_due())
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task[int]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background delivery pass failed", error=repr(exc))

    async def process_due(self) -> int:
        """Run one processing pass now (e.g. from a scheduled job)."""
        return await self.processor.process_due()

    # Deliveries

    async def _require_endpoint(self, scope_id: str, endpoint_id: str) -> WebhookEndpoint:
        endpoint = await self.endpoints.get(endpoint_id, scope_id)
        if endpoint is None:
            raise NotFoundError("webhook_endpoint", endpoint_id)
        return endpoint

    async def list_deliveries(
        self,
        scope_id: str,
        endpoint_id: str,
        status: DeliveryStatus | str | None = None,
        event: WebhookEvent | str | None = None,
        limit: int = DEFAULT_PAGE_SIZE,
        offset: int = 0,
    ) -> DeliveryPage:
        """Delivery history of one endpoint, newest first.

        Raises:
            NotFoundError: Endpoint missing or owned by another scope.
            ValidationError: Unknown filter value or out-of-range paging.
        """
        if not 1 <= limit <= MAX_PAGE_SIZE:
            raise ValidationError("limit", f"must be between 1 and {MAX_PAGE_SIZE}")
        if offset < 0:
            raise ValidationError("offset", "must be >= 0")
        await self._require_endpoint(scope_id, endpoint_id)
        return await self.deliveries.list(
            endpoint_id,
            status=_coerce_status(status) if status is not None else None,
            event=coerce_event(event) if event is not None else None,
            limit=limit,
            offset=offset,
        )

    async def retry_delivery(
        self, scope_id: str, endpoint_id: str, delivery_id: str
    ) -> WebhookDelivery:
        """Operator retry of a failed delivery. ``attempts`` is kept.

        Raises:
            NotFoundError: Endpoint or delivery missing, or not owned.
            DeliveryStateError: Delivery already delivered or still queued.
        """
        await self._require_endpoint(scope_id, endpoint_id)
        delivery = await self.deliveries.get(delivery_id)
        if delivery is None or delivery.webhook_id != endpoint_id:
            raise NotFoundError("webhook_delivery", delivery_id)
        check_retryable(delivery)

        delivery = await self.deliveries.retry(delivery_id, self._clock())
        logger.info(
            "Delivery retry requested",
            scope_id=scope_id,
            webhook_id=endpoint_id,
            delivery_id=delivery_id,
            attempts=delivery.attempts,
        )
        self.kick()
        return delivery


def _coerce_status(status: DeliveryStatus | str) -> DeliveryStatus:
    try:
        return DeliveryStatus(status)
    except ValueError as exc:
        raise ValidationError("status", f"Unknown delivery status: {status!r}") from exc


def _check_resource(event: WebhookEvent | str, resource: str) -> WebhookEvent:
    event = coerce_event(event)
    if event.resource != resource:
        raise ValidationError("event", f"{event.value} is not a {resource} event")
    return event


async def trigger_user_event(
    manager: WebhookManager,
    scope_id: str,
    event: WebhookEvent | str,
    user: Any,
    previous_user: Any = None,
    triggered_by: TriggeredBy | None = None,
) -> list[WebhookDelivery]:
    """Trigger a ``user.*`` event."""
    return await manager.trigger(
        scope_id, _check_resource(event, "user"), user, previous_user, triggered_by
    )


async def trigger_reservation_event(
    manager: WebhookManager,
    scope_id: str,
    event: WebhookEvent | str,
    reservation: Any,
    previous_reservation: Any = None,
    triggered_by: TriggeredBy | None = None,
) -> list[WebhookDelivery]:
    """Trigger a ``reservation.*`` event."""
    return await manager.trigger(
        scope_id,
        _check_resource(event, "reservation"),
        reservation,
        previous_reservation,
        triggered_by,
    )


async def trigger_payment_event(
    manager: WebhookManager,
    scope_id: str,
    event: WebhookEvent | str,
    payment: Any,
    triggered_by: TriggeredBy | None = None,
) -> list[WebhookDelivery]:
    """Trigger a ``payment.*`` event."""
    return await manager.trigger(
        scope_id, _check_resource(event, "payment"), payment, triggered_by=triggered_by
    )


async def trigger_sync_event(
    manager: WebhookManager,
    scope_id: str,
    event: WebhookEvent | str,
    sync_result: Any,
    triggered_by: TriggeredBy | None = None,
) -> list[WebhookDelivery]:
    """Trigger a ``sync.*`` event."""
    return await manager.trigger(
        scope_id, _check_resource(event, "sync"), sync_result, triggered_by=triggered_by
    )
