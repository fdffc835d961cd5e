"""Qdrant-backed endpoint and delivery stores.

Endpoints and deliveries are stored as payload-only points (a one-dimensional
placeholder vector; no similarity search is involved). Delivery points carry
numeric helper fields so due-time and lease checks are plain range filters:

- ``due_ts``: ``next_retry_at`` as a POSIX timestamp, 0 when unset
- ``claim_expires_ts``: ``claimed_until`` as a POSIX timestamp, 0 when unclaimed
- ``created_ts``: ``created_at`` as a POSIX timestamp, the history sort key

Claims are single filtered ``set_payload`` calls (id AND due AND unclaimed),
so two processors racing for a row cannot both win: the loser's filter no
longer matches and its token is never written. A read-back of the token tells
each processor which rows it owns.

Example:
    ```python
    async with QdrantStorage(url="http://localhost:6333") as storage:
        manager = WebhookManager(storage.endpoints, storage.deliveries, processor)
    ```
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any
from uuid import NAMESPACE_URL, uuid4, uuid5

from qdrant_client import AsyncQdrantClient, models

from webhook_relay.exceptions import ConfigurationError, DeliveryStateError, NotFoundError
from webhook_relay.models import (
    ACTIVE_STATUSES,
    DeliveryPage,
    DeliveryStatus,
    EndpointPatch,
    EndpointSpec,
    WebhookDelivery,
    WebhookEndpoint,
    WebhookEvent,
    utc_now,
)

from .base import DEFAULT_PAGE_SIZE, DeliveryStore, EndpointStore, check_retryable
from .retry import qdrant_retry, storage_errors

logger = logging.getLogger(__name__)

ENDPOINTS = "endpoints"
DELIVERIES = "deliveries"

_PLACEHOLDER_VECTOR = [0.0]
_SCROLL_PAGE = 256
_HELPER_FIELDS = ("due_ts", "claim_expires_ts", "created_ts")


def _point_id(record_id: str) -> str:
    """Deterministic UUID point ID for a ``whk_``/``dlv_`` record ID."""
    return str(uuid5(NAMESPACE_URL, f"webhook-relay:{record_id}"))


def _ts(value: datetime | None) -> float:
    return value.timestamp() if value is not None else 0.0


def _match(key: str, value: Any) -> models.FieldCondition:
    return models.FieldCondition(key=key, match=models.MatchValue(value=value))


class QdrantStorage:
    """Owns the Qdrant client and the webhook collections.

    Provides:
    - Client lifecycle (``initialize``/``close``, async context manager)
    - Collection creation and payload indexes
    - Retried point operations shared by both stores
    """

    def __init__(
        self,
        url: str = "http://localhost:6333",
        api_key: str | None = None,
        prefix: str = "webhooks",
        client: AsyncQdrantClient | None = None,
    ) -> None:
        """Initialize storage.

        Args:
            url: Qdrant server URL.
            api_key: Qdrant API key.
            prefix: Collection name prefix.
            client: Pre-built client (e.g. ``AsyncQdrantClient(location=":memory:")``).
                An injected client is not closed by ``close()``.
        """
        self._url = url
        self._api_key = api_key
        self._prefix = prefix
        self._client = client
        self._owns_client = client is None
        self.endpoints = QdrantEndpointStore(self)
        self.deliveries = QdrantDeliveryStore(self)

    @property
    def client(self) -> AsyncQdrantClient:
        """Get the Qdrant client, raising if not initialized."""
        if self._client is None:
            raise ConfigurationError("Storage not initialized. Call initialize() first.")
        return self._client

    def collection_name(self, kind: str) -> str:
        return f"{self._prefix}_webhook_{kind}"

    async def initialize(self) -> None:
        """Connect (unless a client was injected) and ensure collections exist."""
        if self._client is None:
            self._client = AsyncQdrantClient(url=self._url, api_key=self._api_key)
        await self._ensure_collections()

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.close()
            self._client = None

    async def __aenter__(self) -> QdrantStorage:
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    async def _ensure_collections(self) -> None:
        collections = await self.client.get_collections()
        existing = {c.name for c in collections.collections}

        indexes = {
            ENDPOINTS: {
                "scope_id": models.PayloadSchemaType.KEYWORD,
                "events": models.PayloadSchemaType.KEYWORD,
                "is_active": models.PayloadSchemaType.BOOL,
            },
            DELIVERIES: {
                "webhook_id": models.PayloadSchemaType.KEYWORD,
                "status": models.PayloadSchemaType.KEYWORD,
                "event": models.PayloadSchemaType.KEYWORD,
                "due_ts": models.PayloadSchemaType.FLOAT,
                "claim_expires_ts": models.PayloadSchemaType.FLOAT,
                "created_ts": models.PayloadSchemaType.FLOAT,
            },
        }
        for kind, fields in indexes.items():
            name = self.collection_name(kind)
            if name not in existing:
                await self.client.create_collection(
                    collection_name=name,
                    vectors_config=models.VectorParams(size=1, distance=models.Distance.DOT),
                )
                logger.info("Created Qdrant collection %s", name)
            # Idempotent; also covers fields added after a collection was created.
            for field_name, schema in fields.items():
                await self.client.create_payload_index(
                    collection_name=name,
                    field_name=field_name,
                    field_schema=schema,
                )

    @storage_errors
    @qdrant_retry
    async def upsert(self, kind: str, records: list[tuple[str, dict[str, Any]]]) -> None:
        await self.client.upsert(
            collection_name=self.collection_name(kind),
            points=[
                models.PointStruct(
                    id=_point_id(record_id),
                    vector=_PLACEHOLDER_VECTOR,
                    payload=payload,
                )
                for record_id, payload in records
            ],
            wait=True,
        )

    @storage_errors
    @qdrant_retry
    async def retrieve(self, kind: str, record_ids: list[str]) -> list[dict[str, Any]]:
        points = await self.client.retrieve(
            collection_name=self.collection_name(kind),
            ids=[_point_id(record_id) for record_id in record_ids],
            with_payload=True,
        )
        return [dict(p.payload) for p in points if p.payload is not None]

    @storage_errors
    @qdrant_retry
    async def scroll(
        self, kind: str, conditions: list[models.Condition], limit: int | None = None
    ) -> list[dict[str, Any]]:
        """Fetch payloads matching all conditions, following scroll pages."""
        payloads: list[dict[str, Any]] = []
        offset: Any = None
        while True:
            page_size = _SCROLL_PAGE if limit is None else min(_SCROLL_PAGE, limit - len(payloads))
            points, offset = await self.client.scroll(
                collection_name=self.collection_name(kind),
                scroll_filter=models.Filter(must=conditions),
                limit=page_size,
                offset=offset,
                with_payload=True,
            )
            payloads.extend(dict(p.payload) for p in points if p.payload is not None)
            if offset is None or (limit is not None and len(payloads) >= limit):
                return payloads

    @storage_errors
    @qdrant_retry
    async def scroll_newest(
        self, kind: str, conditions: list[models.Condition], order_key: str, limit: int
    ) -> list[dict[str, Any]]:
        """First ``limit`` payloads matching all conditions, highest ``order_key`` first."""
        points, _ = await self.client.scroll(
            collection_name=self.collection_name(kind),
            scroll_filter=models.Filter(must=conditions),
            limit=limit,
            order_by=models.OrderBy(key=order_key, direction=models.Direction.DESC),
            with_payload=True,
        )
        return [dict(p.payload) for p in points if p.payload is not None]

    @storage_errors
    @qdrant_retry
    async def count(self, kind: str, conditions: list[models.Condition]) -> int:
        result = await self.client.count(
            collection_name=self.collection_name(kind),
            count_filter=models.Filter(must=conditions),
            exact=True,
        )
        return result.count

    @storage_errors
    @qdrant_retry
    async def delete(self, kind: str, record_id: str) -> None:
        await self.client.delete(
            collection_name=self.collection_name(kind),
            points_selector=models.PointIdsList(points=[_point_id(record_id)]),
            wait=True,
        )

    @storage_errors
    @qdrant_retry
    async def set_payload_where(
        self,
        kind: str,
        record_id: str,
        payload: dict[str, Any],
        conditions: list[models.Condition],
    ) -> None:
        """Set payload keys on one point, only if it still matches ``conditions``."""
        await self.client.set_payload(
            collection_name=self.collection_name(kind),
            payload=payload,
            points=models.Filter(
                must=[models.HasIdCondition(has_id=[_point_id(record_id)]), *conditions]
            ),
            wait=True,
        )


class QdrantEndpointStore(EndpointStore):
    """Endpoint store over the ``<prefix>_webhook_endpoints`` collection."""

    def __init__(self, storage: QdrantStorage) -> None:
        self._storage = storage

    @staticmethod
    def _load(payload: dict[str, Any]) -> WebhookEndpoint:
        return WebhookEndpoint.model_validate(payload)

    async def _save(self, endpoint: WebhookEndpoint) -> None:
        await self._storage.upsert(ENDPOINTS, [(endpoint.id, endpoint.to_record())])

    async def create(
        self, scope_id: str, actor_id: str | None, spec: EndpointSpec
    ) -> WebhookEndpoint:
        endpoint = WebhookEndpoint.from_spec(scope_id, actor_id, spec)
        await self._save(endpoint)
        return endpoint

    async def update(
        self, endpoint_id: str, scope_id: str, patch: EndpointPatch
    ) -> WebhookEndpoint:
        endpoint = await self.get(endpoint_id, scope_id)
        if endpoint is None:
            raise NotFoundError("webhook_endpoint", endpoint_id)
        updated = endpoint.apply_patch(patch, utc_now())
        await self._save(updated)
        return updated

    async def delete(self, endpoint_id: str, scope_id: str) -> None:
        if await self.get(endpoint_id, scope_id) is None:
            raise NotFoundError("webhook_endpoint", endpoint_id)
        await self._storage.delete(ENDPOINTS, endpoint_id)

    async def get(self, endpoint_id: str, scope_id: str) -> WebhookEndpoint | None:
        endpoint = await self.get_by_id(endpoint_id)
        if endpoint is None or endpoint.scope_id != scope_id:
            return None
        return endpoint

    async def list(self, scope_id: str) -> list[WebhookEndpoint]:
        payloads = await self._storage.scroll(ENDPOINTS, [_match("scope_id", scope_id)])
        endpoints = [self._load(p) for p in payloads]
        endpoints.sort(key=lambda e: e.created_at, reverse=True)
        return endpoints

    async def list_subscribed(
        self, scope_id: str, event: WebhookEvent
    ) -> list[WebhookEndpoint]:
        payloads = await self._storage.scroll(
            ENDPOINTS,
            [
                _match("scope_id", scope_id),
                _match("is_active", True),
                _match("events", event.value),
            ],
        )
        return [self._load(p) for p in payloads]

    async def get_by_id(self, endpoint_id: str) -> WebhookEndpoint | None:
        payloads = await self._storage.retrieve(ENDPOINTS, [endpoint_id])
        return self._load(payloads[0]) if payloads else None


class QdrantDeliveryStore(DeliveryStore):
    """Delivery store over the ``<prefix>_webhook_deliveries`` collection."""

    def __init__(self, storage: QdrantStorage) -> None:
        self._storage = storage

    @staticmethod
    def _to_payload(delivery: WebhookDelivery) -> dict[str, Any]:
        payload = delivery.model_dump(mode="json")
        payload["due_ts"] = _ts(delivery.next_retry_at)
        payload["claim_expires_ts"] = _ts(delivery.claimed_until)
        payload["created_ts"] = _ts(delivery.created_at)
        return payload

    @staticmethod
    def _load(payload: dict[str, Any]) -> WebhookDelivery:
        for key in _HELPER_FIELDS:
            payload.pop(key, None)
        return WebhookDelivery.model_validate(payload)

    @staticmethod
    def _due_conditions(now: datetime) -> list[models.Condition]:
        now_ts = now.timestamp()
        return [
            models.FieldCondition(
                key="status",
                match=models.MatchAny(any=[s.value for s in ACTIVE_STATUSES]),
            ),
            models.FieldCondition(key="due_ts", range=models.Range(lte=now_ts)),
            models.FieldCondition(key="claim_expires_ts", range=models.Range(lte=now_ts)),
        ]

    async def create_many(self, deliveries: list[WebhookDelivery]) -> None:
        if not deliveries:
            return
        await self._storage.upsert(
            DELIVERIES, [(d.id, self._to_payload(d)) for d in deliveries]
        )

    async def get(self, delivery_id: str) -> WebhookDelivery | None:
        payloads = await self._storage.retrieve(DELIVERIES, [delivery_id])
        return self._load(payloads[0]) if payloads else None

    async def save(self, delivery: WebhookDelivery) -> None:
        await self._storage.upsert(DELIVERIES, [(delivery.id, self._to_payload(delivery))])

    async def claim_due(
        self, now: datetime, limit: int, lease: timedelta
    ) -> list[WebhookDelivery]:
        conditions = self._due_conditions(now)
        candidates = [
            self._load(p) for p in await self._storage.scroll(DELIVERIES, conditions, limit=limit)
        ]
        if not candidates:
            return []

        claimed_until = now + lease
        tokens: dict[str, str] = {}
        for candidate in candidates:
            token = uuid4().hex
            tokens[candidate.id] = token
            await self._storage.set_payload_where(
                DELIVERIES,
                candidate.id,
                {
                    "claim_token": token,
                    "claimed_until": claimed_until.isoformat(),
                    "claim_expires_ts": claimed_until.timestamp(),
                },
                conditions,
            )

        stored = await self._storage.retrieve(DELIVERIES, list(tokens))
        claimed = [self._load(p) for p in stored]
        owned = [d for d in claimed if d.claim_token == tokens.get(d.id)]
        owned.sort(key=lambda d: (d.next_retry_at or d.created_at, d.created_at))
        if len(owned) < len(candidates):
            logger.debug(
                "Lost %d delivery claims to another processor", len(candidates) - len(owned)
            )
        return owned

    async def complete(self, delivery: WebhookDelivery, claim_token: str) -> bool:
        released = delivery.model_copy(deep=True)
        released.release_claim()
        await self._storage.set_payload_where(
            DELIVERIES,
            delivery.id,
            self._to_payload(released),
            [_match("claim_token", claim_token)],
        )
        stored = await self.get(delivery.id)
        return (
            stored is not None
            and stored.claim_token is None
            and stored.updated_at == released.updated_at
        )

    async def list(
        self,
        webhook_id: str,
        *,
        status: DeliveryStatus | None = None,
        event: WebhookEvent | None = None,
        limit: int = DEFAULT_PAGE_SIZE,
        offset: int = 0,
    ) -> DeliveryPage:
        conditions: list[models.Condition] = [_match("webhook_id", webhook_id)]
        if status is not None:
            conditions.append(_match("status", status.value))
        if event is not None:
            conditions.append(_match("event", event.value))

        total = await self._storage.count(DELIVERIES, conditions)
        if offset >= total:
            return DeliveryPage(deliveries=[], total=total)
        # Ordered scrolls cannot resume from an offset; read through the page end.
        payloads = await self._storage.scroll_newest(
            DELIVERIES, conditions, "created_ts", offset + limit
        )
        page = payloads[offset : offset + limit]
        return DeliveryPage(deliveries=[self._load(p) for p in page], total=total)

    async def retry(self, delivery_id: str, now: datetime) -> WebhookDelivery:
        """Reset a failed delivery with a write conditioned on its read state.

        A concurrent reset or a processor outcome that lands between the read
        and the write leaves the stored row untouched.
        """
        delivery = await self.get(delivery_id)
        if delivery is None:
            raise NotFoundError("webhook_delivery", delivery_id)
        check_retryable(delivery)

        reset = delivery.model_copy(deep=True)
        reset.reset_for_retry(now)
        await self._storage.set_payload_where(
            DELIVERIES,
            delivery_id,
            self._to_payload(reset),
            [
                _match("status", DeliveryStatus.FAILED.value),
                _match("attempts", delivery.attempts),
            ],
        )

        stored = await self.get(delivery_id)
        if stored is None:
            raise NotFoundError("webhook_delivery", delivery_id)
        if (
            stored.status != DeliveryStatus.PENDING
            or stored.attempts != reset.attempts
            or stored.updated_at != reset.updated_at
        ):
            raise DeliveryStateError(
                delivery_id, stored.status.value, "Delivery is already being processed"
            )
        return stored
