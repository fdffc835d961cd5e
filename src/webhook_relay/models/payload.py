"""Envelope sent as the body of every delivery.

The envelope is built once per trigger and shared by every delivery it fans
out to. ``serialize()`` produces the canonical bytes that are both signed and
transmitted, so subscribers can verify the signature against the raw body.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from .base import utc_now
from .events import WebhookEvent

UNKNOWN_SCOPE_NAME = "Unknown"


class ScopeInfo(BaseModel):
    """Display metadata of the tenant that owns the event."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str

    @classmethod
    def unknown(cls, scope_id: str) -> ScopeInfo:
        """Fallback used when scope metadata cannot be resolved."""
        return cls(id=scope_id, name=UNKNOWN_SCOPE_NAME)


class TriggeredBy(BaseModel):
    """Attribution of the actor that caused the event."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    kind: Literal["user", "system"] = "user"


class WebhookPayload(BaseModel):
    """Canonical webhook envelope.

    Attributes:
        id: Envelope ID, shared by all deliveries of one trigger.
        event: Event kind.
        timestamp: When the envelope was assembled (UTC).
        data: Event-specific snapshot of the resource.
        previous: Prior snapshot, for update events.
        scope: Owning tenant.
        triggered_by: Optional actor attribution (wire key ``triggeredBy``).
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str = Field(default_factory=lambda: str(uuid4()))
    event: WebhookEvent
    timestamp: datetime = Field(default_factory=utc_now)
    data: Any = None
    previous: Any = None
    scope: ScopeInfo
    triggered_by: TriggeredBy | None = Field(default=None, alias="triggeredBy")

    def to_wire(self) -> dict[str, Any]:
        """JSON-ready envelope with wire field names, absent optionals omitted."""
        wire = self.model_dump(mode="json", by_alias=True)
        if self.previous is None:
            wire.pop("previous")
        if self.triggered_by is None:
            wire.pop("triggeredBy")
        return wire

    def serialize(self) -> bytes:
        """Canonical body bytes: compact, key-sorted, UTF-8 JSON."""
        return json.dumps(
            self.to_wire(),
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
        ).encode("utf-8")
