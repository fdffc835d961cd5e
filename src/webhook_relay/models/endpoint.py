"""Subscriber endpoint models.

An endpoint is a tenant's registered HTTP callback plus its delivery policy.
Registration input (EndpointSpec) and partial updates (EndpointPatch) are
validated synchronously; an invalid spec is rejected before anything is
stored.
"""

from __future__ import annotations

import secrets
from collections.abc import Mapping
from datetime import datetime
from typing import Any, NoReturn, TypeVar

from pydantic import BaseModel, ConfigDict, Field, HttpUrl, SecretStr, field_validator
from pydantic import ValidationError as PydanticValidationError

from webhook_relay.exceptions import ValidationError

from .base import generate_id, utc_now
from .events import WebhookEvent, dedupe_events

MIN_TIMEOUT_MS = 1000
MAX_TIMEOUT_MS = 30000
DEFAULT_TIMEOUT_MS = 10000
MAX_RETRY_ATTEMPTS = 5
DEFAULT_RETRY_ATTEMPTS = 3

SpecT = TypeVar("SpecT", "EndpointSpec", "EndpointPatch")


def generate_secret() -> str:
    """Generate a 256-bit signing secret as 64 hex characters."""
    return secrets.token_hex(32)


class EndpointSpec(BaseModel):
    """Validated registration request for a new endpoint."""

    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1, max_length=100, description="Display name")
    url: HttpUrl = Field(description="Absolute http(s) URL receiving deliveries")
    events: list[WebhookEvent] = Field(min_length=1, description="Subscribed event kinds")
    headers: dict[str, str] = Field(
        default_factory=dict, description="Static headers added to every request"
    )
    timeout: int = Field(
        default=DEFAULT_TIMEOUT_MS,
        ge=MIN_TIMEOUT_MS,
        le=MAX_TIMEOUT_MS,
        description="Per-request deadline in milliseconds",
    )
    retry_attempts: int = Field(
        default=DEFAULT_RETRY_ATTEMPTS,
        ge=0,
        le=MAX_RETRY_ATTEMPTS,
        description="Retries after the first failed attempt",
    )

    @field_validator("events")
    @classmethod
    def _dedupe_events(cls, value: list[WebhookEvent]) -> list[WebhookEvent]:
        return dedupe_events(value)


class EndpointPatch(BaseModel):
    """Partial update of an endpoint. Only explicitly set fields apply."""

    model_config = ConfigDict(extra="forbid")

    name: str | None = Field(default=None, min_length=1, max_length=100)
    url: HttpUrl | None = None
    events: list[WebhookEvent] | None = Field(default=None, min_length=1)
    headers: dict[str, str] | None = None
    timeout: int | None = Field(default=None, ge=MIN_TIMEOUT_MS, le=MAX_TIMEOUT_MS)
    retry_attempts: int | None = Field(default=None, ge=0, le=MAX_RETRY_ATTEMPTS)
    is_active: bool | None = None

    @field_validator("events")
    @classmethod
    def _dedupe_events(cls, value: list[WebhookEvent] | None) -> list[WebhookEvent] | None:
        return dedupe_events(value) if value is not None else None

    def changes(self) -> dict[str, Any]:
        """Fields the caller explicitly set, ready to apply to an endpoint."""
        data = self.model_dump(exclude_unset=True, exclude_none=True)
        if self.url is not None and "url" in data:
            data["url"] = str(self.url)
        return data


class WebhookEndpoint(BaseModel):
    """A registered subscriber endpoint.

    The signing secret is a ``SecretStr``: it is masked in repr and JSON dumps
    and can only be read deliberately via ``secret.get_secret_value()`` (or
    the store's ``get_secret`` accessor).
    """

    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=lambda: generate_id("whk"))
    scope_id: str = Field(description="Owning tenant")
    name: str
    url: str
    events: list[WebhookEvent] = Field(min_length=1)
    is_active: bool = True
    secret: SecretStr = Field(default_factory=lambda: SecretStr(generate_secret()))
    headers: dict[str, str] = Field(default_factory=dict)
    timeout: int = Field(default=DEFAULT_TIMEOUT_MS, ge=MIN_TIMEOUT_MS, le=MAX_TIMEOUT_MS)
    retry_attempts: int = Field(default=DEFAULT_RETRY_ATTEMPTS, ge=0, le=MAX_RETRY_ATTEMPTS)
    created_by: str | None = Field(default=None, description="Actor that registered it")
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @classmethod
    def from_spec(
        cls,
        scope_id: str,
        actor_id: str | None,
        spec: EndpointSpec,
        now: datetime | None = None,
    ) -> WebhookEndpoint:
        """Build a new endpoint with a freshly generated secret."""
        now = now or utc_now()
        return cls(
            scope_id=scope_id,
            name=spec.name,
            url=str(spec.url),
            events=list(spec.events),
            headers=dict(spec.headers),
            timeout=spec.timeout,
            retry_attempts=spec.retry_attempts,
            created_by=actor_id,
            created_at=now,
            updated_at=now,
        )

    def apply_patch(self, patch: EndpointPatch, now: datetime | None = None) -> WebhookEndpoint:
        """Return a copy with the patch applied. The secret is never changed."""
        return self.model_copy(update={**patch.changes(), "updated_at": now or utc_now()})

    def subscribes_to(self, event: WebhookEvent) -> bool:
        """Check if this endpoint is active and subscribed to the event."""
        return self.is_active and event in self.events

    def public_view(self) -> dict[str, Any]:
        """JSON-ready representation without the secret."""
        return self.model_dump(mode="json", exclude={"secret"})

    def to_record(self) -> dict[str, Any]:
        """JSON-ready representation including the raw secret, for storage."""
        data = self.model_dump(mode="json")
        data["secret"] = self.secret.get_secret_value()
        return data


def _raise_validation_error(exc: PydanticValidationError) -> NoReturn:
    first = exc.errors()[0]
    field = ".".join(str(part) for part in first["loc"]) or "body"
    raise ValidationError(field, first["msg"]) from exc


def _parse(model: type[SpecT], data: SpecT | Mapping[str, Any]) -> SpecT:
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except PydanticValidationError as exc:
        _raise_validation_error(exc)


def parse_spec(data: EndpointSpec | Mapping[str, Any]) -> EndpointSpec:
    """Validate registration input, raising ``ValidationError`` on bad config."""
    return _parse(EndpointSpec, data)


def parse_patch(data: EndpointPatch | Mapping[str, Any]) -> EndpointPatch:
    """Validate a partial update, raising ``ValidationError`` on bad config."""
    return _parse(EndpointPatch, data)
