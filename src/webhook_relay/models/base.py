"""Shared helpers for webhook relay models."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime
from uuid import uuid4

from pydantic import TypeAdapter

# Injectable time source; processors and dispatchers take one so retry
# schedules can be tested without real delays.
Clock = Callable[[], datetime]

_DATETIME = TypeAdapter(datetime)


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(UTC)


def format_timestamp(value: datetime) -> str:
    """ISO-8601 text in the same form model fields use on the wire ("...Z")."""
    return str(_DATETIME.dump_python(value, mode="json"))


def generate_id(prefix: str) -> str:
    """Generate a unique ID with the given prefix.

    Examples:
        generate_id("whk") -> "whk_a1b2c3d4e5f6"
        generate_id("dlv") -> "dlv_a1b2c3d4e5f6"
    """
    return f"{prefix}_{uuid4().hex[:12]}"
