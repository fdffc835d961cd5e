"""Exponential backoff policy for failed deliveries.

Delays double from one second and are capped at five minutes:
1s, 2s, 4s, 8s, 16s, ... 300s.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from webhook_relay.models import DeliveryStatus

BASE_DELAY_MS = 1000
MAX_DELAY_MS = 300_000


def backoff_delay(attempts: int) -> timedelta:
    """Delay before the next attempt, given the attempts made so far (>= 1)."""
    exponent = max(attempts, 1) - 1
    # Past 2**9 seconds the cap always wins; avoid building huge integers.
    if exponent >= 20:
        return timedelta(milliseconds=MAX_DELAY_MS)
    return timedelta(milliseconds=min(BASE_DELAY_MS * 2**exponent, MAX_DELAY_MS))


@dataclass(frozen=True)
class RetryDecision:
    """Outcome of a failed attempt: retry later, or give up."""

    status: DeliveryStatus
    next_retry_at: datetime | None = None

    @property
    def should_retry(self) -> bool:
        return self.status == DeliveryStatus.RETRYING


def decide_retry(attempts: int, max_retries: int, now: datetime) -> RetryDecision:
    """Decide what happens after a failed attempt.

    Args:
        attempts: Attempts made, including the one that just failed.
        max_retries: The endpoint's ``retry_attempts``.
        now: Current time.

    Returns:
        ``retrying`` at ``now + backoff_delay(attempts)`` while
        ``attempts <= max_retries``, otherwise ``failed``.
    """
    if attempts <= max_retries:
        return RetryDecision(DeliveryStatus.RETRYING, now + backoff_delay(attempts))
    return RetryDecision(DeliveryStatus.FAILED)
