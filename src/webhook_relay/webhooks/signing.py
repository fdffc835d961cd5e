"""HMAC-SHA256 signing of webhook bodies.

Subscribers recompute the HMAC of the raw request body with their endpoint
secret and compare it against the ``X-Webhook-Signature`` header.
"""

from __future__ import annotations

import hashlib
import hmac

SIGNATURE_HEADER = "X-Webhook-Signature"
EVENT_HEADER = "X-Webhook-Event"
DELIVERY_ID_HEADER = "X-Webhook-ID"
TIMESTAMP_HEADER = "X-Webhook-Timestamp"


def sign(payload: bytes, secret: str) -> str:
    """Compute the signature of a webhook body.

    Args:
        payload: Exact body bytes that will be transmitted.
        secret: Endpoint signing secret.

    Returns:
        Lowercase hex HMAC-SHA256 digest (no prefix).
    """
    return hmac.new(
        key=secret.encode("utf-8"),
        msg=payload,
        digestmod=hashlib.sha256,
    ).hexdigest()


def verify(payload: bytes, signature: str, secret: str) -> bool:
    """Check a signature in constant time.

    Returns:
        True if ``signature`` matches, False otherwise (including malformed input).
    """
    if not isinstance(signature, str):
        return False
    expected = sign(payload, secret)
    try:
        return hmac.compare_digest(expected, signature.strip().lower())
    except TypeError:
        # Non-ASCII characters in the signature.
        return False
