"""Webhook signature verification.

The gateway signs ``timestamp + raw_body`` with HMAC-SHA256 using the
merchant's webhook secret and sends the base64 digest in
``x-webhook-signature`` alongside ``x-webhook-timestamp``. The raw bytes
must be verified exactly as received, before any JSON parsing.
"""

import base64
import hashlib
import hmac
import math
import time
from typing import Optional, Union


def compute_signature(raw_body: bytes, timestamp: str, secret: str) -> str:
    """Return the base64 HMAC-SHA256 of ``timestamp + raw_body``."""
    digest = hmac.new(
        secret.encode("utf-8"),
        timestamp.encode("utf-8") + raw_body,
        hashlib.sha256,
    ).digest()
    return base64.b64encode(digest).decode("ascii")


def _timestamp_seconds(timestamp: str) -> Optional[float]:
    try:
        value = float(timestamp)
    except ValueError:
        return None
    if not math.isfinite(value):
        return None
    # Millisecond epochs are 13 digits; second epochs are 10
    return value / 1000 if value > 1e11 else value


def verify_signature(
    raw_body: Union[bytes, str],
    timestamp: Optional[str],
    signature: Optional[str],
    secret: str,
    tolerance_seconds: int = 0,
    now: Optional[float] = None,
) -> bool:
    """Check a webhook delivery's signature in constant time.

    Args:
        raw_body: Request body exactly as received
        timestamp: ``x-webhook-timestamp`` header value
        signature: ``x-webhook-signature`` header value
        secret: Webhook secret shared with the gateway
        tolerance_seconds: If positive, also reject timestamps further than
            this from ``now``
        now: Current epoch seconds, for tests

    Returns:
        True only if both headers are present and the signature matches
    """
    if not timestamp or not signature or not secret:
        return False
    if isinstance(raw_body, str):
        raw_body = raw_body.encode("utf-8")

    if tolerance_seconds > 0:
        sent_at = _timestamp_seconds(timestamp)
        current = time.time() if now is None else now
        if sent_at is None or abs(current - sent_at) > tolerance_seconds:
            return False

    expected = compute_signature(raw_body, timestamp, secret)
    return hmac.compare_digest(expected.encode("ascii"), signature.strip().encode("utf-8"))
