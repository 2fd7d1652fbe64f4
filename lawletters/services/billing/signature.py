"""
Payment webhook signatures.

Header format: ``t=<unix timestamp>,v1=<hex hmac>``. The signed payload is
``"{t}.{raw body}"`` under HMAC-SHA256 with the shared webhook secret.
"""
from typing import Dict, Optional, Union
import hashlib
import hmac
import time

from ...errors import WebhookVerificationError

SIGNATURE_HEADER = "X-Signature"

# Same message for every failure
REJECTION_MESSAGE = "Invalid webhook signature"


def compute_signature(body: Union[bytes, str], timestamp: int, secret: str) -> str:
    if isinstance(body, str):
        body = body.encode("utf-8")
    signed_payload = f"{timestamp}.".encode("utf-8") + body
    return hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()


def sign_payload(body: Union[bytes, str], secret: str, timestamp: Optional[int] = None) -> str:
    """Build a signature header value for ``body``."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    return f"t={timestamp},v1={compute_signature(body, timestamp, secret)}"


def _parse_header(header: str) -> Dict[str, str]:
    parts = {}
    for item in header.split(","):
        key, sep, value = item.strip().partition("=")
        if sep:
            parts.setdefault(key, value)
    return parts


def verify_signature(
    body: bytes,
    header: Optional[str],
    secret: str,
    tolerance: int = 300,
    now: Optional[float] = None,
) -> int:
    """
    Raise WebhookVerificationError unless ``header`` signs ``body``.

    Returns the signed timestamp.
    """
    if not header or not secret:
        raise WebhookVerificationError(REJECTION_MESSAGE)

    parts = _parse_header(header)
    try:
        timestamp = int(parts["t"])
        provided = parts["v1"]
    except (KeyError, ValueError):
        raise WebhookVerificationError(REJECTION_MESSAGE)

    now = time.time() if now is None else now
    if abs(now - timestamp) > tolerance:
        raise WebhookVerificationError(REJECTION_MESSAGE)

    expected = compute_signature(body, timestamp, secret)
    if not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
        raise WebhookVerificationError(REJECTION_MESSAGE)

    return timestamp
