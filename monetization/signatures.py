"""
HMAC signatures for provider webhooks.

The provider signs ``"{timestamp}.{raw body}"`` with the shared secret
(HMAC-SHA256, hex). The signature header may carry a ``sha256=`` prefix.
Nothing in a webhook body is trusted until the signature checks out.
"""

import hashlib
import hmac
import logging
import time
from typing import Optional

from .errors import InvalidSignatureError

logger = logging.getLogger(__name__)


def compute_signature(secret: str, body: bytes, timestamp: str) -> str:
    message = timestamp.encode() + b"." + body
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def verify_signature(
    secret: str,
    body: bytes,
    signature: Optional[str],
    timestamp: Optional[str],
    tolerance_seconds: int = 300,
    now: Optional[float] = None,
) -> None:
    """Raise ``InvalidSignatureError`` unless ``signature`` matches ``body``."""
    if not secret:
        raise InvalidSignatureError("Webhook secret is not configured", reason="webhook_not_configured")
    if not signature or not timestamp:
        raise InvalidSignatureError("Missing webhook signature")
    if not timestamp.isdigit():
        raise InvalidSignatureError("Malformed webhook timestamp")

    current = time.time() if now is None else now
    if abs(current - int(timestamp)) > tolerance_seconds:
        raise InvalidSignatureError("Webhook timestamp outside the allowed window", reason="stale_signature")

    expected = compute_signature(secret, body, timestamp)
    provided = signature.strip()
    if provided.startswith("sha256="):
        provided = provided[len("sha256="):]
    if not hmac.compare_digest(provided, expected):
        logger.warning("rejected webhook with invalid signature")
        raise InvalidSignatureError("Invalid webhook signature")
