"""
Notification port.

Delivery is fire-and-forget: it runs only after a financial unit of work has
committed, and a failing notifier never turns a committed operation into an
error.
"""

import logging
from typing import Any, Protocol

logger = logging.getLogger(__name__)

PAYMENT_RECEIVED = "payment_received"
SUBSCRIPTION_STARTED = "subscription_started"
PAYOUT_REQUESTED = "payout_requested"
PAYOUT_PROCESSED = "payout_processed"
PAYMENT_REFUNDED = "payment_refunded"
CREATOR_APPROVED = "creator_approved"
CREATOR_REJECTED = "creator_rejected"


class Notifier(Protocol):
    def notify(self, event: str, payload: dict[str, Any]) -> None: ...


class LoggingNotifier:
    """Default notifier: records the event in the application log."""

    def notify(self, event: str, payload: dict[str, Any]) -> None:
        logger.info("notification %s %s", event, payload)


def dispatch(notifier: Notifier, event: str, payload: dict[str, Any]) -> bool:
    """Deliver one notification; returns False when delivery failed."""
    try:
        notifier.notify(event, payload)
        return True
    except Exception:
        logger.warning("notification %s failed; financial state unaffected", event, exc_info=True)
        return False
