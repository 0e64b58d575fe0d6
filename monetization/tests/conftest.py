import uuid
from typing import Any

import pytest

from monetization.config import Settings
from monetization.models import ContentKind, LedgerEntryType, Visibility
from monetization.service import MonetizationService
from monetization.storage import Database

PAYMENT_SECRET = "test-payment-secret"
VERIFICATION_SECRET = "test-verification-secret"


class RecordingNotifier:
    """Keeps every notification in memory so tests can assert on them."""

    def __init__(self):
        self.sent: list[tuple[str, dict[str, Any]]] = []

    def notify(self, event: str, payload: dict[str, Any]) -> None:
        self.sent.append((event, payload))

    def events(self) -> list[str]:
        return [event for event, _ in self.sent]


def build_service(url: str = "sqlite://", notifier=None) -> MonetizationService:
    database = Database(url)
    database.create_all()
    settings = Settings(
        database_url=url,
        payment_webhook_secret=PAYMENT_SECRET,
        verification_webhook_secret=VERIFICATION_SECRET,
    )
    return MonetizationService(database, settings=settings, notifier=notifier)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def service(notifier):
    svc = build_service(notifier=notifier)
    yield svc
    svc.close()


@pytest.fixture
def creator_id():
    return uuid.uuid4()


@pytest.fixture
def fan_id():
    return uuid.uuid4()


@pytest.fixture
def earn(service):
    """Append an earnings entry for a creator in its own unit of work."""

    def _earn(creator_id, cents):
        with service.database.unit_of_work() as session:
            return service.ledger.append(
                session, creator_id, cents, LedgerEntryType.EARNINGS, description="seed earnings"
            )

    return _earn


@pytest.fixture
def make_post(service):
    def _make_post(creator_id, visibility=Visibility.PPV, price_cents=500, kind=ContentKind.POST, **kwargs):
        return service.register_content(
            uuid.uuid4(), kind, creator_id, visibility, price_cents, **kwargs
        )

    return _make_post
