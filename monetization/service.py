from typing import Optional
from uuid import UUID

from .catalog import ContentCatalog
from .config import Settings
from .earnings import EarningsAggregator
from .entitlements import EntitlementEngine
from .ledger_store import LedgerStore
from .models import Content, ContentKind, CreatorEarnings, LedgerHistoryResponse, Visibility
from .notifications import LoggingNotifier, Notifier
from .payouts import PayoutWorkflow
from .recorder import TransactionRecorder
from .storage import Database
from .verification import VerificationRegistry


class MonetizationService:
    """Composition root: builds every component around one database handle.

    The process entry point owns the instance; nothing here is module-global.
    """

    def __init__(
        self,
        database: Database,
        settings: Optional[Settings] = None,
        notifier: Optional[Notifier] = None,
    ):
        self.settings = settings or Settings()
        self.database = database
        self.notifier = notifier or LoggingNotifier()

        self.catalog = ContentCatalog()
        self.ledger = LedgerStore(platform_fee_percent=self.settings.platform_fee_percent)
        self.earnings = EarningsAggregator(database, self.ledger)
        self.entitlements = EntitlementEngine(database, self.catalog)
        self.verification = VerificationRegistry(database)
        self.recorder = TransactionRecorder(
            database,
            self.ledger,
            self.entitlements,
            self.catalog,
            self.notifier,
            payment_provider=self.settings.payment_provider,
            subscription_period_days=self.settings.subscription_period_days,
        )
        self.payouts = PayoutWorkflow(
            database,
            self.ledger,
            self.earnings,
            self.verification,
            self.notifier,
            min_payout_cents=self.settings.min_payout_cents,
        )

    @classmethod
    def from_settings(cls, settings: Settings, notifier: Optional[Notifier] = None) -> "MonetizationService":
        database = Database(settings.database_url)
        database.create_all()
        return cls(database, settings=settings, notifier=notifier)

    def close(self) -> None:
        self.database.dispose()

    def register_content(
        self,
        content_id: UUID,
        kind: ContentKind,
        creator_id: UUID,
        visibility: Visibility,
        price_cents: int = 0,
        is_disabled: bool = False,
    ) -> Content:
        """Mirror a post or stream from the content collaborator."""
        with self.database.unit_of_work() as session:
            return self.catalog.upsert(
                session, content_id, kind, creator_id, visibility, price_cents, is_disabled
            )

    def get_creator_earnings(self, creator_id: UUID) -> CreatorEarnings:
        return self.earnings.get_creator_earnings(creator_id)

    def get_ledger_history(self, account_id: UUID, limit: int = 50, offset: int = 0) -> LedgerHistoryResponse:
        with self.database.unit_of_work() as session:
            entries = self.ledger.list_for_account(session, account_id, limit, offset)
            total = self.ledger.count_for_account(session, account_id)
            earnings = self.earnings.get_creator_earnings(account_id, session=session)
        return LedgerHistoryResponse(
            account_id=account_id,
            entries=entries,
            total_count=total,
            pending_earnings_cents=earnings.pending_earnings_cents,
        )
