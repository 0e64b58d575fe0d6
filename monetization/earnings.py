import logging
from typing import Optional
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .ledger_store import LedgerStore
from .models import CreatorEarnings, LedgerEntryType, PayoutStatus
from .storage import Database, PayoutRecord

logger = logging.getLogger(__name__)

ACTIVE_PAYOUT_STATUSES = (PayoutStatus.PENDING, PayoutStatus.PROCESSING)


class EarningsAggregator:
    """Derives creator balances from the ledger at call time.

    total earnings = earnings entries + positive adjustments
    pending = total - paid out - reserved by open payouts + refunds + negative adjustments,
    kept within [0, total earnings].
    """

    def __init__(self, database: Database, ledger: LedgerStore):
        self.database = database
        self.ledger = ledger

    def get_creator_earnings(
        self, creator_id: UUID, session: Optional[Session] = None
    ) -> CreatorEarnings:
        if session is not None:
            return self._compute(session, creator_id)
        with self.database.unit_of_work() as own:
            return self._compute(own, creator_id)

    def reserved_cents(self, session: Session, creator_id: UUID) -> int:
        stmt = select(func.coalesce(func.sum(PayoutRecord.amount_cents), 0)).where(
            PayoutRecord.creator_id == creator_id,
            PayoutRecord.status.in_(ACTIVE_PAYOUT_STATUSES),
        )
        return int(session.execute(stmt).scalar_one())

    def _compute(self, session: Session, creator_id: UUID) -> CreatorEarnings:
        sums = self.ledger.sums_by_type(session, creator_id)
        bonuses = self.ledger.positive_sum(session, creator_id, LedgerEntryType.ADJUSTMENT)
        total = sums[LedgerEntryType.EARNINGS] + bonuses
        paid_out = abs(sums[LedgerEntryType.PAYOUT])
        # debits only; credits are already part of total
        corrections = (sums[LedgerEntryType.ADJUSTMENT] - bonuses) + sums[LedgerEntryType.REFUND]
        reserved = self.reserved_cents(session, creator_id)

        pending = total - paid_out - reserved + corrections
        pending = max(0, min(pending, total))

        return CreatorEarnings(
            creator_id=creator_id,
            total_earnings_cents=total,
            paid_out_cents=paid_out,
            reserved_cents=reserved,
            pending_earnings_cents=pending,
        )
