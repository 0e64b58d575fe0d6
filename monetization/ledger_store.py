"""
Append-only ledger of monetary events per creator account.

The ledger is the single source of truth for money. Rows are only ever
inserted; this module exposes no update or delete.
"""

import logging
import uuid
from typing import Iterable, Optional
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .errors import ValidationError
from .models import LedgerEntry, LedgerEntryType
from .money import CentsLike, Money, net_amount, platform_fee
from .storage import LedgerEntryRecord, utcnow

logger = logging.getLogger(__name__)


class LedgerStore:
    def __init__(self, platform_fee_percent: int = 20):
        self.platform_fee_percent = platform_fee_percent

    def append(
        self,
        session: Session,
        account_id: UUID,
        amount_cents: CentsLike,
        entry_type: LedgerEntryType,
        transaction_id: Optional[UUID] = None,
        description: str = "",
    ) -> LedgerEntry:
        """Insert one entry inside the caller's unit of work.

        The row becomes visible only when the caller's unit commits.
        """
        amount = Money.of(amount_cents)
        if amount.is_zero():
            raise ValidationError("Ledger entries cannot have a zero amount", reason="zero_amount")
        entry_type = LedgerEntryType(entry_type)

        if entry_type == LedgerEntryType.EARNINGS:
            if not amount.is_positive():
                raise ValidationError("Earnings entries must be positive", reason="invalid_amount")
            fee = platform_fee(amount, self.platform_fee_percent)
            net = net_amount(amount, self.platform_fee_percent)
        else:
            fee = Money.zero()
            net = amount

        if entry_type == LedgerEntryType.PAYOUT and amount.is_positive():
            raise ValidationError("Payout entries must be negative", reason="invalid_amount")

        record = LedgerEntryRecord(
            id=uuid.uuid4(),
            account_id=account_id,
            amount_cents=amount.cents,
            entry_type=entry_type,
            platform_fee_cents=fee.cents,
            net_amount_cents=net.cents,
            transaction_id=transaction_id,
            description=description or "",
            created_at=utcnow(),
        )
        session.add(record)
        session.flush()
        logger.debug(
            "ledger append account=%s type=%s amount=%d", account_id, entry_type.value, amount.cents
        )
        return LedgerEntry.model_validate(record)

    def sum_for_account(
        self,
        session: Session,
        account_id: UUID,
        entry_types: Optional[Iterable[LedgerEntryType]] = None,
    ) -> int:
        """Signed sum of the account's entries, optionally filtered by type."""
        stmt = select(func.coalesce(func.sum(LedgerEntryRecord.amount_cents), 0)).where(
            LedgerEntryRecord.account_id == account_id
        )
        if entry_types is not None:
            types = [LedgerEntryType(t) for t in entry_types]
            if not types:
                return 0
            stmt = stmt.where(LedgerEntryRecord.entry_type.in_(types))
        return int(session.execute(stmt).scalar_one())

    def sums_by_type(self, session: Session, account_id: UUID) -> dict[LedgerEntryType, int]:
        """Per-type signed sums read in a single statement."""
        stmt = (
            select(LedgerEntryRecord.entry_type, func.sum(LedgerEntryRecord.amount_cents))
            .where(LedgerEntryRecord.account_id == account_id)
            .group_by(LedgerEntryRecord.entry_type)
        )
        sums = {t: 0 for t in LedgerEntryType}
        for entry_type, total in session.execute(stmt):
            sums[LedgerEntryType(entry_type)] = int(total or 0)
        return sums

    def positive_sum(self, session: Session, account_id: UUID, entry_type: LedgerEntryType) -> int:
        """Sum of the credits of one entry type, ignoring its debits."""
        stmt = select(func.coalesce(func.sum(LedgerEntryRecord.amount_cents), 0)).where(
            LedgerEntryRecord.account_id == account_id,
            LedgerEntryRecord.entry_type == LedgerEntryType(entry_type),
            LedgerEntryRecord.amount_cents > 0,
        )
        return int(session.execute(stmt).scalar_one())

    def list_for_account(
        self, session: Session, account_id: UUID, limit: int = 50, offset: int = 0
    ) -> list[LedgerEntry]:
        stmt = (
            select(LedgerEntryRecord)
            .where(LedgerEntryRecord.account_id == account_id)
            .order_by(LedgerEntryRecord.created_at.desc(), LedgerEntryRecord.id)
            .limit(limit)
            .offset(offset)
        )
        return [LedgerEntry.model_validate(r) for r in session.scalars(stmt)]

    def count_for_account(self, session: Session, account_id: UUID) -> int:
        stmt = select(func.count()).select_from(LedgerEntryRecord).where(
            LedgerEntryRecord.account_id == account_id
        )
        return int(session.execute(stmt).scalar_one())

    def get(self, session: Session, entry_id: UUID) -> Optional[LedgerEntry]:
        record = session.get(LedgerEntryRecord, entry_id)
        return LedgerEntry.model_validate(record) if record else None
