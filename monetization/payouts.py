"""
Payout Workflow

State machine::

    pending -> processing -> completed | failed
    pending | processing -> cancelled

Only ``completed`` writes to the ledger (a negative ``payout`` entry). A
creator has at most one payout in pending/processing at any time.
"""

import logging
import uuid
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import notifications
from .config import PAYOUT_METHODS
from .earnings import ACTIVE_PAYOUT_STATUSES, EarningsAggregator
from .errors import (
    BelowMinimumError,
    DuplicateRequestError,
    InsufficientBalanceError,
    InvalidStateError,
    NotApprovedError,
    NotFoundError,
    ValidationError,
)
from .ledger_store import LedgerStore
from .models import LedgerEntryType, Payout, PayoutAction, PayoutResponse, PayoutStatus
from .money import CentsLike, Money
from .notifications import Notifier, dispatch
from .storage import Database, PayoutRecord, utcnow
from .verification import VerificationRegistry

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    PayoutStatus.PENDING: {PayoutStatus.PROCESSING, PayoutStatus.COMPLETED, PayoutStatus.FAILED, PayoutStatus.CANCELLED},
    PayoutStatus.PROCESSING: {PayoutStatus.COMPLETED, PayoutStatus.FAILED, PayoutStatus.CANCELLED},
    PayoutStatus.COMPLETED: set(),
    PayoutStatus.FAILED: set(),
    PayoutStatus.CANCELLED: set(),
}


def assert_transition(current: PayoutStatus, target: PayoutStatus) -> None:
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidStateError(f"Cannot process payout with status: {current.value}")


class PayoutWorkflow:
    def __init__(
        self,
        database: Database,
        ledger: LedgerStore,
        earnings: EarningsAggregator,
        verification: VerificationRegistry,
        notifier: Notifier,
        min_payout_cents: int = 1000,
    ):
        self.database = database
        self.ledger = ledger
        self.earnings = earnings
        self.verification = verification
        self.notifier = notifier
        self.min_payout = Money.of(min_payout_cents)

    def request_payout(
        self,
        creator_id: UUID,
        amount_cents: CentsLike,
        method: str,
        details: Optional[dict[str, Any]] = None,
        creator_status: Optional[str] = None,
    ) -> Payout:
        """Create a pending payout against the creator's pending earnings.

        ``creator_status`` is the auth principal's status; when it is not
        ``approved`` the verification registry is consulted.
        """
        amount = Money.of(amount_cents)
        if not amount.is_positive():
            raise ValidationError("Invalid payout amount", reason="invalid_amount")
        if method not in PAYOUT_METHODS:
            raise ValidationError(f"Invalid payout method: {method!r}", reason="invalid_payout_method")
        if creator_status != "approved" and not self.verification.is_approved(creator_id):
            raise NotApprovedError("Creator must be approved to request payouts")
        if amount < self.min_payout:
            raise BelowMinimumError(f"Minimum payout amount is {self.min_payout}")

        with self.database.unit_of_work() as session:
            if self._active_payout(session, creator_id) is not None:
                raise DuplicateRequestError("You already have a pending payout request")

            earnings = self.earnings.get_creator_earnings(creator_id, session=session)
            if earnings.pending_earnings_cents < amount.cents:
                available = Money.of(earnings.pending_earnings_cents)
                raise InsufficientBalanceError(
                    f"Insufficient balance. Available: {available}",
                    available_cents=available.cents,
                )

            record = PayoutRecord(
                id=uuid.uuid4(),
                creator_id=creator_id,
                amount_cents=amount.cents,
                status=PayoutStatus.PENDING,
                payout_method=method,
                payout_details=details,
                created_at=utcnow(),
            )
            session.add(record)
            try:
                session.flush()
            except IntegrityError as exc:
                # lost the one-active-payout race to a concurrent request
                raise DuplicateRequestError("You already have a pending payout request") from exc
            payout = Payout.model_validate(record)

        logger.info("payout %s requested creator=%s amount=%d", payout.id, creator_id, amount.cents)
        dispatch(
            self.notifier,
            notifications.PAYOUT_REQUESTED,
            {"payout_id": str(payout.id), "creator_id": str(creator_id), "amount_cents": amount.cents},
        )
        return payout

    def process_payout(
        self,
        payout_id: UUID,
        action: PayoutAction,
        operator: str,
        notes: Optional[str] = None,
        failure_reason: Optional[str] = None,
    ) -> PayoutResponse:
        try:
            action = PayoutAction(action)
        except ValueError:
            raise ValidationError(f"Invalid action: {action!r}", reason="invalid_action")
        target = action.target_status

        with self.database.unit_of_work() as session:
            record = session.get(PayoutRecord, payout_id, with_for_update=True)
            if record is None:
                raise NotFoundError(f"Payout {payout_id} not found")

            if record.status == target:
                # re-submission of an already applied action
                entry = self.ledger.get(session, record.ledger_entry_id) if record.ledger_entry_id else None
                return PayoutResponse(
                    payout=Payout.model_validate(record),
                    ledger_entry=entry,
                    message=f"Payout already {target.value}",
                )
            if target == PayoutStatus.FAILED and not (failure_reason and failure_reason.strip()):
                raise ValidationError(
                    "failure_reason is required to reject a payout", reason="missing_field"
                )
            assert_transition(record.status, target)

            entry = None
            if target == PayoutStatus.COMPLETED:
                entry = self.ledger.append(
                    session,
                    record.creator_id,
                    -Money.of(record.amount_cents),
                    LedgerEntryType.PAYOUT,
                    description=f"Payout processed - {record.payout_method}",
                )
                record.ledger_entry_id = entry.id
            elif target == PayoutStatus.FAILED:
                record.failure_reason = failure_reason.strip()

            record.status = target
            record.processed_by = operator
            record.processed_at = utcnow()
            record.admin_notes = notes
            session.flush()
            payout = Payout.model_validate(record)

        logger.info(
            "payout %s %s by %s creator=%s amount=%d",
            payout.id, target.value, operator, payout.creator_id, payout.amount_cents,
        )
        dispatch(
            self.notifier,
            notifications.PAYOUT_PROCESSED,
            {"payout_id": str(payout.id), "creator_id": str(payout.creator_id), "status": target.value},
        )
        return PayoutResponse(payout=payout, ledger_entry=entry, message=f"Payout {target.value} successfully")

    def mark_processing(self, payout_id: UUID, operator: str) -> Payout:
        """Reserved for an asynchronous payout-provider hand-off."""
        with self.database.unit_of_work() as session:
            record = session.get(PayoutRecord, payout_id, with_for_update=True)
            if record is None:
                raise NotFoundError(f"Payout {payout_id} not found")
            if record.status == PayoutStatus.PROCESSING:
                return Payout.model_validate(record)
            assert_transition(record.status, PayoutStatus.PROCESSING)
            record.status = PayoutStatus.PROCESSING
            record.processed_by = operator
            session.flush()
            return Payout.model_validate(record)

    def record_adjustment(
        self, creator_id: UUID, amount_cents: CentsLike, operator: str, description: str
    ):
        """Operator correction to a creator balance (signed, non-zero)."""
        if not description or not description.strip():
            raise ValidationError("An adjustment needs a description", reason="missing_field")
        with self.database.unit_of_work() as session:
            entry = self.ledger.append(
                session,
                creator_id,
                amount_cents,
                LedgerEntryType.ADJUSTMENT,
                description=f"{description.strip()} (by {operator})",
            )
        logger.info("adjustment %s creator=%s amount=%d by %s", entry.id, creator_id, entry.amount_cents, operator)
        return entry

    def get_payout(self, payout_id: UUID) -> Payout:
        with self.database.unit_of_work() as session:
            record = session.get(PayoutRecord, payout_id)
            if record is None:
                raise NotFoundError(f"Payout {payout_id} not found")
            return Payout.model_validate(record)

    def list_payouts(
        self,
        creator_id: Optional[UUID] = None,
        status: Optional[PayoutStatus] = None,
        limit: int = 50,
    ) -> list[Payout]:
        stmt = select(PayoutRecord).order_by(PayoutRecord.created_at.desc()).limit(limit)
        if creator_id is not None:
            stmt = stmt.where(PayoutRecord.creator_id == creator_id)
        if status is not None:
            stmt = stmt.where(PayoutRecord.status == PayoutStatus(status))
        with self.database.unit_of_work() as session:
            return [Payout.model_validate(r) for r in session.scalars(stmt)]

    def _active_payout(self, session: Session, creator_id: UUID) -> Optional[PayoutRecord]:
        return session.scalars(
            select(PayoutRecord)
            .where(
                PayoutRecord.creator_id == creator_id,
                PayoutRecord.status.in_(ACTIVE_PAYOUT_STATUSES),
            )
            .limit(1)
        ).first()
