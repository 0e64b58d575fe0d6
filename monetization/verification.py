"""
Identity-verification decisions reported by the external provider.

Webhooks may arrive late, twice, or out of order. ``apply_event`` is keyed by
the provider's inquiry id and is safe to replay.
"""

import logging
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from .errors import ValidationError
from .models import CreatorVerification, VerificationStatus
from .storage import CreatorVerificationRecord, Database, utcnow

logger = logging.getLogger(__name__)

PROVIDER_STATUS_MAP = {
    "completed": VerificationStatus.APPROVED,
    "approved": VerificationStatus.APPROVED,
    "failed": VerificationStatus.REJECTED,
    "declined": VerificationStatus.REJECTED,
    "expired": VerificationStatus.EXPIRED,
}

TERMINAL = (VerificationStatus.APPROVED, VerificationStatus.REJECTED)


def map_provider_status(provider_status: str) -> VerificationStatus:
    return PROVIDER_STATUS_MAP.get((provider_status or "").strip().lower(), VerificationStatus.PENDING)


class VerificationRegistry:
    def __init__(self, database: Database):
        self.database = database

    def apply_event(
        self,
        inquiry_id: str,
        creator_id: UUID,
        provider_status: str,
        event_id: str,
        completed_at: Optional[datetime] = None,
    ) -> tuple[CreatorVerification, bool]:
        """Apply one provider decision. Returns (state, changed)."""
        if not inquiry_id or not event_id:
            raise ValidationError("inquiry_id and event_id are required", reason="missing_field")
        status = map_provider_status(provider_status)

        with self.database.unit_of_work() as session:
            record = session.get(CreatorVerificationRecord, inquiry_id)
            if record is None:
                record = CreatorVerificationRecord(
                    inquiry_id=inquiry_id,
                    creator_id=creator_id,
                    status=VerificationStatus.PENDING,
                )
                session.add(record)
            elif record.creator_id != creator_id:
                raise ValidationError(
                    f"Inquiry {inquiry_id} belongs to another creator", reason="inquiry_mismatch"
                )

            if record.last_event_id == event_id:
                return CreatorVerification.model_validate(record), False
            if record.status in TERMINAL and status not in TERMINAL:
                # stale non-terminal event after a decision; remember it, keep the decision
                record.last_event_id = event_id
                session.flush()
                return CreatorVerification.model_validate(record), False

            changed = record.status != status
            record.status = status
            record.last_event_id = event_id
            if status == VerificationStatus.APPROVED and record.verified_at is None:
                record.verified_at = _naive(completed_at) or utcnow()
            record.updated_at = utcnow()
            session.flush()
            result = CreatorVerification.model_validate(record)

        logger.info("verification %s for creator %s -> %s", inquiry_id, creator_id, status.value)
        return result, changed

    def is_approved(self, creator_id: UUID, session: Optional[Session] = None) -> bool:
        stmt = select(CreatorVerificationRecord.inquiry_id).where(
            CreatorVerificationRecord.creator_id == creator_id,
            CreatorVerificationRecord.status == VerificationStatus.APPROVED,
        ).limit(1)
        if session is not None:
            return session.execute(stmt).first() is not None
        with self.database.unit_of_work() as own:
            return own.execute(stmt).first() is not None


def _naive(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
