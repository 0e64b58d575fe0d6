"""
Entitlement Engine: the single authority for "can user U view content C".
"""

import logging
import uuid
from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .catalog import ContentCatalog
from .errors import AlreadyOwnedError
from .models import Content, ContentKind, Entitlement, EntitlementType, SubscriptionStatus, Visibility
from .storage import Database, EntitlementRecord, SubscriptionRecord, utcnow

logger = logging.getLogger(__name__)

PPV_GRANTING_TYPES = (EntitlementType.PPV_PURCHASE, EntitlementType.GIFT)
SUBSCRIBER_GRANTING_TYPES = (EntitlementType.SUBSCRIPTION, EntitlementType.GIFT)


class EntitlementEngine:
    def __init__(self, database: Database, catalog: ContentCatalog):
        self.database = database
        self.catalog = catalog

    # ---------- access checks ----------

    def has_access(self, user_id: Optional[UUID], post_id: UUID) -> bool:
        with self.database.unit_of_work() as session:
            return self.check_access(session, user_id, post_id, ContentKind.POST)

    def has_stream_access(self, user_id: Optional[UUID], stream_id: UUID) -> bool:
        with self.database.unit_of_work() as session:
            return self.check_access(session, user_id, stream_id, ContentKind.STREAM)

    def check_access(
        self, session: Session, user_id: Optional[UUID], content_id: UUID, kind: ContentKind
    ) -> bool:
        content = self.catalog.get(session, content_id, kind)
        if content is None or content.is_disabled:
            return False
        if content.visibility == Visibility.FREE:
            return True
        if user_id is None:
            return False
        if content.creator_id == user_id:
            return True
        if content.visibility == Visibility.SUBSCRIBER:
            return self.active_subscription_exists(
                session, user_id, content.creator_id
            ) or self._has_entitlement(session, user_id, content, SUBSCRIBER_GRANTING_TYPES)
        if content.visibility == Visibility.PPV:
            return self._has_entitlement(session, user_id, content, PPV_GRANTING_TYPES)
        return False

    def has_active_subscription(self, fan_id: UUID, creator_id: UUID) -> bool:
        with self.database.unit_of_work() as session:
            return self.active_subscription_exists(session, fan_id, creator_id)

    def active_subscription_exists(self, session: Session, fan_id: UUID, creator_id: UUID) -> bool:
        now = utcnow()
        stmt = select(SubscriptionRecord.id).where(
            SubscriptionRecord.fan_id == fan_id,
            SubscriptionRecord.creator_id == creator_id,
            SubscriptionRecord.status == SubscriptionStatus.ACTIVE,
            or_(SubscriptionRecord.expires_at.is_(None), SubscriptionRecord.expires_at > now),
        ).limit(1)
        return session.execute(stmt).first() is not None

    def find_entitlement(
        self,
        session: Session,
        user_id: UUID,
        content_id: UUID,
        kind: ContentKind,
        entitlement_types=None,
        include_expired: bool = False,
    ) -> Optional[Entitlement]:
        stmt = select(EntitlementRecord).where(
            EntitlementRecord.user_id == user_id, _target_column(kind) == content_id
        )
        if entitlement_types is not None:
            stmt = stmt.where(EntitlementRecord.entitlement_type.in_(list(entitlement_types)))
        if not include_expired:
            stmt = stmt.where(
                or_(EntitlementRecord.expires_at.is_(None), EntitlementRecord.expires_at > utcnow())
            )
        record = session.scalars(stmt.limit(1)).first()
        return Entitlement.model_validate(record) if record else None

    def _has_entitlement(self, session: Session, user_id: UUID, content: Content, types) -> bool:
        return self.find_entitlement(session, user_id, content.id, content.kind, types) is not None

    # ---------- grants ----------

    def grant(
        self,
        session: Session,
        user_id: UUID,
        post_id: UUID,
        entitlement_type: EntitlementType,
        expires_at: Optional[datetime] = None,
        transaction_id: Optional[UUID] = None,
    ) -> Entitlement:
        """Idempotent insert; a repeat grant returns the existing row untouched."""
        entitlement, _ = self._grant(
            session, user_id, post_id, ContentKind.POST, entitlement_type, expires_at, transaction_id
        )
        return entitlement

    def grant_stream(
        self,
        session: Session,
        user_id: UUID,
        stream_id: UUID,
        entitlement_type: EntitlementType,
        expires_at: Optional[datetime] = None,
        transaction_id: Optional[UUID] = None,
    ) -> Entitlement:
        entitlement, _ = self._grant(
            session, user_id, stream_id, ContentKind.STREAM, entitlement_type, expires_at, transaction_id
        )
        return entitlement

    def grant_exclusive(
        self,
        session: Session,
        user_id: UUID,
        content_id: UUID,
        kind: ContentKind,
        entitlement_type: EntitlementType,
        transaction_id: Optional[UUID] = None,
        expires_at: Optional[datetime] = None,
    ) -> Entitlement:
        """Grant for a purchase: raises ``AlreadyOwnedError`` instead of no-op on a live grant."""
        entitlement, created = self._grant(
            session, user_id, content_id, kind, entitlement_type, expires_at, transaction_id
        )
        if not created:
            raise AlreadyOwnedError(f"User already has access to {ContentKind(kind).value} {content_id}")
        return entitlement

    def _grant(self, session, user_id, content_id, kind, entitlement_type, expires_at, transaction_id):
        entitlement_type = EntitlementType(entitlement_type)
        existing = self._existing(session, user_id, content_id, kind, entitlement_type)
        if existing is not None:
            if existing.expires_at is not None and existing.expires_at <= utcnow():
                # lapsed or revoked grant is renewed in place
                existing.expires_at = expires_at
                existing.transaction_id = transaction_id
                session.flush()
                return Entitlement.model_validate(existing), True
            return Entitlement.model_validate(existing), False

        record = EntitlementRecord(
            id=uuid.uuid4(),
            user_id=user_id,
            entitlement_type=entitlement_type,
            transaction_id=transaction_id,
            expires_at=expires_at,
            created_at=utcnow(),
        )
        if kind == ContentKind.POST:
            record.post_id = content_id
        else:
            record.stream_id = content_id

        # a concurrent grant may win the unique constraint; that is still success
        try:
            with session.begin_nested():
                session.add(record)
                session.flush()
        except IntegrityError:
            existing = self._existing(session, user_id, content_id, kind, entitlement_type)
            if existing is None:
                raise
            return Entitlement.model_validate(existing), False

        logger.debug(
            "granted %s on %s %s to user %s", entitlement_type.value, kind.value, content_id, user_id
        )
        return Entitlement.model_validate(record), True

    def _existing(self, session, user_id, content_id, kind, entitlement_type):
        stmt = select(EntitlementRecord).where(
            EntitlementRecord.user_id == user_id,
            _target_column(kind) == content_id,
            EntitlementRecord.entitlement_type == entitlement_type,
        )
        return session.scalars(stmt.limit(1)).first()

    def revoke_for_transaction(self, session: Session, transaction_id: UUID) -> int:
        """Expire every entitlement bought by ``transaction_id``; rows are kept for audit."""
        now = utcnow()
        records = session.scalars(
            select(EntitlementRecord).where(EntitlementRecord.transaction_id == transaction_id)
        ).all()
        for record in records:
            record.expires_at = now
        session.flush()
        return len(records)


def _target_column(kind: ContentKind):
    if ContentKind(kind) == ContentKind.POST:
        return EntitlementRecord.post_id
    return EntitlementRecord.stream_id
