"""
Relational storage for the monetization core.

Tables
------
ledger_entries, transactions, entitlements, subscriptions, payouts, content,
creator_verifications. Money columns are integer cents.

Every write goes through ``Database.unit_of_work()``: one session, one
database transaction, committed on clean exit and rolled back on any
exception. On SQLite writers take the database lock up front (BEGIN
IMMEDIATE) so a check-then-insert inside one unit cannot interleave with
another.
"""

import logging
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    create_engine,
    event,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from .models import (
    ContentKind,
    EntitlementType,
    LedgerEntryType,
    PayoutStatus,
    SubscriptionStatus,
    TransactionStatus,
    TransactionType,
    VerificationStatus,
    Visibility,
)

log = logging.getLogger(__name__)


def utcnow() -> datetime:
    """Naive UTC timestamp; all stored datetimes are naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _enum(enum_cls):
    return Enum(
        enum_cls,
        values_callable=lambda e: [m.value for m in e],
        native_enum=False,
        validate_strings=True,
        length=32,
    )


class Base(DeclarativeBase):
    pass


class LedgerEntryRecord(Base):
    __tablename__ = "ledger_entries"
    __table_args__ = (
        CheckConstraint("amount_cents <> 0", name="ck_ledger_amount_nonzero"),
        Index("ix_ledger_account_type", "account_id", "entry_type"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    account_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    entry_type: Mapped[LedgerEntryType] = mapped_column(_enum(LedgerEntryType), nullable=False)
    platform_fee_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    net_amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    transaction_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("transactions.id"), nullable=True
    )
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)


class TransactionRecord(Base):
    __tablename__ = "transactions"
    __table_args__ = (
        CheckConstraint("amount_cents >= 0", name="ck_transaction_amount"),
        Index("ix_transactions_user", "user_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    creator_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    post_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    stream_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    subscription_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    transaction_type: Mapped[TransactionType] = mapped_column(_enum(TransactionType), nullable=False)
    status: Mapped[TransactionStatus] = mapped_column(_enum(TransactionStatus), nullable=False)
    payment_provider: Mapped[str] = mapped_column(String(32), nullable=False, default="mock")
    provider_transaction_id: Mapped[Optional[str]] = mapped_column(
        String(128), nullable=True, unique=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )


class EntitlementRecord(Base):
    __tablename__ = "entitlements"
    __table_args__ = (
        UniqueConstraint("user_id", "post_id", "entitlement_type", name="uq_entitlement_post"),
        UniqueConstraint("user_id", "stream_id", "entitlement_type", name="uq_entitlement_stream"),
        CheckConstraint(
            "(post_id IS NULL) <> (stream_id IS NULL)", name="ck_entitlement_one_target"
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    post_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    stream_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    entitlement_type: Mapped[EntitlementType] = mapped_column(_enum(EntitlementType), nullable=False)
    transaction_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("transactions.id"), nullable=True
    )
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)


class SubscriptionRecord(Base):
    __tablename__ = "subscriptions"
    __table_args__ = (Index("ix_subscriptions_fan_creator", "fan_id", "creator_id"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    fan_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    creator_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    status: Mapped[SubscriptionStatus] = mapped_column(_enum(SubscriptionStatus), nullable=False)
    price_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    started_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    auto_renew: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class PayoutRecord(Base):
    __tablename__ = "payouts"
    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="ck_payout_amount_positive"),
        # at most one pending/processing payout per creator
        Index(
            "uq_payouts_one_active",
            "creator_id",
            unique=True,
            sqlite_where=text("status IN ('pending', 'processing')"),
            postgresql_where=text("status IN ('pending', 'processing')"),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    creator_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[PayoutStatus] = mapped_column(_enum(PayoutStatus), nullable=False)
    payout_method: Mapped[str] = mapped_column(String(32), nullable=False)
    payout_details: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    processed_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    admin_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    ledger_entry_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("ledger_entries.id"), nullable=True
    )
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )


class ContentRecord(Base):
    __tablename__ = "content"
    __table_args__ = (CheckConstraint("price_cents >= 0", name="ck_content_price"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    kind: Mapped[ContentKind] = mapped_column(_enum(ContentKind), nullable=False)
    creator_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    visibility: Mapped[Visibility] = mapped_column(_enum(Visibility), nullable=False)
    price_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    is_disabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


class CreatorVerificationRecord(Base):
    __tablename__ = "creator_verifications"

    inquiry_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    creator_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    status: Mapped[VerificationStatus] = mapped_column(_enum(VerificationStatus), nullable=False)
    last_event_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    verified_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )


class Database:
    """Owns the engine and hands out units of work."""

    def __init__(self, url: str, echo: bool = False):
        self.url = url
        self.engine = _build_engine(url, echo)
        self._session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)

    def create_all(self) -> None:
        Base.metadata.create_all(self.engine)

    def drop_all(self) -> None:
        Base.metadata.drop_all(self.engine)

    def dispose(self) -> None:
        self.engine.dispose()

    @contextmanager
    def unit_of_work(self) -> Iterator[Session]:
        """Scoped atomic unit: commit on success, roll back on any exit by exception."""
        session = self._session_factory()
        try:
            with session.begin():
                yield session
        finally:
            session.close()


def _build_engine(url: str, echo: bool):
    if not url.startswith("sqlite"):
        return create_engine(url, echo=echo, pool_pre_ping=True)

    kwargs = {"echo": echo, "connect_args": {"check_same_thread": False, "timeout": 30}}
    if url in ("sqlite://", "sqlite:///:memory:"):
        kwargs["poolclass"] = StaticPool
    engine = create_engine(url, **kwargs)

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # hand transaction control to SQLAlchemy so BEGIN IMMEDIATE is ours
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys = ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    log.debug("sqlite engine configured for %s", url)
    return engine
