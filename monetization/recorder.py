"""
Transaction Recorder

The only path by which a purchase becomes both an access grant and a revenue
fact. Each purchase is one unit of work:

- one Transaction row
- one access side effect (entitlement or subscription)
- one positive ``earnings`` ledger entry

All three commit together or none do. Notifications go out after commit.
"""

import logging
import uuid
from datetime import timedelta
from typing import Callable, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import notifications
from .catalog import ContentCatalog
from .entitlements import PPV_GRANTING_TYPES, EntitlementEngine
from .errors import (
    AlreadyOwnedError,
    InvalidStateError,
    NotFoundError,
    SelfPurchaseError,
    StateError,
    ValidationError,
)
from .ledger_store import LedgerStore
from .models import (
    ContentKind,
    EntitlementType,
    LedgerEntryType,
    PaymentEventType,
    PaymentWebhook,
    ProviderEventResult,
    PurchaseReceipt,
    Subscription,
    SubscriptionStatus,
    Transaction,
    TransactionStatus,
    TransactionType,
    Visibility,
)
from .money import CentsLike, Money
from .notifications import Notifier, dispatch
from .storage import Database, SubscriptionRecord, TransactionRecord, utcnow

logger = logging.getLogger(__name__)


class TransactionRecorder:
    def __init__(
        self,
        database: Database,
        ledger: LedgerStore,
        entitlements: EntitlementEngine,
        catalog: ContentCatalog,
        notifier: Notifier,
        payment_provider: str = "mock",
        subscription_period_days: int = 30,
    ):
        self.database = database
        self.ledger = ledger
        self.entitlements = entitlements
        self.catalog = catalog
        self.notifier = notifier
        self.payment_provider = payment_provider
        self.subscription_period_days = subscription_period_days

    # ---------- purchases ----------

    def purchase_ppv(self, buyer_id: UUID, post_id: UUID) -> PurchaseReceipt:
        return self._purchase_content(buyer_id, post_id, ContentKind.POST)

    def purchase_stream(self, buyer_id: UUID, stream_id: UUID) -> PurchaseReceipt:
        return self._purchase_content(buyer_id, stream_id, ContentKind.STREAM)

    def _purchase_content(self, buyer_id: UUID, content_id: UUID, kind: ContentKind) -> PurchaseReceipt:
        with self.database.unit_of_work() as session:
            content = self.catalog.require(session, content_id, kind)
            if content.visibility != Visibility.PPV:
                raise ValidationError(f"This {kind.value} is not pay-per-view", reason="not_ppv")
            existing = self.entitlements.find_entitlement(
                session, buyer_id, content_id, kind, PPV_GRANTING_TYPES
            )
            if existing is not None:
                raise AlreadyOwnedError(f"You already have access to this {kind.value}")
            if content.creator_id == buyer_id:
                raise SelfPurchaseError(f"You cannot purchase your own {kind.value}")

            def grant_access(session, transaction):
                return self.entitlements.grant_exclusive(
                    session,
                    buyer_id,
                    content_id,
                    kind,
                    EntitlementType.PPV_PURCHASE,
                    transaction_id=transaction.id,
                )

            receipt = self._record(
                session,
                user_id=buyer_id,
                creator_id=content.creator_id,
                amount=Money.of(content.price_cents),
                transaction_type=TransactionType.PPV,
                description=f"PPV {kind.value} purchase: {kind.value.title()} {content_id}",
                access=grant_access,
                post_id=content_id if kind == ContentKind.POST else None,
                stream_id=content_id if kind == ContentKind.STREAM else None,
            )

        self._after_payment(receipt, {kind.value + "_id": str(content_id)})
        return receipt

    def pay_message(
        self, sender_id: UUID, creator_id: UUID, amount_cents: CentsLike, message_id: UUID
    ) -> PurchaseReceipt:
        """Paid message unlock; the messaging collaborator stores the returned transaction id."""
        amount = _positive(amount_cents)
        if sender_id == creator_id:
            raise SelfPurchaseError("You cannot pay for your own message")
        with self.database.unit_of_work() as session:
            receipt = self._record(
                session,
                user_id=sender_id,
                creator_id=creator_id,
                amount=amount,
                transaction_type=TransactionType.MESSAGE,
                description=f"Paid message {message_id}",
            )
        self._after_payment(receipt, {"message_id": str(message_id)})
        return receipt

    def tip(self, user_id: UUID, creator_id: UUID, amount_cents: CentsLike) -> PurchaseReceipt:
        amount = _positive(amount_cents)
        if user_id == creator_id:
            raise SelfPurchaseError("You cannot tip yourself")
        with self.database.unit_of_work() as session:
            receipt = self._record(
                session,
                user_id=user_id,
                creator_id=creator_id,
                amount=amount,
                transaction_type=TransactionType.TIP,
                description=f"Tip from {user_id}",
            )
        self._after_payment(receipt, {})
        return receipt

    def subscribe(
        self, fan_id: UUID, creator_id: UUID, price_cents: CentsLike, months: int = 1
    ) -> PurchaseReceipt:
        price = Money.of(price_cents)
        if price.cents < 0:
            raise ValidationError("Subscription price cannot be negative", reason="invalid_amount")
        if not 1 <= months <= 12:
            raise ValidationError("months must be between 1 and 12", reason="invalid_period")
        if fan_id == creator_id:
            raise SelfPurchaseError("Cannot subscribe to yourself")

        with self.database.unit_of_work() as session:
            if self.entitlements.active_subscription_exists(session, fan_id, creator_id):
                raise StateError("Already subscribed to this creator", reason="already_subscribed")

            now = utcnow()
            subscription = SubscriptionRecord(
                id=uuid.uuid4(),
                fan_id=fan_id,
                creator_id=creator_id,
                status=SubscriptionStatus.ACTIVE,
                price_cents=price.cents,
                started_at=now,
                expires_at=now + timedelta(days=self.subscription_period_days * months),
                auto_renew=True,
            )
            session.add(subscription)
            session.flush()

            receipt = self._record(
                session,
                user_id=fan_id,
                creator_id=creator_id,
                amount=price,
                transaction_type=TransactionType.SUBSCRIPTION,
                description=f"Subscription payment from {fan_id}",
                subscription_id=subscription.id,
            )
            receipt.subscription = Subscription.model_validate(subscription)
            receipt.message = "Subscription created successfully"

        dispatch(
            self.notifier,
            notifications.SUBSCRIPTION_STARTED,
            {"creator_id": str(creator_id), "fan_id": str(fan_id), "subscription_id": str(subscription.id)},
        )
        self._after_payment(receipt, {"subscription_id": str(subscription.id)})
        return receipt

    def cancel_subscription(self, fan_id: UUID, subscription_id: UUID) -> Subscription:
        """Stop auto-renew; access continues until the paid period expires."""
        with self.database.unit_of_work() as session:
            record = session.get(SubscriptionRecord, subscription_id)
            if record is None or record.fan_id != fan_id:
                raise NotFoundError(f"Subscription {subscription_id} not found")
            if record.status != SubscriptionStatus.ACTIVE:
                raise InvalidStateError("Subscription is not active")
            record.auto_renew = False
            session.flush()
            subscription = Subscription.model_validate(record)
        logger.info("subscription %s auto-renew disabled", subscription_id)
        return subscription

    # ---------- reversals ----------

    def refund(self, transaction_id: UUID, reason: str) -> PurchaseReceipt:
        """completed -> refunded, with a reversing ledger entry and revoked access."""
        if not reason or not reason.strip():
            raise ValidationError("A refund reason is required", reason="missing_field")

        with self.database.unit_of_work() as session:
            record = session.get(TransactionRecord, transaction_id, with_for_update=True)
            if record is None:
                raise NotFoundError(f"Transaction {transaction_id} not found")
            receipt, revoked = self._refund(session, record, f"Refund: {reason.strip()}")

        self._after_refund(receipt, revoked)
        return receipt

    def _refund(self, session: Session, record: TransactionRecord, description: str):
        if record.status != TransactionStatus.COMPLETED:
            raise InvalidStateError(f"Cannot refund transaction with status: {record.status.value}")

        record.status = TransactionStatus.REFUNDED
        record.updated_at = utcnow()
        session.flush()

        entry = None
        if record.amount_cents > 0:
            entry = self.ledger.append(
                session,
                record.creator_id,
                -Money.of(record.amount_cents),
                LedgerEntryType.REFUND,
                transaction_id=record.id,
                description=description,
            )
        revoked = self.entitlements.revoke_for_transaction(session, record.id)
        if record.subscription_id is not None:
            subscription = session.get(SubscriptionRecord, record.subscription_id)
            if subscription is not None and subscription.status == SubscriptionStatus.ACTIVE:
                subscription.status = SubscriptionStatus.CANCELLED
                subscription.auto_renew = False
                session.flush()

        receipt = PurchaseReceipt(
            transaction=Transaction.model_validate(record),
            ledger_entry=entry,
            message="Transaction refunded successfully",
        )
        return receipt, revoked

    def _after_refund(self, receipt: PurchaseReceipt, revoked: int) -> None:
        transaction = receipt.transaction
        logger.info(
            "refunded transaction %s amount=%d revoked=%d", transaction.id, transaction.amount_cents, revoked
        )
        dispatch(
            self.notifier,
            notifications.PAYMENT_REFUNDED,
            {"transaction_id": str(transaction.id), "creator_id": str(transaction.creator_id)},
        )

    # ---------- provider events ----------

    def apply_provider_event(self, event: PaymentWebhook) -> ProviderEventResult:
        """Route one verified provider event.

        Every branch is keyed by ``provider_transaction_id`` (or the
        subscription) and is safe to replay; ``applied`` is False on a replay.
        """
        event_type = event.event_type
        if event_type.is_payment:
            receipt, applied = self.record_provider_payment(event)
            return ProviderEventResult(
                event_type=event_type,
                applied=applied,
                transaction=receipt.transaction,
                subscription=receipt.subscription,
                message=receipt.message,
            )
        if event_type == PaymentEventType.PAYMENT_FAILED:
            transaction, applied = self.record_failed_payment(event)
            return ProviderEventResult(
                event_type=event_type,
                applied=applied,
                transaction=transaction,
                message="Failed payment recorded" if applied else "Payment already recorded",
            )
        if event_type == PaymentEventType.CHARGEBACK_CREATED:
            receipt, applied = self.record_chargeback(event.provider_transaction_id)
            return ProviderEventResult(
                event_type=event_type,
                applied=applied,
                transaction=receipt.transaction,
                message=receipt.message,
            )
        subscription, applied = self.cancel_provider_subscription(event)
        return ProviderEventResult(
            event_type=event_type,
            applied=applied,
            subscription=subscription,
            message="Subscription cancelled" if applied else "Subscription already cancelled",
        )

    def record_provider_payment(self, event: PaymentWebhook) -> tuple[PurchaseReceipt, bool]:
        """Apply a completed-payment event; replays of the same provider id write nothing.

        Returns (receipt, created).
        """
        _require(event, "user_id", "creator_id", "transaction_type", "amount_cents")
        amount = _positive(event.amount_cents)
        if event.user_id == event.creator_id:
            raise SelfPurchaseError("Payer and creator are the same account")

        with self.database.unit_of_work() as session:
            existing = self._by_provider_id(session, event.provider_transaction_id)
            if existing is not None:
                return self._replayed(existing), False
            try:
                with session.begin_nested():
                    receipt = self._apply_payment(session, event, amount)
            except IntegrityError:
                # a concurrent delivery of the same event committed first
                existing = self._by_provider_id(session, event.provider_transaction_id)
                if existing is None:
                    raise
                return self._replayed(existing), False

        self._after_payment(receipt, {"provider_transaction_id": event.provider_transaction_id})
        return receipt, True

    def _apply_payment(self, session: Session, event: PaymentWebhook, amount: Money) -> PurchaseReceipt:
        access = None
        subscription = None
        if event.transaction_type == TransactionType.SUBSCRIPTION:
            subscription = self._activate_subscription(session, event.user_id, event.creator_id, amount)
        elif event.transaction_type == TransactionType.PPV:
            if event.post_id is None:
                raise ValidationError("PPV payment without post_id", reason="missing_field")
            content = self.catalog.require(session, event.post_id, ContentKind.POST)
            if content.creator_id != event.creator_id:
                raise ValidationError(
                    f"Post {event.post_id} does not belong to creator {event.creator_id}",
                    reason="creator_mismatch",
                )

            def access(session, transaction):
                return self.entitlements.grant(
                    session,
                    event.user_id,
                    event.post_id,
                    EntitlementType.PPV_PURCHASE,
                    transaction_id=transaction.id,
                )

        receipt = self._record(
            session,
            user_id=event.user_id,
            creator_id=event.creator_id,
            amount=amount,
            transaction_type=event.transaction_type,
            description=f"{event.transaction_type.value} payment - Transaction {event.provider_transaction_id}",
            access=access,
            post_id=event.post_id,
            subscription_id=subscription.id if subscription is not None else None,
            provider_transaction_id=event.provider_transaction_id,
            payment_provider=event.payment_provider,
        )
        if subscription is not None:
            receipt.subscription = Subscription.model_validate(subscription)
        return receipt

    def record_failed_payment(self, event: PaymentWebhook) -> tuple[Transaction, bool]:
        """Keep a failed charge for audit. No ledger entry and no access.

        An event for an id that is already recorded changes nothing; a charge
        that completed is reversed through a chargeback, not a failure.
        """
        with self.database.unit_of_work() as session:
            existing = self._by_provider_id(session, event.provider_transaction_id)
            if existing is not None:
                if existing.status == TransactionStatus.COMPLETED:
                    logger.warning(
                        "payment.failed for completed transaction %s ignored", existing.id
                    )
                return Transaction.model_validate(existing), False

            _require(event, "user_id", "creator_id", "transaction_type")
            now = utcnow()
            record = TransactionRecord(
                id=uuid.uuid4(),
                user_id=event.user_id,
                creator_id=event.creator_id,
                post_id=event.post_id,
                subscription_id=event.subscription_id,
                amount_cents=event.amount_cents or 0,
                transaction_type=event.transaction_type,
                status=TransactionStatus.FAILED,
                payment_provider=event.payment_provider,
                provider_transaction_id=event.provider_transaction_id,
                created_at=now,
                updated_at=now,
            )
            try:
                with session.begin_nested():
                    session.add(record)
                    session.flush()
            except IntegrityError:
                existing = self._by_provider_id(session, event.provider_transaction_id)
                if existing is None:
                    raise
                return Transaction.model_validate(existing), False
            transaction = Transaction.model_validate(record)

        logger.info("recorded failed payment %s (%s)", transaction.id, event.provider_transaction_id)
        return transaction, True

    def record_chargeback(self, provider_transaction_id: str) -> tuple[PurchaseReceipt, bool]:
        """Reverse a provider-recorded payment in full. Returns (receipt, applied)."""
        with self.database.unit_of_work() as session:
            record = self._by_provider_id(session, provider_transaction_id, lock=True)
            if record is None:
                raise NotFoundError(f"No transaction for provider id {provider_transaction_id}")
            if record.status == TransactionStatus.REFUNDED:
                return (
                    PurchaseReceipt(
                        transaction=Transaction.model_validate(record),
                        message="Chargeback already applied",
                    ),
                    False,
                )
            receipt, revoked = self._refund(
                session, record, f"Chargeback - Transaction {provider_transaction_id}"
            )

        self._after_refund(receipt, revoked)
        return receipt, True

    def cancel_provider_subscription(self, event: PaymentWebhook) -> tuple[Subscription, bool]:
        """Provider-side cancellation ends the subscription now. Returns (subscription, changed)."""
        with self.database.unit_of_work() as session:
            record = None
            if event.subscription_id is not None:
                record = session.get(SubscriptionRecord, event.subscription_id, with_for_update=True)
            elif event.user_id is not None and event.creator_id is not None:
                record = self._latest_subscription(session, event.user_id, event.creator_id)
            if record is None:
                raise NotFoundError("Subscription not found for cancellation event")

            if record.status == SubscriptionStatus.CANCELLED:
                return Subscription.model_validate(record), False
            record.status = SubscriptionStatus.CANCELLED
            record.auto_renew = False
            session.flush()
            subscription = Subscription.model_validate(record)

        logger.info("subscription %s cancelled by provider", subscription.id)
        return subscription, True

    def get_transaction(self, transaction_id: UUID) -> Transaction:
        with self.database.unit_of_work() as session:
            record = session.get(TransactionRecord, transaction_id)
            if record is None:
                raise NotFoundError(f"Transaction {transaction_id} not found")
            return Transaction.model_validate(record)

    # ---------- internals ----------

    def _record(
        self,
        session: Session,
        *,
        user_id: UUID,
        creator_id: UUID,
        amount: Money,
        transaction_type: TransactionType,
        description: str,
        access: Optional[Callable] = None,
        post_id: Optional[UUID] = None,
        stream_id: Optional[UUID] = None,
        subscription_id: Optional[UUID] = None,
        provider_transaction_id: Optional[str] = None,
        payment_provider: Optional[str] = None,
    ) -> PurchaseReceipt:
        now = utcnow()
        transaction = TransactionRecord(
            id=uuid.uuid4(),
            user_id=user_id,
            creator_id=creator_id,
            post_id=post_id,
            stream_id=stream_id,
            subscription_id=subscription_id,
            amount_cents=amount.cents,
            transaction_type=transaction_type,
            status=TransactionStatus.COMPLETED,
            payment_provider=payment_provider or self.payment_provider,
            provider_transaction_id=provider_transaction_id,
            created_at=now,
            updated_at=now,
        )
        session.add(transaction)
        session.flush()

        entitlement = access(session, transaction) if access is not None else None

        entry = None
        if amount.is_positive():
            entry = self.ledger.append(
                session,
                creator_id,
                amount,
                LedgerEntryType.EARNINGS,
                transaction_id=transaction.id,
                description=description,
            )

        return PurchaseReceipt(
            transaction=Transaction.model_validate(transaction),
            ledger_entry=entry,
            entitlement=entitlement,
            message="Payment recorded successfully",
        )

    def _activate_subscription(self, session: Session, fan_id: UUID, creator_id: UUID, price: Money):
        now = utcnow()
        expires_at = now + timedelta(days=self.subscription_period_days)
        record = self._latest_subscription(session, fan_id, creator_id)
        if record is None:
            record = SubscriptionRecord(
                id=uuid.uuid4(),
                fan_id=fan_id,
                creator_id=creator_id,
                started_at=now,
                auto_renew=True,
            )
            session.add(record)
        elif record.status == SubscriptionStatus.ACTIVE and record.expires_at and record.expires_at > now:
            # renewal extends from the current period end
            expires_at = record.expires_at + timedelta(days=self.subscription_period_days)
        record.status = SubscriptionStatus.ACTIVE
        record.price_cents = price.cents
        record.expires_at = expires_at
        session.flush()
        return record

    def _latest_subscription(self, session: Session, fan_id: UUID, creator_id: UUID):
        return session.scalars(
            select(SubscriptionRecord)
            .where(SubscriptionRecord.fan_id == fan_id, SubscriptionRecord.creator_id == creator_id)
            .order_by(SubscriptionRecord.started_at.desc())
            .limit(1)
        ).first()

    def _by_provider_id(self, session: Session, provider_transaction_id: str, lock: bool = False):
        query = select(TransactionRecord).where(
            TransactionRecord.provider_transaction_id == provider_transaction_id
        )
        if lock:
            query = query.with_for_update()
        return session.scalars(query).first()

    def _replayed(self, record: TransactionRecord) -> PurchaseReceipt:
        if record.status == TransactionStatus.FAILED:
            raise InvalidStateError(
                f"Provider transaction {record.provider_transaction_id} was recorded as failed"
            )
        logger.info("provider transaction %s already recorded", record.provider_transaction_id)
        return PurchaseReceipt(
            transaction=Transaction.model_validate(record),
            message="Payment already recorded",
        )

    def _after_payment(self, receipt: PurchaseReceipt, extra: dict) -> None:
        transaction = receipt.transaction
        logger.info(
            "recorded %s transaction %s creator=%s amount=%d",
            transaction.transaction_type.value,
            transaction.id,
            transaction.creator_id,
            transaction.amount_cents,
        )
        payload = {
            "transaction_id": str(transaction.id),
            "creator_id": str(transaction.creator_id),
            "user_id": str(transaction.user_id),
            "amount_cents": transaction.amount_cents,
            "transaction_type": transaction.transaction_type.value,
        }
        payload.update(extra)
        dispatch(self.notifier, notifications.PAYMENT_RECEIVED, payload)


def _positive(amount_cents: CentsLike) -> Money:
    amount = Money.of(amount_cents)
    if not amount.is_positive():
        raise ValidationError("Amount must be positive", reason="invalid_amount")
    return amount


def _require(event: PaymentWebhook, *fields: str) -> None:
    missing = [name for name in fields if getattr(event, name) is None]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}", reason="missing_field")
