from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class LedgerEntryType(str, Enum):
    EARNINGS = "earnings"
    PAYOUT = "payout"
    ADJUSTMENT = "adjustment"
    REFUND = "refund"


class TransactionType(str, Enum):
    SUBSCRIPTION = "subscription"
    PPV = "ppv"
    TIP = "tip"
    MESSAGE = "message"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class EntitlementType(str, Enum):
    PPV_PURCHASE = "ppv_purchase"
    SUBSCRIPTION = "subscription"
    GIFT = "gift"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class PayoutStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_active(self) -> bool:
        return self in (PayoutStatus.PENDING, PayoutStatus.PROCESSING)


class PayoutAction(str, Enum):
    APPROVE = "approve"
    COMPLETE = "complete"
    REJECT = "reject"
    FAIL = "fail"
    CANCEL = "cancel"

    @property
    def target_status(self) -> PayoutStatus:
        if self in (PayoutAction.APPROVE, PayoutAction.COMPLETE):
            return PayoutStatus.COMPLETED
        if self in (PayoutAction.REJECT, PayoutAction.FAIL):
            return PayoutStatus.FAILED
        return PayoutStatus.CANCELLED


class ContentKind(str, Enum):
    POST = "post"
    STREAM = "stream"


class Visibility(str, Enum):
    FREE = "free"
    SUBSCRIBER = "subscriber"
    PPV = "ppv"


class PaymentEventType(str, Enum):
    PAYMENT_COMPLETED = "payment.completed"
    SUBSCRIPTION_CREATED = "subscription.created"
    SUBSCRIPTION_RENEWED = "subscription.renewed"
    SUBSCRIPTION_CANCELED = "subscription.canceled"
    PAYMENT_FAILED = "payment.failed"
    CHARGEBACK_CREATED = "chargeback.created"

    @property
    def is_payment(self) -> bool:
        return self in (
            PaymentEventType.PAYMENT_COMPLETED,
            PaymentEventType.SUBSCRIPTION_CREATED,
            PaymentEventType.SUBSCRIPTION_RENEWED,
        )


class VerificationStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"


# ---------- read models ----------

class LedgerEntry(BaseModel):
    id: UUID
    account_id: UUID
    amount_cents: int
    entry_type: LedgerEntryType
    platform_fee_cents: int = 0
    net_amount_cents: int
    transaction_id: Optional[UUID] = None
    description: str = ""
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class Transaction(BaseModel):
    id: UUID
    user_id: UUID
    creator_id: UUID
    post_id: Optional[UUID] = None
    stream_id: Optional[UUID] = None
    subscription_id: Optional[UUID] = None
    amount_cents: int
    transaction_type: TransactionType
    status: TransactionStatus
    payment_provider: str
    provider_transaction_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class Entitlement(BaseModel):
    id: UUID
    user_id: UUID
    post_id: Optional[UUID] = None
    stream_id: Optional[UUID] = None
    entitlement_type: EntitlementType
    transaction_id: Optional[UUID] = None
    expires_at: Optional[datetime] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class Subscription(BaseModel):
    id: UUID
    fan_id: UUID
    creator_id: UUID
    status: SubscriptionStatus
    price_cents: int
    started_at: datetime
    expires_at: Optional[datetime] = None
    auto_renew: bool

    model_config = ConfigDict(from_attributes=True)


class Payout(BaseModel):
    id: UUID
    creator_id: UUID
    amount_cents: int
    status: PayoutStatus
    payout_method: str
    payout_details: Optional[dict] = None
    processed_by: Optional[str] = None
    admin_notes: Optional[str] = None
    failure_reason: Optional[str] = None
    ledger_entry_id: Optional[UUID] = None
    processed_at: Optional[datetime] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class Content(BaseModel):
    id: UUID
    kind: ContentKind
    creator_id: UUID
    visibility: Visibility
    price_cents: int = 0
    is_disabled: bool = False

    model_config = ConfigDict(from_attributes=True)


class CreatorVerification(BaseModel):
    inquiry_id: str
    creator_id: UUID
    status: VerificationStatus
    last_event_id: Optional[str] = None
    verified_at: Optional[datetime] = None
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class CreatorEarnings(BaseModel):
    creator_id: UUID
    total_earnings_cents: int
    paid_out_cents: int
    reserved_cents: int
    pending_earnings_cents: int


class Principal(BaseModel):
    """Authenticated caller as supplied by the auth collaborator."""

    id: UUID
    role: str = "fan"
    creator_status: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    @property
    def is_creator(self) -> bool:
        return self.role == "creator"


# ---------- requests ----------

class SubscribeRequest(BaseModel):
    creator_id: UUID
    price_cents: int = Field(..., ge=0, strict=True)
    months: int = Field(default=1, ge=1, le=12)


class TipRequest(BaseModel):
    creator_id: UUID
    amount_cents: int = Field(..., gt=0, strict=True)


class PayMessageRequest(BaseModel):
    creator_id: UUID
    amount_cents: int = Field(..., gt=0, strict=True)


class PayoutRequest(BaseModel):
    amount_cents: int = Field(..., strict=True, description="Requested amount in cents")
    payout_method: str
    payout_details: Optional[dict[str, Any]] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "amount_cents": 2500,
            "payout_method": "bank_transfer",
            "payout_details": {"iban": "DE89370400440532013000"},
        }
    })


class ProcessPayoutRequest(BaseModel):
    action: PayoutAction
    admin_notes: Optional[str] = None
    failure_reason: Optional[str] = None


class ContentUpsertRequest(BaseModel):
    kind: ContentKind = ContentKind.POST
    visibility: Visibility
    price_cents: int = Field(default=0, ge=0, strict=True)
    is_disabled: bool = False


class AdjustmentRequest(BaseModel):
    creator_id: UUID
    amount_cents: int = Field(..., strict=True)
    description: str = Field(..., min_length=1)


class RefundRequest(BaseModel):
    reason: str = Field(..., min_length=1)


class VerificationWebhook(BaseModel):
    event_id: str
    inquiry_id: str
    creator_id: UUID
    status: str
    completed_at: Optional[datetime] = None


class PaymentWebhook(BaseModel):
    """Provider event. Payment fields are required only for completed payments."""

    event_type: PaymentEventType = PaymentEventType.PAYMENT_COMPLETED
    provider_transaction_id: str = Field(..., min_length=1)
    user_id: Optional[UUID] = None
    creator_id: Optional[UUID] = None
    transaction_type: Optional[TransactionType] = None
    amount_cents: Optional[int] = Field(default=None, gt=0, strict=True)
    post_id: Optional[UUID] = None
    subscription_id: Optional[UUID] = None
    payment_provider: str = "ccbill"


# ---------- responses ----------

class PurchaseReceipt(BaseModel):
    transaction: Transaction
    ledger_entry: Optional[LedgerEntry] = None
    entitlement: Optional[Entitlement] = None
    subscription: Optional[Subscription] = None
    message: str


class AccessResponse(BaseModel):
    content_id: UUID
    has_access: bool


class LedgerHistoryResponse(BaseModel):
    account_id: UUID
    entries: list[LedgerEntry]
    total_count: int
    pending_earnings_cents: int


class ProviderEventResult(BaseModel):
    event_type: PaymentEventType
    applied: bool
    transaction: Optional[Transaction] = None
    subscription: Optional[Subscription] = None
    message: str


class PayoutResponse(BaseModel):
    payout: Payout
    ledger_entry: Optional[LedgerEntry] = None
    message: str
