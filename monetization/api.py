import logging
from typing import Optional
from uuid import UUID

from fastapi import Depends, FastAPI, Header, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import notifications
from .config import Settings, configure_logging
from .errors import AuthorizationError, ErrorKind, MonetizationError
from .models import (
    AccessResponse,
    AdjustmentRequest,
    Content,
    ContentUpsertRequest,
    CreatorEarnings,
    CreatorVerification,
    LedgerEntry,
    LedgerHistoryResponse,
    PayMessageRequest,
    PaymentWebhook,
    Payout,
    PayoutRequest,
    PayoutResponse,
    PayoutStatus,
    Principal,
    ProcessPayoutRequest,
    PurchaseReceipt,
    RefundRequest,
    Subscription,
    SubscribeRequest,
    TipRequest,
    VerificationStatus,
    VerificationWebhook,
)
from .notifications import dispatch
from .service import MonetizationService
from .signatures import verify_signature

logger = logging.getLogger(__name__)

STATUS_BY_KIND = {
    ErrorKind.VALIDATION: status.HTTP_400_BAD_REQUEST,
    ErrorKind.STATE: status.HTTP_400_BAD_REQUEST,
    ErrorKind.AUTHENTICATION: status.HTTP_401_UNAUTHORIZED,
    ErrorKind.AUTHORIZATION: status.HTTP_403_FORBIDDEN,
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.CONFLICT: status.HTTP_409_CONFLICT,
}


def get_service(request: Request) -> MonetizationService:
    return request.app.state.service


def get_principal(
    x_user_id: Optional[UUID] = Header(default=None),
    x_user_role: str = Header(default="fan"),
    x_creator_status: Optional[str] = Header(default=None),
) -> Optional[Principal]:
    """Identity forwarded by the auth collaborator; trusted verbatim."""
    if x_user_id is None:
        return None
    return Principal(id=x_user_id, role=x_user_role, creator_status=x_creator_status)


def require_principal(principal: Optional[Principal] = Depends(get_principal)) -> Principal:
    if principal is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")
    return principal


def require_creator(principal: Principal = Depends(require_principal)) -> Principal:
    if not principal.is_creator:
        raise AuthorizationError("Only creators can access this resource", reason="creator_only")
    return principal


def require_admin(principal: Principal = Depends(require_principal)) -> Principal:
    if not principal.is_admin:
        raise AuthorizationError("Admin access required", reason="admin_only")
    return principal


def signed_webhook(secret_setting: str):
    """Dependency that rejects a webhook unless its HMAC signature matches the raw body."""

    async def verify(
        request: Request,
        x_signature: Optional[str] = Header(default=None),
        x_timestamp: Optional[str] = Header(default=None),
        service: MonetizationService = Depends(get_service),
    ) -> None:
        settings = service.settings
        body = await request.body()
        verify_signature(
            getattr(settings, secret_setting),
            body,
            x_signature,
            x_timestamp,
            tolerance_seconds=settings.webhook_tolerance_seconds,
        )

    return verify


def create_app(service: MonetizationService, root_path: str = "") -> FastAPI:
    app = FastAPI(
        title="Creator Monetization API",
        description="Ledger, entitlements and payouts for a creator-subscription platform",
        version="1.0.0",
        root_path=root_path,
    )
    app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(MonetizationError)
    async def monetization_error_handler(request: Request, exc: MonetizationError):
        body = {"error": exc.reason, "detail": exc.message}
        available = getattr(exc, "available_cents", None)
        if available is not None:
            body["available_cents"] = available
        return JSONResponse(status_code=STATUS_BY_KIND[exc.kind], content=body)

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.error("unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content={"error": "internal_error"}
        )

    register_routes(app)
    return app


def register_routes(app: FastAPI) -> None:
    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": "creator-monetization"}

    # ---------- content & access ----------

    @app.put("/creators/content/{content_id}", response_model=Content, tags=["Content"])
    def upsert_content(
        content_id: UUID,
        request: ContentUpsertRequest,
        principal: Principal = Depends(require_creator),
        service: MonetizationService = Depends(get_service),
    ) -> Content:
        return service.register_content(
            content_id,
            request.kind,
            principal.id,
            request.visibility,
            request.price_cents,
            request.is_disabled,
        )

    @app.get("/posts/{post_id}/access", response_model=AccessResponse, tags=["Access"])
    def post_access(
        post_id: UUID,
        principal: Optional[Principal] = Depends(get_principal),
        service: MonetizationService = Depends(get_service),
    ) -> AccessResponse:
        user_id = principal.id if principal else None
        return AccessResponse(content_id=post_id, has_access=service.entitlements.has_access(user_id, post_id))

    @app.get("/streams/{stream_id}/access", response_model=AccessResponse, tags=["Access"])
    def stream_access(
        stream_id: UUID,
        principal: Optional[Principal] = Depends(get_principal),
        service: MonetizationService = Depends(get_service),
    ) -> AccessResponse:
        user_id = principal.id if principal else None
        return AccessResponse(
            content_id=stream_id, has_access=service.entitlements.has_stream_access(user_id, stream_id)
        )

    # ---------- purchases ----------

    @app.post("/posts/{post_id}/unlock", response_model=PurchaseReceipt, tags=["Purchases"])
    def unlock_post(
        post_id: UUID,
        principal: Principal = Depends(require_principal),
        service: MonetizationService = Depends(get_service),
    ) -> PurchaseReceipt:
        return service.recorder.purchase_ppv(principal.id, post_id)

    @app.post("/streams/{stream_id}/unlock", response_model=PurchaseReceipt, tags=["Purchases"])
    def unlock_stream(
        stream_id: UUID,
        principal: Principal = Depends(require_principal),
        service: MonetizationService = Depends(get_service),
    ) -> PurchaseReceipt:
        return service.recorder.purchase_stream(principal.id, stream_id)

    @app.post(
        "/subscriptions",
        response_model=PurchaseReceipt,
        status_code=status.HTTP_201_CREATED,
        tags=["Purchases"],
    )
    def create_subscription(
        request: SubscribeRequest,
        principal: Principal = Depends(require_principal),
        service: MonetizationService = Depends(get_service),
    ) -> PurchaseReceipt:
        return service.recorder.subscribe(principal.id, request.creator_id, request.price_cents, request.months)

    @app.post("/subscriptions/{subscription_id}/cancel", response_model=Subscription, tags=["Purchases"])
    def cancel_subscription(
        subscription_id: UUID,
        principal: Principal = Depends(require_principal),
        service: MonetizationService = Depends(get_service),
    ) -> Subscription:
        return service.recorder.cancel_subscription(principal.id, subscription_id)

    @app.post("/tips", response_model=PurchaseReceipt, status_code=status.HTTP_201_CREATED, tags=["Purchases"])
    def send_tip(
        request: TipRequest,
        principal: Principal = Depends(require_principal),
        service: MonetizationService = Depends(get_service),
    ) -> PurchaseReceipt:
        return service.recorder.tip(principal.id, request.creator_id, request.amount_cents)

    @app.post("/messages/{message_id}/pay", response_model=PurchaseReceipt, tags=["Purchases"])
    def pay_message(
        message_id: UUID,
        request: PayMessageRequest,
        principal: Principal = Depends(require_principal),
        service: MonetizationService = Depends(get_service),
    ) -> PurchaseReceipt:
        return service.recorder.pay_message(principal.id, request.creator_id, request.amount_cents, message_id)

    # ---------- creators ----------

    @app.get("/creators/earnings", response_model=CreatorEarnings, tags=["Creators"])
    def creator_earnings(
        principal: Principal = Depends(require_creator),
        service: MonetizationService = Depends(get_service),
    ) -> CreatorEarnings:
        return service.get_creator_earnings(principal.id)

    @app.get("/creators/ledger", response_model=LedgerHistoryResponse, tags=["Creators"])
    def creator_ledger(
        limit: int = 50,
        offset: int = 0,
        principal: Principal = Depends(require_creator),
        service: MonetizationService = Depends(get_service),
    ) -> LedgerHistoryResponse:
        return service.get_ledger_history(principal.id, min(max(limit, 1), 200), max(offset, 0))

    @app.post(
        "/creators/payouts/request",
        response_model=Payout,
        status_code=status.HTTP_201_CREATED,
        tags=["Payouts"],
    )
    def request_payout(
        request: PayoutRequest,
        principal: Principal = Depends(require_creator),
        service: MonetizationService = Depends(get_service),
    ) -> Payout:
        return service.payouts.request_payout(
            principal.id,
            request.amount_cents,
            request.payout_method,
            request.payout_details,
            creator_status=principal.creator_status,
        )

    @app.get("/creators/payouts", response_model=list[Payout], tags=["Payouts"])
    def creator_payouts(
        principal: Principal = Depends(require_creator),
        service: MonetizationService = Depends(get_service),
    ) -> list[Payout]:
        return service.payouts.list_payouts(creator_id=principal.id)

    # ---------- admin ----------

    @app.get("/admin/payouts", response_model=list[Payout], tags=["Admin"])
    def admin_payouts(
        payout_status: Optional[PayoutStatus] = None,
        principal: Principal = Depends(require_admin),
        service: MonetizationService = Depends(get_service),
    ) -> list[Payout]:
        return service.payouts.list_payouts(status=payout_status, limit=200)

    @app.post("/admin/payouts/{payout_id}/process", response_model=PayoutResponse, tags=["Admin"])
    def process_payout(
        payout_id: UUID,
        request: ProcessPayoutRequest,
        principal: Principal = Depends(require_admin),
        service: MonetizationService = Depends(get_service),
    ) -> PayoutResponse:
        return service.payouts.process_payout(
            payout_id,
            request.action,
            operator=str(principal.id),
            notes=request.admin_notes,
            failure_reason=request.failure_reason,
        )

    @app.post("/admin/adjustments", response_model=LedgerEntry, status_code=status.HTTP_201_CREATED, tags=["Admin"])
    def create_adjustment(
        request: AdjustmentRequest,
        principal: Principal = Depends(require_admin),
        service: MonetizationService = Depends(get_service),
    ) -> LedgerEntry:
        return service.payouts.record_adjustment(
            request.creator_id, request.amount_cents, str(principal.id), request.description
        )

    @app.post("/admin/transactions/{transaction_id}/refund", response_model=PurchaseReceipt, tags=["Admin"])
    def refund_transaction(
        transaction_id: UUID,
        request: RefundRequest,
        principal: Principal = Depends(require_admin),
        service: MonetizationService = Depends(get_service),
    ) -> PurchaseReceipt:
        return service.recorder.refund(transaction_id, request.reason)

    # ---------- webhooks ----------

    @app.post(
        "/webhooks/verification",
        response_model=CreatorVerification,
        tags=["Webhooks"],
        dependencies=[Depends(signed_webhook("verification_webhook_secret"))],
    )
    def verification_webhook(
        request: VerificationWebhook,
        service: MonetizationService = Depends(get_service),
    ) -> CreatorVerification:
        state, changed = service.verification.apply_event(
            request.inquiry_id, request.creator_id, request.status, request.event_id, request.completed_at
        )
        if changed and state.status in (VerificationStatus.APPROVED, VerificationStatus.REJECTED):
            event = (
                notifications.CREATOR_APPROVED
                if state.status == VerificationStatus.APPROVED
                else notifications.CREATOR_REJECTED
            )
            dispatch(service.notifier, event, {"creator_id": str(state.creator_id)})
        return state

    @app.post(
        "/webhooks/payments",
        tags=["Webhooks"],
        dependencies=[Depends(signed_webhook("payment_webhook_secret"))],
    )
    def payment_webhook(
        request: PaymentWebhook,
        service: MonetizationService = Depends(get_service),
    ):
        result = service.recorder.apply_provider_event(request)
        return {
            "received": True,
            "duplicate": not result.applied,
            "event_type": result.event_type.value,
            "transaction_id": str(result.transaction.id) if result.transaction else None,
            "subscription_id": str(result.subscription.id) if result.subscription else None,
        }


if __name__ == "__main__":
    import uvicorn

    settings = Settings.from_env()
    configure_logging(settings.log_level)
    uvicorn.run(create_app(MonetizationService.from_settings(settings)), host="0.0.0.0", port=8000)
