"""
API Routes - FastAPI endpoints for entitlements and store notifications.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

from datetime import UTC, datetime

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy import text
from structlog import get_logger

from adfree.api.dependencies import (
    ServiceContainer,
    UserIdentity,
    get_catalog,
    get_ingestor,
    get_optional_user,
    get_receipt_verifier,
    get_services,
    get_store,
)
from adfree.exceptions import (
    EnvironmentConflictError,
    SignatureVerificationError,
    StorageError,
    WebhookPayloadError,
)
from adfree.models.api import (
    EntitlementStatusResponse,
    HealthResponse,
    RecordPurchaseRequest,
    RecordPurchaseResponse,
    WebhookAck,
)
from adfree.models.domain import CLIENT_VERIFICATION, EntitlementRecord, VerificationStatus
from adfree.observability.metrics import metrics
from adfree.services.entitlement_store import EntitlementStore
from adfree.services.notification_ingestor import NotificationIngestor
from adfree.services.products import ProductCatalog
from adfree.services.receipt_verifier import ReceiptVerifier
from adfree.services.reconciliation import utc_now

logger = get_logger(__name__)

router = APIRouter()


@router.get("/v1/entitlements/status", response_model=EntitlementStatusResponse)
async def get_entitlement_status(
    user: UserIdentity | None = Depends(get_optional_user),
    store: EntitlementStore = Depends(get_store),
) -> EntitlementStatusResponse:
    """
    Current ad-free status for the signed-in user.

    No user is a valid outcome and reports isAdFree=false.
    """
    if user is None:
        return EntitlementStatusResponse(is_ad_free=False)

    try:
        derived = await store.get_status(user.user_id)
    except StorageError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Entitlement storage unavailable",
        ) from exc

    return EntitlementStatusResponse.from_status(derived)


@router.post("/v1/entitlements/records", response_model=RecordPurchaseResponse)
async def record_purchase(
    request: RecordPurchaseRequest,
    user: UserIdentity | None = Depends(get_optional_user),
    store: EntitlementStore = Depends(get_store),
    verifier: ReceiptVerifier = Depends(get_receipt_verifier),
    catalog: ProductCatalog = Depends(get_catalog),
) -> RecordPurchaseResponse:
    """
    Verify purchase evidence and record it for the signed-in user.

    Every verified, recognized transaction that still grants access is
    upserted, then the user's status is recomputed. Nothing is recorded when
    verification fails.
    """
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Sign in to record purchases",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if not catalog.is_known(request.product_id):
        logger.info("record_purchase_unknown_product", product_id=request.product_id)

    if request.signed_transaction:
        result = await verifier.verify_signed_transaction(request.signed_transaction)
    else:
        result = await verifier.verify(request.receipt_data or "")

    verified_at = utc_now()
    recorded: list[str] = []

    try:
        for transaction in result.active_transactions():
            record = EntitlementRecord.from_transaction(
                transaction,
                user_id=user.user_id,
                event_type=CLIENT_VERIFICATION,
                event_date=verified_at,
                verification_status=VerificationStatus.VERIFIED,
                receipt_data=request.receipt_data,
                verified_at=verified_at,
            )
            try:
                stored = await store.upsert(record)
            except EnvironmentConflictError as exc:
                logger.warning(
                    "record_purchase_environment_conflict",
                    transaction_id=exc.transaction_id,
                    stored=exc.stored,
                    incoming=exc.incoming,
                )
                continue
            if not stored.is_active:
                logger.warning(
                    "record_purchase_deactivated",
                    transaction_id=stored.transaction_id,
                    reason=stored.deactivation_reason,
                )
                continue
            recorded.append(transaction.transaction_id)

        derived = (
            await store.recompute(user.user_id)
            if recorded
            else await store.get_status(user.user_id)
        )
    except StorageError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Entitlement storage unavailable",
        ) from exc

    if request.transaction_id and request.transaction_id not in recorded:
        logger.info(
            "record_purchase_transaction_not_recorded",
            transaction_id=request.transaction_id,
            verified=result.valid,
        )

    logger.info(
        "purchase_recorded" if recorded else "purchase_not_recorded",
        user_id=user.user_id,
        product_id=request.product_id,
        verified=result.valid,
        recorded=len(recorded),
        reason=result.error,
    )

    return RecordPurchaseResponse(
        verified=result.valid and bool(recorded),
        status=EntitlementStatusResponse.from_status(derived),
        recorded_transaction_ids=recorded,
        reason=None if recorded else (result.error or "No verified transaction to record"),
    )


@router.post("/v1/webhooks/apple", response_model=WebhookAck)
async def apple_webhook(
    request: Request,
    ingestor: NotificationIngestor = Depends(get_ingestor),
) -> WebhookAck:
    """
    App Store Server Notifications v2 endpoint.

    Returns 200 for every accepted notification, including no-ops and
    duplicates. Malformed or unauthenticated bodies get 400; storage failures
    get 500 so the App Store redelivers.
    """
    body = await request.body()

    try:
        outcome = await ingestor.ingest(body)
    except (WebhookPayloadError, SignatureVerificationError) as exc:
        logger.warning("apple_webhook_rejected", error=str(exc))
        metrics.record_notification("unverified", "rejected")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc
    except StorageError as exc:
        logger.error("apple_webhook_storage_failed", operation=exc.operation, error=exc.message)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Entitlement storage unavailable",
        ) from exc

    return WebhookAck(success=True, outcome=outcome.value)


@router.get("/health", response_model=HealthResponse)
async def health_check(services: ServiceContainer = Depends(get_services)) -> HealthResponse:
    """
    Health check for load balancer.

    Verifies database connectivity.
    """
    try:
        async with services.session_factory() as session:
            await session.execute(text("SELECT 1"))

        return HealthResponse(
            status="healthy",
            database="connected",
            timestamp=datetime.now(UTC).isoformat(),
        )

    except Exception as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "status": "unhealthy",
                "database": "disconnected",
                "error": str(exc),
                "timestamp": datetime.now(UTC).isoformat(),
            },
        ) from exc
