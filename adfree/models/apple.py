"""
Apple App Store models - Immutable dataclasses for verified store data.

NO DICTIONARIES - All data uses strongly typed models.

App Store Server Notifications v2 and StoreKit 2 transactions are delivered as
JWS (JSON Web Signature) compact tokens; these models hold the decoded,
signature-checked payloads.
"""

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum

from appstoreserverlibrary.models.JWSTransactionDecodedPayload import JWSTransactionDecodedPayload
from appstoreserverlibrary.models.ResponseBodyV2DecodedPayload import ResponseBodyV2DecodedPayload


class NotificationType(str, Enum):
    """App Store Server Notification v2 types."""

    SUBSCRIBED = "SUBSCRIBED"
    DID_RENEW = "DID_RENEW"
    RENEWAL_EXTENDED = "RENEWAL_EXTENDED"
    DID_FAIL_TO_RENEW = "DID_FAIL_TO_RENEW"
    EXPIRED = "EXPIRED"
    GRACE_PERIOD_EXPIRED = "GRACE_PERIOD_EXPIRED"
    REFUND = "REFUND"
    REVOKE = "REVOKE"
    DID_CHANGE_RENEWAL_STATUS = "DID_CHANGE_RENEWAL_STATUS"
    DID_CHANGE_RENEWAL_PREF = "DID_CHANGE_RENEWAL_PREF"
    ONE_TIME_CHARGE = "ONE_TIME_CHARGE"
    OFFER_REDEEMED = "OFFER_REDEEMED"
    REFUND_DECLINED = "REFUND_DECLINED"
    REFUND_REVERSED = "REFUND_REVERSED"
    CONSUMPTION_REQUEST = "CONSUMPTION_REQUEST"
    PRICE_INCREASE = "PRICE_INCREASE"
    TEST = "TEST"


class ReceiptStatus:
    """verifyReceipt status codes."""

    OK = 0
    MALFORMED = 21002
    UNAUTHENTICATED = 21003
    SHARED_SECRET_MISMATCH = 21004
    SERVER_UNAVAILABLE = 21005
    SUBSCRIPTION_EXPIRED = 21006
    SANDBOX_RECEIPT_ON_PRODUCTION = 21007
    PRODUCTION_RECEIPT_ON_SANDBOX = 21008
    INTERNAL_ERROR_MIN = 21100
    INTERNAL_ERROR_MAX = 21199

    @classmethod
    def is_transient(cls, status: int) -> bool:
        """Apple asks callers to retry these."""
        return status == cls.SERVER_UNAVAILABLE or (
            cls.INTERNAL_ERROR_MIN <= status <= cls.INTERNAL_ERROR_MAX
        )


def datetime_from_ms(value: object) -> datetime | None:
    """Parse an Apple millisecond timestamp (int or numeric string); 0, missing or out of range -> None."""
    if value is None or value == "":
        return None
    try:
        ms = int(value)  # type: ignore[call-overload]
    except (TypeError, ValueError):
        return None
    if ms <= 0:
        return None
    try:
        return datetime.fromtimestamp(ms / 1000, tz=UTC)
    except (OverflowError, OSError, ValueError):
        return None


@dataclass(frozen=True)
class AppleSignedTransaction:
    """Decoded JWSTransaction payload."""

    transaction_id: str
    original_transaction_id: str
    product_id: str
    bundle_id: str
    purchase_date: datetime
    original_purchase_date: datetime
    environment: str  # "Production" or "Sandbox"
    type: str  # "Auto-Renewable Subscription", "Non-Consumable", ...
    expires_date: datetime | None = None
    revocation_date: datetime | None = None
    revocation_reason: int | None = None
    app_account_token: str | None = None
    signed_date: datetime | None = None

    @classmethod
    def from_decoded(cls, decoded: JWSTransactionDecodedPayload) -> "AppleSignedTransaction":
        """Build from the library's verified payload; raises ValueError on missing fields."""
        purchase_date = datetime_from_ms(decoded.purchaseDate)
        if not decoded.transactionId or not decoded.productId or purchase_date is None:
            raise ValueError("transactionId, productId and purchaseDate are required")
        return cls(
            transaction_id=decoded.transactionId,
            original_transaction_id=decoded.originalTransactionId or decoded.transactionId,
            product_id=decoded.productId,
            bundle_id=decoded.bundleId or "",
            purchase_date=purchase_date,
            original_purchase_date=datetime_from_ms(decoded.originalPurchaseDate) or purchase_date,
            environment=decoded.rawEnvironment or "Production",
            type=decoded.rawType or "",
            expires_date=datetime_from_ms(decoded.expiresDate),
            revocation_date=datetime_from_ms(decoded.revocationDate),
            revocation_reason=decoded.rawRevocationReason,
            app_account_token=decoded.appAccountToken or None,
            signed_date=datetime_from_ms(decoded.signedDate),
        )


@dataclass(frozen=True)
class AppleNotification:
    """Decoded App Store Server Notification v2 (responseBodyV2DecodedPayload)."""

    notification_type: str
    subtype: str | None
    notification_uuid: str
    signed_date: datetime  # When Apple signed the notification; the event ordering key
    environment: str
    bundle_id: str
    transaction: AppleSignedTransaction | None

    @classmethod
    def from_decoded(
        cls,
        decoded: ResponseBodyV2DecodedPayload,
        transaction: AppleSignedTransaction | None,
        bundle_id: str,
    ) -> "AppleNotification":
        signed_date = datetime_from_ms(decoded.signedDate)
        if signed_date is None:
            raise ValueError("signedDate is required")
        scope = decoded.data or decoded.summary
        return cls(
            notification_type=decoded.rawNotificationType or "",
            subtype=decoded.rawSubtype or None,
            notification_uuid=decoded.notificationUUID or "",
            signed_date=signed_date,
            environment=(scope.rawEnvironment if scope is not None else None) or "Production",
            bundle_id=(scope.bundleId if scope is not None else None) or bundle_id,
            transaction=transaction,
        )

    def is_test(self) -> bool:
        return self.notification_type == NotificationType.TEST.value

    def is_sandbox(self) -> bool:
        return self.environment.lower() == "sandbox"
