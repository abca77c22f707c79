"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum


class ProductKind(str, Enum):
    """Kind of purchasable ad-free product."""

    LIFETIME = "lifetime"
    SUBSCRIPTION = "subscription"


class StoreEnvironment(str, Enum):
    """App Store environment a transaction belongs to."""

    SANDBOX = "sandbox"
    PRODUCTION = "production"

    @classmethod
    def parse(cls, value: str | None) -> "StoreEnvironment":
        """Parse Apple's "Sandbox"/"Production" spelling (default production)."""
        if value and value.strip().lower() == "sandbox":
            return cls.SANDBOX
        return cls.PRODUCTION


class DeactivationReason(str, Enum):
    """Why an entitlement record stopped granting access."""

    EXPIRED = "EXPIRED"
    REFUND = "REFUND"
    REVOKE = "REVOKE"


# Event type stamped on records written from client-submitted evidence
CLIENT_VERIFICATION = "CLIENT_VERIFICATION"

# Deactivations only a store notification may reverse
STORE_REVOCATIONS = (DeactivationReason.REFUND.value, DeactivationReason.REVOKE.value)


class VerificationStatus(str, Enum):
    """Outcome of the last verification of a record's evidence."""

    VERIFIED = "verified"
    NOTIFICATION = "notification"  # Authenticated by a signed store notification


@dataclass(frozen=True)
class TransactionInfo:
    """A single entitlement-bearing transaction found in a receipt or signed payload."""

    transaction_id: str
    original_transaction_id: str
    product_id: str
    purchase_date: datetime
    original_purchase_date: datetime
    expires_date: datetime | None  # None for lifetime purchases
    environment: StoreEnvironment
    kind: ProductKind
    expired: bool
    revocation_date: datetime | None = None
    app_account_token: str | None = None

    def grants_access(self) -> bool:
        """Not expired and not revoked."""
        return not self.expired and self.revocation_date is None


@dataclass(frozen=True)
class VerificationResult:
    """Normalized verdict of a receipt or signed transaction verification."""

    valid: bool
    transactions: tuple[TransactionInfo, ...] = ()
    status_code: int | None = None
    environment: StoreEnvironment | None = None
    error: str | None = None

    @classmethod
    def failure(cls, error: str, status_code: int | None = None) -> "VerificationResult":
        return cls(valid=False, status_code=status_code, error=error)

    def active_transactions(self) -> tuple[TransactionInfo, ...]:
        return tuple(tx for tx in self.transactions if tx.grants_access())


@dataclass(frozen=True)
class EntitlementRecord:
    """One stored purchase/subscription transaction, keyed by transaction_id."""

    transaction_id: str
    original_transaction_id: str
    product_id: str
    purchase_date: datetime
    original_purchase_date: datetime | None
    expires_date: datetime | None
    is_active: bool
    environment: StoreEnvironment
    user_id: str | None = None
    last_notification_type: str | None = None
    last_notification_date: datetime | None = None  # Event time, used for last-write-wins
    receipt_data: str | None = None
    verification_status: str | None = None
    deactivation_reason: str | None = None
    deactivated_at: datetime | None = None
    last_verified_at: datetime | None = None

    def __post_init__(self) -> None:
        """Validate record identity fields."""
        if not self.transaction_id:
            raise ValueError("transaction_id cannot be empty")
        if not self.product_id:
            raise ValueError("product_id cannot be empty")

    def with_changes(self, **changes: object) -> "EntitlementRecord":
        return replace(self, **changes)  # type: ignore[arg-type]

    @classmethod
    def from_transaction(
        cls,
        transaction: TransactionInfo,
        *,
        user_id: str | None,
        event_type: str,
        event_date: datetime,
        verification_status: VerificationStatus,
        receipt_data: str | None = None,
        verified_at: datetime | None = None,
    ) -> "EntitlementRecord":
        """Build an active record from a verified transaction."""
        return cls(
            transaction_id=transaction.transaction_id,
            original_transaction_id=transaction.original_transaction_id,
            product_id=transaction.product_id,
            purchase_date=transaction.purchase_date,
            original_purchase_date=transaction.original_purchase_date,
            expires_date=transaction.expires_date,
            is_active=transaction.revocation_date is None,
            environment=transaction.environment,
            user_id=user_id,
            last_notification_type=event_type,
            last_notification_date=event_date,
            receipt_data=receipt_data,
            verification_status=verification_status.value,
            last_verified_at=verified_at,
        )


@dataclass(frozen=True)
class DerivedStatus:
    """User-level ad-free status derived from entitlement records."""

    is_ad_free: bool
    product_type: ProductKind | None = None
    expires_at: datetime | None = None
    active_product_ids: tuple[str, ...] = field(default=())

    @classmethod
    def not_ad_free(cls) -> "DerivedStatus":
        return cls(is_ad_free=False)
