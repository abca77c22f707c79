"""
Purchase Gate - stops redundant purchases before the store dialog opens.

NO DICTIONARIES - Decisions are typed Allow / Deny values.

Business-rule violations are returned as Deny, never raised. The App Store
purchase sheet remains the real enforcement point; the gate avoids duplicate
charges and the support load they cause.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from structlog import get_logger

from adfree.exceptions import EntitlementSyncError
from adfree.models.domain import DerivedStatus, ProductKind
from adfree.observability.metrics import metrics
from adfree.services.products import ProductCatalog

logger = get_logger(__name__)


class DenyReason(str, Enum):
    """Why a purchase request was refused."""

    UNKNOWN_PRODUCT = "UNKNOWN_PRODUCT"
    ALREADY_LIFETIME = "ALREADY_LIFETIME"
    ALREADY_SUBSCRIBED = "ALREADY_SUBSCRIBED"
    LIFETIME_COVERS_SUBSCRIPTION = "LIFETIME_COVERS_SUBSCRIPTION"
    STATUS_UNAVAILABLE = "STATUS_UNAVAILABLE"


DENY_MESSAGES = {
    DenyReason.UNKNOWN_PRODUCT: "Product not found",
    DenyReason.ALREADY_LIFETIME: (
        'You already have ad-free access. Use "Restore Purchases" '
        "if you need to restore your purchase."
    ),
    DenyReason.ALREADY_SUBSCRIBED: (
        'You already have an active ad-free subscription. Use "Restore Purchases" '
        "if you need to restore your subscription."
    ),
    DenyReason.LIFETIME_COVERS_SUBSCRIPTION: (
        "You already have lifetime ad-free access. No subscription needed."
    ),
    DenyReason.STATUS_UNAVAILABLE: (
        "We couldn't confirm your current purchases. Please check your connection and try again."
    ),
}


@dataclass(frozen=True)
class Allow:
    product_id: str
    allowed: bool = True


@dataclass(frozen=True)
class Deny:
    product_id: str
    reason: DenyReason
    message: str
    allowed: bool = False


class StatusSource(Protocol):
    async def get_status(self) -> DerivedStatus: ...


class PurchaseGate:
    """Checks current status before any new purchase request."""

    def __init__(self, status_source: StatusSource, catalog: ProductCatalog) -> None:
        self._status_source = status_source
        self._catalog = catalog

    async def authorize(self, product_id: str) -> Allow | Deny:
        decision = await self._decide(product_id)
        reason = decision.reason.value if isinstance(decision, Deny) else None
        metrics.record_gate_decision(decision.allowed, reason)
        logger.info(
            "purchase_gate_decision",
            product_id=product_id,
            allowed=decision.allowed,
            reason=reason,
        )
        return decision

    async def _decide(self, product_id: str) -> Allow | Deny:
        kind = self._catalog.classify(product_id)
        if kind is None:
            return _deny(product_id, DenyReason.UNKNOWN_PRODUCT)

        try:
            status = await self._status_source.get_status()
        except EntitlementSyncError as exc:
            # Unknown status must not turn into a possible double charge
            logger.warning("purchase_gate_status_unavailable", error=exc.message)
            return _deny(product_id, DenyReason.STATUS_UNAVAILABLE)

        if not status.is_ad_free:
            return Allow(product_id)

        if status.product_type is ProductKind.LIFETIME:
            if kind is ProductKind.SUBSCRIPTION:
                return _deny(product_id, DenyReason.LIFETIME_COVERS_SUBSCRIPTION)
            return _deny(product_id, DenyReason.ALREADY_LIFETIME)

        if kind is ProductKind.SUBSCRIPTION:
            # Without product ids the active subscription may be this one
            if not status.active_product_ids or product_id in status.active_product_ids:
                return _deny(product_id, DenyReason.ALREADY_SUBSCRIBED)

        # Subscriber upgrading to lifetime, or switching subscription products
        return Allow(product_id)


def _deny(product_id: str, reason: DenyReason) -> Deny:
    return Deny(product_id=product_id, reason=reason, message=DENY_MESSAGES[reason])
