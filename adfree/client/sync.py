"""
Client Sync Orchestrator - reconciles the device with the entitlement server.

Runs at login, on "Restore Purchases" and from the purchase callback.

Server first: if the server already reports ad-free, local purchase history
is not consulted. A stale local purchase therefore never overrides a refund the
server already recorded, and a restore on a new device with no local history
still succeeds.
"""

from enum import Enum

from structlog import get_logger

from adfree.client.api_client import EntitlementAPIClient
from adfree.client.cache import CachedStatus, StatusCache
from adfree.client.platform import PlatformPurchase, PurchasePlatform
from adfree.exceptions import EntitlementSyncError
from adfree.models.domain import DerivedStatus
from adfree.services.products import ProductCatalog

logger = get_logger(__name__)


class SyncReason(str, Enum):
    """Why a sync was started."""

    LOGIN = "login"
    RESTORE = "restore"
    APP_START = "app_start"


class ClientSyncOrchestrator:
    """Brings the client's view of ad-free status in line with the server."""

    def __init__(
        self,
        api: EntitlementAPIClient,
        platform: PurchasePlatform,
        catalog: ProductCatalog,
        cache: StatusCache,
    ) -> None:
        self._api = api
        self._platform = platform
        self._catalog = catalog
        self._cache = cache

    def cached_status(self) -> CachedStatus | None:
        """Last known server answer, for rendering before a sync completes."""
        return self._cache.read()

    async def sync(self, reason: SyncReason = SyncReason.LOGIN) -> DerivedStatus:
        """
        Return the user's ad-free status, recording local purchases if needed.

        Raises:
            EntitlementSyncError: Server unreachable; the cache is left untouched
        """
        if not await self._api.has_user():
            logger.info("sync_skipped_no_user", reason=reason.value)
            self._cache.clear()
            return DerivedStatus.not_ad_free()

        status = await self._api.get_status()
        if status.is_ad_free:
            logger.info("sync_server_reports_ad_free", reason=reason.value)
            self._cache.write(status)
            return status

        try:
            purchases = await self._platform.get_available_purchases()
        except EntitlementSyncError as exc:
            logger.warning("purchase_history_unavailable", reason=reason.value, error=exc.message)
            purchases = []

        candidates = [p for p in purchases if self._catalog.is_known(p.product_id)]
        logger.info(
            "sync_checking_local_purchases",
            reason=reason.value,
            purchases=len(purchases),
            candidates=len(candidates),
        )

        for purchase in candidates:
            response = await self._api.record_purchase(purchase)
            if response is None:
                continue
            status = response.status.to_status()
            if status.is_ad_free:
                logger.info(
                    "sync_restored_purchase",
                    reason=reason.value,
                    product_id=purchase.product_id,
                    transaction_id=purchase.transaction_id,
                )
                self._cache.write(status)
                return status
            logger.info(
                "sync_purchase_not_verified",
                product_id=purchase.product_id,
                transaction_id=purchase.transaction_id,
                detail=response.reason,
            )

        self._cache.write(status)
        return status

    async def handle_purchase_update(self, purchase: PlatformPurchase) -> DerivedStatus:
        """
        Purchase callback: record the new purchase, then finish the transaction.

        The transaction is finished only once the server has recorded it, so
        the store redelivers it if anything fails before that point.

        Raises:
            EntitlementSyncError: Server unreachable
        """
        if not self._catalog.is_known(purchase.product_id):
            logger.warning("purchase_update_unknown_product", product_id=purchase.product_id)
            return await self._api.get_status()

        response = await self._api.record_purchase(purchase)
        if response is None:
            logger.warning("purchase_update_not_recorded", transaction_id=purchase.transaction_id)
            return await self._api.get_status()

        status = response.status.to_status()
        self._cache.write(status)

        if response.verified:
            await self._platform.finish_transaction(purchase)
            logger.info(
                "purchase_update_recorded",
                product_id=purchase.product_id,
                transaction_id=purchase.transaction_id,
                is_ad_free=status.is_ad_free,
            )
        else:
            logger.warning(
                "purchase_update_verification_failed",
                transaction_id=purchase.transaction_id,
                detail=response.reason,
            )
        return status
