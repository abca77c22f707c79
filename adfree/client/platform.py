"""
Purchase platform capability - the device's view of App Store purchases.

NO DICTIONARIES - Purchases are exposed as PlatformPurchase dataclasses.

Two implementations, chosen by configuration at startup:
- NativeExportPlatform reads the purchase list exported by the native in-app
  purchase bridge (react-native-iap Purchase objects serialized as JSON).
- FakePurchasePlatform is deterministic and in-memory, for tests and for
  environments without the native module.
"""

import asyncio
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Protocol

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from structlog import get_logger

from adfree.config import Settings
from adfree.exceptions import EntitlementSyncError
from adfree.models.apple import datetime_from_ms

logger = get_logger(__name__)


@dataclass(frozen=True)
class PlatformPurchase:
    """A purchase as reported by the device's store SDK."""

    product_id: str
    transaction_id: str
    transaction_date: datetime | None = None
    transaction_receipt: str | None = None  # Base64 app receipt (StoreKit 1)
    signed_transaction: str | None = None  # JWS representation (StoreKit 2)
    original_transaction_id: str | None = None

    def has_evidence(self) -> bool:
        return bool(self.transaction_receipt or self.signed_transaction)


class PurchasePlatform(Protocol):
    """Capability interface over the device's store SDK."""

    async def get_available_purchases(self) -> list[PlatformPurchase]:
        """Purchases the store reports for the signed-in App Store account."""
        ...

    async def finish_transaction(self, purchase: PlatformPurchase) -> None:
        """Acknowledge a delivered purchase so the store stops redelivering it."""
        ...


class ExportedPurchase(BaseModel):
    """One react-native-iap Purchase object as exported by the native bridge."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    product_id: str = Field(..., alias="productId", min_length=1)
    transaction_id: str = Field(..., alias="transactionId", min_length=1)
    transaction_date: int | str | None = Field(None, alias="transactionDate")
    transaction_receipt: str | None = Field(None, alias="transactionReceipt")
    jws_representation: str | None = Field(None, alias="jwsRepresentationIOS")
    original_transaction_id: str | None = Field(
        None, alias="originalTransactionIdentifierIOS"
    )

    def to_purchase(self) -> PlatformPurchase:
        return PlatformPurchase(
            product_id=self.product_id,
            transaction_id=self.transaction_id,
            transaction_date=datetime_from_ms(self.transaction_date),
            transaction_receipt=self.transaction_receipt or None,
            signed_transaction=self.jws_representation or None,
            original_transaction_id=self.original_transaction_id,
        )


_EXPORT_ADAPTER = TypeAdapter(list[ExportedPurchase])
_FINISHED_ADAPTER = TypeAdapter(list[str])


class NativeExportPlatform:
    """
    Reads purchases exported by the native bridge.

    finish_transaction() appends the transaction id to a sidecar file
    (<export>.finished.json) that the bridge consumes to call finishTransaction.
    """

    def __init__(self, export_path: str | Path) -> None:
        self._export_path = Path(export_path)
        self._finished_path = self._export_path.with_name(
            self._export_path.name + ".finished.json"
        )

    def _read_export(self) -> list[PlatformPurchase]:
        if not self._export_path.exists():
            logger.info("purchase_export_missing", path=str(self._export_path))
            return []
        try:
            exported = _EXPORT_ADAPTER.validate_json(self._export_path.read_bytes())
        except ValidationError as exc:
            raise EntitlementSyncError(
                f"Unreadable purchase export {self._export_path}: {exc.error_count()} errors"
            ) from exc
        return [item.to_purchase() for item in exported]

    def _read_finished(self) -> list[str]:
        if not self._finished_path.exists():
            return []
        try:
            return _FINISHED_ADAPTER.validate_json(self._finished_path.read_bytes())
        except ValidationError:
            logger.warning("finished_transactions_file_unreadable", path=str(self._finished_path))
            return []

    def _mark_finished(self, transaction_id: str) -> None:
        finished = self._read_finished()
        if transaction_id in finished:
            return
        finished.append(transaction_id)
        self._finished_path.write_bytes(_FINISHED_ADAPTER.dump_json(finished))

    async def get_available_purchases(self) -> list[PlatformPurchase]:
        return await asyncio.to_thread(self._read_export)

    async def finish_transaction(self, purchase: PlatformPurchase) -> None:
        await asyncio.to_thread(self._mark_finished, purchase.transaction_id)
        logger.info("transaction_finished", transaction_id=purchase.transaction_id)


class FakePurchasePlatform:
    """Deterministic in-memory platform."""

    def __init__(self, purchases: Iterable[PlatformPurchase] = ()) -> None:
        self.purchases: list[PlatformPurchase] = list(purchases)
        self.finished: list[str] = []

    async def get_available_purchases(self) -> list[PlatformPurchase]:
        return list(self.purchases)

    async def finish_transaction(self, purchase: PlatformPurchase) -> None:
        if purchase.transaction_id not in self.finished:
            self.finished.append(purchase.transaction_id)


def build_purchase_platform(settings: Settings) -> PurchasePlatform:
    """Select the platform implementation from configuration."""
    if settings.purchase_platform == "fake":
        logger.info("purchase_platform_selected", platform="fake")
        return FakePurchasePlatform()
    logger.info(
        "purchase_platform_selected",
        platform="native",
        export_path=settings.purchase_export_path,
    )
    return NativeExportPlatform(settings.purchase_export_path)
