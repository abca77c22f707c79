"""
Reconciliation rules - pure functions shared by every path that touches entitlements.

Derived status is always computed from records, never toggled:
- A record entitles iff it is active and (non-expiring or expiring in the future).
- Within one subscription chain (original_transaction_id) only the most recent
  transaction by purchase_date decides.
- Lifetime beats subscription when both qualify.
"""

from collections.abc import Iterable
from datetime import UTC, datetime

from adfree.models.domain import DerivedStatus, EntitlementRecord, ProductKind
from adfree.services.products import ProductCatalog


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite drops tzinfo), convert aware ones."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def supersedes(stored_at: datetime | None, incoming_at: datetime | None) -> bool:
    """Whether an event at incoming_at may overwrite state written at stored_at."""
    if stored_at is None:
        return True
    if incoming_at is None:
        return False
    return as_utc(incoming_at) >= as_utc(stored_at)  # type: ignore[operator]


def record_kind(record: EntitlementRecord, catalog: ProductCatalog) -> ProductKind:
    """Catalog kind of a record; unknown products fall back to their expiry shape."""
    kind = catalog.classify(record.product_id)
    if kind is not None:
        return kind
    return ProductKind.LIFETIME if record.expires_date is None else ProductKind.SUBSCRIPTION


def is_entitling(record: EntitlementRecord, now: datetime) -> bool:
    if not record.is_active:
        return False
    if record.expires_date is None:
        return True
    return as_utc(record.expires_date) > as_utc(now)  # type: ignore[operator]


def authoritative_records(records: Iterable[EntitlementRecord]) -> list[EntitlementRecord]:
    """Most recent record by purchase_date for each original_transaction_id."""
    latest: dict[str, EntitlementRecord] = {}
    for record in records:
        key = record.original_transaction_id or record.transaction_id
        current = latest.get(key)
        if current is None or _ordering_key(record) > _ordering_key(current):
            latest[key] = record
    return list(latest.values())


def _ordering_key(record: EntitlementRecord) -> tuple[datetime, str]:
    return (as_utc(record.purchase_date), record.transaction_id)  # type: ignore[return-value]


def derive_status(
    records: Iterable[EntitlementRecord],
    catalog: ProductCatalog,
    now: datetime | None = None,
) -> DerivedStatus:
    """Compute a user's ad-free status from a fresh scan of their records."""
    now = now or utc_now()
    qualifying = [r for r in authoritative_records(records) if is_entitling(r, now)]
    if not qualifying:
        return DerivedStatus.not_ad_free()

    active_product_ids = tuple(sorted({r.product_id for r in qualifying}))

    if any(record_kind(r, catalog) is ProductKind.LIFETIME for r in qualifying):
        return DerivedStatus(
            is_ad_free=True,
            product_type=ProductKind.LIFETIME,
            expires_at=None,
            active_product_ids=active_product_ids,
        )

    expiries = [as_utc(r.expires_date) for r in qualifying if r.expires_date is not None]
    return DerivedStatus(
        is_ad_free=True,
        product_type=ProductKind.SUBSCRIPTION,
        expires_at=max(expiries) if expiries else None,  # type: ignore[type-var]
        active_product_ids=active_product_ids,
    )
