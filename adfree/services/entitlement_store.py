"""
Entitlement Store - Durable entitlement records and the derived status cache.

NO DICTIONARIES - Callers exchange EntitlementRecord / DerivedStatus dataclasses.

Write rules:
- One row per transaction_id. Writes are atomic INSERT ... ON CONFLICT DO UPDATE
  statements, so concurrent writers for the same key cannot create duplicates.
- An update applies only if its event time is not older than the stored
  last_notification_date (last-write-wins by event time, not arrival order).
- A transaction id never moves between sandbox and production.
- Client-submitted evidence never re-activates a refunded or revoked record.
- user_profiles is written only by recompute(), which re-derives status from a
  fresh scan of records while holding the profile row lock.
"""

from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import datetime

from sqlalchemy import Table, and_, func, or_, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from structlog import get_logger

from adfree.db.models import EntitlementRecordRow, UserProfile
from adfree.exceptions import EnvironmentConflictError, StorageError
from adfree.models.domain import (
    CLIENT_VERIFICATION,
    STORE_REVOCATIONS,
    DeactivationReason,
    DerivedStatus,
    EntitlementRecord,
    ProductKind,
    StoreEnvironment,
)
from adfree.observability.metrics import metrics
from adfree.services.products import ProductCatalog
from adfree.services.reconciliation import as_utc, derive_status, utc_now

logger = get_logger(__name__)

_RECORDS: Table = EntitlementRecordRow.__table__  # type: ignore[assignment]
_PROFILES: Table = UserProfile.__table__  # type: ignore[assignment]

# Columns overwritten by a newer event; user_id is handled separately
_MUTABLE_COLUMNS = (
    "original_transaction_id",
    "product_id",
    "purchase_date",
    "original_purchase_date",
    "expires_date",
    "is_active",
    "deactivation_reason",
    "deactivated_at",
    "last_notification_type",
    "last_notification_date",
    "receipt_data",
    "verification_status",
    "last_verified_at",
    "updated_at",
)


def _insert(session: AsyncSession, table: Table):  # type: ignore[no-untyped-def]
    """Dialect-specific INSERT supporting ON CONFLICT."""
    dialect = session.bind.dialect.name if session.bind is not None else "postgresql"
    if dialect == "sqlite":
        return sqlite.insert(table)
    return postgresql.insert(table)


def _row_values(record: EntitlementRecord, now: datetime) -> dict[str, object]:
    return {
        "user_id": record.user_id,
        "transaction_id": record.transaction_id,
        "original_transaction_id": record.original_transaction_id or record.transaction_id,
        "product_id": record.product_id,
        "purchase_date": as_utc(record.purchase_date),
        "original_purchase_date": as_utc(record.original_purchase_date),
        "expires_date": as_utc(record.expires_date),
        "is_active": record.is_active,
        "environment": record.environment.value,
        "deactivation_reason": record.deactivation_reason,
        "deactivated_at": as_utc(record.deactivated_at),
        "last_notification_type": record.last_notification_type,
        "last_notification_date": as_utc(record.last_notification_date) or now,
        "receipt_data": record.receipt_data,
        "verification_status": record.verification_status,
        "last_verified_at": as_utc(record.last_verified_at),
        "created_at": now,
        "updated_at": now,
    }


def _to_domain(row: EntitlementRecordRow) -> EntitlementRecord:
    return EntitlementRecord(
        transaction_id=row.transaction_id,
        original_transaction_id=row.original_transaction_id,
        product_id=row.product_id,
        purchase_date=as_utc(row.purchase_date),  # type: ignore[arg-type]
        original_purchase_date=as_utc(row.original_purchase_date),
        expires_date=as_utc(row.expires_date),
        is_active=row.is_active,
        environment=StoreEnvironment(row.environment),
        user_id=row.user_id,
        last_notification_type=row.last_notification_type,
        last_notification_date=as_utc(row.last_notification_date),
        receipt_data=row.receipt_data,
        verification_status=row.verification_status,
        deactivation_reason=row.deactivation_reason,
        deactivated_at=as_utc(row.deactivated_at),
        last_verified_at=as_utc(row.last_verified_at),
    )


def _profile_status(profile: UserProfile) -> DerivedStatus:
    product_ids = tuple(p for p in (profile.active_product_ids or "").split(",") if p)
    return DerivedStatus(
        is_ad_free=profile.ad_free,
        product_type=ProductKind(profile.product_type) if profile.product_type else None,
        expires_at=as_utc(profile.ad_free_expires_at),
        active_product_ids=product_ids,
    )


class EntitlementStore:
    """
    Entitlement persistence on PostgreSQL (SQLite in tests).

    Every public method runs in its own transaction. SQLAlchemy failures are
    raised as StorageError.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        catalog: ProductCatalog,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._session_factory = session_factory
        self._catalog = catalog
        self._clock = clock

    @asynccontextmanager
    async def _transaction(self, operation: str) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session, session.begin():
                yield session
        except SQLAlchemyError as exc:
            logger.error("entitlement_store_error", operation=operation, error=str(exc))
            metrics.record_error("storage_error", operation)
            raise StorageError(operation, str(exc)) from exc

    async def _fetch(self, session: AsyncSession, transaction_id: str) -> EntitlementRecordRow | None:
        result = await session.execute(
            select(EntitlementRecordRow)
            .where(EntitlementRecordRow.transaction_id == transaction_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _conditional_upsert(
        self, session: AsyncSession, record: EntitlementRecord
    ) -> tuple[EntitlementRecordRow, str | None]:
        """Apply the record unless the stored row is newer; returns (row, previous owner)."""
        previous_user = await session.scalar(
            select(EntitlementRecordRow.user_id).where(
                EntitlementRecordRow.transaction_id == record.transaction_id
            )
        )

        stmt = _insert(session, _RECORDS).values(**_row_values(record, self._clock()))
        excluded = stmt.excluded
        set_: dict[str, object] = {name: excluded[name] for name in _MUTABLE_COLUMNS}
        # A newer event without a user never unlinks the stored owner
        set_["user_id"] = func.coalesce(excluded.user_id, _RECORDS.c.user_id)
        stmt = stmt.on_conflict_do_update(
            index_elements=[_RECORDS.c.transaction_id],
            set_=set_,
            where=and_(
                _RECORDS.c.environment == excluded.environment,
                or_(
                    _RECORDS.c.last_notification_date.is_(None),
                    _RECORDS.c.last_notification_date <= excluded.last_notification_date,
                ),
                # Device-held evidence predates a refund or revoke and cannot undo it
                or_(
                    _RECORDS.c.is_active.is_(True),
                    _RECORDS.c.deactivation_reason.is_(None),
                    _RECORDS.c.deactivation_reason.not_in(STORE_REVOCATIONS),
                    func.coalesce(excluded.last_notification_type, "") != CLIENT_VERIFICATION,
                ),
            ),
        )
        await session.execute(stmt)

        row = await self._fetch(session, record.transaction_id)
        if row is None:
            raise StorageError("upsert", f"Record {record.transaction_id} missing after write")
        if row.environment != record.environment.value:
            raise EnvironmentConflictError(
                record.transaction_id, row.environment, record.environment.value
            )
        return row, previous_user

    async def _after_owner_change(self, previous_user: str | None, stored: EntitlementRecord) -> None:
        if previous_user and previous_user != stored.user_id:
            logger.info(
                "entitlement_owner_changed",
                transaction_id=stored.transaction_id,
                previous_user_id=previous_user,
                user_id=stored.user_id,
            )
            await self.recompute(previous_user)

    async def upsert(self, record: EntitlementRecord) -> EntitlementRecord:
        """
        Insert or update the record keyed by transaction_id.

        Returns the stored record, which is unchanged if the stored event time
        is newer than the incoming one.

        Raises:
            EnvironmentConflictError: transaction_id is recorded for the other environment
            StorageError: database failure
        """
        async with self._transaction("upsert") as session:
            row, previous_user = await self._conditional_upsert(session, record)
            stored = _to_domain(row)

        if record.last_notification_date is not None and stored.last_notification_date != as_utc(
            record.last_notification_date
        ):
            logger.info(
                "entitlement_upsert_superseded",
                transaction_id=record.transaction_id,
                stored_event_at=str(stored.last_notification_date),
                incoming_event_at=str(record.last_notification_date),
            )
        else:
            logger.info(
                "entitlement_upserted",
                transaction_id=stored.transaction_id,
                product_id=stored.product_id,
                is_active=stored.is_active,
                user_id=stored.user_id,
            )

        await self._after_owner_change(previous_user, stored)
        return stored

    async def deactivate(
        self,
        transaction_id: str,
        reason: DeactivationReason,
        occurred_at: datetime,
        evidence: EntitlementRecord | None = None,
        notification_type: str | None = None,
    ) -> EntitlementRecord | None:
        """
        Mark a transaction inactive, then recompute its owner's status.

        With evidence (the signed transaction behind the event), an unseen
        transaction is stored as an inactive record so that a late, older
        activation cannot resurrect it. Without evidence an unseen transaction
        is a no-op and None is returned.
        """
        occurred_at = as_utc(occurred_at)  # type: ignore[assignment]
        event_type = notification_type or reason.value
        previous_user: str | None = None

        async with self._transaction("deactivate") as session:
            if evidence is not None:
                tombstone = evidence.with_changes(
                    is_active=False,
                    deactivation_reason=reason.value,
                    deactivated_at=occurred_at,
                    last_notification_type=event_type,
                    last_notification_date=occurred_at,
                )
                row, previous_user = await self._conditional_upsert(session, tombstone)
            else:
                await session.execute(
                    update(EntitlementRecordRow)
                    .where(
                        EntitlementRecordRow.transaction_id == transaction_id,
                        or_(
                            EntitlementRecordRow.last_notification_date.is_(None),
                            EntitlementRecordRow.last_notification_date <= occurred_at,
                        ),
                    )
                    .values(
                        is_active=False,
                        deactivation_reason=reason.value,
                        deactivated_at=occurred_at,
                        last_notification_type=event_type,
                        last_notification_date=occurred_at,
                        updated_at=self._clock(),
                    )
                )
                found = await self._fetch(session, transaction_id)
                if found is None:
                    logger.info("deactivate_unknown_transaction", transaction_id=transaction_id)
                    return None
                row = found
            stored = _to_domain(row)

        logger.info(
            "entitlement_deactivated",
            transaction_id=transaction_id,
            reason=reason.value,
            applied=not stored.is_active and stored.last_notification_date == occurred_at,
            user_id=stored.user_id,
        )

        await self._after_owner_change(previous_user, stored)
        if stored.user_id:
            await self.recompute(stored.user_id)
        return stored

    async def touch(
        self, transaction_id: str, notification_type: str, occurred_at: datetime
    ) -> bool:
        """Update audit fields only. Returns whether a row was updated."""
        occurred_at = as_utc(occurred_at)  # type: ignore[assignment]
        async with self._transaction("touch") as session:
            result = await session.execute(
                update(EntitlementRecordRow)
                .where(
                    EntitlementRecordRow.transaction_id == transaction_id,
                    or_(
                        EntitlementRecordRow.last_notification_date.is_(None),
                        EntitlementRecordRow.last_notification_date <= occurred_at,
                    ),
                )
                .values(
                    last_notification_type=notification_type,
                    last_notification_date=occurred_at,
                    updated_at=self._clock(),
                )
            )
        return bool(result.rowcount)  # type: ignore[attr-defined]

    async def recompute(self, user_id: str) -> DerivedStatus:
        """
        Re-derive and persist the user's status from their records.

        The only writer of user_profiles. Serialized per user by locking the
        profile row for the duration of the scan and write.
        """
        now = self._clock()
        async with self._transaction("recompute") as session:
            await session.execute(
                _insert(session, _PROFILES)
                .values(user_id=user_id, ad_free=False, updated_at=now)
                .on_conflict_do_nothing(index_elements=[_PROFILES.c.user_id])
            )
            result = await session.execute(
                select(UserProfile)
                .where(UserProfile.user_id == user_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            profile = result.scalar_one()

            # Include unlinked renewals that share a chain with the user's records
            chains = select(EntitlementRecordRow.original_transaction_id).where(
                EntitlementRecordRow.user_id == user_id
            )
            rows = await session.scalars(
                select(EntitlementRecordRow).where(
                    or_(
                        EntitlementRecordRow.user_id == user_id,
                        and_(
                            EntitlementRecordRow.user_id.is_(None),
                            EntitlementRecordRow.original_transaction_id.in_(chains),
                        ),
                    )
                )
            )
            status = derive_status([_to_domain(row) for row in rows], self._catalog, now)

            profile.ad_free = status.is_ad_free
            profile.product_type = status.product_type.value if status.product_type else None
            profile.ad_free_expires_at = status.expires_at
            profile.active_product_ids = ",".join(status.active_product_ids) or None
            profile.status_computed_at = now
            profile.updated_at = now

        metrics.record_recompute(status.is_ad_free)
        logger.info(
            "entitlement_status_recomputed",
            user_id=user_id,
            is_ad_free=status.is_ad_free,
            product_type=status.product_type.value if status.product_type else None,
            expires_at=str(status.expires_at) if status.expires_at else None,
        )
        return status

    async def get_status(self, user_id: str) -> DerivedStatus:
        """
        Read the cached status.

        A cached subscription whose expiry has passed is recomputed first, so
        reads never report access the records no longer grant.
        """
        async with self._transaction("get_status") as session:
            profile = await session.get(UserProfile, user_id)
            status = _profile_status(profile) if profile is not None else None

        if status is None:
            return DerivedStatus.not_ad_free()
        if status.is_ad_free and status.expires_at is not None and status.expires_at <= self._clock():
            return await self.recompute(user_id)
        return status

    async def get(self, transaction_id: str) -> EntitlementRecord | None:
        async with self._transaction("get") as session:
            row = await self._fetch(session, transaction_id)
            return _to_domain(row) if row is not None else None

    async def find_user_for_original_transaction(
        self, original_transaction_id: str
    ) -> str | None:
        """Owner of any record in the subscription chain, if one is linked."""
        async with self._transaction("find_user") as session:
            user_id = await session.scalar(
                select(EntitlementRecordRow.user_id)
                .where(
                    EntitlementRecordRow.original_transaction_id == original_transaction_id,
                    EntitlementRecordRow.user_id.is_not(None),
                )
                .order_by(EntitlementRecordRow.purchase_date.desc())
                .limit(1)
            )
        return user_id
