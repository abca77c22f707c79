"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
"""

from datetime import UTC, datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class EntitlementRecordRow(Base):
    """
    ORM model for entitlement_records table.

    One row per App Store transaction. Never hard-deleted: refunds, revocations
    and expiries flip is_active and keep the history.
    """

    __tablename__ = "entitlement_records"

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer(), "sqlite"),
        primary_key=True,
        autoincrement=True,
    )

    # Owner (opaque auth user id); null until a notification is linked to a user
    user_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Transaction identity
    transaction_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    original_transaction_id: Mapped[str] = mapped_column(String(255), nullable=False)
    product_id: Mapped[str] = mapped_column(String(255), nullable=False)

    # Purchase metadata
    purchase_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    original_purchase_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    expires_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Status
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    environment: Mapped[str] = mapped_column(String(20), nullable=False, default="production")
    deactivation_reason: Mapped[str | None] = mapped_column(String(50), nullable=True)
    deactivated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Most recent event that touched this record (event time, not arrival time)
    last_notification_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    last_notification_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Verification evidence
    receipt_data: Mapped[str | None] = mapped_column(Text, nullable=True)
    verification_status: Mapped[str | None] = mapped_column(String(50), nullable=True)
    last_verified_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Audit timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint(
            "environment IN ('sandbox', 'production')", name="ck_entitlement_environment"
        ),
        Index("idx_entitlement_records_user_id", "user_id"),
        Index("idx_entitlement_records_original_tx_id", "original_transaction_id"),
    )


class UserProfile(Base):
    """
    ORM model for user_profiles table.

    Cached derived status. Only EntitlementStore.recompute writes these columns.
    """

    __tablename__ = "user_profiles"

    user_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    ad_free: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    product_type: Mapped[str | None] = mapped_column(String(20), nullable=True)
    ad_free_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    # Comma-separated product ids of the qualifying records
    active_product_ids: Mapped[str | None] = mapped_column(Text, nullable=True)
    status_computed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint(
            "product_type IS NULL OR product_type IN ('lifetime', 'subscription')",
            name="ck_user_profiles_product_type",
        ),
    )
