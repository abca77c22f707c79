"""initial entitlements schema

Revision ID: 2025_10_08_0000
Revises:
Create Date: 2025-10-08 00:00:00.000000

Creates:
- entitlement_records: one row per App Store transaction, never hard-deleted
- user_profiles: cached ad-free status derived from entitlement_records
"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "2025_10_08_0000"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "entitlement_records",
        sa.Column(
            "id",
            sa.BigInteger().with_variant(sa.Integer(), "sqlite"),
            autoincrement=True,
            nullable=False,
        ),
        sa.Column("user_id", sa.String(length=255), nullable=True),
        sa.Column("transaction_id", sa.String(length=255), nullable=False),
        sa.Column("original_transaction_id", sa.String(length=255), nullable=False),
        sa.Column("product_id", sa.String(length=255), nullable=False),
        sa.Column("purchase_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("original_purchase_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column(
            "environment", sa.String(length=20), nullable=False, server_default="production"
        ),
        sa.Column("deactivation_reason", sa.String(length=50), nullable=True),
        sa.Column("deactivated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_notification_type", sa.String(length=50), nullable=True),
        sa.Column("last_notification_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("receipt_data", sa.Text(), nullable=True),
        sa.Column("verification_status", sa.String(length=50), nullable=True),
        sa.Column("last_verified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("transaction_id", name="uq_entitlement_records_transaction_id"),
        sa.CheckConstraint(
            "environment IN ('sandbox', 'production')", name="ck_entitlement_environment"
        ),
    )
    op.create_index(
        "idx_entitlement_records_user_id",
        "entitlement_records",
        ["user_id"],
    )
    op.create_index(
        "idx_entitlement_records_original_tx_id",
        "entitlement_records",
        ["original_transaction_id"],
    )

    op.create_table(
        "user_profiles",
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("ad_free", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("product_type", sa.String(length=20), nullable=True),
        sa.Column("ad_free_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("active_product_ids", sa.Text(), nullable=True),
        sa.Column("status_computed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.PrimaryKeyConstraint("user_id"),
        sa.CheckConstraint(
            "product_type IS NULL OR product_type IN ('lifetime', 'subscription')",
            name="ck_user_profiles_product_type",
        ),
    )


def downgrade() -> None:
    op.drop_table("user_profiles")
    op.drop_index("idx_entitlement_records_original_tx_id", table_name="entitlement_records")
    op.drop_index("idx_entitlement_records_user_id", table_name="entitlement_records")
    op.drop_table("entitlement_records")
