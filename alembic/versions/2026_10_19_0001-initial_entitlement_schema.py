"""initial entitlement schema

Revision ID: 2026_10_19_0001
Revises:
Create Date: 2026-10-19 00:00:00.000000

Creates the remote ledger tables:
- entitlement_records: authoritative entitlement per account
- purchase_tokens: purchase tokens seen per account, for live re-query
"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "2026_10_19_0001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "entitlement_records",
        sa.Column("account_id", sa.String(length=255), nullable=False),
        sa.Column("account_email", sa.String(length=255), nullable=True),
        sa.Column("is_entitled", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("plan_type", sa.String(length=20), nullable=True),
        sa.Column("order_id", sa.String(length=255), nullable=True),
        sa.Column("product_id", sa.String(length=255), nullable=True),
        sa.Column("purchase_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("purchase_token", sa.String(length=4096), nullable=True),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.PrimaryKeyConstraint("account_id"),
        sa.CheckConstraint(
            "plan_type IN ('Monthly', 'Annual', 'Lifetime', 'Unknown')",
            name="ck_entitlement_records_plan_type",
        ),
        sa.CheckConstraint(
            "is_entitled OR plan_type IS NULL",
            name="ck_entitlement_records_plan_requires_entitlement",
        ),
    )
    op.create_index("idx_entitlement_records_order_id", "entitlement_records", ["order_id"])

    op.create_table(
        "purchase_tokens",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("account_id", sa.String(length=255), nullable=False),
        sa.Column("purchase_token", sa.String(length=4096), nullable=False),
        sa.Column("product_id", sa.String(length=255), nullable=False),
        sa.Column("product_type", sa.String(length=10), nullable=False),
        sa.Column("order_id", sa.String(length=255), nullable=True),
        sa.Column("purchase_time_millis", sa.BigInteger(), nullable=True),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("purchase_token", name="uq_purchase_tokens_token"),
        sa.CheckConstraint(
            "product_type IN ('subs', 'inapp')", name="ck_purchase_tokens_product_type"
        ),
    )
    op.create_index(
        "idx_purchase_tokens_account_type", "purchase_tokens", ["account_id", "product_type"]
    )


def downgrade() -> None:
    op.drop_index("idx_purchase_tokens_account_type", table_name="purchase_tokens")
    op.drop_table("purchase_tokens")
    op.drop_index("idx_entitlement_records_order_id", table_name="entitlement_records")
    op.drop_table("entitlement_records")
