"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
"""

from datetime import UTC, datetime
from uuid import UUID, uuid4

from sqlalchemy import BigInteger, Boolean, DateTime, Index, String, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class EntitlementRecord(Base):
    """
    ORM model for entitlement_records table.

    The remote ledger: one authoritative entitlement row per account.
    """

    __tablename__ = "entitlement_records"

    account_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    account_email: Mapped[str | None] = mapped_column(String(255), nullable=True)

    is_entitled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    plan_type: Mapped[str | None] = mapped_column(String(20), nullable=True)

    # Purchase that granted the entitlement (cleared on revocation)
    order_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    product_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    purchase_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    purchase_token: Mapped[str | None] = mapped_column(String(4096), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (Index("idx_entitlement_records_order_id", "order_id"),)

    def __repr__(self) -> str:
        return (
            f"<EntitlementRecord(account_id={self.account_id}, "
            f"is_entitled={self.is_entitled}, plan_type={self.plan_type})>"
        )


class PurchaseTokenRecord(Base):
    """
    ORM model for purchase_tokens table.

    Every purchase token seen for an account, so live purchase state can be
    re-queried from Google Play.
    """

    __tablename__ = "purchase_tokens"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    account_id: Mapped[str] = mapped_column(String(255), nullable=False)
    purchase_token: Mapped[str] = mapped_column(String(4096), nullable=False)
    product_id: Mapped[str] = mapped_column(String(255), nullable=False)
    product_type: Mapped[str] = mapped_column(String(10), nullable=False)
    order_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    purchase_time_millis: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        UniqueConstraint("purchase_token", name="uq_purchase_tokens_token"),
        Index("idx_purchase_tokens_account_type", "account_id", "product_type"),
    )

    def __repr__(self) -> str:
        return (
            f"<PurchaseTokenRecord(account_id={self.account_id}, "
            f"product_id={self.product_id}, product_type={self.product_type})>"
        )
