"""
Remote Ledger - Authoritative entitlement record per account.

NO DICTIONARIES - Reads return LedgerRecord, writes take LedgerUpdate.
Every database failure is raised as LedgerError.
"""

from datetime import UTC, datetime

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from structlog import get_logger

from entitlements.db.models import EntitlementRecord, PurchaseTokenRecord
from entitlements.exceptions import LedgerError
from entitlements.models.domain import (
    LedgerRecord,
    LedgerUpdate,
    PlanType,
    ProductType,
    Purchase,
)
from entitlements.models.google_play import GooglePlayPurchaseToken
from entitlements.observability.metrics import metrics

logger = get_logger(__name__)


def _to_record(row: EntitlementRecord | None) -> LedgerRecord:
    if row is None:
        return LedgerRecord.empty()
    plan: PlanType | None = None
    if row.is_entitled and row.plan_type:
        try:
            plan = PlanType(row.plan_type)
        except ValueError:
            plan = PlanType.UNKNOWN
    return LedgerRecord(
        is_entitled=row.is_entitled,
        plan_type=plan,
        order_id=row.order_id,
        product_id=row.product_id,
        purchase_time=row.purchase_time,
    )


class EntitlementLedger:
    """Remote ledger client backed by the entitlement_records table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get(self, account_id: str) -> LedgerRecord:
        """
        Read the account's record. A missing row reads as not entitled.

        Raises:
            LedgerError: If the ledger cannot be read
        """
        try:
            async with self._session_factory() as session:
                stmt = select(EntitlementRecord).where(EntitlementRecord.account_id == account_id)
                result = await session.execute(stmt)
                return _to_record(result.scalar_one_or_none())
        except SQLAlchemyError as exc:
            metrics.ledger_errors_total.labels(operation="get").inc()
            logger.error("ledger_read_failed", account_id=account_id, error=str(exc))
            raise LedgerError("get", str(exc)) from exc

    async def set(self, account_id: str, update: LedgerUpdate, merge: bool = True) -> None:
        """
        Write the account's record.

        With merge, fields the update leaves unset keep their stored values,
        except that a non-entitled update always clears the purchase fields.

        Raises:
            LedgerError: If the ledger cannot be written
        """
        values: dict[str, object] = {
            "is_entitled": update.is_entitled,
            "plan_type": update.plan_type.value if update.is_entitled and update.plan_type else None,
            "updated_at": datetime.now(UTC),
        }
        purchase_fields = {
            "order_id": update.order_id,
            "product_id": update.product_id,
            "purchase_time": update.purchase_time,
            "purchase_token": update.purchase_token,
        }
        if not update.is_entitled:
            values.update({key: None for key in purchase_fields})
        elif merge:
            values.update({key: value for key, value in purchase_fields.items() if value is not None})
        else:
            values.update(purchase_fields)
        if update.account_email is not None:
            values["account_email"] = update.account_email

        stmt = insert(EntitlementRecord).values(account_id=account_id, **values)
        stmt = stmt.on_conflict_do_update(index_elements=["account_id"], set_=values)

        try:
            async with self._session_factory() as session:
                await session.execute(stmt)
                await session.commit()
        except SQLAlchemyError as exc:
            metrics.ledger_errors_total.labels(operation="set").inc()
            logger.error("ledger_write_failed", account_id=account_id, error=str(exc))
            raise LedgerError("set", str(exc)) from exc

        logger.info(
            "ledger_record_written",
            account_id=account_id,
            is_entitled=update.is_entitled,
            plan_type=update.plan_type.value if update.plan_type else None,
        )

    async def register_purchase_token(self, account_id: str, purchase: Purchase) -> None:
        """
        Remember a purchase token so the account's live purchases can be re-queried.

        Re-registering a known token is a no-op.

        Raises:
            LedgerError: If the registry cannot be written
        """
        if not purchase.has_token or purchase.primary_product_id is None:
            return

        stmt = (
            insert(PurchaseTokenRecord)
            .values(
                account_id=account_id,
                purchase_token=purchase.token,
                product_id=purchase.primary_product_id,
                product_type=purchase.product_type.value,
                order_id=purchase.order_id,
                purchase_time_millis=int(purchase.purchase_time.timestamp() * 1000),
            )
            .on_conflict_do_nothing(index_elements=["purchase_token"])
        )

        try:
            async with self._session_factory() as session:
                await session.execute(stmt)
                await session.commit()
        except SQLAlchemyError as exc:
            metrics.ledger_errors_total.labels(operation="register_token").inc()
            logger.error("purchase_token_register_failed", account_id=account_id, error=str(exc))
            raise LedgerError("register_token", str(exc)) from exc

    async def purchase_tokens(
        self, account_id: str, product_type: ProductType
    ) -> list[GooglePlayPurchaseToken]:
        """
        List registered purchase tokens for the account, newest first.

        Raises:
            LedgerError: If the registry cannot be read
        """
        try:
            async with self._session_factory() as session:
                stmt = (
                    select(PurchaseTokenRecord)
                    .where(
                        PurchaseTokenRecord.account_id == account_id,
                        PurchaseTokenRecord.product_type == product_type.value,
                    )
                    .order_by(PurchaseTokenRecord.created_at.desc())
                )
                result = await session.execute(stmt)
                rows = result.scalars().all()
        except SQLAlchemyError as exc:
            metrics.ledger_errors_total.labels(operation="list_tokens").inc()
            logger.error("purchase_token_list_failed", account_id=account_id, error=str(exc))
            raise LedgerError("list_tokens", str(exc)) from exc

        return [
            GooglePlayPurchaseToken(
                token=row.purchase_token,
                product_id=row.product_id,
                product_type=ProductType(row.product_type),
            )
            for row in rows
        ]

    async def account_for_token(self, purchase_token: str) -> str | None:
        """
        Find the account a purchase token was registered for.

        Raises:
            LedgerError: If the registry cannot be read
        """
        try:
            async with self._session_factory() as session:
                stmt = select(PurchaseTokenRecord.account_id).where(
                    PurchaseTokenRecord.purchase_token == purchase_token
                )
                result = await session.execute(stmt)
                return result.scalar_one_or_none()
        except SQLAlchemyError as exc:
            metrics.ledger_errors_total.labels(operation="lookup_token").inc()
            logger.error("purchase_token_lookup_failed", error=str(exc))
            raise LedgerError("lookup_token", str(exc)) from exc
