"""
Tests for the remote ledger client.

The database session is mocked; statements are checked by compiling them
for PostgreSQL.
"""

from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest
from conftest import make_lifetime, make_purchase
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from entitlements.db.models import EntitlementRecord, PurchaseTokenRecord
from entitlements.exceptions import LedgerError
from entitlements.models.domain import LedgerUpdate, PlanType, ProductType
from entitlements.services.ledger import EntitlementLedger

PURCHASED_AT = datetime(2026, 10, 1, tzinfo=UTC)


@pytest.fixture
def db_session() -> AsyncMock:
    """Create a mock database session."""
    session = AsyncMock(spec=AsyncSession)
    session.commit = AsyncMock()
    session.execute = AsyncMock()
    return session


@pytest.fixture
def ledger_client(db_session) -> EntitlementLedger:
    context = MagicMock()
    context.__aenter__ = AsyncMock(return_value=db_session)
    context.__aexit__ = AsyncMock(return_value=False)
    return EntitlementLedger(MagicMock(return_value=context))


def _params(db_session: AsyncMock) -> dict:
    stmt = db_session.execute.call_args.args[0]
    return stmt.compile(dialect=postgresql.dialect()).params


def _row(**fields) -> MagicMock:
    row = MagicMock(spec=EntitlementRecord)
    row.is_entitled = fields.get("is_entitled", True)
    row.plan_type = fields.get("plan_type", "Annual")
    row.order_id = fields.get("order_id", "GPA.1")
    row.product_id = fields.get("product_id", "annual")
    row.purchase_time = fields.get("purchase_time", PURCHASED_AT)
    return row


class TestLedgerGet:
    """Tests for EntitlementLedger.get."""

    @pytest.mark.asyncio
    async def test_existing_record(self, ledger_client, db_session):
        """Test a stored row maps to a LedgerRecord."""
        result = MagicMock()
        result.scalar_one_or_none.return_value = _row()
        db_session.execute.return_value = result

        record = await ledger_client.get("user-1")

        assert record.is_entitled
        assert record.plan_type == PlanType.ANNUAL
        assert record.order_id == "GPA.1"
        assert record.purchase_time == PURCHASED_AT

    @pytest.mark.asyncio
    async def test_missing_record_not_entitled(self, ledger_client, db_session):
        """Test a missing row reads as not entitled."""
        result = MagicMock()
        result.scalar_one_or_none.return_value = None
        db_session.execute.return_value = result

        record = await ledger_client.get("user-1")

        assert record.is_entitled is False
        assert record.plan_type is None

    @pytest.mark.asyncio
    async def test_unrecognised_plan_is_unknown(self, ledger_client, db_session):
        """Test an unexpected stored plan maps to UNKNOWN."""
        result = MagicMock()
        result.scalar_one_or_none.return_value = _row(plan_type="Weekly")
        db_session.execute.return_value = result

        record = await ledger_client.get("user-1")

        assert record.plan_type == PlanType.UNKNOWN

    @pytest.mark.asyncio
    async def test_database_error_raises_ledger_error(self, ledger_client, db_session):
        """Test database failures surface as LedgerError."""
        db_session.execute.side_effect = SQLAlchemyError("connection refused")

        with pytest.raises(LedgerError) as exc_info:
            await ledger_client.get("user-1")

        assert exc_info.value.operation == "get"


class TestLedgerSet:
    """Tests for EntitlementLedger.set."""

    @pytest.mark.asyncio
    async def test_entitled_update_writes_purchase_fields(self, ledger_client, db_session):
        """Test an entitled update writes plan and purchase fields and commits."""
        update = LedgerUpdate(
            is_entitled=True,
            plan_type=PlanType.MONTHLY,
            order_id="GPA.2",
            product_id="monthly",
            purchase_time=PURCHASED_AT,
            purchase_token="token-2",
            account_email="a@example.com",
        )

        await ledger_client.set("user-1", update)

        params = _params(db_session)
        assert params["account_id"] == "user-1"
        assert params["plan_type"] == "Monthly"
        assert params["order_id"] == "GPA.2"
        assert params["purchase_token"] == "token-2"
        assert params["account_email"] == "a@example.com"
        db_session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_merge_keeps_unset_fields(self, ledger_client, db_session):
        """Test a merge write omits fields the update leaves unset."""
        await ledger_client.set("user-1", LedgerUpdate(True, PlanType.ANNUAL))

        params = _params(db_session)
        assert params["is_entitled"] is True
        assert "order_id" not in params
        assert "purchase_token" not in params

    @pytest.mark.asyncio
    async def test_not_entitled_clears_purchase_fields(self, ledger_client, db_session):
        """Test revoking entitlement nulls the purchase fields."""
        await ledger_client.set("user-1", LedgerUpdate(False))

        params = _params(db_session)
        assert params["is_entitled"] is False
        assert params["plan_type"] is None
        assert params["order_id"] is None
        assert params["purchase_token"] is None

    @pytest.mark.asyncio
    async def test_write_error_raises_ledger_error(self, ledger_client, db_session):
        """Test write failures surface as LedgerError."""
        db_session.execute.side_effect = SQLAlchemyError("deadlock")

        with pytest.raises(LedgerError) as exc_info:
            await ledger_client.set("user-1", LedgerUpdate(True, PlanType.ANNUAL))

        assert exc_info.value.operation == "set"
        db_session.commit.assert_not_awaited()


class TestPurchaseTokenRegistry:
    """Tests for token registration and lookup."""

    @pytest.mark.asyncio
    async def test_register_token(self, ledger_client, db_session):
        """Test a purchase token is registered with its product."""
        purchase = make_lifetime(token="token-life")

        await ledger_client.register_purchase_token("user-1", purchase)

        params = _params(db_session)
        assert params["purchase_token"] == "token-life"
        assert params["product_id"] == "lifetime"
        assert params["product_type"] == "inapp"
        db_session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_tokenless_purchase_not_registered(self, ledger_client, db_session):
        """Test purchases without a token are skipped."""
        await ledger_client.register_purchase_token("user-1", make_purchase(token=""))

        db_session.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_list_tokens(self, ledger_client, db_session):
        """Test registered tokens map to GooglePlayPurchaseToken."""
        row = MagicMock(spec=PurchaseTokenRecord)
        row.purchase_token = "token-subscription"
        row.product_id = "monthly"
        row.product_type = "subs"
        result = MagicMock()
        result.scalars.return_value.all.return_value = [row]
        db_session.execute.return_value = result

        tokens = await ledger_client.purchase_tokens("user-1", ProductType.SUBSCRIPTION)

        assert len(tokens) == 1
        assert tokens[0].token == "token-subscription"
        assert tokens[0].product_type == ProductType.SUBSCRIPTION

    @pytest.mark.asyncio
    async def test_account_for_token(self, ledger_client, db_session):
        """Test token lookup returns the owning account."""
        result = MagicMock()
        result.scalar_one_or_none.return_value = "user-1"
        db_session.execute.return_value = result

        assert await ledger_client.account_for_token("token-sub") == "user-1"

    @pytest.mark.asyncio
    async def test_lookup_error_raises_ledger_error(self, ledger_client, db_session):
        """Test lookup failures surface as LedgerError."""
        db_session.execute.side_effect = SQLAlchemyError("timeout")

        with pytest.raises(LedgerError):
            await ledger_client.account_for_token("token-sub")
