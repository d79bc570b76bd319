"""
Purchase Event Processor - Consumes purchase notifications.

Classifies each notification by response code, grants entitlement for
purchased items, acknowledges them and hands the account back to
reconciliation.
"""

from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from structlog import get_logger

from entitlements.config import Settings, get_settings
from entitlements.exceptions import AnomalyError, PaymentProviderError
from entitlements.models.domain import (
    AccountIdentity,
    BillingResponseCode,
    BillingResult,
    Product,
    ProductType,
    Purchase,
    PurchaseState,
)
from entitlements.observability.metrics import metrics
from entitlements.services.billing_provider import BillingProvider
from entitlements.services.connection_manager import ConnectionManager
from entitlements.services.plan_types import PlanCatalog
from entitlements.services.reconciliation import (
    ReconciliationEngine,
    VerificationTrigger,
    is_subscription_active,
)
from entitlements.services.scheduling import TaskScope

logger = get_logger(__name__)


class PurchaseEventProcessor:
    """Turns purchase notifications into verdicts."""

    def __init__(
        self,
        provider: BillingProvider,
        connection: ConnectionManager,
        plans: PlanCatalog,
        engine_for: Callable[[AccountIdentity], ReconciliationEngine],
        scope: TaskScope,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        settings = settings or get_settings()
        self.provider = provider
        self.connection = connection
        self.plans = plans
        self.engine_for = engine_for
        self.scope = scope
        self.clock = clock
        self.grace_period = timedelta(hours=settings.grace_period_hours)
        self._in_progress: dict[str, Product] = {}

    def purchase_in_progress(self, account_id: str | None = None) -> bool:
        """Whether a purchase flow is open for the account (or for any account)."""
        if account_id is None:
            return bool(self._in_progress)
        return account_id in self._in_progress

    async def begin_purchase(self, account: AccountIdentity, product: Product) -> BillingResult:
        """Start a purchase flow for one product."""
        if not self.connection.is_ready():
            logger.warning("purchase_rejected_not_ready", account_id=account.account_id)
            self.scope.spawn(self.connection.retry(), name="provider-retry")
            return BillingResult(
                BillingResponseCode.SERVICE_DISCONNECTED, "Billing connection not ready"
            )

        if account.account_id in self._in_progress:
            logger.warning(
                "purchase_rejected_in_progress",
                account_id=account.account_id,
                product_id=product.product_id,
            )
            return BillingResult(BillingResponseCode.DEVELOPER_ERROR, "Purchase already in progress")

        if product.product_type == ProductType.SUBSCRIPTION and not product.raw_offer:
            logger.error("purchase_rejected_no_offer", product_id=product.product_id)
            return BillingResult(
                BillingResponseCode.DEVELOPER_ERROR, "Subscription has no offer available"
            )

        self._in_progress[account.account_id] = product
        result = await self.provider.launch_purchase_flow(account, product)
        if not result.ok:
            self._in_progress.pop(account.account_id, None)
            logger.warning(
                "purchase_flow_launch_failed",
                account_id=account.account_id,
                product_id=product.product_id,
                response_code=result.response_code.name,
            )
        else:
            logger.info(
                "purchase_flow_started",
                account_id=account.account_id,
                product_id=product.product_id,
            )
        return result

    async def on_purchases_notified(
        self,
        account: AccountIdentity,
        result: BillingResult,
        purchases: list[Purchase],
        verified: bool = False,
    ) -> None:
        """
        Handle one purchase update for the account.

        Purchases relayed by a client are re-fetched from the provider and
        only the provider's copy is acted on. Pass verified=True for
        purchases that already came from the provider.
        """
        engine = self.engine_for(account)
        code = result.response_code
        try:
            if code == BillingResponseCode.OK:
                if not verified:
                    purchases = await self._verify_relayed(account, purchases)
                await self._handle_purchases(account, engine, purchases)
            elif code == BillingResponseCode.USER_CANCELED:
                logger.info("purchase_canceled_by_user", account_id=account.account_id)
            elif code == BillingResponseCode.ITEM_ALREADY_OWNED:
                await self._handle_already_owned(account, engine)
            elif code.is_connectivity_error:
                logger.warning(
                    "purchase_update_connectivity_error",
                    account_id=account.account_id,
                    response_code=code.name,
                )
                self.connection.schedule_reconnect()
            else:
                logger.error(
                    "purchase_update_failed",
                    account_id=account.account_id,
                    response_code=code.name,
                    debug_message=result.debug_message,
                )
        finally:
            self._in_progress.pop(account.account_id, None)

    async def _verify_relayed(
        self, account: AccountIdentity, purchases: list[Purchase]
    ) -> list[Purchase]:
        verified: list[Purchase] = []
        for relayed in purchases:
            if not relayed.has_token:
                continue
            try:
                purchase = await self.provider.fetch_purchase(
                    relayed.token, relayed.primary_product_id or "", relayed.product_type
                )
            except PaymentProviderError as exc:
                metrics.purchase_events_total.labels(
                    response_code=BillingResponseCode.OK.name, state="unverified"
                ).inc()
                logger.warning(
                    "relayed_purchase_unverified",
                    account_id=account.account_id,
                    purchase_token=relayed.token,
                    error=exc.message,
                )
                continue

            if not purchase.belongs_to(account):
                metrics.anomalies_total.inc()
                logger.error(
                    "relayed_purchase_not_linked",
                    account_id=account.account_id,
                    purchase_token=relayed.token,
                    linked_account_id=purchase.obfuscated_account_id,
                )
                continue
            verified.append(purchase)
        return verified

    async def _handle_purchases(
        self, account: AccountIdentity, engine: ReconciliationEngine, purchases: list[Purchase]
    ) -> None:
        batch = [p for p in purchases if p.has_token]
        for purchase in batch:
            metrics.purchase_events_total.labels(
                response_code=BillingResponseCode.OK.name, state=purchase.state.value
            ).inc()
            if purchase.state == PurchaseState.PURCHASED:
                await self._grant(engine, purchase)
            else:
                logger.info(
                    "purchase_not_completed",
                    account_id=account.account_id,
                    product_ids=sorted(purchase.product_ids),
                    state=purchase.state.value,
                )

        if batch:
            engine.invalidate()
            engine.request_verification(VerificationTrigger.PURCHASE_EVENT)

    async def _grant(self, engine: ReconciliationEngine, purchase: Purchase) -> None:
        plan = self.plans.plan_for_product_ids(purchase.product_ids)
        logger.info(
            "purchase_granted",
            account_id=engine.account_id,
            order_id=purchase.order_id,
            product_ids=sorted(purchase.product_ids),
            plan_type=plan.value,
        )
        await engine.record_purchase(purchase, plan)
        if not purchase.acknowledged:
            self.scope.spawn(self._acknowledge(purchase), name=f"acknowledge-{purchase.order_id}")

    async def _acknowledge(self, purchase: Purchase) -> None:
        result = await self.provider.acknowledge_purchase(purchase)
        metrics.acknowledgements_total.labels(success=str(result.ok)).inc()
        if result.ok:
            logger.info("purchase_acknowledged", order_id=purchase.order_id)
        else:
            logger.error(
                "purchase_acknowledgement_failed",
                order_id=purchase.order_id,
                response_code=result.response_code.name,
                debug_message=result.debug_message,
            )

    def _owned_match(
        self, account: AccountIdentity, product: Product, purchases: list[Purchase]
    ) -> Purchase | None:
        now = self.clock()
        for purchase in purchases:
            if not purchase.has_token or product.product_id not in purchase.product_ids:
                continue
            if purchase.state != PurchaseState.PURCHASED:
                continue
            if purchase.product_type == ProductType.SUBSCRIPTION and not is_subscription_active(
                purchase, now, self.grace_period
            ):
                continue
            if purchase.belongs_to(account):
                return purchase
        return None

    async def _handle_already_owned(
        self, account: AccountIdentity, engine: ReconciliationEngine
    ) -> None:
        """Targeted reconciliation for the product whose flow reported ITEM_ALREADY_OWNED."""
        product = self._in_progress.get(account.account_id)
        metrics.purchase_events_total.labels(
            response_code=BillingResponseCode.ITEM_ALREADY_OWNED.name, state="owned"
        ).inc()

        if product is None:
            logger.warning("item_already_owned_without_flow", account_id=account.account_id)
        else:
            response = await self.provider.query_purchases(account, product.product_type)
            if not response.result.ok:
                logger.warning(
                    "item_already_owned_query_failed",
                    account_id=account.account_id,
                    product_id=product.product_id,
                    response_code=response.result.response_code.name,
                )
                if response.result.response_code.is_connectivity_error:
                    self.connection.schedule_reconnect()
            else:
                match = self._owned_match(account, product, response.purchases)
                if match is not None:
                    await self._grant(engine, match)
                else:
                    error = AnomalyError(
                        account.account_id,
                        product.product_id,
                        "provider reports item owned but no matching purchase for account",
                    )
                    metrics.anomalies_total.inc()
                    logger.error(
                        "purchase_ownership_anomaly",
                        account_id=account.account_id,
                        product_id=product.product_id,
                        error=str(error),
                    )

        engine.invalidate()
        engine.request_verification(VerificationTrigger.PURCHASE_EVENT)
