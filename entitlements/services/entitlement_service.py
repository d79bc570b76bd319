"""
Entitlement Service - Composition root.

Owns the provider connection, the catalog, the purchase event processor and
one reconciliation engine per account, plus the task scope they share.
Constructed explicitly (by the application lifespan) and torn down with close().
"""

from collections.abc import Callable
from datetime import UTC, datetime

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from structlog import get_logger

from entitlements.config import Settings, get_settings
from entitlements.exceptions import LedgerError, WebhookVerificationError
from entitlements.models.domain import (
    AccountIdentity,
    BillingResponseCode,
    BillingResult,
    EntitlementVerdict,
    Product,
    ProductType,
    Purchase,
    PurchaseState,
)
from entitlements.models.google_play import GooglePlayWebhookEvent
from entitlements.services.billing_provider import BillingProvider
from entitlements.services.catalog import CatalogQueryPipeline
from entitlements.services.connection_manager import ConnectionManager
from entitlements.services.google_play_provider import GooglePlayProvider
from entitlements.services.ledger import EntitlementLedger
from entitlements.services.local_cache import LocalCacheStore
from entitlements.services.plan_types import PlanCatalog
from entitlements.services.purchase_events import PurchaseEventProcessor
from entitlements.services.reconciliation import ReconciliationEngine, VerificationTrigger
from entitlements.services.scheduling import TaskScope, Timer

logger = get_logger(__name__)


class EntitlementService:
    """Entry point for every entitlement operation."""

    def __init__(
        self,
        provider: BillingProvider,
        ledger: EntitlementLedger,
        cache: LocalCacheStore,
        settings: Settings | None = None,
        plans: PlanCatalog | None = None,
        timer: Timer | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.settings = settings or get_settings()
        self.provider = provider
        self.ledger = ledger
        self.cache = cache
        self.clock = clock
        self.plans = plans or PlanCatalog.from_settings(self.settings)
        self.scope = TaskScope("entitlement-service")

        self.connection = ConnectionManager(
            provider,
            purchase_in_progress=lambda: self.purchases.purchase_in_progress(),
            timer=timer,
            max_attempts=self.settings.max_connection_attempts,
            base_delay=self.settings.reconnect_base_delay_seconds,
            max_exponent=self.settings.reconnect_max_exponent,
        )
        self.catalog = CatalogQueryPipeline(
            provider, self.plans, self.connection.is_ready, self.connection.connect, self.settings
        )
        self.purchases = PurchaseEventProcessor(
            provider,
            self.connection,
            self.plans,
            self.engine_for,
            self.scope,
            settings=self.settings,
            clock=clock,
        )
        self._engines: dict[str, ReconciliationEngine] = {}

        self.connection.on_ready(self._on_connection_ready)
        self.connection.on_lost(self._on_connection_lost)
        self.connection.on_permanently_failed(self._clear_loading)

    @classmethod
    def from_settings(
        cls,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings | None = None,
    ) -> "EntitlementService":
        """Wire the production stack: PostgreSQL ledger, SQLite cache, Google Play."""
        settings = settings or get_settings()
        ledger = EntitlementLedger(session_factory)
        cache = LocalCacheStore(settings.cache_path)
        plans = PlanCatalog.from_settings(settings)
        provider = GooglePlayProvider(
            service_account_json=settings.GOOGLE_PLAY_SERVICE_ACCOUNT,
            package_name=settings.ANDROID_PACKAGE_NAME,
            token_registry=ledger,
            plans=plans,
        )
        return cls(provider, ledger, cache, plans=plans, settings=settings)

    async def start(self) -> None:
        """Open the provider connection in the background."""
        logger.info("entitlement_service_starting")
        self.scope.spawn(self.connection.connect(), name="provider-connect")

    # ------------------------------------------------------------------
    # Engines
    # ------------------------------------------------------------------

    def engine_for(self, account: AccountIdentity) -> ReconciliationEngine:
        """Get the account's engine, creating (and warm-starting) it on first use."""
        engine = self._engines.get(account.account_id)
        if engine is not None:
            if account.email and engine.account.email != account.email:
                engine.account = account
            return engine

        engine = ReconciliationEngine(
            account=account,
            cache=self.cache,
            ledger=self.ledger,
            provider=self.provider,
            is_ready=self.connection.is_ready,
            plans=self.plans,
            scope=self.scope,
            on_connectivity_error=self.connection.schedule_reconnect,
            settings=self.settings,
            clock=self.clock,
        )
        engine.prime_from_cache()
        self._engines[account.account_id] = engine
        return engine

    @property
    def engines(self) -> list[ReconciliationEngine]:
        return list(self._engines.values())

    def _on_connection_ready(self) -> None:
        self.scope.spawn(self.catalog.query_products(), name="catalog-query")
        for engine in self._engines.values():
            if not engine.initial_check_done:
                engine.request_verification(VerificationTrigger.SERVICE_START)

    def _on_connection_lost(self) -> None:
        # The first verify after a reconnect always reads the sources
        for engine in self._engines.values():
            engine.invalidate()

    def _clear_loading(self) -> None:
        for engine in self._engines.values():
            engine.clear_loading()

    # ------------------------------------------------------------------
    # Caller-facing operations
    # ------------------------------------------------------------------

    async def verify(self, account: AccountIdentity) -> EntitlementVerdict | None:
        return await self.engine_for(account).verify()

    async def force_refresh(self, account: AccountIdentity) -> EntitlementVerdict | None:
        return await self.engine_for(account).force_refresh()

    async def check_for_possible_cancellation(
        self, account: AccountIdentity
    ) -> EntitlementVerdict | None:
        return await self.engine_for(account).check_for_possible_cancellation()

    def is_loading(self, account: AccountIdentity) -> bool:
        return self.engine_for(account).is_loading.value

    async def products(self) -> list[Product]:
        """Current catalog; queried first when nothing has been published yet."""
        if not self.catalog.products.value:
            await self.catalog.query_products()
        return self.catalog.products.value

    async def purchase(self, account: AccountIdentity, product_id: str) -> BillingResult:
        product = self.catalog.find(product_id)
        if product is None:
            logger.warning("purchase_unknown_product", product_id=product_id)
            return BillingResult(BillingResponseCode.ITEM_UNAVAILABLE, f"Unknown product: {product_id}")
        return await self.purchases.begin_purchase(account, product)

    async def notify_purchases(
        self, account: AccountIdentity, result: BillingResult, purchases: list[Purchase]
    ) -> EntitlementVerdict | None:
        """Feed a client-relayed purchase update to the processor."""
        await self.purchases.on_purchases_notified(account, result, purchases)
        return self.engine_for(account).verdict.value

    async def retry_connection(self) -> None:
        await self.connection.retry()

    async def handle_webhook(self, payload: bytes) -> GooglePlayWebhookEvent:
        """
        Route a Real-Time Developer Notification to the linked account.

        Raises:
            WebhookVerificationError: If the notification is invalid or cannot be routed
            PaymentProviderError: If the purchase cannot be fetched
        """
        event = await self.provider.verify_webhook(payload)
        purchase = await self.provider.fetch_purchase(
            event.purchase_token, event.product_id, event.product_type
        )

        try:
            account_id = await self.ledger.account_for_token(event.purchase_token)
        except LedgerError as exc:
            raise WebhookVerificationError(f"Purchase token lookup failed: {exc.message}") from exc

        account_id = account_id or purchase.obfuscated_account_id
        if not account_id:
            raise WebhookVerificationError("Purchase is not linked to an account")

        account = AccountIdentity(account_id=account_id)
        logger.info(
            "google_play_webhook_routed",
            account_id=account_id,
            event_type=event.event_type,
            state=purchase.state.value,
        )

        # Canceled subscriptions still read as purchased until they expire
        grants = purchase.state == PurchaseState.PURCHASED and (
            purchase.product_type == ProductType.ONE_TIME or purchase.auto_renewing
        )
        if grants:
            await self.purchases.on_purchases_notified(
                account, BillingResult.success(), [purchase], verified=True
            )
        else:
            engine = self.engine_for(account)
            self.scope.spawn(
                engine.check_for_possible_cancellation(), name=f"cancellation-check-{account_id}"
            )
        return event

    async def close(self) -> None:
        """Cancel all work and release the provider connection and local cache."""
        logger.info("entitlement_service_stopping", engines=len(self._engines))
        for engine in self._engines.values():
            await engine.close()
        await self.scope.close()
        await self.connection.close()
        self.cache.close()


