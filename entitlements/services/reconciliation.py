"""
Entitlement Reconciliation Engine.

Decides whether an account is entitled by reconciling the local cache, the
remote ledger and the provider's live purchases. The merge policy is the
pure function merge_entitlement; ReconciliationEngine does the I/O around it.

One engine per account. At most one reconciliation runs per engine; starting
a new one cancels the previous run and waits for it to unwind.
"""

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from structlog import get_logger

from entitlements.config import Settings, get_settings
from entitlements.exceptions import LedgerError, VerificationTimeoutError
from entitlements.models.domain import (
    AccountIdentity,
    CacheRecord,
    EntitlementVerdict,
    LedgerRecord,
    LedgerUpdate,
    PlanType,
    ProductType,
    Purchase,
    PurchaseState,
    VerdictSource,
)
from entitlements.observability.logging import log_context
from entitlements.observability.metrics import metrics
from entitlements.observability.tracing import trace_operation
from entitlements.services.billing_provider import BillingProvider
from entitlements.services.ledger import EntitlementLedger
from entitlements.services.local_cache import LocalCacheStore
from entitlements.services.observable import ObservableValue
from entitlements.services.plan_types import PlanCatalog
from entitlements.services.scheduling import TaskScope

logger = get_logger(__name__)

GRACE_PERIOD = timedelta(days=2)


def _utc_now() -> datetime:
    return datetime.now(UTC)


class VerificationTrigger(str, Enum):
    """Why a reconciliation was requested."""

    ROUTINE = "routine"
    SERVICE_START = "service_start"
    FORCED_REFRESH = "forced_refresh"
    PURCHASE_EVENT = "purchase_event"
    CANCELLATION_CHECK = "cancellation_check"

    @property
    def bypasses_window(self) -> bool:
        """Triggers that ignore the validity window."""
        return self in (
            VerificationTrigger.FORCED_REFRESH,
            VerificationTrigger.PURCHASE_EVENT,
            VerificationTrigger.CANCELLATION_CHECK,
        )


@dataclass(frozen=True)
class MergeResult:
    """A merged verdict and the live purchase that proved it, if any."""

    verdict: EntitlementVerdict
    matched_purchase: Purchase | None = None


def is_subscription_active(
    purchase: Purchase, now: datetime, grace_period: timedelta = GRACE_PERIOD
) -> bool:
    """Purchased and either auto-renewing or still inside the grace period."""
    if purchase.state != PurchaseState.PURCHASED:
        return False
    return purchase.auto_renewing or now <= purchase.purchase_time + grace_period


def _is_lifetime_class(purchase: Purchase, plans: PlanCatalog) -> bool:
    return purchase.product_type == ProductType.ONE_TIME or plans.is_lifetime(purchase.product_ids)


def _is_active(
    purchase: Purchase, plans: PlanCatalog, now: datetime, grace_period: timedelta
) -> bool:
    if _is_lifetime_class(purchase, plans):
        return purchase.state == PurchaseState.PURCHASED
    return is_subscription_active(purchase, now, grace_period)


def _plan_of(purchase: Purchase, plans: PlanCatalog) -> PlanType:
    plan = plans.plan_for_product_ids(purchase.product_ids)
    if plan == PlanType.UNKNOWN and purchase.product_type == ProductType.ONE_TIME:
        return PlanType.LIFETIME
    return plan


def _cache_fallback(cache: CacheRecord | None) -> MergeResult | None:
    if cache is None:
        return None
    return MergeResult(
        EntitlementVerdict(
            is_entitled=cache.is_entitled,
            plan_type=(cache.plan_type or PlanType.UNKNOWN) if cache.is_entitled else None,
            source=VerdictSource.CACHE,
            verified_at=cache.last_updated,
        )
    )


def merge_entitlement(
    cache: CacheRecord | None,
    ledger: LedgerRecord | None,
    purchases: list[Purchase] | None,
    plans: PlanCatalog,
    now: datetime,
    grace_period: timedelta = GRACE_PERIOD,
) -> MergeResult | None:
    """
    Merge the three sources into one verdict. First matching rule wins.

    ledger=None means the ledger was unreachable and purchases=None means the
    provider was unreachable or not ready. Returns None when there is nothing
    to conclude and the current verdict should stand.

    Rules:
        a. live purchase with the ledger's order id, active -> that plan, Provider
        b. ledger entitled Lifetime and an active lifetime-class purchase -> Lifetime, Provider
        c. ledger entitled and an active subscription -> that plan, Provider
        d. ledger entitled -> ledger plan, Ledger
        e. not entitled
    """
    live = [p for p in purchases or [] if p.has_token]

    def provider_verdict(plan: PlanType, purchase: Purchase) -> MergeResult:
        return MergeResult(
            EntitlementVerdict(True, plan, VerdictSource.PROVIDER, now), matched_purchase=purchase
        )

    if ledger is None:
        if purchases is None:
            return _cache_fallback(cache)
        # Provider-only proof
        for purchase in live:
            if _is_lifetime_class(purchase, plans) and purchase.state == PurchaseState.PURCHASED:
                return provider_verdict(PlanType.LIFETIME, purchase)
        for purchase in live:
            if not _is_lifetime_class(purchase, plans) and is_subscription_active(
                purchase, now, grace_period
            ):
                return provider_verdict(_plan_of(purchase, plans), purchase)
        return _cache_fallback(cache)

    # a. exact order match
    if ledger.order_id:
        for purchase in live:
            if purchase.order_id == ledger.order_id and _is_active(
                purchase, plans, now, grace_period
            ):
                return provider_verdict(_plan_of(purchase, plans), purchase)

    if ledger.is_entitled:
        # b. lifetime without order match
        if ledger.plan_type == PlanType.LIFETIME:
            for purchase in live:
                if (
                    _is_lifetime_class(purchase, plans)
                    and purchase.state == PurchaseState.PURCHASED
                ):
                    return provider_verdict(PlanType.LIFETIME, purchase)

        # c. any active subscription
        for purchase in live:
            if not _is_lifetime_class(purchase, plans) and is_subscription_active(
                purchase, now, grace_period
            ):
                return provider_verdict(_plan_of(purchase, plans), purchase)

        # d. ledger alone
        return MergeResult(
            EntitlementVerdict(
                True, ledger.plan_type or PlanType.UNKNOWN, VerdictSource.LEDGER, now
            )
        )

    # e.
    source = VerdictSource.LEDGER if purchases is None else VerdictSource.PROVIDER
    return MergeResult(EntitlementVerdict.not_entitled(source, now))


class ReconciliationEngine:
    """
    Reconciliation orchestrator for one account.

    Observable state:
        verdict: latest published EntitlementVerdict (None until the first one)
        is_loading: True while a reconciliation is running
    """

    def __init__(
        self,
        account: AccountIdentity,
        cache: LocalCacheStore,
        ledger: EntitlementLedger,
        provider: BillingProvider,
        is_ready: Callable[[], bool],
        plans: PlanCatalog,
        scope: TaskScope,
        on_connectivity_error: Callable[[], None] = lambda: None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        settings = settings or get_settings()
        self.account = account
        self.cache = cache
        self.ledger = ledger
        self.provider = provider
        self.is_ready = is_ready
        self.plans = plans
        self.scope = scope
        self.on_connectivity_error = on_connectivity_error
        self.clock = clock

        self.validity_period = timedelta(seconds=settings.cache_validity_seconds)
        self.stale_after = timedelta(seconds=settings.cache_stale_after_seconds)
        self.verification_timeout = settings.verification_timeout_seconds
        self.force_refresh_timeout = settings.force_refresh_timeout_seconds
        self.grace_period = timedelta(hours=settings.grace_period_hours)

        self.verdict: ObservableValue[EntitlementVerdict | None] = ObservableValue(None)
        self.is_loading: ObservableValue[bool] = ObservableValue(False)
        self.last_verified_at: datetime | None = None
        self.initial_check_done = False

        self._current: asyncio.Task[None] | None = None
        self._current_trigger: VerificationTrigger | None = None
        self._ledger_writes: set[asyncio.Task[None]] = set()
        self._lock = asyncio.Lock()

    @property
    def account_id(self) -> str:
        return self.account.account_id

    @property
    def in_flight(self) -> bool:
        return self._current is not None and not self._current.done()

    # ------------------------------------------------------------------
    # Caller-facing operations
    # ------------------------------------------------------------------

    def prime_from_cache(self) -> None:
        """Warm start: publish an entitled cache record before any network I/O."""
        record = self.cache.get(self.account_id)
        if record is None or not record.is_entitled:
            return

        self._publish(
            EntitlementVerdict(
                True, record.plan_type or PlanType.UNKNOWN, VerdictSource.CACHE, record.last_updated
            )
        )
        age = self.clock() - record.last_updated
        if age < self.stale_after:
            self.last_verified_at = record.last_updated
        else:
            logger.info(
                "cache_record_stale", account_id=self.account_id, age_seconds=age.total_seconds()
            )
            self.last_verified_at = None

    def within_window(self) -> bool:
        if self.verdict.value is None or self.last_verified_at is None:
            return False
        return self.clock() - self.last_verified_at < self.validity_period

    async def verify(
        self, trigger: VerificationTrigger = VerificationTrigger.ROUTINE
    ) -> EntitlementVerdict | None:
        """
        Reconcile and return the current verdict.

        Inside the validity window routine calls return the current verdict
        without I/O. A routine call that finds a run in flight joins it.
        """
        if not trigger.bypasses_window:
            if self.within_window():
                metrics.debounced_verifications_total.inc()
                return self.verdict.value
            if self._current is not None and not self._current.done():
                await asyncio.wait({self._current})
                return self.verdict.value
        else:
            self.last_verified_at = None

        task = await self._start(trigger)
        # A run superseded by a newer one is not an error for this caller
        await asyncio.wait({task})
        return self.verdict.value

    async def force_refresh(self) -> EntitlementVerdict | None:
        return await self.verify(VerificationTrigger.FORCED_REFRESH)

    async def check_for_possible_cancellation(self) -> EntitlementVerdict | None:
        """Compare the ledger with the current verdict, then reconcile."""
        try:
            record: LedgerRecord | None = await self.ledger.get(self.account_id)
        except LedgerError as exc:
            logger.warning(
                "cancellation_check_ledger_unavailable", account_id=self.account_id, error=str(exc)
            )
            record = None

        current = self.verdict.value
        if record is not None and not record.is_entitled and current and current.is_entitled:
            logger.warning(
                "possible_cancellation_detected",
                account_id=self.account_id,
                plan_type=current.plan_type.value if current.plan_type else None,
            )

        return await self.verify(VerificationTrigger.CANCELLATION_CHECK)

    def request_verification(self, trigger: VerificationTrigger) -> None:
        """Fire-and-forget verification inside the engine's scope."""
        self.scope.spawn(self.verify(trigger), name=f"verify-{self.account_id}-{trigger.value}")

    def invalidate(self) -> None:
        """Drop the validity window so the next verification does I/O."""
        self.last_verified_at = None

    def clear_loading(self) -> None:
        self.is_loading.set(False)

    async def record_purchase(self, purchase: Purchase, plan: PlanType) -> EntitlementVerdict:
        """
        Publish and persist entitlement proven by a purchase notification.

        The grant takes precedence over reconciliation already under way: the
        in-flight run and any ledger write it queued are cancelled first, so
        neither can publish or persist an older verdict after this one.
        The ledger write and token registration complete before returning so a
        following reconciliation reads them back.
        """
        async with self._lock:
            current = self._current
            if current is not None and not current.done():
                logger.debug(
                    "reconciliation_superseded",
                    account_id=self.account_id,
                    previous_trigger=self._current_trigger.value if self._current_trigger else None,
                    trigger="purchase_recorded",
                )
                current.cancel()
                await asyncio.wait({current})
                self.is_loading.set(False)
            await self._cancel_ledger_writes()

            now = self.clock()
            verdict = EntitlementVerdict(True, plan, VerdictSource.PROVIDER, now)
            self._publish(verdict)
            self.cache.put(self.account_id, CacheRecord(True, plan, now))

            await self._write_ledger(self._ledger_update(verdict, purchase))
            try:
                await self.ledger.register_purchase_token(self.account_id, purchase)
            except LedgerError as exc:
                logger.warning(
                    "purchase_token_not_registered", account_id=self.account_id, error=str(exc)
                )

            self.last_verified_at = now
            self.initial_check_done = True
            return verdict

    async def close(self) -> None:
        async with self._lock:
            if self._current is not None and not self._current.done():
                self._current.cancel()
                await asyncio.wait({self._current})
            self._current = None
        self.is_loading.set(False)

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def _start(self, trigger: VerificationTrigger) -> asyncio.Task[None]:
        """Cancel the in-flight run (if any), wait for it, then start a new one."""
        async with self._lock:
            previous = self._current
            if previous is not None and not previous.done():
                logger.debug(
                    "reconciliation_superseded",
                    account_id=self.account_id,
                    previous_trigger=self._current_trigger.value if self._current_trigger else None,
                    trigger=trigger.value,
                )
                previous.cancel()
                await asyncio.wait({previous})

            self._current_trigger = trigger
            self._current = self.scope.spawn(
                self._reconcile(trigger), name=f"reconcile-{self.account_id}"
            )
            return self._current

    async def _reconcile(self, trigger: VerificationTrigger) -> None:
        started = time.monotonic()
        outcome = "completed"

        with log_context(account_id=self.account_id, trigger=trigger.value), trace_operation(
            "entitlement_reconciliation", account_id=self.account_id, trigger=trigger.value
        ) as span:
            self.is_loading.set(True)
            try:
                cache = self.cache.get(self.account_id)
                current = self.verdict.value
                if cache is not None and cache.is_entitled and not (current and current.is_entitled):
                    self._publish(
                        EntitlementVerdict(
                            True,
                            cache.plan_type or PlanType.UNKNOWN,
                            VerdictSource.CACHE,
                            cache.last_updated,
                        )
                    )

                timeout = (
                    self.force_refresh_timeout
                    if trigger == VerificationTrigger.FORCED_REFRESH
                    else self.verification_timeout
                )
                try:
                    ledger_record, purchases = await self._fetch_authoritative(timeout)
                except VerificationTimeoutError as exc:
                    outcome = "timeout"
                    logger.warning("reconciliation_timed_out", timeout_seconds=exc.timeout_seconds)
                    self.last_verified_at = self.clock()
                    return

                now = self.clock()
                result = merge_entitlement(
                    cache, ledger_record, purchases, self.plans, now, self.grace_period
                )
                self.last_verified_at = now

                if result is None:
                    outcome = "no_change"
                    logger.info("reconciliation_inconclusive")
                    return

                span.set_attribute("verdict.source", result.verdict.source.value)
                span.set_attribute("verdict.is_entitled", result.verdict.is_entitled)
                self._publish(result.verdict)

                if result.verdict.source == VerdictSource.CACHE:
                    outcome = "cache_fallback"
                else:
                    self._persist(result)

            except asyncio.CancelledError:
                outcome = "cancelled"
                raise
            finally:
                if outcome != "cancelled":
                    self.initial_check_done = True
                    self.is_loading.set(False)
                metrics.record_reconciliation(trigger.value, outcome, time.monotonic() - started)

    async def _fetch_authoritative(
        self, timeout: float
    ) -> tuple[LedgerRecord | None, list[Purchase] | None]:
        """
        Read ledger and live purchases concurrently, time-boxed.

        Calls still running at the deadline are abandoned, not cancelled.

        Raises:
            VerificationTimeoutError: If either read misses the deadline
        """
        ledger_task = self.scope.spawn(self._read_ledger(), name=f"ledger-read-{self.account_id}")
        tasks: set[asyncio.Task[Any]] = {ledger_task}
        provider_task = None
        if self.is_ready():
            provider_task = self.scope.spawn(
                self._read_purchases(), name=f"provider-read-{self.account_id}"
            )
            tasks.add(provider_task)

        try:
            _, pending = await asyncio.wait(tasks, timeout=timeout)
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            raise

        if pending:
            raise VerificationTimeoutError(self.account_id, timeout)

        purchases = provider_task.result() if provider_task is not None else None
        return ledger_task.result(), purchases

    async def _read_ledger(self) -> LedgerRecord | None:
        try:
            return await self.ledger.get(self.account_id)
        except LedgerError as exc:
            logger.warning("ledger_unreachable", account_id=self.account_id, error=str(exc))
            return None

    async def _read_purchases(self) -> list[Purchase] | None:
        purchases: list[Purchase] = []
        for product_type in (ProductType.ONE_TIME, ProductType.SUBSCRIPTION):
            response = await self.provider.query_purchases(self.account, product_type)
            if not response.result.ok:
                logger.warning(
                    "provider_purchases_unavailable",
                    account_id=self.account_id,
                    product_type=product_type.value,
                    response_code=response.result.response_code.name,
                )
                if response.result.response_code.is_connectivity_error:
                    self.on_connectivity_error()
                return None
            purchases.extend(p for p in response.purchases if p.has_token)
        return purchases

    # ------------------------------------------------------------------
    # Publication and persistence
    # ------------------------------------------------------------------

    def _publish(self, verdict: EntitlementVerdict) -> None:
        self.verdict.set(verdict)
        metrics.record_verdict(verdict.source.value, verdict.is_entitled)
        logger.info(
            "entitlement_verdict_published",
            account_id=self.account_id,
            is_entitled=verdict.is_entitled,
            plan_type=verdict.plan_type.value if verdict.plan_type else None,
            source=verdict.source.value,
        )

    def _ledger_update(self, verdict: EntitlementVerdict, purchase: Purchase | None) -> LedgerUpdate:
        if purchase is None or not verdict.is_entitled:
            return LedgerUpdate(
                is_entitled=verdict.is_entitled,
                plan_type=verdict.plan_type,
                account_email=self.account.email,
            )
        return LedgerUpdate(
            is_entitled=True,
            plan_type=verdict.plan_type,
            order_id=purchase.order_id,
            product_id=purchase.primary_product_id,
            purchase_time=purchase.purchase_time,
            purchase_token=purchase.token,
            account_email=self.account.email,
        )

    def _persist(self, result: MergeResult) -> None:
        verdict = result.verdict
        self.cache.put(
            self.account_id, CacheRecord(verdict.is_entitled, verdict.plan_type, verdict.verified_at)
        )
        write = self.scope.spawn(
            self._write_ledger(self._ledger_update(verdict, result.matched_purchase)),
            name=f"ledger-write-{self.account_id}",
        )
        self._ledger_writes.add(write)
        write.add_done_callback(self._ledger_writes.discard)

    async def _cancel_ledger_writes(self) -> None:
        writes = [task for task in self._ledger_writes if not task.done()]
        for task in writes:
            task.cancel()
        if writes:
            await asyncio.wait(writes)
            logger.debug(
                "ledger_writes_cancelled", account_id=self.account_id, cancelled=len(writes)
            )

    async def _write_ledger(self, update: LedgerUpdate) -> None:
        try:
            await self.ledger.set(self.account_id, update, merge=True)
        except LedgerError as exc:
            # The published verdict stands
            logger.warning("ledger_persist_failed", account_id=self.account_id, error=str(exc))
