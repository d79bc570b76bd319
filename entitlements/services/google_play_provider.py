"""
Google Play Provider Implementation.

Billing provider backed by the Android Publisher v3 API. Live purchases are
re-queried per registered purchase token, since the server has no device-side
purchase list.

NO DICTIONARIES - All data uses strongly typed models.
"""

import asyncio
import base64
import json
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol

from google.oauth2 import service_account
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from structlog import get_logger

from entitlements.exceptions import LedgerError, PaymentProviderError, WebhookVerificationError
from entitlements.models.domain import (
    AccountIdentity,
    BillingResponseCode,
    BillingResult,
    PlanType,
    Product,
    ProductType,
    Purchase,
    PurchaseState,
)
from entitlements.models.google_play import (
    ONE_TIME_NOTIFICATION_TYPES,
    SUBSCRIPTION_NOTIFICATION_TYPES,
    GooglePlayPurchaseToken,
    GooglePlayWebhookEvent,
)
from entitlements.services.billing_provider import ProductDetailsResult, PurchasesResult
from entitlements.services.plan_types import PlanCatalog

logger = get_logger(__name__)

ANDROID_PUBLISHER_SCOPE = "https://www.googleapis.com/auth/androidpublisher"

# purchases.products purchaseState: 0=purchased, 1=canceled, 2=pending
_PRODUCT_PURCHASE_STATES: dict[int, PurchaseState] = {
    0: PurchaseState.PURCHASED,
    2: PurchaseState.PENDING,
}

# Canceled subscriptions stay purchased (without auto-renew) until they expire
_SUBSCRIPTION_STATES: dict[str, PurchaseState] = {
    "SUBSCRIPTION_STATE_ACTIVE": PurchaseState.PURCHASED,
    "SUBSCRIPTION_STATE_IN_GRACE_PERIOD": PurchaseState.PURCHASED,
    "SUBSCRIPTION_STATE_CANCELED": PurchaseState.PURCHASED,
    "SUBSCRIPTION_STATE_PENDING": PurchaseState.PENDING,
}

# Length of one paid period; expiryTime minus one period is the latest renewal
BILLING_PERIODS: dict[PlanType, timedelta] = {
    PlanType.MONTHLY: timedelta(days=30),
    PlanType.ANNUAL: timedelta(days=365),
}


class PurchaseTokenRegistry(Protocol):
    """Where the provider finds the tokens to re-query for an account."""

    async def purchase_tokens(
        self, account_id: str, product_type: ProductType
    ) -> list[GooglePlayPurchaseToken]: ...


def _parse_rfc3339(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def _from_millis(value: Any) -> datetime:
    return datetime.fromtimestamp(int(value or 0) / 1000, tz=UTC)


def _format_money(units: Any, nanos: Any, currency: str | None) -> str | None:
    if units is None and nanos is None:
        return None
    amount = int(units or 0) + int(nanos or 0) / 1_000_000_000
    return f"{amount:.2f} {currency or ''}".strip()


def _result_for_http_error(exc: HttpError) -> BillingResult:
    """Translate an Android Publisher HTTP error into a billing result."""
    status = exc.resp.status
    error_content = exc.content.decode("utf-8") if exc.content else str(exc)
    if status in (404, 410):
        code = BillingResponseCode.ITEM_UNAVAILABLE
    elif status in (401, 403):
        code = BillingResponseCode.DEVELOPER_ERROR
    elif status == 429 or status >= 500:
        code = BillingResponseCode.SERVICE_UNAVAILABLE
    else:
        code = BillingResponseCode.ERROR
    return BillingResult(code, error_content)


class GooglePlayProvider:
    """
    Google Play billing provider.

    Handles catalog queries, live purchase queries, acknowledgement and
    webhook decoding.
    """

    def __init__(
        self,
        service_account_json: str | dict[str, str],
        package_name: str,
        token_registry: PurchaseTokenRegistry,
        plans: PlanCatalog | None = None,
    ) -> None:
        """
        Initialize Google Play provider.

        Args:
            service_account_json: Path to service account JSON, raw JSON, or dict with credentials
            package_name: Android package name
            token_registry: Registry of purchase tokens per account (the ledger)
            plans: Product id to plan mapping, used for subscription billing periods
        """
        self.package_name = package_name
        self.token_registry = token_registry
        self.plans = plans or PlanCatalog.from_settings()
        self._service_account_json = service_account_json
        self._service: Any = None
        self._on_disconnected: Callable[[], None] | None = None

    def _build_service(self) -> Any:
        source = self._service_account_json
        if isinstance(source, str) and source.lstrip().startswith("{"):
            source = json.loads(source)

        if isinstance(source, str):
            credentials = service_account.Credentials.from_service_account_file(  # type: ignore[no-untyped-call]
                source, scopes=[ANDROID_PUBLISHER_SCOPE]
            )
        else:
            credentials = service_account.Credentials.from_service_account_info(  # type: ignore[no-untyped-call]
                source, scopes=[ANDROID_PUBLISHER_SCOPE]
            )

        return build("androidpublisher", "v3", credentials=credentials, cache_discovery=False)

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    async def start_connection(self, on_disconnected: Callable[[], None]) -> BillingResult:
        self._on_disconnected = on_disconnected
        if self._service is not None:
            return BillingResult.success()

        if not self._service_account_json or not self.package_name:
            return BillingResult(
                BillingResponseCode.BILLING_UNAVAILABLE,
                "Google Play service account or package name not configured",
            )

        try:
            self._service = await asyncio.to_thread(self._build_service)
        except (OSError, ValueError) as exc:
            logger.error("google_play_connection_failed", error=str(exc))
            return BillingResult(BillingResponseCode.SERVICE_UNAVAILABLE, str(exc))
        except HttpError as exc:
            logger.error("google_play_connection_failed", status=exc.resp.status)
            return _result_for_http_error(exc)

        logger.info("google_play_provider_connected", package_name=self.package_name)
        return BillingResult.success()

    def is_ready(self) -> bool:
        return self._service is not None

    async def end_connection(self) -> None:
        if self._service is not None:
            await asyncio.to_thread(self._service.close)
        self._service = None
        self._on_disconnected = None
        logger.info("google_play_provider_disconnected")

    def _connection_lost(self, error: Exception) -> BillingResult:
        """Drop the client after a transport failure and notify the owner."""
        logger.warning("google_play_connection_lost", error=str(error))
        self._service = None
        if self._on_disconnected is not None:
            self._on_disconnected()
        return BillingResult(BillingResponseCode.SERVICE_DISCONNECTED, str(error))

    async def _execute(self, request: Any) -> Any:
        return await asyncio.to_thread(request.execute)

    # ------------------------------------------------------------------
    # Catalog
    # ------------------------------------------------------------------

    async def query_product_details(
        self, product_ids: list[str], product_type: ProductType
    ) -> ProductDetailsResult:
        if self._service is None:
            return ProductDetailsResult(BillingResult(BillingResponseCode.SERVICE_DISCONNECTED))

        products: list[Product] = []
        for product_id in product_ids:
            try:
                if product_type == ProductType.SUBSCRIPTION:
                    payload = await self._execute(
                        self._service.monetization()
                        .subscriptions()
                        .get(packageName=self.package_name, productId=product_id)
                    )
                    product = self._subscription_product(product_id, payload)
                else:
                    payload = await self._execute(
                        self._service.inappproducts().get(
                            packageName=self.package_name, sku=product_id
                        )
                    )
                    product = self._one_time_product(product_id, payload)
            except HttpError as exc:
                if exc.resp.status == 404:
                    logger.warning("google_play_product_not_found", product_id=product_id)
                    continue
                return ProductDetailsResult(_result_for_http_error(exc))
            except OSError as exc:
                return ProductDetailsResult(self._connection_lost(exc))

            if product is not None:
                products.append(product)

        return ProductDetailsResult(BillingResult.success(), products)

    def _subscription_product(self, product_id: str, payload: dict[str, Any]) -> Product | None:
        base_plans = [
            plan for plan in payload.get("basePlans", []) if plan.get("state", "ACTIVE") == "ACTIVE"
        ]
        if not base_plans:
            logger.warning("google_play_subscription_without_base_plan", product_id=product_id)
            return None

        base_plan = base_plans[0]
        price: str | None = None
        regional = base_plan.get("regionalConfigs", [])
        if regional:
            money = regional[0].get("price", {})
            price = _format_money(money.get("units"), money.get("nanos"), money.get("currencyCode"))

        listings = payload.get("listings", [])
        name = listings[0].get("title", "") if listings else ""

        return Product(
            product_id=product_id,
            product_type=ProductType.SUBSCRIPTION,
            display_price=price,
            name=name,
            raw_offer=base_plan.get("basePlanId"),
        )

    def _one_time_product(self, product_id: str, payload: dict[str, Any]) -> Product | None:
        if payload.get("status", "active") != "active":
            return None

        default_price = payload.get("defaultPrice", {})
        price: str | None = None
        if "priceMicros" in default_price:
            price = _format_money(
                None, int(default_price["priceMicros"]) * 1000, default_price.get("currency")
            )

        listings = payload.get("listings", {})
        listing = listings.get(payload.get("defaultLanguage", ""), {})

        return Product(
            product_id=product_id,
            product_type=ProductType.ONE_TIME,
            display_price=price,
            name=listing.get("title", ""),
        )

    # ------------------------------------------------------------------
    # Purchases
    # ------------------------------------------------------------------

    async def query_purchases(
        self, account: AccountIdentity, product_type: ProductType
    ) -> PurchasesResult:
        if self._service is None:
            return PurchasesResult(BillingResult(BillingResponseCode.SERVICE_DISCONNECTED))

        try:
            tokens = await self.token_registry.purchase_tokens(account.account_id, product_type)
        except LedgerError as exc:
            return PurchasesResult(BillingResult(BillingResponseCode.ERROR, str(exc)))

        purchases: list[Purchase] = []
        seen: set[str] = set()
        for token in tokens:
            if token.token in seen:
                continue
            seen.add(token.token)
            try:
                purchase = await self.fetch_purchase(token.token, token.product_id, product_type)
            except PaymentProviderError as exc:
                if self._service is None:
                    return PurchasesResult(
                        BillingResult(BillingResponseCode.SERVICE_DISCONNECTED, exc.message)
                    )
                logger.warning(
                    "google_play_purchase_unavailable",
                    account_id=account.account_id,
                    product_id=token.product_id,
                    error=exc.message,
                )
                continue
            purchases.append(purchase)

        return PurchasesResult(BillingResult.success(), purchases)

    async def fetch_purchase(
        self, token: str, product_id: str, product_type: ProductType
    ) -> Purchase:
        """
        Fetch a single purchase from Google Play.

        Raises:
            PaymentProviderError: If the purchase cannot be fetched
        """
        if self._service is None:
            raise PaymentProviderError("Google Play connection is not ready")

        try:
            if product_type == ProductType.SUBSCRIPTION:
                payload = await self._execute(
                    self._service.purchases()
                    .subscriptionsv2()
                    .get(packageName=self.package_name, token=token)
                )
                return self._subscription_purchase(token, product_id, payload)

            payload = await self._execute(
                self._service.purchases()
                .products()
                .get(packageName=self.package_name, productId=product_id, token=token)
            )
            return self._one_time_purchase(token, product_id, payload)

        except HttpError as exc:
            error_content = exc.content.decode("utf-8") if exc.content else str(exc)
            logger.error(
                "google_play_purchase_fetch_failed",
                status=exc.resp.status,
                product_id=product_id,
                error=error_content,
            )
            if exc.resp.status == 404:
                raise PaymentProviderError("Purchase not found or invalid token") from exc
            elif exc.resp.status == 410:
                raise PaymentProviderError("Purchase token expired") from exc
            raise PaymentProviderError(f"Google Play API error: {error_content}") from exc

        except OSError as exc:
            self._connection_lost(exc)
            raise PaymentProviderError(f"Google Play unreachable: {exc}") from exc

    def _one_time_purchase(self, token: str, product_id: str, payload: dict[str, Any]) -> Purchase:
        state = _PRODUCT_PURCHASE_STATES.get(
            int(payload.get("purchaseState", -1)), PurchaseState.UNSPECIFIED
        )
        return Purchase(
            order_id=payload.get("orderId"),
            product_ids=frozenset({payload.get("productId") or product_id}),
            state=state,
            token=token,
            acknowledged=int(payload.get("acknowledgementState", 0)) == 1,
            auto_renewing=False,
            purchase_time=_from_millis(payload.get("purchaseTimeMillis")),
            product_type=ProductType.ONE_TIME,
            obfuscated_account_id=payload.get("obfuscatedExternalAccountId"),
            obfuscated_profile_id=payload.get("obfuscatedExternalProfileId"),
        )

    def _subscription_purchase(
        self, token: str, product_id: str, payload: dict[str, Any]
    ) -> Purchase:
        line_items = payload.get("lineItems") or []
        product_ids = frozenset(
            item["productId"] for item in line_items if item.get("productId")
        ) or frozenset({product_id})
        auto_renewing = any(
            item.get("autoRenewingPlan", {}).get("autoRenewEnabled", False) for item in line_items
        )
        state = _SUBSCRIPTION_STATES.get(
            str(payload.get("subscriptionState", "")), PurchaseState.UNSPECIFIED
        )
        identifiers = payload.get("externalAccountIdentifiers", {})

        return Purchase(
            order_id=payload.get("latestOrderId"),
            product_ids=product_ids,
            state=state,
            token=token,
            acknowledged=payload.get("acknowledgementState")
            == "ACKNOWLEDGEMENT_STATE_ACKNOWLEDGED",
            auto_renewing=auto_renewing,
            purchase_time=self._renewal_time(line_items, payload.get("startTime")),
            product_type=ProductType.SUBSCRIPTION,
            obfuscated_account_id=identifiers.get("obfuscatedExternalAccountId"),
            obfuscated_profile_id=identifiers.get("obfuscatedExternalProfileId"),
        )

    def _renewal_time(self, line_items: list[dict[str, Any]], start_time: str | None) -> datetime:
        """
        Start of the current paid period.

        The grace period is anchored here rather than at the original
        startTime, which never moves for a renewing subscription.
        """
        started = _parse_rfc3339(start_time)
        renewed: datetime | None = None
        for item in line_items:
            expiry = _parse_rfc3339(item.get("expiryTime"))
            period = BILLING_PERIODS.get(self.plans.plan_for_product_id(item.get("productId")))
            if expiry is None or period is None:
                continue
            candidate = expiry - period
            if renewed is None or candidate > renewed:
                renewed = candidate

        if renewed is not None and (started is None or renewed > started):
            return renewed
        return started or datetime.now(UTC)

    async def acknowledge_purchase(self, purchase: Purchase) -> BillingResult:
        if self._service is None:
            return BillingResult(BillingResponseCode.SERVICE_DISCONNECTED)

        product_id = purchase.primary_product_id or ""
        try:
            if purchase.product_type == ProductType.SUBSCRIPTION:
                request = self._service.purchases().subscriptions().acknowledge(
                    packageName=self.package_name,
                    subscriptionId=product_id,
                    token=purchase.token,
                    body={},
                )
            else:
                request = self._service.purchases().products().acknowledge(
                    packageName=self.package_name,
                    productId=product_id,
                    token=purchase.token,
                    body={},
                )
            await self._execute(request)
        except HttpError as exc:
            logger.error(
                "google_play_acknowledgement_failed",
                product_id=product_id,
                status=exc.resp.status,
            )
            return _result_for_http_error(exc)
        except OSError as exc:
            return self._connection_lost(exc)

        logger.info("google_play_purchase_acknowledged", product_id=product_id)
        return BillingResult.success()

    async def launch_purchase_flow(
        self, account: AccountIdentity, product: Product
    ) -> BillingResult:
        """
        Accept a purchase flow request.

        The flow itself runs in the Play Billing client on the device; the
        client must pass account_id as obfuscatedAccountId so ownership can be
        verified afterwards.
        """
        if self._service is None:
            return BillingResult(BillingResponseCode.SERVICE_DISCONNECTED)

        logger.info(
            "google_play_purchase_flow_launched",
            account_id=account.account_id,
            product_id=product.product_id,
            offer=product.raw_offer,
        )
        return BillingResult.success()

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    async def verify_webhook(self, payload: bytes) -> GooglePlayWebhookEvent:
        """
        Decode a Google Play Real-Time Developer Notification.

        Args:
            payload: Raw webhook payload (JSON from Pub/Sub)

        Returns:
            Parsed webhook event

        Raises:
            WebhookVerificationError: If verification fails
        """
        try:
            pubsub_message = json.loads(payload)

            message_data = pubsub_message.get("message", {}).get("data")
            if not message_data:
                raise WebhookVerificationError("No message data in webhook")

            notification = json.loads(base64.b64decode(message_data).decode("utf-8"))
        except json.JSONDecodeError as exc:
            logger.error("google_play_webhook_invalid_json", error=str(exc))
            raise WebhookVerificationError("Invalid JSON payload") from exc
        except (ValueError, AttributeError) as exc:
            logger.error("google_play_webhook_invalid_payload", error=str(exc))
            raise WebhookVerificationError(f"Invalid webhook payload: {exc}") from exc

        package_name = notification.get("packageName", "")
        if self.package_name and package_name != self.package_name:
            raise WebhookVerificationError(f"Unexpected package name: {package_name}")

        if "subscriptionNotification" in notification:
            details = notification["subscriptionNotification"]
            product_type = ProductType.SUBSCRIPTION
            product_id = details.get("subscriptionId", "")
            event_types = SUBSCRIPTION_NOTIFICATION_TYPES
        elif "oneTimeProductNotification" in notification:
            details = notification["oneTimeProductNotification"]
            product_type = ProductType.ONE_TIME
            product_id = details.get("sku", "")
            event_types = ONE_TIME_NOTIFICATION_TYPES
        elif "testNotification" in notification:
            raise WebhookVerificationError("Test notification carries no purchase")
        else:
            raise WebhookVerificationError("Unsupported notification type")

        notification_type = int(details.get("notificationType", 0))
        event = GooglePlayWebhookEvent(
            event_id=pubsub_message.get("message", {}).get("messageId", ""),
            event_type=event_types.get(notification_type, f"unknown_{notification_type}"),
            purchase_token=details.get("purchaseToken", ""),
            product_id=product_id,
            product_type=product_type,
            package_name=package_name,
            notification_type=notification_type,
            event_time_millis=int(notification.get("eventTimeMillis", 0)),
        )

        logger.info(
            "google_play_webhook_verified",
            event_type=event.event_type,
            product_id=event.product_id,
        )
        return event
