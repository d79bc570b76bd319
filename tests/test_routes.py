"""
Tests for the entitlement API routes and dependencies.

Requests go through an httpx ASGI transport so the service's background
tasks share the test's event loop.
"""

from collections.abc import AsyncGenerator

import httpx
import pytest
import pytest_asyncio
from conftest import make_lifetime
from fastapi import FastAPI

from entitlements.api.dependencies import verify_api_key_value
from entitlements.api.routes import router
from entitlements.config import settings
from entitlements.exceptions import AuthenticationError, PaymentProviderError
from entitlements.models.domain import (
    BillingResult,
    LedgerRecord,
    PlanType,
    Product,
    ProductType,
)
from entitlements.models.google_play import GooglePlayWebhookEvent
from entitlements.services.billing_provider import ProductDetailsResult
from entitlements.services.entitlement_service import EntitlementService

LIFETIME = Product("lifetime", ProductType.ONE_TIME, "$99.99", "Lifetime")


@pytest_asyncio.fixture
async def service(provider, ledger, cache, timer, clock) -> AsyncGenerator[EntitlementService, None]:
    entitlement_service = EntitlementService(provider, ledger, cache, timer=timer, clock=clock)
    yield entitlement_service
    await entitlement_service.close()


@pytest.fixture
def app(service) -> FastAPI:
    application = FastAPI()
    application.include_router(router)
    application.state.entitlement_service = service
    return application


@pytest_asyncio.fixture
async def client(app) -> AsyncGenerator[httpx.AsyncClient, None]:
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http_client:
        yield http_client


class TestApiKey:
    """Tests for API key verification."""

    def test_disabled_when_unconfigured(self):
        """Test an empty configured key accepts anything."""
        verify_api_key_value(None, "")

    def test_missing_key_rejected(self):
        """Test a missing key is rejected when one is configured."""
        with pytest.raises(AuthenticationError, match="required"):
            verify_api_key_value(None, "secret")

    def test_wrong_key_rejected(self):
        """Test a wrong key is rejected."""
        with pytest.raises(AuthenticationError, match="Invalid"):
            verify_api_key_value("guess", "secret")

    def test_matching_key_accepted(self):
        """Test the configured key is accepted."""
        verify_api_key_value("secret", "secret")

    @pytest.mark.asyncio
    async def test_route_requires_key(self, client, monkeypatch):
        """Test protected routes answer 401 without the key."""
        monkeypatch.setattr(settings, "api_key", "secret")

        response = await client.get("/v1/entitlements/user-1")

        assert response.status_code == 401
        assert response.headers["www-authenticate"] == "ApiKey"

    @pytest.mark.asyncio
    async def test_route_accepts_key(self, client, monkeypatch):
        """Test protected routes accept the configured key."""
        monkeypatch.setattr(settings, "api_key", "secret")

        response = await client.get("/v1/entitlements/user-1", headers={"X-API-Key": "secret"})

        assert response.status_code == 200


class TestEntitlementRoutes:
    """Tests for entitlement endpoints."""

    @pytest.mark.asyncio
    async def test_get_entitlement(self, client, ledger):
        """Test the current verdict is returned."""
        ledger.records["user-1"] = LedgerRecord(True, PlanType.ANNUAL)

        response = await client.get("/v1/entitlements/user-1")

        assert response.status_code == 200
        body = response.json()
        assert body["account_id"] == "user-1"
        assert body["is_entitled"] is True
        assert body["plan_type"] == "Annual"
        assert body["source"] == "ledger"
        assert body["is_loading"] is False

    @pytest.mark.asyncio
    async def test_no_verdict_reads_not_entitled(self, client, ledger):
        """Test an inconclusive first check reports not entitled without a source."""
        ledger.fail = True

        response = await client.get("/v1/entitlements/user-1")

        body = response.json()
        assert body["is_entitled"] is False
        assert body["source"] is None

    @pytest.mark.asyncio
    async def test_refresh(self, client, ledger):
        """Test refresh always reconciles."""
        await client.get("/v1/entitlements/user-1")
        response = await client.post("/v1/entitlements/user-1/refresh")

        assert response.status_code == 200
        assert ledger.get_calls == 2

    @pytest.mark.asyncio
    async def test_cancellation_check(self, client, ledger):
        """Test the cancellation check endpoint reconciles."""
        response = await client.post("/v1/entitlements/user-1/cancellation-check")

        assert response.status_code == 200
        assert response.json()["is_entitled"] is False
        assert ledger.get_calls == 2

    @pytest.mark.asyncio
    async def test_email_header_links_account(self, client, service):
        """Test the email header is attached to the account identity."""
        await client.get("/v1/entitlements/user-1", headers={"X-Account-Email": "a@example.com"})

        assert service.engines[0].account.email == "a@example.com"

    @pytest.mark.asyncio
    async def test_service_missing_returns_503(self):
        """Test requests before startup answer 503."""
        application = FastAPI()
        application.include_router(router)
        transport = httpx.ASGITransport(app=application)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as http_client:
            response = await http_client.get("/v1/entitlements/user-1")

        assert response.status_code == 503


class TestPurchaseRoutes:
    """Tests for catalog and purchase endpoints."""

    @pytest.mark.asyncio
    async def test_list_products(self, client, service, provider):
        """Test the catalog is listed with offers and prices."""
        provider.product_details[ProductType.ONE_TIME] = ProductDetailsResult(
            BillingResult.success(), [LIFETIME]
        )
        await service.connection.connect()

        response = await client.get("/v1/products")

        assert response.status_code == 200
        products = response.json()["products"]
        assert products[0]["product_id"] == "lifetime"
        assert products[0]["display_price"] == "$99.99"

    @pytest.mark.asyncio
    async def test_start_purchase_unknown_product(self, client):
        """Test a rejected flow is reported in the body."""
        response = await client.post(
            "/v1/entitlements/user-1/purchases", json={"product_id": "nope"}
        )

        assert response.status_code == 200
        body = response.json()
        assert body["ok"] is False
        assert body["response_name"] == "ITEM_UNAVAILABLE"

    @pytest.mark.asyncio
    async def test_start_purchase_validation(self, client):
        """Test an empty product id is rejected."""
        response = await client.post("/v1/entitlements/user-1/purchases", json={"product_id": ""})

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_notify_purchase_grants(self, client, service, provider):
        """Test a relayed purchase grants entitlement."""
        await service.connection.connect()
        provider.fetched["token-relayed-1"] = make_lifetime(
            order_id="GPA.9", token="token-relayed-1", obfuscated_account_id="user-1"
        )
        payload = {
            "response_code": 0,
            "purchases": [
                {
                    "order_id": "GPA.9",
                    "product_ids": ["lifetime"],
                    "purchase_state": "purchased",
                    "purchase_token": "token-relayed-1",
                    "acknowledged": True,
                    "purchase_time_millis": 1792411200000,
                    "product_type": "inapp",
                }
            ],
        }

        response = await client.post("/v1/entitlements/user-1/purchases/notify", json=payload)

        assert response.status_code == 200
        body = response.json()
        assert body["is_entitled"] is True
        assert body["plan_type"] == "Lifetime"
        assert body["source"] == "provider"

    @pytest.mark.asyncio
    async def test_notify_unknown_token_grants_nothing(self, client, service, ledger):
        """Test a relayed purchase Google Play does not know leaves the account unentitled."""
        await service.connection.connect()
        payload = {
            "response_code": 0,
            "purchases": [
                {
                    "order_id": "GPA.made-up",
                    "product_ids": ["lifetime"],
                    "purchase_state": "purchased",
                    "purchase_token": "token-not-issued",
                    "acknowledged": True,
                    "purchase_time_millis": 1792411200000,
                    "product_type": "inapp",
                }
            ],
        }

        response = await client.post("/v1/entitlements/user-1/purchases/notify", json=payload)

        assert response.status_code == 200
        assert response.json()["is_entitled"] is False
        assert ledger.updates == []
        assert ledger.tokens == {}

        refreshed = await client.post("/v1/entitlements/user-1/refresh")
        assert refreshed.json()["is_entitled"] is False

    @pytest.mark.asyncio
    async def test_notify_other_accounts_purchase_grants_nothing(self, client, service, provider):
        """Test relaying a purchase linked to another account grants nothing."""
        await service.connection.connect()
        provider.fetched["token-of-user-2"] = make_lifetime(
            token="token-of-user-2", obfuscated_account_id="user-2"
        )
        payload = {
            "response_code": 0,
            "purchases": [
                {
                    "product_ids": ["lifetime"],
                    "purchase_state": "purchased",
                    "purchase_token": "token-of-user-2",
                    "purchase_time_millis": 1792411200000,
                    "product_type": "inapp",
                }
            ],
        }

        response = await client.post("/v1/entitlements/user-1/purchases/notify", json=payload)

        assert response.status_code == 200
        assert response.json()["is_entitled"] is False

    @pytest.mark.asyncio
    async def test_notify_rejects_blank_product_ids(self, client):
        """Test purchases without product ids are rejected."""
        payload = {
            "response_code": 0,
            "purchases": [
                {
                    "product_ids": [" "],
                    "purchase_state": "purchased",
                    "purchase_token": "token-relayed-2",
                    "purchase_time_millis": 0,
                    "product_type": "inapp",
                }
            ],
        }

        response = await client.post("/v1/entitlements/user-1/purchases/notify", json=payload)

        assert response.status_code == 422


class TestConnectionAndWebhookRoutes:
    """Tests for connection retry and webhook endpoints."""

    @pytest.mark.asyncio
    async def test_retry_connection(self, client):
        """Test manual retry reports the resulting state."""
        response = await client.post("/v1/connection/retry")

        assert response.status_code == 200
        body = response.json()
        assert body["phase"] == "ready"
        assert body["is_ready"] is True

    @pytest.mark.asyncio
    async def test_webhook_processed(self, client, service, provider, ledger):
        """Test a routed notification is acknowledged."""
        await service.connection.connect()
        purchase = make_lifetime(token="token-webhook-1")
        ledger.tokens["token-webhook-1"] = ("user-1", purchase)
        provider.fetched["token-webhook-1"] = purchase
        provider.webhook_event = GooglePlayWebhookEvent(
            event_id="msg-1",
            event_type="product_purchased",
            purchase_token="token-webhook-1",
            product_id="lifetime",
            product_type=ProductType.ONE_TIME,
            package_name="com.example.app",
            notification_type=1,
            event_time_millis=0,
        )

        response = await client.post("/v1/webhooks/google-play", content=b"{}")

        assert response.status_code == 200
        assert response.json() == {"status": "processed", "event_type": "product_purchased"}

    @pytest.mark.asyncio
    async def test_webhook_unroutable_is_400(self, client, provider):
        """Test an unroutable notification answers 400."""
        purchase = make_lifetime(token="token-webhook-2")
        provider.fetched["token-webhook-2"] = purchase
        provider.webhook_event = GooglePlayWebhookEvent(
            event_id="msg-2",
            event_type="product_purchased",
            purchase_token="token-webhook-2",
            product_id="lifetime",
            product_type=ProductType.ONE_TIME,
            package_name="com.example.app",
            notification_type=1,
            event_time_millis=0,
        )

        response = await client.post("/v1/webhooks/google-play", content=b"{}")

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_webhook_provider_error_is_502(self, client, provider, monkeypatch):
        """Test a failed purchase fetch answers 502."""
        provider.webhook_event = GooglePlayWebhookEvent(
            event_id="msg-3",
            event_type="product_purchased",
            purchase_token="token-webhook-3",
            product_id="lifetime",
            product_type=ProductType.ONE_TIME,
            package_name="com.example.app",
            notification_type=1,
            event_time_millis=0,
        )

        async def failing_fetch(token, product_id, product_type):
            raise PaymentProviderError("Purchase not found or invalid token")

        monkeypatch.setattr(provider, "fetch_purchase", failing_fetch)

        response = await client.post("/v1/webhooks/google-play", content=b"{}")

        assert response.status_code == 502
