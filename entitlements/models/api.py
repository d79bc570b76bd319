"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
"""

from datetime import UTC, datetime

from pydantic import BaseModel, Field, field_validator

from entitlements.models.domain import (
    BillingResponseCode,
    BillingResult,
    EntitlementVerdict,
    PlanType,
    Product,
    ProductType,
    Purchase,
    PurchaseState,
    VerdictSource,
)

# ============================================================================
# Entitlement Models
# ============================================================================


class EntitlementResponse(BaseModel):
    """GET /v1/entitlements/{account_id} response."""

    account_id: str
    is_entitled: bool
    plan_type: PlanType | None = None
    is_loading: bool = False
    source: VerdictSource | None = None
    verified_at: datetime | None = None

    @classmethod
    def from_verdict(
        cls, account_id: str, verdict: EntitlementVerdict | None, is_loading: bool
    ) -> "EntitlementResponse":
        if verdict is None:
            return cls(account_id=account_id, is_entitled=False, is_loading=is_loading)
        return cls(
            account_id=account_id,
            is_entitled=verdict.is_entitled,
            plan_type=verdict.plan_type,
            is_loading=is_loading,
            source=verdict.source,
            verified_at=verdict.verified_at,
        )


# ============================================================================
# Catalog Models
# ============================================================================


class ProductResponse(BaseModel):
    """Single catalog entry."""

    product_id: str
    product_type: ProductType
    name: str = ""
    display_price: str | None = None
    offer_id: str | None = None

    @classmethod
    def from_product(cls, product: Product) -> "ProductResponse":
        return cls(
            product_id=product.product_id,
            product_type=product.product_type,
            name=product.name,
            display_price=product.display_price,
            offer_id=product.raw_offer,
        )


class ProductListResponse(BaseModel):
    """GET /v1/products response."""

    products: list[ProductResponse]


# ============================================================================
# Purchase Models
# ============================================================================


class PurchaseRequest(BaseModel):
    """POST /v1/entitlements/{account_id}/purchases request body."""

    product_id: str = Field(..., min_length=1, max_length=255)


class BillingResultResponse(BaseModel):
    """Outcome of a provider call."""

    response_code: BillingResponseCode
    response_name: str
    ok: bool
    debug_message: str = ""

    @classmethod
    def from_result(cls, result: BillingResult) -> "BillingResultResponse":
        return cls(
            response_code=result.response_code,
            response_name=result.response_code.name,
            ok=result.ok,
            debug_message=result.debug_message,
        )


class PurchasePayload(BaseModel):
    """Purchase as relayed by the Play Billing client."""

    order_id: str | None = Field(None, max_length=255)
    product_ids: list[str] = Field(..., min_length=1)
    purchase_state: PurchaseState
    purchase_token: str = Field(..., max_length=4096)
    acknowledged: bool = False
    auto_renewing: bool = False
    purchase_time_millis: int = Field(..., ge=0)
    product_type: ProductType
    obfuscated_account_id: str | None = Field(None, max_length=255)
    obfuscated_profile_id: str | None = Field(None, max_length=255)

    @field_validator("product_ids")
    @classmethod
    def validate_product_ids(cls, v: list[str]) -> list[str]:
        """Product ids must be non-blank."""
        cleaned = [p.strip() for p in v if p and p.strip()]
        if not cleaned:
            raise ValueError("At least one product id is required")
        return cleaned

    def to_purchase(self) -> Purchase:
        return Purchase(
            order_id=self.order_id,
            product_ids=frozenset(self.product_ids),
            state=self.purchase_state,
            token=self.purchase_token,
            acknowledged=self.acknowledged,
            auto_renewing=self.auto_renewing,
            purchase_time=datetime.fromtimestamp(self.purchase_time_millis / 1000, tz=UTC),
            product_type=self.product_type,
            obfuscated_account_id=self.obfuscated_account_id,
            obfuscated_profile_id=self.obfuscated_profile_id,
        )


class PurchaseNotificationRequest(BaseModel):
    """POST /v1/entitlements/{account_id}/purchases/notify request body."""

    response_code: BillingResponseCode
    debug_message: str = ""
    purchases: list[PurchasePayload] = Field(default_factory=list)

    def to_result(self) -> BillingResult:
        return BillingResult(self.response_code, self.debug_message)


# ============================================================================
# Webhook / Connection Models
# ============================================================================


class WebhookResponse(BaseModel):
    """Webhook acknowledgement."""

    status: str = "received"
    event_type: str | None = None


class ConnectionStateResponse(BaseModel):
    """Provider connection state."""

    phase: str
    attempt: int
    is_ready: bool
