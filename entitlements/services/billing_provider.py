"""
Billing Provider Protocol - Provider-agnostic interface.

NO DICTIONARIES - All data uses strongly typed models.
"""

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Protocol

from entitlements.models.domain import (
    AccountIdentity,
    BillingResult,
    Product,
    ProductType,
    Purchase,
)
from entitlements.models.google_play import GooglePlayWebhookEvent


@dataclass(frozen=True)
class ProductDetailsResult:
    """Result of a catalog query for one product type."""

    result: BillingResult
    products: list[Product] = field(default_factory=list)


@dataclass(frozen=True)
class PurchasesResult:
    """Result of a live purchase query for one product type."""

    result: BillingResult
    purchases: list[Purchase] = field(default_factory=list)


class BillingProvider(Protocol):
    """
    Purchase provider protocol.

    Any purchase provider must implement this interface. Results carry a
    BillingResult instead of raising, so connectivity failures can be
    classified by response code.
    """

    async def start_connection(self, on_disconnected: Callable[[], None]) -> BillingResult:
        """
        Open the provider connection.

        Args:
            on_disconnected: Invoked when an established connection is lost

        Returns:
            OK when the provider is ready for queries
        """
        ...

    def is_ready(self) -> bool:
        """Whether the connection is established."""
        ...

    async def end_connection(self) -> None:
        """Close the provider connection."""
        ...

    async def query_product_details(
        self, product_ids: list[str], product_type: ProductType
    ) -> ProductDetailsResult:
        """Fetch catalog entries for the given ids."""
        ...

    async def query_purchases(
        self, account: AccountIdentity, product_type: ProductType
    ) -> PurchasesResult:
        """Fetch the account's live purchases of one product type."""
        ...

    async def acknowledge_purchase(self, purchase: Purchase) -> BillingResult:
        """Acknowledge a purchase (required within 3 days)."""
        ...

    async def launch_purchase_flow(
        self, account: AccountIdentity, product: Product
    ) -> BillingResult:
        """Start a purchase flow for the account."""
        ...

    async def fetch_purchase(
        self, token: str, product_id: str, product_type: ProductType
    ) -> Purchase:
        """
        Fetch a single purchase by token.

        Raises:
            PaymentProviderError: If the purchase cannot be fetched
        """
        ...

    async def verify_webhook(self, payload: bytes) -> GooglePlayWebhookEvent:
        """
        Decode a Real-Time Developer Notification.

        Raises:
            WebhookVerificationError: If the payload is invalid
        """
        ...
