"""
Google Play domain models - Immutable dataclasses for provider payloads.

NO DICTIONARIES - All data uses strongly typed models.
"""

from dataclasses import dataclass

from entitlements.models.domain import ProductType

# Real-Time Developer Notification types
SUBSCRIPTION_NOTIFICATION_TYPES: dict[int, str] = {
    1: "subscription_recovered",
    2: "subscription_renewed",
    3: "subscription_canceled",
    4: "subscription_purchased",
    5: "subscription_on_hold",
    6: "subscription_in_grace_period",
    7: "subscription_restarted",
    12: "subscription_revoked",
    13: "subscription_expired",
}

ONE_TIME_NOTIFICATION_TYPES: dict[int, str] = {
    1: "product_purchased",
    2: "product_canceled",
}


@dataclass(frozen=True)
class GooglePlayPurchaseToken:
    """Validated Google Play purchase token."""

    token: str
    product_id: str
    product_type: ProductType

    def __post_init__(self) -> None:
        """Validate purchase token fields."""
        if not self.token or len(self.token) < 10:
            raise ValueError("Invalid purchase token")
        if not self.product_id:
            raise ValueError("Product ID required")


@dataclass(frozen=True)
class GooglePlayWebhookEvent:
    """Decoded Real-Time Developer Notification."""

    event_id: str
    event_type: str  # "subscription_renewed", "product_purchased", etc.
    purchase_token: str
    product_id: str
    product_type: ProductType
    package_name: str
    notification_type: int
    event_time_millis: int
