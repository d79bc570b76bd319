"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum, IntEnum


class PlanType(str, Enum):
    """Entitlement plan. UNKNOWN is the generic "entitled, plan not recognized" case."""

    MONTHLY = "Monthly"
    ANNUAL = "Annual"
    LIFETIME = "Lifetime"
    UNKNOWN = "Unknown"


class VerdictSource(str, Enum):
    """Which source of truth produced a verdict."""

    CACHE = "cache"
    LEDGER = "ledger"
    PROVIDER = "provider"


class PurchaseState(str, Enum):
    """Provider purchase state."""

    PURCHASED = "purchased"
    PENDING = "pending"
    UNSPECIFIED = "unspecified"


class ProductType(str, Enum):
    """Provider product type."""

    SUBSCRIPTION = "subs"
    ONE_TIME = "inapp"


class ConnectionPhase(str, Enum):
    """Lifecycle phase of the provider connection."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    READY = "ready"
    PERMANENTLY_FAILED = "permanently_failed"


class BillingResponseCode(IntEnum):
    """Provider response codes (values match the Play Billing Library)."""

    SERVICE_TIMEOUT = -3
    FEATURE_NOT_SUPPORTED = -2
    SERVICE_DISCONNECTED = -1
    OK = 0
    USER_CANCELED = 1
    SERVICE_UNAVAILABLE = 2
    BILLING_UNAVAILABLE = 3
    ITEM_UNAVAILABLE = 4
    DEVELOPER_ERROR = 5
    ERROR = 6
    ITEM_ALREADY_OWNED = 7
    ITEM_NOT_OWNED = 8
    NETWORK_ERROR = 12

    @property
    def is_connectivity_error(self) -> bool:
        """Codes that mean the provider could not be reached."""
        return self in CONNECTIVITY_RESPONSE_CODES


CONNECTIVITY_RESPONSE_CODES = frozenset(
    {
        BillingResponseCode.SERVICE_DISCONNECTED,
        BillingResponseCode.SERVICE_UNAVAILABLE,
        BillingResponseCode.SERVICE_TIMEOUT,
        BillingResponseCode.NETWORK_ERROR,
    }
)


@dataclass(frozen=True)
class AccountIdentity:
    """Authenticated account. account_id keys the ledger and the local cache."""

    account_id: str
    email: str | None = None

    def __post_init__(self) -> None:
        """Validate account identity fields."""
        if not self.account_id or not self.account_id.strip():
            raise ValueError("account_id cannot be empty")


@dataclass(frozen=True)
class BillingResult:
    """Outcome of a provider call."""

    response_code: BillingResponseCode
    debug_message: str = ""

    @property
    def ok(self) -> bool:
        return self.response_code == BillingResponseCode.OK

    @classmethod
    def success(cls) -> "BillingResult":
        return cls(BillingResponseCode.OK)


@dataclass(frozen=True)
class EntitlementVerdict:
    """Immutable entitlement decision. Superseded by later verdicts, never mutated."""

    is_entitled: bool
    plan_type: PlanType | None
    source: VerdictSource
    verified_at: datetime

    def __post_init__(self) -> None:
        """A verdict without entitlement carries no plan."""
        if not self.is_entitled and self.plan_type is not None:
            raise ValueError("plan_type must be None when is_entitled is False")

    @classmethod
    def not_entitled(cls, source: VerdictSource, verified_at: datetime) -> "EntitlementVerdict":
        return cls(is_entitled=False, plan_type=None, source=source, verified_at=verified_at)


@dataclass(frozen=True)
class Purchase:
    """Purchase as observed from the provider."""

    order_id: str | None
    product_ids: frozenset[str]
    state: PurchaseState
    token: str
    acknowledged: bool
    auto_renewing: bool
    purchase_time: datetime
    product_type: ProductType
    obfuscated_account_id: str | None = None
    obfuscated_profile_id: str | None = None

    @property
    def has_token(self) -> bool:
        return bool(self.token and self.token.strip())

    @property
    def primary_product_id(self) -> str | None:
        """First product id in sorted order; purchases normally carry exactly one."""
        return min(self.product_ids) if self.product_ids else None

    def belongs_to(self, account: AccountIdentity) -> bool:
        """Check the account-linking metadata attached when the flow was launched."""
        if self.obfuscated_account_id and self.obfuscated_account_id == account.account_id:
            return True
        return bool(
            account.email
            and self.obfuscated_profile_id
            and self.obfuscated_profile_id == account.email
        )


@dataclass(frozen=True)
class Product:
    """Catalog entry. raw_offer holds the subscription offer token."""

    product_id: str
    product_type: ProductType
    display_price: str | None
    name: str = ""
    raw_offer: str | None = None


@dataclass(frozen=True)
class CacheRecord:
    """Last known verdict stored on this host."""

    is_entitled: bool
    plan_type: PlanType | None
    last_updated: datetime


@dataclass(frozen=True)
class LedgerRecord:
    """Entitlement record as registered in the remote ledger."""

    is_entitled: bool
    plan_type: PlanType | None = None
    order_id: str | None = None
    product_id: str | None = None
    purchase_time: datetime | None = None

    @classmethod
    def empty(cls) -> "LedgerRecord":
        return cls(is_entitled=False)


@dataclass(frozen=True)
class LedgerUpdate:
    """Fields written to the remote ledger."""

    is_entitled: bool
    plan_type: PlanType | None = None
    order_id: str | None = None
    product_id: str | None = None
    purchase_time: datetime | None = None
    purchase_token: str | None = None
    account_email: str | None = None


@dataclass(frozen=True)
class ConnectionState:
    """Provider connection state; attempt is only meaningful while CONNECTING."""

    phase: ConnectionPhase
    attempt: int = 0

    @classmethod
    def disconnected(cls) -> "ConnectionState":
        return cls(ConnectionPhase.DISCONNECTED)

    @classmethod
    def connecting(cls, attempt: int) -> "ConnectionState":
        return cls(ConnectionPhase.CONNECTING, attempt)

    @classmethod
    def ready(cls) -> "ConnectionState":
        return cls(ConnectionPhase.READY)

    @classmethod
    def permanently_failed(cls) -> "ConnectionState":
        return cls(ConnectionPhase.PERMANENTLY_FAILED)
