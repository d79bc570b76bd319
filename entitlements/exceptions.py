"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.

Everything below EntitlementError is contained inside the engine; the only
exceptions allowed to reach an HTTP caller are the provider, webhook and
authentication errors, which the API layer maps to status codes.
"""


class EntitlementError(Exception):
    """Base exception for all entitlement errors."""

    pass


class ConnectivityError(EntitlementError):
    """Raised when the purchase provider is unreachable or disconnected."""

    def __init__(self, message: str, response_code: int | None = None) -> None:
        self.message = message
        self.response_code = response_code
        super().__init__(f"Provider connectivity error: {message}")


class LedgerError(EntitlementError):
    """Raised when a remote ledger read or write fails."""

    def __init__(self, operation: str, message: str) -> None:
        self.operation = operation
        self.message = message
        super().__init__(f"Ledger {operation} failed: {message}")


class AnomalyError(EntitlementError):
    """Raised when the provider reports ownership inconsistent with the account."""

    def __init__(self, account_id: str, product_id: str | None, message: str) -> None:
        self.account_id = account_id
        self.product_id = product_id
        self.message = message
        super().__init__(f"Ownership anomaly for {account_id} ({product_id}): {message}")


class VerificationTimeoutError(EntitlementError):
    """Raised when the authoritative fetch exceeds its time budget."""

    def __init__(self, account_id: str, timeout_seconds: float) -> None:
        self.account_id = account_id
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Verification for {account_id} timed out after {timeout_seconds:.1f}s"
        )


class PaymentProviderError(EntitlementError):
    """Raised when a purchase provider operation fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Payment provider error: {message}")


class WebhookVerificationError(EntitlementError):
    """Raised when webhook verification fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Webhook verification error: {message}")


class AuthenticationError(EntitlementError):
    """Raised when authentication fails (invalid API key)."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Authentication failed: {message}")
