"""
Tests for exception classes.

Covers attributes and string representations.
"""

import pytest

from entitlements.exceptions import (
    AnomalyError,
    AuthenticationError,
    ConnectivityError,
    EntitlementError,
    LedgerError,
    PaymentProviderError,
    VerificationTimeoutError,
    WebhookVerificationError,
)


class TestEntitlementError:
    """Tests for base EntitlementError."""

    def test_is_exception(self):
        """EntitlementError is a subclass of Exception."""
        assert issubclass(EntitlementError, Exception)

    @pytest.mark.parametrize(
        "exc",
        [
            ConnectivityError("down"),
            LedgerError("get", "down"),
            AnomalyError("user-1", "lifetime", "owned elsewhere"),
            VerificationTimeoutError("user-1", 4.0),
            PaymentProviderError("boom"),
            WebhookVerificationError("bad"),
            AuthenticationError("nope"),
        ],
    )
    def test_all_are_entitlement_errors(self, exc):
        """Every concrete error derives from EntitlementError."""
        assert isinstance(exc, EntitlementError)


class TestConnectivityError:
    """Tests for ConnectivityError."""

    def test_attributes(self):
        exc = ConnectivityError("service disconnected", response_code=-1)
        assert exc.message == "service disconnected"
        assert exc.response_code == -1
        assert "Provider connectivity error" in str(exc)

    def test_response_code_optional(self):
        assert ConnectivityError("down").response_code is None


class TestLedgerError:
    """Tests for LedgerError."""

    def test_message_names_operation(self):
        exc = LedgerError("set", "deadlock")
        assert exc.operation == "set"
        assert str(exc) == "Ledger set failed: deadlock"


class TestAnomalyError:
    """Tests for AnomalyError."""

    def test_message_format(self):
        exc = AnomalyError("user-1", "lifetime", "owned by another account")
        assert exc.account_id == "user-1"
        assert exc.product_id == "lifetime"
        assert "user-1" in str(exc)
        assert "lifetime" in str(exc)


class TestVerificationTimeoutError:
    """Tests for VerificationTimeoutError."""

    def test_message_format(self):
        exc = VerificationTimeoutError("user-1", 3)
        assert exc.timeout_seconds == 3
        assert str(exc) == "Verification for user-1 timed out after 3.0s"


class TestProviderFacingErrors:
    """Tests for errors mapped to HTTP responses."""

    def test_payment_provider_error(self):
        exc = PaymentProviderError("Purchase not found")
        assert exc.message == "Purchase not found"
        assert "Payment provider error" in str(exc)

    def test_webhook_verification_error(self):
        exc = WebhookVerificationError("Invalid JSON")
        assert exc.message == "Invalid JSON"
        assert "Webhook verification error" in str(exc)

    def test_authentication_error(self):
        exc = AuthenticationError("Invalid API key")
        assert "Authentication failed" in str(exc)
