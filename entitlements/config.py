"""
Application Configuration - Pydantic Settings for type-safe config.

NO DICTIONARIES - All configuration is strongly typed.
FAIL FAST - Critical config is validated at startup.
"""

import sys

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when critical configuration is missing or invalid."""

    pass


def _split_ids(raw: str) -> list[str]:
    """Split a comma-separated product id list, dropping blanks and duplicates."""
    ids: list[str] = []
    for item in raw.split(","):
        item = item.strip()
        if item and item not in ids:
            ids.append(item)
    return ids


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration - NO DEFAULT for production safety
    database_url: str = ""
    database_pool_size: int = 10
    database_max_overflow: int = 5
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "Entitlement Verification API"
    api_version: str = "0.1.0"
    api_description: str = "Reconciles cached, ledger and Google Play entitlement state"

    # Security
    api_key: str = ""  # Shared secret for X-API-Key; empty disables the check

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = False
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "entitlement-engine"

    # Google Play
    # Service account JSON for the Android Publisher API (file path or raw JSON)
    GOOGLE_PLAY_SERVICE_ACCOUNT: str = ""
    ANDROID_PACKAGE_NAME: str = ""

    # Product catalog (must match Google Play Console configuration)
    monthly_product_ids: str = "monthly"
    annual_product_ids: str = "annual"
    lifetime_product_ids: str = "lifetime"
    legacy_lifetime_product_ids: str = "lifetime_legacy"

    # Local cache
    cache_path: str = "entitlement_cache.sqlite3"
    cache_validity_seconds: float = 30.0
    cache_stale_after_seconds: float = 24 * 60 * 60

    # Reconciliation
    verification_timeout_seconds: float = 4.0
    force_refresh_timeout_seconds: float = 3.0
    grace_period_hours: float = 48.0

    # Provider connection
    max_connection_attempts: int = 5
    reconnect_base_delay_seconds: float = 1.0
    reconnect_max_exponent: int = 6

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_critical_config(self) -> "Settings":
        """
        FAIL FAST: Validate critical configuration at startup.

        The app MUST NOT start if critical config is missing.
        """
        errors: list[str] = []

        if not self.database_url:
            errors.append("DATABASE_URL is required but empty or missing")
        elif not self.database_url.startswith(("postgresql", "postgres")):
            errors.append(
                f"DATABASE_URL must be a PostgreSQL URL, got: {self.database_url[:20]}..."
            )

        if self.verification_timeout_seconds <= 0 or self.force_refresh_timeout_seconds <= 0:
            errors.append("Verification timeouts must be positive")

        if self.max_connection_attempts < 1:
            errors.append("MAX_CONNECTION_ATTEMPTS must be at least 1")

        seen: dict[str, str] = {}
        for group, ids in (
            ("monthly", self.monthly_ids),
            ("annual", self.annual_ids),
            ("lifetime", self.lifetime_ids),
            ("legacy_lifetime", self.legacy_lifetime_ids),
        ):
            for product_id in ids:
                key = product_id.lower()
                if key in seen:
                    errors.append(
                        f"Product id '{product_id}' configured for both {seen[key]} and {group}"
                    )
                seen[key] = group

        if errors:
            error_msg = "\n".join(
                [
                    "",
                    "=" * 60,
                    "CRITICAL CONFIGURATION ERROR - APPLICATION CANNOT START",
                    "=" * 60,
                    *[f"  ✗ {e}" for e in errors],
                    "=" * 60,
                    "",
                ]
            )
            print(error_msg, file=sys.stderr)
            raise ConfigurationError(error_msg)

        return self

    @property
    def monthly_ids(self) -> list[str]:
        return _split_ids(self.monthly_product_ids)

    @property
    def annual_ids(self) -> list[str]:
        return _split_ids(self.annual_product_ids)

    @property
    def lifetime_ids(self) -> list[str]:
        return _split_ids(self.lifetime_product_ids)

    @property
    def legacy_lifetime_ids(self) -> list[str]:
        return _split_ids(self.legacy_lifetime_product_ids)

    @property
    def subscription_ids(self) -> list[str]:
        """Product ids queried in the subscription phase of the catalog."""
        return self.monthly_ids + self.annual_ids

    @property
    def one_time_ids(self) -> list[str]:
        """Product ids queried in the one-time phase (legacy ids are never sold)."""
        return self.lifetime_ids


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings
