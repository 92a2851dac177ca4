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


def _split_csv(raw: str) -> frozenset[str]:
    """Parse a comma-separated currency list into lower-cased codes."""
    return frozenset(code.strip().lower() for code in raw.split(",") if code.strip())


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration - NO DEFAULT for production safety
    database_url: str = ""
    database_pool_size: int = 25
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "Order Payments API"
    api_version: str = "0.1.0"
    api_description: str = "Payment orchestration and reconciliation for orders"

    # Public URL used to build provider callback and redirect URLs
    public_base_url: str = "http://localhost:8000"

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = True
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "order-payments-api"

    # Card rail (Stripe)
    card_rail_api_key: str = ""  # sk_test_... or sk_live_...
    card_rail_webhook_secret: str = ""  # whsec_...
    card_rail_publishable_key: str = ""  # pk_test_... or pk_live_...
    card_rail_currencies: str = "myr,usd,sgd"

    # Bill gateway (Bizappay)
    bill_gateway_base_url: str = "https://bizappay.my"
    bill_gateway_api_key: str = ""
    bill_gateway_category: str = ""
    bill_gateway_webhook_secret: str = ""
    bill_gateway_token_lifetime_seconds: int = 86400  # Provider declares 24h tokens
    bill_gateway_currencies: str = "myr"

    # Transaction verification gateway (Paystack)
    txn_gateway_base_url: str = "https://api.paystack.co"
    txn_gateway_secret_key: str = ""
    txn_gateway_currencies: str = "ngn,ghs,zar,kes,usd"

    # Credentials and outbound calls
    credential_safety_margin_seconds: int = 3600  # Keep 23h of a declared 24h token
    provider_request_timeout_seconds: float = 15.0

    # Client-driven verification (processing page)
    client_poll_interval_seconds: float = 2.0
    client_poll_max_wait_seconds: float = 120.0

    # Server-side verification for pending redirects
    server_poll_enabled: bool = True
    server_poll_interval_seconds: float = 30.0
    server_poll_max_wait_seconds: float = 1800.0

    # Side effects
    commission_rate_bps: int = 0  # Basis points of the paid amount; 0 disables

    # Startup
    run_migrations_on_startup: bool = True

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
        This prevents silent failures that only manifest at runtime.
        """
        errors: list[str] = []

        # DATABASE_URL is absolutely required
        if not self.database_url:
            errors.append("DATABASE_URL is required but empty or missing")
        elif not self.database_url.startswith(("postgresql", "postgres")):
            errors.append(
                f"DATABASE_URL must be a PostgreSQL URL, got: {self.database_url[:20]}..."
            )

        if self.credential_safety_margin_seconds < 0:
            errors.append("CREDENTIAL_SAFETY_MARGIN_SECONDS cannot be negative")

        if self.provider_request_timeout_seconds <= 0:
            errors.append("PROVIDER_REQUEST_TIMEOUT_SECONDS must be positive")

        if not 0 <= self.commission_rate_bps <= 10000:
            errors.append("COMMISSION_RATE_BPS must be between 0 and 10000")

        # If we have errors, fail immediately with clear messaging
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
    def card_rail_allowed_currencies(self) -> frozenset[str]:
        """Currencies accepted by the card rail."""
        return _split_csv(self.card_rail_currencies)

    @property
    def bill_gateway_allowed_currencies(self) -> frozenset[str]:
        """Currencies accepted by the bill gateway."""
        return _split_csv(self.bill_gateway_currencies)

    @property
    def txn_gateway_allowed_currencies(self) -> frozenset[str]:
        """Currencies accepted by the transaction gateway."""
        return _split_csv(self.txn_gateway_currencies)


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings
