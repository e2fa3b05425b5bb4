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


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration - NO DEFAULT for production safety
    database_url: str = ""
    database_pool_size: int = 25
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600
    run_migrations_on_startup: bool = False

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "Paygate API"
    api_version: str = "0.1.0"
    api_description: str = "Payment gateway integration and invoice reconciliation"

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = True
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "paygate-api"
    deployment_environment: str = "production"

    # Gateway - card-hosted (Stripe Checkout)
    stripe_api_key: str = ""  # sk_test_... or sk_live_...
    stripe_webhook_secret: str = ""  # whsec_...
    stripe_success_url: str = "https://example.invalid/payments/success"
    stripe_cancel_url: str = "https://example.invalid/payments/cancel"

    # Gateway - order-signature (Razorpay-style orders API)
    order_gateway_base_url: str = "https://api.razorpay.com"
    order_gateway_key_id: str = ""
    order_gateway_key_secret: str = ""
    order_gateway_webhook_secret: str = ""

    # Gateway - mobile-money (M-Pesa Express)
    mpesa_base_url: str = "https://sandbox.safaricom.co.ke"
    mpesa_consumer_key: str = ""
    mpesa_consumer_secret: str = ""
    mpesa_shortcode: str = ""
    mpesa_passkey: str = ""
    mpesa_callback_url: str = ""
    mpesa_callback_token: str = ""  # Shared secret appended to the callback URL
    mpesa_initiator_name: str = ""
    mpesa_security_credential: str = ""
    mpesa_reversal_result_url: str = ""
    mpesa_currency: str = "KES"

    # Gateway call policy
    gateway_timeout_seconds: float = 10.0
    gateway_max_attempts: int = 3
    gateway_backoff_initial_seconds: float = 0.5
    gateway_backoff_max_seconds: float = 4.0

    # Intent lifetimes per gateway
    intent_ttl_card_hosted_minutes: int = 30
    intent_ttl_order_signature_minutes: int = 30
    intent_ttl_mobile_money_minutes: int = 5

    # Idempotency
    idempotency_lease_seconds: int = 60
    idempotency_retention_days: int = 30
    idempotency_wait_seconds: float = 5.0
    idempotency_poll_interval_seconds: float = 0.05

    # Ledger policy
    allow_overpayment: bool = False

    # Background maintenance
    sweep_enabled: bool = True
    sweep_interval_seconds: float = 60.0
    refund_retry_after_seconds: int = 300  # Pending refunds older than this are retried

    # Event publishing
    event_publisher: str = "log"  # log or http
    event_publisher_url: str = ""
    event_publisher_timeout_seconds: float = 5.0

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

        if self.event_publisher not in ("log", "http"):
            errors.append(f"EVENT_PUBLISHER must be 'log' or 'http', got: {self.event_publisher}")
        elif self.event_publisher == "http" and not self.event_publisher_url:
            errors.append("EVENT_PUBLISHER_URL is required when EVENT_PUBLISHER=http")

        if self.gateway_max_attempts < 1:
            errors.append("GATEWAY_MAX_ATTEMPTS must be at least 1")

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
    def card_hosted_configured(self) -> bool:
        """Stripe Checkout has credentials."""
        return bool(self.stripe_api_key and self.stripe_webhook_secret)

    @property
    def order_signature_configured(self) -> bool:
        """Order gateway has credentials."""
        return bool(self.order_gateway_key_id and self.order_gateway_key_secret)

    @property
    def mobile_money_configured(self) -> bool:
        """M-Pesa Express has credentials."""
        return bool(
            self.mpesa_consumer_key
            and self.mpesa_consumer_secret
            and self.mpesa_shortcode
            and self.mpesa_passkey
        )


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings
