"""
Application Configuration - Pydantic Settings for type-safe config.

NO DICTIONARIES for behaviour - policy values are typed fields.
FAIL FAST - Critical config is validated at startup.
"""

import sys
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when critical configuration is missing or invalid."""

    pass


# NovaVid PayPal billing plans (sandbox ids)
DEFAULT_PAYPAL_PLAN_IDS: dict[str, str] = {
    "P-1CU872153T160240CNEUZ6GQ": "premium_monthly",
    "P-5TU115583H392493PNEUZ7WY": "pro_monthly",
    "P-915366303B503794PNEU2BBI": "premium_yearly",
    "P-3YX87057DC5843453NEU2CKI": "pro_yearly",
}


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # "postgres" in production; "memory" runs single-process without a database
    store_backend: Literal["postgres", "memory"] = "postgres"

    # Database Configuration - NO DEFAULT for production safety
    database_url: str = ""
    database_pool_size: int = 25
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600
    # Row lock wait before a mutation gives up with StorageConflictError
    database_lock_timeout_ms: int = 5000

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "NovaVid Billing API"
    api_version: str = "0.1.0"
    api_description: str = "Credit ledger and plan entitlements for NovaVid"

    # Security - shared key for backend-to-backend calls
    service_api_key: str = ""

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = False
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "novavid-billing-api"

    # Payment Provider - Stripe
    stripe_api_key: str = ""
    stripe_webhook_secret: str = ""
    stripe_price_plans: dict[str, str] = Field(default_factory=dict)  # price id -> plan key

    # Payment Provider - PayPal
    paypal_client_id: str = ""
    paypal_client_secret: str = ""
    paypal_webhook_id: str = ""
    paypal_api_base: str = "https://api-m.sandbox.paypal.com"
    paypal_plan_ids: dict[str, str] = Field(
        default_factory=lambda: dict(DEFAULT_PAYPAL_PLAN_IDS)
    )

    # Account lifecycle
    signup_credits: int = 100
    trial_days: int = 5

    # Plan policy
    premium_upgrade_bonus_credits: int = 200
    pro_upgrade_bonus_credits: int = 500
    # Pending product decision: Pro accounts below cost get topped up
    pro_auto_recharge_enabled: bool = False
    pro_auto_recharge_balance: int = 100  # balance a Pro account is topped up to

    # Reservations
    reservation_ttl_seconds: int = 900
    sweeper_enabled: bool = True
    reservation_sweep_interval_seconds: int = 60
    sweep_batch_size: int = 100
    # Must stay below the TTL so the sweep never refunds live work
    metered_work_timeout_seconds: float = 600.0

    # Parked webhook events
    parked_retry_base_seconds: int = 30
    parked_retry_max_seconds: int = 3600

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

        if self.store_backend == "postgres":
            if not self.database_url:
                errors.append("DATABASE_URL is required but empty or missing")
            elif not self.database_url.startswith(("postgresql", "postgres")):
                errors.append(
                    f"DATABASE_URL must be a PostgreSQL URL, got: {self.database_url[:20]}..."
                )

        if self.signup_credits < 0:
            errors.append(f"SIGNUP_CREDITS cannot be negative: {self.signup_credits}")

        if self.pro_auto_recharge_balance <= 0:
            errors.append("PRO_AUTO_RECHARGE_BALANCE must be positive")

        if self.reservation_ttl_seconds <= 0:
            errors.append("RESERVATION_TTL_SECONDS must be positive")

        if not 0 < self.metered_work_timeout_seconds < self.reservation_ttl_seconds:
            errors.append(
                f"METERED_WORK_TIMEOUT_SECONDS must be positive and below "
                f"RESERVATION_TTL_SECONDS ({self.reservation_ttl_seconds}), "
                f"got: {self.metered_work_timeout_seconds}"
            )

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


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings
