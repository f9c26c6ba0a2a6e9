"""Centralized configuration using pydantic-settings.

All configuration is loaded from environment variables and .env files.
This is the single source of truth for runtime configuration; billing
components receive a projection of it (``BillingConfig``) at construction.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Application environment."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"
    TEST = "test"


class LogLevel(str, Enum):
    """Log levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class Settings(BaseSettings):
    """Main application settings.

    All settings can be overridden via environment variables.
    For nested settings, use double underscore: STRIPE__WEBHOOK_SECRET=whsec_...
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_nested_delimiter="__",
        extra="ignore",
    )

    # ============================================================
    # Core Application Settings
    # ============================================================

    app_name: str = Field("subs-billing", description="Application name")
    app_version: str = Field("1.0.0", description="Application version")
    environment: Environment = Field(Environment.DEVELOPMENT, description="Deployment environment")
    debug: bool = Field(False, description="Debug mode")
    testing: bool = Field(False, description="Testing mode")

    # ============================================================
    # Database Configuration
    # ============================================================

    class DatabaseSettings(BaseModel):
        """Database configuration."""

        url: str | None = Field(None, description="Full async database URL")
        host: str = Field("localhost", description="Database host")
        port: int = Field(5432, description="Database port")
        database: str = Field("subs", description="Database name")
        username: str = Field("subs", description="Database username")
        password: str = Field("", description="Database password")

        pool_size: int = Field(10, description="Connection pool size")
        max_overflow: int = Field(20, description="Max overflow connections")
        pool_pre_ping: bool = Field(True, description="Test connections before use")
        echo: bool = Field(False, description="Echo SQL statements")

    database: DatabaseSettings = DatabaseSettings()  # type: ignore[call-arg]

    # ============================================================
    # Celery & Scheduled Sweeps
    # ============================================================

    class CelerySettings(BaseModel):
        """Celery configuration."""

        broker_url: str = Field("redis://localhost:6379/0", description="Broker URL")
        result_backend: str = Field("redis://localhost:6379/1", description="Result backend")
        task_time_limit: int = Field(600, description="Hard time limit")
        task_soft_time_limit: int = Field(540, description="Soft time limit")

        process_payments_interval_seconds: int = Field(
            3600, description="How often the due-payments sweep runs"
        )
        retry_payments_interval_seconds: int = Field(
            3600, description="How often the failed-payment retry sweep runs"
        )
        maintenance_interval_seconds: int = Field(
            86400, description="How often daily maintenance runs"
        )

    celery: CelerySettings = CelerySettings()  # type: ignore[call-arg]

    # ============================================================
    # Observability
    # ============================================================

    class ObservabilitySettings(BaseModel):
        """Logging configuration."""

        log_level: LogLevel = Field(LogLevel.INFO, description="Log level")
        log_format: str = Field("json", description="Log format (json or text)")
        enable_correlation_ids: bool = Field(True, description="Enable correlation IDs")
        correlation_id_header: str = Field("X-Correlation-ID", description="Correlation ID header")

    observability: ObservabilitySettings = ObservabilitySettings()  # type: ignore[call-arg]

    # ============================================================
    # Stripe
    # ============================================================

    class StripeSettings(BaseModel):
        """Stripe credentials and webhook settings."""

        test_mode: bool = Field(True, description="Use test keys instead of live keys")
        test_publishable_key: str = Field("", description="Test publishable key")
        test_secret_key: str = Field("", description="Test secret key")
        live_publishable_key: str = Field("", description="Live publishable key")
        live_secret_key: str = Field("", description="Live secret key")
        webhook_secret: str = Field("", description="Webhook signing secret")
        webhook_tolerance_seconds: int = Field(
            300, description="Maximum age of a signed webhook timestamp"
        )

    stripe: StripeSettings = StripeSettings()  # type: ignore[call-arg]

    # ============================================================
    # Billing Configuration
    # ============================================================

    class BillingSettings(BaseModel):
        """Billing system configuration."""

        default_currency: str = Field("USD", description="Default currency")
        catalog_gateway: str | None = Field(
            None,
            description="Import path of the CatalogGateway implementation (module:attribute)",
        )

        # Processing fees
        pass_fees_to_customer: bool = Field(
            False, description="Add the provider processing fee to the customer's charge"
        )
        fee_percentage: Decimal = Field(Decimal("2.9"), description="Fee percentage")
        fee_fixed: Decimal = Field(Decimal("0.30"), description="Fixed fee per charge")

        # Trials
        enable_trials: bool = Field(False, description="Allow trial periods")
        default_trial_days: int = Field(7, description="Default trial period in days")

        # Customer self-service
        customer_can_pause: bool = Field(True, description="Customers may pause")
        customer_can_cancel: bool = Field(True, description="Customers may cancel")
        customer_can_modify: bool = Field(True, description="Customers may edit details")
        customer_can_change_payment_method: bool = Field(
            True, description="Customers may change their payment method"
        )

        # Failed payment retries
        retry_failed_payments: bool = Field(True, description="Retry failed payments")
        max_retry_attempts: int = Field(3, description="Maximum payment retry attempts")
        retry_delay_hours: int = Field(24, description="Hours between payment retries")

        # Maintenance
        overdue_grace_days: int = Field(
            3, description="Days past next_payment_date before marking past due"
        )
        processed_event_retention_days: int = Field(
            30, description="Days to keep processed webhook event ids"
        )
        sweep_batch_size: int = Field(100, description="Subscriptions per sweep")
        sweep_lease_seconds: int = Field(3300, description="Sweep lease duration")

    billing: BillingSettings = BillingSettings()  # type: ignore[call-arg]

    # ============================================================
    # Validation & Helpers
    # ============================================================

    @field_validator("environment", mode="before")
    def validate_environment(cls, v: Any) -> Any:
        """Validate environment."""
        if isinstance(v, str):
            return Environment(v.lower())
        return v

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == Environment.PRODUCTION

    @property
    def is_development(self) -> bool:
        """Check if running in development."""
        return self.environment == Environment.DEVELOPMENT

    @property
    def is_testing(self) -> bool:
        """Check if running in test mode."""
        return self.testing or self.environment == Environment.TEST


# Global settings instance
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get global settings instance (singleton)."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Reset settings (mainly for testing)."""
    global _settings
    _settings = None
