"""
Billing module configuration

An immutable projection of the application settings handed to billing
components at construction time.
"""

from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from subs.billing.exceptions import BillingConfigurationError
from subs.settings import Settings, get_settings


class StripeConfig(BaseModel):
    """Stripe configuration"""

    model_config = ConfigDict(frozen=True)

    secret_key: str = Field("", description="Active Stripe secret key")
    publishable_key: str = Field("", description="Active Stripe publishable key")
    webhook_secret: str = Field("", description="Stripe webhook signing secret")
    test_mode: bool = Field(True, description="Whether test keys are in use")
    webhook_tolerance_seconds: int = Field(300, description="Signed timestamp tolerance")

    def require_secret_key(self) -> str:
        """Return the secret key or fail if none is configured."""
        if not self.secret_key:
            mode = "test" if self.test_mode else "live"
            raise BillingConfigurationError(
                f"Stripe {mode} secret key is not configured",
                config_key=f"stripe.{mode}_secret_key",
            )
        return self.secret_key

    def require_webhook_secret(self) -> str:
        """Return the webhook secret or fail if none is configured."""
        if not self.webhook_secret:
            raise BillingConfigurationError(
                "Stripe webhook secret is not configured",
                config_key="stripe.webhook_secret",
            )
        return self.webhook_secret


class FeeConfig(BaseModel):
    """Processing fee configuration"""

    model_config = ConfigDict(frozen=True)

    pass_fees_to_customer: bool = Field(False, description="Charge the fee to the customer")
    percentage: Decimal = Field(Decimal("2.9"), description="Percentage fee")
    fixed: Decimal = Field(Decimal("0.30"), description="Fixed fee per charge")


class TrialConfig(BaseModel):
    """Trial configuration"""

    model_config = ConfigDict(frozen=True)

    enabled: bool = Field(False, description="Allow trial periods")
    default_days: int = Field(7, description="Default trial length in days")


class SelfServiceConfig(BaseModel):
    """Customer self-service permissions"""

    model_config = ConfigDict(frozen=True)

    can_pause: bool = True
    can_cancel: bool = True
    can_modify: bool = True
    can_change_payment_method: bool = True


class PaymentRetryConfig(BaseModel):
    """Failed payment retry configuration"""

    model_config = ConfigDict(frozen=True)

    enabled: bool = Field(True, description="Retry failed payments")
    max_attempts: int = Field(3, description="Maximum payment retry attempts")
    delay_hours: int = Field(24, description="Hours to wait between retry attempts")


class MaintenanceConfig(BaseModel):
    """Scheduled sweep configuration"""

    model_config = ConfigDict(frozen=True)

    overdue_grace_days: int = 3
    processed_event_retention_days: int = 30
    batch_size: int = 100
    lease_seconds: int = 3300


class BillingConfig(BaseModel):
    """Main billing configuration"""

    model_config = ConfigDict(frozen=True)

    default_currency: str = "USD"
    stripe: StripeConfig = Field(default_factory=StripeConfig)
    fees: FeeConfig = Field(default_factory=FeeConfig)
    trials: TrialConfig = Field(default_factory=TrialConfig)
    self_service: SelfServiceConfig = Field(default_factory=SelfServiceConfig)
    retry: PaymentRetryConfig = Field(default_factory=PaymentRetryConfig)
    maintenance: MaintenanceConfig = Field(default_factory=MaintenanceConfig)

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "BillingConfig":
        """Create configuration from application settings"""
        settings = settings or get_settings()
        stripe_settings = settings.stripe
        billing = settings.billing

        if stripe_settings.test_mode:
            secret_key = stripe_settings.test_secret_key
            publishable_key = stripe_settings.test_publishable_key
        else:
            secret_key = stripe_settings.live_secret_key
            publishable_key = stripe_settings.live_publishable_key

        return cls(
            default_currency=billing.default_currency.upper(),
            stripe=StripeConfig(
                secret_key=secret_key,
                publishable_key=publishable_key,
                webhook_secret=stripe_settings.webhook_secret,
                test_mode=stripe_settings.test_mode,
                webhook_tolerance_seconds=stripe_settings.webhook_tolerance_seconds,
            ),
            fees=FeeConfig(
                pass_fees_to_customer=billing.pass_fees_to_customer,
                percentage=billing.fee_percentage,
                fixed=billing.fee_fixed,
            ),
            trials=TrialConfig(
                enabled=billing.enable_trials,
                default_days=billing.default_trial_days,
            ),
            self_service=SelfServiceConfig(
                can_pause=billing.customer_can_pause,
                can_cancel=billing.customer_can_cancel,
                can_modify=billing.customer_can_modify,
                can_change_payment_method=billing.customer_can_change_payment_method,
            ),
            retry=PaymentRetryConfig(
                enabled=billing.retry_failed_payments,
                max_attempts=billing.max_retry_attempts,
                delay_hours=billing.retry_delay_hours,
            ),
            maintenance=MaintenanceConfig(
                overdue_grace_days=billing.overdue_grace_days,
                processed_event_retention_days=billing.processed_event_retention_days,
                batch_size=billing.sweep_batch_size,
                lease_seconds=billing.sweep_lease_seconds,
            ),
        )

