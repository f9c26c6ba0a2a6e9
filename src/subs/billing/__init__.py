"""
Billing system module.

Provides recurring subscription billing capabilities including:
- Subscription lifecycle (state machine, store, administrative service)
- Billing date and processing fee calculation
- Payment collection and failed-payment retries
- Stripe webhook reconciliation
- Scheduled sweeps for due payments and maintenance
"""

from subs.billing.exceptions import (
    ActionNotPermittedError,
    AlreadyCancelledError,
    BillingConfigurationError,
    BillingError,
    BillingValidationError,
    CustomerNotFoundError,
    InvalidTransitionError,
    NotFoundError,
    OrderNotFoundError,
    ProductNotFoundError,
    ProviderError,
    StaleSubscriptionError,
    SubscriptionNotActiveError,
    SubscriptionNotFoundError,
    UnknownProviderStatusError,
    WebhookPayloadError,
    WebhookSignatureError,
)

__all__ = [
    "BillingError",
    "BillingConfigurationError",
    "NotFoundError",
    "SubscriptionNotFoundError",
    "CustomerNotFoundError",
    "ProductNotFoundError",
    "OrderNotFoundError",
    "InvalidTransitionError",
    "AlreadyCancelledError",
    "SubscriptionNotActiveError",
    "BillingValidationError",
    "WebhookPayloadError",
    "UnknownProviderStatusError",
    "ProviderError",
    "ActionNotPermittedError",
    "WebhookSignatureError",
    "StaleSubscriptionError",
]
