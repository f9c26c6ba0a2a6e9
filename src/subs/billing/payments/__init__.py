"""
Payment provider integration and payment collection.
"""

from subs.billing.payments.processor import ChargeResult, PaymentProcessor, RetryOutcome, RetryResult
from subs.billing.payments.providers import PaymentProvider, StripePaymentProvider

__all__ = [
    "ChargeResult",
    "PaymentProcessor",
    "PaymentProvider",
    "RetryOutcome",
    "RetryResult",
    "StripePaymentProvider",
]
