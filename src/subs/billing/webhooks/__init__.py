"""
Stripe webhook reconciliation.
"""

from subs.billing.webhooks.handlers import BillingSynchronizer, WebhookOutcome, WebhookOutcomeStatus

__all__ = [
    "BillingSynchronizer",
    "WebhookOutcome",
    "WebhookOutcomeStatus",
]
