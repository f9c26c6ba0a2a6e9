"""
Subscription aggregate: models, persistence, lifecycle and service.
"""

from subs.billing.subscriptions.lifecycle import SubscriptionLifecycle
from subs.billing.subscriptions.models import (
    ACTIVE_STATUSES,
    BatchResult,
    BillingPeriod,
    ExtensionMetadata,
    HistoryAction,
    HistoryEntry,
    MetaKeys,
    Subscription,
    SubscriptionStatus,
    TransitionResult,
)
from subs.billing.subscriptions.schedule import next_payment_date
from subs.billing.subscriptions.store import SubscriptionStore

__all__ = [
    "ACTIVE_STATUSES",
    "BatchResult",
    "BillingPeriod",
    "ExtensionMetadata",
    "HistoryAction",
    "HistoryEntry",
    "MetaKeys",
    "Subscription",
    "SubscriptionLifecycle",
    "SubscriptionStatus",
    "SubscriptionStore",
    "TransitionResult",
    "next_payment_date",
]
