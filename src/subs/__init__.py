"""
Subs - recurring subscription billing.

This package provides the subscription billing core:
- Subscription lifecycle state machine with append-only history
- Calendar-aware billing dates and processing fee snapshots
- Stripe integration behind a narrow provider interface
- Idempotent webhook reconciliation
- Scheduled payment sweeps
"""

__version__ = "1.0.0"
