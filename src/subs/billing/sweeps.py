"""
Scheduled billing sweeps.

Each sweep holds a named database lease for its whole run so overlapping
schedules (or several beat-driven workers) never bill the same
subscription twice. A sweep that cannot take its lease is skipped.
"""

import os
import socket
import uuid
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from typing import Any

import structlog
from sqlalchemy.exc import SQLAlchemyError

from subs.billing.config import BillingConfig
from subs.billing.exceptions import BillingError
from subs.billing.payments.processor import PaymentProcessor
from subs.billing.subscriptions.lifecycle import SubscriptionLifecycle
from subs.billing.subscriptions.models import BatchResult, SubscriptionStatus
from subs.billing.subscriptions.store import SubscriptionStore
from subs.db import utcnow

logger = structlog.get_logger(__name__)

PROCESS_PAYMENTS_LEASE = "billing.process_due_payments"
RETRY_PAYMENTS_LEASE = "billing.retry_failed_payments"
MAINTENANCE_LEASE = "billing.maintenance"


def default_lease_holder() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class BillingSweeps:
    """Lease-guarded periodic billing jobs."""

    def __init__(
        self,
        store: SubscriptionStore,
        processor: PaymentProcessor,
        lifecycle: SubscriptionLifecycle,
        config: BillingConfig,
        clock: Callable[[], datetime] = utcnow,
        holder: str | None = None,
    ) -> None:
        self.store = store
        self.processor = processor
        self.lifecycle = lifecycle
        self.config = config
        self._clock = clock
        self.holder = holder or default_lease_holder()

    async def _with_lease(
        self, name: str, job: Callable[[], Awaitable[dict[str, Any]]]
    ) -> dict[str, Any]:
        ttl = self.config.maintenance.lease_seconds
        if not await self.store.acquire_lease(name, self.holder, ttl):
            logger.info("sweep.skipped.lease_held", sweep=name, holder=self.holder)
            return {"status": "skipped", "reason": "lease_held"}

        log = logger.bind(sweep=name, holder=self.holder)
        log.info("sweep.started")
        try:
            summary = await job()
        finally:
            await self.store.release_lease(name, self.holder)
        log.info("sweep.completed", **summary)
        return {"status": "ok", **summary}

    async def process_due_payments(self) -> dict[str, Any]:
        """Charge every active subscription whose payment date has arrived."""

        async def job() -> dict[str, Any]:
            return (await self.processor.process_due_payments(self._clock())).to_dict()

        return await self._with_lease(PROCESS_PAYMENTS_LEASE, job)

    async def retry_failed_payments(self) -> dict[str, Any]:
        async def job() -> dict[str, Any]:
            return (await self.processor.retry_failed_payments(self._clock())).to_dict()

        return await self._with_lease(RETRY_PAYMENTS_LEASE, job)

    async def run_maintenance(self) -> dict[str, Any]:
        """Purge old webhook ledger rows and flag overdue subscriptions."""

        async def job() -> dict[str, Any]:
            now = self._clock()
            retention = timedelta(days=self.config.maintenance.processed_event_retention_days)
            purged = await self.store.purge_processed_events(now - retention)
            overdue = await self.mark_overdue(now)
            return {"purged_events": purged, "overdue": overdue.to_dict()}

        return await self._with_lease(MAINTENANCE_LEASE, job)

    async def mark_overdue(self, now: datetime | None = None) -> BatchResult:
        """
        Move active subscriptions to past_due once their payment date is
        more than the grace period behind.
        """
        now = now or self._clock()
        cutoff = now - timedelta(days=self.config.maintenance.overdue_grace_days)
        result = BatchResult()

        candidates = await self.store.list_due(cutoff, limit=self.config.maintenance.batch_size)
        for candidate in candidates:
            subscription_id = candidate.subscription_id
            try:
                async with self.store.lock(subscription_id):
                    subscription = await self.store.get(subscription_id)
                    due = subscription.next_payment_date
                    if not subscription.is_active or due is None or due > cutoff:
                        continue
                    await self.lifecycle.transition(
                        subscription,
                        SubscriptionStatus.PAST_DUE,
                        note=f"Payment overdue since {due.date().isoformat()}",
                    )
                result.processed += 1
            except BillingError as e:
                result.add_error(subscription_id, e.error_code, e.message)
            except SQLAlchemyError as e:
                logger.exception("sweep.mark_overdue.db_error", subscription_id=subscription_id)
                result.add_error(subscription_id, "DATABASE_ERROR", str(e))

        if result.processed:
            logger.info("subscriptions.marked_overdue", count=result.processed, cutoff=cutoff.isoformat())
        return result
