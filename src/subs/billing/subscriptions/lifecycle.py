"""
Subscription lifecycle state machine.

All status changes go through ``SubscriptionLifecycle``. ``apply`` validates
and computes the new aggregate without side effects; ``commit`` persists it
(optionally with extra history rows and a webhook ledger record) in one
write and then publishes ``subscription.status_changed``.

Provider side effects (cancel, pause, resume at Stripe) are the caller's job
and must succeed before a transition is requested.
"""

from collections.abc import Callable, Iterable
from datetime import datetime

import structlog

from subs.billing.events import emit_subscription_status_changed
from subs.billing.exceptions import InvalidTransitionError
from subs.billing.subscriptions.models import (
    ACTIVE_STATUSES,
    VALID_STATUS_TRANSITIONS,
    HistoryAction,
    HistoryEntry,
    ProcessedEvent,
    Subscription,
    SubscriptionStatus,
    TransitionResult,
    parse_status,
)
from subs.billing.subscriptions.schedule import next_payment_date
from subs.billing.subscriptions.store import SubscriptionStore
from subs.db import utcnow
from subs.events import EventPublisher

logger = structlog.get_logger(__name__)


class SubscriptionLifecycle:
    """Validates and applies subscription status transitions."""

    def __init__(
        self,
        store: SubscriptionStore,
        event_bus: EventPublisher,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.event_bus = event_bus
        self._clock = clock

    def apply(
        self,
        subscription: Subscription,
        new_status: SubscriptionStatus | str,
        note: str = "",
        actor: str | None = None,
    ) -> TransitionResult:
        """
        Compute a transition without persisting it.

        Returns an unchanged result when the status is already ``new_status``.
        ``next_payment_date`` is cleared outside the active-like statuses and
        filled in when entering one without a date.

        Raises:
            BillingValidationError: ``new_status`` is not a known status
            InvalidTransitionError: the subscription is cancelled
        """
        target = parse_status(new_status)
        current = subscription.status

        if target == current:
            schedule = self._schedule(subscription, target, self._clock())
            if schedule:
                subscription = subscription.model_copy(deep=True, update=schedule)
            return TransitionResult(
                subscription=subscription,
                previous_status=current,
                new_status=target,
                changed=False,
                actor=actor,
            )

        if target not in VALID_STATUS_TRANSITIONS[current]:
            raise InvalidTransitionError(
                f"Cannot change subscription status from {current.value} to {target.value}",
                current_state=current.value,
                requested_state=target.value,
            )

        now = self._clock()
        updates: dict[str, object] = {"status": target, **self._schedule(subscription, target, now)}
        if target == SubscriptionStatus.CANCELLED:
            updates["end_date"] = now

        updated = subscription.model_copy(deep=True, update=updates)
        entry = HistoryEntry(
            subscription_id=subscription.subscription_id,
            action=HistoryAction.STATUS_CHANGED,
            status_from=current,
            status_to=target,
            note=note or f"Status changed from {current.value} to {target.value}",
            actor=actor,
            created_at=now,
        )
        return TransitionResult(
            subscription=updated,
            previous_status=current,
            new_status=target,
            changed=True,
            history_entry=entry,
            actor=actor,
        )

    @staticmethod
    def _schedule(
        subscription: Subscription, target: SubscriptionStatus, now: datetime
    ) -> dict[str, object]:
        if target not in ACTIVE_STATUSES:
            if subscription.next_payment_date is None:
                return {}
            return {"next_payment_date": None}
        if subscription.next_payment_date is not None:
            return {}
        trial_end = subscription.trial_end_date
        if target == SubscriptionStatus.TRIALING and trial_end is not None and trial_end > now:
            return {"next_payment_date": trial_end}
        return {
            "next_payment_date": next_payment_date(
                now, subscription.billing_period, subscription.billing_interval
            )
        }

    async def commit(
        self,
        result: TransitionResult,
        extra_history: Iterable[HistoryEntry] = (),
        processed_event: ProcessedEvent | None = None,
    ) -> TransitionResult:
        """Persist a transition result and publish the status change."""
        history = [result.history_entry] if result.history_entry else []
        history.extend(extra_history)

        if not history and processed_event is None:
            # Plain no-op: nothing to write
            return result

        saved = await self.store.update(
            result.subscription, history=history, processed_event=processed_event
        )
        result = result.model_copy(update={"subscription": saved})

        if result.changed:
            logger.info(
                "subscription.status_changed",
                subscription_id=saved.subscription_id,
                old_status=result.previous_status.value,
                new_status=result.new_status.value,
                actor=result.actor,
            )
            await emit_subscription_status_changed(
                subscription_id=saved.subscription_id,
                customer_id=saved.customer_id,
                old_status=result.previous_status.value,
                new_status=result.new_status.value,
                actor=result.actor,
                event_bus=self.event_bus,
            )
        return result

    async def transition(
        self,
        subscription: Subscription,
        new_status: SubscriptionStatus | str,
        note: str = "",
        actor: str | None = None,
    ) -> TransitionResult:
        """Validate, persist and publish a status change."""
        return await self.commit(self.apply(subscription, new_status, note=note, actor=actor))
