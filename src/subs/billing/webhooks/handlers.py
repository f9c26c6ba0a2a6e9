"""
Billing synchronizer.

Consumes Stripe webhook events and reconciles local subscription state.
Delivery is at-least-once, so every handled event id is written to the
processed-event ledger in the same transaction as its effects; replays are
acknowledged without touching state.
"""

from collections.abc import Callable
from datetime import datetime
from enum import Enum

import structlog
from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from subs.billing.events import emit_payment_failed, emit_payment_succeeded
from subs.billing.exceptions import (
    StaleSubscriptionError,
    SubscriptionNotFoundError,
    UnknownProviderStatusError,
    WebhookPayloadError,
    WebhookSignatureError,
)
from subs.billing.money_utils import format_amount
from subs.billing.payments.providers import PaymentProvider
from subs.billing.subscriptions.lifecycle import SubscriptionLifecycle
from subs.billing.subscriptions.models import (
    ACTIVE_STATUSES,
    HistoryAction,
    HistoryEntry,
    MetaKeys,
    ProcessedEvent,
    Subscription,
    SubscriptionStatus,
)
from subs.billing.subscriptions.store import SubscriptionStore
from subs.billing.webhooks.models import (
    InvoiceEventData,
    SubscriptionEventData,
    WebhookEvent,
    WebhookEventType,
    map_provider_status,
    parse_webhook_event,
)
from subs.db import utcnow
from subs.events import EventPublisher

logger = structlog.get_logger(__name__)

STALE_RETRY_ATTEMPTS = 3


class WebhookOutcomeStatus(str, Enum):
    PROCESSED = "processed"
    IGNORED = "ignored"
    DUPLICATE = "duplicate"
    UNKNOWN_PROVIDER_STATUS = "unknown_provider_status"
    REJECTED = "rejected"
    RETRY = "retry"


_HTTP_STATUS = {
    WebhookOutcomeStatus.PROCESSED: 200,
    WebhookOutcomeStatus.IGNORED: 200,
    WebhookOutcomeStatus.DUPLICATE: 200,
    WebhookOutcomeStatus.UNKNOWN_PROVIDER_STATUS: 200,
    WebhookOutcomeStatus.REJECTED: 400,
    WebhookOutcomeStatus.RETRY: 409,
}


class WebhookOutcome(BaseModel):
    """Result of handling one webhook delivery."""

    status: WebhookOutcomeStatus
    http_status: int
    event_id: str | None = None
    event_type: str | None = None
    subscription_id: str | None = None
    message: str = ""


def _outcome(
    status: WebhookOutcomeStatus,
    message: str,
    event: WebhookEvent | None = None,
    subscription_id: str | None = None,
) -> WebhookOutcome:
    return WebhookOutcome(
        status=status,
        http_status=_HTTP_STATUS[status],
        event_id=event.event_id if event else None,
        event_type=event.event_type if event else None,
        subscription_id=subscription_id,
        message=message,
    )


class BillingSynchronizer:
    """Applies provider webhook events to local subscriptions."""

    def __init__(
        self,
        store: SubscriptionStore,
        lifecycle: SubscriptionLifecycle,
        provider: PaymentProvider,
        event_bus: EventPublisher,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.lifecycle = lifecycle
        self.provider = provider
        self.event_bus = event_bus
        self._clock = clock

    async def handle_event(self, raw_payload: bytes, signature: str | None) -> WebhookOutcome:
        """Verify, parse and apply one webhook delivery."""
        try:
            self.provider.verify_webhook(raw_payload, signature)
        except WebhookSignatureError as e:
            logger.warning("webhook.rejected.signature", reason=e.message)
            return _outcome(WebhookOutcomeStatus.REJECTED, e.message)

        try:
            event = parse_webhook_event(raw_payload)
        except WebhookPayloadError as e:
            logger.warning("webhook.rejected.payload", reason=e.message)
            return _outcome(WebhookOutcomeStatus.REJECTED, e.message)

        log = logger.bind(event_id=event.event_id, event_type=event.event_type)

        if event.handled_type is None:
            log.debug("webhook.ignored.unhandled_type")
            return _outcome(WebhookOutcomeStatus.IGNORED, "Unhandled event type", event)

        external_id = event.external_subscription_id
        if not external_id:
            log.info("webhook.ignored.no_subscription")
            return _outcome(
                WebhookOutcomeStatus.IGNORED, "Event does not reference a subscription", event
            )

        subscription = await self.store.find_by_external_id(external_id)
        if subscription is None:
            log.info("webhook.ignored.unknown_subscription", external_subscription_id=external_id)
            return _outcome(WebhookOutcomeStatus.IGNORED, "Unknown subscription", event)

        subscription_id = subscription.subscription_id
        try:
            retrying = AsyncRetrying(
                retry=retry_if_exception_type(StaleSubscriptionError),
                stop=stop_after_attempt(STALE_RETRY_ATTEMPTS),
                wait=wait_exponential(multiplier=0.05, max=0.5),
                reraise=True,
            )
            return await retrying(self._apply, subscription_id, event)
        except StaleSubscriptionError:
            log.warning("webhook.retry.version_conflict", subscription_id=subscription_id)
            return _outcome(
                WebhookOutcomeStatus.RETRY,
                "Subscription is being modified concurrently",
                event,
                subscription_id,
            )
        except WebhookPayloadError as e:
            log.warning("webhook.rejected.payload", reason=e.message)
            return _outcome(WebhookOutcomeStatus.REJECTED, e.message, event, subscription_id)
        except SubscriptionNotFoundError:
            log.info("webhook.ignored.subscription_deleted", subscription_id=subscription_id)
            return _outcome(WebhookOutcomeStatus.IGNORED, "Unknown subscription", event)
        except IntegrityError:
            # Another worker recorded the same event id first
            log.info("webhook.duplicate.concurrent", subscription_id=subscription_id)
            return _outcome(
                WebhookOutcomeStatus.DUPLICATE, "Event already processed", event, subscription_id
            )

    async def _apply(self, subscription_id: str, event: WebhookEvent) -> WebhookOutcome:
        async with self.store.lock(subscription_id):
            if await self.store.is_event_processed(event.event_id):
                logger.info(
                    "webhook.duplicate", event_id=event.event_id, subscription_id=subscription_id
                )
                return _outcome(
                    WebhookOutcomeStatus.DUPLICATE,
                    "Event already processed",
                    event,
                    subscription_id,
                )

            subscription = await self.store.get(subscription_id)
            ledger = ProcessedEvent(
                event_id=event.event_id,
                event_type=event.event_type,
                subscription_id=subscription_id,
                processed_at=self._clock(),
            )

            if event.invoice is not None:
                if event.handled_type == WebhookEventType.INVOICE_PAYMENT_SUCCEEDED:
                    return await self._payment_succeeded(subscription, event, event.invoice, ledger)
                return await self._payment_failed(subscription, event, event.invoice, ledger)
            if event.subscription is not None:
                return await self._subscription_changed(
                    subscription, event, event.subscription, ledger
                )
            raise WebhookPayloadError("Webhook event carries no subscription or invoice object")

    # ------------------------------------------------------------------
    # customer.subscription.*
    # ------------------------------------------------------------------

    async def _subscription_changed(
        self,
        subscription: Subscription,
        event: WebhookEvent,
        data: SubscriptionEventData,
        ledger: ProcessedEvent,
    ) -> WebhookOutcome:
        now = ledger.processed_at
        deleted = event.handled_type == WebhookEventType.SUBSCRIPTION_DELETED
        provider_status = data.effective_status

        if deleted:
            target = SubscriptionStatus.CANCELLED
        else:
            try:
                target = map_provider_status(provider_status)
            except UnknownProviderStatusError:
                return await self._unrecognized_status(subscription, event, data, ledger)

        working = subscription.model_copy(deep=True)
        if not working.is_cancelled and not deleted:
            if event.handled_type == WebhookEventType.SUBSCRIPTION_CREATED and data.current_period_start:
                working.start_date = data.current_period_start
            if data.trial_end:
                working.trial_end_date = data.trial_end
            # The lifecycle clears the schedule for any other status
            if data.current_period_end and target in ACTIVE_STATUSES:
                working.next_payment_date = data.current_period_end

        note = f"Status updated via webhook: {provider_status}"
        if working.is_cancelled and target != SubscriptionStatus.CANCELLED:
            # Cancelled is terminal; the provider view is recorded but not applied
            result = self.lifecycle.apply(working, working.status)
            note = f"Provider reported {provider_status}; cancelled subscription left unchanged"
        else:
            result = self.lifecycle.apply(working, target, note=note)

        webhook_row = HistoryEntry(
            subscription_id=subscription.subscription_id,
            action=HistoryAction.STATUS_UPDATED,
            status_from=subscription.status,
            status_to=result.new_status,
            note=note,
            created_at=now,
        )
        await self.lifecycle.commit(result, extra_history=[webhook_row], processed_event=ledger)

        logger.info(
            "webhook.subscription_synced",
            event_id=event.event_id,
            subscription_id=subscription.subscription_id,
            provider_status=provider_status,
            old_status=subscription.status.value,
            new_status=result.new_status.value,
        )
        return _outcome(
            WebhookOutcomeStatus.PROCESSED, note, event, subscription.subscription_id
        )

    async def _unrecognized_status(
        self,
        subscription: Subscription,
        event: WebhookEvent,
        data: SubscriptionEventData,
        ledger: ProcessedEvent,
    ) -> WebhookOutcome:
        note = (
            f"Unrecognized provider status '{data.status}'; "
            f"status left as {subscription.status.value}"
        )
        logger.warning(
            "webhook.unknown_provider_status",
            event_id=event.event_id,
            subscription_id=subscription.subscription_id,
            provider_status=data.status,
        )
        await self.store.update(
            subscription,
            history=[
                HistoryEntry(
                    subscription_id=subscription.subscription_id,
                    action=HistoryAction.STATUS_UNRECOGNIZED,
                    status_from=subscription.status,
                    status_to=subscription.status,
                    note=note,
                    created_at=ledger.processed_at,
                )
            ],
            processed_event=ledger,
        )
        return _outcome(
            WebhookOutcomeStatus.UNKNOWN_PROVIDER_STATUS, note, event, subscription.subscription_id
        )

    # ------------------------------------------------------------------
    # invoice.payment_*
    # ------------------------------------------------------------------

    async def _payment_succeeded(
        self,
        subscription: Subscription,
        event: WebhookEvent,
        invoice: InvoiceEventData,
        ledger: ProcessedEvent,
    ) -> WebhookOutcome:
        now = ledger.processed_at

        working = subscription.model_copy(deep=True)
        working.metadata.set(MetaKeys.LATEST_INVOICE_ID, invoice.invoice_id)
        target = working.status
        if not working.is_cancelled:
            working.last_payment_date = invoice.paid_at or now
            working.metadata.delete(*MetaKeys.RETRY_KEYS)
            if working.status in (SubscriptionStatus.PAST_DUE, SubscriptionStatus.UNPAID):
                target = SubscriptionStatus.ACTIVE
            if invoice.period_end and target in ACTIVE_STATUSES:
                working.next_payment_date = invoice.period_end

        result = self.lifecycle.apply(
            working, target, note="Payment received, subscription reactivated"
        )
        note = f"Payment received: {format_amount(invoice.amount_paid, invoice.currency)}"
        await self.lifecycle.commit(
            result,
            extra_history=[
                HistoryEntry(
                    subscription_id=subscription.subscription_id,
                    action=HistoryAction.PAYMENT_RECEIVED,
                    note=note,
                    created_at=now,
                )
            ],
            processed_event=ledger,
        )

        await emit_payment_succeeded(
            subscription_id=subscription.subscription_id,
            customer_id=subscription.customer_id,
            invoice_id=invoice.invoice_id,
            amount=str(invoice.amount_paid),
            currency=invoice.currency,
            event_bus=self.event_bus,
        )
        return _outcome(WebhookOutcomeStatus.PROCESSED, note, event, subscription.subscription_id)

    async def _payment_failed(
        self,
        subscription: Subscription,
        event: WebhookEvent,
        invoice: InvoiceEventData,
        ledger: ProcessedEvent,
    ) -> WebhookOutcome:
        now = ledger.processed_at
        reason = invoice.failure_message or "Payment failed"

        working = subscription.model_copy(deep=True)
        working.metadata.set(MetaKeys.LATEST_INVOICE_ID, invoice.invoice_id)
        target = working.status
        if not working.is_cancelled:
            working.metadata.set(MetaKeys.LAST_PAYMENT_FAILURE_AT, now)
            working.metadata.set(MetaKeys.LAST_PAYMENT_FAILURE_REASON, reason)
            target = SubscriptionStatus.PAST_DUE

        result = self.lifecycle.apply(working, target, note="Payment failed")
        note = f"Payment failed: {format_amount(invoice.amount_due, invoice.currency)}"
        if invoice.failure_message:
            note = f"{note} ({invoice.failure_message})"
        await self.lifecycle.commit(
            result,
            extra_history=[
                HistoryEntry(
                    subscription_id=subscription.subscription_id,
                    action=HistoryAction.PAYMENT_FAILED,
                    note=note,
                    created_at=now,
                )
            ],
            processed_event=ledger,
        )

        await emit_payment_failed(
            subscription_id=subscription.subscription_id,
            customer_id=subscription.customer_id,
            invoice_id=invoice.invoice_id,
            amount=str(invoice.amount_due),
            currency=invoice.currency,
            error_message=reason,
            event_bus=self.event_bus,
        )
        return _outcome(WebhookOutcomeStatus.PROCESSED, note, event, subscription.subscription_id)
