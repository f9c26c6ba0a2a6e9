"""
Payment processing.

Triggers billing attempts through the payment provider and keeps local
billing dates in step. Status changes caused by payment outcomes arrive
through provider webhooks; the processor only records what it attempted.
"""

from collections.abc import Callable
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum

import structlog
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError

from subs.billing.config import BillingConfig
from subs.billing.exceptions import (
    BillingError,
    BillingValidationError,
    ProviderError,
    SubscriptionNotActiveError,
)
from subs.billing.money_utils import format_amount
from subs.billing.payments.providers import PaymentProvider
from subs.billing.subscriptions.models import (
    BatchResult,
    HistoryAction,
    HistoryEntry,
    MetaKeys,
    Subscription,
    SubscriptionStatus,
)
from subs.billing.subscriptions.schedule import next_payment_date
from subs.billing.subscriptions.store import SubscriptionStore
from subs.db import utcnow

logger = structlog.get_logger(__name__)


class ChargeResult(BaseModel):
    """Outcome of a successful charge."""

    subscription_id: str
    invoice_id: str
    amount: Decimal
    currency: str
    paid: bool
    last_payment_date: datetime
    next_payment_date: datetime | None


class RetryOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    EXHAUSTED = "exhausted"
    SKIPPED = "skipped"


class RetryResult(BaseModel):
    """Outcome of a failed-payment retry."""

    subscription_id: str
    outcome: RetryOutcome
    attempts: int = 0
    invoice_id: str | None = None
    reason: str | None = None


def _provider_link(subscription: Subscription) -> tuple[str, str]:
    customer_id = subscription.metadata.get(MetaKeys.PROVIDER_CUSTOMER_ID)
    if not subscription.external_subscription_id or not customer_id:
        raise BillingValidationError(
            "Subscription is not linked to the payment provider",
            field="external_subscription_id",
            value=subscription.subscription_id,
        )
    return customer_id, subscription.external_subscription_id


class PaymentProcessor:
    """Charges subscriptions and retries failed payments."""

    def __init__(
        self,
        store: SubscriptionStore,
        provider: PaymentProvider,
        config: BillingConfig,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.provider = provider
        self.config = config
        self._clock = clock

    # ------------------------------------------------------------------
    # Charging
    # ------------------------------------------------------------------

    async def charge(self, subscription_id: str, actor: str | None = None) -> ChargeResult:
        """
        Create and collect an invoice for one subscription.

        Raises:
            SubscriptionNotActiveError: Subscription is not active or trialing
            ProviderError: The provider rejected the charge (recorded in history)
        """
        async with self.store.lock(subscription_id):
            subscription = await self.store.get(subscription_id)
            if not subscription.is_active:
                raise SubscriptionNotActiveError(
                    "Only active or trialing subscriptions can be charged",
                    subscription_id=subscription_id,
                    current_state=subscription.status.value,
                )
            customer_id, external_id = _provider_link(subscription)

            try:
                invoice = await self.provider.create_and_collect_invoice(customer_id, external_id)
            except ProviderError as e:
                await self._record_charge_failure(subscription_id, e, actor)
                raise

            now = self._clock()

            def record_success(sub: Subscription) -> list[HistoryEntry]:
                anchor = sub.next_payment_date or now
                sub.last_payment_date = now
                sub.next_payment_date = next_payment_date(
                    anchor, sub.billing_period, sub.billing_interval
                )
                sub.metadata.set(MetaKeys.LATEST_INVOICE_ID, invoice.invoice_id)
                sub.metadata.delete(*MetaKeys.RETRY_KEYS)
                return [
                    HistoryEntry(
                        subscription_id=sub.subscription_id,
                        action=HistoryAction.PAYMENT_PROCESSED,
                        note=(
                            f"Payment processed: {format_amount(sub.total_amount, sub.currency)}"
                            f" (invoice {invoice.invoice_id})"
                        ),
                        actor=actor,
                        created_at=now,
                    )
                ]

            saved = await self.store.modify(subscription_id, record_success)

        logger.info(
            "payment.processed",
            subscription_id=subscription_id,
            invoice_id=invoice.invoice_id,
            paid=invoice.paid,
            next_payment_date=saved.next_payment_date.isoformat() if saved.next_payment_date else None,
        )
        return ChargeResult(
            subscription_id=subscription_id,
            invoice_id=invoice.invoice_id,
            amount=saved.total_amount,
            currency=saved.currency,
            paid=invoice.paid,
            last_payment_date=now,
            next_payment_date=saved.next_payment_date,
        )

    async def _record_charge_failure(
        self, subscription_id: str, error: ProviderError, actor: str | None
    ) -> None:
        now = self._clock()
        reason = error.provider_message or error.message

        def record_failure(sub: Subscription) -> list[HistoryEntry]:
            sub.metadata.set(MetaKeys.LAST_PAYMENT_FAILURE_AT, now)
            sub.metadata.set(MetaKeys.LAST_PAYMENT_FAILURE_REASON, reason)
            return [
                HistoryEntry(
                    subscription_id=sub.subscription_id,
                    action=HistoryAction.PAYMENT_FAILED,
                    note=f"Payment failed: {reason}",
                    actor=actor,
                    created_at=now,
                )
            ]

        await self.store.modify(subscription_id, record_failure)
        logger.warning(
            "payment.failed",
            subscription_id=subscription_id,
            provider_code=error.provider_code,
            reason=reason,
        )

    async def process_due_payments(self, now: datetime | None = None) -> BatchResult:
        """Charge every active-like subscription whose next payment is due."""
        now = now or self._clock()
        result = BatchResult()
        due = await self.store.list_due(now, limit=self.config.maintenance.batch_size)

        for subscription in due:
            try:
                await self.charge(subscription.subscription_id)
                result.processed += 1
            except BillingError as e:
                result.add_error(subscription.subscription_id, e.error_code, e.message)
            except SQLAlchemyError as e:
                logger.exception(
                    "payment.process_due.db_error", subscription_id=subscription.subscription_id
                )
                result.add_error(subscription.subscription_id, "DATABASE_ERROR", str(e))

        logger.info(
            "payment.process_due.completed",
            due=len(due),
            processed=result.processed,
            errors=len(result.errors),
        )
        return result

    # ------------------------------------------------------------------
    # Failed payment retries
    # ------------------------------------------------------------------

    async def retry_failed_payment(
        self, subscription_id: str, now: datetime | None = None
    ) -> RetryResult:
        """
        Retry the latest open invoice of a past-due subscription.

        Honors the retry settings: disabled retries, attempts at the maximum,
        or a last failure younger than the retry delay all skip the attempt.
        Reaching the maximum writes a single ``payment_retries_exhausted`` row.
        """
        retry_config = self.config.retry
        if not retry_config.enabled:
            return RetryResult(
                subscription_id=subscription_id,
                outcome=RetryOutcome.SKIPPED,
                reason="Payment retries are disabled",
            )

        async with self.store.lock(subscription_id):
            subscription = await self.store.get(subscription_id)
            attempts = subscription.metadata.get_int(MetaKeys.PAYMENT_RETRY_COUNT)

            if subscription.status != SubscriptionStatus.PAST_DUE:
                return RetryResult(
                    subscription_id=subscription_id,
                    outcome=RetryOutcome.SKIPPED,
                    attempts=attempts,
                    reason="Subscription is not past due",
                )
            if MetaKeys.RETRIES_EXHAUSTED in subscription.metadata:
                return RetryResult(
                    subscription_id=subscription_id,
                    outcome=RetryOutcome.SKIPPED,
                    attempts=attempts,
                    reason="Retries already exhausted",
                )

            now = now or self._clock()
            if attempts >= retry_config.max_attempts:
                await self.store.modify(subscription_id, self._mark_exhausted(now, attempts))
                return RetryResult(
                    subscription_id=subscription_id,
                    outcome=RetryOutcome.EXHAUSTED,
                    attempts=attempts,
                )

            last_failure = subscription.metadata.get_datetime(MetaKeys.LAST_PAYMENT_FAILURE_AT)
            if last_failure and now - last_failure < timedelta(hours=retry_config.delay_hours):
                return RetryResult(
                    subscription_id=subscription_id,
                    outcome=RetryOutcome.SKIPPED,
                    attempts=attempts,
                    reason="Retry delay has not elapsed",
                )

            _, external_id = _provider_link(subscription)
            try:
                invoice = await self.provider.pay_latest_open_invoice(external_id)
            except ProviderError as e:
                return await self._record_retry_failure(subscription_id, e, now)

            if invoice is None:
                return RetryResult(
                    subscription_id=subscription_id,
                    outcome=RetryOutcome.SKIPPED,
                    attempts=attempts,
                    reason="No open invoice to retry",
                )

            def record_success(sub: Subscription) -> list[HistoryEntry]:
                sub.metadata.delete(*MetaKeys.RETRY_KEYS)
                sub.metadata.set(MetaKeys.LATEST_INVOICE_ID, invoice.invoice_id)
                return [
                    HistoryEntry(
                        subscription_id=sub.subscription_id,
                        action=HistoryAction.PAYMENT_RETRY_SUCCEEDED,
                        note=f"Payment retry {attempts + 1} succeeded (invoice {invoice.invoice_id})",
                        created_at=now,
                    )
                ]

            await self.store.modify(subscription_id, record_success)

        logger.info(
            "payment.retry.succeeded",
            subscription_id=subscription_id,
            invoice_id=invoice.invoice_id,
            attempt=attempts + 1,
        )
        return RetryResult(
            subscription_id=subscription_id,
            outcome=RetryOutcome.SUCCEEDED,
            attempts=attempts + 1,
            invoice_id=invoice.invoice_id,
        )

    def _mark_exhausted(
        self, now: datetime, attempts: int
    ) -> Callable[[Subscription], list[HistoryEntry]]:
        def mutate(sub: Subscription) -> list[HistoryEntry]:
            if MetaKeys.RETRIES_EXHAUSTED in sub.metadata:
                return []
            sub.metadata.set(MetaKeys.RETRIES_EXHAUSTED, now)
            return [
                HistoryEntry(
                    subscription_id=sub.subscription_id,
                    action=HistoryAction.PAYMENT_RETRIES_EXHAUSTED,
                    note=f"Payment retries exhausted after {attempts} attempts",
                    created_at=now,
                )
            ]

        return mutate

    async def _record_retry_failure(
        self, subscription_id: str, error: ProviderError, now: datetime
    ) -> RetryResult:
        max_attempts = self.config.retry.max_attempts
        reason = error.provider_message or error.message
        attempts_after = 0

        def record_failure(sub: Subscription) -> list[HistoryEntry]:
            nonlocal attempts_after
            attempts_after = sub.metadata.get_int(MetaKeys.PAYMENT_RETRY_COUNT) + 1
            sub.metadata.set(MetaKeys.PAYMENT_RETRY_COUNT, attempts_after)
            sub.metadata.set(MetaKeys.LAST_PAYMENT_FAILURE_AT, now)
            sub.metadata.set(MetaKeys.LAST_PAYMENT_FAILURE_REASON, reason)
            entries = [
                HistoryEntry(
                    subscription_id=sub.subscription_id,
                    action=HistoryAction.PAYMENT_RETRY_FAILED,
                    note=f"Payment retry {attempts_after}/{max_attempts} failed: {reason}",
                    created_at=now,
                )
            ]
            if attempts_after >= max_attempts:
                entries.extend(self._mark_exhausted(now, attempts_after)(sub))
            return entries

        await self.store.modify(subscription_id, record_failure)

        outcome = RetryOutcome.EXHAUSTED if attempts_after >= max_attempts else RetryOutcome.FAILED
        logger.warning(
            "payment.retry.failed",
            subscription_id=subscription_id,
            attempt=attempts_after,
            max_attempts=max_attempts,
            reason=reason,
        )
        return RetryResult(
            subscription_id=subscription_id,
            outcome=outcome,
            attempts=attempts_after,
            reason=reason,
        )

    async def retry_failed_payments(self, now: datetime | None = None) -> BatchResult:
        """Retry every eligible past-due subscription; skipped ones are not counted."""
        result = BatchResult()
        if not self.config.retry.enabled:
            return result

        candidates = await self.store.list_by_status(
            [SubscriptionStatus.PAST_DUE], limit=self.config.maintenance.batch_size
        )
        for subscription in candidates:
            try:
                retry = await self.retry_failed_payment(subscription.subscription_id, now=now)
            except BillingError as e:
                result.add_error(subscription.subscription_id, e.error_code, e.message)
                continue
            except SQLAlchemyError as e:
                logger.exception(
                    "payment.retry.db_error", subscription_id=subscription.subscription_id
                )
                result.add_error(subscription.subscription_id, "DATABASE_ERROR", str(e))
                continue
            if retry.outcome != RetryOutcome.SKIPPED:
                result.processed += 1

        logger.info(
            "payment.retry_sweep.completed",
            candidates=len(candidates),
            processed=result.processed,
            errors=len(result.errors),
        )
        return result
