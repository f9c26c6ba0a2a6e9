"""
Tests for charging and failed-payment retries.
"""

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest

from subs.billing.config import PaymentRetryConfig
from subs.billing.exceptions import (
    BillingValidationError,
    ProviderError,
    SubscriptionNotActiveError,
)
from subs.billing.payments.processor import PaymentProcessor, RetryOutcome
from subs.billing.subscriptions.models import (
    ExtensionMetadata,
    HistoryAction,
    MetaKeys,
    SubscriptionStatus,
)

pytestmark = [pytest.mark.integration, pytest.mark.asyncio]


def card_declined() -> ProviderError:
    return ProviderError(
        "Payment provider request failed",
        operation="invoice.pay",
        provider_code="card_declined",
        provider_message="Your card was declined.",
    )


@pytest.fixture
def make_past_due(make_subscription, clock):
    async def _make(retry_count: int = 0, failed_hours_ago: int | None = None, **overrides):
        entries = {MetaKeys.PAYMENT_RETRY_COUNT: str(retry_count)}
        if failed_hours_ago is not None:
            entries[MetaKeys.LAST_PAYMENT_FAILURE_AT] = (
                clock() - timedelta(hours=failed_hours_ago)
            ).isoformat()
        return await make_subscription(
            status=SubscriptionStatus.PAST_DUE,
            metadata=ExtensionMetadata.from_dict(entries),
            **overrides,
        )

    return _make


class TestCharge:
    async def test_success_advances_from_previous_due_date(
        self, processor, make_subscription, store, mock_provider, clock
    ):
        subscription = await make_subscription(
            metadata=ExtensionMetadata.from_dict({MetaKeys.LAST_PAYMENT_FAILURE_REASON: "old"})
        )

        result = await processor.charge(subscription.subscription_id, actor="admin_1")

        assert result.invoice_id == "in_test_1"
        assert result.paid is True
        assert result.last_payment_date == clock()
        assert result.next_payment_date == datetime(2024, 4, 16, 12, 0, tzinfo=UTC)
        mock_provider.create_and_collect_invoice.assert_awaited_once_with(
            "cus_test_1", subscription.external_subscription_id
        )

        loaded = await store.get(subscription.subscription_id)
        assert loaded.last_payment_date == clock()
        assert loaded.metadata.get(MetaKeys.LATEST_INVOICE_ID) == "in_test_1"
        assert MetaKeys.LAST_PAYMENT_FAILURE_REASON not in loaded.metadata

        history = await store.get_history(subscription.subscription_id)
        assert history[0].action == HistoryAction.PAYMENT_PROCESSED
        assert history[0].note == "Payment processed: $29.99 (invoice in_test_1)"

    async def test_inactive_subscription_rejected(self, processor, make_subscription, mock_provider):
        subscription = await make_subscription(status=SubscriptionStatus.PAUSED)

        with pytest.raises(SubscriptionNotActiveError):
            await processor.charge(subscription.subscription_id)

        mock_provider.create_and_collect_invoice.assert_not_awaited()

    async def test_unlinked_subscription_rejected(self, processor, make_subscription):
        subscription = await make_subscription(external_subscription_id=None)

        with pytest.raises(BillingValidationError):
            await processor.charge(subscription.subscription_id)

    async def test_failure_recorded_and_reraised(
        self, processor, make_subscription, store, mock_provider
    ):
        subscription = await make_subscription()
        mock_provider.create_and_collect_invoice.side_effect = card_declined()

        with pytest.raises(ProviderError):
            await processor.charge(subscription.subscription_id)

        loaded = await store.get(subscription.subscription_id)
        assert loaded.next_payment_date == subscription.next_payment_date
        assert loaded.status == SubscriptionStatus.ACTIVE
        assert loaded.metadata.get(MetaKeys.LAST_PAYMENT_FAILURE_REASON) == "Your card was declined."
        assert loaded.metadata.get_int(MetaKeys.PAYMENT_RETRY_COUNT) == 0

        history = await store.get_history(subscription.subscription_id)
        assert history[0].action == HistoryAction.PAYMENT_FAILED
        assert history[0].note == "Payment failed: Your card was declined."


class TestProcessDuePayments:
    async def test_batch_continues_past_failures(
        self, processor, make_subscription, mock_provider, clock
    ):
        first = await make_subscription(next_payment_date=clock() - timedelta(days=2))
        second = await make_subscription(next_payment_date=clock() - timedelta(days=1))
        await make_subscription(next_payment_date=clock() + timedelta(days=3))
        mock_provider.create_and_collect_invoice.side_effect = [
            mock_provider.create_and_collect_invoice.return_value,
            card_declined(),
        ]

        result = await processor.process_due_payments()

        assert result.processed == 1
        assert len(result.errors) == 1
        assert result.errors[0].subscription_id == second.subscription_id
        assert result.errors[0].error_code == "PROVIDER_ERROR"
        assert first.subscription_id not in {e.subscription_id for e in result.errors}

    async def test_nothing_due(self, processor, make_subscription, mock_provider):
        await make_subscription()

        result = await processor.process_due_payments()

        assert result.processed == 0
        mock_provider.create_and_collect_invoice.assert_not_awaited()


class TestRetryFailedPayment:
    async def test_success_clears_retry_state(self, processor, make_past_due, store, mock_provider):
        subscription = await make_past_due(retry_count=1, failed_hours_ago=30)

        result = await processor.retry_failed_payment(subscription.subscription_id)

        assert result.outcome == RetryOutcome.SUCCEEDED
        assert result.attempts == 2
        assert result.invoice_id == "in_retry_1"
        mock_provider.pay_latest_open_invoice.assert_awaited_once_with(
            subscription.external_subscription_id
        )
        loaded = await store.get(subscription.subscription_id)
        assert MetaKeys.PAYMENT_RETRY_COUNT not in loaded.metadata
        assert loaded.metadata.get(MetaKeys.LATEST_INVOICE_ID) == "in_retry_1"
        # Status is left to the invoice webhook
        assert loaded.status == SubscriptionStatus.PAST_DUE
        history = await store.get_history(subscription.subscription_id)
        assert history[0].action == HistoryAction.PAYMENT_RETRY_SUCCEEDED

    async def test_failure_increments_count(self, processor, make_past_due, store, mock_provider):
        subscription = await make_past_due()
        mock_provider.pay_latest_open_invoice.side_effect = card_declined()

        result = await processor.retry_failed_payment(subscription.subscription_id)

        assert result.outcome == RetryOutcome.FAILED
        assert result.attempts == 1
        loaded = await store.get(subscription.subscription_id)
        assert loaded.metadata.get_int(MetaKeys.PAYMENT_RETRY_COUNT) == 1
        history = await store.get_history(subscription.subscription_id)
        assert history[0].note == "Payment retry 1/3 failed: Your card was declined."

    async def test_last_allowed_failure_exhausts(self, processor, make_past_due, store, mock_provider):
        subscription = await make_past_due(retry_count=2, failed_hours_ago=48)
        mock_provider.pay_latest_open_invoice.side_effect = card_declined()

        result = await processor.retry_failed_payment(subscription.subscription_id)

        assert result.outcome == RetryOutcome.EXHAUSTED
        assert result.attempts == 3
        loaded = await store.get(subscription.subscription_id)
        assert loaded.status == SubscriptionStatus.PAST_DUE
        actions = [entry.action for entry in await store.get_history(subscription.subscription_id)]
        assert actions.count(HistoryAction.PAYMENT_RETRIES_EXHAUSTED) == 1

    async def test_at_max_marks_exhausted_once(self, processor, make_past_due, store, mock_provider):
        subscription = await make_past_due(retry_count=3, failed_hours_ago=48)

        first = await processor.retry_failed_payment(subscription.subscription_id)
        second = await processor.retry_failed_payment(subscription.subscription_id)

        assert first.outcome == RetryOutcome.EXHAUSTED
        assert second.outcome == RetryOutcome.SKIPPED
        assert second.reason == "Retries already exhausted"
        mock_provider.pay_latest_open_invoice.assert_not_awaited()
        actions = [entry.action for entry in await store.get_history(subscription.subscription_id)]
        assert actions.count(HistoryAction.PAYMENT_RETRIES_EXHAUSTED) == 1

    async def test_delay_not_elapsed(self, processor, make_past_due, mock_provider):
        subscription = await make_past_due(retry_count=1, failed_hours_ago=1)

        result = await processor.retry_failed_payment(subscription.subscription_id)

        assert result.outcome == RetryOutcome.SKIPPED
        assert result.reason == "Retry delay has not elapsed"
        mock_provider.pay_latest_open_invoice.assert_not_awaited()

    async def test_not_past_due(self, processor, make_subscription):
        subscription = await make_subscription()

        result = await processor.retry_failed_payment(subscription.subscription_id)

        assert result.outcome == RetryOutcome.SKIPPED

    async def test_no_open_invoice(self, processor, make_past_due, mock_provider):
        subscription = await make_past_due()
        mock_provider.pay_latest_open_invoice.return_value = None

        result = await processor.retry_failed_payment(subscription.subscription_id)

        assert result.outcome == RetryOutcome.SKIPPED
        assert result.reason == "No open invoice to retry"

    async def test_disabled(self, store, mock_provider, billing_config, clock, make_past_due):
        config = billing_config.model_copy(update={"retry": PaymentRetryConfig(enabled=False)})
        processor = PaymentProcessor(store, mock_provider, config, clock=clock)
        subscription = await make_past_due()

        result = await processor.retry_failed_payment(subscription.subscription_id)
        batch = await processor.retry_failed_payments()

        assert result.outcome == RetryOutcome.SKIPPED
        assert batch.processed == 0
        mock_provider.pay_latest_open_invoice.assert_not_awaited()


class TestRetrySweep:
    async def test_skipped_subscriptions_are_not_counted(
        self, processor, make_past_due, make_subscription
    ):
        await make_past_due()
        await make_past_due(retry_count=1, failed_hours_ago=2)
        await make_subscription()

        result = await processor.retry_failed_payments()

        assert result.processed == 1
        assert result.errors == []


class TestChargeNotes:
    async def test_amount_in_history_uses_currency(self, processor, make_subscription, store):
        subscription = await make_subscription(
            subscription_amount=Decimal("1200"), total_amount=Decimal("1200"), currency="JPY"
        )

        await processor.charge(subscription.subscription_id)

        history = await store.get_history(subscription.subscription_id)
        assert history[0].note.startswith("Payment processed: ")
        assert "1,200" in history[0].note
