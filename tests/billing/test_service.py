"""
Tests for subscription creation, administration and self-service.
"""

from datetime import UTC, date, datetime
from decimal import Decimal

import pytest

from subs.billing.catalog import OrderInfo
from subs.billing.config import FeeConfig, SelfServiceConfig, TrialConfig
from subs.billing.events import BillingEvents
from subs.billing.exceptions import (
    ActionNotPermittedError,
    AlreadyCancelledError,
    BillingValidationError,
    InvalidTransitionError,
    OrderNotFoundError,
    ProductNotFoundError,
    ProviderError,
    SubscriptionNotActiveError,
    SubscriptionNotFoundError,
)
from subs.billing.subscriptions.models import HistoryAction, MetaKeys, SubscriptionStatus
from subs.billing.subscriptions.service import SubscriptionService

pytestmark = [pytest.mark.integration, pytest.mark.asyncio]


@pytest.fixture
def build_service(store, lifecycle, mock_provider, catalog, billing_config, event_bus, clock):
    """Service factory with config overrides."""

    def _build(**config_updates):
        config = billing_config.model_copy(update=config_updates)
        return SubscriptionService(
            store, lifecycle, mock_provider, catalog, config, event_bus, clock=clock
        )

    return _build


class TestCalculatePrice:
    async def test_price_without_fee(self, service):
        quote = await service.calculate_price("prod_coffee", quantity=2)

        assert quote.subscription_amount == Decimal("59.98")
        assert quote.fee_amount == Decimal("0")
        assert quote.total_amount == Decimal("59.98")
        assert quote.billing_period == "Every month"

    async def test_price_with_passed_fee(self, build_service):
        service = build_service(fees=FeeConfig(pass_fees_to_customer=True))

        quote = await service.calculate_price("prod_coffee")

        assert quote.fee_amount == Decimal("1.17")
        assert quote.total_amount == Decimal("31.16")

    async def test_invalid_quantity(self, service):
        with pytest.raises(BillingValidationError):
            await service.calculate_price("prod_coffee", quantity=0)

    async def test_unknown_product(self, service):
        with pytest.raises(ProductNotFoundError):
            await service.calculate_price("prod_missing")


class TestCreateFromOrder:
    async def test_creates_pending_subscription(
        self, service, mock_provider, catalog, store, published_events
    ):
        created = await service.create_from_order("order_1", actor="admin_1")

        assert len(created) == 1
        subscription = created[0]
        assert subscription.status == SubscriptionStatus.PENDING
        assert subscription.external_subscription_id == "sub_stripe_1"
        assert subscription.total_amount == Decimal("29.99")
        # Billing starts once the provider confirms the subscription
        assert subscription.next_payment_date is None
        assert not subscription.has_trial
        assert subscription.payment_method_id == "pm_card_visa"
        assert subscription.delivery_address == "1 Main St, Springfield"
        assert subscription.metadata.get(MetaKeys.PROVIDER_CUSTOMER_ID) == "cus_test_1"
        assert subscription.metadata.get(MetaKeys.PROVIDER_PRICE_ID) == "price_test_1"

        mock_provider.create_customer.assert_awaited_once()
        assert mock_provider.create_subscription.await_args.kwargs["trial_days"] is None
        assert catalog.customers["cust_1"].provider_customer_id == "cus_test_1"
        assert catalog.processed_orders == ["order_1"]
        assert [e.event_type for e in published_events] == [BillingEvents.SUBSCRIPTION_CREATED]

        loaded = await store.get(subscription.subscription_id)
        assert loaded.status == SubscriptionStatus.PENDING

    async def test_rerun_returns_existing(self, service, mock_provider):
        first = await service.create_from_order("order_1")
        second = await service.create_from_order("order_1")

        assert [s.subscription_id for s in second] == [s.subscription_id for s in first]
        assert mock_provider.create_subscription.await_count == 1

    async def test_existing_provider_customer_is_reused(self, service, catalog, mock_provider):
        catalog.customers["cust_1"] = catalog.customers["cust_1"].model_copy(
            update={"provider_customer_id": "cus_existing"}
        )

        created = await service.create_from_order("order_1")

        mock_provider.create_customer.assert_not_awaited()
        assert created[0].metadata.get(MetaKeys.PROVIDER_CUSTOMER_ID) == "cus_existing"

    async def test_trial_sets_first_charge_on_trial_end(
        self, build_service, catalog, mock_provider, lifecycle
    ):
        catalog.products["prod_coffee"] = catalog.products["prod_coffee"].model_copy(
            update={"trial_days": 14}
        )
        service = build_service(trials=TrialConfig(enabled=True))

        created = await service.create_from_order("order_1")

        subscription = created[0]
        assert subscription.has_trial
        assert subscription.trial_end_date.date() == date(2024, 3, 29)
        assert subscription.next_payment_date is None
        assert mock_provider.create_subscription.await_args.kwargs["trial_days"] == 14

        trialing = await lifecycle.transition(subscription, SubscriptionStatus.TRIALING)
        assert trialing.subscription.next_payment_date == subscription.trial_end_date

    async def test_trial_ignored_when_disabled(self, service, catalog):
        catalog.products["prod_coffee"] = catalog.products["prod_coffee"].model_copy(
            update={"trial_days": 14}
        )

        created = await service.create_from_order("order_1")

        assert created[0].trial_end_date is None

    async def test_fee_snapshot_when_passing_fees(self, build_service, mock_provider):
        service = build_service(fees=FeeConfig(pass_fees_to_customer=True))

        created = await service.create_from_order("order_1")

        assert created[0].fee_amount == Decimal("1.17")
        assert created[0].total_amount == Decimal("31.16")
        assert mock_provider.create_price.await_args.kwargs["amount"] == Decimal("31.16")

    async def test_order_not_found(self, service):
        with pytest.raises(OrderNotFoundError):
            await service.create_from_order("order_missing")

    async def test_non_subscription_order_rejected(self, service, catalog, mock_provider):
        catalog.orders["order_plain"] = OrderInfo(
            order_id="order_plain", customer_id="cust_1", is_subscription_order=False
        )

        with pytest.raises(BillingValidationError):
            await service.create_from_order("order_plain")

        mock_provider.create_subscription.assert_not_awaited()

    async def test_provider_failure_creates_nothing(self, service, mock_provider, store):
        mock_provider.create_subscription.side_effect = ProviderError("card_declined")

        with pytest.raises(ProviderError):
            await service.create_from_order("order_1")

        assert await store.list_by_order("order_1") == []


class TestAdministration:
    async def test_pause_and_resume(self, service, make_subscription, mock_provider, clock):
        subscription = await make_subscription()

        paused = await service.pause(subscription.subscription_id, actor="admin_1")
        clock.advance(days=10)
        resumed = await service.resume(subscription.subscription_id, actor="admin_1")

        assert paused.new_status == SubscriptionStatus.PAUSED
        assert paused.subscription.next_payment_date is None
        assert resumed.new_status == SubscriptionStatus.ACTIVE
        # Billing restarts one period after the resume
        assert resumed.subscription.next_payment_date == datetime(2024, 4, 25, 12, 0, tzinfo=UTC)
        mock_provider.pause_subscription.assert_awaited_once_with(subscription.external_subscription_id)
        mock_provider.resume_subscription.assert_awaited_once_with(subscription.external_subscription_id)

    async def test_pause_requires_active(self, service, make_subscription):
        subscription = await make_subscription(status=SubscriptionStatus.PAST_DUE)

        with pytest.raises(SubscriptionNotActiveError):
            await service.pause(subscription.subscription_id)

    async def test_resume_requires_paused(self, service, make_subscription):
        subscription = await make_subscription()

        with pytest.raises(InvalidTransitionError):
            await service.resume(subscription.subscription_id)

    async def test_cancel_twice_only_calls_provider_once(
        self, service, make_subscription, mock_provider, store
    ):
        subscription = await make_subscription()

        result = await service.cancel(subscription.subscription_id, note="Moving away")

        with pytest.raises(AlreadyCancelledError):
            await service.cancel(subscription.subscription_id)

        assert result.new_status == SubscriptionStatus.CANCELLED
        assert mock_provider.cancel_subscription.await_count == 1
        history = await store.get_history(subscription.subscription_id)
        assert history[0].note == "Moving away"

    async def test_provider_refusal_leaves_state_unchanged(
        self, service, make_subscription, mock_provider, store
    ):
        subscription = await make_subscription()
        mock_provider.cancel_subscription.side_effect = ProviderError("No such subscription")

        with pytest.raises(ProviderError):
            await service.cancel(subscription.subscription_id)

        loaded = await store.get(subscription.subscription_id)
        assert loaded.status == SubscriptionStatus.ACTIVE
        assert loaded.version == 1

    async def test_bulk_cancel_reports_per_item_errors(
        self, service, make_subscription, store, clock
    ):
        ids = [(await make_subscription()).subscription_id for _ in range(4)]
        ids.insert(2, "sub_missing")

        result = await service.bulk_action("cancel", ids, actor="admin_1")

        assert result.processed == 4
        assert len(result.errors) == 1
        assert result.errors[0].subscription_id == "sub_missing"
        assert result.errors[0].error_code == "SUBSCRIPTION_NOT_FOUND"
        for subscription_id in (i for i in ids if i != "sub_missing"):
            loaded = await store.get(subscription_id)
            assert loaded.status == SubscriptionStatus.CANCELLED
            assert loaded.end_date == clock()
            assert loaded.next_payment_date is None

    async def test_bulk_unknown_action(self, service):
        with pytest.raises(BillingValidationError):
            await service.bulk_action("archive", ["sub_1"])

    async def test_delete(self, service, make_subscription, store):
        subscription = await make_subscription()

        await service.delete(subscription.subscription_id, actor="admin_1")

        with pytest.raises(SubscriptionNotFoundError):
            await store.get(subscription.subscription_id)

    async def test_add_note_appends(self, service, make_subscription, store):
        subscription = await make_subscription()

        await service.add_note(subscription.subscription_id, "Called customer", actor="admin_1")
        updated = await service.add_note(subscription.subscription_id, "Sent voucher")

        assert updated.notes == "Called customer\nSent voucher"
        history = await service.get_history(subscription.subscription_id)
        assert history[0].action == HistoryAction.NOTE_ADDED

    async def test_add_empty_note_rejected(self, service, make_subscription):
        subscription = await make_subscription()

        with pytest.raises(BillingValidationError):
            await service.add_note(subscription.subscription_id, "   ")


class TestSelfService:
    async def test_customer_pause(self, service, make_subscription, store):
        subscription = await make_subscription()

        result = await service.customer_pause(subscription.subscription_id, "cust_1")

        assert result.new_status == SubscriptionStatus.PAUSED
        history = await store.get_history(subscription.subscription_id)
        assert history[0].note == "Paused by customer"
        assert history[0].actor == "cust_1"

    async def test_other_customer_denied(self, service, make_subscription, mock_provider):
        subscription = await make_subscription()

        with pytest.raises(ActionNotPermittedError) as exc_info:
            await service.customer_cancel(subscription.subscription_id, "cust_other")

        assert exc_info.value.status_code == 403
        mock_provider.cancel_subscription.assert_not_awaited()

    async def test_disabled_action_denied(self, build_service, make_subscription):
        service = build_service(self_service=SelfServiceConfig(can_cancel=False))
        subscription = await make_subscription()

        assert service.can_perform_action(subscription, "cust_1", "pause") is True
        assert service.can_perform_action(subscription, "cust_1", "cancel") is False
        with pytest.raises(ActionNotPermittedError):
            await service.customer_cancel(subscription.subscription_id, "cust_1")

    async def test_change_payment_method(self, service, make_subscription, mock_provider, store):
        subscription = await make_subscription()

        updated = await service.change_payment_method(
            subscription.subscription_id, "pm_new", customer_id="cust_1"
        )

        assert updated.payment_method_id == "pm_new"
        mock_provider.update_payment_method.assert_awaited_once_with(
            subscription.external_subscription_id, "pm_new"
        )
        history = await store.get_history(subscription.subscription_id)
        assert history[0].action == HistoryAction.PAYMENT_METHOD_CHANGED

    async def test_change_payment_method_on_cancelled(self, service, make_subscription):
        subscription = await make_subscription(status=SubscriptionStatus.CANCELLED)

        with pytest.raises(InvalidTransitionError):
            await service.change_payment_method(subscription.subscription_id, "pm_new")

    async def test_update_delivery_address(self, service, make_subscription):
        subscription = await make_subscription()

        updated = await service.update_delivery_address(
            subscription.subscription_id, " 9 Elm Rd ", customer_id="cust_1"
        )

        assert updated.delivery_address == "9 Elm Rd"

    async def test_payment_methods_empty_without_provider_customer(self, service, mock_provider):
        assert await service.list_payment_methods("cust_1") == []
        mock_provider.list_payment_methods.assert_not_awaited()


class TestCustomerViews:
    async def test_upcoming_renewals(self, service, make_subscription, clock):
        subscription = await make_subscription()
        await make_subscription(status=SubscriptionStatus.PAUSED)

        renewals = await service.get_upcoming_renewals("cust_1", months=3)

        assert [r.payment_date for r in renewals] == [
            date(2024, 3, 16),
            date(2024, 4, 16),
            date(2024, 5, 16),
        ]
        assert {r.subscription_id for r in renewals} == {subscription.subscription_id}
        assert renewals[0].billing_period == "Every month"

    async def test_stats(self, service, make_subscription):
        await make_subscription()
        await make_subscription(total_amount=Decimal("10.00"), subscription_amount=Decimal("10.00"))
        await make_subscription(status=SubscriptionStatus.PAUSED)
        await make_subscription(status=SubscriptionStatus.CANCELLED)

        stats = await service.get_subscription_stats("cust_1")

        assert stats.total_subscriptions == 4
        assert stats.active_subscriptions == 2
        assert stats.paused_subscriptions == 1
        assert stats.cancelled_subscriptions == 1
        assert stats.active_recurring_value == Decimal("39.99")
        assert stats.by_status == {"active": 2, "paused": 1, "cancelled": 1}
