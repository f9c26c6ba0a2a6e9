"""
Tests for the subscription store against SQLite.
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from subs.billing.exceptions import StaleSubscriptionError, SubscriptionNotFoundError
from subs.billing.subscriptions.models import (
    HistoryAction,
    HistoryEntry,
    MetaKeys,
    ProcessedEvent,
    SubscriptionStatus,
)

pytestmark = [pytest.mark.integration, pytest.mark.asyncio]


class TestCrud:
    async def test_create_and_get_round_trip(self, store, make_subscription):
        created = await make_subscription(
            fee_amount=Decimal("1.17"), total_amount=Decimal("31.16")
        )

        loaded = await store.get(created.subscription_id)

        assert created.version == 1
        assert loaded.version == 1
        assert loaded.total_amount == Decimal("31.16")
        assert loaded.status == SubscriptionStatus.ACTIVE
        assert loaded.metadata.get(MetaKeys.PROVIDER_CUSTOMER_ID) == "cus_test_1"
        assert loaded.next_payment_date.tzinfo is not None

    async def test_create_writes_created_history(self, store, make_subscription):
        created = await make_subscription()

        history = await store.get_history(created.subscription_id)

        assert [entry.action for entry in history] == [HistoryAction.CREATED]
        assert history[0].status_to == SubscriptionStatus.ACTIVE

    async def test_get_missing_raises(self, store):
        with pytest.raises(SubscriptionNotFoundError):
            await store.get("does-not-exist")

    async def test_find_by_external_id(self, store, make_subscription):
        created = await make_subscription(external_subscription_id="sub_ext_42")

        found = await store.find_by_external_id("sub_ext_42")

        assert found.subscription_id == created.subscription_id
        assert await store.find_by_external_id("sub_unknown") is None

    async def test_list_by_order_and_customer(self, store, make_subscription):
        first = await make_subscription(order_id="order_a", customer_id="cust_a")
        await make_subscription(order_id="order_b", customer_id="cust_a")

        by_order = await store.list_by_order("order_a")
        by_customer = await store.list_by_customer("cust_a")

        assert [s.subscription_id for s in by_order] == [first.subscription_id]
        assert len(by_customer) == 2

    async def test_delete_removes_history_and_metadata(self, store, make_subscription):
        created = await make_subscription()

        await store.delete(created.subscription_id)

        with pytest.raises(SubscriptionNotFoundError):
            await store.get(created.subscription_id)
        assert await store.get_history(created.subscription_id) == []
        with pytest.raises(SubscriptionNotFoundError):
            await store.delete(created.subscription_id)


class TestUpdate:
    async def test_update_bumps_version_and_replaces_metadata(self, store, make_subscription):
        created = await make_subscription()
        created.metadata.set(MetaKeys.LATEST_INVOICE_ID, "in_1")
        created.notes = "VIP"

        saved = await store.update(created)
        loaded = await store.get(created.subscription_id)

        assert saved.version == 2
        assert loaded.version == 2
        assert loaded.notes == "VIP"
        assert loaded.metadata.get(MetaKeys.LATEST_INVOICE_ID) == "in_1"

    async def test_stale_write_rejected(self, store, make_subscription):
        created = await make_subscription()
        first = await store.get(created.subscription_id)
        second = await store.get(created.subscription_id)

        await store.update(first)

        with pytest.raises(StaleSubscriptionError):
            await store.update(second)

    async def test_update_missing_raises_not_found(self, store, make_subscription):
        created = await make_subscription()
        await store.delete(created.subscription_id)

        with pytest.raises(SubscriptionNotFoundError):
            await store.update(created)

    async def test_modify_applies_mutation_and_history(self, store, make_subscription, clock):
        created = await make_subscription()

        def mutate(subscription):
            subscription.delivery_address = "2 Side St"
            return [
                HistoryEntry(
                    subscription_id=subscription.subscription_id,
                    action=HistoryAction.DELIVERY_ADDRESS_UPDATED,
                    created_at=clock() + timedelta(seconds=1),
                )
            ]

        saved = await store.modify(created.subscription_id, mutate)
        history = await store.get_history(created.subscription_id)

        assert saved.delivery_address == "2 Side St"
        assert history[0].action == HistoryAction.DELIVERY_ADDRESS_UPDATED

    async def test_history_newest_first_with_limit(self, store, make_subscription, clock):
        created = await make_subscription()
        for minutes in (1, 2, 3):
            await store.append_history(
                HistoryEntry(
                    subscription_id=created.subscription_id,
                    action=HistoryAction.NOTE_ADDED,
                    note=f"note {minutes}",
                    created_at=clock() + timedelta(minutes=minutes),
                )
            )

        history = await store.get_history(created.subscription_id, limit=2)

        assert [entry.note for entry in history] == ["note 3", "note 2"]
        assert all(entry.id is not None for entry in history)


class TestQueries:
    async def test_list_due_only_returns_active_like(self, store, make_subscription, clock):
        past = clock() - timedelta(days=1)
        due_active = await make_subscription(next_payment_date=past)
        due_trial = await make_subscription(
            next_payment_date=past, status=SubscriptionStatus.TRIALING
        )
        await make_subscription(next_payment_date=past, status=SubscriptionStatus.PAUSED)
        await make_subscription(next_payment_date=clock() + timedelta(days=5))

        due = await store.list_due(clock())

        assert {s.subscription_id for s in due} == {
            due_active.subscription_id,
            due_trial.subscription_id,
        }

    async def test_list_by_status(self, store, make_subscription):
        past_due = await make_subscription(status=SubscriptionStatus.PAST_DUE)
        await make_subscription()

        found = await store.list_by_status([SubscriptionStatus.PAST_DUE])

        assert [s.subscription_id for s in found] == [past_due.subscription_id]


class TestProcessedEventLedger:
    async def test_record_is_idempotent(self, store, clock):
        event = ProcessedEvent(event_id="evt_1", event_type="invoice.payment_failed", processed_at=clock())

        assert await store.record_processed_event(event) is True
        assert await store.record_processed_event(event) is False
        assert await store.is_event_processed("evt_1") is True
        assert await store.is_event_processed("evt_2") is False

    async def test_purge_older_than(self, store, clock):
        old = ProcessedEvent(
            event_id="evt_old", event_type="x", processed_at=clock() - timedelta(days=40)
        )
        recent = ProcessedEvent(event_id="evt_new", event_type="x", processed_at=clock())
        await store.record_processed_event(old)
        await store.record_processed_event(recent)

        purged = await store.purge_processed_events(clock() - timedelta(days=30))

        assert purged == 1
        assert await store.is_event_processed("evt_old") is False
        assert await store.is_event_processed("evt_new") is True


class TestLeases:
    async def test_lease_is_exclusive_until_released(self, store):
        assert await store.acquire_lease("sweep", "worker-a", 60) is True
        assert await store.acquire_lease("sweep", "worker-b", 60) is False
        # Holder may re-acquire its own lease
        assert await store.acquire_lease("sweep", "worker-a", 60) is True

        await store.release_lease("sweep", "worker-a")

        assert await store.acquire_lease("sweep", "worker-b", 60) is True

    async def test_expired_lease_can_be_taken_over(self, store, clock):
        assert await store.acquire_lease("sweep", "worker-a", 60) is True
        clock.advance(seconds=61)
        assert await store.acquire_lease("sweep", "worker-b", 60) is True

    async def test_release_by_non_holder_is_ignored(self, store):
        await store.acquire_lease("sweep", "worker-a", 60)
        await store.release_lease("sweep", "worker-b")
        assert await store.acquire_lease("sweep", "worker-b", 60) is False
