"""
Tests for the in-process event bus and billing event helpers.
"""

from unittest.mock import AsyncMock

import pytest

from subs.billing.events import (
    BillingEvents,
    emit_payment_failed,
    emit_subscription_created,
    emit_subscription_status_changed,
)
from subs.events import EventBus, get_event_bus

pytestmark = [pytest.mark.unit, pytest.mark.asyncio]


class TestEventBus:
    async def test_sync_and_async_handlers_receive_events(self):
        bus = EventBus()
        received = []
        async_handler = AsyncMock()
        bus.subscribe("subscription.created", received.append)
        bus.subscribe("subscription.created", async_handler)

        event = await bus.publish("subscription.created", {"subscription_id": "sub_1"})

        assert received == [event]
        async_handler.assert_awaited_once_with(event)

    async def test_handler_failure_does_not_propagate(self):
        bus = EventBus()
        received = []

        def broken(event):
            raise RuntimeError("mailer down")

        bus.subscribe("payment.failed", broken)
        bus.subscribe("payment.failed", received.append)

        await bus.publish("payment.failed", {"subscription_id": "sub_1"})

        assert len(received) == 1

    async def test_wildcard_and_unsubscribe(self):
        bus = EventBus()
        received = []
        bus.subscribe("*", received.append)
        await bus.publish("anything", {})
        bus.unsubscribe("*", received.append)
        await bus.publish("anything", {})
        assert len(received) == 1


class TestBillingEventHelpers:
    async def test_subscription_created_payload(self):
        bus = EventBus()
        received = []
        bus.subscribe(BillingEvents.SUBSCRIPTION_CREATED, received.append)

        await emit_subscription_created(
            subscription_id="sub_1",
            customer_id="cust_1",
            order_id="order_1",
            product_id="prod_1",
            total_amount="31.16",
            currency="USD",
            event_bus=bus,
        )

        payload = received[0].payload
        assert payload["subscription_id"] == "sub_1"
        assert payload["total_amount"] == "31.16"

    async def test_status_changed_carries_actor(self):
        bus = EventBus()
        received = []
        bus.subscribe(BillingEvents.SUBSCRIPTION_STATUS_CHANGED, received.append)

        await emit_subscription_status_changed(
            subscription_id="sub_1",
            customer_id="cust_1",
            old_status="active",
            new_status="paused",
            actor="admin_1",
            event_bus=bus,
        )

        event = received[0]
        assert event.payload["old_status"] == "active"
        assert event.payload["new_status"] == "paused"
        assert event.metadata["user_id"] == "admin_1"

    async def test_defaults_to_process_bus(self):
        received = []
        get_event_bus().subscribe(BillingEvents.PAYMENT_FAILED, received.append)

        await emit_payment_failed(
            subscription_id="sub_1",
            customer_id="cust_1",
            invoice_id="in_1",
            amount="31.16",
            currency="USD",
            error_message="Card declined",
        )

        assert received[0].payload["error_message"] == "Card declined"
