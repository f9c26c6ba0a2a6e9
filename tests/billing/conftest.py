"""
Pytest fixtures for billing tests.

Components are wired against the in-memory database with a fixed clock,
a mocked payment provider and an in-memory catalog.
"""

import hashlib
import hmac
import time
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from subs.billing.catalog import CustomerInfo, OrderInfo, ProductSubscriptionConfig
from subs.billing.config import BillingConfig, StripeConfig
from subs.billing.payments.processor import PaymentProcessor
from subs.billing.payments.providers import (
    ProviderCustomer,
    ProviderInvoice,
    ProviderPrice,
    ProviderSubscription,
    StripePaymentProvider,
)
from subs.billing.subscriptions.lifecycle import SubscriptionLifecycle
from subs.billing.subscriptions.models import (
    ACTIVE_STATUSES,
    BillingPeriod,
    MetaKeys,
    Subscription,
    SubscriptionStatus,
)
from subs.billing.subscriptions.service import SubscriptionService
from subs.billing.subscriptions.store import SubscriptionStore
from subs.billing.sweeps import BillingSweeps
from subs.billing.webhooks.handlers import BillingSynchronizer
from subs.events import Event, EventBus

WEBHOOK_SECRET = "whsec_test_secret"
FIXED_NOW = datetime(2024, 3, 15, 12, 0, tzinfo=UTC)


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """Build a ``Stripe-Signature`` header the way Stripe signs deliveries."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.".encode() + payload
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


class FakeClock:
    """Settable clock passed to components instead of utcnow."""

    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: Any) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class InMemoryCatalog:
    """Catalog gateway backed by dictionaries."""

    def __init__(self):
        self.orders: dict[str, OrderInfo] = {}
        self.products: dict[str, ProductSubscriptionConfig] = {}
        self.customers: dict[str, CustomerInfo] = {}
        self.processed_orders: list[str] = []

    async def get_order(self, order_id: str) -> OrderInfo | None:
        return self.orders.get(order_id)

    async def mark_order_processed(self, order_id: str) -> None:
        self.processed_orders.append(order_id)
        order = self.orders[order_id]
        self.orders[order_id] = order.model_copy(update={"subscription_processed": True})

    async def get_product_subscription_config(
        self, product_id: str
    ) -> ProductSubscriptionConfig | None:
        return self.products.get(product_id)

    async def get_customer(self, customer_id: str) -> CustomerInfo | None:
        return self.customers.get(customer_id)

    async def set_provider_customer_id(self, customer_id: str, provider_customer_id: str) -> None:
        customer = self.customers[customer_id]
        self.customers[customer_id] = customer.model_copy(
            update={"provider_customer_id": provider_customer_id}
        )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def billing_config() -> BillingConfig:
    return BillingConfig(
        stripe=StripeConfig(
            secret_key="sk_test_123",
            publishable_key="pk_test_123",
            webhook_secret=WEBHOOK_SECRET,
            test_mode=True,
        )
    )


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture
def published_events(event_bus: EventBus) -> list[Event]:
    """Every event published on the test bus, in order."""
    events: list[Event] = []
    event_bus.subscribe("*", events.append)
    return events


@pytest.fixture
def mock_provider() -> AsyncMock:
    """Payment provider mock returning realistic DTOs."""
    provider = AsyncMock()
    provider.create_customer.return_value = ProviderCustomer(
        customer_id="cus_test_1", email="jane@example.com"
    )
    provider.create_price.return_value = ProviderPrice(
        price_id="price_test_1", unit_amount=2999, currency="USD"
    )
    provider.create_subscription.return_value = ProviderSubscription(
        subscription_id="sub_stripe_1", status="incomplete", customer_id="cus_test_1"
    )
    provider.create_and_collect_invoice.return_value = ProviderInvoice(
        invoice_id="in_test_1",
        status="paid",
        paid=True,
        amount_due=Decimal("29.99"),
        currency="USD",
    )
    provider.pay_latest_open_invoice.return_value = ProviderInvoice(
        invoice_id="in_retry_1",
        status="paid",
        paid=True,
        amount_due=Decimal("29.99"),
        currency="USD",
    )
    provider.list_payment_methods.return_value = []
    # Signature checks run through the real Stripe SDK
    provider.verify_webhook = MagicMock(
        side_effect=StripePaymentProvider(StripeConfig(webhook_secret=WEBHOOK_SECRET)).verify_webhook
    )
    return provider


@pytest.fixture
def catalog() -> InMemoryCatalog:
    catalog = InMemoryCatalog()
    catalog.customers["cust_1"] = CustomerInfo(
        customer_id="cust_1", email="jane@example.com", name="Jane Doe"
    )
    catalog.products["prod_coffee"] = ProductSubscriptionConfig(
        product_id="prod_coffee",
        name="Coffee Beans",
        base_price=Decimal("29.99"),
        period="month",
        interval=1,
    )
    catalog.orders["order_1"] = OrderInfo(
        order_id="order_1",
        customer_id="cust_1",
        items=[{"product_id": "prod_coffee", "quantity": 1}],
        delivery_address="1 Main St, Springfield",
        currency="USD",
        is_subscription_order=True,
        payment_method_id="pm_card_visa",
    )
    return catalog


@pytest.fixture
def store(session_factory, clock) -> SubscriptionStore:
    return SubscriptionStore(session_factory, clock=clock)


@pytest.fixture
def lifecycle(store, event_bus, clock) -> SubscriptionLifecycle:
    return SubscriptionLifecycle(store, event_bus, clock=clock)


@pytest.fixture
def service(store, lifecycle, mock_provider, catalog, billing_config, event_bus, clock):
    return SubscriptionService(
        store, lifecycle, mock_provider, catalog, billing_config, event_bus, clock=clock
    )


@pytest.fixture
def processor(store, mock_provider, billing_config, clock) -> PaymentProcessor:
    return PaymentProcessor(store, mock_provider, billing_config, clock=clock)


@pytest.fixture
def synchronizer(store, lifecycle, mock_provider, event_bus, clock) -> BillingSynchronizer:
    return BillingSynchronizer(store, lifecycle, mock_provider, event_bus, clock=clock)


@pytest.fixture
def sweeps(store, processor, lifecycle, billing_config, clock) -> BillingSweeps:
    return BillingSweeps(store, processor, lifecycle, billing_config, clock=clock, holder="worker-a")


@pytest.fixture
def make_subscription(store, clock) -> Callable[..., Awaitable[Subscription]]:
    """Persist a provider-linked subscription with sensible defaults."""
    counter = {"n": 0}

    async def _make(**overrides: Any) -> Subscription:
        counter["n"] += 1
        n = counter["n"]
        values: dict[str, Any] = {
            "order_id": f"order_{n}",
            "customer_id": "cust_1",
            "product_id": "prod_coffee",
            "external_subscription_id": f"sub_stripe_{n}",
            "status": SubscriptionStatus.ACTIVE,
            "billing_period": BillingPeriod.MONTH,
            "billing_interval": 1,
            "start_date": clock() - timedelta(days=30),
            "next_payment_date": clock() + timedelta(days=1),
            "subscription_amount": Decimal("29.99"),
            "fee_amount": Decimal("0"),
            "total_amount": Decimal("29.99"),
            "currency": "USD",
        }
        values.update(overrides)
        if "next_payment_date" not in overrides and values["status"] not in ACTIVE_STATUSES:
            values["next_payment_date"] = None
        subscription = Subscription(**values)
        subscription.metadata.set(MetaKeys.PROVIDER_CUSTOMER_ID, "cus_test_1")
        return await store.create(subscription)

    return _make
