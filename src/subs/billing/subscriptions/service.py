"""
Subscription service.

Administrative and customer self-service operations on subscriptions.
Provider side effects run first; local state changes only after the
provider call succeeded, and always through the lifecycle state machine.
"""

from collections.abc import Callable, Iterable
from datetime import date, datetime
from decimal import Decimal
import structlog
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError

from subs.billing.catalog import CatalogGateway, OrderInfo, OrderItem, ProductSubscriptionConfig
from subs.billing.config import BillingConfig
from subs.billing.events import emit_subscription_created
from subs.billing.exceptions import (
    ActionNotPermittedError,
    AlreadyCancelledError,
    BillingError,
    BillingValidationError,
    CustomerNotFoundError,
    InvalidTransitionError,
    OrderNotFoundError,
    ProductNotFoundError,
    SubscriptionNotActiveError,
)
from subs.billing.money_utils import compute_fee, round_amount, total
from subs.billing.payments.providers import PaymentMethodSummary, PaymentProvider, SetupIntent
from subs.billing.subscriptions.lifecycle import SubscriptionLifecycle
from subs.billing.subscriptions.models import (
    ACTIVE_STATUSES,
    BatchResult,
    BillingPeriod,
    HistoryAction,
    HistoryEntry,
    MetaKeys,
    Subscription,
    SubscriptionStatus,
    TransitionResult,
    parse_period,
)
from subs.billing.subscriptions.schedule import (
    format_billing_period,
    iter_payment_dates,
    next_payment_date,
    trial_end_date,
)
from subs.billing.subscriptions.store import SubscriptionStore
from subs.db import utcnow
from subs.events import EventPublisher
from subs.logging import log_audit_event

logger = structlog.get_logger(__name__)


class CustomerAction:
    """Self-service actions gated by settings."""

    PAUSE = "pause"
    CANCEL = "cancel"
    MODIFY = "modify"
    CHANGE_PAYMENT_METHOD = "change_payment_method"


class BulkAction:
    PAUSE = "pause"
    RESUME = "resume"
    CANCEL = "cancel"
    DELETE = "delete"

    ALL = (PAUSE, RESUME, CANCEL, DELETE)


class PriceQuote(BaseModel):
    """Recurring price for a product including any pass-through fee."""

    product_id: str
    quantity: int
    subscription_amount: Decimal
    fee_amount: Decimal
    total_amount: Decimal
    currency: str
    billing_period: str


class RenewalEntry(BaseModel):
    """One upcoming charge on the renewal calendar."""

    subscription_id: str
    payment_date: date
    amount: Decimal
    currency: str
    product_id: str
    billing_period: str


class SubscriptionStats(BaseModel):
    total_subscriptions: int = 0
    active_subscriptions: int = 0
    paused_subscriptions: int = 0
    cancelled_subscriptions: int = 0
    active_recurring_value: Decimal = Decimal("0")
    by_status: dict[str, int] = Field(default_factory=dict)


class SubscriptionService:
    """Subscription creation, administration and self-service."""

    def __init__(
        self,
        store: SubscriptionStore,
        lifecycle: SubscriptionLifecycle,
        provider: PaymentProvider,
        catalog: CatalogGateway,
        config: BillingConfig,
        event_bus: EventPublisher,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.lifecycle = lifecycle
        self.provider = provider
        self.catalog = catalog
        self.config = config
        self.event_bus = event_bus
        self._clock = clock

    # ------------------------------------------------------------------
    # Pricing and creation
    # ------------------------------------------------------------------

    def _pass_fee(self, product: ProductSubscriptionConfig) -> bool:
        if product.pass_fee_to_customer is not None:
            return product.pass_fee_to_customer
        return self.config.fees.pass_fees_to_customer

    def _trial_days(self, product: ProductSubscriptionConfig) -> int:
        if not self.config.trials.enabled:
            return 0
        if product.trial_days is None:
            return self.config.trials.default_days
        return product.trial_days

    def _price(
        self, product: ProductSubscriptionConfig, quantity: int, currency: str
    ) -> PriceQuote:
        amount = round_amount(product.base_price * quantity, currency)
        fee = Decimal("0")
        if self._pass_fee(product):
            fee = compute_fee(
                amount, self.config.fees.percentage, self.config.fees.fixed, currency
            )
        return PriceQuote(
            product_id=product.product_id,
            quantity=quantity,
            subscription_amount=amount,
            fee_amount=fee,
            total_amount=total(amount, fee),
            currency=currency,
            billing_period=format_billing_period(product.period, product.interval),
        )

    async def _product(self, product_id: str) -> ProductSubscriptionConfig:
        product = await self.catalog.get_product_subscription_config(product_id)
        if product is None:
            raise ProductNotFoundError(
                f"Product {product_id} is not configured for subscriptions", product_id=product_id
            )
        return product

    async def calculate_price(
        self, product_id: str, quantity: int = 1, currency: str | None = None
    ) -> PriceQuote:
        """Quote the recurring charge for a product, fee included."""
        if quantity < 1:
            raise BillingValidationError("Quantity must be at least 1", field="quantity", value=quantity)
        product = await self._product(product_id)
        return self._price(product, quantity, (currency or self.config.default_currency).upper())

    async def _ensure_provider_customer(self, customer_id: str) -> str:
        customer = await self.catalog.get_customer(customer_id)
        if customer is None:
            raise CustomerNotFoundError(f"Customer {customer_id} not found", customer_id=customer_id)
        if customer.provider_customer_id:
            return customer.provider_customer_id

        created = await self.provider.create_customer(
            email=customer.email, name=customer.name, metadata={"customer_id": customer_id}
        )
        await self.catalog.set_provider_customer_id(customer_id, created.customer_id)
        logger.info(
            "provider_customer.created",
            customer_id=customer_id,
            provider_customer_id=created.customer_id,
        )
        return created.customer_id

    async def create_from_order(self, order_id: str, actor: str | None = None) -> list[Subscription]:
        """
        Create one subscription per order line.

        Fees are snapshotted onto each subscription at creation. The first
        charge falls on the trial end when there is a trial, otherwise one
        billing period after the start. Repeating the call for an order that
        was already processed returns the existing subscriptions.
        """
        order = await self.catalog.get_order(order_id)
        if order is None:
            raise OrderNotFoundError(f"Order {order_id} not found", order_id=order_id)
        if not order.is_subscription_order:
            raise BillingValidationError(
                "Order is not a subscription order", field="order_id", value=order_id
            )
        if order.subscription_processed:
            logger.info("order.already_processed", order_id=order_id)
            return await self.store.list_by_order(order_id)
        if not order.items:
            raise BillingValidationError("Order has no items", field="items", value=order_id)

        provider_customer_id = await self._ensure_provider_customer(order.customer_id)

        created = []
        for item in order.items:
            created.append(
                await self._create_for_item(
                    order_id, order.customer_id, item, order, provider_customer_id, actor
                )
            )

        await self.catalog.mark_order_processed(order_id)
        return created

    async def _create_for_item(
        self,
        order_id: str,
        customer_id: str,
        item: OrderItem,
        order: OrderInfo,
        provider_customer_id: str,
        actor: str | None,
    ) -> Subscription:
        product = await self._product(item.product_id)
        period = parse_period(product.period)
        currency = order.currency.upper()
        quote = self._price(product, item.quantity, currency)
        trial_days = self._trial_days(product)

        now = self._clock()
        trial_end = trial_end_date(now, trial_days) if trial_days else None
        price = await self.provider.create_price(
            product_name=product.name,
            amount=quote.total_amount,
            currency=currency,
            period=period,
            interval=product.interval,
            metadata={"product_id": product.product_id},
        )
        provider_subscription = await self.provider.create_subscription(
            customer_id=provider_customer_id,
            price_id=price.price_id,
            quantity=1,
            trial_days=trial_days or None,
            metadata={
                "order_id": order_id,
                "product_id": product.product_id,
                "customer_id": customer_id,
            },
        )

        subscription = Subscription(
            order_id=order_id,
            customer_id=customer_id,
            product_id=product.product_id,
            external_subscription_id=provider_subscription.subscription_id,
            status=SubscriptionStatus.PENDING,
            billing_period=period,
            billing_interval=product.interval,
            start_date=now,
            trial_end_date=trial_end,
            subscription_amount=quote.subscription_amount,
            fee_amount=quote.fee_amount,
            total_amount=quote.total_amount,
            currency=currency,
            payment_method_id=order.payment_method_id,
            delivery_address=order.delivery_address,
        )
        subscription.metadata.set(MetaKeys.PROVIDER_CUSTOMER_ID, provider_customer_id)
        subscription.metadata.set(MetaKeys.PROVIDER_PRICE_ID, price.price_id)

        saved = await self.store.create(subscription, actor=actor)
        await emit_subscription_created(
            subscription_id=saved.subscription_id,
            customer_id=customer_id,
            order_id=order_id,
            product_id=product.product_id,
            total_amount=str(saved.total_amount),
            currency=currency,
            event_bus=self.event_bus,
            trial_end_date=trial_end.isoformat() if trial_end else None,
        )
        return saved

    # ------------------------------------------------------------------
    # Administrative lifecycle operations
    # ------------------------------------------------------------------

    async def get(self, subscription_id: str) -> Subscription:
        return await self.store.get(subscription_id)

    async def pause(
        self, subscription_id: str, note: str = "", actor: str | None = None
    ) -> TransitionResult:
        """Pause collection at the provider, then mark the subscription paused."""
        async with self.store.lock(subscription_id):
            subscription = await self.store.get(subscription_id)
            if subscription.status not in ACTIVE_STATUSES:
                raise SubscriptionNotActiveError(
                    "Only active subscriptions can be paused",
                    subscription_id=subscription_id,
                    current_state=subscription.status.value,
                )
            if subscription.external_subscription_id:
                await self.provider.pause_subscription(subscription.external_subscription_id)
            return await self.lifecycle.transition(
                subscription, SubscriptionStatus.PAUSED, note=note or "Subscription paused", actor=actor
            )

    async def resume(
        self, subscription_id: str, note: str = "", actor: str | None = None
    ) -> TransitionResult:
        """Resume collection at the provider, then mark the subscription active."""
        async with self.store.lock(subscription_id):
            subscription = await self.store.get(subscription_id)
            if not subscription.is_paused:
                raise InvalidTransitionError(
                    "Only paused subscriptions can be resumed",
                    current_state=subscription.status.value,
                    requested_state=SubscriptionStatus.ACTIVE.value,
                )
            if subscription.external_subscription_id:
                await self.provider.resume_subscription(subscription.external_subscription_id)
            return await self.lifecycle.transition(
                subscription, SubscriptionStatus.ACTIVE, note=note or "Subscription resumed", actor=actor
            )

    async def cancel(
        self, subscription_id: str, note: str = "", actor: str | None = None
    ) -> TransitionResult:
        """
        Cancel at the provider, then locally.

        Raises:
            AlreadyCancelledError: Before any provider call if already cancelled
            ProviderError: Provider refused; local state is unchanged
        """
        async with self.store.lock(subscription_id):
            subscription = await self.store.get(subscription_id)
            if subscription.is_cancelled:
                raise AlreadyCancelledError(subscription_id)
            if subscription.external_subscription_id:
                await self.provider.cancel_subscription(subscription.external_subscription_id)
            return await self.lifecycle.transition(
                subscription,
                SubscriptionStatus.CANCELLED,
                note=note or "Subscription cancelled",
                actor=actor,
            )

    async def delete(self, subscription_id: str, actor: str | None = None) -> None:
        """Hard-delete a subscription with its metadata and history."""
        async with self.store.lock(subscription_id):
            await self.store.delete(subscription_id)
        log_audit_event(
            "subscription.deleted",
            category="billing",
            actor=actor,
            resource_type="subscription",
            resource_id=subscription_id,
        )

    async def bulk_action(
        self, action: str, subscription_ids: Iterable[str], actor: str | None = None
    ) -> BatchResult:
        """Apply pause/resume/cancel/delete to each id independently."""
        if action not in BulkAction.ALL:
            raise BillingValidationError(f"Unknown bulk action: {action}", field="action", value=action)

        note = "Bulk action by administrator"
        result = BatchResult()
        ids = list(subscription_ids)
        for subscription_id in ids:
            try:
                if action == BulkAction.PAUSE:
                    await self.pause(subscription_id, note=note, actor=actor)
                elif action == BulkAction.RESUME:
                    await self.resume(subscription_id, note=note, actor=actor)
                elif action == BulkAction.CANCEL:
                    await self.cancel(subscription_id, note=note, actor=actor)
                else:
                    await self.delete(subscription_id, actor=actor)
                result.processed += 1
            except BillingError as e:
                result.add_error(subscription_id, e.error_code, e.message)
            except SQLAlchemyError as e:
                logger.exception("subscription.bulk_action.db_error", subscription_id=subscription_id)
                result.add_error(subscription_id, "DATABASE_ERROR", str(e))

        log_audit_event(
            f"subscription.bulk_{action}",
            category="billing",
            actor=actor,
            resource_type="subscription",
            requested=len(ids),
            processed=result.processed,
            failed=len(result.errors),
        )
        return result

    async def add_note(self, subscription_id: str, note: str, actor: str | None = None) -> Subscription:
        note = note.strip()
        if not note:
            raise BillingValidationError("Note cannot be empty", field="note")
        now = self._clock()

        def mutate(sub: Subscription) -> list[HistoryEntry]:
            sub.notes = f"{sub.notes}\n{note}".strip()
            return [
                HistoryEntry(
                    subscription_id=sub.subscription_id,
                    action=HistoryAction.NOTE_ADDED,
                    note=note,
                    actor=actor,
                    created_at=now,
                )
            ]

        async with self.store.lock(subscription_id):
            return await self.store.modify(subscription_id, mutate)

    async def list_for_customer(self, customer_id: str) -> list[Subscription]:
        return await self.store.list_by_customer(customer_id)

    async def get_history(self, subscription_id: str, limit: int = 20) -> list[HistoryEntry]:
        await self.store.get(subscription_id)
        return await self.store.get_history(subscription_id, limit=limit)

    # ------------------------------------------------------------------
    # Customer self-service
    # ------------------------------------------------------------------

    def can_perform_action(self, subscription: Subscription, customer_id: str, action: str) -> bool:
        """Ownership plus the per-action self-service setting."""
        if subscription.customer_id != customer_id:
            return False
        flags = self.config.self_service
        return {
            CustomerAction.PAUSE: flags.can_pause,
            CustomerAction.CANCEL: flags.can_cancel,
            CustomerAction.MODIFY: flags.can_modify,
            CustomerAction.CHANGE_PAYMENT_METHOD: flags.can_change_payment_method,
        }.get(action, False)

    async def _authorize(self, subscription_id: str, customer_id: str, action: str) -> Subscription:
        subscription = await self.store.get(subscription_id)
        if not self.can_perform_action(subscription, customer_id, action):
            logger.warning(
                "subscription.action_denied",
                subscription_id=subscription_id,
                customer_id=customer_id,
                action=action,
            )
            raise ActionNotPermittedError(
                f"You are not allowed to {action.replace('_', ' ')} this subscription",
                action=action,
                actor=customer_id,
            )
        return subscription

    async def customer_pause(self, subscription_id: str, customer_id: str) -> TransitionResult:
        await self._authorize(subscription_id, customer_id, CustomerAction.PAUSE)
        return await self.pause(subscription_id, note="Paused by customer", actor=customer_id)

    async def customer_cancel(self, subscription_id: str, customer_id: str) -> TransitionResult:
        await self._authorize(subscription_id, customer_id, CustomerAction.CANCEL)
        return await self.cancel(subscription_id, note="Cancelled by customer", actor=customer_id)

    async def change_payment_method(
        self,
        subscription_id: str,
        payment_method_id: str,
        customer_id: str | None = None,
        actor: str | None = None,
    ) -> Subscription:
        """Switch the default payment method at the provider and locally.

        ``customer_id`` is the authenticated customer on the self-service
        path; None means an administrator (``actor``) is acting.
        """
        if not payment_method_id:
            raise BillingValidationError("Payment method is required", field="payment_method_id")
        if customer_id is not None:
            await self._authorize(subscription_id, customer_id, CustomerAction.CHANGE_PAYMENT_METHOD)

        async with self.store.lock(subscription_id):
            subscription = await self.store.get(subscription_id)
            if subscription.is_cancelled:
                raise InvalidTransitionError(
                    "Cannot change the payment method of a cancelled subscription",
                    current_state=subscription.status.value,
                )
            if subscription.external_subscription_id:
                await self.provider.update_payment_method(
                    subscription.external_subscription_id, payment_method_id
                )
            now = self._clock()

            def mutate(sub: Subscription) -> list[HistoryEntry]:
                sub.payment_method_id = payment_method_id
                return [
                    HistoryEntry(
                        subscription_id=sub.subscription_id,
                        action=HistoryAction.PAYMENT_METHOD_CHANGED,
                        note="Payment method updated",
                        actor=customer_id or actor,
                        created_at=now,
                    )
                ]

            return await self.store.modify(subscription_id, mutate)

    async def update_delivery_address(
        self,
        subscription_id: str,
        address: str,
        customer_id: str | None = None,
        actor: str | None = None,
    ) -> Subscription:
        address = address.strip()
        if not address:
            raise BillingValidationError("Delivery address is required", field="delivery_address")
        if customer_id is not None:
            await self._authorize(subscription_id, customer_id, CustomerAction.MODIFY)
        now = self._clock()

        def mutate(sub: Subscription) -> list[HistoryEntry]:
            sub.delivery_address = address
            return [
                HistoryEntry(
                    subscription_id=sub.subscription_id,
                    action=HistoryAction.DELIVERY_ADDRESS_UPDATED,
                    note="Delivery address updated",
                    actor=customer_id or actor,
                    created_at=now,
                )
            ]

        async with self.store.lock(subscription_id):
            return await self.store.modify(subscription_id, mutate)

    async def list_payment_methods(self, customer_id: str) -> list[PaymentMethodSummary]:
        customer = await self.catalog.get_customer(customer_id)
        if customer is None:
            raise CustomerNotFoundError(f"Customer {customer_id} not found", customer_id=customer_id)
        if not customer.provider_customer_id:
            return []
        return await self.provider.list_payment_methods(customer.provider_customer_id)

    async def create_setup_intent(self, customer_id: str) -> SetupIntent:
        provider_customer_id = await self._ensure_provider_customer(customer_id)
        return await self.provider.create_setup_intent(provider_customer_id)

    async def get_upcoming_renewals(self, customer_id: str, months: int = 3) -> list[RenewalEntry]:
        """Renewal calendar for the customer's active subscriptions."""
        horizon = next_payment_date(self._clock(), BillingPeriod.MONTH, months)
        renewals = []
        for subscription in await self.store.list_by_customer(customer_id):
            if not subscription.is_active or subscription.next_payment_date is None:
                continue
            first = subscription.next_payment_date
            if first > horizon:
                continue
            label = format_billing_period(subscription.billing_period, subscription.billing_interval)
            following = iter_payment_dates(
                first,
                subscription.billing_period,
                subscription.billing_interval,
                count=None,
                until=horizon,
            )
            renewals.extend(
                RenewalEntry(
                    subscription_id=subscription.subscription_id,
                    payment_date=payment_date.date(),
                    amount=subscription.total_amount,
                    currency=subscription.currency,
                    product_id=subscription.product_id,
                    billing_period=label,
                )
                for payment_date in [first, *following]
            )
        renewals.sort(key=lambda renewal: renewal.payment_date)
        return renewals

    async def get_subscription_stats(self, customer_id: str) -> SubscriptionStats:
        stats = SubscriptionStats()
        for subscription in await self.store.list_by_customer(customer_id):
            status = subscription.status
            stats.total_subscriptions += 1
            stats.by_status[status.value] = stats.by_status.get(status.value, 0) + 1
            if status in ACTIVE_STATUSES:
                stats.active_subscriptions += 1
                stats.active_recurring_value += subscription.total_amount
            elif status == SubscriptionStatus.PAUSED:
                stats.paused_subscriptions += 1
            elif status == SubscriptionStatus.CANCELLED:
                stats.cancelled_subscriptions += 1
        return stats
