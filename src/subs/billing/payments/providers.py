"""
Payment provider interface and the Stripe implementation.

Billing talks to the provider only through ``PaymentProvider`` and the DTOs
below, so no SDK object leaks into the rest of the system. Every SDK
exception is wrapped into ``ProviderError`` with the provider's code and
message preserved.
"""

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any, Protocol, TypeVar

import structlog
from pydantic import BaseModel, ConfigDict

from subs.billing.config import StripeConfig
from subs.billing.exceptions import ProviderError, WebhookSignatureError
from subs.billing.money_utils import from_minor_units, to_minor_units
from subs.billing.subscriptions.models import BillingPeriod

logger = structlog.get_logger(__name__)

T = TypeVar("T")


# ============================================================================
# DTOs
# ============================================================================


class ProviderCustomer(BaseModel):
    model_config = ConfigDict(frozen=True)

    customer_id: str
    email: str | None = None


class ProviderPrice(BaseModel):
    model_config = ConfigDict(frozen=True)

    price_id: str
    unit_amount: int
    currency: str


class ProviderSubscription(BaseModel):
    """Provider-side subscription as returned by create/update calls."""

    model_config = ConfigDict(frozen=True)

    subscription_id: str
    status: str
    customer_id: str | None = None
    current_period_end: datetime | None = None
    trial_end: datetime | None = None
    client_secret: str | None = None


class ProviderInvoice(BaseModel):
    model_config = ConfigDict(frozen=True)

    invoice_id: str
    status: str
    paid: bool
    amount_due: Decimal
    currency: str


class PaymentMethodSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    payment_method_id: str
    brand: str | None = None
    last4: str | None = None
    exp_month: int | None = None
    exp_year: int | None = None


class SetupIntent(BaseModel):
    model_config = ConfigDict(frozen=True)

    setup_intent_id: str
    client_secret: str


# ============================================================================
# Interface
# ============================================================================


class PaymentProvider(Protocol):
    """Narrow interface over the payment provider API."""

    async def create_customer(
        self, email: str, name: str = "", metadata: dict[str, str] | None = None
    ) -> ProviderCustomer: ...

    async def create_price(
        self,
        product_name: str,
        amount: Decimal,
        currency: str,
        period: BillingPeriod,
        interval: int,
        metadata: dict[str, str] | None = None,
    ) -> ProviderPrice: ...

    async def create_subscription(
        self,
        customer_id: str,
        price_id: str,
        quantity: int = 1,
        trial_days: int | None = None,
        metadata: dict[str, str] | None = None,
    ) -> ProviderSubscription: ...

    async def update_subscription(self, subscription_id: str, **params: Any) -> None: ...

    async def cancel_subscription(self, subscription_id: str) -> None: ...

    async def pause_subscription(self, subscription_id: str) -> None: ...

    async def resume_subscription(self, subscription_id: str) -> None: ...

    async def update_payment_method(self, subscription_id: str, payment_method_id: str) -> None: ...

    async def create_and_collect_invoice(
        self, customer_id: str, subscription_id: str
    ) -> ProviderInvoice: ...

    async def pay_latest_open_invoice(self, subscription_id: str) -> ProviderInvoice | None: ...

    async def list_payment_methods(self, customer_id: str) -> list[PaymentMethodSummary]: ...

    async def create_setup_intent(self, customer_id: str) -> SetupIntent: ...

    def verify_webhook(self, payload: bytes, header: str | None) -> None: ...


# ============================================================================
# Stripe
# ============================================================================


def _timestamp(value: Any) -> datetime | None:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value), tz=UTC)


class StripePaymentProvider:
    """Stripe implementation of ``PaymentProvider``.

    The Stripe SDK is synchronous; calls run in a worker thread so the event
    loop is never blocked.
    """

    def __init__(self, config: StripeConfig) -> None:
        self.config = config
        self._stripe: Any = None

    @staticmethod
    def _sdk() -> Any:
        import stripe

        return stripe

    @property
    def stripe(self) -> Any:
        if self._stripe is None:
            stripe = self._sdk()
            stripe.api_key = self.config.require_secret_key()
            self._stripe = stripe
        return self._stripe

    async def _call(self, operation: str, func: Callable[[], T]) -> T:
        stripe = self.stripe
        try:
            return await asyncio.to_thread(func)
        except stripe.StripeError as e:
            code = getattr(e, "code", None)
            message = getattr(e, "user_message", None) or str(e)
            logger.error(
                "stripe.call_failed",
                operation=operation,
                provider_code=code,
                provider_message=message,
            )
            raise ProviderError(
                f"Stripe {operation} failed: {message}",
                operation=operation,
                provider_code=code,
                provider_message=message,
            ) from e

    async def create_customer(
        self, email: str, name: str = "", metadata: dict[str, str] | None = None
    ) -> ProviderCustomer:
        customer = await self._call(
            "create_customer",
            lambda: self.stripe.Customer.create(email=email, name=name, metadata=metadata or {}),
        )
        return ProviderCustomer(customer_id=customer["id"], email=customer.get("email"))

    async def create_price(
        self,
        product_name: str,
        amount: Decimal,
        currency: str,
        period: BillingPeriod,
        interval: int,
        metadata: dict[str, str] | None = None,
    ) -> ProviderPrice:
        unit_amount = to_minor_units(amount, currency)
        price = await self._call(
            "create_price",
            lambda: self.stripe.Price.create(
                unit_amount=unit_amount,
                currency=currency.lower(),
                recurring={"interval": period.value, "interval_count": interval},
                product_data={"name": product_name, "metadata": metadata or {}},
            ),
        )
        return ProviderPrice(price_id=price["id"], unit_amount=unit_amount, currency=currency)

    async def create_subscription(
        self,
        customer_id: str,
        price_id: str,
        quantity: int = 1,
        trial_days: int | None = None,
        metadata: dict[str, str] | None = None,
    ) -> ProviderSubscription:
        params: dict[str, Any] = {
            "customer": customer_id,
            "items": [{"price": price_id, "quantity": quantity}],
            "metadata": metadata or {},
            "payment_behavior": "default_incomplete",
            "expand": ["latest_invoice.payment_intent"],
        }
        if trial_days:
            params["trial_period_days"] = trial_days

        subscription = await self._call(
            "create_subscription", lambda: self.stripe.Subscription.create(**params)
        )

        client_secret = None
        latest_invoice = subscription.get("latest_invoice")
        if isinstance(latest_invoice, dict):
            payment_intent = latest_invoice.get("payment_intent")
            if isinstance(payment_intent, dict):
                client_secret = payment_intent.get("client_secret")

        logger.info(
            "stripe.subscription_created",
            stripe_subscription_id=subscription["id"],
            customer_id=customer_id,
            status=subscription.get("status"),
        )
        return ProviderSubscription(
            subscription_id=subscription["id"],
            status=subscription.get("status", "incomplete"),
            customer_id=customer_id,
            current_period_end=_timestamp(subscription.get("current_period_end")),
            trial_end=_timestamp(subscription.get("trial_end")),
            client_secret=client_secret,
        )

    async def update_subscription(self, subscription_id: str, **params: Any) -> None:
        await self._call(
            "update_subscription", lambda: self.stripe.Subscription.modify(subscription_id, **params)
        )

    async def cancel_subscription(self, subscription_id: str) -> None:
        await self._call(
            "cancel_subscription", lambda: self.stripe.Subscription.cancel(subscription_id)
        )
        logger.info("stripe.subscription_cancelled", stripe_subscription_id=subscription_id)

    async def pause_subscription(self, subscription_id: str) -> None:
        await self._call(
            "pause_subscription",
            lambda: self.stripe.Subscription.modify(
                subscription_id, pause_collection={"behavior": "void"}
            ),
        )

    async def resume_subscription(self, subscription_id: str) -> None:
        # An empty string unsets pause_collection
        await self._call(
            "resume_subscription",
            lambda: self.stripe.Subscription.modify(subscription_id, pause_collection=""),
        )

    async def update_payment_method(self, subscription_id: str, payment_method_id: str) -> None:
        await self._call(
            "update_payment_method",
            lambda: self.stripe.Subscription.modify(
                subscription_id, default_payment_method=payment_method_id
            ),
        )

    def _invoice(self, invoice: Any) -> ProviderInvoice:
        currency = str(invoice.get("currency") or "usd").upper()
        status = invoice.get("status") or "open"
        return ProviderInvoice(
            invoice_id=invoice["id"],
            status=status,
            paid=bool(invoice.get("paid", status == "paid")),
            amount_due=from_minor_units(int(invoice.get("amount_due") or 0), currency),
            currency=currency,
        )

    async def create_and_collect_invoice(
        self, customer_id: str, subscription_id: str
    ) -> ProviderInvoice:
        invoice = await self._call(
            "create_invoice",
            lambda: self.stripe.Invoice.create(customer=customer_id, subscription=subscription_id),
        )
        paid = await self._call("pay_invoice", lambda: self.stripe.Invoice.pay(invoice["id"]))
        return self._invoice(paid)

    async def pay_latest_open_invoice(self, subscription_id: str) -> ProviderInvoice | None:
        invoices = await self._call(
            "list_invoices",
            lambda: self.stripe.Invoice.list(subscription=subscription_id, status="open", limit=1),
        )
        data = invoices.get("data") or []
        if not data:
            return None
        paid = await self._call("pay_invoice", lambda: self.stripe.Invoice.pay(data[0]["id"]))
        return self._invoice(paid)

    async def list_payment_methods(self, customer_id: str) -> list[PaymentMethodSummary]:
        methods = await self._call(
            "list_payment_methods",
            lambda: self.stripe.PaymentMethod.list(customer=customer_id, type="card"),
        )
        summaries = []
        for method in methods.get("data") or []:
            card = method.get("card") or {}
            summaries.append(
                PaymentMethodSummary(
                    payment_method_id=method["id"],
                    brand=card.get("brand"),
                    last4=card.get("last4"),
                    exp_month=card.get("exp_month"),
                    exp_year=card.get("exp_year"),
                )
            )
        return summaries

    async def create_setup_intent(self, customer_id: str) -> SetupIntent:
        intent = await self._call(
            "create_setup_intent",
            lambda: self.stripe.SetupIntent.create(
                customer=customer_id, payment_method_types=["card"], usage="off_session"
            ),
        )
        return SetupIntent(setup_intent_id=intent["id"], client_secret=intent["client_secret"])

    def verify_webhook(self, payload: bytes, header: str | None) -> None:
        """
        Check a delivery's ``Stripe-Signature`` header with the Stripe SDK.

        Only the webhook secret is needed, so this works without an API key.

        Raises:
            WebhookSignatureError: Missing secret or header, malformed header,
                no matching signature, or timestamp outside the tolerance
        """
        if not self.config.webhook_secret:
            raise WebhookSignatureError("Webhook secret is not configured")
        if not header:
            raise WebhookSignatureError("Missing Stripe-Signature header")
        try:
            body = payload.decode("utf-8")
        except UnicodeDecodeError:
            raise WebhookSignatureError("Webhook payload is not valid UTF-8")

        stripe = self._sdk()
        try:
            stripe.WebhookSignature.verify_header(
                body,
                header,
                self.config.webhook_secret,
                tolerance=self.config.webhook_tolerance_seconds,
            )
        except stripe.SignatureVerificationError as e:
            logger.warning("stripe.webhook_signature_invalid", reason=str(e))
            raise WebhookSignatureError(str(e)) from e
