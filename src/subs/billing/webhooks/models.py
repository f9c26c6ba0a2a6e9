"""
Webhook event models.

Parses raw Stripe webhook payloads into internal DTOs so the synchronizer
never depends on SDK types. Both the legacy and the current Stripe payload
shapes are accepted.
"""

import json
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict

from subs.billing.exceptions import UnknownProviderStatusError, WebhookPayloadError
from subs.billing.money_utils import from_minor_units
from subs.billing.subscriptions.models import SubscriptionStatus


class WebhookEventType(str, Enum):
    """Provider event types the synchronizer acts on."""

    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"


SUBSCRIPTION_EVENT_TYPES = frozenset(
    {
        WebhookEventType.SUBSCRIPTION_CREATED,
        WebhookEventType.SUBSCRIPTION_UPDATED,
        WebhookEventType.SUBSCRIPTION_DELETED,
    }
)

INVOICE_EVENT_TYPES = frozenset(
    {
        WebhookEventType.INVOICE_PAYMENT_SUCCEEDED,
        WebhookEventType.INVOICE_PAYMENT_FAILED,
    }
)

# Stripe subscription status -> local status
PROVIDER_STATUS_MAP: dict[str, SubscriptionStatus] = {
    "active": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.UNPAID,
    "canceled": SubscriptionStatus.CANCELLED,
    "incomplete": SubscriptionStatus.PENDING,
    "incomplete_expired": SubscriptionStatus.CANCELLED,
    "trialing": SubscriptionStatus.TRIALING,
    "paused": SubscriptionStatus.PAUSED,
}


def map_provider_status(provider_status: str) -> SubscriptionStatus:
    """Translate a Stripe status; unmapped values raise instead of being coerced."""
    try:
        return PROVIDER_STATUS_MAP[provider_status]
    except KeyError:
        raise UnknownProviderStatusError(provider_status)


class SubscriptionEventData(BaseModel):
    """Subscription fields carried by customer.subscription.* events."""

    model_config = ConfigDict(frozen=True)

    subscription_id: str
    status: str
    customer_id: str | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    trial_end: datetime | None = None
    pause_collection: str | None = None

    @property
    def effective_status(self) -> str:
        """
        Status to map locally.

        Stripe keeps a subscription with paused collection ``active``; the
        pause is only visible through ``pause_collection``.
        """
        if self.status == "active" and self.pause_collection:
            return "paused"
        return self.status


class InvoiceEventData(BaseModel):
    """Invoice fields carried by invoice.payment_* events."""

    model_config = ConfigDict(frozen=True)

    invoice_id: str
    subscription_id: str | None = None
    customer_id: str | None = None
    currency: str = "USD"
    amount_paid: Decimal = Decimal("0")
    amount_due: Decimal = Decimal("0")
    period_end: datetime | None = None
    paid_at: datetime | None = None
    attempt_count: int = 0
    failure_message: str | None = None


class WebhookEvent(BaseModel):
    """A parsed provider webhook event."""

    model_config = ConfigDict(frozen=True)

    event_id: str
    event_type: str
    created: datetime | None = None
    subscription: SubscriptionEventData | None = None
    invoice: InvoiceEventData | None = None

    @property
    def handled_type(self) -> WebhookEventType | None:
        try:
            return WebhookEventType(self.event_type)
        except ValueError:
            return None

    @property
    def external_subscription_id(self) -> str | None:
        if self.subscription is not None:
            return self.subscription.subscription_id
        if self.invoice is not None:
            return self.invoice.subscription_id
        return None


def _timestamp(value: Any) -> datetime | None:
    if value in (None, ""):
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=UTC)
    except (TypeError, ValueError, OverflowError):
        raise WebhookPayloadError(f"Invalid timestamp in webhook payload: {value!r}")


def _id(value: Any) -> str | None:
    """Stripe references are either an id string or an expanded object."""
    if isinstance(value, dict):
        value = value.get("id")
    return value or None


def _first(container: Any) -> dict[str, Any]:
    if isinstance(container, dict):
        data = container.get("data") or []
        if data and isinstance(data[0], dict):
            return data[0]
    return {}


def _parse_subscription(obj: dict[str, Any]) -> SubscriptionEventData:
    subscription_id = obj.get("id")
    status = obj.get("status")
    if not subscription_id or not status:
        raise WebhookPayloadError("Subscription object is missing id or status")

    # Newer API versions moved the period onto subscription items
    item = _first(obj.get("items"))
    period_start = obj.get("current_period_start") or item.get("current_period_start")
    period_end = obj.get("current_period_end") or item.get("current_period_end")

    # Resuming sends an empty string rather than null
    pause = obj.get("pause_collection")
    pause_behavior = pause.get("behavior") if isinstance(pause, dict) else None

    return SubscriptionEventData(
        subscription_id=subscription_id,
        status=status,
        customer_id=_id(obj.get("customer")),
        current_period_start=_timestamp(period_start),
        current_period_end=_timestamp(period_end),
        trial_end=_timestamp(obj.get("trial_end")),
        pause_collection=pause_behavior or None,
    )


def _parse_invoice(obj: dict[str, Any]) -> InvoiceEventData:
    invoice_id = obj.get("id")
    if not invoice_id:
        raise WebhookPayloadError("Invoice object is missing id")

    subscription_id = _id(obj.get("subscription"))
    if subscription_id is None:
        parent = obj.get("parent") or {}
        details = parent.get("subscription_details") or {}
        subscription_id = _id(details.get("subscription"))

    line_period = _first(obj.get("lines")).get("period") or {}
    period_end = line_period.get("end") or obj.get("period_end")

    transitions = obj.get("status_transitions") or {}

    failure_message = None
    payment_intent = obj.get("payment_intent")
    if isinstance(payment_intent, dict):
        failure_message = (payment_intent.get("last_payment_error") or {}).get("message")
    if failure_message is None:
        failure_message = (obj.get("last_finalization_error") or {}).get("message")

    currency = str(obj.get("currency") or "usd").upper()
    try:
        amount_paid = from_minor_units(int(obj.get("amount_paid") or 0), currency)
        amount_due = from_minor_units(int(obj.get("amount_due") or 0), currency)
    except (TypeError, ValueError):
        raise WebhookPayloadError("Invoice amounts must be integers in minor units")

    return InvoiceEventData(
        invoice_id=invoice_id,
        subscription_id=subscription_id,
        customer_id=_id(obj.get("customer")),
        currency=currency,
        amount_paid=amount_paid,
        amount_due=amount_due,
        period_end=_timestamp(period_end),
        paid_at=_timestamp(transitions.get("paid_at")),
        attempt_count=int(obj.get("attempt_count") or 0),
        failure_message=failure_message,
    )


def parse_webhook_event(raw_payload: bytes | str) -> WebhookEvent:
    """
    Parse a raw webhook body.

    Unhandled event types parse successfully with no object attached.

    Raises:
        WebhookPayloadError: Body is not JSON or lacks required fields
    """
    try:
        payload = json.loads(raw_payload)
    except (TypeError, ValueError, UnicodeDecodeError):
        raise WebhookPayloadError("Webhook payload is not valid JSON")

    if not isinstance(payload, dict):
        raise WebhookPayloadError("Webhook payload must be a JSON object")

    event_id = payload.get("id")
    event_type = payload.get("type")
    if not event_id or not event_type:
        raise WebhookPayloadError("Webhook payload is missing id or type")

    event = WebhookEvent(
        event_id=event_id,
        event_type=event_type,
        created=_timestamp(payload.get("created")),
    )
    handled_type = event.handled_type
    if handled_type is None:
        return event

    data = payload.get("data")
    obj = data.get("object") if isinstance(data, dict) else None
    if not isinstance(obj, dict):
        raise WebhookPayloadError("Webhook payload is missing data.object")

    if handled_type in SUBSCRIPTION_EVENT_TYPES:
        return event.model_copy(update={"subscription": _parse_subscription(obj)})
    return event.model_copy(update={"invoice": _parse_invoice(obj)})
