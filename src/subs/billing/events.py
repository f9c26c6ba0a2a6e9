"""
Domain events published by the subscription billing core.

Subscribers (notifications, analytics, order fulfilment) listen on the
process event bus. Amounts travel as decimal strings so payloads stay
JSON-safe.
"""

from typing import Any

import structlog

from subs.events import EventPriority, EventPublisher, get_event_bus

logger = structlog.get_logger(__name__)


class BillingEvents:
    """Event type names on the bus."""

    SUBSCRIPTION_CREATED = "subscription.created"
    SUBSCRIPTION_STATUS_CHANGED = "subscription.status_changed"

    PAYMENT_SUCCEEDED = "payment.succeeded"
    PAYMENT_FAILED = "payment.failed"


async def _publish(
    event_type: str,
    payload: dict[str, Any],
    *,
    bus: EventPublisher | None,
    priority: EventPriority,
    actor: str | None = None,
) -> None:
    metadata: dict[str, Any] = {"source": "billing"}
    if actor is not None:
        metadata["user_id"] = actor
    await (bus or get_event_bus()).publish(
        event_type=event_type,
        payload=payload,
        metadata=metadata,
        priority=priority,
    )


async def emit_subscription_created(
    subscription_id: str,
    customer_id: str,
    order_id: str,
    product_id: str,
    total_amount: str,
    currency: str,
    event_bus: EventPublisher | None = None,
    **extra_data: Any,
) -> None:
    """
    Announce a subscription created from an order line.

    ``total_amount`` is the recurring charge including any passed-on fee.
    Falls back to the process bus when ``event_bus`` is not given.
    """
    await _publish(
        BillingEvents.SUBSCRIPTION_CREATED,
        {
            "subscription_id": subscription_id,
            "customer_id": customer_id,
            "order_id": order_id,
            "product_id": product_id,
            "total_amount": total_amount,
            "currency": currency,
            **extra_data,
        },
        bus=event_bus,
        priority=EventPriority.HIGH,
    )
    logger.info(
        "billing.event.subscription_created",
        subscription_id=subscription_id,
        order_id=order_id,
    )


async def emit_subscription_status_changed(
    subscription_id: str,
    customer_id: str,
    old_status: str,
    new_status: str,
    actor: str | None = None,
    event_bus: EventPublisher | None = None,
    **extra_data: Any,
) -> None:
    """
    Announce a committed status transition.

    The acting user travels in the event metadata as ``user_id``; it is
    absent for provider-driven and scheduled changes.
    """
    await _publish(
        BillingEvents.SUBSCRIPTION_STATUS_CHANGED,
        {
            "subscription_id": subscription_id,
            "customer_id": customer_id,
            "old_status": old_status,
            "new_status": new_status,
            **extra_data,
        },
        bus=event_bus,
        priority=EventPriority.HIGH,
        actor=actor,
    )
    logger.info(
        "billing.event.status_changed",
        subscription_id=subscription_id,
        transition=f"{old_status}->{new_status}",
    )


async def emit_payment_succeeded(
    subscription_id: str,
    customer_id: str,
    invoice_id: str | None,
    amount: str | None,
    currency: str | None,
    event_bus: EventPublisher | None = None,
    **extra_data: Any,
) -> None:
    await _publish(
        BillingEvents.PAYMENT_SUCCEEDED,
        {
            "subscription_id": subscription_id,
            "customer_id": customer_id,
            "invoice_id": invoice_id,
            "amount": amount,
            "currency": currency,
            **extra_data,
        },
        bus=event_bus,
        priority=EventPriority.NORMAL,
    )
    logger.info("billing.event.payment_succeeded", subscription_id=subscription_id, invoice=invoice_id)


async def emit_payment_failed(
    subscription_id: str,
    customer_id: str,
    invoice_id: str | None,
    amount: str | None,
    currency: str | None,
    error_message: str | None,
    event_bus: EventPublisher | None = None,
    **extra_data: Any,
) -> None:
    """Announce a failed invoice payment. Dunning notifications hang off this."""
    await _publish(
        BillingEvents.PAYMENT_FAILED,
        {
            "subscription_id": subscription_id,
            "customer_id": customer_id,
            "invoice_id": invoice_id,
            "amount": amount,
            "currency": currency,
            "error_message": error_message,
            **extra_data,
        },
        bus=event_bus,
        priority=EventPriority.HIGH,
    )
    logger.warning(
        "billing.event.payment_failed",
        subscription_id=subscription_id,
        invoice=invoice_id,
        reason=error_message,
    )
