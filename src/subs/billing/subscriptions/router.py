"""
Subscription router.

Administrative and customer self-service endpoints. Typed billing errors
propagate to ``BillingErrorMiddleware`` which renders them as JSON.
"""

from typing import Annotated, Any

import structlog
from fastapi import APIRouter, Depends, Query, Response, status

from subs.billing.dependencies import (
    get_actor_id,
    get_customer_id,
    get_payment_processor,
    get_subscription_service,
)
from subs.billing.payments.processor import ChargeResult, PaymentProcessor, RetryResult
from subs.billing.payments.providers import PaymentMethodSummary, SetupIntent
from subs.billing.subscriptions.schemas import (
    AddNoteRequest,
    BulkActionRequest,
    CreateFromOrderRequest,
    DeliveryAddressRequest,
    HistoryEntryResponse,
    NoteRequest,
    PaymentMethodRequest,
    SubscriptionResponse,
    TransitionResponse,
)
from subs.billing.subscriptions.service import (
    PriceQuote,
    RenewalEntry,
    SubscriptionService,
    SubscriptionStats,
)

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/subscriptions", tags=["Subscriptions"])

ServiceDep = Annotated[SubscriptionService, Depends(get_subscription_service)]
ActorDep = Annotated[str | None, Depends(get_actor_id)]
CustomerDep = Annotated[str, Depends(get_customer_id)]


# ==================== Creation and pricing ====================


@router.post("", response_model=list[SubscriptionResponse], status_code=status.HTTP_201_CREATED)
async def create_from_order(
    request: CreateFromOrderRequest, service: ServiceDep, actor: ActorDep
) -> list[SubscriptionResponse]:
    """Create subscriptions for a paid subscription order."""
    subscriptions = await service.create_from_order(request.order_id, actor=actor)
    return [SubscriptionResponse.from_domain(s) for s in subscriptions]


@router.get("/pricing/{product_id}", response_model=PriceQuote)
async def calculate_price(
    product_id: str,
    service: ServiceDep,
    quantity: int = Query(1, ge=1, description="Units per billing period"),
    currency: str | None = Query(None, description="Currency code"),
) -> PriceQuote:
    return await service.calculate_price(product_id, quantity, currency)


@router.post("/bulk")
async def bulk_action(
    request: BulkActionRequest, service: ServiceDep, actor: ActorDep
) -> dict[str, Any]:
    """
    Apply an action to many subscriptions.

    Each id is handled independently; failures are reported per id.
    """
    result = await service.bulk_action(request.action, request.subscription_ids, actor=actor)
    return result.to_dict()


# ==================== Customer views ====================


@router.get("/customers/{customer_id}", response_model=list[SubscriptionResponse])
async def list_customer_subscriptions(
    customer_id: str, service: ServiceDep
) -> list[SubscriptionResponse]:
    subscriptions = await service.list_for_customer(customer_id)
    return [SubscriptionResponse.from_domain(s) for s in subscriptions]


@router.get("/customers/{customer_id}/renewals", response_model=list[RenewalEntry])
async def get_upcoming_renewals(
    customer_id: str,
    service: ServiceDep,
    months: int = Query(3, ge=1, le=24, description="Months ahead to include"),
) -> list[RenewalEntry]:
    return await service.get_upcoming_renewals(customer_id, months=months)


@router.get("/customers/{customer_id}/stats", response_model=SubscriptionStats)
async def get_subscription_stats(customer_id: str, service: ServiceDep) -> SubscriptionStats:
    return await service.get_subscription_stats(customer_id)


@router.get("/customers/{customer_id}/payment-methods", response_model=list[PaymentMethodSummary])
async def list_payment_methods(customer_id: str, service: ServiceDep) -> list[PaymentMethodSummary]:
    return await service.list_payment_methods(customer_id)


@router.post("/customers/{customer_id}/setup-intent", response_model=SetupIntent)
async def create_setup_intent(customer_id: str, service: ServiceDep) -> SetupIntent:
    """Start collecting a new card for off-session charges."""
    return await service.create_setup_intent(customer_id)


# ==================== Single subscription ====================


@router.get("/{subscription_id}", response_model=SubscriptionResponse)
async def get_subscription(subscription_id: str, service: ServiceDep) -> SubscriptionResponse:
    return SubscriptionResponse.from_domain(await service.get(subscription_id))


@router.get("/{subscription_id}/history", response_model=list[HistoryEntryResponse])
async def get_history(
    subscription_id: str,
    service: ServiceDep,
    limit: int = Query(20, ge=1, le=500, description="Newest entries to return"),
) -> list[HistoryEntryResponse]:
    entries = await service.get_history(subscription_id, limit=limit)
    return [HistoryEntryResponse.from_domain(entry) for entry in entries]


@router.post("/{subscription_id}/notes", response_model=SubscriptionResponse)
async def add_note(
    subscription_id: str, request: AddNoteRequest, service: ServiceDep, actor: ActorDep
) -> SubscriptionResponse:
    return SubscriptionResponse.from_domain(
        await service.add_note(subscription_id, request.note, actor=actor)
    )


@router.post("/{subscription_id}/pause", response_model=TransitionResponse)
async def pause_subscription(
    subscription_id: str,
    service: ServiceDep,
    actor: ActorDep,
    request: NoteRequest | None = None,
) -> TransitionResponse:
    note = request.note if request else ""
    return TransitionResponse.from_result(await service.pause(subscription_id, note, actor))


@router.post("/{subscription_id}/resume", response_model=TransitionResponse)
async def resume_subscription(
    subscription_id: str,
    service: ServiceDep,
    actor: ActorDep,
    request: NoteRequest | None = None,
) -> TransitionResponse:
    note = request.note if request else ""
    return TransitionResponse.from_result(await service.resume(subscription_id, note, actor))


@router.post("/{subscription_id}/cancel", response_model=TransitionResponse)
async def cancel_subscription(
    subscription_id: str,
    service: ServiceDep,
    actor: ActorDep,
    request: NoteRequest | None = None,
) -> TransitionResponse:
    note = request.note if request else ""
    return TransitionResponse.from_result(await service.cancel(subscription_id, note, actor))


@router.delete("/{subscription_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_subscription(subscription_id: str, service: ServiceDep, actor: ActorDep) -> Response:
    await service.delete(subscription_id, actor=actor)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{subscription_id}/charge", response_model=ChargeResult)
async def charge_subscription(
    subscription_id: str,
    processor: Annotated[PaymentProcessor, Depends(get_payment_processor)],
    actor: ActorDep,
) -> ChargeResult:
    """Bill the subscription now and advance its next payment date."""
    return await processor.charge(subscription_id, actor=actor)


@router.post("/{subscription_id}/retry-payment", response_model=RetryResult)
async def retry_payment(
    subscription_id: str,
    processor: Annotated[PaymentProcessor, Depends(get_payment_processor)],
) -> RetryResult:
    return await processor.retry_failed_payment(subscription_id)


@router.post("/{subscription_id}/payment-method", response_model=SubscriptionResponse)
async def change_payment_method(
    subscription_id: str, request: PaymentMethodRequest, service: ServiceDep, actor: ActorDep
) -> SubscriptionResponse:
    subscription = await service.change_payment_method(
        subscription_id, request.payment_method_id, actor=actor
    )
    return SubscriptionResponse.from_domain(subscription)


@router.put("/{subscription_id}/delivery-address", response_model=SubscriptionResponse)
async def update_delivery_address(
    subscription_id: str, request: DeliveryAddressRequest, service: ServiceDep, actor: ActorDep
) -> SubscriptionResponse:
    subscription = await service.update_delivery_address(
        subscription_id, request.delivery_address, actor=actor
    )
    return SubscriptionResponse.from_domain(subscription)


# ==================== Customer self-service ====================
#
# The acting customer comes from the gateway's X-Customer-ID header.


@router.post("/{subscription_id}/customer/pause", response_model=TransitionResponse)
async def customer_pause(
    subscription_id: str, service: ServiceDep, customer_id: CustomerDep
) -> TransitionResponse:
    result = await service.customer_pause(subscription_id, customer_id)
    return TransitionResponse.from_result(result)


@router.post("/{subscription_id}/customer/cancel", response_model=TransitionResponse)
async def customer_cancel(
    subscription_id: str, service: ServiceDep, customer_id: CustomerDep
) -> TransitionResponse:
    result = await service.customer_cancel(subscription_id, customer_id)
    return TransitionResponse.from_result(result)


@router.post("/{subscription_id}/customer/payment-method", response_model=SubscriptionResponse)
async def customer_change_payment_method(
    subscription_id: str,
    request: PaymentMethodRequest,
    service: ServiceDep,
    customer_id: CustomerDep,
) -> SubscriptionResponse:
    subscription = await service.change_payment_method(
        subscription_id, request.payment_method_id, customer_id=customer_id
    )
    return SubscriptionResponse.from_domain(subscription)


@router.put("/{subscription_id}/customer/delivery-address", response_model=SubscriptionResponse)
async def customer_update_delivery_address(
    subscription_id: str,
    request: DeliveryAddressRequest,
    service: ServiceDep,
    customer_id: CustomerDep,
) -> SubscriptionResponse:
    subscription = await service.update_delivery_address(
        subscription_id, request.delivery_address, customer_id=customer_id
    )
    return SubscriptionResponse.from_domain(subscription)
