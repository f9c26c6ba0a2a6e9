"""
Pydantic schemas for the subscription endpoints.
"""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from subs.billing.subscriptions.models import (
    BillingPeriod,
    HistoryEntry,
    Subscription,
    SubscriptionStatus,
    TransitionResult,
)


class NoteRequest(BaseModel):
    """Schema for an optional note on a lifecycle action."""

    model_config = ConfigDict(str_strip_whitespace=True)

    note: str = Field("", max_length=2000, description="Reason recorded in history")


class AddNoteRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    note: str = Field(min_length=1, max_length=2000, description="Note text")


class BulkActionRequest(BaseModel):
    """Schema for a bulk lifecycle action."""

    action: str = Field(description="pause, resume, cancel or delete")
    subscription_ids: list[str] = Field(min_length=1, description="Subscriptions to act on")


class CreateFromOrderRequest(BaseModel):
    order_id: str = Field(description="Order to turn into subscriptions")


class PaymentMethodRequest(BaseModel):
    """Schema for changing the default payment method."""

    model_config = ConfigDict(str_strip_whitespace=True)

    payment_method_id: str = Field(min_length=1, description="Provider payment method id")


class DeliveryAddressRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    delivery_address: str = Field(min_length=1, description="New delivery address")


class SubscriptionResponse(BaseModel):
    """Schema for a subscription."""

    subscription_id: str
    order_id: str
    customer_id: str
    product_id: str
    external_subscription_id: str | None
    status: SubscriptionStatus
    billing_period: BillingPeriod
    billing_interval: int
    start_date: datetime
    next_payment_date: datetime | None
    last_payment_date: datetime | None
    end_date: datetime | None
    trial_end_date: datetime | None
    subscription_amount: Decimal
    fee_amount: Decimal
    total_amount: Decimal
    currency: str
    payment_method_id: str | None
    delivery_address: str
    notes: str
    created_at: datetime
    modified_at: datetime
    version: int
    metadata: dict[str, str]

    @classmethod
    def from_domain(cls, subscription: Subscription) -> "SubscriptionResponse":
        data = subscription.model_dump(exclude={"metadata"})
        return cls(**data, metadata=subscription.metadata.to_dict())


class TransitionResponse(BaseModel):
    """Schema for the outcome of a lifecycle action."""

    subscription: SubscriptionResponse
    previous_status: SubscriptionStatus
    new_status: SubscriptionStatus
    changed: bool

    @classmethod
    def from_result(cls, result: TransitionResult) -> "TransitionResponse":
        return cls(
            subscription=SubscriptionResponse.from_domain(result.subscription),
            previous_status=result.previous_status,
            new_status=result.new_status,
            changed=result.changed,
        )


class HistoryEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int | None
    subscription_id: str
    action: str
    status_from: SubscriptionStatus | None
    status_to: SubscriptionStatus | None
    note: str
    actor: str | None
    created_at: datetime

    @classmethod
    def from_domain(cls, entry: HistoryEntry) -> "HistoryEntryResponse":
        return cls.model_validate(entry.model_dump(mode="python") | {"action": entry.action.value})
