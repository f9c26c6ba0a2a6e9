"""
Subscription domain models.

Pydantic models for the subscription aggregate, its extension metadata and
history, plus the typed result objects returned by billing operations.
"""

from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, model_validator

from subs.billing.exceptions import BillingValidationError


class SubscriptionStatus(str, Enum):
    """Subscription status."""

    PENDING = "pending"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    UNPAID = "unpaid"
    PAUSED = "paused"
    CANCELLED = "cancelled"


# Statuses that are billed by the due-payment sweep
ACTIVE_STATUSES: frozenset[SubscriptionStatus] = frozenset(
    {SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING}
)

TERMINAL_STATUSES: frozenset[SubscriptionStatus] = frozenset({SubscriptionStatus.CANCELLED})

# Any non-terminal status may move to any other status; cancelled is final.
VALID_STATUS_TRANSITIONS: dict[SubscriptionStatus, frozenset[SubscriptionStatus]] = {
    status: (
        frozenset()
        if status in TERMINAL_STATUSES
        else frozenset(s for s in SubscriptionStatus if s != status)
    )
    for status in SubscriptionStatus
}


class BillingPeriod(str, Enum):
    """Billing cadence unit."""

    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"


class HistoryAction(str, Enum):
    """Kinds of subscription history rows."""

    CREATED = "created"
    STATUS_CHANGED = "status_changed"
    STATUS_UPDATED = "status_updated"
    STATUS_UNRECOGNIZED = "status_unrecognized"
    PAYMENT_PROCESSED = "payment_processed"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_RECEIVED = "payment_received"
    PAYMENT_RETRY_SUCCEEDED = "payment_retry_succeeded"
    PAYMENT_RETRY_FAILED = "payment_retry_failed"
    PAYMENT_RETRIES_EXHAUSTED = "payment_retries_exhausted"
    PAYMENT_METHOD_CHANGED = "payment_method_changed"
    DELIVERY_ADDRESS_UPDATED = "delivery_address_updated"
    NOTE_ADDED = "note_added"


def parse_status(value: "str | SubscriptionStatus") -> SubscriptionStatus:
    """Coerce a status value, rejecting anything outside the enum."""
    try:
        return SubscriptionStatus(value)
    except ValueError:
        raise BillingValidationError(
            f"Invalid subscription status: {value}", field="status", value=value
        )


def parse_period(value: "str | BillingPeriod") -> BillingPeriod:
    """Coerce a billing period value, rejecting unknown units."""
    try:
        return BillingPeriod(value)
    except ValueError:
        raise BillingValidationError(
            f"Invalid billing period: {value}", field="billing_period", value=value
        )


# ============================================================================
# Extension metadata
# ============================================================================


class MetaKeys:
    """Well-known extension metadata keys."""

    PROVIDER_CUSTOMER_ID = "_stripe_customer_id"
    PROVIDER_PRICE_ID = "_stripe_price_id"
    LATEST_INVOICE_ID = "_latest_invoice_id"
    PAYMENT_RETRY_COUNT = "_payment_retry_count"
    LAST_PAYMENT_FAILURE_AT = "_last_payment_failure"
    LAST_PAYMENT_FAILURE_REASON = "_last_payment_failure_reason"
    RETRIES_EXHAUSTED = "_payment_retries_exhausted"

    RETRY_KEYS = (
        PAYMENT_RETRY_COUNT,
        LAST_PAYMENT_FAILURE_AT,
        LAST_PAYMENT_FAILURE_REASON,
        RETRIES_EXHAUSTED,
    )


class ExtensionMetadata(BaseModel):
    """String key/value extension data owned by a subscription.

    Each entry is persisted as one row; ``to_dict``/``from_dict`` are the
    serialization contract.
    """

    entries: dict[str, str] = Field(default_factory=dict)

    @staticmethod
    def _check_key(key: str) -> str:
        if not isinstance(key, str) or not 1 <= len(key) <= 255:
            raise BillingValidationError(
                "Metadata keys must be 1-255 characters", field="metadata", value=key
            )
        return key

    @model_validator(mode="after")
    def _validate_keys(self) -> "ExtensionMetadata":
        for key in self.entries:
            self._check_key(key)
        return self

    def get(self, key: str, default: str | None = None) -> str | None:
        return self.entries.get(key, default)

    def get_int(self, key: str, default: int = 0) -> int:
        value = self.entries.get(key)
        if value is None or value == "":
            return default
        try:
            return int(value)
        except ValueError:
            return default

    def get_datetime(self, key: str) -> datetime | None:
        value = self.entries.get(key)
        if not value:
            return None
        parsed = datetime.fromisoformat(value)
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)

    def set(self, key: str, value: Any) -> None:
        if isinstance(value, datetime):
            value = value.isoformat()
        self.entries[self._check_key(key)] = str(value)

    def delete(self, *keys: str) -> None:
        for key in keys:
            self.entries.pop(key, None)

    def __contains__(self, key: object) -> bool:
        return key in self.entries

    def __len__(self) -> int:
        return len(self.entries)

    def to_dict(self) -> dict[str, str]:
        return dict(self.entries)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ExtensionMetadata":
        return cls(entries={str(k): str(v) for k, v in (data or {}).items()})


# ============================================================================
# Aggregate
# ============================================================================


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Subscription(BaseModel):
    """Subscription aggregate root."""

    model_config = ConfigDict(validate_assignment=True)

    subscription_id: str = Field(default_factory=lambda: str(uuid4()))
    order_id: str
    customer_id: str
    product_id: str
    external_subscription_id: str | None = None

    status: SubscriptionStatus = SubscriptionStatus.PENDING
    billing_period: BillingPeriod = BillingPeriod.MONTH
    billing_interval: int = Field(1, ge=1)

    start_date: datetime = Field(default_factory=_utcnow)
    next_payment_date: datetime | None = None
    last_payment_date: datetime | None = None
    end_date: datetime | None = None
    trial_end_date: datetime | None = None

    subscription_amount: Decimal = Field(ge=0)
    fee_amount: Decimal = Field(Decimal("0"), ge=0)
    total_amount: Decimal = Field(ge=0)
    currency: str = "USD"

    payment_method_id: str | None = None
    delivery_address: str = ""
    notes: str = ""

    created_at: datetime = Field(default_factory=_utcnow)
    modified_at: datetime = Field(default_factory=_utcnow)
    version: int = Field(0, ge=0, description="Optimistic concurrency counter (0 = unsaved)")

    metadata: ExtensionMetadata = Field(default_factory=ExtensionMetadata)

    @model_validator(mode="after")
    def _total_matches_components(self) -> "Subscription":
        if self.total_amount != self.subscription_amount + self.fee_amount:
            raise ValueError("total_amount must equal subscription_amount + fee_amount")
        return self

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def is_cancelled(self) -> bool:
        return self.status == SubscriptionStatus.CANCELLED

    @property
    def is_paused(self) -> bool:
        return self.status == SubscriptionStatus.PAUSED

    @property
    def has_trial(self) -> bool:
        return self.trial_end_date is not None


class HistoryEntry(BaseModel):
    """Immutable subscription history row."""

    model_config = ConfigDict(frozen=True)

    subscription_id: str
    action: HistoryAction
    status_from: SubscriptionStatus | None = None
    status_to: SubscriptionStatus | None = None
    note: str = ""
    actor: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    id: int | None = None


class ProcessedEvent(BaseModel):
    """Ledger record of a handled provider webhook event."""

    model_config = ConfigDict(frozen=True)

    event_id: str
    event_type: str
    subscription_id: str | None = None
    processed_at: datetime = Field(default_factory=_utcnow)


# ============================================================================
# Results
# ============================================================================


class TransitionResult(BaseModel):
    """Outcome of a lifecycle transition."""

    subscription: Subscription
    previous_status: SubscriptionStatus
    new_status: SubscriptionStatus
    changed: bool
    history_entry: HistoryEntry | None = None
    actor: str | None = None


class BatchItemError(BaseModel):
    """Failure for a single id within a bulk operation."""

    subscription_id: str
    error_code: str
    message: str


class BatchResult(BaseModel):
    """Outcome of a bulk operation or sweep."""

    processed: int = 0
    errors: list[BatchItemError] = Field(default_factory=list)

    def add_error(self, subscription_id: str, error_code: str, message: str) -> None:
        self.errors.append(
            BatchItemError(subscription_id=subscription_id, error_code=error_code, message=message)
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "errors": [error.model_dump() for error in self.errors],
        }
