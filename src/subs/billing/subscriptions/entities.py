"""
Subscription database tables.

SQLAlchemy tables backing the subscription store: aggregates, extension
metadata rows, append-only history, the processed webhook event ledger and
sweep leases.
"""

from datetime import datetime
from decimal import Decimal

from sqlalchemy import ForeignKey, Index, Integer, Numeric, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from subs.db import Base, UTCDateTime, utcnow


class SubscriptionEntity(Base):
    """SQLAlchemy table for subscriptions."""

    __tablename__ = "billing_subscriptions"

    subscription_id: Mapped[str] = mapped_column(String(36), primary_key=True)

    # References to the shop
    order_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    customer_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    product_id: Mapped[str] = mapped_column(String(64), nullable=False)

    # Provider linkage
    external_subscription_id: Mapped[str | None] = mapped_column(
        String(255), nullable=True, unique=True
    )

    # State and cadence
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    billing_period: Mapped[str] = mapped_column(String(10), nullable=False)
    billing_interval: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    # Dates
    start_date: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    next_payment_date: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    last_payment_date: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    end_date: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    trial_end_date: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    # Amounts
    subscription_amount: Mapped[Decimal] = mapped_column(Numeric(18, 4), nullable=False)
    fee_amount: Mapped[Decimal] = mapped_column(Numeric(18, 4), nullable=False, default=0)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(18, 4), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")

    payment_method_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    delivery_address: Mapped[str] = mapped_column(Text, nullable=False, default="")
    notes: Mapped[str] = mapped_column(Text, nullable=False, default="")

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    modified_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __table_args__ = (
        Index("ix_billing_subscriptions_status_next_payment", "status", "next_payment_date"),
    )


class SubscriptionMetaEntity(Base):
    """SQLAlchemy table for subscription extension metadata."""

    __tablename__ = "billing_subscription_meta"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    subscription_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("billing_subscriptions.subscription_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    meta_key: Mapped[str] = mapped_column(String(255), nullable=False)
    meta_value: Mapped[str] = mapped_column(Text, nullable=False, default="")

    __table_args__ = (
        UniqueConstraint("subscription_id", "meta_key", name="uq_billing_subscription_meta_key"),
    )


class SubscriptionHistoryEntity(Base):
    """SQLAlchemy table for append-only subscription history."""

    __tablename__ = "billing_subscription_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    subscription_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("billing_subscriptions.subscription_id", ondelete="CASCADE"),
        nullable=False,
    )
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    status_from: Mapped[str | None] = mapped_column(String(20), nullable=True)
    status_to: Mapped[str | None] = mapped_column(String(20), nullable=True)
    note: Mapped[str] = mapped_column(Text, nullable=False, default="")
    actor: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_billing_subscription_history_sub_created", "subscription_id", "created_at"),
    )


class ProcessedWebhookEventEntity(Base):
    """SQLAlchemy table for the processed webhook event ledger."""

    __tablename__ = "billing_processed_webhook_events"

    event_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    subscription_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    processed_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=utcnow, index=True
    )


class JobLeaseEntity(Base):
    """SQLAlchemy table for sweep leases."""

    __tablename__ = "billing_job_leases"

    name: Mapped[str] = mapped_column(String(100), primary_key=True)
    holder: Mapped[str] = mapped_column(String(255), nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
