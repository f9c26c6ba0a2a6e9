"""Create billing tables

Revision ID: 5c1e8b2f7a94
Revises:
Create Date: 2024-03-01 09:00:00.000000

"""

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision = "5c1e8b2f7a94"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "billing_subscriptions",
        sa.Column("subscription_id", sa.String(36), nullable=False),
        sa.Column("order_id", sa.String(64), nullable=False),
        sa.Column("customer_id", sa.String(64), nullable=False),
        sa.Column("product_id", sa.String(64), nullable=False),
        sa.Column("external_subscription_id", sa.String(255), nullable=True),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("billing_period", sa.String(10), nullable=False),
        sa.Column("billing_interval", sa.Integer(), nullable=False),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("next_payment_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_payment_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("end_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("trial_end_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("subscription_amount", sa.Numeric(18, 4), nullable=False),
        sa.Column("fee_amount", sa.Numeric(18, 4), nullable=False),
        sa.Column("total_amount", sa.Numeric(18, 4), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("payment_method_id", sa.String(255), nullable=True),
        sa.Column("delivery_address", sa.Text(), nullable=False),
        sa.Column("notes", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("modified_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint("subscription_id"),
        sa.UniqueConstraint("external_subscription_id"),
    )
    op.create_index(
        "ix_billing_subscriptions_order_id", "billing_subscriptions", ["order_id"]
    )
    op.create_index(
        "ix_billing_subscriptions_customer_id", "billing_subscriptions", ["customer_id"]
    )
    op.create_index("ix_billing_subscriptions_status", "billing_subscriptions", ["status"])
    op.create_index(
        "ix_billing_subscriptions_status_next_payment",
        "billing_subscriptions",
        ["status", "next_payment_date"],
    )

    op.create_table(
        "billing_subscription_meta",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("subscription_id", sa.String(36), nullable=False),
        sa.Column("meta_key", sa.String(255), nullable=False),
        sa.Column("meta_value", sa.Text(), nullable=False),
        sa.ForeignKeyConstraint(
            ["subscription_id"],
            ["billing_subscriptions.subscription_id"],
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "subscription_id", "meta_key", name="uq_billing_subscription_meta_key"
        ),
    )
    op.create_index(
        "ix_billing_subscription_meta_subscription_id",
        "billing_subscription_meta",
        ["subscription_id"],
    )

    op.create_table(
        "billing_subscription_history",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("subscription_id", sa.String(36), nullable=False),
        sa.Column("action", sa.String(50), nullable=False),
        sa.Column("status_from", sa.String(20), nullable=True),
        sa.Column("status_to", sa.String(20), nullable=True),
        sa.Column("note", sa.Text(), nullable=False),
        sa.Column("actor", sa.String(255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ["subscription_id"],
            ["billing_subscriptions.subscription_id"],
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_billing_subscription_history_sub_created",
        "billing_subscription_history",
        ["subscription_id", "created_at"],
    )

    op.create_table(
        "billing_processed_webhook_events",
        sa.Column("event_id", sa.String(255), nullable=False),
        sa.Column("event_type", sa.String(100), nullable=False),
        sa.Column("subscription_id", sa.String(36), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("event_id"),
    )
    op.create_index(
        "ix_billing_processed_webhook_events_processed_at",
        "billing_processed_webhook_events",
        ["processed_at"],
    )

    op.create_table(
        "billing_job_leases",
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("holder", sa.String(255), nullable=False),
        sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("name"),
    )


def downgrade() -> None:
    op.drop_table("billing_job_leases")
    op.drop_index(
        "ix_billing_processed_webhook_events_processed_at",
        table_name="billing_processed_webhook_events",
    )
    op.drop_table("billing_processed_webhook_events")
    op.drop_index(
        "ix_billing_subscription_history_sub_created", table_name="billing_subscription_history"
    )
    op.drop_table("billing_subscription_history")
    op.drop_index(
        "ix_billing_subscription_meta_subscription_id", table_name="billing_subscription_meta"
    )
    op.drop_table("billing_subscription_meta")
    op.drop_index(
        "ix_billing_subscriptions_status_next_payment", table_name="billing_subscriptions"
    )
    op.drop_index("ix_billing_subscriptions_status", table_name="billing_subscriptions")
    op.drop_index("ix_billing_subscriptions_customer_id", table_name="billing_subscriptions")
    op.drop_index("ix_billing_subscriptions_order_id", table_name="billing_subscriptions")
    op.drop_table("billing_subscriptions")
