"""Create promo codes, subscriptions, payments and refunds.

Revision ID: 002_billing
Revises: 001_users
Create Date: 2026-10-01
"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID

from alembic import op

revision: str = "002_billing"
down_revision: str | None = "001_users"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
    ]


def upgrade() -> None:
    op.create_table(
        "promo_codes",
        sa.Column(
            "id", UUID(as_uuid=True), server_default=sa.text("gen_random_uuid()"), primary_key=True
        ),
        sa.Column("code", sa.Text(), nullable=False, unique=True),
        sa.Column("type", sa.Text(), nullable=False, server_default=sa.text("'custom'")),
        sa.Column("discount_type", sa.Text(), nullable=False),
        sa.Column("discount_value", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("final_price", sa.Integer(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("TRUE")),
        sa.Column("max_uses", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("current_uses", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column(
            "valid_from", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.Column("valid_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "applicable_plans", JSONB(), nullable=False, server_default=sa.text("'[\"both\"]'")
        ),
        sa.Column(
            "base_template_id",
            UUID(as_uuid=True),
            sa.ForeignKey("promo_codes.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "created_by_id",
            UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="SET NULL"),
            nullable=True,
        ),
        *_timestamps(),
        sa.CheckConstraint(
            "type IN ('preset','custom','generated','full_access')", name="ck_promo_code_type"
        ),
        sa.CheckConstraint(
            "discount_type IN ('fixed_amount','percentage','free_access')",
            name="ck_promo_code_discount_type",
        ),
        sa.CheckConstraint("discount_value >= 0", name="ck_promo_code_discount_value"),
        sa.CheckConstraint(
            "discount_type <> 'percentage' OR discount_value <= 100",
            name="ck_promo_code_percentage_range",
        ),
        sa.CheckConstraint(
            "final_price IS NULL OR final_price >= 0", name="ck_promo_code_final_price"
        ),
        sa.CheckConstraint("max_uses >= 1", name="ck_promo_code_max_uses"),
        sa.CheckConstraint(
            "current_uses >= 0 AND current_uses <= max_uses", name="ck_promo_code_current_uses"
        ),
    )
    op.create_index(
        "idx_promo_codes_active_window",
        "promo_codes",
        ["is_active", "valid_from", "valid_until"],
    )

    op.create_table(
        "promo_code_redemptions",
        sa.Column(
            "id", UUID(as_uuid=True), server_default=sa.text("gen_random_uuid()"), primary_key=True
        ),
        sa.Column(
            "promo_code_id",
            UUID(as_uuid=True),
            sa.ForeignKey("promo_codes.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "user_id",
            UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "used_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.Column("original_amount", sa.Integer(), nullable=False),
        sa.Column("discount_amount", sa.Integer(), nullable=False),
        sa.Column("final_amount", sa.Integer(), nullable=False),
        sa.UniqueConstraint("promo_code_id", "user_id", name="uq_promo_code_redemption_user"),
        sa.CheckConstraint(
            "final_amount = original_amount - discount_amount",
            name="ck_promo_code_redemption_amounts",
        ),
    )

    op.create_table(
        "subscriptions",
        sa.Column(
            "id", UUID(as_uuid=True), server_default=sa.text("gen_random_uuid()"), primary_key=True
        ),
        sa.Column(
            "user_id",
            UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column("stripe_customer_id", sa.Text(), nullable=True),
        sa.Column("stripe_subscription_id", sa.Text(), nullable=True, unique=True),
        sa.Column("status", sa.Text(), nullable=False, server_default=sa.text("'inactive'")),
        sa.Column("plan", sa.Text(), nullable=False, server_default=sa.text("'monthly'")),
        sa.Column("amount", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("original_amount", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("discount_amount", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("currency", sa.Text(), nullable=False, server_default=sa.text("'usd'")),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "cancel_at_period_end", sa.Boolean(), nullable=False, server_default=sa.text("FALSE")
        ),
        sa.Column("canceled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "promo_code_id",
            UUID(as_uuid=True),
            sa.ForeignKey("promo_codes.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("last_event_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "status IN ('inactive','active','cancelled','past_due','trialing','admin_access')",
            name="ck_subscription_status",
        ),
        sa.CheckConstraint("plan IN ('monthly','annual','admin')", name="ck_subscription_plan"),
        sa.CheckConstraint(
            "amount >= 0 AND original_amount >= 0 AND discount_amount >= 0",
            name="ck_subscription_amounts",
        ),
    )
    op.create_index(
        "idx_subscriptions_stripe_customer_id", "subscriptions", ["stripe_customer_id"]
    )
    op.create_index(
        "idx_subscriptions_status_period_end",
        "subscriptions",
        ["status", "current_period_end"],
    )

    op.create_table(
        "payments",
        sa.Column(
            "id", UUID(as_uuid=True), server_default=sa.text("gen_random_uuid()"), primary_key=True
        ),
        sa.Column(
            "user_id",
            UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "subscription_id",
            UUID(as_uuid=True),
            sa.ForeignKey("subscriptions.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("stripe_session_id", sa.Text(), nullable=True, unique=True),
        sa.Column("stripe_payment_intent_id", sa.Text(), nullable=True),
        sa.Column("stripe_invoice_id", sa.Text(), nullable=True),
        sa.Column("stripe_charge_id", sa.Text(), nullable=True, unique=True),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("currency", sa.Text(), nullable=False, server_default=sa.text("'usd'")),
        sa.Column("status", sa.Text(), nullable=False, server_default=sa.text("'pending'")),
        sa.Column(
            "payment_method", sa.Text(), nullable=False, server_default=sa.text("'stripe'")
        ),
        sa.Column("plan", sa.Text(), nullable=True),
        sa.Column(
            "promo_code_id",
            UUID(as_uuid=True),
            sa.ForeignKey("promo_codes.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("original_amount", sa.Integer(), nullable=True),
        sa.Column("discount_amount", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("metadata", JSONB(), nullable=False, server_default=sa.text("'{}'")),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.CheckConstraint(
            "status IN ('pending','succeeded','failed','refunded','partially_refunded')",
            name="ck_payment_status",
        ),
        sa.CheckConstraint(
            "payment_method IN ('stripe','promo_code','admin_override')",
            name="ck_payment_method",
        ),
        sa.CheckConstraint("amount >= 0", name="ck_payment_amount"),
    )
    op.create_index("idx_payments_user_created", "payments", ["user_id", "created_at"])
    op.create_index("idx_payments_invoice_status", "payments", ["stripe_invoice_id", "status"])

    op.create_table(
        "payment_refunds",
        sa.Column(
            "id", UUID(as_uuid=True), server_default=sa.text("gen_random_uuid()"), primary_key=True
        ),
        sa.Column(
            "payment_id",
            UUID(as_uuid=True),
            sa.ForeignKey("payments.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("stripe_refund_id", sa.Text(), nullable=True, unique=True),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column(
            "refunded_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.CheckConstraint("amount > 0", name="ck_payment_refund_amount"),
    )


def downgrade() -> None:
    op.drop_table("payment_refunds")
    op.drop_index("idx_payments_invoice_status", table_name="payments")
    op.drop_index("idx_payments_user_created", table_name="payments")
    op.drop_table("payments")
    op.drop_index("idx_subscriptions_status_period_end", table_name="subscriptions")
    op.drop_index("idx_subscriptions_stripe_customer_id", table_name="subscriptions")
    op.drop_table("subscriptions")
    op.drop_table("promo_code_redemptions")
    op.drop_index("idx_promo_codes_active_window", table_name="promo_codes")
    op.drop_table("promo_codes")
