"""Per-user subscription record, reconciled against Stripe."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Text,
    Uuid,
    false,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from chartsense.models.base import Base, utcnow

SUBSCRIPTION_STATUSES = (
    "inactive",
    "active",
    "cancelled",
    "past_due",
    "trialing",
    "admin_access",
)
SUBSCRIPTION_PLANS = ("monthly", "annual", "admin")


class Subscription(Base):
    __tablename__ = "subscriptions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    stripe_customer_id: Mapped[str | None] = mapped_column(Text)
    stripe_subscription_id: Mapped[str | None] = mapped_column(Text, unique=True)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="inactive")
    plan: Mapped[str] = mapped_column(Text, nullable=False, default="monthly")
    amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    original_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    discount_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(Text, nullable=False, default="usd")
    current_period_start: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    current_period_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancel_at_period_end: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=false()
    )
    canceled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    promo_code_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("promo_codes.id", ondelete="SET NULL")
    )
    last_event_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
        server_default=func.now(),
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('inactive','active','cancelled','past_due','trialing','admin_access')",
            name="ck_subscription_status",
        ),
        CheckConstraint("plan IN ('monthly','annual','admin')", name="ck_subscription_plan"),
        CheckConstraint(
            "amount >= 0 AND original_amount >= 0 AND discount_amount >= 0",
            name="ck_subscription_amounts",
        ),
        Index("idx_subscriptions_stripe_customer_id", "stripe_customer_id"),
        Index("idx_subscriptions_status_period_end", "status", "current_period_end"),
    )
