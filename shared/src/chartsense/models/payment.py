"""Payment ledger and refunds."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Text,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from chartsense.models.base import Base, JSONType, utcnow

PAYMENT_STATUSES = ("pending", "succeeded", "failed", "refunded", "partially_refunded")
PAYMENT_METHODS = ("stripe", "promo_code", "admin_override")


class Payment(Base):
    __tablename__ = "payments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    subscription_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("subscriptions.id", ondelete="SET NULL")
    )
    stripe_session_id: Mapped[str | None] = mapped_column(Text, unique=True)
    stripe_payment_intent_id: Mapped[str | None] = mapped_column(Text)
    stripe_invoice_id: Mapped[str | None] = mapped_column(Text)
    stripe_charge_id: Mapped[str | None] = mapped_column(Text, unique=True)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(Text, nullable=False, default="usd")
    status: Mapped[str] = mapped_column(Text, nullable=False, default="pending")
    payment_method: Mapped[str] = mapped_column(Text, nullable=False, default="stripe")
    plan: Mapped[str | None] = mapped_column(Text)
    promo_code_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("promo_codes.id", ondelete="SET NULL")
    )
    original_amount: Mapped[int | None] = mapped_column(Integer)
    discount_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    description: Mapped[str | None] = mapped_column(Text)
    failure_reason: Mapped[str | None] = mapped_column(Text)
    metadata_json: Mapped[dict] = mapped_column("metadata", JSONType, nullable=False, default=dict)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )

    refunds: Mapped[list[PaymentRefund]] = relationship(
        back_populates="payment", lazy="selectin", order_by="PaymentRefund.refunded_at"
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending','succeeded','failed','refunded','partially_refunded')",
            name="ck_payment_status",
        ),
        CheckConstraint(
            "payment_method IN ('stripe','promo_code','admin_override')",
            name="ck_payment_method",
        ),
        CheckConstraint("amount >= 0", name="ck_payment_amount"),
        Index("idx_payments_user_created", "user_id", "created_at"),
        Index("idx_payments_invoice_status", "stripe_invoice_id", "status"),
    )

    @property
    def refunded_amount(self) -> int:
        return sum(refund.amount for refund in self.refunds)

    @property
    def net_amount(self) -> int:
        return self.amount - self.refunded_amount


class PaymentRefund(Base):
    __tablename__ = "payment_refunds"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    payment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("payments.id", ondelete="CASCADE"), nullable=False
    )
    stripe_refund_id: Mapped[str | None] = mapped_column(Text, unique=True)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str | None] = mapped_column(Text)
    refunded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )

    payment: Mapped[Payment] = relationship(back_populates="refunds")

    __table_args__ = (CheckConstraint("amount > 0", name="ck_payment_refund_amount"),)
