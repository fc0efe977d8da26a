"""Promo codes and their per-user redemption ledger."""

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
    UniqueConstraint,
    Uuid,
    func,
    true,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from chartsense.models.base import Base, JSONType, utcnow

PROMO_CODE_TYPES = ("preset", "custom", "generated", "full_access")
DISCOUNT_TYPES = ("fixed_amount", "percentage", "free_access")
APPLICABLE_PLANS = ("monthly", "annual", "both")


class PromoCode(Base):
    __tablename__ = "promo_codes"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    code: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    type: Mapped[str] = mapped_column(Text, nullable=False, default="custom")
    discount_type: Mapped[str] = mapped_column(Text, nullable=False)
    discount_value: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    final_price: Mapped[int | None] = mapped_column(Integer)
    description: Mapped[str | None] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True, server_default=true()
    )
    max_uses: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    current_uses: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    valid_from: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )
    valid_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    applicable_plans: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    base_template_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("promo_codes.id", ondelete="SET NULL")
    )
    created_by_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="SET NULL")
    )
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

    redemptions: Mapped[list[PromoCodeRedemption]] = relationship(
        back_populates="promo_code", lazy="raise", passive_deletes=True
    )

    __table_args__ = (
        CheckConstraint(
            "type IN ('preset','custom','generated','full_access')",
            name="ck_promo_code_type",
        ),
        CheckConstraint(
            "discount_type IN ('fixed_amount','percentage','free_access')",
            name="ck_promo_code_discount_type",
        ),
        CheckConstraint("discount_value >= 0", name="ck_promo_code_discount_value"),
        CheckConstraint(
            "discount_type <> 'percentage' OR discount_value <= 100",
            name="ck_promo_code_percentage_range",
        ),
        CheckConstraint(
            "final_price IS NULL OR final_price >= 0", name="ck_promo_code_final_price"
        ),
        CheckConstraint("max_uses >= 1", name="ck_promo_code_max_uses"),
        CheckConstraint(
            "current_uses >= 0 AND current_uses <= max_uses",
            name="ck_promo_code_current_uses",
        ),
        Index("idx_promo_codes_active_window", "is_active", "valid_from", "valid_until"),
    )


class PromoCodeRedemption(Base):
    __tablename__ = "promo_code_redemptions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    promo_code_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("promo_codes.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    used_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )
    original_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    discount_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    final_amount: Mapped[int] = mapped_column(Integer, nullable=False)

    promo_code: Mapped[PromoCode] = relationship(back_populates="redemptions")

    __table_args__ = (
        UniqueConstraint("promo_code_id", "user_id", name="uq_promo_code_redemption_user"),
        CheckConstraint(
            "final_amount = original_amount - discount_amount",
            name="ck_promo_code_redemption_amounts",
        ),
    )
