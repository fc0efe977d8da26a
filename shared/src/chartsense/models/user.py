"""User account model."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Boolean, CheckConstraint, DateTime, Index, Text, Uuid, false, func
from sqlalchemy.orm import Mapped, mapped_column

from chartsense.models.base import Base, utcnow

USER_SUBSCRIPTION_STATUSES = (
    "none",
    "inactive",
    "active",
    "cancelled",
    "past_due",
    "trialing",
    "admin_access",
)
USER_SUBSCRIPTION_TIERS = ("free", "monthly", "annual", "admin")


class User(Base):
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(Text, unique=True, nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    password_hash: Mapped[str] = mapped_column(Text, nullable=False)
    is_verified: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=false()
    )
    is_admin: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=false()
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # Entitlement cache; written only by api.services.entitlement.sync_user_entitlement
    subscription_status: Mapped[str] = mapped_column(Text, nullable=False, default="none")
    subscription_tier: Mapped[str] = mapped_column(Text, nullable=False, default="free")
    has_active_subscription: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=false()
    )

    trial_used: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=false()
    )
    registration_promo_code: Mapped[str | None] = mapped_column(Text)
    has_received_welcome_email: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=false()
    )
    last_login_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
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
            "subscription_status IN "
            "('none','inactive','active','cancelled','past_due','trialing','admin_access')",
            name="ck_user_subscription_status",
        ),
        CheckConstraint(
            "subscription_tier IN ('free','monthly','annual','admin')",
            name="ck_user_subscription_tier",
        ),
        Index("idx_users_subscription_status", "subscription_status"),
        Index("idx_users_last_login_at", "last_login_at"),
    )
