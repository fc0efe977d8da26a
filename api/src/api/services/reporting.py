"""Read-model queries used by the scheduled maintenance job and admin views."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime, timedelta
from typing import Any

from chartsense.models import Payment, Subscription, User
from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from api.services.entitlement import get_subscription_for_user, has_premium_access

PERIOD_DAYS = {"weekly": 7, "monthly": 30}
PAID_STATUSES = ("succeeded", "partially_refunded", "refunded")


async def get_inactive_users(
    db: AsyncSession,
    days_inactive: int,
    *,
    now: datetime | None = None,
) -> list[User]:
    """Verified, active accounts with no sign-in inside the window."""
    if days_inactive < 1:
        raise ValueError("days_inactive must be at least 1")
    cutoff = (now or datetime.now(UTC)) - timedelta(days=days_inactive)
    result = await db.execute(
        select(User)
        .where(
            User.is_verified.is_(True),
            User.is_active.is_(True),
            or_(
                User.last_login_at < cutoff,
                and_(User.last_login_at.is_(None), User.created_at < cutoff),
            ),
        )
        .order_by(User.created_at)
    )
    return list(result.scalars().all())


async def _payment_totals(
    db: AsyncSession,
    user_id: uuid.UUID,
    start: datetime,
    end: datetime,
) -> tuple[int, int]:
    result = await db.execute(
        select(Payment).where(
            Payment.user_id == user_id,
            Payment.status.in_(PAID_STATUSES),
            Payment.created_at >= start,
            Payment.created_at < end,
        )
    )
    payments = result.scalars().all()
    return len(payments), sum(payment.net_amount for payment in payments)


async def get_user_metrics(
    db: AsyncSession,
    user_id: uuid.UUID,
    period: str,
    *,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Billing metrics for one user over the current period and the one before it."""
    days = PERIOD_DAYS.get(period)
    if days is None:
        raise ValueError(f"Invalid period: {period}")
    user = await db.get(User, user_id)
    if user is None:
        raise ValueError(f"Unknown user: {user_id}")

    current = now or datetime.now(UTC)
    start = current - timedelta(days=days)
    previous_start = current - timedelta(days=days * 2)
    payments, net_paid = await _payment_totals(db, user_id, start, current)
    _, previous_net_paid = await _payment_totals(db, user_id, previous_start, start)
    subscription = await get_subscription_for_user(db, user_id)

    return {
        "user_id": str(user_id),
        "period": period,
        "payments": payments,
        "net_paid": net_paid,
        "previous_net_paid": previous_net_paid,
        "change": net_paid - previous_net_paid,
        "subscription_status": subscription.status if subscription is not None else "none",
        "has_premium_access": has_premium_access(user, subscription, current),
    }


async def get_entitlement_summary(
    db: AsyncSession,
    *,
    now: datetime | None = None,
) -> dict[str, Any]:
    current = now or datetime.now(UTC)
    status_rows = await db.execute(
        select(Subscription.status, func.count(Subscription.id)).group_by(Subscription.status)
    )
    by_status = {status: count for status, count in status_rows.all()}

    lapsed = await db.scalar(
        select(func.count(Subscription.id)).where(
            Subscription.status.in_(("active", "trialing")),
            Subscription.current_period_end.is_not(None),
            Subscription.current_period_end < current,
        )
    )
    drift = await db.scalar(
        select(func.count(User.id))
        .select_from(User)
        .outerjoin(Subscription, Subscription.user_id == User.id)
        .where(
            or_(
                and_(Subscription.id.is_(None), User.subscription_status != "none"),
                and_(
                    Subscription.id.is_not(None),
                    User.subscription_status != Subscription.status,
                ),
            )
        )
    )
    return {
        "generated_at": current.isoformat(),
        "by_status": by_status,
        "total_users": await db.scalar(select(func.count(User.id))) or 0,
        "premium_users": await db.scalar(
            select(func.count(User.id)).where(User.has_active_subscription.is_(True))
        )
        or 0,
        "lapsed_periods": lapsed or 0,
        "cache_drift": drift or 0,
    }
