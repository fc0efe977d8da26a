"""Entitlement resolution and the cached entitlement fields on User."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

from chartsense.models import Subscription, User
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

ENTITLED_STATUSES = ("active", "trialing", "admin_access")
FREE_TIER_STATUSES = ("none", "inactive", "cancelled")


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def is_expired(subscription: Subscription, now: datetime | None = None) -> bool:
    """Admin access and open-ended periods never expire."""
    if subscription.status == "admin_access":
        return False
    period_end = _as_utc(subscription.current_period_end)
    if period_end is None:
        return False
    current = now or datetime.now(UTC)
    return current > period_end


def has_premium_access(
    user: User,
    subscription: Subscription | None,
    now: datetime | None = None,
) -> bool:
    if user.is_admin:
        return True
    if subscription is None:
        return False
    return subscription.status in ENTITLED_STATUSES and not is_expired(subscription, now)


def tier_for(subscription: Subscription | None) -> str:
    if subscription is None or subscription.status in FREE_TIER_STATUSES:
        return "free"
    if subscription.status == "admin_access":
        return "admin"
    return subscription.plan if subscription.plan in ("monthly", "annual") else "free"


def sync_user_entitlement(user: User, subscription: Subscription | None) -> None:
    """Recompute the cached entitlement fields on ``user`` from its subscription.

    This is the only place those fields are written.
    """
    status = subscription.status if subscription is not None else "none"
    user.subscription_status = status
    user.subscription_tier = tier_for(subscription)
    user.has_active_subscription = status in ENTITLED_STATUSES


async def get_subscription_for_user(
    db: AsyncSession,
    user_id: uuid.UUID,
    *,
    for_update: bool = False,
) -> Subscription | None:
    query = select(Subscription).where(Subscription.user_id == user_id)
    if for_update:
        query = query.with_for_update()
    result = await db.execute(query)
    return result.scalars().first()


async def get_premium_access(db: AsyncSession, user_id: uuid.UUID) -> bool:
    user = await db.get(User, user_id)
    if user is None or not user.is_active:
        return False
    subscription = await get_subscription_for_user(db, user_id)
    return has_premium_access(user, subscription)
