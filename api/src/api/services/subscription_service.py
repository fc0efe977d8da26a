"""Subscription lifecycle: activation and audited administrative transitions."""

from __future__ import annotations

import calendar
import logging
import uuid
from datetime import UTC, datetime, timedelta
from typing import Any

from chartsense.models import AuditLog, Subscription, User
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from api.services import stripe_service
from api.services.billing_errors import ExternalProviderError, NotFound, ValidationError
from api.services.entitlement import (
    get_subscription_for_user,
    has_premium_access,
    is_expired,
    sync_user_entitlement,
)
from api.services.promo_code_service import PLAN_PRICES

logger = logging.getLogger(__name__)

ADMIN_PLAN = "admin"


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def add_months(value: datetime, months: int) -> datetime:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def plan_period_end(plan: str, start: datetime) -> datetime:
    if plan == "annual":
        return add_months(start, 12)
    if plan == "monthly":
        return add_months(start, 1)
    raise ValidationError(f"Unknown plan: {plan}", details={"plan": plan})


def _snapshot(subscription: Subscription) -> dict[str, Any]:
    period_end = _as_utc(subscription.current_period_end)
    return {
        "status": subscription.status,
        "plan": subscription.plan,
        "amount": subscription.amount,
        "current_period_end": period_end.isoformat() if period_end else None,
        "cancel_at_period_end": subscription.cancel_at_period_end,
    }


def serialize_subscription(
    subscription: Subscription,
    user: User | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    current = now or datetime.now(UTC)
    period_end = _as_utc(subscription.current_period_end)
    days_remaining = None
    if period_end is not None and subscription.status != "admin_access":
        days_remaining = max(0, (period_end - current).days)
    payload = {
        "id": str(subscription.id),
        "user_id": str(subscription.user_id),
        "status": subscription.status,
        "plan": subscription.plan,
        "amount": subscription.amount,
        "original_amount": subscription.original_amount,
        "discount_amount": subscription.discount_amount,
        "currency": subscription.currency,
        "current_period_start": (
            subscription.current_period_start.isoformat()
            if subscription.current_period_start
            else None
        ),
        "current_period_end": period_end.isoformat() if period_end else None,
        "cancel_at_period_end": subscription.cancel_at_period_end,
        "has_stripe_subscription": bool(subscription.stripe_subscription_id),
        "is_expired": is_expired(subscription, current),
        "days_remaining": days_remaining,
    }
    if user is not None:
        payload["has_premium_access"] = has_premium_access(user, subscription, current)
    return payload


async def _get_user(db: AsyncSession, user_id: uuid.UUID) -> User:
    user = await db.get(User, user_id)
    if user is None:
        raise NotFound("User not found")
    return user


async def _lock_subscription(db: AsyncSession, subscription_id: uuid.UUID) -> Subscription:
    result = await db.execute(
        select(Subscription).where(Subscription.id == subscription_id).with_for_update()
    )
    subscription = result.scalars().first()
    if subscription is None:
        raise NotFound("Subscription not found")
    return subscription


def _audit(
    db: AsyncSession,
    *,
    actor: User,
    action: str,
    subscription: Subscription,
    before: dict[str, Any] | None,
    reason: str | None,
    severity: str = "medium",
    extra: dict[str, Any] | None = None,
) -> None:
    detail: dict[str, Any] = {
        "user_id": str(subscription.user_id),
        "before": before,
        "after": _snapshot(subscription),
        "reason": reason,
    }
    if extra:
        detail.update(extra)
    db.add(
        AuditLog(
            user_id=actor.id,
            action=action,
            target_type="subscription",
            target_id=str(subscription.id),
            severity=severity,
            detail=detail,
        )
    )


async def activate_subscription(
    db: AsyncSession,
    user: User,
    *,
    plan: str,
    amount: int,
    original_amount: int,
    discount_amount: int,
    promo_code_id: uuid.UUID | None = None,
    open_ended: bool = False,
    stripe_customer_id: str | None = None,
    stripe_subscription_id: str | None = None,
    currency: str = "usd",
    now: datetime | None = None,
) -> Subscription:
    """Create or update the user's subscription as active for one plan period."""
    current = now or datetime.now(UTC)
    subscription = await get_subscription_for_user(db, user.id, for_update=True)
    if subscription is None:
        subscription = Subscription(user_id=user.id)
        db.add(subscription)

    subscription.status = "active"
    subscription.plan = plan
    subscription.amount = amount
    subscription.original_amount = original_amount
    subscription.discount_amount = discount_amount
    subscription.currency = currency
    subscription.promo_code_id = promo_code_id or subscription.promo_code_id
    subscription.current_period_start = current
    subscription.current_period_end = None if open_ended else plan_period_end(plan, current)
    subscription.cancel_at_period_end = False
    subscription.canceled_at = None
    if stripe_customer_id:
        subscription.stripe_customer_id = stripe_customer_id
    if stripe_subscription_id:
        subscription.stripe_subscription_id = stripe_subscription_id

    sync_user_entitlement(user, subscription)
    await db.flush()
    return subscription


async def grant_admin_access(
    db: AsyncSession,
    actor: User,
    user_id: uuid.UUID,
    *,
    reason: str | None = None,
) -> Subscription:
    user = await _get_user(db, user_id)
    subscription = await get_subscription_for_user(db, user.id, for_update=True)
    before = _snapshot(subscription) if subscription is not None else None
    if subscription is None:
        subscription = Subscription(user_id=user.id)
        db.add(subscription)

    subscription.status = "admin_access"
    subscription.plan = ADMIN_PLAN
    subscription.amount = 0
    subscription.original_amount = 0
    subscription.discount_amount = 0
    subscription.current_period_start = datetime.now(UTC)
    subscription.current_period_end = None
    subscription.cancel_at_period_end = False
    subscription.canceled_at = None
    user.is_admin = True
    sync_user_entitlement(user, subscription)
    await db.flush()

    _audit(
        db,
        actor=actor,
        action="subscription.grant_admin_access",
        subscription=subscription,
        before=before,
        reason=reason,
        severity="high",
    )
    logger.info("Admin access granted to user %s by %s", user.id, actor.id)
    return subscription


async def grant_free_access(
    db: AsyncSession,
    actor: User,
    user_id: uuid.UUID,
    *,
    duration_days: int = 30,
    reason: str | None = None,
) -> Subscription:
    if duration_days < 1:
        raise ValidationError("duration_days must be at least 1")
    user = await _get_user(db, user_id)
    subscription = await get_subscription_for_user(db, user.id, for_update=True)
    before = _snapshot(subscription) if subscription is not None else None
    if subscription is None:
        subscription = Subscription(user_id=user.id)
        db.add(subscription)

    now = datetime.now(UTC)
    list_price = PLAN_PRICES["monthly"]
    subscription.status = "active"
    subscription.plan = "monthly"
    subscription.amount = 0
    subscription.original_amount = list_price
    subscription.discount_amount = list_price
    subscription.current_period_start = now
    subscription.current_period_end = now + timedelta(days=duration_days)
    subscription.cancel_at_period_end = False
    subscription.canceled_at = None
    sync_user_entitlement(user, subscription)
    await db.flush()

    _audit(
        db,
        actor=actor,
        action="subscription.grant_free_access",
        subscription=subscription,
        before=before,
        reason=reason,
        extra={"duration_days": duration_days},
    )
    return subscription


async def extend_subscription(
    db: AsyncSession,
    actor: User,
    subscription_id: uuid.UUID,
    *,
    days: int = 30,
    reason: str | None = None,
) -> Subscription:
    if days < 1:
        raise ValidationError("days must be at least 1")
    subscription = await _lock_subscription(db, subscription_id)
    user = await _get_user(db, subscription.user_id)
    before = _snapshot(subscription)

    base = _as_utc(subscription.current_period_end) or datetime.now(UTC)
    subscription.current_period_end = base + timedelta(days=days)
    if subscription.status in ("cancelled", "inactive"):
        subscription.status = "active"
        subscription.canceled_at = None
    sync_user_entitlement(user, subscription)
    await db.flush()

    _audit(
        db,
        actor=actor,
        action="subscription.extend",
        subscription=subscription,
        before=before,
        reason=reason,
        extra={"days": days},
    )
    return subscription


async def change_plan(
    db: AsyncSession,
    actor: User,
    subscription_id: uuid.UUID,
    new_plan: str,
    *,
    reason: str | None = None,
) -> Subscription:
    if new_plan not in PLAN_PRICES:
        raise ValidationError(f"Unknown plan: {new_plan}", details={"plan": new_plan})
    subscription = await _lock_subscription(db, subscription_id)
    user = await _get_user(db, subscription.user_id)
    before = _snapshot(subscription)

    subscription.plan = new_plan
    subscription.original_amount = PLAN_PRICES[new_plan]
    subscription.discount_amount = 0
    subscription.amount = PLAN_PRICES[new_plan]
    sync_user_entitlement(user, subscription)
    await db.flush()

    _audit(
        db,
        actor=actor,
        action="subscription.change_plan",
        subscription=subscription,
        before=before,
        reason=reason,
    )
    return subscription


async def cancel_subscription(
    db: AsyncSession,
    actor: User,
    subscription_id: uuid.UUID,
    *,
    immediate: bool,
    reason: str | None = None,
) -> Subscription:
    """Cancel locally; the provider is told best-effort and never blocks the change."""
    subscription = await _lock_subscription(db, subscription_id)
    user = await _get_user(db, subscription.user_id)
    before = _snapshot(subscription)

    now = datetime.now(UTC)
    if immediate:
        subscription.status = "cancelled"
        subscription.current_period_end = now
        subscription.canceled_at = now
        subscription.cancel_at_period_end = False
    else:
        subscription.cancel_at_period_end = True

    provider_synced = None
    if subscription.stripe_subscription_id:
        try:
            await stripe_service.cancel_subscription(
                subscription.stripe_subscription_id,
                at_period_end=not immediate,
            )
            provider_synced = True
        except ExternalProviderError:
            provider_synced = False
            logger.warning(
                "Stripe cancellation failed for %s; local cancellation kept",
                subscription.stripe_subscription_id,
            )

    sync_user_entitlement(user, subscription)
    await db.flush()

    _audit(
        db,
        actor=actor,
        action="subscription.cancel",
        subscription=subscription,
        before=before,
        reason=reason,
        severity="high" if immediate else "medium",
        extra={"immediate": immediate, "provider_synced": provider_synced},
    )
    return subscription


async def reactivate_subscription(
    db: AsyncSession,
    actor: User,
    subscription_id: uuid.UUID,
    *,
    reason: str | None = None,
) -> Subscription:
    subscription = await _lock_subscription(db, subscription_id)
    if not subscription.stripe_subscription_id:
        raise ValidationError("Only Stripe-billed subscriptions can be reactivated")
    user = await _get_user(db, subscription.user_id)
    before = _snapshot(subscription)

    subscription.cancel_at_period_end = False
    provider_synced = True
    try:
        await stripe_service.resume_subscription(subscription.stripe_subscription_id)
    except ExternalProviderError:
        provider_synced = False
        logger.warning(
            "Stripe reactivation failed for %s; local change kept",
            subscription.stripe_subscription_id,
        )

    sync_user_entitlement(user, subscription)
    await db.flush()

    _audit(
        db,
        actor=actor,
        action="subscription.reactivate",
        subscription=subscription,
        before=before,
        reason=reason,
        extra={"provider_synced": provider_synced},
    )
    return subscription
