"""Admin subscription lifecycle management."""

from __future__ import annotations

import uuid
from typing import Literal

from chartsense.models import AuditLog, Subscription, User
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import get_db, require_admin
from api.services import reporting, subscription_service
from api.services.billing_reconciliation import run_billing_reconciliation
from api.services.payment_service import list_user_payments, serialize_payment

router = APIRouter()


class ReasonRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


class FreeAccessRequest(ReasonRequest):
    duration_days: int = Field(default=30, ge=1, le=3650)


class ExtendRequest(ReasonRequest):
    days: int = Field(default=30, ge=1, le=3650)


class ChangePlanRequest(ReasonRequest):
    plan: Literal["monthly", "annual"]


class CancelRequest(ReasonRequest):
    immediate: bool = False


def _serialize_user(user: User) -> dict:
    return {
        "id": str(user.id),
        "email": user.email,
        "name": user.name,
        "is_verified": user.is_verified,
        "is_admin": user.is_admin,
        "subscription_status": user.subscription_status,
        "subscription_tier": user.subscription_tier,
        "has_active_subscription": user.has_active_subscription,
        "created_at": user.created_at.isoformat() if user.created_at else None,
        "last_login_at": user.last_login_at.isoformat() if user.last_login_at else None,
    }


async def _subscription_response(db: AsyncSession, subscription: Subscription) -> dict:
    user = await db.get(User, subscription.user_id)
    return subscription_service.serialize_subscription(subscription, user)


@router.get("")
async def list_subscriptions(
    status: str | None = Query(default=None, max_length=32),
    plan: str | None = Query(default=None, max_length=16),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db),
    user: User = Depends(require_admin),
):
    del user
    query = select(Subscription, User).join(User, User.id == Subscription.user_id)
    if status:
        query = query.where(Subscription.status == status)
    if plan:
        query = query.where(Subscription.plan == plan)
    query = query.order_by(Subscription.updated_at.desc()).limit(limit).offset(offset)
    result = await db.execute(query)
    return [
        {
            **subscription_service.serialize_subscription(subscription, owner),
            "user": _serialize_user(owner),
        }
        for subscription, owner in result.all()
    ]


@router.get("/summary")
async def entitlement_summary(
    db: AsyncSession = Depends(get_db),
    user: User = Depends(require_admin),
):
    del user
    return await reporting.get_entitlement_summary(db)


@router.get("/inactive-users")
async def inactive_users(
    days: int = Query(default=30, ge=1, le=3650),
    db: AsyncSession = Depends(get_db),
    user: User = Depends(require_admin),
):
    del user
    users = await reporting.get_inactive_users(db, days)
    return {"days": days, "count": len(users), "users": [_serialize_user(u) for u in users]}


@router.get("/users/{user_id}/metrics")
async def user_metrics(
    user_id: uuid.UUID,
    period: Literal["weekly", "monthly"] = "monthly",
    db: AsyncSession = Depends(get_db),
    user: User = Depends(require_admin),
):
    del user
    try:
        return await reporting.get_user_metrics(db, user_id, period)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc))


@router.get("/users/{user_id}/payments")
async def user_payments(
    user_id: uuid.UUID,
    limit: int = Query(default=50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
    user: User = Depends(require_admin),
):
    del user
    payments = await list_user_payments(db, user_id, limit=limit)
    return [serialize_payment(payment) for payment in payments]


@router.post("/users/{user_id}/admin-access")
async def grant_admin_access(
    user_id: uuid.UUID,
    req: ReasonRequest,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(require_admin),
):
    subscription = await subscription_service.grant_admin_access(
        db, user, user_id, reason=req.reason
    )
    return await _subscription_response(db, subscription)


@router.post("/users/{user_id}/free-access")
async def grant_free_access(
    user_id: uuid.UUID,
    req: FreeAccessRequest,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(require_admin),
):
    subscription = await subscription_service.grant_free_access(
        db, user, user_id, duration_days=req.duration_days, reason=req.reason
    )
    return await _subscription_response(db, subscription)


@router.post("/{subscription_id}/extend")
async def extend_subscription(
    subscription_id: uuid.UUID,
    req: ExtendRequest,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(require_admin),
):
    subscription = await subscription_service.extend_subscription(
        db, user, subscription_id, days=req.days, reason=req.reason
    )
    return await _subscription_response(db, subscription)


@router.post("/{subscription_id}/change-plan")
async def change_plan(
    subscription_id: uuid.UUID,
    req: ChangePlanRequest,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(require_admin),
):
    subscription = await subscription_service.change_plan(
        db, user, subscription_id, req.plan, reason=req.reason
    )
    return await _subscription_response(db, subscription)


@router.post("/{subscription_id}/cancel")
async def cancel_subscription(
    subscription_id: uuid.UUID,
    req: CancelRequest,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(require_admin),
):
    subscription = await subscription_service.cancel_subscription(
        db, user, subscription_id, immediate=req.immediate, reason=req.reason
    )
    return await _subscription_response(db, subscription)


@router.post("/{subscription_id}/reactivate")
async def reactivate_subscription(
    subscription_id: uuid.UUID,
    req: ReasonRequest,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(require_admin),
):
    subscription = await subscription_service.reactivate_subscription(
        db, user, subscription_id, reason=req.reason
    )
    return await _subscription_response(db, subscription)


@router.post("/billing/reconcile")
async def reconcile_billing(
    db: AsyncSession = Depends(get_db),
    user: User = Depends(require_admin),
):
    summary = await run_billing_reconciliation(db, trigger="manual")
    db.add(
        AuditLog(
            user_id=user.id,
            action="billing.reconcile.manual",
            target_type="billing",
            target_id="stripe",
            detail=summary,
        )
    )
    return summary
