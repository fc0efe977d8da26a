"""User subscription management endpoints."""

from __future__ import annotations

from chartsense.models import AnalyticsEvent, User
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import get_current_user, get_db
from api.services import (
    checkout_service,
    payment_service,
    promo_code_service,
    subscription_service,
)
from api.services.billing_errors import NotFound
from api.services.entitlement import get_subscription_for_user, has_premium_access

router = APIRouter()


class CheckoutRequest(BaseModel):
    plan: str = Field(pattern="^(monthly|annual)$")
    promo_code: str | None = Field(default=None, max_length=32)


class CancelRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


async def _own_subscription(db: AsyncSession, user: User):
    subscription = await get_subscription_for_user(db, user.id)
    if subscription is None:
        raise NotFound("No subscription found")
    return subscription


@router.get("/")
async def get_subscription_status(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Get current subscription status."""
    subscription = await get_subscription_for_user(db, user.id)
    return {
        "tier": user.subscription_tier,
        "status": user.subscription_status,
        "has_premium_access": has_premium_access(user, subscription),
        "subscription": (
            subscription_service.serialize_subscription(subscription, user)
            if subscription is not None
            else None
        ),
    }


@router.get("/access")
async def get_access(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    subscription = await get_subscription_for_user(db, user.id)
    return {"has_premium_access": has_premium_access(user, subscription)}


@router.post("/price")
async def price_for_user(
    req: CheckoutRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Quote a plan for the signed-in user, refusing codes they already redeemed."""
    quote = await promo_code_service.price(db, req.plan, req.promo_code, user_id=user.id)
    return {"valid": True, **quote.to_dict()}


@router.post("/checkout")
async def create_checkout(
    req: CheckoutRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Create a Stripe Checkout session, or activate directly for a 100% promo code."""
    result = await checkout_service.create_user_checkout(
        db, user, plan=req.plan, promo_code=req.promo_code
    )
    db.add(
        AnalyticsEvent(
            event_type="checkout.success",
            metadata_json={"user_id": str(user.id), "plan": req.plan, "status": result["status"]},
        )
    )
    return result


@router.post("/cancel")
async def cancel_subscription(
    req: CancelRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Cancel at the end of the current period."""
    subscription = await _own_subscription(db, user)
    subscription = await subscription_service.cancel_subscription(
        db, user, subscription.id, immediate=False, reason=req.reason or "user_request"
    )
    return subscription_service.serialize_subscription(subscription, user)


@router.post("/reactivate")
async def reactivate_subscription(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    subscription = await _own_subscription(db, user)
    subscription = await subscription_service.reactivate_subscription(
        db, user, subscription.id, reason="user_request"
    )
    return subscription_service.serialize_subscription(subscription, user)


@router.get("/payments")
async def list_payments(
    limit: int = Query(default=50, ge=1, le=200),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    payments = await payment_service.list_user_payments(db, user.id, limit=limit)
    return {"payments": [payment_service.serialize_payment(p) for p in payments]}
