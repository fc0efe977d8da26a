"""Public pricing and registration checkout endpoints."""

from __future__ import annotations

import uuid

from chartsense.models import AnalyticsEvent
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import get_db
from api.services import checkout_service, promo_code_service, registration_service
from api.services.billing_errors import BillingError

router = APIRouter()


class PriceRequest(BaseModel):
    plan: str = Field(pattern="^(monthly|annual)$")
    promo_code: str | None = Field(default=None, max_length=32)


class RegistrationCheckoutRequest(BaseModel):
    pending_registration_id: uuid.UUID
    plan: str | None = Field(default=None, pattern="^(monthly|annual)$")
    promo_code: str | None = Field(default=None, max_length=32)


@router.post("/price")
async def price_plan(req: PriceRequest, db: AsyncSession = Depends(get_db)):
    """Validate a promo code and return the price breakdown for a plan."""
    quote = await promo_code_service.price(db, req.plan, req.promo_code)
    return {"valid": True, **quote.to_dict()}


@router.post("/checkout/registration")
async def create_registration_checkout(
    req: RegistrationCheckoutRequest,
    db: AsyncSession = Depends(get_db),
):
    try:
        checkout = await checkout_service.create_registration_checkout(
            db,
            req.pending_registration_id,
            plan=req.plan,
            promo_code=req.promo_code,
        )
    except BillingError as exc:
        await db.rollback()
        db.add(
            AnalyticsEvent(
                event_type="checkout.failure",
                metadata_json={
                    "pending_registration_id": str(req.pending_registration_id),
                    "code": exc.code,
                },
            )
        )
        await db.commit()
        raise
    db.add(
        AnalyticsEvent(
            event_type="checkout.success",
            metadata_json={"pending_registration_id": str(req.pending_registration_id)},
        )
    )
    return checkout


@router.get("/checkout/status")
async def checkout_status(
    session_id: str | None = Query(default=None, max_length=255),
    email: str | None = Query(default=None, max_length=320),
    db: AsyncSession = Depends(get_db),
):
    return await registration_service.get_registration_status(
        db, email=email, session_id=session_id
    )
