"""Registration and email verification endpoints."""

from __future__ import annotations

import logging

from chartsense.models import AnalyticsEvent
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import get_db
from api.middleware.auth import hash_password
from api.services import registration_service
from api.services.billing_errors import ValidationError
from api.services.subscription_service import serialize_subscription

logger = logging.getLogger(__name__)
router = APIRouter()


def _validated_email(value: str) -> str:
    normalized = value.strip().lower()
    local, sep, domain = normalized.partition("@")
    if not sep or not local or "." not in domain or domain.endswith("."):
        raise ValueError("Invalid email address")
    return normalized


class RegisterRequest(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    email: str = Field(min_length=3, max_length=320)
    password: str = Field(max_length=256)
    plan: str = Field(default="monthly", pattern="^(monthly|annual)$")
    promo_code: str | None = Field(default=None, max_length=32)

    @field_validator("email")
    @classmethod
    def validate_email(cls, value: str) -> str:
        return _validated_email(value)

    @field_validator("name")
    @classmethod
    def validate_name(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Name is required")
        return normalized


class VerifyEmailRequest(BaseModel):
    token: str = Field(min_length=32, max_length=256)


@router.post("/register")
async def register(req: RegisterRequest, db: AsyncSession = Depends(get_db)):
    if len(req.password) < 8:
        raise ValidationError("Password must be at least 8 characters")

    result = await registration_service.begin_registration(
        db,
        name=req.name,
        email=req.email,
        password_hash=hash_password(req.password),
        plan=req.plan,
        promo_code=req.promo_code,
    )
    db.add(
        AnalyticsEvent(
            event_type="registration.started",
            metadata_json={
                "status": result.status,
                "plan": req.plan,
                "promo_code": result.quote.promo_code.code if result.quote.promo_code else None,
            },
        )
    )

    if result.status == "completed":
        await registration_service.send_registration_emails(
            result.user, result.verification_token
        )
        return {
            "status": "completed",
            "user_id": str(result.user.id),
            "pricing": result.quote.to_dict(),
            "subscription": serialize_subscription(result.subscription, result.user),
        }

    return {
        "status": "payment_required",
        "pending_registration_id": str(result.pending.id),
        "expires_at": result.pending.expires_at.isoformat(),
        "pricing": result.quote.to_dict(),
    }


@router.post("/verify-email")
async def verify_email(req: VerifyEmailRequest, db: AsyncSession = Depends(get_db)):
    user = await registration_service.verify_email(db, req.token)
    logger.info("Email verified for user %s", user.id)
    return {"status": "verified", "email": user.email}
