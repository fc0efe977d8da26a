"""Admin promo code management."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Literal

from chartsense.models import AuditLog, PromoCode, User
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field, field_validator, model_validator
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import get_db, require_admin
from api.services.promo_code_service import (
    generate_codes_from_preset,
    normalize_promo_code,
    seed_preset_codes,
    serialize_promo_code,
)

router = APIRouter()

PlanName = Literal["monthly", "annual", "both"]


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _jsonable_detail(payload: dict) -> dict:
    normalized: dict[str, object] = {}
    for key, value in payload.items():
        if isinstance(value, datetime):
            normalized_datetime = _as_utc(value)
            normalized[key] = normalized_datetime.isoformat() if normalized_datetime else None
        else:
            normalized[key] = value
    return normalized


def _trimmed(value: str | None) -> str | None:
    if value is None:
        return None
    trimmed = value.strip()
    return trimmed or None


class PromoCodeCreateRequest(BaseModel):
    code: str = Field(min_length=3, max_length=32)
    type: Literal["custom", "full_access"] = "custom"
    discount_type: Literal["fixed_amount", "percentage", "free_access"]
    discount_value: int = Field(default=0, ge=0)
    description: str | None = Field(default=None, max_length=240)
    max_uses: int = Field(default=1, ge=1, le=100000)
    valid_from: datetime | None = None
    valid_until: datetime | None = None
    applicable_plans: list[PlanName] = Field(default_factory=lambda: ["both"])

    @field_validator("code")
    @classmethod
    def _validate_code(cls, value: str) -> str:
        return normalize_promo_code(value)

    @field_validator("description")
    @classmethod
    def _trim_description(cls, value: str | None) -> str | None:
        return _trimmed(value)

    @model_validator(mode="after")
    def _validate_discount_fields(self) -> PromoCodeCreateRequest:
        if self.discount_type == "percentage" and not 1 <= self.discount_value <= 100:
            raise ValueError("percentage discounts must be between 1 and 100")
        if self.discount_type == "fixed_amount" and self.discount_value < 1:
            raise ValueError("fixed_amount discounts must be at least 1 cent")
        if self.type == "full_access" and self.discount_type != "free_access":
            raise ValueError("full_access codes must use the free_access discount type")
        valid_from = _as_utc(self.valid_from)
        valid_until = _as_utc(self.valid_until)
        if valid_from and valid_until and valid_until <= valid_from:
            raise ValueError("valid_until must be after valid_from")
        if not self.applicable_plans:
            raise ValueError("applicable_plans cannot be empty")
        return self


class PromoCodeUpdateRequest(BaseModel):
    is_active: bool | None = None
    description: str | None = Field(default=None, max_length=240)
    max_uses: int | None = Field(default=None, ge=1, le=100000)
    valid_until: datetime | None = None
    applicable_plans: list[PlanName] | None = None

    @field_validator("description")
    @classmethod
    def _trim_description(cls, value: str | None) -> str | None:
        return _trimmed(value)


class GenerateCodesRequest(BaseModel):
    base_code_id: uuid.UUID
    quantity: int = Field(default=1, ge=1, le=50)
    suffix: str | None = Field(default=None, max_length=16)
    description: str | None = Field(default=None, max_length=240)
    max_uses: int = Field(default=1, ge=1, le=1000)
    valid_until: datetime | None = None


@router.get("")
async def list_promo_codes(
    include_inactive: bool = True,
    type: str | None = Query(default=None, max_length=32),
    limit: int = Query(default=200, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
    user: User = Depends(require_admin),
):
    del user
    query = select(PromoCode)
    if not include_inactive:
        query = query.where(PromoCode.is_active.is_(True))
    if type:
        query = query.where(PromoCode.type == type)
    query = query.order_by(PromoCode.created_at.desc()).limit(limit)
    result = await db.execute(query)
    return [serialize_promo_code(code) for code in result.scalars().all()]


@router.post("")
async def create_promo_code(
    req: PromoCodeCreateRequest,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(require_admin),
):
    valid_until = _as_utc(req.valid_until)
    if valid_until and valid_until <= datetime.now(UTC):
        raise HTTPException(status_code=400, detail="valid_until must be in the future")

    existing = await db.execute(select(PromoCode.id).where(PromoCode.code == req.code))
    if existing.scalars().first() is not None:
        raise HTTPException(status_code=409, detail="Promo code already exists")

    promo = PromoCode(
        code=req.code,
        type=req.type,
        discount_type=req.discount_type,
        discount_value=req.discount_value,
        description=req.description,
        max_uses=req.max_uses,
        current_uses=0,
        is_active=True,
        valid_from=_as_utc(req.valid_from) or datetime.now(UTC),
        valid_until=valid_until,
        applicable_plans=list(req.applicable_plans),
        created_by_id=user.id,
    )
    db.add(promo)
    await db.flush()

    db.add(
        AuditLog(
            user_id=user.id,
            action="promo_code.create",
            target_type="promo_code",
            target_id=str(promo.id),
            detail={
                "code": promo.code,
                "type": promo.type,
                "discount_type": promo.discount_type,
                "discount_value": promo.discount_value,
                "max_uses": promo.max_uses,
            },
        )
    )
    return serialize_promo_code(promo)


@router.patch("/{promo_code_id}")
async def update_promo_code(
    promo_code_id: uuid.UUID,
    req: PromoCodeUpdateRequest,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(require_admin),
):
    promo = await db.get(PromoCode, promo_code_id)
    if not promo:
        raise HTTPException(status_code=404, detail="Promo code not found")

    changes = req.model_dump(exclude_unset=True)
    if not changes:
        raise HTTPException(status_code=400, detail="No changes provided")

    if "is_active" in changes:
        if req.is_active is None:
            raise HTTPException(status_code=400, detail="is_active cannot be null")
        promo.is_active = req.is_active
    if "description" in changes:
        promo.description = req.description
    if "max_uses" in changes:
        if req.max_uses is None or req.max_uses < promo.current_uses:
            raise HTTPException(
                status_code=400,
                detail="max_uses cannot be lower than the number of redemptions",
            )
        promo.max_uses = req.max_uses
    if "valid_until" in changes:
        promo.valid_until = _as_utc(req.valid_until)
    if "applicable_plans" in changes:
        if not req.applicable_plans:
            raise HTTPException(status_code=400, detail="applicable_plans cannot be empty")
        promo.applicable_plans = list(req.applicable_plans)

    db.add(
        AuditLog(
            user_id=user.id,
            action="promo_code.update",
            target_type="promo_code",
            target_id=str(promo.id),
            detail=_jsonable_detail(changes),
        )
    )
    await db.flush()
    return serialize_promo_code(promo)


@router.post("/generate")
async def generate_promo_codes(
    req: GenerateCodesRequest,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(require_admin),
):
    codes, errors = await generate_codes_from_preset(
        db,
        req.base_code_id,
        quantity=req.quantity,
        suffix=req.suffix,
        description=req.description,
        max_uses=req.max_uses,
        valid_until=req.valid_until,
        created_by_id=user.id,
    )
    db.add(
        AuditLog(
            user_id=user.id,
            action="promo_code.generate",
            target_type="promo_code",
            target_id=str(req.base_code_id),
            detail={"generated": [code.code for code in codes], "errors": errors},
        )
    )
    return {
        "generated": [serialize_promo_code(code) for code in codes],
        "count": len(codes),
        "errors": errors,
    }


@router.post("/seed")
async def seed_presets(
    db: AsyncSession = Depends(get_db),
    user: User = Depends(require_admin),
):
    created = await seed_preset_codes(db, created_by_id=user.id)
    if created:
        db.add(
            AuditLog(
                user_id=user.id,
                action="promo_code.seed",
                target_type="promo_code",
                target_id="presets",
                detail={"created": [code.code for code in created]},
            )
        )
    return {"created": [code.code for code in created]}
