"""Promo code pricing and single-shot redemption."""

from __future__ import annotations

import logging
import re
import secrets
import string
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from chartsense.models import PromoCode, PromoCodeRedemption
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from api.services.billing_errors import (
    AlreadyUsedByUser,
    Exhausted,
    InvalidPromoCode,
    InvariantViolation,
    NotFound,
    PlanNotApplicable,
    ValidationError,
)

logger = logging.getLogger(__name__)

CODE_PATTERN = re.compile(r"^[A-Z0-9][A-Z0-9_-]{2,31}$")
PLAN_PRICES = {"monthly": 3900, "annual": 36000}

PRESET_CODES: tuple[dict[str, Any], ...] = (
    {
        "code": "WIZDOM",
        "discount_type": "fixed_amount",
        "discount_value": 900,
        "final_price": 2000,
        "description": "WIZDOM Community Discount - $20 monthly subscription",
    },
    {
        "code": "FOXDEN",
        "discount_type": "fixed_amount",
        "discount_value": 900,
        "final_price": 2000,
        "description": "FOXDEN Community Discount - $20 monthly subscription",
    },
    {
        "code": "FRIENDSFAMILY",
        "discount_type": "fixed_amount",
        "discount_value": 1400,
        "final_price": 1500,
        "description": "Friends & Family Discount - $15 monthly subscription",
    },
    {
        "code": "TESTFREE",
        "discount_type": "free_access",
        "discount_value": 0,
        "final_price": 0,
        "description": "Test Code - Free access for testing",
    },
)

_SUFFIX_ALPHABET = string.ascii_uppercase + string.digits


@dataclass(frozen=True)
class PriceQuote:
    """Result of pricing a plan, optionally with a promo code applied."""

    plan: str
    original_price: int
    discount_amount: int
    final_price: int
    promo_code: PromoCode | None = None

    @property
    def promo_code_id(self) -> uuid.UUID | None:
        return self.promo_code.id if self.promo_code is not None else None

    @property
    def is_free(self) -> bool:
        return self.final_price == 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "plan": self.plan,
            "original_price": self.original_price,
            "discount_amount": self.discount_amount,
            "final_price": self.final_price,
            "promo_code": self.promo_code.code if self.promo_code is not None else None,
            "promo_code_type": self.promo_code.type if self.promo_code is not None else None,
        }


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def normalize_promo_code(raw: str) -> str:
    """Normalize and validate a user-facing promo code."""
    code = raw.strip().upper()
    if not CODE_PATTERN.fullmatch(code):
        raise ValueError("Code must be 3-32 chars and only use letters, numbers, '-' or '_'")
    return code


def list_price(plan: str) -> int:
    try:
        return PLAN_PRICES[plan]
    except KeyError:
        raise ValidationError(f"Unknown plan: {plan}", details={"plan": plan}) from None


def is_promo_code_available(code: PromoCode, now: datetime | None = None) -> bool:
    """Return True while the code is active, inside its window and under its use cap."""
    current = now or datetime.now(UTC)
    if not code.is_active:
        return False
    valid_from = _as_utc(code.valid_from)
    if valid_from and valid_from > current:
        return False
    valid_until = _as_utc(code.valid_until)
    if valid_until and valid_until < current:
        return False
    return int(code.current_uses or 0) < int(code.max_uses or 0)


def is_plan_applicable(code: PromoCode, plan: str) -> bool:
    plans = list(code.applicable_plans or [])
    if not plans or "both" in plans:
        return True
    return plan in plans


def calculate_discount(code: PromoCode, original_price: int) -> tuple[int, int]:
    """Return (discount_amount, final_price) for the given list price."""
    if code.discount_type == "fixed_amount":
        discount = min(int(code.discount_value), original_price)
    elif code.discount_type == "percentage":
        discount = (original_price * int(code.discount_value)) // 100
    elif code.discount_type == "free_access":
        discount = original_price
    else:
        raise InvalidPromoCode(f"Unsupported discount type: {code.discount_type}")
    final = original_price - discount

    # Presets carry a negotiated final price that wins over the formula.
    if code.type == "preset" and code.final_price is not None:
        final = int(code.final_price)
        discount = original_price - final

    final = max(0, final)
    return original_price - final, final


async def get_promo_code_by_code(db: AsyncSession, raw_code: str) -> PromoCode | None:
    try:
        code = normalize_promo_code(raw_code)
    except ValueError:
        return None
    result = await db.execute(select(PromoCode).where(PromoCode.code == code))
    return result.scalars().first()


async def ensure_not_redeemed_by(
    db: AsyncSession, promo_code_id: uuid.UUID, user_id: uuid.UUID
) -> None:
    existing = await db.execute(
        select(PromoCodeRedemption.id).where(
            PromoCodeRedemption.promo_code_id == promo_code_id,
            PromoCodeRedemption.user_id == user_id,
        )
    )
    if existing.scalars().first() is not None:
        raise AlreadyUsedByUser("Promo code has already been used by this user")


async def price(
    db: AsyncSession,
    plan: str,
    raw_code: str | None = None,
    *,
    now: datetime | None = None,
    user_id: uuid.UUID | None = None,
) -> PriceQuote:
    """Price a plan with an optional promo code. Never mutates the code.

    With ``user_id`` the quote is also refused when that user already redeemed the code.
    """
    original = list_price(plan)
    if raw_code is None or not raw_code.strip():
        return PriceQuote(
            plan=plan,
            original_price=original,
            discount_amount=0,
            final_price=original,
        )

    try:
        code = normalize_promo_code(raw_code)
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc

    result = await db.execute(select(PromoCode).where(PromoCode.code == code))
    promo = result.scalars().first()
    if promo is None or not is_promo_code_available(promo, now):
        raise InvalidPromoCode("Invalid or expired promo code", details={"code": code})
    if not is_plan_applicable(promo, plan):
        raise PlanNotApplicable(
            f"Promo code {code} is not valid for the {plan} plan",
            details={"code": code, "plan": plan},
        )
    if user_id is not None:
        await ensure_not_redeemed_by(db, promo.id, user_id)

    discount, final = calculate_discount(promo, original)
    return PriceQuote(
        plan=plan,
        original_price=original,
        discount_amount=discount,
        final_price=final,
        promo_code=promo,
    )


def _check_redemption_amounts(original: int, discount: int, final: int) -> None:
    if original < 0 or discount < 0 or final < 0 or discount > original:
        raise InvariantViolation("Redemption amounts out of range")
    if final != original - discount:
        raise InvariantViolation("Redemption amounts do not add up")


async def redeem(
    db: AsyncSession,
    promo_code_id: uuid.UUID,
    user_id: uuid.UUID,
    *,
    original_amount: int,
    discount_amount: int,
    final_amount: int,
) -> PromoCodeRedemption:
    """Consume one use of a promo code for a user.

    The increment is a conditional UPDATE guarded by ``current_uses < max_uses`` and the
    redemption row is unique per (code, user); both run inside a savepoint so a failure
    leaves neither the counter nor the ledger changed.
    """
    try:
        _check_redemption_amounts(original_amount, discount_amount, final_amount)
    except InvariantViolation:
        logger.error(
            "Rejected promo redemption with inconsistent amounts: code=%s user=%s "
            "original=%s discount=%s final=%s",
            promo_code_id,
            user_id,
            original_amount,
            discount_amount,
            final_amount,
        )
        raise

    try:
        async with db.begin_nested():
            await ensure_not_redeemed_by(db, promo_code_id, user_id)

            result = await db.execute(
                update(PromoCode)
                .where(
                    PromoCode.id == promo_code_id,
                    PromoCode.current_uses < PromoCode.max_uses,
                )
                .values(current_uses=PromoCode.current_uses + 1)
                .execution_options(synchronize_session=False)
            )
            promo = await db.get(PromoCode, promo_code_id, populate_existing=True)
            if not result.rowcount:
                if promo is None:
                    raise NotFound("Promo code not found")
                raise Exhausted("Promo code has reached its usage limit")

            redemption = PromoCodeRedemption(
                promo_code_id=promo_code_id,
                user_id=user_id,
                original_amount=original_amount,
                discount_amount=discount_amount,
                final_amount=final_amount,
            )
            db.add(redemption)
            await db.flush()
    except IntegrityError as exc:
        raise AlreadyUsedByUser("Promo code has already been used by this user") from exc

    logger.info("Promo code %s redeemed by user %s", promo_code_id, user_id)
    return redemption


async def seed_preset_codes(
    db: AsyncSession,
    *,
    created_by_id: uuid.UUID | None = None,
    now: datetime | None = None,
) -> list[PromoCode]:
    """Create missing preset codes; existing codes are left untouched.

    New presets become valid at ``now``, defaulting to the current time.
    """
    valid_from = now or datetime.now(UTC)
    created: list[PromoCode] = []
    for preset in PRESET_CODES:
        existing = await db.execute(select(PromoCode.id).where(PromoCode.code == preset["code"]))
        if existing.scalars().first() is not None:
            continue
        promo = PromoCode(
            type="preset",
            applicable_plans=["both"],
            max_uses=1,
            current_uses=0,
            is_active=True,
            created_by_id=created_by_id,
            valid_from=valid_from,
            **preset,
        )
        db.add(promo)
        created.append(promo)
    if created:
        await db.flush()
        logger.info("Seeded preset promo codes: %s", ", ".join(p.code for p in created))
    return created


def _generated_code(base: str, suffix: str | None, index: int, quantity: int) -> str:
    if suffix:
        return f"{base}{suffix}{index + 1}" if quantity > 1 else f"{base}{suffix}"
    return base + "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(3))


async def generate_codes_from_preset(
    db: AsyncSession,
    base_code_id: uuid.UUID,
    *,
    quantity: int = 1,
    suffix: str | None = None,
    description: str | None = None,
    max_uses: int = 1,
    valid_until: datetime | None = None,
    created_by_id: uuid.UUID | None = None,
) -> tuple[list[PromoCode], list[str]]:
    """Derive single-purpose codes from a preset template.

    Returns the created codes and a list of per-code errors (collisions or invalid codes).
    """
    if quantity < 1 or quantity > 50:
        raise ValidationError("Quantity must be between 1 and 50")
    if max_uses < 1 or max_uses > 1000:
        raise ValidationError("Max uses must be between 1 and 1000")

    base = await db.get(PromoCode, base_code_id)
    if base is None:
        raise NotFound("Base promo code not found")
    if base.type != "preset":
        raise ValidationError("Can only generate codes from preset templates")

    normalized_suffix = suffix.strip().upper() if suffix and suffix.strip() else None
    generated: list[PromoCode] = []
    errors: list[str] = []
    for index in range(quantity):
        candidate = _generated_code(base.code, normalized_suffix, index, quantity)
        try:
            code = normalize_promo_code(candidate)
        except ValueError:
            errors.append(f"Code {candidate} is not a valid promo code")
            continue
        existing = await db.execute(select(PromoCode.id).where(PromoCode.code == code))
        if existing.scalars().first() is not None or any(p.code == code for p in generated):
            errors.append(f"Code {code} already exists")
            continue
        promo = PromoCode(
            code=code,
            type="generated",
            discount_type=base.discount_type,
            discount_value=base.discount_value,
            final_price=base.final_price,
            description=description or f"Generated {base.code} code - {base.description or ''}",
            max_uses=max_uses,
            current_uses=0,
            is_active=True,
            valid_until=_as_utc(valid_until),
            applicable_plans=["both"],
            base_template_id=base.id,
            created_by_id=created_by_id,
        )
        db.add(promo)
        generated.append(promo)

    if generated:
        await db.flush()
    return generated, errors


def serialize_promo_code(code: PromoCode, now: datetime | None = None) -> dict[str, Any]:
    return {
        "id": str(code.id),
        "code": code.code,
        "type": code.type,
        "discount_type": code.discount_type,
        "discount_value": code.discount_value,
        "final_price": code.final_price,
        "description": code.description,
        "is_active": code.is_active,
        "max_uses": code.max_uses,
        "current_uses": code.current_uses,
        "valid_from": code.valid_from.isoformat() if code.valid_from else None,
        "valid_until": code.valid_until.isoformat() if code.valid_until else None,
        "applicable_plans": list(code.applicable_plans or []),
        "base_template_id": str(code.base_template_id) if code.base_template_id else None,
        "is_available": is_promo_code_available(code, now),
        "created_at": code.created_at.isoformat() if code.created_at else None,
    }
