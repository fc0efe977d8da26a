"""Checkout orchestration for pending registrations and existing users."""

from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime
from typing import Any

from chartsense.config import get_settings
from chartsense.models import PendingRegistration, User
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from api.services import stripe_service
from api.services.billing_errors import (
    Conflict,
    ExternalProviderError,
    NotFound,
    ValidationError,
)
from api.services.entitlement import get_subscription_for_user, has_premium_access
from api.services.payment_service import record_payment
from api.services.promo_code_service import PriceQuote, list_price, price, redeem
from api.services.registration_service import encode_registration_token
from api.services.subscription_service import activate_subscription

logger = logging.getLogger(__name__)

PLAN_INTERVALS = {"monthly": "month", "annual": "year"}
PLAN_LABELS = {"monthly": "ChartSense Monthly", "annual": "ChartSense Annual"}


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _site_url(path: str) -> str:
    return f"{get_settings().site_url.rstrip('/')}{path}"


def _pricing_metadata(quote: PriceQuote) -> dict[str, str]:
    return {
        "plan": quote.plan,
        "promo_code": quote.promo_code.code if quote.promo_code is not None else "",
        "promo_code_id": str(quote.promo_code_id) if quote.promo_code_id else "",
        "original_amount": str(quote.original_price),
        "discount_amount": str(quote.discount_amount),
        "final_amount": str(quote.final_price),
    }


def _line_item(quote: PriceQuote, *, recurring: bool) -> dict[str, Any]:
    settings = get_settings()
    price_data: dict[str, Any] = {
        "currency": settings.currency,
        "unit_amount": quote.final_price,
        "product_data": {"name": PLAN_LABELS[quote.plan]},
    }
    if recurring:
        price_data["recurring"] = {"interval": PLAN_INTERVALS[quote.plan]}
    return {"price_data": price_data, "quantity": 1}


async def _reuse_open_session(
    pending: PendingRegistration, quote: PriceQuote
) -> dict[str, Any] | None:
    """Return the pending row's provider session while it is still payable at ``quote``."""
    if not pending.stripe_session_id:
        return None
    try:
        session = await stripe_service.retrieve_checkout_session(pending.stripe_session_id)
    except ExternalProviderError:
        logger.warning(
            "Could not load checkout session %s; creating a new one", pending.stripe_session_id
        )
        return None
    if session.get("payment_status") == "paid":
        raise Conflict("Payment for this registration has already been completed")
    if session.get("status") != "open" or not session.get("url"):
        return None
    metadata = session.get("metadata") or {}
    expected = _pricing_metadata(quote)
    if (
        session.get("amount_total") != quote.final_price
        or metadata.get("plan") != expected["plan"]
        or metadata.get("promo_code", "") != expected["promo_code"]
    ):
        logger.info(
            "Checkout session %s no longer matches the quote for pending registration %s",
            session["id"],
            pending.id,
        )
        return None
    return {"id": str(session["id"]), "url": str(session["url"])}


async def create_registration_checkout(
    db: AsyncSession,
    pending_id: uuid.UUID,
    *,
    plan: str | None = None,
    promo_code: str | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Open (or reuse) a one-off payment session for a pending registration."""
    current = now or datetime.now(UTC)
    result = await db.execute(
        select(PendingRegistration).where(PendingRegistration.id == pending_id).with_for_update()
    )
    pending = result.scalars().first()
    if pending is None:
        raise NotFound("Registration not found")
    # A stale checkout may be retried; only the hard expiry ends the registration.
    if pending.status == "expired" or current >= _as_utc(pending.expires_at):
        pending.status = "expired"
        raise ValidationError("Registration has expired, please register again")

    if plan:
        list_price(plan)
        pending.plan = plan
    if promo_code is not None:
        pending.promo_code = promo_code.strip().upper() or None

    quote = await price(db, pending.plan, pending.promo_code, now=current)
    if quote.is_free:
        raise ValidationError("No payment is required for this registration")

    reused = await _reuse_open_session(pending, quote)
    if reused is not None:
        pending.last_activity_at = current
        return {"session_id": reused["id"], "url": reused["url"], "quote": quote.to_dict()}

    metadata = {
        "registration_data": encode_registration_token(pending, now=current),
        "pending_registration_id": str(pending.id),
        "email": pending.email,
        **_pricing_metadata(quote),
    }
    session = await stripe_service.create_checkout_session(
        mode="payment",
        line_items=[_line_item(quote, recurring=False)],
        success_url=_site_url("/register/success?session_id={CHECKOUT_SESSION_ID}"),
        cancel_url=_site_url("/register?cancelled=1"),
        metadata=metadata,
        customer_email=pending.email,
        client_reference_id=str(pending.id),
    )

    pending.stripe_session_id = session["id"]
    pending.status = "checkout_started"
    pending.checkout_started_at = current
    pending.last_activity_at = current
    await db.flush()
    logger.info(
        "Checkout session %s started for pending registration %s", session["id"], pending.id
    )
    return {"session_id": session["id"], "url": session["url"], "quote": quote.to_dict()}


async def create_user_checkout(
    db: AsyncSession,
    user: User,
    *,
    plan: str,
    promo_code: str | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Start a recurring subscription for a signed-in user.

    A promo code that prices the plan to zero activates the subscription right away
    without involving the provider.
    """
    settings = get_settings()
    current = now or datetime.now(UTC)
    subscription = await get_subscription_for_user(db, user.id)
    if subscription is not None and has_premium_access(user, subscription, current):
        raise Conflict("You already have an active subscription")

    quote = await price(db, plan, promo_code, now=current, user_id=user.id)
    if quote.is_free:
        subscription = await activate_subscription(
            db,
            user,
            plan=plan,
            amount=0,
            original_amount=quote.original_price,
            discount_amount=quote.discount_amount,
            promo_code_id=quote.promo_code_id,
            open_ended=quote.promo_code is not None and quote.promo_code.type == "full_access",
            currency=settings.currency,
            now=current,
        )
        if quote.promo_code is not None:
            await redeem(
                db,
                quote.promo_code.id,
                user.id,
                original_amount=quote.original_price,
                discount_amount=quote.discount_amount,
                final_amount=quote.final_price,
            )
        await record_payment(
            db,
            user_id=user.id,
            subscription_id=subscription.id,
            amount=0,
            status="succeeded",
            payment_method="promo_code",
            plan=plan,
            currency=settings.currency,
            promo_code_id=quote.promo_code_id,
            original_amount=quote.original_price,
            discount_amount=quote.discount_amount,
            description=f"{plan} subscription activated with a promo code",
        )
        return {"status": "activated", "url": None, "quote": quote.to_dict()}

    metadata = {"user_id": str(user.id), **_pricing_metadata(quote)}
    session = await stripe_service.create_checkout_session(
        mode="subscription",
        line_items=[_line_item(quote, recurring=True)],
        success_url=_site_url("/dashboard?checkout=success&session_id={CHECKOUT_SESSION_ID}"),
        cancel_url=_site_url("/dashboard?checkout=cancelled"),
        metadata=metadata,
        customer_email=user.email,
        customer_id=subscription.stripe_customer_id if subscription is not None else None,
        subscription_data={"metadata": metadata},
        client_reference_id=str(user.id),
    )
    return {
        "status": "checkout_required",
        "session_id": session["id"],
        "url": session["url"],
        "quote": quote.to_dict(),
    }
