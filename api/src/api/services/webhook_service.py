"""Stripe event processing.

Events arrive at least once and in any order. Each handler derives idempotency from
domain state (session, charge, invoice and refund ids) and ignores subscription events
older than the newest one already applied to that subscription.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

from chartsense.config import get_settings
from chartsense.models import AnalyticsEvent, PendingRegistration, Subscription, User
from sqlalchemy import delete, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from api.services import payment_service
from api.services.billing_errors import BillingError, ValidationError
from api.services.entitlement import get_subscription_for_user, sync_user_entitlement
from api.services.promo_code_service import PLAN_PRICES, redeem
from api.services.registration_service import (
    create_user,
    decode_registration_token,
    get_user_by_email,
    issue_verification_token,
    parse_uuid,
    send_registration_emails,
)
from api.services.subscription_service import activate_subscription

logger = logging.getLogger(__name__)

STRIPE_STATUS_MAP = {
    "active": "active",
    "trialing": "trialing",
    "past_due": "past_due",
    "unpaid": "past_due",
    "canceled": "cancelled",
    "incomplete_expired": "cancelled",
    "incomplete": "inactive",
    "paused": "inactive",
}
INTERVAL_PLANS = {"month": "monthly", "year": "annual"}

Handler = Callable[[AsyncSession, dict[str, Any], datetime], Awaitable[str]]


def _timestamp(value: Any) -> datetime | None:
    if value in (None, ""):
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=UTC)
    except (TypeError, ValueError, OverflowError):
        return None


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _object_id(value: Any) -> str | None:
    """Stripe references are ids, or whole objects when expanded."""
    if isinstance(value, dict):
        value = value.get("id")
    raw = str(value or "").strip()
    return raw or None


def _drop(db: AsyncSession, event_type: str, reason: str, **detail: Any) -> str:
    logger.warning("Dropping Stripe %s event: %s %s", event_type, reason, detail or "")
    db.add(
        AnalyticsEvent(
            event_type="stripe.webhook.dropped",
            metadata_json={"event_type": event_type, "reason": reason, **detail},
        )
    )
    return "ignored"


def _is_stale(subscription: Subscription, event_at: datetime) -> bool:
    last_event_at = _as_utc(subscription.last_event_at)
    return last_event_at is not None and event_at < last_event_at


def _mark_applied(subscription: Subscription, event_at: datetime) -> None:
    last_event_at = _as_utc(subscription.last_event_at)
    if last_event_at is None or event_at > last_event_at:
        subscription.last_event_at = event_at


async def _lock_by_stripe_id(db: AsyncSession, stripe_subscription_id: str) -> Subscription | None:
    result = await db.execute(
        select(Subscription)
        .where(Subscription.stripe_subscription_id == stripe_subscription_id)
        .with_for_update()
    )
    return result.scalars().first()


async def _redeem_after_payment(
    db: AsyncSession,
    *,
    user: User,
    metadata: dict[str, Any],
    session_id: str,
) -> None:
    """Consume the promo code behind a paid checkout.

    The customer has already paid, so a failure here is recorded for manual
    reconciliation instead of undoing the account.
    """
    promo_code_id = parse_uuid(metadata.get("promo_code_id"))
    if promo_code_id is None:
        return
    try:
        await redeem(
            db,
            promo_code_id,
            user.id,
            original_amount=_int(metadata.get("original_amount")),
            discount_amount=_int(metadata.get("discount_amount")),
            final_amount=_int(metadata.get("final_amount")),
        )
    except BillingError as exc:
        logger.error(
            "Promo redemption failed after payment: session=%s user=%s code=%s error=%s",
            session_id,
            user.id,
            promo_code_id,
            exc.code,
        )
        db.add(
            AnalyticsEvent(
                event_type="billing.promo_redemption.failed",
                metadata_json={
                    "session_id": session_id,
                    "user_id": str(user.id),
                    "promo_code_id": str(promo_code_id),
                    "error": exc.code,
                    "message": exc.message,
                },
            )
        )


async def _resolve_checkout_user(
    db: AsyncSession,
    metadata: dict[str, Any],
) -> tuple[User | None, str | None, str]:
    """Return (user, verification token, plan) for a completed checkout."""
    user_id = parse_uuid(metadata.get("user_id"))
    if user_id is not None:
        user = await db.get(User, user_id)
        return user, None, str(metadata.get("plan") or "monthly")

    registration = decode_registration_token(str(metadata.get("registration_data") or ""))
    user = await get_user_by_email(db, registration["email"])
    token = None
    if user is None:
        user = await create_user(
            db,
            name=registration["name"],
            email=registration["email"],
            password_hash=registration["password_hash"],
            promo_code=registration.get("promo_code"),
        )
        token = await issue_verification_token(db, user)

    pending_id = parse_uuid(metadata.get("pending_registration_id"))
    conditions = [PendingRegistration.email == user.email]
    if pending_id is not None:
        conditions.append(PendingRegistration.id == pending_id)
    await db.execute(delete(PendingRegistration).where(or_(*conditions)))
    return user, token, str(registration["plan"])


async def handle_checkout_completed(
    db: AsyncSession,
    session: dict[str, Any],
    event_at: datetime,
) -> str:
    event_type = "checkout.session.completed"
    session_id = _object_id(session)
    if session_id is None:
        return _drop(db, event_type, "missing_session_id")
    if await payment_service.find_payment_by_session(db, session_id) is not None:
        logger.info("Checkout session %s already processed", session_id)
        return "duplicate"
    if session.get("payment_status") not in ("paid", "no_payment_required"):
        logger.info("Checkout session %s completed without payment; waiting", session_id)
        return "ignored"

    metadata = session.get("metadata") or {}
    try:
        user, verification_token, plan = await _resolve_checkout_user(db, metadata)
    except ValueError as exc:
        return _drop(
            db, event_type, "invalid_registration_data", session_id=session_id, error=str(exc)
        )
    if user is None:
        return _drop(db, event_type, "unknown_user", session_id=session_id)
    if plan not in PLAN_PRICES:
        return _drop(db, event_type, "unknown_plan", session_id=session_id, plan=plan)

    await _redeem_after_payment(db, user=user, metadata=metadata, session_id=session_id)

    settings = get_settings()
    original_amount = _int(metadata.get("original_amount"), PLAN_PRICES[plan])
    discount_amount = _int(metadata.get("discount_amount"))
    amount = _int(session.get("amount_total"), original_amount - discount_amount)
    stripe_customer_id = _object_id(session.get("customer"))
    stripe_subscription_id = _object_id(session.get("subscription"))
    promo_code_id = parse_uuid(metadata.get("promo_code_id"))

    subscription = await get_subscription_for_user(db, user.id, for_update=True)
    if subscription is not None and _is_stale(subscription, event_at):
        # A newer provider event already set the state; only link the ids.
        subscription.stripe_customer_id = stripe_customer_id or subscription.stripe_customer_id
        if stripe_subscription_id:
            subscription.stripe_subscription_id = stripe_subscription_id
    else:
        subscription = await activate_subscription(
            db,
            user,
            plan=plan,
            amount=amount,
            original_amount=original_amount,
            discount_amount=discount_amount,
            promo_code_id=promo_code_id,
            stripe_customer_id=stripe_customer_id,
            stripe_subscription_id=stripe_subscription_id,
            currency=str(session.get("currency") or settings.currency),
            now=event_at,
        )
        _mark_applied(subscription, event_at)

    await payment_service.record_payment(
        db,
        user_id=user.id,
        subscription_id=subscription.id,
        amount=amount,
        status="succeeded",
        plan=plan,
        currency=str(session.get("currency") or settings.currency),
        stripe_session_id=session_id,
        stripe_payment_intent_id=_object_id(session.get("payment_intent")),
        stripe_invoice_id=_object_id(session.get("invoice")),
        promo_code_id=promo_code_id,
        original_amount=original_amount,
        discount_amount=discount_amount,
        description=f"{plan} subscription",
        metadata={"mode": session.get("mode"), "event": event_type},
    )
    sync_user_entitlement(user, subscription)
    await db.flush()

    await send_registration_emails(user, verification_token)
    logger.info("Checkout session %s activated %s for user %s", session_id, plan, user.id)
    return "ok"


def subscription_period(stripe_sub: dict[str, Any]) -> tuple[datetime | None, datetime | None]:
    start = _timestamp(stripe_sub.get("current_period_start"))
    end = _timestamp(stripe_sub.get("current_period_end"))
    if start is None or end is None:
        items = (stripe_sub.get("items") or {}).get("data") or []
        if items:
            start = start or _timestamp(items[0].get("current_period_start"))
            end = end or _timestamp(items[0].get("current_period_end"))
    return start, end


def _subscription_plan(stripe_sub: dict[str, Any]) -> str | None:
    plan = (stripe_sub.get("metadata") or {}).get("plan")
    if plan in PLAN_PRICES:
        return plan
    items = (stripe_sub.get("items") or {}).get("data") or []
    if items:
        recurring = (items[0].get("price") or {}).get("recurring") or {}
        return INTERVAL_PLANS.get(recurring.get("interval"))
    return None


async def _find_subscription_owner(
    db: AsyncSession,
    stripe_sub: dict[str, Any],
) -> Subscription | None:
    """Locate (or create) the local row for a subscription we have not linked yet."""
    user_id = parse_uuid((stripe_sub.get("metadata") or {}).get("user_id"))
    customer_id = _object_id(stripe_sub.get("customer"))
    subscription = None
    if user_id is not None:
        subscription = await get_subscription_for_user(db, user_id, for_update=True)
        if subscription is None and await db.get(User, user_id) is not None:
            subscription = Subscription(user_id=user_id)
            db.add(subscription)
    if subscription is None and customer_id:
        result = await db.execute(
            select(Subscription)
            .where(Subscription.stripe_customer_id == customer_id)
            .with_for_update()
        )
        subscription = result.scalars().first()
    if subscription is not None:
        subscription.stripe_subscription_id = _object_id(stripe_sub)
        subscription.stripe_customer_id = customer_id or subscription.stripe_customer_id
    return subscription


async def _apply_subscription_state(
    db: AsyncSession,
    event_type: str,
    stripe_sub: dict[str, Any],
    event_at: datetime,
    *,
    allow_create: bool,
) -> str:
    stripe_subscription_id = _object_id(stripe_sub)
    if stripe_subscription_id is None:
        return _drop(db, event_type, "missing_subscription_id")

    subscription = await _lock_by_stripe_id(db, stripe_subscription_id)
    if subscription is None and allow_create:
        subscription = await _find_subscription_owner(db, stripe_sub)
    if subscription is None:
        return _drop(
            db, event_type, "unknown_subscription", stripe_subscription_id=stripe_subscription_id
        )
    if _is_stale(subscription, event_at):
        logger.info(
            "Ignoring out-of-order %s for %s (event %s, last applied %s)",
            event_type,
            stripe_subscription_id,
            event_at.isoformat(),
            subscription.last_event_at,
        )
        return "stale"

    provider_status = str(stripe_sub.get("status") or "")
    status = STRIPE_STATUS_MAP.get(provider_status)
    if status is None:
        return _drop(db, event_type, "unknown_status", status=provider_status)
    if subscription.status == "admin_access":
        # Provider state never downgrades an administrative grant.
        _mark_applied(subscription, event_at)
        return "ok"

    subscription.status = status
    plan = _subscription_plan(stripe_sub)
    if plan is not None:
        subscription.plan = plan
    start, end = subscription_period(stripe_sub)
    if start is not None:
        subscription.current_period_start = start
    if end is not None:
        subscription.current_period_end = end
    subscription.cancel_at_period_end = bool(stripe_sub.get("cancel_at_period_end"))
    subscription.canceled_at = _timestamp(stripe_sub.get("canceled_at"))
    _mark_applied(subscription, event_at)

    user = await db.get(User, subscription.user_id)
    if user is not None:
        sync_user_entitlement(user, subscription)
    await db.flush()
    logger.info("Subscription %s is now %s (%s)", stripe_subscription_id, status, event_type)
    return "ok"


async def handle_subscription_created(
    db: AsyncSession, stripe_sub: dict[str, Any], event_at: datetime
) -> str:
    return await _apply_subscription_state(
        db, "customer.subscription.created", stripe_sub, event_at, allow_create=True
    )


async def handle_subscription_updated(
    db: AsyncSession, stripe_sub: dict[str, Any], event_at: datetime
) -> str:
    return await _apply_subscription_state(
        db, "customer.subscription.updated", stripe_sub, event_at, allow_create=False
    )


async def handle_subscription_deleted(
    db: AsyncSession,
    stripe_sub: dict[str, Any],
    event_at: datetime,
) -> str:
    event_type = "customer.subscription.deleted"
    stripe_subscription_id = _object_id(stripe_sub)
    if stripe_subscription_id is None:
        return _drop(db, event_type, "missing_subscription_id")
    subscription = await _lock_by_stripe_id(db, stripe_subscription_id)
    if subscription is None:
        return _drop(
            db, event_type, "unknown_subscription", stripe_subscription_id=stripe_subscription_id
        )
    if subscription.status == "admin_access":
        _mark_applied(subscription, event_at)
        return "ok"
    if subscription.status == "cancelled":
        _mark_applied(subscription, event_at)
        return "duplicate"

    ended_at = (
        _timestamp(stripe_sub.get("ended_at"))
        or _timestamp(stripe_sub.get("canceled_at"))
        or event_at
    )
    subscription.status = "cancelled"
    subscription.cancel_at_period_end = False
    subscription.canceled_at = _timestamp(stripe_sub.get("canceled_at")) or ended_at
    subscription.current_period_end = ended_at
    _mark_applied(subscription, event_at)

    user = await db.get(User, subscription.user_id)
    if user is not None:
        sync_user_entitlement(user, subscription)
    await db.flush()
    logger.info("Subscription %s cancelled by provider", stripe_subscription_id)
    return "ok"


def _invoice_subscription_id(invoice: dict[str, Any]) -> str | None:
    subscription_id = _object_id(invoice.get("subscription"))
    if subscription_id:
        return subscription_id
    details = (invoice.get("parent") or {}).get("subscription_details") or {}
    return _object_id(details.get("subscription"))


async def _record_invoice(
    db: AsyncSession,
    event_type: str,
    invoice: dict[str, Any],
    *,
    status: str,
) -> str:
    invoice_id = _object_id(invoice)
    stripe_subscription_id = _invoice_subscription_id(invoice)
    if invoice_id is None or stripe_subscription_id is None:
        return _drop(db, event_type, "not_a_subscription_invoice")
    if status == "succeeded" and invoice.get("billing_reason") == "subscription_create":
        # The first period is recorded from the checkout session.
        return "ignored"

    subscription = await _lock_by_stripe_id(db, stripe_subscription_id)
    if subscription is None:
        return _drop(
            db, event_type, "unknown_subscription", stripe_subscription_id=stripe_subscription_id
        )

    charge_id = _object_id(invoice.get("charge"))
    if charge_id is not None:
        existing = await payment_service.find_payment_by_charge(db, charge_id)
    else:
        existing = await payment_service.find_invoice_payment(db, invoice_id, status)
    if existing is not None:
        return "duplicate"

    settings = get_settings()
    amount = _int(invoice.get("amount_paid" if status == "succeeded" else "amount_due"))
    failure_reason = None
    if status == "failed":
        error = invoice.get("last_finalization_error") or {}
        failure_reason = str(error.get("message") or "payment_failed")
    await payment_service.record_payment(
        db,
        user_id=subscription.user_id,
        subscription_id=subscription.id,
        amount=amount,
        status=status,
        plan=subscription.plan if subscription.plan in PLAN_PRICES else None,
        currency=str(invoice.get("currency") or settings.currency),
        stripe_invoice_id=invoice_id,
        stripe_charge_id=charge_id,
        stripe_payment_intent_id=_object_id(invoice.get("payment_intent")),
        original_amount=_int(invoice.get("subtotal"), amount),
        discount_amount=max(0, _int(invoice.get("subtotal"), amount) - amount),
        description=f"Invoice {invoice.get('number') or invoice_id}",
        failure_reason=failure_reason,
        metadata={"billing_reason": invoice.get("billing_reason"), "event": event_type},
    )
    return "ok"


async def handle_invoice_paid(
    db: AsyncSession, invoice: dict[str, Any], event_at: datetime
) -> str:
    del event_at
    return await _record_invoice(db, "invoice.payment_succeeded", invoice, status="succeeded")


async def handle_invoice_payment_failed(
    db: AsyncSession, invoice: dict[str, Any], event_at: datetime
) -> str:
    del event_at
    return await _record_invoice(db, "invoice.payment_failed", invoice, status="failed")


async def handle_charge_refunded(
    db: AsyncSession,
    charge: dict[str, Any],
    event_at: datetime,
) -> str:
    event_type = "charge.refunded"
    charge_id = _object_id(charge)
    if charge_id is None:
        return _drop(db, event_type, "missing_charge_id")

    payment = await payment_service.find_payment_by_charge(db, charge_id)
    payment_intent_id = _object_id(charge.get("payment_intent"))
    if payment is None and payment_intent_id:
        payment = await payment_service.find_payment_by_intent(db, payment_intent_id)
        if payment is not None and payment.stripe_charge_id is None:
            payment.stripe_charge_id = charge_id
    if payment is None:
        return _drop(db, event_type, "unknown_payment", charge_id=charge_id)

    refunds = (charge.get("refunds") or {}).get("data") or []
    recorded = 0
    try:
        if refunds:
            for refund in refunds:
                created = await payment_service.add_refund(
                    db,
                    payment,
                    amount=_int(refund.get("amount")),
                    stripe_refund_id=_object_id(refund),
                    reason=refund.get("reason"),
                    refunded_at=_timestamp(refund.get("created")) or event_at,
                )
                if created is not None:
                    recorded += 1
        else:
            outstanding = _int(charge.get("amount_refunded")) - payment.refunded_amount
            if outstanding > 0:
                await payment_service.add_refund(
                    db, payment, amount=outstanding, refunded_at=event_at
                )
                recorded += 1
    except ValidationError as exc:
        return _drop(db, event_type, "invalid_refund", charge_id=charge_id, error=exc.message)

    return "ok" if recorded else "duplicate"


EVENT_HANDLERS: dict[str, Handler] = {
    "checkout.session.completed": handle_checkout_completed,
    "customer.subscription.created": handle_subscription_created,
    "customer.subscription.updated": handle_subscription_updated,
    "customer.subscription.deleted": handle_subscription_deleted,
    "invoice.payment_succeeded": handle_invoice_paid,
    "invoice.paid": handle_invoice_paid,
    "invoice.payment_failed": handle_invoice_payment_failed,
    "charge.refunded": handle_charge_refunded,
}


async def process_event(db: AsyncSession, event: dict[str, Any]) -> str:
    """Dispatch a verified Stripe event; unknown event types are acknowledged untouched."""
    event_type = str(event.get("type") or "").strip()
    handler = EVENT_HANDLERS.get(event_type)
    if handler is None:
        logger.debug("Ignoring unhandled Stripe event type %s", event_type)
        return "unhandled"

    data = (event.get("data") or {}).get("object")
    if not isinstance(data, dict):
        return _drop(db, event_type, "missing_object", event_id=event.get("id"))

    event_at = _timestamp(event.get("created")) or datetime.now(UTC)
    outcome = await handler(db, data, event_at)
    logger.info("Stripe event %s (%s): %s", event.get("id"), event_type, outcome)
    return outcome
