"""Pending registrations, the free (no-payment) path and email verification."""

from __future__ import annotations

import hashlib
import logging
import secrets
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from chartsense.config import get_settings
from chartsense.models import EmailVerificationToken, PendingRegistration, Subscription, User
from jose import JWTError, jwt
from sqlalchemy import delete, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from api.services import email_service, stripe_service
from api.services.billing_errors import EmailInUse, ExternalProviderError, NotFound, ValidationError
from api.services.promo_code_service import PriceQuote, list_price, price, redeem
from api.services.subscription_service import activate_subscription

logger = logging.getLogger(__name__)

REGISTRATION_TOKEN_TYPE = "registration_intent"


@dataclass
class RegistrationResult:
    status: str
    quote: PriceQuote
    pending: PendingRegistration | None = None
    user: User | None = None
    subscription: Subscription | None = None
    verification_token: str | None = None


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _hash_token(raw_token: str) -> str:
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


def is_pending_registration_expired(
    pending: PendingRegistration,
    now: datetime | None = None,
) -> bool:
    """Expired rows and abandoned checkouts no longer reserve the email."""
    settings = get_settings()
    current = now or datetime.now(UTC)
    if pending.status == "expired":
        return True
    expires_at = _as_utc(pending.expires_at)
    if expires_at is not None and current >= expires_at:
        return True
    started_at = _as_utc(pending.checkout_started_at)
    if pending.status == "checkout_started" and started_at is not None:
        return current - started_at > timedelta(minutes=settings.checkout_stale_minutes)
    return False


def encode_registration_token(pending: PendingRegistration, *, now: datetime | None = None) -> str:
    """Sign everything needed to create the account once payment completes."""
    settings = get_settings()
    current = now or datetime.now(UTC)
    payload = {
        "type": REGISTRATION_TOKEN_TYPE,
        "pending_id": str(pending.id),
        "name": pending.name,
        "email": pending.email,
        "password_hash": pending.password_hash,
        "promo_code": pending.promo_code,
        "plan": pending.plan,
        "iat": int(current.timestamp()),
        "exp": current + timedelta(hours=settings.registration_token_ttl_hours),
    }
    return jwt.encode(payload, settings.secret_key, algorithm=settings.jwt_algorithm)


def decode_registration_token(token: str) -> dict[str, Any]:
    """Decode a registration token; raises ValueError when it cannot be trusted."""
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError as exc:
        raise ValueError("Invalid registration token") from exc
    if payload.get("type") != REGISTRATION_TOKEN_TYPE:
        raise ValueError("Invalid registration token type")
    for field in ("name", "email", "password_hash", "plan"):
        if not str(payload.get(field) or "").strip():
            raise ValueError(f"Registration token is missing {field}")
    return payload


async def get_user_by_email(db: AsyncSession, email: str) -> User | None:
    result = await db.execute(select(User).where(User.email == email.strip().lower()))
    return result.scalars().first()


async def issue_verification_token(db: AsyncSession, user: User) -> str:
    settings = get_settings()
    raw_token = secrets.token_urlsafe(32)
    db.add(
        EmailVerificationToken(
            user_id=user.id,
            token_hash=_hash_token(raw_token),
            expires_at=datetime.now(UTC) + timedelta(hours=settings.email_verification_ttl_hours),
        )
    )
    await db.flush()
    return raw_token


async def create_user(
    db: AsyncSession,
    *,
    name: str,
    email: str,
    password_hash: str,
    promo_code: str | None = None,
) -> User:
    user = User(
        name=name.strip(),
        email=email.strip().lower(),
        password_hash=password_hash,
        registration_promo_code=promo_code,
        subscription_status="none",
        subscription_tier="free",
        has_active_subscription=False,
    )
    db.add(user)
    await db.flush()
    return user


async def begin_registration(
    db: AsyncSession,
    *,
    name: str,
    email: str,
    password_hash: str,
    plan: str,
    promo_code: str | None = None,
    now: datetime | None = None,
) -> RegistrationResult:
    """Start a registration.

    Paid plans park a PendingRegistration until checkout completes. A promo code that
    prices the plan to zero creates the account, subscription and redemption right away
    in the caller's transaction, so any failure leaves nothing behind.
    """
    settings = get_settings()
    current = now or datetime.now(UTC)
    normalized_email = email.strip().lower()
    list_price(plan)

    if await get_user_by_email(db, normalized_email) is not None:
        raise EmailInUse("An account with this email already exists")

    result = await db.execute(
        select(PendingRegistration)
        .where(PendingRegistration.email == normalized_email)
        .with_for_update()
    )
    existing_pending = result.scalars().first()
    if existing_pending is not None:
        if not is_pending_registration_expired(existing_pending, current):
            raise EmailInUse("A registration for this email is already in progress")
        await db.delete(existing_pending)
        await db.flush()

    normalized_code = promo_code.strip().upper() if promo_code and promo_code.strip() else None
    quote = await price(db, plan, normalized_code, now=current)

    if quote.is_free:
        user = await create_user(
            db,
            name=name,
            email=normalized_email,
            password_hash=password_hash,
            promo_code=normalized_code,
        )
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
        token = await issue_verification_token(db, user)
        logger.info("Registered %s on the free path with code %s", user.id, normalized_code)
        return RegistrationResult(
            status="completed",
            quote=quote,
            user=user,
            subscription=subscription,
            verification_token=token,
        )

    pending = PendingRegistration(
        name=name.strip(),
        email=normalized_email,
        password_hash=password_hash,
        promo_code=normalized_code,
        plan=plan,
        status="pending",
        last_activity_at=current,
        created_at=current,
        expires_at=current + timedelta(hours=settings.pending_registration_ttl_hours),
    )
    db.add(pending)
    await db.flush()
    return RegistrationResult(status="payment_required", quote=quote, pending=pending)


async def send_registration_emails(user: User, verification_token: str | None) -> None:
    """Fire-and-forget verification + welcome emails; failures are only logged."""
    if verification_token and not user.is_verified:
        await email_service.send_verification_email(user, verification_token)
    if not user.has_received_welcome_email:
        if await email_service.send_welcome_email(user):
            user.has_received_welcome_email = True


async def get_registration_status(
    db: AsyncSession,
    *,
    email: str | None = None,
    session_id: str | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Report where a registration stands so the client can redirect or retry."""
    if not email and not session_id:
        raise ValidationError("Session ID or email is required")
    settings = get_settings()
    current = now or datetime.now(UTC)

    if session_id:
        result = await db.execute(
            select(PendingRegistration).where(PendingRegistration.stripe_session_id == session_id)
        )
        pending = result.scalars().first()
        try:
            session = await stripe_service.retrieve_checkout_session(session_id)
        except ExternalProviderError:
            logger.warning("Could not retrieve checkout session %s", session_id)
            if pending is not None:
                pending.status = "expired"
            return {"status": "not_found", "can_retry": True}

        customer_email = (
            (session.get("customer_details") or {}).get("email")
            or session.get("customer_email")
            or (session.get("metadata") or {}).get("email")
            or (pending.email if pending is not None else None)
        )
        response: dict[str, Any] = {
            "session_id": session_id,
            "payment_status": session.get("payment_status"),
            "session_status": session.get("status"),
        }
        if session.get("payment_status") == "paid":
            user = await get_user_by_email(db, customer_email) if customer_email else None
            if user is not None:
                response["status"] = "completed"
                response["redirect"] = "/dashboard" if user.is_verified else "/verify-email"
            else:
                response["status"] = "processing"
        elif session.get("status") == "expired":
            if pending is not None:
                pending.status = "expired"
            response["status"] = "expired"
            response["can_retry"] = True
        else:
            response["status"] = "incomplete"
            response["can_retry"] = True
        return response

    normalized_email = str(email).strip().lower()
    if await get_user_by_email(db, normalized_email) is not None:
        return {"status": "completed", "redirect": "/login"}

    result = await db.execute(
        select(PendingRegistration).where(PendingRegistration.email == normalized_email)
    )
    pending = result.scalars().first()
    if pending is None:
        return {"status": "not_found", "can_retry": True}
    if is_pending_registration_expired(pending, current):
        pending.status = "expired"
        return {"status": "expired", "can_retry": True, "email": normalized_email}

    seconds_remaining = None
    started_at = _as_utc(pending.checkout_started_at)
    if started_at is not None:
        stale_at = started_at + timedelta(minutes=settings.checkout_stale_minutes)
        seconds_remaining = max(0, int((stale_at - current).total_seconds()))
    return {
        "status": pending.status,
        "can_retry": False,
        "seconds_remaining": seconds_remaining,
    }


async def purge_expired_pending_registrations(
    db: AsyncSession,
    *,
    now: datetime | None = None,
) -> int:
    """Delete pending rows that expired, went stale in checkout, or became real users."""
    settings = get_settings()
    current = now or datetime.now(UTC)
    stale_cutoff = current - timedelta(minutes=settings.checkout_stale_minutes)
    deleted = (
        await db.execute(
            delete(PendingRegistration).where(
                or_(
                    PendingRegistration.status == "expired",
                    PendingRegistration.expires_at <= current,
                    (PendingRegistration.status == "checkout_started")
                    & (PendingRegistration.checkout_started_at < stale_cutoff),
                    PendingRegistration.email.in_(select(User.email)),
                )
            ).execution_options(synchronize_session=False)
        )
    ).rowcount or 0
    if deleted:
        logger.info("Purged %s expired pending registrations", deleted)
    return deleted


async def verify_email(db: AsyncSession, raw_token: str) -> User:
    token_hash = _hash_token(raw_token.strip())
    result = await db.execute(
        select(EmailVerificationToken).where(EmailVerificationToken.token_hash == token_hash)
    )
    token = result.scalars().first()
    now = datetime.now(UTC)
    if token is None or token.used_at is not None:
        raise NotFound("Verification link is invalid or has already been used")
    expires_at = _as_utc(token.expires_at)
    if expires_at is not None and expires_at <= now:
        raise ValidationError("Verification link has expired")

    user = await db.get(User, token.user_id)
    if user is None:
        raise NotFound("User not found")
    user.is_verified = True
    token.used_at = now
    await db.flush()
    return user


def parse_uuid(value: Any) -> uuid.UUID | None:
    raw = str(value or "").strip()
    if not raw:
        return None
    try:
        return uuid.UUID(raw)
    except ValueError:
        return None
