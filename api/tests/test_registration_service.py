"""Tests for pending registrations, the free path and email verification."""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, patch

import pytest
from api.services.billing_errors import EmailInUse, Exhausted, NotFound, ValidationError
from api.services.promo_code_service import seed_preset_codes
from api.services.registration_service import (
    begin_registration,
    decode_registration_token,
    encode_registration_token,
    get_registration_status,
    is_pending_registration_expired,
    issue_verification_token,
    purge_expired_pending_registrations,
    verify_email,
)
from chartsense.models import (
    EmailVerificationToken,
    PendingRegistration,
    PromoCode,
    PromoCodeRedemption,
    User,
)
from sqlalchemy import func, select

NOW = datetime.now(UTC).replace(microsecond=0)


async def _register(db, email="new@example.com", plan="monthly", promo_code=None, now=NOW):
    return await begin_registration(
        db,
        name="New Person",
        email=email,
        password_hash="hashed",
        plan=plan,
        promo_code=promo_code,
        now=now,
    )


# ──────────────────────────────────────────────
# Paid path
# ──────────────────────────────────────────────


class TestBeginRegistrationPaid:
    async def test_creates_pending_registration(self, db_session):
        result = await _register(db_session, email="  New@Example.com ")

        assert result.status == "payment_required"
        assert result.quote.final_price == 3900
        assert result.pending.email == "new@example.com"
        assert result.pending.status == "pending"
        expires_at = result.pending.expires_at.replace(tzinfo=UTC)
        assert expires_at == NOW + timedelta(hours=24)
        users = await db_session.scalar(select(func.count()).select_from(User))
        assert users == 0

    async def test_existing_user_blocks(self, db_session, make_user):
        await make_user("taken@example.com")
        with pytest.raises(EmailInUse):
            await _register(db_session, email="taken@example.com")

    async def test_live_pending_registration_blocks(self, db_session):
        await _register(db_session)
        with pytest.raises(EmailInUse):
            await _register(db_session, now=NOW + timedelta(minutes=1))

    async def test_expired_pending_registration_is_replaced(self, db_session):
        first = await _register(db_session, now=NOW - timedelta(hours=25))

        second = await _register(db_session, plan="annual")

        assert second.status == "payment_required"
        assert second.pending.id != first.pending.id
        assert second.pending.plan == "annual"
        count = await db_session.scalar(select(func.count()).select_from(PendingRegistration))
        assert count == 1

    async def test_stale_checkout_does_not_block(self, db_session):
        first = await _register(db_session)
        first.pending.status = "checkout_started"
        first.pending.checkout_started_at = NOW - timedelta(minutes=6)
        await db_session.flush()

        second = await _register(db_session)
        assert second.status == "payment_required"

    async def test_discount_code_is_priced_but_not_redeemed(self, db_session, make_promo):
        promo = await make_promo("HALF", discount_value=50)
        result = await _register(db_session, promo_code="half")

        assert result.status == "payment_required"
        assert result.quote.final_price == 1950
        assert result.pending.promo_code == "HALF"
        await db_session.refresh(promo)
        assert promo.current_uses == 0


# ──────────────────────────────────────────────
# Free path
# ──────────────────────────────────────────────


class TestBeginRegistrationFree:
    async def test_full_discount_creates_user_and_redeems(self, db_session):
        await seed_preset_codes(db_session, now=NOW)

        result = await _register(db_session, promo_code="TESTFREE")

        assert result.status == "completed"
        assert result.user.email == "new@example.com"
        assert result.user.has_active_subscription is True
        assert result.subscription.amount == 0
        assert result.subscription.original_amount == 3900
        assert result.subscription.discount_amount == 3900
        assert result.verification_token
        promo = (
            await db_session.execute(select(PromoCode).where(PromoCode.code == "TESTFREE"))
        ).scalars().first()
        assert promo.current_uses == 1
        redemptions = await db_session.scalar(
            select(func.count()).select_from(PromoCodeRedemption)
        )
        assert redemptions == 1
        pending = await db_session.scalar(select(func.count()).select_from(PendingRegistration))
        assert pending == 0

    async def test_full_access_code_is_open_ended(self, db_session, make_promo):
        await make_promo("STAFF", type="full_access", discount_type="free_access", discount_value=0)

        result = await _register(db_session, plan="annual", promo_code="STAFF")

        assert result.subscription.current_period_end is None
        assert result.subscription.status == "active"

    async def test_redeem_failure_aborts_registration(self, db_session, make_promo):
        await make_promo("FREEBIE", discount_type="free_access", discount_value=0)

        with patch(
            "api.services.registration_service.redeem",
            new=AsyncMock(side_effect=Exhausted("Promo code has reached its usage limit")),
        ):
            with pytest.raises(Exhausted):
                await _register(db_session, promo_code="FREEBIE")


# ──────────────────────────────────────────────
# Expiry, tokens, status
# ──────────────────────────────────────────────


class TestPendingExpiry:
    def test_expiry_rules(self):
        pending = PendingRegistration(
            status="pending", expires_at=NOW + timedelta(hours=1), checkout_started_at=None
        )
        assert is_pending_registration_expired(pending, NOW) is False
        assert is_pending_registration_expired(pending, NOW + timedelta(hours=1)) is True

        pending.status = "checkout_started"
        pending.checkout_started_at = NOW
        assert is_pending_registration_expired(pending, NOW + timedelta(minutes=4)) is False
        assert is_pending_registration_expired(pending, NOW + timedelta(minutes=6)) is True

        pending.status = "expired"
        assert is_pending_registration_expired(pending, NOW) is True

    async def test_purge_removes_only_dead_rows(self, db_session, make_user):
        live = await _register(db_session, email="live@example.com")
        await _register(db_session, email="old@example.com", now=NOW - timedelta(days=2))
        converted = await _register(db_session, email="converted@example.com")
        del converted
        await make_user("converted@example.com")

        purged = await purge_expired_pending_registrations(db_session, now=NOW)

        assert purged == 2
        remaining = (await db_session.execute(select(PendingRegistration))).scalars().all()
        assert [p.id for p in remaining] == [live.pending.id]


class TestRegistrationToken:
    async def test_round_trip_carries_account_fields(self, db_session):
        result = await _register(db_session)
        payload = decode_registration_token(encode_registration_token(result.pending))
        assert payload["email"] == "new@example.com"
        assert payload["pending_id"] == str(result.pending.id)
        assert payload["plan"] == "monthly"

    def test_garbage_is_rejected(self):
        with pytest.raises(ValueError):
            decode_registration_token("not-a-token")


class TestRegistrationStatus:
    async def test_requires_identifier(self, db_session):
        with pytest.raises(ValidationError):
            await get_registration_status(db_session)

    async def test_by_email(self, db_session, make_user):
        assert (await get_registration_status(db_session, email="x@example.com"))[
            "status"
        ] == "not_found"

        await _register(db_session)
        status = await get_registration_status(db_session, email="new@example.com", now=NOW)
        assert status["status"] == "pending"
        assert status["can_retry"] is False

        await make_user("done@example.com")
        done = await get_registration_status(db_session, email="done@example.com")
        assert done == {"status": "completed", "redirect": "/login"}

    async def test_by_email_expired(self, db_session):
        await _register(db_session, now=NOW - timedelta(days=2))
        status = await get_registration_status(db_session, email="new@example.com", now=NOW)
        assert status["status"] == "expired"
        assert status["can_retry"] is True

    async def test_paid_session_with_user(self, db_session, make_user):
        await make_user("paid@example.com", is_verified=True)
        session = {
            "payment_status": "paid",
            "status": "complete",
            "customer_details": {"email": "paid@example.com"},
        }
        with patch(
            "api.services.registration_service.stripe_service.retrieve_checkout_session",
            new=AsyncMock(return_value=session),
        ):
            status = await get_registration_status(db_session, session_id="cs_paid")
        assert status["status"] == "completed"
        assert status["redirect"] == "/dashboard"

    async def test_paid_session_before_webhook(self, db_session):
        session = {"payment_status": "paid", "status": "complete", "customer_email": "p@x.io"}
        with patch(
            "api.services.registration_service.stripe_service.retrieve_checkout_session",
            new=AsyncMock(return_value=session),
        ):
            status = await get_registration_status(db_session, session_id="cs_paid")
        assert status["status"] == "processing"

    async def test_expired_session_marks_pending(self, db_session):
        result = await _register(db_session)
        result.pending.stripe_session_id = "cs_old"
        await db_session.flush()
        session = {"payment_status": "unpaid", "status": "expired"}
        with patch(
            "api.services.registration_service.stripe_service.retrieve_checkout_session",
            new=AsyncMock(return_value=session),
        ):
            status = await get_registration_status(db_session, session_id="cs_old")
        assert status["status"] == "expired"
        assert result.pending.status == "expired"


# ──────────────────────────────────────────────
# Email verification
# ──────────────────────────────────────────────


class TestVerifyEmail:
    async def test_marks_user_verified_once(self, db_session, make_user):
        user = await make_user()
        token = await issue_verification_token(db_session, user)

        verified = await verify_email(db_session, token)
        assert verified.is_verified is True

        with pytest.raises(NotFound):
            await verify_email(db_session, token)

    async def test_expired_token(self, db_session, make_user):
        user = await make_user()
        token = await issue_verification_token(db_session, user)
        row = (await db_session.execute(select(EmailVerificationToken))).scalars().first()
        row.expires_at = datetime.now(UTC) - timedelta(minutes=1)
        await db_session.flush()

        with pytest.raises(ValidationError):
            await verify_email(db_session, token)

    async def test_unknown_token(self, db_session):
        with pytest.raises(NotFound):
            await verify_email(db_session, "nope")
