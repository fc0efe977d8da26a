"""Tests for registration, pricing and registration checkout endpoints."""

import uuid
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, patch

from api.services.billing_errors import EmailInUse, Exhausted, InvalidPromoCode, ValidationError
from api.services.promo_code_service import PriceQuote
from api.services.registration_service import RegistrationResult
from chartsense.models import AnalyticsEvent, PendingRegistration, PromoCode, Subscription, User
from httpx import AsyncClient


def _event_types(mock_db) -> list[str]:
    return [
        call.args[0].event_type
        for call in mock_db.add.call_args_list
        if isinstance(call.args[0], AnalyticsEvent)
    ]


def _register_body(**overrides) -> dict:
    body = {
        "name": "Ada",
        "email": "Ada@Example.com",
        "password": "correct-horse",
        "plan": "monthly",
    }
    body.update(overrides)
    return body


# ──────────────────────────────────────────────
# Registration
# ──────────────────────────────────────────────


class TestRegister:
    async def test_short_password_rejected(self, unauthenticated_client: AsyncClient):
        resp = await unauthenticated_client.post(
            "/v1/auth/register", json=_register_body(password="short")
        )
        assert resp.status_code == 400
        assert resp.json()["code"] == "validation_error"

    async def test_invalid_email_rejected(self, unauthenticated_client: AsyncClient):
        resp = await unauthenticated_client.post(
            "/v1/auth/register", json=_register_body(email="not-an-email")
        )
        assert resp.status_code == 422

    async def test_unknown_plan_rejected(self, unauthenticated_client: AsyncClient):
        resp = await unauthenticated_client.post(
            "/v1/auth/register", json=_register_body(plan="weekly")
        )
        assert resp.status_code == 422

    async def test_paid_plan_returns_pending_registration(
        self, unauthenticated_client: AsyncClient, mock_db
    ):
        pending = PendingRegistration(
            id=uuid.uuid4(),
            email="ada@example.com",
            expires_at=datetime.now(UTC) + timedelta(hours=24),
        )
        quote = PriceQuote(plan="monthly", original_price=3900, discount_amount=0, final_price=3900)
        begin = AsyncMock(
            return_value=RegistrationResult(status="payment_required", quote=quote, pending=pending)
        )
        with patch("api.routers.registration.registration_service.begin_registration", new=begin):
            resp = await unauthenticated_client.post("/v1/auth/register", json=_register_body())

        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "payment_required"
        assert body["pending_registration_id"] == str(pending.id)
        assert body["pricing"]["final_price"] == 3900
        kwargs = begin.await_args.kwargs
        assert kwargs["email"] == "ada@example.com"
        assert kwargs["password_hash"] != "correct-horse"
        assert _event_types(mock_db) == ["registration.started"]

    async def test_free_plan_completes_and_sends_emails(self, unauthenticated_client: AsyncClient):
        user = User(id=uuid.uuid4(), email="ada@example.com", name="Ada", is_admin=False)
        subscription = Subscription(
            id=uuid.uuid4(),
            user_id=user.id,
            status="active",
            plan="monthly",
            amount=0,
            original_amount=3900,
            discount_amount=3900,
            currency="usd",
            current_period_end=datetime.now(UTC) + timedelta(days=30),
            cancel_at_period_end=False,
        )
        promo = PromoCode(id=uuid.uuid4(), code="TESTFREE", type="preset")
        quote = PriceQuote(
            plan="monthly",
            original_price=3900,
            discount_amount=3900,
            final_price=0,
            promo_code=promo,
        )
        result = RegistrationResult(
            status="completed",
            quote=quote,
            user=user,
            subscription=subscription,
            verification_token="tok",
        )
        send = AsyncMock()
        with (
            patch(
                "api.routers.registration.registration_service.begin_registration",
                new=AsyncMock(return_value=result),
            ),
            patch(
                "api.routers.registration.registration_service.send_registration_emails",
                new=send,
            ),
        ):
            resp = await unauthenticated_client.post(
                "/v1/auth/register", json=_register_body(promo_code="testfree")
            )

        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "completed"
        assert body["subscription"]["amount"] == 0
        assert body["subscription"]["has_premium_access"] is True
        assert body["pricing"]["promo_code"] == "TESTFREE"
        send.assert_awaited_once_with(user, "tok")

    async def test_email_in_use_returns_409(self, unauthenticated_client: AsyncClient):
        with patch(
            "api.routers.registration.registration_service.begin_registration",
            new=AsyncMock(side_effect=EmailInUse("An account with this email already exists")),
        ):
            resp = await unauthenticated_client.post("/v1/auth/register", json=_register_body())
        assert resp.status_code == 409
        assert resp.json()["code"] == "email_in_use"

    async def test_exhausted_code_returns_400(self, unauthenticated_client: AsyncClient):
        with patch(
            "api.routers.registration.registration_service.begin_registration",
            new=AsyncMock(side_effect=Exhausted("Promo code has reached its usage limit")),
        ):
            resp = await unauthenticated_client.post(
                "/v1/auth/register", json=_register_body(promo_code="GONE")
            )
        assert resp.status_code == 400
        assert resp.json()["code"] == "promo_code_exhausted"

    async def test_verify_email_unknown_token(self, unauthenticated_client: AsyncClient):
        resp = await unauthenticated_client.post(
            "/v1/auth/verify-email", json={"token": "x" * 43}
        )
        assert resp.status_code == 404


# ──────────────────────────────────────────────
# Pricing and checkout
# ──────────────────────────────────────────────


class TestPricing:
    async def test_list_price_without_code(self, unauthenticated_client: AsyncClient):
        resp = await unauthenticated_client.post("/v1/payment/price", json={"plan": "annual"})
        assert resp.status_code == 200
        body = resp.json()
        assert body["valid"] is True
        assert body["original_price"] == 36000
        assert body["final_price"] == 36000
        assert body["promo_code"] is None

    async def test_unknown_code_returns_400(self, unauthenticated_client: AsyncClient):
        resp = await unauthenticated_client.post(
            "/v1/payment/price", json={"plan": "monthly", "promo_code": "MISSING"}
        )
        assert resp.status_code == 400
        assert resp.json()["code"] == "invalid_promo_code"


class TestRegistrationCheckout:
    async def test_success_returns_session(self, unauthenticated_client: AsyncClient, mock_db):
        checkout = {
            "session_id": "cs_1",
            "url": "https://checkout.stripe.com/c/cs_1",
            "quote": {"final_price": 3900},
        }
        with patch(
            "api.routers.payment.checkout_service.create_registration_checkout",
            new=AsyncMock(return_value=checkout),
        ):
            resp = await unauthenticated_client.post(
                "/v1/payment/checkout/registration",
                json={"pending_registration_id": str(uuid.uuid4())},
            )
        assert resp.status_code == 200
        assert resp.json()["session_id"] == "cs_1"
        assert _event_types(mock_db) == ["checkout.success"]

    async def test_failure_is_recorded_and_mapped(
        self, unauthenticated_client: AsyncClient, mock_db
    ):
        with patch(
            "api.routers.payment.checkout_service.create_registration_checkout",
            new=AsyncMock(side_effect=InvalidPromoCode("Invalid or expired promo code")),
        ):
            resp = await unauthenticated_client.post(
                "/v1/payment/checkout/registration",
                json={"pending_registration_id": str(uuid.uuid4()), "promo_code": "OLD"},
            )
        assert resp.status_code == 400
        assert resp.json()["code"] == "invalid_promo_code"
        assert _event_types(mock_db) == ["checkout.failure"]
        mock_db.rollback.assert_awaited()
        mock_db.commit.assert_awaited()

    async def test_missing_pending_registration(self, unauthenticated_client: AsyncClient):
        resp = await unauthenticated_client.post(
            "/v1/payment/checkout/registration",
            json={"pending_registration_id": str(uuid.uuid4())},
        )
        assert resp.status_code == 404

    async def test_status_requires_identifier(self, unauthenticated_client: AsyncClient):
        resp = await unauthenticated_client.get("/v1/payment/checkout/status")
        assert resp.status_code == 400

    async def test_status_by_email(self, unauthenticated_client: AsyncClient):
        with patch(
            "api.routers.payment.registration_service.get_registration_status",
            new=AsyncMock(return_value={"status": "pending", "can_retry": False}),
        ) as status:
            resp = await unauthenticated_client.get(
                "/v1/payment/checkout/status?email=ada@example.com"
            )
        assert resp.status_code == 200
        assert resp.json()["status"] == "pending"
        assert status.await_args.kwargs == {"email": "ada@example.com", "session_id": None}

    async def test_validation_error_maps_to_400(self, unauthenticated_client: AsyncClient):
        with patch(
            "api.routers.payment.checkout_service.create_registration_checkout",
            new=AsyncMock(side_effect=ValidationError("Registration has expired")),
        ):
            resp = await unauthenticated_client.post(
                "/v1/payment/checkout/registration",
                json={"pending_registration_id": str(uuid.uuid4())},
            )
        assert resp.status_code == 400
        assert resp.json()["detail"] == "Registration has expired"
