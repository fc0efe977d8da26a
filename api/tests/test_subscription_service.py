"""Tests for subscription lifecycle transitions and their audit trail."""

import uuid
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, patch

import pytest
from api.services.billing_errors import ExternalProviderError, NotFound, ValidationError
from api.services.subscription_service import (
    activate_subscription,
    add_months,
    cancel_subscription,
    change_plan,
    extend_subscription,
    grant_admin_access,
    grant_free_access,
    reactivate_subscription,
    serialize_subscription,
)
from chartsense.models import AuditLog, Subscription
from sqlalchemy import select


async def _audit_actions(db) -> list[str]:
    result = await db.execute(select(AuditLog).order_by(AuditLog.created_at))
    return [row.action for row in result.scalars().all()]


@pytest.fixture
async def admin(make_user):
    return await make_user("admin@example.com", is_admin=True)


@pytest.fixture
async def member(make_user):
    return await make_user("member@example.com")


class TestAddMonths:
    def test_clamps_to_month_end(self):
        assert add_months(datetime(2026, 1, 31, tzinfo=UTC), 1) == datetime(2026, 2, 28, tzinfo=UTC)

    def test_rolls_year(self):
        assert add_months(datetime(2026, 11, 15, tzinfo=UTC), 12) == datetime(
            2027, 11, 15, tzinfo=UTC
        )


class TestActivate:
    async def test_monthly_period(self, db_session, member):
        start = datetime(2026, 1, 31, 9, 0, tzinfo=UTC)
        subscription = await activate_subscription(
            db_session,
            member,
            plan="monthly",
            amount=3900,
            original_amount=3900,
            discount_amount=0,
            now=start,
        )
        assert subscription.status == "active"
        assert subscription.current_period_end == datetime(2026, 2, 28, 9, 0, tzinfo=UTC)
        assert member.subscription_tier == "monthly"

    async def test_reactivation_reuses_row(self, db_session, member):
        for plan in ("monthly", "annual"):
            await activate_subscription(
                db_session,
                member,
                plan=plan,
                amount=0,
                original_amount=0,
                discount_amount=0,
            )
        rows = (await db_session.execute(select(Subscription))).scalars().all()
        assert len(rows) == 1
        assert rows[0].plan == "annual"


class TestAdminTransitions:
    async def test_grant_admin_access(self, db_session, admin, member):
        subscription = await grant_admin_access(db_session, admin, member.id, reason="staff")

        assert subscription.status == "admin_access"
        assert subscription.current_period_end is None
        assert member.is_admin is True
        assert member.subscription_tier == "admin"
        assert await _audit_actions(db_session) == ["subscription.grant_admin_access"]

    async def test_grant_free_access(self, db_session, admin, member):
        before = datetime.now(UTC)
        subscription = await grant_free_access(db_session, admin, member.id, duration_days=14)

        assert subscription.amount == 0
        assert subscription.current_period_end >= before + timedelta(days=14)
        assert member.has_active_subscription is True
        row = (await db_session.execute(select(AuditLog))).scalars().one()
        assert row.detail["duration_days"] == 14
        assert row.detail["before"] is None
        assert row.detail["after"]["status"] == "active"

    async def test_unknown_user(self, db_session, admin):
        with pytest.raises(NotFound):
            await grant_free_access(db_session, admin, uuid.uuid4())

    async def test_extend_revives_cancelled(self, db_session, admin, member):
        subscription = await grant_free_access(db_session, admin, member.id, duration_days=1)
        subscription.status = "cancelled"
        previous_end = subscription.current_period_end

        await extend_subscription(db_session, admin, subscription.id, days=10)

        assert subscription.status == "active"
        assert subscription.current_period_end == previous_end + timedelta(days=10)
        assert member.has_active_subscription is True

    async def test_extend_rejects_non_positive_days(self, db_session, admin):
        with pytest.raises(ValidationError):
            await extend_subscription(db_session, admin, uuid.uuid4(), days=0)

    async def test_change_plan_uses_list_price(self, db_session, admin, member):
        subscription = await grant_free_access(db_session, admin, member.id)

        await change_plan(db_session, admin, subscription.id, "annual", reason="upgrade")

        assert subscription.plan == "annual"
        assert subscription.amount == 36000
        assert member.subscription_tier == "annual"
        row = (
            await db_session.execute(
                select(AuditLog).where(AuditLog.action == "subscription.change_plan")
            )
        ).scalars().one()
        assert row.detail["before"]["plan"] == "monthly"
        assert row.detail["after"]["plan"] == "annual"
        assert row.detail["reason"] == "upgrade"
        assert row.user_id == admin.id

    async def test_change_plan_resets_discount_after_free_grant(self, db_session, admin, member):
        subscription = await grant_free_access(db_session, admin, member.id)
        assert subscription.amount == 0

        await change_plan(db_session, admin, subscription.id, "annual")

        assert subscription.original_amount == 36000
        assert subscription.discount_amount == 0
        assert subscription.amount == 36000
        assert subscription.amount == subscription.original_amount - subscription.discount_amount

    async def test_change_plan_rejects_unknown(self, db_session, admin, member):
        subscription = await grant_free_access(db_session, admin, member.id)
        with pytest.raises(ValidationError):
            await change_plan(db_session, admin, subscription.id, "lifetime")


class TestCancelAndReactivate:
    async def test_immediate_cancel_revokes_access(self, db_session, admin, member):
        subscription = await grant_free_access(db_session, admin, member.id)

        await cancel_subscription(db_session, admin, subscription.id, immediate=True)

        assert subscription.status == "cancelled"
        assert subscription.canceled_at is not None
        assert member.has_active_subscription is False

    async def test_provider_failure_keeps_local_cancel(self, db_session, admin, member):
        subscription = await activate_subscription(
            db_session,
            member,
            plan="monthly",
            amount=3900,
            original_amount=3900,
            discount_amount=0,
            stripe_subscription_id="sub_fail",
        )
        with patch(
            "api.services.subscription_service.stripe_service.cancel_subscription",
            new=AsyncMock(side_effect=ExternalProviderError("down")),
        ):
            await cancel_subscription(db_session, admin, subscription.id, immediate=False)

        assert subscription.cancel_at_period_end is True
        assert subscription.status == "active"
        row = (await db_session.execute(select(AuditLog))).scalars().one()
        assert row.detail["provider_synced"] is False
        assert row.detail["immediate"] is False

    async def test_reactivate_requires_stripe_subscription(self, db_session, admin, member):
        subscription = await grant_free_access(db_session, admin, member.id)
        with pytest.raises(ValidationError):
            await reactivate_subscription(db_session, admin, subscription.id)

    async def test_reactivate_clears_pending_cancel(self, db_session, admin, member):
        subscription = await activate_subscription(
            db_session,
            member,
            plan="monthly",
            amount=3900,
            original_amount=3900,
            discount_amount=0,
            stripe_subscription_id="sub_ok",
        )
        subscription.cancel_at_period_end = True
        resume = AsyncMock()
        with patch(
            "api.services.subscription_service.stripe_service.resume_subscription", new=resume
        ):
            await reactivate_subscription(db_session, admin, subscription.id)

        resume.assert_awaited_once_with("sub_ok")
        assert subscription.cancel_at_period_end is False
        assert await _audit_actions(db_session) == ["subscription.reactivate"]


class TestSerialize:
    def test_days_remaining(self):
        now = datetime(2026, 1, 1, tzinfo=UTC)
        subscription = Subscription(
            status="active",
            plan="monthly",
            current_period_end=now + timedelta(days=5, hours=2),
            cancel_at_period_end=False,
        )
        payload = serialize_subscription(subscription, now=now)
        assert payload["days_remaining"] == 5
        assert payload["is_expired"] is False
        assert payload["has_stripe_subscription"] is False

    def test_admin_access_has_no_countdown(self):
        subscription = Subscription(status="admin_access", plan="admin", current_period_end=None)
        assert serialize_subscription(subscription)["days_remaining"] is None
