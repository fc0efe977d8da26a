"""Stripe billing reconciliation service."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from chartsense.models import AnalyticsEvent, Subscription, User
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from api.services.billing_errors import ExternalProviderError
from api.services.entitlement import sync_user_entitlement
from api.services.stripe_service import _get_stripe_client, retrieve_subscription
from api.services.webhook_service import STRIPE_STATUS_MAP, subscription_period

logger = logging.getLogger(__name__)


def _as_datetime(value: Any) -> datetime | None:
    if value is None:
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=UTC)
    except (TypeError, ValueError, OSError):
        return None


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _apply_provider_state(subscription: Subscription, stripe_sub: dict[str, Any]) -> bool:
    changed = False
    next_status = STRIPE_STATUS_MAP.get(str(stripe_sub.get("status") or "").strip())
    if next_status is not None and subscription.status != next_status:
        subscription.status = next_status
        changed = True

    next_period_start, next_period_end = subscription_period(stripe_sub)
    if next_period_start and _as_utc(subscription.current_period_start) != next_period_start:
        subscription.current_period_start = next_period_start
        changed = True
    if next_period_end and _as_utc(subscription.current_period_end) != next_period_end:
        subscription.current_period_end = next_period_end
        changed = True

    next_cancel_at_period_end = bool(stripe_sub.get("cancel_at_period_end", False))
    if subscription.cancel_at_period_end != next_cancel_at_period_end:
        subscription.cancel_at_period_end = next_cancel_at_period_end
        changed = True

    next_canceled_at = _as_datetime(stripe_sub.get("canceled_at"))
    if _as_utc(subscription.canceled_at) != next_canceled_at:
        subscription.canceled_at = next_canceled_at
        changed = True
    return changed


async def run_billing_reconciliation(
    db: AsyncSession,
    *,
    trigger: str = "manual",
) -> dict[str, Any]:
    """Pull every provider-billed subscription and repair drift from missed webhooks."""
    started_at = datetime.now(UTC)
    try:
        _get_stripe_client()
    except RuntimeError as exc:
        summary = {
            "status": "skipped",
            "reason": str(exc),
            "trigger": trigger,
            "started_at": started_at.isoformat(),
        }
        db.add(AnalyticsEvent(event_type="billing.reconciliation.skipped", metadata_json=summary))
        return summary

    result = await db.execute(
        select(Subscription).where(
            Subscription.stripe_subscription_id.is_not(None),
            Subscription.status != "admin_access",
        )
    )
    subscriptions = result.scalars().all()

    scanned = 0
    updated = 0
    failures = 0
    missing = 0

    for sub in subscriptions:
        scanned += 1
        stripe_sub_id = str(sub.stripe_subscription_id or "").strip()
        if not stripe_sub_id:
            continue

        try:
            stripe_sub = await retrieve_subscription(stripe_sub_id)
        except ExternalProviderError as exc:
            failures += 1
            logger.warning("Billing reconciliation failed for %s: %s", stripe_sub_id, exc.message)
            continue

        if not stripe_sub:
            missing += 1
            continue

        if _apply_provider_state(sub, stripe_sub):
            user = await db.get(User, sub.user_id)
            if user is not None:
                sync_user_entitlement(user, sub)
            updated += 1
            logger.info("Reconciled subscription %s to %s", stripe_sub_id, sub.status)

    summary = {
        "status": "ok",
        "trigger": trigger,
        "started_at": started_at.isoformat(),
        "finished_at": datetime.now(UTC).isoformat(),
        "scanned": scanned,
        "updated": updated,
        "missing": missing,
        "failures": failures,
    }
    db.add(AnalyticsEvent(event_type="billing.reconciliation.run", metadata_json=summary))
    return summary
