"""Background maintenance loop (pending-registration purge, billing reconciliation, snapshots)."""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime, timedelta
from typing import Any

from chartsense.config import get_settings
from chartsense.database import get_session
from chartsense.models import AnalyticsEvent
from sqlalchemy.ext.asyncio import AsyncSession

from api.services.billing_reconciliation import run_billing_reconciliation
from api.services.registration_service import purge_expired_pending_registrations
from api.services.reporting import get_entitlement_summary, get_inactive_users

logger = logging.getLogger(__name__)


async def run_entitlement_snapshot(
    db: AsyncSession,
    *,
    trigger: str = "manual",
) -> dict[str, Any]:
    settings = get_settings()
    summary = await get_entitlement_summary(db)
    inactive = await get_inactive_users(db, settings.inactive_user_days)
    summary["inactive_users"] = len(inactive)
    summary["trigger"] = trigger
    if summary["cache_drift"]:
        logger.warning("%s users have drifted entitlement caches", summary["cache_drift"])
    db.add(AnalyticsEvent(event_type="maintenance.snapshot", metadata_json=summary))
    return summary


async def run_maintenance_worker(
    stop_event: asyncio.Event,
    *,
    poll_interval_seconds: float = 300.0,
) -> None:
    settings = get_settings()
    reconcile_interval = timedelta(
        hours=max(1, int(settings.billing_reconciliation_interval_hours))
    )
    snapshot_interval = timedelta(hours=24)
    last_reconcile_at: datetime | None = None
    last_snapshot_at: datetime | None = None

    logger.info("Maintenance worker started")
    try:
        while not stop_event.is_set():
            now = datetime.now(UTC)

            try:
                async with get_session() as db:
                    await purge_expired_pending_registrations(db)
            except Exception:
                logger.exception("Pending registration purge failed")

            if last_reconcile_at is None or (now - last_reconcile_at) >= reconcile_interval:
                try:
                    async with get_session() as db:
                        await run_billing_reconciliation(db, trigger="scheduled")
                    last_reconcile_at = datetime.now(UTC)
                except Exception:
                    logger.exception("Scheduled billing reconciliation failed")

            if last_snapshot_at is None or (now - last_snapshot_at) >= snapshot_interval:
                try:
                    async with get_session() as db:
                        await run_entitlement_snapshot(db, trigger="scheduled")
                    last_snapshot_at = datetime.now(UTC)
                except Exception:
                    logger.exception("Scheduled entitlement snapshot failed")

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=poll_interval_seconds)
            except TimeoutError:
                pass
    finally:
        logger.info("Maintenance worker stopped")
