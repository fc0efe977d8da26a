"""Tests for the billing maintenance command."""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, patch

import pytest
from api.scripts.billing_maintenance import main, run_billing_maintenance
from api.services.promo_code_service import PRESET_CODES
from chartsense.models import PendingRegistration, PromoCode
from sqlalchemy import func, select


async def _count(session_factory, model) -> int:
    async with session_factory() as db:
        return (await db.execute(select(func.count()).select_from(model))).scalar_one()


@pytest.fixture
def patched_factory(session_factory):
    with (
        patch("api.scripts.billing_maintenance.get_session_factory", return_value=session_factory),
        patch("api.scripts.billing_maintenance.close_engine", new=AsyncMock()),
    ):
        yield session_factory


async def test_seeds_presets_and_purges(patched_factory):
    async with patched_factory() as db:
        db.add(
            PendingRegistration(
                name="Old",
                email="old@example.com",
                password_hash="hashed",
                expires_at=datetime.now(UTC) - timedelta(hours=1),
            )
        )
        await db.commit()

    stats = await run_billing_maintenance(
        seed_presets=True, purge=True, reconcile=False, dry_run=False
    )

    assert stats == {"presets_created": len(PRESET_CODES), "registrations_purged": 1}
    assert await _count(patched_factory, PromoCode) == len(PRESET_CODES)
    assert await _count(patched_factory, PendingRegistration) == 0


async def test_dry_run_writes_nothing(patched_factory):
    stats = await run_billing_maintenance(
        seed_presets=True, purge=False, reconcile=False, dry_run=True
    )

    assert stats["presets_created"] == len(PRESET_CODES)
    assert await _count(patched_factory, PromoCode) == 0


def test_requires_a_task(monkeypatch):
    monkeypatch.setattr("sys.argv", ["billing_maintenance"])
    with pytest.raises(SystemExit):
        main()
