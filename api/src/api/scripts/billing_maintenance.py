"""One-off billing maintenance: seed preset codes, purge registrations, reconcile."""

from __future__ import annotations

import argparse
import asyncio
from typing import Any

from chartsense.database import close_engine, get_session_factory

from api.services.billing_reconciliation import run_billing_reconciliation
from api.services.promo_code_service import seed_preset_codes
from api.services.registration_service import purge_expired_pending_registrations


async def run_billing_maintenance(
    *,
    seed_presets: bool,
    purge: bool,
    reconcile: bool,
    dry_run: bool,
) -> dict[str, Any]:
    factory = get_session_factory()
    stats: dict[str, Any] = {"presets_created": 0, "registrations_purged": 0}

    async with factory() as db:
        if seed_presets:
            created = await seed_preset_codes(db)
            stats["presets_created"] = len(created)
        if purge:
            stats["registrations_purged"] = await purge_expired_pending_registrations(db)
        if reconcile:
            stats["reconciliation"] = await run_billing_reconciliation(db, trigger="cli")

        if dry_run:
            await db.rollback()
        else:
            await db.commit()

    await close_engine()
    return stats


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run billing maintenance tasks.")
    parser.add_argument(
        "--seed-presets",
        action="store_true",
        help="Create any missing preset promo codes.",
    )
    parser.add_argument(
        "--purge",
        action="store_true",
        help="Delete expired and converted pending registrations.",
    )
    parser.add_argument(
        "--reconcile",
        action="store_true",
        help="Pull provider subscription state and repair drift.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report what would change without committing database writes.",
    )
    return parser


def main() -> None:
    args = _parser().parse_args()
    if not (args.seed_presets or args.purge or args.reconcile):
        _parser().error("choose at least one of --seed-presets, --purge, --reconcile")
    stats = asyncio.run(
        run_billing_maintenance(
            seed_presets=bool(args.seed_presets),
            purge=bool(args.purge),
            reconcile=bool(args.reconcile),
            dry_run=bool(args.dry_run),
        )
    )
    reconciliation = stats.get("reconciliation") or {}
    print(
        "billing-maintenance:",
        f"presets_created={stats['presets_created']}",
        f"registrations_purged={stats['registrations_purged']}",
        f"reconcile={reconciliation.get('status', 'not-run')}",
        "(dry-run)" if args.dry_run else "",
    )


if __name__ == "__main__":
    main()
