#!/usr/bin/env python3
"""
Rebuild the HubSpot deal mirror for the current month only.

Destructive: deletes every mirrored deal, every owner mapping (manual links
included) and every contest entry, then reloads deals whose sale date falls
in the current local month via the HubSpot window search.

Use when the mirror has drifted (e.g. after changing the fulfilled-status
configuration) and an incremental sync cannot repair it.

Usage:
    python scripts/rebuild_current_month.py --yes
    python scripts/rebuild_current_month.py --yes --year 2026 --month 2
"""
import asyncio
import argparse
import sys
import os
from datetime import datetime

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dealboard.config import get_settings
from dealboard.models.base import SessionLocal, init_db
from dealboard.services.deal_sync_service import DealSyncService, has_in_flight_run
from dealboard.utils.dates import local_month_window_utc
from dealboard.utils.logger import log


async def main(year: int = None, month: int = None, force: bool = False) -> int:
    settings = get_settings()
    init_db()

    db = SessionLocal()
    try:
        if not force and has_in_flight_run(db, settings.sync_in_flight_window_hours):
            print("A HubSpot sync is already running; retry later or pass --force")
            return 2

        service = DealSyncService(db, settings=settings)
        if year and month:
            start, end = local_month_window_utc(year, month, settings.local_timezone)
            print(f"Rebuilding {year}-{month:02d} ({start} - {end} UTC)...")
            result = await service.rebuild_window(start, end)
        else:
            print(f"Rebuilding current month ({datetime.now():%Y-%m})...")
            result = await service.rebuild_current_month_only()
    finally:
        db.close()

    print(f"\n{'OK' if result.succeeded else 'FAILED'}: {result.message}")
    print(f"  fetched:  {result.deals_fetched}")
    print(f"  imported: {result.deals_imported}")
    print(f"  updated:  {result.deals_updated}")
    print(f"  skipped:  {result.deals_skipped}")
    if result.run_id:
        print(f"  run id:   {result.run_id}")
    return 0 if result.succeeded else 1


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Rebuild the HubSpot deal mirror for one month")
    parser.add_argument("--yes", action="store_true", help="Confirm deleting mirrored deals, mappings and entries")
    parser.add_argument("--year", type=int, help="Year to rebuild (default: current)")
    parser.add_argument("--month", type=int, choices=range(1, 13), metavar="1-12", help="Month to rebuild (default: current)")
    parser.add_argument("--force", action="store_true", help="Run even if another sync looks in flight")
    args = parser.parse_args()

    if not args.yes:
        parser.error("refusing to delete mirrored data without --yes")
    if bool(args.year) != bool(args.month):
        parser.error("--year and --month must be given together")

    log.info("Starting one-off HubSpot current-month rebuild")
    sys.exit(asyncio.run(main(args.year, args.month, args.force)))
