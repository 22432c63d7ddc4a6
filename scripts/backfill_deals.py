#!/usr/bin/env python3
"""
Drive the HubSpot backfill to completion.

A scheduled run only fetches hubspot_max_pages_per_run pages; on a fresh
database the backfill therefore takes many hourly runs. This script repeats
incremental runs back to back until the sync state reports a completed
backfill (or --max-runs is reached).

Usage:
    python scripts/backfill_deals.py [--max-runs 100] [--delay 2]
"""
import asyncio
import argparse
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dealboard.models.base import SessionLocal, init_db
from dealboard.services.deal_sync_service import DealSyncService
from dealboard.utils.logger import log


async def main(max_runs: int, delay: float) -> int:
    init_db()
    totals = {"fetched": 0, "imported": 0, "updated": 0, "skipped": 0}

    for run_number in range(1, max_runs + 1):
        db = SessionLocal()
        try:
            service = DealSyncService(db)
            result = await service.run_incremental_sync()
            state = service.get_state()
            complete = state is not None and state.last_successful_sync_at is not None
        finally:
            db.close()

        totals["fetched"] += result.deals_fetched
        totals["imported"] += result.deals_imported
        totals["updated"] += result.deals_updated
        totals["skipped"] += result.deals_skipped
        print(f"Run {run_number}: {result.message}")

        if not result.succeeded:
            print("Run failed; see sync_runs for details")
            return 1
        if complete:
            print(f"\nBackfill complete after {run_number} runs: {totals}")
            return 0

        await asyncio.sleep(delay)

    print(f"\nStopped after {max_runs} runs, backfill not complete yet: {totals}")
    return 2


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Repeat HubSpot incremental syncs until the backfill completes")
    parser.add_argument("--max-runs", type=int, default=100)
    parser.add_argument("--delay", type=float, default=2.0, help="Seconds between runs")
    args = parser.parse_args()

    log.info(f"Starting HubSpot backfill (max {args.max_runs} runs)")
    sys.exit(asyncio.run(main(args.max_runs, args.delay)))
