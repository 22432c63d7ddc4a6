"""
Scheduler for the HubSpot deal sync

Uses APScheduler to run the incremental sync at the top of every hour (UTC).
A run is skipped while another one is still marked Started within the
in-flight window.
"""
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
import asyncio
from typing import Optional

from sqlalchemy.orm import Session

from dealboard.models.base import SessionLocal
from dealboard.services.deal_sync_service import DealSyncService, SyncRunResult, has_in_flight_run
from dealboard.config import get_settings
from dealboard.utils.logger import log

settings = get_settings()
scheduler = AsyncIOScheduler(timezone="UTC")

DEAL_SYNC_JOB_ID = "hubspot_deal_sync"


# Sync Functions

async def sync_hubspot_deals(db: Optional[Session] = None) -> Optional[SyncRunResult]:
    """
    Scheduled incremental deal sync.

    Returns:
        The run result, or None when skipped (disabled or already running)
    """
    if not settings.hubspot_enabled:
        log.debug("HubSpot sync disabled, skipping scheduled run")
        return None

    own_session = db is None
    db = db or SessionLocal()
    try:
        if has_in_flight_run(db, settings.sync_in_flight_window_hours):
            log.info("HubSpot sync already in flight, skipping scheduled run")
            return None

        result = await DealSyncService(db, settings=settings).run_incremental_sync()
        if result.succeeded:
            log.info(f"Scheduled HubSpot sync completed: {result.message}")
        else:
            log.error(f"Scheduled HubSpot sync failed (run {result.run_id})")
        return result

    except Exception as e:
        log.error(f"HubSpot sync error: {str(e)}")
        return None
    finally:
        if own_session:
            db.close()


async def rebuild_current_month(db: Optional[Session] = None) -> SyncRunResult:
    """One-off destructive rebuild of the current month"""
    own_session = db is None
    db = db or SessionLocal()
    try:
        return await DealSyncService(db, settings=settings).rebuild_current_month_only()
    finally:
        if own_session:
            db.close()


def setup_scheduler():
    """
    Configure the scheduler.

    - HubSpot deals: deal_sync_schedule (default top of every hour, UTC)
    """
    scheduler.add_job(
        sync_hubspot_deals,
        trigger=CronTrigger.from_crontab(settings.deal_sync_schedule, timezone="UTC"),
        id=DEAL_SYNC_JOB_ID,
        name='HubSpot Deal Sync',
        replace_existing=True,
        max_instances=1,
        coalesce=True
    )

    log.info(f"Scheduler configured: HubSpot deal sync '{settings.deal_sync_schedule}' (UTC)")


def start_scheduler():
    """Start the scheduler"""
    setup_scheduler()
    scheduler.start()
    log.info("Scheduler started")


def stop_scheduler():
    """Stop the scheduler"""
    if scheduler.running:
        scheduler.shutdown()
    log.info("Scheduler stopped")


def run_sync_now(job_name: str) -> dict:
    """
    Manually run a job outside the schedule (CLI use; not inside a running loop)

    Args:
        job_name: 'sync' or 'rebuild-current-month'

    Returns:
        Dict with run results
    """
    jobs = {
        'sync': sync_hubspot_deals,
        'rebuild-current-month': rebuild_current_month,
    }

    if job_name not in jobs:
        return {
            'success': False,
            'error': f'Unknown job: {job_name}. Valid options: {", ".join(jobs.keys())}'
        }

    log.info(f"Manually triggering {job_name}...")
    result = asyncio.run(jobs[job_name]())

    if result is None:
        return {'success': True, 'message': f'{job_name} skipped (disabled or already running)'}
    return {'success': result.succeeded, **result.to_dict()}


def get_scheduled_jobs() -> list:
    """
    Get list of all scheduled jobs

    Returns:
        List of job info dicts
    """
    jobs = []

    for job in scheduler.get_jobs():
        next_run = getattr(job, "next_run_time", None)

        jobs.append({
            'id': job.id,
            'name': job.name,
            'next_run': next_run.isoformat() if next_run else None,
            'trigger': str(job.trigger)
        })

    return jobs


# CLI for manual syncs

if __name__ == "__main__":
    import sys

    if len(sys.argv) < 2:
        print("Usage: python -m dealboard.scheduler <command>")
        print("\nCommands:")
        print("  start                  Start the scheduler")
        print("  sync                   Run an incremental sync now")
        print("  rebuild-current-month  Wipe the mirror and reload this month")
        print("  list                   List scheduled jobs")
        sys.exit(1)

    command = sys.argv[1]

    if command == "start":
        print("Starting scheduler...")
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        start_scheduler()

        try:
            loop.run_forever()
        except (KeyboardInterrupt, SystemExit):
            print("\nShutting down scheduler...")
            stop_scheduler()

    elif command in ("sync", "rebuild-current-month"):
        result = run_sync_now(command)
        print(result)
        sys.exit(0 if result.get('success') else 1)

    elif command == "list":
        setup_scheduler()
        for job in get_scheduled_jobs():
            print(f"{job['id']}: {job['name']} ({job['trigger']})")

    else:
        print(f"Unknown command: {command}")
        sys.exit(1)
