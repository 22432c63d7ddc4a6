"""
HubSpot sync endpoints: manual trigger, current-month rebuild and run history
"""
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from dealboard.config import get_settings
from dealboard.models.base import SessionLocal, get_db
from dealboard.services.deal_sync_service import DealSyncService, has_in_flight_run
from dealboard.utils.logger import log

router = APIRouter(prefix="/sync/hubspot", tags=["sync"])


def get_deal_sync_service(db: Session = Depends(get_db)) -> DealSyncService:
    return DealSyncService(db)


def _ensure_not_running(db: Session):
    settings = get_settings()
    if has_in_flight_run(db, settings.sync_in_flight_window_hours):
        raise HTTPException(status_code=409, detail="A HubSpot sync is already running")


async def _run_in_background(kind: str):
    """Background task: own session, the request's one is closed by then"""
    db = SessionLocal()
    try:
        service = DealSyncService(db)
        if kind == "rebuild":
            result = await service.rebuild_current_month_only()
        else:
            result = await service.run_incremental_sync()
        log.info(f"Background HubSpot {kind} finished: {result.message}")
    except Exception as e:
        log.error(f"Background HubSpot {kind} error: {str(e)}")
    finally:
        db.close()


@router.post("/deals")
async def run_deal_sync(
    background_tasks: BackgroundTasks,
    background: bool = Query(False, description="Return immediately and sync in the background"),
    service: DealSyncService = Depends(get_deal_sync_service),
):
    """
    Run an incremental HubSpot deal sync now.

    Returns the run summary (fetched/imported/updated/skipped).
    """
    _ensure_not_running(service.db)

    if background:
        background_tasks.add_task(_run_in_background, "incremental")
        return {"message": "HubSpot sync started in background", "check_progress": "/sync/hubspot/runs"}

    result = await service.run_incremental_sync()
    return result.to_dict()


@router.post("/rebuild-current-month")
async def rebuild_current_month(
    background_tasks: BackgroundTasks,
    confirm: bool = Query(False, description="Must be true: clears deals, owner mappings and contest entries"),
    background: bool = Query(False),
    service: DealSyncService = Depends(get_deal_sync_service),
):
    """Wipe the mirror and reload only deals sold in the current month"""
    if not confirm:
        raise HTTPException(status_code=400, detail="Pass confirm=true to rebuild; this deletes mirrored data")
    _ensure_not_running(service.db)

    if background:
        background_tasks.add_task(_run_in_background, "rebuild")
        return {"message": "HubSpot rebuild started in background", "check_progress": "/sync/hubspot/runs"}

    result = await service.rebuild_current_month_only()
    return result.to_dict()


@router.get("/state")
async def get_sync_state(service: DealSyncService = Depends(get_deal_sync_service)):
    """Persisted cursor and last-success timestamp"""
    state = service.get_state()
    if state is None:
        return {"integration": None, "backfill_complete": False}

    return {
        "integration": state.integration_name,
        "backfill_complete": state.last_successful_sync_at is not None,
        "last_successful_sync_at": state.last_successful_sync_at.isoformat() if state.last_successful_sync_at else None,
        "last_attempt_at": state.last_attempt_at.isoformat() if state.last_attempt_at else None,
        "last_cursor": state.last_cursor,
        "cursor_started_at": state.cursor_started_at.isoformat() if state.cursor_started_at else None,
        "last_error": state.last_error,
    }


@router.get("/runs")
async def get_sync_runs(
    limit: int = Query(20, ge=1, le=200),
    service: DealSyncService = Depends(get_deal_sync_service),
):
    """Most recent sync runs, newest first"""
    return {
        "runs": [
            {
                "id": run.id,
                "kind": run.run_kind,
                "status": run.status,
                "started_at": run.started_at.isoformat() if run.started_at else None,
                "finished_at": run.finished_at.isoformat() if run.finished_at else None,
                "deals_fetched": run.deals_fetched,
                "deals_imported": run.deals_imported,
                "deals_updated": run.deals_updated,
                "deals_skipped": run.deals_skipped,
                "pages_failed": run.pages_failed,
                "failed": run.error_message is not None,
            }
            for run in service.recent_runs(limit)
        ]
    }
