"""
Sales contest endpoints and leaderboards
"""
from datetime import date, datetime, time
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from dealboard.models.base import get_db
from dealboard.models.contest import Contest
from dealboard.services.leaderboard_service import LeaderboardService
from dealboard.utils.helpers import utc_now

router = APIRouter(prefix="/contests", tags=["contests"])


class ContestCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=256)
    description: Optional[str] = Field(None, max_length=2000)
    start_date: date
    end_date: date
    is_active: bool = True


def _contest_dict(contest: Contest, service: LeaderboardService) -> dict:
    start, end = service.contest_window_utc(contest)
    return {
        "id": contest.id,
        "name": contest.name,
        "description": contest.description,
        "start_date": contest.start_date.date().isoformat(),
        "end_date": contest.end_date.date().isoformat(),
        "is_active": contest.is_active,
        "window_start_utc": start.isoformat(),
        "window_end_utc": end.isoformat(),
        "is_running": contest.is_active and end > utc_now(),
    }


def _get_contest(db: Session, contest_id: int) -> Contest:
    contest = db.query(Contest).filter(Contest.id == contest_id).first()
    if contest is None:
        raise HTTPException(status_code=404, detail=f"Contest {contest_id} not found")
    return contest


@router.get("")
async def list_contests(
    active_only: bool = Query(False),
    db: Session = Depends(get_db),
):
    service = LeaderboardService(db)
    contests = service.active_contests() if active_only else db.query(Contest).order_by(Contest.start_date.desc()).all()
    return {"contests": [_contest_dict(c, service) for c in contests]}


@router.post("", status_code=201)
async def create_contest(payload: ContestCreate, db: Session = Depends(get_db)):
    if payload.end_date < payload.start_date:
        raise HTTPException(status_code=400, detail="end_date must not be before start_date")

    contest = Contest(
        name=payload.name.strip(),
        description=payload.description,
        start_date=datetime.combine(payload.start_date, time.min),
        end_date=datetime.combine(payload.end_date, time.min),
        is_active=payload.is_active,
    )
    db.add(contest)
    db.commit()
    db.refresh(contest)
    return _contest_dict(contest, LeaderboardService(db))


@router.get("/{contest_id}/leaderboard")
async def get_leaderboard(contest_id: int, db: Session = Depends(get_db)):
    """Leaderboard as of the last sync run"""
    contest = _get_contest(db, contest_id)
    service = LeaderboardService(db)
    entries = service.get_entries(contest.id)
    return {
        "contest": _contest_dict(contest, service),
        "entries": [
            {
                "rank": rank,
                "display_label": e.display_label,
                "deals_count": e.deals_count,
                "owner_user_id": e.owner_user_id,
                "updated_at": e.updated_at.isoformat() if e.updated_at else None,
            }
            for rank, e in enumerate(entries, start=1)
        ],
    }


@router.get("/{contest_id}/live")
async def get_live_leaderboard(
    contest_id: int,
    sales_team_only: bool = Query(False, description="Only owners whose primary team starts with the sales-team prefix"),
    top: Optional[int] = Query(None, ge=1, le=500),
    db: Session = Depends(get_db),
):
    """Leaderboard computed from the mirror right now"""
    contest = _get_contest(db, contest_id)
    service = LeaderboardService(db)
    return {
        "contest": _contest_dict(contest, service),
        "entries": service.live_leaderboard(contest, sales_team_only=sales_team_only, top=top),
    }
