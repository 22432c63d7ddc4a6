"""
Monthly performance rollups
"""
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from dealboard.models.base import get_db
from dealboard.services.performance_service import PerformanceService
from dealboard.services.user_directory import UserDirectory

router = APIRouter(prefix="/performance", tags=["performance"])


@router.get("/month")
async def get_monthly_rollup(
    year: Optional[int] = Query(None, ge=2000, le=2100),
    month: Optional[int] = Query(None, ge=1, le=12),
    db: Session = Depends(get_db),
):
    """Per-salesperson deal count, amount and provision for a month (default: current)"""
    return PerformanceService(db).monthly_rollup(year, month)


@router.get("/users/{user_id}/month")
async def get_user_month(
    user_id: str,
    year: Optional[int] = Query(None, ge=2000, le=2100),
    month: Optional[int] = Query(None, ge=1, le=12),
    db: Session = Depends(get_db),
):
    if UserDirectory(db).find_by_id(user_id) is None:
        raise HTTPException(status_code=404, detail=f"User {user_id} not found")
    return PerformanceService(db).user_month_summary(user_id, year, month)
