"""
Monthly performance rollups over the deal mirror.

Answers: "How many deals did I close this month, and what did they earn?"
and the same question per salesperson for the whole organisation.
"""
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from dealboard.config import Settings, get_settings
from dealboard.models.deals import DealRecord, OwnerMapping
from dealboard.models.user import User
from dealboard.utils.dates import local_month_window_utc, local_now


def _money(value) -> float:
    return float(value or Decimal("0"))


class PerformanceService:

    def __init__(self, db: Session, settings: Optional[Settings] = None):
        self.db = db
        self.settings = settings or get_settings()

    def _month(self, year: Optional[int], month: Optional[int]):
        if year is None or month is None:
            now = local_now(self.settings.local_timezone)
            year, month = now.year, now.month
        start, end = local_month_window_utc(year, month, self.settings.local_timezone)
        return year, month, start, end

    def user_month_summary(self, user_id: str, year: Optional[int] = None, month: Optional[int] = None) -> Dict:
        """Deals credited to one local account in a month (default: current local month)"""
        year, month, start, end = self._month(year, month)

        deals = (
            self.db.query(DealRecord)
            .filter(
                DealRecord.owner_user_id == user_id,
                DealRecord.fulfilled_date >= start,
                DealRecord.fulfilled_date < end,
            )
            .order_by(DealRecord.fulfilled_date.desc())
            .all()
        )

        return {
            "user_id": user_id,
            "year": year,
            "month": month,
            "deals_count": len(deals),
            "total_amount": _money(sum((d.amount or Decimal("0") for d in deals), Decimal("0"))),
            "total_provision": _money(sum((d.provision or Decimal("0") for d in deals), Decimal("0"))),
            "deals": [
                {
                    "hubspot_deal_id": d.hubspot_deal_id,
                    "deal_name": d.deal_name,
                    "fulfilled_date": d.fulfilled_date.isoformat() if d.fulfilled_date else None,
                    "amount": _money(d.amount) if d.amount is not None else None,
                    "provision": _money(d.provision) if d.provision is not None else None,
                    "currency_code": d.currency_code,
                    "stage": d.stage,
                }
                for d in deals
            ],
        }

    def monthly_rollup(self, year: Optional[int] = None, month: Optional[int] = None) -> Dict:
        """Per-salesperson totals for a month, highest deal count first"""
        year, month, start, end = self._month(year, month)

        if self.settings.identity_strategy == "seller_id":
            reference = DealRecord.seller_id
        else:
            reference = DealRecord.owner_id

        rows = (
            self.db.query(
                reference,
                func.max(DealRecord.owner_user_id),
                func.count(DealRecord.id),
                func.sum(DealRecord.amount),
                func.sum(DealRecord.provision),
            )
            .filter(DealRecord.fulfilled_date >= start, DealRecord.fulfilled_date < end)
            .group_by(reference)
            .all()
        )

        user_ids = {r[1] for r in rows if r[1]}
        users = {u.id: u for u in self.db.query(User).filter(User.id.in_(user_ids)).all()} if user_ids else {}
        owner_ids = {r[0] for r in rows if r[0]}
        mappings = {}
        if owner_ids and reference is DealRecord.owner_id:
            mappings = {
                m.hubspot_owner_id: m
                for m in self.db.query(OwnerMapping).filter(OwnerMapping.hubspot_owner_id.in_(owner_ids)).all()
            }

        owners: List[Dict] = []
        for ref, user_id, count, amount, provision in rows:
            user = users.get(user_id)
            mapping = mappings.get(ref)
            owners.append({
                "owner_reference": ref,
                "owner_user_id": user_id,
                "username": user.username if user else None,
                "name": (mapping.full_name if mapping else None) or (user.display_name if user else None),
                "deals_count": count,
                "total_amount": _money(amount),
                "total_provision": _money(provision),
            })
        owners.sort(key=lambda o: (-o["deals_count"], -o["total_amount"], str(o["owner_reference"] or "")))

        return {
            "year": year,
            "month": month,
            "window_start_utc": start.isoformat(),
            "window_end_utc": end.isoformat(),
            "deals_count": sum(o["deals_count"] for o in owners),
            "total_amount": sum(o["total_amount"] for o in owners),
            "total_provision": sum(o["total_provision"] for o in owners),
            "owners": owners,
        }
