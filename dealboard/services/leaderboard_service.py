"""
Leaderboard Service

Contest leaderboards are derived from the deal mirror: for every active
contest, deals fulfilled inside the contest's local-time window are counted
per salesperson and written to contest_entries (delete, then reinsert).

Grouping key:
- owner_id mode:  "id:<owner id>", else "email:<lowercase email>", else "unknown"
- seller_id mode: "seller:<seller id>", else "unknown"
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from dealboard.config import Settings, get_settings
from dealboard.models.contest import Contest, ContestEntry
from dealboard.models.deals import DealRecord, OwnerMapping
from dealboard.utils.dates import local_day_window_utc
from dealboard.utils.helpers import first_non_empty, utc_now
from dealboard.utils.logger import log

UNKNOWN_KEY = "unknown"
UNKNOWN_OWNER_LABEL = "Unknown owner"
MAX_LABEL_LENGTH = 50


@dataclass
class LeaderboardRow:
    aggregation_key: str
    deals_count: int = 0
    owner_id: Optional[str] = None
    owner_email: Optional[str] = None
    seller_id: Optional[str] = None
    owner_user_id: Optional[str] = None
    mapping: Optional[OwnerMapping] = None
    display_label: str = UNKNOWN_OWNER_LABEL

    @property
    def team_name(self) -> Optional[str]:
        return self.mapping.primary_team_name if self.mapping else None

    def to_dict(self) -> Dict:
        return {
            "aggregation_key": self.aggregation_key,
            "display_label": self.display_label,
            "deals_count": self.deals_count,
            "owner_id": self.owner_id,
            "owner_user_id": self.owner_user_id,
            "team": self.team_name,
        }


def build_display_label(row: LeaderboardRow) -> str:
    """
    Full name (Team), else email (Team), else the raw id, else 'Unknown owner'.
    Trimmed and cut to 50 characters.
    """
    mapping = row.mapping
    team = first_non_empty(mapping.primary_team_name) if mapping else None
    suffix = f" ({team})" if team else ""

    name = mapping.full_name if mapping else None
    email = first_non_empty(mapping.email if mapping else None, row.owner_email)

    if name:
        label = name + suffix
    elif email:
        label = email + suffix
    elif row.owner_id or row.seller_id:
        label = row.owner_id or row.seller_id
    else:
        label = UNKNOWN_OWNER_LABEL
    return label.strip()[:MAX_LABEL_LENGTH]


def sort_rows(rows: List[LeaderboardRow]) -> List[LeaderboardRow]:
    return sorted(rows, key=lambda r: (-r.deals_count, r.display_label.casefold()))


class LeaderboardService:
    """Builds contest leaderboards; sole writer of contest entries"""

    def __init__(self, db: Session, settings: Optional[Settings] = None):
        self.db = db
        self.settings = settings or get_settings()

    def contest_window_utc(self, contest: Contest) -> Tuple[datetime, datetime]:
        """Whole local days start..end as a UTC [start, end) range"""
        return local_day_window_utc(
            contest.start_date.date(),
            contest.end_date.date(),
            self.settings.local_timezone,
        )

    def active_contests(self, now: Optional[datetime] = None) -> List[Contest]:
        """Active flag set and the window has not closed yet"""
        now = now or utc_now()
        contests = self.db.query(Contest).filter(Contest.is_active == True).order_by(Contest.id).all()  # noqa: E712
        return [c for c in contests if self.contest_window_utc(c)[1] > now]

    # ==================== Aggregation ====================

    def build_rows(self, contest: Contest, sales_team_only: bool = False) -> List[LeaderboardRow]:
        """Ranked rows for one contest, computed from the mirror"""
        start, end = self.contest_window_utc(contest)
        if self.settings.identity_strategy == "seller_id":
            rows = self._rows_by_seller(start, end)
        else:
            rows = self._rows_by_owner(start, end)
            if sales_team_only:
                prefix = self.settings.sales_team_prefix.casefold()
                rows = [r for r in rows if (r.team_name or "").casefold().startswith(prefix)]

        for row in rows:
            row.display_label = build_display_label(row)
        return sort_rows(rows)

    def _rows_by_owner(self, start: datetime, end: datetime) -> List[LeaderboardRow]:
        groups = (
            self.db.query(DealRecord.owner_id, DealRecord.owner_email, func.count(DealRecord.id))
            .filter(DealRecord.fulfilled_date >= start, DealRecord.fulfilled_date < end)
            .group_by(DealRecord.owner_id, DealRecord.owner_email)
            .all()
        )
        if not groups:
            return []

        owner_ids = {g[0].strip() for g in groups if first_non_empty(g[0])}
        emails = {g[1].strip().lower() for g in groups if first_non_empty(g[1])}
        by_id, by_email = self._load_mappings(owner_ids, emails)

        # Same person can arrive as (id, email) and (id, EMAIL) or (None, email)
        merged: Dict[str, LeaderboardRow] = {}
        for raw_id, raw_email, count in groups:
            owner_id = first_non_empty(raw_id)
            email = first_non_empty(raw_email)
            mapping = by_id.get(owner_id) if owner_id else None
            if mapping is None and email:
                mapping = by_email.get(email.lower())

            canonical_id = owner_id or (mapping.hubspot_owner_id if mapping else None)
            if canonical_id:
                key = f"id:{canonical_id}"
            elif email:
                key = f"email:{email.lower()}"
            else:
                key = UNKNOWN_KEY

            row = merged.get(key)
            if row is None:
                row = merged[key] = LeaderboardRow(aggregation_key=key)
            row.deals_count += count
            row.owner_id = row.owner_id or canonical_id
            row.owner_email = row.owner_email or email
            row.mapping = row.mapping or mapping

        for row in merged.values():
            if row.mapping is not None:
                row.owner_user_id = row.mapping.owner_user_id
        return list(merged.values())

    def _load_mappings(self, owner_ids, emails) -> Tuple[Dict[str, OwnerMapping], Dict[str, OwnerMapping]]:
        if not owner_ids and not emails:
            return {}, {}
        conditions = []
        if owner_ids:
            conditions.append(OwnerMapping.hubspot_owner_id.in_(owner_ids))
        if emails:
            conditions.append(func.lower(OwnerMapping.email).in_(emails))
        mappings = self.db.query(OwnerMapping).filter(or_(*conditions)).order_by(OwnerMapping.id).all()

        by_id = {m.hubspot_owner_id: m for m in mappings}
        by_email: Dict[str, OwnerMapping] = {}
        for m in mappings:
            if m.email:
                by_email.setdefault(m.email.strip().lower(), m)
        return by_id, by_email

    def _rows_by_seller(self, start: datetime, end: datetime) -> List[LeaderboardRow]:
        groups = (
            self.db.query(DealRecord.seller_id, func.max(DealRecord.owner_user_id), func.count(DealRecord.id))
            .filter(DealRecord.fulfilled_date >= start, DealRecord.fulfilled_date < end)
            .group_by(DealRecord.seller_id)
            .all()
        )
        merged: Dict[str, LeaderboardRow] = {}
        for raw_seller, user_id, count in groups:
            seller_id = first_non_empty(raw_seller)
            key = f"seller:{seller_id}" if seller_id else UNKNOWN_KEY
            row = merged.get(key)
            if row is None:
                row = merged[key] = LeaderboardRow(aggregation_key=key, seller_id=seller_id)
            row.deals_count += count
            row.owner_user_id = row.owner_user_id or user_id
        return list(merged.values())

    # ==================== Entries ====================

    def recalculate_active_contests(self, now: Optional[datetime] = None) -> int:
        """
        Replace the entries of every active contest.

        The caller owns the transaction; nothing is committed here.

        Returns:
            Number of entries written
        """
        now = now or utc_now()
        contests = self.active_contests(now)
        if not contests:
            return 0

        self.db.query(ContestEntry).filter(
            ContestEntry.contest_id.in_([c.id for c in contests])
        ).delete(synchronize_session=False)

        written = 0
        for contest in contests:
            for row in self.build_rows(contest):
                self.db.add(ContestEntry(
                    contest_id=contest.id,
                    aggregation_key=row.aggregation_key,
                    display_label=row.display_label,
                    deals_count=row.deals_count,
                    owner_user_id=row.owner_user_id,
                    updated_at=now,
                ))
                written += 1

        self.db.flush()
        log.info(f"Recalculated leaderboards for {len(contests)} active contests ({written} entries)")
        return written

    def clear_entries(self) -> int:
        return self.db.query(ContestEntry).delete(synchronize_session=False)

    def get_entries(self, contest_id: int) -> List[ContestEntry]:
        """Persisted leaderboard, ranked"""
        entries = self.db.query(ContestEntry).filter(ContestEntry.contest_id == contest_id).all()
        return sorted(entries, key=lambda e: (-e.deals_count, e.display_label.casefold()))

    def live_leaderboard(self, contest: Contest, sales_team_only: bool = False, top: Optional[int] = None) -> List[Dict]:
        """Computed on demand without touching contest_entries"""
        rows = self.build_rows(contest, sales_team_only=sales_team_only)
        if top:
            rows = rows[:top]
        return [dict(row.to_dict(), rank=i) for i, row in enumerate(rows, start=1)]
