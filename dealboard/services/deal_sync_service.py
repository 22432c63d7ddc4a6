"""
Deal Sync Service
Mirrors fulfilled HubSpot deals into hubspot_deals and refreshes leaderboards.

Run kinds:
- incremental: backfill from a persisted cursor until the first complete
  pass, then only deals modified since the last successful run
- rebuild: wipe the mirror and reload one date window (current month)

Every page is committed before the next one is requested, so an interrupted
run resumes from the last persisted cursor/timestamp.
"""
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Dict, Optional

from sqlalchemy.orm import Session

from dealboard.config import Settings, get_settings, validate_hubspot_settings
from dealboard.connectors.hubspot_connector import DealPage, HubSpotConnector, HubSpotDeal
from dealboard.models.deals import DealRecord
from dealboard.models.sync import SyncRun, SyncState, RUN_FAILED, RUN_STARTED, RUN_SUCCEEDED
from dealboard.services.leaderboard_service import LeaderboardService
from dealboard.services.owner_resolver import OwnerResolver
from dealboard.utils.dates import local_month_window_utc, local_now
from dealboard.utils.helpers import first_non_empty, truncate, utc_now
from dealboard.utils.logger import log

INTEGRATION_NAME = "HubSpotDeals"
DISABLED_MESSAGE = "HubSpot sync is disabled"
FAILURE_MESSAGE = "HubSpot sync failed. Details have been logged for operators."
MAX_ERROR_LENGTH = 2000


@dataclass
class SyncRunResult:
    """Outcome of one run, as returned to every trigger"""
    succeeded: bool
    deals_fetched: int = 0
    deals_imported: int = 0
    deals_updated: int = 0
    deals_skipped: int = 0
    message: str = ""
    run_id: Optional[int] = None

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class UpsertCounts:
    imported: int = 0
    updated: int = 0
    skipped: int = 0


def has_in_flight_run(db: Session, window_hours: int, now: Optional[datetime] = None) -> bool:
    """True if a run was started within the window and has not finished"""
    cutoff = (now or utc_now()) - timedelta(hours=window_hours)
    return (
        db.query(SyncRun.id)
        .filter(
            SyncRun.integration_name == INTEGRATION_NAME,
            SyncRun.status == RUN_STARTED,
            SyncRun.started_at >= cutoff,
        )
        .first()
        is not None
    )


class DealSyncService:
    """Orchestrates HubSpot deal syncs; sole writer of deals, sync state and runs"""

    def __init__(
        self,
        db: Session,
        crm: Optional[HubSpotConnector] = None,
        owner_resolver: Optional[OwnerResolver] = None,
        leaderboard: Optional[LeaderboardService] = None,
        settings: Optional[Settings] = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.crm = crm or HubSpotConnector(self.settings)
        self.owner_resolver = owner_resolver or OwnerResolver(db, settings=self.settings)
        self.leaderboard = leaderboard or LeaderboardService(db, self.settings)

    # ==================== Entry points ====================

    async def run_incremental_sync(self) -> SyncRunResult:
        """Scheduled/manual sync: backfill until complete, then modified-since"""
        if not self.settings.hubspot_enabled:
            return SyncRunResult(succeeded=True, message=DISABLED_MESSAGE)

        started_at = utc_now()
        self._expire_stale_runs(started_at)
        run = self._start_run("incremental", started_at)
        result = SyncRunResult(succeeded=False, run_id=run.id)

        try:
            validate_hubspot_settings(self.settings)
            self.crm.reset_run_state()

            state = self._get_or_create_state()
            state.last_attempt_at = started_at
            self.db.commit()

            backfill = state.last_successful_sync_at is None
            cursor = state.last_cursor
            modified_since = None if backfill else state.last_successful_sync_at
            # A cursor chain keeps the anchor of the run that opened it
            if not cursor or state.cursor_started_at is None:
                state.cursor_started_at = started_at
            log.info(
                f"HubSpot sync run {run.id} started "
                f"({'backfill' if backfill else 'modified since ' + str(modified_since)}, cursor {cursor})"
            )

            reached_end = False
            pages_failed = 0
            for page_number in range(1, self.settings.hubspot_max_pages_per_run + 1):
                page = await self.crm.get_page(
                    modified_since=modified_since,
                    cursor=cursor,
                    page_size=self.settings.hubspot_page_size,
                )
                if page.failed:
                    pages_failed += 1
                    log.warning(f"HubSpot sync run {run.id}: page {page_number} failed, stopping at cursor {cursor}")
                    break

                await self._apply_page(page, result)
                cursor = page.next_cursor
                state.last_cursor = cursor
                self._record_progress(run, result, pages_failed)
                self.db.commit()

                if not cursor:
                    reached_end = True
                    break

            pages_failed += await self.sync_active_contest_windows(result)
            self.leaderboard.recalculate_active_contests()

            if reached_end:
                state.last_successful_sync_at = state.cursor_started_at or started_at
                state.last_cursor = None
                state.cursor_started_at = None
            state.last_error = None

            result.succeeded = True
            result.message = self._summary(result, backfill, reached_end, pages_failed)
            self._finish_run(run, result, pages_failed)
            self.db.commit()
            log.info(f"HubSpot sync run {run.id} succeeded: {result.message}")
            return result

        except Exception as e:
            return self._fail_run(result.run_id, result, e)

    async def rebuild_current_month_only(self, now: Optional[datetime] = None) -> SyncRunResult:
        """Wipe the mirror and reload deals sold in the current local month"""
        current = now or local_now(self.settings.local_timezone)
        start, end = local_month_window_utc(current.year, current.month, self.settings.local_timezone)
        return await self.rebuild_window(start, end)

    async def rebuild_window(self, start_utc: datetime, end_utc: datetime) -> SyncRunResult:
        """
        Destructive full replace of the mirror from a date window.

        Deals, owner mappings (including manual links) and contest entries
        are all cleared first.
        """
        if not self.settings.hubspot_enabled:
            return SyncRunResult(succeeded=True, message=DISABLED_MESSAGE)

        started_at = utc_now()
        self._expire_stale_runs(started_at)
        run = self._start_run("rebuild", started_at)
        result = SyncRunResult(succeeded=False, run_id=run.id)

        try:
            validate_hubspot_settings(self.settings)
            self.crm.reset_run_state()

            deleted = self.db.query(DealRecord).delete(synchronize_session=False)
            mappings = self.owner_resolver.clear_all()
            entries = self.leaderboard.clear_entries()
            self.db.commit()
            log.warning(
                f"HubSpot rebuild run {run.id}: cleared {deleted} deals, {mappings} owner mappings, "
                f"{entries} contest entries; reloading {start_utc} - {end_utc}"
            )

            reached_end, pages_failed = await self._sync_window(
                start_utc, end_utc, result, self.settings.hubspot_rebuild_max_pages, run=run
            )
            self.leaderboard.recalculate_active_contests()

            result.succeeded = True
            result.message = self._summary(result, False, reached_end, pages_failed)
            self._finish_run(run, result, pages_failed)
            self.db.commit()
            log.info(f"HubSpot rebuild run {run.id} succeeded: {result.message}")
            return result

        except Exception as e:
            return self._fail_run(result.run_id, result, e)

    async def sync_active_contest_windows(self, result: SyncRunResult) -> int:
        """
        Pull every fulfilled deal inside each active contest's window.

        Catches deals whose sale date landed in a contest period but whose
        modification was missed by the incremental cursor.

        Returns:
            Number of failed pages
        """
        pages_failed = 0
        for contest in self.leaderboard.active_contests():
            start, end = self.leaderboard.contest_window_utc(contest)
            log.debug(f"Syncing contest {contest.id} window {start} - {end}")
            _, failed = await self._sync_window(start, end, result, self.settings.hubspot_max_pages_per_run)
            pages_failed += failed
        return pages_failed

    # ==================== Reconciliation ====================

    async def upsert_deal(self, deal: HubSpotDeal) -> UpsertCounts:
        """
        Reconcile one deal against the mirror.

        - no id -> skipped
        - not fulfilled / no sale date -> delete if mirrored (updated), else skipped
        - no owner reference -> skipped
        - otherwise insert (imported) or overwrite (updated; skipped if nothing changed)
        """
        if not deal.hubspot_deal_id:
            log.warning("Skipping HubSpot deal without id")
            return UpsertCounts(skipped=1)

        existing = self.db.query(DealRecord).filter(DealRecord.hubspot_deal_id == deal.hubspot_deal_id).first()

        if not deal.is_fulfilled or deal.fulfilled_date is None:
            if existing is None:
                return UpsertCounts(skipped=1)
            self.db.delete(existing)
            self.db.flush()
            log.debug(f"Removed deal {deal.hubspot_deal_id} from mirror (stage {deal.stage})")
            return UpsertCounts(updated=1)

        if not self.owner_resolver.owner_reference(deal):
            log.debug(f"Skipping fulfilled deal {deal.hubspot_deal_id}: no owner reference")
            return UpsertCounts(skipped=1)

        account = await self.owner_resolver.resolve(deal, self.crm)

        owner_email = deal.owner_email
        if not owner_email and deal.owner_id and not self.owner_resolver.uses_seller_id:
            owner = await self.crm.get_owner(deal.owner_id)
            owner_email = owner.email if owner else None

        now = utc_now()
        if existing is None:
            record = DealRecord(hubspot_deal_id=deal.hubspot_deal_id, first_seen_at=now)
            self.db.add(record)
            counts = UpsertCounts(imported=1)
        else:
            record = existing
            before = self._fingerprint(record)
            counts = None

        record.deal_name = truncate(deal.deal_name, 512)
        record.fulfilled_date = deal.fulfilled_date
        record.amount = deal.amount
        record.provision = deal.provision
        record.currency_code = truncate(deal.currency_code, 16)
        record.stage = truncate(deal.stage, 256)
        record.owner_id = truncate(deal.owner_id, 64)
        record.owner_email = truncate(owner_email, 256)
        record.seller_id = truncate(first_non_empty(deal.seller_id), 64)
        record.owner_user_id = account.id if account else None
        record.payload_hash = deal.payload_hash
        record.hubspot_last_modified = deal.last_modified
        record.last_seen_at = now
        self.db.flush()

        if counts is None:
            changed = self._fingerprint(record) != before
            counts = UpsertCounts(updated=1) if changed else UpsertCounts(skipped=1)
        return counts

    @staticmethod
    def _fingerprint(record: DealRecord):
        return (
            record.payload_hash,
            record.fulfilled_date,
            record.owner_user_id,
            record.seller_id,
            record.owner_email,
        )

    async def _apply_page(self, page: DealPage, result: SyncRunResult):
        result.deals_fetched += len(page.deals)
        for deal in page.deals:
            counts = await self.upsert_deal(deal)
            result.deals_imported += counts.imported
            result.deals_updated += counts.updated
            result.deals_skipped += counts.skipped

    async def _sync_window(
        self,
        start_utc: datetime,
        end_utc: datetime,
        result: SyncRunResult,
        max_pages: int,
        run: Optional[SyncRun] = None,
    ):
        """Page through a window search. Returns (reached_end, pages_failed)"""
        cursor = None
        for _ in range(max_pages):
            page = await self.crm.search_by_fulfillment_window(
                start_utc, end_utc, cursor=cursor, page_size=self.settings.hubspot_page_size
            )
            if page.failed:
                log.warning(f"HubSpot window {start_utc} - {end_utc}: page failed after cursor {cursor}")
                return False, 1

            await self._apply_page(page, result)
            if run is not None:
                self._record_progress(run, result, 0)
            self.db.commit()

            cursor = page.next_cursor
            if not cursor:
                return True, 0

        log.warning(f"HubSpot window {start_utc} - {end_utc}: page budget of {max_pages} exhausted")
        return False, 0

    # ==================== Run bookkeeping ====================

    def _get_or_create_state(self) -> SyncState:
        state = self.db.query(SyncState).filter(SyncState.integration_name == INTEGRATION_NAME).first()
        if state is None:
            state = SyncState(integration_name=INTEGRATION_NAME)
            self.db.add(state)
            self.db.flush()
        return state

    def get_state(self) -> Optional[SyncState]:
        return self.db.query(SyncState).filter(SyncState.integration_name == INTEGRATION_NAME).first()

    def recent_runs(self, limit: int = 20):
        return (
            self.db.query(SyncRun)
            .filter(SyncRun.integration_name == INTEGRATION_NAME)
            .order_by(SyncRun.started_at.desc(), SyncRun.id.desc())
            .limit(limit)
            .all()
        )

    def _start_run(self, kind: str, started_at: datetime) -> SyncRun:
        run = SyncRun(
            integration_name=INTEGRATION_NAME,
            run_kind=kind,
            started_at=started_at,
            status=RUN_STARTED,
        )
        self.db.add(run)
        self.db.commit()
        return run

    def _expire_stale_runs(self, now: datetime):
        """Started runs older than the in-flight window never finished; close them"""
        cutoff = now - timedelta(hours=self.settings.sync_in_flight_window_hours)
        stale = (
            self.db.query(SyncRun)
            .filter(
                SyncRun.integration_name == INTEGRATION_NAME,
                SyncRun.status == RUN_STARTED,
                SyncRun.started_at < cutoff,
            )
            .all()
        )
        for run in stale:
            run.status = RUN_FAILED
            run.finished_at = now
            run.error_message = "Run abandoned: no finish recorded"
            log.warning(f"Marked abandoned HubSpot sync run {run.id} as failed")
        if stale:
            self.db.commit()

    @staticmethod
    def _record_progress(run: SyncRun, result: SyncRunResult, pages_failed: int):
        run.deals_fetched = result.deals_fetched
        run.deals_imported = result.deals_imported
        run.deals_updated = result.deals_updated
        run.deals_skipped = result.deals_skipped
        run.pages_failed = pages_failed

    def _finish_run(self, run: SyncRun, result: SyncRunResult, pages_failed: int):
        self._record_progress(run, result, pages_failed)
        run.status = RUN_SUCCEEDED
        run.finished_at = utc_now()

    def _fail_run(self, run_id: int, result: SyncRunResult, error: Exception) -> SyncRunResult:
        """Persist the failure on the run and the sync state; never re-raise"""
        self.db.rollback()
        error_text = truncate(f"{type(error).__name__}: {error}", MAX_ERROR_LENGTH)
        log.exception(f"HubSpot sync run {run_id} failed: {error}")

        run = self.db.get(SyncRun, run_id)
        if run is not None:
            run.status = RUN_FAILED
            run.finished_at = utc_now()
            run.error_message = error_text
        state = self._get_or_create_state()
        state.last_error = error_text
        self.db.commit()

        result.succeeded = False
        result.message = FAILURE_MESSAGE
        return result

    @staticmethod
    def _summary(result: SyncRunResult, backfill: bool, reached_end: bool, pages_failed: int) -> str:
        message = (
            f"Fetched {result.deals_fetched}, imported {result.deals_imported}, "
            f"updated {result.deals_updated}, skipped {result.deals_skipped}."
        )
        if backfill:
            message += " Backfill complete." if reached_end else " Backfill in progress."
        elif not reached_end and not pages_failed:
            message += " More changes pending; continuing from cursor next run."
        if pages_failed:
            message += f" {pages_failed} page(s) failed and will be retried next run."
        return message
