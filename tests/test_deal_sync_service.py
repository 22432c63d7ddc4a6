"""
Tests for the deal sync engine.

Covers:
  - Backfill from a persisted cursor, then modified-since runs
  - Page budget exhaustion and failed pages (cursor/timestamp not advanced)
  - Failure recording (run + state) with a generic user-facing message
  - Deal reconciliation: insert / overwrite / remove / skip
  - In-flight detection and abandoned-run expiry
  - Destructive window rebuilds
  - Contest-window pulls and leaderboard recalculation
"""
from datetime import datetime, timedelta

import pytest

from dealboard.connectors.hubspot_connector import DealPage, HubSpotOwner
from dealboard.models.contest import Contest, ContestEntry
from dealboard.models.deals import DealRecord, OwnerMapping
from dealboard.models.sync import RUN_FAILED, RUN_STARTED, RUN_SUCCEEDED, SyncRun, SyncState
from dealboard.services.deal_sync_service import (
    DISABLED_MESSAGE,
    FAILURE_MESSAGE,
    INTEGRATION_NAME,
    DealSyncService,
    has_in_flight_run,
)
from dealboard.utils.helpers import utc_now
from fakes import FakeHubSpotConnector, build_deal


def _service(db, settings, crm):
    return DealSyncService(db, crm=crm, settings=settings)


def _state(db):
    return db.query(SyncState).filter_by(integration_name=INTEGRATION_NAME).one()


def _current_contest(db, **fields):
    today = datetime.now().replace(hour=0, minute=0, second=0, microsecond=0)
    values = dict(name="Månadens säljare", start_date=today - timedelta(days=1), end_date=today + timedelta(days=1))
    values.update(fields)
    contest = Contest(**values)
    db.add(contest)
    db.commit()
    return contest


# ────────────────────────────────────────────
# INCREMENTAL RUNS
# ────────────────────────────────────────────


class TestIncrementalSync:

    @pytest.mark.asyncio
    async def test_disabled_is_a_successful_no_op(self, db, make_settings):
        crm = FakeHubSpotConnector(pages=[DealPage(deals=[build_deal()])])

        result = await _service(db, make_settings(hubspot_enabled=False), crm).run_incremental_sync()

        assert result.succeeded
        assert result.message == DISABLED_MESSAGE
        assert crm.page_calls == []
        assert db.query(SyncRun).count() == 0

    @pytest.mark.asyncio
    async def test_backfill_completes_and_sets_timestamp(self, db, settings):
        crm = FakeHubSpotConnector(pages=[
            DealPage(deals=[build_deal("D1")], next_cursor="c2"),
            DealPage(deals=[build_deal("D2")]),
        ])

        result = await _service(db, settings, crm).run_incremental_sync()

        assert result.succeeded
        assert (result.deals_fetched, result.deals_imported) == (2, 2)
        assert "Backfill complete." in result.message
        assert [c["cursor"] for c in crm.page_calls] == [None, "c2"]
        assert all(c["modified_since"] is None for c in crm.page_calls)

        run = db.get(SyncRun, result.run_id)
        state = _state(db)
        assert run.status == RUN_SUCCEEDED
        assert run.deals_imported == 2
        assert state.last_successful_sync_at == run.started_at
        assert state.last_cursor is None
        assert state.last_error is None
        assert crm.resets == 1

    @pytest.mark.asyncio
    async def test_backfill_resumes_from_persisted_cursor(self, db, make_settings):
        settings = make_settings(hubspot_max_pages_per_run=1)
        crm = FakeHubSpotConnector(pages=[
            DealPage(deals=[build_deal("D1")], next_cursor="c2"),
            DealPage(deals=[build_deal("D2")]),
        ])

        first = await _service(db, settings, crm).run_incremental_sync()

        assert first.succeeded
        assert "Backfill in progress." in first.message
        assert _state(db).last_cursor == "c2"
        assert _state(db).last_successful_sync_at is None

        second = await _service(db, settings, crm).run_incremental_sync()

        assert "Backfill complete." in second.message
        assert crm.page_calls[1]["cursor"] == "c2"
        assert _state(db).last_successful_sync_at is not None

    @pytest.mark.asyncio
    async def test_after_backfill_queries_modified_since(self, db, settings):
        crm = FakeHubSpotConnector()
        await _service(db, settings, crm).run_incremental_sync()
        last_sync = _state(db).last_successful_sync_at

        result = await _service(db, settings, crm).run_incremental_sync()

        assert result.succeeded
        assert crm.page_calls[-1] == {"modified_since": last_sync, "cursor": None}
        assert _state(db).last_successful_sync_at >= last_sync
        assert "Backfill" not in result.message

    @pytest.mark.asyncio
    async def test_incremental_budget_exhausted_continues_from_cursor(self, db, make_settings):
        settings = make_settings(hubspot_max_pages_per_run=1)
        crm = FakeHubSpotConnector()
        await _service(db, settings, crm).run_incremental_sync()
        last_sync = _state(db).last_successful_sync_at

        crm.pages = [
            DealPage(deals=[build_deal("P1")], next_cursor="c2"),
            DealPage(deals=[build_deal("P2")]),
        ]
        first = await _service(db, settings, crm).run_incremental_sync()

        assert first.succeeded
        assert "continuing from cursor" in first.message
        assert _state(db).last_cursor == "c2"
        assert _state(db).last_successful_sync_at == last_sync

        second = await _service(db, settings, crm).run_incremental_sync()

        assert second.succeeded
        assert crm.page_calls[-1] == {"modified_since": last_sync, "cursor": "c2"}
        assert sorted(d.hubspot_deal_id for d in db.query(DealRecord).all()) == ["P1", "P2"]
        state = _state(db)
        assert state.last_cursor is None
        # Anchored at the run that opened the cursor, not the one that finished it
        assert state.last_successful_sync_at == db.get(SyncRun, first.run_id).started_at

    @pytest.mark.asyncio
    async def test_failed_page_stops_without_advancing(self, db, settings):
        crm = FakeHubSpotConnector(pages=[
            DealPage(deals=[build_deal("D1")], next_cursor="c2"),
            DealPage.failed_page(),
            DealPage(deals=[build_deal("never")]),
        ])

        result = await _service(db, settings, crm).run_incremental_sync()

        assert result.succeeded
        assert result.deals_imported == 1
        assert "1 page(s) failed" in result.message
        assert len(crm.page_calls) == 2
        assert _state(db).last_cursor == "c2"
        assert _state(db).last_successful_sync_at is None
        assert db.get(SyncRun, result.run_id).pages_failed == 1

    @pytest.mark.asyncio
    async def test_exception_fails_run_with_generic_message(self, db, settings):
        crm = FakeHubSpotConnector(pages=[RuntimeError("token rejected by portal")])

        result = await _service(db, settings, crm).run_incremental_sync()

        assert not result.succeeded
        assert result.message == FAILURE_MESSAGE
        assert "token" not in result.message

        run = db.get(SyncRun, result.run_id)
        assert run.status == RUN_FAILED
        assert run.finished_at is not None
        assert "RuntimeError: token rejected by portal" in run.error_message
        assert "token rejected" in _state(db).last_error

    @pytest.mark.asyncio
    async def test_missing_token_fails_run(self, db, make_settings):
        crm = FakeHubSpotConnector()

        result = await _service(db, make_settings(hubspot_access_token=""), crm).run_incremental_sync()

        assert not result.succeeded
        assert "ConfigurationError" in db.get(SyncRun, result.run_id).error_message
        assert crm.page_calls == []

    @pytest.mark.asyncio
    async def test_success_clears_previous_error(self, db, settings):
        await _service(db, settings, FakeHubSpotConnector(pages=[RuntimeError("boom")])).run_incremental_sync()
        assert _state(db).last_error

        await _service(db, settings, FakeHubSpotConnector()).run_incremental_sync()

        assert _state(db).last_error is None


# ────────────────────────────────────────────
# RECONCILIATION
# ────────────────────────────────────────────


class TestUpsertDeal:

    @pytest.mark.asyncio
    async def test_insert_then_identical_is_skipped(self, db, settings):
        service = _service(db, settings, FakeHubSpotConnector())

        first = await service.upsert_deal(build_deal())
        again = await service.upsert_deal(build_deal())

        assert first.imported == 1
        assert again.skipped == 1
        assert db.query(DealRecord).count() == 1

    @pytest.mark.asyncio
    async def test_changed_payload_is_updated(self, db, settings):
        service = _service(db, settings, FakeHubSpotConnector())
        await service.upsert_deal(build_deal())

        counts = await service.upsert_deal(build_deal(payload_hash="hash-2", deal_name="Renamed"))

        assert counts.updated == 1
        assert db.query(DealRecord).one().deal_name == "Renamed"

    @pytest.mark.asyncio
    async def test_no_longer_fulfilled_is_removed(self, db, settings):
        service = _service(db, settings, FakeHubSpotConnector())
        await service.upsert_deal(build_deal())

        counts = await service.upsert_deal(build_deal(is_fulfilled=False, stage="Förlorad"))

        assert counts.updated == 1
        assert db.query(DealRecord).count() == 0

    @pytest.mark.asyncio
    async def test_unfulfilled_unknown_is_skipped(self, db, settings):
        service = _service(db, settings, FakeHubSpotConnector())
        assert (await service.upsert_deal(build_deal(is_fulfilled=False))).skipped == 1
        assert (await service.upsert_deal(build_deal(fulfilled_date=None))).skipped == 1
        assert db.query(DealRecord).count() == 0

    @pytest.mark.asyncio
    async def test_missing_id_or_owner_is_skipped(self, db, settings):
        service = _service(db, settings, FakeHubSpotConnector())
        assert (await service.upsert_deal(build_deal(None))).skipped == 1
        assert (await service.upsert_deal(build_deal(owner_id=None))).skipped == 1
        assert db.query(DealRecord).count() == 0

    @pytest.mark.asyncio
    async def test_owner_profile_fills_email_and_account(self, db, settings, make_user):
        user = make_user("1234")
        crm = FakeHubSpotConnector(owners={"101": HubSpotOwner(owner_id="101", email="1234@stl.nu")})

        await _service(db, settings, crm).upsert_deal(build_deal())

        record = db.query(DealRecord).one()
        assert record.owner_email == "1234@stl.nu"
        assert record.owner_user_id == user.id
        assert record.amount == 1000
        assert record.first_seen_at is not None

    @pytest.mark.asyncio
    async def test_seller_mode_requires_seller_id(self, db, make_settings, make_user):
        user = make_user("4321")
        service = _service(db, make_settings(identity_strategy="seller_id"), FakeHubSpotConnector())

        assert (await service.upsert_deal(build_deal("D1"))).skipped == 1
        assert (await service.upsert_deal(build_deal("D2", seller_id="4321"))).imported == 1

        record = db.query(DealRecord).one()
        assert record.seller_id == "4321"
        assert record.owner_user_id == user.id


# ────────────────────────────────────────────
# IN-FLIGHT RUNS
# ────────────────────────────────────────────


class TestRunBookkeeping:

    def test_has_in_flight_run(self, db):
        now = utc_now()
        db.add(SyncRun(integration_name=INTEGRATION_NAME, started_at=now - timedelta(minutes=10), status=RUN_STARTED))
        db.commit()

        assert has_in_flight_run(db, 2, now=now)
        assert not has_in_flight_run(db, 2, now=now + timedelta(hours=3))

    def test_finished_runs_are_not_in_flight(self, db):
        db.add(SyncRun(integration_name=INTEGRATION_NAME, started_at=utc_now(), status=RUN_SUCCEEDED))
        db.commit()

        assert not has_in_flight_run(db, 2)

    @pytest.mark.asyncio
    async def test_abandoned_runs_expire_at_next_start(self, db, settings):
        stale = SyncRun(integration_name=INTEGRATION_NAME, started_at=utc_now() - timedelta(hours=5), status=RUN_STARTED)
        db.add(stale)
        db.commit()

        await _service(db, settings, FakeHubSpotConnector()).run_incremental_sync()

        db.refresh(stale)
        assert stale.status == RUN_FAILED
        assert stale.error_message.startswith("Run abandoned")

    @pytest.mark.asyncio
    async def test_recent_runs_newest_first(self, db, settings):
        service = _service(db, settings, FakeHubSpotConnector())
        first = await service.run_incremental_sync()
        second = await service.run_incremental_sync()

        assert [r.id for r in service.recent_runs()] == [second.run_id, first.run_id]


# ────────────────────────────────────────────
# REBUILDS
# ────────────────────────────────────────────


class TestRebuild:

    @pytest.mark.asyncio
    async def test_rebuild_window_replaces_mirror(self, db, settings, make_user):
        user = make_user("1234")
        db.add(DealRecord(hubspot_deal_id="OLD", fulfilled_date=datetime(2025, 1, 1), owner_id="7"))
        db.add(OwnerMapping(hubspot_owner_id="7", owner_user_id=user.id))
        db.commit()
        crm = FakeHubSpotConnector(window_pages=[
            DealPage(deals=[build_deal("N1")], next_cursor="w2"),
            DealPage(deals=[build_deal("N2")]),
        ])
        start, end = datetime(2026, 1, 31, 23), datetime(2026, 2, 28, 23)

        result = await _service(db, settings, crm).rebuild_window(start, end)

        assert result.succeeded
        assert sorted(d.hubspot_deal_id for d in db.query(DealRecord).all()) == ["N1", "N2"]
        assert db.query(OwnerMapping).filter_by(hubspot_owner_id="7").first() is None
        assert [c["cursor"] for c in crm.window_calls] == [None, "w2"]
        assert crm.window_calls[0]["start"] == start and crm.window_calls[0]["end"] == end

        run = db.get(SyncRun, result.run_id)
        assert run.run_kind == "rebuild"
        assert run.deals_imported == 2

    @pytest.mark.asyncio
    async def test_rebuild_current_month_uses_local_month(self, db, settings):
        crm = FakeHubSpotConnector()

        await _service(db, settings, crm).rebuild_current_month_only(now=datetime(2026, 2, 15, 12))

        # Stockholm is UTC+1 in winter
        assert crm.window_calls[0]["start"] == datetime(2026, 1, 31, 23)
        assert crm.window_calls[0]["end"] == datetime(2026, 2, 28, 23)

    @pytest.mark.asyncio
    async def test_rebuild_failure_is_recorded(self, db, settings):
        crm = FakeHubSpotConnector(window_pages=[DealPage.failed_page()])

        result = await _service(db, settings, crm).rebuild_window(datetime(2026, 2, 1), datetime(2026, 3, 1))

        assert result.succeeded
        assert "1 page(s) failed" in result.message

    @pytest.mark.asyncio
    async def test_rebuild_disabled(self, db, make_settings):
        result = await _service(db, make_settings(hubspot_enabled=False), FakeHubSpotConnector()).rebuild_current_month_only()
        assert result.message == DISABLED_MESSAGE


# ────────────────────────────────────────────
# CONTESTS
# ────────────────────────────────────────────


class TestContestWindows:

    @pytest.mark.asyncio
    async def test_active_contest_window_is_pulled_and_ranked(self, db, settings):
        contest = _current_contest(db)
        now = utc_now()
        crm = FakeHubSpotConnector(window_pages=[
            DealPage(deals=[
                build_deal("W1", fulfilled_date=now, owner_id="101"),
                build_deal("W2", fulfilled_date=now, owner_id="101"),
                build_deal("W3", fulfilled_date=now, owner_id="202"),
            ]),
        ])

        result = await _service(db, settings, crm).run_incremental_sync()

        assert result.succeeded
        assert len(crm.window_calls) == 1
        entries = (
            db.query(ContestEntry)
            .filter_by(contest_id=contest.id)
            .order_by(ContestEntry.deals_count.desc())
            .all()
        )
        assert [(e.aggregation_key, e.deals_count) for e in entries] == [("id:101", 2), ("id:202", 1)]

    @pytest.mark.asyncio
    async def test_inactive_contest_is_ignored(self, db, settings):
        _current_contest(db, is_active=False)
        crm = FakeHubSpotConnector()

        await _service(db, settings, crm).run_incremental_sync()

        assert crm.window_calls == []
        assert db.query(ContestEntry).count() == 0
