"""
Sync bookkeeping: resumable state per integration and an append-only run log
"""
from sqlalchemy import Column, Integer, String, DateTime, Text
from dealboard.models.base import Base

RUN_STARTED = "Started"
RUN_SUCCEEDED = "Succeeded"
RUN_FAILED = "Failed"


class SyncState(Base):
    __tablename__ = "sync_states"

    id = Column(Integer, primary_key=True, index=True)
    integration_name = Column(String(128), unique=True, nullable=False)
    last_successful_sync_at = Column(DateTime)  # None until backfill completes
    last_cursor = Column(String(512))  # HubSpot "after" token
    cursor_started_at = Column(DateTime)  # start of the run that opened last_cursor
    last_attempt_at = Column(DateTime)
    last_error = Column(String(2000))


class SyncRun(Base):
    __tablename__ = "sync_runs"

    id = Column(Integer, primary_key=True, index=True)
    integration_name = Column(String(128), nullable=False, index=True)
    run_kind = Column(String(32), nullable=False, default="incremental")  # incremental, rebuild
    started_at = Column(DateTime, nullable=False, index=True)
    finished_at = Column(DateTime)
    status = Column(String(16), nullable=False, default=RUN_STARTED, index=True)

    deals_fetched = Column(Integer, default=0, nullable=False)
    deals_imported = Column(Integer, default=0, nullable=False)
    deals_updated = Column(Integer, default=0, nullable=False)
    deals_skipped = Column(Integer, default=0, nullable=False)
    pages_failed = Column(Integer, default=0, nullable=False)

    error_message = Column(Text)
