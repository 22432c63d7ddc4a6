"""
Shared fixtures: in-memory database, settings and a fake HubSpot connector.

Environment defaults are set before any dealboard import so module-level
settings (logger, engine, scheduler) never touch real files or services.
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("LOG_FILE_ENABLED", "false")
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("HUBSPOT_ENABLED", "false")

from typing import Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from dealboard.config import Settings
from dealboard.models.base import init_db
from dealboard.models.user import User
from fakes import FakeHubSpotConnector, build_deal


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(engine):
    Session = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    session = Session()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def make_settings():
    def _make(**overrides) -> Settings:
        values = dict(
            hubspot_enabled=True,
            hubspot_access_token="test-token",
            username_email_domain="stl.nu",
            local_timezone="Europe/Stockholm",
            log_file_enabled=False,
            scheduler_enabled=False,
        )
        values.update(overrides)
        return Settings(_env_file=None, **values)
    return _make


@pytest.fixture
def settings(make_settings):
    return make_settings()


@pytest.fixture
def make_user(db):
    def _make(username: str, user_id: Optional[str] = None, **fields) -> User:
        user = User(id=user_id or f"user-{username}", username=username, **fields)
        db.add(user)
        db.commit()
        return user
    return _make


@pytest.fixture
def fake_crm():
    return FakeHubSpotConnector()


@pytest.fixture
def make_deal():
    return build_deal
