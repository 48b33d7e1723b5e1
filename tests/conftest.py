from __future__ import annotations

import os
import tempfile
from datetime import datetime
from pathlib import Path

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker


SETTINGS_TEMPLATE = """
app:
  name: "Cadence"
  timezone: "{tz}"
security:
  jwt_secret: "test-jwt-secret"
  token_minutes: 60
database:
  path: "{db}"
recurrence:
  default_max_instances: 50
  regenerate_max_instances: 50
  generate_more_default: 10
  horizon_days: 365
  extend_interval_minutes: 0
  extend_min_future: 10
logging:
  level: "INFO"
  dir: "{logs}"
"""

# Fixed "now" for engine tests; due dates are chosen relative to it.
NOW = datetime(2026, 1, 5, 12, 0)


def write_settings(base: Path, *, tz: str = "UTC") -> Path:
    path = base / "settings.yml"
    path.write_text(
        SETTINGS_TEMPLATE.format(tz=tz, db=str(base / "import.db"), logs=str(base / "logs")).lstrip(),
        encoding="utf-8",
    )
    return path


# cadence.db builds its engine at import time, so a settings file must exist
# before any test module imports the package.
_SESSION_DIR = Path(tempfile.mkdtemp(prefix="cadence-tests-"))
os.environ["CADENCE_SETTINGS"] = str(write_settings(_SESSION_DIR))


@pytest.fixture
def settings_tmp(tmp_path, monkeypatch):
    """Isolate settings per test."""
    from cadence.config import get_settings

    path = write_settings(tmp_path)
    monkeypatch.setenv("CADENCE_SETTINGS", str(path))
    get_settings.cache_clear()
    yield path
    get_settings.cache_clear()


def make_engine(db_path: str):
    engine = create_engine(
        f"sqlite+pysqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(engine, "connect")
    def _set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    return engine


def init_full_schema(engine):
    from cadence.db import Base
    from cadence.migrations import ensure_db_schema

    Base.metadata.create_all(bind=engine)
    ensure_db_schema(engine)


@pytest.fixture
def engine(settings_tmp, tmp_path):
    eng = make_engine(str(tmp_path / "test.db"))
    init_full_schema(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def user(db):
    from cadence.crud import create_user

    return create_user(db, username="alice", password="password123", email="alice@example.com")


@pytest.fixture
def other_user(db):
    from cadence.crud import create_user

    return create_user(db, username="bob", password="password123")
