from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy import text
from sqlalchemy.engine import Engine

from .version import APP_VERSION


@dataclass
class MigrationReport:
    previous_db_version: Optional[str]
    current_db_version: str
    applied_steps: List[str]


# (table, column, DDL type) for columns added after the first schema.
_ADDITIVE_COLUMNS: List[Tuple[str, str, str]] = [
    ("tasks", "due_time", "VARCHAR(5)"),
    ("tasks", "original_due_date_utc", "DATETIME"),
    ("tasks", "completed_at_utc", "DATETIME"),
    ("projects", "description", "TEXT"),
]

_INDEXES: List[Tuple[str, str, str]] = [
    ("ix_tasks_parent_template_id", "tasks", "parent_template_id"),
    ("ix_tasks_user_due", "tasks", "user_id, due_date_utc"),
    ("ix_tasks_user_completed", "tasks", "user_id, completed"),
]


def _parse_version(v: str) -> Tuple[int, int, int]:
    """Parse a semantic version string like '0.3.0'."""
    try:
        parts = (v or "").strip().split(".")
        major = int(parts[0]) if len(parts) > 0 else 0
        minor = int(parts[1]) if len(parts) > 1 else 0
        patch = int(parts[2]) if len(parts) > 2 else 0
        return major, minor, patch
    except ValueError:
        return 0, 0, 0


def _table_exists(conn, table_name: str) -> bool:
    q = text("SELECT name FROM sqlite_master WHERE type='table' AND name=:t")
    row = conn.execute(q, {"t": table_name}).fetchone()
    return bool(row and row[0] == table_name)


def _column_exists(conn, table_name: str, column_name: str) -> bool:
    rows = conn.execute(text(f"PRAGMA table_info({table_name})")).fetchall()
    for r in rows:
        # (cid, name, type, notnull, dflt_value, pk)
        if len(r) >= 2 and str(r[1]).lower() == column_name.lower():
            return True
    return False


def _get_meta(conn, key: str) -> Optional[str]:
    if not _table_exists(conn, "app_meta"):
        return None
    row = conn.execute(text("SELECT value FROM app_meta WHERE key=:k"), {"k": key}).fetchone()
    return str(row[0]) if row and row[0] is not None else None


def _set_meta(conn, key: str, value: str) -> None:
    conn.execute(
        text(
            "INSERT INTO app_meta(key, value, updated_at) VALUES (:k, :v, :u) "
            "ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at"
        ),
        {"k": key, "v": value, "u": datetime.utcnow().replace(tzinfo=None)},
    )


def ensure_db_schema(engine: Engine) -> MigrationReport:
    """Bring an existing SQLite database up to the current schema.

    Only additive steps are applied (new nullable columns and indexes). Fresh
    databases get everything from `create_all`, so on them this only stamps
    the version keys in `app_meta`.
    """
    applied: List[str] = []

    with engine.begin() as conn:
        if not _table_exists(conn, "app_meta"):
            conn.execute(
                text(
                    "CREATE TABLE IF NOT EXISTS app_meta ("
                    "  key VARCHAR(64) PRIMARY KEY,"
                    "  value VARCHAR(255) NOT NULL,"
                    "  updated_at DATETIME NOT NULL"
                    ")"
                )
            )
            applied.append("create_table:app_meta")

        prev = _get_meta(conn, "db_version")

        for table, column, ddl_type in _ADDITIVE_COLUMNS:
            if _table_exists(conn, table) and not _column_exists(conn, table, column):
                conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {ddl_type}"))
                applied.append(f"alter_table:{table}:add_column:{column}")

        for name, table, columns in _INDEXES:
            if _table_exists(conn, table):
                conn.execute(text(f"CREATE INDEX IF NOT EXISTS {name} ON {table}({columns})"))

        _set_meta(conn, "db_version", APP_VERSION)
        _set_meta(conn, "app_version", APP_VERSION)

    return MigrationReport(previous_db_version=prev, current_db_version=APP_VERSION, applied_steps=applied)


def db_needs_upgrade(previous_db_version: Optional[str]) -> bool:
    if previous_db_version is None:
        return True
    return _parse_version(previous_db_version) < _parse_version(APP_VERSION)
