from __future__ import annotations

import re
from datetime import datetime, time, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from ..config import get_settings


_DUE_TIME_RE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


def get_app_tz() -> ZoneInfo:
    s = get_settings()
    try:
        return ZoneInfo(s.app.timezone)
    except Exception:
        return ZoneInfo("UTC")


def now_utc() -> datetime:
    # Stored timestamps are naive UTC.
    return datetime.utcnow().replace(tzinfo=None)


def as_aware_utc(dt_utc_naive: datetime) -> datetime:
    return dt_utc_naive.replace(tzinfo=timezone.utc)


def to_local(dt_utc_naive: datetime) -> datetime:
    tz = get_app_tz()
    return as_aware_utc(dt_utc_naive).astimezone(tz)


def to_local_naive(dt_utc_naive: datetime) -> datetime:
    """Wall-clock time in the app timezone, without tzinfo (calendar arithmetic frame)."""
    return to_local(dt_utc_naive).replace(tzinfo=None)


def from_local_to_utc_naive(dt_local_naive: datetime) -> datetime:
    tz = get_app_tz()
    aware_local = dt_local_naive.replace(tzinfo=tz)
    aware_utc = aware_local.astimezone(timezone.utc)
    return aware_utc.replace(tzinfo=None)


def normalize_datetime_to_utc_naive(dt: datetime) -> datetime:
    """Normalize a datetime to naive UTC.

    - If `dt` is timezone-aware, convert to UTC and drop tzinfo.
    - If `dt` is naive, interpret it in app timezone and convert to UTC.
    """
    if dt.tzinfo is not None:
        return dt.astimezone(timezone.utc).replace(tzinfo=None)
    return from_local_to_utc_naive(dt)


def local_day_bounds_utc(dt_utc_naive: datetime, *, days_offset: int = 0) -> tuple[datetime, datetime]:
    """Return [start, end) of the local calendar day containing `dt_utc_naive`, as naive UTC."""
    local_day = to_local_naive(dt_utc_naive).date() + timedelta(days=days_offset)
    start = datetime.combine(local_day, time.min)
    end = start + timedelta(days=1)
    return from_local_to_utc_naive(start), from_local_to_utc_naive(end)


def normalize_due_time(value: Optional[str]) -> Optional[str]:
    """Validate an HH:MM (24h) wall-clock time; blank means no time."""
    if value is None:
        return None
    v = str(value).strip()
    if not v:
        return None
    if not _DUE_TIME_RE.match(v):
        raise ValueError("due_time must use HH:MM (24h)")
    return v
