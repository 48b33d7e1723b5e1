from __future__ import annotations

import calendar
from datetime import datetime, timedelta, timezone
from typing import Annotated, Any, Iterator, List, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SerializationInfo,
    TypeAdapter,
    ValidationError,
    field_serializer,
    field_validator,
)

from .utils.time_utils import normalize_datetime_to_utc_naive


RULE_TYPES = ("daily", "weekly", "monthly", "yearly")


class RecurrenceError(ValueError):
    pass


class _RuleBase(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    interval: int = Field(default=1, ge=1)
    end_date: Optional[datetime] = None
    max_occurrences: Optional[int] = Field(default=None, ge=1)
    paused: bool = False

    @field_validator("end_date")
    @classmethod
    def _end_date_to_utc_naive(cls, v: Optional[datetime]) -> Optional[datetime]:
        # Naive input is app-timezone wall clock, like task due dates.
        if v is None:
            return None
        return normalize_datetime_to_utc_naive(v)

    @field_serializer("end_date")
    def _end_date_as_utc(self, v: Optional[datetime], info: SerializationInfo):
        # Stored rules carry an explicit offset so reading them back is not shifted again.
        if v is None or info.mode != "json":
            return v
        return v.replace(tzinfo=timezone.utc).isoformat()


class DailyRule(_RuleBase):
    type: Literal["daily"] = "daily"


class WeeklyRule(_RuleBase):
    type: Literal["weekly"] = "weekly"
    # 0 = Sunday ... 6 = Saturday
    days_of_week: Optional[List[int]] = None

    @field_validator("days_of_week")
    @classmethod
    def _check_days(cls, v: Optional[List[int]]) -> Optional[List[int]]:
        if v is None:
            return None
        if not v:
            raise ValueError("days_of_week must not be empty")
        for d in v:
            if d < 0 or d > 6:
                raise ValueError("days_of_week values must be between 0 (Sunday) and 6 (Saturday)")
        return sorted(set(v))


class MonthlyRule(_RuleBase):
    type: Literal["monthly"] = "monthly"
    day_of_month: Optional[int] = Field(default=None, ge=1, le=31)


class YearlyRule(_RuleBase):
    type: Literal["yearly"] = "yearly"


RecurrenceRule = Annotated[
    Union[DailyRule, WeeklyRule, MonthlyRule, YearlyRule],
    Field(discriminator="type"),
]

_RULE_ADAPTER: TypeAdapter = TypeAdapter(RecurrenceRule)


def _describe_validation_error(err: ValidationError) -> str:
    parts = []
    for e in err.errors():
        loc = ".".join(str(x) for x in e.get("loc", ()) if x not in RULE_TYPES)
        msg = str(e.get("msg", "invalid value"))
        parts.append(f"{loc}: {msg}" if loc else msg)
    return "Invalid recurrence rule: " + "; ".join(parts)


def parse_rule(data: Any) -> RecurrenceRule:
    """Validate a rule mapping (as stored or as received from a client)."""
    if isinstance(data, _RuleBase):
        return data
    if not isinstance(data, dict):
        raise RecurrenceError("Recurrence rule must be an object")

    rtype = data.get("type")
    if rtype == "custom":
        raise RecurrenceError("Custom recurrence rules are not supported")
    if rtype not in RULE_TYPES:
        raise RecurrenceError(f"Unsupported recurrence type: {rtype}")

    try:
        return _RULE_ADAPTER.validate_python(data)
    except ValidationError as e:
        raise RecurrenceError(_describe_validation_error(e)) from e


def rule_to_json(rule: RecurrenceRule) -> dict[str, Any]:
    return rule.model_dump(mode="json", exclude_none=True)


def schedule_key(rule: RecurrenceRule) -> dict[str, Any]:
    """Fields that define the schedule. Two rules with equal keys generate the same dates.

    `paused` is excluded: pausing is not a pattern change.
    """
    return rule.model_dump(exclude={"paused"})


def sunday_based_weekday(dt: datetime) -> int:
    # Python: Monday=0 .. Sunday=6; rules use Sunday=0 .. Saturday=6.
    return (dt.weekday() + 1) % 7


def add_months(dt: datetime, months: int, *, day: int | None = None) -> datetime:
    """Shift `dt` by whole months, clamping the day to the target month's length."""
    total = dt.month - 1 + months
    year = dt.year + total // 12
    month = total % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return dt.replace(year=year, month=month, day=min(day or dt.day, last_day))


def next_occurrence(current: datetime, rule: RecurrenceRule) -> datetime:
    """Return the occurrence that follows `current`. Time of day is preserved."""
    if isinstance(rule, DailyRule):
        return current + timedelta(days=rule.interval)

    if isinstance(rule, WeeklyRule):
        if not rule.days_of_week:
            return current + timedelta(days=7 * rule.interval)
        wanted = set(rule.days_of_week)
        for offset in range(1, 8):
            candidate = current + timedelta(days=offset)
            if sunday_based_weekday(candidate) in wanted:
                return candidate
        # Unreachable for a validated rule: seven consecutive days cover every weekday.
        raise RecurrenceError(f"No matching weekday in {rule.days_of_week}")

    if isinstance(rule, MonthlyRule):
        return add_months(current, rule.interval, day=rule.day_of_month)

    if isinstance(rule, YearlyRule):
        return add_months(current, 12 * rule.interval)

    raise RecurrenceError(f"Unsupported recurrence rule: {rule!r}")


def iter_occurrences(
    seed: datetime,
    rule: RecurrenceRule,
    *,
    limit: int,
    until: datetime | None = None,
) -> Iterator[datetime]:
    """Yield up to `limit` occurrences after `seed`, stopping past `until`."""
    current = seed
    produced = 0
    while produced < limit:
        current = next_occurrence(current, rule)
        if until is not None and current > until:
            return
        yield current
        produced += 1
