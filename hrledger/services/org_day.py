"""Organizational-day arithmetic.

Every attendance and leave decision is made against the organization's local
calendar day, resolved through the configured IANA time zone. Timestamps are
stored in UTC; naive values coming back from storage are treated as UTC.
"""

from __future__ import annotations

from calendar import monthrange
from collections.abc import Iterator
from datetime import date, datetime, time, timedelta, timezone
from functools import lru_cache
from zoneinfo import ZoneInfo

from hrledger.errors import ValidationError
from hrledger.settings import get_settings

DEFAULT_TIMEZONE = "Asia/Kolkata"
SUNDAY = 6


@lru_cache
def org_timezone() -> ZoneInfo:
    raw_name = (get_settings().attendance_timezone or "").strip() or DEFAULT_TIMEZONE
    try:
        return ZoneInfo(raw_name)
    except Exception:
        return ZoneInfo(DEFAULT_TIMEZONE)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_ts(ts: datetime | None) -> datetime:
    if ts is None:
        return utcnow()
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def org_day_of(ts: datetime) -> date:
    return normalize_ts(ts).astimezone(org_timezone()).date()


def org_today(now: datetime | None = None) -> date:
    return org_day_of(normalize_ts(now))


def local_time_of(ts: datetime) -> time:
    return normalize_ts(ts).astimezone(org_timezone()).time()


def day_bounds_utc(day: date) -> tuple[datetime, datetime]:
    """Return the UTC instants at which the local day starts and the next one starts."""
    tz = org_timezone()
    start_local = datetime.combine(day, time.min, tzinfo=tz)
    end_local = datetime.combine(day + timedelta(days=1), time.min, tzinfo=tz)
    return start_local.astimezone(timezone.utc), end_local.astimezone(timezone.utc)


def parse_hhmm(value: str) -> time:
    try:
        hour_str, minute_str = value.strip().split(":")
        hour = int(hour_str)
        minute = int(minute_str)
    except (AttributeError, ValueError) as exc:
        raise ValidationError("Invalid time format, expected HH:MM", code="INVALID_TIME_FORMAT") from exc
    if hour < 0 or hour > 23 or minute < 0 or minute > 59:
        raise ValidationError("Invalid time format, expected HH:MM", code="INVALID_TIME_FORMAT")
    return time(hour=hour, minute=minute)


def combine_local(day: date, hhmm: str | None) -> datetime | None:
    if hhmm is None:
        return None
    local_dt = datetime.combine(day, parse_hhmm(hhmm), tzinfo=org_timezone())
    return local_dt.astimezone(timezone.utc)


def is_working_day(day: date) -> bool:
    return day.weekday() != SUNDAY


def is_weekend(day: date) -> bool:
    return day.weekday() >= 5


def iter_days(start: date, end: date) -> Iterator[date]:
    current = start
    while current <= end:
        yield current
        current += timedelta(days=1)


def working_days_between(start: date, end: date) -> int:
    return sum(1 for day in iter_days(start, end) if is_working_day(day))


def month_range(year: int, month: int) -> tuple[date, date]:
    if month < 1 or month > 12:
        raise ValidationError("month must be between 1 and 12")
    return date(year, month, 1), date(year, month, monthrange(year, month)[1])


def working_days_in_month(year: int, month: int) -> int:
    start, end = month_range(year, month)
    return working_days_between(start, end)
