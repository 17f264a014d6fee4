from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from functools import lru_cache
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from shiftcheck.errors import bad_request
from shiftcheck.settings import get_settings

DEFAULT_TIMEZONE = "Europe/Madrid"


@lru_cache
def attendance_timezone() -> ZoneInfo:
    raw_name = (get_settings().attendance_timezone or "").strip() or DEFAULT_TIMEZONE
    try:
        return ZoneInfo(raw_name)
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo(DEFAULT_TIMEZONE)


def domain_weekday(day: date) -> int:
    """Monday=1 .. Sunday=7. Every weekday derivation in the code base goes through here."""
    return day.isoweekday()


def is_valid_weekday(value: int) -> bool:
    return 1 <= value <= 7


def monday_of(day: date) -> date:
    return day - timedelta(days=domain_weekday(day) - 1)


def parse_hhmm(value: str) -> time:
    try:
        hour_str, minute_str = value.strip().split(":")
        hour = int(hour_str)
        minute = int(minute_str)
    except (AttributeError, ValueError):
        raise bad_request("INVALID_TIME_FORMAT", f"Invalid time '{value}', expected HH:MM.") from None
    if hour < 0 or hour > 23 or minute < 0 or minute > 59:
        raise bad_request("INVALID_TIME_FORMAT", f"Invalid time '{value}', expected HH:MM.")
    return time(hour=hour, minute=minute)


def format_hhmm(value: time | None) -> str | None:
    if value is None:
        return None
    return value.strftime("%H:%M")


def minutes_of_day(value: time | datetime) -> int:
    return value.hour * 60 + value.minute


def normalize_ts(ts_utc: datetime) -> datetime:
    if ts_utc.tzinfo is None:
        return ts_utc.replace(tzinfo=timezone.utc)
    return ts_utc.astimezone(timezone.utc)


def to_local(ts_utc: datetime) -> datetime:
    return normalize_ts(ts_utc).astimezone(attendance_timezone())


def local_date(ts_utc: datetime) -> date:
    return to_local(ts_utc).date()


def combine_local_utc(day: date, value: time) -> datetime:
    local_dt = datetime.combine(day, value, tzinfo=attendance_timezone())
    return local_dt.astimezone(timezone.utc)


def local_day_bounds_utc(day: date) -> tuple[datetime, datetime]:
    start = combine_local_utc(day, time.min)
    end = combine_local_utc(day + timedelta(days=1), time.min)
    return start, end
