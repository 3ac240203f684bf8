"""
Timezone utilities for the Coachline platform.

Coach schedules are stored as local wall-clock times in the coach's zone;
bookings are stored as UTC instants. These helpers move between the two.
"""

from datetime import date, datetime, time, timedelta, timezone
from typing import Optional

import pytz


def get_timezone(name: Optional[str], default: str = "UTC") -> pytz.BaseTzInfo:
    """
    Resolve an IANA zone name, falling back to ``default`` for unknown names.

    Args:
        name: Zone name such as "America/New_York"
        default: Zone used when ``name`` is empty or unknown

    Returns:
        pytz timezone object
    """
    try:
        return pytz.timezone(name or default)
    except pytz.UnknownTimeZoneError:
        return pytz.timezone(default)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes (as returned by SQLite) as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_hhmm(value: str) -> time:
    hour, minute = value.split(":")[:2]
    return time(int(hour), int(minute))


def format_hhmm(value: time) -> str:
    return f"{value.hour:02d}:{value.minute:02d}"


def local_to_utc(day: date, local_time: time, tz_name: str) -> datetime:
    """
    Convert a coach-local wall-clock time on ``day`` to a UTC instant.

    Non-existent local times (spring-forward gaps) are shifted forward by
    pytz's normalization.
    """
    tz = get_timezone(tz_name)
    local_dt = tz.localize(datetime.combine(day, local_time), is_dst=False)
    return tz.normalize(local_dt).astimezone(pytz.UTC)


def utc_to_local(dt: datetime, tz_name: str) -> datetime:
    return ensure_utc(dt).astimezone(get_timezone(tz_name))


def convert_time_string(
    time_str: str, on_date: date, from_tz: str, to_tz: str
) -> str:
    """
    Convert an "HH:MM" string in ``from_tz`` on ``on_date`` to "HH:MM" in ``to_tz``.

    Display-only: the authoritative schedule is never rewritten.
    """
    if from_tz == to_tz:
        return time_str
    instant = local_to_utc(on_date, parse_hhmm(time_str), from_tz)
    return format_hhmm(utc_to_local(instant, to_tz).time())


def next_weekday_midnight_utc(now: datetime, weekday: int = 0) -> datetime:
    """Return the next occurrence (strictly after ``now``) of ``weekday`` at 00:00 UTC."""
    now = ensure_utc(now)
    days_ahead = (weekday - now.weekday()) % 7 or 7
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    return midnight + timedelta(days=days_ahead)
