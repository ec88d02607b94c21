"""
Next-run computation for reindex schedules.

All arithmetic happens in the schedule's own timezone (so 03:00 stays
03:00 across DST changes); results are returned in UTC.
"""

from datetime import date, datetime, time, timedelta
from typing import Iterable, List, Optional

import pytz

from app.features.database.models import ScheduleMode
from app.shared.errors import ConfigurationError

WEEKDAYS = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]


def parse_time_of_day(value: str) -> time:
    """'HH:MM' (24h) -> time. Raises ConfigurationError."""
    try:
        hours, minutes = (value or "").strip().split(":")
        return time(int(hours), int(minutes))
    except ValueError as exc:
        raise ConfigurationError(f"Invalid time of day '{value}', expected HH:MM") from exc


def get_timezone(name: str) -> pytz.BaseTzInfo:
    try:
        return pytz.timezone(name)
    except pytz.UnknownTimeZoneError as exc:
        raise ConfigurationError(f"Unknown timezone '{name}'") from exc


def parse_weekdays(days: Optional[Iterable[str]]) -> List[int]:
    """Weekday names -> sorted Monday=0 indexes. Raises ConfigurationError."""
    indexes = set()
    for day in days or []:
        name = (day or "").strip().lower()
        if name not in WEEKDAYS:
            raise ConfigurationError(f"Unknown weekday '{day}'")
        indexes.add(WEEKDAYS.index(name))
    return sorted(indexes)


def parse_date(value: str) -> date:
    try:
        return date.fromisoformat((value or "").strip()[:10])
    except ValueError as exc:
        raise ConfigurationError(f"Invalid date '{value}', expected YYYY-MM-DD") from exc


def _at(tz: pytz.BaseTzInfo, day: date, time_of_day: time) -> datetime:
    local = tz.localize(datetime.combine(day, time_of_day))
    return tz.normalize(local).astimezone(pytz.utc)


def compute_next_run(
    mode: ScheduleMode,
    time_of_day: str,
    timezone_name: str = "UTC",
    days_of_week: Optional[Iterable[str]] = None,
    one_time_date: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Optional[datetime]:
    """
    Next moment a schedule should fire, strictly after `now`.

    Args:
        mode: disabled, once, daily or weekly
        time_of_day: 'HH:MM' in the schedule's timezone
        timezone_name: IANA timezone name
        days_of_week: Weekday names, used by weekly schedules
        one_time_date: 'YYYY-MM-DD', used by once schedules
        now: Reference moment (aware; naive values are taken as UTC)

    Returns:
        Aware UTC datetime, or None when the schedule never fires again
    """
    mode = ScheduleMode(mode)
    if mode == ScheduleMode.DISABLED:
        return None

    now = now or datetime.now(pytz.utc)
    if now.tzinfo is None:
        now = pytz.utc.localize(now)

    tz = get_timezone(timezone_name)
    at = parse_time_of_day(time_of_day)
    local_today = now.astimezone(tz).date()

    if mode == ScheduleMode.ONCE:
        if not one_time_date:
            return None
        candidate = _at(tz, parse_date(one_time_date), at)
        return candidate if candidate > now else None

    if mode == ScheduleMode.DAILY:
        candidate = _at(tz, local_today, at)
        if candidate <= now:
            candidate = _at(tz, local_today + timedelta(days=1), at)
        return candidate

    weekdays = parse_weekdays(days_of_week)
    if not weekdays:
        return None
    # Eight days covers today-but-already-passed rolling over to next week
    for offset in range(8):
        day = local_today + timedelta(days=offset)
        if day.weekday() not in weekdays:
            continue
        candidate = _at(tz, day, at)
        if candidate > now:
            return candidate
    return None


def validate_schedule(
    mode: ScheduleMode,
    time_of_day: str,
    timezone_name: str,
    days_of_week: Optional[Iterable[str]] = None,
    one_time_date: Optional[str] = None,
) -> None:
    """Raise ConfigurationError if the schedule cannot be evaluated."""
    mode = ScheduleMode(mode)
    if mode == ScheduleMode.DISABLED:
        return
    parse_time_of_day(time_of_day)
    get_timezone(timezone_name)
    if mode == ScheduleMode.WEEKLY and not parse_weekdays(days_of_week):
        raise ConfigurationError("Weekly schedules need at least one weekday")
    if mode == ScheduleMode.ONCE:
        if not one_time_date:
            raise ConfigurationError("One-time schedules need a date")
        parse_date(one_time_date)
