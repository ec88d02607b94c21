"""Tests for next-run computation of reindex schedules."""

from datetime import datetime, timezone

import pytest

from app.features.database.models import ScheduleMode
from app.features.scheduling import compute_next_run, validate_schedule
from app.shared.errors import ConfigurationError


def _utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def test_daily_rolls_over_to_tomorrow():
    now = _utc(2024, 1, 1, 10, 0)
    assert compute_next_run(ScheduleMode.DAILY, "03:00", "UTC", now=now) == _utc(2024, 1, 2, 3, 0)


def test_daily_later_today():
    now = _utc(2024, 1, 1, 1, 0)
    assert compute_next_run("daily", "03:00", "UTC", now=now) == _utc(2024, 1, 1, 3, 0)


def test_daily_uses_schedule_timezone():
    # 05:00 EST, so 03:00 local has passed
    now = _utc(2024, 1, 1, 10, 0)
    assert compute_next_run("daily", "03:00", "America/New_York", now=now) == _utc(2024, 1, 2, 8, 0)


def test_daily_keeps_local_time_across_dst():
    # Clocks move forward on 2024-03-10; 03:00 local is then UTC-4
    now = _utc(2024, 3, 9, 12, 0)
    assert compute_next_run("daily", "03:00", "America/New_York", now=now) == _utc(2024, 3, 10, 7, 0)


def test_weekly_next_matching_weekday():
    wednesday = _utc(2024, 1, 3, 8, 0)
    assert compute_next_run("weekly", "09:00", "UTC", ["monday"], now=wednesday) == _utc(2024, 1, 8, 9, 0)


def test_weekly_same_day_before_and_after_time():
    assert compute_next_run("weekly", "09:00", "UTC", ["Monday"], now=_utc(2024, 1, 8, 8, 0)) == _utc(2024, 1, 8, 9, 0)
    assert compute_next_run("weekly", "09:00", "UTC", ["monday"], now=_utc(2024, 1, 8, 10, 0)) == _utc(2024, 1, 15, 9, 0)


def test_weekly_picks_earliest_of_several_days():
    wednesday = _utc(2024, 1, 3, 8, 0)
    result = compute_next_run("weekly", "09:00", "UTC", ["monday", "friday"], now=wednesday)
    assert result == _utc(2024, 1, 5, 9, 0)


def test_weekly_without_days_never_fires():
    assert compute_next_run("weekly", "09:00", "UTC", [], now=_utc(2024, 1, 3)) is None


def test_once_future_and_past():
    now = _utc(2024, 1, 1, 10, 0)
    assert compute_next_run("once", "03:00", "UTC", one_time_date="2024-02-01", now=now) == _utc(2024, 2, 1, 3, 0)
    assert compute_next_run("once", "03:00", "UTC", one_time_date="2023-12-31", now=now) is None
    assert compute_next_run("once", "03:00", "UTC", now=now) is None


def test_disabled_never_fires():
    assert compute_next_run(ScheduleMode.DISABLED, "03:00", "UTC") is None


def test_naive_now_is_taken_as_utc():
    assert compute_next_run("daily", "03:00", "UTC", now=datetime(2024, 1, 1, 10, 0)) == _utc(2024, 1, 2, 3, 0)


@pytest.mark.parametrize("kwargs", [
    {"mode": "daily", "time_of_day": "25:00", "timezone_name": "UTC"},
    {"mode": "daily", "time_of_day": "noon", "timezone_name": "UTC"},
    {"mode": "daily", "time_of_day": "03:00", "timezone_name": "Mars/Olympus"},
    {"mode": "weekly", "time_of_day": "03:00", "timezone_name": "UTC", "days_of_week": []},
    {"mode": "weekly", "time_of_day": "03:00", "timezone_name": "UTC", "days_of_week": ["funday"]},
    {"mode": "once", "time_of_day": "03:00", "timezone_name": "UTC"},
    {"mode": "once", "time_of_day": "03:00", "timezone_name": "UTC", "one_time_date": "next week"},
])
def test_validate_schedule_rejects_bad_input(kwargs):
    with pytest.raises(ConfigurationError):
        validate_schedule(**kwargs)


def test_validate_schedule_ignores_fields_of_disabled_schedule():
    validate_schedule("disabled", "garbage", "Nowhere/Zone")
