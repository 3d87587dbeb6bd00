"""
Tests for next-occurrence calculation.
"""

from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from conftest import make_definition
from models import Frequency, PeriodUnit
from scheduler.calculator import (
    anchor_instant,
    delay_until_next,
    next_occurrence,
    upcoming_occurrences,
)

NEW_YORK = ZoneInfo("America/New_York")
UTC = timezone.utc


def test_daily_keeps_wall_clock_time_across_spring_forward():
    definition = make_definition(hour=9, anchor=datetime(2024, 3, 8, tzinfo=NEW_YORK))
    now = datetime(2024, 3, 9, 10, 0, tzinfo=NEW_YORK)

    nxt = next_occurrence(definition, now)

    assert (nxt.year, nxt.month, nxt.day, nxt.hour, nxt.minute) == (2024, 3, 10, 9, 0)
    # 23 wall-clock hours less the skipped hour
    assert delay_until_next(definition, now) == timedelta(hours=22)


def test_daily_keeps_wall_clock_time_across_fall_back():
    definition = make_definition(hour=9, anchor=datetime(2024, 11, 1, tzinfo=NEW_YORK))
    now = datetime(2024, 11, 2, 10, 0, tzinfo=NEW_YORK)

    nxt = next_occurrence(definition, now)

    assert (nxt.day, nxt.hour) == (3, 9)
    assert delay_until_next(definition, now) == timedelta(hours=24)


def test_hourly_steps_in_absolute_time_across_dst():
    definition = make_definition(hour=0, minute=30, frequency=Frequency.HOURLY,
                                 anchor=datetime(2024, 3, 10, tzinfo=NEW_YORK))
    now = datetime(2024, 3, 10, 1, 45, tzinfo=NEW_YORK)

    nxt = next_occurrence(definition, now)

    # 02:30 does not exist that night; one hour after 01:30 EST is 03:30 EDT
    assert nxt.astimezone(UTC) == datetime(2024, 3, 10, 7, 30, tzinfo=UTC)
    assert (nxt.hour, nxt.minute) == (3, 30)
    assert delay_until_next(definition, now) == timedelta(minutes=45)


def test_monthly_clamps_to_month_end_and_recovers():
    definition = make_definition(frequency=Frequency.MONTHLY,
                                 anchor=datetime(2024, 1, 31, tzinfo=UTC))

    assert next_occurrence(definition, datetime(2024, 2, 10, tzinfo=UTC)) == \
        datetime(2024, 2, 29, 9, 0, tzinfo=UTC)
    assert next_occurrence(definition, datetime(2024, 4, 15, tzinfo=UTC)) == \
        datetime(2024, 4, 30, 9, 0, tzinfo=UTC)
    assert next_occurrence(definition, datetime(2024, 5, 1, tzinfo=UTC)) == \
        datetime(2024, 5, 31, 9, 0, tzinfo=UTC)


def test_late_firing_does_not_shift_future_occurrences():
    definition = make_definition(hour=9)
    late = datetime(2024, 1, 10, 9, 47, tzinfo=UTC)

    assert next_occurrence(definition, late) == datetime(2024, 1, 11, 9, 0, tzinfo=UTC)


def test_next_occurrence_is_strictly_after_now_and_idempotent():
    definition = make_definition(hour=9)
    on_time = datetime(2024, 1, 10, 9, 0, tzinfo=UTC)

    first = next_occurrence(definition, on_time)
    assert first == datetime(2024, 1, 11, 9, 0, tzinfo=UTC)
    assert next_occurrence(definition, on_time) == first


def test_future_anchor_is_the_first_occurrence():
    definition = make_definition(hour=9, anchor=datetime(2024, 6, 1, tzinfo=UTC))
    now = datetime(2024, 5, 20, 12, 0, tzinfo=UTC)

    assert next_occurrence(definition, now) == datetime(2024, 6, 1, 9, 0, tzinfo=UTC)


def test_weekly_repeats_on_anchor_weekday():
    definition = make_definition(hour=10, frequency=Frequency.WEEKLY,
                                 anchor=datetime(2024, 1, 1, tzinfo=UTC))  # Monday
    now = datetime(2024, 1, 3, 12, 0, tzinfo=UTC)

    assert next_occurrence(definition, now) == datetime(2024, 1, 8, 10, 0, tzinfo=UTC)


def test_custom_day_period():
    definition = make_definition(hour=8, frequency=Frequency.CUSTOM, period=3,
                                 unit=PeriodUnit.DAYS)
    now = datetime(2024, 1, 5, 12, 0, tzinfo=UTC)

    # Jan 1, 4, 7 ...
    assert next_occurrence(definition, now) == datetime(2024, 1, 7, 8, 0, tzinfo=UTC)


def test_custom_hour_period():
    definition = make_definition(hour=8, frequency=Frequency.CUSTOM, period=6,
                                 unit=PeriodUnit.HOURS)
    now = datetime(2024, 1, 1, 15, 0, tzinfo=UTC)

    assert next_occurrence(definition, now) == datetime(2024, 1, 1, 20, 0, tzinfo=UTC)


def test_custom_period_below_one_is_treated_as_one():
    definition = make_definition(hour=8, frequency=Frequency.CUSTOM, period=0,
                                 unit=PeriodUnit.DAYS)
    now = datetime(2024, 1, 5, 12, 0, tzinfo=UTC)

    assert next_occurrence(definition, now) == datetime(2024, 1, 6, 8, 0, tzinfo=UTC)


def test_one_time_schedule_uses_next_time_of_day():
    definition = make_definition(hour=10, recurring=False, frequency=Frequency.WEEKLY)
    now = datetime(2024, 1, 5, 11, 0, tzinfo=UTC)

    assert next_occurrence(definition, now) == datetime(2024, 1, 6, 10, 0, tzinfo=UTC)
    assert upcoming_occurrences(definition, now, count=5) == [
        datetime(2024, 1, 6, 10, 0, tzinfo=UTC)
    ]


def test_fast_forward_over_decades():
    daily = make_definition(hour=9, anchor=datetime(2000, 1, 1, tzinfo=UTC))
    hourly = make_definition(hour=9, frequency=Frequency.HOURLY,
                             anchor=datetime(2000, 1, 1, tzinfo=UTC))
    monthly = make_definition(hour=9, frequency=Frequency.MONTHLY,
                              anchor=datetime(2000, 1, 31, tzinfo=UTC))
    now = datetime(2024, 6, 15, 12, 0, tzinfo=UTC)

    assert next_occurrence(daily, now) == datetime(2024, 6, 16, 9, 0, tzinfo=UTC)
    assert next_occurrence(hourly, now) == datetime(2024, 6, 15, 13, 0, tzinfo=UTC)
    assert next_occurrence(monthly, now) == datetime(2024, 6, 30, 9, 0, tzinfo=UTC)


def test_override_frequency():
    hourly = make_definition(hour=8, frequency=Frequency.HOURLY)
    now = datetime(2024, 1, 1, 9, 30, tzinfo=UTC)

    assert next_occurrence(hourly, now) == datetime(2024, 1, 1, 10, 0, tzinfo=UTC)
    assert next_occurrence(hourly, now, Frequency.DAILY) == datetime(2024, 1, 2, 8, 0, tzinfo=UTC)


def test_anchor_date_is_taken_in_the_wall_clock_zone():
    # 03:00 UTC on Jan 1 is still Dec 31 in New York
    definition = make_definition(hour=9, anchor=datetime(2024, 1, 1, 3, 0, tzinfo=UTC))

    assert anchor_instant(definition, NEW_YORK) == datetime(2023, 12, 31, 9, 0, tzinfo=NEW_YORK)


def test_upcoming_occurrences_are_consecutive():
    definition = make_definition(hour=9)
    now = datetime(2024, 1, 10, 12, 0, tzinfo=UTC)

    occurrences = upcoming_occurrences(definition, now, count=3)

    assert occurrences == [
        datetime(2024, 1, 11, 9, 0, tzinfo=UTC),
        datetime(2024, 1, 12, 9, 0, tzinfo=UTC),
        datetime(2024, 1, 13, 9, 0, tzinfo=UTC),
    ]


def test_naive_now_is_rejected():
    with pytest.raises(ValueError):
        next_occurrence(make_definition(), datetime(2024, 1, 1, 12, 0))
