"""
Next-occurrence calculation for recurring schedules.

Occurrences are always counted from the schedule's anchor (anchor date
combined with the target time of day), never from the last actual firing.
A daily 09:00 schedule therefore stays at 09:00 no matter how late
individual firings were delivered.

Arithmetic rules:
- Hour-based cadences step in absolute time (a DST change shifts the
  wall-clock minute, never the spacing).
- Day-based cadences step in wall-clock time (09:00 stays 09:00 across DST).
- Monthly steps re-clamp to the anchor's original day of month on every
  cycle, so a schedule anchored on the 31st lands on the 30th in April and
  returns to the 31st in May.

Everything here is pure: no I/O, no clock reads.
"""

from datetime import datetime, timedelta, timezone, tzinfo
from typing import List, Optional

from dateutil.relativedelta import relativedelta

from models import Frequency, PeriodUnit, RecurrenceDefinition


def _utc(moment: datetime) -> datetime:
    # Aware datetimes sharing a tzinfo compare and subtract as wall time,
    # so every comparison goes through UTC
    return moment.astimezone(timezone.utc)


def _add_hours(moment: datetime, hours: int) -> datetime:
    return (_utc(moment) + timedelta(hours=hours)).astimezone(moment.tzinfo)


def anchor_instant(definition: RecurrenceDefinition, tz: tzinfo) -> datetime:
    """The anchor's calendar date in ``tz`` at the target time of day"""
    local = definition.anchor_timestamp.astimezone(tz)
    return datetime(
        local.year, local.month, local.day,
        definition.target_hour, definition.target_minute,
        tzinfo=tz
    )


def effective_frequency(definition: RecurrenceDefinition) -> Frequency:
    """Cadence used for stepping; a one-shot schedule looks for the next time of day."""
    if not definition.is_recurring:
        return Frequency.DAILY
    return definition.frequency


def _advance(
    anchor: datetime,
    cycles: int,
    frequency: Frequency,
    definition: RecurrenceDefinition,
    original_day: int
) -> datetime:
    """Move ``anchor`` forward by ``cycles`` whole cycles of ``frequency``"""
    if frequency == Frequency.HOURLY:
        return _add_hours(anchor, cycles)
    if frequency == Frequency.WEEKLY:
        return anchor + timedelta(weeks=cycles)
    if frequency == Frequency.MONTHLY:
        # relativedelta clamps an absolute day to the target month's length
        return anchor + relativedelta(months=cycles, day=original_day)
    if frequency == Frequency.CUSTOM:
        if definition.custom_unit == PeriodUnit.HOURS:
            return _add_hours(anchor, cycles * definition.period)
        return anchor + timedelta(days=cycles * definition.period)
    return anchor + timedelta(days=cycles)


def _cycle_length(frequency: Frequency, definition: RecurrenceDefinition) -> timedelta:
    if frequency == Frequency.HOURLY:
        return timedelta(hours=1)
    if frequency == Frequency.WEEKLY:
        return timedelta(weeks=1)
    if frequency == Frequency.CUSTOM:
        if definition.custom_unit == PeriodUnit.HOURS:
            return timedelta(hours=definition.period)
        return timedelta(days=definition.period)
    return timedelta(days=1)


def _cycles_to_skip(
    anchor: datetime,
    now: datetime,
    frequency: Frequency,
    definition: RecurrenceDefinition
) -> int:
    """
    Whole cycles that can be skipped without passing ``now``.

    Deliberately one short of the estimate so the exact stepping loop
    always runs at least once and settles DST shifts and month lengths.
    """
    if frequency == Frequency.MONTHLY:
        local_now = now.astimezone(anchor.tzinfo)
        months = (local_now.year - anchor.year) * 12 + (local_now.month - anchor.month)
        return months - 1
    elapsed = _utc(now) - _utc(anchor)
    return int(elapsed / _cycle_length(frequency, definition)) - 1


def next_occurrence(
    definition: RecurrenceDefinition,
    now: datetime,
    frequency: Optional[Frequency] = None
) -> datetime:
    """
    First occurrence strictly after ``now``.

    Args:
        definition: Schedule to evaluate
        now: Current instant; must be timezone-aware. Its zone is the
             wall-clock zone the target time of day is interpreted in.
        frequency: Cadence to use instead of the schedule's own

    Returns:
        Aware datetime in the zone of ``now``
    """
    if now.tzinfo is None:
        raise ValueError("now must be timezone-aware")

    tz = now.tzinfo
    frequency = frequency or effective_frequency(definition)
    anchor = anchor_instant(definition, tz)
    original_day = anchor.day

    skip = _cycles_to_skip(anchor, now, frequency, definition)
    if skip > 0:
        anchor = _advance(anchor, skip, frequency, definition, original_day)

    while _utc(anchor) <= _utc(now):
        anchor = _advance(anchor, 1, frequency, definition, original_day)

    return anchor


def delay_until_next(
    definition: RecurrenceDefinition,
    now: datetime,
    frequency: Optional[Frequency] = None
) -> timedelta:
    """Time from ``now`` until the next occurrence (always positive)"""
    return _utc(next_occurrence(definition, now, frequency)) - _utc(now)


def upcoming_occurrences(
    definition: RecurrenceDefinition,
    now: datetime,
    count: int = 5
) -> List[datetime]:
    """The next ``count`` firing instants; a one-shot schedule has at most one."""
    occurrences = []
    cursor = now
    limit = count if definition.is_recurring else min(count, 1)
    for _ in range(limit):
        cursor = next_occurrence(definition, cursor)
        occurrences.append(cursor)
    return occurrences
