"""Recurrence calculator - pure date arithmetic per frequency mode.

Manifesto:
    Every frequency mode reduces to "given this input, which occurrences
    exist?".  Keeping that question free of I/O makes it deterministic
    (same rule + same window = same dates) and lets the run loop, the CLI
    preview and the tests share one implementation.

Tags:
    upkeep, scheduling, recurrence, calendar, pure-function

Doc-Types:
    api-reference, algorithm


┌──────────────────────────────────────────────────────────────────────────────┐
│  RECURRENCE CALCULATOR                                                        │
│                                                                               │
│   calculate(rule, window | completion | signal | events)                      │
│      │                                                                        │
│      ├── FixedCalendarPattern  ──► occurrences_in_window(pattern, window)     │
│      │                               └── iter_fixed_dates(pattern, until)     │
│      ├── RollingPattern        ──► rolling_occurrence(pattern, instance)      │
│      ├── UsagePattern          ──► usage_occurrence(pattern, signal)          │
│      └── EventPattern          ──► event_occurrences(pattern, events, scope)  │
│                                                                               │
│  Calendar policy:                                                             │
│  - The window covers whole local days, today through today + ahead_days      │
│  - Weeks are Monday-aligned; a week qualifies when                           │
│    weeks_since_start % every == 0                                            │
│  - A day_of_month past the end of a month clamps to the month's last day     │
│  - Month offsets (rolling) clamp the same way                                │
│                                                                               │
│  Nothing here reads or writes persisted state.                                │
└──────────────────────────────────────────────────────────────────────────────┘
"""

from __future__ import annotations

import calendar
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta
from zoneinfo import ZoneInfo

from .models import (
    CreatedFrom,
    Event,
    EventPattern,
    FixedCalendarPattern,
    IntervalUnit,
    Occurrence,
    RollingPattern,
    ScheduleRule,
    ThresholdSignal,
    UsagePattern,
    WorkInstance,
)


@dataclass(frozen=True)
class Window:
    """Generation window ``[start, end]``."""

    start: datetime
    end: datetime

    @classmethod
    def ahead(cls, now: datetime, ahead_days: int) -> Window:
        return cls(start=now, end=now + timedelta(days=ahead_days))


# ---------------------------------------------------------------------------
# Calendar helpers
# ---------------------------------------------------------------------------


def days_in_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def clamp_day(year: int, month: int, day: int) -> date:
    """Date for ``day`` in the given month, clamped to the month's last day."""
    return date(year, month, min(day, days_in_month(year, month)))


def shift_month(year: int, month: int, months: int) -> tuple[int, int]:
    index = year * 12 + (month - 1) + months
    return index // 12, index % 12 + 1


def months_between(start: date, end: date) -> int:
    """Whole calendar months from start's month to end's month."""
    return (end.year - start.year) * 12 + (end.month - start.month)


def week_start(day: date) -> date:
    return day - timedelta(days=day.weekday())


def nth_weekday_of_month(year: int, month: int, nth: int, weekday: int) -> date:
    """The ``nth`` (1-4, or -1 for last) given weekday of a month."""
    if nth == -1:
        last = date(year, month, days_in_month(year, month))
        return last - timedelta(days=(last.weekday() - weekday) % 7)
    first = date(year, month, 1)
    offset = (weekday - first.weekday()) % 7
    return first + timedelta(days=offset + 7 * (nth - 1))


def add_interval(when: datetime, unit: IntervalUnit, count: int) -> datetime:
    """Offset a datetime by ``count`` units, clamping month ends."""
    match unit:
        case IntervalUnit.DAY:
            return when + timedelta(days=count)
        case IntervalUnit.WEEK:
            return when + timedelta(weeks=count)
        case IntervalUnit.MONTH | IntervalUnit.YEAR:
            months = count * (12 if unit == IntervalUnit.YEAR else 1)
            year, month = shift_month(when.year, when.month, months)
            return when.replace(year=year, month=month, day=min(when.day, days_in_month(year, month)))
    raise ValueError(f"Unknown interval unit: {unit}")


# ---------------------------------------------------------------------------
# Fixed calendar
# ---------------------------------------------------------------------------


def _month_target(pattern: FixedCalendarPattern, year: int, month: int) -> date:
    if pattern.nth_weekday is not None:
        return nth_weekday_of_month(
            year, month, pattern.nth_weekday.nth, int(pattern.nth_weekday.weekday)
        )
    day = pattern.day_of_month or pattern.start_date.day
    return clamp_day(year, month, day)


def _first_period(pattern: FixedCalendarPattern, since: date | None) -> int:
    # Index of the first period that can contain a date >= since.
    start = pattern.start_date
    if since is None or since <= start:
        return 0
    match pattern.unit:
        case IntervalUnit.DAY:
            return (since - start).days // pattern.every
        case IntervalUnit.WEEK:
            weeks = (week_start(since) - week_start(start)).days // 7
            return weeks // pattern.every
        case IntervalUnit.MONTH:
            return months_between(start, since) // pattern.every
        case IntervalUnit.YEAR:
            return months_between(start, since) // (12 * pattern.every)
    return 0


def _iter_periods(pattern: FixedCalendarPattern, first: int, last: date) -> Iterator[date]:
    """Ascending candidate dates from period ``first``; stops once a period begins after ``last``.

    Bounding by period rather than by yielded date keeps a filter that never
    matches (e.g. every 7 days on the wrong weekday) from running away.
    """
    start = pattern.start_date
    every = pattern.every
    period = first
    while True:
        match pattern.unit:
            case IntervalUnit.DAY:
                day = start + timedelta(days=period * every)
                if day > last:
                    return
                if not pattern.weekdays or day.weekday() in pattern.weekdays:
                    yield day
            case IntervalUnit.WEEK:
                monday = week_start(start) + timedelta(weeks=period * every)
                if monday > last:
                    return
                weekdays = sorted(pattern.weekdays) or [start.weekday()]
                for weekday in weekdays:
                    day = monday + timedelta(days=int(weekday))
                    if day >= start:
                        yield day
            case IntervalUnit.MONTH | IntervalUnit.YEAR:
                step = every * (12 if pattern.unit == IntervalUnit.YEAR else 1)
                year, month = shift_month(start.year, start.month, period * step)
                if date(year, month, 1) > last:
                    return
                day = _month_target(pattern, year, month)
                if day >= start:
                    yield day
        period += 1


def iter_fixed_dates(
    pattern: FixedCalendarPattern,
    until: date,
    since: date | None = None,
) -> Iterator[date]:
    """Occurrence dates of a fixed-calendar pattern, ascending, up to ``until``.

    Finite and restartable: calling it again with the same arguments yields
    the same dates. ``since`` skips earlier dates; with ``max_occurrences``
    set, counting still starts at ``start_date``.

    Args:
        pattern: Fixed calendar pattern
        until: Last local date to consider (inclusive)
        since: First local date to yield (inclusive)
    """
    last = until if pattern.end_date is None else min(until, pattern.end_date)
    first_period = 0 if pattern.max_occurrences is not None else _first_period(pattern, since)
    produced = 0
    for day in _iter_periods(pattern, first_period, last):
        if day > last:
            return
        if pattern.max_occurrences is not None and produced >= pattern.max_occurrences:
            return
        produced += 1
        if since is None or day >= since:
            yield day


def _local_datetime(pattern: FixedCalendarPattern, day: date) -> datetime:
    tz = ZoneInfo(pattern.timezone)
    return datetime.combine(day, pattern.time_of_day, tzinfo=tz).astimezone(UTC)


def occurrences_in_window(pattern: FixedCalendarPattern, window: Window) -> list[Occurrence]:
    """Every fixed-calendar occurrence whose local day falls inside the window."""
    tz = ZoneInfo(pattern.timezone)
    first_day = window.start.astimezone(tz).date()
    last_day = window.end.astimezone(tz).date()
    return [
        Occurrence(scheduled_at=_local_datetime(pattern, day), bucket=day.isoformat())
        for day in iter_fixed_dates(pattern, until=last_day, since=first_day)
    ]


def _horizon_days(pattern: FixedCalendarPattern) -> int:
    # Longest possible gap between two consecutive occurrences, plus slack.
    match pattern.unit:
        case IntervalUnit.DAY:
            return pattern.every + 7
        case IntervalUnit.WEEK:
            return 7 * pattern.every + 7
        case IntervalUnit.MONTH:
            return 31 * pattern.every + 31
        case IntervalUnit.YEAR:
            return 366 * pattern.every + 31
    return 366


def next_fixed_occurrence(pattern: FixedCalendarPattern, after: datetime) -> datetime | None:
    """First occurrence strictly after ``after``, or None when the pattern has ended."""
    tz = ZoneInfo(pattern.timezone)
    since = after.astimezone(tz).date()
    until = since + timedelta(days=_horizon_days(pattern))
    if pattern.start_date > since:
        until = pattern.start_date + timedelta(days=_horizon_days(pattern))
    for day in iter_fixed_dates(pattern, until=until, since=since):
        when = _local_datetime(pattern, day)
        if when > after:
            return when
    return None


# ---------------------------------------------------------------------------
# Triggered modes
# ---------------------------------------------------------------------------


def rolling_occurrence(pattern: RollingPattern, completed: WorkInstance) -> Occurrence | None:
    """The follow-up of a completed instance: completion + offset."""
    if completed.completed_at is None:
        return None
    return Occurrence(
        scheduled_at=add_interval(completed.completed_at, pattern.unit, pattern.count),
        target_id=completed.target_id,
        source_id=completed.id,
        bucket=f"after:{completed.id}",
    )


def usage_occurrence(pattern: UsagePattern, signal: ThresholdSignal) -> Occurrence | None:
    """One occurrence at the signal's timestamp when the meter crossed the interval."""
    if signal.meter != pattern.meter or signal.delta < pattern.interval:
        return None
    return Occurrence(scheduled_at=signal.timestamp, target_id=signal.target_id)


def event_occurrences(
    pattern: EventPattern,
    events: Iterable[Event],
    in_scope: Callable[[str], bool],
) -> list[Occurrence]:
    """One occurrence per unprocessed, in-scope event of a trigger type.

    Events without a target cannot be materialized and are not matched.
    """
    return [
        Occurrence(
            scheduled_at=event.timestamp,
            created_from=CreatedFrom.EVENT,
            target_id=event.target_id,
            source_id=event.id,
        )
        for event in events
        if not event.processed
        and event.type in pattern.triggers
        and event.target_id is not None
        and in_scope(event.target_id)
    ]


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------


def calculate(
    rule: ScheduleRule,
    *,
    window: Window | None = None,
    completion: WorkInstance | None = None,
    signal: ThresholdSignal | None = None,
    events: Iterable[Event] = (),
    in_scope: Callable[[str], bool] | None = None,
) -> list[Occurrence]:
    """Occurrences of ``rule`` for the input that drives its frequency mode.

    Each mode reads only its own input; the others are ignored. A paused
    rule produces nothing.

    Args:
        rule: The schedule rule
        window: Generation window (fixed calendar)
        completion: Completed instance (rolling after completion)
        signal: Threshold-crossed signal (usage based)
        events: Candidate events (event driven)
        in_scope: Target membership predicate (event driven)
    """
    if not rule.is_active:
        return []

    match rule.frequency:
        case FixedCalendarPattern() as pattern:
            if window is None:
                return []
            return occurrences_in_window(pattern, window)
        case RollingPattern() as pattern:
            if completion is None:
                return []
            occurrence = rolling_occurrence(pattern, completion)
            return [occurrence] if occurrence else []
        case UsagePattern() as pattern:
            if signal is None:
                return []
            occurrence = usage_occurrence(pattern, signal)
            return [occurrence] if occurrence else []
        case EventPattern() as pattern:
            return event_occurrences(pattern, events, in_scope or (lambda _target: True))
    return []
