"""
services/booking/recurrence.py
Expand a recurrence rule into concrete occurrence windows.

The seed window is always the first occurrence. Later occurrences keep
the seed's wall-clock start time in the business timezone and its
duration. Expansion is lazy and always terminates: open-ended rules stop
at the horizon, and every rule stops at the occurrence ceiling.
"""

import calendar
from datetime import date, datetime, timedelta
from typing import Iterator, Optional
from zoneinfo import ZoneInfo

from config.settings import settings
from shared.utils.time_window import TimeWindow

WEEKDAYS_MON_TO_FRI = frozenset({1, 2, 3, 4, 5})


def sunday_based_weekday(day: date) -> int:
    """0 = Sunday … 6 = Saturday."""
    return (day.weekday() + 1) % 7


def add_months(day: date, months: int) -> date:
    """Same day of month `months` later, clamped to the month's last day."""
    month_index = day.month - 1 + months
    year = day.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(day.day, last_day))


def _week_start(day: date) -> date:
    return day - timedelta(days=sunday_based_weekday(day))


def _candidate_dates(rule, seed: date) -> Iterator[date]:
    interval = rule.interval
    frequency = rule.frequency

    if frequency == "daily":
        step = 0
        while True:
            yield seed + timedelta(days=step)
            step += interval
    elif frequency == "weekly":
        step = 0
        while True:
            yield seed + timedelta(weeks=step)
            step += interval
    elif frequency in ("monthly", "yearly"):
        months_per_step = interval if frequency == "monthly" else 12 * interval
        step = 0
        while True:
            yield add_months(seed, step * months_per_step)
            step += 1
    elif frequency in ("weekdays", "custom_weekdays"):
        weekdays = WEEKDAYS_MON_TO_FRI if frequency == "weekdays" else frozenset(rule.weekdays)
        seed_week = _week_start(seed)
        yield seed
        day = seed + timedelta(days=1)
        while True:
            weeks_since_seed = (_week_start(day) - seed_week).days // 7
            if weeks_since_seed % interval == 0 and sunday_based_weekday(day) in weekdays:
                yield day
            day += timedelta(days=1)
    else:
        raise ValueError(f"Unsupported recurrence frequency: {frequency}")


def expand(
    rule,
    first_window: TimeWindow,
    horizon_days: Optional[int] = None,
    max_occurrences: Optional[int] = None,
    tz: Optional[ZoneInfo] = None,
) -> Iterator[TimeWindow]:
    """
    Yield occurrence windows for `rule` starting with `first_window`.

    `rule` is one of the Recurrence schema variants. `until` end dates are
    inclusive and compared against the local business date.
    """
    zone = tz or settings.business_tz
    horizon_days = settings.RECURRENCE_HORIZON_DAYS if horizon_days is None else horizon_days
    max_occurrences = max_occurrences or settings.RECURRENCE_MAX_OCCURRENCES

    local_start = first_window.start.astimezone(zone)
    seed = local_start.date()
    wall_clock = local_start.time()
    duration = first_window.duration

    last_date = seed + timedelta(days=horizon_days)
    count_limit = max_occurrences
    end = rule.end
    if end.type == "until":
        last_date = min(last_date, end.until)
    elif end.type == "count":
        count_limit = min(count_limit, end.count)

    emitted = 0
    for day in _candidate_dates(rule, seed):
        if emitted >= count_limit or day > last_date:
            return
        start = datetime.combine(day, wall_clock, tzinfo=zone)
        yield TimeWindow(start, start + duration)
        emitted += 1
