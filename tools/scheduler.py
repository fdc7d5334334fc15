"""
Schedule Expander
Turns recurring schedule definitions into concrete, time-bound dose obligations
"""

import logging
from typing import Iterable, Iterator, List, NamedTuple, Optional, Sequence
from datetime import datetime, date, time, timedelta

from exceptions import InvalidScheduleError


logger = logging.getLogger(__name__)


class ObligationKey(NamedTuple):
    """Natural key of a dose obligation"""
    scheduled_dose_id: int
    scheduled_for: datetime


def parse_clock_time(value) -> time:
    """
    Parse a schedule clock time.

    Accepts a time object or a strict 'HH:MM' string (a trailing ':SS' of
    '00' is tolerated for values read back from SQL time columns).
    """
    if isinstance(value, time):
        return value.replace(second=0, microsecond=0)
    if not isinstance(value, str):
        raise InvalidScheduleError(value, f"unsupported type {type(value).__name__}")

    text = value.strip()
    if len(text) == 8 and text.endswith(":00"):
        text = text[:5]
    try:
        parsed = datetime.strptime(text, "%H:%M").time()
    except ValueError:
        raise InvalidScheduleError(value)
    if len(text) != 5:
        raise InvalidScheduleError(value)
    return parsed


def catalog_weekday(target_date: date) -> int:
    """Weekday number as stored by the medication catalog: 0 = Sunday .. 6 = Saturday"""
    return (target_date.weekday() + 1) % 7


def is_active_on(days_of_week: Optional[Sequence[int]], target_date: date) -> bool:
    """Empty or missing weekday set means every day"""
    if not days_of_week:
        return True
    return catalog_weekday(target_date) in set(days_of_week)


def expand_schedule(schedule, target_date: date) -> Optional[ObligationKey]:
    """
    Expand one schedule definition for one calendar date.

    Args:
        schedule: object with id, scheduled_time, days_of_week
        target_date: date to expand for

    Returns:
        The obligation key, or None when the weekday set excludes the date

    Raises:
        InvalidScheduleError: scheduled_time is not a valid HH:MM clock time
    """
    clock_time = parse_clock_time(schedule.scheduled_time)
    if not is_active_on(schedule.days_of_week, target_date):
        return None
    return ObligationKey(schedule.id, datetime.combine(target_date, clock_time))


def expand_for_dates(schedules: Iterable, dates: Iterable[date]) -> Iterator[tuple]:
    """
    Yield (schedule, key) for every schedule active on each date.

    Schedules with invalid clock times are logged and skipped so one bad
    definition does not stop a sweep.
    """
    dates = list(dates)
    for schedule in schedules:
        for target_date in dates:
            try:
                key = expand_schedule(schedule, target_date)
            except InvalidScheduleError as e:
                logger.warning(f"Skipping schedule {schedule.id}: {e}")
                break
            if key is not None:
                yield schedule, key


def recent_dates(now: datetime, days_back: int = 1) -> List[date]:
    """Today and the previous days_back dates, oldest first"""
    today = now.date()
    return [today - timedelta(days=offset) for offset in range(days_back, -1, -1)]
