"""
Next-run computation for report schedules.

Occurrences are computed in the schedule's local wall-clock time and
converted to UTC, so a 09:00 schedule keeps firing at 09:00 local across
daylight saving changes. Periods are added to the previous occurrence,
never to the current time.
"""

from datetime import datetime, time, timedelta, tzinfo
from typing import Optional, Tuple

from dateutil import tz
from dateutil.relativedelta import relativedelta

from ..core.exceptions import ValidationError
from ..models.common import ensure_utc
from ..models.schedule import Frequency


PERIODS = {
    Frequency.DAILY: relativedelta(days=1),
    Frequency.WEEKLY: relativedelta(weeks=1),
    Frequency.MONTHLY: relativedelta(months=1),
    Frequency.QUARTERLY: relativedelta(months=3),
}


def validate_timezone(name: str) -> tzinfo:
    """
    Resolve an IANA timezone name.

    Raises:
        ValidationError: If the name is not a known timezone
    """
    zone = tz.gettz(name) if name else None
    if zone is None:
        raise ValidationError("schedule.timezone", f"unknown timezone '{name}'", value=name)
    return zone


def parse_time_of_day(value: Optional[str]) -> Tuple[int, int]:
    """Parse ``HH:MM``; an empty value means midnight."""
    if not value:
        return 0, 0
    try:
        hour_text, minute_text = value.split(":")
        hour, minute = int(hour_text), int(minute_text)
    except ValueError:
        raise ValidationError("schedule.timeOfDay", "expected HH:MM", value=value)
    if not (0 <= hour < 24 and 0 <= minute < 60):
        raise ValidationError("schedule.timeOfDay", "expected HH:MM", value=value)
    return hour, minute


def _localize(naive: datetime, zone: tzinfo) -> datetime:
    # Wall times skipped by a DST jump move forward to the first valid instant
    return tz.resolve_imaginary(naive.replace(tzinfo=zone))


def first_run_after(time_of_day: Optional[str], timezone_name: str, after: datetime) -> datetime:
    """First ``time_of_day`` occurrence in the timezone strictly after ``after``."""
    zone = validate_timezone(timezone_name)
    hour, minute = parse_time_of_day(time_of_day)

    local_after = ensure_utc(after).astimezone(zone)
    candidate_day = local_after.date()
    while True:
        candidate = _localize(datetime.combine(candidate_day, time(hour, minute)), zone)
        if candidate > local_after:
            return ensure_utc(candidate)
        candidate_day += timedelta(days=1)


def anchor_day_of(timezone_name: str, occurrence: datetime) -> int:
    """Local day of month of ``occurrence``."""
    return ensure_utc(occurrence).astimezone(validate_timezone(timezone_name)).day


def advance(frequency: Frequency, time_of_day: Optional[str], timezone_name: str,
            previous: datetime, anchor_day: Optional[int] = None) -> Optional[datetime]:
    """
    Occurrence following ``previous``; ``None`` for one-off schedules.

    The period is added to the local date of ``previous`` and the wall-clock
    time is pinned to ``time_of_day``. Monthly and quarterly occurrences land
    on ``anchor_day`` (clamped to the month length), so a schedule anchored on
    the 31st returns to the 31st after a short month.
    """
    if frequency == Frequency.ONCE:
        return None

    zone = validate_timezone(timezone_name)
    hour, minute = parse_time_of_day(time_of_day)
    local_previous = ensure_utc(previous).astimezone(zone)
    period = PERIODS[frequency]
    if anchor_day is not None and frequency in (Frequency.MONTHLY, Frequency.QUARTERLY):
        period = period + relativedelta(day=anchor_day)
    next_day = local_previous.date() + period
    return ensure_utc(_localize(datetime.combine(next_day, time(hour, minute)), zone))


def next_after_resume(frequency: Frequency, time_of_day: Optional[str], timezone_name: str,
                      frozen_next_run: Optional[datetime], resumed_at: datetime,
                      anchor_day: Optional[int] = None) -> datetime:
    """
    Next occurrence strictly after a resume.

    Missed occurrences are skipped period by period from the frozen
    ``next_run_at``; one-off schedules take the next ``time_of_day``.
    """
    if frequency == Frequency.ONCE or frozen_next_run is None:
        return first_run_after(time_of_day, timezone_name, resumed_at)

    resumed_at = ensure_utc(resumed_at)
    candidate = ensure_utc(frozen_next_run)
    while candidate <= resumed_at:
        candidate = advance(frequency, time_of_day, timezone_name, candidate, anchor_day)
    return candidate
