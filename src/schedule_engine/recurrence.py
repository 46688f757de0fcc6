"""
Recurrence computation for schedules.

All wall-clock arithmetic happens in the schedule's own timezone and every
returned instant is converted to UTC, so daylight-saving transitions are
resolved by ``zoneinfo`` before the result leaves this module.
"""
import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Callable, List, Optional
from zoneinfo import ZoneInfo

from croniter import croniter

from schedule_engine.domain.schedule import Frequency, Schedule, parse_time_of_day
from schedule_engine.errors import InvalidScheduleError

logger = logging.getLogger(__name__)

# Two calendar years, leap day included.
DEFAULT_HORIZON_DAYS = 732


def _require_aware(value: datetime, name: str = "reference") -> None:
    if value.tzinfo is None or value.utcoffset() is None:
        raise ValueError(f"{name} must be timezone-aware")


def cron_weekday(day: date) -> int:
    """Weekday number in cron convention, 0=Sunday."""
    return (day.weekday() + 1) % 7


def local_instant(day: date, time_of_day: str, zone: ZoneInfo) -> datetime:
    """
    Return the UTC instant of ``time_of_day`` on ``day`` as read on a wall clock in ``zone``.
    """
    hour, minute = parse_time_of_day(time_of_day)
    wall = datetime(day.year, day.month, day.day, hour, minute, tzinfo=zone)
    return wall.astimezone(timezone.utc)


def today_at(time_of_day: str, zone: ZoneInfo, now: datetime) -> datetime:
    _require_aware(now, "now")
    return local_instant(now.astimezone(zone).date(), time_of_day, zone)


def local_date(schedule: Schedule, instant: datetime) -> date:
    return instant.astimezone(schedule.zone).date()


def is_due_today(schedule: Schedule, now: datetime) -> bool:
    """True when ``next_run_date`` falls on today's date in the schedule's timezone."""
    if schedule.next_run_date is None:
        return False
    return local_date(schedule, schedule.next_run_date) == local_date(schedule, now)


def is_due_before(schedule: Schedule, instant: datetime) -> bool:
    return schedule.next_run_date is not None and schedule.next_run_date < instant


def is_overdue(schedule: Schedule, now: datetime) -> bool:
    if schedule.next_run_date is None:
        return False
    return local_date(schedule, schedule.next_run_date) < local_date(schedule, now)


def has_expired(schedule: Schedule, now: datetime) -> bool:
    return schedule.end_date is not None and local_date(schedule, now) > schedule.end_date


def _day_matcher(schedule: Schedule) -> Callable[[date], bool]:
    start = schedule.start_date
    if schedule.frequency == Frequency.WEEKLY:
        week_days = set(schedule.week_days) or {cron_weekday(start)}
        return lambda day: cron_weekday(day) in week_days
    if schedule.frequency == Frequency.MONTHLY:
        month_days = set(schedule.month_days) or {start.day}
        return lambda day: day.day in month_days
    if schedule.frequency == Frequency.YEARLY:
        months = set(schedule.months) or {start.month}
        month_days = set(schedule.month_days) or {start.day}
        return lambda day: day.month in months and day.day in month_days
    return lambda day: True


def _next_cron_run(schedule: Schedule, reference: datetime, horizon_days: int) -> Optional[datetime]:
    zone = schedule.zone
    if not croniter.is_valid(schedule.cron_expression):
        raise InvalidScheduleError(f"Invalid cron expression '{schedule.cron_expression}'")

    floor = datetime.combine(schedule.start_date, time(0), tzinfo=zone) - timedelta(seconds=1)
    base = max(reference.astimezone(zone), floor)
    try:
        candidate = croniter(schedule.cron_expression, base).get_next(datetime)
    except ValueError:
        # croniter gives up on expressions that can never match, e.g. "0 0 30 2 *"
        logger.debug("Cron expression '%s' has no future occurrence", schedule.cron_expression)
        return None

    if candidate > base + timedelta(days=horizon_days):
        return None
    if schedule.end_date is not None and candidate.astimezone(zone).date() > schedule.end_date:
        return None
    return candidate.astimezone(timezone.utc)


def compute_next_run(schedule: Schedule, reference: datetime,
                     horizon_days: int = DEFAULT_HORIZON_DAYS) -> Optional[datetime]:
    """
    Compute the next due instant of ``schedule`` strictly after ``reference``.

    Args:
        schedule (Schedule): The schedule whose recurrence rule is evaluated.
        reference (datetime): Timezone-aware instant to search from.
        horizon_days (int): How far ahead to look before declaring the schedule terminal.

    Returns:
        Optional[datetime]: The next occurrence in UTC, or None once the schedule
        has no further occurrence (ONCE already run, end_date passed, or no date
        matching the pattern within the horizon).

    Raises:
        ValueError: If ``reference`` is naive.
        InvalidScheduleError: If a CUSTOM schedule carries an unparsable cron expression.
    """
    _require_aware(reference)
    zone = schedule.zone

    if schedule.frequency == Frequency.ONCE:
        if schedule.last_run_at is not None:
            return None
        candidate = local_instant(schedule.start_date, schedule.time_of_day, zone)
        return candidate if candidate > reference else None

    if schedule.frequency == Frequency.CUSTOM and schedule.cron_expression:
        return _next_cron_run(schedule, reference, horizon_days)

    matches = _day_matcher(schedule)
    first_day = max(reference.astimezone(zone).date(), schedule.start_date)
    for offset in range(horizon_days + 1):
        day = first_day + timedelta(days=offset)
        if schedule.end_date is not None and day > schedule.end_date:
            return None
        if not matches(day):
            continue
        candidate = local_instant(day, schedule.time_of_day, zone)
        if candidate > reference:
            return candidate

    logger.info("Schedule %s has no occurrence within %d days of %s", schedule.id, horizon_days, reference.isoformat())
    return None


def occurrences_between(schedule: Schedule, start: datetime, end: datetime,
                        limit: int = 1000) -> List[datetime]:
    """
    List the occurrences of ``schedule`` strictly between ``start`` and ``end``,
    ignoring whether a ONCE schedule has already run.
    """
    _require_aware(start, "start")
    _require_aware(end, "end")
    unrun = schedule.model_copy(update={"last_run_at": None})
    occurrences: List[datetime] = []
    cursor = start
    while len(occurrences) < limit:
        upcoming = compute_next_run(unrun, cursor)
        if upcoming is None or upcoming >= end:
            break
        occurrences.append(upcoming)
        cursor = upcoming
    return occurrences


def build_cron_expression(schedule: Schedule) -> str:
    """
    Derive the five-field cron expression describing the days a schedule runs on.
    Informational for built-in frequencies, authoritative for CUSTOM.
    """
    if schedule.frequency == Frequency.CUSTOM and schedule.cron_expression:
        return schedule.cron_expression

    hour, minute = parse_time_of_day(schedule.time_of_day)
    start = schedule.start_date

    def join(values: List[int]) -> str:
        return ",".join(str(v) for v in values)

    if schedule.frequency == Frequency.ONCE:
        return f"{minute} {hour} {start.day} {start.month} *"
    if schedule.frequency == Frequency.WEEKLY:
        return f"{minute} {hour} * * {join(schedule.week_days or [cron_weekday(start)])}"
    if schedule.frequency == Frequency.MONTHLY:
        return f"{minute} {hour} {join(schedule.month_days or [start.day])} * *"
    if schedule.frequency == Frequency.YEARLY:
        return f"{minute} {hour} {join(schedule.month_days or [start.day])} {join(schedule.months or [start.month])} *"
    return f"{minute} {hour} * * *"
