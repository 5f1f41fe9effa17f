"""Wait durations, working-hours clamping and date-trigger timing.

All instants are timezone-aware; local wall-clock rules are applied in the
workflow's configured timezone.
"""

from datetime import date, datetime, time, timedelta, tzinfo
from typing import Any, Optional

from .models import DateBasedTriggerConfig, WaitConfig, WaitUnit, WorkflowSettings

_UNIT_SECONDS = {
    WaitUnit.MINUTES: 60,
    WaitUnit.HOURS: 3600,
    WaitUnit.DAYS: 86400,
    WaitUnit.WEEKS: 7 * 86400,
}


def parse_hhmm(value: str) -> time:
    hours, minutes = value.split(":")
    return time(int(hours), int(minutes))


def wait_duration(config: WaitConfig) -> timedelta:
    return timedelta(seconds=config.duration * _UNIT_SECONDS[WaitUnit(config.unit)])


def _local_at(day: date, at: time, tz: tzinfo) -> datetime:
    return datetime.combine(day, at, tzinfo=tz)


def clamp_to_working_hours(instant: datetime, settings: WorkflowSettings) -> datetime:
    """Move ``instant`` forward to the next moment inside the working window.

    Instants already inside the window are returned unchanged. An empty day
    list means there is no window to respect.
    """
    hours = settings.working_hours
    if not hours.days:
        return instant

    tz = settings.tz
    local = instant.astimezone(tz)
    start, end = parse_hhmm(hours.start), parse_hhmm(hours.end)

    day = local.date()
    # At most a week ahead before an allowed weekday comes round again
    for offset in range(8):
        candidate_day = day + timedelta(days=offset)
        if candidate_day.isoweekday() not in hours.days:
            continue
        window_start = _local_at(candidate_day, start, tz)
        window_end = _local_at(candidate_day, end, tz)
        if offset == 0:
            if local < window_start:
                return window_start.astimezone(instant.tzinfo)
            if local < window_end:
                return instant
            continue
        return window_start.astimezone(instant.tzinfo)

    return instant


def compute_wait_due(now: datetime, config: WaitConfig, settings: WorkflowSettings) -> datetime:
    """Instant at which a wait step started at ``now`` elapses."""
    due_at = now + wait_duration(config)
    if settings.working_hours_only:
        due_at = clamp_to_working_hours(due_at, settings)
    return due_at


def next_date_trigger_run(
    now: datetime,
    config: DateBasedTriggerConfig,
    settings: WorkflowSettings,
    last_run: Optional[date] = None,
) -> datetime:
    """Next instant the scheduler evaluates a date trigger.

    Returns ``now`` when today's run time has passed and today has not run yet.
    """
    tz = settings.tz
    local = now.astimezone(tz)
    run_at = parse_hhmm(config.time) if config.time else time(0, 0)
    day = local.date()
    if last_run is not None and last_run >= day:
        day += timedelta(days=1)
    candidate = _local_at(day, run_at, tz)
    if candidate <= local:
        return now
    return candidate.astimezone(now.tzinfo)


def date_trigger_run_date(
    now: datetime,
    config: DateBasedTriggerConfig,
    settings: WorkflowSettings,
    last_run: Optional[date],
) -> Optional[date]:
    """Local date to evaluate a date trigger for, or None if it is not due.

    A trigger runs at most once per local day, and only once its configured
    time has passed in the workflow timezone.
    """
    local = now.astimezone(settings.tz)
    today = local.date()
    if last_run is not None and last_run >= today:
        return None
    if config.time and local.time() < parse_hhmm(config.time):
        return None
    return today


def to_local_date(value: Any, tz: tzinfo) -> Optional[date]:
    """Interpret a record field value as a calendar date."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value.astimezone(tz).date() if value.tzinfo else value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
        if len(text) == 10:
            return parsed.date()
        return parsed.astimezone(tz).date() if parsed.tzinfo else parsed.date()
    return None


def _with_year(value: date, year: int) -> date:
    try:
        return value.replace(year=year)
    except ValueError:
        # Feb 29 in a non-leap year
        return date(year, 2, 28)


def date_matches(field_date: date, today: date, offset_days: int, annual: bool) -> bool:
    """Does ``field_date`` shifted by ``offset_days`` land on ``today``?

    With ``annual`` only month and day count, so birthdays and anniversaries
    match every year.
    """
    offset = timedelta(days=offset_days)
    if not annual:
        return field_date + offset == today
    # The offset can push the anniversary across a year boundary
    return any(
        _with_year(field_date, year) + offset == today
        for year in (today.year - 1, today.year, today.year + 1)
    )
