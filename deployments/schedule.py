"""
Schedule Evaluator — is an AI deployment on duty right now?

Times are compared as zero-padded "HH:MM" strings in the schedule's own
timezone, so the comparison is minute-granular and both window boundaries
are inclusive. A window whose start is later than its end wraps past
midnight (e.g. 18:00–06:00).
"""
from __future__ import annotations

from datetime import datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from core.errors import ScheduleEvaluationError
from models.schemas import Schedule, WEEKDAYS, normalize_time


def _zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ScheduleEvaluationError(f"Unknown timezone '{name}'", timezone=name) from e


def _hhmm(value: str, label: str) -> str:
    if value is None:
        raise ScheduleEvaluationError(f"Schedule {label} time is missing")
    try:
        return normalize_time(value)
    except ValueError as e:
        raise ScheduleEvaluationError(str(e), field=label) from e


def local_clock(now: datetime, tz_name: str) -> tuple[str, str]:
    """Return (weekday name, "HH:MM") for `now` seen from `tz_name`."""
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    local = now.astimezone(_zone(tz_name))
    return WEEKDAYS[local.weekday()], local.strftime("%H:%M")


def in_window(current: str, start: str, end: str) -> bool:
    if start <= end:
        return start <= current <= end
    return current >= start or current <= end


def is_on_duty(schedule: Schedule, now: datetime = None) -> bool:
    """
    True when the deployment may respond at `now`.

    A disabled schedule never restricts. Raises ScheduleEvaluationError for
    an unknown timezone or malformed start/end strings.
    """
    if not schedule.enabled:
        return True

    start = _hhmm(schedule.start_time, "start")
    end = _hhmm(schedule.end_time, "end")
    weekday, current = local_clock(now or datetime.now(timezone.utc), schedule.timezone)

    if weekday not in schedule.days:
        return False
    return in_window(current, start, end)


def describe_window(schedule: Schedule) -> str:
    if not schedule.enabled:
        return "always"
    return f"{schedule.start_time}-{schedule.end_time} {schedule.timezone or 'UTC'}"
