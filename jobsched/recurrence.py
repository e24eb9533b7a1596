"""Next-run computation for recurring jobs.

The engine is pure apart from ``describe_next_run``, which reads the injected
clock to render a relative, display-only string.
"""

from __future__ import annotations

import calendar
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from croniter import CroniterBadDateError, croniter  # type: ignore[import-untyped]

from jobsched.clock import Clock, SystemClock, ensure_utc
from jobsched.domain import RecurrenceType, ScheduleRecurrence, check_cron_expression

logger = logging.getLogger(__name__)


def add_month(value: datetime) -> datetime:
    """Same day next month, clamped to that month's last day (Jan 31 -> Feb 28/29)."""
    if value.month == 12:
        year, month = value.year + 1, 1
    else:
        year, month = value.year, value.month + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def next_cron_time(expression: str, after: datetime, tz_name: Optional[str] = None) -> Optional[datetime]:
    """First minute strictly after ``after`` matching all five cron fields, or ``None``.

    Day-of-month and day-of-week are OR'd when both are restricted (POSIX cron).
    The expression is read as wall-clock time in ``tz_name`` (UTC when unset).
    """
    if tz_name:
        from zoneinfo import ZoneInfo

        zone = ZoneInfo(tz_name)
    else:
        zone = timezone.utc
    base = ensure_utc(after).astimezone(zone)
    try:
        candidate = croniter(expression, base, day_or=True).get_next(datetime)
    except CroniterBadDateError:
        logger.warning("Cron expression '%s' has no run after %s", expression, base.isoformat())
        return None
    return ensure_utc(candidate)


def validate_cron_expression(expression: str) -> bool:
    try:
        check_cron_expression(expression)
    except ValueError:
        return False
    return True


class RecurrenceEngine:
    def __init__(self, clock: Optional[Clock] = None) -> None:
        self._clock = clock or SystemClock()
        self._calculators: Dict[RecurrenceType, Callable[[datetime, ScheduleRecurrence], Optional[datetime]]] = {
            RecurrenceType.ONCE: lambda current, rule: None,
            RecurrenceType.INTERVAL: lambda current, rule: current + rule.interval,
            RecurrenceType.DAILY: lambda current, rule: current + timedelta(days=1),
            RecurrenceType.WEEKLY: lambda current, rule: current + timedelta(days=7),
            RecurrenceType.MONTHLY: lambda current, rule: add_month(current),
            RecurrenceType.CRON: lambda current, rule: next_cron_time(
                rule.cron_expression or "", current, rule.timezone
            ),
        }

    def calculate_next_run_time(
        self,
        current_run_at: datetime,
        recurrence: ScheduleRecurrence,
        occurrence_count: int,
    ) -> Optional[datetime]:
        """Next run after ``current_run_at``, or ``None`` once the schedule has ended.

        ``occurrence_count`` is the number of occurrences completed before the one
        that ran at ``current_run_at``.
        """
        candidate = self._calculators[recurrence.type](ensure_utc(current_run_at), recurrence)
        if candidate is None:
            return None

        if recurrence.ends_at is not None and candidate > recurrence.ends_at:
            logger.debug("Recurrence ended: %s is after ends_at %s", candidate, recurrence.ends_at)
            return None
        if recurrence.max_occurrences is not None and int(occurrence_count) + 1 >= int(recurrence.max_occurrences):
            logger.debug("Recurrence ended: %d occurrence(s) reached", int(occurrence_count) + 1)
            return None
        return candidate

    def upcoming(
        self,
        current_run_at: datetime,
        recurrence: ScheduleRecurrence,
        count: int = 5,
        occurrence_count: int = 0,
    ) -> List[datetime]:
        """Preview of the next ``count`` run times."""
        runs: List[datetime] = []
        current = ensure_utc(current_run_at)
        occurrences = int(occurrence_count)
        while len(runs) < max(0, int(count)):
            nxt = self.calculate_next_run_time(current, recurrence, occurrences)
            if nxt is None:
                break
            runs.append(nxt)
            current = nxt
            occurrences += 1
        return runs

    def describe_next_run(
        self,
        current_run_at: datetime,
        recurrence: ScheduleRecurrence,
        occurrence_count: int = 0,
    ) -> str:
        nxt = self.calculate_next_run_time(current_run_at, recurrence, occurrence_count)
        if nxt is None:
            return "No further runs"
        return describe_delta(nxt - self._clock.now())


def describe_delta(delta: timedelta) -> str:
    seconds = int(delta.total_seconds())
    if seconds <= 0:
        return "Due now"
    for unit, size in (("day", 86400), ("hour", 3600), ("minute", 60)):
        if seconds >= size:
            n = seconds // size
            return f"In {n} {unit}{'' if n == 1 else 's'}"
    return "In less than a minute"
