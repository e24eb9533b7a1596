"""Entities and value objects of the scheduling core.

- ``ScheduleRecurrence``: how (and until when) a job repeats.
- ``ScheduleDefinition``: immutable caller input, consumed once by ``ScheduleManager.schedule()``.
- ``ScheduledJob``: the mutable aggregate whose status follows a small state machine.
- ``JobResult``: what a handler reports for one attempt.

Timestamps are timezone-aware UTC throughout; naive inputs are taken as UTC.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Mapping, Optional

from croniter import CroniterBadDateError, croniter  # type: ignore[import-untyped]

from jobsched.clock import ensure_utc
from jobsched.errors import (
    ExecutionError,
    InvalidTransitionError,
    PermanentExecutionError,
    TransientExecutionError,
    ValidationError,
)


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELLED)

    def can_transition_to(self, target: "JobStatus") -> bool:
        return target in _TRANSITIONS[self]


# running -> running is a reclaim of an expired lease.
_TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.RUNNING, JobStatus.CANCELLED}),
    JobStatus.RUNNING: frozenset({JobStatus.RUNNING, JobStatus.PENDING, JobStatus.SUCCEEDED, JobStatus.FAILED}),
    JobStatus.SUCCEEDED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


class RecurrenceType(str, Enum):
    ONCE = "once"
    INTERVAL = "interval"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    CRON = "cron"


class NextAction(str, Enum):
    RETRY = "retry"
    RESCHEDULE = "reschedule"
    TERMINAL = "terminal"


def to_iso(value: Optional[datetime]) -> Optional[str]:
    return ensure_utc(value).isoformat() if value is not None else None


def from_iso(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    text = str(raw).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return ensure_utc(datetime.fromisoformat(text))


# Reference point for checking that an expression matches at least one date.
_CRON_CHECK_BASE = datetime(2000, 1, 1, tzinfo=timezone.utc)


def check_cron_expression(expression: str) -> str:
    """Validate a five-field cron expression and return it normalised."""
    parts = str(expression or "").split()
    if len(parts) != 5:
        raise ValidationError(f"Cron expression must have 5 fields, got {len(parts)}: '{expression}'")
    normalised = " ".join(parts)
    if not croniter.is_valid(normalised):
        raise ValidationError(f"Invalid cron expression: '{expression}'")
    try:
        croniter(normalised, _CRON_CHECK_BASE, day_or=True).get_next(datetime)
    except CroniterBadDateError:
        raise ValidationError(f"Cron expression never fires: '{expression}'") from None
    return normalised


@dataclass(frozen=True)
class ScheduleRecurrence:
    type: RecurrenceType = RecurrenceType.ONCE
    interval: Optional[timedelta] = None
    cron_expression: Optional[str] = None
    timezone: Optional[str] = None
    ends_at: Optional[datetime] = None
    max_occurrences: Optional[int] = None

    def __post_init__(self) -> None:
        try:
            kind = RecurrenceType(self.type)
        except ValueError:
            raise ValidationError(f"Unknown recurrence type: {self.type!r}") from None
        object.__setattr__(self, "type", kind)

        if kind is RecurrenceType.INTERVAL:
            if self.interval is None or self.interval <= timedelta(0):
                raise ValidationError("Interval recurrence needs a positive interval")
        elif self.interval is not None:
            raise ValidationError(f"'{kind.value}' recurrence does not take an interval")

        if kind is RecurrenceType.CRON:
            object.__setattr__(self, "cron_expression", check_cron_expression(self.cron_expression or ""))
            if self.timezone:
                _check_timezone(self.timezone)
        elif self.cron_expression is not None:
            raise ValidationError(f"'{kind.value}' recurrence does not take a cron expression")

        if self.max_occurrences is not None and int(self.max_occurrences) < 1:
            raise ValidationError("max_occurrences must be at least 1")
        if self.ends_at is not None:
            object.__setattr__(self, "ends_at", ensure_utc(self.ends_at))

    @classmethod
    def once(cls) -> "ScheduleRecurrence":
        return cls(RecurrenceType.ONCE)

    @classmethod
    def every(
        cls,
        interval: timedelta,
        *,
        ends_at: Optional[datetime] = None,
        max_occurrences: Optional[int] = None,
    ) -> "ScheduleRecurrence":
        return cls(RecurrenceType.INTERVAL, interval=interval, ends_at=ends_at, max_occurrences=max_occurrences)

    @classmethod
    def daily(cls, *, ends_at: Optional[datetime] = None, max_occurrences: Optional[int] = None) -> "ScheduleRecurrence":
        return cls(RecurrenceType.DAILY, ends_at=ends_at, max_occurrences=max_occurrences)

    @classmethod
    def weekly(cls, *, ends_at: Optional[datetime] = None, max_occurrences: Optional[int] = None) -> "ScheduleRecurrence":
        return cls(RecurrenceType.WEEKLY, ends_at=ends_at, max_occurrences=max_occurrences)

    @classmethod
    def monthly(cls, *, ends_at: Optional[datetime] = None, max_occurrences: Optional[int] = None) -> "ScheduleRecurrence":
        return cls(RecurrenceType.MONTHLY, ends_at=ends_at, max_occurrences=max_occurrences)

    @classmethod
    def cron(
        cls,
        expression: str,
        *,
        timezone: Optional[str] = None,
        ends_at: Optional[datetime] = None,
        max_occurrences: Optional[int] = None,
    ) -> "ScheduleRecurrence":
        return cls(
            RecurrenceType.CRON,
            cron_expression=expression,
            timezone=timezone,
            ends_at=ends_at,
            max_occurrences=max_occurrences,
        )

    @property
    def is_repeating(self) -> bool:
        return self.type is not RecurrenceType.ONCE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "interval": int(self.interval.total_seconds()) if self.interval is not None else None,
            "cronExpression": self.cron_expression,
            "timezone": self.timezone,
            "endsAt": to_iso(self.ends_at),
            "maxOccurrences": self.max_occurrences,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ScheduleRecurrence":
        interval = data.get("interval")
        max_occurrences = data.get("maxOccurrences")
        return cls(
            type=RecurrenceType(str(data.get("type") or "once")),
            interval=timedelta(seconds=float(interval)) if interval is not None else None,
            cron_expression=data.get("cronExpression"),
            timezone=data.get("timezone"),
            ends_at=from_iso(data.get("endsAt")),
            max_occurrences=int(max_occurrences) if max_occurrences is not None else None,
        )


def _check_timezone(name: str) -> None:
    from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValidationError(f"Unknown timezone: '{name}'") from None


@dataclass(frozen=True)
class ScheduleDefinition:
    job_type: str
    target_id: str
    run_at: datetime
    payload: Mapping[str, Any] = field(default_factory=dict)
    recurrence: Optional[ScheduleRecurrence] = None
    max_retries: Optional[int] = None
    priority: int = 0
    metadata: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class JobResult:
    """Outcome of one execution attempt, as reported by a handler."""

    success: bool
    should_retry: bool = False
    retry_delay: Optional[timedelta] = None
    message: Optional[str] = None
    output: Optional[Mapping[str, Any]] = None

    @classmethod
    def ok(cls, message: Optional[str] = None, output: Optional[Mapping[str, Any]] = None) -> "JobResult":
        return cls(success=True, message=message, output=output)

    @classmethod
    def failure(
        cls,
        message: Optional[str] = None,
        *,
        should_retry: bool = False,
        retry_delay: Optional[timedelta] = None,
        output: Optional[Mapping[str, Any]] = None,
    ) -> "JobResult":
        return cls(
            success=False,
            should_retry=bool(should_retry),
            retry_delay=retry_delay,
            message=message,
            output=output,
        )

    def error(self, job_id: Optional[str] = None) -> Optional[ExecutionError]:
        """The typed error this result stands for, or ``None`` on success."""
        if self.success:
            return None
        if self.should_retry:
            return TransientExecutionError(self.message, job_id=job_id)
        return PermanentExecutionError(self.message, job_id=job_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": bool(self.success),
            "shouldRetry": bool(self.should_retry),
            "retryDelay": self.retry_delay.total_seconds() if self.retry_delay is not None else None,
            "message": self.message,
            "output": dict(self.output) if self.output is not None else None,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "JobResult":
        delay = data.get("retryDelay")
        output = data.get("output")
        return cls(
            success=bool(data.get("success")),
            should_retry=bool(data.get("shouldRetry")),
            retry_delay=timedelta(seconds=float(delay)) if delay is not None else None,
            message=data.get("message"),
            output=dict(output) if isinstance(output, Mapping) else None,
        )


@dataclass
class ScheduledJob:
    id: str
    job_type: str
    target_id: str
    run_at: datetime
    status: JobStatus = JobStatus.PENDING
    payload: Dict[str, Any] = field(default_factory=dict)
    recurrence: Optional[ScheduleRecurrence] = None
    attempt_count: int = 0
    occurrence_count: int = 0
    locked_until: Optional[datetime] = None
    last_result: Optional[JobResult] = None
    max_retries: Optional[int] = None
    priority: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_definition(cls, job_id: str, definition: ScheduleDefinition, now: datetime) -> "ScheduledJob":
        return cls(
            id=job_id,
            job_type=definition.job_type,
            target_id=definition.target_id,
            run_at=ensure_utc(definition.run_at),
            status=JobStatus.PENDING,
            payload=copy.deepcopy(dict(definition.payload)),
            recurrence=definition.recurrence,
            max_retries=definition.max_retries,
            priority=int(definition.priority),
            metadata=copy.deepcopy(dict(definition.metadata)),
            created_at=now,
            updated_at=now,
        )

    @property
    def is_recurring(self) -> bool:
        return self.recurrence is not None and self.recurrence.is_repeating

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until > now

    def is_due(self, now: datetime) -> bool:
        return self.status is JobStatus.PENDING and self.run_at <= now and not self.is_locked(now)

    def is_claimable(self, now: datetime) -> bool:
        """Due and pending, or running on a lease that has already expired."""
        if self.status is JobStatus.RUNNING:
            return self.locked_until is not None and self.locked_until <= now
        return self.is_due(now)

    def is_overdue(self, now: datetime, grace: timedelta = timedelta(minutes=5)) -> bool:
        return self.status is JobStatus.PENDING and now >= self.run_at + grace

    def is_nearing(self, now: datetime, minutes_before: int = 5) -> bool:
        if self.status is not JobStatus.PENDING:
            return False
        return self.run_at - timedelta(minutes=minutes_before) <= now < self.run_at

    def seconds_until_due(self, now: datetime) -> int:
        return int((self.run_at - now).total_seconds())

    def transition_to(self, target: JobStatus) -> None:
        if not self.status.can_transition_to(target):
            raise InvalidTransitionError(self.id, self.status.value, target.value)
        self.status = target

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "jobType": self.job_type,
            "targetId": self.target_id,
            "payload": copy.deepcopy(self.payload),
            "status": self.status.value,
            "runAt": to_iso(self.run_at),
            "recurrence": self.recurrence.to_dict() if self.recurrence is not None else None,
            "attemptCount": int(self.attempt_count),
            "occurrenceCount": int(self.occurrence_count),
            "lockedUntil": to_iso(self.locked_until),
            "lastResult": self.last_result.to_dict() if self.last_result is not None else None,
            "maxRetries": self.max_retries,
            "priority": int(self.priority),
            "metadata": copy.deepcopy(self.metadata),
            "createdAt": to_iso(self.created_at),
            "updatedAt": to_iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ScheduledJob":
        recurrence = data.get("recurrence")
        last_result = data.get("lastResult")
        max_retries = data.get("maxRetries")
        run_at = from_iso(data.get("runAt"))
        if run_at is None:
            raise ValidationError("Scheduled job record has no runAt")
        return cls(
            id=str(data["id"]),
            job_type=str(data.get("jobType") or ""),
            target_id=str(data.get("targetId") or ""),
            run_at=run_at,
            status=JobStatus(str(data.get("status") or "pending")),
            payload=dict(data.get("payload") or {}),
            recurrence=ScheduleRecurrence.from_dict(recurrence) if recurrence else None,
            attempt_count=int(data.get("attemptCount") or 0),
            occurrence_count=int(data.get("occurrenceCount") or 0),
            locked_until=from_iso(data.get("lockedUntil")),
            last_result=JobResult.from_dict(last_result) if last_result else None,
            max_retries=int(max_retries) if max_retries is not None else None,
            priority=int(data.get("priority") or 0),
            metadata=dict(data.get("metadata") or {}),
            created_at=from_iso(data.get("createdAt")),
            updated_at=from_iso(data.get("updatedAt")),
        )
