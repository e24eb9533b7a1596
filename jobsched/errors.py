"""Error taxonomy for the scheduling core."""

from __future__ import annotations

from typing import Optional


class SchedulerError(Exception):
    """Base class for every error raised by jobsched."""


class ValidationError(SchedulerError, ValueError):
    """A schedule definition or recurrence is malformed.

    Raised synchronously from ``ScheduleManager.schedule()``; nothing is persisted.
    """


class JobNotFoundError(SchedulerError, LookupError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"Scheduled job not found: {job_id}")
        self.job_id = job_id


class InvalidTransitionError(SchedulerError):
    def __init__(self, job_id: str, current: str, target: str) -> None:
        super().__init__(f"Job {job_id} cannot move from {current} to {target}")
        self.job_id = job_id
        self.current = current
        self.target = target


class MissingHandlerError(SchedulerError):
    """No registered handler supports the job type.

    Terminal: retrying cannot change the outcome.
    """

    def __init__(self, job_type: str) -> None:
        super().__init__(f"No handler registered for job type '{job_type}'")
        self.job_type = job_type


class ExecutionError(SchedulerError):
    """A handler reported a failed attempt."""

    retryable = False

    def __init__(self, message: Optional[str] = None, *, job_id: Optional[str] = None) -> None:
        super().__init__(message or "job execution failed")
        self.job_id = job_id


class TransientExecutionError(ExecutionError):
    """The handler asked for the attempt to be retried."""

    retryable = True


class PermanentExecutionError(ExecutionError):
    """The handler failed and did not ask for a retry."""


class LockContentionError(SchedulerError):
    """Another worker owns the job's claim.

    Never surfaced as a job failure: the job is skipped for this poll cycle.
    """

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Lost claim on job {job_id}")
        self.job_id = job_id
