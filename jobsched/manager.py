"""ScheduleManager: the facade hosts talk to.

Flow for one job: ``schedule()`` persists it as pending, a poller lists it with
``get_due_jobs()``, ``execute_job()`` claims it, runs it through the
``ExecutionEngine`` and applies the retry / reschedule / terminal decision.

Identical definitions are never de-duplicated: scheduling the same definition
twice yields two independent jobs.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Mapping, Optional

from jobsched.clock import Clock, SystemClock, ensure_utc
from jobsched.domain import (
    JobResult,
    JobStatus,
    NextAction,
    ScheduleDefinition,
    ScheduledJob,
)
from jobsched.errors import InvalidTransitionError, JobNotFoundError, LockContentionError, ValidationError
from jobsched.execution import ExecutionEngine
from jobsched.ports import JobQueue, ScheduleRepository
from jobsched.recurrence import RecurrenceEngine

logger = logging.getLogger(__name__)

DEFAULT_LEASE = timedelta(minutes=5)


@dataclass
class ExecutionOutcome:
    job: ScheduledJob
    result: Optional[JobResult] = None
    action: Optional[NextAction] = None
    skipped: bool = False
    reason: Optional[str] = None

    @classmethod
    def skip(cls, job: ScheduledJob, reason: str) -> "ExecutionOutcome":
        return cls(job=job, skipped=True, reason=reason)


class ScheduleManager:
    def __init__(
        self,
        repository: ScheduleRepository,
        engine: Optional[ExecutionEngine] = None,
        *,
        clock: Optional[Clock] = None,
        recurrence: Optional[RecurrenceEngine] = None,
        lease: timedelta = DEFAULT_LEASE,
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
    ) -> None:
        if lease <= timedelta(0):
            raise ValueError("lease must be positive")
        self.repository = repository
        self.engine = engine if engine is not None else ExecutionEngine()
        self.clock = clock or SystemClock()
        self.recurrence = recurrence or RecurrenceEngine(self.clock)
        self.lease = lease
        self._new_id = id_factory

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def schedule(self, definition: ScheduleDefinition) -> ScheduledJob:
        self._validate(definition)
        job = ScheduledJob.from_definition(self._new_id(), definition, self.clock.now())
        saved = self.repository.save(job)
        logger.info(
            "Scheduled job %s (%s -> %s) at %s",
            saved.id,
            saved.job_type,
            saved.target_id,
            saved.run_at.isoformat(),
        )
        return saved

    def _validate(self, definition: ScheduleDefinition) -> None:
        if not str(definition.job_type or "").strip():
            raise ValidationError("job_type must not be empty")
        if not str(definition.target_id or "").strip():
            raise ValidationError("target_id must not be empty")
        if not isinstance(definition.run_at, datetime):
            raise ValidationError("run_at must be a datetime")
        if not isinstance(definition.payload, Mapping):
            raise ValidationError("payload must be a mapping")
        if definition.max_retries is not None and int(definition.max_retries) < 0:
            raise ValidationError("max_retries must not be negative")

        recurrence = definition.recurrence
        if recurrence is not None and recurrence.ends_at is not None:
            run_at = ensure_utc(definition.run_at)
            if recurrence.ends_at < self.clock.now() and run_at > recurrence.ends_at:
                raise ValidationError(
                    f"Recurrence ended at {recurrence.ends_at.isoformat()}, before the first run {run_at.isoformat()}"
                )

    def reschedule(self, job_id: str, run_at: datetime) -> ScheduledJob:
        """Move a pending job to a later time."""
        job = self.get(job_id)
        run_at = ensure_utc(run_at)
        if job.status is not JobStatus.PENDING:
            raise ValidationError(f"Only pending jobs can be rescheduled (job {job_id} is {job.status.value})")
        if run_at < job.run_at:
            raise ValidationError("A job cannot be moved before its current run time")
        job.run_at = run_at
        job.updated_at = self.clock.now()
        return self._save_pending(job, JobStatus.PENDING)

    def cancel(self, job_id: str) -> ScheduledJob:
        """Cancel a pending job. Running jobs are never interrupted."""
        job = self.get(job_id)
        job.transition_to(JobStatus.CANCELLED)
        job.locked_until = None
        job.updated_at = self.clock.now()
        saved = self._save_pending(job, JobStatus.CANCELLED)
        logger.info("Cancelled job %s", job_id)
        return saved

    def _save_pending(self, job: ScheduledJob, target: JobStatus) -> ScheduledJob:
        """Write a change made to a pending job, unless a worker claimed it meanwhile."""
        try:
            return self.repository.save(job, expected_status=JobStatus.PENDING)
        except LockContentionError:
            current = self.repository.find(job.id)
            if current is None:
                raise JobNotFoundError(job.id) from None
            raise InvalidTransitionError(job.id, current.status.value, target.value) from None

    def delete(self, job_id: str) -> bool:
        return self.repository.delete(job_id)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, job_id: str) -> ScheduledJob:
        job = self.repository.find(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def get_due_jobs(self, as_of: Optional[datetime] = None, limit: Optional[int] = None) -> List[ScheduledJob]:
        when = ensure_utc(as_of) if as_of is not None else self.clock.now()
        return self.repository.find_due(when, limit)

    def find_by_type(self, job_type: str) -> List[ScheduledJob]:
        return self.repository.find_by_type(job_type)

    def find_by_target(self, target_id: str) -> List[ScheduledJob]:
        return self.repository.find_by_target(target_id)

    def find_by_status(self, status: JobStatus, limit: Optional[int] = None) -> List[ScheduledJob]:
        return self.repository.find_by_status(JobStatus(status), limit)

    def count(self, status: Optional[JobStatus] = None) -> int:
        return self.repository.count(JobStatus(status) if status is not None else None)

    def describe_next_run(self, job: ScheduledJob) -> str:
        if not job.is_recurring or job.recurrence is None:
            return "No further runs"
        return self.recurrence.describe_next_run(job.run_at, job.recurrence, job.occurrence_count)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def execute_job(self, job_id: str) -> ExecutionOutcome:
        job = self.get(job_id)
        now = self.clock.now()
        if not (job.status is JobStatus.PENDING or job.is_claimable(now)):
            return ExecutionOutcome.skip(job, f"not claimable ({job.status.value})")

        claimed = self.repository.claim(job.id, now=now, lease_until=now + self.lease)
        if claimed is None:
            logger.debug("Claim lost for job %s; skipping this cycle", job.id)
            return ExecutionOutcome.skip(job, "claimed by another worker")

        lease = claimed.locked_until
        started = self.clock.now()
        logger.info("Executing job %s (%s), attempt %d", claimed.id, claimed.job_type, claimed.attempt_count + 1)
        result, action = self.engine.execute(claimed)
        finished = self.clock.now()

        run_at_before = claimed.run_at
        self._apply(claimed, result, action, finished)
        try:
            saved = self.repository.save(claimed, expected_lease=lease)
        except LockContentionError:
            logger.warning("Lease on job %s expired during execution; result discarded", claimed.id)
            return ExecutionOutcome(job=claimed, result=result, action=action, skipped=True, reason="lease lost")

        self.repository.record_run(saved, result, action, started_at=started, finished_at=finished)
        logger.info(
            "Job %s %s: %s (run_at %s -> %s, status %s)",
            saved.id,
            "succeeded" if result.success else "failed",
            action.value,
            run_at_before.isoformat(),
            saved.run_at.isoformat(),
            saved.status.value,
        )
        return ExecutionOutcome(job=saved, result=result, action=action)

    def _apply(self, job: ScheduledJob, result: JobResult, action: NextAction, now: datetime) -> None:
        job.last_result = result
        job.locked_until = None
        job.updated_at = now

        if action is NextAction.RETRY:
            delay = self.engine.retry_delay(job, result)
            job.attempt_count += 1
            job.run_at = max(job.run_at, now + delay)
            job.transition_to(JobStatus.PENDING)
            return

        completed = job.occurrence_count
        job.occurrence_count += 1
        job.attempt_count = 0

        if action is NextAction.RESCHEDULE and job.recurrence is not None:
            # Next run counts from the scheduled time, not completion time, so cadence never drifts.
            try:
                next_run = self.recurrence.calculate_next_run_time(job.run_at, job.recurrence, completed)
            except Exception:  # noqa: BLE001
                logger.exception("Next run of job %s could not be computed; ending its schedule", job.id)
                next_run = None
            if next_run is not None:
                job.run_at = next_run
                job.transition_to(JobStatus.PENDING)
                return

        job.transition_to(JobStatus.SUCCEEDED if result.success else JobStatus.FAILED)

    def heartbeat(self, job: ScheduledJob) -> bool:
        """Extend the lease of a job this worker holds. False when the lease was lost."""
        if job.locked_until is None:
            return False
        new_lease = self.clock.now() + self.lease
        if not self.repository.extend_lease(job.id, expected_lease=job.locked_until, new_lease=new_lease):
            return False
        job.locked_until = new_lease
        return True

    def run_due_jobs(self, as_of: Optional[datetime] = None, limit: Optional[int] = None) -> List[ExecutionOutcome]:
        outcomes = []
        for job in self.get_due_jobs(as_of, limit):
            try:
                outcomes.append(self.execute_job(job.id))
            except JobNotFoundError:
                logger.debug("Job %s deleted before it could run", job.id)
        return outcomes

    def dispatch_due_jobs(self, queue: JobQueue, as_of: Optional[datetime] = None, limit: Optional[int] = None) -> int:
        """Hand due jobs to ``queue``; workers consuming it call ``execute_job``."""
        due = self.get_due_jobs(as_of, limit)
        for job in due:
            queue.dispatch(job)
        if due:
            logger.info("Dispatched %d due job(s); queue size %d", len(due), queue.size())
        return len(due)
