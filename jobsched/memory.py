"""In-process implementations of the repository and queue ports.

Suitable for tests, demos and single-process hosts. Every compare-and-swap runs
under one ``threading.Lock``, so concurrent claims on the same job resolve to
exactly one winner. Stored jobs are deep-copied in and out so callers never
share mutable state with the store.
"""

from __future__ import annotations

import copy
import heapq
import itertools
import threading
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from jobsched.clock import Clock, SystemClock
from jobsched.domain import JobResult, JobStatus, NextAction, ScheduledJob, to_iso
from jobsched.errors import LockContentionError


def _due_order(job: ScheduledJob) -> Tuple[int, datetime]:
    return (-int(job.priority), job.run_at)


class InMemoryScheduleRepository:
    def __init__(self) -> None:
        self._jobs: Dict[str, ScheduledJob] = {}
        self._runs: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    def find(self, job_id: str) -> Optional[ScheduledJob]:
        with self._lock:
            job = self._jobs.get(job_id)
            return copy.deepcopy(job) if job is not None else None

    def find_due(self, as_of: datetime, limit: Optional[int] = None) -> List[ScheduledJob]:
        with self._lock:
            due = sorted((j for j in self._jobs.values() if j.is_claimable(as_of)), key=_due_order)
            if limit is not None:
                due = due[: int(limit)]
            return [copy.deepcopy(j) for j in due]

    def find_by_type(self, job_type: str) -> List[ScheduledJob]:
        return self._select(lambda j: j.job_type == job_type)

    def find_by_target(self, target_id: str) -> List[ScheduledJob]:
        return self._select(lambda j: j.target_id == target_id)

    def find_by_status(self, status: JobStatus, limit: Optional[int] = None) -> List[ScheduledJob]:
        jobs = self._select(lambda j: j.status is status)
        return jobs[: int(limit)] if limit is not None else jobs

    def _select(self, predicate) -> List[ScheduledJob]:
        with self._lock:
            jobs = sorted((j for j in self._jobs.values() if predicate(j)), key=lambda j: j.run_at)
            return [copy.deepcopy(j) for j in jobs]

    def save(
        self,
        job: ScheduledJob,
        expected_lease: Optional[datetime] = None,
        *,
        expected_status: Optional[JobStatus] = None,
    ) -> ScheduledJob:
        with self._lock:
            current = self._jobs.get(job.id)
            if expected_lease is not None and (
                current is None
                or current.status is not JobStatus.RUNNING
                or current.locked_until != expected_lease
            ):
                raise LockContentionError(job.id)
            if expected_status is not None and (current is None or current.status is not JobStatus(expected_status)):
                raise LockContentionError(job.id)
            self._jobs[job.id] = copy.deepcopy(job)
            return copy.deepcopy(job)

    def claim(self, job_id: str, *, now: datetime, lease_until: datetime) -> Optional[ScheduledJob]:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return None
            if job.is_locked(now):
                return None
            stale = job.status is JobStatus.RUNNING and job.locked_until is not None
            if job.status is not JobStatus.PENDING and not stale:
                return None
            job.status = JobStatus.RUNNING
            job.locked_until = lease_until
            job.updated_at = now
            return copy.deepcopy(job)

    def extend_lease(self, job_id: str, *, expected_lease: datetime, new_lease: datetime) -> bool:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status is not JobStatus.RUNNING or job.locked_until != expected_lease:
                return False
            job.locked_until = new_lease
            return True

    def delete(self, job_id: str) -> bool:
        with self._lock:
            return self._jobs.pop(job_id, None) is not None

    def count(self, status: Optional[JobStatus] = None) -> int:
        with self._lock:
            if status is None:
                return len(self._jobs)
            return sum(1 for j in self._jobs.values() if j.status is status)

    def record_run(
        self,
        job: ScheduledJob,
        result: JobResult,
        action: NextAction,
        *,
        started_at: datetime,
        finished_at: datetime,
    ) -> Dict[str, Any]:
        run = {
            "id": str(uuid.uuid4()),
            "job_id": job.id,
            "action": action.value,
            "attempt": int(job.attempt_count),
            "occurrence": int(job.occurrence_count),
            "started_at": to_iso(started_at),
            "finished_at": to_iso(finished_at),
            "ok": bool(result.success),
            "result": result.to_dict(),
        }
        with self._lock:
            self._runs.append(run)
        return dict(run)

    def list_runs(self, job_id: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
        with self._lock:
            runs = [r for r in reversed(self._runs) if job_id is None or r["job_id"] == job_id]
            return [dict(r) for r in runs[: int(limit)]]


class InMemoryJobQueue:
    """Delay-aware FIFO of job ids."""

    def __init__(self, clock: Optional[Clock] = None) -> None:
        self._clock = clock or SystemClock()
        self._heap: List[Tuple[datetime, int, str]] = []
        self._seq = itertools.count()
        self._lock = threading.Lock()

    def dispatch(self, job: ScheduledJob, delay_seconds: Optional[float] = None) -> None:
        available_at = self._clock.now() + timedelta(seconds=max(0.0, float(delay_seconds or 0)))
        with self._lock:
            heapq.heappush(self._heap, (available_at, next(self._seq), job.id))

    def size(self) -> int:
        with self._lock:
            return len(self._heap)

    def pop_ready(self, now: Optional[datetime] = None) -> Optional[str]:
        """Next job id whose delay has elapsed, or ``None``."""
        when = now or self._clock.now()
        with self._lock:
            if not self._heap or self._heap[0][0] > when:
                return None
            return heapq.heappop(self._heap)[2]
