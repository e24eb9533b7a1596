"""Ports the scheduling core depends on.

Implemented by the host application. ``repo.SqlScheduleRepository`` and the
in-process implementations in ``memory`` are the ones shipped with jobsched.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from jobsched.domain import JobResult, JobStatus, NextAction, ScheduledJob


@runtime_checkable
class JobHandler(Protocol):
    """Executes the business action for one or more job types.

    Handlers may run more than once for the same attempt (an expired lease is
    reclaimable), so they must be idempotent.
    """

    def supports(self, job_type: str) -> bool:
        ...

    def handle(self, job: ScheduledJob) -> JobResult:
        ...


class JobQueue(Protocol):
    """Hands claimed-or-due jobs to a separate transport instead of running them inline."""

    def dispatch(self, job: ScheduledJob, delay_seconds: Optional[float] = None) -> None:
        ...

    def size(self) -> int:
        ...


class ScheduleRepository(Protocol):
    def find(self, job_id: str) -> Optional[ScheduledJob]:
        ...

    def find_due(self, as_of: datetime, limit: Optional[int] = None) -> List[ScheduledJob]:
        """Claimable jobs: pending and due with no live lease, or running on an expired lease."""
        ...

    def find_by_type(self, job_type: str) -> List[ScheduledJob]:
        ...

    def find_by_target(self, target_id: str) -> List[ScheduledJob]:
        ...

    def find_by_status(self, status: JobStatus, limit: Optional[int] = None) -> List[ScheduledJob]:
        ...

    def save(
        self,
        job: ScheduledJob,
        expected_lease: Optional[datetime] = None,
        *,
        expected_status: Optional[JobStatus] = None,
    ) -> ScheduledJob:
        """Insert or update ``job``.

        With ``expected_lease`` the write only lands while the stored row is still
        running on that exact lease. With ``expected_status`` it only lands while
        the stored row has that status. A failed condition raises ``LockContentionError``.
        """
        ...

    def claim(self, job_id: str, *, now: datetime, lease_until: datetime) -> Optional[ScheduledJob]:
        """Atomically move a claimable job to running with ``locked_until = lease_until``.

        Returns the claimed job, or ``None`` when another worker won the race.
        """
        ...

    def extend_lease(self, job_id: str, *, expected_lease: datetime, new_lease: datetime) -> bool:
        ...

    def delete(self, job_id: str) -> bool:
        ...

    def count(self, status: Optional[JobStatus] = None) -> int:
        ...

    def record_run(
        self,
        job: ScheduledJob,
        result: JobResult,
        action: NextAction,
        *,
        started_at: datetime,
        finished_at: datetime,
    ) -> Dict[str, Any]:
        ...

    def list_runs(self, job_id: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
        ...
