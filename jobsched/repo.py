"""SQLAlchemy implementation of the ``ScheduleRepository`` port.

The claim is a single conditional ``UPDATE ... WHERE`` whose ``rowcount`` tells
the caller whether it won; no row locks are held across handler execution.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, func, or_, select, update

from jobsched.db import get_engine, get_sessionmaker
from jobsched.domain import JobResult, JobStatus, NextAction, ScheduledJob
from jobsched.errors import LockContentionError
from jobsched.models import Base, ScheduledJobRecord, ScheduledJobRun, to_db_time

logger = logging.getLogger(__name__)

_PENDING = JobStatus.PENDING.value
_RUNNING = JobStatus.RUNNING.value


def init_db(database_url: str) -> None:
    engine = get_engine(database_url)
    Base.metadata.create_all(engine)


def _claimable(now: datetime):
    """Pending without a live lease, or running on an expired lease."""
    return or_(
        and_(
            ScheduledJobRecord.status == _PENDING,
            or_(ScheduledJobRecord.locked_until.is_(None), ScheduledJobRecord.locked_until <= now),
        ),
        and_(
            ScheduledJobRecord.status == _RUNNING,
            ScheduledJobRecord.locked_until.is_not(None),
            ScheduledJobRecord.locked_until <= now,
        ),
    )


class SqlScheduleRepository:
    def __init__(self, database_url: str, *, create_tables: bool = True) -> None:
        self.database_url = database_url
        if create_tables:
            init_db(database_url)
        self._sm = get_sessionmaker(database_url)

    def find(self, job_id: str) -> Optional[ScheduledJob]:
        with self._sm() as s:
            row = s.get(ScheduledJobRecord, job_id)
            return row.to_domain() if row else None

    def find_due(self, as_of: datetime, limit: Optional[int] = None) -> List[ScheduledJob]:
        now = to_db_time(as_of)
        q = (
            select(ScheduledJobRecord)
            .where(_claimable(now))
            .where(or_(ScheduledJobRecord.status == _RUNNING, ScheduledJobRecord.run_at <= now))
            .order_by(ScheduledJobRecord.priority.desc(), ScheduledJobRecord.run_at.asc())
        )
        if limit is not None:
            q = q.limit(int(limit))
        return self._fetch(q)

    def find_by_type(self, job_type: str) -> List[ScheduledJob]:
        q = (
            select(ScheduledJobRecord)
            .where(ScheduledJobRecord.job_type == str(job_type))
            .order_by(ScheduledJobRecord.run_at.asc())
        )
        return self._fetch(q)

    def find_by_target(self, target_id: str) -> List[ScheduledJob]:
        q = (
            select(ScheduledJobRecord)
            .where(ScheduledJobRecord.target_id == str(target_id))
            .order_by(ScheduledJobRecord.run_at.asc())
        )
        return self._fetch(q)

    def find_by_status(self, status: JobStatus, limit: Optional[int] = None) -> List[ScheduledJob]:
        q = (
            select(ScheduledJobRecord)
            .where(ScheduledJobRecord.status == JobStatus(status).value)
            .order_by(ScheduledJobRecord.run_at.asc())
        )
        if limit is not None:
            q = q.limit(int(limit))
        return self._fetch(q)

    def _fetch(self, q) -> List[ScheduledJob]:
        with self._sm() as s:
            return [row.to_domain() for row in s.execute(q).scalars().all()]

    def save(
        self,
        job: ScheduledJob,
        expected_lease: Optional[datetime] = None,
        *,
        expected_status: Optional[JobStatus] = None,
    ) -> ScheduledJob:
        conditions = []
        if expected_lease is not None:
            conditions += [
                ScheduledJobRecord.status == _RUNNING,
                ScheduledJobRecord.locked_until == to_db_time(expected_lease),
            ]
        if expected_status is not None:
            conditions.append(ScheduledJobRecord.status == JobStatus(expected_status).value)
        if conditions:
            return self._save_conditional(job, conditions)

        with self._sm() as s:
            row = s.get(ScheduledJobRecord, job.id)
            if row is None:
                row = ScheduledJobRecord()
                s.add(row)
            row.apply(job)
            s.commit()
            return row.to_domain()

    def _save_conditional(self, job: ScheduledJob, conditions: List[Any]) -> ScheduledJob:
        """Write ``job`` only while the stored row still matches ``conditions``."""
        staged = ScheduledJobRecord()
        staged.apply(job)
        values = {
            prop.columns[0]: getattr(staged, prop.key)
            for prop in ScheduledJobRecord.__mapper__.column_attrs
            if prop.key != "id"
        }
        stmt = (
            update(ScheduledJobRecord)
            .where(ScheduledJobRecord.id == job.id, *conditions)
            .values(values)
            .execution_options(synchronize_session=False)
        )
        with self._sm() as s:
            res = s.execute(stmt)
            s.commit()
            if res.rowcount != 1:
                raise LockContentionError(job.id)
            row = s.get(ScheduledJobRecord, job.id, populate_existing=True)
            return row.to_domain()

    def claim(self, job_id: str, *, now: datetime, lease_until: datetime) -> Optional[ScheduledJob]:
        db_now = to_db_time(now)
        stmt = (
            update(ScheduledJobRecord)
            .where(ScheduledJobRecord.id == job_id)
            .where(_claimable(db_now))
            .values(status=_RUNNING, locked_until=to_db_time(lease_until), updated_at=db_now)
            .execution_options(synchronize_session=False)
        )
        with self._sm() as s:
            res = s.execute(stmt)
            s.commit()
            if res.rowcount != 1:
                logger.debug("Claim on job %s lost (rowcount=%s)", job_id, res.rowcount)
                return None
            row = s.get(ScheduledJobRecord, job_id, populate_existing=True)
            return row.to_domain() if row else None

    def extend_lease(self, job_id: str, *, expected_lease: datetime, new_lease: datetime) -> bool:
        stmt = (
            update(ScheduledJobRecord)
            .where(ScheduledJobRecord.id == job_id)
            .where(ScheduledJobRecord.status == _RUNNING)
            .where(ScheduledJobRecord.locked_until == to_db_time(expected_lease))
            .values(locked_until=to_db_time(new_lease))
            .execution_options(synchronize_session=False)
        )
        with self._sm() as s:
            res = s.execute(stmt)
            s.commit()
            return res.rowcount == 1

    def delete(self, job_id: str) -> bool:
        with self._sm() as s:
            row = s.get(ScheduledJobRecord, job_id)
            if not row:
                return False
            s.delete(row)
            s.commit()
            return True

    def count(self, status: Optional[JobStatus] = None) -> int:
        q = select(func.count()).select_from(ScheduledJobRecord)
        if status is not None:
            q = q.where(ScheduledJobRecord.status == JobStatus(status).value)
        with self._sm() as s:
            return int(s.execute(q).scalar_one())

    def record_run(
        self,
        job: ScheduledJob,
        result: JobResult,
        action: NextAction,
        *,
        started_at: datetime,
        finished_at: datetime,
    ) -> Dict[str, Any]:
        with self._sm() as s:
            r = ScheduledJobRun(
                job_id=str(job.id),
                action=NextAction(action).value,
                attempt=int(job.attempt_count),
                occurrence=int(job.occurrence_count),
                started_at=to_db_time(started_at),
                finished_at=to_db_time(finished_at),
                ok=bool(result.success),
                result_json=json.dumps(result.to_dict(), default=str),
            )
            s.add(r)
            s.commit()
            return r.to_dict()

    def list_runs(self, job_id: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
        q = select(ScheduledJobRun).order_by(ScheduledJobRun.started_at.desc()).limit(int(limit))
        if job_id:
            q = q.where(ScheduledJobRun.job_id == str(job_id))
        with self._sm() as s:
            return [r.to_dict() for r in s.execute(q).scalars().all()]
