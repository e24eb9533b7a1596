from __future__ import annotations

import json
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from sqlalchemy import Boolean, Column, DateTime, Float, Index, Integer, String, Text
from sqlalchemy.orm import declarative_base

from jobsched.domain import JobResult, JobStatus, RecurrenceType, ScheduledJob, ScheduleRecurrence, to_iso


Base = declarative_base()


def to_db_time(value: Optional[datetime]) -> Optional[datetime]:
    """Naive UTC, the form every timestamp column stores."""
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def from_db_time(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class ScheduledJobRecord(Base):
    __tablename__ = "scheduled_jobs"
    __table_args__ = (Index("ix_scheduled_jobs_status_run_at", "status", "run_at"),)

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    job_type = Column(String(128), nullable=False, index=True)
    target_id = Column(String(128), nullable=False, index=True)
    payload_json = Column(Text, default="{}", nullable=False)

    status = Column(String(16), default=JobStatus.PENDING.value, nullable=False)
    run_at = Column(DateTime, nullable=False)
    priority = Column(Integer, default=0, nullable=False)

    recurrence_type = Column(String(16), nullable=True)
    interval_seconds = Column(Float, nullable=True)
    cron_expression = Column(String(128), nullable=True)
    tz_name = Column("timezone", String(64), nullable=True)
    ends_at = Column(DateTime, nullable=True)
    max_occurrences = Column(Integer, nullable=True)

    attempt_count = Column(Integer, default=0, nullable=False)
    occurrence_count = Column(Integer, default=0, nullable=False)
    max_retries = Column(Integer, nullable=True)
    locked_until = Column(DateTime, nullable=True)
    last_result_json = Column(Text, nullable=True)
    meta_json = Column(Text, default="{}", nullable=False)

    created_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, nullable=True)

    def apply(self, job: ScheduledJob) -> None:
        self.id = job.id
        self.job_type = job.job_type
        self.target_id = job.target_id
        self.payload_json = json.dumps(job.payload or {}, default=str)
        self.status = JobStatus(job.status).value
        self.run_at = to_db_time(job.run_at)
        self.priority = int(job.priority)

        rule = job.recurrence
        self.recurrence_type = rule.type.value if rule is not None else None
        self.interval_seconds = rule.interval.total_seconds() if rule is not None and rule.interval else None
        self.cron_expression = rule.cron_expression if rule is not None else None
        self.tz_name = rule.timezone if rule is not None else None
        self.ends_at = to_db_time(rule.ends_at) if rule is not None else None
        self.max_occurrences = rule.max_occurrences if rule is not None else None

        self.attempt_count = int(job.attempt_count)
        self.occurrence_count = int(job.occurrence_count)
        self.max_retries = job.max_retries
        self.locked_until = to_db_time(job.locked_until)
        self.last_result_json = json.dumps(job.last_result.to_dict(), default=str) if job.last_result else None
        self.meta_json = json.dumps(job.metadata or {}, default=str)
        self.created_at = to_db_time(job.created_at)
        self.updated_at = to_db_time(job.updated_at)

    def to_domain(self) -> ScheduledJob:
        recurrence = None
        if self.recurrence_type:
            recurrence = ScheduleRecurrence(
                type=RecurrenceType(self.recurrence_type),
                interval=timedelta(seconds=self.interval_seconds) if self.interval_seconds is not None else None,
                cron_expression=self.cron_expression,
                timezone=self.tz_name,
                ends_at=from_db_time(self.ends_at),
                max_occurrences=self.max_occurrences,
            )
        last_result = _safe_json_loads(self.last_result_json)
        return ScheduledJob(
            id=self.id,
            job_type=self.job_type,
            target_id=self.target_id,
            run_at=from_db_time(self.run_at),
            status=JobStatus(self.status),
            payload=_safe_json_loads(self.payload_json) or {},
            recurrence=recurrence,
            attempt_count=int(self.attempt_count or 0),
            occurrence_count=int(self.occurrence_count or 0),
            locked_until=from_db_time(self.locked_until),
            last_result=JobResult.from_dict(last_result) if isinstance(last_result, dict) else None,
            max_retries=self.max_retries,
            priority=int(self.priority or 0),
            metadata=_safe_json_loads(self.meta_json) or {},
            created_at=from_db_time(self.created_at),
            updated_at=from_db_time(self.updated_at),
        )


class ScheduledJobRun(Base):
    """One execution attempt of a scheduled job."""

    __tablename__ = "scheduled_job_runs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    job_id = Column(String(36), nullable=False, index=True)
    action = Column(String(16), nullable=False)
    attempt = Column(Integer, default=0, nullable=False)
    occurrence = Column(Integer, default=0, nullable=False)

    started_at = Column(DateTime, nullable=False)
    finished_at = Column(DateTime, nullable=True)

    ok = Column(Boolean, nullable=True)
    result_json = Column(Text, nullable=True)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "job_id": self.job_id,
            "action": self.action,
            "attempt": int(self.attempt or 0),
            "occurrence": int(self.occurrence or 0),
            "started_at": to_iso(from_db_time(self.started_at)),
            "finished_at": to_iso(from_db_time(self.finished_at)),
            "ok": self.ok,
            "result": _safe_json_loads(self.result_json) if self.result_json else None,
        }


def _safe_json_loads(raw: Optional[str]) -> Optional[Any]:
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return None
