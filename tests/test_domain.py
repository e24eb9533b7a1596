from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from jobsched.domain import (
    JobResult,
    JobStatus,
    ScheduleDefinition,
    ScheduledJob,
    ScheduleRecurrence,
    from_iso,
)
from jobsched.errors import InvalidTransitionError, PermanentExecutionError, TransientExecutionError

from conftest import T0


def _job(**overrides) -> ScheduledJob:
    definition = ScheduleDefinition(
        job_type="depreciation.run",
        target_id="asset-1",
        run_at=T0,
        payload={"period": "2024-05"},
        recurrence=ScheduleRecurrence.monthly(max_occurrences=12),
        priority=5,
        metadata={"tenant": "acme"},
    )
    job = ScheduledJob.from_definition("job-1", definition, T0 - timedelta(hours=1))
    for key, value in overrides.items():
        setattr(job, key, value)
    return job


def test_from_definition_starts_pending_with_zero_counters():
    job = _job()
    assert job.status is JobStatus.PENDING
    assert job.attempt_count == 0
    assert job.occurrence_count == 0
    assert job.locked_until is None
    assert job.is_recurring
    assert job.priority == 5


def test_naive_run_at_is_taken_as_utc():
    definition = ScheduleDefinition(job_type="t", target_id="x", run_at=datetime(2024, 5, 1, 9, 0))
    job = ScheduledJob.from_definition("j", definition, T0)
    assert job.run_at == T0


def test_state_machine():
    job = _job()
    job.transition_to(JobStatus.RUNNING)
    with pytest.raises(InvalidTransitionError):
        job.transition_to(JobStatus.CANCELLED)
    job.transition_to(JobStatus.SUCCEEDED)
    for target in JobStatus:
        assert not job.status.can_transition_to(target)

    assert JobStatus.PENDING.can_transition_to(JobStatus.CANCELLED)
    assert not JobStatus.PENDING.can_transition_to(JobStatus.SUCCEEDED)
    assert JobStatus.RUNNING.can_transition_to(JobStatus.RUNNING)


def test_claimable_and_due():
    job = _job()
    assert not job.is_claimable(T0 - timedelta(seconds=1))
    assert job.is_claimable(T0)

    job.status = JobStatus.RUNNING
    job.locked_until = T0 + timedelta(minutes=5)
    assert not job.is_claimable(T0 + timedelta(minutes=1))
    assert job.is_claimable(T0 + timedelta(minutes=5))
    assert not job.is_due(T0 + timedelta(minutes=5))


def test_overdue_and_nearing():
    job = _job()
    assert job.is_nearing(T0 - timedelta(minutes=3))
    assert not job.is_nearing(T0)
    assert not job.is_overdue(T0 + timedelta(minutes=4))
    assert job.is_overdue(T0 + timedelta(minutes=5))
    assert job.seconds_until_due(T0 - timedelta(minutes=2)) == 120


def test_record_shape_roundtrip():
    job = _job(
        attempt_count=2,
        locked_until=T0 + timedelta(minutes=5),
        last_result=JobResult.failure("timeout", should_retry=True, retry_delay=timedelta(seconds=30)),
    )
    data = job.to_dict()

    assert data["jobType"] == "depreciation.run"
    assert data["recurrence"]["type"] == "monthly"
    assert data["recurrence"]["maxOccurrences"] == 12
    assert data["lastResult"]["retryDelay"] == 30.0
    assert ScheduledJob.from_dict(data) == job


def test_result_error_types():
    assert JobResult.ok().error() is None
    assert isinstance(JobResult.failure("later", should_retry=True).error("j"), TransientExecutionError)
    err = JobResult.failure("broken").error("j")
    assert isinstance(err, PermanentExecutionError)
    assert err.job_id == "j"
    assert not err.retryable


def test_from_iso_accepts_zulu():
    assert from_iso("2024-05-01T09:00:00Z") == T0
    assert from_iso("2024-05-01T11:00:00+02:00") == T0
    assert from_iso(None) is None
    assert from_iso("2024-05-01T09:00:00Z").tzinfo == timezone.utc
