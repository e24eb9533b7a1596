from __future__ import annotations

import threading
from datetime import timedelta

import pytest

from jobsched.db import dispose_engine
from jobsched.domain import JobResult, JobStatus, NextAction, ScheduleDefinition, ScheduledJob, ScheduleRecurrence
from jobsched.errors import InvalidTransitionError, LockContentionError
from jobsched.execution import ExecutionEngine, HandlerRegistry, RetryPolicy
from jobsched.handlers import CallableJobHandler
from jobsched.manager import ScheduleManager
from jobsched.repo import SqlScheduleRepository

from conftest import T0

LEASE = timedelta(minutes=5)


@pytest.fixture
def repo(sqlite_url):
    r = SqlScheduleRepository(sqlite_url)
    yield r
    dispose_engine(sqlite_url)


def _job(job_id: str = "job-1", **overrides) -> ScheduledJob:
    definition = ScheduleDefinition(
        job_type=overrides.pop("job_type", "asset.depreciate"),
        target_id=overrides.pop("target_id", "asset-7"),
        run_at=overrides.pop("run_at", T0),
        payload={"book": "gl", "amount": 12.5},
        recurrence=overrides.pop("recurrence", None),
        priority=overrides.pop("priority", 0),
        metadata={"tenant": "acme"},
    )
    job = ScheduledJob.from_definition(job_id, definition, T0 - timedelta(days=1))
    for key, value in overrides.items():
        setattr(job, key, value)
    return job


def test_save_and_find_roundtrip(repo):
    job = _job(
        recurrence=ScheduleRecurrence.cron("0 9 * * 1-5", timezone="Europe/Berlin", max_occurrences=10),
        last_result=JobResult.failure("timeout", should_retry=True, retry_delay=timedelta(seconds=30)),
        max_retries=4,
    )
    repo.save(job)

    loaded = repo.find(job.id)
    assert loaded == job
    assert loaded.run_at.tzinfo is not None
    assert repo.find("missing") is None


def test_save_updates_existing_row(repo):
    job = repo.save(_job())
    job.run_at = T0 + timedelta(hours=1)
    job.payload = {"book": "tax"}
    repo.save(job)

    assert repo.count() == 1
    assert repo.find(job.id).payload == {"book": "tax"}


def test_find_due_orders_by_priority_then_run_at(repo):
    repo.save(_job("late-low", run_at=T0 - timedelta(minutes=1)))
    repo.save(_job("early-low", run_at=T0 - timedelta(hours=1)))
    repo.save(_job("high", run_at=T0, priority=5))
    repo.save(_job("future", run_at=T0 + timedelta(minutes=1), priority=9))

    assert [j.id for j in repo.find_due(T0)] == ["high", "early-low", "late-low"]
    assert [j.id for j in repo.find_due(T0, limit=2)] == ["high", "early-low"]


def test_claim_is_won_once(repo):
    repo.save(_job())

    first = repo.claim("job-1", now=T0, lease_until=T0 + LEASE)
    assert first is not None
    assert first.status is JobStatus.RUNNING
    assert first.locked_until == T0 + LEASE

    assert repo.claim("job-1", now=T0 + timedelta(seconds=1), lease_until=T0 + LEASE) is None
    assert repo.find_due(T0 + timedelta(minutes=1)) == []


def test_expired_lease_can_be_reclaimed(repo):
    repo.save(_job())
    repo.claim("job-1", now=T0, lease_until=T0 + LEASE)

    later = T0 + LEASE + timedelta(seconds=1)
    assert [j.id for j in repo.find_due(later)] == ["job-1"]
    again = repo.claim("job-1", now=later, lease_until=later + LEASE)
    assert again is not None
    assert again.locked_until == later + LEASE


def test_terminal_jobs_cannot_be_claimed(repo):
    repo.save(_job(status=JobStatus.CANCELLED))
    assert repo.claim("job-1", now=T0, lease_until=T0 + LEASE) is None


def test_fenced_save_requires_current_lease(repo):
    repo.save(_job())
    claimed = repo.claim("job-1", now=T0, lease_until=T0 + LEASE)

    claimed.status = JobStatus.SUCCEEDED
    claimed.locked_until = None
    with pytest.raises(LockContentionError):
        repo.save(claimed, expected_lease=T0 + timedelta(minutes=1))
    assert repo.find("job-1").status is JobStatus.RUNNING

    saved = repo.save(claimed, expected_lease=T0 + LEASE)
    assert saved.status is JobStatus.SUCCEEDED
    assert saved.locked_until is None


def test_extend_lease(repo):
    repo.save(_job())
    repo.claim("job-1", now=T0, lease_until=T0 + LEASE)

    assert repo.extend_lease("job-1", expected_lease=T0 + LEASE, new_lease=T0 + 2 * LEASE)
    assert repo.find("job-1").locked_until == T0 + 2 * LEASE
    assert not repo.extend_lease("job-1", expected_lease=T0 + LEASE, new_lease=T0 + 3 * LEASE)


def test_queries_count_and_delete(repo):
    repo.save(_job("a", job_type="invoice.remind", target_id="inv-1"))
    repo.save(_job("b", job_type="invoice.remind", target_id="inv-2"))
    repo.save(_job("c", job_type="asset.depreciate", target_id="inv-1", status=JobStatus.FAILED))

    assert [j.id for j in repo.find_by_type("invoice.remind")] == ["a", "b"]
    assert {j.id for j in repo.find_by_target("inv-1")} == {"a", "c"}
    assert [j.id for j in repo.find_by_status(JobStatus.FAILED)] == ["c"]
    assert repo.count() == 3
    assert repo.count(JobStatus.PENDING) == 2

    assert repo.delete("a")
    assert not repo.delete("a")
    assert repo.count() == 2


def test_record_and_list_runs(repo):
    job = repo.save(_job())
    repo.record_run(job, JobResult.failure("busy", should_retry=True), NextAction.RETRY, started_at=T0, finished_at=T0 + timedelta(seconds=2))
    job.attempt_count = 1
    repo.record_run(job, JobResult.ok("done"), NextAction.TERMINAL, started_at=T0 + timedelta(minutes=1), finished_at=T0 + timedelta(minutes=1, seconds=1))

    runs = repo.list_runs("job-1")
    assert [r["action"] for r in runs] == ["terminal", "retry"]
    assert runs[0]["ok"] is True
    assert runs[0]["attempt"] == 1
    assert runs[1]["result"]["shouldRetry"] is True
    assert runs[1]["started_at"] == "2024-05-01T09:00:00+00:00"
    assert repo.list_runs("other") == []


def test_concurrent_claims_have_one_winner(repo):
    repo.save(_job())
    workers = 4
    barrier = threading.Barrier(workers)
    winners = []

    def attempt():
        barrier.wait()
        if repo.claim("job-1", now=T0, lease_until=T0 + LEASE) is not None:
            winners.append(threading.get_ident())

    threads = [threading.Thread(target=attempt) for _ in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=10)

    assert len(winners) == 1


def test_weekly_job_end_to_end_on_sql(repo, clock):
    registry = HandlerRegistry([CallableJobHandler("report.weekly", lambda job: {"rows": 3})])
    manager = ScheduleManager(repo, ExecutionEngine(registry, RetryPolicy()), clock=clock)

    job = manager.schedule(
        ScheduleDefinition(job_type="report.weekly", target_id="team-1", run_at=T0, recurrence=ScheduleRecurrence.weekly())
    )
    outcome = manager.execute_job(job.id)

    assert outcome.action is NextAction.RESCHEDULE
    stored = repo.find(job.id)
    assert stored.status is JobStatus.PENDING
    assert stored.run_at == T0 + timedelta(days=7)
    assert stored.occurrence_count == 1
    assert stored.locked_until is None
    assert stored.last_result.output == {"rows": 3}
    assert len(repo.list_runs(job.id)) == 1


def test_status_conditioned_save(repo):
    job = repo.save(_job())
    repo.claim("job-1", now=T0, lease_until=T0 + LEASE)

    job.status = JobStatus.CANCELLED
    with pytest.raises(LockContentionError):
        repo.save(job, expected_status=JobStatus.PENDING)
    assert repo.find("job-1").status is JobStatus.RUNNING

    repo.save(_job("job-2"))
    other = repo.find("job-2")
    other.status = JobStatus.CANCELLED
    assert repo.save(other, expected_status=JobStatus.PENDING).status is JobStatus.CANCELLED


def test_cancel_on_sql_refuses_claimed_job(repo, clock):
    manager = ScheduleManager(repo, ExecutionEngine(HandlerRegistry(), RetryPolicy()), clock=clock)
    job = manager.schedule(ScheduleDefinition(job_type="report.weekly", target_id="team-1", run_at=T0))
    repo.claim(job.id, now=T0, lease_until=T0 + LEASE)

    with pytest.raises(InvalidTransitionError):
        manager.cancel(job.id)
    assert repo.find(job.id).status is JobStatus.RUNNING
