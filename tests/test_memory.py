from __future__ import annotations

from datetime import timedelta

from jobsched.domain import JobStatus, ScheduledJob
from jobsched.memory import InMemoryJobQueue, InMemoryScheduleRepository

from conftest import T0


def _job(job_id: str) -> ScheduledJob:
    return ScheduledJob(id=job_id, job_type="t", target_id="x", run_at=T0)


def test_queue_releases_delayed_jobs_in_order(clock):
    queue = InMemoryJobQueue(clock)
    queue.dispatch(_job("later"), delay_seconds=30)
    queue.dispatch(_job("first"))
    queue.dispatch(_job("second"))

    assert queue.size() == 3
    assert queue.pop_ready() == "first"
    assert queue.pop_ready() == "second"
    assert queue.pop_ready() is None

    clock.advance(timedelta(seconds=30))
    assert queue.pop_ready() == "later"
    assert queue.size() == 0


def test_repository_hands_out_copies():
    repo = InMemoryScheduleRepository()
    job = _job("a")
    repo.save(job)

    job.status = JobStatus.FAILED
    loaded = repo.find("a")
    assert loaded.status is JobStatus.PENDING

    loaded.payload["x"] = 1
    assert repo.find("a").payload == {}
