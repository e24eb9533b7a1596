from __future__ import annotations

from datetime import timedelta

import pytest

from jobsched.domain import JobResult, NextAction, ScheduledJob, ScheduleRecurrence
from jobsched.errors import MissingHandlerError
from jobsched.execution import ExecutionEngine, HandlerRegistry, RetryPolicy
from jobsched.handlers import CallableJobHandler

from conftest import T0


def _job(job_type: str = "reminder.send", **overrides) -> ScheduledJob:
    job = ScheduledJob(id="job-1", job_type=job_type, target_id="user-1", run_at=T0)
    for key, value in overrides.items():
        setattr(job, key, value)
    return job


def _engine(*handlers, policy: RetryPolicy = RetryPolicy()) -> ExecutionEngine:
    return ExecutionEngine(HandlerRegistry(handlers), policy)


def test_missing_handler_is_terminal_and_not_retried():
    decision = _engine().execute(_job(recurrence=ScheduleRecurrence.daily()))
    assert decision.action is NextAction.TERMINAL
    assert not decision.result.success
    assert not decision.result.should_retry
    assert decision.result.message == "no handler"


def test_registry_resolves_first_supporting_handler():
    first = CallableJobHandler("reminder.send", lambda job: JobResult.ok("first"))
    second = CallableJobHandler("reminder.send", lambda job: JobResult.ok("second"))
    registry = HandlerRegistry([first, second])

    assert registry.resolve("reminder.send") is first
    with pytest.raises(MissingHandlerError):
        registry.resolve("other")


def test_handler_exception_is_contained_as_permanent_failure():
    def explode(job):
        raise RuntimeError("database unreachable")

    result, action = _engine(CallableJobHandler("reminder.send", explode)).execute(_job())
    assert action is NextAction.TERMINAL
    assert not result.success
    assert not result.should_retry
    assert "RuntimeError" in result.message


def test_supports_raising_is_contained():
    class Broken:
        def supports(self, job_type):
            raise KeyError(job_type)

        def handle(self, job):
            return JobResult.ok()

    result, action = _engine(Broken()).execute(_job())
    assert action is NextAction.TERMINAL
    assert not result.success


def test_non_result_return_is_a_failure():
    class Sloppy:
        def supports(self, job_type):
            return True

        def handle(self, job):
            return "done"

    result, action = _engine(Sloppy()).execute(_job())
    assert not result.success
    assert action is NextAction.TERMINAL


def test_retry_until_budget_exhausted():
    handler = CallableJobHandler("reminder.send", lambda job: JobResult.failure("busy", should_retry=True))
    engine = _engine(handler, policy=RetryPolicy(max_retries=2))

    assert engine.execute(_job(attempt_count=0)).action is NextAction.RETRY
    assert engine.execute(_job(attempt_count=1)).action is NextAction.RETRY
    assert engine.execute(_job(attempt_count=2)).action is NextAction.TERMINAL


def test_job_max_retries_overrides_policy():
    handler = CallableJobHandler("reminder.send", lambda job: JobResult.failure("busy", should_retry=True))
    engine = _engine(handler, policy=RetryPolicy(max_retries=5))
    assert engine.execute(_job(max_retries=0)).action is NextAction.TERMINAL


def test_recurring_job_reschedules_on_success_and_exhausted_failure():
    ok = _engine(CallableJobHandler("reminder.send", lambda job: JobResult.ok()))
    assert ok.execute(_job(recurrence=ScheduleRecurrence.weekly())).action is NextAction.RESCHEDULE

    flaky = _engine(
        CallableJobHandler("reminder.send", lambda job: JobResult.failure("busy", should_retry=True)),
        policy=RetryPolicy(max_retries=1),
    )
    job = _job(recurrence=ScheduleRecurrence.weekly(), attempt_count=1)
    assert flaky.execute(job).action is NextAction.RESCHEDULE


def test_retry_delay_prefers_handler_value_then_backoff():
    policy = RetryPolicy(
        default_retry_delay=timedelta(seconds=60),
        backoff_multiplier=2.0,
        max_retry_delay=timedelta(minutes=5),
    )
    engine = ExecutionEngine(HandlerRegistry(), policy)
    retry = JobResult.failure("busy", should_retry=True)

    assert engine.retry_delay(_job(), JobResult.failure("x", should_retry=True, retry_delay=timedelta(seconds=7))) == timedelta(seconds=7)
    assert engine.retry_delay(_job(attempt_count=0), retry) == timedelta(seconds=60)
    assert engine.retry_delay(_job(attempt_count=2), retry) == timedelta(seconds=240)
    assert engine.retry_delay(_job(attempt_count=6), retry) == timedelta(minutes=5)


def test_handlers_registered_after_engine_is_built_are_used():
    registry = HandlerRegistry()
    engine = ExecutionEngine(registry, RetryPolicy())
    registry.register(CallableJobHandler("reminder.send", lambda job: JobResult.ok("late registration")))

    result, action = engine.execute(_job())
    assert engine.registry is registry
    assert result.success
    assert result.message == "late registration"
    assert action is NextAction.TERMINAL
