"""Handler resolution, failure containment and the retry decision.

``ExecutionEngine.execute`` never raises because of a handler: missing handlers,
handler exceptions and malformed return values all become a failed ``JobResult``.
Each call is independent, so different jobs may be executed concurrently.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Iterable, List, NamedTuple, Optional

from jobsched.domain import JobResult, NextAction, ScheduledJob
from jobsched.errors import MissingHandlerError
from jobsched.ports import JobHandler

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Host-supplied retry budget and backoff.

    A job may be retried while ``attempt_count < max_retries``; a job's own
    ``max_retries`` overrides the policy value.
    """

    max_retries: int = 3
    default_retry_delay: timedelta = timedelta(seconds=60)
    backoff_multiplier: float = 2.0
    max_retry_delay: timedelta = timedelta(hours=1)

    def retries_allowed(self, job: ScheduledJob) -> int:
        if job.max_retries is not None:
            return max(0, int(job.max_retries))
        return max(0, int(self.max_retries))

    def can_retry(self, job: ScheduledJob) -> bool:
        return int(job.attempt_count) < self.retries_allowed(job)

    def delay_for(self, job: ScheduledJob, requested: Optional[timedelta] = None) -> timedelta:
        if requested is not None:
            return max(requested, timedelta(0))
        factor = max(1.0, float(self.backoff_multiplier)) ** int(job.attempt_count)
        return min(self.default_retry_delay * factor, self.max_retry_delay)


class ExecutionDecision(NamedTuple):
    result: JobResult
    action: NextAction


class HandlerRegistry:
    """Ordered handler registry: the first handler that supports a job type wins."""

    def __init__(self, handlers: Optional[Iterable[JobHandler]] = None) -> None:
        self._handlers: List[JobHandler] = list(handlers or [])

    def register(self, handler: JobHandler) -> JobHandler:
        self._handlers.append(handler)
        return handler

    def resolve(self, job_type: str) -> JobHandler:
        for handler in self._handlers:
            if handler.supports(job_type):
                return handler
        raise MissingHandlerError(job_type)

    def __len__(self) -> int:
        return len(self._handlers)


class ExecutionEngine:
    def __init__(
        self,
        registry: Optional[HandlerRegistry] = None,
        policy: Optional[RetryPolicy] = None,
    ) -> None:
        self.registry = registry if registry is not None else HandlerRegistry()
        self.policy = policy if policy is not None else RetryPolicy()

    def execute(self, job: ScheduledJob) -> ExecutionDecision:
        try:
            handler = self.registry.resolve(job.job_type)
        except MissingHandlerError as exc:
            logger.error("Job %s failed: %s", job.id, exc)
            return ExecutionDecision(JobResult.failure("no handler", should_retry=False), NextAction.TERMINAL)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Handler lookup failed for job %s (%s)", job.id, job.job_type)
            return ExecutionDecision(
                JobResult.failure(f"handler lookup failed: {exc}", should_retry=False), NextAction.TERMINAL
            )

        result = self._invoke(handler, job)
        return ExecutionDecision(result, self.decide(job, result))

    def decide(self, job: ScheduledJob, result: JobResult) -> NextAction:
        if not result.success and result.should_retry and self.policy.can_retry(job):
            return NextAction.RETRY
        if job.is_recurring:
            return NextAction.RESCHEDULE
        return NextAction.TERMINAL

    def retry_delay(self, job: ScheduledJob, result: JobResult) -> timedelta:
        return self.policy.delay_for(job, result.retry_delay)

    def _invoke(self, handler: JobHandler, job: ScheduledJob) -> JobResult:
        try:
            result = handler.handle(job)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Handler %s raised for job %s (%s)", type(handler).__name__, job.id, job.job_type)
            return JobResult.failure(f"{type(exc).__name__}: {exc}", should_retry=False)

        if not isinstance(result, JobResult):
            logger.error(
                "Handler %s returned %s instead of a JobResult for job %s",
                type(handler).__name__,
                type(result).__name__,
                job.id,
            )
            return JobResult.failure(f"handler returned {type(result).__name__}", should_retry=False)
        return result
