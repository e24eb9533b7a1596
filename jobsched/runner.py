from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from threading import Event
from typing import Any, Dict, Iterable, List, Optional

from jobsched.clock import Clock
from jobsched.config import SchedulerConfig
from jobsched.domain import NextAction
from jobsched.errors import JobNotFoundError
from jobsched.execution import ExecutionEngine, HandlerRegistry
from jobsched.handlers import HttpJobHandler
from jobsched.manager import ExecutionOutcome, ScheduleManager
from jobsched.memory import InMemoryJobQueue
from jobsched.ports import JobHandler
from jobsched.repo import SqlScheduleRepository

logger = logging.getLogger(__name__)


@dataclass
class SchedulerRuntimeState:
    started_at_utc: str
    last_tick_at_utc: Optional[str] = None
    last_tick_summary: Optional[Dict[str, Any]] = None
    ticks: int = 0


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def build_manager(
    cfg: SchedulerConfig,
    handlers: Iterable[JobHandler] = (),
    *,
    clock: Optional[Clock] = None,
) -> ScheduleManager:
    """Wire a SQL-backed manager from configuration.

    Host handlers are resolved first; the webhook handler, when configured, is the catch-all.
    """
    registry = HandlerRegistry(handlers)
    if cfg.webhook_url:
        registry.register(HttpJobHandler(cfg.webhook_url))

    return ScheduleManager(
        SqlScheduleRepository(cfg.database_url),
        ExecutionEngine(registry, cfg.retry_policy()),
        clock=clock,
        lease=cfg.lease,
    )


def summarize(outcomes: List[ExecutionOutcome], jobs_due: int) -> Dict[str, Any]:
    executed = [o for o in outcomes if not o.skipped]
    return {
        "jobs_due": int(jobs_due),
        "executed": len(executed),
        "ok": sum(1 for o in executed if o.result is not None and o.result.success),
        "failed": sum(1 for o in executed if o.result is not None and not o.result.success),
        "retried": sum(1 for o in executed if o.action is NextAction.RETRY),
        "rescheduled": sum(1 for o in executed if o.action is NextAction.RESCHEDULE),
        "skipped": len(outcomes) - len(executed),
    }


def run_tick(manager: ScheduleManager, cfg: SchedulerConfig, state: Optional[SchedulerRuntimeState] = None) -> Dict[str, Any]:
    """One polling cycle: execute up to ``max_jobs_per_tick`` due jobs."""
    if state is not None:
        state.last_tick_at_utc = _utc_now_iso()

    due = manager.get_due_jobs(limit=int(cfg.max_jobs_per_tick))
    outcomes: List[ExecutionOutcome] = []

    if cfg.workers > 1 and len(due) > 1:
        with ThreadPoolExecutor(max_workers=int(cfg.workers), thread_name_prefix="scheduler-worker") as pool:
            futures = [pool.submit(_execute_quietly, manager, job.id) for job in due]
            for fut in futures:
                outcome = fut.result()
                if outcome is not None:
                    outcomes.append(outcome)
    else:
        for job in due:
            outcome = _execute_quietly(manager, job.id)
            if outcome is not None:
                outcomes.append(outcome)

    summary = summarize(outcomes, len(due))
    if state is not None:
        state.last_tick_summary = summary
        state.ticks += 1
    if due:
        logger.info("Tick: %s", summary)
    return summary


def _execute_quietly(manager: ScheduleManager, job_id: str) -> Optional[ExecutionOutcome]:
    try:
        return manager.execute_job(job_id)
    except JobNotFoundError:
        logger.debug("Job %s vanished before execution", job_id)
        return None
    except Exception:  # noqa: BLE001
        # Repository failure for one job; keep the loop alive for the others.
        logger.exception("Executing job %s failed", job_id)
        return None


def drain_queue(manager: ScheduleManager, queue: InMemoryJobQueue, *, limit: Optional[int] = None) -> List[ExecutionOutcome]:
    """Execute ready job ids from ``queue`` (queue-dispatch mode)."""
    outcomes: List[ExecutionOutcome] = []
    while limit is None or len(outcomes) < int(limit):
        job_id = queue.pop_ready(manager.clock.now())
        if job_id is None:
            break
        outcome = _execute_quietly(manager, job_id)
        if outcome is not None:
            outcomes.append(outcome)
    return outcomes


def run_scheduler_forever(
    manager: ScheduleManager,
    cfg: SchedulerConfig,
    stop_event: Event,
    state: SchedulerRuntimeState,
) -> None:
    """Blocking loop that executes due jobs on a wall-clock timer."""

    logger.info("Scheduler loop started (tick=%ss, workers=%d)", cfg.tick_seconds, cfg.workers)
    while not stop_event.is_set():
        tick_started = datetime.now(timezone.utc)
        try:
            run_tick(manager, cfg, state)
        except Exception:  # noqa: BLE001
            logger.exception("Scheduler tick failed")

        # Sleep for tick interval (minus time spent), but wake quickly on stop.
        elapsed = (datetime.now(timezone.utc) - tick_started).total_seconds()
        sleep_s = max(0.2, float(cfg.tick_seconds) - float(elapsed))
        stop_event.wait(timeout=sleep_s)
    logger.info("Scheduler loop stopped")
