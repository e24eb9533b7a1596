from __future__ import annotations

import logging
from datetime import datetime, timezone
from threading import Event, Lock, Thread
from typing import Any, Dict, Optional

from fastmcp import FastMCP

from jobsched.config import configure_logging, get_config
from jobsched.domain import JobStatus, ScheduleDefinition, ScheduledJob, ScheduleRecurrence, from_iso
from jobsched.errors import SchedulerError
from jobsched.manager import ScheduleManager
from jobsched.ports import JobHandler
from jobsched.runner import SchedulerRuntimeState, build_manager, run_scheduler_forever

logger = logging.getLogger(__name__)

mcp = FastMCP("scheduler")

_STOP = Event()
_THREAD: Optional[Thread] = None
_STATE = SchedulerRuntimeState(started_at_utc=datetime.now(timezone.utc).replace(microsecond=0).isoformat())
_HANDLERS: list = []
_MANAGER: Optional[ScheduleManager] = None
_MANAGER_LOCK = Lock()


def register_handler(handler: JobHandler) -> JobHandler:
    """Register a host handler. Must happen before the manager is first built."""
    _HANDLERS.append(handler)
    return handler


def set_manager(manager: Optional[ScheduleManager]) -> None:
    global _MANAGER
    with _MANAGER_LOCK:
        _MANAGER = manager


def get_manager() -> ScheduleManager:
    global _MANAGER
    with _MANAGER_LOCK:
        if _MANAGER is None:
            _MANAGER = build_manager(get_config(), _HANDLERS)
        return _MANAGER


def job_view(manager: ScheduleManager, job: ScheduledJob) -> Dict[str, Any]:
    data = job.to_dict()
    data["nextRun"] = manager.describe_next_run(job) if job.status is JobStatus.PENDING else None
    return data


def parse_recurrence(raw: Optional[Dict[str, Any]]) -> Optional[ScheduleRecurrence]:
    """Recurrence from its record shape, e.g. ``{"type": "cron", "cronExpression": "0 9 * * 1-5"}``."""
    if not raw:
        return None
    return ScheduleRecurrence.from_dict(raw)


def start_background_scheduler() -> None:
    global _THREAD
    if _THREAD is not None and _THREAD.is_alive():
        return

    cfg = get_config()
    _STOP.clear()
    _THREAD = Thread(
        target=run_scheduler_forever,
        args=(get_manager(), cfg, _STOP, _STATE),
        name="scheduler-loop",
        daemon=True,
    )
    _THREAD.start()


def stop_background_scheduler(timeout: float = 10.0) -> None:
    _STOP.set()
    if _THREAD is not None:
        _THREAD.join(timeout=timeout)


@mcp.tool
def scheduler_health() -> Dict[str, Any]:
    cfg = get_config()
    alive = bool(_THREAD and _THREAD.is_alive())
    return {
        "ok": True,
        "service": "scheduler",
        "thread_alive": alive,
        "tick_seconds": int(cfg.tick_seconds),
        "lease_seconds": int(cfg.lease_seconds),
        "db": cfg.database_url.split(":", 1)[0],
        "started_at_utc": _STATE.started_at_utc,
        "last_tick_at_utc": _STATE.last_tick_at_utc,
        "last_tick_summary": _STATE.last_tick_summary,
        "pending": get_manager().count(JobStatus.PENDING),
    }


@mcp.tool
def scheduler_list_jobs(
    status: Optional[str] = None,
    job_type: Optional[str] = None,
    target_id: Optional[str] = None,
    limit: int = 100,
) -> Dict[str, Any]:
    manager = get_manager()
    try:
        if job_type:
            jobs = manager.find_by_type(str(job_type))
        elif target_id:
            jobs = manager.find_by_target(str(target_id))
        else:
            jobs = manager.find_by_status(JobStatus(status or "pending"), limit=int(limit))
    except ValueError as exc:
        return {"ok": False, "error": str(exc)}
    if status:
        jobs = [j for j in jobs if j.status.value == status]
    return {"ok": True, "jobs": [job_view(manager, j) for j in jobs[: int(limit)]]}


@mcp.tool
def scheduler_get_job(job_id: str) -> Dict[str, Any]:
    manager = get_manager()
    try:
        job = manager.get(str(job_id))
    except SchedulerError:
        return {"ok": False, "error": "not_found"}
    return {"ok": True, "job": job_view(manager, job)}


@mcp.tool
def scheduler_schedule_job(
    *,
    job_type: str,
    target_id: str,
    run_at: Optional[str] = None,
    payload: Optional[Dict[str, Any]] = None,
    recurrence: Optional[Dict[str, Any]] = None,
    max_retries: Optional[int] = None,
    priority: int = 0,
) -> Dict[str, Any]:
    manager = get_manager()
    try:
        definition = ScheduleDefinition(
            job_type=str(job_type),
            target_id=str(target_id),
            run_at=from_iso(run_at) or manager.clock.now(),
            payload=dict(payload or {}),
            recurrence=parse_recurrence(recurrence),
            max_retries=int(max_retries) if max_retries is not None else None,
            priority=int(priority),
        )
        job = manager.schedule(definition)
    except (SchedulerError, ValueError) as exc:
        return {"ok": False, "error": str(exc)}
    return {"ok": True, "job": job_view(manager, job)}


@mcp.tool
def scheduler_cancel_job(job_id: str) -> Dict[str, Any]:
    manager = get_manager()
    try:
        job = manager.cancel(str(job_id))
    except SchedulerError as exc:
        return {"ok": False, "error": str(exc)}
    return {"ok": True, "job": job_view(manager, job)}


@mcp.tool
def scheduler_delete_job(job_id: str) -> Dict[str, Any]:
    ok = get_manager().delete(str(job_id))
    return {"ok": bool(ok)}


@mcp.tool
def scheduler_run_job(job_id: str) -> Dict[str, Any]:
    """Execute a job now, through the same claim as the polling loop."""
    manager = get_manager()
    try:
        outcome = manager.execute_job(str(job_id))
    except SchedulerError as exc:
        return {"ok": False, "error": str(exc)}
    return {
        "ok": not outcome.skipped,
        "skipped": outcome.skipped,
        "reason": outcome.reason,
        "action": outcome.action.value if outcome.action else None,
        "result": outcome.result.to_dict() if outcome.result else None,
        "job": job_view(manager, outcome.job),
    }


@mcp.tool
def scheduler_list_runs(limit: int = 50, job_id: Optional[str] = None) -> Dict[str, Any]:
    runs = get_manager().repository.list_runs(job_id=str(job_id) if job_id else None, limit=int(limit))
    return {"ok": True, "runs": runs}


@mcp.tool
def scheduler_preview_recurrence(
    recurrence: Dict[str, Any],
    start: Optional[str] = None,
    count: int = 5,
) -> Dict[str, Any]:
    manager = get_manager()
    try:
        rule = parse_recurrence(recurrence)
        if rule is None:
            return {"ok": False, "error": "recurrence is required"}
        runs = manager.recurrence.upcoming(from_iso(start) or manager.clock.now(), rule, count=max(1, min(int(count), 50)))
    except (SchedulerError, ValueError) as exc:
        return {"ok": False, "error": str(exc)}
    return {"ok": True, "runs": [r.isoformat() for r in runs]}


def run() -> None:
    cfg = get_config()
    configure_logging(cfg.log_level)
    start_background_scheduler()
    try:
        mcp.run(transport=cfg.mcp_transport, host=cfg.mcp_host, port=int(cfg.mcp_port))
    except TypeError:
        # stdio transport takes no host/port.
        mcp.run(transport=cfg.mcp_transport)
    finally:
        stop_background_scheduler()


if __name__ == "__main__":
    run()
