"""jobsched - recurring and one-off job scheduling.

This package provides:
- Entities for schedules, jobs and results, with a small job state machine
- A recurrence engine (interval, daily, weekly, monthly, five-field cron)
- An execution engine with handler registry, failure containment and retry policy
- The ScheduleManager facade with a lease-based, compare-and-swap claim
- SQLAlchemy (SQLite/PostgreSQL) and in-process repositories
- A polling runner and a FastMCP control surface (``python -m jobsched.mcp``)
"""

from .clock import Clock, FrozenClock, SystemClock
from .domain import (
    JobResult,
    JobStatus,
    NextAction,
    RecurrenceType,
    ScheduleDefinition,
    ScheduledJob,
    ScheduleRecurrence,
)
from .errors import (
    InvalidTransitionError,
    JobNotFoundError,
    LockContentionError,
    MissingHandlerError,
    PermanentExecutionError,
    SchedulerError,
    TransientExecutionError,
    ValidationError,
)
from .execution import ExecutionDecision, ExecutionEngine, HandlerRegistry, RetryPolicy
from .handlers import CallableJobHandler, HttpJobHandler
from .manager import ExecutionOutcome, ScheduleManager
from .memory import InMemoryJobQueue, InMemoryScheduleRepository
from .recurrence import RecurrenceEngine

__all__ = [
    "Clock",
    "FrozenClock",
    "SystemClock",
    "JobResult",
    "JobStatus",
    "NextAction",
    "RecurrenceType",
    "ScheduleDefinition",
    "ScheduledJob",
    "ScheduleRecurrence",
    "InvalidTransitionError",
    "JobNotFoundError",
    "LockContentionError",
    "MissingHandlerError",
    "PermanentExecutionError",
    "SchedulerError",
    "TransientExecutionError",
    "ValidationError",
    "ExecutionDecision",
    "ExecutionEngine",
    "HandlerRegistry",
    "RetryPolicy",
    "CallableJobHandler",
    "HttpJobHandler",
    "ExecutionOutcome",
    "ScheduleManager",
    "InMemoryJobQueue",
    "InMemoryScheduleRepository",
    "RecurrenceEngine",
]
