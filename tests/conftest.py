from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

import pytest

from jobsched.clock import FrozenClock
from jobsched.execution import ExecutionEngine, HandlerRegistry, RetryPolicy
from jobsched.manager import ScheduleManager
from jobsched.memory import InMemoryScheduleRepository

# Wednesday
T0 = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(T0)


@pytest.fixture
def registry() -> HandlerRegistry:
    return HandlerRegistry()


@pytest.fixture
def memory_repo() -> InMemoryScheduleRepository:
    return InMemoryScheduleRepository()


@pytest.fixture
def manager(memory_repo, registry, clock) -> ScheduleManager:
    return ScheduleManager(memory_repo, ExecutionEngine(registry, RetryPolicy()), clock=clock)


@pytest.fixture
def sqlite_url(tmp_path: Path) -> str:
    return f"sqlite:///{(tmp_path / 'scheduler.db').as_posix()}"
