from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Optional

from jobsched.config_utils import env_float, env_int, env_optional_str, env_str
from jobsched.execution import RetryPolicy


@dataclass(frozen=True)
class SchedulerConfig:
    """Runtime configuration for the scheduler service.

    DB selection:
    - PLATFORM_DATABASE_URL: shared DB URL (preferred)
    - SCHEDULER_DATABASE_URL: scheduler-specific DB URL
    - If neither is set, defaults to local SQLite at data/scheduler.db

    Loop:
    - SCHEDULER_TICK_SECONDS: how often to poll for due jobs (default: 5)
    - SCHEDULER_MAX_JOBS_PER_TICK: cap due jobs executed per tick (default: 20)
    - SCHEDULER_WORKERS: worker threads executing a tick's jobs (default: 1)

    Claims and retries:
    - SCHEDULER_LEASE_SECONDS: claim lease before a job is presumed abandoned (default: 300)
    - SCHEDULER_MAX_RETRIES: retries per occurrence when a job sets none (default: 3)
    - SCHEDULER_RETRY_DELAY_SECONDS: first backoff when a handler gives no delay (default: 60)
    - SCHEDULER_RETRY_BACKOFF: backoff multiplier per attempt (default: 2.0)
    - SCHEDULER_MAX_RETRY_DELAY_SECONDS: backoff cap (default: 3600)

    Handlers:
    - SCHEDULER_WEBHOOK_URL: when set, jobs of any type are POSTed to this URL

    MCP server:
    - SCHEDULER_MCP_TRANSPORT (default: http), SCHEDULER_MCP_HOST (default: 0.0.0.0),
      SCHEDULER_MCP_PORT (default: 8010)
    - SCHEDULER_LOG_LEVEL (default: INFO)
    """

    database_url: str
    tick_seconds: int
    max_jobs_per_tick: int
    workers: int

    lease_seconds: int
    max_retries: int
    retry_delay_seconds: int
    retry_backoff: float
    max_retry_delay_seconds: int

    webhook_url: Optional[str]

    mcp_transport: str
    mcp_host: str
    mcp_port: int
    log_level: str

    @classmethod
    def from_env(cls) -> "SchedulerConfig":
        db_url = env_optional_str("PLATFORM_DATABASE_URL") or env_optional_str("SCHEDULER_DATABASE_URL") or ""

        if not db_url:
            # Default sqlite path under project-root data/.
            data_dir = Path(__file__).resolve().parents[1] / "data"
            data_dir.mkdir(parents=True, exist_ok=True)
            db_url = f"sqlite:///{(data_dir / 'scheduler.db').as_posix()}"

        return cls(
            database_url=db_url,
            tick_seconds=max(1, env_int("SCHEDULER_TICK_SECONDS", 5)),
            max_jobs_per_tick=max(1, env_int("SCHEDULER_MAX_JOBS_PER_TICK", 20)),
            workers=max(1, env_int("SCHEDULER_WORKERS", 1)),
            lease_seconds=max(1, env_int("SCHEDULER_LEASE_SECONDS", 300)),
            max_retries=max(0, env_int("SCHEDULER_MAX_RETRIES", 3)),
            retry_delay_seconds=max(0, env_int("SCHEDULER_RETRY_DELAY_SECONDS", 60)),
            retry_backoff=max(1.0, env_float("SCHEDULER_RETRY_BACKOFF", 2.0)),
            max_retry_delay_seconds=max(1, env_int("SCHEDULER_MAX_RETRY_DELAY_SECONDS", 3600)),
            webhook_url=env_optional_str("SCHEDULER_WEBHOOK_URL"),
            mcp_transport=env_str("SCHEDULER_MCP_TRANSPORT", "http").lower(),
            mcp_host=env_str("SCHEDULER_MCP_HOST", "0.0.0.0"),
            mcp_port=env_int("SCHEDULER_MCP_PORT", 8010),
            log_level=env_str("SCHEDULER_LOG_LEVEL", "INFO").upper(),
        )

    @property
    def lease(self) -> timedelta:
        return timedelta(seconds=self.lease_seconds)

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=self.max_retries,
            default_retry_delay=timedelta(seconds=self.retry_delay_seconds),
            backoff_multiplier=self.retry_backoff,
            max_retry_delay=timedelta(seconds=self.max_retry_delay_seconds),
        )


_config: Optional[SchedulerConfig] = None


def get_config() -> SchedulerConfig:
    """Get the scheduler configuration (cached)."""
    global _config
    if _config is None:
        _config = SchedulerConfig.from_env()
    return _config


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
