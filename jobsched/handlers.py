"""Ready-made job handlers.

Handlers signal retryability through the ``JobResult`` they return; an
exception escaping ``handle`` is always treated as a permanent failure by the
execution engine.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Union

import requests

from jobsched.domain import JobResult, ScheduledJob

logger = logging.getLogger(__name__)

JobFunction = Callable[[ScheduledJob], Union[JobResult, Mapping[str, Any], None]]

_RETRYABLE_STATUS = {408, 425, 429, 500, 502, 503, 504}


def _types(job_types: Union[str, Iterable[str], None]) -> Optional[frozenset]:
    if job_types is None:
        return None
    if isinstance(job_types, str):
        return frozenset({job_types})
    return frozenset(job_types)


class CallableJobHandler:
    """Wrap a plain function as a handler for one or more job types.

    The function may return a ``JobResult``, a mapping (taken as a successful
    result's output) or ``None`` (plain success).
    """

    def __init__(self, job_types: Union[str, Iterable[str]], func: JobFunction) -> None:
        self.job_types = _types(job_types) or frozenset()
        self.func = func

    def supports(self, job_type: str) -> bool:
        return job_type in self.job_types

    def handle(self, job: ScheduledJob) -> JobResult:
        value = self.func(job)
        if isinstance(value, JobResult):
            return value
        if value is None:
            return JobResult.ok()
        if isinstance(value, Mapping):
            return JobResult.ok(output=dict(value))
        return JobResult.failure(f"unsupported return type {type(value).__name__}")


class HttpJobHandler:
    """POST each job to a webhook.

    - 2xx: success, the JSON body (if any) becomes the output
    - 408/425/429/5xx and connection errors: retryable failure, honouring ``Retry-After``
    - any other status: permanent failure

    ``job_types=None`` makes this a catch-all handler.
    """

    def __init__(
        self,
        url: str,
        job_types: Union[str, Iterable[str], None] = None,
        *,
        timeout: float = 15.0,
        headers: Optional[Dict[str, str]] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.url = str(url)
        self.job_types = _types(job_types)
        self.timeout = float(timeout)
        self.headers = {"Content-Type": "application/json", "Accept": "application/json", **(headers or {})}
        self.session = session or requests.Session()

    def supports(self, job_type: str) -> bool:
        return self.job_types is None or job_type in self.job_types

    def handle(self, job: ScheduledJob) -> JobResult:
        body = {"job": job.to_dict(), "attempt": int(job.attempt_count) + 1}
        try:
            resp = self.session.post(self.url, json=body, headers=self.headers, timeout=self.timeout)
        except requests.RequestException as exc:
            logger.warning("Webhook %s unreachable for job %s: %s", self.url, job.id, exc)
            return JobResult.failure(f"{type(exc).__name__}: {exc}", should_retry=True)

        if 200 <= resp.status_code < 300:
            return JobResult.ok(message=f"HTTP {resp.status_code}", output=_json_body(resp))

        message = f"HTTP {resp.status_code}: {resp.text[:500]}"
        if resp.status_code in _RETRYABLE_STATUS:
            return JobResult.failure(
                message,
                should_retry=True,
                retry_delay=_retry_after(resp.headers.get("Retry-After")),
            )
        return JobResult.failure(message, should_retry=False)


def _json_body(resp: requests.Response) -> Optional[Dict[str, Any]]:
    if not resp.content:
        return None
    try:
        data = resp.json()
    except ValueError:
        return {"text": resp.text[:2000]}
    return data if isinstance(data, dict) else {"result": data}


def _retry_after(raw: Optional[str]) -> Optional[timedelta]:
    """Seconds form of Retry-After only; HTTP-date values fall back to the policy backoff."""
    if not raw:
        return None
    try:
        return timedelta(seconds=max(0, int(str(raw).strip())))
    except ValueError:
        return None
