"""Run ledger for the analytics job scheduler.

Every cron dispatch, retry and one-off job lands here so that ``/readyz`` and
``AnalyticsJobScheduler.health()`` can report on rollups, sweeps, cleanup and
engagement recomputes without touching the database.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from threading import Lock
from typing import Any, Mapping

from telemetry_api.core.clock import utcnow


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def one_off_family(job_id: str) -> str:
    """``engagement-recompute:42`` and ``engagement-recompute:43`` share a family."""

    return job_id.split(":", 1)[0]


@dataclass(frozen=True)
class JobRunSnapshot:
    job_id: str
    task: str
    totals: dict[str, int]
    last_started_at: datetime | None
    last_success_at: datetime | None
    last_error_at: datetime | None
    last_error: str | None
    last_attempts: int
    last_runtime_seconds: float | None
    last_result: dict[str, Any] | None

    @property
    def failing(self) -> bool:
        return self.totals["consecutive_failures"] > 0

    def as_dict(self) -> dict[str, object]:
        return {
            "job_id": self.job_id,
            "task": self.task,
            "totals": dict(self.totals),
            "last_started_at": _iso(self.last_started_at),
            "last_success_at": _iso(self.last_success_at),
            "last_error_at": _iso(self.last_error_at),
            "last_error": self.last_error,
            "last_attempts": self.last_attempts,
            "last_runtime_seconds": self.last_runtime_seconds,
            "last_result": self.last_result,
        }


@dataclass(frozen=True)
class SchedulerSnapshot:
    totals: dict[str, int]
    jobs: dict[str, JobRunSnapshot]
    one_off: dict[str, int]

    def failing_jobs(self) -> list[str]:
        return sorted(job_id for job_id, job in self.jobs.items() if job.failing)

    def as_dict(self) -> dict[str, object]:
        return {
            "totals": self.totals,
            "jobs": {job_id: job.as_dict() for job_id, job in self.jobs.items()},
            "one_off": self.one_off,
        }


@dataclass
class _JobRun:
    job_id: str
    task: str
    counts: Counter = field(default_factory=Counter)
    consecutive_failures: int = 0
    last_started_at: datetime | None = None
    last_success_at: datetime | None = None
    last_error_at: datetime | None = None
    last_error: str | None = None
    last_attempts: int = 0
    last_runtime_seconds: float | None = None
    last_result: dict[str, Any] | None = None

    def freeze(self) -> JobRunSnapshot:
        return JobRunSnapshot(
            job_id=self.job_id,
            task=self.task,
            totals={
                "runs": self.counts["runs"],
                "success": self.counts["success"],
                "run_failures": self.counts["run_failures"],
                "attempt_failures": self.counts["attempt_failures"],
                "retries": self.counts["retries"],
                "consecutive_failures": self.consecutive_failures,
            },
            last_started_at=self.last_started_at,
            last_success_at=self.last_success_at,
            last_error_at=self.last_error_at,
            last_error=self.last_error,
            last_attempts=self.last_attempts,
            last_runtime_seconds=self.last_runtime_seconds,
            last_result=self.last_result,
        )


class SchedulerObservabilityStore:
    """Thread-safe counters for scheduled analytics jobs."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._runs: dict[str, _JobRun] = {}
        self._one_off: Counter = Counter()

    def reset(self) -> None:
        with self._lock:
            self._runs.clear()
            self._one_off.clear()

    def _run(self, job_id: str, task: str) -> _JobRun:
        run = self._runs.get(job_id)
        if run is None:
            run = self._runs[job_id] = _JobRun(job_id=job_id, task=task)
        run.task = task
        return run

    def record_dispatch(self, job_id: str, task: str) -> None:
        with self._lock:
            run = self._run(job_id, task)
            run.counts["runs"] += 1
            run.last_started_at = utcnow()
            run.last_attempts = 0

    def record_attempt_failure(self, job_id: str, task: str, *, attempts: int, error: str) -> None:
        with self._lock:
            run = self._run(job_id, task)
            run.counts["attempt_failures"] += 1
            run.consecutive_failures += 1
            run.last_attempts = attempts
            run.last_error = error
            run.last_error_at = utcnow()

    def record_retry(self, job_id: str, task: str, *, delay_seconds: float, attempts: int) -> None:
        with self._lock:
            run = self._run(job_id, task)
            run.counts["retries"] += 1
            run.last_attempts = attempts

    def record_success(
        self,
        job_id: str,
        task: str,
        *,
        runtime_seconds: float,
        attempts: int,
        result: Any = None,
    ) -> None:
        with self._lock:
            run = self._run(job_id, task)
            run.counts["success"] += 1
            run.consecutive_failures = 0
            run.last_attempts = attempts
            run.last_runtime_seconds = runtime_seconds
            run.last_success_at = utcnow()
            run.last_error = None
            run.last_error_at = None
            # Job entrypoints return summaries such as ``{"status": "created", ...}``.
            run.last_result = dict(result) if isinstance(result, Mapping) else None

    def record_run_failure(self, job_id: str, task: str, *, runtime_seconds: float, attempts: int, error: str) -> None:
        with self._lock:
            run = self._run(job_id, task)
            run.counts["run_failures"] += 1
            run.last_attempts = attempts
            run.last_runtime_seconds = runtime_seconds
            run.last_error = error
            run.last_error_at = utcnow()

    def record_one_off(self, job_id: str) -> None:
        with self._lock:
            self._one_off[one_off_family(job_id)] += 1

    def snapshot(self) -> SchedulerSnapshot:
        with self._lock:
            jobs = {job_id: run.freeze() for job_id, run in self._runs.items()}
            one_off = dict(self._one_off)
        totals = {
            key: sum(job.totals[key] for job in jobs.values())
            for key in ("runs", "success", "run_failures", "attempt_failures", "retries")
        }
        totals["one_off_scheduled"] = sum(one_off.values())
        return SchedulerSnapshot(totals=totals, jobs=jobs, one_off=one_off)


_SCHEDULER_STORE = SchedulerObservabilityStore()


def get_scheduler_store() -> SchedulerObservabilityStore:
    return _SCHEDULER_STORE


__all__ = [
    "JobRunSnapshot",
    "SchedulerObservabilityStore",
    "SchedulerSnapshot",
    "get_scheduler_store",
    "one_off_family",
]
