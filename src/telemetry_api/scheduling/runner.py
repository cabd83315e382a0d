"""Scheduler runtime for analytics rollups, housekeeping and debounced recomputes."""

from __future__ import annotations

import asyncio
import inspect
import random
import time
from datetime import datetime, timedelta
from importlib import import_module
from pathlib import Path
from types import ModuleType
from typing import Any, Awaitable, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from loguru import logger
from zoneinfo import ZoneInfo

from telemetry_api.core.clock import utcnow
from telemetry_api.observability.scheduler import get_scheduler_store

from .config import JobDefinition, ScheduleConfig, load_job_definitions

SessionFactory = Callable[[], Awaitable[Any]] | Callable[[], Any]


class AnalyticsJobScheduler:
    """Register recurring cron jobs from TOML and accept one-off delayed jobs.

    Without a ``config_path`` no cron jobs are registered, but the underlying
    scheduler still runs so ``schedule_once`` keeps working.
    """

    def __init__(self, *, session_factory: SessionFactory, config_path: Path | None = None) -> None:
        self._session_factory = session_factory
        self._config_path = config_path
        self._config: ScheduleConfig | None = None
        self._scheduler: AsyncIOScheduler | None = None
        self._is_running: bool = False
        self._observability = get_scheduler_store()
        self._logger = logger.bind(component="job_scheduler")

    @property
    def is_running(self) -> bool:
        return self._is_running

    @property
    def cron_enabled(self) -> bool:
        return self._config_path is not None

    def start(self) -> None:
        """Start the scheduler with configured jobs."""

        config = load_job_definitions(self._config_path) if self._config_path else ScheduleConfig("UTC", [])
        timezone = ZoneInfo(config.timezone)
        scheduler = AsyncIOScheduler(timezone=timezone)

        for job in config.jobs:
            func = self._resolve_callable(job)
            trigger = CronTrigger.from_crontab(job.cron, timezone=timezone)
            scheduler.add_job(self._wrap_callable(func, job), trigger=trigger, id=job.id, replace_existing=True)
            self._logger.info("Registered analytics job", job_id=job.id, task=job.task, cron=job.cron)

        scheduler.start()
        self._config = config
        self._scheduler = scheduler
        self._is_running = True
        self._logger.info("Analytics job scheduler started", jobs=len(config.jobs))

    async def stop(self) -> None:
        """Stop the scheduler and release resources."""

        if not self._scheduler:
            return
        result = self._scheduler.shutdown(wait=False)
        if inspect.isawaitable(result):
            await result
        self._scheduler = None
        self._is_running = False
        self._logger.info("Analytics job scheduler stopped")

    def schedule_once(
        self,
        job_id: str,
        func: Callable[..., Awaitable[Any]],
        *,
        delay_seconds: float = 0,
        run_at: datetime | None = None,
        kwargs: dict[str, Any] | None = None,
    ) -> bool:
        """Run ``func`` once at ``run_at`` (or after ``delay_seconds``); same id replaces."""

        if not self._scheduler:
            self._logger.warning("One-off job dropped; scheduler not running", job_id=job_id)
            return False
        when = run_at or utcnow() + timedelta(seconds=max(delay_seconds, 0))
        self._scheduler.add_job(
            func,
            trigger=DateTrigger(run_date=when),
            id=job_id,
            kwargs=kwargs or {},
            replace_existing=True,
            misfire_grace_time=None,
        )
        self._observability.record_one_off(job_id)
        self._logger.debug("Scheduled one-off job", job_id=job_id, run_at=when.isoformat())
        return True

    def _resolve_callable(self, job: JobDefinition) -> Callable[..., Awaitable[Any]]:
        module_name, _, attr = job.task.rpartition(".")
        if not module_name:
            raise ValueError(f"Invalid task path: {job.task}")
        module: ModuleType = import_module(module_name)
        func = getattr(module, attr, None)
        if func is None:
            raise AttributeError(f"Task {job.task} not found")
        if not asyncio.iscoroutinefunction(func):
            raise TypeError(f"Task {job.task} must be an async function")
        return func

    def _task_kwargs(self, func: Callable[..., Awaitable[Any]], job: JobDefinition) -> dict[str, Any]:
        kwargs: dict[str, Any] = {"session_factory": self._session_factory, **job.kwargs}
        if "scheduler" in inspect.signature(func).parameters:
            kwargs["scheduler"] = self
        return kwargs

    def _wrap_callable(self, func: Callable[..., Awaitable[Any]], job: JobDefinition) -> Callable[[], Awaitable[Any]]:
        async def _runner() -> Any:
            max_attempts = max(job.max_attempts, 1)
            base_backoff = max(job.base_backoff_seconds, 0.0)
            backoff_multiplier = max(job.backoff_multiplier, 1.0)
            max_backoff_seconds = max(job.max_backoff_seconds, 0.0)
            jitter_seconds = max(job.jitter_seconds, 0.0)
            kwargs = self._task_kwargs(func, job)

            self._observability.record_dispatch(job.id, job.task)
            started_at = time.perf_counter()

            for attempt in range(1, max_attempts + 1):
                try:
                    result = await func(**kwargs)
                except Exception as exc:  # pragma: no cover - defensive guard
                    error_message = str(exc)
                    self._observability.record_attempt_failure(job.id, job.task, attempts=attempt, error=error_message)
                    if attempt >= max_attempts:
                        self._observability.record_run_failure(
                            job.id,
                            job.task,
                            runtime_seconds=time.perf_counter() - started_at,
                            attempts=attempt,
                            error=error_message,
                        )
                        self._logger.exception(
                            "Scheduled job failed after retries",
                            job_id=job.id,
                            task=job.task,
                            attempts=attempt,
                            error=error_message,
                        )
                        return None

                    delay = base_backoff * (backoff_multiplier ** (attempt - 1))
                    if max_backoff_seconds:
                        delay = min(delay, max_backoff_seconds)
                    if jitter_seconds:
                        delay += random.uniform(0, jitter_seconds)
                    delay = max(delay, 0.0)
                    self._observability.record_retry(job.id, job.task, delay_seconds=delay, attempts=attempt + 1)
                    self._logger.warning(
                        "Scheduled job retrying",
                        job_id=job.id,
                        task=job.task,
                        attempt=attempt + 1,
                        delay_seconds=delay,
                    )
                    if delay:
                        await asyncio.sleep(delay)
                    continue

                runtime_seconds = time.perf_counter() - started_at
                self._observability.record_success(
                    job.id, job.task, runtime_seconds=runtime_seconds, attempts=attempt, result=result
                )
                self._logger.info(
                    "Scheduled job completed",
                    job_id=job.id,
                    task=job.task,
                    attempts=attempt,
                    runtime_seconds=runtime_seconds,
                )
                return result
            return None

        return _runner

    def health(self) -> dict[str, object]:
        """Return scheduler health metadata suitable for diagnostics."""

        snapshot = self._observability.snapshot()
        config_jobs = self._config.jobs if self._config else []
        jobs: list[dict[str, object]] = []

        for job in config_jobs:
            job_metrics = snapshot.jobs.get(job.id)
            jobs.append(
                {
                    "id": job.id,
                    "task": job.task,
                    "cron": job.cron,
                    "max_attempts": job.max_attempts,
                    "backoff": {
                        "base_seconds": job.base_backoff_seconds,
                        "multiplier": job.backoff_multiplier,
                        "max_seconds": job.max_backoff_seconds,
                        "jitter_seconds": job.jitter_seconds,
                    },
                    "metrics": job_metrics.as_dict() if job_metrics else None,
                }
            )

        return {
            "running": self._is_running,
            "cron_enabled": self.cron_enabled,
            "configured_jobs": len(config_jobs),
            "totals": snapshot.totals,
            "one_off": snapshot.one_off,
            "jobs": jobs,
        }


__all__ = ["AnalyticsJobScheduler"]
