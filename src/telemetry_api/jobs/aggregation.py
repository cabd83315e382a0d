"""Job entrypoints for analytics rollups and telemetry housekeeping."""

from __future__ import annotations

from datetime import date, datetime
from typing import Any, Awaitable, Callable, Dict, Protocol

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from telemetry_api.core.settings import settings
from telemetry_api.db.session import async_session
from telemetry_api.services.analytics.aggregator import AnalyticsAggregator

SessionFactory = Callable[[], AsyncSession] | Callable[[], Awaitable[AsyncSession]]

RETENTION_FOLLOWUP_JOB_ID = "retention-cleanup-followup"


class FollowupScheduler(Protocol):
    def schedule_once(
        self,
        job_id: str,
        func: Callable[..., Awaitable[Any]],
        *,
        delay_seconds: float = 0,
        kwargs: dict[str, Any] | None = None,
    ) -> bool: ...


def _aggregator(
    session_factory: SessionFactory | None,
    aggregator: AnalyticsAggregator | None,
) -> AnalyticsAggregator:
    if aggregator is not None:
        return aggregator
    return AnalyticsAggregator(session_factory or async_session)


async def run_hourly_aggregation(
    *,
    session_factory: SessionFactory | None = None,
    aggregator: AnalyticsAggregator | None = None,
    now: datetime | None = None,
) -> Dict[str, Any]:
    """Roll up the last completed hour."""

    summary = await _aggregator(session_factory, aggregator).run_hourly(now=now)
    logger.bind(summary=summary).info("Hourly aggregation finished")
    return summary


async def run_daily_aggregation(
    *,
    session_factory: SessionFactory | None = None,
    aggregator: AnalyticsAggregator | None = None,
    now: datetime | None = None,
    day: date | None = None,
) -> Dict[str, Any]:
    """Roll up yesterday (UTC), or ``day`` when given."""

    local = _aggregator(session_factory, aggregator)
    summary = await (local.aggregate_day(day) if day else local.run_daily(now=now))
    logger.bind(summary=summary).info("Daily aggregation finished")
    return summary


async def run_presence_sweep(
    *,
    session_factory: SessionFactory | None = None,
    aggregator: AnalyticsAggregator | None = None,
) -> Dict[str, Any]:
    deleted = await _aggregator(session_factory, aggregator).sweep_presence()
    return {"deleted": deleted}


async def run_retention_cleanup(
    *,
    session_factory: SessionFactory | None = None,
    aggregator: AnalyticsAggregator | None = None,
    scheduler: FollowupScheduler | None = None,
) -> Dict[str, Any]:
    """Delete one batch of expired telemetry and queue a follow-up while more remains."""

    result = await _aggregator(session_factory, aggregator).cleanup_retention()
    summary = result.as_dict()
    summary["followup_scheduled"] = False
    if result.needs_followup and scheduler is not None:
        summary["followup_scheduled"] = scheduler.schedule_once(
            RETENTION_FOLLOWUP_JOB_ID,
            run_retention_cleanup,
            delay_seconds=settings.cleanup_followup_seconds,
            kwargs={"session_factory": session_factory, "aggregator": aggregator, "scheduler": scheduler},
        )
    logger.bind(summary=summary).info("Retention cleanup finished")
    return summary


__all__ = [
    "run_daily_aggregation",
    "run_hourly_aggregation",
    "run_presence_sweep",
    "run_retention_cleanup",
]
