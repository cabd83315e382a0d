"""Job entrypoints for engagement scores and the property interest rollup."""

from __future__ import annotations

import time
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from telemetry_api.db.session import async_session
from telemetry_api.services.engagement import EngagementScorer, PropertyInterestTracker

SessionFactory = Callable[[], AsyncSession] | Callable[[], Awaitable[AsyncSession]]


async def _ensure_session(factory: SessionFactory) -> AsyncSession:
    maybe_session = factory()
    if isinstance(maybe_session, AsyncSession):
        return maybe_session
    return await maybe_session


async def run_engagement_scores(
    *,
    session_factory: SessionFactory | None = None,
    days: int | None = None,
    now: datetime | None = None,
) -> Dict[str, Any]:
    """Recompute every client active in the window; one failure does not stop the batch."""

    factory = session_factory or async_session
    started_at = time.perf_counter()

    async with await _ensure_session(factory) as session:
        user_ids = await EngagementScorer(session).clients_needing_calculation(days, now=now)

    succeeded = 0
    failed = 0
    for user_id in user_ids:
        try:
            async with await _ensure_session(factory) as session:
                await EngagementScorer(session).recompute(user_id, now=now)
        except Exception:  # pragma: no cover - defensive logging
            failed += 1
            logger.exception("Engagement recompute failed", user_id=user_id)
        else:
            succeeded += 1

    summary = {
        "clients": len(user_ids),
        "succeeded": succeeded,
        "failed": failed,
        "duration_seconds": round(time.perf_counter() - started_at, 3),
    }
    logger.bind(summary=summary).info("Engagement score refresh finished")
    return summary


async def run_property_interest_rollup(
    *,
    session_factory: SessionFactory | None = None,
    now: datetime | None = None,
) -> Dict[str, Any]:
    factory = session_factory or async_session
    async with await _ensure_session(factory) as session:
        summary = await PropertyInterestTracker(session).run_hourly(now=now)
    logger.bind(summary=summary).info("Property interest rollup finished")
    return summary


__all__ = ["run_engagement_scores", "run_property_interest_rollup"]
