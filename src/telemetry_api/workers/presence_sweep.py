"""Interval worker that prunes stale presence rows."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Dict

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from telemetry_api.core.settings import settings
from telemetry_api.services.analytics.aggregator import AnalyticsAggregator

SessionFactory = Callable[[], Awaitable[AsyncSession]] | Callable[[], AsyncSession]


class PresenceSweepWorker:
    """Runs the presence sweep on a fixed interval when cron scheduling is off."""

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        interval_seconds: int | None = None,
        aggregator: AnalyticsAggregator | None = None,
    ) -> None:
        self._aggregator = aggregator or AnalyticsAggregator(session_factory)
        self.interval_seconds = interval_seconds or settings.presence_sweep_interval_seconds
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None
        self.is_running: bool = False
        self._logger = logger.bind(component="presence_sweep_worker")

    def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop())
        self.is_running = True
        self._logger.info("Presence sweep worker started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        if not self._task:
            return
        self._stop_event.set()
        await self._task
        self._task = None
        self.is_running = False
        self._logger.info("Presence sweep worker stopped")

    async def run_once(self) -> Dict[str, int]:
        deleted = await self._aggregator.sweep_presence()
        return {"deleted": deleted}

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except Exception as exc:  # pragma: no cover - defensive logging
                self._logger.exception("Presence sweep failed", error=str(exc))
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue

    def health(self) -> Dict[str, object]:
        return {"running": self.is_running, "interval_seconds": self.interval_seconds}


__all__ = ["PresenceSweepWorker"]
