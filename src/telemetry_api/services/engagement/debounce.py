"""Debounced engagement recomputation triggered by ingestion."""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Protocol

from loguru import logger
from redis.asyncio import Redis
from redis.exceptions import RedisError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from telemetry_api.core.settings import Settings, settings as default_settings
from telemetry_api.models import AgentClientRelationship, RelationshipStatusEnum

from .scorer import EngagementScorer

SessionFactory = Callable[[], AsyncSession] | Callable[[], Awaitable[AsyncSession]]


class OneOffScheduler(Protocol):
    def schedule_once(
        self,
        job_id: str,
        func: Callable[..., Awaitable[Any]],
        *,
        delay_seconds: float = 0,
        kwargs: dict[str, Any] | None = None,
    ) -> bool: ...


def marker_key(user_id: int) -> str:
    return f"engagement:recalc:{user_id}"


def job_id(user_id: int) -> str:
    return f"engagement-recompute:{user_id}"


class EngagementRecomputeDebouncer:
    """Collapses bursts of engagement-relevant events into one delayed recompute.

    ``SET NX EX`` on the marker key is the check-and-set: only the caller
    that creates the marker schedules the job, and the job clears it.
    """

    def __init__(
        self,
        *,
        redis_client: Redis,
        scheduler: OneOffScheduler,
        session_factory: SessionFactory,
        settings: Settings | None = None,
    ) -> None:
        self._redis = redis_client
        self._scheduler = scheduler
        self._session_factory = session_factory
        self._settings = settings or default_settings
        self._logger = logger.bind(component="engagement_debounce")

    @property
    def delay_seconds(self) -> int:
        return self._settings.engagement_debounce_seconds

    async def _ensure_session(self) -> AsyncSession:
        maybe_session = self._session_factory()
        if isinstance(maybe_session, AsyncSession):
            return maybe_session
        return await maybe_session

    async def has_active_relationship(self, user_id: int) -> bool:
        async with await self._ensure_session() as session:
            result = await session.execute(
                select(AgentClientRelationship.id)
                .where(
                    AgentClientRelationship.client_id == user_id,
                    AgentClientRelationship.relationship_status == RelationshipStatusEnum.ACTIVE.value,
                )
                .limit(1)
            )
            return result.scalar_one_or_none() is not None

    async def trigger(self, user_id: int) -> bool:
        """Schedule a recompute unless one is already pending; True when scheduled."""

        if not await self.has_active_relationship(user_id):
            return False

        try:
            acquired = await self._redis.set(marker_key(user_id), "1", nx=True, ex=self.delay_seconds)
        except RedisError as exc:
            self._logger.warning("Debounce marker unavailable; skipping recompute", user_id=user_id, error=str(exc))
            return False
        if not acquired:
            return False

        scheduled = self._scheduler.schedule_once(
            job_id(user_id),
            self.recompute,
            delay_seconds=self.delay_seconds,
            kwargs={"user_id": user_id},
        )
        if not scheduled:
            await self._clear_marker(user_id)
        return bool(scheduled)

    async def recompute(self, user_id: int) -> None:
        try:
            async with await self._ensure_session() as session:
                row = await EngagementScorer(session, settings=self._settings).recompute(user_id)
                self._logger.info("Debounced engagement recompute finished", user_id=user_id, score=row.score)
        except Exception:  # pragma: no cover - defensive logging
            self._logger.exception("Debounced engagement recompute failed", user_id=user_id)
        finally:
            await self._clear_marker(user_id)

    async def _clear_marker(self, user_id: int) -> None:
        try:
            await self._redis.delete(marker_key(user_id))
        except RedisError as exc:
            self._logger.warning("Failed to clear debounce marker", user_id=user_id, error=str(exc))


__all__ = ["EngagementRecomputeDebouncer", "job_id", "marker_key"]
