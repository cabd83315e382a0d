"""Client engagement scoring from visitor telemetry."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from loguru import logger
from sqlalchemy import and_, distinct, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from telemetry_api.core.clock import ensure_utc, utcnow
from telemetry_api.core.settings import Settings, settings as default_settings
from telemetry_api.models import (
    AgentClientRelationship,
    EngagementScore,
    RelationshipStatusEnum,
    ScoreTrendEnum,
    VisitorEvent,
    VisitorSession,
)
from telemetry_api.services.tracking.event_store import session_duration_seconds

MAX_SCORE = 100.0
WEIGHT_TIME = 25.0
WEIGHT_VIEWS = 25.0
WEIGHT_SEARCH = 20.0
WEIGHT_INTENT = 20.0
WEIGHT_FREQUENCY = 10.0
NO_ACTIVITY_DAYS = 999
SORTABLE_FIELDS = ("score", "last_activity_at", "days_since_activity", "trend_change")

SEARCH_TYPES = ("search", "search_execute")
SHOWING_TYPES = ("schedule_click", "schedule_showing_click")


@dataclass
class EngagementInputs:
    """Raw activity figures for one user over the scoring window."""

    session_count: int = 0
    total_duration_seconds: int = 0
    detail_time_seconds: int = 0
    unique_properties: int = 0
    photo_views: int = 0
    calculator_uses: int = 0
    school_views: int = 0
    searches: int = 0
    filters: int = 0
    saved_searches: int = 0
    favorites: int = 0
    contact_clicks: int = 0
    showing_requests: int = 0
    recent_sessions_7d: int = 0
    last_activity_at: datetime | None = None
    days_since_activity: int = NO_ACTIVITY_DAYS


@dataclass
class EngagementComponents:
    time_score: float = 0.0
    view_score: float = 0.0
    search_score: float = 0.0
    intent_score: float = 0.0
    frequency_score: float = 0.0
    raw_data: dict[str, Any] = field(default_factory=dict)

    @property
    def base_score(self) -> float:
        return self.time_score + self.view_score + self.search_score + self.intent_score + self.frequency_score


def time_score(session_seconds: int, detail_seconds: int) -> float:
    session_points = min(session_seconds / 60 * 0.5, 15)
    detail_points = min(detail_seconds / 60, 10)
    return min(session_points + detail_points, WEIGHT_TIME)


def view_score(unique_properties: int, photo_views: int, calculator_uses: int, school_views: int) -> float:
    points = (
        min(unique_properties * 2, 20)
        + min(photo_views * 0.1, 5)
        + min(calculator_uses, 1) * 3
        + min(school_views, 1) * 2
    )
    return min(points, WEIGHT_VIEWS)


def search_score(searches: int, filters: int, saved_searches: int) -> float:
    points = min(searches * 3, 15) + min(filters * 0.5, 5) + min(saved_searches * 5, 10)
    return min(points, WEIGHT_SEARCH)


def intent_score(favorites: int, contact_clicks: int, showing_requests: int) -> float:
    points = min(favorites * 4, 16) + min(contact_clicks * 5, 15) + min(showing_requests, 1) * 10
    return min(points, WEIGHT_INTENT)


def frequency_score(recent_sessions: int, days_since_activity: int) -> float:
    points = float(min(recent_sessions * 2, 10))
    if days_since_activity > 7:
        points *= 0.5
    return min(points, WEIGHT_FREQUENCY)


def apply_recency_decay(base_score: float, days_since_activity: int, decay_rate: float = 0.95) -> float:
    if days_since_activity <= 0:
        return base_score
    return base_score * math.pow(decay_rate, days_since_activity)


def score_trend(new_score: float, old_score: float | None, threshold: float = 2.0) -> tuple[str, float]:
    """Classify the move from ``old_score``; no prior score is a stable zero change."""

    if old_score is None:
        return ScoreTrendEnum.STABLE.value, 0.0
    change = new_score - old_score
    if change > threshold:
        return ScoreTrendEnum.RISING.value, round(change, 2)
    if change < -threshold:
        return ScoreTrendEnum.FALLING.value, round(change, 2)
    return ScoreTrendEnum.STABLE.value, round(change, 2)


def compute_components(inputs: EngagementInputs) -> EngagementComponents:
    return EngagementComponents(
        time_score=time_score(inputs.total_duration_seconds, inputs.detail_time_seconds),
        view_score=view_score(
            inputs.unique_properties, inputs.photo_views, inputs.calculator_uses, inputs.school_views
        ),
        search_score=search_score(inputs.searches, inputs.filters, inputs.saved_searches),
        intent_score=intent_score(inputs.favorites, inputs.contact_clicks, inputs.showing_requests),
        frequency_score=frequency_score(inputs.recent_sessions_7d, inputs.days_since_activity),
        raw_data={
            "session_count": inputs.session_count,
            "total_duration_seconds": inputs.total_duration_seconds,
            "properties_viewed": inputs.unique_properties,
            "searches_run": inputs.searches,
            "favorites_count": inputs.favorites,
            "recent_sessions_7d": inputs.recent_sessions_7d,
        },
    )


def serialize_score(row: EngagementScore) -> dict[str, Any]:
    return {
        "user_id": row.user_id,
        "agent_id": row.agent_id,
        "score": row.score,
        "base_score": row.base_score,
        "score_trend": row.score_trend,
        "trend_change": row.trend_change,
        "last_activity_at": ensure_utc(row.last_activity_at).isoformat() if row.last_activity_at else None,
        "days_since_activity": row.days_since_activity,
        "time_score": row.time_score,
        "view_score": row.view_score,
        "search_score": row.search_score,
        "intent_score": row.intent_score,
        "frequency_score": row.frequency_score,
        "raw_data": row.raw_data or {},
        "calculated_at": ensure_utc(row.calculated_at).isoformat() if row.calculated_at else None,
    }


class EngagementScorer:
    """Computes and stores 0-100 engagement scores for logged-in clients."""

    def __init__(self, session: AsyncSession, *, settings: Settings | None = None) -> None:
        self._session = session
        self._settings = settings or default_settings
        self._logger = logger.bind(component="engagement_scorer")

    async def gather_inputs(self, user_id: int, *, now: datetime | None = None) -> EngagementInputs:
        now = now or utcnow()
        threshold = now - timedelta(days=self._settings.engagement_window_days)
        dialect = self._session.get_bind().dialect.name
        inputs = EngagementInputs()

        session_row = (
            await self._session.execute(
                select(func.count(), func.sum(session_duration_seconds(dialect)))
                .select_from(VisitorSession)
                .where(
                    VisitorSession.user_id == user_id,
                    VisitorSession.first_seen >= threshold,
                )
            )
        ).one()
        inputs.session_count = int(session_row[0] or 0)
        inputs.total_duration_seconds = int(session_row[1] or 0)

        inputs.recent_sessions_7d = int(
            (
                await self._session.execute(
                    select(func.count())
                    .select_from(VisitorSession)
                    .where(
                        VisitorSession.user_id == user_id,
                        VisitorSession.first_seen >= now - timedelta(days=7),
                    )
                )
            ).scalar_one()
            or 0
        )

        user_events = and_(
            VisitorEvent.session_id == VisitorSession.session_id,
            VisitorSession.user_id == user_id,
        )
        windowed = and_(user_events, VisitorEvent.created_at >= threshold)

        counts_result = await self._session.execute(
            select(VisitorEvent.event_type, func.count())
            .select_from(VisitorEvent)
            .join(VisitorSession, user_events)
            .where(VisitorEvent.created_at >= threshold)
            .group_by(VisitorEvent.event_type)
        )
        counts = {event_type: int(total) for event_type, total in counts_result.all()}
        inputs.photo_views = counts.get("photo_view", 0)
        inputs.calculator_uses = counts.get("calculator_use", 0)
        inputs.school_views = counts.get("school_info_view", 0)
        inputs.searches = sum(counts.get(name, 0) for name in SEARCH_TYPES)
        inputs.filters = counts.get("filter_apply", 0)
        inputs.saved_searches = counts.get("search_save", 0)
        inputs.favorites = counts.get("favorite_add", 0)
        inputs.contact_clicks = counts.get("contact_click", 0)
        inputs.showing_requests = sum(counts.get(name, 0) for name in SHOWING_TYPES)

        inputs.unique_properties = int(
            (
                await self._session.execute(
                    select(func.count(distinct(VisitorEvent.listing_id)))
                    .select_from(VisitorEvent)
                    .join(VisitorSession, windowed)
                    .where(VisitorEvent.event_type == "property_view", VisitorEvent.listing_id.is_not(None))
                )
            ).scalar_one()
            or 0
        )
        inputs.detail_time_seconds = int(
            (
                await self._session.execute(
                    select(func.sum(VisitorEvent.time_on_page))
                    .select_from(VisitorEvent)
                    .join(VisitorSession, windowed)
                    .where(VisitorEvent.event_type == "time_on_page", VisitorEvent.listing_id.is_not(None))
                )
            ).scalar_one()
            or 0
        )

        last_event = (
            await self._session.execute(
                select(func.max(VisitorEvent.created_at)).select_from(VisitorEvent).join(VisitorSession, user_events)
            )
        ).scalar_one()
        if last_event is None:
            last_event = (
                await self._session.execute(
                    select(func.max(VisitorSession.last_seen)).where(VisitorSession.user_id == user_id)
                )
            ).scalar_one()
        if last_event is not None:
            inputs.last_activity_at = ensure_utc(last_event)
            inputs.days_since_activity = max(int((now - inputs.last_activity_at).total_seconds() // 86400), 0)
        return inputs

    async def active_agent_id(self, user_id: int) -> int | None:
        result = await self._session.execute(
            select(AgentClientRelationship.agent_id)
            .where(
                AgentClientRelationship.client_id == user_id,
                AgentClientRelationship.relationship_status == RelationshipStatusEnum.ACTIVE.value,
            )
            .order_by(AgentClientRelationship.id.asc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def recompute(self, user_id: int, *, now: datetime | None = None) -> EngagementScore:
        """Recalculate and replace the stored score for ``user_id``."""

        now = now or utcnow()
        inputs = await self.gather_inputs(user_id, now=now)
        components = compute_components(inputs)
        base = components.base_score
        final = apply_recency_decay(base, inputs.days_since_activity, self._settings.engagement_decay_rate)
        final = round(min(max(final, 0.0), MAX_SCORE), 2)

        existing = await self._session.get(EngagementScore, user_id)
        trend, change = score_trend(
            final,
            float(existing.score) if existing is not None else None,
            self._settings.engagement_trend_threshold,
        )

        values = {
            "agent_id": await self.active_agent_id(user_id),
            "score": final,
            "base_score": round(base, 2),
            "score_trend": trend,
            "trend_change": change,
            "last_activity_at": inputs.last_activity_at,
            "days_since_activity": inputs.days_since_activity,
            "time_score": round(components.time_score, 2),
            "view_score": round(components.view_score, 2),
            "search_score": round(components.search_score, 2),
            "intent_score": round(components.intent_score, 2),
            "frequency_score": round(components.frequency_score, 2),
            "raw_data": components.raw_data,
            "calculated_at": now,
        }
        if existing is None:
            row = EngagementScore(user_id=user_id, **values)
            self._session.add(row)
        else:
            row = existing
            for key, value in values.items():
                setattr(row, key, value)

        await self._session.commit()
        self._logger.debug("Engagement score recomputed", user_id=user_id, score=final, trend=trend)
        return row

    async def get_score(self, user_id: int, *, calculate_if_missing: bool = True) -> dict[str, Any] | None:
        row = await self._session.get(EngagementScore, user_id)
        if row is None:
            if not calculate_if_missing:
                return None
            row = await self.recompute(user_id)
        return serialize_score(row)

    async def get_agent_client_scores(
        self,
        agent_id: int,
        *,
        sort_by: str = "score",
        order: str = "desc",
    ) -> list[dict[str, Any]]:
        """Active clients of ``agent_id`` with their scores; unscored clients sort last."""

        sort_by = sort_by if sort_by in SORTABLE_FIELDS else "score"
        column = getattr(EngagementScore, sort_by)
        direction = column.asc() if str(order).lower() == "asc" else column.desc()

        result = await self._session.execute(
            select(AgentClientRelationship, EngagementScore)
            .outerjoin(EngagementScore, AgentClientRelationship.client_id == EngagementScore.user_id)
            .where(
                AgentClientRelationship.agent_id == agent_id,
                AgentClientRelationship.relationship_status == RelationshipStatusEnum.ACTIVE.value,
            )
            .order_by(column.is_(None), direction, AgentClientRelationship.client_id.asc())
        )

        clients = []
        for relationship, score in result.all():
            payload: dict[str, Any] = serialize_score(score) if score is not None else {"score": None}
            payload.update(
                {
                    "client_id": relationship.client_id,
                    "client_name": relationship.client_name,
                    "client_email": relationship.client_email,
                }
            )
            clients.append(payload)
        return clients

    async def clients_needing_calculation(self, days: int | None = None, *, now: datetime | None = None) -> list[int]:
        threshold = (now or utcnow()) - timedelta(days=days or self._settings.engagement_window_days)
        result = await self._session.execute(
            select(VisitorSession.user_id)
            .distinct()
            .join(AgentClientRelationship, AgentClientRelationship.client_id == VisitorSession.user_id)
            .where(
                VisitorSession.user_id.is_not(None),
                VisitorSession.first_seen >= threshold,
                AgentClientRelationship.relationship_status == RelationshipStatusEnum.ACTIVE.value,
            )
            .order_by(VisitorSession.user_id.asc())
        )
        return [int(user_id) for user_id in result.scalars().all()]


__all__ = [
    "EngagementComponents",
    "EngagementInputs",
    "EngagementScorer",
    "apply_recency_decay",
    "compute_components",
    "frequency_score",
    "intent_score",
    "score_trend",
    "search_score",
    "serialize_score",
    "time_score",
    "view_score",
]
