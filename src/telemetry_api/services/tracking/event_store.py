"""Persistence for raw telemetry: sessions, events and presence."""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import date, datetime, timedelta
from typing import Any, Mapping, Sequence

from loguru import logger
from sqlalchemy import and_, case, delete, exists, false, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased
from sqlalchemy.sql.elements import ColumnElement

from telemetry_api.core.clock import ensure_utc, utcnow
from telemetry_api.core.settings import settings
from telemetry_api.models import (
    WEB_PLATFORMS,
    DailyAggregate,
    HourlyAggregate,
    PlatformEnum,
    PresenceRecord,
    VisitorEvent,
    VisitorSession,
)
from telemetry_api.services.analytics.breakdowns import normalize_source_name

DEFAULT_ACTIVITY_LIMIT = 50
DEFAULT_ACTIVITY_LOOKBACK = timedelta(days=7)


@dataclass
class SessionUpsert:
    """Values merged into ``visitor_sessions`` for one ingestion request.

    Counter fields are deltas. Descriptive fields only land on insert;
    an existing row keeps what its first request recorded.
    """

    session_id: str
    platform: str = PlatformEnum.WEB_DESKTOP.value
    visitor_hash: str | None = None
    user_id: int | None = None
    ip_address: str | None = None
    country_code: str | None = None
    country_name: str | None = None
    region: str | None = None
    city: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    referrer_url: str | None = None
    referrer_domain: str | None = None
    utm_source: str | None = None
    utm_medium: str | None = None
    utm_campaign: str | None = None
    utm_term: str | None = None
    utm_content: str | None = None
    device_type: str | None = None
    browser: str | None = None
    browser_version: str | None = None
    os: str | None = None
    os_version: str | None = None
    screen_width: int | None = None
    screen_height: int | None = None
    page_views: int = 0
    property_views: int = 0
    searches: int = 0
    is_bot: bool = False


@dataclass
class PresenceUpdate:
    session_id: str
    platform: str = PlatformEnum.WEB_DESKTOP.value
    user_id: int | None = None
    current_page: str | None = None
    current_page_type: str | None = None
    current_listing_id: str | None = None
    device_type: str | None = None
    country_code: str | None = None
    city: str | None = None


@dataclass
class ActivityFilters:
    start: datetime | None = None
    end: datetime | None = None
    platform: str | None = None
    logged_in_only: bool = False
    event_types: list[str] = field(default_factory=list)
    limit: int = DEFAULT_ACTIVITY_LIMIT
    offset: int = 0

    @staticmethod
    def parse_event_types(raw: str | None) -> list[str]:
        if not raw:
            return []
        return [item.strip() for item in raw.split(",") if item.strip()]


def platform_filter(column: Any, platform: str | None) -> ColumnElement[bool] | None:
    """``web`` matches every web platform, ``ios`` the app; exact values match themselves."""

    if not platform:
        return None
    if platform == "web":
        return column.in_(WEB_PLATFORMS)
    if platform == "ios":
        return column == PlatformEnum.IOS_APP.value
    if platform in {item.value for item in PlatformEnum}:
        return column == platform
    return None


def session_duration_seconds(dialect_name: str) -> ColumnElement[Any]:
    """SQL expression for ``last_seen - first_seen`` in seconds on the active dialect."""

    if dialect_name == "sqlite":
        return (func.julianday(VisitorSession.last_seen) - func.julianday(VisitorSession.first_seen)) * 86400.0
    return func.extract("epoch", VisitorSession.last_seen - VisitorSession.first_seen)


def _isoformat(value: datetime | None) -> str | None:
    return ensure_utc(value).isoformat() if value is not None else None


def serialize_event(event: VisitorEvent) -> dict[str, Any]:
    return {
        "id": event.id,
        "session_id": event.session_id,
        "event_type": event.event_type,
        "event_category": event.event_category,
        "platform": event.platform,
        "page_url": event.page_url,
        "page_path": event.page_path,
        "page_title": event.page_title,
        "page_type": event.page_type,
        "listing_id": event.listing_id,
        "property_city": event.property_city,
        "property_price": event.property_price,
        "property_beds": event.property_beds,
        "property_baths": event.property_baths,
        "search_query": event.search_query,
        "search_results_count": event.search_results_count,
        "scroll_depth": event.scroll_depth,
        "time_on_page": event.time_on_page,
        "event_timestamp": _isoformat(event.event_timestamp),
        "created_at": _isoformat(event.created_at),
    }


def serialize_session(session: VisitorSession) -> dict[str, Any]:
    payload = {column.name: getattr(session, column.name) for column in VisitorSession.__table__.columns}
    for key in ("first_seen", "last_seen", "created_at"):
        payload[key] = _isoformat(payload[key])
    for key in ("latitude", "longitude"):
        if payload[key] is not None:
            payload[key] = float(payload[key])
    payload["duration_seconds"] = int(
        (ensure_utc(session.last_seen) - ensure_utc(session.first_seen)).total_seconds()
    )
    payload["source_name"] = normalize_source_name(session.referrer_domain or session.utm_source)
    return payload


class EventStore:
    """Async data access for the raw telemetry tables."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session
        self._logger = logger.bind(component="event_store")

    @property
    def session(self) -> AsyncSession:
        return self._session

    async def get_session(self, session_id: str) -> VisitorSession | None:
        result = await self._session.execute(select(VisitorSession).where(VisitorSession.session_id == session_id))
        return result.scalar_one_or_none()

    async def upsert_session(self, data: SessionUpsert, *, now: datetime | None = None) -> None:
        """Merge counters into an existing session or create it."""

        now = now or utcnow()
        if await self._update_session(data, now):
            return

        values = {item.name: getattr(data, item.name) for item in fields(SessionUpsert)}
        row = VisitorSession(
            **values,
            first_seen=now,
            last_seen=now,
            created_at=now,
            is_bounce=data.page_views <= 1,
        )
        try:
            async with self._session.begin_nested():
                self._session.add(row)
        except IntegrityError:
            # A concurrent request created the row first; fold our deltas into it.
            self._logger.debug("Session insert raced; applying update", session_id=data.session_id)
            if not await self._update_session(data, now):
                raise

    async def _update_session(self, data: SessionUpsert, now: datetime) -> bool:
        page_views = VisitorSession.page_views + data.page_views
        stmt = (
            update(VisitorSession)
            .where(VisitorSession.session_id == data.session_id)
            .values(
                page_views=page_views,
                property_views=VisitorSession.property_views + data.property_views,
                searches=VisitorSession.searches + data.searches,
                is_bounce=case((page_views > 1, false()), else_=VisitorSession.is_bounce),
                user_id=func.coalesce(VisitorSession.user_id, data.user_id),
                last_seen=case((VisitorSession.last_seen < now, now), else_=VisitorSession.last_seen),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return (result.rowcount or 0) > 0

    async def insert_event(self, values: Mapping[str, Any]) -> VisitorEvent:
        event = VisitorEvent(**values)
        self._session.add(event)
        await self._session.flush()
        return event

    async def insert_events(self, rows: Sequence[Mapping[str, Any]]) -> int:
        if not rows:
            return 0
        self._session.add_all([VisitorEvent(**row) for row in rows])
        await self._session.flush()
        return len(rows)

    def _dialect_insert(self):
        dialect = self._session.get_bind().dialect.name
        return sqlite_insert if dialect == "sqlite" else pg_insert

    async def update_presence(self, data: PresenceUpdate, *, now: datetime | None = None) -> None:
        """Replace the presence row for the session."""

        values = {item.name: getattr(data, item.name) for item in fields(PresenceUpdate)}
        values["last_heartbeat"] = now or utcnow()
        insert = self._dialect_insert()
        stmt = insert(PresenceRecord).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[PresenceRecord.session_id],
            set_={key: value for key, value in values.items() if key != "session_id"},
        )
        await self._session.execute(stmt)

    async def remove_presence(self, session_id: str) -> int:
        result = await self._session.execute(delete(PresenceRecord).where(PresenceRecord.session_id == session_id))
        return result.rowcount or 0

    async def get_active_count(
        self,
        window_seconds: int | None = None,
        *,
        now: datetime | None = None,
    ) -> int:
        """Sessions heartbeated within the window, which defaults to the presence stale threshold."""

        if window_seconds is None:
            window_seconds = settings.presence_stale_seconds
        threshold = (now or utcnow()) - timedelta(seconds=window_seconds)
        result = await self._session.execute(
            select(func.count()).select_from(PresenceRecord).where(PresenceRecord.last_heartbeat >= threshold)
        )
        return int(result.scalar_one() or 0)

    async def get_activity_stream(self, filters: ActivityFilters, *, now: datetime | None = None) -> dict[str, Any]:
        now = now or utcnow()
        end = filters.end or now
        start = filters.start or end - DEFAULT_ACTIVITY_LOOKBACK
        limit = max(1, filters.limit)
        offset = max(0, filters.offset)

        conditions: list[ColumnElement[bool]] = [
            VisitorEvent.created_at >= start,
            VisitorEvent.created_at <= end,
        ]
        platform_clause = platform_filter(VisitorEvent.platform, filters.platform)
        if platform_clause is not None:
            conditions.append(platform_clause)
        if filters.logged_in_only:
            conditions.append(and_(VisitorSession.user_id.is_not(None), VisitorSession.user_id > 0))
        if filters.event_types:
            conditions.append(VisitorEvent.event_type.in_(filters.event_types))

        joined = VisitorEvent.__table__.outerjoin(
            VisitorSession.__table__,
            VisitorEvent.session_id == VisitorSession.session_id,
        )
        count_stmt = select(func.count()).select_from(joined).where(*conditions)
        total = int((await self._session.execute(count_stmt)).scalar_one() or 0)

        other = aliased(VisitorSession)
        is_returning = (
            exists()
            .where(
                other.visitor_hash == VisitorSession.visitor_hash,
                other.session_id != VisitorSession.session_id,
            )
            .label("is_returning")
        )
        stmt = (
            select(VisitorEvent, VisitorSession, is_returning)
            .outerjoin(VisitorSession, VisitorEvent.session_id == VisitorSession.session_id)
            .where(*conditions)
            .order_by(VisitorEvent.event_timestamp.desc(), VisitorEvent.id.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self._session.execute(stmt)

        events: list[dict[str, Any]] = []
        for event, visitor, returning in result.all():
            payload = serialize_event(event)
            payload.update(
                {
                    "user_id": visitor.user_id if visitor else None,
                    "visitor_hash": visitor.visitor_hash if visitor else None,
                    "referrer_domain": visitor.referrer_domain if visitor else None,
                    "utm_source": visitor.utm_source if visitor else None,
                    "utm_medium": visitor.utm_medium if visitor else None,
                    "utm_campaign": visitor.utm_campaign if visitor else None,
                    "visitor_city": visitor.city if visitor else None,
                    "visitor_region": visitor.region if visitor else None,
                    "visitor_country": visitor.country_code if visitor else None,
                    "device_type": visitor.device_type if visitor else None,
                    "browser": visitor.browser if visitor else None,
                    "os": visitor.os if visitor else None,
                    "session_page_views": visitor.page_views if visitor else None,
                    "session_start": _isoformat(visitor.first_seen) if visitor else None,
                    "is_returning": bool(returning),
                    "source_name": normalize_source_name(
                        (visitor.referrer_domain or visitor.utm_source) if visitor else None
                    ),
                }
            )
            events.append(payload)

        return {
            "events": events,
            "total": total,
            "has_more": offset + len(events) < total,
            "page": offset // limit + 1,
            "per_page": limit,
        }

    async def get_session_journey(self, session_id: str) -> tuple[VisitorSession | None, list[VisitorEvent]]:
        visitor = await self.get_session(session_id)
        if visitor is None:
            return None, []
        result = await self._session.execute(
            select(VisitorEvent)
            .where(VisitorEvent.session_id == session_id)
            .order_by(VisitorEvent.event_timestamp.asc(), VisitorEvent.id.asc())
        )
        return visitor, list(result.scalars().all())

    async def hourly_rows(self, start: datetime, end: datetime) -> list[HourlyAggregate]:
        result = await self._session.execute(
            select(HourlyAggregate)
            .where(HourlyAggregate.hour_start >= start, HourlyAggregate.hour_start < end)
            .order_by(HourlyAggregate.hour_start.asc())
        )
        return list(result.scalars().all())

    async def daily_rows(self, start: date, end: date) -> list[DailyAggregate]:
        """Daily rows with ``start <= bucket_date <= end``."""

        result = await self._session.execute(
            select(DailyAggregate)
            .where(DailyAggregate.bucket_date >= start, DailyAggregate.bucket_date <= end)
            .order_by(DailyAggregate.bucket_date.asc())
        )
        return list(result.scalars().all())

    async def hourly_exists(self, hour_start: datetime) -> bool:
        result = await self._session.execute(
            select(HourlyAggregate.id).where(HourlyAggregate.hour_start == hour_start).limit(1)
        )
        return result.scalar_one_or_none() is not None

    async def daily_exists(self, bucket_date: date) -> bool:
        result = await self._session.execute(
            select(DailyAggregate.id).where(DailyAggregate.bucket_date == bucket_date).limit(1)
        )
        return result.scalar_one_or_none() is not None


__all__ = [
    "ActivityFilters",
    "EventStore",
    "PresenceUpdate",
    "SessionUpsert",
    "platform_filter",
    "session_duration_seconds",
    "serialize_event",
    "serialize_session",
]
