"""Read models behind the admin analytics dashboard."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import case, distinct, false, func, select, true
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql.elements import ColumnElement

from telemetry_api.core.clock import ensure_utc, utcnow
from telemetry_api.core.settings import Settings, settings as default_settings
from telemetry_api.models import (
    DailyAggregate,
    HourlyAggregate,
    PlatformEnum,
    PresenceRecord,
    VisitorEvent,
    VisitorSession,
)
from telemetry_api.services.tracking.event_store import (
    ActivityFilters,
    EventStore,
    platform_filter,
    serialize_event,
    serialize_session,
    session_duration_seconds,
)
from telemetry_api.services.tracking.sanitize import SEARCH_EVENT_TYPES

from .breakdowns import (
    merge_searches_by_summary,
    normalize_source_name,
    percentage_change,
    previous_window,
    resolve_range,
)
from .listings import ListingLookup, NullListingLookup

GRANULARITY_HOUR = "hour"
GRANULARITY_DAY = "day"
REALTIME_STREAM_LIMIT = 30
REALTIME_STREAM_WINDOW = timedelta(minutes=5)
DEVICE_TYPES = ("desktop", "mobile", "tablet")


def _int(value: Any) -> int:
    return int(value or 0)


def _hour_label(value: datetime) -> str:
    hour = value.hour % 12 or 12
    return f"{hour}:{value:%M} {'AM' if value.hour < 12 else 'PM'}"


def _day_label(value: datetime) -> str:
    return f"{value:%b} {value.day}"


def default_granularity(range_key: str | None) -> str:
    return GRANULARITY_HOUR if range_key in ("today", "24h") else GRANULARITY_DAY


class DashboardService:
    """Admin dashboard queries over aggregates with raw-table fallbacks."""

    def __init__(
        self,
        session: AsyncSession,
        *,
        listing_lookup: ListingLookup | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._session = session
        self._store = EventStore(session)
        self._listings = listing_lookup or NullListingLookup()
        self._settings = settings or default_settings

    @property
    def _dialect(self) -> str:
        return self._session.get_bind().dialect.name

    async def get_realtime(self, *, now: datetime | None = None) -> dict[str, Any]:
        now = now or utcnow()
        threshold = now - timedelta(seconds=self._settings.presence_stale_seconds)
        active = PresenceRecord.last_heartbeat >= threshold

        by_platform = await self._presence_counts(PresenceRecord.platform, active)
        by_page_type = await self._presence_counts(
            PresenceRecord.current_page_type,
            active,
            PresenceRecord.current_page_type.is_not(None),
        )
        by_device = await self._presence_counts(PresenceRecord.device_type, active)

        count = func.count().label("count")
        countries = await self._session.execute(
            select(PresenceRecord.country_code, count)
            .where(active, PresenceRecord.country_code.is_not(None))
            .group_by(PresenceRecord.country_code)
            .order_by(count.desc())
            .limit(10)
        )

        stream = await self._session.execute(
            select(VisitorEvent, VisitorSession)
            .outerjoin(VisitorSession, VisitorEvent.session_id == VisitorSession.session_id)
            .where(VisitorEvent.created_at >= now - REALTIME_STREAM_WINDOW)
            .order_by(VisitorEvent.created_at.desc(), VisitorEvent.id.desc())
            .limit(REALTIME_STREAM_LIMIT)
        )
        activity = []
        for event, visitor in stream.all():
            payload = serialize_event(event)
            payload.update(
                {
                    "visitor_city": visitor.city if visitor else None,
                    "visitor_country": visitor.country_code if visitor else None,
                    "device_type": visitor.device_type if visitor else None,
                    "browser": visitor.browser if visitor else None,
                }
            )
            activity.append(payload)

        total = sum(by_platform.values())
        return {
            "total": total,
            "web": sum(count for platform, count in by_platform.items() if platform.startswith("web")),
            "ios_app": by_platform.get(PlatformEnum.IOS_APP.value, 0),
            "by_platform": by_platform,
            "by_page_type": by_page_type,
            "by_device": by_device,
            "by_country": [{"country_code": code, "count": _int(value)} for code, value in countries.all()],
            "activity_stream": activity,
            "timestamp": now.isoformat(),
        }

    async def _presence_counts(self, column: Any, *conditions: ColumnElement[bool]) -> dict[str, int]:
        result = await self._session.execute(select(column, func.count()).where(*conditions).group_by(column))
        return {str(key) if key is not None else "unknown": _int(value) for key, value in result.all()}

    async def get_stats(
        self,
        range_key: str | None = None,
        *,
        platform: str | None = None,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        start, end = resolve_range(range_key, now=now)
        stats: dict[str, Any] | None = None
        source = "aggregates"
        if not platform:
            stats = await self._daily_totals(start, end)
        if not stats or not stats["total_sessions"]:
            stats = await self._raw_totals(start, end, platform)
            source = "raw"

        prev_start, prev_end = previous_window(start, end)
        previous = await self._raw_totals(prev_start, prev_end, platform)

        return {
            "total_sessions": stats["total_sessions"],
            "total_pageviews": stats["total_pageviews"],
            "total_property_views": stats["total_property_views"],
            "total_searches": stats["total_searches"],
            "avg_bounce_rate": round(stats["avg_bounce_rate"], 1),
            "avg_session_duration": int(stats["avg_session_duration"]),
            "avg_pages_per_session": round(stats["avg_pages_per_session"], 1),
            "sessions_change": percentage_change(previous["total_sessions"], stats["total_sessions"]),
            "pageviews_change": percentage_change(previous["total_pageviews"], stats["total_pageviews"]),
            "property_views_change": percentage_change(
                previous["total_property_views"], stats["total_property_views"]
            ),
            "source": source,
            "start": start.isoformat(),
            "end": end.isoformat(),
        }

    async def _daily_totals(self, start: datetime, end: datetime) -> dict[str, Any]:
        row = (
            await self._session.execute(
                select(
                    func.sum(DailyAggregate.unique_sessions),
                    func.sum(DailyAggregate.page_views),
                    func.sum(DailyAggregate.property_views),
                    func.sum(DailyAggregate.search_count),
                    func.avg(DailyAggregate.bounce_rate),
                    func.avg(DailyAggregate.avg_session_duration),
                    func.avg(DailyAggregate.avg_pages_per_session),
                ).where(DailyAggregate.bucket_date >= start.date(), DailyAggregate.bucket_date <= end.date())
            )
        ).one()
        return self._totals_from_row(row)

    async def _raw_totals(self, start: datetime, end: datetime, platform: str | None) -> dict[str, Any]:
        conditions = [
            VisitorSession.first_seen >= start,
            VisitorSession.first_seen < end,
            VisitorSession.is_bot == false(),
        ]
        clause = platform_filter(VisitorSession.platform, platform)
        if clause is not None:
            conditions.append(clause)
        row = (
            await self._session.execute(
                select(
                    func.count(distinct(VisitorSession.session_id)),
                    func.sum(VisitorSession.page_views),
                    func.sum(VisitorSession.property_views),
                    func.sum(VisitorSession.searches),
                    func.avg(case((VisitorSession.is_bounce == true(), 100.0), else_=0.0)),
                    func.avg(session_duration_seconds(self._dialect)),
                    func.avg(VisitorSession.page_views),
                ).where(*conditions)
            )
        ).one()
        return self._totals_from_row(row)

    @staticmethod
    def _totals_from_row(row: Any) -> dict[str, Any]:
        return {
            "total_sessions": _int(row[0]),
            "total_pageviews": _int(row[1]),
            "total_property_views": _int(row[2]),
            "total_searches": _int(row[3]),
            "avg_bounce_rate": float(row[4] or 0),
            "avg_session_duration": float(row[5] or 0),
            "avg_pages_per_session": float(row[6] or 0),
        }

    async def get_trends(
        self,
        range_key: str | None = None,
        *,
        granularity: str | None = None,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        start, end = resolve_range(range_key, now=now)
        granularity = granularity or default_granularity(range_key)

        points: list[dict[str, Any]] = []
        if granularity == GRANULARITY_HOUR:
            for row in await self._store.hourly_rows(start, end):
                points.append(self._trend_point(ensure_utc(row.hour_start), row))
        else:
            for row in await self._store.daily_rows(start.date(), end.date()):
                bucket = datetime(row.bucket_date.year, row.bucket_date.month, row.bucket_date.day, tzinfo=start.tzinfo)
                points.append(self._trend_point(bucket, row))

        source = "aggregates"
        if not any(point["unique_sessions"] or point["page_views"] for point in points):
            points = await self._raw_trend_points(start, end, granularity)
            source = "raw"

        label = _hour_label if granularity == GRANULARITY_HOUR else _day_label
        return {
            "granularity": granularity,
            "source": source,
            "labels": [label(point["timestamp"]) for point in points],
            "sessions": [point["unique_sessions"] for point in points],
            "page_views": [point["page_views"] for point in points],
            "property_views": [point["property_views"] for point in points],
            "searches": [point["search_count"] for point in points],
            "points": [{**point, "timestamp": point["timestamp"].isoformat()} for point in points],
        }

    @staticmethod
    def _trend_point(timestamp: datetime, row: HourlyAggregate | DailyAggregate) -> dict[str, Any]:
        return {
            "timestamp": timestamp,
            "unique_sessions": _int(row.unique_sessions),
            "page_views": _int(row.page_views),
            "property_views": _int(row.property_views),
            "search_count": _int(row.search_count),
        }

    def _bucket_expression(self, granularity: str) -> Any:
        if self._dialect == "sqlite":
            fmt = "%Y-%m-%d %H:00:00" if granularity == GRANULARITY_HOUR else "%Y-%m-%d 00:00:00"
            return func.strftime(fmt, VisitorEvent.created_at)
        unit = "hour" if granularity == GRANULARITY_HOUR else "day"
        return func.to_char(
            func.date_trunc(unit, func.timezone("UTC", VisitorEvent.created_at)),
            "YYYY-MM-DD HH24:00:00",
        )

    async def _raw_trend_points(self, start: datetime, end: datetime, granularity: str) -> list[dict[str, Any]]:
        bucket = self._bucket_expression(granularity).label("bucket")
        stmt = (
            select(
                bucket,
                func.count(distinct(VisitorEvent.session_id)),
                func.sum(case((VisitorEvent.event_type == "page_view", 1), else_=0)),
                func.sum(case((VisitorEvent.event_type == "property_view", 1), else_=0)),
                func.sum(case((VisitorEvent.event_type.in_(SEARCH_EVENT_TYPES), 1), else_=0)),
            )
            .where(VisitorEvent.created_at >= start, VisitorEvent.created_at < end)
            .group_by(bucket)
            .order_by(bucket.asc())
        )
        result = await self._session.execute(stmt)
        points = []
        for raw_bucket, sessions, page_views, property_views, searches in result.all():
            timestamp = ensure_utc(datetime.strptime(raw_bucket, "%Y-%m-%d %H:%M:%S"))
            points.append(
                {
                    "timestamp": timestamp,
                    "unique_sessions": _int(sessions),
                    "page_views": _int(page_views),
                    "property_views": _int(property_views),
                    "search_count": _int(searches),
                }
            )
        return points

    async def get_activity_stream(
        self,
        range_key: str | None = "15m",
        *,
        platform: str | None = None,
        logged_in_only: bool = False,
        event_type: str | None = None,
        page: int = 1,
        per_page: int = 50,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        start, end = resolve_range(range_key or "15m", now=now)
        page = max(page, 1)
        filters = ActivityFilters(
            start=start,
            end=end,
            platform=platform,
            logged_in_only=logged_in_only,
            event_types=ActivityFilters.parse_event_types(event_type),
            limit=per_page,
            offset=(page - 1) * per_page,
        )
        result = await self._store.get_activity_stream(filters, now=now)
        result.update({"range": range_key, "start": start.isoformat(), "end": end.isoformat()})
        return result

    async def get_session_journey(self, session_id: str) -> dict[str, Any] | None:
        visitor, events = await self._store.get_session_journey(session_id)
        if visitor is None:
            return None
        return {
            "session": serialize_session(visitor),
            "events": [serialize_event(event) for event in events],
        }

    async def get_top_content(
        self,
        range_key: str | None = None,
        *,
        content_type: str = "pages",
        limit: int = 10,
        now: datetime | None = None,
    ) -> list[dict[str, Any]]:
        start, end = resolve_range(range_key, now=now)
        window = (VisitorEvent.created_at >= start, VisitorEvent.created_at < end)
        views = func.count().label("views")
        unique_viewers = func.count(distinct(VisitorEvent.session_id))

        if content_type == "properties":
            result = await self._session.execute(
                select(
                    VisitorEvent.listing_id,
                    views,
                    unique_viewers,
                    func.max(VisitorEvent.property_price),
                    func.max(VisitorEvent.property_city),
                )
                .where(*window, VisitorEvent.event_type == "property_view", VisitorEvent.listing_id.is_not(None))
                .group_by(VisitorEvent.listing_id)
                .order_by(views.desc())
                .limit(limit)
            )
            rows = result.all()
            listings = await self._listings.get_listings([row[0] for row in rows])
            items = []
            for listing_id, total, viewers, price, city in rows:
                listing = listings.get(listing_id)
                items.append(
                    {
                        "listing_id": listing_id,
                        "views": _int(total),
                        "unique_viewers": _int(viewers),
                        "price": price,
                        "property_city": city,
                        "listing": listing.as_dict() if listing else None,
                    }
                )
            return items

        result = await self._session.execute(
            select(
                VisitorEvent.page_path,
                func.max(VisitorEvent.page_title),
                func.max(VisitorEvent.page_type),
                views,
                unique_viewers,
                func.avg(VisitorEvent.time_on_page),
            )
            .where(*window, VisitorEvent.event_type == "page_view", VisitorEvent.page_path.is_not(None))
            .group_by(VisitorEvent.page_path)
            .order_by(views.desc())
            .limit(limit)
        )
        return [
            {
                "page_path": path,
                "page_title": title,
                "page_type": page_type,
                "views": _int(total),
                "unique_viewers": _int(viewers),
                "avg_time_on_page": round(float(avg_time), 1) if avg_time is not None else None,
            }
            for path, title, page_type, total, viewers, avg_time in result.all()
        ]

    async def get_top_searches(
        self,
        range_key: str | None = None,
        *,
        limit: int = 20,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        start, end = resolve_range(range_key, now=now)
        count = func.count().label("count")
        result = await self._session.execute(
            select(VisitorEvent.search_query, count)
            .where(
                VisitorEvent.created_at >= start,
                VisitorEvent.created_at < end,
                VisitorEvent.event_type.in_(SEARCH_EVENT_TYPES),
                VisitorEvent.search_query.is_not(None),
                VisitorEvent.search_query != "",
                VisitorEvent.search_query != "null",
            )
            .group_by(VisitorEvent.search_query)
            .order_by(count.desc())
        )
        searches = merge_searches_by_summary(result.all(), limit)
        return {
            "searches": searches,
            "total": sum(item["count"] for item in searches),
            "start": start.isoformat(),
            "end": end.isoformat(),
        }

    async def get_traffic_sources(
        self,
        range_key: str | None = None,
        *,
        limit: int = 30,
        now: datetime | None = None,
    ) -> list[dict[str, Any]]:
        start, end = resolve_range(range_key, now=now)
        result = await self._session.execute(
            select(
                VisitorSession.referrer_domain,
                VisitorSession.utm_source,
                func.count(),
                func.sum(VisitorSession.page_views),
                func.sum(case((VisitorSession.is_bounce == true(), 1), else_=0)),
            )
            .where(
                VisitorSession.first_seen >= start,
                VisitorSession.first_seen < end,
                VisitorSession.is_bot == false(),
            )
            .group_by(VisitorSession.referrer_domain, VisitorSession.utm_source)
        )
        merged: dict[str, dict[str, int]] = {}
        for domain, utm_source, sessions, page_views, bounces in result.all():
            name = normalize_source_name(domain or utm_source)
            bucket = merged.setdefault(name, {"sessions": 0, "page_views": 0, "bounces": 0})
            bucket["sessions"] += _int(sessions)
            bucket["page_views"] += _int(page_views)
            bucket["bounces"] += _int(bounces)

        ordered = sorted(merged.items(), key=lambda item: item[1]["sessions"], reverse=True)[:limit]
        return [
            {
                "source": name,
                "sessions": values["sessions"],
                "page_views": values["page_views"],
                "bounce_rate": round(values["bounces"] / values["sessions"] * 100, 1) if values["sessions"] else 0.0,
            }
            for name, values in ordered
        ]

    async def get_geographic(
        self,
        range_key: str | None = None,
        *,
        level: str = "city",
        limit: int = 50,
        now: datetime | None = None,
    ) -> list[dict[str, Any]]:
        start, end = resolve_range(range_key, now=now)
        window = (
            VisitorSession.first_seen >= start,
            VisitorSession.first_seen < end,
            VisitorSession.is_bot == false(),
        )
        sessions = func.count().label("sessions")
        page_views = func.sum(VisitorSession.page_views)

        if level == "country":
            result = await self._session.execute(
                select(VisitorSession.country_code, VisitorSession.country_name, sessions, page_views)
                .where(*window, VisitorSession.country_code.is_not(None))
                .group_by(VisitorSession.country_code, VisitorSession.country_name)
                .order_by(sessions.desc())
                .limit(limit)
            )
            return [
                {"country_code": code, "country_name": name, "sessions": _int(total), "page_views": _int(views)}
                for code, name, total, views in result.all()
            ]

        result = await self._session.execute(
            select(VisitorSession.city, VisitorSession.country_code, VisitorSession.region, sessions, page_views)
            .where(*window, VisitorSession.city.is_not(None))
            .group_by(VisitorSession.city, VisitorSession.country_code, VisitorSession.region)
            .order_by(sessions.desc())
            .limit(limit)
        )
        return [
            {"city": city, "country_code": code, "region": region, "sessions": _int(total), "page_views": _int(views)}
            for city, code, region, total, views in result.all()
        ]

    async def get_db_stats(self) -> dict[str, Any]:
        stats: dict[str, Any] = {}
        for label, model in (
            ("sessions", VisitorSession),
            ("events", VisitorEvent),
            ("hourly", HourlyAggregate),
            ("daily", DailyAggregate),
            ("presence", PresenceRecord),
        ):
            stats[label] = _int((await self._session.execute(select(func.count()).select_from(model))).scalar_one())

        human = VisitorSession.is_bot == false()
        platforms = {item.value: 0 for item in PlatformEnum}
        result = await self._session.execute(
            select(VisitorSession.platform, func.count()).where(human).group_by(VisitorSession.platform)
        )
        for platform, total in result.all():
            if platform in platforms:
                platforms[platform] = _int(total)

        devices = {device: 0 for device in DEVICE_TYPES}
        result = await self._session.execute(
            select(VisitorSession.device_type, func.count()).where(human).group_by(VisitorSession.device_type)
        )
        for device, total in result.all():
            if device in devices:
                devices[device] = _int(total)

        count = func.count().label("count")
        result = await self._session.execute(
            select(VisitorSession.browser, count)
            .where(human, VisitorSession.browser.is_not(None), VisitorSession.browser != "")
            .group_by(VisitorSession.browser)
            .order_by(count.desc())
            .limit(5)
        )
        stats["platforms"] = platforms
        stats["devices"] = devices
        stats["browsers"] = {browser: _int(total) for browser, total in result.all()}
        return stats


__all__ = ["DashboardService", "GRANULARITY_DAY", "GRANULARITY_HOUR", "default_granularity"]
