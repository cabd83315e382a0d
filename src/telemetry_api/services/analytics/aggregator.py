"""Hourly and daily rollups plus presence and retention housekeeping."""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any, Awaitable, Callable

from loguru import logger
from sqlalchemy import and_, case, delete, distinct, false, func, or_, select, true
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql.elements import ColumnElement

from telemetry_api.core.clock import ensure_utc, floor_hour, utcnow
from telemetry_api.core.settings import Settings, settings as default_settings
from telemetry_api.models import (
    DailyAggregate,
    HourlyAggregate,
    PresenceRecord,
    VisitorEvent,
    VisitorSession,
)
from telemetry_api.services.tracking.event_store import session_duration_seconds
from telemetry_api.services.tracking.sanitize import SEARCH_EVENT_TYPES

from .breakdowns import (
    decode_search_query,
    merge_count_maps,
    percentage_change,
    summarize_search_query,
)
from .listings import ListingLookup, NullListingLookup

SessionFactory = Callable[[], AsyncSession] | Callable[[], Awaitable[AsyncSession]]


@dataclass
class SessionScalars:
    unique_sessions: int = 0
    new_sessions: int = 0
    returning_sessions: int = 0
    page_views: int = 0
    property_views: int = 0
    search_count: int = 0
    bounce_sessions: int = 0
    avg_session_duration: int = 0
    avg_pages_per_session: float = 0.0


@dataclass
class CleanupResult:
    cutoff: datetime
    events_deleted: int
    sessions_deleted: int
    needs_followup: bool

    def as_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["cutoff"] = self.cutoff.isoformat()
        return payload


def _day_bounds(day: date) -> tuple[datetime, datetime]:
    start = datetime(day.year, day.month, day.day, tzinfo=timezone.utc)
    return start, start + timedelta(days=1)


def _int(value: Any) -> int:
    return int(value or 0)


def _round(value: Any, digits: int = 2) -> float:
    return round(float(value or 0), digits)


class AnalyticsAggregator:
    """Builds ``analytics_hourly`` and ``analytics_daily`` from raw telemetry.

    Every bucket is written at most once; a bucket that already exists is
    skipped, and a unique-constraint race with another runner is treated
    the same way.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        listing_lookup: ListingLookup | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._listings = listing_lookup or NullListingLookup()
        self._settings = settings or default_settings
        self._logger = logger.bind(component="analytics_aggregator")

    async def _ensure_session(self) -> AsyncSession:
        maybe_session = self._session_factory()
        if isinstance(maybe_session, AsyncSession):
            return maybe_session
        return await maybe_session

    # ------------------------------------------------------------------
    # Hourly
    # ------------------------------------------------------------------

    async def run_hourly(self, *, now: datetime | None = None) -> dict[str, Any]:
        """Aggregate the last completed hour before ``now``.

        Hours inside the lookback that are missing a bucket, but follow one
        that was written, are aggregated first, oldest first.
        """

        hour_start = floor_hour(now or utcnow()) - timedelta(hours=1)
        window_start = hour_start - timedelta(hours=self._settings.aggregation_lookback_hours)
        backfilled = []
        for missing in await self._missing_hours(window_start, hour_start):
            result = await self.aggregate_hour(missing)
            if result["status"] == "created":
                backfilled.append(result["hour_start"])
        if backfilled:
            self._logger.info("Backfilled missing hourly buckets", hours=backfilled)
        summary = await self.aggregate_hour(hour_start)
        summary["backfilled"] = backfilled
        return summary

    async def _missing_hours(self, start: datetime, end: datetime) -> list[datetime]:
        """Gaps in ``[start, end)`` after the earliest bucket already written there."""

        session = await self._ensure_session()
        async with session as db:
            result = await db.execute(
                select(HourlyAggregate.hour_start).where(
                    HourlyAggregate.hour_start >= start, HourlyAggregate.hour_start < end
                )
            )
            existing = {ensure_utc(value) for value in result.scalars().all()}
        if not existing:
            return []
        missing = []
        cursor = min(existing) + timedelta(hours=1)
        while cursor < end:
            if cursor not in existing:
                missing.append(cursor)
            cursor += timedelta(hours=1)
        return missing

    async def aggregate_hour(self, hour_start: datetime) -> dict[str, Any]:
        hour_start = floor_hour(hour_start)
        hour_end = hour_start + timedelta(hours=1)
        top_n = self._settings.hourly_top_n
        started = time.perf_counter()

        session = await self._ensure_session()
        async with session as db:
            existing = await db.execute(select(HourlyAggregate.id).where(HourlyAggregate.hour_start == hour_start))
            if existing.scalar_one_or_none() is not None:
                self._logger.info("Hourly bucket already aggregated", hour_start=hour_start.isoformat())
                return {"hour_start": hour_start.isoformat(), "status": "skipped"}

            session_window = self._session_window(hour_start, hour_end)
            event_window = self._event_window(hour_start, hour_end)
            scalars = await self._session_scalars(db, session_window)

            row = HourlyAggregate(
                hour_start=hour_start,
                **asdict(scalars),
                avg_scroll_depth=await self._avg_scroll_depth(db, event_window),
                platform_breakdown=await self._group_counts(db, VisitorSession.platform, session_window),
                device_breakdown=await self._group_counts(db, VisitorSession.device_type, session_window),
                country_breakdown=await self._group_counts(
                    db,
                    VisitorSession.country_code,
                    session_window + [VisitorSession.country_code.is_not(None)],
                    limit=top_n,
                ),
                referrer_breakdown=await self._referrer_counts(db, session_window, limit=top_n),
                top_cities=await self._top_cities(db, session_window, limit=top_n),
                top_pages=await self._top_pages(db, event_window, limit=top_n),
                top_properties=await self._top_properties(db, event_window, limit=top_n),
                top_searches=await self._top_searches(db, event_window, limit=top_n),
            )
            db.add(row)
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                self._logger.warning("Hourly bucket written by a concurrent runner", hour_start=hour_start.isoformat())
                return {"hour_start": hour_start.isoformat(), "status": "skipped"}

        duration = round(time.perf_counter() - started, 3)
        self._logger.info(
            "Hourly aggregation completed",
            hour_start=hour_start.isoformat(),
            sessions=scalars.unique_sessions,
            page_views=scalars.page_views,
            duration_seconds=duration,
        )
        return {
            "hour_start": hour_start.isoformat(),
            "status": "created",
            "unique_sessions": scalars.unique_sessions,
            "page_views": scalars.page_views,
            "duration_seconds": duration,
        }

    # ------------------------------------------------------------------
    # Daily
    # ------------------------------------------------------------------

    async def run_daily(self, *, now: datetime | None = None) -> dict[str, Any]:
        """Aggregate the previous UTC calendar day, filling earlier gaps in the lookback first."""

        day = ensure_utc(now or utcnow()).date() - timedelta(days=1)
        window_start = day - timedelta(days=self._settings.aggregation_lookback_days)
        backfilled = []
        for missing in await self._missing_days(window_start, day):
            result = await self.aggregate_day(missing)
            if result["status"] == "created":
                backfilled.append(result["day"])
        if backfilled:
            self._logger.info("Backfilled missing daily buckets", days=backfilled)
        summary = await self.aggregate_day(day)
        summary["backfilled"] = backfilled
        return summary

    async def _missing_days(self, start: date, end: date) -> list[date]:
        session = await self._ensure_session()
        async with session as db:
            result = await db.execute(
                select(DailyAggregate.bucket_date).where(
                    DailyAggregate.bucket_date >= start, DailyAggregate.bucket_date < end
                )
            )
            existing = set(result.scalars().all())
        if not existing:
            return []
        missing = []
        cursor = min(existing) + timedelta(days=1)
        while cursor < end:
            if cursor not in existing:
                missing.append(cursor)
            cursor += timedelta(days=1)
        return missing

    async def aggregate_day(self, day: date) -> dict[str, Any]:
        day_start, day_end = _day_bounds(day)
        top_n = self._settings.daily_top_n
        started = time.perf_counter()

        session = await self._ensure_session()
        async with session as db:
            existing = await db.execute(select(DailyAggregate.id).where(DailyAggregate.bucket_date == day))
            if existing.scalar_one_or_none() is not None:
                self._logger.info("Daily bucket already aggregated", day=day.isoformat())
                return {"day": day.isoformat(), "status": "skipped"}

            hourly_result = await db.execute(
                select(HourlyAggregate)
                .where(HourlyAggregate.hour_start >= day_start, HourlyAggregate.hour_start < day_end)
                .order_by(HourlyAggregate.hour_start.asc())
            )
            hourly = list(hourly_result.scalars().all())

            unique_sessions = sum(_int(row.unique_sessions) for row in hourly)
            page_views = sum(_int(row.page_views) for row in hourly)
            bounce_sessions = sum(_int(row.bounce_sessions) for row in hourly)

            def _average(attribute: str) -> float:
                if not hourly:
                    return 0.0
                return sum(float(getattr(row, attribute) or 0) for row in hourly) / len(hourly)

            previous = await db.execute(
                select(DailyAggregate).where(DailyAggregate.bucket_date == day - timedelta(days=1))
            )
            previous_row = previous.scalar_one_or_none()

            session_window = self._session_window(day_start, day_end)
            event_window = self._event_window(day_start, day_end)

            row = DailyAggregate(
                bucket_date=day,
                unique_sessions=unique_sessions,
                new_sessions=sum(_int(item.new_sessions) for item in hourly),
                returning_sessions=sum(_int(item.returning_sessions) for item in hourly),
                page_views=page_views,
                property_views=sum(_int(item.property_views) for item in hourly),
                search_count=sum(_int(item.search_count) for item in hourly),
                bounce_sessions=bounce_sessions,
                bounce_rate=round(bounce_sessions / unique_sessions * 100, 2) if unique_sessions else 0.0,
                # Unweighted mean of the hourly averages.
                avg_session_duration=int(_average("avg_session_duration")),
                avg_pages_per_session=_round(_average("avg_pages_per_session")),
                avg_scroll_depth=_round(_average("avg_scroll_depth")),
                sessions_change_pct=percentage_change(
                    previous_row.unique_sessions if previous_row else None, unique_sessions
                ),
                pageviews_change_pct=percentage_change(previous_row.page_views if previous_row else None, page_views),
                platform_breakdown=merge_count_maps((item.platform_breakdown for item in hourly), top_n),
                device_breakdown=merge_count_maps((item.device_breakdown for item in hourly), top_n),
                country_breakdown=merge_count_maps((item.country_breakdown for item in hourly), top_n),
                referrer_breakdown=merge_count_maps((item.referrer_breakdown for item in hourly), top_n),
                top_cities=await self._top_cities(db, session_window, limit=top_n),
                top_pages=await self._top_pages(db, event_window, limit=top_n),
                top_properties=await self._top_properties(db, event_window, limit=top_n),
                top_searches=await self._top_searches(db, event_window, limit=top_n),
            )
            db.add(row)
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                self._logger.warning("Daily bucket written by a concurrent runner", day=day.isoformat())
                return {"day": day.isoformat(), "status": "skipped"}

        duration = round(time.perf_counter() - started, 3)
        self._logger.info(
            "Daily aggregation completed",
            day=day.isoformat(),
            hourly_buckets=len(hourly),
            sessions=unique_sessions,
            page_views=page_views,
            duration_seconds=duration,
        )
        return {
            "day": day.isoformat(),
            "status": "created",
            "hourly_buckets": len(hourly),
            "unique_sessions": unique_sessions,
            "page_views": page_views,
            "duration_seconds": duration,
        }

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    async def sweep_presence(self, *, now: datetime | None = None) -> int:
        """Delete presence rows whose last heartbeat is older than the stale threshold."""

        threshold = (now or utcnow()) - timedelta(seconds=self._settings.presence_stale_seconds)
        session = await self._ensure_session()
        async with session as db:
            result = await db.execute(delete(PresenceRecord).where(PresenceRecord.last_heartbeat < threshold))
            await db.commit()
        deleted = result.rowcount or 0
        if deleted:
            self._logger.info("Removed stale presence records", deleted=deleted)
        return deleted

    async def cleanup_retention(self, *, now: datetime | None = None) -> CleanupResult:
        """Delete one capped batch of expired events and sessions."""

        cutoff = (now or utcnow()) - timedelta(days=self._settings.retention_days)
        batch_size = self._settings.cleanup_batch_size

        session = await self._ensure_session()
        async with session as db:
            expired_events = (
                select(VisitorEvent.id)
                .where(VisitorEvent.created_at < cutoff)
                .order_by(VisitorEvent.id)
                .limit(batch_size)
            )
            events_result = await db.execute(
                delete(VisitorEvent)
                .where(VisitorEvent.id.in_(expired_events.scalar_subquery()))
                .execution_options(synchronize_session=False)
            )
            expired_sessions = (
                select(VisitorSession.id)
                .where(VisitorSession.last_seen < cutoff)
                .order_by(VisitorSession.id)
                .limit(batch_size)
            )
            sessions_result = await db.execute(
                delete(VisitorSession)
                .where(VisitorSession.id.in_(expired_sessions.scalar_subquery()))
                .execution_options(synchronize_session=False)
            )
            await db.commit()

        events_deleted = events_result.rowcount or 0
        sessions_deleted = sessions_result.rowcount or 0
        result = CleanupResult(
            cutoff=cutoff,
            events_deleted=events_deleted,
            sessions_deleted=sessions_deleted,
            needs_followup=events_deleted >= batch_size or sessions_deleted >= batch_size,
        )
        if events_deleted or sessions_deleted:
            self._logger.info("Retention cleanup deleted expired rows", **result.as_dict())
        return result

    async def status(self) -> dict[str, Any]:
        session = await self._ensure_session()
        async with session as db:
            latest_hourly = (await db.execute(select(func.max(HourlyAggregate.hour_start)))).scalar_one_or_none()
            latest_daily = (await db.execute(select(func.max(DailyAggregate.bucket_date)))).scalar_one_or_none()
            oldest_event = (await db.execute(select(func.min(VisitorEvent.created_at)))).scalar_one_or_none()
            counts = {}
            for label, model in (
                ("hourly_records", HourlyAggregate),
                ("daily_records", DailyAggregate),
                ("raw_events", VisitorEvent),
                ("raw_sessions", VisitorSession),
                ("presence_records", PresenceRecord),
            ):
                counts[label] = _int((await db.execute(select(func.count()).select_from(model))).scalar_one())

        return {
            "latest_hourly_aggregation": ensure_utc(latest_hourly).isoformat() if latest_hourly else None,
            "latest_daily_aggregation": latest_daily.isoformat() if latest_daily else None,
            **counts,
            "oldest_event": ensure_utc(oldest_event).isoformat() if oldest_event else None,
            "retention_days": self._settings.retention_days,
        }

    # ------------------------------------------------------------------
    # Query helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _session_window(start: datetime, end: datetime) -> list[ColumnElement[bool]]:
        return [
            VisitorSession.first_seen >= start,
            VisitorSession.first_seen < end,
            VisitorSession.is_bot == false(),
        ]

    @staticmethod
    def _event_window(start: datetime, end: datetime) -> list[ColumnElement[bool]]:
        return [VisitorEvent.created_at >= start, VisitorEvent.created_at < end]

    async def _session_scalars(self, db: AsyncSession, window: list[ColumnElement[bool]]) -> SessionScalars:
        has_hash = and_(VisitorSession.visitor_hash.is_not(None), VisitorSession.visitor_hash != "")
        duration = session_duration_seconds(db.get_bind().dialect.name)
        stmt = select(
            func.count(distinct(VisitorSession.session_id)),
            func.sum(case((has_hash, 0), else_=1)),
            func.sum(case((has_hash, 1), else_=0)),
            func.sum(VisitorSession.page_views),
            func.sum(VisitorSession.property_views),
            func.sum(VisitorSession.searches),
            func.sum(case((VisitorSession.is_bounce == true(), 1), else_=0)),
            func.avg(duration),
            func.avg(VisitorSession.page_views),
        ).where(*window)
        row = (await db.execute(stmt)).one()
        return SessionScalars(
            unique_sessions=_int(row[0]),
            new_sessions=_int(row[1]),
            returning_sessions=_int(row[2]),
            page_views=_int(row[3]),
            property_views=_int(row[4]),
            search_count=_int(row[5]),
            bounce_sessions=_int(row[6]),
            avg_session_duration=int(float(row[7] or 0)),
            avg_pages_per_session=_round(row[8]),
        )

    async def _group_counts(
        self,
        db: AsyncSession,
        column: Any,
        window: list[ColumnElement[bool]],
        *,
        limit: int | None = None,
    ) -> dict[str, int]:
        count = func.count().label("count")
        stmt = select(column, count).where(*window).group_by(column).order_by(count.desc())
        if limit:
            stmt = stmt.limit(limit)
        result = await db.execute(stmt)
        return {str(key) if key is not None else "unknown": _int(value) for key, value in result.all()}

    async def _referrer_counts(self, db: AsyncSession, window: list[ColumnElement[bool]], *, limit: int) -> dict[str, int]:
        source = case(
            (or_(VisitorSession.referrer_domain.is_(None), VisitorSession.referrer_domain == ""), "direct"),
            else_=VisitorSession.referrer_domain,
        )
        return await self._group_counts(db, source, window, limit=limit)

    async def _top_cities(self, db: AsyncSession, window: list[ColumnElement[bool]], *, limit: int) -> list[dict[str, Any]]:
        count = func.count().label("count")
        result = await db.execute(
            select(VisitorSession.city, VisitorSession.country_code, count)
            .where(*window, VisitorSession.city.is_not(None))
            .group_by(VisitorSession.city, VisitorSession.country_code)
            .order_by(count.desc())
            .limit(limit)
        )
        return [{"city": city, "country": country, "count": _int(total)} for city, country, total in result.all()]

    async def _top_pages(self, db: AsyncSession, window: list[ColumnElement[bool]], *, limit: int) -> list[dict[str, Any]]:
        views = func.count().label("views")
        result = await db.execute(
            select(VisitorEvent.page_path, views)
            .where(*window, VisitorEvent.event_type == "page_view", VisitorEvent.page_path.is_not(None))
            .group_by(VisitorEvent.page_path)
            .order_by(views.desc())
            .limit(limit)
        )
        return [{"path": path, "views": _int(total)} for path, total in result.all()]

    async def _top_properties(
        self,
        db: AsyncSession,
        window: list[ColumnElement[bool]],
        *,
        limit: int,
    ) -> list[dict[str, Any]]:
        views = func.count().label("views")
        result = await db.execute(
            select(VisitorEvent.listing_id, VisitorEvent.property_city, views)
            .where(*window, VisitorEvent.event_type == "property_view", VisitorEvent.listing_id.is_not(None))
            .group_by(VisitorEvent.listing_id, VisitorEvent.property_city)
            .order_by(views.desc())
            .limit(limit)
        )
        rows = result.all()
        missing_city = [listing_id for listing_id, city, _ in rows if not city]
        listings = await self._listings.get_listings(missing_city) if missing_city else {}
        properties = []
        for listing_id, city, total in rows:
            if not city and listing_id in listings:
                city = listings[listing_id].city
            properties.append({"listing_id": listing_id, "city": city, "views": _int(total)})
        return properties

    async def _top_searches(
        self,
        db: AsyncSession,
        window: list[ColumnElement[bool]],
        *,
        limit: int,
    ) -> list[dict[str, Any]]:
        count = func.count().label("count")
        result = await db.execute(
            select(VisitorEvent.search_query, count)
            .where(
                *window,
                VisitorEvent.event_type.in_(SEARCH_EVENT_TYPES),
                VisitorEvent.search_query.is_not(None),
                VisitorEvent.search_query != "",
                VisitorEvent.search_query != "null",
            )
            .group_by(VisitorEvent.search_query)
            .order_by(count.desc())
            .limit(limit)
        )
        searches = []
        for raw, total in result.all():
            summary = summarize_search_query(decode_search_query(raw))
            if summary:
                searches.append({"query": summary, "raw": raw, "count": _int(total)})
        return searches

    async def _avg_scroll_depth(self, db: AsyncSession, window: list[ColumnElement[bool]]) -> float:
        result = await db.execute(
            select(func.avg(VisitorEvent.scroll_depth)).where(
                *window,
                VisitorEvent.event_type == "scroll_depth",
                VisitorEvent.scroll_depth.is_not(None),
            )
        )
        return _round(result.scalar_one_or_none())


__all__ = ["AnalyticsAggregator", "CleanupResult", "SessionFactory"]
