"""Per-listing interest for logged-in clients.

An hourly rollup folds the hour's property events into one row per
(client, listing). Each hour is folded at most once: the counters and the
``property_interest_runs`` marker for the hour commit together.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from telemetry_api.core.clock import ensure_utc, floor_hour, utcnow
from telemetry_api.core.settings import Settings, settings as default_settings
from telemetry_api.models import PropertyInterest, PropertyInterestRun, VisitorEvent, VisitorSession
from telemetry_api.services.analytics.listings import ListingLookup, NullListingLookup

WEIGHT_VIEWS = 30.0
WEIGHT_DURATION = 25.0
WEIGHT_PHOTOS = 15.0
WEIGHT_ACTIONS = 30.0

ACTION_POINTS = {"calculator_used": 8, "contact_clicked": 12, "shared": 5, "favorited": 10}
ACTION_EVENTS = {
    "calculator_use": "calculator_used",
    "contact_click": "contact_clicked",
    "contact_submit": "contact_clicked",
    "favorite_add": "favorited",
    "property_share": "shared",
    "share_click": "shared",
}
INTEREST_EVENT_TYPES = ("property_view", "photo_view", "time_on_page", *ACTION_EVENTS)


def interest_score(
    *,
    view_count: int,
    total_view_duration: int,
    photo_views: int,
    calculator_used: bool = False,
    contact_clicked: bool = False,
    shared: bool = False,
    favorited: bool = False,
) -> float:
    """0-100: views, minutes viewed, photos and high-intent actions, each capped."""

    flags = {
        "calculator_used": calculator_used,
        "contact_clicked": contact_clicked,
        "shared": shared,
        "favorited": favorited,
    }
    views = min(view_count * 10, WEIGHT_VIEWS)
    duration = min(total_view_duration / 60 * 5, WEIGHT_DURATION)
    photos = min(photo_views * 3, WEIGHT_PHOTOS)
    actions = min(sum(points for name, points in ACTION_POINTS.items() if flags[name]), WEIGHT_ACTIONS)
    return round(views + duration + photos + actions, 2)


@dataclass
class InterestDelta:
    view_count: int = 0
    total_view_duration: int = 0
    photo_views: int = 0
    actions: set[str] = field(default_factory=set)
    property_city: str | None = None
    first_at: datetime | None = None
    last_at: datetime | None = None

    def touch(self, first: datetime, last: datetime) -> None:
        self.first_at = min(self.first_at, first) if self.first_at else first
        self.last_at = max(self.last_at, last) if self.last_at else last


def serialize_interest(row: PropertyInterest) -> dict[str, Any]:
    return {
        "listing_id": row.listing_id,
        "property_city": row.property_city,
        "interest_score": row.interest_score,
        "view_count": row.view_count,
        "total_view_duration": row.total_view_duration,
        "photo_views": row.photo_views,
        "calculator_used": bool(row.calculator_used),
        "contact_clicked": bool(row.contact_clicked),
        "shared": bool(row.shared),
        "favorited": bool(row.favorited),
        "first_viewed_at": ensure_utc(row.first_viewed_at).isoformat(),
        "last_viewed_at": ensure_utc(row.last_viewed_at).isoformat(),
    }


class PropertyInterestTracker:
    def __init__(
        self,
        session: AsyncSession,
        *,
        listing_lookup: ListingLookup | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._session = session
        self._listings = listing_lookup or NullListingLookup()
        self._settings = settings or default_settings
        self._logger = logger.bind(component="property_interest")

    # ------------------------------------------------------------------
    # Rollup
    # ------------------------------------------------------------------

    async def run_hourly(self, *, now: datetime | None = None) -> dict[str, Any]:
        """Fold the last completed hour, after any hours missed since the first folded one."""

        hour_start = floor_hour(now or utcnow()) - timedelta(hours=1)
        window_start = hour_start - timedelta(hours=self._settings.aggregation_lookback_hours)
        result = await self._session.execute(
            select(PropertyInterestRun.hour_start).where(
                PropertyInterestRun.hour_start >= window_start, PropertyInterestRun.hour_start < hour_start
            )
        )
        folded = {ensure_utc(value) for value in result.scalars().all()}

        backfilled = []
        if folded:
            cursor = min(folded) + timedelta(hours=1)
            while cursor < hour_start:
                if cursor not in folded and (await self.aggregate_hour(cursor))["status"] == "created":
                    backfilled.append(cursor.isoformat())
                cursor += timedelta(hours=1)
        summary = await self.aggregate_hour(hour_start)
        summary["backfilled"] = backfilled
        return summary

    async def aggregate_hour(self, hour_start: datetime) -> dict[str, Any]:
        hour_start = floor_hour(hour_start)
        existing = await self._session.get(PropertyInterestRun, hour_start)
        if existing is not None:
            return {"hour_start": hour_start.isoformat(), "status": "skipped"}

        deltas = await self._hour_deltas(hour_start, hour_start + timedelta(hours=1))
        await self._apply(deltas)
        self._session.add(PropertyInterestRun(hour_start=hour_start, pairs_updated=len(deltas)))
        try:
            await self._session.commit()
        except IntegrityError:
            await self._session.rollback()
            self._logger.warning("Property interest hour folded by a concurrent runner", hour_start=hour_start.isoformat())
            return {"hour_start": hour_start.isoformat(), "status": "skipped"}

        if deltas:
            self._logger.info(
                "Property interest rollup completed",
                hour_start=hour_start.isoformat(),
                pairs=len(deltas),
                clients=len({user_id for user_id, _ in deltas}),
            )
        return {"hour_start": hour_start.isoformat(), "status": "created", "pairs_updated": len(deltas)}

    async def _hour_deltas(self, start: datetime, end: datetime) -> dict[tuple[int, str], InterestDelta]:
        result = await self._session.execute(
            select(
                VisitorSession.user_id,
                VisitorEvent.listing_id,
                VisitorEvent.event_type,
                func.count(),
                func.sum(VisitorEvent.time_on_page),
                func.max(VisitorEvent.property_city),
                func.min(VisitorEvent.created_at),
                func.max(VisitorEvent.created_at),
            )
            .select_from(VisitorEvent)
            .join(VisitorSession, VisitorEvent.session_id == VisitorSession.session_id)
            .where(
                VisitorSession.user_id.is_not(None),
                VisitorEvent.listing_id.is_not(None),
                VisitorEvent.listing_id != "",
                VisitorEvent.event_type.in_(INTEREST_EVENT_TYPES),
                VisitorEvent.created_at >= start,
                VisitorEvent.created_at < end,
            )
            .group_by(VisitorSession.user_id, VisitorEvent.listing_id, VisitorEvent.event_type)
        )

        deltas: dict[tuple[int, str], InterestDelta] = {}
        for user_id, listing_id, event_type, total, seconds, city, first, last in result.all():
            delta = deltas.setdefault((int(user_id), listing_id), InterestDelta())
            delta.touch(ensure_utc(first), ensure_utc(last))
            delta.property_city = delta.property_city or city
            if event_type == "property_view":
                delta.view_count += int(total)
            elif event_type == "photo_view":
                delta.photo_views += int(total)
            elif event_type == "time_on_page":
                delta.total_view_duration += int(seconds or 0)
            else:
                delta.actions.add(ACTION_EVENTS[event_type])
        return deltas

    async def _apply(self, deltas: dict[tuple[int, str], InterestDelta]) -> None:
        if not deltas:
            return
        result = await self._session.execute(
            select(PropertyInterest).where(
                PropertyInterest.user_id.in_({user_id for user_id, _ in deltas}),
                PropertyInterest.listing_id.in_({listing_id for _, listing_id in deltas}),
            )
        )
        rows = {(int(row.user_id), row.listing_id): row for row in result.scalars().all()}

        missing_city: set[str] = set()
        for key, delta in deltas.items():
            row = rows.get(key)
            if not delta.property_city and (row is None or not row.property_city):
                missing_city.add(key[1])
        listings = await self._listings.get_listings(sorted(missing_city)) if missing_city else {}

        for (user_id, listing_id), delta in deltas.items():
            row = rows.get((user_id, listing_id))
            if row is None:
                row = PropertyInterest(
                    user_id=user_id,
                    listing_id=listing_id,
                    view_count=0,
                    total_view_duration=0,
                    photo_views=0,
                    calculator_used=False,
                    contact_clicked=False,
                    shared=False,
                    favorited=False,
                    first_viewed_at=delta.first_at,
                    last_viewed_at=delta.last_at,
                )
                self._session.add(row)
            else:
                row.last_viewed_at = max(ensure_utc(row.last_viewed_at), delta.last_at)

            row.view_count += delta.view_count
            row.total_view_duration += delta.total_view_duration
            row.photo_views += delta.photo_views
            for action in delta.actions:
                setattr(row, action, True)
            city = delta.property_city or (listings[listing_id].city if listing_id in listings else None)
            if city and not row.property_city:
                row.property_city = city
            row.interest_score = interest_score(
                view_count=row.view_count,
                total_view_duration=row.total_view_duration,
                photo_views=row.photo_views,
                calculator_used=row.calculator_used,
                contact_clicked=row.contact_clicked,
                shared=row.shared,
                favorited=row.favorited,
            )

    # ------------------------------------------------------------------
    # Read paths
    # ------------------------------------------------------------------

    async def get_top_properties(self, user_id: int, *, limit: int = 10) -> list[dict[str, Any]]:
        result = await self._session.execute(
            select(PropertyInterest)
            .where(PropertyInterest.user_id == user_id, PropertyInterest.interest_score > 0)
            .order_by(PropertyInterest.interest_score.desc(), PropertyInterest.last_viewed_at.desc())
            .limit(limit)
        )
        rows = list(result.scalars().all())
        listings = await self._listings.get_listings([row.listing_id for row in rows]) if rows else {}
        properties = []
        for row in rows:
            payload = serialize_interest(row)
            summary = listings.get(row.listing_id)
            payload["listing"] = summary.as_dict() if summary else None
            properties.append(payload)
        return properties

    async def get_cities_of_interest(self, user_id: int, *, limit: int = 5) -> list[dict[str, Any]]:
        total_views = func.sum(PropertyInterest.view_count).label("total_views")
        result = await self._session.execute(
            select(
                PropertyInterest.property_city,
                func.count(),
                total_views,
                func.avg(PropertyInterest.interest_score),
            )
            .where(
                PropertyInterest.user_id == user_id,
                PropertyInterest.property_city.is_not(None),
                PropertyInterest.property_city != "",
            )
            .group_by(PropertyInterest.property_city)
            .order_by(total_views.desc(), PropertyInterest.property_city.asc())
            .limit(limit)
        )
        return [
            {
                "city": city,
                "property_count": int(count),
                "total_views": int(views or 0),
                "avg_interest": round(float(average or 0), 1),
            }
            for city, count, views, average in result.all()
        ]

    async def get_summary(self, user_id: int) -> dict[str, Any]:
        row = (
            await self._session.execute(
                select(
                    func.count(),
                    func.sum(PropertyInterest.view_count),
                    func.sum(PropertyInterest.total_view_duration),
                    func.avg(PropertyInterest.interest_score),
                    func.max(PropertyInterest.interest_score),
                ).where(PropertyInterest.user_id == user_id)
            )
        ).one()
        return {
            "total_properties": int(row[0] or 0),
            "total_views": int(row[1] or 0),
            "total_duration": int(row[2] or 0),
            "avg_interest_score": round(float(row[3] or 0), 1),
            "max_interest_score": float(row[4] or 0),
        }


__all__ = [
    "InterestDelta",
    "PropertyInterestTracker",
    "interest_score",
    "serialize_interest",
]
