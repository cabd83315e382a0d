"""Newest-first activity feed for one logged-in client."""

from __future__ import annotations

from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from telemetry_api.models import VisitorEvent, VisitorSession
from telemetry_api.services.tracking.event_store import serialize_event

ACTIVITY_DESCRIPTIONS = {
    "page_view": "Viewed a page",
    "property_view": "Viewed a property",
    "property_share": "Shared a property",
    "share_click": "Clicked share button",
    "search": "Ran a property search",
    "search_execute": "Executed a search",
    "search_save": "Saved a search",
    "filter_apply": "Applied a filter",
    "filter_clear": "Cleared a filter",
    "autocomplete_select": "Selected autocomplete suggestion",
    "favorite_add": "Added property to favorites",
    "favorite_remove": "Removed property from favorites",
    "map_zoom": "Zoomed the map",
    "map_pan": "Panned the map",
    "map_draw_complete": "Completed draw search area",
    "marker_click": "Clicked a map marker",
    "cluster_click": "Clicked a property cluster",
    "photo_view": "Viewed a photo",
    "photo_lightbox_open": "Opened photo gallery",
    "video_play": "Started video",
    "calculator_use": "Used mortgage calculator",
    "school_info_view": "Viewed school information",
    "contact_click": "Clicked contact button",
    "contact_submit": "Submitted contact form",
    "schedule_click": "Clicked schedule showing",
    "schedule_showing_click": "Clicked schedule showing",
    "time_on_page": "Time on page",
    "scroll_depth": "Scrolled page",
    "login": "Logged in",
}


def describe_activity(event_type: str, listing_id: str | None = None) -> str:
    description = ACTIVITY_DESCRIPTIONS.get(event_type, "Unknown activity")
    if listing_id:
        description = f"{description} ({listing_id})"
    return description


class ClientActivityTimeline:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, user_id: int, *, limit: int = 50, offset: int = 0) -> dict[str, Any]:
        limit = max(1, limit)
        offset = max(0, offset)
        owned = (VisitorEvent.session_id == VisitorSession.session_id) & (VisitorSession.user_id == user_id)

        total = int(
            (
                await self._session.execute(
                    select(func.count()).select_from(VisitorEvent).join(VisitorSession, owned)
                )
            ).scalar_one()
            or 0
        )
        result = await self._session.execute(
            select(VisitorEvent)
            .join(VisitorSession, owned)
            .order_by(VisitorEvent.created_at.desc(), VisitorEvent.id.desc())
            .limit(limit)
            .offset(offset)
        )

        activities = []
        for event in result.scalars().all():
            payload = serialize_event(event)
            payload["description"] = describe_activity(event.event_type, event.listing_id)
            activities.append(payload)
        return {
            "user_id": user_id,
            "activities": activities,
            "total": total,
            "has_more": offset + len(activities) < total,
        }


__all__ = ["ACTIVITY_DESCRIPTIONS", "ClientActivityTimeline", "describe_activity"]
