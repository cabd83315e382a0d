"""Row builders for tests that need telemetry already on disk."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from telemetry_api.models import VisitorEvent, VisitorSession
from telemetry_api.services.tracking.sanitize import sanitize_event


def visitor_session(session_id: str, first_seen: datetime, *, last_seen: datetime | None = None, **fields: Any) -> VisitorSession:
    values: dict[str, Any] = {
        "platform": "web_desktop",
        "device_type": "desktop",
        "page_views": 1,
        "property_views": 0,
        "searches": 0,
        "is_bot": False,
    }
    values.update(fields)
    values.setdefault("is_bounce", values["page_views"] <= 1)
    return VisitorSession(
        session_id=session_id,
        first_seen=first_seen,
        last_seen=last_seen or first_seen,
        created_at=first_seen,
        **values,
    )


def visitor_event(
    session_id: str,
    event_type: str,
    at: datetime,
    *,
    platform: str = "web_desktop",
    **payload: Any,
) -> VisitorEvent:
    row = sanitize_event(
        {"type": event_type, "timestamp": at.isoformat(), **payload},
        session_id=session_id,
        platform=platform,
        now=at,
    )
    return VisitorEvent(**row)


__all__ = ["visitor_event", "visitor_session"]
