"""Normalization of raw client events before they are persisted."""

from __future__ import annotations

import json
import math
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping
from urllib.parse import urlsplit

from telemetry_api.core.clock import ensure_utc, utcnow

EVENT_CATEGORIES: dict[str, str] = {
    "page_view": "navigation",
    "property_view": "navigation",
    "search": "engagement",
    "search_execute": "engagement",
    "filter_apply": "engagement",
    "map_zoom": "engagement",
    "map_pan": "engagement",
    "map_draw": "engagement",
    "marker_click": "engagement",
    "photo_view": "engagement",
    "scroll_depth": "engagement",
    "time_on_page": "engagement",
    "contact_click": "conversion",
    "contact_submit": "conversion",
    "favorite_add": "conversion",
    "share_click": "conversion",
    "schedule_click": "conversion",
    "external_click": "outbound",
}

SEARCH_EVENT_TYPES = ("search", "search_execute")

# Column lengths on VisitorEvent; longer client values are truncated.
_STRING_LIMITS: dict[str, int] = {
    "event_type": 50,
    "event_category": 50,
    "page_path": 500,
    "page_title": 255,
    "page_type": 50,
    "listing_id": 50,
    "listing_key": 128,
    "property_city": 100,
    "click_target": 255,
    "click_element": 100,
}


def categorize_event(event_type: str | None) -> str:
    return EVENT_CATEGORIES.get(event_type or "", "other")


def extract_domain(url: str | None) -> str | None:
    """Host of ``url`` without a leading ``www.``, or None when unparseable."""

    if not url:
        return None
    try:
        host = urlsplit(url).hostname
    except ValueError:
        return None
    if not host:
        return None
    return host[4:] if host.startswith("www.") else host


def count_event_types(events: Iterable[Mapping[str, Any]]) -> dict[str, int]:
    counts = {"page_views": 0, "property_views": 0, "searches": 0}
    for event in events:
        event_type = event.get("type")
        if event_type == "page_view":
            counts["page_views"] += 1
        elif event_type == "property_view":
            counts["property_views"] += 1
        elif event_type in SEARCH_EVENT_TYPES:
            counts["searches"] += 1
    return counts


def truncate(value: Any, limit: int) -> str | None:
    if value is None:
        return None
    text = str(value)
    return text[:limit]


def _to_number(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def clamp_scroll_depth(value: Any) -> int | None:
    number = _to_number(value)
    if number is None:
        return None
    return int(min(abs(number), 100))


def positive_int_or_none(value: Any) -> int | None:
    """Absolute integer value; zero and garbage collapse to None."""

    number = _to_number(value)
    if number is None:
        return None
    result = int(abs(number))
    return result or None


def non_negative_int(value: Any) -> int | None:
    number = _to_number(value)
    if number is None:
        return None
    return max(int(number), 0)


def parse_client_timestamp(value: Any, *, now: datetime | None = None) -> datetime:
    """Parse an ISO-8601 or epoch timestamp; unparseable input becomes ``now``."""

    fallback = now or utcnow()
    if value is None or value == "":
        return fallback
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        seconds = value / 1000 if value > 10_000_000_000 else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return fallback
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return ensure_utc(datetime.fromisoformat(text))
        except ValueError:
            return fallback
    return fallback


def encode_search_query(value: Any) -> str | None:
    if value is None:
        return None
    try:
        return json.dumps(value, default=str)
    except (TypeError, ValueError):
        return None


def sanitize_event(event: Mapping[str, Any], *, session_id: str, platform: str, now: datetime) -> dict[str, Any]:
    """Map one client event payload onto VisitorEvent column values."""

    event_type = truncate(event.get("type") or "unknown", _STRING_LIMITS["event_type"])
    category = event.get("category") or categorize_event(event_type)
    event_data = event.get("data")
    if event_data is not None and not isinstance(event_data, (dict, list)):
        event_data = {"value": event_data}

    baths = _to_number(event.get("property_baths"))

    return {
        "session_id": session_id,
        "event_type": event_type,
        "event_category": truncate(category, _STRING_LIMITS["event_category"]),
        "platform": platform,
        "page_url": event.get("page_url"),
        "page_path": truncate(event.get("page_path"), _STRING_LIMITS["page_path"]),
        "page_title": truncate(event.get("page_title"), _STRING_LIMITS["page_title"]),
        "page_type": truncate(event.get("page_type"), _STRING_LIMITS["page_type"]),
        "listing_id": truncate(event.get("listing_id"), _STRING_LIMITS["listing_id"]),
        "listing_key": truncate(event.get("listing_key"), _STRING_LIMITS["listing_key"]),
        "property_city": truncate(event.get("property_city"), _STRING_LIMITS["property_city"]),
        "property_price": positive_int_or_none(event.get("property_price")),
        "property_beds": positive_int_or_none(event.get("property_beds")),
        "property_baths": abs(baths) if baths else None,
        "search_query": encode_search_query(event.get("search_query")),
        "search_results_count": non_negative_int(event.get("search_results_count")),
        "click_target": truncate(event.get("click_target"), _STRING_LIMITS["click_target"]),
        "click_element": truncate(event.get("click_element"), _STRING_LIMITS["click_element"]),
        "scroll_depth": clamp_scroll_depth(event.get("scroll_depth")),
        "time_on_page": non_negative_int(event.get("time_on_page")),
        "event_data": event_data,
        "event_timestamp": parse_client_timestamp(event.get("timestamp"), now=now),
        "created_at": now,
    }


__all__ = [
    "EVENT_CATEGORIES",
    "SEARCH_EVENT_TYPES",
    "categorize_event",
    "clamp_scroll_depth",
    "count_event_types",
    "extract_domain",
    "non_negative_int",
    "parse_client_timestamp",
    "positive_int_or_none",
    "sanitize_event",
    "truncate",
]
