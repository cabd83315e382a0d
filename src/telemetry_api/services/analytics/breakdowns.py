"""Pure helpers shared by the aggregation jobs and dashboard reads."""

from __future__ import annotations

import json
from datetime import datetime, time, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Iterable, Mapping

from telemetry_api.core.clock import utcnow

DIRECT_SOURCE = "Direct"

# Substring -> display name, checked in order.
SOURCE_NAMES: tuple[tuple[str, str], ...] = (
    ("google", "Google"),
    ("bing", "Bing"),
    ("yahoo", "Yahoo"),
    ("duckduckgo", "DuckDuckGo"),
    ("baidu", "Baidu"),
    ("yandex", "Yandex"),
    ("facebook", "Facebook"),
    ("fb.", "Facebook"),
    ("instagram", "Instagram"),
    ("twitter", "Twitter/X"),
    ("linkedin", "LinkedIn"),
    ("pinterest", "Pinterest"),
    ("reddit", "Reddit"),
    ("chatgpt", "ChatGPT"),
    ("openai", "ChatGPT"),
    ("tiktok", "TikTok"),
    ("youtube", "YouTube"),
)

# Short hosts that would false-match as substrings (``t.co`` in ``microsoft.com``).
EXACT_SOURCE_HOSTS: dict[str, str] = {
    "t.co": "Twitter/X",
    "x.com": "Twitter/X",
}

RANGE_WINDOWS: dict[str, timedelta] = {
    "15m": timedelta(minutes=15),
    "1h": timedelta(hours=1),
    "4h": timedelta(hours=4),
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
    "90d": timedelta(days=90),
}
DEFAULT_RANGE = "7d"


def merge_count_maps(maps: Iterable[Mapping[str, Any] | str | None], limit: int = 20) -> dict[str, int]:
    """Sum per-key counts across maps (or their JSON text) and keep the largest ``limit``."""

    merged: dict[str, int] = {}
    for item in maps:
        if isinstance(item, str):
            try:
                item = json.loads(item)
            except json.JSONDecodeError:
                continue
        if not isinstance(item, Mapping):
            continue
        for key, count in item.items():
            try:
                merged[str(key)] = merged.get(str(key), 0) + int(count)
            except (TypeError, ValueError):
                continue
    return top_n(merged, limit)


def top_n(counts: Mapping[str, int], limit: int) -> dict[str, int]:
    ordered = sorted(counts.items(), key=lambda item: item[1], reverse=True)
    return dict(ordered[: max(limit, 0)])


def percentage_change(old: float | int | None, new: float | int | None) -> float | None:
    """Relative change in percent, rounded to one decimal.

    ``None`` means there is no baseline row. A zero baseline always reports
    ``100.0``, a sentinel for "nothing to compare against" rather than growth.
    """

    if old is None:
        return None
    new_value = float(new or 0)
    if not old:
        return 100.0
    return round((new_value - float(old)) / float(old) * 100, 1)


def normalize_source_name(domain: str | None) -> str:
    if not domain:
        return DIRECT_SOURCE
    lowered = domain.lower()
    host = lowered[4:] if lowered.startswith("www.") else lowered
    if host in EXACT_SOURCE_HOSTS:
        return EXACT_SOURCE_HOSTS[host]
    for pattern, name in SOURCE_NAMES:
        if pattern in lowered:
            return name
    return domain


def _present(value: Any) -> bool:
    return value not in (None, "", "0", 0, False) and value != [] and value != {}


def _first(query: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = query.get(key)
        if value is not None:
            return value
    return None


def _display(value: Any) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _thousands(value: Any) -> str | None:
    try:
        amount = Decimal(str(value)) / 1000
    except (InvalidOperation, ValueError):
        return None
    rounded = int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return f"{rounded:,}"


def summarize_search_query(query: Any) -> str:
    """Human-readable summary of a stored search filter map.

    Returns ``""`` for anything that is not a non-empty mapping.
    """

    if not isinstance(query, Mapping) or not query:
        return ""

    parts: list[str] = []
    for keys in (("city", "City"), ("zip", "postal_code"), ("neighborhood", "subdivision")):
        value = _first(query, *keys)
        if _present(value):
            parts.append(_display(value))

    property_type = _first(query, "property_type", "PropertyType")
    if _present(property_type) and property_type != "Residential":
        parts.append(_display(property_type))

    min_price = _first(query, "min_price", "price_min")
    max_price = _first(query, "max_price", "price_max")
    low = _thousands(min_price) if _present(min_price) else None
    high = _thousands(max_price) if _present(max_price) else None
    if low and high:
        parts.append(f"${low}K-${high}K")
    elif low:
        parts.append(f"${low}K+")
    elif high:
        parts.append(f"Under ${high}K")

    beds = _first(query, "beds", "bedrooms")
    if _present(beds):
        parts.append(f"{_display(beds)}+ beds")
    baths = _first(query, "baths", "bathrooms")
    if _present(baths):
        parts.append(f"{_display(baths)}+ baths")

    school_grade = query.get("school_grade")
    if _present(school_grade):
        parts.append(f"{_display(school_grade)} schools")

    status = query.get("status")
    if _present(status) and str(status).lower() != "active":
        text = str(status)
        parts.append(text[:1].upper() + text[1:])

    if parts:
        return ", ".join(parts)

    keyword = _first(query, "keyword", "search", "term")
    if _present(keyword):
        return _display(keyword)
    return "All Properties"


def decode_search_query(raw: str | None) -> Any:
    if not raw:
        return None
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return None


def merge_searches_by_summary(rows: Iterable[tuple[str, int]], limit: int) -> list[dict[str, Any]]:
    """Collapse raw search rows into summary buckets with share of total."""

    merged: dict[str, int] = {}
    for raw, count in rows:
        summary = summarize_search_query(decode_search_query(raw))
        if summary:
            merged[summary] = merged.get(summary, 0) + int(count)
    ordered = sorted(merged.items(), key=lambda item: item[1], reverse=True)[:limit]
    total = sum(count for _, count in ordered)
    return [
        {
            "query": summary,
            "count": count,
            "percentage": round(count / total * 100, 1) if total else 0.0,
        }
        for summary, count in ordered
    ]


def start_of_day(value: datetime) -> datetime:
    return datetime.combine(value.date(), time.min, tzinfo=timezone.utc)


def resolve_range(range_key: str | None, *, now: datetime | None = None) -> tuple[datetime, datetime]:
    """Translate a dashboard range token into a ``[start, end)`` UTC window."""

    now = now or utcnow()
    if range_key == "today":
        return start_of_day(now), now
    window = RANGE_WINDOWS.get(range_key or "", RANGE_WINDOWS[DEFAULT_RANGE])
    return now - window, now


def previous_window(start: datetime, end: datetime) -> tuple[datetime, datetime]:
    return start - (end - start), start


__all__ = [
    "DIRECT_SOURCE",
    "RANGE_WINDOWS",
    "decode_search_query",
    "merge_count_maps",
    "merge_searches_by_summary",
    "normalize_source_name",
    "percentage_change",
    "previous_window",
    "resolve_range",
    "start_of_day",
    "summarize_search_query",
    "top_n",
]
