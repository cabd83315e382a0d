from datetime import datetime, timezone

import pytest

from telemetry_api.services.tracking.sanitize import (
    categorize_event,
    clamp_scroll_depth,
    count_event_types,
    extract_domain,
    parse_client_timestamp,
    positive_int_or_none,
    sanitize_event,
)

NOW = datetime(2026, 1, 5, 14, 30, tzinfo=timezone.utc)


def test_categorize_known_and_unknown_events() -> None:
    assert categorize_event("page_view") == "navigation"
    assert categorize_event("favorite_add") == "conversion"
    assert categorize_event("external_click") == "outbound"
    assert categorize_event("mystery") == "other"
    assert categorize_event(None) == "other"


@pytest.mark.parametrize(
    "url,expected",
    [
        ("https://www.google.com/search?q=homes", "google.com"),
        ("http://news.example.org:8080/path", "news.example.org"),
        ("not a url", None),
        ("", None),
        (None, None),
    ],
)
def test_extract_domain(url, expected) -> None:
    assert extract_domain(url) == expected


def test_count_event_types() -> None:
    events = [
        {"type": "page_view"},
        {"type": "page_view"},
        {"type": "property_view"},
        {"type": "search"},
        {"type": "search_execute"},
        {"type": "scroll_depth"},
    ]

    assert count_event_types(events) == {"page_views": 2, "property_views": 1, "searches": 2}


@pytest.mark.parametrize(
    "value,expected",
    [(55, 55), (150, 100), (-40, 40), ("72.9", 72), ("abc", None), (float("nan"), None), (None, None)],
)
def test_clamp_scroll_depth(value, expected) -> None:
    assert clamp_scroll_depth(value) == expected


@pytest.mark.parametrize(
    "value,expected",
    [(450000, 450000), (-3, 3), ("4", 4), (0, None), ("n/a", None), (True, None), (float("inf"), None)],
)
def test_positive_int_or_none(value, expected) -> None:
    assert positive_int_or_none(value) == expected


def test_parse_client_timestamp_formats() -> None:
    assert parse_client_timestamp("2026-01-05T12:00:00Z", now=NOW) == datetime(2026, 1, 5, 12, tzinfo=timezone.utc)
    assert parse_client_timestamp("2026-01-05T07:00:00-05:00", now=NOW) == datetime(
        2026, 1, 5, 12, tzinfo=timezone.utc
    )
    assert parse_client_timestamp(1767614400, now=NOW) == datetime(2026, 1, 5, 12, tzinfo=timezone.utc)
    assert parse_client_timestamp(1767614400000, now=NOW) == datetime(2026, 1, 5, 12, tzinfo=timezone.utc)


@pytest.mark.parametrize("value", [None, "", "yesterday", {"nested": True}, 1e30])
def test_parse_client_timestamp_falls_back_to_now(value) -> None:
    assert parse_client_timestamp(value, now=NOW) == NOW


def test_sanitize_event_maps_and_truncates_fields() -> None:
    event = {
        "type": "property_view",
        "page_url": "https://example.com/listing/abc",
        "page_path": "/listing/" + "x" * 600,
        "page_title": "T" * 300,
        "listing_id": "MLS-123",
        "property_city": "Austin",
        "property_price": "-525000",
        "property_beds": 3,
        "property_baths": -2.5,
        "scroll_depth": 140,
        "time_on_page": -12,
        "search_query": {"city": "Austin", "beds": 3},
        "data": "raw-string",
        "timestamp": "2026-01-05T14:29:00Z",
    }

    row = sanitize_event(event, session_id="sess-1", platform="web_desktop", now=NOW)

    assert row["session_id"] == "sess-1"
    assert row["event_type"] == "property_view"
    assert row["event_category"] == "navigation"
    assert len(row["page_path"]) == 500
    assert len(row["page_title"]) == 255
    assert row["property_price"] == 525000
    assert row["property_beds"] == 3
    assert row["property_baths"] == 2.5
    assert row["scroll_depth"] == 100
    assert row["time_on_page"] == 0
    assert row["search_query"] == '{"city": "Austin", "beds": 3}'
    assert row["event_data"] == {"value": "raw-string"}
    assert row["event_timestamp"] == datetime(2026, 1, 5, 14, 29, tzinfo=timezone.utc)
    assert row["created_at"] == NOW


def test_sanitize_event_defaults_for_sparse_payload() -> None:
    row = sanitize_event({}, session_id="sess-2", platform="ios_app", now=NOW)

    assert row["event_type"] == "unknown"
    assert row["event_category"] == "other"
    assert row["platform"] == "ios_app"
    assert row["search_query"] is None
    assert row["property_baths"] is None
    assert row["event_timestamp"] == NOW


def test_client_category_wins_over_default() -> None:
    row = sanitize_event({"type": "page_view", "category": "custom"}, session_id="s", platform="web_mobile", now=NOW)

    assert row["event_category"] == "custom"
