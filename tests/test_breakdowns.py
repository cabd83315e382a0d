from datetime import datetime, timedelta, timezone

import pytest

from telemetry_api.services.analytics.breakdowns import (
    merge_count_maps,
    merge_searches_by_summary,
    normalize_source_name,
    percentage_change,
    previous_window,
    resolve_range,
    summarize_search_query,
)

NOW = datetime(2026, 1, 5, 14, 30, tzinfo=timezone.utc)


def test_merge_count_maps_sums_and_limits() -> None:
    merged = merge_count_maps(
        [
            {"US": 5, "CA": 2},
            '{"US": 1, "GB": 4}',
            None,
            "not json",
            {"DE": "x"},
        ],
        limit=2,
    )

    assert merged == {"US": 6, "GB": 4}


@pytest.mark.parametrize(
    "old,new,expected",
    [
        (100, 150, 50.0),
        (200, 150, -25.0),
        (3, 4, 33.3),
        (0, 5, 100.0),
        (0, 0, 100.0),
        (None, 5, None),
    ],
)
def test_percentage_change(old, new, expected) -> None:
    assert percentage_change(old, new) == expected


@pytest.mark.parametrize(
    "domain,expected",
    [
        ("google.com", "Google"),
        ("l.facebook.com", "Facebook"),
        ("t.co", "Twitter/X"),
        ("chatgpt.com", "ChatGPT"),
        ("microsoft.com", "microsoft.com"),
        ("realtor-blog.example", "realtor-blog.example"),
        (None, "Direct"),
        ("", "Direct"),
    ],
)
def test_normalize_source_name(domain, expected) -> None:
    assert normalize_source_name(domain) == expected


def test_summarize_search_query_builds_readable_summary() -> None:
    query = {
        "city": "Austin",
        "property_type": "Condo",
        "min_price": 250000,
        "max_price": 500000,
        "beds": 3,
        "baths": 2.0,
        "status": "pending",
    }

    assert summarize_search_query(query) == "Austin, Condo, $250K-$500K, 3+ beds, 2+ baths, Pending"


def test_summarize_search_query_price_bounds() -> None:
    assert summarize_search_query({"min_price": 400000}) == "$400K+"
    assert summarize_search_query({"max_price": 1250000}) == "Under $1,250K"


def test_summarize_search_query_defaults() -> None:
    assert summarize_search_query({"property_type": "Residential", "status": "Active"}) == "All Properties"
    assert summarize_search_query({"keyword": "pool"}) == "pool"
    assert summarize_search_query({}) == ""
    assert summarize_search_query("Austin") == ""


def test_merge_searches_by_summary_collapses_equivalent_queries() -> None:
    rows = [
        ('{"city": "Austin", "beds": 3}', 4),
        ('{"City": "Austin", "bedrooms": 3}', 2),
        ('{"zip": "78704"}', 2),
        ("garbage", 10),
    ]

    result = merge_searches_by_summary(rows, limit=10)

    assert result == [
        {"query": "Austin, 3+ beds", "count": 6, "percentage": 75.0},
        {"query": "78704", "count": 2, "percentage": 25.0},
    ]


def test_resolve_range_windows() -> None:
    assert resolve_range("1h", now=NOW) == (NOW - timedelta(hours=1), NOW)
    assert resolve_range("today", now=NOW) == (datetime(2026, 1, 5, tzinfo=timezone.utc), NOW)
    assert resolve_range("bogus", now=NOW) == (NOW - timedelta(days=7), NOW)
    assert resolve_range(None, now=NOW) == (NOW - timedelta(days=7), NOW)


def test_previous_window_has_equal_length() -> None:
    start, end = resolve_range("24h", now=NOW)

    assert previous_window(start, end) == (start - timedelta(hours=24), start)
