from datetime import date, datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from seeding import visitor_event, visitor_session
from telemetry_api.core.settings import Settings
from telemetry_api.models import DailyAggregate, HourlyAggregate, PresenceRecord, VisitorEvent
from telemetry_api.services.analytics.aggregator import AnalyticsAggregator
from telemetry_api.services.analytics.listings import ListingSummary, StaticListingLookup

HOUR = datetime(2026, 1, 5, 13, tzinfo=timezone.utc)
NOW = datetime(2026, 1, 5, 14, 30, tzinfo=timezone.utc)


async def _seed_hour(session_factory) -> None:
    async with session_factory() as session:
        session.add_all(
            [
                visitor_session(
                    "s1",
                    HOUR + timedelta(minutes=5),
                    last_seen=HOUR + timedelta(minutes=15),
                    visitor_hash="h1",
                    referrer_domain="google.com",
                    country_code="US",
                    city="Austin",
                    page_views=3,
                ),
                visitor_session(
                    "s2",
                    HOUR + timedelta(minutes=20),
                    platform="ios_app",
                    device_type="mobile",
                    country_code="US",
                    city="Austin",
                ),
                visitor_session("crawler", HOUR + timedelta(minutes=30), is_bot=True, page_views=40),
                visitor_session("earlier", HOUR - timedelta(minutes=30), page_views=2),
            ]
        )
        session.add_all(
            [
                visitor_event("s1", "page_view", HOUR + timedelta(minutes=5), page_path="/"),
                visitor_event("s1", "page_view", HOUR + timedelta(minutes=7), page_path="/"),
                visitor_event("s1", "page_view", HOUR + timedelta(minutes=9), page_path="/search"),
                visitor_event("s1", "property_view", HOUR + timedelta(minutes=10), listing_id="L1", property_city="Austin"),
                visitor_event("s2", "property_view", HOUR + timedelta(minutes=21), listing_id="L1", property_city="Austin"),
                visitor_event("s2", "property_view", HOUR + timedelta(minutes=22), listing_id="L2"),
                visitor_event("s1", "search", HOUR + timedelta(minutes=11), search_query={"city": "Austin"}),
                visitor_event("s1", "scroll_depth", HOUR + timedelta(minutes=12), scroll_depth=50),
                visitor_event("s2", "scroll_depth", HOUR + timedelta(minutes=23), scroll_depth=70),
                visitor_event("earlier", "page_view", HOUR - timedelta(minutes=30), page_path="/old"),
            ]
        )
        await session.commit()


@pytest.mark.asyncio
async def test_hourly_aggregation_writes_bucket_once(session_factory) -> None:
    await _seed_hour(session_factory)
    listings = StaticListingLookup([ListingSummary(listing_id="L2", city="Round Rock")])
    aggregator = AnalyticsAggregator(session_factory, listing_lookup=listings)

    first = await aggregator.run_hourly(now=NOW)
    second = await aggregator.aggregate_hour(HOUR + timedelta(minutes=42))

    assert first["status"] == "created"
    assert first["hour_start"] == HOUR.isoformat()
    assert first["unique_sessions"] == 2
    assert second["status"] == "skipped"

    async with session_factory() as session:
        rows = (await session.execute(select(HourlyAggregate))).scalars().all()

    assert len(rows) == 1
    row = rows[0]
    assert row.unique_sessions == 2
    assert row.new_sessions == 1
    assert row.returning_sessions == 1
    assert row.page_views == 4
    assert row.bounce_sessions == 1
    assert 299 <= row.avg_session_duration <= 300
    assert row.avg_pages_per_session == 2.0
    assert row.avg_scroll_depth == 60.0
    assert row.platform_breakdown == {"web_desktop": 1, "ios_app": 1}
    assert row.device_breakdown == {"desktop": 1, "mobile": 1}
    assert row.country_breakdown == {"US": 2}
    assert row.referrer_breakdown == {"google.com": 1, "direct": 1}
    assert row.top_cities == [{"city": "Austin", "country": "US", "count": 2}]
    assert row.top_pages[0] == {"path": "/", "views": 2}
    assert {"path": "/old", "views": 1} not in row.top_pages
    assert row.top_properties[0] == {"listing_id": "L1", "city": "Austin", "views": 2}
    assert {"listing_id": "L2", "city": "Round Rock", "views": 1} in row.top_properties
    assert row.top_searches == [{"query": "Austin", "raw": '{"city": "Austin"}', "count": 1}]


@pytest.mark.asyncio
async def test_empty_hour_still_records_zero_bucket(session_factory) -> None:
    result = await AnalyticsAggregator(session_factory).aggregate_hour(HOUR)

    assert result["status"] == "created"
    assert result["unique_sessions"] == 0

    async with session_factory() as session:
        row = (await session.execute(select(HourlyAggregate))).scalar_one()

    assert row.page_views == 0
    assert row.platform_breakdown == {}
    assert row.top_pages == []


def _hourly(hour: int, **values) -> HourlyAggregate:
    return HourlyAggregate(hour_start=datetime(2026, 1, 4, hour, tzinfo=timezone.utc), **values)


@pytest.mark.asyncio
async def test_daily_aggregation_rolls_up_hourly_rows(session_factory) -> None:
    async with session_factory() as session:
        session.add_all(
            [
                _hourly(
                    10,
                    unique_sessions=4,
                    new_sessions=3,
                    returning_sessions=1,
                    page_views=10,
                    property_views=2,
                    search_count=1,
                    bounce_sessions=2,
                    avg_session_duration=100,
                    avg_pages_per_session=2.5,
                    avg_scroll_depth=40.0,
                    platform_breakdown={"web_desktop": 3, "ios_app": 1},
                    country_breakdown={"US": 4},
                ),
                _hourly(
                    11,
                    unique_sessions=6,
                    new_sessions=2,
                    returning_sessions=4,
                    page_views=20,
                    property_views=5,
                    search_count=0,
                    bounce_sessions=1,
                    avg_session_duration=200,
                    avg_pages_per_session=3.5,
                    avg_scroll_depth=60.0,
                    platform_breakdown={"web_desktop": 2, "web_mobile": 4},
                    country_breakdown={"US": 5, "CA": 1},
                ),
                DailyAggregate(bucket_date=date(2026, 1, 3), unique_sessions=5, page_views=40),
                visitor_event("s9", "page_view", datetime(2026, 1, 4, 10, 15, tzinfo=timezone.utc), page_path="/x"),
            ]
        )
        await session.commit()

    aggregator = AnalyticsAggregator(session_factory)
    result = await aggregator.run_daily(now=datetime(2026, 1, 5, 0, 15, tzinfo=timezone.utc))
    rerun = await aggregator.aggregate_day(date(2026, 1, 4))

    assert result["status"] == "created"
    assert result["hourly_buckets"] == 2
    assert rerun["status"] == "skipped"

    async with session_factory() as session:
        row = (
            await session.execute(select(DailyAggregate).where(DailyAggregate.bucket_date == date(2026, 1, 4)))
        ).scalar_one()

    assert row.unique_sessions == 10
    assert row.new_sessions == 5
    assert row.returning_sessions == 5
    assert row.page_views == 30
    assert row.property_views == 7
    assert row.bounce_sessions == 3
    assert row.bounce_rate == 30.0
    assert row.avg_session_duration == 150
    assert row.avg_pages_per_session == 3.0
    assert row.avg_scroll_depth == 50.0
    assert row.sessions_change_pct == 100.0
    assert row.pageviews_change_pct == -25.0
    assert row.platform_breakdown == {"web_desktop": 5, "web_mobile": 4, "ios_app": 1}
    assert row.country_breakdown == {"US": 9, "CA": 1}
    assert row.top_pages == [{"path": "/x", "views": 1}]


@pytest.mark.asyncio
async def test_daily_without_previous_day_has_no_change(session_factory) -> None:
    result = await AnalyticsAggregator(session_factory).aggregate_day(date(2026, 1, 4))

    assert result["status"] == "created"

    async with session_factory() as session:
        row = (await session.execute(select(DailyAggregate))).scalar_one()

    assert row.unique_sessions == 0
    assert row.bounce_rate == 0.0
    assert row.sessions_change_pct is None


@pytest.mark.asyncio
async def test_sweep_presence_removes_stale_rows(session_factory) -> None:
    async with session_factory() as session:
        session.add_all(
            [
                PresenceRecord(session_id="fresh", last_heartbeat=NOW - timedelta(seconds=119)),
                PresenceRecord(session_id="edge", last_heartbeat=NOW - timedelta(seconds=120)),
                PresenceRecord(session_id="stale", last_heartbeat=NOW - timedelta(seconds=121)),
            ]
        )
        await session.commit()

    deleted = await AnalyticsAggregator(session_factory).sweep_presence(now=NOW)

    assert deleted == 1
    async with session_factory() as session:
        remaining = (await session.execute(select(PresenceRecord.session_id))).scalars().all()
    assert sorted(remaining) == ["edge", "fresh"]


@pytest.mark.asyncio
async def test_retention_cleanup_deletes_in_batches(session_factory) -> None:
    expired = NOW - timedelta(days=40)
    async with session_factory() as session:
        session.add_all(
            [
                visitor_session("old", expired),
                visitor_session("new", NOW - timedelta(days=1)),
                visitor_event("old", "page_view", expired),
                visitor_event("old", "page_view", expired + timedelta(minutes=1)),
                visitor_event("old", "page_view", expired + timedelta(minutes=2)),
                visitor_event("new", "page_view", NOW - timedelta(days=1)),
            ]
        )
        await session.commit()

    aggregator = AnalyticsAggregator(session_factory, settings=Settings(retention_days=30, cleanup_batch_size=2))

    first = await aggregator.cleanup_retention(now=NOW)
    second = await aggregator.cleanup_retention(now=NOW)

    assert first.events_deleted == 2
    assert first.sessions_deleted == 1
    assert first.needs_followup is True
    assert first.cutoff == NOW - timedelta(days=30)
    assert second.events_deleted == 1
    assert second.sessions_deleted == 0
    assert second.needs_followup is False
    assert second.as_dict()["cutoff"] == (NOW - timedelta(days=30)).isoformat()

    async with session_factory() as session:
        remaining = (await session.execute(select(func.count()).select_from(VisitorEvent))).scalar_one()
    assert remaining == 1


@pytest.mark.asyncio
async def test_status_reports_latest_buckets_and_counts(session_factory) -> None:
    await _seed_hour(session_factory)
    aggregator = AnalyticsAggregator(session_factory)
    await aggregator.aggregate_hour(HOUR)

    status = await aggregator.status()

    assert status["latest_hourly_aggregation"] == HOUR.isoformat()
    assert status["latest_daily_aggregation"] is None
    assert status["hourly_records"] == 1
    assert status["raw_sessions"] == 4
    assert status["raw_events"] == 10
    assert status["oldest_event"] == (HOUR - timedelta(minutes=30)).isoformat()
    assert status["retention_days"] == 30


def _fail_once(monkeypatch, aggregator: AnalyticsAggregator, attribute: str) -> list[int]:
    calls: list[int] = []
    original = getattr(aggregator, attribute)

    async def _flaky(*args, **kwargs):
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("database went away")
        return await original(*args, **kwargs)

    monkeypatch.setattr(aggregator, attribute, _flaky)
    return calls


@pytest.mark.asyncio
async def test_failed_hour_leaves_no_row_and_rerun_creates_it(session_factory, monkeypatch) -> None:
    await _seed_hour(session_factory)
    aggregator = AnalyticsAggregator(session_factory)
    _fail_once(monkeypatch, aggregator, "_top_searches")

    with pytest.raises(RuntimeError):
        await aggregator.aggregate_hour(HOUR)

    async with session_factory() as session:
        assert (await session.execute(select(func.count()).select_from(HourlyAggregate))).scalar_one() == 0

    result = await aggregator.aggregate_hour(HOUR)

    assert result["status"] == "created"
    assert result["unique_sessions"] == 2


@pytest.mark.asyncio
async def test_next_hourly_run_fills_hour_that_failed(session_factory, monkeypatch) -> None:
    async with session_factory() as session:
        session.add(HourlyAggregate(hour_start=datetime(2026, 1, 5, 8, tzinfo=timezone.utc), unique_sessions=1))
        session.add(visitor_session("late", datetime(2026, 1, 5, 9, 40, tzinfo=timezone.utc)))
        await session.commit()

    aggregator = AnalyticsAggregator(session_factory)
    calls = _fail_once(monkeypatch, aggregator, "_session_scalars")

    with pytest.raises(RuntimeError):
        await aggregator.run_hourly(now=datetime(2026, 1, 5, 10, 5, tzinfo=timezone.utc))

    result = await aggregator.run_hourly(now=datetime(2026, 1, 5, 11, 5, tzinfo=timezone.utc))

    assert result["status"] == "created"
    assert result["hour_start"] == datetime(2026, 1, 5, 10, tzinfo=timezone.utc).isoformat()
    assert result["backfilled"] == [datetime(2026, 1, 5, 9, tzinfo=timezone.utc).isoformat()]
    assert len(calls) == 3

    async with session_factory() as session:
        rows = (
            await session.execute(select(HourlyAggregate).order_by(HourlyAggregate.hour_start))
        ).scalars().all()

    assert [row.hour_start.hour for row in rows] == [8, 9, 10]
    assert rows[1].unique_sessions == 1


@pytest.mark.asyncio
async def test_hourly_backfill_ignores_hours_before_first_bucket(session_factory) -> None:
    result = await AnalyticsAggregator(session_factory).run_hourly(now=NOW)

    assert result["backfilled"] == []
    async with session_factory() as session:
        assert (await session.execute(select(func.count()).select_from(HourlyAggregate))).scalar_one() == 1


@pytest.mark.asyncio
async def test_next_daily_run_fills_missing_day(session_factory) -> None:
    async with session_factory() as session:
        session.add(DailyAggregate(bucket_date=date(2026, 1, 1), unique_sessions=3, page_views=9))
        await session.commit()

    result = await AnalyticsAggregator(session_factory).run_daily(now=datetime(2026, 1, 5, 0, 15, tzinfo=timezone.utc))

    assert result["day"] == "2026-01-04"
    assert result["backfilled"] == ["2026-01-02", "2026-01-03"]

    async with session_factory() as session:
        days = (
            await session.execute(select(DailyAggregate.bucket_date).order_by(DailyAggregate.bucket_date))
        ).scalars().all()

    assert days == [date(2026, 1, d) for d in (1, 2, 3, 4)]
