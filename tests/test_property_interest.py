from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from seeding import visitor_event, visitor_session
from telemetry_api.jobs.engagement import run_property_interest_rollup
from telemetry_api.models import PropertyInterest, PropertyInterestRun
from telemetry_api.services.analytics.listings import ListingSummary, StaticListingLookup
from telemetry_api.services.engagement import ClientActivityTimeline, PropertyInterestTracker, describe_activity
from telemetry_api.services.engagement.interest import interest_score

NOW = datetime(2026, 1, 5, 14, 30, tzinfo=timezone.utc)
HOUR = datetime(2026, 1, 5, 13, 0, tzinfo=timezone.utc)


async def _seed_hour(session_factory) -> None:
    async with session_factory() as session:
        session.add_all(
            [
                visitor_session("u42", HOUR, user_id=42),
                visitor_session("anon", HOUR),
                visitor_event("u42", "property_view", HOUR + timedelta(minutes=5), listing_id="L1", property_city="Boston"),
                visitor_event("u42", "property_view", HOUR + timedelta(minutes=10), listing_id="L1", property_city="Boston"),
                visitor_event("u42", "time_on_page", HOUR + timedelta(minutes=12), listing_id="L1", time_on_page=120),
                visitor_event("u42", "photo_view", HOUR + timedelta(minutes=13), listing_id="L1"),
                visitor_event("u42", "photo_view", HOUR + timedelta(minutes=14), listing_id="L1"),
                visitor_event("u42", "photo_view", HOUR + timedelta(minutes=15), listing_id="L1"),
                visitor_event("u42", "favorite_add", HOUR + timedelta(minutes=16), listing_id="L1"),
                visitor_event("u42", "property_view", HOUR + timedelta(minutes=20), listing_id="L2"),
                visitor_event("anon", "property_view", HOUR + timedelta(minutes=21), listing_id="L1"),
            ]
        )
        await session.commit()


async def _rows(session_factory) -> dict[str, PropertyInterest]:
    async with session_factory() as session:
        result = await session.execute(select(PropertyInterest).where(PropertyInterest.user_id == 42))
        return {row.listing_id: row for row in result.scalars().all()}


def test_interest_score_components_and_caps() -> None:
    assert interest_score(view_count=2, total_view_duration=120, photo_views=3, favorited=True) == 49.0
    assert interest_score(view_count=0, total_view_duration=0, photo_views=0) == 0.0
    assert (
        interest_score(
            view_count=50,
            total_view_duration=10_000,
            photo_views=40,
            calculator_used=True,
            contact_clicked=True,
            shared=True,
            favorited=True,
        )
        == 100.0
    )


@pytest.mark.asyncio
async def test_hourly_rollup_scores_client_listings(session_factory) -> None:
    await _seed_hour(session_factory)
    lookup = StaticListingLookup([ListingSummary(listing_id="L2", city="Cambridge")])
    async with session_factory() as session:
        summary = await PropertyInterestTracker(session, listing_lookup=lookup).run_hourly(now=NOW)

    assert summary == {
        "hour_start": HOUR.isoformat(),
        "status": "created",
        "pairs_updated": 2,
        "backfilled": [],
    }
    rows = await _rows(session_factory)
    assert rows["L1"].view_count == 2
    assert rows["L1"].total_view_duration == 120
    assert rows["L1"].photo_views == 3
    assert rows["L1"].favorited is True
    assert rows["L1"].property_city == "Boston"
    assert rows["L1"].interest_score == 49.0
    assert rows["L2"].property_city == "Cambridge"
    assert rows["L2"].interest_score == 10.0


@pytest.mark.asyncio
async def test_rerunning_an_hour_does_not_double_count(session_factory) -> None:
    await _seed_hour(session_factory)
    async with session_factory() as session:
        first = await PropertyInterestTracker(session).run_hourly(now=NOW)
    async with session_factory() as session:
        second = await PropertyInterestTracker(session).run_hourly(now=NOW)

    assert first["status"] == "created"
    assert second["status"] == "skipped"
    rows = await _rows(session_factory)
    assert rows["L1"].view_count == 2
    assert rows["L1"].interest_score == 49.0


@pytest.mark.asyncio
async def test_later_hours_accumulate_and_missed_hours_are_backfilled(session_factory) -> None:
    await _seed_hour(session_factory)
    async with session_factory() as session:
        await PropertyInterestTracker(session).run_hourly(now=NOW)
        session.add_all(
            [
                visitor_event("u42", "property_view", HOUR + timedelta(hours=1, minutes=10), listing_id="L1"),
                visitor_event("u42", "contact_click", HOUR + timedelta(hours=2, minutes=5), listing_id="L1"),
            ]
        )
        await session.commit()

    async with session_factory() as session:
        summary = await PropertyInterestTracker(session).run_hourly(now=NOW + timedelta(hours=2))

    assert summary["hour_start"] == (HOUR + timedelta(hours=2)).isoformat()
    assert summary["backfilled"] == [(HOUR + timedelta(hours=1)).isoformat()]
    rows = await _rows(session_factory)
    assert rows["L1"].view_count == 3
    assert rows["L1"].contact_clicked is True
    assert rows["L1"].interest_score == 71.0
    assert rows["L1"].first_viewed_at.replace(tzinfo=timezone.utc) == HOUR + timedelta(minutes=5)
    async with session_factory() as session:
        runs = (await session.execute(select(func.count()).select_from(PropertyInterestRun))).scalar_one()
    assert runs == 3


@pytest.mark.asyncio
async def test_top_properties_and_cities_of_interest(session_factory) -> None:
    await _seed_hour(session_factory)
    lookup = StaticListingLookup(
        [
            ListingSummary(listing_id="L1", street_address="1 Main St", city="Boston"),
            ListingSummary(listing_id="L2", city="Boston"),
        ]
    )
    async with session_factory() as session:
        tracker = PropertyInterestTracker(session, listing_lookup=lookup)
        await tracker.run_hourly(now=NOW)
        properties = await tracker.get_top_properties(42)
        cities = await tracker.get_cities_of_interest(42)
        summary = await tracker.get_summary(42)
        nobody = await tracker.get_top_properties(7)

    assert [item["listing_id"] for item in properties] == ["L1", "L2"]
    assert properties[0]["listing"]["street_address"] == "1 Main St"
    assert properties[0]["favorited"] is True
    assert cities == [{"city": "Boston", "property_count": 2, "total_views": 3, "avg_interest": 29.5}]
    assert summary["total_properties"] == 2
    assert summary["total_views"] == 3
    assert summary["max_interest_score"] == 49.0
    assert nobody == []


@pytest.mark.asyncio
async def test_timeline_lists_client_events_newest_first(session_factory) -> None:
    await _seed_hour(session_factory)
    async with session_factory() as session:
        timeline = ClientActivityTimeline(session)
        first_page = await timeline.get(42, limit=3)
        last_page = await timeline.get(42, limit=3, offset=6)

    assert first_page["total"] == 8
    assert first_page["has_more"] is True
    assert [item["event_type"] for item in first_page["activities"]] == [
        "property_view",
        "favorite_add",
        "photo_view",
    ]
    assert first_page["activities"][0]["description"] == "Viewed a property (L2)"
    assert len(last_page["activities"]) == 2
    assert last_page["has_more"] is False
    assert all(item["session_id"] == "u42" for item in last_page["activities"])


def test_describe_activity_falls_back_for_unknown_types() -> None:
    assert describe_activity("calculator_use") == "Used mortgage calculator"
    assert describe_activity("favorite_add", "L9") == "Added property to favorites (L9)"
    assert describe_activity("teleport") == "Unknown activity"


@pytest.mark.asyncio
async def test_rollup_job_entrypoint_uses_session_factory(session_factory) -> None:
    await _seed_hour(session_factory)

    summary = await run_property_interest_rollup(session_factory=session_factory, now=NOW)

    assert summary["status"] == "created"
    assert summary["pairs_updated"] == 2


@pytest.mark.asyncio
async def test_client_interest_routes(app_with_db, client) -> None:
    _, session_factory = app_with_db
    await _seed_hour(session_factory)
    await run_property_interest_rollup(session_factory=session_factory, now=NOW)

    properties = await client.get("/api/v1/engagement/clients/42/properties", params={"limit": 1})
    cities = await client.get("/api/v1/engagement/clients/42/cities")
    timeline = await client.get("/api/v1/engagement/clients/42/timeline", params={"limit": 2, "offset": 1})
    invalid = await client.get("/api/v1/engagement/clients/42/timeline", params={"offset": -1})

    assert properties.status_code == 200
    data = properties.json()["data"]
    assert [item["listing_id"] for item in data["properties"]] == ["L1"]
    assert data["properties"][0]["listing"] is None
    assert data["summary"]["total_properties"] == 2
    assert cities.json()["data"]["cities"][0]["city"] == "Boston"
    body = timeline.json()["data"]
    assert body["total"] == 8
    assert [item["event_type"] for item in body["activities"]] == ["favorite_add", "photo_view"]
    assert invalid.status_code == 422
