from datetime import datetime, timedelta, timezone

import pytest

from seeding import visitor_event, visitor_session
from telemetry_api.core.settings import settings
from telemetry_api.models import AgentClientRelationship, EngagementScore


async def _seed_recent(session_factory) -> None:
    now = datetime.now(timezone.utc)
    started = now - timedelta(hours=2)
    async with session_factory() as session:
        session.add_all(
            [
                visitor_session("dash-1", started, last_seen=started + timedelta(minutes=4), page_views=2, property_views=1),
                visitor_event("dash-1", "page_view", started, page_path="/"),
                visitor_event("dash-1", "property_view", started + timedelta(minutes=2), listing_id="L1"),
            ]
        )
        await session.commit()


@pytest.mark.asyncio
async def test_stats_returns_success_envelope(app_with_db, client) -> None:
    _, session_factory = app_with_db
    await _seed_recent(session_factory)

    response = await client.get("/api/v1/analytics/admin/stats", params={"range": "24h"})

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["data"]["total_sessions"] == 1
    assert body["data"]["total_property_views"] == 1
    assert body["data"]["source"] == "raw"


@pytest.mark.asyncio
async def test_stats_rejects_unknown_range(client) -> None:
    response = await client.get("/api/v1/analytics/admin/stats", params={"range": "1y"})

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_admin_key_is_enforced_when_configured(client, monkeypatch) -> None:
    monkeypatch.setattr(settings, "admin_api_key", "secret")

    denied = await client.get("/api/v1/analytics/admin/realtime")
    wrong = await client.get("/api/v1/analytics/admin/realtime", headers={"X-API-Key": "nope"})
    allowed = await client.get("/api/v1/analytics/admin/realtime", headers={"X-API-Key": "secret"})

    assert denied.status_code == 401
    assert wrong.status_code == 401
    assert allowed.status_code == 200
    assert allowed.json()["success"] is True


@pytest.mark.asyncio
async def test_session_journey_and_missing_session(app_with_db, client) -> None:
    _, session_factory = app_with_db
    await _seed_recent(session_factory)

    found = await client.get("/api/v1/analytics/admin/sessions/dash-1")
    missing = await client.get("/api/v1/analytics/admin/sessions/unknown")

    assert found.status_code == 200
    journey = found.json()["data"]
    assert journey["session"]["session_id"] == "dash-1"
    assert [event["event_type"] for event in journey["events"]] == ["page_view", "property_view"]
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_activity_defaults_to_short_window(app_with_db, client) -> None:
    _, session_factory = app_with_db
    await _seed_recent(session_factory)

    short = await client.get("/api/v1/analytics/admin/activity")
    wide = await client.get("/api/v1/analytics/admin/activity", params={"range": "24h", "per_page": 1})

    assert short.json()["data"]["total"] == 0
    data = wide.json()["data"]
    assert data["total"] == 2
    assert data["has_more"] is True
    assert len(data["events"]) == 1


@pytest.mark.asyncio
async def test_top_content_by_type(app_with_db, client) -> None:
    _, session_factory = app_with_db
    await _seed_recent(session_factory)

    response = await client.get("/api/v1/analytics/admin/top-content", params={"type": "properties", "range": "24h"})

    assert response.status_code == 200
    rows = response.json()["data"]
    assert rows[0]["listing_id"] == "L1"
    assert rows[0]["views"] == 1


@pytest.mark.asyncio
async def test_status_and_db_stats(app_with_db, client) -> None:
    _, session_factory = app_with_db
    await _seed_recent(session_factory)

    status_response = await client.get("/api/v1/analytics/admin/status")
    db_response = await client.get("/api/v1/analytics/admin/db-stats")

    status_data = status_response.json()["data"]
    assert status_data["raw_sessions"] == 1
    assert status_data["raw_events"] == 2
    assert status_data["latest_hourly_aggregation"] is None
    assert status_data["retention_days"] == settings.retention_days

    db_data = db_response.json()["data"]
    assert db_data["sessions"] == 1
    assert db_data["events"] == 2
    assert db_data["platforms"]["web_desktop"] == 1
    assert db_data["geolocation"]["database_available"] is False


@pytest.mark.asyncio
async def test_engagement_score_missing_without_calculation(client) -> None:
    response = await client.get("/api/v1/engagement/scores/77", params={"calculate_if_missing": "false"})

    assert response.status_code == 404


@pytest.mark.asyncio
async def test_engagement_agent_clients(app_with_db, client) -> None:
    _, session_factory = app_with_db
    now = datetime.now(timezone.utc)
    async with session_factory() as session:
        session.add_all(
            [
                AgentClientRelationship(agent_id=3, client_id=10, client_name="Ari"),
                AgentClientRelationship(agent_id=3, client_id=11),
                EngagementScore(user_id=10, agent_id=3, score=55.0, calculated_at=now),
            ]
        )
        await session.commit()

    response = await client.get("/api/v1/engagement/agents/3/clients")

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["agent_id"] == 3
    assert data["total"] == 2
    assert [item["client_id"] for item in data["clients"]] == [10, 11]
    assert data["clients"][0]["client_name"] == "Ari"
