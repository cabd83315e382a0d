import pytest
from sqlalchemy import func, select

from fakes import FakeRedis
from telemetry_api.models import PresenceRecord, VisitorEvent, VisitorSession
from telemetry_api.services.tracking import SessionRateLimiter

BROWSER_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (iPhone; CPU iPhone OS 17_2 like Mac OS X) AppleWebKit/605.1.15 "
        "(KHTML, like Gecko) Version/17.2 Mobile/15E148 Safari/604.1"
    ),
    "X-Forwarded-For": "1.1.1.1",
}


@pytest.mark.asyncio
async def test_track_records_batch(app_with_db, client) -> None:
    _, session_factory = app_with_db
    payload = {
        "session_id": "sess-http-1",
        "visitor_hash": "hash-http",
        "session": {"referrer": "https://l.facebook.com/", "utm_medium": "social"},
        "events": [
            {"type": "page_view", "page_path": "/", "timestamp": "2026-01-05T14:00:00Z"},
            {"type": "property_view", "listing_id": "L1"},
        ],
    }

    response = await client.post("/api/v1/analytics/track", json=payload, headers=BROWSER_HEADERS)

    assert response.status_code == 200
    assert response.json() == {"success": True, "tracked": 2}

    async with session_factory() as session:
        visitor = (
            await session.execute(select(VisitorSession).where(VisitorSession.session_id == "sess-http-1"))
        ).scalar_one()
        events = (await session.execute(select(func.count()).select_from(VisitorEvent))).scalar_one()

    assert events == 2
    assert visitor.visitor_hash == "hash-http"
    assert visitor.platform == "web_mobile"
    assert visitor.referrer_domain == "l.facebook.com"
    assert visitor.utm_medium == "social"
    assert visitor.ip_address == "1.1.1.1"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "payload",
    [
        {"events": [{"type": "page_view"}]},
        {"session_id": "s", "events": []},
        {"session_id": "s"},
    ],
)
async def test_track_rejects_malformed_payloads(client, payload) -> None:
    response = await client.post("/api/v1/analytics/track", json=payload, headers=BROWSER_HEADERS)

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_track_acknowledges_bots_without_storing(app_with_db, client) -> None:
    _, session_factory = app_with_db

    response = await client.post(
        "/api/v1/analytics/track",
        json={"session_id": "bot", "events": [{"type": "page_view"}]},
        headers={"User-Agent": "curl/8.4.0"},
    )

    assert response.status_code == 200
    assert response.json() == {"success": True, "tracked": 0}
    async with session_factory() as session:
        assert (await session.execute(select(func.count()).select_from(VisitorEvent))).scalar_one() == 0


@pytest.mark.asyncio
async def test_track_rate_limit_sets_retry_after(app_with_db, client) -> None:
    app, _ = app_with_db
    app.state.rate_limiter = SessionRateLimiter(FakeRedis(), max_requests=1, window_seconds=45)
    body = {"session_id": "limited", "events": [{"type": "page_view"}]}

    first = await client.post("/api/v1/analytics/track", json=body, headers=BROWSER_HEADERS)
    second = await client.post("/api/v1/analytics/track", json=body, headers=BROWSER_HEADERS)

    assert first.status_code == 200
    assert second.status_code == 429
    assert second.headers["Retry-After"] == "45"


@pytest.mark.asyncio
async def test_heartbeat_reports_active_visitors(app_with_db, client) -> None:
    _, session_factory = app_with_db

    first = await client.post(
        "/api/v1/analytics/heartbeat",
        json={"session_id": "hb-a", "page_url": "/listing/L9", "page_type": "listing", "listing_id": "L9"},
        headers=BROWSER_HEADERS,
    )
    second = await client.post(
        "/api/v1/analytics/heartbeat",
        json={"session_id": "hb-b", "user_id": 12},
        headers=BROWSER_HEADERS,
    )

    assert first.status_code == 200
    assert second.json() == {"success": True, "active_visitors": 2}
    async with session_factory() as session:
        presence = (
            await session.execute(select(PresenceRecord).where(PresenceRecord.session_id == "hb-a"))
        ).scalar_one()
    assert presence.current_page_type == "listing"
    assert presence.platform == "web_mobile"


@pytest.mark.asyncio
async def test_heartbeat_without_session_is_rejected(client) -> None:
    response = await client.post("/api/v1/analytics/heartbeat", json={}, headers=BROWSER_HEADERS)

    assert response.status_code == 400
