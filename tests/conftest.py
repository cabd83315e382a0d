from __future__ import annotations

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

import telemetry_api.models  # noqa: F401  (registers tables on the metadata)
from telemetry_api.app import create_app
from telemetry_api.db.base import Base
from telemetry_api.db.session import get_session
from telemetry_api.services.analytics.listings import NullListingLookup
from telemetry_api.services.device import DeviceClassifier
from telemetry_api.services.geo import GeoLookup
from telemetry_api.services.tracking import SessionRateLimiter

from fakes import FakeRedis


def _unreachable(request: httpx.Request) -> httpx.Response:
    raise httpx.ConnectError("remote geolocation disabled in tests", request=request)


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def geo_lookup(fake_redis):
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(_unreachable))
    lookup = GeoLookup(
        database_path="",
        redis_client=fake_redis,
        http_client=http_client,
        fallback_enabled=False,
    )
    try:
        yield lookup
    finally:
        await http_client.aclose()


@pytest_asyncio.fixture
async def app_with_db(session_factory, fake_redis, geo_lookup):
    app = create_app()

    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    # ASGITransport does not run the lifespan, so wire the singletons directly.
    app.state.session_factory = session_factory
    app.state.geo_lookup = geo_lookup
    app.state.device_classifier = DeviceClassifier()
    app.state.rate_limiter = SessionRateLimiter(fake_redis, max_requests=100, window_seconds=60)
    app.state.engagement_debouncer = None
    app.state.listing_lookup = NullListingLookup()

    try:
        yield app, session_factory
    finally:
        app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def client(app_with_db):
    app, _ = app_with_db
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http_client:
        yield http_client


@pytest_asyncio.fixture
async def file_session_factory(tmp_path):
    """File-backed database so concurrent sessions get separate connections."""

    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'telemetry.db'}", connect_args={"timeout": 30})
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    try:
        yield async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
    finally:
        await engine.dispose()
