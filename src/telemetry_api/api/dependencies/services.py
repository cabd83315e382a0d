"""Request-scoped access to the singletons the lifespan stores on ``app.state``."""

from __future__ import annotations

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from telemetry_api.db.session import async_session, get_session
from telemetry_api.services.analytics.dashboard import DashboardService
from telemetry_api.services.analytics.listings import ListingLookup, NullListingLookup
from telemetry_api.services.device import DeviceClassifier
from telemetry_api.services.engagement import EngagementRecomputeDebouncer
from telemetry_api.services.geo import GeoLookup
from telemetry_api.services.tracking import EventStore, IngestionService, SessionRateLimiter


def _require_state(request: Request, name: str):
    value = getattr(request.app.state, name, None)
    if value is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{name.replace('_', ' ')} not initialised",
        )
    return value


def get_geo_lookup(request: Request) -> GeoLookup:
    return _require_state(request, "geo_lookup")


def get_device_classifier(request: Request) -> DeviceClassifier:
    return _require_state(request, "device_classifier")


def get_rate_limiter(request: Request) -> SessionRateLimiter:
    return _require_state(request, "rate_limiter")


def get_engagement_debouncer(request: Request) -> EngagementRecomputeDebouncer | None:
    return getattr(request.app.state, "engagement_debouncer", None)


def get_listing_lookup(request: Request) -> ListingLookup:
    return getattr(request.app.state, "listing_lookup", None) or NullListingLookup()


def get_session_factory(request: Request):
    return getattr(request.app.state, "session_factory", None) or async_session


async def get_ingestion_service(
    session: AsyncSession = Depends(get_session),
    geo: GeoLookup = Depends(get_geo_lookup),
    devices: DeviceClassifier = Depends(get_device_classifier),
    rate_limiter: SessionRateLimiter = Depends(get_rate_limiter),
    debouncer: EngagementRecomputeDebouncer | None = Depends(get_engagement_debouncer),
) -> IngestionService:
    return IngestionService(EventStore(session), geo, devices, rate_limiter, debouncer)


async def get_dashboard_service(
    session: AsyncSession = Depends(get_session),
    listing_lookup: ListingLookup = Depends(get_listing_lookup),
) -> DashboardService:
    return DashboardService(session, listing_lookup=listing_lookup)
