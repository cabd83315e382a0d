"""Admin analytics dashboard endpoints."""

from __future__ import annotations

from typing import Any, Literal

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from telemetry_api.api.dependencies.security import require_admin_api_key
from telemetry_api.api.dependencies.services import get_dashboard_service, get_session_factory
from telemetry_api.core.settings import settings
from telemetry_api.services.analytics.aggregator import AnalyticsAggregator
from telemetry_api.services.analytics.dashboard import DashboardService

router = APIRouter(
    prefix="/analytics/admin",
    tags=["Analytics Dashboard"],
    dependencies=[Depends(require_admin_api_key)],
)

StatsRange = Literal["today", "24h", "7d", "30d", "90d"]
ActivityRange = Literal["15m", "1h", "4h", "24h", "7d"]


def _envelope(data: Any) -> dict[str, Any]:
    return {"success": True, "data": data}


@router.get("/realtime", summary="Live presence and the recent activity stream")
async def realtime(service: DashboardService = Depends(get_dashboard_service)) -> dict[str, Any]:
    return _envelope(await service.get_realtime())


@router.get("/stats", summary="Summary statistics with period-over-period change")
async def stats(
    range_key: StatsRange = Query("7d", alias="range"),
    platform: str | None = Query(None),
    service: DashboardService = Depends(get_dashboard_service),
) -> dict[str, Any]:
    return _envelope(await service.get_stats(range_key, platform=platform))


@router.get("/trends", summary="Sessions and page views over time")
async def trends(
    range_key: StatsRange = Query("7d", alias="range"),
    granularity: Literal["hour", "day"] | None = Query(None),
    service: DashboardService = Depends(get_dashboard_service),
) -> dict[str, Any]:
    return _envelope(await service.get_trends(range_key, granularity=granularity))


@router.get("/activity", summary="Paginated raw event stream")
async def activity(
    range_key: ActivityRange = Query("15m", alias="range"),
    platform: str | None = Query(None),
    logged_in_only: bool = Query(False),
    event_type: str | None = Query(None),
    page: int = Query(1, ge=1),
    per_page: int = Query(50, ge=1, le=100),
    service: DashboardService = Depends(get_dashboard_service),
) -> dict[str, Any]:
    return _envelope(
        await service.get_activity_stream(
            range_key,
            platform=platform,
            logged_in_only=logged_in_only,
            event_type=event_type,
            page=page,
            per_page=per_page,
        )
    )


@router.get("/sessions/{session_id}", summary="One session and its ordered events")
async def session_journey(
    session_id: str,
    service: DashboardService = Depends(get_dashboard_service),
) -> dict[str, Any]:
    journey = await service.get_session_journey(session_id)
    if journey is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")
    return _envelope(journey)


@router.get("/top-content", summary="Most viewed properties or pages")
async def top_content(
    range_key: StatsRange = Query("7d", alias="range"),
    content_type: Literal["properties", "pages"] = Query("pages", alias="type"),
    limit: int = Query(10, ge=1, le=50),
    service: DashboardService = Depends(get_dashboard_service),
) -> dict[str, Any]:
    return _envelope(await service.get_top_content(range_key, content_type=content_type, limit=limit))


@router.get("/top-searches", summary="Search filters grouped by readable summary")
async def top_searches(
    range_key: StatsRange = Query("7d", alias="range"),
    limit: int = Query(20, ge=1, le=50),
    service: DashboardService = Depends(get_dashboard_service),
) -> dict[str, Any]:
    return _envelope(await service.get_top_searches(range_key, limit=limit))


@router.get("/traffic-sources", summary="Sessions by normalized referrer source")
async def traffic_sources(
    range_key: StatsRange = Query("7d", alias="range"),
    limit: int = Query(30, ge=1, le=100),
    service: DashboardService = Depends(get_dashboard_service),
) -> dict[str, Any]:
    return _envelope(await service.get_traffic_sources(range_key, limit=limit))


@router.get("/geographic", summary="Sessions by city or country")
async def geographic(
    range_key: StatsRange = Query("7d", alias="range"),
    level: Literal["city", "cities", "country", "countries"] = Query("city"),
    limit: int = Query(50, ge=1, le=200),
    service: DashboardService = Depends(get_dashboard_service),
) -> dict[str, Any]:
    normalized = "country" if level in ("country", "countries") else "city"
    return _envelope(await service.get_geographic(range_key, level=normalized, limit=limit))


@router.get("/db-stats", summary="Table sizes and visitor breakdowns")
async def db_stats(
    request: Request,
    service: DashboardService = Depends(get_dashboard_service),
) -> dict[str, Any]:
    data = await service.get_db_stats()
    geo = getattr(request.app.state, "geo_lookup", None)
    data["geolocation"] = {
        "database_available": bool(geo.database_available) if geo is not None else False,
        "fallback_enabled": settings.geo_fallback_enabled,
    }
    return _envelope(data)


@router.get("/status", summary="Aggregation and retention status")
async def aggregation_status(session_factory=Depends(get_session_factory)) -> dict[str, Any]:
    return _envelope(await AnalyticsAggregator(session_factory).status())
