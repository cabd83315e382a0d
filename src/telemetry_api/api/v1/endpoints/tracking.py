"""Public telemetry endpoints called by the web tracker and the app."""

from __future__ import annotations

from typing import Any, NoReturn

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field

from telemetry_api.api.dependencies.services import get_ingestion_service
from telemetry_api.services.tracking import (
    IngestionService,
    MalformedTelemetryError,
    RateLimitedError,
    RequestContext,
)

router = APIRouter(prefix="/analytics", tags=["Tracking"])


class TrackPayload(BaseModel):
    """Tracker batch; shape checks beyond JSON types happen in the service."""

    session_id: Any = None
    visitor_hash: str | None = None
    events: list[Any] | None = None
    session: dict[str, Any] | None = None


class TrackResponse(BaseModel):
    success: bool
    tracked: int


class HeartbeatPayload(BaseModel):
    session_id: Any = None
    page_url: str | None = None
    page_type: str | None = None
    listing_id: str | None = None
    user_id: int | None = None


class HeartbeatResponse(BaseModel):
    success: bool
    active_visitors: int = Field(default=0, ge=0)


def _request_context(request: Request) -> RequestContext:
    return RequestContext(
        headers=dict(request.headers),
        remote_addr=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )


def _raise_http(exc: Exception) -> NoReturn:
    if isinstance(exc, RateLimitedError):
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=str(exc),
            headers={"Retry-After": str(exc.retry_after_seconds)},
        ) from exc
    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc


@router.post("/track", response_model=TrackResponse, summary="Record a batch of telemetry events")
async def track_events(
    payload: TrackPayload,
    request: Request,
    service: IngestionService = Depends(get_ingestion_service),
) -> TrackResponse:
    session_meta = dict(payload.session or {})
    if payload.visitor_hash and not session_meta.get("visitor_hash"):
        session_meta["visitor_hash"] = payload.visitor_hash
    try:
        result = await service.track(payload.session_id, payload.events, session_meta, _request_context(request))
    except (MalformedTelemetryError, RateLimitedError) as exc:
        _raise_http(exc)
    return TrackResponse(success=result.success, tracked=result.tracked)


@router.post("/heartbeat", response_model=HeartbeatResponse, summary="Refresh visitor presence")
async def heartbeat(
    payload: HeartbeatPayload,
    request: Request,
    service: IngestionService = Depends(get_ingestion_service),
) -> HeartbeatResponse:
    try:
        result = await service.heartbeat(
            payload.session_id,
            payload.model_dump(exclude={"session_id"}),
            _request_context(request),
        )
    except (MalformedTelemetryError, RateLimitedError) as exc:
        _raise_http(exc)
    return HeartbeatResponse(success=result.success, active_visitors=result.active_visitors)
