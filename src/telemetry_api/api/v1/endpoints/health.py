from __future__ import annotations

from typing import Dict, Literal

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from telemetry_api.core.clock import utcnow
from telemetry_api.core.settings import settings
from telemetry_api.db.session import get_session
from telemetry_api.observability.scheduler import get_scheduler_store


router = APIRouter()

ComponentState = Literal["ready", "starting", "disabled", "error", "degraded"]


class ComponentStatus(BaseModel):
    status: ComponentState
    detail: str | None = Field(default=None, description="Human readable status detail")
    last_error_at: str | None = Field(default=None, description="ISO timestamp of most recent error")
    last_success_at: str | None = Field(default=None, description="ISO timestamp of most recent success")


class ReadinessPayload(BaseModel):
    status: Literal["ready", "degraded", "error"]
    components: Dict[str, ComponentStatus]


@router.get("/healthz", summary="Service health check")
async def service_health() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/readyz", summary="Service readiness", response_model=ReadinessPayload)
async def service_readiness(
    request: Request,
    session: AsyncSession = Depends(get_session),
) -> ReadinessPayload:
    components: Dict[str, ComponentStatus] = {
        "database": await _database_component(session),
        "job_scheduler": _scheduler_component(request),
        "presence_sweep_worker": _presence_worker_component(request),
        "geolocation": _geolocation_component(request),
    }

    status: Literal["ready", "degraded", "error"] = "ready"
    for component in components.values():
        if component.status == "error":
            status = "error"
            break
        if component.status in ("degraded", "starting"):
            status = "degraded"
    return ReadinessPayload(status=status, components=components)


async def _database_component(session: AsyncSession) -> ComponentStatus:
    try:
        await session.execute(text("SELECT 1"))
    except SQLAlchemyError as error:
        return ComponentStatus(
            status="error",
            detail=f"Database unreachable ({error.__class__.__name__})",
            last_error_at=utcnow().isoformat(),
        )
    return ComponentStatus(status="ready")


def _scheduler_component(request: Request) -> ComponentStatus:
    scheduler = getattr(request.app.state, "job_scheduler", None)
    if not settings.job_scheduler_enabled or scheduler is None:
        return ComponentStatus(status="disabled", detail="Cron jobs disabled via settings")

    running = bool(getattr(scheduler, "is_running", False))
    if not running:
        return ComponentStatus(status="starting", detail="Job scheduler not running")

    failing_jobs = get_scheduler_store().snapshot().failing_jobs()
    if failing_jobs:
        return ComponentStatus(status="error", detail=f"Jobs failing: {', '.join(failing_jobs)}")
    return ComponentStatus(status="ready")


def _presence_worker_component(request: Request) -> ComponentStatus:
    worker = getattr(request.app.state, "presence_sweep_worker", None)
    if settings.job_scheduler_enabled:
        return ComponentStatus(status="ready", detail="Managed by job scheduler")
    if not settings.presence_sweep_worker_enabled or worker is None:
        return ComponentStatus(status="disabled", detail="Presence sweep worker disabled via settings")
    if not getattr(worker, "is_running", False):
        return ComponentStatus(status="starting", detail="Presence sweep worker not running")
    return ComponentStatus(status="ready")


def _geolocation_component(request: Request) -> ComponentStatus:
    geo = getattr(request.app.state, "geo_lookup", None)
    if geo is None:
        return ComponentStatus(status="disabled", detail="Geo lookup not initialised")
    if geo.database_available:
        return ComponentStatus(status="ready", detail="Local MMDB database loaded")
    if settings.geo_fallback_enabled:
        return ComponentStatus(status="degraded", detail="MMDB unavailable; using remote fallback")
    return ComponentStatus(status="degraded", detail="No geolocation source available")
