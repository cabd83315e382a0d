from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI
from loguru import logger
from redis.asyncio import Redis

from telemetry_api.core.settings import settings
from telemetry_api.db.session import async_session
from .api.routes import api_router
from .core.logging import configure_logging
from .observability.tracing import configure_tracing
from .scheduling import AnalyticsJobScheduler
from .services.analytics.listings import NullListingLookup
from .services.device import DeviceClassifier
from .services.engagement import EngagementRecomputeDebouncer
from .services.geo import GeoLookup
from .services.tracking import SessionRateLimiter
from .workers import PresenceSweepWorker


APP_VERSION = "0.1.0"
SERVICE_NAME = "telemetry-api"


def _session_factory():
    return async_session()


def _schedule_path() -> Path:
    schedule_path = Path(settings.job_schedule_path)
    if not schedule_path.is_absolute():
        schedule_path = Path(__file__).resolve().parent.parent.parent / schedule_path
    return schedule_path


def _start_scheduler() -> AnalyticsJobScheduler:
    if settings.job_scheduler_enabled:
        schedule_path = _schedule_path()
        scheduler = AnalyticsJobScheduler(session_factory=_session_factory, config_path=schedule_path)
        try:
            scheduler.start()
        except FileNotFoundError as exc:
            logger.exception("Analytics job scheduler failed to load schedule", error=str(exc))
        else:
            logger.info("Analytics job scheduler enabled", schedule_path=str(schedule_path))
            return scheduler
    else:
        logger.info("Analytics cron jobs disabled", reason="job_scheduler_enabled is false")

    # One-off jobs (debounced engagement recomputes) still need a running scheduler.
    scheduler = AnalyticsJobScheduler(session_factory=_session_factory)
    scheduler.start()
    return scheduler


@asynccontextmanager
async def lifespan(app: FastAPI):
    redis_client = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
    geo_lookup = GeoLookup(redis_client=redis_client)
    device_classifier = DeviceClassifier()
    rate_limiter = SessionRateLimiter(redis_client)
    job_scheduler = _start_scheduler()
    debouncer = EngagementRecomputeDebouncer(
        redis_client=redis_client,
        scheduler=job_scheduler,
        session_factory=_session_factory,
    )
    presence_worker = PresenceSweepWorker(
        session_factory=_session_factory,
        interval_seconds=settings.presence_sweep_interval_seconds,
    )

    app.state.session_factory = _session_factory
    app.state.geo_lookup = geo_lookup
    app.state.device_classifier = device_classifier
    app.state.rate_limiter = rate_limiter
    app.state.job_scheduler = job_scheduler
    app.state.engagement_debouncer = debouncer
    app.state.presence_sweep_worker = presence_worker
    app.state.listing_lookup = NullListingLookup()

    worker_enabled = settings.presence_sweep_worker_enabled and not job_scheduler.cron_enabled
    if worker_enabled:
        presence_worker.start()
        logger.info("Presence sweep worker enabled", interval_seconds=presence_worker.interval_seconds)
    elif settings.presence_sweep_worker_enabled:
        logger.info("Presence sweep managed via scheduler", schedule_path=str(_schedule_path()))
    else:
        logger.info("Presence sweep worker disabled", reason="presence_sweep_worker_enabled is false")

    try:
        yield
    finally:
        if worker_enabled and presence_worker.is_running:
            await presence_worker.stop()
        if job_scheduler.is_running:
            await job_scheduler.stop()
        await geo_lookup.aclose()
        await redis_client.aclose()


def create_app() -> FastAPI:
    """Application factory for the visitor telemetry service."""
    configure_logging(
        service_name=SERVICE_NAME,
        environment=settings.environment,
        version=APP_VERSION,
        level=settings.log_level,
        mask_client_ips=settings.log_mask_client_ips,
    )

    app = FastAPI(
        title="Visitor Telemetry API",
        version=APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    configure_tracing(
        app,
        service_name=SERVICE_NAME,
        service_version=APP_VERSION,
        environment=settings.environment,
    )

    app.include_router(api_router)

    @app.get("/healthz", tags=["Health"])
    async def health_check() -> dict[str, str]:
        return {
            "status": "ok",
            "environment": settings.environment,
            "version": APP_VERSION,
        }

    return app
