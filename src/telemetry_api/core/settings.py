from functools import lru_cache
from typing import Annotated, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "staging", "production"] = "development"
    log_level: str = "INFO"
    log_mask_client_ips: bool = True
    database_url: str = "sqlite+aiosqlite:///./telemetry.db"
    redis_url: str = "redis://localhost:6379/0"

    # Tracing
    otel_exporter_endpoint: str | None = None
    tracing_console_fallback: bool = True
    tracing_sample_ratio: float = 1.0
    tracing_excluded_urls: str = "healthz,readyz,analytics/heartbeat"

    # Admin dashboard security
    admin_api_key: str = ""

    # Geolocation
    geoip_database_path: str | None = "data/GeoLite2-City.mmdb"
    geo_fallback_enabled: bool = True
    geo_fallback_url: str = (
        "http://ip-api.com/json/{ip}?fields=status,country,countryCode,regionName,city,lat,lon,timezone"
    )
    geo_fallback_timeout_seconds: float = 5.0
    geo_cache_ttl_seconds: int = 3600
    geo_memory_cache_size: int = 1000

    # Device classification
    app_user_agent_token: str = "visitortelemetryapp"
    device_cache_size: int = 100

    # Ingestion
    rate_limit_requests: int = 100
    rate_limit_window_seconds: int = 60
    max_batch_size: int = 50

    # Aggregation and housekeeping
    presence_stale_seconds: int = 120
    retention_days: int = 30
    cleanup_batch_size: int = 10_000
    cleanup_followup_seconds: int = 60
    hourly_top_n: int = 10
    daily_top_n: int = 20
    # How far back a rollup run looks for buckets an earlier run failed to write.
    aggregation_lookback_hours: int = 24
    aggregation_lookback_days: int = 7

    # Engagement scoring
    engagement_window_days: int = 30
    engagement_decay_rate: float = 0.95
    engagement_trend_threshold: float = 2.0
    engagement_debounce_seconds: int = 60
    engagement_trigger_events: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: [
            "property_view",
            "photo_view",
            "search",
            "search_execute",
            "search_save",
            "filter_apply",
            "favorite_add",
            "contact_click",
            "contact_submit",
            "schedule_click",
            "schedule_showing_click",
            "calculator_use",
            "school_info_view",
            "time_on_page",
        ]
    )

    @field_validator("engagement_trigger_events", mode="before")
    @classmethod
    def _parse_event_list(cls, value: object) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        if isinstance(value, (list, tuple, set)):
            return [str(item).strip() for item in value if str(item).strip()]
        return []

    # Job scheduler
    job_scheduler_enabled: bool = False
    job_schedule_path: str = "config/schedules.toml"

    # Presence sweep worker (used when the job scheduler is disabled)
    presence_sweep_worker_enabled: bool = False
    presence_sweep_interval_seconds: int = 5 * 60


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]


settings = get_settings()
