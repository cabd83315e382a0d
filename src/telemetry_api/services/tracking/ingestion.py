"""Ingestion of tracker batches and presence heartbeats."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping, Protocol, Sequence

from loguru import logger

from telemetry_api.core.clock import utcnow
from telemetry_api.core.settings import Settings, settings as default_settings
from telemetry_api.services.device import DeviceClassifier, DeviceInfo
from telemetry_api.services.geo import GeoLookup, GeoResult, client_ip

from .errors import MalformedTelemetryError, RateLimitedError
from .event_store import EventStore, PresenceUpdate, SessionUpsert
from .rate_limit import SessionRateLimiter
from .sanitize import count_event_types, extract_domain, non_negative_int, sanitize_event, truncate

_UTM_FIELDS = {"utm_source": 100, "utm_medium": 100, "utm_campaign": 255, "utm_term": 255, "utm_content": 255}


class EngagementTrigger(Protocol):
    async def trigger(self, user_id: int) -> bool: ...


@dataclass
class RequestContext:
    headers: Mapping[str, str] = field(default_factory=dict)
    remote_addr: str | None = None
    user_agent: str | None = None

    @property
    def ip_address(self) -> str | None:
        return client_ip(self.headers, self.remote_addr)


@dataclass
class TrackResult:
    success: bool
    tracked: int
    bot: bool = False


@dataclass
class HeartbeatResult:
    success: bool
    active_visitors: int
    bot: bool = False


def _user_id(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        user_id = int(value)
    except (TypeError, ValueError):
        return None
    return user_id if user_id > 0 else None


class IngestionService:
    """Validates, enriches and persists telemetry for one request."""

    def __init__(
        self,
        store: EventStore,
        geo: GeoLookup,
        devices: DeviceClassifier,
        rate_limiter: SessionRateLimiter,
        engagement_trigger: EngagementTrigger | None = None,
        *,
        settings: Settings | None = None,
    ) -> None:
        self._store = store
        self._geo = geo
        self._devices = devices
        self._rate_limiter = rate_limiter
        self._engagement_trigger = engagement_trigger
        self._settings = settings or default_settings
        self._logger = logger.bind(component="ingestion")

    async def track(
        self,
        session_id: str | None,
        events: Sequence[Mapping[str, Any]] | None,
        session_meta: Mapping[str, Any] | None,
        request_context: RequestContext,
        *,
        now: datetime | None = None,
    ) -> TrackResult:
        if not session_id or not isinstance(session_id, str):
            raise MalformedTelemetryError("session_id is required")
        if not events:
            raise MalformedTelemetryError("events must be a non-empty list")

        await self._check_rate_limit(session_id)

        batch = [event for event in events[: self._settings.max_batch_size] if isinstance(event, Mapping)]
        if not batch:
            raise MalformedTelemetryError("events must contain objects")

        device = self._devices.classify(request_context.user_agent)
        if device.is_bot:
            self._logger.debug("Dropping bot batch", session_id=session_id, browser=device.browser)
            return TrackResult(success=True, tracked=0, bot=True)

        now = now or utcnow()
        meta = dict(session_meta or {})
        ip_address = request_context.ip_address
        geo = await self._resolve_geo(ip_address)
        counts = count_event_types(batch)

        session_id = truncate(session_id, 64) or session_id
        upsert = self._session_upsert(session_id, meta, device, geo, ip_address)
        upsert.page_views = counts["page_views"]
        upsert.property_views = counts["property_views"]
        upsert.searches = counts["searches"]

        rows = [sanitize_event(event, session_id=session_id, platform=device.platform, now=now) for event in batch]
        await self._store.upsert_session(upsert, now=now)
        tracked = await self._store.insert_events(rows)
        await self._store.session.commit()

        self._logger.debug("Tracked batch", session_id=session_id, tracked=tracked, platform=device.platform)

        if upsert.user_id and self._is_engagement_relevant(batch):
            await self._fire_engagement(upsert.user_id)

        return TrackResult(success=True, tracked=tracked)

    async def heartbeat(
        self,
        session_id: str | None,
        page_context: Mapping[str, Any] | None,
        request_context: RequestContext,
        *,
        now: datetime | None = None,
    ) -> HeartbeatResult:
        if not session_id or not isinstance(session_id, str):
            raise MalformedTelemetryError("session_id is required")

        await self._check_rate_limit(session_id)

        now = now or utcnow()
        device = self._devices.classify(request_context.user_agent)
        if device.is_bot:
            return HeartbeatResult(success=True, active_visitors=0, bot=True)

        context = dict(page_context or {})
        ip_address = request_context.ip_address
        geo = await self._resolve_geo(ip_address)
        session_id = truncate(session_id, 64) or session_id
        user_id = _user_id(context.get("user_id"))

        await self._store.update_presence(
            PresenceUpdate(
                session_id=session_id,
                platform=device.platform,
                user_id=user_id,
                current_page=truncate(context.get("page_url"), 500),
                current_page_type=truncate(context.get("page_type"), 50),
                current_listing_id=truncate(context.get("listing_id"), 50),
                device_type=device.device_type,
                country_code=geo.country_code,
                city=geo.city,
            ),
            now=now,
        )
        upsert = self._session_upsert(session_id, {"user_id": user_id}, device, geo, ip_address)
        await self._store.upsert_session(upsert, now=now)
        await self._store.session.commit()

        active = await self._store.get_active_count(self._settings.presence_stale_seconds, now=now)
        return HeartbeatResult(success=True, active_visitors=active)

    async def _check_rate_limit(self, session_id: str) -> None:
        decision = await self._rate_limiter.hit(session_id)
        if not decision.allowed:
            self._logger.info("Rate limited session", session_id=session_id, count=decision.count)
            raise RateLimitedError(decision.retry_after_seconds or self._settings.rate_limit_window_seconds)

    async def _resolve_geo(self, ip_address: str | None) -> GeoResult:
        try:
            return await self._geo.resolve(ip_address)
        except Exception as exc:  # pragma: no cover - defensive logging
            self._logger.warning("Geo enrichment failed", ip=ip_address, error=str(exc))
            return GeoResult()

    def _is_engagement_relevant(self, events: Sequence[Mapping[str, Any]]) -> bool:
        relevant = set(self._settings.engagement_trigger_events)
        return any(event.get("type") in relevant for event in events)

    async def _fire_engagement(self, user_id: int) -> None:
        if self._engagement_trigger is None:
            return
        try:
            await self._engagement_trigger.trigger(user_id)
        except Exception as exc:  # pragma: no cover - defensive logging
            self._logger.warning("Engagement trigger failed", user_id=user_id, error=str(exc))

    @staticmethod
    def _session_upsert(
        session_id: str,
        meta: Mapping[str, Any],
        device: DeviceInfo,
        geo: GeoResult,
        ip_address: str | None,
    ) -> SessionUpsert:
        referrer = meta.get("referrer") or meta.get("referrer_url")
        upsert = SessionUpsert(
            session_id=session_id,
            platform=device.platform,
            visitor_hash=truncate(meta.get("visitor_hash"), 64),
            user_id=_user_id(meta.get("user_id")),
            ip_address=truncate(ip_address, 45),
            country_code=geo.country_code,
            country_name=geo.country_name,
            region=geo.region,
            city=geo.city,
            latitude=geo.latitude,
            longitude=geo.longitude,
            referrer_url=truncate(referrer, 2000),
            referrer_domain=truncate(extract_domain(referrer), 255),
            device_type=device.device_type,
            browser=device.browser,
            browser_version=device.browser_version,
            os=device.os,
            os_version=device.os_version,
            screen_width=non_negative_int(meta.get("screen_width")),
            screen_height=non_negative_int(meta.get("screen_height")),
            is_bot=device.is_bot,
        )
        for name, limit in _UTM_FIELDS.items():
            setattr(upsert, name, truncate(meta.get(name), limit))
        return upsert


__all__ = [
    "EngagementTrigger",
    "HeartbeatResult",
    "IngestionService",
    "RequestContext",
    "TrackResult",
]
