"""IP geolocation with layered caching and a remote fallback."""

from __future__ import annotations

import hashlib
import ipaddress
import json
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Mapping

import httpx
from loguru import logger
from redis.asyncio import Redis
from redis.exceptions import RedisError

from telemetry_api.core.settings import settings

from .errors import GeoDatabaseError
from .mmdb import MMDBReader

SOURCE_MAXMIND = "maxmind"
SOURCE_IP_API = "ip-api"

# Checked in order; X-Forwarded-For style headers contribute their first entry.
CLIENT_IP_HEADERS = (
    "cf-connecting-ip",
    "true-client-ip",
    "x-real-ip",
    "x-client-ip",
    "x-forwarded-for",
    "x-original-forwarded-for",
)


@dataclass(slots=True)
class GeoResult:
    country_code: str | None = None
    country_name: str | None = None
    region: str | None = None
    city: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    timezone: str | None = None
    source: str | None = None

    @property
    def is_empty(self) -> bool:
        return self.country_code is None

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "GeoResult":
        fields = cls.__dataclass_fields__
        return cls(**{key: value for key, value in payload.items() if key in fields})


def is_public_ip(value: str) -> bool:
    """False for private, loopback, link-local, reserved or unparseable addresses."""

    try:
        address = ipaddress.ip_address(value.strip())
    except ValueError:
        return False
    return not (
        address.is_private
        or address.is_loopback
        or address.is_link_local
        or address.is_reserved
        or address.is_multicast
        or address.is_unspecified
    )


def _strip_port(candidate: str) -> str:
    value = candidate.strip().strip('"')
    if value.startswith("["):
        return value[1:].split("]", 1)[0]
    if value.count(":") == 1:
        return value.split(":", 1)[0]
    return value


def _parse_forwarded(header: str) -> str | None:
    first_element = header.split(",", 1)[0]
    for pair in first_element.split(";"):
        name, _, value = pair.strip().partition("=")
        if name.lower() == "for" and value:
            return _strip_port(value)
    return None


def client_ip(headers: Mapping[str, str], remote_addr: str | None) -> str | None:
    """Resolve the originating client address from proxy headers.

    Header-supplied addresses are only trusted when they are public; the
    socket peer address is returned as-is when no header qualifies.
    """

    normalized = {key.lower(): value for key, value in headers.items()}
    candidates: list[str] = []
    for name in CLIENT_IP_HEADERS:
        value = normalized.get(name)
        if value:
            candidates.append(_strip_port(value.split(",", 1)[0]))
    forwarded = normalized.get("forwarded")
    if forwarded:
        parsed = _parse_forwarded(forwarded)
        if parsed:
            candidates.append(parsed)

    for candidate in candidates:
        if is_public_ip(candidate):
            return candidate
    return remote_addr or None


def cache_key(ip: str) -> str:
    return "geo:" + hashlib.md5(ip.encode("utf-8")).hexdigest()


def _record_to_result(record: Mapping[str, Any]) -> GeoResult:
    country = record.get("country") or {}
    city = record.get("city") or {}
    location = record.get("location") or {}
    subdivisions = record.get("subdivisions") or []
    region = None
    if subdivisions and isinstance(subdivisions[0], Mapping):
        region = (subdivisions[0].get("names") or {}).get("en")
    return GeoResult(
        country_code=country.get("iso_code"),
        country_name=(country.get("names") or {}).get("en"),
        region=region,
        city=(city.get("names") or {}).get("en"),
        latitude=location.get("latitude"),
        longitude=location.get("longitude"),
        timezone=location.get("time_zone"),
        source=SOURCE_MAXMIND,
    )


class GeoLookup:
    """Resolve IPs to locations: memory cache, Redis, local MMDB, then ip-api."""

    def __init__(
        self,
        *,
        reader: MMDBReader | None = None,
        database_path: str | Path | None = None,
        redis_client: Redis | None = None,
        http_client: httpx.AsyncClient | None = None,
        fallback_enabled: bool | None = None,
        fallback_url: str | None = None,
        timeout_seconds: float | None = None,
        cache_ttl_seconds: int | None = None,
        memory_cache_size: int | None = None,
    ) -> None:
        self._reader = reader
        self._database_path = database_path if database_path is not None else settings.geoip_database_path
        self._reader_unavailable = False
        self._redis = redis_client or Redis.from_url(
            settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
        )
        self._timeout_seconds = timeout_seconds or settings.geo_fallback_timeout_seconds
        self._owns_http_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=self._timeout_seconds)
        self._fallback_enabled = settings.geo_fallback_enabled if fallback_enabled is None else fallback_enabled
        self._fallback_url = fallback_url or settings.geo_fallback_url
        self._cache_ttl_seconds = cache_ttl_seconds or settings.geo_cache_ttl_seconds
        self._memory_cache_size = memory_cache_size or settings.geo_memory_cache_size
        self._memory: dict[str, GeoResult] = {}
        self._logger = logger.bind(component="geo_lookup")

    async def resolve(self, ip: str | None) -> GeoResult:
        if not ip or not is_public_ip(ip):
            return GeoResult()
        ip = ip.strip()

        cached = self._memory.get(ip)
        if cached is not None:
            return cached

        key = cache_key(ip)
        shared = await self._cache_get(key)
        if shared is not None:
            self._remember(ip, shared)
            return shared

        result = self._lookup_local(ip)
        if result.is_empty and self._fallback_enabled:
            remote = await self._lookup_remote(ip)
            if not remote.is_empty:
                result = remote

        # Empty results are cached too so a failing IP cannot hammer the fallback.
        self._remember(ip, result)
        await self._cache_set(key, result)
        return result

    @property
    def database_available(self) -> bool:
        return self._get_reader() is not None

    def reload(self) -> None:
        self._reader = None
        self._reader_unavailable = False
        self._memory.clear()

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http.aclose()

    def _get_reader(self) -> MMDBReader | None:
        if self._reader is not None:
            return self._reader
        if self._reader_unavailable or not self._database_path:
            return None
        try:
            self._reader = MMDBReader.open(self._database_path)
        except GeoDatabaseError as exc:
            self._reader_unavailable = True
            self._logger.warning("Geolocation database unavailable", path=str(self._database_path), error=str(exc))
            return None
        self._logger.info(
            "Geolocation database loaded",
            path=str(self._database_path),
            database_type=self._reader.metadata.database_type,
            node_count=self._reader.metadata.node_count,
        )
        return self._reader

    def _lookup_local(self, ip: str) -> GeoResult:
        reader = self._get_reader()
        if reader is None:
            return GeoResult()
        try:
            record = reader.lookup(ip)
        except (GeoDatabaseError, ValueError) as exc:
            self._logger.warning("Geolocation database lookup failed", ip=ip, error=str(exc))
            return GeoResult()
        if not record:
            return GeoResult()
        return _record_to_result(record)

    async def _lookup_remote(self, ip: str) -> GeoResult:
        url = self._fallback_url.format(ip=ip)
        try:
            response = await self._http.get(url, timeout=self._timeout_seconds)
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            self._logger.warning("Remote geolocation lookup failed", ip=ip, error=str(exc))
            return GeoResult()

        if not isinstance(payload, Mapping) or payload.get("status") != "success":
            return GeoResult()
        return GeoResult(
            country_code=payload.get("countryCode"),
            country_name=payload.get("country"),
            region=payload.get("regionName"),
            city=payload.get("city"),
            latitude=payload.get("lat"),
            longitude=payload.get("lon"),
            timezone=payload.get("timezone"),
            source=SOURCE_IP_API,
        )

    def _remember(self, ip: str, result: GeoResult) -> None:
        if ip not in self._memory and len(self._memory) >= self._memory_cache_size:
            self._memory.pop(next(iter(self._memory)))
        self._memory[ip] = result

    async def _cache_get(self, key: str) -> GeoResult | None:
        try:
            raw = await self._redis.get(key)
        except RedisError as exc:
            self._logger.warning("Geolocation cache read failed", key=key, error=str(exc))
            return None
        if not raw:
            return None
        try:
            return GeoResult.from_dict(json.loads(raw))
        except (json.JSONDecodeError, TypeError):
            self._logger.warning("Failed to decode cached geolocation payload", key=key)
            return None

    async def _cache_set(self, key: str, result: GeoResult) -> None:
        try:
            await self._redis.set(key, json.dumps(result.as_dict()), ex=self._cache_ttl_seconds)
        except RedisError as exc:
            self._logger.warning("Geolocation cache write failed", key=key, error=str(exc))


__all__ = [
    "CLIENT_IP_HEADERS",
    "GeoLookup",
    "GeoResult",
    "cache_key",
    "client_ip",
    "is_public_ip",
]
