import json

import httpx
import pytest

from fakes import BrokenRedis, FakeRedis
from mmdb_builder import MMDBBuilder, Pointer, city_record
from telemetry_api.services.geo import GeoLookup, GeoResult, MMDBReader, client_ip, is_public_ip
from telemetry_api.services.geo.lookup import cache_key


def _reader() -> MMDBReader:
    builder = MMDBBuilder()
    builder.insert(
        "8.8.8.0/24",
        city_record(
            iso_code="US",
            country="United States",
            city="Mountain View",
            region="California",
            latitude=37.386,
            longitude=-122.0838,
            time_zone="America/Los_Angeles",
        ),
    )
    return MMDBReader(builder.build())


class _RemoteStub:
    def __init__(self, payload: dict | None = None, status_code: int = 200) -> None:
        self.payload = payload or {
            "status": "success",
            "country": "Australia",
            "countryCode": "AU",
            "regionName": "Queensland",
            "city": "South Brisbane",
            "lat": -27.4766,
            "lon": 153.0166,
            "timezone": "Australia/Brisbane",
        }
        self.status_code = status_code
        self.calls: list[str] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(str(request.url))
        return httpx.Response(self.status_code, json=self.payload)


def _lookup(*, reader=None, redis=None, remote=None, fallback_enabled=True) -> GeoLookup:
    transport = httpx.MockTransport(remote or _RemoteStub())
    return GeoLookup(
        reader=reader,
        database_path="",
        redis_client=redis or FakeRedis(),
        http_client=httpx.AsyncClient(transport=transport),
        fallback_enabled=fallback_enabled,
        fallback_url="http://geo.test/json/{ip}",
    )


@pytest.mark.parametrize(
    "value,expected",
    [
        ("8.8.8.8", True),
        ("2001:4860:4860::8888", True),
        ("10.0.0.1", False),
        ("192.168.1.20", False),
        ("127.0.0.1", False),
        ("169.254.1.1", False),
        ("::1", False),
        ("fe80::1", False),
        ("not-an-ip", False),
    ],
)
def test_is_public_ip(value: str, expected: bool) -> None:
    assert is_public_ip(value) is expected


def test_client_ip_prefers_first_public_header_address() -> None:
    headers = {"X-Forwarded-For": "9.9.9.9, 10.0.0.1", "X-Real-IP": "10.0.0.5"}

    assert client_ip(headers, "10.0.0.2") == "9.9.9.9"


def test_client_ip_skips_private_header_values() -> None:
    headers = {"CF-Connecting-IP": "192.168.0.4", "X-Forwarded-For": "8.8.4.4"}

    assert client_ip(headers, "10.0.0.2") == "8.8.4.4"


def test_client_ip_reads_forwarded_header_with_port() -> None:
    headers = {"Forwarded": 'for="[2001:4860::1]:4711";proto=https'}

    assert client_ip(headers, None) == "2001:4860::1"


def test_client_ip_falls_back_to_peer_address() -> None:
    assert client_ip({"X-Forwarded-For": "unknown"}, "172.16.0.3") == "172.16.0.3"
    assert client_ip({}, None) is None


@pytest.mark.asyncio
async def test_private_addresses_resolve_empty_without_lookups() -> None:
    remote = _RemoteStub()
    lookup = _lookup(reader=_reader(), remote=remote)

    result = await lookup.resolve("192.168.1.5")

    assert result == GeoResult()
    assert remote.calls == []


@pytest.mark.asyncio
async def test_local_database_hit_is_cached_in_memory_and_redis() -> None:
    redis = FakeRedis()
    remote = _RemoteStub()
    lookup = _lookup(reader=_reader(), redis=redis, remote=remote)

    result = await lookup.resolve("8.8.8.8")

    assert result.country_code == "US"
    assert result.city == "Mountain View"
    assert result.region == "California"
    assert result.timezone == "America/Los_Angeles"
    assert result.source == "maxmind"
    assert remote.calls == []
    cached = json.loads(redis.values[cache_key("8.8.8.8")])
    assert cached["city"] == "Mountain View"
    assert redis.ttls[cache_key("8.8.8.8")] == 3600

    redis.values.clear()
    again = await lookup.resolve("8.8.8.8")
    assert again == result


@pytest.mark.asyncio
async def test_shared_cache_entry_short_circuits_database() -> None:
    redis = FakeRedis()
    redis.values[cache_key("1.1.1.1")] = json.dumps({"country_code": "AU", "city": "Sydney", "source": "maxmind"})
    lookup = _lookup(reader=_reader(), redis=redis)

    result = await lookup.resolve("1.1.1.1")

    assert result.city == "Sydney"


@pytest.mark.asyncio
async def test_remote_fallback_used_when_database_misses() -> None:
    remote = _RemoteStub()
    lookup = _lookup(reader=_reader(), remote=remote)

    result = await lookup.resolve("1.1.1.1")

    assert result.country_code == "AU"
    assert result.city == "South Brisbane"
    assert result.source == "ip-api"
    assert remote.calls == ["http://geo.test/json/1.1.1.1"]


@pytest.mark.asyncio
async def test_remote_failure_yields_empty_result_and_is_cached() -> None:
    redis = FakeRedis()
    remote = _RemoteStub(status_code=503)
    lookup = _lookup(redis=redis, remote=remote)

    first = await lookup.resolve("1.1.1.1")
    second = await lookup.resolve("1.1.1.1")

    assert first.is_empty
    assert second.is_empty
    assert len(remote.calls) == 1
    assert cache_key("1.1.1.1") in redis.values


@pytest.mark.asyncio
async def test_remote_status_fail_is_treated_as_miss() -> None:
    lookup = _lookup(remote=_RemoteStub(payload={"status": "fail", "message": "reserved range"}))

    result = await lookup.resolve("1.1.1.1")

    assert result.is_empty


@pytest.mark.asyncio
async def test_fallback_disabled_skips_remote() -> None:
    remote = _RemoteStub()
    lookup = _lookup(remote=remote, fallback_enabled=False)

    result = await lookup.resolve("1.1.1.1")

    assert result.is_empty
    assert remote.calls == []


@pytest.mark.asyncio
async def test_self_referencing_record_resolves_empty() -> None:
    builder = MMDBBuilder()
    builder.insert("8.8.8.0/24", Pointer(0))
    lookup = _lookup(reader=MMDBReader(builder.build()), fallback_enabled=False)

    result = await lookup.resolve("8.8.8.8")

    assert result.is_empty


@pytest.mark.asyncio
async def test_redis_outage_does_not_break_resolution() -> None:
    lookup = _lookup(reader=_reader(), redis=BrokenRedis())

    result = await lookup.resolve("8.8.8.8")

    assert result.city == "Mountain View"


@pytest.mark.asyncio
async def test_missing_database_file_reports_unavailable(tmp_path) -> None:
    lookup = GeoLookup(
        database_path=tmp_path / "missing.mmdb",
        redis_client=FakeRedis(),
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(_RemoteStub())),
        fallback_enabled=False,
    )

    assert lookup.database_available is False
    assert (await lookup.resolve("8.8.8.8")).is_empty


@pytest.mark.asyncio
async def test_database_loaded_lazily_from_path(tmp_path) -> None:
    builder = MMDBBuilder()
    builder.insert("8.8.8.0/24", city_record(iso_code="US", country="United States", city="Mountain View"))
    path = tmp_path / "city.mmdb"
    path.write_bytes(builder.build())
    lookup = GeoLookup(
        database_path=path,
        redis_client=FakeRedis(),
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(_RemoteStub())),
        fallback_enabled=False,
    )

    assert lookup.database_available is True
    assert (await lookup.resolve("8.8.8.8")).city == "Mountain View"
