import pytest

from telemetry_api.core.settings import settings
from telemetry_api.observability.scheduler import get_scheduler_store


@pytest.mark.asyncio
async def test_healthz_reports_version(client) -> None:
    response = await client.get("/healthz")

    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "ok"
    assert payload["version"] == "0.1.0"


@pytest.mark.asyncio
async def test_versioned_healthz(client) -> None:
    response = await client.get("/api/v1/healthz")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_readyz_reports_component_statuses(client) -> None:
    response = await client.get("/api/v1/readyz")

    assert response.status_code == 200
    payload = response.json()
    components = payload["components"]
    assert components["database"]["status"] == "ready"
    assert components["job_scheduler"]["status"] == "disabled"
    assert components["presence_sweep_worker"]["status"] == "disabled"
    assert components["geolocation"]["status"] == "degraded"
    assert payload["status"] == "degraded"


@pytest.mark.asyncio
async def test_readyz_reports_failing_scheduled_jobs(app_with_db, client, monkeypatch) -> None:

    app, _ = app_with_db
    store = get_scheduler_store()
    store.reset()
    store.record_dispatch("hourly_aggregation", "telemetry_api.jobs.aggregation.run_hourly_aggregation")
    store.record_attempt_failure(
        "hourly_aggregation",
        "telemetry_api.jobs.aggregation.run_hourly_aggregation",
        attempts=1,
        error="boom",
    )

    class RunningScheduler:
        is_running = True

    monkeypatch.setattr(settings, "job_scheduler_enabled", True)
    app.state.job_scheduler = RunningScheduler()
    try:
        response = await client.get("/api/v1/readyz")
    finally:
        store.reset()

    payload = response.json()
    assert payload["status"] == "error"
    assert payload["components"]["job_scheduler"]["detail"] == "Jobs failing: hourly_aggregation"
    assert payload["components"]["presence_sweep_worker"]["detail"] == "Managed by job scheduler"
