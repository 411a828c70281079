from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Iterable

import pytest
from fastapi.testclient import TestClient

from conftest import NOW, FakeLevelSource, series
from providers.warnings import FloodWarning
from services.aggregator import Aggregator
from services.cache import AdaptiveCache, CacheConfig
from services.history import SiteHistory
from services.readings import SourceResult
from services.sites import all_site_ids
from services.snapshot_store import SnapshotStore
from services.water_levels import WaterLevelService


class FakeOutlook:
    def __init__(self, site_id: str, *, risk_level: str = "low", is_raining: bool = False) -> None:
        self.site_id = site_id
        self.risk_level = risk_level
        self.is_raining = is_raining

    def as_payload(self) -> Dict[str, Any]:
        return {"site_id": self.site_id, "next_24_hours": 12.5}


class FakeForecastSource:
    name = "open-meteo-rain"

    def __init__(self, *, risk_level: str = "low") -> None:
        self.risk_level = risk_level
        self.requested: list[list[str]] = []

    async def fetch_batch(self, site_ids: Iterable[str]):
        ids = list(site_ids)
        self.requested.append(ids)
        outlooks = {}
        for index, site_id in enumerate(ids):
            if index == 0:
                outlooks[site_id] = SourceResult.success(FakeOutlook(site_id, risk_level=self.risk_level))
            else:
                outlooks[site_id] = SourceResult.failure("HTTP 502")
        return outlooks

    async def probe(self) -> bool:
        return True

    async def close(self) -> None:
        return None


class FakeWarnings:
    name = "bom-warnings"

    async def fetch_all(self):
        return SourceResult.success(
            [
                FloodWarning(
                    id="IDQ20825-1",
                    title="Moderate Flood Warning for the Fitzroy River",
                    area="Fitzroy River",
                    level="moderate",
                    issue_time=NOW,
                    summary="Moderate flooding is expected at Rockhampton.",
                )
            ]
        )

    async def probe(self) -> bool:
        return False

    async def close(self) -> None:
        return None


@pytest.fixture
def level_source() -> FakeLevelSource:
    return FakeLevelSource("bom", {site_id: series(site_id, 1.0, 0.9) for site_id in all_site_ids()[:5]})


@pytest.fixture
def forecast_source() -> FakeForecastSource:
    return FakeForecastSource()


@pytest.fixture
def services(tmp_path: Path, level_source: FakeLevelSource, forecast_source: FakeForecastSource) -> WaterLevelService:
    clock = lambda: NOW  # noqa: E731
    aggregator = Aggregator(
        [level_source],
        history=SiteHistory(clock=clock),
        max_age=timedelta(hours=48),
        clock=clock,
    )
    warnings = FakeWarnings()
    return WaterLevelService(
        aggregator,
        AdaptiveCache(CacheConfig(normal_ttl=300, elevated_ttl=60, stale_after=120)),
        SnapshotStore(db_path=tmp_path / "snapshots.sqlite", clock=lambda: NOW.timestamp()),
        warnings_source=warnings,
        rainfall_source=forecast_source,
        flood_source=forecast_source,
        probe_targets=[level_source, warnings],
    )


@pytest.fixture
def api(client: TestClient, services: WaterLevelService) -> TestClient:
    client.app.state.services = services
    return client


def test_meta_endpoints(client: TestClient):
    assert client.get("/").json()["name"] == "GAUGE Hub"
    assert client.get("/health").json()["status"] == "ok"


def test_water_levels_cache_headers(api: TestClient, level_source: FakeLevelSource):
    first = api.get("/api/v1/water-levels")
    second = api.get("/api/v1/water-levels")

    assert first.status_code == 200
    assert first.headers["X-Cache"] == "MISS"
    assert second.headers["X-Cache"] == "HIT"
    assert second.headers["X-Data-Sources"] == "bom"
    assert int(second.headers["X-Cache-Age"]) >= 0
    assert len(level_source.calls) == 1

    body = second.json()
    assert body["resolved"] == 5
    assert body["total"] == len(all_site_ids())
    missing = all_site_ids()[-1]
    assert body["readings"][missing] is None
    reading = body["readings"][all_site_ids()[0]]
    assert reading["status"] == "normal"
    assert reading["trend"] == "rising"


def test_site_detail(api: TestClient):
    site_id = all_site_ids()[0]
    response = api.get(f"/api/v1/water-levels/{site_id}")
    assert response.status_code == 200
    body = response.json()
    assert body["site"]["id"] == site_id
    assert len(body["predictions"]) == 3


def test_site_detail_unknown_and_malformed(api: TestClient):
    assert api.get("/api/v1/water-levels/999999Z").status_code == 404
    assert api.get("/api/v1/water-levels/not-a-gauge").status_code == 422


def test_refresh_requires_secret(api: TestClient, settings_override):
    settings_override(refresh_secret="s3cret")
    assert api.post("/api/v1/refresh").status_code == 401
    assert api.post("/api/v1/refresh", headers={"X-Cron-Secret": "wrong"}).status_code == 401

    response = api.post("/api/v1/refresh", headers={"X-Cron-Secret": "s3cret"})
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["gauges_updated"] == 5
    assert body["sources"] == ["bom"]
    assert body["elevated"] is False
    assert body["timestamp"].endswith("Z")


def test_refresh_get_without_configured_secret(api: TestClient, settings_override):
    settings_override(refresh_secret=None)
    response = api.get("/api/v1/refresh")
    assert response.status_code == 200
    assert api.get("/api/v1/water-levels").headers["X-Cache"] == "HIT"


def test_refresh_failure_reports_error(api: TestClient, services: WaterLevelService, monkeypatch, settings_override):
    settings_override(refresh_secret=None)

    async def _explode():
        raise RuntimeError("aggregator bug")

    monkeypatch.setattr(services, "refresh_now", _explode)
    response = api.post("/api/v1/refresh")
    assert response.status_code == 500
    assert response.json()["success"] is False
    assert response.json()["error"] == "aggregator bug"


def test_warnings_endpoint(api: TestClient):
    response = api.get("/api/v1/warnings")
    assert response.status_code == 200
    body = response.json()
    assert body["count"] == 1
    assert body["has_severe"] is True
    assert body["warnings"][0]["level"] == "moderate"
    assert response.headers["X-Cache"] == "MISS"
    assert response.headers["X-Data-Sources"] == "bom-warnings"


def test_rainfall_forecast_for_one_site(api: TestClient, forecast_source: FakeForecastSource):
    response = api.get("/api/v1/forecast/rainfall", params={"site_id": "130005A"})
    assert response.status_code == 200
    assert response.json()["forecasts"]["130005A"]["next_24_hours"] == 12.5
    assert forecast_source.requested == [["130005A"]]


def test_flood_forecast_for_all_sites_reports_failures(api: TestClient):
    response = api.get("/api/v1/forecast/flood")
    body = response.json()
    assert body["count"] == 1
    assert set(body["failed"].values()) == {"HTTP 502"}


def test_forecast_cache_lifetime_follows_risk(api: TestClient, forecast_source: FakeForecastSource):
    api.get("/api/v1/forecast/rainfall", params={"site_id": "130005A"})
    forecast_source.risk_level = "high"
    api.get("/api/v1/forecast/flood", params={"site_id": "130005A"})

    entries = api.get("/api/v1/health/cache").json()["entries"]
    assert entries["rainfall:130005A"]["elevated"] is False
    assert entries["rainfall:130005A"]["ttl_seconds"] == 300
    assert entries["flood:130005A"]["elevated"] is True
    assert entries["flood:130005A"]["ttl_seconds"] == 60


def test_forecast_unknown_site(api: TestClient):
    assert api.get("/api/v1/forecast/rainfall", params={"site_id": "999999Z"}).status_code == 404


def test_health_endpoints(api: TestClient):
    providers = api.get("/api/v1/health/providers").json()
    assert providers["providers"] == {"bom": True, "bom-warnings": False}
    assert providers["status"] == "degraded"

    api.get("/api/v1/water-levels")
    cache = api.get("/api/v1/health/cache").json()
    assert "water-levels" in cache["entries"]
    assert cache["misses"] == 1

    api.post("/api/v1/refresh")
    store = api.get("/api/v1/health/store").json()
    assert store["enabled"] is True
    assert store["metadata"]["success_count"] == 1
