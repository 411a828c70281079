from datetime import timedelta
from pathlib import Path

import pytest

from conftest import NOW, FakeLevelSource, series
from providers.warnings import FloodWarning
from services.aggregator import Aggregator
from services.cache import AdaptiveCache, CacheConfig
from services.history import SiteHistory
from services.readings import SourceResult
from services.sites import UnknownSiteError, all_site_ids
from services.snapshot_store import SnapshotStore
from services.water_levels import WARNINGS_KEY, WATER_LEVELS_KEY, WaterLevelService


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class FakeWarnings:
    name = "bom-warnings"

    def __init__(self, warnings) -> None:
        self.warnings = warnings
        self.calls = 0

    async def fetch_all(self):
        self.calls += 1
        return SourceResult.success(self.warnings)

    async def probe(self) -> bool:
        return True

    async def close(self) -> None:
        return None


def build(tmp_path: Path, source: FakeLevelSource, *, ticks: FakeClock | None = None, **kwargs) -> WaterLevelService:
    """Service over ``source`` whose cache and store clocks both advance with ``ticks``."""
    ticks = ticks or FakeClock()
    clock = lambda: NOW  # noqa: E731
    aggregator = Aggregator(
        [source],
        history=SiteHistory(retention_hours=24, max_points=50, clock=clock),
        max_age=timedelta(hours=48),
        clock=clock,
    )
    cache = AdaptiveCache(CacheConfig(normal_ttl=300, elevated_ttl=60, stale_after=120), clock=ticks)
    store = SnapshotStore(db_path=tmp_path / "snapshots.sqlite", clock=lambda: NOW.timestamp() + ticks.now)
    return WaterLevelService(aggregator, cache, store, snapshot_max_age_seconds=600, **kwargs)


def all_sites_source(value: float = 1.0) -> FakeLevelSource:
    return FakeLevelSource("bom", {site_id: series(site_id, value, value - 0.1) for site_id in all_site_ids()})


@pytest.mark.anyio
async def test_latest_cold_fetches_and_persists(tmp_path: Path):
    source = all_sites_source()
    service = build(tmp_path, source)

    first = await service.latest()
    second = await service.latest()

    assert first.from_cache is False
    assert second.from_cache is True
    assert len(source.calls) == 1
    assert first.data.resolved_count == len(all_site_ids())
    assert await service.store.get(WATER_LEVELS_KEY, max_age_seconds=600) is not None


@pytest.mark.anyio
async def test_latest_prefers_shared_snapshot_over_providers(tmp_path: Path):
    warm = build(tmp_path, all_sites_source(1.5))
    await warm.refresh_now()

    source = all_sites_source(9.9)
    cold = build(tmp_path, source)
    result = await cold.latest()

    assert source.calls == []
    assert result.data.readings["130005A"].observation.value == 1.5


@pytest.mark.anyio
async def test_elevated_reads_go_back_to_providers_instead_of_own_snapshot(tmp_path: Path):
    ticks = FakeClock()
    source = all_sites_source(11.0)
    service = build(tmp_path, source, ticks=ticks)

    first = await service.latest()
    assert first.elevated is True

    last = first
    for _ in range(18):
        ticks.now += 30
        last = await service.latest()
        await service.cache.wait_idle()

    # 540s of reads with a 60s elevated TTL and a 600s durable window
    assert len(source.calls) >= 9
    assert last.age_seconds < 60


@pytest.mark.anyio
async def test_shared_snapshot_reports_its_real_age(tmp_path: Path):
    warm = build(tmp_path, all_sites_source(1.5))
    await warm.refresh_now()

    ticks = FakeClock()
    ticks.now = 200.0
    source = all_sites_source(9.9)
    cold = build(tmp_path, source, ticks=ticks)
    result = await cold.latest()

    assert source.calls == []
    assert result.from_cache is False
    assert result.age_seconds == pytest.approx(200.0)
    assert cold.cache.state(WATER_LEVELS_KEY) == "stale"


@pytest.mark.anyio
async def test_refresh_now_updates_cache_and_metadata(tmp_path: Path):
    service = build(tmp_path, all_sites_source())
    snapshot = await service.refresh_now()

    cached = service.cache.get(WATER_LEVELS_KEY)
    assert cached is not None and cached.data is snapshot
    metadata = await service.store.get_metadata(WATER_LEVELS_KEY)
    assert metadata.success_count == 1
    assert metadata.error_count == 0


@pytest.mark.anyio
async def test_refresh_now_outage_is_cached_short_and_not_persisted(tmp_path: Path):
    service = build(tmp_path, FakeLevelSource("bom", error=RuntimeError("down")))
    snapshot = await service.refresh_now()

    assert snapshot.unavailable
    assert service.cache.get(WATER_LEVELS_KEY).elevated is True
    assert await service.store.get(WATER_LEVELS_KEY, max_age_seconds=600) is None
    metadata = await service.store.get_metadata(WATER_LEVELS_KEY)
    assert metadata.error_count == 1
    assert metadata.last_error == "no source returned data"


@pytest.mark.anyio
async def test_site_detail_includes_history_and_projections(tmp_path: Path):
    source = all_sites_source()
    source.history["130005A"] = series("130005A", 1.0, 0.9, 0.8)
    service = build(tmp_path, source)

    detail = await service.site_detail("130005a")
    payload = detail.as_payload()

    assert payload["site"]["id"] == "130005A"
    assert payload["thresholds"] == {"minor": 7.0, "moderate": 8.5, "major": 10.5}
    assert payload["current"]["trend"] == "rising"
    assert [point["value"] for point in payload["history"]] == [0.8, 0.9, 1.0]
    assert payload["history_source"] == "bom"
    assert [item["time"] for item in payload["predictions"]] == ["+2h", "+4h", "+6h"]


@pytest.mark.anyio
async def test_site_detail_unknown_site(tmp_path: Path):
    service = build(tmp_path, all_sites_source())
    with pytest.raises(UnknownSiteError):
        await service.site_detail("999999Z")


@pytest.mark.anyio
async def test_severe_warnings_use_short_ttl(tmp_path: Path):
    warning = FloodWarning(
        id="IDQ20825-1",
        title="Major Flood Warning for the Fitzroy River",
        area="Fitzroy River",
        level="major",
        issue_time=NOW,
        summary="Major flooding is expected at Rockhampton.",
    )
    feed = FakeWarnings([warning])
    service = build(tmp_path, all_sites_source(), warnings_source=feed)

    result = await service.warnings()
    await service.warnings()

    assert result.data.value == [warning]
    assert result.elevated is True
    assert feed.calls == 1
    assert service.cache.stats()["entries"][WARNINGS_KEY]["ttl_seconds"] == 60


@pytest.mark.anyio
async def test_probes_report_each_target(tmp_path: Path):
    healthy = FakeLevelSource("bom")
    broken = FakeLevelSource("wmip", error=RuntimeError("down"))
    service = build(tmp_path, healthy, probe_targets=[healthy, broken])
    assert await service.probes() == {"bom": True, "wmip": False}
    await service.close()
