from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional, Sequence

from config import Settings
from providers import (
    BomExtendedClient,
    BomStorageClient,
    BomWaterLevelClient,
    FloodForecastClient,
    RainfallForecastClient,
    SourceClient,
    WarningsClient,
    WmipClient,
)
from providers.open_meteo import DischargeForecast, RainfallOutlook
from providers.warnings import FloodWarning
from services.aggregator import Aggregator
from services.cache import AdaptiveCache, CacheConfig, CacheResult
from services.derivation import Projection, project_levels
from services.history import SiteHistory
from services.readings import BatchSnapshot, EnrichedReading, Observation, SourceResult, isoformat, utc_now
from services.sites import FloodThresholds, Site, active_sites, all_site_ids, get_site, thresholds_for
from services.snapshot_store import SnapshotStore

logger = logging.getLogger("gauge.hub.water_levels")

WATER_LEVELS_KEY = "water-levels"
WARNINGS_KEY = "warnings"
ALL_SITES = "all"

ForecastMap = Dict[str, SourceResult[Any]]


def _levels_need_attention(snapshot: BatchSnapshot) -> bool:
    # An outage is kept on the short TTL as well so it is retried sooner.
    return snapshot.elevated or snapshot.unavailable


def _warnings_need_attention(result: SourceResult[list[FloodWarning]]) -> bool:
    if not result.ok or result.value is None:
        return True
    return any(warning.severe for warning in result.value)


def _rainfall_needs_attention(results: ForecastMap) -> bool:
    return any(not result.ok or (result.value is not None and result.value.is_raining) for result in results.values())


def _flood_needs_attention(results: ForecastMap) -> bool:
    return any(
        not result.ok or (result.value is not None and result.value.risk_level in ("high", "extreme"))
        for result in results.values()
    )


@dataclass(frozen=True, slots=True)
class SiteDetail:
    site: Site
    thresholds: Optional[FloodThresholds]
    reading: Optional[EnrichedReading]
    history: tuple[Observation, ...]
    history_source: str
    projections: tuple[Projection, ...]
    generated_at: datetime = field(default_factory=utc_now)

    def as_payload(self) -> dict[str, Any]:
        return {
            "site": self.site.as_payload(),
            "thresholds": self.thresholds.as_payload() if self.thresholds else None,
            "current": self.reading.as_payload() if self.reading else None,
            "history": [
                {"timestamp": isoformat(obs.timestamp), "value": obs.value, "unit": obs.unit}
                for obs in self.history
            ],
            "history_source": self.history_source,
            "predictions": [projection.as_payload() for projection in self.projections],
            "generated_at": isoformat(self.generated_at),
        }


class WaterLevelService:
    """Serve snapshots, forecasts and warnings through the adaptive cache.

    Reads consult the in-process cache first, then the shared snapshot store
    (only for a batch newer than any this instance already holds), and only
    then the aggregator. ``refresh_now`` is the entry point for the
    periodic trigger and always goes to the providers.
    """

    def __init__(
        self,
        aggregator: Aggregator,
        cache: AdaptiveCache,
        store: SnapshotStore,
        *,
        warnings_source: Optional[WarningsClient] = None,
        rainfall_source: Optional[RainfallForecastClient] = None,
        flood_source: Optional[FloodForecastClient] = None,
        probe_targets: Sequence[SourceClient[Any]] = (),
        snapshot_max_age_seconds: float = 600.0,
        history_hours: float = 24.0,
    ) -> None:
        self._aggregator = aggregator
        self._cache = cache
        self._store = store
        self._warnings = warnings_source
        self._rainfall = rainfall_source
        self._flood = flood_source
        self._probe_targets = list(probe_targets)
        self._snapshot_max_age = snapshot_max_age_seconds
        self._history_hours = history_hours
        self._latest_generated_at: Optional[datetime] = None
        self._shared_hit: Optional[tuple[BatchSnapshot, float]] = None

    @property
    def cache(self) -> AdaptiveCache:
        return self._cache

    @property
    def store(self) -> SnapshotStore:
        return self._store

    async def latest(self) -> CacheResult[BatchSnapshot]:
        return await self._cache.get_or_fetch(
            WATER_LEVELS_KEY, self._load_levels, _levels_need_attention, age_of=self._shared_age
        )

    async def _load_levels(self) -> BatchSnapshot:
        stored = await self._store.get_stored(WATER_LEVELS_KEY, max_age_seconds=self._snapshot_max_age)
        if stored is not None and self._is_newer(stored.snapshot):
            logger.info(
                "Using shared snapshot generated at %s (%.0fs old)",
                isoformat(stored.snapshot.generated_at),
                stored.age_seconds,
            )
            self._remember(stored.snapshot, age_seconds=stored.age_seconds)
            return stored.snapshot
        snapshot = await self._aggregator.refresh(all_site_ids())
        self._remember(snapshot)
        if not snapshot.unavailable:
            await self._store.put(WATER_LEVELS_KEY, snapshot)
        return snapshot

    async def refresh_now(self) -> BatchSnapshot:
        try:
            snapshot = await self._aggregator.refresh(all_site_ids())
        except Exception as exc:
            await self._store.record_error(WATER_LEVELS_KEY, str(exc) or exc.__class__.__name__)
            raise
        self._remember(snapshot)
        self._cache.set(WATER_LEVELS_KEY, snapshot, elevated=_levels_need_attention(snapshot))
        if snapshot.unavailable:
            await self._store.record_error(WATER_LEVELS_KEY, "no source returned data")
            return snapshot
        await self._store.put(WATER_LEVELS_KEY, snapshot)
        await self._store.record_success(WATER_LEVELS_KEY, elevated=snapshot.elevated)
        return snapshot

    def _is_newer(self, snapshot: BatchSnapshot) -> bool:
        # The store hands back what this instance wrote; only a newer batch from another instance counts.
        return self._latest_generated_at is None or snapshot.generated_at > self._latest_generated_at

    def _remember(self, snapshot: BatchSnapshot, *, age_seconds: float = 0.0) -> None:
        self._latest_generated_at = snapshot.generated_at
        self._shared_hit = (snapshot, age_seconds) if age_seconds > 0 else None

    def _shared_age(self, snapshot: BatchSnapshot) -> float:
        if self._shared_hit is not None and self._shared_hit[0] is snapshot:
            return self._shared_hit[1]
        return 0.0

    async def site_detail(self, site_id: str) -> SiteDetail:
        site = get_site(site_id)
        snapshot = (await self.latest()).data
        reading = snapshot.readings.get(site.id)
        history, source = await self._aggregator.recent_history(site.id, self._history_hours)
        projections = project_levels(reading.observation.value, reading.change_rate) if reading is not None else []
        return SiteDetail(
            site=site,
            thresholds=thresholds_for(site.id),
            reading=reading,
            history=tuple(history),
            history_source=source,
            projections=tuple(projections),
        )

    async def warnings(self) -> CacheResult[SourceResult[list[FloodWarning]]]:
        if self._warnings is None:
            raise RuntimeError("Warnings source is not configured")
        return await self._cache.get_or_fetch(WARNINGS_KEY, self._warnings.fetch_all, _warnings_need_attention)

    async def rainfall_outlook(self, site_id: Optional[str] = None) -> CacheResult[Mapping[str, SourceResult[RainfallOutlook]]]:
        if self._rainfall is None:
            raise RuntimeError("Rainfall forecast source is not configured")
        return await self._forecast("rainfall", self._rainfall, site_id, _rainfall_needs_attention)

    async def flood_outlook(self, site_id: Optional[str] = None) -> CacheResult[Mapping[str, SourceResult[DischargeForecast]]]:
        if self._flood is None:
            raise RuntimeError("Flood forecast source is not configured")
        return await self._forecast("flood", self._flood, site_id, _flood_needs_attention)

    async def _forecast(
        self,
        kind: str,
        source: SourceClient[Any],
        site_id: Optional[str],
        classify: Callable[[ForecastMap], bool],
    ) -> CacheResult[ForecastMap]:
        if site_id is None:
            ids = [site.id for site in active_sites()]
            scope = ALL_SITES
        else:
            ids = [get_site(site_id).id]
            scope = ids[0]

        async def _load() -> ForecastMap:
            return await source.fetch_batch(ids)

        return await self._cache.get_or_fetch(f"{kind}:{scope}", _load, classify)

    async def probes(self) -> dict[str, bool]:
        outcomes = await asyncio.gather(*(client.probe() for client in self._probe_targets))
        return {client.name: bool(ok) for client, ok in zip(self._probe_targets, outcomes)}

    async def close(self) -> None:
        await self._cache.close()
        for client in self._probe_targets:
            try:
                await client.close()
            except Exception:  # noqa: BLE001 - shutdown must reach every client
                logger.warning("Closing %s client failed", client.name, exc_info=True)


def build_services(config: Settings) -> WaterLevelService:
    """Wire providers, aggregator, cache and store from settings."""
    level_clients: dict[str, BomWaterLevelClient | WmipClient] = {
        "bom": BomWaterLevelClient(),
        "wmip": WmipClient(),
    }
    level_sources = [level_clients[name] for name in config.source_priority]
    extended = BomExtendedClient()
    storage = BomStorageClient()
    warnings_client = WarningsClient()
    rainfall = RainfallForecastClient()
    flood = FloodForecastClient()

    history = SiteHistory(retention_hours=config.history_window_hours, max_points=config.history_max_points)
    aggregator = Aggregator(
        level_sources,
        extended_source=extended,
        storage_source=storage,
        history=history,
        max_age=timedelta(hours=config.observation_max_age_hours),
        deadband=config.trend_deadband,
    )
    cache = AdaptiveCache(
        CacheConfig(
            normal_ttl=config.cache_normal_ttl_seconds,
            elevated_ttl=config.cache_elevated_ttl_seconds,
            stale_after=config.cache_stale_seconds,
        )
    )
    store = SnapshotStore(db_path=Path(config.snapshot_store_path), enabled=config.snapshot_store_enabled)
    logger.info(
        "Level sources in priority order: %s; snapshot store %s",
        ", ".join(source.name for source in level_sources),
        store.path if store.enabled else "disabled",
    )
    return WaterLevelService(
        aggregator,
        cache,
        store,
        warnings_source=warnings_client,
        rainfall_source=rainfall,
        flood_source=flood,
        probe_targets=[*level_clients.values(), extended, storage, warnings_client, rainfall, flood],
        snapshot_max_age_seconds=config.snapshot_max_age_seconds,
        history_hours=config.history_window_hours,
    )


__all__ = ["SiteDetail", "WaterLevelService", "build_services", "WATER_LEVELS_KEY", "WARNINGS_KEY"]
