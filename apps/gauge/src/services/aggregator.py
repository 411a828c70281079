from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional, Protocol, Sequence

from config import settings
from services.derivation import hours_between, is_hazardous, is_usable, status, trend
from services.history import SiteHistory
from services.readings import (
    UNAVAILABLE_SOURCE,
    BatchSnapshot,
    DamStorageReading,
    DischargeReading,
    EnrichedReading,
    LevelSeries,
    Observation,
    RainfallReading,
    SourceResult,
    utc_now,
)
from services.sites import UnknownSiteError, get_site, thresholds_for

logger = logging.getLogger("gauge.hub.aggregator")


class LevelSource(Protocol):
    name: str

    async def fetch_batch(self, site_ids: Iterable[str]) -> dict[str, SourceResult[LevelSeries]]: ...

    async def fetch_history(self, site_id: str, hours: float = 24.0) -> SourceResult[LevelSeries]: ...


class ExtendedSource(Protocol):
    async def fetch_metrics(
        self, site_ids: Iterable[str]
    ) -> tuple[dict[str, DischargeReading], dict[str, RainfallReading]]: ...


class StorageSource(Protocol):
    async def fetch_all(self) -> list[DamStorageReading]: ...


class Aggregator:
    """Merge water level providers in priority order and enrich the result.

    Each provider after the first is only asked about the sites its
    predecessors could not resolve. Discharge, rainfall and storage are
    fetched alongside and never fail the refresh.
    """

    def __init__(
        self,
        level_sources: Sequence[LevelSource],
        *,
        extended_source: Optional[ExtendedSource] = None,
        storage_source: Optional[StorageSource] = None,
        history: Optional[SiteHistory] = None,
        max_age: Optional[timedelta] = None,
        deadband: Optional[float] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if not level_sources:
            raise ValueError("At least one water level source is required")
        self._level_sources = list(level_sources)
        self._extended = extended_source
        self._storage = storage_source
        self._history = history or SiteHistory(
            retention_hours=settings.history_window_hours,
            max_points=settings.history_max_points,
        )
        self._max_age = max_age or timedelta(hours=settings.observation_max_age_hours)
        self._deadband = settings.trend_deadband if deadband is None else deadband
        self._clock = clock

    @property
    def history(self) -> SiteHistory:
        return self._history

    @property
    def source_names(self) -> list[str]:
        return [source.name for source in self._level_sources]

    async def refresh(self, site_ids: Iterable[str]) -> BatchSnapshot:
        started = time.perf_counter()
        ids = list(dict.fromkeys(get_site(site_id).id for site_id in site_ids))
        now = self._clock()

        (resolved, sources), (discharge, rainfall), dam_storage = await asyncio.gather(
            self._resolve_levels(ids, now),
            self._fetch_extended(ids),
            self._fetch_storage(),
        )

        readings: dict[str, Optional[EnrichedReading]] = {}
        for site_id in ids:
            series = resolved.get(site_id)
            readings[site_id] = await self._enrich(series) if series is not None else None
        await self._history.record(obs for series in resolved.values() for obs in series.observations)

        if not resolved:
            logger.warning("No water level data available from any source for %d sites", len(ids))
            sources = [UNAVAILABLE_SOURCE]
        missing = [site_id for site_id in ids if readings[site_id] is None]
        if missing and resolved:
            logger.info("No fresh data for %d sites: %s", len(missing), ", ".join(missing))

        elevated = any(reading is not None and is_hazardous(reading.status) for reading in readings.values())
        duration_ms = int((time.perf_counter() - started) * 1000)
        logger.info(
            "Refresh resolved %d/%d sites from %s (elevated=%s, %d discharge, %d rainfall, %d storage) in %d ms",
            len(resolved),
            len(ids),
            "+".join(sources),
            elevated,
            len(discharge),
            len(rainfall),
            len(dam_storage),
            duration_ms,
        )
        return BatchSnapshot(
            readings=readings,
            sources=tuple(sources),
            elevated=elevated,
            generated_at=now,
            discharge=discharge,
            rainfall=rainfall,
            dam_storage=tuple(dam_storage),
            duration_ms=duration_ms,
        )

    async def recent_history(self, site_id: str, hours: float = 24.0) -> tuple[list[Observation], str]:
        """Chronological level history for one site and the source that supplied it."""
        site = get_site(site_id)
        for source in self._level_sources:
            try:
                result = await source.fetch_history(site.id, hours)
            except UnknownSiteError:
                raise
            except Exception:  # noqa: BLE001 - fall through to the next source
                logger.warning("History fetch from %s failed for %s", source.name, site.id, exc_info=True)
                continue
            if result.ok and result.value is not None:
                return list(reversed(result.value.observations)), source.name
        cutoff = self._clock() - timedelta(hours=hours)
        window = [obs for obs in await self._history.recent(site.id) if obs.timestamp >= cutoff]
        return window, "history"

    async def _resolve_levels(self, ids: list[str], now: datetime) -> tuple[dict[str, LevelSeries], list[str]]:
        resolved: dict[str, LevelSeries] = {}
        sources: list[str] = []
        for source in self._level_sources:
            pending = [site_id for site_id in ids if site_id not in resolved]
            if not pending:
                break
            try:
                results = await source.fetch_batch(pending)
            except UnknownSiteError:
                raise
            except Exception:  # noqa: BLE001 - a misbehaving client counts as an outage
                logger.warning("Level source %s failed for %d sites", source.name, len(pending), exc_info=True)
                continue
            contributed = 0
            for site_id in pending:
                result = results.get(site_id)
                if result is None or not result.ok or result.value is None:
                    continue
                usable = self._usable(result.value, now)
                if usable is None:
                    logger.info("%s data stale for %s: %s", source.name, site_id, result.value.latest.timestamp)
                    continue
                resolved[site_id] = usable
                contributed += 1
            logger.debug("%s resolved %d/%d pending sites", source.name, contributed, len(pending))
            if contributed:
                sources.append(source.name)
        return resolved, sources

    def _usable(self, series: LevelSeries, now: datetime) -> Optional[LevelSeries]:
        fresh = [obs for obs in series.observations if is_usable(obs.timestamp, now, self._max_age)]
        if not fresh:
            return None
        return LevelSeries.from_observations(series.site_id, fresh)

    async def _enrich(self, series: LevelSeries) -> EnrichedReading:
        latest = series.latest
        previous: Optional[Observation] = series.observations[1] if len(series.observations) > 1 else None
        if previous is None:
            previous = await self._history.previous_before(latest.site_id, latest.timestamp)
        if previous is not None and previous.unit == latest.unit:
            direction, rate = trend(
                latest.value,
                previous.value,
                hours_between(latest.timestamp, previous.timestamp),
                self._deadband,
            )
        else:
            direction, rate = "stable", 0.0
        return EnrichedReading(
            observation=latest,
            status=status(latest.value, thresholds_for(latest.site_id)),
            trend=direction,
            change_rate=rate,
        )

    async def _fetch_extended(
        self, ids: list[str]
    ) -> tuple[dict[str, DischargeReading], dict[str, RainfallReading]]:
        if self._extended is None:
            return {}, {}
        try:
            return await self._extended.fetch_metrics(ids)
        except UnknownSiteError:
            raise
        except Exception:  # noqa: BLE001 - secondary metrics are best effort
            logger.warning("Discharge/rainfall fetch failed; continuing without them", exc_info=True)
            return {}, {}

    async def _fetch_storage(self) -> list[DamStorageReading]:
        if self._storage is None:
            return []
        try:
            return await self._storage.fetch_all()
        except Exception:  # noqa: BLE001 - secondary metrics are best effort
            logger.warning("Dam storage fetch failed; continuing without it", exc_info=True)
            return []


__all__ = ["Aggregator", "ExtendedSource", "LevelSource", "StorageSource"]
