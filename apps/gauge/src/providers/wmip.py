"""Queensland Water Monitoring Information Portal client (Kisters WISKI JSON)."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Optional

import httpx

from config import settings
from providers.base import SourceClient
from providers.payloads import KistersPayload
from services.readings import LevelSeries, Observation, SourceResult, parse_timestamp, utc_now

logger = logging.getLogger("gauge.hub.providers.wmip")

RECENT_WINDOW = timedelta(hours=2)
WATER_LEVEL_TS = "{site_id}.Water Level.15min.Master"
PROBE_STATION = "130207A"


def _kisters_time(value: datetime) -> str:
    return value.isoformat(timespec="seconds").replace("+00:00", "Z")


def normalize(site_id: str, payload: KistersPayload) -> list[Observation]:
    """Turn a Kisters ``getTimeseriesValues`` response into observations."""
    if not payload.series:
        return []
    series = payload.series[0]
    unit = series.ts_unitname or "m"
    observations: list[Observation] = []
    for row in series.data:
        if row.Value is None:
            continue
        timestamp = parse_timestamp(row.Timestamp)
        if timestamp is None:
            continue
        observations.append(
            Observation(site_id=site_id, value=float(row.Value), unit=unit, timestamp=timestamp, source="wmip")
        )
    return observations


class WmipClient(SourceClient[LevelSeries]):
    name = "wmip"

    def __init__(
        self,
        *,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(timeout=timeout or settings.wmip_timeout_seconds, client=client, **kwargs)
        self._base_url = base_url or settings.wmip_base_url

    def _params(self, request: str, **extra: str) -> dict[str, str]:
        params = {
            "service": "kisters",
            "type": "queryServices",
            "request": request,
            "format": "json",
        }
        params.update(extra)
        return params

    async def _timeseries(self, site_id: str, start: datetime, end: datetime) -> list[Observation]:
        params = self._params(
            "getTimeseriesValues",
            ts_id=WATER_LEVEL_TS.format(site_id=site_id),
            **{
                "from": _kisters_time(start),
                "to": _kisters_time(end),
                "returnfields": "Timestamp,Value,Quality",
            },
        )
        response = await self._get(self._base_url, params=params)
        payload = KistersPayload.from_json(response.json())
        return normalize(site_id, payload)

    async def _fetch(self, site_id: str) -> Optional[LevelSeries]:
        end = utc_now()
        observations = await self._timeseries(site_id, end - RECENT_WINDOW, end)
        if not observations:
            logger.info("No WMIP data available for gauge %s", site_id)
            return None
        return LevelSeries.from_observations(site_id, observations)

    async def fetch_history(self, site_id: str, hours: float = 24.0) -> SourceResult[LevelSeries]:
        end = utc_now()
        start = end - timedelta(hours=max(hours, 0.25))

        async def _call() -> Optional[LevelSeries]:
            observations = await self._timeseries(site_id, start, end)
            if not observations:
                return None
            return LevelSeries.from_observations(site_id, observations)

        return await self._guarded(f"{site_id} history", _call, timeout=settings.history_timeout_seconds)

    async def _probe(self) -> bool:
        response = await self._get(self._base_url, params=self._params("getStationList", station_id=PROBE_STATION))
        return response.status_code == 200


__all__ = ["WmipClient", "normalize"]
