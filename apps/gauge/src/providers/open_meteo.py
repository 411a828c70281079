"""Open-Meteo precipitation and GloFAS river discharge forecasts."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable, Optional, Sequence
from zoneinfo import ZoneInfo

import httpx

from config import settings
from providers.base import SourceClient
from providers.payloads import OpenMeteoFloodPayload, OpenMeteoRainPayload
from services.derivation import RiskLevel, Trend, discharge_trend, flood_risk
from services.readings import SourceResult, isoformat, utc_now
from services.sites import Site, get_site

logger = logging.getLogger("gauge.hub.providers.open_meteo")

HOURS_PER_DAY = 24
PAST_DAYS = 7
FORECAST_DAYS = 7


def _value(values: Sequence[Optional[float]], index: int) -> float:
    if 0 <= index < len(values) and values[index] is not None:
        return float(values[index])
    return 0.0


def _optional(values: Sequence[Optional[float]], index: int) -> Optional[float]:
    if 0 <= index < len(values) and values[index] is not None:
        return float(values[index])
    return None


@dataclass(frozen=True, slots=True)
class RainfallPoint:
    timestamp: str
    precipitation: float
    probability: Optional[float] = None

    def as_payload(self) -> dict[str, Any]:
        return {"timestamp": self.timestamp, "precipitation": self.precipitation, "probability": self.probability}


@dataclass(frozen=True, slots=True)
class DailyRainfall:
    date: str
    precipitation_sum: float
    probability_max: float

    def as_payload(self) -> dict[str, Any]:
        return {
            "date": self.date,
            "precipitation_sum": self.precipitation_sum,
            "probability_max": self.probability_max,
        }


@dataclass(frozen=True, slots=True)
class RainfallOutlook:
    site_id: str
    lat: float
    lng: float
    current_precipitation: float
    last_24h: float
    next_24h: float
    last_7d: float
    next_7d: float
    hourly_history: tuple[RainfallPoint, ...] = ()
    hourly_forecast: tuple[RainfallPoint, ...] = ()
    daily_forecast: tuple[DailyRainfall, ...] = ()
    fetched_at: datetime = field(default_factory=utc_now)

    @property
    def is_raining(self) -> bool:
        return self.current_precipitation > 0

    def as_payload(self) -> dict[str, Any]:
        return {
            "site_id": self.site_id,
            "location": {"lat": self.lat, "lng": self.lng},
            "current": {"precipitation": self.current_precipitation, "is_raining": self.is_raining},
            "last_24_hours": round(self.last_24h, 1),
            "next_24_hours": round(self.next_24h, 1),
            "last_7_days": round(self.last_7d, 1),
            "next_7_days": round(self.next_7d, 1),
            "hourly_history": [point.as_payload() for point in self.hourly_history],
            "hourly_forecast": [point.as_payload() for point in self.hourly_forecast],
            "daily_forecast": [day.as_payload() for day in self.daily_forecast],
            "fetched_at": isoformat(self.fetched_at),
        }


@dataclass(frozen=True, slots=True)
class DischargeDay:
    date: str
    discharge: Optional[float]
    discharge_mean: Optional[float]
    discharge_max: Optional[float]

    def as_payload(self) -> dict[str, Any]:
        return {
            "date": self.date,
            "discharge": self.discharge,
            "discharge_mean": self.discharge_mean,
            "discharge_max": self.discharge_max,
        }


@dataclass(frozen=True, slots=True)
class DischargeForecast:
    site_id: str
    current: float
    days: tuple[DischargeDay, ...]
    trend: Trend
    risk_level: RiskLevel
    fetched_at: datetime = field(default_factory=utc_now)

    def as_payload(self) -> dict[str, Any]:
        return {
            "site_id": self.site_id,
            "current": self.current,
            "unit": "m3/s",
            "forecast": [day.as_payload() for day in self.days],
            "trend": self.trend,
            "risk_level": self.risk_level,
            "fetched_at": isoformat(self.fetched_at),
        }


def normalize_rainfall(site: Site, payload: OpenMeteoRainPayload, current_hour: str) -> RainfallOutlook:
    """Split the hourly series around ``current_hour`` (local ``YYYY-MM-DDTHH:00``)."""
    times = payload.hourly.time
    precipitation = payload.hourly.precipitation
    probability = payload.hourly.precipitation_probability
    current_index = next((index for index, stamp in enumerate(times) if stamp >= current_hour), len(times))
    history_start = max(0, current_index - HOURS_PER_DAY)
    forecast_end = min(current_index + HOURS_PER_DAY, len(times))

    history = tuple(
        RainfallPoint(times[i], _value(precipitation, i), _optional(probability, i))
        for i in range(history_start, current_index)
    )
    forecast = tuple(
        RainfallPoint(times[i], _value(precipitation, i), _optional(probability, i))
        for i in range(current_index, forecast_end)
    )
    daily_sums = [value or 0.0 for value in payload.daily.precipitation_sum]
    daily = tuple(
        DailyRainfall(
            date=date,
            precipitation_sum=_value(payload.daily.precipitation_sum, PAST_DAYS + offset),
            probability_max=_value(payload.daily.precipitation_probability_max, PAST_DAYS + offset),
        )
        for offset, date in enumerate(payload.daily.time[PAST_DAYS:])
    )
    return RainfallOutlook(
        site_id=site.id,
        lat=site.lat,
        lng=site.lng,
        current_precipitation=payload.current.precipitation or 0.0,
        last_24h=sum(point.precipitation for point in history),
        next_24h=sum(point.precipitation for point in forecast),
        last_7d=sum(daily_sums[:PAST_DAYS]),
        next_7d=sum(daily_sums[PAST_DAYS:]),
        hourly_history=history,
        hourly_forecast=forecast,
        daily_forecast=daily,
    )


def normalize_flood(site_id: str, payload: OpenMeteoFloodPayload) -> Optional[DischargeForecast]:
    daily = payload.daily
    if daily is None or not daily.river_discharge:
        return None
    discharge = [value or 0.0 for value in daily.river_discharge]
    maxima = [value for value in daily.river_discharge_max if value is not None]
    current = discharge[0]
    peak = max(maxima) if maxima else current
    days = tuple(
        DischargeDay(
            date=date,
            discharge=_optional(daily.river_discharge, index),
            discharge_mean=_optional(daily.river_discharge_mean, index),
            discharge_max=_optional(daily.river_discharge_max, index),
        )
        for index, date in enumerate(daily.time)
    )
    return DischargeForecast(
        site_id=site_id,
        current=current,
        days=days,
        trend=discharge_trend(discharge),
        risk_level=flood_risk(current, peak),
    )


class RainfallForecastClient(SourceClient[RainfallOutlook]):
    name = "open-meteo-rain"

    def __init__(
        self,
        *,
        url: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
        clock: Optional[Callable[[], datetime]] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(timeout=timeout or settings.forecast_timeout_seconds, client=client, **kwargs)
        self._url = url or settings.open_meteo_forecast_url
        self._clock = clock or utc_now

    def _current_hour(self) -> str:
        local = self._clock().astimezone(ZoneInfo(settings.forecast_timezone))
        return local.strftime("%Y-%m-%dT%H:00")

    async def _fetch(self, site_id: str) -> Optional[RainfallOutlook]:
        site = get_site(site_id)
        params = {
            "latitude": site.lat,
            "longitude": site.lng,
            "hourly": "precipitation,precipitation_probability",
            "daily": "precipitation_sum,precipitation_probability_max",
            "current": "precipitation,is_day",
            "past_days": PAST_DAYS,
            "forecast_days": FORECAST_DAYS,
            "timezone": settings.forecast_timezone,
        }
        response = await self._get(self._url, params=params)
        payload = OpenMeteoRainPayload.model_validate(response.json())
        return normalize_rainfall(site, payload, self._current_hour())

    async def _probe(self) -> bool:
        response = await self._get(
            self._url,
            params={"latitude": -22.8245, "longitude": 147.6392, "current": "precipitation", "forecast_days": 1},
        )
        return response.status_code == 200


class FloodForecastClient(SourceClient[DischargeForecast]):
    name = "open-meteo-flood"

    def __init__(
        self,
        *,
        url: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(timeout=timeout or settings.forecast_timeout_seconds, client=client, **kwargs)
        self._url = url or settings.open_meteo_flood_url

    def _params(self, sites: Sequence[Site]) -> dict[str, Any]:
        return {
            "latitude": ",".join(str(site.lat) for site in sites),
            "longitude": ",".join(str(site.lng) for site in sites),
            "daily": "river_discharge,river_discharge_mean,river_discharge_max",
            "forecast_days": FORECAST_DAYS,
            "past_days": 1,
            "timezone": settings.forecast_timezone,
        }

    async def _forecasts(self, sites: Sequence[Site]) -> dict[str, SourceResult[DischargeForecast]]:
        response = await self._get(self._url, params=self._params(sites))
        raw = response.json()
        # A single location returns an object, several return a list
        documents = raw if isinstance(raw, list) else [raw]
        results: dict[str, SourceResult[DischargeForecast]] = {}
        for index, site in enumerate(sites):
            if index >= len(documents):
                results[site.id] = SourceResult.failure("no data")
                continue
            forecast = normalize_flood(site.id, OpenMeteoFloodPayload.model_validate(documents[index]))
            results[site.id] = (
                SourceResult.success(forecast) if forecast is not None else SourceResult.failure("no data")
            )
        return results

    async def _fetch(self, site_id: str) -> Optional[DischargeForecast]:
        site = get_site(site_id)
        result = (await self._forecasts([site]))[site.id]
        return result.value

    async def fetch_batch(self, site_ids: Iterable[str]) -> dict[str, SourceResult[DischargeForecast]]:
        sites = [get_site(site_id) for site_id in dict.fromkeys(site_ids)]
        results: dict[str, SourceResult[DischargeForecast]] = {}
        for start in range(0, len(sites), self._concurrency):
            chunk = sites[start : start + self._concurrency]
            outcome = await self._guarded(
                ",".join(site.id for site in chunk),
                lambda chunk=chunk: self._forecasts(chunk),
            )
            if outcome.ok and outcome.value is not None:
                results.update(outcome.value)
            else:
                for site in chunk:
                    results[site.id] = SourceResult.failure(outcome.reason or "no data")
            if start + self._concurrency < len(sites) and self._batch_delay > 0:
                await asyncio.sleep(self._batch_delay)
        return results

    async def _probe(self) -> bool:
        response = await self._get(
            self._url,
            params={"latitude": -23.3833, "longitude": 150.5, "daily": "river_discharge", "forecast_days": 1},
        )
        return response.status_code == 200


__all__ = [
    "DailyRainfall",
    "DischargeDay",
    "DischargeForecast",
    "FloodForecastClient",
    "RainfallForecastClient",
    "RainfallOutlook",
    "RainfallPoint",
    "normalize_flood",
    "normalize_rainfall",
]
