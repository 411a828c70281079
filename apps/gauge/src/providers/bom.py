"""Bureau of Meteorology Water Data Online clients (SOS2 / WaterML 2.0).

Water level, discharge, rainfall and storage all come from the same
``GetObservation`` call; they differ only in the observed parameter and in
how the latest point is normalized.
"""

from __future__ import annotations

import asyncio
import logging
import math
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Iterable, Optional, TypeVar

import httpx

from config import settings
from providers.base import SourceClient
from providers.payloads import WaterML2Payload, WaterML2Point
from services.readings import (
    DamStorageReading,
    DischargeReading,
    LevelSeries,
    Observation,
    RainfallReading,
    SourceResult,
    parse_timestamp,
    utc_now,
)
from services.sites import DAM_STATIONS, UnknownSiteError, get_dam

logger = logging.getLogger("gauge.hub.providers.bom")

T = TypeVar("T")

WATER_COURSE_LEVEL = "Water Course Level"
WATER_COURSE_DISCHARGE = "Water Course Discharge"
STORAGE_LEVEL = "Storage Level"
STORAGE_VOLUME = "Storage Volume"
RAINFALL = "Rainfall"

STATION_URI = "http://bom.gov.au/waterdata/services/stations/{station_id}"
PARAMETER_URI = "http://bom.gov.au/waterdata/services/parameters/{parameter}"
WATERML2_FORMAT = "http://www.opengis.net/waterml/2.0"

NAMESPACES = {
    "om": "http://www.opengis.net/om/2.0",
    "wml2": "http://www.opengis.net/waterml/2.0",
    "xsi": "http://www.w3.org/2001/XMLSchema-instance",
}
XSI_NIL = f"{{{NAMESPACES['xsi']}}}nil"


def _local_name(tag: Any) -> str:
    return tag.rsplit("}", 1)[-1] if isinstance(tag, str) else ""


def _mentions(element: ET.Element, needle: str) -> bool:
    candidates = (needle, needle.replace(" ", "%20"), needle.replace(" ", "+"))
    for node in element.iter():
        values = [node.text or ""]
        values.extend(node.attrib.values())
        for value in values:
            if any(candidate in value for candidate in candidates):
                return True
    return False


def _unit_of(element: ET.Element) -> Optional[str]:
    for node in element.iter():
        if _local_name(node.tag) == "uom" and node.get("code"):
            return node.get("code")
    return None


def parse_waterml2(text: str, parameter: str) -> WaterML2Payload:
    """Collect the non-nil measurement points for ``parameter`` from a WaterML2 document."""
    root = ET.fromstring(text)
    unit: Optional[str] = None
    points: list[WaterML2Point] = []
    for observation in root.iter(f"{{{NAMESPACES['om']}}}OM_Observation"):
        if not _mentions(observation, parameter):
            continue
        if unit is None:
            unit = _unit_of(observation)
        for tvp in observation.iter(f"{{{NAMESPACES['wml2']}}}MeasurementTVP"):
            time_el = tvp.find("wml2:time", NAMESPACES)
            value_el = tvp.find("wml2:value", NAMESPACES)
            if time_el is None or value_el is None:
                continue
            if (value_el.get(XSI_NIL) or "").lower() == "true":
                continue
            raw_time = (time_el.text or "").strip()
            raw_value = (value_el.text or "").strip()
            if not raw_time or not raw_value:
                continue
            try:
                value = float(raw_value)
            except ValueError:
                continue
            if not math.isfinite(value):
                continue
            points.append(WaterML2Point(time=raw_time, value=value))
    return WaterML2Payload(parameter=parameter, unit=unit, points=points, daily_total="DailyTotal" in text)


def _dated_points(payload: WaterML2Payload) -> list[tuple[datetime, float]]:
    dated: list[tuple[datetime, float]] = []
    for point in payload.points:
        timestamp = parse_timestamp(point.time)
        if timestamp is not None:
            dated.append((timestamp, point.value))
    dated.sort(key=lambda item: item[0], reverse=True)
    return dated


def normalize_level(site_id: str, payload: WaterML2Payload) -> list[Observation]:
    unit = payload.unit or "m"
    return [
        Observation(site_id=site_id, value=value, unit=unit, timestamp=timestamp, source="bom")
        for timestamp, value in _dated_points(payload)
    ]


def normalize_discharge(site_id: str, payload: WaterML2Payload) -> Optional[DischargeReading]:
    dated = _dated_points(payload)
    if not dated:
        return None
    timestamp, value = dated[0]
    unit = "cumec" if (payload.unit or "").lower() == "cumec" else "ML/d"
    return DischargeReading(site_id=site_id, value=value, unit=unit, timestamp=timestamp)


def normalize_rainfall(site_id: str, payload: WaterML2Payload) -> Optional[RainfallReading]:
    dated = _dated_points(payload)
    if not dated:
        return None
    timestamp, value = dated[0]
    period = "daily" if payload.daily_total else "hourly"
    return RainfallReading(site_id=site_id, value=value, period=period, timestamp=timestamp)


class _Sos2Client(SourceClient[T]):
    accept = "application/xml"

    def __init__(
        self,
        *,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(timeout=timeout or settings.bom_timeout_seconds, client=client, **kwargs)
        self._base_url = base_url or settings.bom_waterdata_url

    def _params(self, request: str = "GetObservation", **extra: str) -> dict[str, str]:
        params = {
            "service": "SOS",
            "version": "2.0",
            "request": request,
        }
        if request == "GetObservation":
            params["responseFormat"] = WATERML2_FORMAT
        params.update(extra)
        return params

    async def _observations(
        self,
        station_id: str,
        parameter: str,
        *,
        filter_server_side: bool = True,
        temporal_filter: Optional[str] = None,
    ) -> WaterML2Payload:
        extra = {"featureOfInterest": STATION_URI.format(station_id=station_id)}
        if filter_server_side:
            extra["observedProperty"] = PARAMETER_URI.format(parameter=parameter)
        if temporal_filter:
            extra["temporalFilter"] = temporal_filter
        response = await self._get(self._base_url, params=self._params(**extra))
        return parse_waterml2(response.text, parameter)

    async def _probe(self) -> bool:
        client = await self._get_client()
        response = await client.head(self._base_url, params=self._params("GetCapabilities"))
        return response.is_success


class BomWaterLevelClient(_Sos2Client[LevelSeries]):
    name = "bom"

    async def _fetch(self, site_id: str) -> Optional[LevelSeries]:
        # Some stations answer an encoded "Water Course Level" property with an
        # empty document, so level is requested unfiltered and picked out here.
        payload = await self._observations(site_id, WATER_COURSE_LEVEL, filter_server_side=False)
        observations = normalize_level(site_id, payload)
        if not observations:
            logger.info("No BOM observations found for gauge %s", site_id)
            return None
        return LevelSeries.from_observations(site_id, observations)

    async def fetch_history(self, site_id: str, hours: float = 24.0) -> SourceResult[LevelSeries]:
        end = utc_now()
        start = end - timedelta(hours=max(hours, 0.25))
        window = f"om:phenomenonTime,{start.isoformat(timespec='seconds')}/{end.isoformat(timespec='seconds')}"

        async def _call() -> Optional[LevelSeries]:
            payload = await self._observations(
                site_id,
                WATER_COURSE_LEVEL,
                filter_server_side=False,
                temporal_filter=window,
            )
            observations = normalize_level(site_id, payload)
            return LevelSeries.from_observations(site_id, observations) if observations else None

        return await self._guarded(f"{site_id} history", _call, timeout=settings.history_timeout_seconds)


@dataclass(frozen=True, slots=True)
class ExtendedMetrics:
    discharge: Optional[DischargeReading]
    rainfall: Optional[RainfallReading]


class BomExtendedClient(_Sos2Client[ExtendedMetrics]):
    """Discharge and rainfall for gauge sites."""

    name = "bom-extended"

    async def _fetch(self, site_id: str) -> Optional[ExtendedMetrics]:
        discharge_raw, rainfall_raw = await asyncio.gather(
            self._observations(site_id, WATER_COURSE_DISCHARGE),
            self._observations(site_id, RAINFALL),
            return_exceptions=True,
        )
        if isinstance(discharge_raw, BaseException) and isinstance(rainfall_raw, BaseException):
            raise discharge_raw
        discharge = None
        rainfall = None
        if isinstance(discharge_raw, WaterML2Payload):
            discharge = normalize_discharge(site_id, discharge_raw)
        else:
            logger.debug("Discharge fetch for %s failed: %r", site_id, discharge_raw)
        if isinstance(rainfall_raw, WaterML2Payload):
            rainfall = normalize_rainfall(site_id, rainfall_raw)
        else:
            logger.debug("Rainfall fetch for %s failed: %r", site_id, rainfall_raw)
        if discharge is None and rainfall is None:
            return None
        return ExtendedMetrics(discharge=discharge, rainfall=rainfall)

    async def fetch_metrics(
        self, site_ids: Iterable[str]
    ) -> tuple[dict[str, DischargeReading], dict[str, RainfallReading]]:
        results = await self.fetch_batch(site_ids)
        discharge: dict[str, DischargeReading] = {}
        rainfall: dict[str, RainfallReading] = {}
        for site_id, result in results.items():
            if not result.ok or result.value is None:
                continue
            if result.value.discharge is not None:
                discharge[site_id] = result.value.discharge
            if result.value.rainfall is not None:
                rainfall[site_id] = result.value.rainfall
        return discharge, rainfall


class BomStorageClient(_Sos2Client[DamStorageReading]):
    """Reservoir volume and level for the dam stations."""

    name = "bom-storage"

    async def _fetch(self, station_id: str) -> Optional[DamStorageReading]:
        dam = get_dam(station_id)
        if dam is None:
            raise UnknownSiteError(station_id)
        volume_raw, level_raw = await asyncio.gather(
            self._observations(dam.id, STORAGE_VOLUME),
            self._observations(dam.id, STORAGE_LEVEL),
            return_exceptions=True,
        )
        if isinstance(volume_raw, BaseException):
            raise volume_raw
        volumes = _dated_points(volume_raw)
        if not volumes:
            return None
        level_m: Optional[float] = None
        if isinstance(level_raw, WaterML2Payload):
            levels = _dated_points(level_raw)
            if levels:
                level_m = levels[0][1]
        timestamp, volume = volumes[0]
        percent_full = round(volume / dam.capacity_ml * 100, 1) if dam.capacity_ml else None
        return DamStorageReading(
            station_id=dam.id,
            name=dam.name,
            volume_ml=volume,
            level_m=level_m,
            percent_full=percent_full,
            timestamp=timestamp,
        )

    async def fetch_all(self) -> list[DamStorageReading]:
        results = await self.fetch_batch(dam.id for dam in DAM_STATIONS)
        return [result.value for result in results.values() if result.ok and result.value is not None]


__all__ = [
    "BomExtendedClient",
    "BomStorageClient",
    "BomWaterLevelClient",
    "ExtendedMetrics",
    "normalize_discharge",
    "normalize_level",
    "normalize_rainfall",
    "parse_waterml2",
]
