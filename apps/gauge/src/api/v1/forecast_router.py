from __future__ import annotations

from typing import Any, Mapping, Optional

from fastapi import APIRouter, Depends, Query, Response

from services.readings import SourceResult
from services.sites import UnknownSiteError
from services.water_levels import WaterLevelService

from .dependencies import get_services
from .water_levels_router import apply_cache_headers, site_error

router = APIRouter(prefix="/forecast", tags=["forecast"])


def _forecast_payload(results: Mapping[str, SourceResult[Any]]) -> dict[str, Any]:
    forecasts = {site_id: result.value.as_payload() for site_id, result in results.items() if result.ok and result.value}
    failed = {site_id: result.reason for site_id, result in results.items() if not result.ok}
    return {"forecasts": forecasts, "failed": failed, "count": len(forecasts)}


@router.get("/rainfall")
async def rainfall_forecast(
    response: Response,
    site_id: Optional[str] = Query(default=None, description="Gauge id; all active gauges when omitted"),
    services: WaterLevelService = Depends(get_services),
) -> dict[str, Any]:
    try:
        result = await services.rainfall_outlook(site_id)
    except UnknownSiteError as exc:
        raise site_error(exc) from exc
    apply_cache_headers(response, result)
    return _forecast_payload(result.data)


@router.get("/flood")
async def flood_forecast(
    response: Response,
    site_id: Optional[str] = Query(default=None, description="Gauge id; all active gauges when omitted"),
    services: WaterLevelService = Depends(get_services),
) -> dict[str, Any]:
    try:
        result = await services.flood_outlook(site_id)
    except UnknownSiteError as exc:
        raise site_error(exc) from exc
    apply_cache_headers(response, result)
    return _forecast_payload(result.data)
