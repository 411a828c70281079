from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Response, status

from services.cache import CacheResult
from services.sites import UnknownSiteError
from services.water_levels import WaterLevelService

from .dependencies import get_services

router = APIRouter(prefix="/water-levels", tags=["water-levels"])
logger = logging.getLogger("gauge.hub.api.water_levels")


def apply_cache_headers(response: Response, result: CacheResult[Any]) -> None:
    response.headers["X-Cache"] = "HIT" if result.from_cache else "MISS"
    response.headers["X-Cache-Age"] = str(int(result.age_seconds))


def site_error(exc: UnknownSiteError) -> HTTPException:
    if exc.malformed:
        return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Site not found")


@router.get("")
async def list_water_levels(response: Response, services: WaterLevelService = Depends(get_services)) -> dict[str, Any]:
    result = await services.latest()
    snapshot = result.data
    apply_cache_headers(response, result)
    response.headers["X-Data-Sources"] = "+".join(snapshot.sources)
    payload = snapshot.as_payload()
    payload["resolved"] = snapshot.resolved_count
    payload["total"] = len(snapshot.readings)
    return payload


@router.get("/{site_id}")
async def site_detail(
    site_id: str,
    response: Response,
    services: WaterLevelService = Depends(get_services),
) -> dict[str, Any]:
    try:
        detail = await services.site_detail(site_id)
    except UnknownSiteError as exc:
        raise site_error(exc) from exc
    response.headers["X-Data-Sources"] = detail.history_source
    return detail.as_payload()
