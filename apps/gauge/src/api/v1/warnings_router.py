from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Response

from services.readings import isoformat, utc_now
from services.water_levels import WaterLevelService

from .dependencies import get_services
from .water_levels_router import apply_cache_headers

router = APIRouter(prefix="/warnings", tags=["warnings"])


@router.get("")
async def list_warnings(response: Response, services: WaterLevelService = Depends(get_services)) -> dict[str, Any]:
    result = await services.warnings()
    apply_cache_headers(response, result)
    feed = result.data
    warnings = feed.value if feed.ok and feed.value is not None else []
    response.headers["X-Data-Sources"] = "bom-warnings" if feed.ok else "unavailable"
    return {
        "warnings": [warning.as_payload() for warning in warnings],
        "count": len(warnings),
        "has_severe": any(warning.severe for warning in warnings),
        "available": feed.ok,
        "error": feed.reason,
        "last_updated": isoformat(utc_now()),
    }
