from __future__ import annotations

import logging
import time
from typing import List, Optional

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from services.readings import isoformat, utc_now
from services.water_levels import WaterLevelService

from .dependencies import get_services, require_refresh_secret

router = APIRouter(prefix="/refresh", tags=["refresh"], dependencies=[Depends(require_refresh_secret)])
logger = logging.getLogger("gauge.hub.api.refresh")


class RefreshResponse(BaseModel):
    success: bool
    gauges_updated: int = Field(ge=0, description="Sites with a usable reading in the new snapshot.")
    gauges_total: int = Field(ge=0)
    sources: List[str]
    elevated: bool
    duration_ms: int = Field(ge=0)
    timestamp: str
    error: Optional[str] = None


async def _run_refresh(services: WaterLevelService):
    started = time.perf_counter()
    try:
        snapshot = await services.refresh_now()
    except Exception as exc:  # noqa: BLE001 - reported to the trigger as a failed run
        logger.exception("Refresh failed")
        body = RefreshResponse(
            success=False,
            gauges_updated=0,
            gauges_total=0,
            sources=[],
            elevated=False,
            duration_ms=int((time.perf_counter() - started) * 1000),
            timestamp=isoformat(utc_now()),
            error=str(exc) or exc.__class__.__name__,
        )
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=body.model_dump())
    return RefreshResponse(
        success=not snapshot.unavailable,
        gauges_updated=snapshot.resolved_count,
        gauges_total=len(snapshot.readings),
        sources=list(snapshot.sources),
        elevated=snapshot.elevated,
        duration_ms=int((time.perf_counter() - started) * 1000),
        timestamp=isoformat(snapshot.generated_at),
    )


@router.post("", response_model=RefreshResponse)
async def trigger_refresh(services: WaterLevelService = Depends(get_services)):
    return await _run_refresh(services)


@router.get("", response_model=RefreshResponse)
async def trigger_refresh_get(services: WaterLevelService = Depends(get_services)):
    return await _run_refresh(services)
