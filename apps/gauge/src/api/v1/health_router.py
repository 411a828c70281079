from __future__ import annotations

import logging
import time
from typing import Any, Dict, Literal, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from services.readings import isoformat, utc_now
from services.water_levels import WATER_LEVELS_KEY, WaterLevelService

from .dependencies import get_services

router = APIRouter(prefix="/health", tags=["health"])
logger = logging.getLogger("gauge.hub.health")


class ProviderHealthResponse(BaseModel):
    status: Literal["ok", "degraded", "down"]
    providers: Dict[str, bool] = Field(description="Probe result per upstream provider.")
    checked_at: str
    duration_ms: int = Field(ge=0)


class StoreHealthResponse(BaseModel):
    enabled: bool
    path: str
    metadata: Optional[Dict[str, Any]] = Field(
        default=None,
        description="Refresh bookkeeping for the water level dataset, when recorded.",
    )


@router.get("/providers", response_model=ProviderHealthResponse)
async def provider_health(services: WaterLevelService = Depends(get_services)) -> ProviderHealthResponse:
    started = time.perf_counter()
    results = await services.probes()
    healthy = sum(1 for ok in results.values() if ok)
    if results and healthy == len(results):
        overall = "ok"
    elif healthy:
        overall = "degraded"
    else:
        overall = "down"
    if overall != "ok":
        logger.warning("Provider probes: %d/%d healthy", healthy, len(results))
    return ProviderHealthResponse(
        status=overall,
        providers=results,
        checked_at=isoformat(utc_now()),
        duration_ms=int((time.perf_counter() - started) * 1000),
    )


@router.get("/cache")
async def cache_health(services: WaterLevelService = Depends(get_services)) -> dict[str, Any]:
    return services.cache.stats()


@router.get("/store", response_model=StoreHealthResponse)
async def store_health(services: WaterLevelService = Depends(get_services)) -> StoreHealthResponse:
    store = services.store
    metadata = await store.get_metadata(WATER_LEVELS_KEY)
    return StoreHealthResponse(
        enabled=store.enabled,
        path=str(store.path),
        metadata=metadata.as_payload() if metadata else None,
    )
