from fastapi import APIRouter

from config import settings
from .forecast_router import router as forecast_router
from .health_router import router as health_router
from .refresh_router import router as refresh_router
from .warnings_router import router as warnings_router
from .water_levels_router import router as water_levels_router

router = APIRouter(prefix="/api/v1", tags=["v1"])
router.include_router(water_levels_router)
router.include_router(refresh_router)
router.include_router(warnings_router)
router.include_router(forecast_router)
router.include_router(health_router)


@router.get("/info")
async def info():
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "debug": settings.debug,
        "cors_origins": settings.cors_origins,
        "source_priority": settings.source_priority,
        "snapshot_store_enabled": settings.snapshot_store_enabled,
        "refresh_interval_seconds": settings.refresh_interval_seconds,
    }
