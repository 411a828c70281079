from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
import logging, time

from config import settings
from api.v1.router import router as v1_router
from services.refresh_scheduler import RefreshScheduler
from services.water_levels import build_services

logger = logging.getLogger("gauge.hub")
if not logger.handlers:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

def create_app() -> FastAPI:
    app = FastAPI(title=settings.app_name, version=settings.app_version)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Cache", "X-Cache-Age", "X-Data-Sources"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        dur_ms = (time.perf_counter() - start) * 1000.0
        logger.info("%s %s -> %s (%.1f ms)", request.method, request.url.path, response.status_code, dur_ms)
        return response

    @app.get("/", tags=["meta"])
    async def root():
        return {"name": settings.app_name, "version": settings.app_version}

    @app.get("/health", tags=["meta"])
    async def health():
        return JSONResponse({"status": "ok", "version": settings.app_version})

    app.include_router(v1_router)

    app.state.services = build_services(settings)
    app.state.scheduler = RefreshScheduler(
        app.state.services.refresh_now,
        interval_seconds=settings.refresh_interval_seconds,
    )

    @app.on_event("startup")
    async def _startup():
        services = app.state.services
        if settings.warm_cache_on_startup:
            logger.info("Warming water level cache...")
            try:
                snapshot = await services.refresh_now()
            except Exception as exc:  # pragma: no cover - defensive logging
                logger.warning("Cache warm-up failed: %s", exc)
            else:
                logger.info("Cache warmed with %d/%d sites", snapshot.resolved_count, len(snapshot.readings))
        if app.state.scheduler.enabled:
            await app.state.scheduler.start()
        else:
            logger.info("Periodic refresh disabled (set REFRESH_INTERVAL_SECONDS to enable).")

    @app.on_event("shutdown")
    async def _shutdown():
        await app.state.scheduler.stop()
        await app.state.services.close()

    return app

app = create_app()
