from __future__ import annotations

import hmac

from fastapi import Header, HTTPException, Request, status

from config import settings
from services.water_levels import WaterLevelService


def get_services(request: Request) -> WaterLevelService:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Services not initialised")
    return services


def require_refresh_secret(x_cron_secret: str | None = Header(default=None, alias="X-Cron-Secret")) -> None:
    expected = settings.refresh_secret
    if not expected:
        return
    if not x_cron_secret or not hmac.compare_digest(x_cron_secret.strip(), expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
