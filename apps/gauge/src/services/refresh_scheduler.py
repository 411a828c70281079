from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger("gauge.hub.refresh_scheduler")


class RefreshScheduler:
    """In-process periodic refresh for deployments without an external trigger."""

    def __init__(self, refresh: Callable[[], Awaitable[object]], *, interval_seconds: float) -> None:
        self._refresh = refresh
        self._interval_seconds = max(0.0, float(interval_seconds))
        self._task: Optional[asyncio.Task[None]] = None
        self._stop: Optional[asyncio.Event] = None
        self._runs = 0

    @property
    def enabled(self) -> bool:
        return self._interval_seconds > 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def runs(self) -> int:
        return self._runs

    async def start(self) -> None:
        if not self.enabled or self.running:
            return
        self._stop = asyncio.Event()
        self._task = asyncio.create_task(self._loop(), name="gauge-refresh")
        logger.info("Refresh scheduler started (interval=%.1fs)", self._interval_seconds)

    async def stop(self) -> None:
        if self._task is None:
            return
        stop_event = self._stop
        if stop_event is not None:
            stop_event.set()
        task = self._task
        self._task = None
        self._stop = None
        try:
            await task
        except asyncio.CancelledError:  # pragma: no cover - cooperative cancellation
            pass
        except Exception as exc:  # pragma: no cover - defensive logging
            logger.warning("Refresh scheduler terminated with error: %s", exc)
        else:
            logger.info("Refresh scheduler stopped")

    async def _loop(self) -> None:
        assert self._stop is not None
        stop_event = self._stop
        while not stop_event.is_set():
            try:
                await self._refresh()
            except Exception as exc:  # pragma: no cover - defensive logging
                logger.warning("Scheduled refresh failed: %s", exc)
            finally:
                self._runs += 1
            if stop_event.is_set():
                break
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self._interval_seconds)
            except asyncio.TimeoutError:
                continue
        logger.debug("Refresh scheduler loop exiting")


__all__ = ["RefreshScheduler"]
