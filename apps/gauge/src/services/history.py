from __future__ import annotations

import asyncio
from collections import deque
from datetime import datetime, timedelta
from typing import Callable, Deque, Dict, Iterable, List, Optional

from services.readings import Observation, utc_now


class SiteHistory:
    """Bounded recent-history window of water level observations per site.

    Only the latest few hours are kept; this is not a time-series database.
    Entries are ordered oldest first and de-duplicated by timestamp.
    """

    def __init__(
        self,
        *,
        retention_hours: float = 24.0,
        max_points: int = 288,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._retention = timedelta(hours=max(retention_hours, 0.0))
        self._max_points = max(2, int(max_points))
        self._clock = clock
        self._series: Dict[str, Deque[Observation]] = {}
        self._lock = asyncio.Lock()

    async def record(self, observations: Iterable[Observation]) -> int:
        added = 0
        async with self._lock:
            for observation in sorted(observations, key=lambda obs: obs.timestamp):
                series = self._series.setdefault(observation.site_id, deque(maxlen=self._max_points))
                if any(existing.timestamp == observation.timestamp for existing in series):
                    continue
                if series and observation.timestamp < series[-1].timestamp:
                    ordered = sorted([*series, observation], key=lambda obs: obs.timestamp)
                    series.clear()
                    series.extend(ordered[-self._max_points :])
                else:
                    series.append(observation)
                added += 1
            self._prune_locked()
        return added

    async def recent(self, site_id: str, *, limit: Optional[int] = None) -> List[Observation]:
        async with self._lock:
            self._prune_locked()
            items = list(self._series.get(site_id, ()))
        if limit is not None and limit >= 0:
            items = items[-limit:] if limit else []
        return items

    async def previous_before(self, site_id: str, timestamp: datetime) -> Optional[Observation]:
        async with self._lock:
            series = self._series.get(site_id)
            if not series:
                return None
            for observation in reversed(series):
                if observation.timestamp < timestamp:
                    return observation
        return None

    async def clear(self) -> None:
        async with self._lock:
            self._series.clear()

    def site_count(self) -> int:
        return len(self._series)

    def _prune_locked(self) -> None:
        if self._retention <= timedelta(0):
            return
        cutoff = self._clock() - self._retention
        for site_id in list(self._series):
            series = self._series[site_id]
            while series and series[0].timestamp < cutoff:
                series.popleft()
            if not series:
                del self._series[site_id]
