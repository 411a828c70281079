"""Keyed in-process cache with stale-while-revalidate and a hazard-sensitive TTL.

Per key the lifecycle is Empty -> Fresh -> Stale -> Expired (== Empty).
Stale reads are served immediately and start at most one background refresh;
cold reads share a single in-flight fetch instead of each hitting upstream.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from functools import partial
from typing import Any, Awaitable, Callable, Dict, Generic, Literal, Optional, TypeVar

from config import settings

logger = logging.getLogger("gauge.hub.cache")

T = TypeVar("T")

CacheState = Literal["empty", "fresh", "stale", "expired"]
FetchFn = Callable[[], Awaitable[T]]
ClassifyFn = Callable[[T], bool]
AgeFn = Callable[[T], float]


@dataclass(frozen=True, slots=True)
class CacheConfig:
    normal_ttl: float = 300.0
    elevated_ttl: float = 60.0
    stale_after: float = 120.0

    def __post_init__(self) -> None:
        if min(self.normal_ttl, self.elevated_ttl, self.stale_after) <= 0:
            raise ValueError("Cache durations must be positive")
        if self.elevated_ttl >= self.normal_ttl:
            raise ValueError("Elevated TTL must be shorter than the normal TTL")
        if self.stale_after >= self.normal_ttl:
            raise ValueError("Stale threshold must be shorter than the normal TTL")

    @classmethod
    def from_settings(cls) -> "CacheConfig":
        return cls(
            normal_ttl=settings.cache_normal_ttl_seconds,
            elevated_ttl=settings.cache_elevated_ttl_seconds,
            stale_after=settings.cache_stale_seconds,
        )

    def ttl_for(self, elevated: bool) -> float:
        return self.elevated_ttl if elevated else self.normal_ttl

    def stale_after_for(self, elevated: bool) -> float:
        # Elevated entries go stale at the same fraction of their shorter TTL.
        if not elevated:
            return self.stale_after
        return self.stale_after * self.elevated_ttl / self.normal_ttl


@dataclass(frozen=True, slots=True)
class CacheEntry(Generic[T]):
    data: T
    captured_at: float
    elevated: bool


@dataclass(frozen=True, slots=True)
class CacheResult(Generic[T]):
    data: T
    from_cache: bool
    age_seconds: float
    elevated: bool


class AdaptiveCache:
    def __init__(self, config: Optional[CacheConfig] = None, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._config = config or CacheConfig.from_settings()
        self._clock = clock
        self._entries: Dict[str, CacheEntry[Any]] = {}
        self._inflight: Dict[str, asyncio.Task[CacheEntry[Any]]] = {}
        self._lock = threading.RLock()
        self._hits = 0
        self._misses = 0
        self._background_refreshes = 0
        self._refresh_failures = 0
        self._generation = 0

    @property
    def config(self) -> CacheConfig:
        return self._config

    def _state_of(self, entry: Optional[CacheEntry[Any]], now: float) -> CacheState:
        if entry is None:
            return "empty"
        age = now - entry.captured_at
        if age > self._config.ttl_for(entry.elevated):
            return "expired"
        if age > self._config.stale_after_for(entry.elevated):
            return "stale"
        return "fresh"

    def state(self, key: str) -> CacheState:
        with self._lock:
            return self._state_of(self._entries.get(key), self._clock())

    def get(self, key: str) -> Optional[CacheResult[Any]]:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            state = self._state_of(entry, now)
            if entry is None:
                return None
            if state == "expired":
                del self._entries[key]
                logger.debug("Cache entry %s expired after %.1fs", key, now - entry.captured_at)
                return None
        return CacheResult(data=entry.data, from_cache=True, age_seconds=max(0.0, now - entry.captured_at), elevated=entry.elevated)

    def set(self, key: str, data: T, *, elevated: bool, age_seconds: float = 0.0) -> CacheEntry[T]:
        entry = CacheEntry(data=data, captured_at=self._clock() - max(0.0, age_seconds), elevated=bool(elevated))
        with self._lock:
            self._entries[key] = entry
        logger.debug(
            "Cached %s (elevated=%s, ttl=%.0fs)", key, entry.elevated, self._config.ttl_for(entry.elevated)
        )
        return entry

    def is_refreshing(self, key: str) -> bool:
        with self._lock:
            task = self._inflight.get(key)
            return task is not None and not task.done()

    def trigger_background_refresh(
        self,
        key: str,
        fetch_fn: FetchFn[T],
        classify_elevated: ClassifyFn[T],
        age_of: Optional[AgeFn[T]] = None,
    ) -> bool:
        """Start a refresh for ``key`` unless one is already running.

        Returns True when this call started the task. The caller never waits
        on it; failures are logged and the previous entry stays in place.
        """
        with self._lock:
            if self.is_refreshing(key):
                return False
            task = asyncio.get_running_loop().create_task(
                self._run_fetch(key, fetch_fn, classify_elevated, age_of, self._generation),
                name=f"cache-refresh:{key}",
            )
            self._inflight[key] = task
            self._background_refreshes += 1
        task.add_done_callback(partial(self._finish, key, background=True))
        logger.info("Background refresh started for %s", key)
        return True

    async def get_or_fetch(
        self,
        key: str,
        fetch_fn: FetchFn[T],
        classify_elevated: ClassifyFn[T],
        age_of: Optional[AgeFn[T]] = None,
    ) -> CacheResult[T]:
        """Serve ``key`` from the cache, fetching it when absent or expired.

        ``age_of`` reports how old freshly loaded data already is, for values
        that come from a shared store rather than straight from upstream.
        """
        with self._lock:
            now = self._clock()
            entry = self._entries.get(key)
            state = self._state_of(entry, now)
            if entry is not None and state in ("fresh", "stale"):
                self._hits += 1
                if state == "stale":
                    self.trigger_background_refresh(key, fetch_fn, classify_elevated, age_of)
                return CacheResult(
                    data=entry.data,
                    from_cache=True,
                    age_seconds=max(0.0, now - entry.captured_at),
                    elevated=entry.elevated,
                )
            if state == "expired":
                del self._entries[key]
            self._misses += 1
            task = self._inflight.get(key)
            if task is None or task.done():
                task = asyncio.get_running_loop().create_task(
                    self._run_fetch(key, fetch_fn, classify_elevated, age_of, self._generation),
                    name=f"cache-fetch:{key}",
                )
                self._inflight[key] = task
                task.add_done_callback(partial(self._finish, key, background=False))
            else:
                logger.debug("Joining in-flight fetch for %s", key)

        # Shielded so a disconnecting caller cannot cancel the shared fetch
        fetched = await asyncio.shield(task)
        return CacheResult(
            data=fetched.data,
            from_cache=False,
            age_seconds=max(0.0, self._clock() - fetched.captured_at),
            elevated=fetched.elevated,
        )

    async def _run_fetch(
        self,
        key: str,
        fetch_fn: FetchFn[T],
        classify_elevated: ClassifyFn[T],
        age_of: Optional[AgeFn[T]],
        generation: int,
    ) -> CacheEntry[T]:
        data = await fetch_fn()
        elevated = bool(classify_elevated(data))
        age = age_of(data) if age_of is not None else 0.0
        with self._lock:
            if generation != self._generation:
                # Started before clear(); hand the data to waiters without caching it.
                logger.debug("Discarding %s fetched before the cache was cleared", key)
                return CacheEntry(data=data, captured_at=self._clock() - max(0.0, age), elevated=elevated)
            return self.set(key, data, elevated=elevated, age_seconds=age)

    def _finish(self, key: str, task: asyncio.Task[CacheEntry[Any]], *, background: bool) -> None:
        with self._lock:
            if self._inflight.get(key) is task:
                del self._inflight[key]
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        if background:
            with self._lock:
                self._refresh_failures += 1
            logger.warning("Background refresh for %s failed; keeping previous entry", key, exc_info=exc)
        else:
            logger.warning("Fetch for %s failed: %s", key, exc)

    async def wait_idle(self) -> None:
        while True:
            with self._lock:
                tasks = [task for task in self._inflight.values() if not task.done()]
            if not tasks:
                return
            await asyncio.gather(*tasks, return_exceptions=True)

    def clear(self) -> None:
        with self._lock:
            self._generation += 1
            self._entries.clear()
            self._inflight.clear()
            self._hits = 0
            self._misses = 0
            self._background_refreshes = 0
            self._refresh_failures = 0

    async def close(self) -> None:
        with self._lock:
            tasks = list(self._inflight.values())
            self._inflight.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def stats(self) -> dict[str, Any]:
        now = self._clock()
        with self._lock:
            entries = {
                key: {
                    "state": self._state_of(entry, now),
                    "age_seconds": round(max(0.0, now - entry.captured_at), 3),
                    "elevated": entry.elevated,
                    "ttl_seconds": self._config.ttl_for(entry.elevated),
                }
                for key, entry in self._entries.items()
            }
            return {
                "entries": entries,
                "in_flight": sorted(key for key, task in self._inflight.items() if not task.done()),
                "hits": self._hits,
                "misses": self._misses,
                "background_refreshes": self._background_refreshes,
                "refresh_failures": self._refresh_failures,
                "normal_ttl_seconds": self._config.normal_ttl,
                "elevated_ttl_seconds": self._config.elevated_ttl,
                "stale_after_seconds": self._config.stale_after,
            }


__all__ = ["AdaptiveCache", "AgeFn", "CacheConfig", "CacheEntry", "CacheResult", "CacheState"]
