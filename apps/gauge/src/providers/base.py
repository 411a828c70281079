from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Generic, Iterable, Optional, TypeVar
from xml.etree.ElementTree import ParseError

import httpx

from config import settings
from services.readings import SourceResult
from services.sites import UnknownSiteError

T = TypeVar("T")

logger = logging.getLogger("gauge.hub.providers")


def describe_failure(exc: BaseException, timeout: float) -> str:
    if isinstance(exc, asyncio.TimeoutError):
        return f"timeout after {timeout:.0f}s"
    if isinstance(exc, httpx.HTTPStatusError):
        return f"HTTP {exc.response.status_code}"
    if isinstance(exc, httpx.HTTPError):
        return f"transport error: {exc.__class__.__name__}"
    if isinstance(exc, (ValueError, KeyError, TypeError, IndexError, ParseError)):
        return f"malformed payload: {exc}"
    return f"unexpected error: {exc.__class__.__name__}"


class SourceClient(Generic[T]):
    """Shared plumbing for upstream telemetry providers.

    Subclasses implement ``_fetch`` (one site) and ``_probe``. Every call goes
    through :meth:`_guarded`, which enforces the timeout by cancellation and
    turns provider failures into ``SourceResult.failure`` so nothing but a
    caller bug ever escapes.
    """

    name: str = "source"
    accept: str = "application/json"

    def __init__(
        self,
        *,
        timeout: float,
        concurrency: Optional[int] = None,
        batch_delay: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._timeout = float(timeout)
        self._concurrency = max(1, int(concurrency or settings.provider_concurrency))
        self._batch_delay = settings.provider_batch_delay_seconds if batch_delay is None else max(0.0, batch_delay)
        self._client = client
        self._owns_client = client is None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {
                "User-Agent": settings.http_user_agent,
                "Accept": self.accept,
            }
            # Timeouts are enforced per call with asyncio.wait_for
            self._client = httpx.AsyncClient(headers=headers, timeout=None, follow_redirects=True)
            self._owns_client = True
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None

    async def _get(self, url: str, *, params: Optional[dict[str, Any]] = None) -> httpx.Response:
        client = await self._get_client()
        response = await client.get(url, params=params)
        response.raise_for_status()
        return response

    async def _guarded(
        self,
        label: str,
        call: Callable[[], Awaitable[T]],
        *,
        timeout: Optional[float] = None,
    ) -> SourceResult[T]:
        limit = self._timeout if timeout is None else timeout
        try:
            value = await asyncio.wait_for(call(), timeout=limit)
        except UnknownSiteError:
            raise
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001 - provider failures become data
            reason = describe_failure(exc, limit)
            if reason.startswith("unexpected"):
                logger.warning("%s request for %s failed", self.name, label, exc_info=True)
            else:
                logger.warning("%s request for %s failed: %s", self.name, label, reason)
            return SourceResult.failure(reason)
        if value is None:
            return SourceResult.failure("no data")
        return SourceResult.success(value)

    async def fetch_one(self, site_id: str) -> SourceResult[T]:
        return await self._guarded(site_id, lambda: self._fetch(site_id))

    async def fetch_batch(self, site_ids: Iterable[str]) -> dict[str, SourceResult[T]]:
        ids = list(dict.fromkeys(site_ids))
        results: dict[str, SourceResult[T]] = {}
        for start in range(0, len(ids), self._concurrency):
            chunk = ids[start : start + self._concurrency]
            outcomes = await asyncio.gather(*(self.fetch_one(site_id) for site_id in chunk), return_exceptions=True)
            for site_id, outcome in zip(chunk, outcomes):
                if isinstance(outcome, UnknownSiteError):
                    raise outcome
                if isinstance(outcome, BaseException):
                    logger.warning("%s batch fetch for %s raised %r", self.name, site_id, outcome)
                    results[site_id] = SourceResult.failure(describe_failure(outcome, self._timeout))
                else:
                    results[site_id] = outcome
            if start + self._concurrency < len(ids) and self._batch_delay > 0:
                await asyncio.sleep(self._batch_delay)
        ok = sum(1 for result in results.values() if result.ok)
        logger.info("%s returned data for %d/%d sites", self.name, ok, len(ids))
        return results

    async def probe(self) -> bool:
        try:
            return bool(await asyncio.wait_for(self._probe(), timeout=settings.probe_timeout_seconds))
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001 - diagnostics only
            logger.info("%s probe failed: %s", self.name, describe_failure(exc, settings.probe_timeout_seconds))
            return False

    async def _fetch(self, site_id: str) -> Optional[T]:
        raise NotImplementedError

    async def _probe(self) -> bool:
        raise NotImplementedError


__all__ = ["SourceClient", "describe_failure"]
