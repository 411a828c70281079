import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

# Keep the module-level app from touching a real snapshot database.
os.environ.setdefault("SNAPSHOT_STORE_ENABLED", "false")

from fastapi.testclient import TestClient  # noqa: E402

from config import settings  # noqa: E402
from main import create_app  # noqa: E402
from services.readings import LevelSeries, Observation, SourceResult  # noqa: E402

NOW = datetime(2025, 2, 3, 6, 0, tzinfo=timezone.utc)


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def settings_override() -> Callable[..., None]:
    original: Dict[str, Any] = {}

    def _apply(**overrides: Any) -> None:
        for key, value in overrides.items():
            if key not in original:
                original[key] = getattr(settings, key)
            setattr(settings, key, value)

    yield _apply

    for key, value in original.items():
        setattr(settings, key, value)


@pytest.fixture
def client() -> TestClient:
    with TestClient(create_app()) as test_client:
        yield test_client


def observation(
    site_id: str,
    value: float,
    *,
    minutes_ago: float = 15,
    source: str = "bom",
    unit: str = "m",
    now: datetime = NOW,
) -> Observation:
    return Observation(
        site_id=site_id,
        value=value,
        unit=unit,
        timestamp=now - timedelta(minutes=minutes_ago),
        source=source,
    )


def series(site_id: str, *values: float, source: str = "bom", step_minutes: float = 60, now: datetime = NOW) -> LevelSeries:
    """Build a series from newest to oldest values spaced ``step_minutes`` apart."""
    return LevelSeries.from_observations(
        site_id,
        [
            observation(site_id, value, minutes_ago=15 + index * step_minutes, source=source, now=now)
            for index, value in enumerate(values)
        ],
    )


class FakeLevelSource:
    """Level source double that records which sites it was asked about."""

    def __init__(
        self,
        name: str,
        data: Optional[Dict[str, LevelSeries]] = None,
        *,
        error: Optional[BaseException] = None,
        history: Optional[Dict[str, LevelSeries]] = None,
    ) -> None:
        self.name = name
        self.data = dict(data or {})
        self.error = error
        self.history = dict(history or {})
        self.calls: List[List[str]] = []

    async def fetch_batch(self, site_ids: Iterable[str]) -> Dict[str, SourceResult[LevelSeries]]:
        ids = list(site_ids)
        self.calls.append(ids)
        if self.error is not None:
            raise self.error
        return {
            site_id: SourceResult.success(self.data[site_id])
            if site_id in self.data
            else SourceResult.failure("no data")
            for site_id in ids
        }

    async def fetch_history(self, site_id: str, hours: float = 24.0) -> SourceResult[LevelSeries]:
        if site_id in self.history:
            return SourceResult.success(self.history[site_id])
        return SourceResult.failure("no data")

    async def probe(self) -> bool:
        return self.error is None

    async def close(self) -> None:
        return None
