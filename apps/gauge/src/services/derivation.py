"""Pure hazard and trend calculations.

Nothing in this module performs I/O; every function returns a value for
every input so callers never have to guard against partial results.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Literal, Optional, Sequence

if TYPE_CHECKING:
    from services.sites import FloodThresholds

Status = Literal["normal", "watch", "warning", "danger"]
Trend = Literal["rising", "falling", "stable"]
RiskLevel = Literal["low", "moderate", "high", "extreme"]

SEVERITY: dict[str, int] = {"normal": 0, "watch": 1, "warning": 2, "danger": 3}

DEFAULT_DEADBAND = 0.01

PREDICTION_HORIZONS: tuple[tuple[int, float], ...] = ((2, 0.85), (4, 0.70), (6, 0.55))

FLOOD_RISK_LIMITS: tuple[tuple[float, RiskLevel], ...] = (
    (1000.0, "extreme"),
    (500.0, "high"),
    (100.0, "moderate"),
)


@dataclass(frozen=True, slots=True)
class Projection:
    hours_ahead: int
    level: float
    confidence: float

    def as_payload(self) -> dict[str, object]:
        return {"time": f"+{self.hours_ahead}h", "level": self.level, "confidence": self.confidence}


def status(value: float, thresholds: Optional["FloodThresholds"]) -> Status:
    if thresholds is None or value is None or math.isnan(value):
        return "normal"
    if value >= thresholds.major:
        return "danger"
    if value >= thresholds.moderate:
        return "warning"
    if value >= thresholds.minor:
        return "watch"
    return "normal"


def severity(value: str) -> int:
    return SEVERITY.get(value, 0)


def is_hazardous(value: str) -> bool:
    return severity(value) > 0


def trend(
    latest: float,
    previous: float,
    hours_apart: float,
    deadband: float = DEFAULT_DEADBAND,
) -> tuple[Trend, float]:
    """Return the trend and the hourly rate of change between two readings.

    The rate is rounded to two decimal places; anything inside the deadband
    is reported as stable with a rate of exactly zero.
    """
    if hours_apart is None or hours_apart <= 0 or not math.isfinite(hours_apart):
        return "stable", 0.0
    rate = (latest - previous) / hours_apart
    if not math.isfinite(rate) or rate == 0 or abs(rate) < deadband:
        return "stable", 0.0
    rounded = round(rate, 2)
    return ("rising" if rate > 0 else "falling"), rounded


def hours_between(latest: datetime, previous: datetime) -> float:
    return (latest - previous).total_seconds() / 3600.0


def is_usable(timestamp: Optional[datetime], now: datetime, max_age: timedelta) -> bool:
    if timestamp is None:
        return False
    if timestamp > now:
        return False
    return now - timestamp < max_age


def project_levels(latest_value: float, rate_per_hour: float) -> list[Projection]:
    return [
        Projection(
            hours_ahead=hours,
            level=round(max(0.0, latest_value + rate_per_hour * hours), 3),
            confidence=confidence,
        )
        for hours, confidence in PREDICTION_HORIZONS
    ]


def flood_risk(current: float, peak: float) -> RiskLevel:
    value = max(current, peak)
    for limit, level in FLOOD_RISK_LIMITS:
        if value > limit:
            return level
    return "low"


def discharge_trend(values: Sequence[float]) -> Trend:
    # Day-over-day change must exceed 10% of today's flow to count.
    if len(values) < 2:
        return "stable"
    current, following = values[0], values[1]
    threshold = abs(current) * 0.1
    diff = following - current
    if diff > threshold:
        return "rising"
    if diff < -threshold:
        return "falling"
    return "stable"


__all__ = [
    "DEFAULT_DEADBAND",
    "SEVERITY",
    "Projection",
    "RiskLevel",
    "Status",
    "Trend",
    "discharge_trend",
    "flood_risk",
    "hours_between",
    "is_hazardous",
    "is_usable",
    "project_levels",
    "severity",
    "status",
    "trend",
]
