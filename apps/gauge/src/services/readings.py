from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Generic, Literal, Mapping, Optional, TypeVar

from services.derivation import Status, Trend

T = TypeVar("T")

DischargeUnit = Literal["cumec", "ML/d"]
RainfallPeriod = Literal["daily", "hourly"]

UNAVAILABLE_SOURCE = "unavailable"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def isoformat(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an upstream ISO-8601 timestamp into an aware UTC datetime."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _require_timestamp(value: Any) -> datetime:
    parsed = parse_timestamp(value)
    if parsed is None:
        raise ValueError(f"Invalid timestamp: {value!r}")
    return parsed


@dataclass(frozen=True, slots=True)
class Observation:
    site_id: str
    value: float
    unit: str
    timestamp: datetime
    source: str

    def as_payload(self) -> dict[str, Any]:
        return {
            "site_id": self.site_id,
            "value": self.value,
            "unit": self.unit,
            "timestamp": isoformat(self.timestamp),
            "source": self.source,
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "Observation":
        return cls(
            site_id=str(payload["site_id"]),
            value=float(payload["value"]),
            unit=str(payload.get("unit") or "m"),
            timestamp=_require_timestamp(payload["timestamp"]),
            source=str(payload["source"]),
        )


@dataclass(frozen=True, slots=True)
class SourceResult(Generic[T]):
    """Outcome of one provider call: a value, or the reason there is none."""

    value: Optional[T] = None
    reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.reason is None and self.value is not None

    @classmethod
    def success(cls, value: T) -> "SourceResult[T]":
        return cls(value=value, reason=None)

    @classmethod
    def failure(cls, reason: str) -> "SourceResult[T]":
        return cls(value=None, reason=reason or "unknown error")


@dataclass(frozen=True, slots=True)
class LevelSeries:
    """Recent water level observations for one site, newest first."""

    site_id: str
    observations: tuple[Observation, ...]

    @property
    def latest(self) -> Observation:
        return self.observations[0]

    @classmethod
    def from_observations(cls, site_id: str, observations: list[Observation]) -> "LevelSeries":
        ordered = sorted(observations, key=lambda obs: obs.timestamp, reverse=True)
        return cls(site_id=site_id, observations=tuple(ordered))


@dataclass(frozen=True, slots=True)
class EnrichedReading:
    observation: Observation
    status: Status
    trend: Trend
    change_rate: float

    @property
    def site_id(self) -> str:
        return self.observation.site_id

    @property
    def source(self) -> str:
        return self.observation.source

    def as_payload(self) -> dict[str, Any]:
        payload = self.observation.as_payload()
        payload.update(
            {
                "status": self.status,
                "trend": self.trend,
                "change_rate": self.change_rate,
            }
        )
        return payload

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "EnrichedReading":
        return cls(
            observation=Observation.from_payload(payload),
            status=payload["status"],
            trend=payload["trend"],
            change_rate=float(payload.get("change_rate", 0.0)),
        )


@dataclass(frozen=True, slots=True)
class DischargeReading:
    site_id: str
    value: float
    unit: DischargeUnit
    timestamp: datetime
    source: str = "bom"

    def as_payload(self) -> dict[str, Any]:
        return {
            "site_id": self.site_id,
            "value": self.value,
            "unit": self.unit,
            "timestamp": isoformat(self.timestamp),
            "source": self.source,
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "DischargeReading":
        unit = payload.get("unit")
        return cls(
            site_id=str(payload["site_id"]),
            value=float(payload["value"]),
            unit="cumec" if unit == "cumec" else "ML/d",
            timestamp=_require_timestamp(payload["timestamp"]),
            source=str(payload.get("source") or "bom"),
        )


@dataclass(frozen=True, slots=True)
class RainfallReading:
    site_id: str
    value: float
    period: RainfallPeriod
    timestamp: datetime
    unit: str = "mm"
    source: str = "bom"

    def as_payload(self) -> dict[str, Any]:
        return {
            "site_id": self.site_id,
            "value": self.value,
            "unit": self.unit,
            "period": self.period,
            "timestamp": isoformat(self.timestamp),
            "source": self.source,
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "RainfallReading":
        return cls(
            site_id=str(payload["site_id"]),
            value=float(payload["value"]),
            period="daily" if payload.get("period") == "daily" else "hourly",
            timestamp=_require_timestamp(payload["timestamp"]),
            unit=str(payload.get("unit") or "mm"),
            source=str(payload.get("source") or "bom"),
        )


@dataclass(frozen=True, slots=True)
class DamStorageReading:
    station_id: str
    name: str
    volume_ml: float
    level_m: Optional[float]
    percent_full: Optional[float]
    timestamp: datetime
    source: str = "bom"

    def as_payload(self) -> dict[str, Any]:
        return {
            "station_id": self.station_id,
            "name": self.name,
            "volume": self.volume_ml,
            "volume_unit": "ML",
            "level": self.level_m,
            "level_unit": "m",
            "percent_full": self.percent_full,
            "timestamp": isoformat(self.timestamp),
            "source": self.source,
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "DamStorageReading":
        level = payload.get("level")
        percent = payload.get("percent_full")
        return cls(
            station_id=str(payload["station_id"]),
            name=str(payload.get("name") or payload["station_id"]),
            volume_ml=float(payload["volume"]),
            level_m=float(level) if level is not None else None,
            percent_full=float(percent) if percent is not None else None,
            timestamp=_require_timestamp(payload["timestamp"]),
            source=str(payload.get("source") or "bom"),
        )


def _frozen(mapping: Optional[Mapping[str, Any]]) -> Mapping[str, Any]:
    return MappingProxyType(dict(mapping or {}))


@dataclass(frozen=True)
class BatchSnapshot:
    """Merged, enriched result of one refresh cycle.

    ``readings`` carries every requested site; a site no provider could
    resolve maps to ``None`` rather than being left out.
    """

    readings: Mapping[str, Optional[EnrichedReading]]
    sources: tuple[str, ...]
    elevated: bool
    generated_at: datetime = field(default_factory=utc_now)
    discharge: Mapping[str, DischargeReading] = field(default_factory=dict)
    rainfall: Mapping[str, RainfallReading] = field(default_factory=dict)
    dam_storage: tuple[DamStorageReading, ...] = ()
    duration_ms: int = 0

    def __post_init__(self) -> None:
        object.__setattr__(self, "readings", _frozen(self.readings))
        object.__setattr__(self, "discharge", _frozen(self.discharge))
        object.__setattr__(self, "rainfall", _frozen(self.rainfall))
        object.__setattr__(self, "sources", tuple(self.sources))
        object.__setattr__(self, "dam_storage", tuple(self.dam_storage))

    @property
    def resolved_count(self) -> int:
        return sum(1 for reading in self.readings.values() if reading is not None)

    @property
    def unavailable(self) -> bool:
        return UNAVAILABLE_SOURCE in self.sources

    def as_payload(self) -> dict[str, Any]:
        return {
            "generated_at": isoformat(self.generated_at),
            "duration_ms": self.duration_ms,
            "elevated": self.elevated,
            "sources": list(self.sources),
            "readings": {
                site_id: reading.as_payload() if reading is not None else None
                for site_id, reading in self.readings.items()
            },
            "discharge": {site_id: item.as_payload() for site_id, item in self.discharge.items()},
            "rainfall": {site_id: item.as_payload() for site_id, item in self.rainfall.items()},
            "dam_storage": [item.as_payload() for item in self.dam_storage],
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "BatchSnapshot":
        readings_raw = payload.get("readings")
        if not isinstance(readings_raw, Mapping):
            raise ValueError("Snapshot payload is missing readings")
        readings = {
            str(site_id): EnrichedReading.from_payload(item) if item is not None else None
            for site_id, item in readings_raw.items()
        }
        return cls(
            readings=readings,
            sources=tuple(str(source) for source in payload.get("sources") or ()),
            elevated=bool(payload.get("elevated", False)),
            generated_at=_require_timestamp(payload["generated_at"]),
            discharge={
                str(site_id): DischargeReading.from_payload(item)
                for site_id, item in (payload.get("discharge") or {}).items()
            },
            rainfall={
                str(site_id): RainfallReading.from_payload(item)
                for site_id, item in (payload.get("rainfall") or {}).items()
            },
            dam_storage=tuple(DamStorageReading.from_payload(item) for item in payload.get("dam_storage") or ()),
            duration_ms=int(payload.get("duration_ms") or 0),
        )


__all__ = [
    "UNAVAILABLE_SOURCE",
    "BatchSnapshot",
    "DamStorageReading",
    "DischargeReading",
    "EnrichedReading",
    "LevelSeries",
    "Observation",
    "RainfallReading",
    "SourceResult",
    "isoformat",
    "parse_timestamp",
    "utc_now",
]
