"""Raw upstream payload shapes.

Each provider parses its wire format into exactly one of these models before
normalization, so "what a provider can return" is checked in one place.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator


class KistersValue(BaseModel):
    model_config = ConfigDict(extra="ignore")

    Timestamp: str
    Value: Optional[float] = None
    Quality: Optional[int] = None


class KistersSeries(BaseModel):
    model_config = ConfigDict(extra="ignore")

    ts_id: Optional[str] = None
    station_id: Optional[str] = None
    ts_unitname: Optional[str] = None
    data: list[KistersValue] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _rows_to_records(cls, value: Any) -> Any:
        # Kisters can return rows as positional lists described by "columns"
        if not isinstance(value, dict):
            return value
        rows = value.get("data")
        columns = value.get("columns")
        if isinstance(rows, list) and rows and isinstance(rows[0], list):
            names = [name.strip() for name in (columns or "Timestamp,Value,Quality").split(",")]
            value = dict(value)
            value["data"] = [dict(zip(names, row)) for row in rows]
        return value


class KistersPayload(BaseModel):
    kind: Literal["kisters"] = "kisters"
    series: list[KistersSeries] = Field(default_factory=list)

    @classmethod
    def from_json(cls, raw: Any) -> "KistersPayload":
        if isinstance(raw, list):
            return cls(series=raw)
        if isinstance(raw, dict):
            if raw.get("type") == "error" or ("code" in raw and "message" in raw):
                raise ValueError(f"Kisters error: {raw.get('message') or raw}")
            return cls(series=raw.get("data") or [])
        raise ValueError("Unexpected Kisters payload")


class WaterML2Point(BaseModel):
    time: str
    value: float


class WaterML2Payload(BaseModel):
    kind: Literal["waterml2"] = "waterml2"
    parameter: str
    unit: Optional[str] = None
    points: list[WaterML2Point] = Field(default_factory=list)
    daily_total: bool = False


class FloodDaily(BaseModel):
    model_config = ConfigDict(extra="ignore")

    time: list[str] = Field(default_factory=list)
    river_discharge: list[Optional[float]] = Field(default_factory=list)
    river_discharge_mean: list[Optional[float]] = Field(default_factory=list)
    river_discharge_max: list[Optional[float]] = Field(default_factory=list)


class OpenMeteoFloodPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    kind: Literal["open_meteo_flood"] = "open_meteo_flood"
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    daily: Optional[FloodDaily] = None


class RainHourly(BaseModel):
    model_config = ConfigDict(extra="ignore")

    time: list[str] = Field(default_factory=list)
    precipitation: list[Optional[float]] = Field(default_factory=list)
    precipitation_probability: list[Optional[float]] = Field(default_factory=list)


class RainDaily(BaseModel):
    model_config = ConfigDict(extra="ignore")

    time: list[str] = Field(default_factory=list)
    precipitation_sum: list[Optional[float]] = Field(default_factory=list)
    precipitation_probability_max: list[Optional[float]] = Field(default_factory=list)


class RainCurrent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    precipitation: Optional[float] = None


class OpenMeteoRainPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    kind: Literal["open_meteo_rain"] = "open_meteo_rain"
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    hourly: RainHourly = Field(default_factory=RainHourly)
    daily: RainDaily = Field(default_factory=RainDaily)
    current: RainCurrent = Field(default_factory=RainCurrent)


class RawWarning(BaseModel):
    identifier: str
    title: str
    area: str
    phase: str
    issue_time: str
    expire_time: Optional[str] = None
    text: str
    product_id: str = ""


class WarningsPayload(BaseModel):
    kind: Literal["bom_warnings"] = "bom_warnings"
    warnings: list[RawWarning] = Field(default_factory=list)


RawPayload = Annotated[
    Union[KistersPayload, WaterML2Payload, OpenMeteoFloodPayload, OpenMeteoRainPayload, WarningsPayload],
    Field(discriminator="kind"),
]


__all__ = [
    "FloodDaily",
    "KistersPayload",
    "KistersSeries",
    "KistersValue",
    "OpenMeteoFloodPayload",
    "OpenMeteoRainPayload",
    "RainCurrent",
    "RainDaily",
    "RainHourly",
    "RawPayload",
    "RawWarning",
    "WarningsPayload",
    "WaterML2Payload",
    "WaterML2Point",
]
