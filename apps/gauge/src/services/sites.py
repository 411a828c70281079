from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Literal, Optional

RiverSystem = Literal["clermont", "isaac", "nogoa", "mackenzie", "comet", "fitzroy"]

SITE_ID_PATTERN = re.compile(r"^\d{6}[A-Z]$")

RIVER_SYSTEM_NAMES: dict[RiverSystem, str] = {
    "clermont": "Clermont Area",
    "isaac": "Isaac River",
    "nogoa": "Nogoa River",
    "mackenzie": "Mackenzie River",
    "comet": "Comet River",
    "fitzroy": "Fitzroy River",
}


class UnknownSiteError(ValueError):
    """Raised when a caller passes a malformed or unregistered site id."""

    def __init__(self, site_id: object, *, malformed: bool = False) -> None:
        self.site_id = site_id
        self.malformed = malformed
        reason = "Malformed site id" if malformed else "Unknown site id"
        super().__init__(f"{reason}: {site_id!r}")


@dataclass(frozen=True, slots=True)
class FloodThresholds:
    minor: float
    moderate: float
    major: float

    def __post_init__(self) -> None:
        if not (self.minor <= self.moderate <= self.major):
            raise ValueError(
                f"Thresholds must ascend (minor={self.minor}, moderate={self.moderate}, major={self.major})"
            )

    def as_payload(self) -> dict[str, float]:
        return {"minor": self.minor, "moderate": self.moderate, "major": self.major}


@dataclass(frozen=True, slots=True)
class Site:
    id: str
    name: str
    stream: str
    river_system: RiverSystem
    lat: float
    lng: float
    role: str
    is_offline: bool = False
    last_data_year: Optional[int] = None

    def as_payload(self) -> dict[str, object]:
        return {
            "id": self.id,
            "name": self.name,
            "stream": self.stream,
            "river_system": self.river_system,
            "lat": self.lat,
            "lng": self.lng,
            "role": self.role,
            "is_offline": self.is_offline,
            "last_data_year": self.last_data_year,
        }


@dataclass(frozen=True, slots=True)
class DamStation:
    id: str
    name: str
    river: str
    river_system: RiverSystem
    lat: float
    lng: float
    capacity_ml: Optional[float] = None


GAUGE_STATIONS: tuple[Site, ...] = (
    # Clermont area
    Site("130212A", "Theresa Creek @ Gregory Hwy", "Theresa Creek", "clermont", -22.7833, 147.5667,
         "Upstream early warning", is_offline=True, last_data_year=2024),
    Site("130207A", "Sandy Creek @ Clermont", "Sandy Creek", "clermont", -22.8245, 147.6392, "Primary monitoring"),
    Site("120311A", "Clermont Alpha Rd", "Eastern Creek", "clermont", -22.9000, 147.7000,
         "Secondary monitoring", is_offline=True, last_data_year=2024),
    # Isaac
    Site("130401A", "Isaac River @ Yatton", "Isaac River", "isaac", -22.4167, 148.3333, "Upper Isaac"),
    Site("130410A", "Isaac River @ Deverill", "Isaac River", "isaac", -22.1833, 148.6167, "Mid Isaac"),
    Site("130408A", "Connors River @ Pink Lagoon", "Connors River", "isaac", -21.9500, 148.7833,
         "Tributary input", is_offline=True, last_data_year=2024),
    # Nogoa
    Site("130209A", "Nogoa River @ Craigmore", "Nogoa River", "nogoa", -23.5167, 147.9333, "Above Emerald"),
    Site("130219A", "Nogoa River @ Duck Ponds", "Nogoa River", "nogoa", -23.4500, 148.1000, "Below Fairbairn Dam"),
    Site("130204A", "Retreat Creek @ Dunrobin", "Retreat Creek", "nogoa", -23.6000, 147.8000,
         "Tributary", is_offline=True, last_data_year=2024),
    # Mackenzie
    Site("130106A", "Mackenzie River @ Bingegang", "Mackenzie River", "mackenzie", -23.1833, 149.3500,
         "Lower Mackenzie"),
    Site("130105B", "Mackenzie River @ Coolmaringa", "Mackenzie River", "mackenzie", -23.3333, 148.8333,
         "Mid Mackenzie"),
    Site("130113A", "Mackenzie River @ Rileys Crossing", "Mackenzie River", "mackenzie", -23.4500, 148.5000,
         "Upper Mackenzie"),
    # Comet
    Site("130504A", "Comet River @ Comet Weir", "Comet River", "comet", -23.6000, 148.5500,
         "Lower Comet", is_offline=True, last_data_year=2024),
    Site("130502A", "Comet River @ The Lake", "Comet River", "comet", -23.8000, 148.3000,
         "Upper Comet", is_offline=True, last_data_year=2024),
    # Fitzroy
    Site("130004A", "Fitzroy River @ The Gap", "Fitzroy River", "fitzroy", -23.3833, 149.9167, "Upper Fitzroy"),
    Site("130003A", "Fitzroy River @ Yaamba", "Fitzroy River", "fitzroy", -23.1333, 150.3667,
         "Mid Fitzroy", is_offline=True, last_data_year=2024),
    Site("130005A", "Fitzroy River @ Rockhampton", "Fitzroy River", "fitzroy", -23.3833, 150.5000,
         "Final downstream"),
)

DAM_STATIONS: tuple[DamStation, ...] = (
    DamStation("130216A", "Fairbairn Dam", "Nogoa River", "nogoa", -23.4600, 148.0800, capacity_ml=1_301_000.0),
)

# BOM flood class levels (metres). The only threshold table; see DESIGN.md for
# the gauges where older call sites disagreed.
FLOOD_THRESHOLDS: dict[str, FloodThresholds] = {
    "130207A": FloodThresholds(4.5, 6.0, 8.0),
    "130212A": FloodThresholds(3.0, 4.5, 6.0),
    "120311A": FloodThresholds(2.5, 4.0, 5.5),
    "130401A": FloodThresholds(5.0, 7.0, 9.0),
    "130410A": FloodThresholds(6.0, 8.0, 10.0),
    "130408A": FloodThresholds(4.0, 6.0, 8.0),
    "130209A": FloodThresholds(5.0, 7.0, 9.0),
    "130219A": FloodThresholds(4.5, 6.5, 8.5),
    "130204A": FloodThresholds(3.0, 4.5, 6.0),
    "130106A": FloodThresholds(8.0, 10.0, 12.0),
    "130105B": FloodThresholds(7.0, 9.0, 11.0),
    "130113A": FloodThresholds(6.0, 8.0, 10.0),
    "130504A": FloodThresholds(5.0, 7.0, 9.0),
    "130502A": FloodThresholds(4.0, 6.0, 8.0),
    "130004A": FloodThresholds(7.0, 8.5, 10.0),
    "130003A": FloodThresholds(6.5, 8.0, 9.5),
    "130005A": FloodThresholds(7.0, 8.5, 10.5),
}

_SITES_BY_ID: dict[str, Site] = {site.id: site for site in GAUGE_STATIONS}
_DAMS_BY_ID: dict[str, DamStation] = {dam.id: dam for dam in DAM_STATIONS}


def normalize_site_id(value: object) -> str:
    if not isinstance(value, str):
        raise UnknownSiteError(value, malformed=True)
    candidate = value.strip().upper()
    if not SITE_ID_PATTERN.fullmatch(candidate):
        raise UnknownSiteError(value, malformed=True)
    return candidate


def get_site(site_id: object) -> Site:
    normalized = normalize_site_id(site_id)
    site = _SITES_BY_ID.get(normalized)
    if site is None:
        raise UnknownSiteError(site_id)
    return site


def get_dam(station_id: str) -> Optional[DamStation]:
    return _DAMS_BY_ID.get((station_id or "").strip().upper())


def thresholds_for(site_id: str) -> Optional[FloodThresholds]:
    return FLOOD_THRESHOLDS.get((site_id or "").strip().upper())


def all_site_ids() -> list[str]:
    return [site.id for site in GAUGE_STATIONS]


def active_sites() -> list[Site]:
    return [site for site in GAUGE_STATIONS if not site.is_offline]


__all__ = [
    "DAM_STATIONS",
    "FLOOD_THRESHOLDS",
    "GAUGE_STATIONS",
    "RIVER_SYSTEM_NAMES",
    "DamStation",
    "FloodThresholds",
    "RiverSystem",
    "Site",
    "UnknownSiteError",
    "active_sites",
    "all_site_ids",
    "get_dam",
    "get_site",
    "normalize_site_id",
    "thresholds_for",
]
