"""Upstream telemetry provider clients for the Fitzroy Basin gauge network."""

from .base import SourceClient
from .bom import BomExtendedClient, BomStorageClient, BomWaterLevelClient
from .open_meteo import FloodForecastClient, RainfallForecastClient
from .warnings import WarningsClient
from .wmip import WmipClient

__all__ = [
    "SourceClient",
    "BomWaterLevelClient",
    "BomExtendedClient",
    "BomStorageClient",
    "WmipClient",
    "WarningsClient",
    "RainfallForecastClient",
    "FloodForecastClient",
]
