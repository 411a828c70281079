from pathlib import Path
from typing import List

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    # Load apps/gauge/.env and accept env keys in any case
    _env_file = Path(__file__).resolve().parent.parent / ".env"
    model_config = SettingsConfigDict(env_file=str(_env_file), extra="ignore", case_sensitive=False)

    app_name: str = "GAUGE Hub"
    app_version: str = "0.1.0"
    debug: bool = False
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])
    port: int = 8000

    # Upstream providers
    http_user_agent: str = Field(
        default="GaugeHub/0.1.0 (ops@example.com)",
        description="User-Agent sent to upstream telemetry providers.",
    )
    wmip_base_url: str = Field(
        default="https://water-monitoring.information.qld.gov.au/cgi/webservice.exe",
        description="Queensland WMIP (Kisters WISKI) web service endpoint.",
    )
    bom_waterdata_url: str = Field(
        default="https://www.bom.gov.au/waterdata/services",
        description="BOM Water Data Online SOS2 endpoint.",
    )
    bom_warnings_url: str = Field(
        default="https://www.bom.gov.au/fwo/IDQ60000.warnings_qld.xml",
        description="BOM Queensland flood warnings XML feed.",
    )
    open_meteo_forecast_url: str = Field(
        default="https://api.open-meteo.com/v1/forecast",
        description="Open-Meteo forecast endpoint used for rainfall outlooks.",
    )
    open_meteo_flood_url: str = Field(
        default="https://flood-api.open-meteo.com/v1/flood",
        description="Open-Meteo GloFAS flood endpoint used for discharge forecasts.",
    )
    forecast_timezone: str = Field(default="Australia/Brisbane", description="Timezone requested from Open-Meteo.")

    wmip_timeout_seconds: float = Field(default=10.0, gt=0.0, description="Timeout in seconds for WMIP calls")
    bom_timeout_seconds: float = Field(default=15.0, gt=0.0, description="Timeout in seconds for BOM SOS2 calls")
    history_timeout_seconds: float = Field(default=20.0, gt=0.0, description="Timeout in seconds for 24h history calls")
    forecast_timeout_seconds: float = Field(default=15.0, gt=0.0, description="Timeout in seconds for Open-Meteo calls")
    warnings_timeout_seconds: float = Field(default=15.0, gt=0.0, description="Timeout in seconds for the warnings feed")
    probe_timeout_seconds: float = Field(default=5.0, gt=0.0, description="Timeout in seconds for liveness probes")
    provider_concurrency: int = Field(default=5, ge=1, le=50, description="Maximum in-flight requests per provider")
    provider_batch_delay_seconds: float = Field(
        default=0.1,
        ge=0.0,
        description="Pause between provider sub-batches to stay under upstream rate limits.",
    )
    source_priority: List[str] = Field(
        default_factory=lambda: ["bom", "wmip"],
        description="Water level providers in priority order; later providers only see unresolved sites.",
    )

    # Derivation policy
    observation_max_age_hours: float = Field(
        default=48.0,
        gt=0.0,
        description="Observations older than this are treated as unusable.",
    )
    trend_deadband: float = Field(
        default=0.01,
        ge=0.0,
        description="Rate of change (units/hour) below which a trend is reported as stable.",
    )

    # Adaptive cache
    cache_normal_ttl_seconds: float = Field(default=300.0, gt=0.0, description="TTL for a normal batch")
    cache_elevated_ttl_seconds: float = Field(default=60.0, gt=0.0, description="TTL for a batch with any hazard status")
    cache_stale_seconds: float = Field(
        default=120.0,
        gt=0.0,
        description="Age after which a read triggers a background refresh.",
    )

    # Durable snapshot store
    snapshot_store_enabled: bool = Field(default=True, description="Share snapshots across instances via sqlite.")
    snapshot_store_path: str = Field(
        default="apps/gauge/data/snapshots.sqlite",
        description="SQLite database holding the latest snapshot per dataset.",
    )
    snapshot_max_age_seconds: float = Field(
        default=600.0,
        ge=0.0,
        description="Maximum age of a durable snapshot served instead of refreshing.",
    )

    # Recent history window
    history_window_hours: float = Field(default=24.0, gt=0.0, description="Retention of per-site recent history")
    history_max_points: int = Field(default=288, ge=2, description="Maximum observations kept per site")

    # Refresh trigger
    refresh_secret: str | None = Field(
        default=None,
        description="Shared secret expected in X-Cron-Secret; unset disables the check.",
    )
    warm_cache_on_startup: bool = Field(default=False, description="Run one refresh when the app starts.")
    refresh_interval_seconds: float = Field(
        default=0.0,
        ge=0.0,
        description="In-process periodic refresh interval; 0 leaves refresh to the external trigger.",
    )

    @field_validator("cors_origins", "source_priority", mode="before")
    @classmethod
    def normalize_list(cls, v):
        if isinstance(v, str):
            s = v.strip()
            if s.startswith("["):
                import json
                return json.loads(s)
            if s in ("", "*"):
                return ["*"]
            return [p.strip() for p in s.split(",")]
        return v

    @field_validator("source_priority")
    @classmethod
    def validate_priority(cls, v: List[str]) -> List[str]:
        names = [name.strip().lower() for name in v if name and name.strip()]
        unknown = sorted(set(names) - {"bom", "wmip"})
        if unknown:
            raise ValueError(f"Unknown water level source(s): {', '.join(unknown)}")
        if not names:
            raise ValueError("source_priority must name at least one source")
        return list(dict.fromkeys(names))

    @model_validator(mode="after")
    def check_cache_windows(self) -> "Settings":
        if self.cache_elevated_ttl_seconds >= self.cache_normal_ttl_seconds:
            raise ValueError("cache_elevated_ttl_seconds must be shorter than cache_normal_ttl_seconds")
        if self.cache_stale_seconds >= self.cache_normal_ttl_seconds:
            raise ValueError("cache_stale_seconds must be shorter than cache_normal_ttl_seconds")
        return self

settings = Settings()
