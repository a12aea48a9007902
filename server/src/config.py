"""
Server configuration loaded from environment variables.

Uses Pydantic BaseSettings for automatic env var loading and validation.
All configuration values come from environment variables or .env files;
broker addresses, database URLs and API tokens are never hardcoded.

CHANGELOG:
- 2026-10-18: Add default plant policy fields (STORY-004)
- 2026-10-18: Initial creation (STORY-001)

TODO:
- None
"""

from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings

from server.src.models import PlantConfig, QuietHours


class ServerSettings(BaseSettings):
    """PlanetPlant server configuration.

    Attributes:
        mqtt_host: MQTT broker hostname.
        mqtt_port: MQTT broker port (default 1883).
        mqtt_username: Optional broker username.
        mqtt_password: Optional broker password.
        mqtt_client_id: Client identifier presented to the broker.
        mqtt_keepalive_s: MQTT keepalive interval.
        database_url: SQLAlchemy async URL of the time-series database.
            Empty disables the time-series store.
        redis_url: Redis URL for history caching. Empty disables caching.
        cache_ttl_s: TTL of cached history responses.
        config_db_path: SQLite file holding per-plant configuration.
        api_host: Bind address of the HTTP API.
        api_port: Port of the HTTP API (default 3000).
        api_tokens: Comma-separated ``token:operator`` pairs.
        cors_origins: Comma-separated allowed dashboard origins.
        enable_scheduler: Run the automation loop.
        automation_interval_s: Seconds between automation ticks.
        monitor_interval_s: Seconds between staleness sweeps.
        offline_threshold_s: Silence after which a device is offline.
        reading_stale_s: Age after which a moisture reading is too old to act on.
        ack_timeout_s: Time to wait for the pump to confirm a start command.
        completion_grace_s: Extra time beyond the run duration to wait for
            the pump's stopped status.
        pump_flow_rate_ml_s: Pump throughput used for volume estimates.
        timezone: IANA zone in which quiet hours are evaluated.
        health_path: Liveness file path.
    """

    mqtt_host: str = "localhost"
    mqtt_port: int = 1883
    mqtt_username: str = ""
    mqtt_password: str = ""
    mqtt_client_id: str = "planetplant-server"
    mqtt_keepalive_s: int = 60

    database_url: str = ""
    redis_url: str = ""
    cache_ttl_s: int = 30
    config_db_path: str = "/data/plants.db"

    api_host: str = "0.0.0.0"
    api_port: int = 3000
    api_tokens: str = ""
    cors_origins: str = "http://localhost:5173"

    enable_scheduler: bool = True
    automation_interval_s: float = 300
    monitor_interval_s: float = 60

    offline_threshold_s: float = 600
    reading_stale_s: float = 900
    ack_timeout_s: float = 5
    completion_grace_s: float = 5
    pump_flow_rate_ml_s: float = 5
    timezone: str = "UTC"

    moisture_threshold_min: float = 30
    moisture_threshold_max: float = 80
    temperature_min: float = 15
    temperature_max: float = 35
    pump_max_duration_ms: int = 10_000
    pump_cooldown_ms: int = 300_000
    max_daily_waterings: int = 3
    quiet_hours_start: str = "22:00"
    quiet_hours_end: str = "06:00"

    health_path: str = "/data/health.json"

    @field_validator("mqtt_port", "api_port")
    @classmethod
    def port_must_be_valid(cls, v: int) -> int:
        """Validate TCP port is in valid range."""
        if v < 1 or v > 65535:
            raise ValueError("port must be between 1 and 65535")
        return v

    @field_validator(
        "automation_interval_s",
        "monitor_interval_s",
        "offline_threshold_s",
        "reading_stale_s",
        "ack_timeout_s",
        "pump_flow_rate_ml_s",
    )
    @classmethod
    def must_be_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("interval and threshold values must be > 0")
        return v

    @field_validator("completion_grace_s", "cache_ttl_s")
    @classmethod
    def must_be_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("value must be >= 0")
        return v

    @field_validator("timezone")
    @classmethod
    def timezone_must_exist(cls, v: str) -> str:
        """Reject zone names that the tz database does not know."""
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"unknown TIMEZONE {v!r}") from exc
        return v

    @model_validator(mode="after")
    def _default_policy_is_valid(self) -> "ServerSettings":
        """Fail at startup if the default plant policy would not validate."""
        try:
            self.default_plant_config()
        except ValidationError as exc:
            raise ValueError(f"invalid default plant policy: {exc}") from exc
        return self

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    def default_plant_config(self) -> PlantConfig:
        """Build the PlantConfig given to newly discovered plants."""
        return PlantConfig(
            moisture_min=self.moisture_threshold_min,
            moisture_max=self.moisture_threshold_max,
            temperature_min=self.temperature_min,
            temperature_max=self.temperature_max,
            watering_duration_ms=self.pump_max_duration_ms,
            cooldown_ms=self.pump_cooldown_ms,
            max_daily_waterings=self.max_daily_waterings,
            quiet_hours=QuietHours(
                start=self.quiet_hours_start, end=self.quiet_hours_end
            ),
        )

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}
