"""
Pydantic models for plant state, sensor readings, and watering records.

All models are frozen. The registry replaces a plant's record wholesale on
every mutation, so any object handed out by it is a consistent snapshot that
concurrent writers can never tear.

CHANGELOG:
- 2026-10-18: Add fault flag and in-flight bookkeeping to PlantRecord (STORY-006)
- 2026-10-18: Initial creation (STORY-002)

TODO:
- None
"""

from __future__ import annotations

import re
from datetime import date, datetime, time
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

_HHMM = re.compile(r"^([0-1]?[0-9]|2[0-3]):([0-5][0-9])$")


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class SensorType(StrEnum):
    """Sensor channels reported by a plant node."""

    TEMPERATURE = "temperature"
    HUMIDITY = "humidity"
    MOISTURE = "moisture"
    LIGHT = "light"


class TriggerType(StrEnum):
    """Origin of a watering request."""

    MANUAL = "manual"
    AUTOMATIC = "automatic"


class WateringOutcome(StrEnum):
    """Outcome recorded on a WateringEvent.

    ``STARTED`` is the only non-terminal outcome: it is recorded when the
    device acknowledges the start command.
    """

    STARTED = "started"
    ACKNOWLEDGED = "acknowledged"
    TIMED_OUT = "timed_out"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self is not WateringOutcome.STARTED


class WateringAction(StrEnum):
    WATER = "water"
    HOLD = "hold"


class DecisionReason(StrEnum):
    """Machine-readable reason attached to every WateringDecision."""

    FAULTED = "faulted"
    OFFLINE = "offline"
    NO_READING = "no_reading"
    IN_FLIGHT = "in_flight"
    COOLDOWN = "cooldown"
    DAILY_CAP = "daily_cap"
    QUIET_HOURS = "quiet_hours"
    MOISTURE_SUFFICIENT = "moisture_sufficient"
    MOISTURE_LOW = "moisture_low"
    MOISTURE_IN_RANGE = "moisture_in_range"
    MANUAL_REQUEST = "manual_request"


class RejectionReason(StrEnum):
    """Why the coordinator refused a watering request."""

    UNKNOWN_PLANT = "unknown_plant"
    INVALID_DURATION = "invalid_duration"
    ALREADY_WATERING = "already_watering"
    DISPATCH_FAILED = "dispatch_failed"
    ACK_TIMEOUT = "ack_timeout"
    FAULTED = "faulted"
    OFFLINE = "offline"
    NO_READING = "no_reading"
    IN_FLIGHT = "in_flight"
    COOLDOWN = "cooldown"
    DAILY_CAP = "daily_cap"
    QUIET_HOURS = "quiet_hours"
    MOISTURE_SUFFICIENT = "moisture_sufficient"
    MOISTURE_IN_RANGE = "moisture_in_range"


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class QuietHours(BaseModel):
    """Daily window ("HH:MM" to "HH:MM") that suppresses automatic watering.

    The window wraps past midnight when ``start`` is later than ``end``.
    Equal bounds mean no quiet hours at all.
    """

    model_config = ConfigDict(frozen=True)

    start: str = "22:00"
    end: str = "06:00"

    @field_validator("start", "end")
    @classmethod
    def must_be_hh_mm(cls, v: str) -> str:
        if not _HHMM.match(v):
            raise ValueError(f"quiet hours bound must be HH:MM (got {v!r})")
        return v

    @staticmethod
    def _parse(value: str) -> time:
        hours, minutes = value.split(":")
        return time(int(hours), int(minutes))

    @property
    def start_time(self) -> time:
        return self._parse(self.start)

    @property
    def end_time(self) -> time:
        return self._parse(self.end)

    def contains(self, moment: time) -> bool:
        """Return True if *moment* (a local wall-clock time) is inside the window."""
        start, end = self.start_time, self.end_time
        moment = moment.replace(second=0, microsecond=0, tzinfo=None)
        if start == end:
            return False
        if start < end:
            return start <= moment < end
        return moment >= start or moment < end


class PlantConfig(BaseModel):
    """Per-plant watering policy.

    Only ever changed through ``PlantRegistry.update_config``, which bumps
    ``version`` and swaps in a new instance.

    Attributes:
        moisture_min: Water when soil moisture drops below this (%).
        moisture_max: Never water automatically at or above this (%).
        temperature_min: Lower comfort bound in degrees Celsius.
        temperature_max: Upper comfort bound in degrees Celsius.
        watering_duration_ms: Pump run time for automatic waterings.
        cooldown_ms: Minimum gap between the end of one watering and the
            start of the next.
        max_daily_waterings: Cap on completed waterings per UTC day.
        quiet_hours: Window in which automatic watering is suppressed.
        version: Monotonic config revision.
    """

    model_config = ConfigDict(frozen=True)

    moisture_min: float = Field(default=30, ge=0, le=100)
    moisture_max: float = Field(default=80, ge=0, le=100)
    temperature_min: float = Field(default=15, ge=-50, le=100)
    temperature_max: float = Field(default=35, ge=-50, le=100)
    watering_duration_ms: int = Field(default=10_000, ge=1_000, le=30_000)
    cooldown_ms: int = Field(default=300_000, ge=60_000, le=3_600_000)
    max_daily_waterings: int = Field(default=3, ge=1, le=10)
    quiet_hours: QuietHours = Field(default_factory=QuietHours)
    version: int = Field(default=1, ge=1)

    @model_validator(mode="after")
    def _bounds_ordered(self) -> PlantConfig:
        if self.moisture_min >= self.moisture_max:
            raise ValueError("moisture_min must be less than moisture_max")
        if self.temperature_min >= self.temperature_max:
            raise ValueError("temperature_min must be less than temperature_max")
        return self


# ---------------------------------------------------------------------------
# Telemetry
# ---------------------------------------------------------------------------


class SensorReading(BaseModel):
    """A single validated sensor value from one inbound device message."""

    model_config = ConfigDict(frozen=True)

    plant_id: str
    sensor_type: SensorType
    value: float
    unit: str
    observed_at: datetime
    received_at: datetime


class CurrentReading(BaseModel):
    """Latest accepted value per sensor channel.

    ``sensor_observed_at`` keeps the observation time of each channel so
    late or duplicated deliveries can be recognised and ignored.
    """

    model_config = ConfigDict(frozen=True)

    temperature: float | None = None
    humidity: float | None = None
    moisture: float | None = None
    light: float | None = None
    observed_at: datetime
    sensor_observed_at: dict[SensorType, datetime] = Field(default_factory=dict)

    def observed_at_for(self, sensor_type: SensorType) -> datetime | None:
        return self.sensor_observed_at.get(sensor_type)


class DeviceStatus(BaseModel):
    model_config = ConfigDict(frozen=True)

    online: bool = False
    last_seen_at: datetime | None = None
    battery_level: float | None = None
    wifi_rssi: int | None = None


class WateringState(BaseModel):
    """Watering history needed by the decision engine.

    ``waterings_today`` counts completed and in-flight waterings for
    ``reset_date`` (a UTC calendar date).
    """

    model_config = ConfigDict(frozen=True)

    last_watering_started_at: datetime | None = None
    last_watering_ended_at: datetime | None = None
    waterings_today: int = 0
    reset_date: date | None = None
    in_flight: bool = False
    in_flight_since: datetime | None = None
    last_outcome: WateringOutcome | None = None


class PlantRecord(BaseModel):
    """Authoritative in-memory state for one plant/device pairing."""

    model_config = ConfigDict(frozen=True)

    plant_id: str
    device_id: str
    name: str = ""
    config: PlantConfig = Field(default_factory=PlantConfig)
    current_reading: CurrentReading | None = None
    status: DeviceStatus = Field(default_factory=DeviceStatus)
    watering_state: WateringState = Field(default_factory=WateringState)
    faulted: bool = False
    created_at: datetime


# ---------------------------------------------------------------------------
# Watering
# ---------------------------------------------------------------------------


class WateringDecision(BaseModel):
    """Ephemeral output of the decision engine; never persisted."""

    model_config = ConfigDict(frozen=True)

    plant_id: str
    action: WateringAction
    reason: DecisionReason
    evaluated_at: datetime

    @property
    def should_water(self) -> bool:
        return self.action is WateringAction.WATER


class WateringEvent(BaseModel):
    """Append-only record of an attempted or completed watering."""

    model_config = ConfigDict(frozen=True)

    plant_id: str
    device_id: str
    trigger_type: TriggerType
    requested_at: datetime
    recorded_at: datetime
    duration_ms: int
    outcome: WateringOutcome
    reject_reason: str | None = None
    volume_estimate_ml: float | None = None
    reason: str | None = None


class WateringCommand(BaseModel):
    """Outbound pump command payload."""

    model_config = ConfigDict(frozen=True)

    action: str = Field(pattern=r"^(start|stop)$")
    duration_ms: int = 0

    @classmethod
    def start(cls, duration_ms: int) -> WateringCommand:
        return cls(action="start", duration_ms=duration_ms)


class WateringTicket(BaseModel):
    """Returned when a watering request has been dispatched and acknowledged."""

    model_config = ConfigDict(frozen=True)

    plant_id: str
    device_id: str
    trigger_type: TriggerType
    duration_ms: int
    requested_at: datetime
    started_at: datetime
    reason: str = ""


class Rejection(BaseModel):
    """Returned when a watering request is refused.

    Policy rejections are ordinary values, not errors: ``reason`` is meant for
    machines and ``message`` for the operator.
    """

    model_config = ConfigDict(frozen=True)

    plant_id: str
    reason: RejectionReason
    message: str
    retry_after_s: float | None = None
