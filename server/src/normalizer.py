"""
Pure normalizer that converts raw device telemetry into SensorReadings.

Takes the JSON payload a plant node publishes on ``sensors/{device_id}/data``:

    {"device_id": "esp32-01", "timestamp": 123456,
     "sensors": {"temperature": 22.5, "humidity": 55, "moisture": 41,
                 "light": 70, "pump_active": false}}

and returns one SensorReading per valid sensor value. Bad values are dropped
one by one and logged; a payload that cannot be read at all is rejected as a
whole with ``RejectReason.PARSE_ERROR``.

This is a pure function: no side effects, no I/O, no clock. The plant_id and
receive time are accepted as parameters so they can be injected by the caller.

CHANGELOG:
- 2026-10-18: Fall back to receive time for timestamps older than 24 h (STORY-020)
- 2026-10-18: Treat device uptime counters as missing timestamps (STORY-003)
- 2026-10-18: Initial creation (STORY-003)

TODO:
- None
"""

from __future__ import annotations

import json
import logging
import math
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any

from server.src.models import SensorReading, SensorType

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Plausible ranges and units per sensor channel.
#
# Light is reported as a percentage: the firmware maps the LDR ADC to 0-100.
# ---------------------------------------------------------------------------

SENSOR_RANGES: dict[SensorType, tuple[float, float]] = {
    SensorType.TEMPERATURE: (-50.0, 100.0),
    SensorType.HUMIDITY: (0.0, 100.0),
    SensorType.MOISTURE: (0.0, 100.0),
    SensorType.LIGHT: (0.0, 100.0),
}

SENSOR_UNITS: dict[SensorType, str] = {
    SensorType.TEMPERATURE: "celsius",
    SensorType.HUMIDITY: "percent",
    SensorType.MOISTURE: "percent",
    SensorType.LIGHT: "percent",
}

MAX_FUTURE_SKEW = timedelta(minutes=5)
MAX_PAST_AGE = timedelta(hours=24)

# Numeric timestamps below this are device uptime (millis()), not epoch time.
# millis() passes it after ~11.6 days of uptime; MAX_PAST_AGE catches those.
_EPOCH_S_FLOOR = 1_000_000_000
_EPOCH_MS_FLOOR = 1_000_000_000_000


class RejectReason(StrEnum):
    PARSE_ERROR = "parse_error"
    OUT_OF_RANGE = "out_of_range"
    INVALID_VALUE = "invalid_value"


@dataclass(frozen=True)
class DroppedValue:
    """A sensor value that failed validation."""

    sensor: str
    value: Any
    reason: RejectReason


@dataclass(frozen=True)
class NormalizeResult:
    """Outcome of normalizing one device message.

    Attributes:
        device_id: Device identifier from the payload, or None on parse error.
        readings: Valid readings, in a stable sensor order.
        dropped: Individually rejected sensor values.
        reject_reason: Set only when the whole payload was rejected.
    """

    device_id: str | None
    readings: tuple[SensorReading, ...] = ()
    dropped: tuple[DroppedValue, ...] = field(default_factory=tuple)
    reject_reason: RejectReason | None = None

    @property
    def ok(self) -> bool:
        return self.reject_reason is None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _decode(raw: bytes | str | Mapping[str, Any]) -> Mapping[str, Any] | None:
    if isinstance(raw, Mapping):
        return raw
    try:
        data = json.loads(raw)
    except (TypeError, ValueError, UnicodeDecodeError):
        return None
    if not isinstance(data, dict):
        return None
    return data


def _resolve_timestamp(value: Any, received_at: datetime) -> datetime:
    """Return the observation time for a payload timestamp.

    Epoch seconds, epoch milliseconds and ISO-8601 strings are honoured.
    Anything else (including device uptime counters) falls back to
    *received_at*, as does a time more than MAX_FUTURE_SKEW ahead of it or
    more than MAX_PAST_AGE behind it.
    """
    observed: datetime | None = None

    if isinstance(value, bool):
        observed = None
    elif isinstance(value, int | float) and math.isfinite(value):
        try:
            if value >= _EPOCH_MS_FLOOR:
                observed = datetime.fromtimestamp(value / 1000, tz=UTC)
            elif value >= _EPOCH_S_FLOOR:
                observed = datetime.fromtimestamp(value, tz=UTC)
        except (OverflowError, OSError, ValueError):
            observed = None
    elif isinstance(value, str):
        try:
            observed = datetime.fromisoformat(value)
        except ValueError:
            observed = None
        if observed is not None and observed.tzinfo is None:
            observed = observed.replace(tzinfo=UTC)

    if observed is None:
        return received_at
    if observed - received_at > MAX_FUTURE_SKEW:
        logger.warning(
            "Timestamp %s is more than %s ahead of receive time, using receive time",
            observed.isoformat(),
            MAX_FUTURE_SKEW,
        )
        return received_at
    if received_at - observed > MAX_PAST_AGE:
        logger.debug(
            "Timestamp %s is more than %s behind receive time, using receive time",
            observed.isoformat(),
            MAX_PAST_AGE,
        )
        return received_at
    return observed


def _validate_value(
    sensor_type: SensorType, value: Any
) -> tuple[float | None, RejectReason | None]:
    if isinstance(value, bool) or not isinstance(value, int | float):
        return None, RejectReason.INVALID_VALUE
    number = float(value)
    if not math.isfinite(number):
        return None, RejectReason.INVALID_VALUE
    lo, hi = SENSOR_RANGES[sensor_type]
    if not (lo <= number <= hi):
        return None, RejectReason.OUT_OF_RANGE
    return number, None


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def normalize(
    raw: bytes | str | Mapping[str, Any],
    *,
    plant_id: str | None = None,
    received_at: datetime,
) -> NormalizeResult:
    """Convert one raw device message into validated SensorReadings.

    Args:
        raw: JSON bytes/str or an already decoded mapping.
        plant_id: Plant the readings belong to. Defaults to the payload's
            device_id, which is how unknown devices are first registered.
        received_at: Time the message reached the server (UTC).

    Returns:
        A NormalizeResult. ``reject_reason`` is PARSE_ERROR when the payload
        is not a JSON object, lacks ``device_id``, or lacks a ``sensors``
        object; otherwise ``readings`` holds every valid value.
    """
    data = _decode(raw)
    if data is None:
        logger.warning("Dropping telemetry: payload is not a JSON object")
        return NormalizeResult(device_id=None, reject_reason=RejectReason.PARSE_ERROR)

    device_id = data.get("device_id")
    if not isinstance(device_id, str) or not device_id:
        logger.warning("Dropping telemetry: missing device_id")
        return NormalizeResult(device_id=None, reject_reason=RejectReason.PARSE_ERROR)

    sensors = data.get("sensors")
    if not isinstance(sensors, Mapping):
        logger.warning("Dropping telemetry from %s: missing sensors object", device_id)
        return NormalizeResult(
            device_id=device_id, reject_reason=RejectReason.PARSE_ERROR
        )

    observed_at = _resolve_timestamp(data.get("timestamp"), received_at)
    target = plant_id or device_id

    readings: list[SensorReading] = []
    dropped: list[DroppedValue] = []

    for sensor_type in SensorType:
        if sensor_type.value not in sensors:
            continue
        value = sensors[sensor_type.value]
        number, reason = _validate_value(sensor_type, value)
        if reason is not None:
            logger.warning(
                "Dropping %s=%r from %s: %s",
                sensor_type.value,
                value,
                device_id,
                reason.value,
            )
            dropped.append(DroppedValue(sensor_type.value, value, reason))
            continue
        readings.append(
            SensorReading(
                plant_id=target,
                sensor_type=sensor_type,
                value=number,
                unit=SENSOR_UNITS[sensor_type],
                observed_at=observed_at,
                received_at=received_at,
            )
        )

    return NormalizeResult(
        device_id=device_id,
        readings=tuple(readings),
        dropped=tuple(dropped),
    )
