"""
In-memory plant registry: the authoritative state of every known plant.

Each plant's PlantRecord is an immutable pydantic model. Every mutation takes
that plant's lock, builds a new record with ``model_copy(update=...)`` and
swaps it into the map, so readers calling ``snapshot`` never see a torn
record and never need a lock themselves.

Locking:
    - ``_map_lock`` only guards insertion of new plants, new per-plant locks
      and the device index.
    - One ``threading.Lock`` per plant guards that plant's read-modify-write.
      Critical sections are short and never await or perform I/O; events are
      published after the lock is released.

The watering gate (``begin_watering`` / ``end_watering``) is a
compare-and-set on ``watering_state.in_flight``. ``begin_watering``
tentatively counts the watering against today's cap; ``end_watering`` with a
rejected or timed-out outcome hands that slot back.

CHANGELOG:
- 2026-10-18: Quarantine plants on gate invariant violations (STORY-006)
- 2026-10-18: Per-sensor out-of-order reconciliation (STORY-005)
- 2026-10-18: Initial creation (STORY-005)

TODO:
- None
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import UTC, date, datetime
from typing import Any

from server.src.events import EventBus, EventType
from server.src.models import (
    CurrentReading,
    DeviceStatus,
    PlantConfig,
    PlantRecord,
    SensorReading,
    WateringOutcome,
    WateringState,
)

logger = logging.getLogger(__name__)


class UnknownPlantError(LookupError):
    """Raised when an operation names a plant the registry does not hold."""

    def __init__(self, plant_id: str) -> None:
        super().__init__(f"unknown plant {plant_id!r}")
        self.plant_id = plant_id


class RegistryInvariantError(RuntimeError):
    """Raised when a plant's watering state is found inconsistent.

    The plant has already been quarantined (``faulted=True``) when this is
    raised. Other plants are unaffected.
    """

    def __init__(self, plant_id: str, detail: str) -> None:
        super().__init__(f"plant {plant_id!r}: {detail}")
        self.plant_id = plant_id


@dataclass(frozen=True)
class ApplyResult:
    """Result of applying one message's readings to a plant."""

    record: PlantRecord
    accepted: tuple[SensorReading, ...]
    created: bool


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


def _today(now: datetime) -> date:
    return now.astimezone(UTC).date()


def _rolled(state: WateringState, now: datetime) -> WateringState:
    """Reset the daily counter when the UTC date has changed."""
    today = _today(now)
    if state.reset_date == today:
        return state
    return state.model_copy(update={"waterings_today": 0, "reset_date": today})


def _merge_readings(
    current: CurrentReading | None, readings: Iterable[SensorReading]
) -> tuple[CurrentReading | None, list[SensorReading]]:
    """Fold readings into *current*, skipping stale or duplicate ones."""
    values: dict[str, Any] = {}
    stamps = dict(current.sensor_observed_at) if current is not None else {}
    latest = current.observed_at if current is not None else None
    accepted: list[SensorReading] = []

    for reading in readings:
        previous = stamps.get(reading.sensor_type)
        if previous is not None and reading.observed_at <= previous:
            logger.debug(
                "Ignoring %s reading for %s at %s (have %s)",
                reading.sensor_type.value,
                reading.plant_id,
                reading.observed_at.isoformat(),
                previous.isoformat(),
            )
            continue
        values[reading.sensor_type.value] = reading.value
        stamps[reading.sensor_type] = reading.observed_at
        if latest is None or reading.observed_at > latest:
            latest = reading.observed_at
        accepted.append(reading)

    if not accepted:
        return current, accepted
    assert latest is not None
    if current is None:
        merged = CurrentReading(observed_at=latest, sensor_observed_at=stamps, **values)
    else:
        merged = current.model_copy(
            update={**values, "observed_at": latest, "sensor_observed_at": stamps}
        )
    return merged, accepted


class PlantRegistry:
    """Thread-safe store of PlantRecords keyed by plant_id.

    Args:
        events: Event bus receiving ``plant_updated`` and
            ``device_discovered``. A private bus is created when omitted.
        default_config: Config given to auto-created plants.
    """

    def __init__(
        self,
        *,
        events: EventBus | None = None,
        default_config: PlantConfig | None = None,
    ) -> None:
        self.events = events if events is not None else EventBus()
        self.default_config = default_config or PlantConfig()
        self._records: dict[str, PlantRecord] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._device_index: dict[str, str] = {}
        self._map_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _lock_for(self, plant_id: str) -> threading.Lock:
        with self._map_lock:
            lock = self._locks.get(plant_id)
            if lock is None:
                lock = self._locks[plant_id] = threading.Lock()
            return lock

    def _require(self, plant_id: str) -> PlantRecord:
        record = self._records.get(plant_id)
        if record is None:
            raise UnknownPlantError(plant_id)
        return record

    def _insert(self, record: PlantRecord) -> tuple[PlantRecord, bool]:
        """Insert *record* unless the plant exists; return (record, created)."""
        with self._map_lock:
            existing = self._records.get(record.plant_id)
            if existing is not None:
                return existing, False
            self._records[record.plant_id] = record
            self._locks.setdefault(record.plant_id, threading.Lock())
            self._device_index[record.device_id] = record.plant_id
            return record, True

    def _published(self, record: PlantRecord) -> PlantRecord:
        self.events.publish(
            EventType.PLANT_UPDATED, plant_id=record.plant_id, snapshot=record
        )
        return record

    def _discovered(self, record: PlantRecord) -> None:
        logger.info(
            "Discovered new plant %s (device %s)", record.plant_id, record.device_id
        )
        self.events.publish(
            EventType.DEVICE_DISCOVERED,
            plant_id=record.plant_id,
            device_id=record.device_id,
        )

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def snapshot(self, plant_id: str) -> PlantRecord | None:
        """Return the current immutable record, or None if unknown."""
        return self._records.get(plant_id)

    def snapshots(self) -> list[PlantRecord]:
        with self._map_lock:
            return list(self._records.values())

    def find_by_device(self, device_id: str) -> PlantRecord | None:
        with self._map_lock:
            plant_id = self._device_index.get(device_id)
        return self._records.get(plant_id) if plant_id is not None else None

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, plant_id: object) -> bool:
        return plant_id in self._records

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def register(
        self,
        plant_id: str,
        device_id: str,
        *,
        name: str = "",
        config: PlantConfig | None = None,
        now: datetime | None = None,
    ) -> PlantRecord:
        """Add a known plant, e.g. one restored from the config store.

        An already registered plant is returned unchanged.
        """
        record = PlantRecord(
            plant_id=plant_id,
            device_id=device_id,
            name=name or plant_id,
            config=config or self.default_config,
            created_at=now or _utcnow(),
        )
        record, created = self._insert(record)
        if created:
            logger.info("Registered plant %s (device %s)", plant_id, device_id)
            self._published(record)
        return record

    def get_or_create(
        self, plant_id: str, device_id: str, *, now: datetime | None = None
    ) -> tuple[PlantRecord, bool]:
        """Return the plant, creating it with the default config if unknown.

        Returns:
            (record, created). ``device_discovered`` is published on creation.
        """
        existing = self._records.get(plant_id)
        if existing is not None:
            return existing, False
        record, created = self._insert(
            PlantRecord(
                plant_id=plant_id,
                device_id=device_id,
                name=plant_id,
                config=self.default_config,
                created_at=now or _utcnow(),
            )
        )
        if created:
            self._discovered(record)
            self._published(record)
        return record, created

    # ------------------------------------------------------------------
    # Telemetry and liveness
    # ------------------------------------------------------------------

    def apply_readings(
        self,
        plant_id: str,
        readings: Iterable[SensorReading],
        *,
        device_id: str | None = None,
        now: datetime | None = None,
    ) -> ApplyResult:
        """Fold a message's readings into the plant's CurrentReading.

        Unknown plants are auto-created with the default config. A reading
        whose ``observed_at`` is not newer than the stored value for the same
        sensor is ignored, which makes duplicate and out-of-order delivery
        harmless.
        """
        _, created = self.get_or_create(plant_id, device_id or plant_id, now=now)
        with self._lock_for(plant_id):
            record = self._require(plant_id)
            merged, accepted = _merge_readings(record.current_reading, readings)
            if accepted:
                record = record.model_copy(update={"current_reading": merged})
                self._records[plant_id] = record
        if accepted:
            self._published(record)
        return ApplyResult(record=record, accepted=tuple(accepted), created=created)

    def apply_reading(
        self,
        reading: SensorReading,
        *,
        device_id: str | None = None,
        now: datetime | None = None,
    ) -> PlantRecord:
        return self.apply_readings(
            reading.plant_id, (reading,), device_id=device_id, now=now
        ).record

    def mark_online(
        self,
        plant_id: str,
        now: datetime,
        *,
        battery_level: float | None = None,
        wifi_rssi: int | None = None,
    ) -> PlantRecord:
        """Record that the device was heard from at *now*."""
        with self._lock_for(plant_id):
            record = self._require(plant_id)
            status = record.status
            last_seen = status.last_seen_at
            update: dict[str, Any] = {
                "online": True,
                "last_seen_at": now if last_seen is None or now > last_seen else last_seen,
            }
            if battery_level is not None:
                update["battery_level"] = battery_level
            if wifi_rssi is not None:
                update["wifi_rssi"] = wifi_rssi
            was_online = status.online
            record = record.model_copy(update={"status": status.model_copy(update=update)})
            self._records[plant_id] = record
        if not was_online:
            logger.info("Plant %s is online", plant_id)
        return self._published(record)

    def mark_offline(
        self, plant_id: str, *, last_seen_before: datetime | None = None
    ) -> bool:
        """Mark the plant offline.

        With *last_seen_before*, the plant is only marked offline if it has
        not been heard from since that instant, so a message racing with a
        staleness sweep wins.

        Returns:
            True if the plant went from online to offline.
        """
        with self._lock_for(plant_id):
            record = self._require(plant_id)
            status = record.status
            if not status.online:
                return False
            if (
                last_seen_before is not None
                and status.last_seen_at is not None
                and status.last_seen_at >= last_seen_before
            ):
                return False
            record = record.model_copy(
                update={"status": status.model_copy(update={"online": False})}
            )
            self._records[plant_id] = record
        logger.info("Plant %s is offline", plant_id)
        self._published(record)
        return True

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def update_config(
        self, plant_id: str, changes: Mapping[str, Any] | PlantConfig
    ) -> PlantRecord:
        """Replace the plant's config with a validated, versioned copy.

        Args:
            plant_id: Target plant.
            changes: Either a full PlantConfig or a partial mapping of fields
                to change. ``version`` in *changes* is ignored.

        Raises:
            UnknownPlantError: If the plant is not registered.
            pydantic.ValidationError: If the merged config is invalid. The
                stored config is left untouched.
        """
        if isinstance(changes, PlantConfig):
            changes = changes.model_dump()
        with self._lock_for(plant_id):
            record = self._require(plant_id)
            merged = record.config.model_dump()
            for key, value in changes.items():
                if key == "version":
                    continue
                if key == "quiet_hours" and isinstance(value, Mapping):
                    merged["quiet_hours"] = {**merged["quiet_hours"], **value}
                else:
                    merged[key] = value
            merged["version"] = record.config.version + 1
            config = PlantConfig.model_validate(merged)
            record = record.model_copy(update={"config": config})
            self._records[plant_id] = record
        logger.info("Plant %s config updated to version %d", plant_id, config.version)
        return self._published(record)

    def clear_fault(self, plant_id: str) -> PlantRecord:
        """Lift a quarantine after an operator has checked the device."""
        with self._lock_for(plant_id):
            record = self._require(plant_id)
            if not record.faulted:
                return record
            record = record.model_copy(update={"faulted": False})
            self._records[plant_id] = record
        logger.warning("Fault cleared for plant %s", plant_id)
        return self._published(record)

    # ------------------------------------------------------------------
    # Watering gate
    # ------------------------------------------------------------------

    def begin_watering(self, plant_id: str, now: datetime) -> bool:
        """Atomically claim the plant's watering slot.

        Returns:
            False immediately if a watering is already in flight; otherwise
            marks the plant in flight, counts the watering against today's
            cap and returns True.
        """
        with self._lock_for(plant_id):
            record = self._require(plant_id)
            state = record.watering_state
            if state.in_flight:
                return False
            state = _rolled(state, now)
            state = state.model_copy(
                update={
                    "in_flight": True,
                    "in_flight_since": now,
                    "waterings_today": state.waterings_today + 1,
                }
            )
            record = record.model_copy(update={"watering_state": state})
            self._records[plant_id] = record
        self._published(record)
        return True

    def end_watering(
        self,
        plant_id: str,
        outcome: WateringOutcome,
        now: datetime,
        *,
        started_at: datetime | None = None,
    ) -> PlantRecord:
        """Release the watering slot with a terminal outcome.

        ``acknowledged`` commits the start and end times, which starts the
        cooldown. ``rejected`` and ``timed_out`` give back the slot counted
        by ``begin_watering`` (unless the UTC day rolled over meanwhile) and
        leave the cooldown untouched.

        Raises:
            ValueError: If *outcome* is not terminal.
            RegistryInvariantError: If the plant is not in flight. The plant
                is quarantined before the error is raised.
        """
        if not outcome.is_terminal:
            raise ValueError(f"end_watering needs a terminal outcome, got {outcome}")

        with self._lock_for(plant_id):
            record = self._require(plant_id)
            state = record.watering_state
            if not state.in_flight:
                record = record.model_copy(update={"faulted": True})
                self._records[plant_id] = record
                violation = True
            else:
                violation = False
                since = state.in_flight_since
                state = _rolled(state, now)
                update: dict[str, Any] = {
                    "in_flight": False,
                    "in_flight_since": None,
                    "last_outcome": outcome,
                }
                if outcome is WateringOutcome.ACKNOWLEDGED:
                    update["last_watering_started_at"] = started_at or since
                    update["last_watering_ended_at"] = now
                elif since is not None and _today(since) == state.reset_date:
                    update["waterings_today"] = max(0, state.waterings_today - 1)
                state = state.model_copy(update=update)
                record = record.model_copy(update={"watering_state": state})
                self._records[plant_id] = record

        self._published(record)
        if violation:
            logger.error(
                "Invariant violation: end_watering(%s) for plant %s with no watering "
                "in flight; plant quarantined",
                outcome.value,
                plant_id,
            )
            raise RegistryInvariantError(plant_id, "end_watering without begin_watering")
        return record
