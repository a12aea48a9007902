"""
Tests for PlantRegistry: creation, reading reconciliation, liveness, config
updates and the watering gate.

CHANGELOG:
- 2026-10-18: Add watering gate and quarantine tests (STORY-006)
- 2026-10-18: Initial creation (STORY-005)

TODO:
- None
"""

from __future__ import annotations

import threading
from datetime import timedelta

import pytest
from conftest import T0
from pydantic import ValidationError

from server.src.events import EventBus, EventType
from server.src.models import PlantConfig, SensorReading, SensorType, WateringOutcome
from server.src.registry import PlantRegistry, RegistryInvariantError, UnknownPlantError


def _reading(sensor: SensorType, value: float, at=T0, plant_id: str = "p1") -> SensorReading:
    return SensorReading(
        plant_id=plant_id,
        sensor_type=sensor,
        value=value,
        unit="percent",
        observed_at=at,
        received_at=at,
    )


@pytest.fixture()
def events() -> EventBus:
    return EventBus()


@pytest.fixture()
def registry(events: EventBus) -> PlantRegistry:
    return PlantRegistry(events=events)


class TestCreation:
    def test_register_and_snapshot(self, registry: PlantRegistry) -> None:
        record = registry.register("p1", "esp32-01", name="Basil", now=T0)
        assert record.name == "Basil"
        assert registry.snapshot("p1") is record
        assert registry.find_by_device("esp32-01") is record
        assert "p1" in registry
        assert len(registry) == 1

    def test_register_twice_returns_existing(self, registry: PlantRegistry) -> None:
        first = registry.register("p1", "esp32-01", now=T0)
        second = registry.register("p1", "other", now=T0 + timedelta(hours=1))
        assert second is first

    def test_unknown_snapshot_is_none(self, registry: PlantRegistry) -> None:
        assert registry.snapshot("nope") is None
        assert registry.find_by_device("nope") is None

    def test_apply_readings_auto_creates_with_default_config(self, events: EventBus) -> None:
        default = PlantConfig(moisture_min=20, moisture_max=60)
        registry = PlantRegistry(events=events, default_config=default)
        discovered: list[dict] = []
        events.subscribe(EventType.DEVICE_DISCOVERED, lambda _n, p: discovered.append(p))

        result = registry.apply_readings(
            "esp32-09", [_reading(SensorType.MOISTURE, 33, plant_id="esp32-09")], now=T0
        )

        assert result.created
        assert result.record.config == default
        assert result.record.current_reading.moisture == 33
        assert discovered == [{"plant_id": "esp32-09", "device_id": "esp32-09"}]

    def test_get_or_create_existing(self, registry: PlantRegistry) -> None:
        registry.register("p1", "esp32-01", now=T0)
        record, created = registry.get_or_create("p1", "esp32-01")
        assert not created
        assert record.plant_id == "p1"


class TestReadings:
    def test_merges_sensors_across_messages(self, registry: PlantRegistry) -> None:
        registry.register("p1", "esp32-01", now=T0)
        registry.apply_reading(_reading(SensorType.MOISTURE, 40, T0))
        record = registry.apply_reading(
            _reading(SensorType.TEMPERATURE, 21, T0 + timedelta(seconds=10))
        )
        assert record.current_reading.moisture == 40
        assert record.current_reading.temperature == 21
        assert record.current_reading.observed_at == T0 + timedelta(seconds=10)

    def test_out_of_order_reading_ignored(self, registry: PlantRegistry) -> None:
        registry.register("p1", "esp32-01", now=T0)
        registry.apply_reading(_reading(SensorType.MOISTURE, 40, T0))
        result = registry.apply_readings(
            "p1", [_reading(SensorType.MOISTURE, 10, T0 - timedelta(seconds=5))]
        )
        assert result.accepted == ()
        assert result.record.current_reading.moisture == 40

    def test_duplicate_reading_ignored(self, registry: PlantRegistry) -> None:
        registry.register("p1", "esp32-01", now=T0)
        registry.apply_reading(_reading(SensorType.MOISTURE, 40, T0))
        result = registry.apply_readings("p1", [_reading(SensorType.MOISTURE, 99, T0)])
        assert result.accepted == ()
        assert result.record.current_reading.moisture == 40

    def test_stale_sensor_does_not_block_other_sensor(self, registry: PlantRegistry) -> None:
        registry.register("p1", "esp32-01", now=T0)
        registry.apply_reading(_reading(SensorType.MOISTURE, 40, T0))
        result = registry.apply_readings(
            "p1",
            [
                _reading(SensorType.MOISTURE, 1, T0 - timedelta(seconds=1)),
                _reading(SensorType.LIGHT, 55, T0 - timedelta(seconds=1)),
            ],
        )
        assert [r.sensor_type for r in result.accepted] == [SensorType.LIGHT]
        assert result.record.current_reading.light == 55
        assert result.record.current_reading.moisture == 40

    def test_plant_updated_published_on_change_only(
        self, registry: PlantRegistry, events: EventBus
    ) -> None:
        registry.register("p1", "esp32-01", now=T0)
        seen: list[str] = []
        events.subscribe(EventType.PLANT_UPDATED, lambda _n, p: seen.append(p["plant_id"]))
        registry.apply_reading(_reading(SensorType.MOISTURE, 40, T0))
        registry.apply_reading(_reading(SensorType.MOISTURE, 40, T0))
        assert seen == ["p1"]


class TestLiveness:
    def test_mark_online_updates_status(self, registry: PlantRegistry) -> None:
        registry.register("p1", "esp32-01", now=T0)
        record = registry.mark_online("p1", T0, battery_level=87, wifi_rssi=-60)
        assert record.status.online
        assert record.status.last_seen_at == T0
        assert record.status.battery_level == 87
        assert record.status.wifi_rssi == -60

    def test_last_seen_never_moves_backwards(self, registry: PlantRegistry) -> None:
        registry.register("p1", "esp32-01", now=T0)
        registry.mark_online("p1", T0)
        record = registry.mark_online("p1", T0 - timedelta(minutes=1))
        assert record.status.last_seen_at == T0

    def test_mark_offline(self, registry: PlantRegistry) -> None:
        registry.register("p1", "esp32-01", now=T0)
        registry.mark_online("p1", T0)
        assert registry.mark_offline("p1") is True
        assert registry.mark_offline("p1") is False
        assert registry.snapshot("p1").status.online is False

    def test_mark_offline_loses_to_fresh_message(self, registry: PlantRegistry) -> None:
        registry.register("p1", "esp32-01", now=T0)
        registry.mark_online("p1", T0)
        assert registry.mark_offline("p1", last_seen_before=T0 - timedelta(minutes=10)) is False
        assert registry.snapshot("p1").status.online

    def test_unknown_plant_raises(self, registry: PlantRegistry) -> None:
        with pytest.raises(UnknownPlantError):
            registry.mark_online("ghost", T0)


class TestConfig:
    def test_partial_update_bumps_version(self, registry: PlantRegistry) -> None:
        registry.register("p1", "esp32-01", now=T0)
        record = registry.update_config("p1", {"moisture_min": 25, "version": 99})
        assert record.config.moisture_min == 25
        assert record.config.version == 2

    def test_quiet_hours_merge(self, registry: PlantRegistry) -> None:
        registry.register("p1", "esp32-01", now=T0)
        record = registry.update_config("p1", {"quiet_hours": {"end": "07:30"}})
        assert record.config.quiet_hours.start == "22:00"
        assert record.config.quiet_hours.end == "07:30"

    def test_invalid_update_leaves_config_untouched(self, registry: PlantRegistry) -> None:
        registry.register("p1", "esp32-01", now=T0)
        with pytest.raises(ValidationError):
            registry.update_config("p1", {"moisture_min": 90, "moisture_max": 50})
        assert registry.snapshot("p1").config.version == 1
        assert registry.snapshot("p1").config.moisture_min == 30

    def test_unknown_plant(self, registry: PlantRegistry) -> None:
        with pytest.raises(UnknownPlantError):
            registry.update_config("ghost", {"moisture_min": 10})


class TestWateringGate:
    def test_begin_claims_slot_once(self, registry: PlantRegistry) -> None:
        registry.register("p1", "esp32-01", now=T0)
        assert registry.begin_watering("p1", T0) is True
        assert registry.begin_watering("p1", T0) is False
        state = registry.snapshot("p1").watering_state
        assert state.in_flight
        assert state.in_flight_since == T0
        assert state.waterings_today == 1
        assert state.reset_date == T0.date()

    def test_concurrent_begin_has_single_winner(self, registry: PlantRegistry) -> None:
        registry.register("p1", "esp32-01", now=T0)
        barrier = threading.Barrier(8)
        wins: list[bool] = []
        lock = threading.Lock()

        def attempt() -> None:
            barrier.wait()
            won = registry.begin_watering("p1", T0)
            with lock:
                wins.append(won)

        threads = [threading.Thread(target=attempt) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert wins.count(True) == 1
        assert registry.snapshot("p1").watering_state.waterings_today == 1

    def test_acknowledged_commits_cooldown(self, registry: PlantRegistry) -> None:
        registry.register("p1", "esp32-01", now=T0)
        registry.begin_watering("p1", T0)
        end = T0 + timedelta(seconds=10)
        record = registry.end_watering("p1", WateringOutcome.ACKNOWLEDGED, end)
        state = record.watering_state
        assert not state.in_flight
        assert state.last_watering_started_at == T0
        assert state.last_watering_ended_at == end
        assert state.waterings_today == 1
        assert state.last_outcome is WateringOutcome.ACKNOWLEDGED

    @pytest.mark.parametrize("outcome", [WateringOutcome.REJECTED, WateringOutcome.TIMED_OUT])
    def test_failed_outcome_returns_slot(
        self, registry: PlantRegistry, outcome: WateringOutcome
    ) -> None:
        registry.register("p1", "esp32-01", now=T0)
        registry.begin_watering("p1", T0)
        state = registry.end_watering("p1", outcome, T0).watering_state
        assert state.waterings_today == 0
        assert state.last_watering_ended_at is None
        assert not state.in_flight

    def test_daily_counter_rolls_over_at_utc_midnight(self, registry: PlantRegistry) -> None:
        registry.register("p1", "esp32-01", now=T0)
        registry.begin_watering("p1", T0)
        registry.end_watering("p1", WateringOutcome.ACKNOWLEDGED, T0)
        tomorrow = T0 + timedelta(days=1)
        registry.begin_watering("p1", tomorrow)
        state = registry.snapshot("p1").watering_state
        assert state.waterings_today == 1
        assert state.reset_date == tomorrow.date()

    def test_timeout_across_midnight_keeps_new_day_count(self, registry: PlantRegistry) -> None:
        registry.register("p1", "esp32-01", now=T0)
        late = T0.replace(hour=23, minute=59, second=59)
        registry.begin_watering("p1", late)
        state = registry.end_watering(
            "p1", WateringOutcome.TIMED_OUT, late + timedelta(seconds=5)
        ).watering_state
        assert state.waterings_today == 0
        assert state.reset_date == (late + timedelta(seconds=5)).date()

    def test_non_terminal_outcome_rejected(self, registry: PlantRegistry) -> None:
        registry.register("p1", "esp32-01", now=T0)
        registry.begin_watering("p1", T0)
        with pytest.raises(ValueError):
            registry.end_watering("p1", WateringOutcome.STARTED, T0)
        assert registry.snapshot("p1").watering_state.in_flight

    def test_end_without_begin_quarantines_plant(self, registry: PlantRegistry) -> None:
        registry.register("p1", "esp32-01", now=T0)
        registry.register("p2", "esp32-02", now=T0)
        with pytest.raises(RegistryInvariantError):
            registry.end_watering("p1", WateringOutcome.ACKNOWLEDGED, T0)
        assert registry.snapshot("p1").faulted
        assert not registry.snapshot("p2").faulted

    def test_clear_fault_only_lifts_flag(self, registry: PlantRegistry) -> None:
        registry.register("p1", "esp32-01", now=T0)
        with pytest.raises(RegistryInvariantError):
            registry.end_watering("p1", WateringOutcome.ACKNOWLEDGED, T0)
        record = registry.clear_fault("p1")
        assert not record.faulted
        assert record.watering_state.last_watering_ended_at is None
