"""
Inbound device message routing.

Subscribes to the device topics and turns each message into registry
updates:

    sensors/{device_id}/data       telemetry -> normalizer -> registry + store
    sensors/{device_id}/status     online / offline announcements
    sensors/{device_id}/pump       pump started / stopped -> dispatcher
    devices/{device_id}/heartbeat  liveness with battery and RSSI

Every message from a known device marks its plant online. Telemetry from an
unknown device registers a new plant with the default config (plant_id is
the device_id). Input errors are logged and dropped here; nothing raised by
a single message ever reaches the MQTT layer.

CHANGELOG:
- 2026-10-18: Route pump status to the dispatcher (STORY-009)
- 2026-10-18: Initial creation (STORY-004)

TODO:
- None
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from server.src.dispatcher import CommandDispatcher
from server.src.normalizer import normalize
from server.src.registry import PlantRegistry
from server.src.store import StoreWriter
from server.src.transport import Transport

logger = logging.getLogger(__name__)

DATA_TOPIC = "sensors/+/data"
STATUS_TOPIC = "sensors/+/status"
PUMP_TOPIC = "sensors/+/pump"
HEARTBEAT_TOPIC = "devices/+/heartbeat"


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


def _json_object(payload: bytes | str) -> dict[str, Any] | None:
    try:
        data = json.loads(payload)
    except (TypeError, ValueError, UnicodeDecodeError):
        return None
    return data if isinstance(data, dict) else None


def _number(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, int | float):
        return None
    return float(value)


class TelemetryIngestor:
    """Routes device messages into the registry, dispatcher and store.

    Args:
        registry: Plant registry.
        dispatcher: Receives pump status messages.
        writer: Fire-and-forget store writer, or None to skip persistence.
        clock: Returns the current UTC time.
    """

    def __init__(
        self,
        registry: PlantRegistry,
        dispatcher: CommandDispatcher,
        *,
        writer: StoreWriter | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.registry = registry
        self.dispatcher = dispatcher
        self.writer = writer
        self.clock = clock
        self.messages = 0
        self.rejected = 0

    def attach(self, transport: Transport) -> None:
        """Subscribe to every inbound device topic."""
        for pattern in (DATA_TOPIC, STATUS_TOPIC, PUMP_TOPIC, HEARTBEAT_TOPIC):
            transport.subscribe(pattern, self.handle, qos=1)

    async def handle(self, topic: str, payload: bytes | str) -> None:
        """Transport handler: dispatch on topic, never raise."""
        self.messages += 1
        try:
            parts = topic.split("/")
            if len(parts) != 3 or not parts[1]:
                logger.warning("Ignoring message on unexpected topic %s", topic)
                return
            root, device_id, kind = parts
            now = self.clock()
            if root == "sensors" and kind == "data":
                self.handle_data(device_id, payload, now)
            elif root == "sensors" and kind == "status":
                self.handle_status(device_id, payload, now)
            elif root == "sensors" and kind == "pump":
                self.handle_pump(device_id, payload, now)
            elif root == "devices" and kind == "heartbeat":
                self.handle_heartbeat(device_id, payload, now)
            else:
                logger.warning("Ignoring message on unexpected topic %s", topic)
        except Exception:
            logger.error("Failed to process message on %s", topic, exc_info=True)

    # ------------------------------------------------------------------
    # Per-topic handlers
    # ------------------------------------------------------------------

    def handle_data(self, device_id: str, payload: bytes | str, now: datetime) -> None:
        known = self.registry.find_by_device(device_id)
        plant_id = known.plant_id if known is not None else device_id
        result = normalize(payload, plant_id=plant_id, received_at=now)

        if not result.ok:
            self.rejected += 1
            if known is not None:
                self.registry.mark_online(plant_id, now)
            return
        if result.device_id != device_id:
            logger.warning(
                "Payload device_id %r does not match topic device %r, using topic",
                result.device_id,
                device_id,
            )

        applied = self.registry.apply_readings(
            plant_id, result.readings, device_id=device_id, now=now
        )
        self.registry.mark_online(plant_id, now)
        if self.writer is not None and applied.accepted:
            self.writer.write_readings(applied.accepted)

    def handle_status(self, device_id: str, payload: bytes | str, now: datetime) -> None:
        known = self.registry.find_by_device(device_id)
        if known is None:
            logger.debug("Status from unknown device %s ignored", device_id)
            return
        data = _json_object(payload)
        if data is None:
            # plain-text status, e.g. a last will of "offline"
            text = payload.decode("utf-8", "replace") if isinstance(payload, bytes) else payload
            data = {"status": text}
        if str(data.get("status", "")).strip().lower() == "offline":
            self.registry.mark_offline(known.plant_id)
            return
        self.registry.mark_online(
            known.plant_id,
            now,
            battery_level=_number(data.get("battery_level")),
            wifi_rssi=_rssi(data),
        )

    def handle_heartbeat(self, device_id: str, payload: bytes | str, now: datetime) -> None:
        known = self.registry.find_by_device(device_id)
        if known is None:
            logger.debug("Heartbeat from unknown device %s ignored", device_id)
            return
        data = _json_object(payload) or {}
        self.registry.mark_online(
            known.plant_id,
            now,
            battery_level=_number(data.get("battery_level")),
            wifi_rssi=_rssi(data),
        )

    def handle_pump(self, device_id: str, payload: bytes | str, now: datetime) -> None:
        data = _json_object(payload)
        if data is None:
            logger.warning("Malformed pump status from %s dropped", device_id)
            return
        known = self.registry.find_by_device(device_id)
        if known is not None:
            self.registry.mark_online(known.plant_id, now)
        self.dispatcher.handle_pump_status(device_id, data)


def _rssi(data: dict[str, Any]) -> int | None:
    value = _number(data.get("wifi_rssi", data.get("rssi")))
    return int(value) if value is not None else None
