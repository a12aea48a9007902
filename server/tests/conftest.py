"""
Shared test fixtures for server tests.

Provides environment isolation for ServerSettings, an in-memory pub/sub
transport that can play the part of a pump node, a controllable clock, and
a fully wired ServerRuntime on top of them.

CHANGELOG:
- 2026-10-18: Add FakeTransport, FakeClock and runtime fixtures (STORY-010)
- 2026-10-18: Initial creation (STORY-001)

TODO:
- None
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import paho.mqtt.client as mqtt
import pytest

from server.src.config import ServerSettings
from server.src.models import PlantConfig
from server.src.runtime import ServerRuntime
from server.src.store import InMemoryTimeSeriesStore

# All ServerSettings environment variable names, used for cleanup.
_ALL_SERVER_ENV_VARS = tuple(name.upper() for name in ServerSettings.model_fields)

T0 = datetime(2026, 10, 18, 12, 0, 0, tzinfo=UTC)


@pytest.fixture(autouse=True)
def _clean_server_env(monkeypatch: pytest.MonkeyPatch, tmp_path: str) -> None:
    """Remove all server env vars and isolate from .env files before each test.

    Changes working directory to tmp_path so no .env file is accidentally
    loaded by Pydantic BaseSettings.
    """
    for var in _ALL_SERVER_ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable returning a settable 'now'."""

    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeTransport:
    """In-memory Transport recording publishes.

    Attributes:
        published: (topic, payload) pairs in publish order.
        fail: When True, publish returns False.
        on_publish: Optional hook called after each successful publish.
    """

    def __init__(self) -> None:
        self.published: list[tuple[str, Any]] = []
        self.subscriptions: list[tuple[str, Any, int]] = []
        self.fail = False
        self.connected = True
        self.on_publish: Callable[[str, Any], None] | None = None

    def subscribe(self, topic_pattern: str, handler: Any, qos: int = 1) -> None:
        self.subscriptions.append((topic_pattern, handler, qos))

    def publish(self, topic: str, payload: Any, qos: int = 1, retain: bool = False) -> bool:
        if self.fail:
            return False
        self.published.append((topic, payload))
        if self.on_publish is not None:
            self.on_publish(topic, payload)
        return True

    def topics(self, prefix: str = "") -> list[str]:
        return [t for t, _ in self.published if t.startswith(prefix)]

    async def deliver(self, topic: str, payload: bytes | str) -> None:
        """Feed an inbound message to every matching subscriber."""
        if isinstance(payload, str):
            payload = payload.encode("utf-8")
        for pattern, handler, _ in self.subscriptions:
            if mqtt.topic_matches_sub(pattern, topic):
                await handler(topic, payload)


def auto_ack(transport: FakeTransport, runtime: ServerRuntime, *, stop: bool = False) -> None:
    """Make the fake device confirm every pump start (and optionally stop)."""

    def _hook(topic: str, payload: Any) -> None:
        if not topic.endswith("/water"):
            return
        device_id = topic.split("/")[1]
        loop = asyncio.get_running_loop()
        loop.call_soon(runtime.dispatcher.handle_pump_status, device_id, {"action": "started"})
        if stop:
            loop.call_soon(
                runtime.dispatcher.handle_pump_status, device_id, {"action": "stopped"}
            )

    transport.on_publish = _hook


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture()
def store() -> InMemoryTimeSeriesStore:
    return InMemoryTimeSeriesStore()


@pytest.fixture()
def settings() -> ServerSettings:
    return ServerSettings(
        ack_timeout_s=0.05,
        completion_grace_s=0.05,
        api_tokens="op-token:alice",
        health_path="health.json",
        config_db_path="plants.db",
    )


@pytest.fixture()
def runtime(
    settings: ServerSettings,
    transport: FakeTransport,
    store: InMemoryTimeSeriesStore,
    clock: FakeClock,
) -> ServerRuntime:
    rt = ServerRuntime.build(settings, transport=transport, store=store, clock=clock)
    rt.attach_transport()
    return rt


def make_ready_plant(
    runtime: ServerRuntime,
    clock: FakeClock,
    *,
    plant_id: str = "p1",
    device_id: str = "esp32-01",
    moisture: float = 20.0,
    config: PlantConfig | None = None,
) -> None:
    """Register an online plant with a fresh moisture reading."""
    from server.src.models import SensorReading, SensorType

    runtime.registry.register(plant_id, device_id, config=config, now=clock())
    runtime.registry.apply_reading(
        SensorReading(
            plant_id=plant_id,
            sensor_type=SensorType.MOISTURE,
            value=moisture,
            unit="percent",
            observed_at=clock(),
            received_at=clock(),
        ),
        device_id=device_id,
    )
    runtime.registry.mark_online(plant_id, clock())
