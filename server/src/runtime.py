"""
Component wiring for the PlanetPlant server.

``ServerRuntime`` builds the core (registry, decision policy, coordinator,
dispatcher, monitor, automation, ingestion) around injected adapters
(transport, time-series store, config store, cache) and offers the few
operations that span several components, such as a config update that is
validated, persisted and pushed to the device.

The daemon entrypoint and the API both work on one runtime instance.

CHANGELOG:
- 2026-10-18: Persist discovered plants and config updates (STORY-014)
- 2026-10-18: Initial creation (STORY-016)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from server.src.automation import WateringAutomation
from server.src.cache.redis_client import HistoryCache, history_key
from server.src.config import ServerSettings
from server.src.config_store import PlantConfigStore
from server.src.coordinator import WateringCoordinator
from server.src.decision import DecisionPolicy
from server.src.dispatcher import CommandDispatcher
from server.src.events import EventBus, EventType
from server.src.health import HealthWriter
from server.src.ingest import TelemetryIngestor
from server.src.models import PlantRecord
from server.src.monitor import StalenessMonitor
from server.src.registry import PlantRegistry, UnknownPlantError
from server.src.store import PlantHistory, StoreWriter, TimeSeriesStore
from server.src.transport import Transport

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


@dataclass
class ServerRuntime:
    """All long-lived server components."""

    settings: ServerSettings
    events: EventBus
    registry: PlantRegistry
    transport: Transport
    dispatcher: CommandDispatcher
    store: TimeSeriesStore
    writer: StoreWriter
    coordinator: WateringCoordinator
    automation: WateringAutomation
    monitor: StalenessMonitor
    ingestor: TelemetryIngestor
    config_store: PlantConfigStore | None = None
    cache: HistoryCache | None = None
    health: HealthWriter | None = None
    clock: Callable[[], datetime] = _utcnow
    _tasks: set[asyncio.Task[Any]] = field(default_factory=set, repr=False)

    @classmethod
    def build(
        cls,
        settings: ServerSettings,
        *,
        transport: Transport,
        store: TimeSeriesStore,
        config_store: PlantConfigStore | None = None,
        cache: HistoryCache | None = None,
        health: HealthWriter | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> ServerRuntime:
        """Wire the core components from *settings* and the given adapters."""
        events = EventBus()
        registry = PlantRegistry(events=events, default_config=settings.default_plant_config())
        dispatcher = CommandDispatcher(transport, ack_timeout_s=settings.ack_timeout_s)
        writer = StoreWriter(store)
        policy = DecisionPolicy(
            reading_stale_after=timedelta(seconds=settings.reading_stale_s),
            timezone=settings.tzinfo,
        )
        coordinator = WateringCoordinator(
            registry,
            dispatcher,
            events=events,
            writer=writer,
            policy=policy,
            ack_timeout_s=settings.ack_timeout_s,
            completion_grace_s=settings.completion_grace_s,
            flow_rate_ml_s=settings.pump_flow_rate_ml_s,
            clock=clock,
        )
        runtime = cls(
            settings=settings,
            events=events,
            registry=registry,
            transport=transport,
            dispatcher=dispatcher,
            store=store,
            writer=writer,
            coordinator=coordinator,
            automation=WateringAutomation(
                registry, coordinator, enabled=settings.enable_scheduler, clock=clock
            ),
            monitor=StalenessMonitor(
                registry, offline_after=timedelta(seconds=settings.offline_threshold_s)
            ),
            ingestor=TelemetryIngestor(registry, dispatcher, writer=writer, clock=clock),
            config_store=config_store,
            cache=cache,
            health=health,
            clock=clock,
        )
        events.subscribe(EventType.DEVICE_DISCOVERED, runtime._on_discovered)
        return runtime

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    def attach_transport(self) -> None:
        self.ingestor.attach(self.transport)

    async def load_plants(self) -> int:
        """Register every plant stored in the config store."""
        if self.config_store is None:
            return 0
        stored = await self.config_store.load_all()
        for plant in stored:
            self.registry.register(
                plant.plant_id,
                plant.device_id,
                name=plant.name,
                config=plant.config,
                now=self.clock(),
            )
        logger.info("Loaded %d plant(s) from config store", len(stored))
        return len(stored)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _spawn(self, coro: Any) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _on_discovered(self, event: str, payload: dict[str, Any]) -> None:
        if self.config_store is None:
            return
        record = self.registry.snapshot(payload["plant_id"])
        if record is not None:
            self._spawn(self._save(record))

    async def _save(self, record: PlantRecord) -> None:
        if self.config_store is None:
            return
        try:
            await self.config_store.save(record)
        except Exception:
            logger.error("Failed to persist plant %s", record.plant_id, exc_info=True)

    async def flush(self) -> None:
        """Wait for pending config and store writes."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        await self.writer.drain()

    # ------------------------------------------------------------------
    # Cross-component operations
    # ------------------------------------------------------------------

    async def update_plant_config(
        self, plant_id: str, changes: Mapping[str, Any]
    ) -> PlantRecord:
        """Validate and apply a config change, persist it, push it to the device.

        Raises:
            UnknownPlantError: If the plant does not exist.
            pydantic.ValidationError: If the resulting config is invalid.
        """
        record = self.registry.update_config(plant_id, changes)
        await self._save(record)
        if not self.dispatcher.publish_config(record.device_id, record.config):
            logger.warning(
                "Config v%d for plant %s saved but not delivered to %s",
                record.config.version,
                plant_id,
                record.device_id,
            )
        return record

    async def history(self, plant_id: str, window: timedelta) -> PlantHistory:
        """Return the plant's recent history, through the cache when enabled.

        Raises:
            UnknownPlantError: If the plant does not exist.
        """
        if plant_id not in self.registry:
            raise UnknownPlantError(plant_id)
        key = history_key(plant_id, int(window.total_seconds()))
        if self.cache is not None:
            cached = await self.cache.get(key)
            if cached is not None:
                return PlantHistory.model_validate_json(cached)
        history = await self.store.query_recent(plant_id, window, now=self.clock())
        if self.cache is not None:
            await self.cache.set(key, history.model_dump_json())
        return history

    def refresh_health(self) -> None:
        if self.health is None:
            return
        records = self.registry.snapshots()
        self.health.set_plant_counts(
            len(records), sum(1 for r in records if r.status.online)
        )
        connected = getattr(self.transport, "connected", None)
        if connected is not None:
            self.health.set_mqtt_connected(bool(connected))
