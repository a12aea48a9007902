"""
Time-series store for sensor points and watering events.

``TimeSeriesStore`` is the narrow interface the core writes through. Two
implementations are provided:

- ``SqlTimeSeriesStore``: TimescaleDB via SQLAlchemy async sessions, with
  idempotent ``INSERT ... ON CONFLICT DO NOTHING`` so redelivered MQTT
  messages are harmless.
- ``InMemoryTimeSeriesStore``: bounded per-plant buffers, used when no
  DATABASE_URL is configured (local development) and in tests.

``StoreWriter`` makes writes fire-and-forget: ingestion and watering never
wait on the database, and a failed write is logged without touching
registry state.

CHANGELOG:
- 2026-10-18: Drop duplicate keys with evicted points and events (STORY-020)
- 2026-10-18: Add in-memory store for runs without a database (STORY-013)
- 2026-10-18: Initial creation (STORY-013)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict, deque
from collections.abc import Coroutine, Sequence
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol

from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from server.src.db.models import SensorPoint, WateringEventRow
from server.src.models import SensorReading, SensorType, WateringEvent

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Query result models
# ---------------------------------------------------------------------------


class SeriesPoint(BaseModel):
    ts: datetime
    value: float


class PlantHistory(BaseModel):
    """Sensor series and watering events of one plant inside a window.

    Attributes:
        plant_id: Queried plant.
        since: Start of the window (UTC).
        until: End of the window (UTC).
        series: Points per sensor type, oldest first.
        waterings: Watering events in the window, newest first.
    """

    plant_id: str
    since: datetime
    until: datetime
    series: dict[str, list[SeriesPoint]]
    waterings: list[WateringEvent]


# ---------------------------------------------------------------------------
# Interface
# ---------------------------------------------------------------------------


class TimeSeriesStore(Protocol):
    async def write_sensor_point(self, reading: SensorReading) -> None: ...

    async def write_sensor_points(self, readings: Sequence[SensorReading]) -> int: ...

    async def write_watering_event(self, event: WateringEvent) -> None: ...

    async def query_recent(
        self, plant_id: str, window: timedelta, *, now: datetime | None = None
    ) -> PlantHistory: ...

    async def query_watering_events(
        self, plant_id: str, *, limit: int = 50
    ) -> list[WateringEvent]: ...


# ---------------------------------------------------------------------------
# TimescaleDB implementation
# ---------------------------------------------------------------------------


def _reading_row(reading: SensorReading) -> dict[str, Any]:
    return {
        "plant_id": reading.plant_id,
        "sensor_type": reading.sensor_type.value,
        "ts": reading.observed_at,
        "value": reading.value,
        "unit": reading.unit,
        "received_at": reading.received_at,
    }


def _event_row(event: WateringEvent) -> dict[str, Any]:
    return event.model_dump(mode="python") | {
        "trigger_type": event.trigger_type.value,
        "outcome": event.outcome.value,
    }


def _event_from_row(row: WateringEventRow) -> WateringEvent:
    return WateringEvent(
        plant_id=row.plant_id,
        device_id=row.device_id,
        trigger_type=row.trigger_type,
        requested_at=row.requested_at,
        recorded_at=row.recorded_at,
        duration_ms=row.duration_ms,
        outcome=row.outcome,
        reject_reason=row.reject_reason,
        volume_estimate_ml=row.volume_estimate_ml,
        reason=row.reason,
    )


class SqlTimeSeriesStore:
    """TimescaleDB-backed store.

    Args:
        session_factory: async_sessionmaker bound to the database engine.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    async def write_sensor_point(self, reading: SensorReading) -> None:
        await self.write_sensor_points([reading])

    async def write_sensor_points(self, readings: Sequence[SensorReading]) -> int:
        """Insert readings, skipping (plant_id, sensor_type, ts) duplicates.

        Returns:
            Number of rows actually inserted.
        """
        if not readings:
            return 0
        stmt = (
            pg_insert(SensorPoint)
            .values([_reading_row(r) for r in readings])
            .on_conflict_do_nothing(index_elements=["plant_id", "sensor_type", "ts"])
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
        inserted = result.rowcount
        logger.debug(
            "Stored %d/%d sensor points for plant %s",
            inserted,
            len(readings),
            readings[0].plant_id,
        )
        return inserted

    async def write_watering_event(self, event: WateringEvent) -> None:
        stmt = (
            pg_insert(WateringEventRow)
            .values(_event_row(event))
            .on_conflict_do_nothing(
                index_elements=["plant_id", "requested_at", "outcome"]
            )
        )
        async with self.session_factory() as session:
            await session.execute(stmt)
            await session.commit()

    async def query_recent(
        self, plant_id: str, window: timedelta, *, now: datetime | None = None
    ) -> PlantHistory:
        until = now or datetime.now(tz=UTC)
        since = until - window
        points_stmt = (
            select(SensorPoint)
            .where(SensorPoint.plant_id == plant_id)
            .where(SensorPoint.ts >= since)
            .where(SensorPoint.ts <= until)
            .order_by(SensorPoint.ts.asc())
        )
        events_stmt = (
            select(WateringEventRow)
            .where(WateringEventRow.plant_id == plant_id)
            .where(WateringEventRow.requested_at >= since)
            .order_by(WateringEventRow.requested_at.desc())
        )
        async with self.session_factory() as session:
            points = (await session.execute(points_stmt)).scalars().all()
            events = (await session.execute(events_stmt)).scalars().all()

        series: dict[str, list[SeriesPoint]] = {t.value: [] for t in SensorType}
        for point in points:
            series.setdefault(point.sensor_type, []).append(
                SeriesPoint(ts=point.ts, value=point.value)
            )
        return PlantHistory(
            plant_id=plant_id,
            since=since,
            until=until,
            series=series,
            waterings=[_event_from_row(e) for e in events],
        )

    async def query_watering_events(
        self, plant_id: str, *, limit: int = 50
    ) -> list[WateringEvent]:
        stmt = (
            select(WateringEventRow)
            .where(WateringEventRow.plant_id == plant_id)
            .order_by(WateringEventRow.requested_at.desc(), WateringEventRow.recorded_at.desc())
            .limit(limit)
        )
        async with self.session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [_event_from_row(r) for r in rows]


# ---------------------------------------------------------------------------
# In-memory implementation
# ---------------------------------------------------------------------------


class InMemoryTimeSeriesStore:
    """Bounded in-process store with the same semantics as the SQL store.

    Duplicate detection only covers what is still buffered: a key is dropped
    together with the point or event that the bounded buffer evicts.

    Args:
        max_points: Sensor points kept per plant.
        max_events: Watering events kept per plant.
    """

    def __init__(self, *, max_points: int = 10_000, max_events: int = 500) -> None:
        self._points: dict[str, deque[SensorReading]] = defaultdict(
            lambda: deque(maxlen=max_points)
        )
        self._events: dict[str, deque[WateringEvent]] = defaultdict(
            lambda: deque(maxlen=max_events)
        )
        self._point_keys: set[tuple[str, str, datetime]] = set()
        self._event_keys: set[tuple[str, datetime, str]] = set()

    @staticmethod
    def _point_key(reading: SensorReading) -> tuple[str, str, datetime]:
        return (reading.plant_id, reading.sensor_type.value, reading.observed_at)

    @staticmethod
    def _event_key(event: WateringEvent) -> tuple[str, datetime, str]:
        return (event.plant_id, event.requested_at, event.outcome.value)

    async def write_sensor_point(self, reading: SensorReading) -> None:
        await self.write_sensor_points([reading])

    async def write_sensor_points(self, readings: Sequence[SensorReading]) -> int:
        inserted = 0
        for reading in readings:
            key = self._point_key(reading)
            if key in self._point_keys:
                continue
            buffer = self._points[reading.plant_id]
            if len(buffer) == buffer.maxlen:
                self._point_keys.discard(self._point_key(buffer[0]))
            self._point_keys.add(key)
            buffer.append(reading)
            inserted += 1
        return inserted

    async def write_watering_event(self, event: WateringEvent) -> None:
        key = self._event_key(event)
        if key in self._event_keys:
            return
        buffer = self._events[event.plant_id]
        if len(buffer) == buffer.maxlen:
            self._event_keys.discard(self._event_key(buffer[0]))
        self._event_keys.add(key)
        buffer.append(event)

    async def query_recent(
        self, plant_id: str, window: timedelta, *, now: datetime | None = None
    ) -> PlantHistory:
        until = now or datetime.now(tz=UTC)
        since = until - window
        series: dict[str, list[SeriesPoint]] = {t.value: [] for t in SensorType}
        points = sorted(
            (r for r in self._points.get(plant_id, ()) if since <= r.observed_at <= until),
            key=lambda r: r.observed_at,
        )
        for reading in points:
            series[reading.sensor_type.value].append(
                SeriesPoint(ts=reading.observed_at, value=reading.value)
            )
        waterings = sorted(
            (e for e in self._events.get(plant_id, ()) if e.requested_at >= since),
            key=lambda e: e.requested_at,
            reverse=True,
        )
        return PlantHistory(
            plant_id=plant_id, since=since, until=until, series=series, waterings=waterings
        )

    async def query_watering_events(
        self, plant_id: str, *, limit: int = 50
    ) -> list[WateringEvent]:
        events = sorted(
            self._events.get(plant_id, ()),
            key=lambda e: (e.requested_at, e.recorded_at),
            reverse=True,
        )
        return events[:limit]


# ---------------------------------------------------------------------------
# Fire-and-forget writer
# ---------------------------------------------------------------------------


class StoreWriter:
    """Schedules store writes as background tasks on the running loop.

    Failures are logged and counted; they never propagate to the caller.

    Args:
        store: Target time-series store.
    """

    def __init__(self, store: TimeSeriesStore) -> None:
        self.store = store
        self.failures = 0
        self._tasks: set[asyncio.Task[Any]] = set()

    def _spawn(self, coro: Coroutine[Any, Any, Any], what: str) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)

        def _done(t: asyncio.Task[Any]) -> None:
            self._tasks.discard(t)
            if t.cancelled():
                return
            exc = t.exception()
            if exc is not None:
                self.failures += 1
                logger.error(
                    "Store write failed (%s)",
                    what,
                    exc_info=(type(exc), exc, exc.__traceback__),
                )

        task.add_done_callback(_done)

    def write_readings(self, readings: Sequence[SensorReading]) -> None:
        if readings:
            self._spawn(
                self.store.write_sensor_points(list(readings)),
                f"sensor points for {readings[0].plant_id}",
            )

    def write_event(self, event: WateringEvent) -> None:
        self._spawn(
            self.store.write_watering_event(event),
            f"watering event {event.outcome.value} for {event.plant_id}",
        )

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout_s: float = 5.0) -> None:
        """Wait for outstanding writes, e.g. on shutdown."""
        if not self._tasks:
            return
        _, pending = await asyncio.wait(set(self._tasks), timeout=timeout_s)
        if pending:
            logger.warning("%d store write(s) still pending at shutdown", len(pending))
