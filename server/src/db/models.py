"""
SQLAlchemy ORM models for the time-series database.

Defines two TimescaleDB hypertables: ``sensor_points`` (one row per accepted
sensor value) and ``watering_events`` (append-only watering log). Both use
composite primary keys that include the time column, so a redelivered MQTT
message maps onto the same row and inserts stay idempotent.

CHANGELOG:
- 2026-10-18: Add watering_events table (STORY-013)
- 2026-10-18: Initial creation (STORY-013)

TODO:
- None
"""

import datetime

from sqlalchemy import DateTime, Double, Integer, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for all server ORM models."""

    pass


class SensorPoint(Base):
    """One validated sensor value.

    Attributes:
        plant_id: Plant the value belongs to.
        sensor_type: temperature, humidity, moisture or light.
        ts: Observation time (UTC).
        value: Sensor value in ``unit``.
        unit: celsius or percent.
        received_at: Time the server received the message.
    """

    __tablename__ = "sensor_points"

    plant_id: Mapped[str] = mapped_column(Text, primary_key=True, nullable=False)
    sensor_type: Mapped[str] = mapped_column(Text, primary_key=True, nullable=False)
    ts: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True),
        primary_key=True,
        nullable=False,
    )
    value: Mapped[float] = mapped_column(Double, nullable=False)
    unit: Mapped[str] = mapped_column(Text, nullable=False)
    received_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )

    def __repr__(self) -> str:
        return (
            f"SensorPoint(plant_id={self.plant_id!r}, "
            f"sensor_type={self.sensor_type!r}, ts={self.ts!r}, value={self.value!r})"
        )


class WateringEventRow(Base):
    """Persisted WateringEvent.

    The key is (plant_id, requested_at, outcome): one request produces at
    most one row per outcome (e.g. ``started`` then ``acknowledged``).
    """

    __tablename__ = "watering_events"

    plant_id: Mapped[str] = mapped_column(Text, primary_key=True, nullable=False)
    requested_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True),
        primary_key=True,
        nullable=False,
    )
    outcome: Mapped[str] = mapped_column(Text, primary_key=True, nullable=False)
    device_id: Mapped[str] = mapped_column(Text, nullable=False)
    trigger_type: Mapped[str] = mapped_column(Text, nullable=False)
    recorded_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    duration_ms: Mapped[int] = mapped_column(Integer, nullable=False)
    reject_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    volume_estimate_ml: Mapped[float | None] = mapped_column(Double, nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return (
            f"WateringEventRow(plant_id={self.plant_id!r}, "
            f"requested_at={self.requested_at!r}, outcome={self.outcome!r})"
        )
