"""
Initial schema: sensor_points and watering_events hypertables.

Enables the TimescaleDB extension, creates both tables with composite primary
keys that include their time column, then converts each to a hypertable.
Sensor points are chunked daily (a plant node reports every few seconds);
watering events are sparse and chunked monthly.

Revision ID: 001
Revises: None
Create Date: 2026-10-18

CHANGELOG:
- 2026-10-18: Initial creation (STORY-013)

TODO:
- None
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.execute("CREATE EXTENSION IF NOT EXISTS timescaledb")

    op.create_table(
        "sensor_points",
        sa.Column("plant_id", sa.Text(), nullable=False),
        sa.Column("sensor_type", sa.Text(), nullable=False),
        sa.Column("ts", sa.DateTime(timezone=True), nullable=False),
        sa.Column("value", sa.Double(), nullable=False),
        sa.Column("unit", sa.Text(), nullable=False),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("plant_id", "sensor_type", "ts"),
    )
    op.execute(
        "SELECT create_hypertable("
        "'sensor_points', 'ts', "
        "chunk_time_interval => INTERVAL '1 day', "
        "if_not_exists => TRUE"
        ")"
    )

    op.create_table(
        "watering_events",
        sa.Column("plant_id", sa.Text(), nullable=False),
        sa.Column("requested_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("outcome", sa.Text(), nullable=False),
        sa.Column("device_id", sa.Text(), nullable=False),
        sa.Column("trigger_type", sa.Text(), nullable=False),
        sa.Column("recorded_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("duration_ms", sa.Integer(), nullable=False),
        sa.Column("reject_reason", sa.Text(), nullable=True),
        sa.Column("volume_estimate_ml", sa.Double(), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("plant_id", "requested_at", "outcome"),
    )
    op.execute(
        "SELECT create_hypertable("
        "'watering_events', 'requested_at', "
        "chunk_time_interval => INTERVAL '30 days', "
        "if_not_exists => TRUE"
        ")"
    )


def downgrade() -> None:
    """Drop both tables; the timescaledb extension is left in place."""
    op.drop_table("watering_events")
    op.drop_table("sensor_points")
