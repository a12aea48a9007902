"""
Unit tests for the async SQLite plant config store.

Tests verify:
- The database is created in WAL mode at the configured path.
- save() upserts identity and config; load_all() restores them.
- Rows with an invalid config are skipped, not fatal.
- delete() and count().
- Data survives close/reopen.

CHANGELOG:
- 2026-10-18: Initial creation (STORY-014)

TODO:
- None
"""

from __future__ import annotations

from pathlib import Path

import aiosqlite
import pytest
from conftest import T0

from server.src.config_store import PlantConfigStore
from server.src.models import PlantConfig, PlantRecord, QuietHours


def _record(plant_id: str = "basil", **config: object) -> PlantRecord:
    return PlantRecord(
        plant_id=plant_id,
        device_id=f"dev-{plant_id}",
        name=plant_id.title(),
        config=PlantConfig(**config),
        created_at=T0,
    )


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------


class TestCreation:
    @pytest.mark.asyncio
    async def test_creates_db_in_wal_mode(self, tmp_path: Path) -> None:
        db_path = tmp_path / "nested" / "plants.db"
        async with PlantConfigStore(db_path):
            pass
        assert db_path.exists()
        async with aiosqlite.connect(str(db_path)) as db:
            cursor = await db.execute("PRAGMA journal_mode;")
            row = await cursor.fetchone()
        assert row[0] == "wal"

    @pytest.mark.asyncio
    async def test_empty_store(self, tmp_path: Path) -> None:
        async with PlantConfigStore(tmp_path / "plants.db") as store:
            assert await store.load_all() == []
            assert await store.count() == 0


# ---------------------------------------------------------------------------
# Save / load
# ---------------------------------------------------------------------------


class TestSaveLoad:
    @pytest.mark.asyncio
    async def test_round_trip_keeps_config(self, tmp_path: Path) -> None:
        record = _record(
            moisture_min=22, quiet_hours=QuietHours(start="23:00", end="07:00"), version=4
        )
        async with PlantConfigStore(tmp_path / "plants.db") as store:
            await store.save(record)
            (stored,) = await store.load_all()
        assert stored.plant_id == "basil"
        assert stored.device_id == "dev-basil"
        assert stored.name == "Basil"
        assert stored.config == record.config

    @pytest.mark.asyncio
    async def test_save_is_upsert(self, tmp_path: Path) -> None:
        async with PlantConfigStore(tmp_path / "plants.db") as store:
            await store.save(_record(moisture_min=20))
            await store.save(_record(moisture_min=35, version=2))
            plants = await store.load_all()
            assert await store.count() == 1
        assert plants[0].config.moisture_min == 35
        assert plants[0].config.version == 2

    @pytest.mark.asyncio
    async def test_invalid_row_skipped(self, tmp_path: Path) -> None:
        db_path = tmp_path / "plants.db"
        async with PlantConfigStore(db_path) as store:
            await store.save(_record("good"))
            await store.save(_record("bad"))
        async with aiosqlite.connect(str(db_path)) as db:
            await db.execute(
                "UPDATE plants SET config = ? WHERE plant_id = ?",
                ('{"moisture_min": 90, "moisture_max": 10}', "bad"),
            )
            await db.commit()

        async with PlantConfigStore(db_path) as store:
            plants = await store.load_all()
        assert [p.plant_id for p in plants] == ["good"]

    @pytest.mark.asyncio
    async def test_delete(self, tmp_path: Path) -> None:
        async with PlantConfigStore(tmp_path / "plants.db") as store:
            await store.save(_record("a"))
            await store.save(_record("b"))
            await store.delete("a")
            assert [p.plant_id for p in await store.load_all()] == ["b"]

    @pytest.mark.asyncio
    async def test_persists_across_reopen(self, tmp_path: Path) -> None:
        db_path = tmp_path / "plants.db"
        async with PlantConfigStore(db_path) as store:
            await store.save(_record("a"))
        async with PlantConfigStore(db_path) as store:
            assert await store.count() == 1

    @pytest.mark.asyncio
    async def test_use_before_open_fails(self, tmp_path: Path) -> None:
        store = PlantConfigStore(tmp_path / "plants.db")
        with pytest.raises(AssertionError, match="Store not opened"):
            await store.count()
