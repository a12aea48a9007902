"""
Durable per-plant configuration using async SQLite.

Plants are discovered at runtime and their thresholds edited from the
dashboard; both must survive a restart. Each plant's identity and its
current PlantConfig (as JSON) are stored in one row, upserted on discovery
and on every config change, and loaded back into the registry at startup.

Operations:
- save(record): INSERT OR REPLACE the plant's row.
- load_all(): SELECT every stored plant.
- delete(plant_id): DELETE one plant's row.
- count(): SELECT COUNT(*) of stored plants.

Supports async context manager protocol for clean resource management.

CHANGELOG:
- 2026-10-18: Initial creation (STORY-014)

TODO:
- None
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

import aiosqlite
from pydantic import ValidationError

from server.src.models import PlantConfig, PlantRecord

logger = logging.getLogger(__name__)

_CREATE_TABLE_SQL = """\
CREATE TABLE IF NOT EXISTS plants (
    plant_id TEXT PRIMARY KEY,
    device_id TEXT NOT NULL,
    name TEXT NOT NULL DEFAULT '',
    config TEXT NOT NULL,
    updated_at TEXT NOT NULL DEFAULT (datetime('now'))
);
"""

_UPSERT_SQL = """\
INSERT INTO plants (plant_id, device_id, name, config, updated_at)
VALUES (?, ?, ?, ?, datetime('now'))
ON CONFLICT(plant_id) DO UPDATE SET
    device_id = excluded.device_id,
    name = excluded.name,
    config = excluded.config,
    updated_at = excluded.updated_at;
"""

_SELECT_ALL_SQL = """\
SELECT plant_id, device_id, name, config
FROM plants
ORDER BY plant_id ASC;
"""

_DELETE_SQL = "DELETE FROM plants WHERE plant_id = ?;"

_COUNT_SQL = "SELECT COUNT(*) FROM plants;"


@dataclass(frozen=True)
class StoredPlant:
    plant_id: str
    device_id: str
    name: str
    config: PlantConfig


class PlantConfigStore:
    """SQLite-backed store of plant identities and configurations.

    Args:
        path: Filesystem path for the SQLite database file.

    Usage::

        async with PlantConfigStore("/data/plants.db") as store:
            await store.save(record)
            plants = await store.load_all()
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._db: aiosqlite.Connection | None = None

    async def open(self) -> None:
        """Open the SQLite connection (WAL mode) and create the schema."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(str(self._path))
        await self._db.execute("PRAGMA journal_mode=WAL;")
        await self._db.execute(_CREATE_TABLE_SQL)
        await self._db.commit()

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def __aenter__(self) -> PlantConfigStore:
        await self.open()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def save(self, record: PlantRecord) -> None:
        """Upsert the plant's identity and current config."""
        assert self._db is not None, "Store not opened. Call open() or use async with."
        await self._db.execute(
            _UPSERT_SQL,
            (
                record.plant_id,
                record.device_id,
                record.name,
                record.config.model_dump_json(),
            ),
        )
        await self._db.commit()

    async def load_all(self) -> list[StoredPlant]:
        """Return every stored plant.

        Rows whose config no longer validates are skipped with a warning so
        one bad row cannot prevent startup.
        """
        assert self._db is not None, "Store not opened. Call open() or use async with."
        cursor = await self._db.execute(_SELECT_ALL_SQL)
        rows = await cursor.fetchall()
        plants: list[StoredPlant] = []
        for plant_id, device_id, name, config_json in rows:
            try:
                config = PlantConfig.model_validate_json(config_json)
            except ValidationError:
                logger.warning(
                    "Skipping stored plant %s: invalid config", plant_id, exc_info=True
                )
                continue
            plants.append(
                StoredPlant(plant_id=plant_id, device_id=device_id, name=name, config=config)
            )
        return plants

    async def delete(self, plant_id: str) -> None:
        assert self._db is not None, "Store not opened. Call open() or use async with."
        await self._db.execute(_DELETE_SQL, (plant_id,))
        await self._db.commit()

    async def count(self) -> int:
        assert self._db is not None, "Store not opened. Call open() or use async with."
        cursor = await self._db.execute(_COUNT_SQL)
        row = await cursor.fetchone()
        return row[0]
