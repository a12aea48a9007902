"""
Health file writer for the server daemon.

Writes a JSON health file at a configurable path with these fields:
- last_automation_ts: ISO timestamp of the most recent automation tick.
- last_sweep_ts: ISO timestamp of the most recent staleness sweep.
- plants_total / plants_online: registry counts at the last update.
- mqtt_connected: whether the broker connection was up at the last update.

The file is rewritten on every state change, providing a simple liveness
signal that a container HEALTHCHECK or monitoring can inspect.

CHANGELOG:
- 2026-10-18: Initial creation (STORY-016)

TODO:
- None
"""

from __future__ import annotations

import json
import os
from datetime import UTC, datetime
from pathlib import Path


class HealthWriter:
    """Writes server health status to a JSON file.

    Args:
        path: Filesystem path for the health JSON file. Accepts str or Path.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._last_automation_ts: str | None = None
        self._last_sweep_ts: str | None = None
        self._plants_total = 0
        self._plants_online = 0
        self._mqtt_connected = False

    def record_automation(self) -> None:
        self._last_automation_ts = datetime.now(tz=UTC).isoformat()
        self._write()

    def record_sweep(self) -> None:
        self._last_sweep_ts = datetime.now(tz=UTC).isoformat()
        self._write()

    def set_plant_counts(self, total: int, online: int) -> None:
        self._plants_total = total
        self._plants_online = online
        self._write()

    def set_mqtt_connected(self, connected: bool) -> None:
        self._mqtt_connected = connected
        self._write()

    def as_dict(self) -> dict[str, object]:
        return {
            "last_automation_ts": self._last_automation_ts,
            "last_sweep_ts": self._last_sweep_ts,
            "plants_total": self._plants_total,
            "plants_online": self._plants_online,
            "mqtt_connected": self._mqtt_connected,
        }

    def _write(self) -> None:
        """Write the health file via a temp file so readers never see half of it."""
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(self.as_dict()))
        os.replace(tmp, self.path)
