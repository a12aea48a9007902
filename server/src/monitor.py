"""
Device staleness monitor.

A sweep marks every online plant offline whose device has been silent for
longer than the offline threshold (10 minutes by default). Any device
message marks the plant online again, so the monitor only ever moves
plants in one direction.

CHANGELOG:
- 2026-10-18: Initial creation (STORY-011)

TODO:
- None
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from server.src.registry import PlantRegistry, UnknownPlantError

logger = logging.getLogger(__name__)


class StalenessMonitor:
    """Marks silent devices offline.

    Args:
        registry: Plant registry to sweep.
        offline_after: Silence after which a device is considered offline.
    """

    def __init__(
        self, registry: PlantRegistry, *, offline_after: timedelta = timedelta(minutes=10)
    ) -> None:
        self.registry = registry
        self.offline_after = offline_after

    def sweep(self, now: datetime) -> list[str]:
        """Mark stale plants offline.

        Returns:
            plant_ids that went offline during this sweep.
        """
        cutoff = now - self.offline_after
        went_offline: list[str] = []
        offline_total = 0
        for record in self.registry.snapshots():
            last_seen = record.status.last_seen_at
            if record.status.online and last_seen is not None and last_seen < cutoff:
                try:
                    if self.registry.mark_offline(record.plant_id, last_seen_before=cutoff):
                        went_offline.append(record.plant_id)
                        logger.warning(
                            "Plant %s offline: last seen %s",
                            record.plant_id,
                            last_seen.isoformat(),
                        )
                except UnknownPlantError:
                    continue
            current = self.registry.snapshot(record.plant_id)
            if current is not None and not current.status.online:
                offline_total += 1

        if offline_total:
            logger.info(
                "Health check: %d of %d plant(s) offline",
                offline_total,
                len(self.registry),
            )
        return went_offline
