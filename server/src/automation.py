"""
Automatic watering tick.

Every tick evaluates each plant against its thresholds and asks the
coordinator to water those whose decision is ``water``. Plants are handled
concurrently; the coordinator re-checks every rule after claiming the
watering gate, so a plant that changed between evaluation and request is
rejected there rather than watered twice.

Stats mirror what the dashboard shows for the automation service.

CHANGELOG:
- 2026-10-18: Manual ticks bypass the enabled flag via force (STORY-020)
- 2026-10-18: Initial creation (STORY-011)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from typing import Any

from server.src.coordinator import WateringCoordinator
from server.src.decision import evaluate
from server.src.models import (
    DecisionReason,
    PlantRecord,
    Rejection,
    TriggerType,
    WateringTicket,
)
from server.src.registry import PlantRegistry

logger = logging.getLogger(__name__)

# Holds that mean "nothing to do" rather than "wanted to water but could not".
_ROUTINE_HOLDS = frozenset(
    {DecisionReason.MOISTURE_IN_RANGE, DecisionReason.MOISTURE_SUFFICIENT}
)


@dataclass
class AutomationStats:
    total_automatic_waterings: int = 0
    last_automatic_watering: datetime | None = None
    skipped_waterings: int = 0
    errors: int = 0
    ticks: int = 0
    last_tick_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        for key in ("last_automatic_watering", "last_tick_at"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data


@dataclass(frozen=True)
class TickResult:
    evaluated: int
    watered: tuple[str, ...]
    rejected: tuple[Rejection, ...]
    skipped: int
    errors: int


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


class WateringAutomation:
    """Runs the automatic watering pass.

    Args:
        registry: Plant registry.
        coordinator: Coordinator issuing the waterings.
        enabled: When False, ``tick`` does nothing.
        clock: Returns the current UTC time.
    """

    def __init__(
        self,
        registry: PlantRegistry,
        coordinator: WateringCoordinator,
        *,
        enabled: bool = True,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.registry = registry
        self.coordinator = coordinator
        self.enabled = enabled
        self.clock = clock
        self.stats = AutomationStats()

    async def _check_plant(self, record: PlantRecord, now: datetime) -> WateringTicket | Rejection | None:
        decision = evaluate(
            record, now, trigger=TriggerType.AUTOMATIC, policy=self.coordinator.policy
        )
        if not decision.should_water:
            if decision.reason not in _ROUTINE_HOLDS:
                logger.debug(
                    "Automation skipped plant %s: %s", record.plant_id, decision.reason.value
                )
                self.stats.skipped_waterings += 1
            return None
        logger.info(
            "Automatic watering for plant %s: moisture %s%% below %s%%",
            record.plant_id,
            record.current_reading.moisture if record.current_reading else None,
            record.config.moisture_min,
        )
        return await self.coordinator.request_watering(
            record.plant_id,
            trigger=TriggerType.AUTOMATIC,
            reason=decision.reason.value,
        )

    async def tick(self, *, force: bool = False) -> TickResult:
        """Evaluate every plant once and request the waterings that are due.

        ``force`` runs the pass even when the scheduler is disabled.
        """
        if not (self.enabled or force):
            return TickResult(0, (), (), 0, 0)

        now = self.clock()
        records = self.registry.snapshots()
        skipped_before = self.stats.skipped_waterings
        results = await asyncio.gather(
            *(self._check_plant(r, now) for r in records), return_exceptions=True
        )

        watered: list[str] = []
        rejected: list[Rejection] = []
        errors = 0
        for record, result in zip(records, results, strict=True):
            if isinstance(result, BaseException):
                errors += 1
                logger.error(
                    "Automation failed for plant %s",
                    record.plant_id,
                    exc_info=(type(result), result, result.__traceback__),
                )
            elif isinstance(result, WateringTicket):
                watered.append(record.plant_id)
                self.stats.total_automatic_waterings += 1
                self.stats.last_automatic_watering = result.started_at
            elif isinstance(result, Rejection):
                rejected.append(result)
                self.stats.skipped_waterings += 1

        self.stats.errors += errors
        self.stats.ticks += 1
        self.stats.last_tick_at = now
        if watered or rejected or errors:
            logger.info(
                "Automation tick: %d plant(s), %d watered, %d rejected, %d error(s)",
                len(records),
                len(watered),
                len(rejected),
                errors,
            )
        return TickResult(
            evaluated=len(records),
            watered=tuple(watered),
            rejected=tuple(rejected),
            skipped=self.stats.skipped_waterings - skipped_before,
            errors=errors,
        )
