"""
Automation status and manual trigger endpoints.

CHANGELOG:
- 2026-10-18: Trigger passes force instead of toggling the shared flag (STORY-020)
- 2026-10-18: Initial creation (STORY-018)

TODO:
- None
"""

import logging
from typing import Any

from fastapi import APIRouter

from server.src.api.deps import OperatorDep, RuntimeDep

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/system", tags=["system"])


@router.get("/automation")
async def automation_status(runtime: RuntimeDep) -> dict[str, Any]:
    automation = runtime.automation
    return {
        "enabled": automation.enabled,
        "interval_s": runtime.settings.automation_interval_s,
        "running_waterings": runtime.coordinator.running,
        "stats": automation.stats.to_dict(),
    }


@router.post("/automation/trigger")
async def trigger_automation(runtime: RuntimeDep, operator: OperatorDep) -> dict[str, Any]:
    """Run one automation tick now, even if the scheduler is disabled."""
    logger.info("Automation tick triggered by %s", operator)
    result = await runtime.automation.tick(force=True)
    return {
        "evaluated": result.evaluated,
        "watered": list(result.watered),
        "rejected": [r.model_dump(mode="json") for r in result.rejected],
        "skipped": result.skipped,
        "errors": result.errors,
    }
