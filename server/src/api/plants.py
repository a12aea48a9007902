"""
Plant endpoints: state, history, watering and configuration.

Read endpoints are open to the dashboard. Watering, config changes and
fault clearing require an operator Bearer token.

Watering rejections are mapped to HTTP status codes; the response detail is
the Rejection itself (machine-readable ``reason``, human-readable
``message``, optional ``retry_after_s``).

CHANGELOG:
- 2026-10-18: Add fault clearing endpoint (STORY-018)
- 2026-10-18: Initial creation (STORY-018)

TODO:
- None
"""

import logging
import re
from datetime import timedelta
from typing import Annotated, Any

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, Field, ValidationError

from server.src.api.deps import OperatorDep, RuntimeDep
from server.src.models import PlantRecord, Rejection, RejectionReason, TriggerType
from server.src.registry import UnknownPlantError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/plants", tags=["plants"])

_WINDOW_RE = re.compile(r"^(\d+)([mhd])$")
_WINDOW_UNITS = {"m": "minutes", "h": "hours", "d": "days"}
MAX_WINDOW = timedelta(days=30)

_REJECTION_STATUS: dict[RejectionReason, int] = {
    RejectionReason.UNKNOWN_PLANT: 404,
    RejectionReason.INVALID_DURATION: 422,
    RejectionReason.DISPATCH_FAILED: 503,
    RejectionReason.ACK_TIMEOUT: 504,
}


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class WaterRequest(BaseModel):
    """Body of POST /api/plants/{plant_id}/water."""

    duration_ms: int = 5000
    reason: str = Field(default="manual", max_length=255)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def rejection_status(reason: RejectionReason) -> int:
    """HTTP status for a watering rejection (409 for policy holds)."""
    return _REJECTION_STATUS.get(reason, 409)


def parse_window(value: str) -> timedelta:
    """Parse ``30m`` / ``24h`` / ``7d`` into a timedelta (max 30 days).

    Raises:
        ValueError: If the format is wrong or the window is out of range.
    """
    match = _WINDOW_RE.match(value.strip())
    if match is None:
        raise ValueError(f"invalid window {value!r}, expected e.g. 30m, 24h or 7d")
    amount, unit = int(match.group(1)), match.group(2)
    window = timedelta(**{_WINDOW_UNITS[unit]: amount})
    if window <= timedelta(0) or window > MAX_WINDOW:
        raise ValueError("window must be between 1m and 30d")
    return window


def plant_view(record: PlantRecord) -> dict[str, Any]:
    return record.model_dump(mode="json")


def _require_plant(runtime: RuntimeDep, plant_id: str) -> PlantRecord:
    record = runtime.registry.snapshot(plant_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Plant '{plant_id}' not found.")
    return record


# ---------------------------------------------------------------------------
# Read routes
# ---------------------------------------------------------------------------


@router.get("")
async def list_plants(runtime: RuntimeDep) -> list[dict[str, Any]]:
    return [plant_view(r) for r in sorted(runtime.registry.snapshots(), key=lambda r: r.plant_id)]


@router.get("/summary")
async def plants_summary(runtime: RuntimeDep) -> dict[str, int]:
    """Return fleet counts for the dashboard header."""
    records = runtime.registry.snapshots()
    needs_water = 0
    for r in records:
        moisture = r.current_reading.moisture if r.current_reading else None
        if moisture is not None and moisture < r.config.moisture_min:
            needs_water += 1
    return {
        "total": len(records),
        "online": sum(1 for r in records if r.status.online),
        "offline": sum(1 for r in records if not r.status.online),
        "needs_water": needs_water,
        "watering": sum(1 for r in records if r.watering_state.in_flight),
        "faulted": sum(1 for r in records if r.faulted),
    }


@router.get("/{plant_id}")
async def get_plant(plant_id: str, runtime: RuntimeDep) -> dict[str, Any]:
    return plant_view(_require_plant(runtime, plant_id))


@router.get("/{plant_id}/history")
async def get_history(
    plant_id: str,
    runtime: RuntimeDep,
    window: Annotated[str, Query(description="Window such as 30m, 24h or 7d.")] = "24h",
) -> dict[str, Any]:
    """Return sensor series and waterings of a plant within *window*.

    Raises:
        HTTPException: 404 for an unknown plant, 422 for a bad window.
    """
    try:
        span = parse_window(window)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    try:
        history = await runtime.history(plant_id, span)
    except UnknownPlantError as exc:
        raise HTTPException(status_code=404, detail=f"Plant '{plant_id}' not found.") from exc
    return history.model_dump(mode="json")


@router.get("/{plant_id}/watering")
async def get_watering_events(
    plant_id: str,
    runtime: RuntimeDep,
    limit: Annotated[int, Query(ge=1, le=500)] = 50,
) -> list[dict[str, Any]]:
    _require_plant(runtime, plant_id)
    events = await runtime.store.query_watering_events(plant_id, limit=limit)
    return [e.model_dump(mode="json") for e in events]


# ---------------------------------------------------------------------------
# Mutating routes
# ---------------------------------------------------------------------------


@router.post("/{plant_id}/water")
async def water_plant(
    plant_id: str,
    body: WaterRequest,
    runtime: RuntimeDep,
    operator: OperatorDep,
) -> dict[str, Any]:
    """Request a manual watering.

    Returns the WateringTicket once the device confirmed the pump start.

    Raises:
        HTTPException: With the Rejection as detail; 404 unknown plant,
            422 invalid duration, 409 policy hold, 503 dispatch failure,
            504 acknowledgement timeout.
    """
    logger.info("Manual watering of %s requested by %s", plant_id, operator)
    result = await runtime.coordinator.request_watering(
        plant_id,
        body.duration_ms,
        trigger=TriggerType.MANUAL,
        reason=body.reason,
    )
    if isinstance(result, Rejection):
        raise HTTPException(
            status_code=rejection_status(result.reason),
            detail=result.model_dump(mode="json"),
        )
    return result.model_dump(mode="json")


@router.put("/{plant_id}/config")
async def update_config(
    plant_id: str,
    changes: dict[str, Any],
    runtime: RuntimeDep,
    operator: OperatorDep,
) -> dict[str, Any]:
    """Apply a partial config update and return the new config.

    Raises:
        HTTPException: 404 unknown plant, 422 if the merged config is invalid.
    """
    try:
        record = await runtime.update_plant_config(plant_id, changes)
    except UnknownPlantError as exc:
        raise HTTPException(status_code=404, detail=f"Plant '{plant_id}' not found.") from exc
    except ValidationError as exc:
        raise HTTPException(
            status_code=422, detail=exc.errors(include_url=False, include_context=False)
        ) from exc
    logger.info(
        "Config of %s updated to v%d by %s", plant_id, record.config.version, operator
    )
    return record.config.model_dump(mode="json")


@router.post("/{plant_id}/fault/clear")
async def clear_fault(
    plant_id: str,
    runtime: RuntimeDep,
    operator: OperatorDep,
) -> dict[str, Any]:
    _require_plant(runtime, plant_id)
    record = runtime.registry.clear_fault(plant_id)
    logger.info("Fault of %s cleared by %s", plant_id, operator)
    return plant_view(record)
