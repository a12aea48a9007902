"""
Health check endpoint for the server API.

Provides GET /health with HTTP 200 and a few liveness facts. No
authentication is required; this is intended for container HEALTHCHECK and
internal monitoring only.

CHANGELOG:
- 2026-10-18: Initial creation (STORY-018)

TODO:
- None
"""

from typing import Any

from fastapi import APIRouter

from server.src.api.deps import RuntimeDep

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(runtime: RuntimeDep) -> dict[str, Any]:
    """Return service status, plant count and broker connectivity."""
    return {
        "status": "ok",
        "plants": len(runtime.registry),
        "mqtt_connected": getattr(runtime.transport, "connected", None),
    }
