"""
WebSocket endpoint streaming plant events to the dashboard.

On connect the client receives ``connection_established`` followed by
``plants_data`` (every plant's current record). After that every event from
the in-process event bus is forwarded as ``{"type": <event>, "data": {...}}``.

Clients may send ``{"type": "request_watering", "plant_id": ...,
"duration_ms": ..., "reason": ...}``; the answer is a ``watering_response``
carrying either the ticket or the rejection. Watering over the socket needs
an operator token passed as the ``token`` query parameter.

CHANGELOG:
- 2026-10-18: Initial creation (STORY-019)

TODO:
- None
"""

import asyncio
import json
import logging
from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from server.src.events import WILDCARD
from server.src.models import Rejection, TriggerType
from server.src.runtime import ServerRuntime

logger = logging.getLogger(__name__)

router = APIRouter(tags=["realtime"])

QUEUE_SIZE = 256


def _message(kind: str, data: Any) -> dict[str, Any]:
    return {"type": kind, "data": data, "ts": datetime.now(tz=UTC).isoformat()}


async def _forward(websocket: WebSocket, queue: asyncio.Queue[dict[str, Any]]) -> None:
    while True:
        await websocket.send_json(await queue.get())


async def _handle_request(
    runtime: ServerRuntime, message: dict[str, Any], operator: str | None
) -> dict[str, Any]:
    plant_id = message.get("plant_id")
    if operator is None:
        return _message("watering_response", {"plant_id": plant_id, "error": "unauthorized"})
    if not isinstance(plant_id, str):
        return _message("watering_response", {"plant_id": None, "error": "plant_id is required"})
    duration = message.get("duration_ms", 5000)
    if isinstance(duration, bool) or not isinstance(duration, int):
        return _message(
            "watering_response", {"plant_id": plant_id, "error": "duration_ms must be an integer"}
        )
    reason = str(message.get("reason", "manual"))[:255]
    logger.info("Manual watering of %s requested over websocket by %s", plant_id, operator)
    result = await runtime.coordinator.request_watering(
        plant_id, duration, trigger=TriggerType.MANUAL, reason=reason
    )
    return _message(
        "watering_response",
        {
            "plant_id": plant_id,
            "accepted": not isinstance(result, Rejection),
            "result": result.model_dump(mode="json"),
        },
    )


@router.websocket("/ws")
async def realtime(websocket: WebSocket) -> None:
    runtime: ServerRuntime = websocket.app.state.runtime
    operator = websocket.app.state.auth.operator_for(websocket.query_params.get("token"))

    await websocket.accept()
    queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=QUEUE_SIZE)

    def _on_event(event: str, payload: dict[str, Any]) -> None:
        try:
            queue.put_nowait(_message(event, payload))
        except asyncio.QueueFull:
            logger.warning("Websocket client too slow, dropping %s event", event)

    unsubscribe = runtime.events.subscribe(WILDCARD, _on_event)
    forwarder: asyncio.Task[None] | None = None
    try:
        await websocket.send_json(
            _message(
                "connection_established",
                {"plants": len(runtime.registry), "authenticated": operator is not None},
            )
        )
        await websocket.send_json(
            _message(
                "plants_data",
                [r.model_dump(mode="json") for r in runtime.registry.snapshots()],
            )
        )
        forwarder = asyncio.create_task(_forward(websocket, queue))
        while True:
            text = await websocket.receive_text()
            try:
                message = json.loads(text)
            except ValueError:
                logger.debug("Ignoring non-JSON websocket message")
                continue
            if isinstance(message, dict) and message.get("type") == "request_watering":
                await queue.put(await _handle_request(runtime, message, operator))
            elif isinstance(message, dict) and message.get("type") == "get_plants":
                await queue.put(
                    _message(
                        "plants_data",
                        [r.model_dump(mode="json") for r in runtime.registry.snapshots()],
                    )
                )
            else:
                logger.debug("Ignoring websocket message %r", message)
    except WebSocketDisconnect:
        logger.debug("Websocket client disconnected")
    finally:
        unsubscribe()
        if forwarder is not None:
            forwarder.cancel()
            await asyncio.gather(forwarder, return_exceptions=True)
