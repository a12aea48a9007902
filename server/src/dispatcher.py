"""
Command dispatcher: sends pump commands and matches device acknowledgements.

A watering command is published exactly once to ``commands/{device_id}/water``.
The pump node confirms on ``sensors/{device_id}/pump`` with
``{"action": "started"}`` when the relay closes and ``{"action": "stopped"}``
when it opens again. ``send`` waits for the first; ``wait_for_completion``
for the second.

Waiters are registered before the command is published, so a fast device
reply can never be missed. The dispatcher never retries: a publish failure or
a missing acknowledgement is reported to the caller, which decides what the
outcome means.

CHANGELOG:
- 2026-10-18: Add config command publishing (STORY-015)
- 2026-10-18: Initial creation (STORY-009)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from enum import StrEnum
from typing import Any

from server.src.models import PlantConfig, WateringCommand
from server.src.transport import Transport

logger = logging.getLogger(__name__)


class DispatchResult(StrEnum):
    ACK = "ack"
    TIMEOUT = "timeout"
    ERROR = "error"


def water_topic(device_id: str) -> str:
    return f"commands/{device_id}/water"


def config_topic(device_id: str) -> str:
    return f"commands/{device_id}/config"


class CommandDispatcher:
    """Publishes pump commands and correlates the device's pump status.

    At most one command per device is outstanding: the coordinator's watering
    gate guarantees that, so waiters are keyed by device_id.

    Args:
        transport: Pub/sub transport used to publish commands.
        ack_timeout_s: Default time to wait for the ``started`` status.
    """

    def __init__(self, transport: Transport, *, ack_timeout_s: float = 5.0) -> None:
        self.transport = transport
        self.ack_timeout_s = ack_timeout_s
        self._acks: dict[str, asyncio.Future[None]] = {}
        self._completions: dict[str, asyncio.Future[None]] = {}

    def _clear(self, device_id: str) -> None:
        for waiters in (self._acks, self._completions):
            fut = waiters.pop(device_id, None)
            if fut is not None and not fut.done():
                fut.cancel()

    async def send(
        self,
        device_id: str,
        command: WateringCommand,
        *,
        ack_timeout_s: float | None = None,
    ) -> DispatchResult:
        """Publish *command* once and wait for the device to confirm it.

        Args:
            device_id: Target pump node.
            command: Command payload.
            ack_timeout_s: Override of the default acknowledgement timeout.

        Returns:
            ACK if the device reported ``started`` in time, TIMEOUT if it did
            not, ERROR if the transport refused the publish.
        """
        loop = asyncio.get_running_loop()
        self._clear(device_id)
        ack: asyncio.Future[None] = loop.create_future()
        self._acks[device_id] = ack
        self._completions[device_id] = loop.create_future()

        topic = water_topic(device_id)
        try:
            published = self.transport.publish(topic, command.model_dump(), qos=1)
        except Exception:
            logger.error("Publishing %s raised", topic, exc_info=True)
            published = False
        if not published:
            self._clear(device_id)
            return DispatchResult.ERROR

        timeout = self.ack_timeout_s if ack_timeout_s is None else ack_timeout_s
        try:
            await asyncio.wait_for(ack, timeout=timeout)
        except TimeoutError:
            self._clear(device_id)
            return DispatchResult.TIMEOUT
        finally:
            if self._acks.get(device_id) is ack:
                del self._acks[device_id]
        return DispatchResult.ACK

    async def wait_for_completion(self, device_id: str, timeout_s: float) -> bool:
        """Wait for the device's ``stopped`` status after an acknowledged start.

        Returns:
            True if the device reported ``stopped`` within *timeout_s*.
        """
        fut = self._completions.get(device_id)
        if fut is None:
            return False
        try:
            await asyncio.wait_for(asyncio.shield(fut), timeout=timeout_s)
            return True
        except TimeoutError:
            return False
        finally:
            if self._completions.get(device_id) is fut:
                del self._completions[device_id]
                if not fut.done():
                    fut.cancel()

    def handle_pump_status(self, device_id: str, payload: Mapping[str, Any]) -> None:
        """Resolve waiters from a ``sensors/{device_id}/pump`` message."""
        action = payload.get("action")
        if action == "started":
            waiters = self._acks
        elif action == "stopped":
            waiters = self._completions
        else:
            logger.warning("Unknown pump status %r from %s", action, device_id)
            return

        fut = waiters.get(device_id)
        if fut is None or fut.done():
            logger.info("Unsolicited pump status %r from %s", action, device_id)
            return
        fut.set_result(None)

    def publish_config(self, device_id: str, config: PlantConfig) -> bool:
        """Push the plant's thresholds to its node on ``commands/{id}/config``."""
        return self.transport.publish(
            config_topic(device_id), config.model_dump(mode="json"), qos=1
        )
