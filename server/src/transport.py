"""
MQTT pub/sub transport.

The core only depends on the narrow ``Transport`` protocol (subscribe and
publish). ``MqttTransport`` implements it on paho-mqtt: paho's network loop
runs in its own thread and every inbound message is handed to the asyncio
event loop with ``asyncio.run_coroutine_threadsafe``, so handlers always run
on the loop thread.

Subscriptions are remembered and re-sent on every (re)connect. The server's
presence is published retained on ``server/status``; the same topic is the
MQTT last will, so the dashboard sees the server go offline even on a crash.

CHANGELOG:
- 2026-10-18: Publish retained server/status and register last will (STORY-012)
- 2026-10-18: Initial creation (STORY-012)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import threading
from collections.abc import Awaitable, Callable
from concurrent.futures import Future
from typing import Any, Protocol

import paho.mqtt.client as mqtt

logger = logging.getLogger(__name__)

MessageHandler = Callable[[str, bytes], Awaitable[None]]

SERVER_STATUS_TOPIC = "server/status"


class Transport(Protocol):
    """What the core needs from a pub/sub broker connection."""

    def subscribe(self, topic_pattern: str, handler: MessageHandler, qos: int = 1) -> None:
        ...

    def publish(
        self, topic: str, payload: Any, qos: int = 1, retain: bool = False
    ) -> bool:
        ...


def encode_payload(payload: Any) -> bytes:
    """Encode dicts/models as JSON; pass bytes through; encode str as UTF-8."""
    if isinstance(payload, bytes):
        return payload
    if isinstance(payload, str):
        return payload.encode("utf-8")
    if hasattr(payload, "model_dump_json"):
        return payload.model_dump_json().encode("utf-8")
    return json.dumps(payload).encode("utf-8")


def _status_payload(status: str) -> bytes:
    return json.dumps({"status": status, "client": "planetplant-server"}).encode("utf-8")


class MqttTransport:
    """paho-mqtt backed Transport bridging into an asyncio loop.

    Args:
        host: Broker hostname.
        port: Broker port.
        client_id: MQTT client identifier.
        username: Optional broker username.
        password: Optional broker password.
        keepalive_s: MQTT keepalive interval.
    """

    def __init__(
        self,
        host: str,
        port: int = 1883,
        *,
        client_id: str = "planetplant-server",
        username: str = "",
        password: str = "",
        keepalive_s: int = 60,
    ) -> None:
        self.host = host
        self.port = port
        self.keepalive_s = keepalive_s
        self._subscriptions: list[tuple[str, MessageHandler, int]] = []
        self._sub_lock = threading.Lock()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._connected = threading.Event()

        self.client = mqtt.Client(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=client_id,
            protocol=mqtt.MQTTv311,
        )
        if username:
            self.client.username_pw_set(username, password or None)
        self.client.will_set(
            SERVER_STATUS_TOPIC, _status_payload("offline"), qos=1, retain=True
        )
        self.client.reconnect_delay_set(min_delay=1, max_delay=30)
        self.client.on_connect = self._on_connect
        self.client.on_disconnect = self._on_disconnect
        self.client.on_message = self._on_message

    @property
    def connected(self) -> bool:
        return self._connected.is_set()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, *, connect_timeout_s: float = 10.0) -> bool:
        """Connect in the background and start paho's network thread.

        Waits up to *connect_timeout_s* for the first connection. A broker
        that is not reachable yet is logged, not raised: paho keeps retrying
        and subscriptions are sent once it connects.

        Returns:
            True if connected within the timeout.
        """
        self._loop = asyncio.get_running_loop()
        logger.info("Connecting to MQTT broker %s:%s", self.host, self.port)
        self.client.connect_async(self.host, self.port, keepalive=self.keepalive_s)
        self.client.loop_start()
        connected = await asyncio.to_thread(self._connected.wait, connect_timeout_s)
        if not connected:
            logger.warning(
                "MQTT broker %s:%s not reachable after %ss, retrying in background",
                self.host,
                self.port,
                connect_timeout_s,
            )
        return connected

    async def stop(self) -> None:
        """Announce offline status, disconnect and stop the network thread."""
        if self.connected:
            info = self.client.publish(
                SERVER_STATUS_TOPIC, _status_payload("offline"), qos=1, retain=True
            )
            with contextlib.suppress(Exception):
                await asyncio.to_thread(info.wait_for_publish, 2.0)
        self.client.disconnect()
        self.client.loop_stop()
        self._connected.clear()
        logger.info("Disconnected from MQTT broker")

    # ------------------------------------------------------------------
    # Transport protocol
    # ------------------------------------------------------------------

    def subscribe(self, topic_pattern: str, handler: MessageHandler, qos: int = 1) -> None:
        with self._sub_lock:
            self._subscriptions.append((topic_pattern, handler, qos))
        if self.connected:
            self.client.subscribe(topic_pattern, qos=qos)
        logger.info("Subscribed to %s", topic_pattern)

    def publish(
        self, topic: str, payload: Any, qos: int = 1, retain: bool = False
    ) -> bool:
        """Publish once. Returns False if paho could not queue the message."""
        try:
            info = self.client.publish(topic, encode_payload(payload), qos=qos, retain=retain)
        except Exception:
            logger.error("MQTT publish to %s raised", topic, exc_info=True)
            return False
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            logger.error(
                "MQTT publish to %s failed: %s", topic, mqtt.error_string(info.rc)
            )
            return False
        logger.debug("Published to %s", topic)
        return True

    # ------------------------------------------------------------------
    # paho callbacks (network thread)
    # ------------------------------------------------------------------

    def _on_connect(self, client, userdata, flags, reason_code, properties) -> None:
        if reason_code.is_failure:
            logger.error("MQTT connection refused: %s", reason_code)
            return
        with self._sub_lock:
            subscriptions = list(self._subscriptions)
        for topic_pattern, _, qos in subscriptions:
            client.subscribe(topic_pattern, qos=qos)
        client.publish(SERVER_STATUS_TOPIC, _status_payload("online"), qos=1, retain=True)
        self._connected.set()
        logger.info(
            "Connected to MQTT broker %s:%s (%d subscription(s))",
            self.host,
            self.port,
            len(subscriptions),
        )

    def _on_disconnect(self, client, userdata, flags, reason_code, properties) -> None:
        self._connected.clear()
        if reason_code.is_failure:
            logger.warning("Unexpected MQTT disconnect: %s", reason_code)

    def _on_message(self, client, userdata, msg: mqtt.MQTTMessage) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        with self._sub_lock:
            handlers = [
                h for pattern, h, _ in self._subscriptions
                if mqtt.topic_matches_sub(pattern, msg.topic)
            ]
        for handler in handlers:
            future = asyncio.run_coroutine_threadsafe(
                handler(msg.topic, msg.payload), loop
            )
            future.add_done_callback(self._log_handler_failure(msg.topic))

    @staticmethod
    def _log_handler_failure(topic: str) -> Callable[[Future], None]:
        def _done(future: Future) -> None:
            if future.cancelled():
                return
            exc = future.exception()
            if exc is not None:
                logger.error(
                    "Handler for %s failed", topic, exc_info=(type(exc), exc, exc.__traceback__)
                )

        return _done
