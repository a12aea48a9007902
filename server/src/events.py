"""
In-process event stream for plant state changes.

Components publish events (plant updates, watering start/end, discovery);
observers such as the WebSocket fan-out subscribe to them. Publishing is
synchronous and cheap: subscribers must not block, and a subscriber that
raises is logged and skipped so one bad observer never affects the others
or the publisher.

Subscribers always receive a plain, JSON-serialisable dict payload.

CHANGELOG:
- 2026-10-18: Initial creation (STORY-008)

TODO:
- None
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from collections.abc import Callable
from enum import StrEnum
from typing import Any

from pydantic import BaseModel

logger = logging.getLogger(__name__)

Subscriber = Callable[[str, dict[str, Any]], None]


class EventType(StrEnum):
    PLANT_UPDATED = "plant_updated"
    WATERING_STARTED = "watering_started"
    WATERING_ENDED = "watering_ended"
    DEVICE_DISCOVERED = "device_discovered"


WILDCARD = "*"


def _to_payload(data: dict[str, Any]) -> dict[str, Any]:
    payload: dict[str, Any] = {}
    for key, value in data.items():
        if isinstance(value, BaseModel):
            payload[key] = value.model_dump(mode="json")
        elif isinstance(value, StrEnum):
            payload[key] = value.value
        else:
            payload[key] = value
    return payload


class EventBus:
    """Synchronous publish/subscribe fan-out.

    ``subscribe`` returns an unsubscribe callable. Subscribing to ``"*"``
    receives every event type.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, list[Subscriber]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(
        self, event_type: EventType | str, callback: Subscriber
    ) -> Callable[[], None]:
        name = str(event_type)
        with self._lock:
            self._subscribers[name].append(callback)

        def unsubscribe() -> None:
            with self._lock:
                callbacks = self._subscribers.get(name, [])
                if callback in callbacks:
                    callbacks.remove(callback)

        return unsubscribe

    def publish(self, event_type: EventType, **data: Any) -> None:
        """Deliver *data* to every subscriber of *event_type*.

        Pydantic models in *data* are dumped to JSON-compatible dicts.
        """
        name = str(event_type)
        payload = _to_payload(data)
        with self._lock:
            callbacks = list(self._subscribers.get(name, ())) + list(
                self._subscribers.get(WILDCARD, ())
            )
        for callback in callbacks:
            try:
                callback(name, payload)
            except Exception:
                logger.error("Event subscriber failed for %s", name, exc_info=True)

    def subscriber_count(self) -> int:
        with self._lock:
            return sum(len(v) for v in self._subscribers.values())
