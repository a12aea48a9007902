"""
Watering coordinator: turns a watering request into at most one pump run.

Per plant the request moves through

    IDLE -> EVALUATING -> DISPATCHING -> RUNNING -> COMPLETING -> IDLE

or is rejected on the way. The registry's compare-and-set gate
(``begin_watering``) is claimed before anything else happens, so two
concurrent requests for the same plant can never both dispatch; the loser
gets ``already_watering`` straight away and the winner's state is left alone.
Requests are never queued and there is no global lock: registry locks are
only held inside the registry's own short critical sections, never across
evaluation or I/O.

Once the device acknowledges the start, the request returns a WateringTicket
and a background task waits for the pump to report ``stopped`` (or for the
run duration plus a grace period), then commits the watering.

Every terminal outcome is written to the time-series store as a
WateringEvent; a store failure never changes the outcome.

CHANGELOG:
- 2026-10-18: Distinguish ack timeouts from dispatch failures (STORY-010)
- 2026-10-18: Initial creation (STORY-010)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Callable
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from server.src.decision import DEFAULT_POLICY, DecisionPolicy, cooldown_remaining, evaluate
from server.src.dispatcher import CommandDispatcher, DispatchResult
from server.src.events import EventBus, EventType
from server.src.models import (
    DecisionReason,
    PlantRecord,
    Rejection,
    RejectionReason,
    TriggerType,
    WateringCommand,
    WateringEvent,
    WateringOutcome,
    WateringTicket,
)
from server.src.registry import PlantRegistry, RegistryInvariantError
from server.src.store import StoreWriter

logger = logging.getLogger(__name__)

MIN_DURATION_MS = 1_000
MAX_DURATION_MS = 30_000


class CoordinatorState(StrEnum):
    IDLE = "idle"
    EVALUATING = "evaluating"
    DISPATCHING = "dispatching"
    RUNNING = "running"
    COMPLETING = "completing"


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


def format_retry(seconds: float) -> str:
    """Render a wait as e.g. ``45s``, ``4m12s`` or ``1h05m``."""
    total = max(0, math.ceil(seconds))
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}h{minutes:02d}m"
    if minutes:
        return f"{minutes}m{secs}s"
    return f"{secs}s"


def _hold_message(record: PlantRecord, reason: DecisionReason, now: datetime) -> tuple[str, float | None]:
    config = record.config
    moisture = record.current_reading.moisture if record.current_reading else None
    if reason is DecisionReason.COOLDOWN:
        remaining = cooldown_remaining(record, now).total_seconds()
        return f"cooldown active, retry in {format_retry(remaining)}", remaining
    if reason is DecisionReason.DAILY_CAP:
        return f"daily limit of {config.max_daily_waterings} waterings reached", None
    if reason is DecisionReason.OFFLINE:
        return "device is offline", None
    if reason is DecisionReason.NO_READING:
        return "no recent moisture reading", None
    if reason is DecisionReason.FAULTED:
        return "plant is quarantined after a fault, clear it before watering", None
    if reason is DecisionReason.IN_FLIGHT:
        return "a watering is already in progress", None
    if reason is DecisionReason.QUIET_HOURS:
        qh = config.quiet_hours
        return f"quiet hours ({qh.start}-{qh.end})", None
    if reason is DecisionReason.MOISTURE_SUFFICIENT:
        return f"soil moisture {moisture:g}% is at or above {config.moisture_max:g}%", None
    return f"soil moisture {moisture:g}% is within range", None


class WateringCoordinator:
    """Owns the request lifecycle for every plant.

    Args:
        registry: Plant state and watering gate.
        dispatcher: Pump command channel.
        events: Event bus for ``watering_started`` / ``watering_ended``.
        writer: Fire-and-forget store writer for WateringEvents.
        policy: Decision-engine policy.
        ack_timeout_s: Time allowed for the pump to confirm a start.
        completion_grace_s: Extra wait for ``stopped`` beyond the run time.
        flow_rate_ml_s: Pump throughput for volume estimates.
        clock: Returns the current UTC time.
    """

    def __init__(
        self,
        registry: PlantRegistry,
        dispatcher: CommandDispatcher,
        *,
        events: EventBus | None = None,
        writer: StoreWriter | None = None,
        policy: DecisionPolicy = DEFAULT_POLICY,
        ack_timeout_s: float = 5.0,
        completion_grace_s: float = 5.0,
        flow_rate_ml_s: float = 5.0,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.registry = registry
        self.dispatcher = dispatcher
        self.events = events if events is not None else registry.events
        self.writer = writer
        self.policy = policy
        self.ack_timeout_s = ack_timeout_s
        self.completion_grace_s = completion_grace_s
        self.flow_rate_ml_s = flow_rate_ml_s
        self.clock = clock
        self._states: dict[str, CoordinatorState] = {}
        self._tasks: set[asyncio.Task[None]] = set()

    def state(self, plant_id: str) -> CoordinatorState:
        return self._states.get(plant_id, CoordinatorState.IDLE)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _record_event(
        self,
        record: PlantRecord,
        *,
        trigger: TriggerType,
        requested_at: datetime,
        duration_ms: int,
        outcome: WateringOutcome,
        reject_reason: RejectionReason | None = None,
        volume_estimate_ml: float | None = None,
        reason: str = "",
    ) -> WateringEvent:
        event = WateringEvent(
            plant_id=record.plant_id,
            device_id=record.device_id,
            trigger_type=trigger,
            requested_at=requested_at,
            recorded_at=self.clock(),
            duration_ms=duration_ms,
            outcome=outcome,
            reject_reason=reject_reason.value if reject_reason else None,
            volume_estimate_ml=volume_estimate_ml,
            reason=reason or None,
        )
        if self.writer is not None:
            self.writer.write_event(event)
        return event

    def _reject(
        self,
        record: PlantRecord,
        reason: RejectionReason,
        message: str,
        *,
        trigger: TriggerType,
        requested_at: datetime,
        duration_ms: int,
        outcome: WateringOutcome = WateringOutcome.REJECTED,
        retry_after_s: float | None = None,
    ) -> Rejection:
        self._record_event(
            record,
            trigger=trigger,
            requested_at=requested_at,
            duration_ms=duration_ms,
            outcome=outcome,
            reject_reason=reason,
        )
        self._states.pop(record.plant_id, None)
        logger.info(
            "Watering %s for plant %s rejected: %s (%s)",
            trigger.value,
            record.plant_id,
            reason.value,
            message,
        )
        return Rejection(
            plant_id=record.plant_id,
            reason=reason,
            message=message,
            retry_after_s=retry_after_s,
        )

    def _release(self, plant_id: str, outcome: WateringOutcome, **kwargs: Any) -> None:
        try:
            self.registry.end_watering(plant_id, outcome, self.clock(), **kwargs)
        except RegistryInvariantError:
            logger.error("Could not release watering gate for %s", plant_id, exc_info=True)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def request_watering(
        self,
        plant_id: str,
        duration_ms: int | None = None,
        *,
        trigger: TriggerType = TriggerType.MANUAL,
        reason: str = "",
    ) -> WateringTicket | Rejection:
        """Attempt one watering for *plant_id*.

        Args:
            plant_id: Target plant.
            duration_ms: Pump run time; the plant's configured duration when
                omitted. Must be within 1000-30000 ms.
            trigger: MANUAL bypasses quiet hours and moisture thresholds.
            reason: Free-text reason stored on the WateringEvents.

        Returns:
            A WateringTicket once the device has confirmed the pump started,
            otherwise a Rejection saying why nothing was (or may have been)
            done.
        """
        requested_at = self.clock()
        record = self.registry.snapshot(plant_id)
        if record is None:
            return Rejection(
                plant_id=plant_id,
                reason=RejectionReason.UNKNOWN_PLANT,
                message=f"plant {plant_id!r} is not registered",
            )

        duration = record.config.watering_duration_ms if duration_ms is None else duration_ms
        common: dict[str, Any] = {
            "trigger": trigger,
            "requested_at": requested_at,
            "duration_ms": duration,
        }
        if not (MIN_DURATION_MS <= duration <= MAX_DURATION_MS):
            return self._reject(
                record,
                RejectionReason.INVALID_DURATION,
                f"duration must be between {MIN_DURATION_MS} and {MAX_DURATION_MS} ms "
                f"(got {duration})",
                **common,
            )

        if not self.registry.begin_watering(plant_id, requested_at):
            # Another request owns the gate; leave its state alone.
            return Rejection(
                plant_id=plant_id,
                reason=RejectionReason.ALREADY_WATERING,
                message="a watering is already in progress",
            )

        self._states[plant_id] = CoordinatorState.EVALUATING
        claimed = self.registry.snapshot(plant_id) or record
        decision = evaluate(
            claimed, requested_at, trigger=trigger, policy=self.policy, skip_in_flight=True
        )
        if not decision.should_water:
            self._release(plant_id, WateringOutcome.REJECTED)
            message, retry_after = _hold_message(claimed, decision.reason, requested_at)
            return self._reject(
                claimed,
                RejectionReason(decision.reason.value),
                message,
                retry_after_s=retry_after,
                **common,
            )

        self._states[plant_id] = CoordinatorState.DISPATCHING
        try:
            result = await self.dispatcher.send(
                record.device_id,
                WateringCommand.start(duration),
                ack_timeout_s=self.ack_timeout_s,
            )
        except (Exception, asyncio.CancelledError):
            self._release(plant_id, WateringOutcome.REJECTED)
            self._states.pop(plant_id, None)
            raise

        if result is DispatchResult.ERROR:
            self._release(plant_id, WateringOutcome.REJECTED)
            return self._reject(
                claimed,
                RejectionReason.DISPATCH_FAILED,
                "could not send the command to the device",
                **common,
            )
        if result is DispatchResult.TIMEOUT:
            self._release(plant_id, WateringOutcome.TIMED_OUT)
            logger.warning(
                "Ack timeout: device %s did not confirm pump start for plant %s "
                "within %ss; pump state unknown",
                record.device_id,
                plant_id,
                self.ack_timeout_s,
            )
            self.events.publish(
                EventType.WATERING_ENDED,
                plant_id=plant_id,
                outcome=WateringOutcome.TIMED_OUT,
            )
            return self._reject(
                claimed,
                RejectionReason.ACK_TIMEOUT,
                f"device did not confirm the pump start within {self.ack_timeout_s:g}s",
                outcome=WateringOutcome.TIMED_OUT,
                **common,
            )

        started_at = self.clock()
        self._states[plant_id] = CoordinatorState.RUNNING
        self._record_event(
            claimed, outcome=WateringOutcome.STARTED, reason=reason or decision.reason.value, **common
        )
        self.events.publish(
            EventType.WATERING_STARTED,
            plant_id=plant_id,
            duration_ms=duration,
            trigger_type=trigger,
        )
        logger.info(
            "Watering started for plant %s (%s, %d ms)", plant_id, trigger.value, duration
        )
        ticket = WateringTicket(
            plant_id=plant_id,
            device_id=record.device_id,
            trigger_type=trigger,
            duration_ms=duration,
            requested_at=requested_at,
            started_at=started_at,
            reason=reason or decision.reason.value,
        )
        task = asyncio.get_running_loop().create_task(self._complete(claimed, ticket))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return ticket

    async def _complete(self, record: PlantRecord, ticket: WateringTicket) -> None:
        """Wait for the run to end, then commit the watering."""
        timeout = ticket.duration_ms / 1000 + self.completion_grace_s
        stopped = False
        try:
            stopped = await self.dispatcher.wait_for_completion(record.device_id, timeout)
        finally:
            self._states[ticket.plant_id] = CoordinatorState.COMPLETING
            if not stopped:
                logger.warning(
                    "No stopped status from %s within %ss, assuming run completed",
                    record.device_id,
                    timeout,
                )
            self._release(
                ticket.plant_id, WateringOutcome.ACKNOWLEDGED, started_at=ticket.started_at
            )
            volume = round(ticket.duration_ms / 1000 * self.flow_rate_ml_s, 1)
            self._record_event(
                record,
                trigger=ticket.trigger_type,
                requested_at=ticket.requested_at,
                duration_ms=ticket.duration_ms,
                outcome=WateringOutcome.ACKNOWLEDGED,
                volume_estimate_ml=volume,
                reason=ticket.reason,
            )
            self.events.publish(
                EventType.WATERING_ENDED,
                plant_id=ticket.plant_id,
                outcome=WateringOutcome.ACKNOWLEDGED,
            )
            self._states.pop(ticket.plant_id, None)
            logger.info(
                "Watering completed for plant %s (~%.1f ml)", ticket.plant_id, volume
            )

    @property
    def running(self) -> int:
        return len(self._tasks)

    async def wait_idle(self) -> None:
        """Wait for every running watering to complete."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        """Stop waiting on running pumps and commit them as completed."""
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
