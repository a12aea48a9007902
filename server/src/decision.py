"""
Watering decision engine.

Pure function from a PlantRecord snapshot and the current time to a
WateringDecision. Rules are checked in a fixed order and the first match
wins:

    0. hold  faulted              plant quarantined after an invariant error
    1. hold  offline
    2. hold  no_reading           no moisture value, or it is too old
    3. hold  in_flight            (skipped by the coordinator, which holds
                                   the gate itself)
    4. hold  cooldown             now - last_watering_ended_at < cooldown
    5. hold  daily_cap            waterings_today >= max_daily_waterings
    6. hold  quiet_hours
    7. hold  moisture_sufficient  moisture >= moisture_max
    8. water moisture_low         moisture < moisture_min
    9. hold  moisture_in_range

Manual requests bypass rules 6-9: once 0-5 pass they always water.

CHANGELOG:
- 2026-10-18: Add faulted rule ahead of the policy checks (STORY-006)
- 2026-10-18: Initial creation (STORY-007)

TODO:
- None
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta, tzinfo

from server.src.models import (
    DecisionReason,
    PlantRecord,
    SensorType,
    TriggerType,
    WateringAction,
    WateringDecision,
)


@dataclass(frozen=True)
class DecisionPolicy:
    """Process-wide knobs for the decision engine.

    Attributes:
        reading_stale_after: Moisture older than this is treated as missing.
        timezone: Zone in which quiet hours are read.
    """

    reading_stale_after: timedelta = timedelta(minutes=15)
    timezone: tzinfo = field(default=UTC)


DEFAULT_POLICY = DecisionPolicy()


def cooldown_remaining(record: PlantRecord, now: datetime) -> timedelta:
    """Return how long the plant's cooldown still runs (zero if none)."""
    ended = record.watering_state.last_watering_ended_at
    if ended is None:
        return timedelta(0)
    remaining = timedelta(milliseconds=record.config.cooldown_ms) - (now - ended)
    return max(remaining, timedelta(0))


def waterings_today(record: PlantRecord, now: datetime) -> int:
    """Return the daily count as of *now*, applying the UTC day roll-over."""
    state = record.watering_state
    if state.reset_date != now.astimezone(UTC).date():
        return 0
    return state.waterings_today


def _moisture_is_fresh(record: PlantRecord, now: datetime, policy: DecisionPolicy) -> bool:
    reading = record.current_reading
    if reading is None or reading.moisture is None:
        return False
    observed = reading.observed_at_for(SensorType.MOISTURE) or reading.observed_at
    return now - observed <= policy.reading_stale_after


def evaluate(
    record: PlantRecord,
    now: datetime,
    *,
    trigger: TriggerType = TriggerType.AUTOMATIC,
    policy: DecisionPolicy = DEFAULT_POLICY,
    skip_in_flight: bool = False,
) -> WateringDecision:
    """Decide whether *record*'s plant should be watered at *now*.

    Args:
        record: Immutable plant snapshot.
        now: Evaluation time (timezone aware).
        trigger: MANUAL requests stop after the daily-cap rule.
        policy: Staleness threshold and quiet-hours timezone.
        skip_in_flight: Skip the in-flight rule. Used by the coordinator,
            which evaluates after it has claimed the gate itself; the slot
            that claim added to today's count is not held against it.

    Returns:
        A WateringDecision carrying the first matching rule's reason.
    """

    def decide(action: WateringAction, reason: DecisionReason) -> WateringDecision:
        return WateringDecision(
            plant_id=record.plant_id, action=action, reason=reason, evaluated_at=now
        )

    def hold(reason: DecisionReason) -> WateringDecision:
        return decide(WateringAction.HOLD, reason)

    config = record.config
    state = record.watering_state

    if record.faulted:
        return hold(DecisionReason.FAULTED)
    if not record.status.online:
        return hold(DecisionReason.OFFLINE)
    if not _moisture_is_fresh(record, now, policy):
        return hold(DecisionReason.NO_READING)
    if state.in_flight and not skip_in_flight:
        return hold(DecisionReason.IN_FLIGHT)
    if cooldown_remaining(record, now) > timedelta(0):
        return hold(DecisionReason.COOLDOWN)
    count = waterings_today(record, now)
    if skip_in_flight and state.in_flight and count > 0:
        # the caller's own claim is already counted
        count -= 1
    if count >= config.max_daily_waterings:
        return hold(DecisionReason.DAILY_CAP)

    if trigger is TriggerType.MANUAL:
        return decide(WateringAction.WATER, DecisionReason.MANUAL_REQUEST)

    local = now.astimezone(policy.timezone).timetz()
    if config.quiet_hours.contains(local):
        return hold(DecisionReason.QUIET_HOURS)

    moisture = record.current_reading.moisture  # type: ignore[union-attr]
    if moisture >= config.moisture_max:
        return hold(DecisionReason.MOISTURE_SUFFICIENT)
    if moisture < config.moisture_min:
        return decide(WateringAction.WATER, DecisionReason.MOISTURE_LOW)
    return hold(DecisionReason.MOISTURE_IN_RANGE)
