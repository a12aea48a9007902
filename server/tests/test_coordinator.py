"""
Tests for WateringCoordinator: gate exclusivity, acknowledgement handling,
policy rejections and completion bookkeeping.

CHANGELOG:
- 2026-10-18: Daily cap of three with a timed-out attempt (STORY-020)
- 2026-10-18: Add ack timeout and daily cap rollback tests (STORY-010)
- 2026-10-18: Initial creation (STORY-010)

TODO:
- None
"""

from __future__ import annotations

import asyncio

import pytest
from conftest import FakeClock, FakeTransport, auto_ack, make_ready_plant

from server.src.coordinator import CoordinatorState, format_retry
from server.src.events import EventType
from server.src.models import (
    PlantConfig,
    Rejection,
    RejectionReason,
    TriggerType,
    WateringOutcome,
    WateringTicket,
)
from server.src.registry import RegistryInvariantError
from server.src.runtime import ServerRuntime


async def _events(runtime: ServerRuntime, plant_id: str = "p1") -> list:
    await runtime.writer.drain()
    return await runtime.store.query_watering_events(plant_id)


class TestFormatRetry:
    @pytest.mark.parametrize(
        ("seconds", "text"),
        [(0, "0s"), (45, "45s"), (252, "4m12s"), (299.2, "5m0s"), (3900, "1h05m")],
    )
    def test_format(self, seconds: float, text: str) -> None:
        assert format_retry(seconds) == text


class TestHappyPath:
    @pytest.mark.asyncio
    async def test_ack_returns_ticket_and_completes(
        self, runtime: ServerRuntime, transport: FakeTransport, clock: FakeClock
    ) -> None:
        make_ready_plant(runtime, clock)
        auto_ack(transport, runtime, stop=True)
        names: list[str] = []
        runtime.events.subscribe(EventType.WATERING_STARTED, lambda n, _p: names.append(n))
        runtime.events.subscribe(EventType.WATERING_ENDED, lambda n, _p: names.append(n))

        result = await runtime.coordinator.request_watering("p1", 5000, reason="looks dry")

        assert isinstance(result, WateringTicket)
        assert result.duration_ms == 5000
        assert result.trigger_type is TriggerType.MANUAL
        assert transport.published == [
            ("commands/esp32-01/water", {"action": "start", "duration_ms": 5000})
        ]
        await runtime.coordinator.wait_idle()

        state = runtime.registry.snapshot("p1").watering_state
        assert not state.in_flight
        assert state.last_watering_ended_at == clock()
        assert state.waterings_today == 1
        assert state.last_outcome is WateringOutcome.ACKNOWLEDGED
        assert runtime.coordinator.state("p1") is CoordinatorState.IDLE
        assert names == ["watering_started", "watering_ended"]

        events = await _events(runtime)
        assert {e.outcome for e in events} == {
            WateringOutcome.STARTED,
            WateringOutcome.ACKNOWLEDGED,
        }
        done = next(e for e in events if e.outcome is WateringOutcome.ACKNOWLEDGED)
        assert done.volume_estimate_ml == 25.0
        assert done.reason == "looks dry"

    @pytest.mark.asyncio
    async def test_default_duration_from_config(
        self, runtime: ServerRuntime, transport: FakeTransport, clock: FakeClock
    ) -> None:
        make_ready_plant(runtime, clock, config=PlantConfig(watering_duration_ms=7000))
        auto_ack(transport, runtime, stop=True)
        ticket = await runtime.coordinator.request_watering("p1")
        assert ticket.duration_ms == 7000
        await runtime.coordinator.wait_idle()

    @pytest.mark.asyncio
    async def test_running_until_stopped(
        self, runtime: ServerRuntime, transport: FakeTransport, clock: FakeClock
    ) -> None:
        make_ready_plant(runtime, clock)
        auto_ack(transport, runtime)
        await runtime.coordinator.request_watering("p1", 5000)
        assert runtime.coordinator.state("p1") is CoordinatorState.RUNNING
        assert runtime.coordinator.running == 1
        assert runtime.registry.snapshot("p1").watering_state.in_flight

        runtime.dispatcher.handle_pump_status("esp32-01", {"action": "stopped"})
        await runtime.coordinator.wait_idle()
        assert not runtime.registry.snapshot("p1").watering_state.in_flight

    @pytest.mark.asyncio
    async def test_missing_stop_still_commits(
        self, runtime: ServerRuntime, transport: FakeTransport, clock: FakeClock
    ) -> None:
        make_ready_plant(runtime, clock)
        auto_ack(transport, runtime)
        await runtime.coordinator.request_watering("p1", 1000)
        await runtime.coordinator.wait_idle()
        state = runtime.registry.snapshot("p1").watering_state
        assert state.last_outcome is WateringOutcome.ACKNOWLEDGED
        assert state.waterings_today == 1

    @pytest.mark.asyncio
    async def test_aclose_commits_running_watering(
        self, runtime: ServerRuntime, transport: FakeTransport, clock: FakeClock
    ) -> None:
        make_ready_plant(runtime, clock)
        auto_ack(transport, runtime)
        await runtime.coordinator.request_watering("p1", 30_000)
        await runtime.coordinator.aclose()
        state = runtime.registry.snapshot("p1").watering_state
        assert not state.in_flight
        assert state.last_outcome is WateringOutcome.ACKNOWLEDGED


class TestMutualExclusion:
    @pytest.mark.asyncio
    async def test_concurrent_requests_dispatch_once(
        self, runtime: ServerRuntime, transport: FakeTransport, clock: FakeClock
    ) -> None:
        make_ready_plant(runtime, clock)
        auto_ack(transport, runtime, stop=True)

        results = await asyncio.gather(
            runtime.coordinator.request_watering("p1", 5000),
            runtime.coordinator.request_watering("p1", 5000),
        )

        tickets = [r for r in results if isinstance(r, WateringTicket)]
        rejections = [r for r in results if isinstance(r, Rejection)]
        assert len(tickets) == 1
        assert len(rejections) == 1
        assert rejections[0].reason is RejectionReason.ALREADY_WATERING
        assert len(transport.topics("commands/")) == 1
        await runtime.coordinator.wait_idle()
        assert runtime.registry.snapshot("p1").watering_state.waterings_today == 1

    @pytest.mark.asyncio
    async def test_already_watering_leaves_winner_untouched(
        self, runtime: ServerRuntime, transport: FakeTransport, clock: FakeClock
    ) -> None:
        make_ready_plant(runtime, clock)
        auto_ack(transport, runtime)
        await runtime.coordinator.request_watering("p1", 5000)

        second = await runtime.coordinator.request_watering("p1", 5000)
        assert second.reason is RejectionReason.ALREADY_WATERING
        assert runtime.coordinator.state("p1") is CoordinatorState.RUNNING
        assert runtime.registry.snapshot("p1").watering_state.in_flight
        runtime.dispatcher.handle_pump_status("esp32-01", {"action": "stopped"})
        await runtime.coordinator.wait_idle()


class TestRejections:
    @pytest.mark.asyncio
    async def test_unknown_plant(self, runtime: ServerRuntime) -> None:
        result = await runtime.coordinator.request_watering("ghost", 5000)
        assert result.reason is RejectionReason.UNKNOWN_PLANT
        assert await _events(runtime, "ghost") == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("duration", [0, 999, 30_001])
    async def test_invalid_duration(
        self, runtime: ServerRuntime, transport: FakeTransport, clock: FakeClock, duration: int
    ) -> None:
        make_ready_plant(runtime, clock)
        result = await runtime.coordinator.request_watering("p1", duration)
        assert result.reason is RejectionReason.INVALID_DURATION
        assert transport.topics("commands/") == []
        assert not runtime.registry.snapshot("p1").watering_state.in_flight
        events = await _events(runtime)
        assert events[0].reject_reason == "invalid_duration"

    @pytest.mark.asyncio
    async def test_offline_manual_request(
        self, runtime: ServerRuntime, transport: FakeTransport, clock: FakeClock
    ) -> None:
        make_ready_plant(runtime, clock)
        runtime.registry.mark_offline("p1")
        result = await runtime.coordinator.request_watering("p1", 5000)
        assert result.reason is RejectionReason.OFFLINE
        assert transport.topics("commands/") == []
        state = runtime.registry.snapshot("p1").watering_state
        assert not state.in_flight
        assert state.waterings_today == 0
        events = await _events(runtime)
        assert events[0].outcome is WateringOutcome.REJECTED

    @pytest.mark.asyncio
    async def test_cooldown_rejection_has_retry_after(
        self, runtime: ServerRuntime, transport: FakeTransport, clock: FakeClock
    ) -> None:
        make_ready_plant(runtime, clock)
        auto_ack(transport, runtime, stop=True)
        await runtime.coordinator.request_watering("p1", 5000)
        await runtime.coordinator.wait_idle()

        clock.advance(seconds=48)
        runtime.registry.mark_online("p1", clock())
        result = await runtime.coordinator.request_watering("p1", 5000)
        assert result.reason is RejectionReason.COOLDOWN
        assert result.retry_after_s == pytest.approx(252)
        assert "4m12s" in result.message

    @pytest.mark.asyncio
    async def test_faulted_plant(
        self, runtime: ServerRuntime, transport: FakeTransport, clock: FakeClock
    ) -> None:
        make_ready_plant(runtime, clock)
        with pytest.raises(RegistryInvariantError):
            runtime.registry.end_watering("p1", WateringOutcome.ACKNOWLEDGED, clock())
        result = await runtime.coordinator.request_watering("p1", 5000)
        assert result.reason is RejectionReason.FAULTED


class TestDispatchFailures:
    @pytest.mark.asyncio
    async def test_dispatch_error_releases_gate(
        self, runtime: ServerRuntime, transport: FakeTransport, clock: FakeClock
    ) -> None:
        make_ready_plant(runtime, clock)
        transport.fail = True
        result = await runtime.coordinator.request_watering("p1", 5000)
        assert result.reason is RejectionReason.DISPATCH_FAILED
        state = runtime.registry.snapshot("p1").watering_state
        assert not state.in_flight
        assert state.waterings_today == 0
        assert state.last_outcome is WateringOutcome.REJECTED

    @pytest.mark.asyncio
    async def test_ack_timeout(
        self, runtime: ServerRuntime, transport: FakeTransport, clock: FakeClock
    ) -> None:
        make_ready_plant(runtime, clock)
        ended: list[dict] = []
        runtime.events.subscribe(EventType.WATERING_ENDED, lambda _n, p: ended.append(p))

        result = await runtime.coordinator.request_watering("p1", 5000)

        assert result.reason is RejectionReason.ACK_TIMEOUT
        assert len(transport.topics("commands/")) == 1
        state = runtime.registry.snapshot("p1").watering_state
        assert not state.in_flight
        assert state.waterings_today == 0
        assert state.last_watering_ended_at is None
        assert state.last_outcome is WateringOutcome.TIMED_OUT
        assert ended == [{"plant_id": "p1", "outcome": "timed_out"}]
        events = await _events(runtime)
        assert events[0].outcome is WateringOutcome.TIMED_OUT
        assert events[0].reject_reason == "ack_timeout"

    @pytest.mark.asyncio
    async def test_cancelled_request_releases_gate(
        self, runtime: ServerRuntime, transport: FakeTransport, clock: FakeClock
    ) -> None:
        make_ready_plant(runtime, clock)
        runtime.coordinator.ack_timeout_s = 10
        task = asyncio.create_task(runtime.coordinator.request_watering("p1", 5000))
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert not runtime.registry.snapshot("p1").watering_state.in_flight


class TestDailyCap:
    @pytest.mark.asyncio
    async def test_timed_out_attempt_does_not_use_up_cap(
        self, runtime: ServerRuntime, transport: FakeTransport, clock: FakeClock
    ) -> None:
        make_ready_plant(
            runtime, clock, config=PlantConfig(max_daily_waterings=1, cooldown_ms=60_000)
        )
        first = await runtime.coordinator.request_watering("p1", 5000)
        assert first.reason is RejectionReason.ACK_TIMEOUT

        auto_ack(transport, runtime, stop=True)
        second = await runtime.coordinator.request_watering("p1", 5000)
        assert isinstance(second, WateringTicket)
        await runtime.coordinator.wait_idle()

        clock.advance(minutes=2)
        runtime.registry.mark_online("p1", clock())
        third = await runtime.coordinator.request_watering("p1", 5000)
        assert third.reason is RejectionReason.DAILY_CAP
        assert "daily limit of 1" in third.message
        assert runtime.registry.snapshot("p1").watering_state.waterings_today == 1

    @pytest.mark.asyncio
    async def test_cap_of_three_rejects_fourth(
        self, runtime: ServerRuntime, transport: FakeTransport, clock: FakeClock
    ) -> None:
        make_ready_plant(
            runtime, clock, config=PlantConfig(max_daily_waterings=3, cooldown_ms=60_000)
        )
        timed_out = await runtime.coordinator.request_watering("p1", 5000)
        assert timed_out.reason is RejectionReason.ACK_TIMEOUT

        auto_ack(transport, runtime, stop=True)
        for _ in range(3):
            ticket = await runtime.coordinator.request_watering("p1", 5000)
            assert isinstance(ticket, WateringTicket)
            await runtime.coordinator.wait_idle()
            clock.advance(minutes=2)
            runtime.registry.mark_online("p1", clock())

        fourth = await runtime.coordinator.request_watering("p1", 5000)
        assert fourth.reason is RejectionReason.DAILY_CAP
        assert "daily limit of 3" in fourth.message
        assert runtime.registry.snapshot("p1").watering_state.waterings_today == 3
        assert transport.topics("commands/").count("commands/esp32-01/water") == 4

    @pytest.mark.asyncio
    async def test_cap_resets_next_utc_day(
        self, runtime: ServerRuntime, transport: FakeTransport, clock: FakeClock
    ) -> None:
        make_ready_plant(
            runtime, clock, config=PlantConfig(max_daily_waterings=1, cooldown_ms=60_000)
        )
        auto_ack(transport, runtime, stop=True)
        await runtime.coordinator.request_watering("p1", 5000)
        await runtime.coordinator.wait_idle()

        clock.advance(days=1)
        make_ready_plant(runtime, clock)
        result = await runtime.coordinator.request_watering("p1", 5000)
        assert isinstance(result, WateringTicket)
        await runtime.coordinator.wait_idle()
