"""Tests for the wave orchestrator state machine."""

from __future__ import annotations

from collections import deque
from typing import Optional

import pytest
import yaml

from waveserver.engine.orchestrator import OrchestratorState, WaveOrchestrator
from waveserver.loaders.config_loader import WaveServerConfig
from waveserver.models.spawn_timing import SpawnTiming, TimingMode
from waveserver.models.wave_config import WaveConfig
from waveserver.util.events import (
    AllUnitsEliminated,
    CountdownTick,
    EventBus,
    OrchestratorError,
    PerformanceWarning,
    SpawnRequested,
    StateChanged,
    WaveCompleted,
    WaveFailed,
    WaveStarted,
    WaveStarting,
)


# -------------------------------------------------------------------
# Helpers
# -------------------------------------------------------------------

def _make_config(wave: int = 1, units: int = 3,
                 timing: Optional[SpawnTiming] = None) -> WaveConfig:
    return WaveConfig(
        wave_number=wave,
        faction="enemy",
        base_unit_count=units,
        composition={"basic": 1.0},
        spawn_locations=[(0.0, 0.0), (5.0, 5.0)],
        timing=timing or SpawnTiming(mode=TimingMode.INSTANT, initial_delay=0.0),
        faction_seed=11,
        modifiers={"health": 1.0},
    )


class _FixedQueue:
    """Stand-in wave queue that hands out prepared configs."""

    def __init__(self, configs: list[WaveConfig]) -> None:
        self._configs = deque(configs)
        self.faction_seed = 1
        self.current_wave = 0
        self.refreshed = 0
        self.requeued: list[int] = []

    @property
    def is_initialized(self) -> bool:
        return True

    def initialize(self, faction_seed=None) -> int:
        return self.faction_seed

    def peek(self) -> Optional[WaveConfig]:
        return self._configs[0] if self._configs else None

    def dequeue(self) -> Optional[WaveConfig]:
        config = self._configs.popleft()
        self.current_wave = config.wave_number
        return config

    def upcoming(self) -> list[WaveConfig]:
        return list(self._configs)

    def refresh(self) -> None:
        self.refreshed += 1

    def set_spawn_locations(self, locations) -> None:
        pass

    def set_faction(self, faction: str) -> None:
        pass

    def skip_to_wave(self, wave_number: int) -> bool:
        self.requeued.append(wave_number)
        return True

    def to_dict(self) -> dict:
        return {
            "faction_seed": self.faction_seed,
            "current_wave": self.current_wave,
            "queue": [c.to_dict() for c in self._configs],
        }


def _make_orch(configs: Optional[list[WaveConfig]] = None, clock=None,
               **cfg) -> tuple[WaveOrchestrator, EventBus]:
    """Orchestrator on a fixed queue, zero countdown, no auto-advance."""
    bus = EventBus()
    settings = dict(countdown_duration=0.0, auto_advance=False)
    settings.update(cfg)
    orch = WaveOrchestrator(
        bus,
        WaveServerConfig(**settings),
        wave_queue=_FixedQueue(configs if configs is not None else [_make_config()]),
        clock=clock or (lambda: 0.0),
    )
    return orch, bus


def _record(bus: EventBus, *event_types) -> list:
    events: list = []
    for event_type in event_types:
        bus.on(event_type, events.append)
    return events


def _auto_kill(orch: WaveOrchestrator, bus: EventBus) -> None:
    """Unit system stand-in: every requested unit spawns and dies at once."""
    def handler(e: SpawnRequested) -> None:
        uid = f"w{e.wave_number}-u{e.index}"
        orch.on_unit_spawned(uid)
        orch.on_damage_dealt("player", 10.0)
        orch.on_unit_killed(uid, "player")
    bus.on(SpawnRequested, handler)


def _into_wave(orch: WaveOrchestrator) -> None:
    assert orch.start()
    orch.process(0.0)
    assert orch.state == OrchestratorState.SPAWNING


# -------------------------------------------------------------------
# Start / countdown
# -------------------------------------------------------------------

class TestCountdown:
    def test_start_enters_countdown(self):
        orch, bus = _make_orch(countdown_duration=10.0)
        starting = _record(bus, WaveStarting)
        assert orch.start()
        assert orch.state == OrchestratorState.COUNTDOWN
        assert orch.countdown_remaining == pytest.approx(10.0)
        assert starting == [WaveStarting(wave_number=1, countdown_seconds=10.0)]

    def test_start_only_when_stopped(self):
        orch, _ = _make_orch(countdown_duration=10.0)
        orch.start()
        assert not orch.start()

    def test_ticks_on_whole_seconds(self):
        orch, bus = _make_orch(countdown_duration=3.0)
        ticks = _record(bus, CountdownTick)
        orch.start()
        orch.process(0.5)
        assert ticks == []
        orch.process(0.6)
        orch.process(1.0)
        assert [round(t.remaining, 1) for t in ticks] == [1.9, 0.9]
        assert orch.state == OrchestratorState.COUNTDOWN

    def test_countdown_expiry_starts_spawning(self):
        orch, bus = _make_orch(countdown_duration=2.0)
        started = _record(bus, WaveStarted)
        orch.start()
        orch.process(1.0)
        orch.process(1.5)
        assert orch.state == OrchestratorState.SPAWNING
        assert len(started) == 1
        assert started[0].config.wave_number == 1
        assert orch.state_manager.has_active_wave

    def test_skip_countdown(self):
        orch, _ = _make_orch(countdown_duration=30.0)
        orch.start()
        assert orch.skip_countdown()
        assert orch.state == OrchestratorState.SPAWNING
        assert orch.countdown_remaining == 0.0

    def test_skip_countdown_disabled(self):
        orch, _ = _make_orch(countdown_duration=30.0, skip_enabled=False)
        orch.start()
        assert not orch.skip_countdown()
        assert orch.state == OrchestratorState.COUNTDOWN

    def test_skip_outside_countdown_rejected(self):
        orch, _ = _make_orch()
        assert not orch.skip_countdown()

    def test_process_while_stopped_is_noop(self):
        orch, bus = _make_orch()
        changes = _record(bus, StateChanged)
        orch.process(1.0)
        assert changes == []
        assert orch.frame_time_stats()["samples"] == 0


# -------------------------------------------------------------------
# Spawning
# -------------------------------------------------------------------

class TestSpawning:
    def test_backpressure_limits_spawns_per_frame(self):
        orch, bus = _make_orch([_make_config(units=25)], max_spawns_per_frame=10)
        spawns = _record(bus, SpawnRequested)
        _into_wave(orch)

        orch.process(0.1)
        assert len(spawns) == 10
        assert orch.pending_spawn_requests == 15
        orch.process(0.1)
        assert len(spawns) == 20
        orch.process(0.1)
        assert len(spawns) == 25
        assert orch.pending_spawn_requests == 0
        assert [s.index for s in spawns] == list(range(25))

    def test_spawn_request_fields(self):
        orch, bus = _make_orch([_make_config(wave=1, units=2)])
        spawns = _record(bus, SpawnRequested)
        _into_wave(orch)
        orch.process(0.1)
        first, second = spawns
        assert first.unit_type == "basic"
        assert first.faction == "enemy"
        assert first.modifiers == {"health": 1.0}
        assert first.position == (0.0, 0.0)
        assert second.position == (5.0, 5.0)

    def test_spawning_becomes_active_when_queue_drained(self):
        timing = SpawnTiming(mode=TimingMode.SEQUENTIAL, spawn_delay=1.0, initial_delay=0.0)
        orch, _ = _make_orch([_make_config(units=3, timing=timing)])
        _into_wave(orch)
        orch.process(1.0)
        assert orch.state == OrchestratorState.SPAWNING
        orch.process(1.0)
        assert orch.state == OrchestratorState.ACTIVE

    def test_unit_callbacks_without_wave(self):
        orch, _ = _make_orch()
        assert not orch.on_unit_spawned("x")
        assert not orch.on_unit_killed("x", "player")
        assert not orch.on_damage_dealt("player", 1.0)


# -------------------------------------------------------------------
# Completion / failure
# -------------------------------------------------------------------

class TestCompletion:
    def test_completes_and_stops_without_auto_advance(self):
        orch, bus = _make_orch([_make_config(units=3), _make_config(wave=2)])
        _auto_kill(orch, bus)
        events = _record(bus, AllUnitsEliminated, WaveCompleted)
        _into_wave(orch)
        orch.process(0.1)

        assert [type(e) for e in events] == [AllUnitsEliminated, WaveCompleted]
        assert events[1].history.was_successful
        assert orch.state == OrchestratorState.STOPPED
        assert orch.current_config is None
        assert orch.state_manager.get_statistics()["total_completed"] == 1

    def test_auto_advance_starts_next_countdown(self):
        orch, bus = _make_orch([_make_config(units=3), _make_config(wave=2)],
                               auto_advance=True, countdown_duration=5.0)
        _auto_kill(orch, bus)
        starting = _record(bus, WaveStarting)
        orch.start()
        orch.skip_countdown()
        orch.process(0.1)

        assert orch.state == OrchestratorState.COUNTDOWN
        assert [e.wave_number for e in starting] == [1, 2]
        assert orch.current_config.wave_number == 2

    def test_completion_waits_for_kills(self):
        orch, bus = _make_orch([_make_config(units=2)])
        spawns = _record(bus, SpawnRequested)
        _into_wave(orch)
        orch.process(0.1)
        for s in spawns:
            orch.on_unit_spawned(s.index)
        orch.process(0.1)
        assert orch.state == OrchestratorState.ACTIVE

        for s in spawns:
            orch.on_unit_killed(s.index, "player")
        orch.process(0.1)
        assert orch.state == OrchestratorState.STOPPED

    def test_completion_feeds_difficulty(self):
        orch, bus = _make_orch([_make_config(units=3)])
        _auto_kill(orch, bus)
        _into_wave(orch)
        orch.process(0.1)
        assert orch.difficulty.performance_history == [1.0]

    def test_adaptive_mode_refreshes_queue(self):
        orch, bus = _make_orch([_make_config(units=3)], scaling_mode="adaptive")
        _auto_kill(orch, bus)
        _into_wave(orch)
        orch.process(0.1)
        assert orch.wave_queue.refreshed == 1

    def test_fail_wave(self):
        orch, bus = _make_orch([_make_config(units=3)])
        failed = _record(bus, WaveFailed)
        _into_wave(orch)
        orch.process(0.1)
        assert orch.fail_wave("base destroyed")

        assert failed == [WaveFailed(wave_number=1, reason="base destroyed")]
        assert orch.state == OrchestratorState.STOPPED
        history = orch.state_manager.get_history()
        assert len(history) == 1
        assert not history[0].was_successful

    def test_fail_wave_during_countdown(self):
        orch, bus = _make_orch(countdown_duration=5.0)
        failed = _record(bus, WaveFailed)
        orch.start()
        assert orch.fail_wave("aborted")
        assert len(failed) == 1
        assert orch.state_manager.get_history() == []

    def test_fail_wave_without_wave(self):
        orch, _ = _make_orch()
        assert not orch.fail_wave("nothing")

    def test_stop_discards_wave(self):
        orch, bus = _make_orch([_make_config(units=3)])
        spawns = _record(bus, SpawnRequested)
        _into_wave(orch)
        orch.process(0.1)
        assert orch.stop()
        assert orch.state == OrchestratorState.STOPPED
        assert orch.state_manager.get_history() == []
        assert not orch.state_manager.has_active_wave
        assert len(spawns) == 3

    def test_stop_when_stopped_rejected(self):
        orch, _ = _make_orch()
        assert not orch.stop()

    def test_stop_during_countdown_requeues_wave(self):
        bus = EventBus()
        orch = WaveOrchestrator(
            bus, WaveServerConfig(faction_seed=3, countdown_duration=5.0, auto_advance=False),
            clock=lambda: 0.0)
        announced = _record(bus, WaveStarting)
        orch.start()
        first = orch.current_config.to_dict()
        orch.process(2.0)
        assert orch.stop()
        assert [c.wave_number for c in orch.wave_queue.upcoming()] == [1, 2, 3, 4, 5]

        orch.start()
        assert [e.wave_number for e in announced] == [1, 1]
        assert orch.current_config.to_dict() == first
        assert orch.countdown_remaining == pytest.approx(5.0)

    def test_stop_while_paused_in_countdown_requeues_wave(self):
        orch, _ = _make_orch([_make_config(wave=4)], countdown_duration=5.0)
        orch.start()
        orch.pause()
        assert orch.stop()
        assert orch.wave_queue.requeued == [4]
        assert orch.current_config is None

    def test_stop_mid_wave_does_not_requeue(self):
        orch, _ = _make_orch([_make_config(wave=2)])
        _into_wave(orch)
        orch.stop()
        assert orch.wave_queue.requeued == []

    def test_wave_timeout(self):
        orch, bus = _make_orch([_make_config(units=1)], max_wave_duration=5.0)
        failed = _record(bus, WaveFailed)
        _into_wave(orch)
        orch.process(1.0)
        assert orch.state == OrchestratorState.ACTIVE
        orch.process(5.0)
        assert failed == [WaveFailed(wave_number=1, reason="timeout")]
        assert orch.state == OrchestratorState.STOPPED


# -------------------------------------------------------------------
# Pause / resume
# -------------------------------------------------------------------

class TestPause:
    def test_pause_freezes_countdown(self):
        orch, _ = _make_orch(countdown_duration=10.0)
        orch.start()
        orch.process(3.0)
        assert orch.pause()
        orch.process(5.0)
        assert orch.countdown_remaining == pytest.approx(7.0)
        assert orch.resume()
        assert orch.state == OrchestratorState.COUNTDOWN
        orch.process(1.0)
        assert orch.countdown_remaining == pytest.approx(6.0)

    def test_pause_freezes_spawning(self):
        orch, bus = _make_orch([_make_config(units=25)], max_spawns_per_frame=10)
        spawns = _record(bus, SpawnRequested)
        _into_wave(orch)
        orch.process(0.1)
        orch.pause()
        orch.process(10.0)
        assert len(spawns) == 10
        assert orch.pending_spawn_requests == 15
        assert orch.state_manager.elapsed_time() == pytest.approx(0.1)

        orch.resume()
        assert orch.state == OrchestratorState.ACTIVE
        orch.process(0.1)
        assert len(spawns) == 20

    def test_pause_from_spawn_handler_halts_batch(self):
        orch, bus = _make_orch([_make_config(units=10)])
        spawns = _record(bus, SpawnRequested)

        def pause_once(e: SpawnRequested) -> None:
            if len(spawns) == 1:
                orch.pause()
        bus.on(SpawnRequested, pause_once)

        _into_wave(orch)
        orch.process(0.1)
        assert orch.state == OrchestratorState.PAUSED
        assert len(spawns) == 1
        assert orch.pending_spawn_requests == 9

        orch.resume()
        orch.process(0.0)
        assert [e.index for e in spawns] == list(range(10))
        assert orch.state == OrchestratorState.ACTIVE

    def test_double_pause_rejected(self):
        orch, _ = _make_orch(countdown_duration=10.0)
        orch.start()
        assert orch.pause()
        assert not orch.pause()

    def test_resume_when_not_paused(self):
        orch, _ = _make_orch()
        assert not orch.resume()


# -------------------------------------------------------------------
# Errors
# -------------------------------------------------------------------

class TestErrors:
    def test_invalid_config_enters_error(self):
        bus = EventBus()
        errors = _record(bus, OrchestratorError)
        orch = WaveOrchestrator(bus, WaveServerConfig(spawn_locations=[], faction_seed=1),
                                clock=lambda: 0.0)
        assert not orch.start()
        assert orch.state == OrchestratorState.ERROR
        assert "spawn_locations" in orch.error_message
        assert len(errors) == 1
        # The invalid wave stays queued
        assert orch.wave_queue.peek().wave_number == 1

    def test_empty_queue_enters_error(self):
        orch, _ = _make_orch([])
        assert not orch.start()
        assert orch.state == OrchestratorState.ERROR

    def test_clear_error(self):
        orch, _ = _make_orch([])
        orch.start()
        assert orch.clear_error()
        assert orch.state == OrchestratorState.STOPPED
        assert orch.error_message == ""

    def test_error_state_rejects_controls(self):
        orch, _ = _make_orch([])
        orch.start()
        assert not orch.pause()
        assert not orch.stop()
        assert not orch.fail_wave("x")
        assert not orch.start()

    def test_lost_progress_enters_error(self):
        orch, bus = _make_orch([_make_config(units=3)])
        errors = _record(bus, OrchestratorError)
        _into_wave(orch)
        orch.state_manager.abort_wave()
        orch.process(0.1)
        assert orch.state == OrchestratorState.ERROR
        assert len(errors) == 1


# -------------------------------------------------------------------
# Configuration setters
# -------------------------------------------------------------------

class TestSetters:
    def test_applied_when_stopped(self):
        orch, _ = _make_orch()
        assert orch.set_countdown_duration(4.0)
        assert orch.countdown_duration == 4.0
        assert orch.set_enemy_faction("raiders")
        assert orch.difficulty.enemy_faction == "raiders"
        assert orch.set_difficulty_mode("linear")
        assert orch.difficulty.scaling_mode.value == "linear"
        assert orch.set_difficulty_multiplier(2.5)
        assert orch.difficulty.multiplier == 2.5
        assert orch.set_spawn_locations([(1.0, 1.0)])

    def test_rejected_while_running(self):
        orch, _ = _make_orch(countdown_duration=10.0)
        orch.start()
        assert not orch.set_countdown_duration(1.0)
        assert not orch.set_enemy_faction("x")
        assert not orch.set_difficulty_mode("linear")
        assert not orch.set_difficulty_multiplier(2.0)
        assert not orch.set_spawn_locations([(1.0, 1.0)])
        assert not orch.set_faction_seed(5)
        assert orch.countdown_duration == 10.0

    def test_faction_seed_only_before_first_wave(self):
        bus = EventBus()
        orch = WaveOrchestrator(bus, WaveServerConfig(countdown_duration=0.0),
                                clock=lambda: 0.0)
        assert orch.set_faction_seed(99)
        orch.start()
        assert orch.wave_queue.faction_seed == 99
        orch.stop()
        assert not orch.set_faction_seed(100)


# -------------------------------------------------------------------
# Frame timing
# -------------------------------------------------------------------

class TestPerformance:
    def test_slow_frame_emits_warning(self):
        ticks = iter(x * 0.005 for x in range(1000))
        orch, bus = _make_orch(countdown_duration=10.0, clock=lambda: next(ticks))
        warnings = _record(bus, PerformanceWarning)
        orch.start()
        orch.process(0.1)
        assert len(warnings) == 1
        assert warnings[0].frame_time_ms == pytest.approx(5.0)

    def test_fast_frame_no_warning(self):
        orch, bus = _make_orch(countdown_duration=10.0)
        warnings = _record(bus, PerformanceWarning)
        orch.start()
        for _ in range(40):
            orch.process(0.01)
        assert warnings == []
        stats = orch.frame_time_stats()
        assert stats["samples"] == 30
        assert stats["max_ms"] == 0.0


# -------------------------------------------------------------------
# Status / serialization
# -------------------------------------------------------------------

class TestStatus:
    def test_get_status(self):
        orch, _ = _make_orch(countdown_duration=10.0)
        orch.start()
        status = orch.get_status()
        assert status["state"] == "countdown"
        assert status["wave_number"] == 1
        assert status["countdown_remaining"] == pytest.approx(10.0)
        assert status["progress"] is None


def _run(orch: WaveOrchestrator, bus: EventBus, ticks: int, dt: float = 0.5) -> list[tuple]:
    spawns = _record(bus, SpawnRequested)
    for _ in range(ticks):
        orch.process(dt)
    return [(s.wave_number, s.index, s.unit_type, s.position) for s in spawns]


class TestSerialization:
    def _settings(self) -> WaveServerConfig:
        return WaveServerConfig(
            countdown_duration=1.0,
            faction_seed=42,
            spawn_locations=[[0.0, 0.0], [10.0, 0.0]],
            max_spawns_per_frame=3,
            scaling_mode="adaptive",
        )

    def test_restored_orchestrator_spawns_identically(self):
        bus = EventBus()
        orch = WaveOrchestrator(bus, self._settings(), clock=lambda: 0.0)
        _auto_kill(orch, bus)
        orch.start()
        _run(orch, bus, ticks=9)

        data = yaml.safe_load(yaml.safe_dump(orch.to_dict()))
        bus2 = EventBus()
        restored = WaveOrchestrator.from_dict(data, bus2, self._settings(), clock=lambda: 0.0)
        _auto_kill(restored, bus2)

        expected = _run(orch, bus, ticks=80)
        actual = _run(restored, bus2, ticks=80)
        assert len(expected) > 0
        assert actual == expected
        assert restored.state == orch.state
        assert (restored.state_manager.get_statistics()["highest_wave"]
                == orch.state_manager.get_statistics()["highest_wave"])

    def test_round_trip_mid_wave_with_backlog(self):
        orch, bus = _make_orch([_make_config(units=25)], max_spawns_per_frame=10)
        _into_wave(orch)
        orch.process(0.1)
        orch.pause()

        data = orch.to_dict()
        restored = WaveOrchestrator.from_dict(data, EventBus(), clock=lambda: 0.0)
        assert restored.state == OrchestratorState.PAUSED
        assert restored.pending_spawn_requests == 15
        assert restored.current_config == orch.current_config
        assert restored.state_manager.get_current_progress().config is restored.current_config
        assert restored.resume()
        assert restored.state == OrchestratorState.ACTIVE
