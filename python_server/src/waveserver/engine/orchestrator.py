"""Wave orchestrator — top-level wave state machine.

States::

    STOPPED --start()--> COUNTDOWN --timer / skip_countdown()--> SPAWNING
    SPAWNING --spawn queue drained--> ACTIVE
    SPAWNING|ACTIVE --all units dead--> COUNTDOWN (auto_advance) or STOPPED
    any --pause()--> PAUSED --resume()--> previous state
    any --config/runtime fault--> ERROR --clear_error()--> STOPPED
    running --fail_wave(reason)--> STOPPED

``process(dt)`` is driven by the game loop.  It never blocks: at most
``max_spawns_per_frame`` spawn requests are emitted per call and the
rest stay queued, in order, for the following calls.  Every call is
timed and a :class:`PerformanceWarning` is emitted when one exceeds the
frame budget.

All wave progress lives in the :class:`WaveStateManager`; the
orchestrator only remembers which config is current and which due spawn
events it has not emitted yet.
"""

from __future__ import annotations

import logging
import math
import time
from collections import deque
from enum import Enum
from typing import Any, Callable, Hashable, Optional, Sequence

from waveserver.engine.difficulty import DifficultyCalculator, ScalingMode
from waveserver.engine.state_manager import WaveStateManager
from waveserver.engine.wave_queue import WaveQueue
from waveserver.loaders.config_loader import WaveServerConfig
from waveserver.models.wave_config import Position, WaveConfig
from waveserver.models.wave_history import WaveHistory
from waveserver.models.wave_progress import SpawnEvent
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

log = logging.getLogger(__name__)


class OrchestratorState(Enum):
    STOPPED = "stopped"
    COUNTDOWN = "countdown"
    SPAWNING = "spawning"
    ACTIVE = "active"
    PAUSED = "paused"
    ERROR = "error"


_WAVE_RUNNING = (OrchestratorState.SPAWNING, OrchestratorState.ACTIVE)
_TICKING = (OrchestratorState.COUNTDOWN,) + _WAVE_RUNNING


class WaveOrchestrator:
    """Drives waves from countdown to completion.

    Args:
        event_bus: Bus the lifecycle and spawn events are published on.
        game_config: Tuning; defaults when None.
        wave_queue: Lookahead queue (built from ``game_config`` when None).
        difficulty: Difficulty calculator (built from ``game_config`` when None).
        state_manager: Progress/history store (built when None).
        clock: Monotonic clock in seconds, used to time ``process``.
    """

    def __init__(
        self,
        event_bus: EventBus,
        game_config: WaveServerConfig | None = None,
        wave_queue: WaveQueue | None = None,
        difficulty: DifficultyCalculator | None = None,
        state_manager: WaveStateManager | None = None,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        cfg = game_config or WaveServerConfig()
        self._events = event_bus
        self._clock = clock

        if difficulty is None:
            difficulty = DifficultyCalculator(
                scaling_mode=ScalingMode(cfg.scaling_mode),
                base_unit_count=cfg.base_unit_count,
                growth_rate=cfg.growth_rate,
                linear_step=cfg.linear_step,
                target_success_rate=cfg.target_success_rate,
                multiplier=cfg.difficulty_multiplier,
                enemy_faction=cfg.enemy_faction,
            )
        self.difficulty = difficulty
        self.wave_queue = wave_queue or WaveQueue(
            calculator=difficulty,
            max_queue_size=cfg.max_queue_size,
            faction=cfg.enemy_faction,
            spawn_locations=cfg.spawn_locations,
        )
        self.state_manager = state_manager or WaveStateManager(cfg.max_history_size)

        self.state = OrchestratorState.STOPPED
        self._pre_pause_state: Optional[OrchestratorState] = None
        self.countdown_duration: float = max(0.0, cfg.countdown_duration)
        self.countdown_remaining: float = 0.0
        self.auto_advance: bool = cfg.auto_advance
        self.skip_enabled: bool = cfg.skip_enabled
        self.enemy_faction: str = cfg.enemy_faction
        self.faction_seed: Optional[int] = cfg.faction_seed
        self.max_spawns_per_frame: int = max(1, cfg.max_spawns_per_frame)
        self.frame_budget_ms: float = cfg.frame_budget_ms
        self.max_wave_duration: Optional[float] = cfg.max_wave_duration
        self.current_config: Optional[WaveConfig] = None
        self.error_message: str = ""

        self._pending: deque[SpawnEvent] = deque()
        self._frame_times: deque[float] = deque(maxlen=max(1, cfg.perf_window_size))

    # ==================================================================
    # Control
    # ==================================================================

    def start(self) -> bool:
        """Begin the countdown for the next queued wave."""
        if self.state != OrchestratorState.STOPPED:
            log.warning("start() ignored in state %s", self.state.value)
            return False
        if not self.wave_queue.is_initialized:
            self.faction_seed = self.wave_queue.initialize(self.faction_seed)
        config = self._take_next_config()
        if config is None:
            return False
        self._begin_countdown(config)
        return True

    def stop(self) -> bool:
        """Abandon the current wave (no history entry) and stop.

        A wave still in its countdown has spawned nothing; it goes back to
        the front of the queue and is announced again by the next start().
        """
        if self.state in (OrchestratorState.STOPPED, OrchestratorState.ERROR):
            return False
        dropped = self.state_manager.abort_wave()
        if dropped is not None:
            log.info("Wave %d abandoned (%d units still alive)",
                     dropped.wave_number, dropped.units_remaining)
        elif self.current_config is not None:
            self.wave_queue.skip_to_wave(self.current_config.wave_number)
            log.info("Wave %d returned to the queue", self.current_config.wave_number)
        self._reset_wave_state()
        self._set_state(OrchestratorState.STOPPED)
        return True

    def pause(self) -> bool:
        """Freeze the countdown and spawn clock; queued spawns are kept."""
        if self.state in (OrchestratorState.PAUSED, OrchestratorState.ERROR):
            return False
        self._pre_pause_state = self.state
        self._set_state(OrchestratorState.PAUSED)
        return True

    def resume(self) -> bool:
        if self.state != OrchestratorState.PAUSED:
            return False
        previous = self._pre_pause_state or OrchestratorState.STOPPED
        self._pre_pause_state = None
        self._set_state(previous)
        return True

    def skip_countdown(self) -> bool:
        if self.state != OrchestratorState.COUNTDOWN:
            return False
        if not self.skip_enabled:
            log.warning("skip_countdown() rejected: skipping is disabled")
            return False
        self._begin_spawning()
        return True

    def clear_error(self) -> bool:
        if self.state != OrchestratorState.ERROR:
            return False
        self.state_manager.abort_wave()
        self._reset_wave_state()
        self.error_message = ""
        self._set_state(OrchestratorState.STOPPED)
        return True

    def fail_wave(self, reason: str) -> bool:
        """Abort the current wave as lost (e.g. the player base fell)."""
        if self.state == OrchestratorState.ERROR:
            return False
        if self.current_config is None:
            log.warning("fail_wave(%r) with no current wave", reason)
            return False
        wave_number = self.current_config.wave_number
        history = self.state_manager.complete_wave()
        if history is not None:
            self._record_performance(history)
        self._reset_wave_state()
        self._set_state(OrchestratorState.STOPPED)
        log.info("Wave %d failed: %s", wave_number, reason)
        self._events.emit(WaveFailed(wave_number=wave_number, reason=reason))
        return True

    # ==================================================================
    # Configuration (only while stopped)
    # ==================================================================

    def _require_stopped(self, what: str) -> bool:
        if self.state != OrchestratorState.STOPPED:
            log.warning("%s rejected in state %s (stop first)", what, self.state.value)
            return False
        return True

    def set_spawn_locations(self, locations: Sequence[Position]) -> bool:
        if not self._require_stopped("set_spawn_locations"):
            return False
        self.wave_queue.set_spawn_locations(locations)
        return True

    def set_enemy_faction(self, faction: str) -> bool:
        if not self._require_stopped("set_enemy_faction"):
            return False
        self.enemy_faction = faction
        self.difficulty.enemy_faction = faction
        self.wave_queue.set_faction(faction)
        return True

    def set_countdown_duration(self, seconds: float) -> bool:
        if not self._require_stopped("set_countdown_duration"):
            return False
        self.countdown_duration = max(0.0, float(seconds))
        return True

    def set_difficulty_mode(self, mode: ScalingMode | str) -> bool:
        if not self._require_stopped("set_difficulty_mode"):
            return False
        self.difficulty.scaling_mode = ScalingMode(mode)
        self.wave_queue.refresh()
        return True

    def set_difficulty_multiplier(self, multiplier: float) -> bool:
        if not self._require_stopped("set_difficulty_multiplier"):
            return False
        self.difficulty.multiplier = multiplier
        self.wave_queue.refresh()
        return True

    def set_faction_seed(self, seed: int) -> bool:
        """Fix the faction seed; only before the first wave was generated."""
        if not self._require_stopped("set_faction_seed"):
            return False
        if self.wave_queue.is_initialized:
            log.warning("set_faction_seed() rejected: wave queue already seeded (%d)",
                        self.wave_queue.faction_seed)
            return False
        self.faction_seed = int(seed)
        return True

    # ==================================================================
    # Callbacks from the unit system
    # ==================================================================

    def on_unit_spawned(self, unit_id: Hashable) -> bool:
        if not self.state_manager.unit_spawned(unit_id):
            log.debug("on_unit_spawned(%r) with no active wave", unit_id)
            return False
        return True

    def on_unit_killed(self, unit_id: Hashable, killer_faction: str | None = None) -> bool:
        if not self.state_manager.unit_killed(unit_id, killer_faction):
            log.debug("on_unit_killed(%r) with no active wave", unit_id)
            return False
        return True

    def on_damage_dealt(self, faction_id: str, amount: float) -> bool:
        return self.state_manager.damage_dealt(faction_id, amount)

    # ==================================================================
    # Tick
    # ==================================================================

    def process(self, delta: float) -> None:
        """Advance the state machine by ``delta`` seconds."""
        if self.state not in _TICKING:
            return
        delta = max(0.0, delta)
        started = self._clock()

        if self.state == OrchestratorState.COUNTDOWN:
            self._tick_countdown(delta)
        else:
            self._tick_wave(delta)

        elapsed_ms = (self._clock() - started) * 1000.0
        self._frame_times.append(elapsed_ms)
        if elapsed_ms > self.frame_budget_ms:
            self._events.emit(PerformanceWarning(
                message=f"process() took {elapsed_ms:.2f} ms (budget {self.frame_budget_ms:.2f} ms)",
                frame_time_ms=elapsed_ms,
            ))

    def _tick_countdown(self, delta: float) -> None:
        before = math.ceil(self.countdown_remaining)
        self.countdown_remaining = max(0.0, self.countdown_remaining - delta)
        if self.countdown_remaining <= 0.0:
            self._begin_spawning()
            return
        if math.ceil(self.countdown_remaining) < before and self.current_config is not None:
            self._events.emit(CountdownTick(
                wave_number=self.current_config.wave_number,
                remaining=self.countdown_remaining,
            ))

    def _tick_wave(self, delta: float) -> None:
        if self.current_config is None or not self.state_manager.has_active_wave:
            self._enter_error(f"State {self.state.value} reached without an active wave")
            return

        self._pending.extend(self.state_manager.update(delta))
        self._dispatch_spawns()
        if self.state not in _WAVE_RUNNING:
            return  # a spawn handler stopped or failed the wave

        if self.state == OrchestratorState.SPAWNING and self.state_manager.spawn_queue_empty():
            self._set_state(OrchestratorState.ACTIVE)

        if (self.max_wave_duration is not None
                and self.state_manager.elapsed_time() > self.max_wave_duration):
            self.fail_wave("timeout")
            return

        if not self._pending and self.state_manager.is_wave_complete():
            self._complete_wave()

    def _dispatch_spawns(self) -> None:
        config = self.current_config
        emitted = 0
        while self._pending and emitted < self.max_spawns_per_frame:
            event = self._pending.popleft()
            emitted += 1
            self._events.emit(SpawnRequested(
                unit_type=event.unit_type,
                position=event.spawn_location,
                faction=config.faction,
                modifiers=dict(config.modifiers),
                wave_number=config.wave_number,
                index=event.index,
            ))
            if self.current_config is not config or self.state not in _WAVE_RUNNING:
                return
        if self._pending:
            log.debug("Wave %d: %d spawns deferred to next tick",
                      config.wave_number, len(self._pending))

    # ==================================================================
    # Transitions
    # ==================================================================

    def _set_state(self, new_state: OrchestratorState) -> None:
        if new_state == self.state:
            return
        previous = self.state
        self.state = new_state
        log.info("Orchestrator %s -> %s", previous.value, new_state.value)
        self._events.emit(StateChanged(previous=previous.value, current=new_state.value))

    def _enter_error(self, message: str) -> None:
        log.error("Orchestrator error: %s", message)
        self.error_message = message
        self._pending.clear()
        self._pre_pause_state = None
        self._set_state(OrchestratorState.ERROR)
        self._events.emit(OrchestratorError(message=message))

    def _reset_wave_state(self) -> None:
        self._pending.clear()
        self.current_config = None
        self.countdown_remaining = 0.0
        self._pre_pause_state = None

    def _take_next_config(self) -> Optional[WaveConfig]:
        """Validate the front of the queue, then dequeue it."""
        config = self.wave_queue.peek()
        if config is None:
            self._enter_error("No wave configuration available")
            return None
        errors = config.validate()
        if errors:
            self._enter_error(
                f"Wave {config.wave_number} configuration invalid: {'; '.join(errors)}"
            )
            return None
        return self.wave_queue.dequeue()

    def _begin_countdown(self, config: WaveConfig) -> None:
        self.current_config = config
        self.countdown_remaining = self.countdown_duration
        self._set_state(OrchestratorState.COUNTDOWN)
        log.info("Wave %d starting in %.1fs (%d units, %s timing)",
                 config.wave_number, self.countdown_remaining,
                 config.unit_count, config.timing.mode.value)
        self._events.emit(WaveStarting(
            wave_number=config.wave_number,
            countdown_seconds=self.countdown_remaining,
        ))

    def _begin_spawning(self) -> None:
        config = self.current_config
        if config is None:
            self._enter_error("Countdown expired with no wave configured")
            return
        self.countdown_remaining = 0.0
        self._pending.clear()
        self.state_manager.start_wave(config)
        self._set_state(OrchestratorState.SPAWNING)
        self._events.emit(WaveStarted(wave_number=config.wave_number, config=config))

    def _complete_wave(self) -> None:
        history = self.state_manager.complete_wave()
        self.current_config = None
        if history is None:
            self._enter_error("Wave completed but no progress was recorded")
            return

        self._events.emit(AllUnitsEliminated(wave_number=history.wave_number))
        self._record_performance(history)
        log.info("Wave %d cleared in %.1fs (%d/%d killed)",
                 history.wave_number, history.duration,
                 history.units_killed, history.units_spawned)
        self._events.emit(WaveCompleted(wave_number=history.wave_number, history=history))

        if self.state not in _WAVE_RUNNING:
            return  # a completion handler already stopped us
        if not self.auto_advance:
            self._set_state(OrchestratorState.STOPPED)
            return
        config = self._take_next_config()
        if config is not None:
            self._begin_countdown(config)

    def _record_performance(self, history: WaveHistory) -> None:
        self.difficulty.record_performance(history.faction_performance)
        if self.difficulty.scaling_mode == ScalingMode.ADAPTIVE:
            self.wave_queue.refresh()

    # ==================================================================
    # Queries
    # ==================================================================

    @property
    def pending_spawn_requests(self) -> int:
        """Due spawn events not yet emitted (backpressure backlog)."""
        return len(self._pending)

    def frame_time_stats(self) -> dict[str, Any]:
        samples = list(self._frame_times)
        return {
            "samples": len(samples),
            "last_ms": samples[-1] if samples else 0.0,
            "avg_ms": sum(samples) / len(samples) if samples else 0.0,
            "max_ms": max(samples) if samples else 0.0,
            "budget_ms": self.frame_budget_ms,
        }

    def get_status(self) -> dict[str, Any]:
        config = self.current_config
        return {
            "state": self.state.value,
            "wave_number": config.wave_number if config else None,
            "countdown_remaining": self.countdown_remaining,
            "countdown_duration": self.countdown_duration,
            "auto_advance": self.auto_advance,
            "skip_enabled": self.skip_enabled,
            "enemy_faction": self.enemy_faction,
            "faction_seed": self.wave_queue.faction_seed,
            "scaling_mode": self.difficulty.scaling_mode.value,
            "difficulty_multiplier": self.difficulty.multiplier,
            "pending_spawn_requests": len(self._pending),
            "error_message": self.error_message,
            "progress": self.state_manager.progress_snapshot(),
        }

    # ==================================================================
    # Serialization
    # ==================================================================

    def to_dict(self) -> dict[str, Any]:
        manager = self.state_manager.to_dict()
        return {
            "state": self.state.value,
            "pre_pause_state": self._pre_pause_state.value if self._pre_pause_state else None,
            "countdown_remaining": self.countdown_remaining,
            "countdown_duration": self.countdown_duration,
            "auto_advance": self.auto_advance,
            "skip_enabled": self.skip_enabled,
            "enemy_faction": self.enemy_faction,
            "faction_seed": self.faction_seed,
            "max_spawns_per_frame": self.max_spawns_per_frame,
            "frame_budget_ms": self.frame_budget_ms,
            "max_wave_duration": self.max_wave_duration,
            "error_message": self.error_message,
            "wave_queue": self.wave_queue.to_dict(),
            "difficulty_calculator": self.difficulty.to_dict(),
            "state_manager": manager,
            "current_config": self.current_config.to_dict() if self.current_config else None,
            "current_progress": manager["current_progress"],
            "pending_spawns": [e.to_dict() for e in self._pending],
        }

    @classmethod
    def from_dict(
        cls,
        data: dict[str, Any],
        event_bus: EventBus,
        game_config: WaveServerConfig | None = None,
        clock: Callable[[], float] = time.perf_counter,
    ) -> WaveOrchestrator:
        """Rebuild an orchestrator from :meth:`to_dict` output.

        The queue keeps its persisted configs and its faction seed, so
        waves generated after the restore match the uninterrupted run.
        """
        difficulty = DifficultyCalculator.from_dict(data.get("difficulty_calculator") or {})
        queue = WaveQueue.from_dict(data.get("wave_queue") or {}, calculator=difficulty)
        config_data = data.get("current_config")
        current_config = WaveConfig.from_dict(config_data) if config_data else None
        manager = WaveStateManager.from_dict(data.get("state_manager") or {}, current_config)

        orch = cls(event_bus, game_config, wave_queue=queue, difficulty=difficulty,
                   state_manager=manager, clock=clock)
        orch.state = OrchestratorState(data.get("state", OrchestratorState.STOPPED.value))
        pre_pause = data.get("pre_pause_state")
        orch._pre_pause_state = OrchestratorState(pre_pause) if pre_pause else None
        orch.countdown_remaining = float(data.get("countdown_remaining", 0.0))
        orch.countdown_duration = float(data.get("countdown_duration", orch.countdown_duration))
        orch.auto_advance = bool(data.get("auto_advance", orch.auto_advance))
        orch.skip_enabled = bool(data.get("skip_enabled", orch.skip_enabled))
        orch.enemy_faction = str(data.get("enemy_faction", orch.enemy_faction))
        seed = data.get("faction_seed", queue.faction_seed)
        orch.faction_seed = int(seed) if seed is not None else None
        orch.max_spawns_per_frame = max(1, int(data.get("max_spawns_per_frame",
                                                        orch.max_spawns_per_frame)))
        orch.frame_budget_ms = float(data.get("frame_budget_ms", orch.frame_budget_ms))
        orch.max_wave_duration = data.get("max_wave_duration", orch.max_wave_duration)
        orch.error_message = str(data.get("error_message", ""))
        orch.current_config = current_config
        orch._pending = deque(SpawnEvent.from_dict(e) for e in data.get("pending_spawns") or [])
        log.info("Orchestrator restored (state=%s, wave=%s, %d queued)",
                 orch.state.value,
                 current_config.wave_number if current_config else None,
                 len(queue))
        return orch
