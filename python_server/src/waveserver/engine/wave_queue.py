"""Wave queue — deterministic lookahead buffer of upcoming waves.

Every wave is produced by :func:`generate_wave_config`, which derives a
per-wave seed from ``(faction_seed, wave_number)`` and builds its own
``random.Random`` from it.  The queue itself keeps no RNG state, so a
given faction seed and wave number always yield the same WaveConfig no
matter how many waves were dequeued or skipped before.
"""

from __future__ import annotations

import logging
import math
import random
from collections import deque
from typing import Any, Optional, Sequence

from waveserver.engine.difficulty import (
    DifficultyCalculator,
    DifficultyParams,
    base_composition,
)
from waveserver.models.spawn_timing import SpawnTiming, TimingMode
from waveserver.models.wave_config import (
    Position,
    WaveConfig,
    derive_wave_seed,
    to_position,
)
from waveserver.util.constants import (
    BASE_UNIT_COUNT,
    BOSS_WAVE_INTERVAL,
    DEFAULT_SPAWN_DURATION,
    ENEMY_FACTION,
    LINEAR_STEP,
    MAX_QUEUE_SIZE,
)

log = logging.getLogger(__name__)

COMPOSITION_JITTER = 0.05


def default_params(wave_number: int) -> DifficultyParams:
    """Flat linear parameters used when no calculator is attached."""
    wave = max(1, wave_number)
    count = BASE_UNIT_COUNT + (wave - 1) * LINEAR_STEP
    return DifficultyParams(
        wave_number=wave,
        base_unit_count=count,
        unit_count=count,
        health_mult=1.0,
        damage_mult=1.0,
        speed_mult=1.0,
        composition=base_composition(1),
        spawn_duration=DEFAULT_SPAWN_DURATION,
        is_boss_wave=wave % BOSS_WAVE_INTERVAL == 0,
    )


def _pick_timing(rng: random.Random, params: DifficultyParams) -> SpawnTiming:
    duration = params.spawn_duration
    count = params.unit_count
    if params.is_boss_wave:
        return SpawnTiming(mode=TimingMode.SEQUENTIAL,
                           spawn_delay=duration / max(1, count - 1))

    roll = rng.random()
    if roll < 0.6:
        return SpawnTiming(mode=TimingMode.GRADUAL, spawn_duration=duration)
    if roll < 0.85:
        burst_size = 3 + rng.randrange(5)
        bursts = math.ceil(count / burst_size)
        return SpawnTiming(mode=TimingMode.BURST, burst_size=burst_size,
                           burst_delay=duration / max(1, bursts - 1))
    return SpawnTiming(mode=TimingMode.SEQUENTIAL,
                       spawn_delay=duration / max(1, count - 1))


def generate_wave_config(
    faction_seed: int,
    wave_number: int,
    faction: str,
    spawn_locations: Sequence[Position],
    calculator: Optional[DifficultyCalculator] = None,
) -> WaveConfig:
    """Build the WaveConfig for one wave from its seed alone."""
    seed = derive_wave_seed(faction_seed, wave_number)
    rng = random.Random(seed)
    params = calculator.calculate(wave_number) if calculator else default_params(wave_number)

    timing = _pick_timing(rng, params)
    composition = {
        unit_type: share * (1.0 + rng.uniform(-COMPOSITION_JITTER, COMPOSITION_JITTER))
        for unit_type, share in params.composition.items()
    }

    locations = [to_position(p) for p in spawn_locations]
    if locations:
        offset = rng.randrange(len(locations))
        locations = locations[offset:] + locations[:offset]

    return WaveConfig(
        wave_number=wave_number,
        faction=faction,
        base_unit_count=params.base_unit_count,
        composition=composition,
        spawn_locations=locations,
        timing=timing,
        difficulty_multiplier=params.difficulty_multiplier,
        seed=seed,
        faction_seed=faction_seed,
        modifiers=params.modifiers(),
    )


class WaveQueue:
    """Lookahead buffer of pre-generated WaveConfigs.

    Args:
        calculator: Difficulty calculator; built-in defaults when None.
        max_queue_size: Number of configs kept ahead.
        faction: Faction id written into generated configs.
        spawn_locations: Spawn points written into generated configs.
    """

    def __init__(
        self,
        calculator: Optional[DifficultyCalculator] = None,
        max_queue_size: int = MAX_QUEUE_SIZE,
        faction: str = ENEMY_FACTION,
        spawn_locations: Optional[Sequence[Position]] = None,
    ) -> None:
        self.calculator = calculator
        self.max_queue_size = max(1, max_queue_size)
        self.faction = faction
        self.spawn_locations: list[Position] = [to_position(p) for p in spawn_locations or []]
        self.faction_seed: Optional[int] = None
        self.current_wave: int = 0
        self._queue: deque[WaveConfig] = deque()

    # -- Setup -----------------------------------------------------------

    @property
    def is_initialized(self) -> bool:
        return self.faction_seed is not None

    def initialize(self, faction_seed: Optional[int] = None) -> int:
        """Seed the queue and pre-fill it, starting at wave 1.

        Returns the faction seed in use (a random one when None is given).
        """
        if faction_seed is None:
            faction_seed = random.SystemRandom().randrange(1, 2**31)
        self.faction_seed = int(faction_seed)
        self.current_wave = 0
        self._queue.clear()
        self._fill()
        log.info("Wave queue initialised (faction=%s, seed=%d, lookahead=%d)",
                 self.faction, self.faction_seed, self.max_queue_size)
        return self.faction_seed

    def set_spawn_locations(self, locations: Sequence[Position]) -> None:
        self.spawn_locations = [to_position(p) for p in locations]
        self.refresh()

    def set_faction(self, faction: str) -> None:
        self.faction = faction
        self.refresh()

    # -- Generation ------------------------------------------------------

    def generate(self, wave_number: int) -> WaveConfig:
        """Generate (without queueing) the config for ``wave_number``."""
        if self.faction_seed is None:
            raise RuntimeError("WaveQueue.generate() called before initialize()")
        return generate_wave_config(
            self.faction_seed, wave_number, self.faction,
            self.spawn_locations, self.calculator,
        )

    def _fill(self) -> None:
        next_wave = self._queue[-1].wave_number + 1 if self._queue else self.current_wave + 1
        while len(self._queue) < self.max_queue_size:
            self._queue.append(self.generate(next_wave))
            next_wave += 1

    def refresh(self) -> None:
        """Regenerate the queued configs in place (same wave numbers)."""
        if not self.is_initialized:
            return
        waves = [c.wave_number for c in self._queue]
        self._queue = deque(self.generate(n) for n in waves)
        self._fill()

    # -- Consumption -----------------------------------------------------

    def dequeue(self) -> Optional[WaveConfig]:
        """Pop the next wave and top the buffer back up."""
        if not self.is_initialized:
            log.warning("dequeue() on an uninitialised wave queue")
            return None
        if not self._queue:
            self._fill()
        config = self._queue.popleft()
        self.current_wave = config.wave_number
        self._fill()
        return config

    def peek(self) -> Optional[WaveConfig]:
        return self._queue[0] if self._queue else None

    def peek_at(self, index: int) -> Optional[WaveConfig]:
        if 0 <= index < len(self._queue):
            return self._queue[index]
        return None

    def upcoming(self) -> list[WaveConfig]:
        return list(self._queue)

    def skip_to_wave(self, wave_number: int) -> bool:
        """Drop the buffer and regenerate it starting at ``wave_number``."""
        if wave_number < 1:
            log.warning("skip_to_wave(%d) rejected: wave numbers start at 1", wave_number)
            return False
        if not self.is_initialized:
            log.warning("skip_to_wave(%d) on an uninitialised wave queue", wave_number)
            return False
        self._queue.clear()
        self.current_wave = wave_number - 1
        self._fill()
        log.info("Wave queue skipped to wave %d", wave_number)
        return True

    def __len__(self) -> int:
        return len(self._queue)

    # -- Serialization ---------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        return {
            "current_wave": self.current_wave,
            "faction_seed": self.faction_seed,
            "max_queue_size": self.max_queue_size,
            "faction": self.faction,
            "spawn_locations": [list(p) for p in self.spawn_locations],
            "queue": [c.to_dict() for c in self._queue],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any],
                  calculator: Optional[DifficultyCalculator] = None) -> WaveQueue:
        queue = cls(
            calculator=calculator,
            max_queue_size=int(data.get("max_queue_size", MAX_QUEUE_SIZE)),
            faction=str(data.get("faction", ENEMY_FACTION)),
            spawn_locations=data.get("spawn_locations") or [],
        )
        seed = data.get("faction_seed")
        queue.faction_seed = int(seed) if seed is not None else None
        queue.current_wave = int(data.get("current_wave", 0))
        queue._queue = deque(WaveConfig.from_dict(c) for c in data.get("queue") or [])
        return queue
