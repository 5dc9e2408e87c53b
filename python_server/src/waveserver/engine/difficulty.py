"""Difficulty calculator — wave number (+ recent performance) → wave parameters.

Scaling
-------
Unit count grows exponentially (``base * 1.15 ** (wave - 1)``) or
linearly (``base + (wave - 1) * step``).  Health and damage grow gently
(+5% / +3% per wave); speed grows +2% per wave and is capped at 1.5x.

Composition drifts with the wave number: the ``basic`` share falls to a
floor of 0.3, the ``ranged`` share rises to a ceiling of 0.4 and
``heavy`` takes whatever is left.

Adaptive mode
-------------
Each completed wave contributes one *success rate*: the share of all
damage dealt that came from non-enemy factions.  The last 10 samples
form a rolling window.  When the window average sits more than 0.1 above
the target rate the unit count is scaled up (toward 2x), more than 0.1
below it is scaled down (toward 0.5x), otherwise it is left alone.
``calculate`` only reads the window, so repeated calls with unchanged
history return identical parameters.

The global ``multiplier`` (clamped to [0.1, 10.0]) is applied last.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional

from waveserver.util.constants import (
    ADAPTIVE_DEAD_ZONE,
    BASE_UNIT_COUNT,
    BOSS_WAVE_INTERVAL,
    DAMAGE_PER_WAVE,
    DEFAULT_SPAWN_DURATION,
    ENEMY_FACTION,
    GROWTH_RATE,
    HEALTH_PER_WAVE,
    LINEAR_STEP,
    MAX_ADAPTIVE_FACTOR,
    MAX_DIFFICULTY_MULTIPLIER,
    MAX_SPAWN_DURATION,
    MAX_SPEED_MULT,
    MIN_ADAPTIVE_FACTOR,
    MIN_DIFFICULTY_MULTIPLIER,
    PERFORMANCE_WINDOW,
    SPEED_PER_WAVE,
    TARGET_SUCCESS_RATE,
)

log = logging.getLogger(__name__)


class ScalingMode(Enum):
    LINEAR = "linear"
    EXPONENTIAL = "exponential"
    ADAPTIVE = "adaptive"


@dataclass(frozen=True)
class DifficultyParams:
    """Everything the wave queue needs to build one WaveConfig."""
    wave_number: int
    base_unit_count: int
    unit_count: int
    health_mult: float
    damage_mult: float
    speed_mult: float
    composition: dict[str, float] = field(default_factory=dict)
    spawn_duration: float = DEFAULT_SPAWN_DURATION
    is_boss_wave: bool = False
    difficulty_multiplier: float = 1.0
    adaptive_factor: float = 1.0

    def modifiers(self) -> dict[str, float]:
        return {
            "health": self.health_mult,
            "damage": self.damage_mult,
            "speed": self.speed_mult,
        }


def scaled_unit_count(base_unit_count: int, multiplier: float) -> int:
    """Apply the global multiplier to a unit count (same rule as WaveConfig)."""
    return max(1, int(round(base_unit_count * multiplier)))


def base_composition(wave_number: int) -> dict[str, float]:
    """Composition ratios for a wave before any normalisation."""
    step = max(0, wave_number - 1)
    basic = max(0.3, 0.7 - 0.02 * step)
    ranged = min(0.4, 0.2 + 0.01 * step)
    heavy = max(0.0, 1.0 - basic - ranged)
    return {"basic": basic, "ranged": ranged, "heavy": heavy}


def _damage_of(perf: Any) -> float:
    if isinstance(perf, Mapping):
        return float(perf.get("damage_dealt", 0.0))
    return float(getattr(perf, "damage_dealt", 0.0))


def success_rate(faction_performance: Mapping[str, Any],
                 enemy_faction: str = ENEMY_FACTION) -> Optional[float]:
    """Share of all damage dealt by non-enemy factions.

    Returns None when nobody dealt any damage.
    """
    total = 0.0
    player = 0.0
    for faction_id, perf in faction_performance.items():
        damage = max(0.0, _damage_of(perf))
        total += damage
        if faction_id != enemy_faction:
            player += damage
    if total <= 0:
        return None
    return player / total


class DifficultyCalculator:
    """Turns a wave number into a :class:`DifficultyParams` bundle.

    Args:
        scaling_mode: Linear, exponential or adaptive unit-count growth.
        base_unit_count: Units in wave 1.
        growth_rate: Per-wave factor in exponential/adaptive mode.
        linear_step: Units added per wave in linear mode.
        target_success_rate: Success rate adaptive mode steers toward.
        multiplier: Global difficulty multiplier.
        enemy_faction: Faction whose damage does not count as player success.
    """

    def __init__(
        self,
        scaling_mode: ScalingMode = ScalingMode.EXPONENTIAL,
        base_unit_count: int = BASE_UNIT_COUNT,
        growth_rate: float = GROWTH_RATE,
        linear_step: int = LINEAR_STEP,
        target_success_rate: float = TARGET_SUCCESS_RATE,
        multiplier: float = 1.0,
        enemy_faction: str = ENEMY_FACTION,
    ) -> None:
        self.scaling_mode = scaling_mode
        self.base_unit_count = base_unit_count
        self.growth_rate = growth_rate
        self.linear_step = linear_step
        self.target_success_rate = target_success_rate
        self.enemy_faction = enemy_faction
        self._multiplier = 1.0
        self.multiplier = multiplier
        self._performance_history: deque[float] = deque(maxlen=PERFORMANCE_WINDOW)

    # -- Tuning ----------------------------------------------------------

    @property
    def multiplier(self) -> float:
        return self._multiplier

    @multiplier.setter
    def multiplier(self, value: float) -> None:
        clamped = min(MAX_DIFFICULTY_MULTIPLIER, max(MIN_DIFFICULTY_MULTIPLIER, float(value)))
        if clamped != value:
            log.warning("Difficulty multiplier %.2f clamped to %.2f", value, clamped)
        self._multiplier = clamped

    @property
    def performance_history(self) -> list[float]:
        return list(self._performance_history)

    # -- Adaptive feedback -----------------------------------------------

    def record_performance(self, faction_performance: Mapping[str, Any]) -> Optional[float]:
        """Add one completed wave to the rolling window.

        Waves without any damage carry no signal and are skipped.
        """
        rate = success_rate(faction_performance, self.enemy_faction)
        if rate is None:
            log.debug("No damage recorded — performance sample skipped")
            return None
        self._performance_history.append(rate)
        log.debug("Performance sample %.2f (window avg %.2f over %d)",
                  rate, self.rolling_success_rate() or 0.0, len(self._performance_history))
        return rate

    def rolling_success_rate(self, extra: Optional[float] = None) -> Optional[float]:
        samples = list(self._performance_history)
        if extra is not None:
            samples = (samples + [extra])[-PERFORMANCE_WINDOW:]
        if not samples:
            return None
        return sum(samples) / len(samples)

    def adaptive_factor(self, extra: Optional[float] = None) -> float:
        """Unit-count scale derived from the rolling success rate."""
        avg = self.rolling_success_rate(extra)
        if avg is None:
            return 1.0
        target = self.target_success_rate
        if avg > target + ADAPTIVE_DEAD_ZONE:
            headroom = max(1e-6, 1.0 - target)
            factor = 1.0 + (avg - target) / headroom
        elif avg < target - ADAPTIVE_DEAD_ZONE:
            headroom = max(1e-6, target)
            factor = 1.0 - 0.5 * (target - avg) / headroom
        else:
            return 1.0
        return min(MAX_ADAPTIVE_FACTOR, max(MIN_ADAPTIVE_FACTOR, factor))

    # -- Calculation -----------------------------------------------------

    def calculate(self, wave_number: int,
                  faction_performance: Optional[Mapping[str, Any]] = None) -> DifficultyParams:
        """Parameters for ``wave_number``.

        ``faction_performance`` previews one extra adaptive sample without
        recording it.
        """
        wave = max(1, wave_number)
        step = wave - 1

        if self.scaling_mode == ScalingMode.LINEAR:
            raw_count = self.base_unit_count + step * self.linear_step
        else:
            raw_count = self.base_unit_count * self.growth_rate ** step

        factor = 1.0
        if self.scaling_mode == ScalingMode.ADAPTIVE:
            extra = None
            if faction_performance is not None:
                extra = success_rate(faction_performance, self.enemy_faction)
            factor = self.adaptive_factor(extra)
            raw_count *= factor

        m = self._multiplier
        base_count = max(1, int(round(raw_count)))
        speed = min(MAX_SPEED_MULT, (1.0 + SPEED_PER_WAVE * step) * m)

        return DifficultyParams(
            wave_number=wave,
            base_unit_count=base_count,
            unit_count=scaled_unit_count(base_count, m),
            health_mult=(1.0 + HEALTH_PER_WAVE * step) * m,
            damage_mult=(1.0 + DAMAGE_PER_WAVE * step) * m,
            speed_mult=speed,
            composition=base_composition(wave),
            spawn_duration=min(MAX_SPAWN_DURATION, DEFAULT_SPAWN_DURATION + 0.5 * step),
            is_boss_wave=wave % BOSS_WAVE_INTERVAL == 0,
            difficulty_multiplier=m,
            adaptive_factor=factor,
        )

    # -- Serialization ---------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        return {
            "scaling_mode": self.scaling_mode.value,
            "multiplier": self._multiplier,
            "performance_history": list(self._performance_history),
            "target_success_rate": self.target_success_rate,
            "base_unit_count": self.base_unit_count,
            "growth_rate": self.growth_rate,
            "linear_step": self.linear_step,
            "enemy_faction": self.enemy_faction,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DifficultyCalculator:
        calc = cls(
            scaling_mode=ScalingMode(data.get("scaling_mode", ScalingMode.EXPONENTIAL.value)),
            base_unit_count=int(data.get("base_unit_count", BASE_UNIT_COUNT)),
            growth_rate=float(data.get("growth_rate", GROWTH_RATE)),
            linear_step=int(data.get("linear_step", LINEAR_STEP)),
            target_success_rate=float(data.get("target_success_rate", TARGET_SUCCESS_RATE)),
            multiplier=float(data.get("multiplier", 1.0)),
            enemy_faction=str(data.get("enemy_faction", ENEMY_FACTION)),
        )
        calc._performance_history.extend(
            float(x) for x in data.get("performance_history") or []
        )
        return calc
