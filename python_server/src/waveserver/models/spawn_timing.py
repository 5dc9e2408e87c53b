"""Spawn timing policies.

A :class:`SpawnTiming` maps a unit's index within a wave to the number
of seconds after wave start at which it appears.  It holds no runtime
state, so one instance can be shared by every spawn event of a wave.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from waveserver.util.constants import DEFAULT_SPAWN_DURATION, INITIAL_SPAWN_DELAY


class TimingMode(Enum):
    """How the units of a wave are spread over time."""

    INSTANT = "instant"
    SEQUENTIAL = "sequential"
    BURST = "burst"
    GRADUAL = "gradual"


@dataclass(frozen=True)
class SpawnTiming:
    """Spawn schedule for one wave.

    Attributes:
        mode: Timing policy.
        spawn_delay: Seconds between units (sequential).
        burst_size: Units per burst (burst).
        burst_delay: Seconds between bursts (burst).
        spawn_duration: Window the units are spread over (gradual).
        initial_delay: Offset of the first spawn from wave start (all modes).
    """

    mode: TimingMode = TimingMode.GRADUAL
    spawn_delay: float = 0.5
    burst_size: int = 5
    burst_delay: float = 2.0
    spawn_duration: float = DEFAULT_SPAWN_DURATION
    initial_delay: float = INITIAL_SPAWN_DELAY

    def spawn_time_for(self, index: int, total: int) -> float:
        """Seconds after wave start at which unit ``index`` of ``total`` spawns."""
        index = max(0, index)
        base = max(0.0, self.initial_delay)

        if self.mode == TimingMode.INSTANT:
            return base
        if self.mode == TimingMode.SEQUENTIAL:
            return base + index * max(0.0, self.spawn_delay)
        if self.mode == TimingMode.BURST:
            size = max(1, self.burst_size)
            return base + (index // size) * max(0.0, self.burst_delay)

        # Gradual: spread linearly over [initial_delay, initial_delay + duration]
        if total <= 1:
            return base
        fraction = min(index, total - 1) / (total - 1)
        return base + max(0.0, self.spawn_duration) * fraction

    def total_duration(self, total: int) -> float:
        """Offset of the last spawn from wave start."""
        if total <= 0:
            return max(0.0, self.initial_delay)
        return self.spawn_time_for(total - 1, total)

    def to_dict(self) -> dict[str, Any]:
        return {
            "mode": self.mode.value,
            "spawn_delay": self.spawn_delay,
            "burst_size": self.burst_size,
            "burst_delay": self.burst_delay,
            "spawn_duration": self.spawn_duration,
            "initial_delay": self.initial_delay,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SpawnTiming:
        return cls(
            mode=TimingMode(data.get("mode", TimingMode.GRADUAL.value)),
            spawn_delay=float(data.get("spawn_delay", 0.5)),
            burst_size=int(data.get("burst_size", 5)),
            burst_delay=float(data.get("burst_delay", 2.0)),
            spawn_duration=float(data.get("spawn_duration", DEFAULT_SPAWN_DURATION)),
            initial_delay=float(data.get("initial_delay", INITIAL_SPAWN_DELAY)),
        )
