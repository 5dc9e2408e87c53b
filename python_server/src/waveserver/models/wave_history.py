"""WaveHistory — immutable record of a finished wave."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from waveserver.models.wave_progress import WaveProgress


@dataclass(frozen=True)
class WaveHistory:
    """Snapshot taken when a wave completes or fails.

    Attributes:
        wave_number: Number of the finished wave.
        timestamp: Unix time at which the snapshot was taken.
        duration: Seconds of wave time (excludes paused time).
        units_spawned: Spawn events handed out.
        units_killed: Units reported dead.
        units_survived: Spawned units still alive at the end.
        faction_performance: Faction id → {"kills", "damage_dealt"}.
        configuration_snapshot: ``WaveConfig.to_dict()`` of the wave.
        was_successful: Wave completed with every unit eliminated.
        seed: Seed the wave was generated from.
    """

    wave_number: int
    timestamp: float
    duration: float
    units_spawned: int
    units_killed: int
    units_survived: int
    faction_performance: dict[str, dict[str, float]] = field(default_factory=dict)
    configuration_snapshot: dict[str, Any] = field(default_factory=dict)
    was_successful: bool = False
    seed: int = 0

    @classmethod
    def from_progress(cls, progress: WaveProgress,
                      timestamp: float | None = None) -> WaveHistory:
        config = progress.config
        return cls(
            wave_number=progress.wave_number,
            timestamp=time.time() if timestamp is None else timestamp,
            duration=progress.elapsed_time,
            units_spawned=progress.units_spawned,
            units_killed=progress.units_killed,
            units_survived=max(0, progress.units_spawned - progress.units_killed),
            faction_performance={
                fid: perf.to_dict() for fid, perf in progress.faction_performance.items()
            },
            configuration_snapshot=config.to_dict() if config else {},
            was_successful=progress.wave_complete and progress.units_remaining == 0,
            seed=config.seed if config and config.seed is not None else 0,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "wave_number": self.wave_number,
            "timestamp": self.timestamp,
            "duration": self.duration,
            "units_spawned": self.units_spawned,
            "units_killed": self.units_killed,
            "units_survived": self.units_survived,
            "faction_performance": {
                fid: dict(perf) for fid, perf in self.faction_performance.items()
            },
            "configuration_snapshot": dict(self.configuration_snapshot),
            "was_successful": self.was_successful,
            "seed": self.seed,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WaveHistory:
        return cls(
            wave_number=int(data["wave_number"]),
            timestamp=float(data.get("timestamp", 0.0)),
            duration=float(data.get("duration", 0.0)),
            units_spawned=int(data.get("units_spawned", 0)),
            units_killed=int(data.get("units_killed", 0)),
            units_survived=int(data.get("units_survived", 0)),
            faction_performance={
                str(fid): dict(perf)
                for fid, perf in (data.get("faction_performance") or {}).items()
            },
            configuration_snapshot=dict(data.get("configuration_snapshot") or {}),
            was_successful=bool(data.get("was_successful", False)),
            seed=int(data.get("seed", 0)),
        )
