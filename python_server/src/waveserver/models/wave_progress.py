"""WaveProgress — runtime tracker for the wave currently being fought.

The progress object expands its WaveConfig into a time-sorted queue of
:class:`SpawnEvent` entries and hands out the due ones on every
``update``.  Kill and damage callbacks from the unit system are folded
into per-faction performance counters.

Accounting invariants:
    units_spawned   = total_units - len(spawn_queue)
    units_remaining = units_spawned - units_killed
    wave_complete   flips to True once, when units_remaining == 0
                    and spawn_queue is empty
"""

from __future__ import annotations

import logging
import random
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Hashable, Optional

from waveserver.models.wave_config import Position, WaveConfig, to_position

log = logging.getLogger(__name__)

UnitId = Hashable


@dataclass
class SpawnEvent:
    """One scheduled unit appearance."""
    unit_type: str
    spawn_time: float
    spawn_location: Position
    index: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "unit_type": self.unit_type,
            "spawn_time": self.spawn_time,
            "spawn_location": list(self.spawn_location),
            "index": self.index,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SpawnEvent:
        return cls(
            unit_type=str(data["unit_type"]),
            spawn_time=float(data["spawn_time"]),
            spawn_location=to_position(data["spawn_location"]),
            index=int(data["index"]),
        )


@dataclass
class FactionPerformance:
    """Kills and damage credited to one faction during a wave."""
    kills: int = 0
    damage_dealt: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {"kills": self.kills, "damage_dealt": self.damage_dealt}


def build_spawn_queue(config: WaveConfig) -> list[SpawnEvent]:
    """Expand a config into spawn events sorted by spawn time.

    Unit types are interleaved with a shuffle seeded from the wave seed;
    a boss always comes last.  Locations cycle round-robin by index.
    """
    counts = config.composition_counts()
    boss_count = counts.pop(config.boss_unit_type, 0) if config.is_boss_wave else 0

    unit_types: list[str] = []
    for unit_type, n in counts.items():
        unit_types.extend([unit_type] * n)
    random.Random(config.seed).shuffle(unit_types)
    unit_types.extend([config.boss_unit_type] * boss_count)

    total = len(unit_types)
    locations = config.spawn_locations
    events = [
        SpawnEvent(
            unit_type=unit_type,
            spawn_time=config.timing.spawn_time_for(i, total),
            spawn_location=locations[i % len(locations)],
            index=i,
        )
        for i, unit_type in enumerate(unit_types)
    ]
    # Stable sort: equal timestamps stay in index order
    events.sort(key=lambda e: e.spawn_time)
    return events


class WaveProgress:
    """Mutable state of the active wave.

    Attributes:
        wave_number: Number of the wave being tracked.
        config: The WaveConfig this progress was started from.
        elapsed_time: Seconds since the wave started.
        started_at: Wall-clock start time (unix seconds).
        total_units: Number of spawn events the wave started with.
        units_spawned: Spawn events already handed out.
        units_killed: Tracked units reported dead.
        units_remaining: Handed-out units not yet reported dead.
        wave_complete: True once every unit spawned and died.
        active_unit_ids: Live unit ids reported through ``unit_spawned``.
        faction_performance: Faction id → kills / damage this wave.
    """

    def __init__(self, config: Optional[WaveConfig] = None,
                 started_at: float | None = None) -> None:
        self.wave_number: int = 0
        self.config: Optional[WaveConfig] = None
        self.elapsed_time: float = 0.0
        self.started_at: float = 0.0
        self.total_units: int = 0
        self.units_spawned: int = 0
        self.units_killed: int = 0
        self.units_remaining: int = 0
        self.wave_complete: bool = False
        self.active_unit_ids: set[UnitId] = set()
        self.faction_performance: dict[str, FactionPerformance] = {}
        self._spawn_queue: deque[SpawnEvent] = deque()
        if config is not None:
            self.start_wave(config, started_at)

    # -- Lifecycle -------------------------------------------------------

    def start_wave(self, config: WaveConfig, started_at: float | None = None) -> None:
        """Reset all counters and build the spawn queue for ``config``."""
        self.wave_number = config.wave_number
        self.config = config
        self.elapsed_time = 0.0
        self.started_at = time.time() if started_at is None else started_at
        self.units_spawned = 0
        self.units_killed = 0
        self.units_remaining = 0
        self.wave_complete = False
        self.active_unit_ids = set()
        self.faction_performance = {}
        self._spawn_queue = deque(build_spawn_queue(config))
        self.total_units = len(self._spawn_queue)
        log.debug("Wave %d: %d spawn events queued (last at %.2fs)",
                  self.wave_number, self.total_units,
                  self._spawn_queue[-1].spawn_time if self._spawn_queue else 0.0)

    def update(self, delta: float) -> list[SpawnEvent]:
        """Advance the wave clock and return every event that became due.

        A large ``delta`` returns all overdue events at once, in order.
        """
        if self.config is None or self.wave_complete:
            return []
        self.elapsed_time += max(0.0, delta)

        due: list[SpawnEvent] = []
        while self._spawn_queue and self._spawn_queue[0].spawn_time <= self.elapsed_time:
            due.append(self._spawn_queue.popleft())

        if due:
            self.units_spawned += len(due)
            self._recount()
        self._check_complete()
        return due

    # -- Callbacks from the unit system ----------------------------------

    def unit_spawned(self, unit_id: UnitId) -> None:
        """Track a unit the unit system created for this wave."""
        if unit_id in self.active_unit_ids:
            return
        if len(self.active_unit_ids) + self.units_killed >= self.units_spawned:
            log.debug("Wave %d: ignoring unit %r, no spawn outstanding",
                      self.wave_number, unit_id)
            return
        self.active_unit_ids.add(unit_id)

    def unit_killed(self, unit_id: UnitId, killer_faction: str | None = None) -> None:
        """Record a kill.  Unknown ids are ignored."""
        if unit_id not in self.active_unit_ids:
            return
        self.active_unit_ids.discard(unit_id)
        self.units_killed += 1
        if killer_faction:
            self._performance(killer_faction).kills += 1
        self._recount()
        self._check_complete()

    def damage_dealt(self, faction_id: str, amount: float) -> None:
        """Credit damage to a faction."""
        if not faction_id or amount <= 0:
            return
        self._performance(faction_id).damage_dealt += amount

    # -- Queries ---------------------------------------------------------

    @property
    def spawn_queue(self) -> list[SpawnEvent]:
        """Copy of the events not yet due."""
        return list(self._spawn_queue)

    @property
    def pending_spawns(self) -> int:
        return len(self._spawn_queue)

    def _performance(self, faction_id: str) -> FactionPerformance:
        perf = self.faction_performance.get(faction_id)
        if perf is None:
            perf = self.faction_performance[faction_id] = FactionPerformance()
        return perf

    def _recount(self) -> None:
        self.units_remaining = max(0, self.units_spawned - self.units_killed)

    def _check_complete(self) -> None:
        if self.wave_complete:
            return
        if self.units_remaining == 0 and not self._spawn_queue:
            self.wave_complete = True
            log.info("Wave %d complete after %.1fs (%d killed)",
                     self.wave_number, self.elapsed_time, self.units_killed)

    # -- Serialization ---------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        return {
            "wave_number": self.wave_number,
            "config": self.config.to_dict() if self.config else None,
            "elapsed_time": self.elapsed_time,
            "started_at": self.started_at,
            "total_units": self.total_units,
            "units_spawned": self.units_spawned,
            "units_killed": self.units_killed,
            "units_remaining": self.units_remaining,
            "wave_complete": self.wave_complete,
            "active_unit_ids": sorted(self.active_unit_ids, key=str),
            "faction_performance": {
                fid: perf.to_dict() for fid, perf in self.faction_performance.items()
            },
            "spawn_queue": [e.to_dict() for e in self._spawn_queue],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any],
                  config: Optional[WaveConfig] = None) -> WaveProgress:
        """Restore a progress object.

        ``config`` lets the caller share an already restored WaveConfig
        instead of building a second copy from ``data["config"]``.
        """
        progress = cls()
        if config is None and data.get("config"):
            config = WaveConfig.from_dict(data["config"])
        progress.config = config
        progress.wave_number = int(data.get("wave_number", 0))
        progress.elapsed_time = float(data.get("elapsed_time", 0.0))
        progress.started_at = float(data.get("started_at", 0.0))
        progress.total_units = int(data.get("total_units", 0))
        progress.units_spawned = int(data.get("units_spawned", 0))
        progress.units_killed = int(data.get("units_killed", 0))
        progress.wave_complete = bool(data.get("wave_complete", False))
        progress.active_unit_ids = set(data.get("active_unit_ids") or [])
        progress.faction_performance = {
            str(fid): FactionPerformance(
                kills=int(p.get("kills", 0)),
                damage_dealt=float(p.get("damage_dealt", 0.0)),
            )
            for fid, p in (data.get("faction_performance") or {}).items()
        }
        progress._spawn_queue = deque(
            SpawnEvent.from_dict(e) for e in data.get("spawn_queue") or []
        )
        progress._recount()
        return progress
