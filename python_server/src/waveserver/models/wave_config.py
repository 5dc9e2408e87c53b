"""WaveConfig model — everything needed to run one wave.

A WaveConfig is built once by the wave queue and treated as read-only
afterwards.  The WaveProgress that runs the wave keeps a reference to
it; nothing copies or mutates it.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from typing import Any, Optional, Tuple

from waveserver.models.spawn_timing import SpawnTiming
from waveserver.util.constants import BOSS_WAVE_INTERVAL

Position = Tuple[float, float]

COMPOSITION_TOLERANCE = 0.01


def derive_wave_seed(faction_seed: int, wave_number: int) -> int:
    """Stable 63-bit seed for one wave of one faction seed.

    Independent of interpreter hash randomisation, so a save file
    regenerates the same waves in a later process.
    """
    digest = hashlib.blake2b(
        f"{faction_seed}:{wave_number}".encode("ascii"), digest_size=8,
    ).digest()
    return int.from_bytes(digest, "big") & 0x7FFF_FFFF_FFFF_FFFF


def normalize_composition(composition: dict[str, float]) -> dict[str, float]:
    """Scale positive weights so they sum to 1.0; drop the rest."""
    positive = {k: float(v) for k, v in composition.items() if v and v > 0}
    total = sum(positive.values())
    if total <= 0:
        return {}
    if abs(total - 1.0) < 1e-12:
        # Already normalised; keep the exact floats so reloads are bit-identical
        return positive
    return {k: v / total for k, v in positive.items()}


def to_position(value: Any) -> Position:
    x, y = value
    return (float(x), float(y))


@dataclass
class WaveConfig:
    """Configuration of a single wave.

    Attributes:
        wave_number: 1-based wave index, unique within a session.
        faction: Faction id of the spawning side.
        base_unit_count: Unit count before ``difficulty_multiplier``.
        composition: Unit type → fraction of the wave (sums to 1.0).
        spawn_locations: Ordered spawn points, used round-robin.
        timing: Spawn schedule.
        difficulty_multiplier: Global scale applied to the unit count.
        seed: Per-wave seed; derived from ``faction_seed`` when None.
        faction_seed: Root seed the wave seed is derived from.
        modifiers: Stat scalars handed to every spawned unit.
        boss_unit_type: Unit type spawned once on boss waves.
    """

    wave_number: int
    faction: str
    base_unit_count: int
    composition: dict[str, float] = field(default_factory=dict)
    spawn_locations: list[Position] = field(default_factory=list)
    timing: SpawnTiming = field(default_factory=SpawnTiming)
    difficulty_multiplier: float = 1.0
    seed: Optional[int] = None
    faction_seed: int = 0
    modifiers: dict[str, float] = field(default_factory=dict)
    boss_unit_type: str = "boss"

    def __post_init__(self) -> None:
        self.composition = normalize_composition(self.composition)
        self.spawn_locations = [to_position(p) for p in self.spawn_locations]
        if self.seed is None:
            self.seed = derive_wave_seed(self.faction_seed, self.wave_number)

    # -- Derived ---------------------------------------------------------

    @property
    def unit_count(self) -> int:
        return max(1, int(round(self.base_unit_count * self.difficulty_multiplier)))

    @property
    def is_boss_wave(self) -> bool:
        return self.wave_number > 0 and self.wave_number % BOSS_WAVE_INTERVAL == 0

    def set_composition(self, composition: dict[str, float]) -> None:
        """Replace the composition, normalising it to sum to 1.0."""
        self.composition = normalize_composition(composition)

    def composition_counts(self) -> dict[str, int]:
        """Split ``unit_count`` across unit types.

        Uses largest-remainder apportionment so the counts always add up
        to ``unit_count``.  Boss waves reserve one slot for the boss.
        """
        remaining = self.unit_count
        counts: dict[str, int] = {}
        if self.is_boss_wave:
            counts[self.boss_unit_type] = 1
            remaining -= 1
        if remaining <= 0 or not self.composition:
            return counts

        raw = {t: frac * remaining for t, frac in self.composition.items()}
        floors = {t: int(v) for t, v in raw.items()}
        leftover = remaining - sum(floors.values())
        # sorted() is stable, so ties keep composition order
        by_remainder = sorted(raw, key=lambda t: raw[t] - floors[t], reverse=True)
        for unit_type in by_remainder[:leftover]:
            floors[unit_type] += 1

        for unit_type, n in floors.items():
            if n > 0:
                counts[unit_type] = counts.get(unit_type, 0) + n
        return counts

    # -- Validation ------------------------------------------------------

    def validate(self) -> list[str]:
        """Return a list of problems; empty when the config is usable."""
        errors: list[str] = []
        if self.wave_number < 1:
            errors.append(f"wave_number must be >= 1 (got {self.wave_number})")
        if not self.faction:
            errors.append("faction must not be empty")
        if self.base_unit_count <= 0:
            errors.append(f"unit count must be positive (got {self.base_unit_count})")
        if not self.composition:
            errors.append("composition must not be empty")
        elif abs(sum(self.composition.values()) - 1.0) > COMPOSITION_TOLERANCE:
            errors.append("composition fractions must sum to 1.0")
        if not self.spawn_locations:
            errors.append("spawn_locations must not be empty")
        return errors

    @property
    def is_valid(self) -> bool:
        return not self.validate()

    # -- Serialization ---------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        return {
            "wave_number": self.wave_number,
            "faction": self.faction,
            "base_unit_count": self.base_unit_count,
            "unit_count": self.unit_count,
            "composition": dict(self.composition),
            "spawn_locations": [list(p) for p in self.spawn_locations],
            "timing": self.timing.to_dict(),
            "difficulty_multiplier": self.difficulty_multiplier,
            "seed": self.seed,
            "faction_seed": self.faction_seed,
            "modifiers": dict(self.modifiers),
            "is_boss_wave": self.is_boss_wave,
            "boss_unit_type": self.boss_unit_type,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WaveConfig:
        # unit_count / is_boss_wave are derived and ignored on load
        return cls(
            wave_number=int(data["wave_number"]),
            faction=str(data.get("faction", "")),
            base_unit_count=int(data.get("base_unit_count", 0)),
            composition=dict(data.get("composition") or {}),
            spawn_locations=list(data.get("spawn_locations") or []),
            timing=SpawnTiming.from_dict(data.get("timing") or {}),
            difficulty_multiplier=float(data.get("difficulty_multiplier", 1.0)),
            seed=data.get("seed"),
            faction_seed=int(data.get("faction_seed", 0)),
            modifiers={k: float(v) for k, v in (data.get("modifiers") or {}).items()},
            boss_unit_type=str(data.get("boss_unit_type", "boss")),
        )
