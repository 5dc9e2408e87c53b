"""Wave state manager — lock-guarded owner of wave progress and history.

The REST API and the debug monitor read wave state while the game loop
mutates it.  Every public method takes the single ``threading.Lock``
for its whole body and releases it before returning; public methods
never call each other, so the lock is never taken twice.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from typing import TYPE_CHECKING, Any, Optional

from waveserver.models.wave_history import WaveHistory
from waveserver.models.wave_progress import SpawnEvent, UnitId, WaveProgress
from waveserver.util.constants import MAX_HISTORY_SIZE

if TYPE_CHECKING:
    from waveserver.models.wave_config import WaveConfig

log = logging.getLogger(__name__)


class WaveStateManager:
    """Holds the current WaveProgress and a capped history of finished waves.

    Args:
        max_history_size: Number of WaveHistory entries retained.
    """

    def __init__(self, max_history_size: int = MAX_HISTORY_SIZE) -> None:
        self._lock = threading.Lock()
        self.max_history_size = max(1, max_history_size)
        self._progress: Optional[WaveProgress] = None
        self._history: deque[WaveHistory] = deque(maxlen=self.max_history_size)
        self.current_wave: int = 0
        self.highest_wave: int = 0
        self.total_completed: int = 0

    # -- Lifecycle -------------------------------------------------------

    def start_wave(self, config: WaveConfig) -> WaveProgress:
        """Replace the current progress with a fresh one for ``config``."""
        with self._lock:
            if self._progress is not None and not self._progress.wave_complete:
                log.warning("Wave %d superseded by wave %d before completion",
                            self._progress.wave_number, config.wave_number)
            progress = WaveProgress(config)
            self._progress = progress
            self.current_wave = config.wave_number
            self.highest_wave = max(self.highest_wave, config.wave_number)
            return progress

    def complete_wave(self) -> Optional[WaveHistory]:
        """Snapshot the current wave into history and clear it.

        Returns None (and does nothing) when no wave is active.  A wave
        that is not complete yet is recorded as unsuccessful.
        """
        with self._lock:
            progress = self._progress
            if progress is None:
                log.debug("complete_wave() with no active wave")
                return None
            history = WaveHistory.from_progress(progress)
            self._history.append(history)
            if history.was_successful:
                self.total_completed += 1
            self._progress = None
            return history

    def abort_wave(self) -> Optional[WaveProgress]:
        """Drop the current wave without recording history."""
        with self._lock:
            progress = self._progress
            self._progress = None
            return progress

    # -- Progress mutation -----------------------------------------------

    def update(self, delta: float) -> list[SpawnEvent]:
        with self._lock:
            if self._progress is None:
                return []
            return self._progress.update(delta)

    def unit_spawned(self, unit_id: UnitId) -> bool:
        with self._lock:
            if self._progress is None:
                return False
            self._progress.unit_spawned(unit_id)
            return True

    def unit_killed(self, unit_id: UnitId, killer_faction: str | None = None) -> bool:
        with self._lock:
            if self._progress is None:
                return False
            self._progress.unit_killed(unit_id, killer_faction)
            return True

    def damage_dealt(self, faction_id: str, amount: float) -> bool:
        with self._lock:
            if self._progress is None:
                return False
            self._progress.damage_dealt(faction_id, amount)
            return True

    # -- Queries ---------------------------------------------------------

    @property
    def has_active_wave(self) -> bool:
        with self._lock:
            return self._progress is not None

    def get_current_progress(self) -> Optional[WaveProgress]:
        """Detached copy of the live progress; the config is shared, not copied."""
        with self._lock:
            if self._progress is None:
                return None
            return WaveProgress.from_dict(self._progress.to_dict(), config=self._progress.config)

    def is_wave_complete(self) -> bool:
        with self._lock:
            return self._progress is not None and self._progress.wave_complete

    def spawn_queue_empty(self) -> bool:
        with self._lock:
            return self._progress is None or self._progress.pending_spawns == 0

    def elapsed_time(self) -> float:
        with self._lock:
            return self._progress.elapsed_time if self._progress else 0.0

    def progress_snapshot(self) -> Optional[dict[str, Any]]:
        """Counters of the active wave, copied under the lock."""
        with self._lock:
            p = self._progress
            if p is None:
                return None
            return {
                "wave_number": p.wave_number,
                "elapsed_time": p.elapsed_time,
                "total_units": p.total_units,
                "units_spawned": p.units_spawned,
                "units_killed": p.units_killed,
                "units_remaining": p.units_remaining,
                "pending_spawns": p.pending_spawns,
                "active_units": len(p.active_unit_ids),
                "wave_complete": p.wave_complete,
            }

    def get_history(self) -> list[WaveHistory]:
        """Copy of the retained history, most recent first."""
        with self._lock:
            return list(reversed(self._history))

    def get_statistics(self) -> dict[str, Any]:
        """Aggregate figures over the retained history."""
        with self._lock:
            entries = list(self._history)
            count = len(entries)
            total_duration = sum(h.duration for h in entries)
            successes = sum(1 for h in entries if h.was_successful)
            progress = self._progress
            return {
                "waves_recorded": count,
                "current_wave": self.current_wave,
                "highest_wave": self.highest_wave,
                "total_completed": self.total_completed,
                "total_spawned": sum(h.units_spawned for h in entries),
                "total_killed": sum(h.units_killed for h in entries),
                "total_survived": sum(h.units_survived for h in entries),
                "total_duration": total_duration,
                "average_duration": total_duration / count if count else 0.0,
                "success_rate": successes / count if count else 0.0,
                "active_wave": progress.wave_number if progress else None,
                "active_units_remaining": progress.units_remaining if progress else 0,
            }

    # -- Serialization ---------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        with self._lock:
            return {
                "current_wave": self.current_wave,
                "highest_wave": self.highest_wave,
                "total_completed": self.total_completed,
                "max_history_size": self.max_history_size,
                "history": [h.to_dict() for h in self._history],
                "current_progress": self._progress.to_dict() if self._progress else None,
            }

    @classmethod
    def from_dict(cls, data: dict[str, Any],
                  current_config: Optional[WaveConfig] = None) -> WaveStateManager:
        """Restore a manager; ``current_config`` is shared with the progress."""
        manager = cls(max_history_size=int(data.get("max_history_size", MAX_HISTORY_SIZE)))
        manager.current_wave = int(data.get("current_wave", 0))
        manager.highest_wave = int(data.get("highest_wave", 0))
        manager.total_completed = int(data.get("total_completed", 0))
        manager._history.extend(WaveHistory.from_dict(h) for h in data.get("history") or [])
        progress_data = data.get("current_progress")
        if progress_data:
            config = current_config
            if config is not None and config.wave_number != progress_data.get("wave_number"):
                config = None
            manager._progress = WaveProgress.from_dict(progress_data, config=config)
        return manager
