"""Wave server configuration — loads tunable constants from config/waves.yaml.

Provides a single ``WaveServerConfig`` dataclass that is loaded once at
startup and then passed wherever wave tuning is needed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

import yaml

from waveserver.util.constants import (
    BASE_UNIT_COUNT,
    COUNTDOWN_DURATION,
    ENEMY_FACTION,
    FRAME_BUDGET_MS,
    GROWTH_RATE,
    LINEAR_STEP,
    MAX_HISTORY_SIZE,
    MAX_QUEUE_SIZE,
    MAX_SPAWN_BACKLOG,
    MAX_SPAWNS_PER_FRAME,
    PERF_WINDOW_SIZE,
    TARGET_SUCCESS_RATE,
    TICK_INTERVAL_MS,
    WS_PORT,
)

log = logging.getLogger(__name__)

DEFAULT_WAVE_CONFIG_PATH = "config/waves.yaml"


@dataclass
class WaveServerConfig:
    """All tunable wave constants.

    Loaded from ``config/waves.yaml``.  Every field has a sensible default
    so the server can start even without the file.
    """

    # -- Timing ------------------------------------------------------
    tick_interval_ms: float = TICK_INTERVAL_MS
    countdown_duration: float = COUNTDOWN_DURATION
    auto_advance: bool = True
    skip_enabled: bool = True

    # -- Queue & dispatch --------------------------------------------
    max_queue_size: int = MAX_QUEUE_SIZE
    max_spawns_per_frame: int = MAX_SPAWNS_PER_FRAME
    frame_budget_ms: float = FRAME_BUDGET_MS
    perf_window_size: int = PERF_WINDOW_SIZE
    max_history_size: int = MAX_HISTORY_SIZE
    spawn_backlog_size: int = MAX_SPAWN_BACKLOG

    # Seconds a wave may run before it is failed with reason "timeout".
    # None keeps stalled waves alive until an external kill report arrives.
    max_wave_duration: Optional[float] = None

    # -- Spawning side -----------------------------------------------
    enemy_faction: str = ENEMY_FACTION
    faction_seed: Optional[int] = None
    spawn_locations: List[List[float]] = field(default_factory=lambda: [[0.0, 0.0]])

    # -- Difficulty --------------------------------------------------
    scaling_mode: str = "exponential"
    difficulty_multiplier: float = 1.0
    base_unit_count: int = BASE_UNIT_COUNT
    growth_rate: float = GROWTH_RATE
    linear_step: int = LINEAR_STEP
    target_success_rate: float = TARGET_SUCCESS_RATE

    # -- Network / persistence ---------------------------------------
    rest_host: str = "0.0.0.0"
    rest_port: int = 8080
    ws_port: int = WS_PORT
    state_file: str = "state.yaml"


def load_wave_config(path: str = DEFAULT_WAVE_CONFIG_PATH) -> WaveServerConfig:
    """Load wave configuration from a YAML file.

    Missing keys fall back to dataclass defaults.  If the file does not
    exist, a warning is logged and pure defaults are returned.
    """
    p = Path(path)
    if not p.exists():
        log.warning("Wave config not found at %s — using defaults", p)
        return WaveServerConfig()

    with p.open() as f:
        raw = yaml.safe_load(f) or {}

    unknown = sorted(k for k in raw if k not in WaveServerConfig.__dataclass_fields__)
    if unknown:
        log.warning("Ignoring unknown wave config keys: %s", ", ".join(unknown))
    log.info("Loaded wave config from %s (%d keys)", p, len(raw))

    return WaveServerConfig(**{
        k: v for k, v in raw.items()
        if k in WaveServerConfig.__dataclass_fields__
    })
