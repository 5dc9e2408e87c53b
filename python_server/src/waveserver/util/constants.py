"""Wave constants — timing, scaling, limits.

All tuning defaults live here; ``config/waves.yaml`` overrides the ones
exposed through :class:`~waveserver.loaders.config_loader.WaveServerConfig`.
"""

# -- Timing --------------------------------------------------------------

TICK_INTERVAL_MS: float = 16.0
"""Interval between process() calls driven by the game loop."""

COUNTDOWN_DURATION: float = 10.0
"""Seconds between a wave being announced and its first spawn."""

INITIAL_SPAWN_DELAY: float = 3.0
"""Default delay between wave start and the first spawn."""

DEFAULT_SPAWN_DURATION: float = 10.0
"""Default window over which a gradual wave spreads its spawns."""

MAX_SPAWN_DURATION: float = 30.0

# -- Queue & dispatch ----------------------------------------------------

MAX_QUEUE_SIZE: int = 5
"""Number of pre-generated waves kept in the lookahead buffer."""

MAX_SPAWNS_PER_FRAME: int = 10
"""Spawn requests emitted per process() call; the rest wait a tick."""

FRAME_BUDGET_MS: float = 2.0
"""A process() call slower than this raises a performance warning."""

PERF_WINDOW_SIZE: int = 30

MAX_HISTORY_SIZE: int = 50

MAX_SPAWN_BACKLOG: int = 1000
"""Spawn requests held for polling unit systems before the oldest are dropped."""

# -- Scaling -------------------------------------------------------------

BASE_UNIT_COUNT: int = 10
GROWTH_RATE: float = 1.15
LINEAR_STEP: int = 3

HEALTH_PER_WAVE: float = 0.05
DAMAGE_PER_WAVE: float = 0.03
SPEED_PER_WAVE: float = 0.02
MAX_SPEED_MULT: float = 1.5

MIN_DIFFICULTY_MULTIPLIER: float = 0.1
MAX_DIFFICULTY_MULTIPLIER: float = 10.0

BOSS_WAVE_INTERVAL: int = 10
"""Every n-th wave is a boss wave."""

# -- Adaptive difficulty -------------------------------------------------

PERFORMANCE_WINDOW: int = 10
"""Number of completed waves feeding the adaptive rolling average."""

TARGET_SUCCESS_RATE: float = 0.7
ADAPTIVE_DEAD_ZONE: float = 0.1
MIN_ADAPTIVE_FACTOR: float = 0.5
MAX_ADAPTIVE_FACTOR: float = 2.0

# -- Factions ------------------------------------------------------------

ENEMY_FACTION: str = "enemy"

# -- Network -------------------------------------------------------------

WS_PORT: int = 8765
WS_PING_INTERVAL: int = 30
WS_PING_TIMEOUT: int = 10
