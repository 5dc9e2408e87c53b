"""Game loop — drives the orchestrator at a fixed tick rate on asyncio.

Each tick measures the real time since the previous one and passes it
to ``WaveOrchestrator.process(dt)`` unchanged, so a late tick catches up
on every spawn that became due meanwhile.  Sleep time is shortened by
the work done in the tick; a tick whose work alone exceeds the interval
counts as an overrun.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import TYPE_CHECKING, Any

from waveserver.util.constants import PERF_WINDOW_SIZE, TICK_INTERVAL_MS

if TYPE_CHECKING:
    from waveserver.engine.orchestrator import WaveOrchestrator
    from waveserver.loaders.config_loader import WaveServerConfig
    from waveserver.util.events import EventBus

log = logging.getLogger(__name__)


class GameLoop:
    """Fixed-interval tick loop around one orchestrator.

    Args:
        event_bus: Global event bus (exposed to the debug monitor).
        orchestrator: Orchestrator advanced every tick.
        game_config: Supplies the tick interval; 16 ms when None.
    """

    def __init__(
        self,
        event_bus: EventBus,
        orchestrator: WaveOrchestrator,
        game_config: WaveServerConfig | None = None,
    ) -> None:
        self.event_bus = event_bus
        self.orchestrator = orchestrator
        interval_ms = game_config.tick_interval_ms if game_config else TICK_INTERVAL_MS
        self.interval: float = max(0.001, interval_ms / 1000.0)
        self._running = False
        self._loop_started: float | None = None

        self.tick_count: int = 0
        self.overruns: int = 0
        self.last_dt: float = 0.0
        self._work_ms: deque[float] = deque(maxlen=PERF_WINDOW_SIZE)

    async def run(self) -> None:
        """Tick until :meth:`stop` is called."""
        clock = time.monotonic
        self._running = True
        self._loop_started = previous = clock()
        log.info("Game loop started (%.1f ms interval)", self.interval * 1000)

        while self._running:
            tick_start = clock()
            self.step(tick_start - previous)
            previous = tick_start

            work = clock() - tick_start
            self._work_ms.append(work * 1000.0)
            if work > self.interval:
                self.overruns += 1
            await asyncio.sleep(max(0.0, self.interval - work))

        log.info("Game loop stopped after %d ticks (%d overruns)",
                 self.tick_count, self.overruns)

    def step(self, dt: float) -> None:
        """Advance the orchestrator by ``dt`` seconds."""
        self.tick_count += 1
        self.last_dt = dt
        self.orchestrator.process(dt)

    def stop(self) -> None:
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def uptime_seconds(self) -> float:
        if self._loop_started is None:
            return 0.0
        return time.monotonic() - self._loop_started

    def stats(self) -> dict[str, Any]:
        """Tick counters over the recent window, in milliseconds."""
        samples = list(self._work_ms)
        return {
            "running": self._running,
            "ticks": self.tick_count,
            "overruns": self.overruns,
            "interval_ms": self.interval * 1000.0,
            "last_dt_ms": self.last_dt * 1000.0,
            "avg_work_ms": sum(samples) / len(samples) if samples else 0.0,
            "max_work_ms": max(samples) if samples else 0.0,
        }
