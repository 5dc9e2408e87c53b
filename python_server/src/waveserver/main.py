"""Wave server entry point.

Startup order:
1. Load tuning from the YAML config file
2. Restore the previous session from the state file, if one exists
3. Build the services (event bus, orchestrator, game loop, event feed)
4. Subscribe lifecycle logging to the event bus
5. Serve the REST API (uvicorn) and the websocket event stream, same event loop
6. Tick until SIGINT/SIGTERM, then write the state file

Usage:
    python -m waveserver.main [--config <path>] [--state_file <path>] [--autostart]
    # or, once installed:
    waveserver --config python_server/config/waves.yaml
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from dataclasses import dataclass
from typing import Any, Optional

from waveserver.engine.game_loop import GameLoop
from waveserver.engine.orchestrator import WaveOrchestrator
from waveserver.loaders.config_loader import (
    DEFAULT_WAVE_CONFIG_PATH,
    WaveServerConfig,
    load_wave_config,
)
from waveserver.network.event_feed import EventFeed
from waveserver.persistence.state_load import RestoredState, load_state
from waveserver.persistence.state_save import save_state
from waveserver.util.events import (
    EventBus,
    OrchestratorError,
    PerformanceWarning,
    WaveCompleted,
    WaveFailed,
    WaveStarted,
    WaveStarting,
)

log = logging.getLogger(__name__)


@dataclass
class Services:
    """Everything the REST API and the debug monitor need to reach."""

    game_config: Optional[WaveServerConfig] = None
    event_bus: Optional[EventBus] = None
    orchestrator: Optional[WaveOrchestrator] = None
    game_loop: Optional[GameLoop] = None
    event_feed: Optional[EventFeed] = None
    rest_server: Any = None
    ws_server: Any = None


# ===================================================================
# Assembly
# ===================================================================


def create_services(game_config: WaveServerConfig,
                    restored: Optional[RestoredState] = None) -> Services:
    """Build the orchestrator (fresh or from ``restored``), its game loop and event feed."""
    event_bus = EventBus()
    if restored is None:
        orchestrator = WaveOrchestrator(event_bus, game_config)
        log.info("New session (faction=%s, scaling=%s, seed=%s)",
                 game_config.enemy_faction, game_config.scaling_mode,
                 game_config.faction_seed if game_config.faction_seed is not None else "random")
    else:
        orchestrator = restored.build_orchestrator(event_bus, game_config)
        log.info("Session restored in state %s", orchestrator.state.value)

    return Services(
        game_config=game_config,
        event_bus=event_bus,
        orchestrator=orchestrator,
        game_loop=GameLoop(event_bus, orchestrator, game_config),
        event_feed=EventFeed(event_bus, game_config.spawn_backlog_size),
    )


def wire_events(services: Services) -> None:
    """Log the wave lifecycle.

    Spawn requests reach the unit system through the event feed, not here.
    """
    bus = services.event_bus

    bus.on(WaveStarting, lambda e: log.info(
        "Wave %d announced, %.0fs countdown", e.wave_number, e.countdown_seconds))
    bus.on(WaveStarted, lambda e: log.info(
        "Wave %d spawning %d units from %d locations",
        e.wave_number, e.config.unit_count, len(e.config.spawn_locations)))
    bus.on(WaveCompleted, lambda e: log.info(
        "Wave %d completed (%d killed, %d survived)",
        e.wave_number, e.history.units_killed, e.history.units_survived))
    bus.on(WaveFailed, lambda e: log.warning(
        "Wave %d failed: %s", e.wave_number, e.reason))
    bus.on(OrchestratorError, lambda e: log.error(
        "Orchestrator halted: %s", e.message))
    bus.on(PerformanceWarning, lambda e: log.debug(
        "Frame budget exceeded: %s", e.message))


# ===================================================================
# Runtime
# ===================================================================


async def start_network(services: Services) -> None:
    """Serve the REST API as a background task and open the event stream."""
    from waveserver.network.rest_api import create_app
    from waveserver.network.server import EventServer
    import uvicorn

    cfg = services.game_config or WaveServerConfig()
    server = uvicorn.Server(uvicorn.Config(
        create_app(services),
        host=cfg.rest_host,
        port=cfg.rest_port,
        log_level="info",
        access_log=False,
    ))
    services.rest_server = server
    asyncio.create_task(server.serve())
    log.info("REST API on http://%s:%d/api/status", cfg.rest_host, cfg.rest_port)

    ws_server = EventServer(services.event_feed, host=cfg.rest_host, port=cfg.ws_port)
    await ws_server.start()
    services.ws_server = ws_server


async def start_game_loop(services: Services, state_file: str) -> None:
    """Tick until a shutdown signal arrives, then persist the session."""
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, services.game_loop.stop)

    await services.game_loop.run()

    log.info("Shutting down, saving session to %s", state_file)
    try:
        await save_state(services.orchestrator, path=state_file)
    except Exception:
        log.exception("Session not saved")
    if services.ws_server is not None:
        await services.ws_server.stop()
    if services.rest_server is not None:
        services.rest_server.should_exit = True


async def _start(config_path: str = DEFAULT_WAVE_CONFIG_PATH,
                 state_file: str | None = None,
                 autostart: bool = False) -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    game_config = load_wave_config(config_path)
    state_file = state_file or game_config.state_file

    services = create_services(game_config, await load_state(path=state_file))
    wire_events(services)
    if autostart and services.orchestrator.start():
        log.info("First countdown started (--autostart)")

    await start_network(services)
    await start_game_loop(services, state_file)


def _arg_value(flag: str) -> Optional[str]:
    if flag not in sys.argv:
        return None
    idx = sys.argv.index(flag)
    if idx + 1 >= len(sys.argv):
        print(f"Error: {flag} requires an argument", file=sys.stderr)
        sys.exit(1)
    return sys.argv[idx + 1]


def main() -> None:
    """Console entry point.

    Flags:
        --config <path>      Tuning YAML (default: config/waves.yaml)
        --state_file <path>  Session file (default: ``state_file`` from the config)
        --autostart          Begin the first countdown immediately
    """
    asyncio.run(_start(
        config_path=_arg_value("--config") or DEFAULT_WAVE_CONFIG_PATH,
        state_file=_arg_value("--state_file"),
        autostart="--autostart" in sys.argv,
    ))


if __name__ == "__main__":
    main()
