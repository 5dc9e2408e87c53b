"""REST API — FastAPI application for wave control and unit callbacks.

The UI polls status, upcoming waves, history and statistics; the
external unit system reports spawns, kills and damage, and collects
spawn requests from ``GET /api/spawns/pending`` when it does not hold
the websocket event stream open.  All handlers run on the same event
loop as the game loop and go through the orchestrator, the event feed
or the lock-guarded state manager.

Usage::

    from waveserver.network.rest_api import create_app

    app = create_app(services)
    # Start with uvicorn as an asyncio task alongside the game loop
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Callable, Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware

from waveserver.debug.monitor import collect_snapshot
from waveserver.network.rest_models import (
    CallbackResponse,
    ConfigUpdateRequest,
    ConfigUpdateResponse,
    ControlResponse,
    DamageRequest,
    FailWaveRequest,
    HistoryResponse,
    PendingSpawnsResponse,
    UnitKilledRequest,
    UnitSpawnedRequest,
    WaveListResponse,
)

if TYPE_CHECKING:
    from waveserver.main import Services

log = logging.getLogger(__name__)


def create_app(services: "Services") -> FastAPI:
    """Factory: create and return a configured FastAPI application.

    The ``services`` reference is captured by closure so every endpoint
    can reach the orchestrator without global state.
    """
    app = FastAPI(title="Wave Server", version="1.0.0")

    # The wave UI is served from a different origin
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    orch = services.orchestrator

    # =================================================================
    # Queries
    # =================================================================

    @app.get("/api/status")
    async def status() -> dict[str, Any]:
        return orch.get_status()

    @app.get("/api/waves/upcoming", response_model=WaveListResponse)
    async def upcoming() -> dict[str, Any]:
        return {"waves": [c.to_dict() for c in orch.wave_queue.upcoming()]}

    @app.get("/api/waves/history", response_model=HistoryResponse)
    async def history() -> dict[str, Any]:
        return {"history": [h.to_dict() for h in orch.state_manager.get_history()]}

    @app.get("/api/waves/statistics")
    async def statistics() -> dict[str, Any]:
        return orch.state_manager.get_statistics()

    @app.get("/api/debug/snapshot")
    async def debug_snapshot() -> dict[str, Any]:
        return collect_snapshot(services)

    # =================================================================
    # Control
    # =================================================================

    actions: dict[str, Callable[[], bool]] = {
        "start": orch.start,
        "stop": orch.stop,
        "pause": orch.pause,
        "resume": orch.resume,
        "skip_countdown": orch.skip_countdown,
        "clear_error": orch.clear_error,
    }

    @app.post("/api/control/fail", response_model=ControlResponse)
    async def fail_wave(body: FailWaveRequest) -> dict[str, Any]:
        ok = orch.fail_wave(body.reason)
        return {
            "success": ok,
            "state": orch.state.value,
            "reason": "" if ok else "No wave in progress",
        }

    @app.post("/api/control/{action}", response_model=ControlResponse)
    async def control(action: str) -> dict[str, Any]:
        handler = actions.get(action)
        if handler is None:
            raise HTTPException(status_code=404, detail=f"Unknown action {action!r}")
        ok = handler()
        log.info("REST control %s -> %s (state=%s)", action, ok, orch.state.value)
        return {
            "success": ok,
            "state": orch.state.value,
            "reason": "" if ok else f"{action} not allowed in state {orch.state.value}",
        }

    # =================================================================
    # Configuration
    # =================================================================

    @app.put("/api/config", response_model=ConfigUpdateResponse)
    async def update_config(body: ConfigUpdateRequest) -> dict[str, Any]:
        setters: list[tuple[str, Any, Callable[[Any], bool]]] = [
            ("spawn_locations", body.spawn_locations,
             lambda v: orch.set_spawn_locations([tuple(p) for p in v])),
            ("enemy_faction", body.enemy_faction, orch.set_enemy_faction),
            ("countdown_duration", body.countdown_duration, orch.set_countdown_duration),
            ("difficulty_mode", body.difficulty_mode, orch.set_difficulty_mode),
            ("difficulty_multiplier", body.difficulty_multiplier, orch.set_difficulty_multiplier),
            ("faction_seed", body.faction_seed, orch.set_faction_seed),
        ]
        applied: list[str] = []
        rejected: list[str] = []
        for name, value, setter in setters:
            if value is None:
                continue
            (applied if setter(value) else rejected).append(name)
        return {
            "success": not rejected,
            "applied": applied,
            "rejected": rejected,
            "state": orch.state.value,
        }

    # =================================================================
    # Unit system callbacks
    # =================================================================

    @app.post("/api/units/spawned", response_model=CallbackResponse)
    async def unit_spawned(body: UnitSpawnedRequest) -> dict[str, Any]:
        return {"accepted": orch.on_unit_spawned(body.unit_id)}

    @app.post("/api/units/killed", response_model=CallbackResponse)
    async def unit_killed(body: UnitKilledRequest) -> dict[str, Any]:
        return {"accepted": orch.on_unit_killed(body.unit_id, body.killer_faction)}

    @app.post("/api/damage", response_model=CallbackResponse)
    async def damage(body: DamageRequest) -> dict[str, Any]:
        return {"accepted": orch.on_damage_dealt(body.faction_id, body.amount)}

    @app.get("/api/spawns/pending", response_model=PendingSpawnsResponse)
    async def pending_spawns(limit: Optional[int] = Query(default=None, ge=1)) -> dict[str, Any]:
        """Hand out backlogged spawn requests; each is returned only once."""
        feed = services.event_feed
        if feed is None:
            raise HTTPException(status_code=503, detail="Event feed not running")
        return {
            "spawns": feed.drain_spawns(limit),
            "remaining": feed.pending_spawns,
            "dropped": feed.dropped_spawns,
        }

    return app
