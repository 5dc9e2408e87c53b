"""Debug snapshot — one JSON-ready view of the running wave server.

Served by ``GET /api/debug/snapshot``.  Every section degrades to
``{"status": "not created"}`` when its service is missing so the
endpoint works during startup and in tests.
"""

from __future__ import annotations

import os
import sys
import time
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from waveserver.main import Services

_MISSING = {"status": "not created"}


def collect_snapshot(services: Services) -> dict[str, Any]:
    """Gather loop, bus, feed, orchestrator, queue and history state."""
    orch = services.orchestrator
    return {
        "game_loop": _loop_section(services.game_loop),
        "event_bus": _bus_section(services.event_bus),
        "event_feed": _feed_section(services.event_feed),
        "orchestrator": _orchestrator_section(orch) if orch else dict(_MISSING),
        "queue": _queue_section(orch) if orch else dict(_MISSING),
        "history": _history_section(orch) if orch else dict(_MISSING),
        "process": _process_section(),
    }


def _loop_section(loop) -> dict[str, Any]:
    if loop is None:
        return dict(_MISSING)
    stats = loop.stats()
    section = {k: round(v, 3) if isinstance(v, float) else v for k, v in stats.items()}
    section["uptime"] = _fmt_duration(loop.uptime_seconds)
    return section


def _bus_section(bus) -> dict[str, Any]:
    if bus is None:
        return dict(_MISSING)
    counts = {
        getattr(event_type, "__name__", str(event_type)): len(handlers)
        for event_type, handlers in bus._handlers.items()
        if handlers
    }
    return {"events": dict(sorted(counts.items())), "total_handlers": sum(counts.values())}


def _feed_section(feed) -> dict[str, Any]:
    if feed is None:
        return dict(_MISSING)
    return {
        "last_seq": feed.last_seq,
        "listeners": feed.listener_count,
        "pending_spawns": feed.pending_spawns,
        "dropped_spawns": feed.dropped_spawns,
    }


def _orchestrator_section(orch) -> dict[str, Any]:
    config = orch.current_config
    frames = orch.frame_time_stats()
    return {
        "state": orch.state.value,
        "wave": config.wave_number if config else None,
        "countdown_remaining": round(orch.countdown_remaining, 2),
        "pending_spawn_requests": orch.pending_spawn_requests,
        "error": orch.error_message or None,
        "frame_ms": {k: round(v, 3) if isinstance(v, float) else v for k, v in frames.items()},
        "progress": orch.state_manager.progress_snapshot(),
    }


def _queue_section(orch) -> dict[str, Any]:
    queue = orch.wave_queue
    return {
        "faction_seed": queue.faction_seed,
        "last_dequeued": queue.current_wave,
        "upcoming": [
            {
                "wave": c.wave_number,
                "units": c.unit_count,
                "timing": c.timing.mode.value,
                "boss": c.is_boss_wave,
            }
            for c in queue.upcoming()
        ],
    }


def _history_section(orch) -> dict[str, Any]:
    stats = orch.state_manager.get_statistics()
    return {
        "recorded": stats["waves_recorded"],
        "highest_wave": stats["highest_wave"],
        "success_rate": _fmt_percent(stats["success_rate"]),
        "avg_duration": _fmt_duration(stats["average_duration"]),
        "adaptive_window": [round(x, 3) for x in orch.difficulty.performance_history],
    }


def _process_section() -> dict[str, Any]:
    info: dict[str, Any] = {
        "pid": os.getpid(),
        "python": sys.version.split()[0],
        "time": time.strftime("%Y-%m-%dT%H:%M:%S"),
    }
    if sys.platform != "win32":
        import resource
        # ru_maxrss is KiB on Linux
        info["max_rss_mb"] = round(resource.getrusage(resource.RUSAGE_SELF).ru_maxrss / 1024, 1)
    return info


def _fmt_duration(seconds: float) -> str:
    """'1h 02m 05s' / '2m 05s' / '5s'."""
    minutes, secs = divmod(int(seconds), 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}h {minutes:02d}m {secs:02d}s"
    if minutes:
        return f"{minutes}m {secs:02d}s"
    return f"{secs}s"


def _fmt_percent(value: float) -> str:
    return f"{value * 100:.0f}%"
