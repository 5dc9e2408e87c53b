"""State save — serializes the wave orchestrator to YAML.

On shutdown the complete orchestrator tree (queue, difficulty history,
wave progress, history ring) is written to a YAML file so the session
can continue after a restart.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml

if TYPE_CHECKING:
    from waveserver.engine.orchestrator import WaveOrchestrator

log = logging.getLogger(__name__)

# Default path for the state file (relative to working directory)
DEFAULT_STATE_PATH = "state.yaml"
STATE_VERSION = 1


async def save_state(
    orchestrator: WaveOrchestrator,
    path: str = DEFAULT_STATE_PATH,
) -> None:
    """Serialize the orchestrator to a YAML file.

    The file is written to a temporary sibling first and then moved into
    place, so a crash mid-write never leaves a truncated state file.

    Args:
        orchestrator: Orchestrator to persist.
        path: Output file path.
    """
    state: dict[str, Any] = {
        "meta": _serialize_meta(),
        "orchestrator": orchestrator.to_dict(),
    }

    out = Path(path)
    tmp = out.with_suffix(".yaml.tmp")
    try:
        tmp.write_text(
            yaml.safe_dump(state, default_flow_style=False, allow_unicode=True, sort_keys=False),
            encoding="utf-8",
        )
        tmp.replace(out)
        progress = state["orchestrator"]["state_manager"]
        log.info("Wave state saved to %s (state=%s, wave=%s, %d history entries)",
                 path, orchestrator.state.value, progress["current_wave"],
                 len(progress["history"]))
    except Exception:
        log.exception("Failed to save wave state to %s", path)
        if tmp.exists():
            tmp.unlink(missing_ok=True)
        raise


def _serialize_meta() -> dict[str, Any]:
    return {
        "version": STATE_VERSION,
        "saved_at": time.strftime("%Y-%m-%dT%H:%M:%S"),
        "saved_at_unix": time.time(),
    }
