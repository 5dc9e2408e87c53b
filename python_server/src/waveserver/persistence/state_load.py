"""State load — restores the wave orchestrator from a YAML dump."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from waveserver.engine.orchestrator import WaveOrchestrator
from waveserver.loaders.config_loader import WaveServerConfig
from waveserver.persistence.state_save import DEFAULT_STATE_PATH
from waveserver.util.events import EventBus

log = logging.getLogger(__name__)


@dataclass
class RestoredState:
    """Raw data read from a YAML state file.

    Attributes:
        orchestrator: ``WaveOrchestrator.to_dict()`` output.
        meta: Metadata from the save file (version, save timestamp).
    """

    orchestrator: dict[str, Any] = field(default_factory=dict)
    meta: dict[str, Any] = field(default_factory=dict)

    def build_orchestrator(self, event_bus: EventBus,
                           game_config: WaveServerConfig | None = None) -> WaveOrchestrator:
        return WaveOrchestrator.from_dict(self.orchestrator, event_bus, game_config)


async def load_state(path: str = DEFAULT_STATE_PATH) -> Optional[RestoredState]:
    """Load wave state from a YAML file.

    Returns None if the file does not exist or cannot be parsed.

    Args:
        path: Path to the YAML state file.
    """
    state_file = Path(path)
    if not state_file.exists():
        log.info("No state file found at %s", path)
        return None

    try:
        raw = yaml.safe_load(state_file.read_text(encoding="utf-8"))
    except yaml.YAMLError:
        log.exception("Failed to parse state file %s", path)
        return None

    if not isinstance(raw, dict) or not isinstance(raw.get("orchestrator"), dict):
        log.warning("State file %s has unexpected format", path)
        return None

    result = RestoredState(orchestrator=raw["orchestrator"], meta=raw.get("meta") or {})
    log.info("Restoring state from %s (saved at %s, version %s)",
             path, result.meta.get("saved_at", "?"), result.meta.get("version", "?"))
    return result
