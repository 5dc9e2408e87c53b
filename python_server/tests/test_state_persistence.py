"""Tests for state_save and state_load round-trip persistence."""

from __future__ import annotations

import asyncio
from pathlib import Path

from waveserver.engine.orchestrator import OrchestratorState, WaveOrchestrator
from waveserver.loaders.config_loader import WaveServerConfig
from waveserver.persistence.state_load import RestoredState, load_state
from waveserver.persistence.state_save import STATE_VERSION, save_state
from waveserver.util.events import EventBus, SpawnRequested


# -------------------------------------------------------------------
# Helpers
# -------------------------------------------------------------------

def _settings() -> WaveServerConfig:
    return WaveServerConfig(
        countdown_duration=2.0,
        faction_seed=1234,
        spawn_locations=[[0.0, 0.0], [20.0, 5.0]],
        max_history_size=5,
    )


def _make_orchestrator() -> WaveOrchestrator:
    """An orchestrator one completed wave in, with a second wave mid-spawn."""
    bus = EventBus()
    orch = WaveOrchestrator(bus, _settings(), clock=lambda: 0.0)
    kill = {"enabled": True}

    def on_spawn(e: SpawnRequested) -> None:
        uid = f"{e.wave_number}:{e.index}"
        orch.on_unit_spawned(uid)
        orch.on_damage_dealt("player", 4.0)
        if kill["enabled"]:
            orch.on_unit_killed(uid, "player")

    bus.on(SpawnRequested, on_spawn)
    orch.start()
    while orch.state_manager.get_statistics()["waves_recorded"] == 0:
        orch.process(0.5)
    kill["enabled"] = False
    for _ in range(12):
        orch.process(0.5)
    return orch


# -------------------------------------------------------------------
# Tests
# -------------------------------------------------------------------

class TestSaveLoad:
    """Round-trip serialization / deserialization tests."""

    def _run(self, coro):
        return asyncio.run(coro)

    def test_save_creates_file(self, tmp_path: Path) -> None:
        path = str(tmp_path / "state.yaml")
        self._run(save_state(_make_orchestrator(), path=path))
        assert Path(path).exists()
        assert not Path(path + ".tmp").exists()

    def test_load_nonexistent_returns_none(self, tmp_path: Path) -> None:
        assert self._run(load_state(str(tmp_path / "nope.yaml"))) is None

    def test_load_garbage_returns_none(self, tmp_path: Path) -> None:
        path = tmp_path / "state.yaml"
        path.write_text("orchestrator: [unclosed", encoding="utf-8")
        assert self._run(load_state(str(path))) is None

    def test_load_wrong_shape_returns_none(self, tmp_path: Path) -> None:
        path = tmp_path / "state.yaml"
        path.write_text("- just\n- a list\n", encoding="utf-8")
        assert self._run(load_state(str(path))) is None

    def test_round_trip_meta(self, tmp_path: Path) -> None:
        path = str(tmp_path / "state.yaml")
        self._run(save_state(_make_orchestrator(), path=path))
        restored = self._run(load_state(path))
        assert isinstance(restored, RestoredState)
        assert restored.meta["version"] == STATE_VERSION
        assert "saved_at" in restored.meta

    def test_round_trip_orchestrator(self, tmp_path: Path) -> None:
        path = str(tmp_path / "state.yaml")
        orch = _make_orchestrator()
        self._run(save_state(orch, path=path))

        restored = self._run(load_state(path)).build_orchestrator(EventBus(), _settings())
        assert restored.to_dict() == orch.to_dict()

    def test_round_trip_history_and_progress(self, tmp_path: Path) -> None:
        path = str(tmp_path / "state.yaml")
        orch = _make_orchestrator()
        self._run(save_state(orch, path=path))
        restored = self._run(load_state(path)).build_orchestrator(EventBus(), _settings())

        assert restored.state == orch.state
        assert restored.state in (OrchestratorState.SPAWNING, OrchestratorState.ACTIVE,
                                  OrchestratorState.COUNTDOWN)
        original_history = orch.state_manager.get_history()
        restored_history = restored.state_manager.get_history()
        assert restored_history == original_history
        assert restored_history[0].was_successful
        assert (restored.state_manager.progress_snapshot()
                == orch.state_manager.progress_snapshot())
        assert restored.wave_queue.faction_seed == 1234
        assert restored.difficulty.performance_history == orch.difficulty.performance_history
