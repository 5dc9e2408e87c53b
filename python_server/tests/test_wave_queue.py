"""Tests for the deterministic wave queue."""

import pytest

from waveserver.engine.difficulty import DifficultyCalculator, ScalingMode
from waveserver.engine.wave_queue import WaveQueue, default_params, generate_wave_config
from waveserver.models.spawn_timing import TimingMode
from waveserver.models.wave_progress import build_spawn_queue

LOCATIONS = [(0.0, 0.0), (10.0, 0.0), (0.0, 10.0)]


def _make_queue(seed: int | None = 42, **kwargs) -> WaveQueue:
    queue = WaveQueue(
        calculator=kwargs.pop("calculator", DifficultyCalculator()),
        spawn_locations=kwargs.pop("spawn_locations", LOCATIONS),
        **kwargs,
    )
    if seed is not None:
        queue.initialize(seed)
    return queue


def _dequeue_until(queue: WaveQueue, wave_number: int):
    config = queue.dequeue()
    while config.wave_number < wave_number:
        config = queue.dequeue()
    return config


class TestDeterminism:
    def test_sequential_and_skip_agree(self):
        sequential = _dequeue_until(_make_queue(), 7)
        q = _make_queue()
        assert q.skip_to_wave(7)
        skipped = q.dequeue()
        assert skipped.wave_number == 7
        assert skipped == sequential
        assert build_spawn_queue(skipped) == build_spawn_queue(sequential)

    def test_matches_standalone_generation(self):
        config = _dequeue_until(_make_queue(), 4)
        direct = generate_wave_config(42, 4, "enemy", LOCATIONS, DifficultyCalculator())
        assert config == direct

    def test_skip_backwards(self):
        q = _make_queue()
        q.skip_to_wave(10)
        q.dequeue()
        q.skip_to_wave(3)
        assert q.dequeue() == _dequeue_until(_make_queue(), 3)

    def test_different_faction_seeds_differ(self):
        a = _make_queue(seed=1).dequeue()
        b = _make_queue(seed=2).dequeue()
        assert a.seed != b.seed

    def test_locations_are_a_rotation(self):
        config = _make_queue().dequeue()
        assert sorted(config.spawn_locations) == sorted(LOCATIONS)
        start = LOCATIONS.index(config.spawn_locations[0])
        assert config.spawn_locations == LOCATIONS[start:] + LOCATIONS[:start]


class TestQueueOperations:
    def test_initialize_fills_lookahead(self):
        q = _make_queue(max_queue_size=4)
        assert len(q) == 4
        assert [c.wave_number for c in q.upcoming()] == [1, 2, 3, 4]

    def test_initialize_without_seed_picks_one(self):
        q = _make_queue(seed=None)
        assert not q.is_initialized
        seed = q.initialize()
        assert isinstance(seed, int)
        assert q.faction_seed == seed
        assert q.is_initialized

    def test_dequeue_refills(self):
        q = _make_queue()
        first = q.dequeue()
        assert first.wave_number == 1
        assert q.current_wave == 1
        assert len(q) == 5
        assert q.upcoming()[-1].wave_number == 6

    def test_peek_does_not_consume(self):
        q = _make_queue()
        assert q.peek() is q.peek()
        assert q.peek().wave_number == 1
        assert len(q) == 5
        assert q.peek_at(2).wave_number == 3
        assert q.peek_at(99) is None

    def test_upcoming_is_a_copy(self):
        q = _make_queue()
        q.upcoming().clear()
        assert len(q) == 5

    def test_skip_to_wave_rejects_zero(self):
        q = _make_queue()
        assert not q.skip_to_wave(0)
        assert q.peek().wave_number == 1

    def test_uninitialised_queue(self):
        q = _make_queue(seed=None)
        assert q.dequeue() is None
        assert not q.skip_to_wave(3)
        with pytest.raises(RuntimeError):
            q.generate(1)

    def test_boss_wave_spawns_sequentially(self):
        config = _dequeue_until(_make_queue(), 10)
        assert config.is_boss_wave
        assert config.timing.mode == TimingMode.SEQUENTIAL
        assert config.composition_counts()["boss"] == 1


class TestRefresh:
    def test_set_spawn_locations_regenerates(self):
        q = _make_queue()
        q.set_spawn_locations([(99.0, 99.0)])
        assert [c.wave_number for c in q.upcoming()] == [1, 2, 3, 4, 5]
        assert all(c.spawn_locations == [(99.0, 99.0)] for c in q.upcoming())

    def test_set_faction_regenerates(self):
        q = _make_queue()
        q.set_faction("raiders")
        assert all(c.faction == "raiders" for c in q.upcoming())

    def test_refresh_keeps_seeds(self):
        calc = DifficultyCalculator()
        q = _make_queue(calculator=calc)
        seeds = [c.seed for c in q.upcoming()]
        calc.multiplier = 2.0
        q.refresh()
        assert [c.seed for c in q.upcoming()] == seeds
        assert q.peek().unit_count == 20

    def test_adaptive_history_changes_refreshed_waves(self):
        calc = DifficultyCalculator(ScalingMode.ADAPTIVE)
        q = _make_queue(calculator=calc)
        before = q.peek().unit_count
        for _ in range(5):
            calc.record_performance({"player": {"damage_dealt": 100.0}})
        q.refresh()
        assert q.peek().unit_count > before


class TestWithoutCalculator:
    def test_default_params_are_linear(self):
        assert default_params(1).unit_count == 10
        assert default_params(4).unit_count == 19

    def test_queue_uses_defaults(self):
        q = WaveQueue(spawn_locations=LOCATIONS)
        q.initialize(5)
        assert q.dequeue().unit_count == 10


class TestSerialization:
    def test_round_trip(self):
        calc = DifficultyCalculator()
        q = _make_queue(calculator=calc)
        q.dequeue()
        q.dequeue()
        restored = WaveQueue.from_dict(q.to_dict(), calculator=DifficultyCalculator())
        assert restored.to_dict() == q.to_dict()
        assert restored.dequeue() == q.dequeue()
        assert restored.upcoming() == q.upcoming()
