"""Tests for the websocket event stream.

Starts a real ``EventServer`` on a free localhost port and reads the
stream with the ``websockets`` client, the way the unit system does.
"""

from __future__ import annotations

import asyncio
import json

import pytest
from websockets.asyncio.client import connect

from waveserver.engine.orchestrator import OrchestratorState, WaveOrchestrator
from waveserver.loaders.config_loader import WaveServerConfig
from waveserver.network.event_feed import EventFeed
from waveserver.network.server import EventServer
from waveserver.util.events import EventBus


@pytest.fixture
async def stream():
    bus = EventBus()
    settings = WaveServerConfig(faction_seed=42, countdown_duration=0.0, auto_advance=False)
    orch = WaveOrchestrator(bus, settings, clock=lambda: 0.0)
    orch.max_spawns_per_frame = 1000
    feed = EventFeed(bus)
    server = EventServer(feed, host="127.0.0.1", port=0)
    await server.start()
    try:
        yield orch, feed, server
    finally:
        await server.stop()


async def _recv(ws) -> dict:
    return json.loads(await asyncio.wait_for(ws.recv(), timeout=2.0))


class TestEventServer:
    @pytest.mark.asyncio
    async def test_hello_carries_last_seq(self, stream):
        orch, feed, server = stream
        orch.start()
        async with connect(f"ws://127.0.0.1:{server.port}") as ws:
            hello = await _recv(ws)
        assert hello == {"type": "hello", "seq": feed.last_seq}
        assert feed.last_seq > 0

    @pytest.mark.asyncio
    async def test_spawn_requests_streamed_to_client(self, stream):
        orch, _, server = stream
        async with connect(f"ws://127.0.0.1:{server.port}") as ws:
            await _recv(ws)
            assert server.connection_count == 1

            orch.start()
            orch.process(0.0)
            orch.process(1000.0)
            assert orch.state == OrchestratorState.ACTIVE
            total = orch.state_manager.progress_snapshot()["total_units"]

            messages: list[dict] = []
            while sum(m["type"] == "spawn_requested" for m in messages) < total:
                messages.append(await _recv(ws))

        types = [m["type"] for m in messages]
        assert types.index("wave_starting") < types.index("wave_started")
        assert types.index("wave_started") < types.index("spawn_requested")
        seqs = [m["seq"] for m in messages]
        assert seqs == list(range(seqs[0], seqs[0] + len(seqs)))
        spawns = [m for m in messages if m["type"] == "spawn_requested"]
        assert {s["wave_number"] for s in spawns} == {1}
        assert sorted(s["index"] for s in spawns) == list(range(total))

    @pytest.mark.asyncio
    async def test_disconnect_is_forgotten(self, stream):
        _, _, server = stream
        async with connect(f"ws://127.0.0.1:{server.port}") as ws:
            await _recv(ws)
            assert server.connection_count == 1
        for _ in range(100):
            if server.connection_count == 0:
                break
            await asyncio.sleep(0.01)
        assert server.connection_count == 0

    @pytest.mark.asyncio
    async def test_broadcast_without_clients(self, stream):
        _, _, server = stream
        assert await server.broadcast_all({"type": "noop"}) == 0
