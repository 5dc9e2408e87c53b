"""WebSocket push server — streams the event feed to connected clients.

The unit system and the wave UI connect to ``ws://<host>:<ws_port>``
and receive every feed message (spawn requests, lifecycle events, state
changes) as one JSON text frame.  The first frame on a new connection is
``{"type": "hello", "seq": <last seq>}`` so a client can tell which
messages it missed.  Reports travel the other way over the REST API;
anything a client sends here is ignored.
Uses the ``websockets`` library with asyncio.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import TYPE_CHECKING, Any, Optional

import websockets
from websockets.asyncio.server import Server as WSServer
from websockets.asyncio.server import ServerConnection, serve

from waveserver.util.constants import WS_PING_INTERVAL, WS_PING_TIMEOUT, WS_PORT

if TYPE_CHECKING:
    from waveserver.network.event_feed import EventFeed, Message

log = logging.getLogger(__name__)


class EventServer:
    """asyncio WebSocket server that broadcasts feed messages in order.

    Feed listeners are synchronous, so messages go through an
    ``asyncio.Queue`` and a single pump task sends them.

    Args:
        feed: Event feed to forward.
        host: Bind address.
        port: Bind port (0 picks a free one, see :attr:`port`).
    """

    def __init__(self, feed: EventFeed, host: str = "0.0.0.0", port: int = WS_PORT,
                 ping_interval: int = WS_PING_INTERVAL,
                 ping_timeout: int = WS_PING_TIMEOUT) -> None:
        self._feed = feed
        self._host = host
        self._port = port
        self._ping_interval = ping_interval
        self._ping_timeout = ping_timeout
        self._connections: set[ServerConnection] = set()
        self._outbox: asyncio.Queue[Message] = asyncio.Queue()
        self._server: Optional[WSServer] = None
        self._pump: Optional[asyncio.Task[None]] = None

    # -- Lifecycle -------------------------------------------------------

    async def start(self) -> None:
        self._server = await serve(
            self._on_connect,
            self._host,
            self._port,
            origins=None,  # same policy as the REST CORS setup
            ping_interval=self._ping_interval,
            ping_timeout=self._ping_timeout,
        )
        self._feed.add_listener(self._outbox.put_nowait)
        self._pump = asyncio.create_task(self._pump_messages())
        log.info("WebSocket event stream on ws://%s:%d", self._host, self.port)

    async def stop(self) -> None:
        self._feed.remove_listener(self._outbox.put_nowait)
        if self._pump is not None:
            self._pump.cancel()
            try:
                await self._pump
            except asyncio.CancelledError:
                pass
            self._pump = None
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
            log.info("WebSocket event stream stopped")

    @property
    def port(self) -> int:
        """Bound port (differs from the configured one when that was 0)."""
        if self._server is None or not self._server.sockets:
            return self._port
        return self._server.sockets[0].getsockname()[1]

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    # -- Sending ---------------------------------------------------------

    async def broadcast_all(self, data: dict[str, Any]) -> int:
        """Send a message to every connected client.

        Returns the number of clients that received it.
        """
        raw = json.dumps(data, ensure_ascii=False, default=str)
        sent = 0
        for ws in list(self._connections):
            try:
                await ws.send(raw)
                sent += 1
            except websockets.ConnectionClosed:
                pass
        return sent

    async def _pump_messages(self) -> None:
        while True:
            message = await self._outbox.get()
            await self.broadcast_all(message)

    # -- Connection handler ----------------------------------------------

    async def _on_connect(self, ws: ServerConnection) -> None:
        self._connections.add(ws)
        remote = ws.remote_address
        log.info("Event client connected: %s (%d open)", remote, len(self._connections))
        try:
            await ws.send(json.dumps({"type": "hello", "seq": self._feed.last_seq}))
            async for raw_msg in ws:
                log.debug("Ignoring %d-byte message from %s", len(raw_msg), remote)
        except websockets.ConnectionClosed as e:
            log.info("Event client disconnected: %s (%s)", remote, e)
        finally:
            self._connections.discard(ws)
