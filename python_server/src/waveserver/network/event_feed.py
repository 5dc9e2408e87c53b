"""Event feed — bus events as JSON messages for clients outside the process.

Every forwarded event becomes a flat dict with a ``type`` (the event
class name in snake_case) and a ``seq`` number that increases by one per
message.  Listeners (the websocket server) receive each message as it is
emitted.  Spawn requests are additionally kept in a bounded backlog
that unit systems without a websocket drain via
``GET /api/spawns/pending``.
"""

from __future__ import annotations

import dataclasses
import logging
import re
from collections import deque
from typing import Any, Callable, Optional

from waveserver.util.constants import MAX_SPAWN_BACKLOG
from waveserver.util.events import (
    AllUnitsEliminated,
    CountdownTick,
    EventBus,
    OrchestratorError,
    SpawnRequested,
    StateChanged,
    WaveCompleted,
    WaveFailed,
    WaveStarted,
    WaveStarting,
)

log = logging.getLogger(__name__)

Message = dict[str, Any]

FORWARDED_EVENTS = (
    StateChanged,
    WaveStarting,
    CountdownTick,
    WaveStarted,
    SpawnRequested,
    AllUnitsEliminated,
    WaveCompleted,
    WaveFailed,
    OrchestratorError,
)

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


def event_type_name(event_type: type) -> str:
    """``WaveStarting`` -> ``wave_starting``."""
    return _CAMEL_BOUNDARY.sub("_", event_type.__name__).lower()


def _plain(value: Any) -> Any:
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if isinstance(value, tuple):
        return list(value)
    if isinstance(value, dict):
        return dict(value)
    return value


def event_to_message(event: object, seq: int) -> Message:
    message: Message = {"type": event_type_name(type(event)), "seq": seq}
    for f in dataclasses.fields(event):
        message[f.name] = _plain(getattr(event, f.name))
    return message


class EventFeed:
    """Subscribes to the bus and fans messages out to listeners.

    Args:
        event_bus: Bus the orchestrator publishes on.
        max_backlog: Spawn requests kept for polling clients; the oldest
            are dropped (and counted) once it is full.
    """

    def __init__(self, event_bus: EventBus, max_backlog: int = MAX_SPAWN_BACKLOG) -> None:
        self._seq = 0
        self._spawns: deque[Message] = deque(maxlen=max(1, max_backlog))
        self._listeners: list[Callable[[Message], None]] = []
        self.dropped_spawns: int = 0
        for event_type in FORWARDED_EVENTS:
            event_bus.on(event_type, self._on_event)

    @property
    def last_seq(self) -> int:
        return self._seq

    @property
    def pending_spawns(self) -> int:
        return len(self._spawns)

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def add_listener(self, listener: Callable[[Message], None]) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Callable[[Message], None]) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def drain_spawns(self, limit: Optional[int] = None) -> list[Message]:
        """Remove and return the oldest backlogged spawn requests."""
        count = len(self._spawns) if limit is None else min(max(0, limit), len(self._spawns))
        return [self._spawns.popleft() for _ in range(count)]

    def _on_event(self, event: object) -> None:
        self._seq += 1
        message = event_to_message(event, self._seq)
        if isinstance(event, SpawnRequested):
            if len(self._spawns) == self._spawns.maxlen:
                self.dropped_spawns += 1
                if self.dropped_spawns == 1:
                    log.warning("Spawn backlog full (%d); dropping the oldest requests",
                                self._spawns.maxlen)
            self._spawns.append(message)
        for listener in list(self._listeners):
            listener(message)
