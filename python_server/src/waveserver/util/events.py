"""Typed event bus — decoupled wave lifecycle notifications.

The orchestrator never talks to the unit system or the UI directly.
It publishes frozen event dataclasses on an :class:`EventBus` and
external collaborators subscribe to the ones they care about.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, TypeVar, Type

if TYPE_CHECKING:
    from waveserver.models.wave_config import Position, WaveConfig
    from waveserver.models.wave_history import WaveHistory

T = TypeVar("T")


# -- Wave lifecycle events ---------------------------------------------------

@dataclass(frozen=True)
class WaveStarting:
    """A wave was dequeued and its countdown has begun."""
    wave_number: int
    countdown_seconds: float


@dataclass(frozen=True)
class CountdownTick:
    """The countdown crossed a whole-second boundary."""
    wave_number: int
    remaining: float


@dataclass(frozen=True)
class WaveStarted:
    """The countdown expired and units are about to spawn."""
    wave_number: int
    config: WaveConfig


@dataclass(frozen=True)
class WaveCompleted:
    """Every unit of the wave was spawned and eliminated."""
    wave_number: int
    history: WaveHistory


@dataclass(frozen=True)
class WaveFailed:
    """The wave was aborted by an external collaborator (or timed out)."""
    wave_number: int
    reason: str


@dataclass(frozen=True)
class AllUnitsEliminated:
    """The last live unit of the wave was killed."""
    wave_number: int


# -- Spawning ----------------------------------------------------------------

@dataclass(frozen=True)
class SpawnRequested:
    """The unit system should create one unit."""
    unit_type: str
    position: Position
    faction: str
    modifiers: dict[str, float] = field(default_factory=dict)
    wave_number: int = 0
    index: int = 0


# -- Orchestrator state ------------------------------------------------------

@dataclass(frozen=True)
class StateChanged:
    """The orchestrator moved from one state to another."""
    previous: str
    current: str


@dataclass(frozen=True)
class OrchestratorError:
    """The orchestrator entered its error state."""
    message: str


@dataclass(frozen=True)
class PerformanceWarning:
    """A single process() call exceeded the frame budget (advisory)."""
    message: str
    frame_time_ms: float


# -- Event Bus ---------------------------------------------------------------

class EventBus:
    """Simple synchronous event bus with typed events.

    Usage:
        bus = EventBus()
        bus.on(WaveFailed, lambda e: print(e.reason))
        bus.emit(WaveFailed(wave_number=3, reason="base destroyed"))
    """

    def __init__(self) -> None:
        self._handlers: dict[type, list[Callable[[Any], None]]] = defaultdict(list)

    def on(self, event_type: Type[T], handler: Callable[[T], None]) -> None:
        """Register a handler for an event type."""
        self._handlers[event_type].append(handler)

    def off(self, event_type: Type[T], handler: Callable[[T], None]) -> None:
        """Unregister a handler."""
        handlers = self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)

    def emit(self, event: object) -> None:
        """Emit an event to all registered handlers."""
        for handler in list(self._handlers.get(type(event), [])):
            handler(event)

    def clear(self) -> None:
        """Remove all handlers."""
        self._handlers.clear()
