"""
Event System for TaleVN

Typed dataclass events delivered in priority order. A listener can cancel a
CancellableEvent (SaveEvent, LoadEvent) to veto the operation that raised it.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Callable, Dict, List, Optional, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)


class Priority(IntEnum):
    """Higher runs first. MONITOR listeners run even after a cancel."""
    LOW = 25
    NORMAL = 50
    HIGH = 75
    MONITOR = 200


@dataclass
class Event:
    """Base class for all events."""

    @property
    def cancelled(self) -> bool:
        return False


@dataclass
class CancellableEvent(Event):
    """Raised before an operation; cancelling it stops the operation."""
    _cancelled: bool = field(default=False, init=False, repr=False)

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True


# ============================================================================
# Script Events
# ============================================================================

@dataclass
class ScriptLoadEvent(Event):
    """Fired after a script is loaded into the interpreter."""
    name: str = ""
    record_count: int = 0


@dataclass
class TextShowEvent(Event):
    """Fired when a dialogue line is published."""
    record_id: int = 0
    speaker: Optional[str] = None
    actor_id: str = ""
    text: str = ""
    meta: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ChoiceShowEvent(Event):
    """Fired when a set of options is presented."""
    choices: List[tuple] = field(default_factory=list)  # [(label, target_id), ...]


@dataclass
class ChoiceSelectEvent(Event):
    """Fired when an option is selected."""
    index: int = 0
    text: str = ""
    target: int = 0


@dataclass
class ScriptErrorEvent(Event):
    """Fired for non-fatal script problems (bad jump target, missing actor)."""
    message: str = ""
    record_id: Optional[int] = None
    kind: str = ""


@dataclass
class ScriptEndEvent(Event):
    """Fired when execution runs past the last record."""
    name: str = ""


# ============================================================================
# Save/Load Events
# ============================================================================

@dataclass
class SaveEvent(CancellableEvent):
    """Fired before saving."""
    slot: int = 0
    is_autosave: bool = False


@dataclass
class SaveCompleteEvent(Event):
    """Fired after a save attempt."""
    slot: int = 0
    success: bool = True


@dataclass
class LoadEvent(CancellableEvent):
    """Fired before loading."""
    slot: int = 0


@dataclass
class LoadCompleteEvent(Event):
    """Fired after a load attempt."""
    slot: int = 0
    success: bool = True


@dataclass
class SlotDeleteCompleteEvent(Event):
    """Fired after a slot deletion attempt."""
    slot: int = 0
    success: bool = False


@dataclass
class AutoSaveCompleteEvent(Event):
    """Fired when an automatic save finishes."""
    trigger: Any = None
    success: bool = False




# ============================================================================
# Event Bus
# ============================================================================

E = TypeVar("E", bound=Event)


class EventSystem:
    """
    Synchronous bus keyed by event class.

        events = EventSystem()
        unsub = events.subscribe(SaveEvent, veto_during_cutscene, priority=Priority.HIGH)
        if events.emit(SaveEvent(slot=1)).cancelled:
            return

    A failing listener is logged and does not stop delivery to the rest.
    """

    def __init__(self) -> None:
        self._listeners: Dict[Type[Event], List[Tuple[Priority, Callable[[Any], None]]]] = defaultdict(list)

    def subscribe(
        self,
        event_type: Type[E],
        callback: Callable[[E], None],
        priority: Priority = Priority.NORMAL,
    ) -> Callable[[], None]:
        """Add a listener; returns a function that removes it again."""
        entries = self._listeners[event_type]
        entries.append((priority, callback))
        # stable: equal priorities keep subscription order
        entries.sort(key=lambda entry: entry[0], reverse=True)
        return lambda: self.unsubscribe(event_type, callback)

    def unsubscribe(self, event_type: Type[E], callback: Callable[[E], None]) -> bool:
        entries = self._listeners.get(event_type, [])
        for i, (_prio, cb) in enumerate(entries):
            if cb == callback:
                del entries[i]
                return True
        return False

    def emit(self, event: E) -> E:
        """Deliver ``event`` to its listeners and return it so callers can check ``cancelled``."""
        for priority, callback in list(self._listeners.get(type(event), [])):
            if event.cancelled and priority is not Priority.MONITOR:
                continue
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Listener {getattr(callback, '__name__', callback)} failed on {type(event).__name__}: {e}", exc_info=True)
        return event
