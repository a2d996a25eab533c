from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Tuple

from .save_errors import RestoreTypeMismatch

# Restore order: visual layers first, then the interpreter that re-renders on top of them
PHASE_VISUAL = 1
PHASE_SCRIPT = 2


@dataclass
class StateBlob:
    """A captured state tagged with the subsystem that produced it."""
    tag: str
    data: Dict[str, Any] = field(default_factory=dict)


class Savable(ABC):
    """State that must survive a save/restore cycle.

    ``capture`` is a pure read returning JSON-serializable data. ``restore``
    rebuilds observable state from such data (after a round trip through disk)
    and raises ``RestoreTypeMismatch`` before touching anything if the data has
    the wrong shape.
    """

    savable_tag: str = ""
    restore_phase: int = PHASE_VISUAL

    @abstractmethod
    def capture(self) -> Dict[str, Any]:  # pragma: no cover - interface
        raise NotImplementedError

    @abstractmethod
    def restore(self, blob: Dict[str, Any]) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    def capture_blob(self) -> StateBlob:
        return StateBlob(tag=self.savable_tag or type(self).__name__, data=self.capture())


def require_fields(blob: Any, fields: Iterable[Tuple[str, Tuple[type, ...]]], owner: str) -> Dict[str, Any]:
    """Validate a blob's shape; raise RestoreTypeMismatch naming the first bad field."""
    if not isinstance(blob, dict):
        raise RestoreTypeMismatch(f"{owner}: expected a mapping, got {type(blob).__name__}")
    for name, types in fields:
        if name not in blob:
            raise RestoreTypeMismatch(f"{owner}: missing field '{name}'")
        value = blob[name]
        # bool is an int subclass; reject it where only numbers are allowed
        if isinstance(value, bool) and bool not in types:
            raise RestoreTypeMismatch(f"{owner}: field '{name}' has type bool")
        if not isinstance(value, types):
            raise RestoreTypeMismatch(f"{owner}: field '{name}' has type {type(value).__name__}")
    return blob
