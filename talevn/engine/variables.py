from __future__ import annotations

from typing import Any, Dict, Optional, Union

from .savable import PHASE_VISUAL, Savable
from .save_errors import RestoreTypeMismatch

Number = Union[int, float]


class StoryVariables(Savable):
    """Flat per-playthrough variables (affection points, counters, names)."""

    savable_tag = "variables"
    restore_phase = PHASE_VISUAL

    def __init__(self) -> None:
        self.numbers: Dict[str, Number] = {}
        self.strings: Dict[str, str] = {}

    def set_number(self, name: str, value: Number) -> None:
        self.numbers[name] = value

    def add(self, name: str, delta: Number = 1) -> Number:
        self.numbers[name] = self.numbers.get(name, 0) + delta
        return self.numbers[name]

    def get_number(self, name: str, default: Number = 0) -> Number:
        return self.numbers.get(name, default)

    def set_string(self, name: str, value: str) -> None:
        self.strings[name] = str(value)

    def get_string(self, name: str, default: Optional[str] = None) -> Optional[str]:
        return self.strings.get(name, default)

    def clear(self) -> None:
        self.numbers.clear()
        self.strings.clear()

    def capture(self) -> Dict[str, Any]:
        return {"numbers": dict(self.numbers), "strings": dict(self.strings)}

    def restore(self, blob: Dict[str, Any]) -> None:
        if not isinstance(blob, dict):
            raise RestoreTypeMismatch("variables: expected a mapping")
        numbers = blob.get("numbers") or {}
        strings = blob.get("strings") or {}
        if not isinstance(numbers, dict) or not isinstance(strings, dict):
            raise RestoreTypeMismatch("variables: 'numbers' and 'strings' must be mappings")
        for k, v in numbers.items():
            if isinstance(v, bool) or not isinstance(v, (int, float)):
                raise RestoreTypeMismatch(f"variables: '{k}' is not a number")
        for k, v in strings.items():
            if not isinstance(v, str):
                raise RestoreTypeMismatch(f"variables: '{k}' is not a string")
        self.numbers = dict(numbers)
        self.strings = dict(strings)
