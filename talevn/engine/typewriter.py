"""
Typewriter effect - per-character reveal driven by explicit ticks.

Features:
- Per-line speed from the script's speed cell ("fast", "slow" or seconds per char)
- Automatic pauses after punctuation
- Skip (reveal everything at once)
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict

logger = logging.getLogger(__name__)

# seconds per character
SPEED_FAST = 0.02
SPEED_NORMAL = 0.05
SPEED_SLOW = 0.15


class PauseType(Enum):
    NONE = 0
    SHORT = 1   # commas
    LONG = 2    # sentence ends


# delay multiplier applied to the character after the punctuation mark
PAUSE_MULTIPLIERS: Dict[PauseType, int] = {
    PauseType.NONE: 1,
    PauseType.SHORT: 3,
    PauseType.LONG: 6,
}

PUNCTUATION_PAUSES: Dict[str, PauseType] = {
    ',': PauseType.SHORT,
    '，': PauseType.SHORT,
    '、': PauseType.SHORT,
    '.': PauseType.LONG,
    '。': PauseType.LONG,
    '!': PauseType.LONG,
    '！': PauseType.LONG,
    '?': PauseType.LONG,
    '？': PauseType.LONG,
}


@dataclass
class TypewriterState:
    text: str = ""
    revealed_chars: int = 0
    char_delay_ms: int = 50
    next_char_at: int = 0
    is_complete: bool = True

    @property
    def total_chars(self) -> int:
        return len(self.text)


def parse_speed(cell: str) -> float:
    """Seconds per character for a script speed cell."""
    key = (cell or "").strip().lower()
    if not key or key == "normal":
        return SPEED_NORMAL
    if key == "fast":
        return SPEED_FAST
    if key == "slow":
        return SPEED_SLOW
    try:
        value = float(key)
    except ValueError:
        logger.warning(f"Unknown typewriter speed '{cell}', using normal")
        return SPEED_NORMAL
    return value if value > 0 else SPEED_NORMAL


def create_typewriter(text: str, speed: str = "", start_time: int = 0) -> TypewriterState:
    """Start revealing ``text``; ``start_time`` is in milliseconds."""
    delay = int(round(parse_speed(speed) * 1000))
    return TypewriterState(
        text=text or "",
        revealed_chars=0,
        char_delay_ms=delay,
        next_char_at=start_time + delay,
        is_complete=not text,
    )


def update_typewriter(state: TypewriterState, current_time: int) -> bool:
    """Reveal every character due by ``current_time`` (ms). Returns True if anything changed."""
    if state.is_complete:
        return False
    old_revealed = state.revealed_chars
    while state.revealed_chars < state.total_chars and current_time >= state.next_char_at:
        char = state.text[state.revealed_chars]
        state.revealed_chars += 1
        pause = PUNCTUATION_PAUSES.get(char, PauseType.NONE)
        state.next_char_at += state.char_delay_ms * PAUSE_MULTIPLIERS[pause]
    if state.revealed_chars >= state.total_chars:
        state.is_complete = True
    return state.revealed_chars != old_revealed


def get_revealed_text(state: TypewriterState) -> str:
    return state.text[:state.revealed_chars]


def reveal_all(state: TypewriterState) -> None:
    """Skip: show the whole line immediately."""
    state.revealed_chars = state.total_chars
    state.is_complete = True
