from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)


class Opcode(Enum):
    DIALOG = "DIALOG"
    LOAD = "LOAD"
    JUMP = "JUMP"
    CHOOSE = "CHOOSE"
    SET_BACKGROUND = "SET_BACKGROUND"
    SET_MUSIC = "SET_MUSIC"
    FOCUS = "FOCUS"
    HIDE = "HIDE"

    @classmethod
    def from_token(cls, token: str) -> "Opcode":
        """Match a script cell to an opcode; unknown tokens are dialogue lines."""
        key = (token or "").strip().upper()
        if key.startswith("CMD_"):
            key = key[4:]
        key = _ALIASES.get(key, key)
        try:
            return cls(key)
        except ValueError:
            return cls.DIALOG

    @property
    def blocks(self) -> bool:
        # DIALOG waits for advance, CHOOSE waits for a selection
        return self in (Opcode.DIALOG, Opcode.CHOOSE)


_ALIASES = {
    "BG": "SET_BACKGROUND",
    "BGM": "SET_MUSIC",
    "MUSIC": "SET_MUSIC",
    "BACKGROUND": "SET_BACKGROUND",
}


@dataclass
class ScriptRecord:
    id: int
    opcode: Opcode
    actor_id: str = ""
    expression: str = ""
    position: str = ""
    speed: str = ""
    payload: str = ""
    line: Optional[int] = None

    @property
    def is_narration(self) -> bool:
        return not self.actor_id


class Program:
    """Ordered records of one script plus the id -> index jump table.

    The jump table is built once here; the first occurrence of an id wins.
    """

    def __init__(self, records: List[ScriptRecord], name: str = "") -> None:
        self.records = records
        self.name = name
        self.jump_index: Dict[int, int] = {}
        for i, rec in enumerate(records):
            if rec.id in self.jump_index:
                logger.debug(f"Duplicate record id {rec.id} in '{name}' at index {i}; keeping first")
                continue
            self.jump_index[rec.id] = i

    def __len__(self) -> int:
        return len(self.records)

    def index_of(self, record_id: int) -> Optional[int]:
        return self.jump_index.get(record_id)
