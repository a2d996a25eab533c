"""
Save data model - 存档数据结构

- GlobalData: progress shared by every slot (endings, read lines, flags, gallery)
- ArchiveData: one snapshot of a play session
- SaveSlotMeta: what a slot list shows without reading the archive
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Set, Union

from .savable import StateBlob


SAVE_FORMAT_VERSION = 1
HIDDEN = "hidden"


class GameState(Enum):
    IDLE = "idle"
    IN_DIALOGUE = "in_dialogue"
    IN_ANIMATION = "in_animation"
    IN_TRANSITION = "in_transition"
    IN_PUZZLE = "in_puzzle"


class AutoSaveTrigger(Enum):
    TIME_INTERVAL = "time_interval"
    CHAPTER_END = "chapter_end"
    PUZZLE_COMPLETE = "puzzle_complete"
    DECISION_MADE = "decision_made"


AUTO_SAVE_LABELS: Dict[AutoSaveTrigger, str] = {
    AutoSaveTrigger.TIME_INTERVAL: "Auto Save",
    AutoSaveTrigger.CHAPTER_END: "Chapter End",
    AutoSaveTrigger.PUZZLE_COMPLETE: "Puzzle Complete",
    AutoSaveTrigger.DECISION_MADE: "Key Decision",
}


# ============================================================================
# Global Data
# ============================================================================

@dataclass
class GlobalData:
    """跨存档的全局进度"""
    unlocked_endings: Set[str] = field(default_factory=set)
    read_lines: Set[int] = field(default_factory=set)
    flags: Dict[str, bool] = field(default_factory=dict)
    unlocked_gallery: Set[str] = field(default_factory=set)

    def unlock_ending(self, ending_id: str) -> bool:
        if ending_id in self.unlocked_endings:
            return False
        self.unlocked_endings.add(ending_id)
        return True

    def mark_read(self, record_id: int) -> None:
        self.read_lines.add(int(record_id))

    def is_read(self, record_id: int) -> bool:
        return record_id in self.read_lines

    def set_flag(self, name: str, value: bool = True) -> None:
        self.flags[name] = bool(value)

    def get_flag(self, name: str, default: bool = False) -> bool:
        return self.flags.get(name, default)

    def unlock_gallery(self, item_id: str) -> bool:
        if item_id in self.unlocked_gallery:
            return False
        self.unlocked_gallery.add(item_id)
        return True

    def to_dict(self) -> dict:
        return {
            "unlocked_endings": sorted(self.unlocked_endings),
            "read_lines": sorted(self.read_lines),
            "flags": dict(self.flags),
            "unlocked_gallery": sorted(self.unlocked_gallery),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "GlobalData":
        if not isinstance(data, dict):
            raise ValueError("global data must be a JSON object")
        flags = data.get("flags") or {}
        if not isinstance(flags, dict):
            raise ValueError(f"flags must be a JSON object, got {type(flags).__name__}")
        return cls(
            unlocked_endings={str(x) for x in data.get("unlocked_endings") or []},
            read_lines={int(x) for x in data.get("read_lines") or []},
            flags={str(k): bool(v) for k, v in flags.items()},
            unlocked_gallery={str(x) for x in data.get("unlocked_gallery") or []},
        )


# ============================================================================
# Archive
# ============================================================================

@dataclass
class ActorDisplayState:
    actor_id: str
    position: Union[int, str] = 2
    expression: str = ""
    visible: bool = True
    draw_order: int = 0
    focused: bool = False

    def to_dict(self) -> dict:
        return {
            "id": self.actor_id,
            "position": self.position,
            "expression": self.expression,
            "visible": self.visible,
            "order": self.draw_order,
            "focused": self.focused,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ActorDisplayState":
        """Raises KeyError/TypeError/ValueError on entries that are not actor states."""
        if not isinstance(data, dict):
            raise TypeError(f"actor entry must be a mapping, got {type(data).__name__}")
        actor_id = data["id"]
        if not isinstance(actor_id, str) or not actor_id:
            raise ValueError(f"invalid actor id: {actor_id!r}")
        pos = data.get("position", 2)
        if isinstance(pos, bool) or not isinstance(pos, (int, str)):
            raise TypeError(f"invalid position for '{actor_id}': {pos!r}")
        if isinstance(pos, str) and pos != HIDDEN:
            pos = int(pos)
        return cls(
            actor_id=actor_id,
            position=pos,
            expression=str(data.get("expression") or ""),
            visible=bool(data.get("visible", True)),
            draw_order=int(data.get("order", 0)),
            focused=bool(data.get("focused", False)),
        )


@dataclass
class ArchiveData:
    """One snapshot; built fresh per save and read-only afterwards."""
    script_name: str = ""
    program_counter: int = 0
    background: Optional[str] = None
    music: Optional[str] = None
    music_volume: float = 1.0
    awaiting_choice: bool = False
    chapter: str = ""
    # raw entries; ActorStage.restore validates them
    actors: List[Dict[str, Any]] = field(default_factory=list)
    numbers: Dict[str, Union[int, float]] = field(default_factory=dict)
    strings: Dict[str, str] = field(default_factory=dict)
    subsystems: Dict[str, Any] = field(default_factory=dict)
    captured: List[str] = field(default_factory=list)
    saved_at: float = 0.0
    play_seconds: int = 0

    def fold(self, blob: StateBlob) -> None:
        """Merge one captured blob into the archive by its tag.

        The interpreter, actors and variables tags map onto the archive's own
        fields so the file stays readable by tools that know the layout; any
        other tag is stored verbatim under ``subsystems``.
        """
        rule = _FOLD_RULES.get(blob.tag)
        if rule is None:
            self.subsystems[blob.tag] = blob.data
        else:
            rule[0](self, blob.data)
        if blob.tag not in self.captured:
            self.captured.append(blob.tag)

    def blob_for(self, tag: str) -> Optional[Dict[str, Any]]:
        """The data a savable with ``tag`` captured, or None if it was not saved."""
        if tag not in self.captured:
            return None
        rule = _FOLD_RULES.get(tag)
        if rule is None:
            return self.subsystems.get(tag)
        return rule[1](self)

    def to_dict(self) -> dict:
        return {
            "script": self.script_name,
            "pc": self.program_counter,
            "background": self.background,
            "music": self.music,
            "volume": self.music_volume,
            "awaiting_choice": self.awaiting_choice,
            "chapter": self.chapter,
            "actors": list(self.actors),
            "numbers": dict(self.numbers),
            "strings": dict(self.strings),
            "subsystems": dict(self.subsystems),
            "captured": list(self.captured),
            "saved_at": self.saved_at,
            "play_seconds": self.play_seconds,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ArchiveData":
        """Raises KeyError/TypeError/ValueError when ``data`` is not an archive."""
        if not isinstance(data, dict):
            raise TypeError("archive must be a JSON object")
        return cls(
            script_name=str(data.get("script") or ""),
            program_counter=int(data.get("pc", 0)),
            background=data.get("background"),
            music=data.get("music"),
            music_volume=float(data.get("volume", 1.0)),
            awaiting_choice=bool(data.get("awaiting_choice", False)),
            chapter=str(data.get("chapter") or ""),
            actors=data.get("actors") or [],
            numbers=dict(data.get("numbers") or {}),
            strings=dict(data.get("strings") or {}),
            subsystems=dict(data.get("subsystems") or {}),
            captured=[str(t) for t in data.get("captured") or []],
            saved_at=float(data.get("saved_at", 0.0)),
            play_seconds=int(data.get("play_seconds", 0)),
        )


def _fold_interpreter(archive: ArchiveData, data: Dict[str, Any]) -> None:
    archive.script_name = data.get("script") or ""
    archive.program_counter = data.get("pc", 0)
    archive.background = data.get("background")
    archive.music = data.get("music")
    archive.music_volume = data.get("volume", 1.0)
    archive.awaiting_choice = bool(data.get("awaiting_choice", False))


def _unfold_interpreter(archive: ArchiveData) -> Dict[str, Any]:
    return {
        "script": archive.script_name,
        "pc": archive.program_counter,
        "background": archive.background,
        "music": archive.music,
        "volume": archive.music_volume,
        "awaiting_choice": archive.awaiting_choice,
    }


def _fold_actors(archive: ArchiveData, data: Dict[str, Any]) -> None:
    archive.actors = list(data.get("actors") or [])


def _unfold_actors(archive: ArchiveData) -> Dict[str, Any]:
    return {"actors": archive.actors}


def _fold_variables(archive: ArchiveData, data: Dict[str, Any]) -> None:
    archive.numbers = dict(data.get("numbers") or {})
    archive.strings = dict(data.get("strings") or {})


def _unfold_variables(archive: ArchiveData) -> Dict[str, Any]:
    return {"numbers": dict(archive.numbers), "strings": dict(archive.strings)}


# tag -> (fold into archive, rebuild blob from archive)
_FOLD_RULES = {
    "interpreter": (_fold_interpreter, _unfold_interpreter),
    "actors": (_fold_actors, _unfold_actors),
    "variables": (_fold_variables, _unfold_variables),
}


# ============================================================================
# Slot Metadata
# ============================================================================

@dataclass
class SaveSlotMeta:
    """存档槽位元数据"""
    slot_id: int
    save_time: Optional[str] = None
    chapter: str = ""
    screenshot: Optional[str] = None
    play_seconds: int = 0
    version: int = SAVE_FORMAT_VERSION

    @property
    def is_empty(self) -> bool:
        return self.save_time is None

    @property
    def formatted_play_time(self) -> str:
        total = max(0, int(self.play_seconds))
        hours, rest = divmod(total, 3600)
        minutes, seconds = divmod(rest, 60)
        return f"{hours:02d}:{minutes:02d}:{seconds:02d}"

    def to_dict(self) -> dict:
        return {
            "slot": self.slot_id,
            "save_time": self.save_time,
            "chapter": self.chapter,
            "screenshot": self.screenshot,
            "play_seconds": self.play_seconds,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict, slot_id: int) -> "SaveSlotMeta":
        return cls(
            slot_id=slot_id,
            save_time=data.get("save_time"),
            chapter=str(data.get("chapter") or ""),
            screenshot=data.get("screenshot"),
            play_seconds=int(data.get("play_seconds") or 0),
            version=int(data.get("version", SAVE_FORMAT_VERSION)),
        )
