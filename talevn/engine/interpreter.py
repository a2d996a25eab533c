from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from talevn.script.errors import JumpTargetMissing, ScriptError
from talevn.script.model import Opcode, Program, ScriptRecord
from talevn.script.parser import parse_script

from .actors import ActorRegistry
from .adapters.scripts import IScriptSource
from .events import (
    ChoiceSelectEvent,
    ChoiceShowEvent,
    EventSystem,
    ScriptEndEvent,
    ScriptErrorEvent,
    ScriptLoadEvent,
    TextShowEvent,
)
from .renderer import IRenderer
from .savable import PHASE_SCRIPT, Savable, require_fields
from .save_errors import RestoreTypeMismatch
from .stage import KEEP_POSITION, ActorStage
from .typewriter import TypewriterState, create_typewriter, reveal_all, update_typewriter

logger = logging.getLogger(__name__)

# non-blocking records executed in one process_current() call before giving up
MAX_AUTO_STEPS = 10000

_TRUTHY = {"TRUE", "1", "ON"}


class InterpreterStatus(Enum):
    ADVANCING = "advancing"
    AWAITING_ADVANCE = "awaiting_advance"
    AWAITING_CHOICE = "awaiting_choice"
    HALTED = "halted"
    FINISHED = "finished"


@dataclass
class ChoiceOption:
    label: str
    target: int


def parse_choices(payload: str) -> List[ChoiceOption]:
    """``"Go left:10|Go right:20"`` -> options; bad entries are skipped."""
    options: List[ChoiceOption] = []
    for entry in (payload or "").split("|"):
        if not entry.strip():
            continue
        label, sep, target = entry.rpartition(":")
        if not sep:
            logger.warning(f"Choice entry without target: '{entry}'")
            continue
        try:
            options.append(ChoiceOption(label=label.strip(), target=int(target.strip())))
        except ValueError:
            logger.warning(f"Choice entry with non-integer target: '{entry}'")
    return options


def _monotonic_ms() -> int:
    return int(time.monotonic() * 1000)


class ScriptInterpreter(Savable):
    """Runs one loaded script as a state machine.

    DIALOG and CHOOSE records suspend execution until ``advance`` or
    ``select_choice``; every other opcode continues to the next record within
    the same ``process_current`` call.
    """

    savable_tag = "interpreter"
    restore_phase = PHASE_SCRIPT

    def __init__(
        self,
        source: IScriptSource,
        renderer: Optional[IRenderer] = None,
        stage: Optional[ActorStage] = None,
        actors: Optional[ActorRegistry] = None,
        events: Optional[EventSystem] = None,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        self.source = source
        self.renderer = renderer
        self.stage = stage
        self.actors = actors
        self.events = events
        self.clock = clock or _monotonic_ms

        self._program: Program = Program([], "")
        self._pc = 0
        self._awaiting_choice = False
        self._status = InterpreterStatus.FINISHED
        self._choices: List[ChoiceOption] = []
        self._background: Optional[str] = None
        self._music: Optional[str] = None
        self._volume = 1.0
        self._typewriter: Optional[TypewriterState] = None

        self._handlers: Dict[Opcode, Callable[[ScriptRecord], None]] = {
            Opcode.DIALOG: self._do_dialog,
            Opcode.LOAD: self._do_load,
            Opcode.JUMP: self._do_jump,
            Opcode.CHOOSE: self._do_choose,
            Opcode.SET_BACKGROUND: self._do_background,
            Opcode.SET_MUSIC: self._do_music,
            Opcode.FOCUS: self._do_focus,
            Opcode.HIDE: self._do_hide,
        }

    # ---- properties ----
    @property
    def status(self) -> InterpreterStatus:
        return self._status

    @property
    def program_counter(self) -> int:
        return self._pc

    @property
    def awaiting_choice(self) -> bool:
        return self._awaiting_choice

    @property
    def active_script_name(self) -> str:
        return self._program.name

    @property
    def records(self) -> List[ScriptRecord]:
        return self._program.records

    @property
    def current_record(self) -> Optional[ScriptRecord]:
        if 0 <= self._pc < len(self._program):
            return self._program.records[self._pc]
        return None

    @property
    def choices(self) -> List[ChoiceOption]:
        return list(self._choices)

    @property
    def background(self) -> Optional[str]:
        return self._background

    @property
    def music(self) -> Optional[str]:
        return self._music

    @property
    def music_volume(self) -> float:
        return self._volume

    @property
    def typewriter(self) -> Optional[TypewriterState]:
        return self._typewriter

    # ---- loading ----
    def _load_program(self, name: str) -> bool:
        text = self.source.read(name)
        ok = text is not None
        records = parse_script(text, name=name) if ok else []
        self._program = Program(records, name)
        self._pc = 0
        self._awaiting_choice = False
        self._choices = []
        self._typewriter = None
        if not ok:
            self._report(ScriptError(f"Script '{name}' could not be loaded"), kind="script_missing")
        else:
            logger.info(f"Loaded script '{name}' ({len(records)} records)")
        if self.events:
            self.events.emit(ScriptLoadEvent(name=name, record_count=len(records)))
        return ok

    def load_script(self, name: str) -> bool:
        """Replace the running script and execute from its first record."""
        ok = self._load_program(name)
        self.process_current()
        return ok

    # ---- transition function ----
    def process_current(self) -> InterpreterStatus:
        self._status = InterpreterStatus.ADVANCING
        steps = 0
        while self._status is InterpreterStatus.ADVANCING:
            rec = self.current_record
            if rec is None:
                self._finish()
                break
            steps += 1
            if steps > MAX_AUTO_STEPS:
                self._report(ScriptError(f"No blocking record within {MAX_AUTO_STEPS} steps; possible jump loop", rec.line), rec, kind="runaway")
                self._status = InterpreterStatus.HALTED
                break
            self._handlers[rec.opcode](rec)
        return self._status

    def _finish(self) -> None:
        self._status = InterpreterStatus.FINISHED
        logger.debug(f"Script '{self._program.name}' finished")
        if self.events:
            self.events.emit(ScriptEndEvent(name=self._program.name))

    def _next(self) -> None:
        self._pc += 1

    def _report(self, error: ScriptError, rec: Optional[ScriptRecord] = None, kind: str = "") -> None:
        logger.error(f"[{self._program.name}] {error}")
        if self.events:
            self.events.emit(ScriptErrorEvent(message=error.message, record_id=rec.id if rec else None, kind=kind))
        if self.renderer:
            self.renderer.show_error(error.message)

    def _halt_missing(self, target: Any, rec: Optional[ScriptRecord]) -> None:
        err = JumpTargetMissing(f"Jump target {target!r} not found", rec.line if rec else None)
        self._report(err, rec, kind="jump_target_missing")
        self._status = InterpreterStatus.HALTED

    # ---- opcode handlers ----
    def _position_of(self, rec: ScriptRecord) -> int:
        if not rec.position:
            return KEEP_POSITION
        try:
            return int(rec.position)
        except ValueError:
            logger.warning(f"Record {rec.id}: unparsable position '{rec.position}', keeping current")
            return KEEP_POSITION

    def _do_dialog(self, rec: ScriptRecord) -> None:
        if rec.position.upper() == "HIDE":
            if rec.actor_id and self.stage:
                self.stage.hide_actor(rec.actor_id)
        elif rec.actor_id and self.stage:
            self.stage.update_portrait(rec.actor_id, rec.expression, self._position_of(rec))
        if self.actors:
            name = self.actors.display_name(rec.actor_id)
        else:
            name = rec.actor_id or None
        meta = {
            "record_id": rec.id,
            "actor": rec.actor_id,
            "expression": rec.expression,
            "position": rec.position,
            "speed": rec.speed,
        }
        if self.renderer:
            self.renderer.show_line(name, rec.payload, meta)
        if self.events:
            self.events.emit(TextShowEvent(record_id=rec.id, speaker=name, actor_id=rec.actor_id, text=rec.payload, meta=meta))
        self._typewriter = create_typewriter(rec.payload, rec.speed, self.clock())
        self._status = InterpreterStatus.AWAITING_ADVANCE

    def _do_load(self, rec: ScriptRecord) -> None:
        name = rec.payload.strip()
        if not name:
            self._report(ScriptError("LOAD without a script name", rec.line), rec, kind="script_missing")
            self._next()
            return
        # pc resets to 0; the loop carries on in the new script
        self._load_program(name)

    def _do_jump(self, rec: ScriptRecord) -> None:
        try:
            target = int(rec.payload.strip())
        except ValueError:
            self._halt_missing(rec.payload, rec)
            return
        idx = self._program.index_of(target)
        if idx is None:
            self._halt_missing(target, rec)
            return
        self._pc = idx

    def _do_choose(self, rec: ScriptRecord) -> None:
        options = parse_choices(rec.payload)
        if not options:
            self._report(ScriptError("CHOOSE without any valid option", rec.line, rec.payload), rec, kind="empty_choice")
            self._next()
            return
        self._choices = options
        self._awaiting_choice = True
        self._status = InterpreterStatus.AWAITING_CHOICE
        pairs = [(o.label, o.target) for o in options]
        if self.renderer:
            self.renderer.show_choices(pairs)
        if self.events:
            self.events.emit(ChoiceShowEvent(choices=pairs))

    def _do_background(self, rec: ScriptRecord) -> None:
        self._background = rec.payload.strip() or None
        if self.renderer:
            self.renderer.set_background(self._background)
        self._next()

    def _apply_music(self) -> None:
        if not self.renderer:
            return
        if self._music:
            self.renderer.play_music(self._music, self._volume)
        else:
            self.renderer.stop_music()

    def _do_music(self, rec: ScriptRecord) -> None:
        parts = rec.payload.split()
        if not parts or parts[0].upper() == "STOP":
            self._music = None
        else:
            volume = 1.0
            if len(parts) > 1:
                try:
                    volume = float(parts[-1])
                    parts = parts[:-1]
                except ValueError:
                    logger.warning(f"Record {rec.id}: bad music volume '{parts[-1]}', using 1.0")
                    parts = parts[:-1]
            self._music = " ".join(parts)
            self._volume = volume
        self._apply_music()
        self._next()

    def _do_focus(self, rec: ScriptRecord) -> None:
        if not rec.actor_id:
            logger.error(f"Record {rec.id}: FOCUS without an actor")
        elif self.stage:
            self.stage.set_focus(rec.actor_id, rec.payload.strip().upper() in _TRUTHY)
        self._next()

    def _do_hide(self, rec: ScriptRecord) -> None:
        target = rec.payload.strip() or rec.actor_id
        if not target:
            logger.warning(f"Record {rec.id}: HIDE without a target")
        elif self.stage:
            if target.upper() == "ALL":
                self.stage.hide_all()
            else:
                self.stage.hide_actor(target)
        self._next()

    # ---- external signals ----
    def advance(self) -> bool:
        """Continue past the current line; the first call only finishes a running reveal."""
        if self._status is not InterpreterStatus.AWAITING_ADVANCE:
            return False
        if self._typewriter and not self._typewriter.is_complete:
            reveal_all(self._typewriter)
            return True
        self._next()
        self.process_current()
        return True

    def select_choice(self, index: int) -> bool:
        if not self._awaiting_choice or not 0 <= index < len(self._choices):
            logger.debug(f"select_choice({index}) ignored")
            return False
        option = self._choices[index]
        if self.events:
            self.events.emit(ChoiceSelectEvent(index=index, text=option.label, target=option.target))
        self._awaiting_choice = False
        self._choices = []
        return self.jump_to(option.target)

    def jump_to(self, record_id: int) -> bool:
        idx = self._program.index_of(record_id)
        if idx is None:
            self._halt_missing(record_id, self.current_record)
            return False
        self._pc = idx
        self._awaiting_choice = False
        self._choices = []
        self.process_current()
        return True

    def tick(self, now_ms: Optional[int] = None) -> bool:
        if self._typewriter is None:
            return False
        return update_typewriter(self._typewriter, self.clock() if now_ms is None else now_ms)

    # ---- Savable ----
    def capture(self) -> Dict[str, Any]:
        return {
            "script": self._program.name,
            "pc": self._pc,
            "background": self._background,
            "music": self._music,
            "volume": self._volume,
            "awaiting_choice": self._awaiting_choice,
        }

    def restore(self, blob: Dict[str, Any]) -> None:
        none = type(None)
        require_fields(blob, [
            ("script", (str,)),
            ("pc", (int,)),
            ("background", (str, none)),
            ("music", (str, none)),
            ("volume", (int, float)),
            ("awaiting_choice", (bool,)),
        ], "interpreter")
        if blob["pc"] < 0:
            raise RestoreTypeMismatch(f"interpreter: negative program counter {blob['pc']}")
        self._load_program(blob["script"])
        self._pc = blob["pc"]
        self._background = blob["background"]
        self._music = blob["music"]
        self._volume = float(blob["volume"])
        if self.renderer:
            self.renderer.set_background(self._background)
        self._apply_music()
        # re-enter the saved record; a CHOOSE re-presents its options
        self.process_current()
