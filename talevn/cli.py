from __future__ import annotations

import argparse
import logging
import sys
import time
from pathlib import Path
from typing import Callable, List, Optional

from .engine.actors import load_actor_registry
from .engine.adapters.scripts import FileScriptSource
from .engine.config_io import load_config
from .engine.events import EventSystem
from .engine.interpreter import InterpreterStatus, ScriptInterpreter
from .engine.renderer import DummyRenderer
from .engine.save_io import AUTO_SAVE_SLOT
from .engine.save_manager import SaveManager
from .engine.stage import ActorStage
from .engine.typewriter import reveal_all
from .engine.variables import StoryVariables

HELP = "Enter = next line, <n> = choose option n, save <slot>, load <slot>, quit"


def _print_slot(meta) -> None:
    name = "auto" if meta.slot_id == AUTO_SAVE_SLOT else f"{meta.slot_id:>4}"
    if meta.is_empty:
        print(f"{name}: <empty>")
    else:
        print(f"{name}: {meta.save_time}  {meta.chapter}  [{meta.formatted_play_time}]")


def _play(interp: ScriptInterpreter, saves: SaveManager, read_line: Optional[Callable[[str], str]] = None) -> int:
    """Console loop; returns when the script ends, halts or the player quits."""
    read_line = read_line or input
    last = time.monotonic()
    while interp.status in (InterpreterStatus.AWAITING_ADVANCE, InterpreterStatus.AWAITING_CHOICE):
        # the console prints whole lines; no reveal to wait for
        if interp.typewriter is not None:
            reveal_all(interp.typewriter)
        try:
            cmd = read_line("> ").strip()
        except EOFError:
            break
        now = time.monotonic()
        saves.tick(now - last)
        last = now

        parts = cmd.split()
        if not parts:
            if interp.awaiting_choice:
                print("Pick an option number.")
            else:
                interp.advance()
        elif parts[0] in ("quit", "q", "exit"):
            break
        elif parts[0] in ("save", "load") and len(parts) == 2 and parts[1].lstrip("-").isdigit():
            slot = int(parts[1])
            if parts[0] == "save":
                ok = saves.save_to_slot(slot, label=interp.active_script_name)
            else:
                ok = saves.load_from_slot(slot)
            print(f"{parts[0]} slot {slot}: {'ok' if ok else saves.last_error}")
        elif parts[0].isdigit() and interp.awaiting_choice:
            if not interp.select_choice(int(parts[0]) - 1):
                print("No such option.")
        else:
            print(HELP)

    if interp.status is InterpreterStatus.FINISHED:
        print("[END]")
    elif interp.status is InterpreterStatus.HALTED:
        print("[HALTED]")
        return 1
    return 0


def main(argv: List[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="talevn", description="TaleVN dialogue runner")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument("--save-dir", type=str, default="save", help="Directory for saves, global data and config")
    sub = parser.add_subparsers(dest="cmd")

    p_run = sub.add_parser("run", help="Play a script in the console")
    p_run.add_argument("script", type=str, nargs="?", default=None, help="Script name under the scripts root (default: config script.start)")
    p_run.add_argument("--root", type=str, default=None, help="Scripts root directory (default: config script.root)")
    p_run.add_argument("--base", type=str, default=".", help="Project directory holding config/actors.json")
    p_run.add_argument("--load", type=int, default=None, help="Resume from a save slot instead of starting fresh")

    sub.add_parser("slots", help="List save slots")

    args = parser.parse_args(list(argv) if argv is not None else sys.argv[1:])
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    save_dir = Path(args.save_dir)
    cfg = load_config(lambda: save_dir)

    if args.cmd == "slots":
        saves = SaveManager(lambda: save_dir, settings=cfg["save"])
        try:
            for meta in saves.list_manual_slots():
                _print_slot(meta)
            _print_slot(saves.get_slot_meta(AUTO_SAVE_SLOT))
        finally:
            saves.close()
        return 0

    if args.cmd != "run":
        parser.print_help()
        return 2

    root = Path(args.root or cfg["script"]["root"])
    source = FileScriptSource(lambda: root, cfg["script"]["extension"])
    name = args.script or cfg["script"]["start"]
    if args.load is None and not source.exists(name):
        print(f"Script not found: {source.path_for(name)}")
        return 2

    events = EventSystem()
    stage = ActorStage()
    variables = StoryVariables()
    interp = ScriptInterpreter(
        source,
        renderer=DummyRenderer(),
        stage=stage,
        actors=load_actor_registry(args.base),
        events=events,
    )
    saves = SaveManager(lambda: save_dir, events=events, settings=cfg["save"])
    for s in (stage, variables, interp):
        saves.register(s)
    saves.track_read_lines()

    try:
        if args.load is not None:
            if not saves.load_from_slot(args.load):
                print(f"Cannot load slot {args.load}: {saves.last_error}")
                return 2
        else:
            interp.load_script(name)
        print(HELP)
        return _play(interp, saves)
    finally:
        saves.save_global_data()
        saves.close()


if __name__ == "__main__":
    raise SystemExit(main())
