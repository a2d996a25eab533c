from __future__ import annotations

import json
import os
import threading
from pathlib import Path

import pytest

from talevn.engine.adapters.scripts import MemoryScriptSource
from talevn.engine.events import (
    AutoSaveCompleteEvent,
    EventSystem,
    LoadCompleteEvent,
    SaveCompleteEvent,
    SaveEvent,
    SlotDeleteCompleteEvent,
    TextShowEvent,
)
from talevn.engine.interpreter import ScriptInterpreter
from talevn.engine.savable import PHASE_SCRIPT, PHASE_VISUAL, Savable
from talevn.engine.save_data import AutoSaveTrigger, GameState
from talevn.engine.save_errors import CorruptSave, RestoreTypeMismatch, SlotEmpty, WriteFailure
from talevn.engine import save_manager as save_manager_mod
from talevn.engine.save_io import AUTO_SAVE_SLOT, screenshot_path, slot_path
from talevn.engine.save_manager import SaveManager
from talevn.engine.stage import ActorStage
from talevn.engine.variables import StoryVariables

SCRIPT = "\n".join([
    "id,type,actor,expression,position,speed,content",
    "1,BG,,,,,classroom",
    "2,DIALOG,hero,happy,0,,Morning.",
    "3,DIALOG,friend,sleepy,4,,Hmm...",
    "4,DIALOG,hero,,,,Wake up!",
])


class FakeClock:
    def __init__(self, t: float = 1_700_000_000.0):
        self.t = t

    def __call__(self) -> float:
        return self.t


class Game:
    """Interpreter + stage + variables wired to one save manager."""

    def __init__(self, save_dir: Path, clock=None, **settings):
        self.events = EventSystem()
        self.stage = ActorStage()
        self.vars = StoryVariables()
        self.interp = ScriptInterpreter(MemoryScriptSource({"day1": SCRIPT}), stage=self.stage, events=self.events, clock=lambda: 0)
        self.clock = clock or FakeClock()
        self.saves = SaveManager(lambda: save_dir, events=self.events, settings=settings, clock=self.clock)
        # registration order differs from restore order on purpose
        self.saves.register(self.interp)
        self.saves.register(self.stage)
        self.saves.register(self.vars)


@pytest.fixture
def game(tmp_path: Path):
    g = Game(tmp_path)
    yield g
    g.saves.close()


def _advance_lines(interp, n):
    for _ in range(n):
        interp.advance()
        interp.advance()


class TestSaveLoadRoundtrip:

    def test_restore_reproduces_script_pc_and_actors(self, game, tmp_path):
        game.interp.load_script("day1")
        _advance_lines(game.interp, 1)
        game.vars.add("affection", 3)
        game.vars.set_string("route", "hero")
        assert game.saves.save_to_slot(1, label="Chapter 1")

        _advance_lines(game.interp, 1)
        game.stage.hide_all()
        game.vars.clear()

        other = Game(tmp_path)
        try:
            assert other.saves.load_from_slot(1)
            assert other.interp.active_script_name == "day1"
            assert other.interp.program_counter == 2
            assert other.interp.background == "classroom"
            actors = {s.actor_id: (s.position, s.expression) for s in other.stage.visible_actors()}
            assert actors == {"hero": (0, "happy"), "friend": (4, "sleepy")}
            assert other.vars.get_number("affection") == 3
            assert other.vars.get_string("route") == "hero"
        finally:
            other.saves.close()

    def test_restore_order_visual_before_script(self, game):
        order = []

        class Probe(Savable):
            def __init__(self, tag, phase):
                self.savable_tag = tag
                self.restore_phase = phase

            def capture(self):
                return {"tag": self.savable_tag}

            def restore(self, blob):
                order.append(self.savable_tag)

        game.saves.register(Probe("script_probe", PHASE_SCRIPT))
        game.saves.register(Probe("visual_probe", PHASE_VISUAL))
        game.interp.load_script("day1")
        assert game.saves.save_to_slot(0)
        assert game.saves.load_from_slot(0)
        assert order == ["visual_probe", "script_probe"]

    def test_unknown_tags_kept_as_subsystems(self, game, tmp_path):
        class Puzzle(Savable):
            savable_tag = "puzzle"

            def __init__(self):
                self.state = {"room": "library", "solved": [1, 2]}

            def capture(self):
                return dict(self.state)

            def restore(self, blob):
                self.state = dict(blob)

        p = Puzzle()
        game.saves.register(p)
        game.interp.load_script("day1")
        assert game.saves.save_to_slot(2)
        body = json.loads(slot_path(2, get_save_dir=lambda: tmp_path).read_text(encoding="utf-8").splitlines()[1])
        assert body["subsystems"]["puzzle"] == {"room": "library", "solved": [1, 2]}
        p.state = {}
        assert game.saves.load_from_slot(2)
        assert p.state["room"] == "library"

    def test_capture_failure_skipped(self, game):
        class Broken(Savable):
            savable_tag = "broken"

            def capture(self):
                raise RuntimeError("boom")

            def restore(self, blob):
                raise AssertionError("never saved")

        game.saves.register(Broken())
        game.interp.load_script("day1")
        assert game.saves.save_to_slot(0)
        assert game.saves.load_from_slot(0)

    def test_restore_mismatch_is_skipped(self, game):
        class Picky(Savable):
            savable_tag = "picky"
            restore_phase = PHASE_VISUAL

            def capture(self):
                return {"v": 1}

            def restore(self, blob):
                raise RestoreTypeMismatch("picky: wrong shape")

        game.saves.register(Picky())
        game.interp.load_script("day1")
        assert game.saves.save_to_slot(0)
        assert game.saves.load_from_slot(0)
        assert game.interp.active_script_name == "day1"

    def test_line_separator_characters_survive_roundtrip(self, game):
        note = "a\u2028b\u2029c\x85d"
        game.interp.load_script("day1")
        game.vars.set_string("note", note)
        assert game.saves.save_to_slot(0, label="line\u2028break")
        game.vars.clear()

        assert game.saves.load_from_slot(0)
        assert game.vars.get_string("note") == note
        assert game.saves.get_slot_meta(0).chapter == "line\u2028break"

    def test_register_is_idempotent(self, game):
        game.saves.register(game.stage)
        game.saves.unregister(game.vars)
        game.saves.unregister(game.vars)
        game.vars.set_number("x", 1)
        game.interp.load_script("day1")
        assert game.saves.save_to_slot(0)
        game.vars.set_number("x", 2)
        assert game.saves.load_from_slot(0)
        assert game.vars.get_number("x") == 2


class TestLoadFailures:

    def test_empty_slot(self, game):
        done = []
        game.events.subscribe(LoadCompleteEvent, done.append)
        assert not game.saves.load_from_slot(2)
        assert isinstance(game.saves.last_error, SlotEmpty)
        assert done[0].success is False

    def test_corrupt_file_leaves_state(self, game, tmp_path):
        game.interp.load_script("day1")
        p = slot_path(1, get_save_dir=lambda: tmp_path)
        p.write_text('{"slot": 1, "save_time": "x"}\n{not json', encoding="utf-8")
        assert not game.saves.load_from_slot(1)
        assert isinstance(game.saves.last_error, CorruptSave)
        assert game.interp.program_counter == 1

    def test_missing_archive_line(self, game, tmp_path):
        p = slot_path(0, get_save_dir=lambda: tmp_path)
        p.write_text('{"slot": 0, "save_time": "2024-01-01 00:00:00"}\n', encoding="utf-8")
        assert not game.saves.load_from_slot(0)
        assert isinstance(game.saves.last_error, CorruptSave)

    def test_bad_actor_entry_skips_only_the_stage(self, game, tmp_path):
        game.interp.load_script("day1")
        _advance_lines(game.interp, 1)
        saved_pc = game.interp.program_counter
        assert game.saves.save_to_slot(1)

        p = slot_path(1, get_save_dir=lambda: tmp_path)
        header, body = p.read_text(encoding="utf-8").split("\n", 1)
        archive = json.loads(body)
        archive["actors"][0] = {"position": 1}
        p.write_text(header + "\n" + json.dumps(archive) + "\n", encoding="utf-8")

        _advance_lines(game.interp, 1)
        game.stage.hide_all()
        game.stage.update_portrait("villain", "grin", 1)

        assert game.saves.load_from_slot(1)
        assert game.interp.program_counter == saved_pc
        # the stage kept its live state instead of the saved cast
        assert game.stage.get("villain").expression == "grin"


class TestAtomicCommit:

    def test_failed_rename_keeps_previous_slot(self, game, tmp_path, monkeypatch):
        game.interp.load_script("day1")
        assert game.saves.save_to_slot(1, label="first")
        p = slot_path(1, get_save_dir=lambda: tmp_path)
        before = p.read_bytes()

        def crash(src, dst):
            raise OSError("disk yanked")

        monkeypatch.setattr(os, "replace", crash)
        _advance_lines(game.interp, 1)
        done = []
        game.events.subscribe(SaveCompleteEvent, done.append)
        assert not game.saves.save_to_slot(1, label="second")

        assert p.read_bytes() == before
        assert not p.with_name(p.name + ".tmp").exists()
        assert isinstance(game.saves.last_error, WriteFailure)
        assert game.saves.last_error.slot == 1
        assert done[-1].success is False
        assert not game.saves.is_saving

    def test_save_event_can_veto(self, game, tmp_path):
        game.events.subscribe(SaveEvent, lambda e: e.cancel())
        assert not game.saves.save_to_slot(0)
        assert game.saves.is_slot_empty(0)


class TestBackgroundSave:

    def test_concurrent_requests_dropped_and_load_refused(self, game, monkeypatch):
        gate = threading.Event()
        real_write = save_manager_mod.atomic_write_bytes

        def slow_write(path, data):
            gate.wait(5)
            real_write(path, data)

        monkeypatch.setattr(save_manager_mod, "atomic_write_bytes", slow_write)
        game.interp.load_script("day1")
        fut = game.saves.begin_save(0, "bg")
        assert fut is not None
        assert game.saves.is_saving
        assert game.saves.begin_save(1) is None
        assert not game.saves.load_from_slot(0)
        assert not game.saves.trigger_auto_save(AutoSaveTrigger.CHAPTER_END, force_immediate=True)
        assert game.saves.poll() is None

        gate.set()
        fut.result(timeout=5)
        assert game.saves.poll() is True
        assert not game.saves.is_saving
        assert not game.saves.is_slot_empty(0)
        assert game.saves.is_slot_empty(1)


class TestAutoSave:

    def test_non_idle_not_forced_does_nothing(self, tmp_path):
        g = Game(tmp_path, auto_save_interval=10)
        try:
            g.interp.load_script("day1")
            g.saves.tick(4)
            g.saves.set_game_state(GameState.IN_DIALOGUE)
            assert not g.saves.trigger_auto_save(AutoSaveTrigger.DECISION_MADE)
            assert g.saves.is_slot_empty(AUTO_SAVE_SLOT)
            assert g.saves.auto_save_timer == 4
        finally:
            g.saves.close()

    def test_forced_writes_even_when_busy(self, game):
        done = []
        game.events.subscribe(AutoSaveCompleteEvent, done.append)
        game.interp.load_script("day1")
        game.saves.set_game_state(GameState.IN_PUZZLE)
        game.saves.set_auto_save_enabled(False)
        assert game.saves.trigger_auto_save(AutoSaveTrigger.PUZZLE_COMPLETE, force_immediate=True, block=True)
        assert not game.saves.is_slot_empty(AUTO_SAVE_SLOT)
        assert done[0].trigger is AutoSaveTrigger.PUZZLE_COMPLETE and done[0].success
        assert game.saves.get_slot_meta(AUTO_SAVE_SLOT).chapter == "Puzzle Complete"

    def test_disabled_not_forced_is_noop(self, game):
        game.saves.set_auto_save_enabled(False)
        assert not game.saves.trigger_auto_save(AutoSaveTrigger.CHAPTER_END)
        assert game.saves.is_slot_empty(AUTO_SAVE_SLOT)

    def test_interval_fires_when_idle_and_resets_timer(self, tmp_path):
        g = Game(tmp_path, auto_save_interval=5)
        done = []
        g.events.subscribe(AutoSaveCompleteEvent, done.append)
        try:
            g.interp.load_script("day1")
            g.saves.set_game_state(GameState.IN_ANIMATION)
            g.saves.tick(6)
            assert g.saves.is_slot_empty(AUTO_SAVE_SLOT)
            g.saves.set_game_state(GameState.IDLE)
            g.saves.tick(0.1)
            assert g.saves.is_saving or done
            g.saves.close()
            assert done and done[0].trigger is AutoSaveTrigger.TIME_INTERVAL
            assert g.saves.auto_save_timer == 0.0
            assert g.saves.get_slot_meta(AUTO_SAVE_SLOT).chapter == "Auto Save"
        finally:
            g.saves.close()

    def test_state_provider_used(self, tmp_path):
        saves = SaveManager(lambda: tmp_path, state_provider=lambda: GameState.IN_TRANSITION)
        try:
            assert saves.game_state is GameState.IN_TRANSITION
            assert not saves.trigger_auto_save(AutoSaveTrigger.TIME_INTERVAL)
        finally:
            saves.close()

    def test_quicksave_quickload(self, game):
        game.interp.load_script("day1")
        assert game.saves.quicksave()
        _advance_lines(game.interp, 2)
        assert game.saves.quickload()
        assert game.interp.program_counter == 1


class TestSlotMetadata:

    def test_meta_from_header_and_play_time(self, tmp_path):
        clock = FakeClock(1_700_000_000.0)
        g = Game(tmp_path, clock=clock)
        try:
            g.interp.load_script("day1")
            clock.t += 3725
            assert g.saves.save_to_slot(2, label="Prologue")
            meta = g.saves.get_slot_meta(2)
            assert not meta.is_empty
            assert meta.chapter == "Prologue"
            assert meta.play_seconds == 3725
            assert meta.formatted_play_time == "01:02:05"
            assert len(meta.save_time) == len("2024-01-01 00:00:00")
        finally:
            g.saves.close()

    def test_play_time_continues_after_load(self, tmp_path):
        clock = FakeClock()
        g = Game(tmp_path, clock=clock)
        try:
            g.interp.load_script("day1")
            clock.t += 100
            assert g.saves.save_to_slot(0)
            clock.t += 500
            assert g.saves.load_from_slot(0)
            clock.t += 20
            assert g.saves.play_seconds() == 120
        finally:
            g.saves.close()

    def test_header_only_read(self, game, tmp_path):
        p = slot_path(1, get_save_dir=lambda: tmp_path)
        p.write_text('{"slot": 1, "save_time": "2024-05-06 07:08:09", "chapter": "Ch2"}\n<archive unreadable>', encoding="utf-8")
        meta = game.saves.get_slot_meta(1)
        assert meta.save_time == "2024-05-06 07:08:09"
        assert meta.chapter == "Ch2"

    def test_list_manual_slots_and_delete(self, game, tmp_path):
        game.interp.load_script("day1")
        assert game.saves.save_to_slot(1, screenshot=b"\x89PNG fake")
        metas = game.saves.list_manual_slots()
        assert [m.slot_id for m in metas] == [0, 1, 2]
        assert [m.is_empty for m in metas] == [True, False, True]
        assert metas[1].screenshot == "slot_01.png"
        assert screenshot_path(1, get_save_dir=lambda: tmp_path).read_bytes() == b"\x89PNG fake"

        done = []
        game.events.subscribe(SlotDeleteCompleteEvent, done.append)
        assert game.saves.delete_slot(1)
        assert game.saves.is_slot_empty(1)
        assert not screenshot_path(1, get_save_dir=lambda: tmp_path).exists()
        assert not game.saves.delete_slot(1)
        assert [d.success for d in done] == [True, False]

    def test_precaptured_screenshot_used_once(self, game, tmp_path):
        game.interp.load_script("day1")
        game.saves.set_precaptured_screenshot(b"frame")
        assert game.saves.save_to_slot(0)
        assert game.saves.save_to_slot(2)
        assert game.saves.get_slot_meta(0).screenshot == "slot_00.png"
        assert game.saves.get_slot_meta(2).screenshot is None


class TestGlobalData:

    def test_created_if_absent(self, tmp_path):
        saves = SaveManager(lambda: tmp_path)
        saves.close()
        data = json.loads((tmp_path / "global_data.json").read_text(encoding="utf-8"))
        assert data["read_lines"] == []

    def test_persist_and_reload(self, tmp_path):
        saves = SaveManager(lambda: tmp_path)
        saves.global_data.unlock_ending("true_end")
        saves.global_data.set_flag("seen_intro")
        saves.global_data.mark_read(3)
        saves.global_data.mark_read(1)
        saves.global_data.unlock_gallery("cg01")
        assert saves.save_global_data()
        saves.close()

        data = json.loads((tmp_path / "global_data.json").read_text(encoding="utf-8"))
        assert data["read_lines"] == [1, 3]

        again = SaveManager(lambda: tmp_path)
        try:
            gd = again.global_data
            assert "true_end" in gd.unlocked_endings
            assert gd.get_flag("seen_intro")
            assert gd.is_read(3)
            assert "cg01" in gd.unlocked_gallery
        finally:
            again.close()

    def test_unreadable_file_starts_fresh(self, tmp_path):
        (tmp_path / "global_data.json").write_text("{oops", encoding="utf-8")
        saves = SaveManager(lambda: tmp_path)
        try:
            assert saves.global_data.read_lines == set()
        finally:
            saves.close()

    def test_malformed_flags_start_fresh(self, tmp_path):
        (tmp_path / "global_data.json").write_text('{"flags": ["a"], "read_lines": [1]}', encoding="utf-8")
        saves = SaveManager(lambda: tmp_path)
        try:
            assert saves.global_data.flags == {}
            assert saves.global_data.read_lines == set()
        finally:
            saves.close()

    def test_track_read_lines(self, game):
        game.saves.track_read_lines()
        game.interp.load_script("day1")
        _advance_lines(game.interp, 1)
        assert game.saves.global_data.is_read(2)
        assert game.saves.global_data.is_read(3)
        assert not game.saves.global_data.is_read(4)

    def test_track_read_lines_external_bus(self, tmp_path):
        bus = EventSystem()
        saves = SaveManager(lambda: tmp_path)
        try:
            unsub = saves.track_read_lines(bus)
            bus.emit(TextShowEvent(record_id=9))
            unsub()
            bus.emit(TextShowEvent(record_id=10))
            assert saves.global_data.read_lines == {9}
        finally:
            saves.close()
