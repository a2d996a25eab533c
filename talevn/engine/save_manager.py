"""
Save/Load Manager - 存档管理

Owns:
- the registry of savable subsystems and their phased restore
- manual slots, the auto/quick slot and the global data file
- the background writer (one worker, byte-level writes only)
- the auto-save policy (timer + triggers, gated on game state)
"""
from __future__ import annotations

import json
import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

import pygame

from .events import (
    AutoSaveCompleteEvent,
    EventSystem,
    LoadCompleteEvent,
    LoadEvent,
    SaveCompleteEvent,
    SaveEvent,
    SlotDeleteCompleteEvent,
    TextShowEvent,
)
from .config_io import DEFAULTS
from .savable import Savable
from .save_data import (
    AUTO_SAVE_LABELS,
    ArchiveData,
    AutoSaveTrigger,
    GameState,
    GlobalData,
    SaveSlotMeta,
)
from .save_errors import PersistenceError, RestoreTypeMismatch, WriteFailure
from .save_io import (
    AUTO_SAVE_SLOT,
    atomic_write_bytes,
    encode_screenshot,
    global_data_path,
    read_header,
    read_save,
    screenshot_path,
    serialize_save,
    slot_path,
)

logger = logging.getLogger(__name__)

SAVE_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"
QUICK_SAVE_LABEL = "Quick Save"

Screenshot = Union[bytes, pygame.Surface]


@dataclass
class _PendingSave:
    slot: int
    future: Future
    trigger: Optional[AutoSaveTrigger] = None


class SaveManager:
    """
    存档管理器

    Usage:
        saves = SaveManager(lambda: Path("save"), events=events)
        saves.register(stage)
        saves.register(interpreter)

        saves.save_to_slot(0, label="Chapter 1")
        saves.load_from_slot(0)

        # per frame
        saves.tick(dt)

    Capture and serialization run on the caller's thread; only the file write
    runs on the worker. ``is_saving`` is set and cleared on the caller's thread
    (cleared by ``poll``/``tick`` or by the blocking calls).
    """

    def __init__(
        self,
        get_save_dir: Callable[[], Path],
        *,
        events: Optional[EventSystem] = None,
        settings: Optional[Dict[str, Any]] = None,
        clock: Optional[Callable[[], float]] = None,
        state_provider: Optional[Callable[[], GameState]] = None,
    ) -> None:
        self._get_save_dir = get_save_dir
        self._events = events or EventSystem()
        cfg = dict(DEFAULTS["save"])
        cfg.update(settings or {})
        self.auto_save_enabled = bool(cfg["auto_save_enabled"])
        self.auto_save_interval = float(cfg["auto_save_interval"])
        self.manual_slots = int(cfg["manual_slots"])
        self.screenshot_size = tuple(cfg["screenshot_size"])

        self._clock = clock or time.time
        self._state_provider = state_provider
        self._game_state = GameState.IDLE

        self._savables: List[Savable] = []
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="talevn-save")
        self._pending: Optional[_PendingSave] = None
        self._is_saving = False
        self._auto_timer = 0.0
        self._precaptured: Optional[Screenshot] = None

        self._play_base = 0
        self._session_start = self._clock()
        self.last_error: Optional[PersistenceError] = None

        self._global = self._load_global_data()

    @property
    def save_dir(self) -> Path:
        return self._get_save_dir()

    @property
    def events(self) -> EventSystem:
        return self._events

    @property
    def is_saving(self) -> bool:
        return self._is_saving

    @property
    def auto_save_timer(self) -> float:
        return self._auto_timer

    # =========================================
    # Registry
    # =========================================

    def register(self, savable: Savable) -> None:
        if savable not in self._savables:
            self._savables.append(savable)

    def unregister(self, savable: Savable) -> None:
        if savable in self._savables:
            self._savables.remove(savable)

    # =========================================
    # Save
    # =========================================

    def set_precaptured_screenshot(self, shot: Optional[Screenshot]) -> None:
        """Frame grabbed before a menu covered the screen; used by the next save."""
        self._precaptured = shot

    def _capture_archive(self, label: str, now: float) -> ArchiveData:
        archive = ArchiveData(chapter=label, saved_at=now, play_seconds=self.play_seconds())
        for s in list(self._savables):
            try:
                archive.fold(s.capture_blob())
            except Exception as e:
                logger.error(f"Capture failed for {type(s).__name__}: {e}", exc_info=True)
        return archive

    def _write_screenshot(self, slot: int, shot: Screenshot) -> Optional[str]:
        path = screenshot_path(slot, get_save_dir=self._get_save_dir)
        try:
            data = encode_screenshot(shot, self.screenshot_size) if isinstance(shot, pygame.Surface) else bytes(shot)
            atomic_write_bytes(path, data)
        except (WriteFailure, pygame.error, ValueError, TypeError) as e:
            logger.warning(f"Screenshot for slot {slot} not saved: {e}")
            return None
        return path.name

    def _fail(self, slot: int, error: PersistenceError, trigger: Optional[AutoSaveTrigger]) -> None:
        self.last_error = error
        logger.error(f"Save to slot {slot} failed: {error}")
        self._events.emit(SaveCompleteEvent(slot=slot, success=False))
        if trigger is not None:
            self._events.emit(AutoSaveCompleteEvent(trigger=trigger, success=False))

    def begin_save(
        self,
        slot: int,
        label: str = "",
        screenshot: Optional[Screenshot] = None,
        trigger: Optional[AutoSaveTrigger] = None,
    ) -> Optional[Future]:
        """Capture now, write in the background. ``poll`` completes the save."""
        self.poll()
        if self._is_saving:
            logger.warning(f"Save to slot {slot} ignored: another save is in progress")
            return None
        if slot != AUTO_SAVE_SLOT and slot < 0:
            logger.error(f"Invalid save slot {slot}")
            return None

        save_event = self._events.emit(SaveEvent(slot=slot, is_autosave=trigger is not None))
        if save_event.cancelled:
            logger.debug(f"Save to slot {slot} cancelled by event handler")
            return None

        now = self._clock()
        archive = self._capture_archive(label, now)
        meta = SaveSlotMeta(
            slot_id=slot,
            save_time=datetime.fromtimestamp(now).strftime(SAVE_TIME_FORMAT),
            chapter=label,
            play_seconds=archive.play_seconds,
        )
        shot = screenshot if screenshot is not None else self._precaptured
        self._precaptured = None
        if shot is not None:
            meta.screenshot = self._write_screenshot(slot, shot)

        try:
            data = serialize_save(meta, archive)
        except (TypeError, ValueError) as e:
            self._fail(slot, WriteFailure(f"State is not serializable: {e}", slot), trigger)
            return None

        self._is_saving = True
        future = self._executor.submit(atomic_write_bytes, slot_path(slot, get_save_dir=self._get_save_dir), data)
        self._pending = _PendingSave(slot=slot, future=future, trigger=trigger)
        return future

    def poll(self) -> Optional[bool]:
        """Finish a completed background save; returns its result, or None if none finished."""
        if self._pending is None or not self._pending.future.done():
            return None
        return self._finish_pending()

    def _finish_pending(self) -> bool:
        pending = self._pending
        self._pending = None
        try:
            pending.future.result()
            ok = True
        except WriteFailure as e:
            ok = False
            e.slot = pending.slot
            self.last_error = e
            logger.error(f"Save to slot {pending.slot} failed: {e}")
        finally:
            self._is_saving = False
        if ok:
            self.last_error = None
            logger.info(f"Saved slot {pending.slot}")
        self._events.emit(SaveCompleteEvent(slot=pending.slot, success=ok))
        if pending.trigger is not None:
            self._auto_timer = 0.0
            self._events.emit(AutoSaveCompleteEvent(trigger=pending.trigger, success=ok))
        return ok

    def _wait_pending(self) -> bool:
        wait([self._pending.future])
        return self._finish_pending()

    def save_to_slot(self, slot: int, label: str = "", screenshot: Optional[Screenshot] = None) -> bool:
        if self.begin_save(slot, label, screenshot) is None:
            return False
        return self._wait_pending()

    def quicksave(self, label: str = QUICK_SAVE_LABEL) -> bool:
        return self.save_to_slot(AUTO_SAVE_SLOT, label)

    # =========================================
    # Load
    # =========================================

    def _restore(self, archive: ArchiveData) -> None:
        # stable sort: same phase keeps registration order
        for s in sorted(self._savables, key=lambda x: x.restore_phase):
            tag = s.savable_tag or type(s).__name__
            blob = archive.blob_for(tag)
            if blob is None:
                logger.debug(f"No saved state for '{tag}'")
                continue
            try:
                s.restore(blob)
            except RestoreTypeMismatch as e:
                logger.error(f"Skipping restore of '{tag}': {e}")
            except Exception as e:
                logger.error(f"Restore of '{tag}' failed: {e}", exc_info=True)

    def load_from_slot(self, slot: int) -> bool:
        self.poll()
        if self._is_saving:
            logger.warning(f"Load from slot {slot} refused: a save is in progress")
            return False

        load_event = self._events.emit(LoadEvent(slot=slot))
        if load_event.cancelled:
            logger.debug(f"Load from slot {slot} cancelled by event handler")
            return False

        try:
            _meta, archive = read_save(slot, get_save_dir=self._get_save_dir)
        except PersistenceError as e:
            self.last_error = e
            logger.error(f"Load from slot {slot} failed: {e}")
            self._events.emit(LoadCompleteEvent(slot=slot, success=False))
            return False

        self._restore(archive)
        self._play_base = archive.play_seconds
        self._session_start = self._clock()
        self.last_error = None
        logger.info(f"Loaded slot {slot}")
        self._events.emit(LoadCompleteEvent(slot=slot, success=True))
        return True

    def quickload(self) -> bool:
        return self.load_from_slot(AUTO_SAVE_SLOT)

    # =========================================
    # Slots
    # =========================================

    def get_slot_meta(self, slot: int) -> SaveSlotMeta:
        return read_header(slot, get_save_dir=self._get_save_dir)

    def list_manual_slots(self) -> List[SaveSlotMeta]:
        return [self.get_slot_meta(i) for i in range(self.manual_slots)]

    def is_slot_empty(self, slot: int) -> bool:
        return not slot_path(slot, get_save_dir=self._get_save_dir).exists()

    def delete_slot(self, slot: int) -> bool:
        deleted = False
        ok = True
        for p in (slot_path(slot, get_save_dir=self._get_save_dir), screenshot_path(slot, get_save_dir=self._get_save_dir)):
            try:
                if p.exists():
                    p.unlink()
                    deleted = True
            except OSError as e:
                ok = False
                logger.error(f"Failed to delete {p}: {e}")
        success = ok and deleted
        self._events.emit(SlotDeleteCompleteEvent(slot=slot, success=success))
        return success

    # =========================================
    # Auto-save
    # =========================================

    @property
    def game_state(self) -> GameState:
        if self._state_provider is not None:
            return self._state_provider()
        return self._game_state

    def set_game_state(self, state: GameState) -> None:
        self._game_state = state

    def set_auto_save_enabled(self, enabled: bool) -> None:
        self.auto_save_enabled = bool(enabled)

    def trigger_auto_save(self, trigger: AutoSaveTrigger, force_immediate: bool = False, block: bool = False) -> bool:
        """Start an automatic save into the auto slot. Returns True if a save was started."""
        self.poll()
        if not self.auto_save_enabled and not force_immediate:
            logger.debug(f"Auto-save ({trigger.name}) skipped: disabled")
            return False
        if self._is_saving:
            logger.debug(f"Auto-save ({trigger.name}) skipped: save in progress")
            return False
        state = self.game_state
        if state is not GameState.IDLE and not force_immediate:
            logger.debug(f"Auto-save ({trigger.name}) skipped: game state is {state.name}")
            return False
        label = AUTO_SAVE_LABELS.get(trigger, AUTO_SAVE_LABELS[AutoSaveTrigger.TIME_INTERVAL])
        if self.begin_save(AUTO_SAVE_SLOT, label, trigger=trigger) is None:
            return False
        if block:
            self._wait_pending()
        return True

    def tick(self, dt: float) -> None:
        """Per-frame update: finish pending saves and run the interval timer."""
        self.poll()
        if not self.auto_save_enabled or self._is_saving:
            return
        self._auto_timer += dt
        if self._auto_timer >= self.auto_save_interval and self.game_state is GameState.IDLE:
            self.trigger_auto_save(AutoSaveTrigger.TIME_INTERVAL)

    # =========================================
    # Global data
    # =========================================

    @property
    def global_data(self) -> GlobalData:
        return self._global

    def _load_global_data(self) -> GlobalData:
        p = global_data_path(get_save_dir=self._get_save_dir)
        if not p.exists():
            self._global = GlobalData()
            self.save_global_data()
            return self._global
        try:
            return GlobalData.from_dict(json.loads(p.read_text(encoding="utf-8")))
        except (OSError, ValueError, TypeError) as e:
            logger.error(f"Global data at {p} is unreadable, starting fresh: {e}")
            return GlobalData()

    def save_global_data(self) -> bool:
        p = global_data_path(get_save_dir=self._get_save_dir)
        data = json.dumps(self._global.to_dict(), ensure_ascii=False, indent=2).encode("utf-8")
        try:
            atomic_write_bytes(p, data)
            return True
        except WriteFailure as e:
            self.last_error = e
            logger.error(f"Failed to save global data: {e}")
            return False

    def track_read_lines(self, events: Optional[EventSystem] = None) -> Callable[[], None]:
        """Mark every published dialogue line as read. Returns the unsubscribe function."""
        bus = events or self._events

        def on_text(event: TextShowEvent) -> None:
            self._global.mark_read(event.record_id)

        return bus.subscribe(TextShowEvent, on_text)

    # =========================================
    # Play time
    # =========================================

    def play_seconds(self) -> int:
        return self._play_base + int(self._clock() - self._session_start)

    def reset_play_time(self) -> None:
        self._play_base = 0
        self._session_start = self._clock()

    def close(self) -> None:
        if self._pending is not None:
            self._wait_pending()
        self._executor.shutdown(wait=True)
