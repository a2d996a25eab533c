from __future__ import annotations

import io
import json
import logging
import os
from pathlib import Path
from typing import Callable, Optional, Tuple

import pygame

from .save_data import ArchiveData, SaveSlotMeta
from .save_errors import CorruptSave, SlotEmpty, WriteFailure

logger = logging.getLogger(__name__)

AUTO_SAVE_SLOT = -1
SCREENSHOT_DIR = "screenshots"
GLOBAL_DATA_FILE = "global_data.json"
DEFAULT_SCREENSHOT_SIZE: Tuple[int, int] = (384, 216)


def _base(get_save_dir: Callable[[], Path]) -> Path:
    base_obj = get_save_dir() if callable(get_save_dir) else Path("save")
    return base_obj if isinstance(base_obj, Path) else Path(str(base_obj))


def slot_stem(slot: int) -> str:
    return "auto_save" if slot == AUTO_SAVE_SLOT else f"slot_{int(slot):02d}"


def slot_path(slot: int, *, get_save_dir: Callable[[], Path]) -> Path:
    return _base(get_save_dir) / f"{slot_stem(slot)}.json"


def screenshot_path(slot: int, *, get_save_dir: Callable[[], Path]) -> Path:
    return _base(get_save_dir) / SCREENSHOT_DIR / f"{slot_stem(slot)}.png"


def global_data_path(*, get_save_dir: Callable[[], Path]) -> Path:
    return _base(get_save_dir) / GLOBAL_DATA_FILE


def atomic_write_bytes(path: Path, data: bytes) -> None:
    """Write ``data`` to ``path`` via ``<path>.tmp`` + fsync + rename.

    On failure the temp file is removed, the previous file at ``path`` is left
    byte-identical, and ``WriteFailure`` is raised.
    """
    tmp = path.with_name(path.name + ".tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(tmp, "wb") as fh:
            fh.write(data)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp, path)
    except OSError as e:
        try:
            tmp.unlink()
        except FileNotFoundError:
            pass
        except OSError as cleanup_err:
            logger.warning(f"Could not remove temp file {tmp}: {cleanup_err}")
        raise WriteFailure(f"Writing {path.name} failed: {e}") from e


def serialize_save(meta: SaveSlotMeta, archive: ArchiveData) -> bytes:
    """Header line (slot metadata) followed by the archive line."""
    header = json.dumps(meta.to_dict(), ensure_ascii=False)
    body = json.dumps(archive.to_dict(), ensure_ascii=False)
    return f"{header}\n{body}\n".encode("utf-8")


def read_header(slot: int, *, get_save_dir: Callable[[], Path]) -> SaveSlotMeta:
    """Slot metadata from the first line only; missing or unreadable -> empty meta."""
    p = slot_path(slot, get_save_dir=get_save_dir)
    if not p.exists():
        return SaveSlotMeta(slot_id=slot)
    try:
        with open(p, "r", encoding="utf-8") as fh:
            first = fh.readline()
        data = json.loads(first)
        if not isinstance(data, dict):
            raise ValueError("header is not a JSON object")
        return SaveSlotMeta.from_dict(data, slot)
    except (OSError, ValueError, TypeError) as e:
        logger.warning(f"Unreadable header for slot {slot} at {p}: {e}")
        return SaveSlotMeta(slot_id=slot)


def read_save(slot: int, *, get_save_dir: Callable[[], Path]) -> Tuple[SaveSlotMeta, ArchiveData]:
    p = slot_path(slot, get_save_dir=get_save_dir)
    if not p.exists():
        raise SlotEmpty("No save in slot", slot)
    try:
        # split on LF only; str.splitlines also breaks on U+2028 inside JSON strings
        lines = p.read_text(encoding="utf-8").split("\n", 1)
    except (OSError, UnicodeDecodeError) as e:
        raise CorruptSave(f"Cannot read save file: {e}", slot) from e
    if len(lines) < 2 or not lines[1].strip():
        raise CorruptSave("Save file has no archive section", slot)
    try:
        header = json.loads(lines[0])
        archive = ArchiveData.from_dict(json.loads(lines[1]))
        meta = SaveSlotMeta.from_dict(header, slot)
    except (ValueError, TypeError, KeyError, AttributeError) as e:
        raise CorruptSave(f"Cannot parse save file: {e}", slot) from e
    return meta, archive


def encode_screenshot(surface: pygame.Surface, size: Optional[Tuple[int, int]] = None) -> bytes:
    """Scale a captured frame to thumbnail size and encode it as PNG bytes."""
    w, h = size or DEFAULT_SCREENSHOT_SIZE
    thumb = pygame.transform.smoothscale(surface, (int(w), int(h)))
    buf = io.BytesIO()
    pygame.image.save(thumb, buf, "png")
    return buf.getvalue()
