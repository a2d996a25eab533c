from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Callable, Optional

from .save_errors import WriteFailure
from .save_io import atomic_write_bytes

logger = logging.getLogger(__name__)


DEFAULTS = {
    "save": {
        "auto_save_enabled": True,
        "auto_save_interval": 600.0,  # seconds
        "manual_slots": 3,
        "screenshot_size": [384, 216],
    },
    "script": {
        "root": "scripts",
        "extension": ".csv",
        "start": "start",
    },
}


def _config_path(get_save_dir: Optional[Callable[[], Path]] = None) -> Path:
    if callable(get_save_dir):
        base_obj = get_save_dir()
        base = base_obj if isinstance(base_obj, Path) else Path(str(base_obj))
    else:
        base = Path("save")
    return base / "config.json"


def _merge(data: dict) -> dict:
    # shallow merge per section; unknown sections are dropped
    out = {}
    for section, defaults in DEFAULTS.items():
        merged = dict(defaults)
        merged.update(dict(data.get(section) or {}))
        out[section] = merged
    return out


def load_config(get_save_dir: Optional[Callable[[], Path]] = None) -> dict:
    p = _config_path(get_save_dir)
    if p.exists():
        try:
            data = json.loads(p.read_text(encoding="utf-8"))
            if isinstance(data, dict):
                return _merge(data)
            logger.warning(f"Ignoring {p}: not a JSON object")
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to read config {p}: {e}")
    return _merge({})


def save_config(cfg: dict, get_save_dir: Optional[Callable[[], Path]] = None) -> bool:
    p = _config_path(get_save_dir)
    data = _merge(cfg or {})
    try:
        atomic_write_bytes(p, json.dumps(data, ensure_ascii=False, indent=2).encode("utf-8"))
        return True
    except WriteFailure as e:
        logger.error(f"Failed to save config: {e}")
        return False
