from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)


class IScriptSource(ABC):
    """Resolve a script name (e.g. ``chapter1/scene1``) to its raw text."""

    @abstractmethod
    def read(self, name: str) -> Optional[str]:  # pragma: no cover - interface
        raise NotImplementedError

    def exists(self, name: str) -> bool:  # pragma: no cover - interface
        return self.read(name) is not None


class FileScriptSource(IScriptSource):
    """Scripts stored as ``<root>/<name><extension>``."""

    def __init__(self, get_root: Callable[[], Path], extension: str = ".csv") -> None:
        self._get_root = get_root
        self.extension = extension if extension.startswith(".") else f".{extension}"

    def path_for(self, name: str) -> Path:
        rel = name if name.endswith(self.extension) else f"{name}{self.extension}"
        return Path(self._get_root()) / rel

    def exists(self, name: str) -> bool:
        return self.path_for(name).is_file()

    def read(self, name: str) -> Optional[str]:
        p = self.path_for(name)
        try:
            # utf-8-sig strips the BOM spreadsheet exports add
            return p.read_text(encoding="utf-8-sig")
        except OSError as e:
            logger.error(f"Script '{name}' not found or unreadable at {p}: {e}")
            return None


class MemoryScriptSource(IScriptSource):
    """In-memory scripts keyed by name; handy for tests and tools."""

    def __init__(self, scripts: Optional[Dict[str, str]] = None) -> None:
        self.scripts: Dict[str, str] = dict(scripts or {})

    def add(self, name: str, text: str) -> None:
        self.scripts[name] = text

    def exists(self, name: str) -> bool:
        return name in self.scripts

    def read(self, name: str) -> Optional[str]:
        text = self.scripts.get(name)
        if text is None:
            logger.error(f"Script '{name}' not found")
        return text
