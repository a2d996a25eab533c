from __future__ import annotations

from dataclasses import dataclass


@dataclass
class PersistenceError(Exception):
    message: str
    slot: int | None = None

    def __str__(self) -> str:  # pragma: no cover - formatting
        where = f" (slot {self.slot})" if self.slot is not None else ""
        return f"{self.message}{where}"


class SlotEmpty(PersistenceError):
    """No save file exists for the slot."""


class CorruptSave(PersistenceError):
    """The save file cannot be parsed or lacks the archive section."""


class WriteFailure(PersistenceError):
    """Writing or committing a file failed; the committed file is untouched."""


class RestoreTypeMismatch(PersistenceError):
    """A savable received a blob whose shape it does not understand."""
