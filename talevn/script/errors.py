from __future__ import annotations

from dataclasses import dataclass


@dataclass
class ScriptError(Exception):
    message: str
    line: int | None = None
    context: str | None = None

    def __str__(self) -> str:  # pragma: no cover - formatting
        where = f" at row {self.line}" if self.line else ""
        raw = f" | {self.context}" if self.context else ""
        return f"{self.message}{where}{raw}"


class MalformedRow(ScriptError):
    """A script row that cannot become a record; the row is dropped."""


class JumpTargetMissing(ScriptError):
    """A jump or choice target id that is not present in the loaded script."""
