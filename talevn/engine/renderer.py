from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple


class IRenderer:
    """Presentation collaborator used by the interpreter.

    Text, choices, backgrounds and music only; the actor layer has its own view
    hooks (see ``IActorView`` in ``stage.py``).
    """

    def show_line(self, name: Optional[str], text: str, meta: Optional[Dict[str, Any]] = None) -> None:
        raise NotImplementedError

    def show_choices(self, choices: List[Tuple[str, int]]) -> None:
        """Present options as (label, target id); the caller reports the pick via select_choice."""
        raise NotImplementedError

    def set_background(self, name: Optional[str]) -> None:
        raise NotImplementedError

    def play_music(self, name: str, volume: float = 1.0) -> None:
        raise NotImplementedError

    def stop_music(self) -> None:
        raise NotImplementedError

    # Optional UI error banner (GUI renderers may override)
    def show_error(self, message: str) -> None:
        """Display a non-fatal error message to the user."""
        print(f"[ERROR] {message}")  # noqa: T201

    def reset_state(self) -> None:
        """Reset transient visual state; may be a no-op for headless implementations."""
        pass


class DummyRenderer(IRenderer):
    """Headless renderer that prints actions; useful for tests and CLI."""

    def show_line(self, name: Optional[str], text: str, meta: Optional[Dict[str, Any]] = None) -> None:
        suffix = ""
        emo = (meta or {}).get("expression")
        if emo:
            suffix = f" [{emo}]"
        if name:
            print(f"{name}{suffix}: {text}")  # noqa: T201
        else:
            print(text)  # noqa: T201

    def show_choices(self, choices: List[Tuple[str, int]]) -> None:
        print("Choose:")  # noqa: T201
        for idx, (label, target) in enumerate(choices, 1):
            print(f"  {idx}. {label} -> {target}")  # noqa: T201

    def set_background(self, name: Optional[str]) -> None:
        print(f"> BG {name or 'None'}")  # noqa: T201

    def play_music(self, name: str, volume: float = 1.0) -> None:
        print(f"> BGM {name} {volume}")  # noqa: T201

    def stop_music(self) -> None:
        print("> BGM STOP")  # noqa: T201
