from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from .savable import PHASE_VISUAL, Savable
from .save_data import HIDDEN, ActorDisplayState
from .save_errors import RestoreTypeMismatch

logger = logging.getLogger(__name__)

SLOT_COUNT = 5
DEFAULT_POSITION = 2  # center
KEEP_POSITION = -1


class IActorView:
    """Optional presentation hooks for the actor layer; default methods do nothing."""

    def update_portrait(self, actor_id: str, expression: str, position: int, immediate: bool = False) -> None:
        pass

    def hide_actor(self, actor_id: str) -> None:
        pass

    def hide_all(self) -> None:
        pass

    def set_focus(self, actor_id: str, focused: bool) -> None:
        pass


class ActorStage(Savable):
    """Who is on screen, where, with which expression and in which draw order.

    Positions are slot indices 0..4 (left to right). Updating an actor brings it
    to the front. Every change is mirrored to the optional view.
    """

    savable_tag = "actors"
    restore_phase = PHASE_VISUAL

    def __init__(self, view: Optional[IActorView] = None) -> None:
        self.view = view
        self._actors: Dict[str, ActorDisplayState] = {}
        self._order = 0

    def _next_order(self) -> int:
        self._order += 1
        return self._order

    def update_portrait(self, actor_id: str, expression: str = "", position: int = KEEP_POSITION, immediate: bool = False) -> ActorDisplayState:
        state = self._actors.get(actor_id)
        if position != KEEP_POSITION and not 0 <= position < SLOT_COUNT:
            logger.warning(f"Position {position} out of range for '{actor_id}', using center")
            position = DEFAULT_POSITION
        if state is None:
            pos = DEFAULT_POSITION if position == KEEP_POSITION else position
            state = ActorDisplayState(actor_id=actor_id, position=pos, expression=expression)
            self._actors[actor_id] = state
        else:
            if position != KEEP_POSITION:
                state.position = position
            if expression:
                state.expression = expression
        state.visible = True
        state.draw_order = self._next_order()
        if self.view:
            self.view.update_portrait(actor_id, state.expression, int(state.position), immediate)
        return state

    def hide_actor(self, actor_id: str) -> bool:
        if self._actors.pop(actor_id, None) is None:
            logger.debug(f"hide_actor: '{actor_id}' is not on stage")
            return False
        if self.view:
            self.view.hide_actor(actor_id)
        return True

    def hide_all(self) -> None:
        self._actors.clear()
        if self.view:
            self.view.hide_all()

    def set_focus(self, actor_id: str, focused: bool) -> bool:
        state = self._actors.get(actor_id)
        if state is None:
            logger.warning(f"set_focus: '{actor_id}' is not on stage")
            return False
        state.focused = bool(focused)
        if self.view:
            self.view.set_focus(actor_id, state.focused)
        return True

    def get(self, actor_id: str) -> Optional[ActorDisplayState]:
        return self._actors.get(actor_id)

    def visible_actors(self) -> List[ActorDisplayState]:
        """Visible actors back to front."""
        return sorted((s for s in self._actors.values() if s.visible), key=lambda s: s.draw_order)

    # ---- Savable ----
    def capture(self) -> Dict[str, Any]:
        return {"actors": [s.to_dict() for s in self.visible_actors()]}

    def restore(self, blob: Dict[str, Any]) -> None:
        if not isinstance(blob, dict) or not isinstance(blob.get("actors"), list):
            raise RestoreTypeMismatch("actors: expected {'actors': [...]}")
        try:
            states = [ActorDisplayState.from_dict(entry) for entry in blob["actors"]]
        except (KeyError, TypeError, ValueError) as e:
            raise RestoreTypeMismatch(f"actors: invalid entry: {e}") from None
        self.hide_all()
        self._order = 0
        for st in sorted(states, key=lambda s: s.draw_order):
            if not st.visible or st.position == HIDDEN:
                continue
            self.update_portrait(st.actor_id, st.expression, int(st.position), immediate=True)
            if st.focused:
                self.set_focus(st.actor_id, True)
