from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class ActorProfile:
    actor_id: str
    display_name: str
    expressions: List[str] = field(default_factory=list)


class ActorRegistry:
    """Actor id -> profile lookup used to label dialogue lines."""

    def __init__(self, profiles: Optional[Dict[str, ActorProfile]] = None) -> None:
        self._profiles: Dict[str, ActorProfile] = dict(profiles or {})

    def add(self, profile: ActorProfile) -> None:
        if profile.actor_id in self._profiles:
            logger.warning(f"Duplicate actor id: {profile.actor_id}")
            return
        self._profiles[profile.actor_id] = profile

    def get(self, actor_id: str) -> Optional[ActorProfile]:
        return self._profiles.get(actor_id)

    def display_name(self, actor_id: str) -> Optional[str]:
        """Name shown for a line; unknown ids show as-is, narration has no name."""
        if not actor_id:
            return None
        profile = self._profiles.get(actor_id)
        return profile.display_name if profile else actor_id

    def __len__(self) -> int:
        return len(self._profiles)


def load_actor_registry(base_dir: str | Path = ".") -> ActorRegistry:
    """Load actor profiles from ``config/actors.json`` (or ``actors.json``) in base_dir.

    Accepted shapes::

        { "hero": "Hero" }
        { "hero": {"name": "Hero", "expressions": ["happy", "sad"]} }

    Returns an empty registry if not found or invalid.
    """
    base = Path(base_dir)
    candidates = [base / "config" / "actors.json", base / "actors.json"]
    p = next((c for c in candidates if c.exists()), None)
    registry = ActorRegistry()
    if not p:
        return registry
    try:
        data = json.loads(p.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        logger.warning(f"Failed to read actor profiles from {p}: {e}")
        return registry
    if not isinstance(data, dict):
        logger.warning(f"Actor profiles in {p} must be a JSON object")
        return registry
    for key, value in data.items():
        if isinstance(value, dict):
            name = str(value.get("name") or key)
            exprs = [str(x) for x in value.get("expressions") or []]
        else:
            name = str(value)
            exprs = []
        registry.add(ActorProfile(actor_id=str(key), display_name=name, expressions=exprs))
    logger.info(f"Loaded {len(registry)} actor profiles from {p}")
    return registry
