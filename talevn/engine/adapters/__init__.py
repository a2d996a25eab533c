"""Adapter interfaces and default implementations for pluggable engine backends.

Currently provides:
- IScriptSource: abstraction for resolving a script name to its text
"""
from __future__ import annotations

from .scripts import IScriptSource, FileScriptSource, MemoryScriptSource  # noqa: F401
