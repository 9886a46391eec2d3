"""Offset Cursor Manager: named, forward-only checkpoints over change logs."""

from changeflow.cursors.manager import CursorManager

__all__ = ["CursorManager"]
