"""Retention & Compaction Manager."""

from changeflow.retention.manager import RetentionManager

__all__ = ["RetentionManager"]
