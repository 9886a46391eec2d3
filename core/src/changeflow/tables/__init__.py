"""Keyed in-memory base tables feeding the change log."""

from changeflow.tables.store import TableStore

__all__ = ["TableStore"]
