"""Public engine facade."""

from changeflow.api.engine import ChangeFlowEngine

__all__ = ["ChangeFlowEngine"]
