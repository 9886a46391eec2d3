"""Dependency Graph Scheduler: upstream-first refresh ordering."""

from changeflow.scheduling.dag import DependencyDAG
from changeflow.scheduling.scheduler import DependencyGraphScheduler, TickReport

__all__ = ["DependencyDAG", "DependencyGraphScheduler", "TickReport"]
