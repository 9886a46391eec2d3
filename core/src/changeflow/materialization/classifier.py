"""Refresh strategy selection.

``classify`` is a pure function over a plan: it never looks at data or at
the derived table's history. The refresh mode requested on the derived
table is applied on top of it by ``resolve_strategy``.
"""

from dataclasses import dataclass, field
from typing import List, Union

from changeflow.common.exceptions import UnsupportedIncrementalPlanError
from changeflow.constants import RefreshMode
from .plan import Aggregate, Filter, Join, PlanNode, Project, Scan, Window


@dataclass(frozen=True)
class FullRefresh:
    """Recompute the whole result from source snapshots."""

    reasons: List[str] = field(default_factory=list)
    name: str = "full"


@dataclass(frozen=True)
class IncrementalRefresh:
    """Apply source deltas to stored operator state."""

    plan: PlanNode
    name: str = "incremental"


RefreshStrategy = Union[FullRefresh, IncrementalRefresh]


def blocking_operators(plan: PlanNode) -> List[str]:
    """Reasons ``plan`` cannot be maintained from deltas (empty when it can)."""
    reasons: List[str] = []
    for node in plan.walk():
        if isinstance(node, Window):
            reasons.append(f"{node.describe()} is not delta-composable")
        elif isinstance(node, (Filter, Project)) and not node.deterministic:
            reasons.append(f"{node.describe()} uses a non-deterministic expression")
        elif not isinstance(node, (Scan, Filter, Project, Join, Aggregate)):
            reasons.append(f"{node.describe()} is not a supported operator")
    return reasons


def classify(plan: PlanNode) -> RefreshStrategy:
    """Pick INCREMENTAL for delta-composable plans and FULL otherwise."""
    reasons = blocking_operators(plan)
    if reasons:
        return FullRefresh(reasons=reasons)
    return IncrementalRefresh(plan=plan)


def resolve_strategy(target_id: str, plan: PlanNode, refresh_mode: RefreshMode) -> RefreshStrategy:
    """Apply the requested refresh mode to the plan's classification.

    Raises:
        UnsupportedIncrementalPlanError: If INCREMENTAL is forced on a plan
            that is not delta-composable
    """
    strategy = classify(plan)
    mode = RefreshMode(refresh_mode)
    if mode == RefreshMode.FULL:
        return FullRefresh(reasons=["refresh mode is FULL"])
    if mode == RefreshMode.INCREMENTAL and isinstance(strategy, FullRefresh):
        raise UnsupportedIncrementalPlanError(target_id, strategy.reasons)
    return strategy
