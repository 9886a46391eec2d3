"""Incremental Materializer: derived tables kept within their target lag.

Modules:
    plan: Operator tree nodes handed over by the query engine
    classifier: Pure FULL / INCREMENTAL strategy selection
    evaluator: Full evaluation and the row helpers shared with incremental operators
    incremental: Delta propagation through stateful operators
    cancellation: Cooperative cancellation and refresh deadlines
    materializer: Lifecycle, refresh and atomic publication of results
"""

from changeflow.materialization.cancellation import CancellationToken
from changeflow.materialization.classifier import (
    FullRefresh,
    IncrementalRefresh,
    RefreshStrategy,
    classify,
    resolve_strategy,
)
from changeflow.materialization.evaluator import evaluate
from changeflow.materialization.incremental import IncrementalPlan
from changeflow.materialization.materializer import (
    INTERNAL_CURSOR_PREFIX,
    IncrementalMaterializer,
    diff_relations,
)
from changeflow.materialization.plan import (
    Aggregate,
    AggregateCall,
    Filter,
    Join,
    PlanNode,
    Project,
    Scan,
    Window,
    avg,
    count,
    max_,
    min_,
    sum_,
)

__all__ = [
    "CancellationToken",
    "FullRefresh",
    "IncrementalRefresh",
    "RefreshStrategy",
    "classify",
    "resolve_strategy",
    "evaluate",
    "IncrementalPlan",
    "INTERNAL_CURSOR_PREFIX",
    "IncrementalMaterializer",
    "diff_relations",
    "Aggregate",
    "AggregateCall",
    "Filter",
    "Join",
    "PlanNode",
    "Project",
    "Scan",
    "Window",
    "avg",
    "count",
    "max_",
    "min_",
    "sum_",
]
