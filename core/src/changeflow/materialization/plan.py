"""Operator trees for derived table definitions.

The query engine hands the materializer an already-parsed plan built from
these nodes. Every node produces a relation keyed by row identity:

- ``Scan``, ``Filter``, ``Project`` and ``Window`` keep the identity of
  their input row.
- ``Join`` identifies an output row by ``(left_identity, right_identity)``.
- ``Aggregate`` identifies an output row by its tuple of group values; a
  global aggregate has the single identity ``()``.

Example:
    >>> plan = Aggregate(
    ...     Filter(Scan("orders"), lambda r: r["status"] == "paid"),
    ...     group_by=("region",),
    ...     aggregates={"total": AggregateCall(AggregateFunction.SUM, "amount")},
    ... )
    >>> plan.source_ids()
    ['orders']
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

from changeflow.constants import AggregateFunction, WindowFunction

Row = Dict[str, Any]
Expression = Union[str, Callable[[Row], Any]]


class PlanNode:
    """Base class of plan operators."""

    def children(self) -> Tuple["PlanNode", ...]:
        return ()

    def source_ids(self) -> List[str]:
        """Source tables read by this subtree, in first-seen order."""
        seen: List[str] = []
        for child in self.children():
            for source_id in child.source_ids():
                if source_id not in seen:
                    seen.append(source_id)
        return seen

    def walk(self):
        """Yield this node and all descendants, parents first."""
        yield self
        for child in self.children():
            yield from child.walk()

    def describe(self) -> str:
        return type(self).__name__


@dataclass(frozen=True, eq=False)
class Scan(PlanNode):
    """Read a source table, optionally keeping only some columns."""

    source_id: str
    columns: Optional[Tuple[str, ...]] = None

    def source_ids(self) -> List[str]:
        return [self.source_id]

    def describe(self) -> str:
        return f"Scan({self.source_id})"


@dataclass(frozen=True, eq=False)
class Filter(PlanNode):
    """Keep rows for which ``predicate`` holds."""

    child: PlanNode
    predicate: Callable[[Row], bool]
    deterministic: bool = True

    def children(self) -> Tuple[PlanNode, ...]:
        return (self.child,)


@dataclass(frozen=True, eq=False)
class Project(PlanNode):
    """Compute output columns.

    ``columns`` maps each output column to either an input column name or a
    function of the input row. Set ``deterministic=False`` when any function
    can return different values for the same row (random, current time).
    """

    child: PlanNode
    columns: Mapping[str, Expression]
    deterministic: bool = True

    def children(self) -> Tuple[PlanNode, ...]:
        return (self.child,)


@dataclass(frozen=True, eq=False)
class Join(PlanNode):
    """Inner equi-join.

    ``on`` lists ``(left_column, right_column)`` pairs. Output rows merge the
    left and right images; right columns are renamed with ``right_prefix``
    when given, and otherwise override left columns of the same name. Rows
    with a null join key never match.
    """

    left: PlanNode
    right: PlanNode
    on: Tuple[Tuple[str, str], ...]
    right_prefix: Optional[str] = None

    def children(self) -> Tuple[PlanNode, ...]:
        return (self.left, self.right)

    def describe(self) -> str:
        keys = ", ".join(f"{l}={r}" for l, r in self.on)
        return f"Join({keys})"


@dataclass(frozen=True)
class AggregateCall:
    """One aggregate output. ``column=None`` with COUNT means ``COUNT(*)``."""

    function: AggregateFunction
    column: Optional[str] = None

    def __post_init__(self):
        if self.column is None and AggregateFunction(self.function) != AggregateFunction.COUNT:
            raise ValueError(f"{AggregateFunction(self.function).value} requires a column")


@dataclass(frozen=True, eq=False)
class Aggregate(PlanNode):
    """Group rows by ``group_by`` and compute ``aggregates``.

    With an empty ``group_by`` the result always has exactly one row, even
    over empty input.
    """

    child: PlanNode
    group_by: Tuple[str, ...] = ()
    aggregates: Mapping[str, AggregateCall] = field(default_factory=dict)

    def children(self) -> Tuple[PlanNode, ...]:
        return (self.child,)

    def describe(self) -> str:
        calls = ", ".join(
            f"{name}={AggregateFunction(call.function).value}({call.column or '*'})"
            for name, call in self.aggregates.items()
        )
        return f"Aggregate(by={list(self.group_by)}, {calls})"


@dataclass(frozen=True, eq=False)
class Window(PlanNode):
    """Window function over partitions, written to ``output_column``."""

    child: PlanNode
    function: WindowFunction
    output_column: str
    partition_by: Tuple[str, ...] = ()
    order_by: Tuple[str, ...] = ()
    column: Optional[str] = None

    def children(self) -> Tuple[PlanNode, ...]:
        return (self.child,)

    def describe(self) -> str:
        return f"Window({WindowFunction(self.function).value})"


def count(column: Optional[str] = None) -> AggregateCall:
    return AggregateCall(AggregateFunction.COUNT, column)


def sum_(column: str) -> AggregateCall:
    return AggregateCall(AggregateFunction.SUM, column)


def avg(column: str) -> AggregateCall:
    return AggregateCall(AggregateFunction.AVG, column)


def min_(column: str) -> AggregateCall:
    return AggregateCall(AggregateFunction.MIN, column)


def max_(column: str) -> AggregateCall:
    return AggregateCall(AggregateFunction.MAX, column)
