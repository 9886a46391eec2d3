"""Full evaluation of plans over source snapshots.

The row-level helpers here are shared with the incremental operators, so a
full recompute and a chain of incremental refreshes compute every output row
the same way.
"""

import math
from collections import defaultdict
from fractions import Fraction
from typing import Any, Dict, Hashable, Iterable, List, Mapping, Optional, Tuple

from changeflow.constants import AggregateFunction, WindowFunction
from changeflow.types.materialization import Relation
from .cancellation import CancellationToken
from .plan import (
    Aggregate,
    AggregateCall,
    Expression,
    Filter,
    Join,
    PlanNode,
    Project,
    Row,
    Scan,
    Window,
)

GLOBAL_GROUP: Tuple = ()


# -- Row helpers -------------------------------------------------------------

def scan_row(row: Mapping[str, Any], columns: Optional[Tuple[str, ...]]) -> Row:
    if columns is None:
        return dict(row)
    return {column: row.get(column) for column in columns}


def project_row(row: Mapping[str, Any], columns: Mapping[str, Expression]) -> Row:
    return {
        name: row.get(expr) if isinstance(expr, str) else expr(row)
        for name, expr in columns.items()
    }


def join_key(row: Mapping[str, Any], columns: Iterable[str]) -> Optional[Tuple]:
    """Join key of a row, or None when any key column is null."""
    key = tuple(row.get(column) for column in columns)
    if any(value is None for value in key):
        return None
    return key


def merge_rows(left: Mapping[str, Any], right: Mapping[str, Any], right_prefix: Optional[str]) -> Row:
    merged = dict(left)
    if right_prefix:
        merged.update({f"{right_prefix}{k}": v for k, v in right.items()})
    else:
        merged.update(right)
    return merged


def group_key(row: Mapping[str, Any], group_by: Tuple[str, ...]) -> Tuple:
    return tuple(row.get(column) for column in group_by)


def group_row(key: Tuple, group_by: Tuple[str, ...], values: Mapping[str, Any]) -> Row:
    row = dict(zip(group_by, key))
    row.update(values)
    return row


class GroupAccumulator:
    """Running aggregates for one group.

    COUNT, SUM and AVG are updated in both directions. Float inputs are summed
    exactly as fractions and rounded once in ``finalize``, so the result does
    not depend on the order rows were added and removed. Removing the current
    MIN or MAX value (or a non-finite float) cannot be undone from the
    accumulator alone, so ``remove`` reports it and the caller rebuilds the
    group from its rows.
    """

    def __init__(self, aggregates: Mapping[str, AggregateCall]):
        self.aggregates = {name: (AggregateFunction(call.function), call.column)
                           for name, call in aggregates.items()}
        self.reset()

    def reset(self) -> None:
        self.rows = 0
        self._counts: Dict[str, int] = {name: 0 for name in self.aggregates}
        self._sums: Dict[str, Any] = {name: 0 for name in self.aggregates}
        self._floats: Dict[str, int] = {name: 0 for name in self.aggregates}
        self._extremes: Dict[str, Any] = {name: None for name in self.aggregates}

    def add(self, row: Mapping[str, Any]) -> None:
        self.rows += 1
        for name, (function, column) in self.aggregates.items():
            if column is None:
                self._counts[name] += 1
                continue
            value = row.get(column)
            if value is None:
                continue
            self._counts[name] += 1
            if function in (AggregateFunction.SUM, AggregateFunction.AVG):
                if isinstance(value, float):
                    self._floats[name] += 1
                self._sums[name] += _exact(value)
            elif function == AggregateFunction.MIN:
                current = self._extremes[name]
                if current is None or value < current:
                    self._extremes[name] = value
            elif function == AggregateFunction.MAX:
                current = self._extremes[name]
                if current is None or value > current:
                    self._extremes[name] = value

    def remove(self, row: Mapping[str, Any]) -> bool:
        """Retract a row. Returns True when the group must be rebuilt."""
        self.rows -= 1
        rebuild = False
        for name, (function, column) in self.aggregates.items():
            if column is None:
                self._counts[name] -= 1
                continue
            value = row.get(column)
            if value is None:
                continue
            self._counts[name] -= 1
            if function in (AggregateFunction.SUM, AggregateFunction.AVG):
                if isinstance(value, float):
                    self._floats[name] -= 1
                    if not math.isfinite(value):
                        rebuild = True
                        continue
                self._sums[name] -= _exact(value)
            elif function in (AggregateFunction.MIN, AggregateFunction.MAX):
                if value == self._extremes[name]:
                    rebuild = True
        return rebuild

    def rebuild(self, rows: Iterable[Mapping[str, Any]]) -> None:
        self.reset()
        for row in rows:
            self.add(row)

    def finalize(self) -> Dict[str, Any]:
        values: Dict[str, Any] = {}
        for name, (function, _) in self.aggregates.items():
            n = self._counts[name]
            if function == AggregateFunction.COUNT:
                values[name] = n
            elif function == AggregateFunction.SUM:
                values[name] = self._total(name) if n else None
            elif function == AggregateFunction.AVG:
                values[name] = _rounded(self._sums[name] / n) if n else None
            else:
                values[name] = self._extremes[name] if n else None
        return values

    def _total(self, name: str) -> Any:
        total = self._sums[name]
        if self._floats[name]:
            return _rounded(total)
        if isinstance(total, Fraction):
            return int(total)
        return total


def _exact(value: Any) -> Any:
    if isinstance(value, float) and math.isfinite(value):
        return Fraction(value)
    return value


def _rounded(value: Any) -> Any:
    return float(value) if isinstance(value, Fraction) else value


def _sort_value(value: Any) -> Tuple[bool, Any]:
    # Nulls sort last and never get compared with values.
    return (value is None, value if value is not None else 0)


def compute_window(node: Window, rows: Relation) -> Relation:
    partitions: Dict[Tuple, List[Tuple[Hashable, Row]]] = defaultdict(list)
    for identity, row in rows.items():
        partitions[group_key(row, node.partition_by)].append((identity, row))

    function = WindowFunction(node.function)
    output: Relation = {}
    for members in partitions.values():
        members.sort(key=lambda item: repr(item[0]))
        members.sort(key=lambda item: tuple(_sort_value(item[1].get(c)) for c in node.order_by))
        previous_key = None
        rank = 0
        running = 0
        for index, (identity, row) in enumerate(members, start=1):
            order_key = tuple(row.get(c) for c in node.order_by)
            if function == WindowFunction.ROW_NUMBER:
                value = index
            elif function == WindowFunction.RANK:
                if order_key != previous_key:
                    rank = index
                    previous_key = order_key
                value = rank
            else:
                contribution = row.get(node.column) if node.column else None
                if contribution is not None:
                    running += contribution
                value = running
            output[identity] = {**row, node.output_column: value}
    return output


# -- Full evaluation ---------------------------------------------------------

def evaluate(
    plan: PlanNode,
    sources: Mapping[str, Relation],
    token: Optional[CancellationToken] = None,
    target_id: Optional[str] = None,
) -> Relation:
    """Evaluate ``plan`` over complete source relations.

    Args:
        plan: Operator tree
        sources: Rows of every source table keyed by row identity
        token: Optional cancellation token, checked while iterating rows
        target_id: Derived table name used in cancellation errors

    Returns:
        The result relation
    """

    def tick() -> None:
        if token is not None:
            token.tick(target_id)

    def run(node: PlanNode) -> Relation:
        if isinstance(node, Scan):
            out: Relation = {}
            for identity, row in sources.get(node.source_id, {}).items():
                tick()
                out[identity] = scan_row(row, node.columns)
            return out

        if isinstance(node, Filter):
            child = run(node.child)
            out = {}
            for identity, row in child.items():
                tick()
                if node.predicate(row):
                    out[identity] = row
            return out

        if isinstance(node, Project):
            child = run(node.child)
            out = {}
            for identity, row in child.items():
                tick()
                out[identity] = project_row(row, node.columns)
            return out

        if isinstance(node, Join):
            left = run(node.left)
            right = run(node.right)
            left_columns = [l for l, _ in node.on]
            right_columns = [r for _, r in node.on]
            index: Dict[Tuple, List[Hashable]] = defaultdict(list)
            for identity, row in right.items():
                tick()
                key = join_key(row, right_columns)
                if key is not None:
                    index[key].append(identity)
            out = {}
            for left_id, left_row in left.items():
                tick()
                key = join_key(left_row, left_columns)
                if key is None:
                    continue
                for right_id in index.get(key, ()):
                    out[(left_id, right_id)] = merge_rows(left_row, right[right_id], node.right_prefix)
            return out

        if isinstance(node, Aggregate):
            child = run(node.child)
            groups: Dict[Tuple, GroupAccumulator] = {}
            for row in child.values():
                tick()
                key = group_key(row, node.group_by)
                accumulator = groups.get(key)
                if accumulator is None:
                    accumulator = groups[key] = GroupAccumulator(node.aggregates)
                accumulator.add(row)
            if not node.group_by and GLOBAL_GROUP not in groups:
                groups[GLOBAL_GROUP] = GroupAccumulator(node.aggregates)
            return {
                key: group_row(key, node.group_by, accumulator.finalize())
                for key, accumulator in groups.items()
            }

        if isinstance(node, Window):
            return compute_window(node, run(node.child))

        raise TypeError(f"Unsupported plan node: {node.describe()}")

    return run(plan)
