"""Incremental maintenance of delta-composable plans.

Each operator turns input deltas into output deltas. A delta maps a row
identity to ``(before, after)``: the row image before the refresh (None if it
did not exist) and after it (None if it no longer exists).

Joins keep both inputs indexed by join key so a delta on one side is probed
against the other side's state. Aggregates keep their input rows per group;
COUNT, SUM and AVG are adjusted in place while MIN and MAX rebuild only the
groups whose current extreme was removed.
"""

from collections import defaultdict
from typing import Callable, Dict, Hashable, List, Mapping, Optional, Set, Tuple

from changeflow.types.changes import NetChange
from changeflow.types.materialization import Relation
from .evaluator import (
    GLOBAL_GROUP,
    GroupAccumulator,
    group_key,
    group_row,
    join_key,
    merge_rows,
    project_row,
    scan_row,
)
from .plan import Aggregate, Filter, Join, PlanNode, Project, Row, Scan

Delta = Dict[Hashable, Tuple[Optional[Row], Optional[Row]]]
SourceChanges = Mapping[str, List[NetChange]]
Tick = Callable[[], None]


def _noop() -> None:
    pass


class IncrementalOperator:
    """Base class of incremental operators."""

    def bootstrap(self, sources: Mapping[str, Relation], tick: Tick) -> Relation:
        """Build state from complete source relations and return the output."""
        raise NotImplementedError

    def propagate(self, changes: SourceChanges, tick: Tick) -> Delta:
        """Consume source changes and return the output delta."""
        raise NotImplementedError


class IncrementalScan(IncrementalOperator):
    def __init__(self, node: Scan):
        self.node = node

    def bootstrap(self, sources, tick):
        out: Relation = {}
        for identity, row in sources.get(self.node.source_id, {}).items():
            tick()
            out[identity] = scan_row(row, self.node.columns)
        return out

    def propagate(self, changes, tick):
        delta: Delta = {}
        for change in changes.get(self.node.source_id, ()):
            tick()
            before = scan_row(change.before, self.node.columns) if change.before is not None else None
            after = scan_row(change.after, self.node.columns) if change.after is not None else None
            if before != after:
                delta[change.row_identity] = (before, after)
        return delta


class IncrementalFilter(IncrementalOperator):
    def __init__(self, node: Filter, child: IncrementalOperator):
        self.node = node
        self.child = child

    def _keep(self, row: Optional[Row]) -> Optional[Row]:
        if row is not None and self.node.predicate(row):
            return row
        return None

    def bootstrap(self, sources, tick):
        return {
            identity: row for identity, row in self.child.bootstrap(sources, tick).items()
            if self.node.predicate(row)
        }

    def propagate(self, changes, tick):
        delta: Delta = {}
        for identity, (before, after) in self.child.propagate(changes, tick).items():
            tick()
            before, after = self._keep(before), self._keep(after)
            if before != after:
                delta[identity] = (before, after)
        return delta


class IncrementalProject(IncrementalOperator):
    def __init__(self, node: Project, child: IncrementalOperator):
        self.node = node
        self.child = child

    def _project(self, row: Optional[Row]) -> Optional[Row]:
        return project_row(row, self.node.columns) if row is not None else None

    def bootstrap(self, sources, tick):
        return {
            identity: project_row(row, self.node.columns)
            for identity, row in self.child.bootstrap(sources, tick).items()
        }

    def propagate(self, changes, tick):
        delta: Delta = {}
        for identity, (before, after) in self.child.propagate(changes, tick).items():
            tick()
            before, after = self._project(before), self._project(after)
            if before != after:
                delta[identity] = (before, after)
        return delta


class _JoinSide:
    """Rows of one join input with an index from join key to identities."""

    def __init__(self, columns: List[str]):
        self.columns = columns
        self.rows: Relation = {}
        self.index: Dict[Tuple, Set[Hashable]] = defaultdict(set)

    def load(self, rows: Relation) -> None:
        self.rows = dict(rows)
        self.index = defaultdict(set)
        for identity, row in self.rows.items():
            key = join_key(row, self.columns)
            if key is not None:
                self.index[key].add(identity)

    def key(self, row: Optional[Row]) -> Optional[Tuple]:
        return join_key(row, self.columns) if row is not None else None

    def matches(self, key: Optional[Tuple]) -> Set[Hashable]:
        if key is None:
            return set()
        return self.index.get(key, set())

    def new_row(self, identity: Hashable, delta: Delta) -> Optional[Row]:
        if identity in delta:
            return delta[identity][1]
        return self.rows.get(identity)

    def apply(self, delta: Delta) -> None:
        for identity, (before, after) in delta.items():
            old_key = self.key(before)
            if old_key is not None:
                members = self.index.get(old_key)
                if members is not None:
                    members.discard(identity)
                    if not members:
                        del self.index[old_key]
            if after is None:
                self.rows.pop(identity, None)
                continue
            self.rows[identity] = after
            new_key = self.key(after)
            if new_key is not None:
                self.index[new_key].add(identity)


def _keys_of(side: _JoinSide, delta: Delta) -> Dict[Tuple, Set[Hashable]]:
    keyed: Dict[Tuple, Set[Hashable]] = defaultdict(set)
    for identity, (before, after) in delta.items():
        for image in (before, after):
            key = side.key(image)
            if key is not None:
                keyed[key].add(identity)
    return keyed


class IncrementalJoin(IncrementalOperator):
    def __init__(self, node: Join, left: IncrementalOperator, right: IncrementalOperator):
        self.node = node
        self.left_child = left
        self.right_child = right
        self.left = _JoinSide([l for l, _ in node.on])
        self.right = _JoinSide([r for _, r in node.on])

    def _combine(self, left_row: Optional[Row], right_row: Optional[Row]) -> Optional[Row]:
        if left_row is None or right_row is None:
            return None
        key = self.left.key(left_row)
        if key is None or key != self.right.key(right_row):
            return None
        return merge_rows(left_row, right_row, self.node.right_prefix)

    def bootstrap(self, sources, tick):
        self.left.load(self.left_child.bootstrap(sources, tick))
        self.right.load(self.right_child.bootstrap(sources, tick))
        out: Relation = {}
        for left_id, left_row in self.left.rows.items():
            tick()
            for right_id in self.right.matches(self.left.key(left_row)):
                out[(left_id, right_id)] = merge_rows(left_row, self.right.rows[right_id], self.node.right_prefix)
        return out

    def propagate(self, changes, tick):
        left_delta = self.left_child.propagate(changes, tick)
        right_delta = self.right_child.propagate(changes, tick)
        if not left_delta and not right_delta:
            return {}

        right_changed = _keys_of(self.right, right_delta)
        left_changed = _keys_of(self.left, left_delta)

        # Candidate output pairs; a pair changed on both sides is visited once.
        pairs: Set[Tuple[Hashable, Hashable]] = set()
        for left_id, images in left_delta.items():
            for image in images:
                key = self.left.key(image)
                if key is None:
                    continue
                for right_id in self.right.matches(key) | right_changed.get(key, set()):
                    pairs.add((left_id, right_id))
        for right_id, images in right_delta.items():
            for image in images:
                key = self.right.key(image)
                if key is None:
                    continue
                for left_id in self.left.matches(key) | left_changed.get(key, set()):
                    pairs.add((left_id, right_id))

        delta: Delta = {}
        for left_id, right_id in pairs:
            tick()
            before = self._combine(self.left.rows.get(left_id), self.right.rows.get(right_id))
            after = self._combine(
                self.left.new_row(left_id, left_delta),
                self.right.new_row(right_id, right_delta),
            )
            if before != after:
                delta[(left_id, right_id)] = (before, after)

        self.left.apply(left_delta)
        self.right.apply(right_delta)
        return delta


class IncrementalAggregate(IncrementalOperator):
    def __init__(self, node: Aggregate, child: IncrementalOperator):
        self.node = node
        self.child = child
        self.groups: Dict[Tuple, Relation] = {}
        self.accumulators: Dict[Tuple, GroupAccumulator] = {}
        self.output: Relation = {}

    def _accumulator(self, key: Tuple) -> GroupAccumulator:
        accumulator = self.accumulators.get(key)
        if accumulator is None:
            accumulator = self.accumulators[key] = GroupAccumulator(self.node.aggregates)
            self.groups[key] = {}
        return accumulator

    def _finalize(self, key: Tuple) -> Optional[Row]:
        if self.node.group_by and not self.groups.get(key):
            self.groups.pop(key, None)
            self.accumulators.pop(key, None)
            return None
        return group_row(key, self.node.group_by, self._accumulator(key).finalize())

    def bootstrap(self, sources, tick):
        self.groups = {}
        self.accumulators = {}
        for identity, row in self.child.bootstrap(sources, tick).items():
            tick()
            key = group_key(row, self.node.group_by)
            self._accumulator(key).add(row)
            self.groups[key][identity] = row
        if not self.node.group_by:
            self._accumulator(GLOBAL_GROUP)
        self.output = {key: self._finalize(key) for key in list(self.accumulators)}
        return dict(self.output)

    def propagate(self, changes, tick):
        child_delta = self.child.propagate(changes, tick)
        touched: Set[Tuple] = set()
        rebuild: Set[Tuple] = set()

        for identity, (before, after) in child_delta.items():
            tick()
            if before is not None:
                key = group_key(before, self.node.group_by)
                touched.add(key)
                del self.groups[key][identity]
                if self.accumulators[key].remove(before):
                    rebuild.add(key)
            if after is not None:
                key = group_key(after, self.node.group_by)
                touched.add(key)
                self._accumulator(key).add(after)
                self.groups[key][identity] = after

        for key in rebuild:
            self.accumulators[key].rebuild(self.groups[key].values())

        delta: Delta = {}
        for key in touched:
            before = self.output.get(key)
            after = self._finalize(key)
            if after is None:
                self.output.pop(key, None)
            else:
                self.output[key] = after
            if before != after:
                delta[key] = (before, after)
        return delta


def build_incremental(plan: PlanNode) -> IncrementalOperator:
    """Build the incremental operator tree mirroring ``plan``."""
    if isinstance(plan, Scan):
        return IncrementalScan(plan)
    if isinstance(plan, Filter):
        return IncrementalFilter(plan, build_incremental(plan.child))
    if isinstance(plan, Project):
        return IncrementalProject(plan, build_incremental(plan.child))
    if isinstance(plan, Join):
        return IncrementalJoin(plan, build_incremental(plan.left), build_incremental(plan.right))
    if isinstance(plan, Aggregate):
        return IncrementalAggregate(plan, build_incremental(plan.child))
    raise TypeError(f"{plan.describe()} cannot be maintained incrementally")


class IncrementalPlan:
    """Root of an incremental operator tree plus the result it maintains."""

    def __init__(self, plan: PlanNode):
        self.plan = plan
        self.root = build_incremental(plan)

    def bootstrap(self, sources: Mapping[str, Relation], tick: Tick = _noop) -> Relation:
        return self.root.bootstrap(sources, tick)

    def apply(self, changes: SourceChanges, tick: Tick = _noop) -> Delta:
        if not any(changes.values()):
            return {}
        return self.root.propagate(changes, tick)
