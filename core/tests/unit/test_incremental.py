"""Incremental operators converge to the result of a full evaluation."""

from copy import deepcopy

import pytest

from changeflow.materialization import (
    Aggregate,
    Filter,
    IncrementalPlan,
    Join,
    Project,
    Scan,
    avg,
    count,
    evaluate,
    max_,
    min_,
    sum_,
)
from changeflow.types.changes import NetChange


def _insert(identity, row):
    return NetChange(row_identity=identity, before=None, after=row)


def _delete(identity, row):
    return NetChange(row_identity=identity, before=row, after=None)


def _update(identity, before, after):
    return NetChange(row_identity=identity, before=before, after=after)


def _apply(sources, changes):
    updated = deepcopy(sources)
    for source_id, net in changes.items():
        relation = updated.setdefault(source_id, {})
        for change in net:
            if change.after is None:
                relation.pop(change.row_identity, None)
            else:
                relation[change.row_identity] = change.after
    return updated


def _assert_converges(plan, sources, *batches):
    """Apply change batches incrementally and compare with full evaluation after each."""
    state = IncrementalPlan(plan)
    result = state.bootstrap(sources)
    assert result == evaluate(plan, sources)

    for changes in batches:
        delta = state.apply(changes)
        for identity, (before, after) in delta.items():
            assert result.get(identity) == before
            if after is None:
                del result[identity]
            else:
                result[identity] = after
        sources = _apply(sources, changes)
        assert result == evaluate(plan, sources)
    return result


ORDERS = {
    1: {"id": 1, "customer_id": 10, "region": "eu", "amount": 100},
    2: {"id": 2, "customer_id": 10, "region": "eu", "amount": 50},
    3: {"id": 3, "customer_id": 20, "region": "us", "amount": 70},
}
CUSTOMERS = {
    10: {"id": 10, "name": "acme"},
    20: {"id": 20, "name": "globex"},
}


@pytest.fixture
def sources():
    return deepcopy({"orders": ORDERS, "customers": CUSTOMERS})


class TestRowOperators:
    def test_filter_tracks_rows_entering_and_leaving(self, sources):
        plan = Filter(Scan("orders"), lambda r: r["amount"] >= 70)
        _assert_converges(plan, sources, {"orders": [
            _update(2, ORDERS[2], {**ORDERS[2], "amount": 80}),
            _update(3, ORDERS[3], {**ORDERS[3], "amount": 10}),
            _insert(4, {"id": 4, "customer_id": 20, "region": "us", "amount": 5}),
        ]})

    def test_project_update_outside_projection_yields_no_delta(self, sources):
        plan = Project(Scan("orders"), {"id": "id", "region": "region"})
        state = IncrementalPlan(plan)
        state.bootstrap(sources)

        delta = state.apply({"orders": [_update(1, ORDERS[1], {**ORDERS[1], "amount": 1})]})

        assert delta == {}

    def test_empty_changes_are_a_noop(self, sources):
        state = IncrementalPlan(Scan("orders"))
        state.bootstrap(sources)
        assert state.apply({"orders": []}) == {}


class TestJoin:
    PLAN = Join(Scan("orders"), Scan("customers"), on=(("customer_id", "id"),), right_prefix="c_")

    def test_changes_on_either_side(self, sources):
        _assert_converges(
            self.PLAN,
            sources,
            {"customers": [_update(10, CUSTOMERS[10], {"id": 10, "name": "acme corp"})]},
            {"orders": [_insert(4, {"id": 4, "customer_id": 20, "region": "us", "amount": 1})]},
            {"orders": [_update(1, ORDERS[1], {**ORDERS[1], "customer_id": 20})]},
            {"customers": [_delete(20, CUSTOMERS[20])]},
        )

    def test_both_sides_change_in_one_refresh(self, sources):
        result = _assert_converges(self.PLAN, sources, {
            "orders": [_insert(5, {"id": 5, "customer_id": 30, "region": "apac", "amount": 9})],
            "customers": [
                _insert(30, {"id": 30, "name": "initech"}),
                _delete(10, CUSTOMERS[10]),
            ],
        })
        assert set(result) == {(3, 20), (5, 30)}

    def test_null_keys_never_match(self, sources):
        _assert_converges(
            self.PLAN,
            sources,
            {"orders": [_update(3, ORDERS[3], {**ORDERS[3], "customer_id": None})]},
            {"orders": [_update(3, {**ORDERS[3], "customer_id": None}, ORDERS[3])]},
        )

    def test_self_join(self, sources):
        plan = Join(Scan("orders"), Scan("orders"), on=(("customer_id", "customer_id"),), right_prefix="o_")
        _assert_converges(plan, sources, {"orders": [
            _insert(4, {"id": 4, "customer_id": 10, "region": "eu", "amount": 5}),
            _delete(3, ORDERS[3]),
        ]})


class TestAggregate:
    def test_sum_count_avg_follow_inserts_updates_and_deletes(self, sources):
        plan = Aggregate(
            Scan("orders"),
            group_by=("region",),
            aggregates={"n": count(), "total": sum_("amount"), "mean": avg("amount")},
        )
        _assert_converges(
            plan,
            sources,
            {"orders": [_insert(4, {"id": 4, "customer_id": 20, "region": "us", "amount": 30})]},
            {"orders": [_update(1, ORDERS[1], {**ORDERS[1], "region": "us"})]},
            {"orders": [_delete(3, ORDERS[3]), _delete(4, {"id": 4, "customer_id": 20, "region": "us", "amount": 30})]},
        )

    def test_float_sum_and_avg_match_full_evaluation_after_delete(self):
        plan = Aggregate(Scan("m"), aggregates={"s": sum_("v"), "mean": avg("v")})
        sources = {"m": {1: {"v": 0.1}, 2: {"v": 0.2}}}

        result = _assert_converges(plan, sources, {"m": [_delete(1, {"v": 0.1})]})

        assert result == {(): {"s": 0.2, "mean": 0.2}}

    def test_grouped_float_sums_do_not_depend_on_arrival_order(self):
        plan = Aggregate(Scan("m"), group_by=("g",), aggregates={"s": sum_("v")})
        sources = {"m": {1: {"g": "a", "v": 0.1}, 2: {"g": "a", "v": 0.7}}}

        result = _assert_converges(
            plan,
            sources,
            {"m": [_insert(3, {"g": "a", "v": 0.2})]},
            {"m": [_delete(2, {"g": "a", "v": 0.7})]},
            {"m": [_update(1, {"g": "a", "v": 0.1}, {"g": "a", "v": 3})]},
        )

        assert result == {("a",): {"g": "a", "s": 3.2}}

    def test_group_disappears_when_emptied(self, sources):
        plan = Aggregate(Scan("orders"), group_by=("region",), aggregates={"n": count()})
        result = _assert_converges(plan, sources, {"orders": [_delete(3, ORDERS[3])]})
        assert ("us",) not in result

    def test_min_max_rebuild_after_removing_extreme(self, sources):
        plan = Aggregate(
            Scan("orders"),
            group_by=("region",),
            aggregates={"low": min_("amount"), "high": max_("amount")},
        )
        result = _assert_converges(
            plan,
            sources,
            {"orders": [_delete(1, ORDERS[1])]},
            {"orders": [_update(2, ORDERS[2], {**ORDERS[2], "amount": 500})]},
        )
        assert result[("eu",)] == {"region": "eu", "low": 500, "high": 500}

    def test_global_aggregate_keeps_single_row_when_empty(self, sources):
        plan = Aggregate(Scan("orders"), aggregates={"n": count(), "total": sum_("amount")})
        result = _assert_converges(plan, sources, {"orders": [
            _delete(identity, row) for identity, row in ORDERS.items()
        ]})
        assert result == {(): {"n": 0, "total": None}}

    def test_aggregate_over_filtered_join(self, sources):
        plan = Aggregate(
            Filter(
                Join(Scan("orders"), Scan("customers"), on=(("customer_id", "id"),), right_prefix="c_"),
                lambda r: r["amount"] > 20,
            ),
            group_by=("c_name",),
            aggregates={"total": sum_("amount")},
        )
        _assert_converges(
            plan,
            sources,
            {"customers": [_update(20, CUSTOMERS[20], {"id": 20, "name": "acme"})]},
            {"orders": [_update(2, ORDERS[2], {**ORDERS[2], "amount": 10})]},
        )
