"""Unit tests for plan nodes and refresh strategy selection."""

import random

import pytest

from changeflow.common.exceptions import ErrorCode, UnsupportedIncrementalPlanError
from changeflow.constants import AggregateFunction, RefreshMode, WindowFunction
from changeflow.materialization import (
    Aggregate,
    AggregateCall,
    Filter,
    FullRefresh,
    IncrementalRefresh,
    Join,
    Project,
    Scan,
    Window,
    classify,
    count,
    resolve_strategy,
    sum_,
)


def _orders_by_customer():
    return Aggregate(
        Join(Scan("orders"), Scan("customers"), on=(("customer_id", "id"),), right_prefix="c_"),
        group_by=("c_name",),
        aggregates={"n": count(), "total": sum_("amount")},
    )


class TestPlanNodes:
    def test_source_ids_are_unique_in_first_seen_order(self):
        plan = Join(
            Join(Scan("orders"), Scan("customers"), on=(("customer_id", "id"),)),
            Scan("orders"),
            on=(("id", "id"),),
        )
        assert plan.source_ids() == ["orders", "customers"]

    def test_walk_visits_parents_first(self):
        plan = Filter(Project(Scan("t"), {"a": "a"}), lambda r: True)
        assert [type(n).__name__ for n in plan.walk()] == ["Filter", "Project", "Scan"]

    def test_describe(self):
        assert _orders_by_customer().describe() == "Aggregate(by=['c_name'], n=count(*), total=sum(amount))"
        assert Scan("orders").describe() == "Scan(orders)"

    def test_only_count_may_omit_column(self):
        assert count().column is None
        with pytest.raises(ValueError):
            AggregateCall(AggregateFunction.SUM)


class TestClassify:
    @pytest.mark.parametrize("plan", [
        Scan("t"),
        Filter(Scan("t"), lambda r: r["x"] > 0),
        Project(Scan("t"), {"double": lambda r: r["x"] * 2}),
        _orders_by_customer(),
    ])
    def test_delta_composable_plans_are_incremental(self, plan):
        strategy = classify(plan)
        assert isinstance(strategy, IncrementalRefresh)
        assert strategy.plan is plan
        assert strategy.name == "incremental"

    def test_window_forces_full(self):
        plan = Window(Scan("t"), WindowFunction.RANK, "rank", order_by=("score",))
        strategy = classify(plan)
        assert isinstance(strategy, FullRefresh)
        assert "Window(rank) is not delta-composable" in strategy.reasons

    def test_non_deterministic_expression_forces_full(self):
        plan = Project(Scan("t"), {"noise": lambda r: random.random()}, deterministic=False)
        assert isinstance(classify(plan), FullRefresh)

    def test_classification_is_pure(self):
        plan = _orders_by_customer()
        assert type(classify(plan)) is type(classify(plan))


class TestResolveStrategy:
    def test_full_mode_overrides_classification(self):
        strategy = resolve_strategy("m", Scan("t"), RefreshMode.FULL)
        assert isinstance(strategy, FullRefresh)

    def test_auto_mode_follows_classification(self):
        window = Window(Scan("t"), WindowFunction.ROW_NUMBER, "rn")
        assert isinstance(resolve_strategy("m", Scan("t"), RefreshMode.AUTO), IncrementalRefresh)
        assert isinstance(resolve_strategy("m", window, RefreshMode.AUTO), FullRefresh)

    def test_forced_incremental_on_blocking_plan_is_rejected(self):
        window = Window(Scan("t"), WindowFunction.ROW_NUMBER, "rn")
        with pytest.raises(UnsupportedIncrementalPlanError) as exc_info:
            resolve_strategy("m", window, RefreshMode.INCREMENTAL)
        assert exc_info.value.error_code == ErrorCode.UNSUPPORTED_INCREMENTAL_PLAN
        assert exc_info.value.details["target_id"] == "m"
