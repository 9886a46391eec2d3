"""Unit tests for full plan evaluation and cancellation."""

import itertools

import pytest

from changeflow.common.exceptions import RefreshCancelledError, RefreshTimeoutError
from changeflow.constants import WindowFunction
from changeflow.materialization import (
    Aggregate,
    CancellationToken,
    Filter,
    Join,
    Project,
    Scan,
    Window,
    avg,
    count,
    evaluate,
    max_,
    min_,
    sum_,
)


ORDERS = {
    1: {"id": 1, "customer_id": 10, "region": "eu", "amount": 100},
    2: {"id": 2, "customer_id": 10, "region": "eu", "amount": 50},
    3: {"id": 3, "customer_id": 20, "region": "us", "amount": 70},
    4: {"id": 4, "customer_id": None, "region": "us", "amount": None},
}
CUSTOMERS = {
    10: {"id": 10, "name": "acme"},
    20: {"id": 20, "name": "globex"},
}
SOURCES = {"orders": ORDERS, "customers": CUSTOMERS}


class TestRowOperators:
    def test_scan_keeps_identity_and_selects_columns(self):
        result = evaluate(Scan("orders", columns=("id", "amount")), SOURCES)
        assert result[3] == {"id": 3, "amount": 70}

    def test_filter_and_project(self):
        plan = Project(
            Filter(Scan("orders"), lambda r: r["region"] == "eu"),
            {"order": "id", "cents": lambda r: r["amount"] * 100},
        )
        assert evaluate(plan, SOURCES) == {
            1: {"order": 1, "cents": 10000},
            2: {"order": 2, "cents": 5000},
        }

    def test_join_pairs_identities_and_skips_null_keys(self):
        plan = Join(Scan("orders"), Scan("customers"), on=(("customer_id", "id"),), right_prefix="c_")
        result = evaluate(plan, SOURCES)

        assert set(result) == {(1, 10), (2, 10), (3, 20)}
        assert result[(3, 20)]["c_name"] == "globex"
        assert result[(3, 20)]["id"] == 3

    def test_join_without_prefix_lets_right_columns_win(self):
        plan = Join(Scan("orders"), Scan("customers"), on=(("customer_id", "id"),))
        assert evaluate(plan, SOURCES)[(1, 10)]["id"] == 10


class TestAggregate:
    def test_grouped_aggregates(self):
        plan = Aggregate(
            Scan("orders"),
            group_by=("region",),
            aggregates={
                "n": count(),
                "n_amount": count("amount"),
                "total": sum_("amount"),
                "mean": avg("amount"),
                "low": min_("amount"),
                "high": max_("amount"),
            },
        )
        result = evaluate(plan, SOURCES)

        assert result[("eu",)] == {
            "region": "eu", "n": 2, "n_amount": 2, "total": 150, "mean": 75, "low": 50, "high": 100,
        }
        assert result[("us",)] == {
            "region": "us", "n": 2, "n_amount": 1, "total": 70, "mean": 70, "low": 70, "high": 70,
        }

    def test_global_aggregate_over_empty_input_has_one_row(self):
        plan = Aggregate(Scan("orders"), aggregates={"n": count(), "total": sum_("amount")})
        assert evaluate(plan, {"orders": {}}) == {(): {"n": 0, "total": None}}


class TestWindow:
    SCORES = {
        "a": {"team": "x", "score": 10},
        "b": {"team": "x", "score": 30},
        "c": {"team": "x", "score": 30},
        "d": {"team": "y", "score": 5},
        "e": {"team": "x", "score": None},
    }

    def _run(self, function, column=None):
        plan = Window(Scan("s"), function, "w", partition_by=("team",), order_by=("score",), column=column)
        return {k: v["w"] for k, v in evaluate(plan, {"s": self.SCORES}).items()}

    def test_row_number_breaks_ties_by_identity(self):
        assert self._run(WindowFunction.ROW_NUMBER) == {"a": 1, "b": 2, "c": 3, "e": 4, "d": 1}

    def test_rank_shares_ties(self):
        assert self._run(WindowFunction.RANK) == {"a": 1, "b": 2, "c": 2, "e": 4, "d": 1}

    def test_running_sum_skips_nulls(self):
        assert self._run(WindowFunction.RUNNING_SUM, column="score") == {
            "a": 10, "b": 40, "c": 70, "e": 70, "d": 5,
        }


class TestCancellation:
    def test_cancelled_token_stops_evaluation(self):
        token = CancellationToken(check_interval=1)
        token.cancel("user request")

        with pytest.raises(RefreshCancelledError) as exc_info:
            evaluate(Scan("orders"), SOURCES, token, "m")
        assert exc_info.value.details["reason"] == "user request"

    def test_deadline_raises_timeout_and_stays_timed_out(self):
        ticks = itertools.count(0, 10)
        token = CancellationToken(timeout_seconds=5, check_interval=1, monotonic=lambda: next(ticks))

        with pytest.raises(RefreshTimeoutError):
            evaluate(Scan("orders"), SOURCES, token, "m")
        assert token.is_cancelled
        with pytest.raises(RefreshTimeoutError):
            token.check("m")

    def test_clock_is_only_read_every_interval(self):
        reads = []

        def monotonic():
            reads.append(1)
            return 0.0

        token = CancellationToken(timeout_seconds=60, check_interval=3, monotonic=monotonic)
        for _ in range(9):
            token.tick()
        assert len(reads) == 1 + 3
