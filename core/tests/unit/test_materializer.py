"""Unit tests for the incremental materializer."""

import itertools
from datetime import timedelta
from unittest.mock import Mock

import pytest

from changeflow.common.exceptions import (
    CycleDetectedError,
    MaterializationNotFoundError,
    NotInitializedError,
    RefreshCancelledError,
    RefreshError,
    RefreshTimeoutError,
    TransientFailure,
    UnsupportedIncrementalPlanError,
    UntrackedTableError,
    ValidationError,
)
from changeflow.constants import (
    ChangeOperation,
    InitializeMode,
    MaterializationStatus,
    RefreshMode,
    RefreshOutcome,
    SpecState,
    WindowFunction,
)
from changeflow.materialization import (
    INTERNAL_CURSOR_PREFIX,
    IncrementalMaterializer,
    Aggregate,
    CancellationToken,
    Filter,
    Join,
    Scan,
    Window,
    count,
    diff_relations,
    sum_,
)
from changeflow.monitoring.metrics import MetricsCollector
from changeflow.types import MaterializationSpec, SourceSnapshot, TargetLag


def _spec(target_id, plan, **kwargs):
    kwargs.setdefault("target_lag", TargetLag.of(timedelta(minutes=1)))
    return MaterializationSpec(target_id=target_id, defining_query=plan, **kwargs)


def _total(materializer, target_id="M1"):
    (row,) = materializer.query(target_id)
    return row["total"]


@pytest.fixture
def orders(tables):
    tables.create_table("T", primary_key="id")
    tables.insert("T", [{"id": 1, "region": "eu", "amount": 50}])
    return tables


@pytest.fixture
def totals(orders, materializer):
    materializer.register(_spec("M1", Aggregate(Scan("T"), aggregates={"total": sum_("amount")})))
    materializer.initialize("M1")
    return materializer


class TestIncrementalRefresh:
    def test_sum_follows_insert_then_delete(self, orders, totals):
        before = _total(totals)

        orders.insert("T", [{"id": 2, "region": "us", "amount": 100}])
        result = totals.refresh("M1")
        assert result.strategy == "incremental"
        assert _total(totals) == before + 100

        orders.delete("T", where=lambda r: r["id"] == 2)
        totals.refresh("M1")
        assert _total(totals) == before

    def test_first_refresh_is_full_then_incremental(self, orders, totals):
        assert totals.last_result("M1").strategy == "full"
        assert totals.effective_strategy("M1") == "incremental"

        orders.update("T", {"amount": 60})
        assert totals.refresh("M1").strategy == "incremental"

    def test_update_is_not_double_counted(self, orders, totals):
        orders.update("T", {"amount": 75}, where=lambda r: r["id"] == 1)
        totals.refresh("M1")
        assert _total(totals) == 75

    def test_refresh_without_changes_reports_no_data(self, totals):
        result = totals.refresh("M1")
        assert result.outcome == RefreshOutcome.NO_DATA
        assert (result.rows_inserted, result.rows_deleted) == (0, 0)

    def test_internal_cursors_track_source_positions(self, orders, totals, cursors, store):
        cursor_id = f"{INTERNAL_CURSOR_PREFIX}M1__T"
        assert cursors.get_cursor(cursor_id).position == 1

        orders.insert("T", [{"id": 2, "amount": 1}])
        result = totals.refresh("M1")

        assert cursors.get_cursor(cursor_id).position == store.head_position("T") == 2
        assert result.source_positions == {"T": 2}

    def test_expired_internal_cursor_falls_back_to_full(self, orders, totals, cursors):
        cursors.mark_stale(f"{INTERNAL_CURSOR_PREFIX}M1__T")
        orders.insert("T", [{"id": 2, "amount": 10}])

        result = totals.refresh("M1")

        assert result.strategy == "full"
        assert _total(totals) == 60
        assert not cursors.get_cursor(f"{INTERNAL_CURSOR_PREFIX}M1__T").is_stale

    def test_join_refresh(self, tables, materializer):
        tables.create_table("orders", primary_key="id")
        tables.create_table("customers", primary_key="id")
        tables.insert("customers", [{"id": 10, "name": "acme"}])
        tables.insert("orders", [{"id": 1, "customer_id": 10, "amount": 5}])
        plan = Join(Scan("orders"), Scan("customers"), on=(("customer_id", "id"),), right_prefix="c_")
        materializer.register(_spec("enriched", plan))
        materializer.initialize("enriched")

        tables.update("customers", {"name": "acme corp"})
        tables.insert("orders", [{"id": 2, "customer_id": 10, "amount": 7}])
        assert materializer.refresh("enriched").strategy == "incremental"

        rows = sorted(materializer.query("enriched"), key=lambda r: r["id"])
        assert [(r["id"], r["c_name"]) for r in rows] == [(1, "acme corp"), (2, "acme corp")]


class TestDerivedChangeLog:
    """Each refresh appends its output delta to the derived table's own log."""

    def test_refresh_delta_is_logged_as_update_pair(self, orders, totals, store, cursors):
        stream = cursors.create_cursor("M1")
        orders.insert("T", [{"id": 2, "amount": 25}])
        totals.refresh("M1")

        delete, insert = cursors.peek(stream)

        assert (delete.operation, insert.operation) == (ChangeOperation.DELETE, ChangeOperation.INSERT)
        assert delete.is_update and insert.is_update
        assert (delete.row_payload["total"], insert.row_payload["total"]) == (50, 75)

    def test_snapshot_of_derived_table(self, totals, store):
        snapshot = totals.snapshot("M1")
        assert isinstance(snapshot, SourceSnapshot)
        assert snapshot.position == store.head_position("M1")
        assert list(snapshot.rows.values()) == [{"total": 50}]

    def test_diff_relations(self):
        old = {1: {"v": 1}, 2: {"v": 2}}
        new = {2: {"v": 3}, 3: {"v": 4}}
        assert diff_relations(old, new) == {
            1: ({"v": 1}, None),
            2: ({"v": 2}, {"v": 3}),
            3: (None, {"v": 4}),
        }


class TestRegistration:
    def test_query_before_initialization_fails(self, orders, materializer):
        materializer.register(_spec("M", Scan("T"), initialize=InitializeMode.ON_SCHEDULE))
        assert materializer.initialize("M") is None

        assert materializer.status("M") == MaterializationStatus.UNINITIALIZED
        with pytest.raises(NotInitializedError):
            materializer.query("M")

    def test_forced_incremental_on_window_is_rejected(self, orders, materializer):
        plan = Window(Scan("T"), WindowFunction.ROW_NUMBER, "rn", order_by=("amount",))
        with pytest.raises(UnsupportedIncrementalPlanError):
            materializer.register(_spec("M", plan, refresh_mode=RefreshMode.INCREMENTAL))
        assert not materializer.has("M")

    def test_auto_window_plan_refreshes_in_full(self, orders, materializer):
        plan = Window(Scan("T"), WindowFunction.ROW_NUMBER, "rn", order_by=("amount",))
        materializer.register(_spec("M", plan))
        materializer.initialize("M")

        orders.insert("T", [{"id": 2, "amount": 10}])
        result = materializer.refresh("M")

        assert materializer.effective_strategy("M") == "full"
        assert result.strategy == "full"
        assert {r["id"]: r["rn"] for r in materializer.query("M")} == {2: 1, 1: 2}

    def test_duplicate_and_self_referencing_names(self, orders, totals):
        with pytest.raises(ValidationError):
            totals.register(_spec("M1", Scan("T")))
        with pytest.raises(ValidationError):
            totals.register(_spec("T", Scan("M1")))
        with pytest.raises(CycleDetectedError):
            totals.register(_spec("M9", Scan("M9")))

    def test_unknown_and_untracked_sources(self, tables, store, materializer):
        with pytest.raises(ValidationError):
            materializer.register(_spec("M", Scan("missing")))

        tables.create_table("quiet", change_tracking=False)
        materializer.register(_spec("M", Scan("quiet")))
        assert store.is_tracked("quiet")

        provider = Mock()
        provider.provides.side_effect = lambda source_id: source_id == "ext"
        materializer.add_snapshot_provider(provider)
        with pytest.raises(UntrackedTableError):
            materializer.register(_spec("E", Scan("ext")))

    def test_drop_removes_cursors_and_tracking(self, totals, cursors, store):
        totals.drop("M1")
        assert not totals.has("M1")
        assert not cursors.has_cursor(f"{INTERNAL_CURSOR_PREFIX}M1__T")
        assert not store.is_tracked("M1")
        with pytest.raises(MaterializationNotFoundError):
            totals.status("M1")


class TestFailures:
    """A failed or cancelled refresh leaves the previous result visible."""

    def test_failure_keeps_previous_result_and_forces_full_retry(self, orders, materializer):
        broken = {"on": False}

        def predicate(row):
            if broken["on"]:
                raise ValueError("bad row")
            return True

        materializer.register(_spec("M", Aggregate(Filter(Scan("T"), predicate), aggregates={"total": sum_("amount")})))
        materializer.initialize("M")
        broken["on"] = True
        orders.insert("T", [{"id": 2, "amount": 5}])

        with pytest.raises(RefreshError):
            materializer.refresh("M")

        assert _total(materializer, "M") == 50
        assert materializer.status("M") == MaterializationStatus.STALE
        last = materializer.last_result("M")
        assert last.outcome == RefreshOutcome.FAILED
        assert last.error["type"] == "RefreshError"

        broken["on"] = False
        result = materializer.refresh("M")
        assert result.strategy == "full"
        assert _total(materializer, "M") == 55
        assert materializer.status("M") == MaterializationStatus.FRESH

    def test_cancelled_refresh_keeps_previous_result(self, orders, totals):
        orders.insert("T", [{"id": 2, "amount": 5}])
        token = CancellationToken()
        token.cancel("operator request")

        with pytest.raises(RefreshCancelledError):
            totals.refresh("M1", token=token)

        assert _total(totals) == 50
        assert totals.last_result("M1").outcome == RefreshOutcome.CANCELLED

    def test_timed_out_refresh(self, orders, totals):
        orders.insert("T", [{"id": 2, "amount": 5}])
        ticks = itertools.count(0, 10)
        token = CancellationToken(timeout_seconds=5, check_interval=1, monotonic=lambda: next(ticks))

        with pytest.raises(RefreshTimeoutError):
            totals.refresh("M1", token=token)
        assert _total(totals) == 50
        assert totals.status("M1") == MaterializationStatus.STALE

    def test_failed_initialization_stays_uninitialized(self, orders, materializer):
        def predicate(row):
            raise KeyError("missing column")

        materializer.register(_spec("M", Filter(Scan("T"), predicate), initialize=InitializeMode.ON_SCHEDULE))
        with pytest.raises(RefreshError):
            materializer.refresh("M")
        assert materializer.status("M") == MaterializationStatus.UNINITIALIZED


class _FlakyProvider:
    def __init__(self, failures):
        self.failures = failures
        self.calls = 0

    def provides(self, source_id):
        return source_id == "ext"

    def snapshot(self, source_id):
        self.calls += 1
        if self.calls <= self.failures:
            raise ConnectionError("storage unavailable")
        return SourceSnapshot(source_id=source_id, position=0, rows={1: {"id": 1}})


class TestTransientRetry:
    @pytest.fixture
    def external(self, store, materializer):
        store.enable_tracking("ext")
        return materializer

    def test_transient_failure_is_retried(self, external):
        provider = _FlakyProvider(failures=1)
        external.add_snapshot_provider(provider)
        external.register(_spec("M", Scan("ext"), refresh_mode=RefreshMode.FULL))

        external.initialize("M")

        assert provider.calls == 2
        assert external.query("M") == [{"id": 1}]

    def test_retries_are_bounded(self, external):
        provider = _FlakyProvider(failures=10)
        external.add_snapshot_provider(provider)
        external.register(_spec("M", Scan("ext"), refresh_mode=RefreshMode.FULL))

        with pytest.raises(TransientFailure):
            external.refresh("M")
        assert provider.calls == 3

    def test_invalid_provider_is_rejected(self, materializer):
        with pytest.raises(ValidationError):
            materializer.add_snapshot_provider(object())


class TestLifecycle:
    def test_lazy_stale_status(self, orders, totals):
        assert totals.status("M1") == MaterializationStatus.FRESH
        orders.insert("T", [{"id": 2, "amount": 1}])
        assert totals.status("M1") == MaterializationStatus.STALE
        assert totals.has_pending_changes("M1")

    def test_suspend_blocks_refresh_and_resume_folds_backlog(self, orders, totals):
        totals.suspend("M1")
        assert totals.status("M1") == MaterializationStatus.SUSPENDED
        assert totals.get_spec("M1").state == SpecState.SUSPENDED

        orders.insert("T", [{"id": 2, "amount": 10}])
        orders.insert("T", [{"id": 3, "amount": 20}])
        assert not totals.evaluate_staleness("M1")
        with pytest.raises(ValidationError):
            totals.refresh("M1")

        totals.resume("M1")
        assert totals.status("M1") == MaterializationStatus.STALE
        result = totals.refresh("M1")

        assert result.rows_inserted == 1
        assert _total(totals) == 80

    def test_mark_stale_forces_retry(self, totals):
        totals.mark_stale("M1")
        assert totals.status("M1") == MaterializationStatus.STALE
        assert totals.evaluate_staleness("M1", for_dependent=True)

    def test_staleness_respects_target_lag(self, orders, totals, clock):
        orders.insert("T", [{"id": 2, "amount": 1}])
        assert not totals.evaluate_staleness("M1")

        clock.advance(minutes=1)
        assert totals.evaluate_staleness("M1")

    def test_downstream_lag_is_stale_only_for_dependents(self, orders, materializer):
        materializer.register(_spec("D", Scan("T"), target_lag=TargetLag.of_downstream()))
        materializer.initialize("D")
        orders.insert("T", [{"id": 2, "amount": 1}])

        assert not materializer.evaluate_staleness("D")
        assert materializer.evaluate_staleness("D", for_dependent=True)

    def test_refresh_metrics_are_recorded(self, store, cursors, tables, refresh_settings):
        metrics = MetricsCollector()
        materializer = IncrementalMaterializer(store, cursors, tables=tables, settings=refresh_settings, metrics=metrics)
        tables.create_table("T", primary_key="id")
        materializer.register(_spec("M", Aggregate(Scan("T"), aggregates={"n": count()})))
        materializer.initialize("M")

        summary = metrics.get_summary()
        assert summary["total_refreshes"] == 1
        assert summary["refreshes_by_strategy"] == {"full": 1}
