"""Incremental materializer for derived ("dynamic") tables.

Each registered derived table owns:

- a result relation that is replaced wholesale when a refresh commits, so
  readers never observe a half-applied refresh,
- a change log of its own, to which every refresh appends its output delta,
  so downstream derived tables and streams consume it like a base table,
- for incremental plans, operator state plus one internal cursor per source
  marking the source position the state reflects.

Refreshes of one derived table are mutually exclusive; refreshes of
different derived tables may run in parallel.
"""

import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from changeflow.changelog.store import ChangeEntry, ChangeLogStore
from changeflow.common.exceptions import (
    ChangeFlowError,
    CursorExpiredError,
    CycleDetectedError,
    ErrorCode,
    MaterializationNotFoundError,
    NotInitializedError,
    RefreshCancelledError,
    TransientFailure,
    UntrackedTableError,
    classify_failure,
    validation_error,
)
from changeflow.constants import (
    ChangeOperation,
    InitializeMode,
    MaterializationStatus,
    RefreshOutcome,
    SpecState,
)
from changeflow.cursors.manager import CursorManager
from changeflow.logging import get_logger
from changeflow.monitoring.metrics import MetricsCollector, RefreshMetrics
from changeflow.observability.context import ExecutionRequestContext, sanitize_extras
from changeflow.observability.instrumentation import refresh_instrumentation
from changeflow.protocols.hooks import SnapshotProvider
from changeflow.settings import RefreshSettings
from changeflow.tables.store import TableStore
from changeflow.types.materialization import (
    MaterializationSpec,
    RefreshResult,
    Relation,
    SourceSnapshot,
)
from changeflow.utils.datetime import elapsed_since
from changeflow.utils.decorators import retry_with_backoff
from .cancellation import CancellationToken
from .classifier import IncrementalRefresh, RefreshStrategy, resolve_strategy
from .evaluator import evaluate
from .incremental import Delta, IncrementalPlan

logger = get_logger(__name__)

INTERNAL_CURSOR_PREFIX = "__dt__"


@dataclass
class _Materialization:
    """Runtime state of one derived table."""

    spec: MaterializationSpec
    strategy: RefreshStrategy
    status: MaterializationStatus = MaterializationStatus.UNINITIALIZED
    status_before_suspend: Optional[MaterializationStatus] = None
    result: Optional[Relation] = None
    state: Optional[IncrementalPlan] = None
    positions: Dict[str, int] = field(default_factory=dict)
    cursor_ids: Dict[str, str] = field(default_factory=dict)
    needs_retry: bool = False
    last_strategy: Optional[str] = None
    last_result: Optional[RefreshResult] = None
    token: Optional[CancellationToken] = None
    refresh_lock: threading.Lock = field(default_factory=threading.Lock)
    publish_lock: threading.Lock = field(default_factory=threading.Lock)

    @property
    def target_id(self) -> str:
        return self.spec.target_id


def diff_relations(old: Relation, new: Relation) -> Delta:
    """Row-level delta turning ``old`` into ``new``."""
    delta: Delta = {}
    for identity, row in old.items():
        if identity not in new:
            delta[identity] = (row, None)
    for identity, row in new.items():
        before = old.get(identity)
        if before != row:
            delta[identity] = (before, row)
    return delta


class IncrementalMaterializer:
    """Keeps derived tables consistent with their defining queries.

    Attributes:
        store: Change log of base and derived tables
        cursors: Cursor manager used for the internal per-source cursors
        tables: Base table store, used as a snapshot provider
        settings: Refresh settings (timeout, retries, cancellation checks)

    Example:
        >>> materializer.register(spec)
        >>> materializer.initialize("daily_totals")
        >>> materializer.query("daily_totals")
        [{'day': '2024-01-01', 'total': 100}]
    """

    def __init__(
        self,
        store: ChangeLogStore,
        cursors: CursorManager,
        tables: Optional[TableStore] = None,
        settings: Optional[RefreshSettings] = None,
        metrics: Optional[MetricsCollector] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.cursors = cursors
        self.tables = tables
        self.settings = settings or RefreshSettings()
        self._metrics = metrics
        self._sleep = sleep
        self._items: Dict[str, _Materialization] = {}
        self._providers: List[SnapshotProvider] = [self]
        if tables is not None:
            self._providers.append(tables)
        self._lock = threading.Lock()
        self.logger = logger

    # -- Registration --------------------------------------------------------

    def add_snapshot_provider(self, provider: SnapshotProvider) -> None:
        """Register a provider for sources owned by an external storage layer."""
        if not isinstance(provider, SnapshotProvider):
            raise validation_error(
                "Snapshot providers must implement snapshot() and provides()",
                field="provider",
                value=type(provider).__name__,
            )
        self._providers.append(provider)

    def register(self, spec: MaterializationSpec) -> None:
        """Declare a derived table. It starts UNINITIALIZED.

        Raises:
            ValidationError: If the name is taken or a source is unknown
            CycleDetectedError: If the query reads the derived table itself
            UnsupportedIncrementalPlanError: If INCREMENTAL is forced on a
                plan that is not delta-composable
            UntrackedTableError: If an external source has no change log
        """
        target_id = spec.target_id
        if target_id in self._items or (self.tables is not None and self.tables.has_table(target_id)):
            raise validation_error(
                f"Table '{target_id}' already exists",
                field="target_id",
                value=target_id,
                error_code=ErrorCode.MATERIALIZATION_EXISTS,
            )
        sources = spec.source_ids
        if not sources:
            raise validation_error(
                f"Dynamic table '{target_id}' must read at least one source",
                field="defining_query",
            )
        if target_id in sources:
            raise CycleDetectedError(target_id, target_id)

        strategy = resolve_strategy(target_id, spec.defining_query, spec.refresh_mode)
        for source_id in sources:
            self._provider_for(source_id)
            if not self.store.is_tracked(source_id):
                if self.tables is not None and self.tables.has_table(source_id):
                    self.store.enable_tracking(source_id)
                else:
                    raise UntrackedTableError(source_id)

        item = _Materialization(spec=spec.model_copy(), strategy=strategy)
        with self._lock:
            if target_id in self._items:
                raise validation_error(
                    f"Table '{target_id}' already exists",
                    field="target_id",
                    value=target_id,
                    error_code=ErrorCode.MATERIALIZATION_EXISTS,
                )
            self._items[target_id] = item
        self.store.enable_tracking(target_id)

        self.logger.info(
            "materialization.registered",
            extra=sanitize_extras({
                "target_id": target_id,
                "sources": ",".join(sources),
                "refresh_mode": spec.refresh_mode,
                "strategy": strategy.name,
                "target_lag": str(spec.target_lag),
            }),
        )

    def initialize(
        self,
        target_id: str,
        mode: Optional[InitializeMode] = None,
        actor: Optional[str] = None,
    ) -> Optional[RefreshResult]:
        """Populate a derived table according to its initialize mode.

        ON_CREATE runs a full compute now. ON_SCHEDULE leaves the table
        UNINITIALIZED until the first scheduled refresh.
        """
        item = self._get(target_id)
        mode = InitializeMode(mode or item.spec.initialize)
        if mode == InitializeMode.ON_SCHEDULE:
            return None
        return self.refresh(target_id, actor=actor)

    def drop(self, target_id: str) -> None:
        """Remove a derived table, its internal cursors and its change tracking."""
        with self._lock:
            item = self._items.pop(target_id, None)
        if item is None:
            raise MaterializationNotFoundError(target_id)
        if item.token is not None:
            item.token.cancel("dropped")
        self._drop_cursors(item)
        if self.store.is_tracked(target_id):
            self.store.disable_tracking(target_id)
        self.logger.info("materialization.dropped", extra=sanitize_extras({"target_id": target_id}))

    # -- Lifecycle -----------------------------------------------------------

    def suspend(self, target_id: str) -> None:
        item = self._get(target_id)
        if item.spec.state == SpecState.SUSPENDED:
            return
        item.status_before_suspend = item.status
        item.status = MaterializationStatus.SUSPENDED
        item.spec.state = SpecState.SUSPENDED
        self.logger.info("materialization.suspended", extra=sanitize_extras({"target_id": target_id}))

    def resume(self, target_id: str) -> None:
        """Resume a suspended derived table.

        The prior status is restored. Staleness is evaluated from the current
        source positions on the next check; the backlog accumulated while
        suspended is folded into a single refresh.
        """
        item = self._get(target_id)
        if item.spec.state != SpecState.SUSPENDED:
            return
        item.spec.state = SpecState.ACTIVE
        item.status = item.status_before_suspend or MaterializationStatus.UNINITIALIZED
        item.status_before_suspend = None
        self.logger.info("materialization.resumed", extra=sanitize_extras({"target_id": target_id}))

    def mark_stale(self, target_id: str) -> None:
        """Force a retry at the next staleness check (an upstream refresh failed)."""
        item = self._get(target_id)
        item.needs_retry = True
        if item.status == MaterializationStatus.FRESH:
            item.status = MaterializationStatus.STALE

    def cancel(self, target_id: str, reason: str = "cancelled") -> bool:
        """Cancel the in-flight refresh of a derived table, if any."""
        token = self._get(target_id).token
        if token is None:
            return False
        token.cancel(reason)
        return True

    # -- Inspection ----------------------------------------------------------

    def has(self, target_id: str) -> bool:
        return target_id in self._items

    def target_ids(self) -> List[str]:
        return list(self._items)

    def get_spec(self, target_id: str) -> MaterializationSpec:
        return self._get(target_id).spec.model_copy()

    def status(self, target_id: str) -> MaterializationStatus:
        """Current state machine status.

        A FRESH table whose sources have changed since its last refresh, or
        whose last refresh failed, reports STALE.
        """
        item = self._get(target_id)
        if item.status == MaterializationStatus.FRESH and (item.needs_retry or self._has_pending(item)):
            return MaterializationStatus.STALE
        return item.status

    def effective_strategy(self, target_id: str) -> str:
        return self._get(target_id).strategy.name

    def last_result(self, target_id: str) -> Optional[RefreshResult]:
        return self._get(target_id).last_result

    def row_count(self, target_id: str) -> int:
        result = self._get(target_id).result
        return len(result) if result is not None else 0

    def query(self, target_id: str) -> List[Dict[str, Any]]:
        """Rows of a derived table.

        Raises:
            NotInitializedError: If the table has never been populated
        """
        return [dict(row) for row in self.result(target_id).values()]

    def result(self, target_id: str) -> Relation:
        """Result relation keyed by row identity."""
        result = self._get(target_id).result
        if result is None:
            raise NotInitializedError(target_id)
        return dict(result)

    # -- Staleness -----------------------------------------------------------

    def has_pending_changes(self, target_id: str) -> bool:
        return self._has_pending(self._get(target_id))

    def lag_elapsed(self, target_id: str, now: Optional[datetime] = None) -> bool:
        """True when a time-based target lag has run out since the last refresh."""
        item = self._get(target_id)
        lag = item.spec.target_lag
        if lag.downstream:
            return False
        elapsed = elapsed_since(item.spec.last_refreshed_at, now or self.store.clock())
        return elapsed is None or elapsed >= lag.duration

    def evaluate_staleness(self, target_id: str, for_dependent: bool = False) -> bool:
        """Decide whether a derived table should be refreshed now.

        Args:
            target_id: Derived table
            for_dependent: True when a dependent is about to refresh and needs
                this table current; the only case in which a DOWNSTREAM table
                is ever stale

        Returns:
            True if the table should be refreshed
        """
        item = self._get(target_id)
        if item.spec.state == SpecState.SUSPENDED:
            return False
        lag = item.spec.target_lag
        if item.result is None:
            return for_dependent or not lag.downstream
        if not (item.needs_retry or self._has_pending(item)):
            return False
        if for_dependent:
            return True
        if lag.downstream:
            return False
        return self.lag_elapsed(target_id)

    # -- Refresh -------------------------------------------------------------

    def refresh(
        self,
        target_id: str,
        token: Optional[CancellationToken] = None,
        actor: Optional[str] = None,
    ) -> RefreshResult:
        """Bring a derived table up to date with its sources.

        Incremental plans apply source deltas to stored operator state when
        that state is available; the first refresh, and any refresh after a
        failure, cancellation or expired internal cursor, recomputes in full.
        Transient failures are retried with exponential backoff.

        Args:
            target_id: Derived table
            token: Cancellation token; defaults to one bounded by
                ``settings.refresh_timeout_seconds``
            actor: Caller identity, forwarded to the target's change log

        Returns:
            RefreshResult of the committed refresh

        Raises:
            RefreshCancelledError: If cancelled or timed out; the previous
                result stays visible
            TransientFailure: If retries are exhausted
            RefreshError: On terminal failures
        """
        item = self._get(target_id)
        if item.spec.state == SpecState.SUSPENDED:
            raise validation_error(
                f"Dynamic table '{target_id}' is suspended",
                field="state",
                value=SpecState.SUSPENDED.value,
                error_code=ErrorCode.INVALID_ARGUMENT,
            )
        if token is None:
            token = CancellationToken(
                timeout_seconds=self.settings.refresh_timeout_seconds,
                check_interval=self.settings.cancellation_check_interval,
            )

        with item.refresh_lock:
            item.token = token
            self._set_status(item, MaterializationStatus.INITIALIZING if item.result is None
                             else MaterializationStatus.REFRESHING)
            started_at = self.store.clock()
            ctx = ExecutionRequestContext.generate(actor=actor, attributes={"target_id": target_id})
            attempt = retry_with_backoff(
                max_retries=self.settings.max_retries,
                initial_delay=self.settings.retry_delay_seconds,
                max_delay=self.settings.max_retry_delay_seconds,
                retry_on=(TransientFailure,),
                sleep=self._sleep,
            )(self._attempt)

            try:
                with refresh_instrumentation(ctx, target_id=target_id) as telemetry:
                    result = attempt(item, token, started_at, actor)
                    telemetry["strategy"] = result.strategy
                    telemetry["outcome"] = result.outcome.value
                    telemetry["rows_inserted"] = str(result.rows_inserted)
                    telemetry["rows_deleted"] = str(result.rows_deleted)
            except ChangeFlowError as exc:
                outcome = (RefreshOutcome.CANCELLED if isinstance(exc, RefreshCancelledError)
                           else RefreshOutcome.FAILED)
                self._fail(item, exc, outcome, started_at)
                raise
            finally:
                item.token = None

            item.needs_retry = False
            item.last_result = result
            item.spec.last_refreshed_at = started_at
            self._set_status(item, MaterializationStatus.FRESH)

        self.logger.info(
            "refresh.complete",
            extra=sanitize_extras({
                "target_id": target_id,
                "strategy": result.strategy,
                "outcome": result.outcome,
                "rows_inserted": result.rows_inserted,
                "rows_deleted": result.rows_deleted,
            }),
        )
        self._record(result)
        return result

    def _attempt(
        self,
        item: _Materialization,
        token: CancellationToken,
        started_at: datetime,
        actor: Optional[str],
    ) -> RefreshResult:
        try:
            token.check(item.target_id)
            strategy = resolve_strategy(item.target_id, item.spec.defining_query, item.spec.refresh_mode)
            item.strategy = strategy
            if isinstance(strategy, IncrementalRefresh) and item.state is not None and item.result is not None:
                try:
                    return self._refresh_incremental(item, token, started_at, actor)
                except CursorExpiredError:
                    self.logger.warning(
                        "refresh.fallback_full",
                        extra=sanitize_extras({"target_id": item.target_id, "reason": "cursor_expired"}),
                    )
                    item.state = None
            return self._refresh_full(item, strategy, token, started_at, actor)
        except Exception as exc:
            # Operator state may be partially updated; the next attempt recomputes.
            item.state = None
            if isinstance(exc, ChangeFlowError):
                raise
            raise classify_failure(exc, f"refresh of '{item.target_id}'") from exc

    def _refresh_incremental(
        self,
        item: _Materialization,
        token: CancellationToken,
        started_at: datetime,
        actor: Optional[str],
    ) -> RefreshResult:
        target_id = item.target_id
        ends = {source_id: self.store.head_position(source_id) for source_id in item.spec.source_ids}
        changes = {
            source_id: self.cursors.peek_net(item.cursor_ids[source_id], end_position=end)
            for source_id, end in ends.items()
        }
        token.check(target_id)

        delta = item.state.apply(changes, tick=lambda: token.tick(target_id))
        token.check(target_id)

        if delta:
            result = dict(item.result)
            for identity, (_, after) in delta.items():
                if after is None:
                    result.pop(identity, None)
                else:
                    result[identity] = after
            self._publish(item, result, delta, actor)

        for source_id, end in ends.items():
            self.cursors.advance(item.cursor_ids[source_id], to_position=end, actor=actor)
        item.positions = dict(ends)

        outcome = RefreshOutcome.SUCCEEDED if delta else RefreshOutcome.NO_DATA
        return self._result(item, "incremental", outcome, delta, started_at)

    def _refresh_full(
        self,
        item: _Materialization,
        strategy: RefreshStrategy,
        token: CancellationToken,
        started_at: datetime,
        actor: Optional[str],
    ) -> RefreshResult:
        target_id = item.target_id
        snapshots = {source_id: self._load_snapshot(source_id) for source_id in item.spec.source_ids}
        relations = {source_id: snapshot.rows for source_id, snapshot in snapshots.items()}
        token.check(target_id)

        state: Optional[IncrementalPlan] = None
        if isinstance(strategy, IncrementalRefresh):
            state = IncrementalPlan(strategy.plan)
            result = state.bootstrap(relations, tick=lambda: token.tick(target_id))
        else:
            result = evaluate(item.spec.defining_query, relations, token, target_id)
        token.check(target_id)

        delta = diff_relations(item.result or {}, result)
        self._publish(item, result, delta, actor)

        positions = {source_id: snapshot.position for source_id, snapshot in snapshots.items()}
        self._drop_cursors(item)
        if state is not None:
            for source_id, position in positions.items():
                item.cursor_ids[source_id] = self.cursors.create_cursor(
                    source_id,
                    cursor_id=f"{INTERNAL_CURSOR_PREFIX}{target_id}__{source_id}",
                    at_position=position,
                )
        item.state = state
        item.positions = positions
        return self._result(item, "full", RefreshOutcome.SUCCEEDED, delta, started_at)

    def _publish(self, item: _Materialization, result: Relation, delta: Delta, actor: Optional[str]) -> None:
        """Commit a new result and append its delta to the target's change log."""
        entries: List[ChangeEntry] = []
        for identity, (before, after) in delta.items():
            if before is not None and after is not None:
                entries.append(ChangeEntry(ChangeOperation.DELETE, before, True, identity))
                entries.append(ChangeEntry(ChangeOperation.INSERT, after, True, identity))
            elif before is not None:
                entries.append(ChangeEntry(ChangeOperation.DELETE, before, False, identity))
            else:
                entries.append(ChangeEntry(ChangeOperation.INSERT, after, False, identity))

        with item.publish_lock:
            if entries:
                self.store.append_batch(item.target_id, entries, actor=actor)
            item.result = result

    def _result(
        self,
        item: _Materialization,
        strategy: str,
        outcome: RefreshOutcome,
        delta: Delta,
        started_at: datetime,
    ) -> RefreshResult:
        item.last_strategy = strategy
        return RefreshResult(
            target_id=item.target_id,
            strategy=strategy,
            outcome=outcome,
            rows_inserted=sum(1 for _, after in delta.values() if after is not None),
            rows_deleted=sum(1 for before, _ in delta.values() if before is not None),
            source_positions=dict(item.positions),
            started_at=started_at,
            finished_at=self.store.clock(),
        )

    def _fail(
        self,
        item: _Materialization,
        exc: ChangeFlowError,
        outcome: RefreshOutcome,
        started_at: datetime,
    ) -> None:
        item.state = None
        item.needs_retry = True
        self._set_status(
            item,
            MaterializationStatus.STALE if item.result is not None else MaterializationStatus.UNINITIALIZED,
        )
        item.last_result = RefreshResult(
            target_id=item.target_id,
            strategy=item.strategy.name,
            outcome=outcome,
            source_positions=dict(item.positions),
            started_at=started_at,
            finished_at=self.store.clock(),
            error=exc.to_dict(),
        )
        self.logger.error(
            "refresh.error",
            extra=sanitize_extras({
                "target_id": item.target_id,
                "outcome": outcome,
                "error_code": exc.error_code.value,
                "error_message": exc.message,
            }),
        )
        self._record(item.last_result)

    def _record(self, result: RefreshResult) -> None:
        if self._metrics is None:
            return
        self._metrics.record_refresh(RefreshMetrics(
            target_id=result.target_id,
            strategy=result.strategy,
            outcome=result.outcome.value,
            rows_inserted=result.rows_inserted,
            rows_deleted=result.rows_deleted,
            duration_seconds=result.duration_seconds,
            error_message=(result.error or {}).get("message"),
        ))

    # -- SnapshotProvider ----------------------------------------------------

    def provides(self, source_id: str) -> bool:
        return source_id in self._items

    def snapshot(self, source_id: str) -> SourceSnapshot:
        """Current result of a derived table with its change log head."""
        item = self._get(source_id)
        with item.publish_lock:
            if item.result is None:
                raise NotInitializedError(source_id)
            return SourceSnapshot(
                source_id=source_id,
                position=self.store.head_position(source_id),
                rows=dict(item.result),
            )

    # -- Internals -----------------------------------------------------------

    def _get(self, target_id: str) -> _Materialization:
        item = self._items.get(target_id)
        if item is None:
            raise MaterializationNotFoundError(target_id)
        return item

    def _set_status(self, item: _Materialization, status: MaterializationStatus) -> None:
        if item.spec.state == SpecState.SUSPENDED:
            item.status_before_suspend = status
        else:
            item.status = status

    def _has_pending(self, item: _Materialization) -> bool:
        for source_id in item.spec.source_ids:
            if self.store.head_position(source_id) > item.positions.get(source_id, 0):
                return True
        return False

    def _provider_for(self, source_id: str) -> SnapshotProvider:
        for provider in self._providers:
            if provider.provides(source_id):
                return provider
        raise validation_error(
            f"Source '{source_id}' is neither a table nor a dynamic table",
            field="source_id",
            value=source_id,
            error_code=ErrorCode.INVALID_ARGUMENT,
        )

    def _load_snapshot(self, source_id: str) -> SourceSnapshot:
        provider = self._provider_for(source_id)
        try:
            return provider.snapshot(source_id)
        except ChangeFlowError:
            raise
        except Exception as exc:
            raise classify_failure(exc, f"snapshot of '{source_id}'") from exc

    def _drop_cursors(self, item: _Materialization) -> None:
        for cursor_id in item.cursor_ids.values():
            if self.cursors.has_cursor(cursor_id):
                self.cursors.drop_cursor(cursor_id)
        item.cursor_ids = {}
