"""Engine facade with DDL-style entry points.

A declarative front-end translates its commands into these calls:

    CREATE STREAM                    -> create_stream
    ALTER STREAM ... SET CONSUMED    -> consume_stream
    SELECT ... CHANGES(...)          -> changes
    CREATE DYNAMIC TABLE             -> create_dynamic_table
    ALTER DYNAMIC TABLE ... REFRESH  -> refresh_dynamic_table
    SHOW STREAMS / DYNAMIC TABLES    -> show_streams / show_dynamic_tables
"""

from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Hashable, Iterable, List, Mapping, Optional, Sequence, Union

from changeflow.changelog.store import ChangeLogStore
from changeflow.common.exceptions import validation_error
from changeflow.constants import CursorMode, InitializeMode, RefreshMode
from changeflow.cursors.manager import CursorManager
from changeflow.logging import get_logger
from changeflow.materialization.materializer import INTERNAL_CURSOR_PREFIX, IncrementalMaterializer
from changeflow.materialization.plan import PlanNode
from changeflow.monitoring.metrics import MetricsCollector
from changeflow.observability.context import sanitize_extras
from changeflow.retention.manager import RetentionManager
from changeflow.scheduling.scheduler import DependencyGraphScheduler, TickReport
from changeflow.settings import get_settings
from changeflow.tables.store import Assignments, TableStore
from changeflow.types.changes import ChangeRecord, CompactionResult, NetChange, RowPredicate
from changeflow.types.introspection import DynamicTableInfo, StreamInfo
from changeflow.types.materialization import MaterializationSpec, RefreshResult, TargetLag
from changeflow.utils.datetime import Clock, get_current_timestamp

logger = get_logger(__name__)

Lag = Union[timedelta, str, TargetLag, None]


def _target_lag(value: Lag, default: timedelta) -> TargetLag:
    if isinstance(value, TargetLag):
        return value
    if value is None:
        return TargetLag.of(default)
    if isinstance(value, str):
        if value.strip().upper() == "DOWNSTREAM":
            return TargetLag.of_downstream()
        raise validation_error(f"Unknown target lag: {value!r}", field="target_lag", value=value)
    return TargetLag.of(value)


class ChangeFlowEngine:
    """Wires the change log, cursors, retention, materializer and scheduler.

    Args:
        settings: Application settings; defaults to ``get_settings()``
        clock: Source of commit timestamps and "now"
        metrics: Metrics collector; one is created when omitted

    Example:
        >>> engine = ChangeFlowEngine()
        >>> engine.create_table("orders", primary_key="id")
        >>> stream = engine.create_stream("orders")
        >>> engine.insert("orders", [{"id": 1, "amount": 100}])
        >>> [r.operation for r in engine.changes(stream)]
        [<ChangeOperation.INSERT: 'insert'>]
    """

    def __init__(
        self,
        settings=None,
        clock: Clock = get_current_timestamp,
        metrics: Optional[MetricsCollector] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self.settings = settings or get_settings()
        self.metrics = metrics or MetricsCollector(self.settings)
        self.log = ChangeLogStore(clock=clock, metrics=self.metrics)
        self.tables = TableStore(self.log)
        self.cursors = CursorManager(self.log, metrics=self.metrics)
        self.retention = RetentionManager(
            self.log, self.cursors, settings=self.settings.retention, metrics=self.metrics
        )
        materializer_kwargs = {} if sleep is None else {"sleep": sleep}
        self.materializer = IncrementalMaterializer(
            self.log,
            self.cursors,
            tables=self.tables,
            settings=self.settings.refresh,
            metrics=self.metrics,
            **materializer_kwargs,
        )
        self.scheduler = DependencyGraphScheduler(self.materializer, settings=self.settings.refresh)
        self.logger = logger

    # -- Tables --------------------------------------------------------------

    def create_table(
        self,
        table_id: str,
        primary_key: Union[str, Sequence[str], None] = None,
        change_tracking: bool = True,
        retention: Optional[timedelta] = None,
    ) -> None:
        self.tables.create_table(table_id, primary_key=primary_key, change_tracking=change_tracking)
        if retention is not None:
            self.retention.set_retention(table_id, retention)

    def drop_table(self, table_id: str) -> None:
        self.tables.drop_table(table_id)
        self.retention.clear_retention(table_id)

    def enable_change_tracking(self, table_id: str) -> None:
        self.log.enable_tracking(table_id)

    def disable_change_tracking(self, table_id: str) -> None:
        self.log.disable_tracking(table_id)

    def set_retention(self, table_id: str, window: timedelta):
        return self.retention.set_retention(table_id, window)

    def insert(self, table_id: str, rows: Iterable[Mapping[str, Any]], actor: Optional[str] = None) -> List[Hashable]:
        return self.tables.insert(table_id, rows, actor=actor)

    def update(
        self,
        table_id: str,
        assignments: Assignments,
        where: Optional[RowPredicate] = None,
        actor: Optional[str] = None,
    ) -> int:
        return self.tables.update(table_id, assignments, where=where, actor=actor)

    def delete(self, table_id: str, where: Optional[RowPredicate] = None, actor: Optional[str] = None) -> int:
        return self.tables.delete(table_id, where=where, actor=actor)

    def select(self, table_id: str) -> List[Dict[str, Any]]:
        """Rows of a base or dynamic table."""
        if self.materializer.has(table_id):
            return self.materializer.query(table_id)
        return self.tables.rows(table_id)

    # -- Streams -------------------------------------------------------------

    def create_stream(
        self,
        table_id: str,
        name: Optional[str] = None,
        append_only: bool = False,
        predicate: Optional[RowPredicate] = None,
        at_position: Optional[int] = None,
    ) -> str:
        """Create a stream (cursor) on a base or dynamic table."""
        mode = CursorMode.APPEND_ONLY if append_only else CursorMode.DEFAULT
        return self.cursors.create_cursor(
            table_id, mode=mode, predicate=predicate, cursor_id=name, at_position=at_position
        )

    def changes(
        self,
        stream: str,
        end_position: Optional[int] = None,
        end_time: Optional[datetime] = None,
    ) -> List[ChangeRecord]:
        """Pending changes of a stream. Reading does not consume them."""
        return list(self.cursors.peek(stream, end_position=end_position, end_time=end_time))

    def net_changes(self, stream: str) -> List[NetChange]:
        return self.cursors.peek_net(stream)

    def stream_has_data(self, stream: str) -> bool:
        return self.cursors.has_pending_changes(stream)

    def consume_stream(self, stream: str, actor: Optional[str] = None) -> int:
        """Mark the stream's pending changes as consumed."""
        return self.cursors.advance(stream, actor=actor)

    def recreate_stream(self, stream: str) -> int:
        """Re-baseline a STALE stream at the current head."""
        return self.cursors.rebaseline(stream)

    def drop_stream(self, stream: str) -> None:
        self.cursors.drop_cursor(stream)

    # -- Dynamic tables ------------------------------------------------------

    def create_dynamic_table(
        self,
        target_id: str,
        query: PlanNode,
        target_lag: Lag = None,
        refresh_mode: RefreshMode = RefreshMode.AUTO,
        initialize: InitializeMode = InitializeMode.ON_CREATE,
        actor: Optional[str] = None,
    ) -> Optional[RefreshResult]:
        """Declare a dynamic table and, for ON_CREATE, populate it.

        Args:
            target_id: Name of the dynamic table
            query: Operator tree of the defining query
            target_lag: Duration, ``"DOWNSTREAM"`` or a TargetLag; defaults to
                ``settings.refresh.default_target_lag``
            refresh_mode: AUTO, FULL or INCREMENTAL
            initialize: ON_CREATE or ON_SCHEDULE
            actor: Caller identity

        Returns:
            The initial refresh result, or None for ON_SCHEDULE
        """
        spec = MaterializationSpec(
            target_id=target_id,
            defining_query=query,
            target_lag=_target_lag(target_lag, self.settings.refresh.default_target_lag),
            refresh_mode=refresh_mode,
            initialize=initialize,
        )
        self.scheduler.add_spec(spec)
        return self.materializer.initialize(target_id, actor=actor)

    def refresh_dynamic_table(self, target_id: str, actor: Optional[str] = None) -> RefreshResult:
        """Manual refresh, refreshing stale upstream dynamic tables first."""
        return self.scheduler.refresh_with_upstreams(target_id, actor=actor)[-1]

    def suspend_dynamic_table(self, target_id: str) -> None:
        self.materializer.suspend(target_id)

    def resume_dynamic_table(self, target_id: str) -> None:
        self.materializer.resume(target_id)

    def drop_dynamic_table(self, target_id: str) -> List[str]:
        """Drop a dynamic table. Returns the dependents that were suspended."""
        return self.scheduler.drop_spec(target_id)

    # -- Background work -----------------------------------------------------

    def tick(self) -> TickReport:
        """One scheduling pass over all dynamic tables."""
        return self.scheduler.schedule_tick()

    def compact(self, table_id: Optional[str] = None) -> List[CompactionResult]:
        """Compact one table, or every change-tracked table."""
        if table_id is not None:
            return [self.retention.compact(table_id)]
        return self.retention.sweep()

    def close(self) -> None:
        self.scheduler.shutdown()

    def __enter__(self) -> "ChangeFlowEngine":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # -- Introspection -------------------------------------------------------

    def show_streams(self, include_internal: bool = False) -> List[StreamInfo]:
        """One row per stream: table, mode, position and staleness deadline."""
        rows: List[StreamInfo] = []
        for cursor in self.cursors.list_cursors():
            if not include_internal and cursor.cursor_id.startswith(INTERNAL_CURSOR_PREFIX):
                continue
            head = self.log.head_position(cursor.table_id) if self.log.is_tracked(cursor.table_id) else cursor.position
            stale_after = None
            if self.log.is_tracked(cursor.table_id):
                stale_after = cursor.checkpoint_at + self.retention.stale_after(cursor.table_id)
            rows.append(StreamInfo(
                cursor_id=cursor.cursor_id,
                table_id=cursor.table_id,
                mode=cursor.mode,
                position=cursor.position,
                head_position=head,
                state=cursor.state,
                created_at=cursor.created_at,
                stale_after=stale_after,
            ))
        return sorted(rows, key=lambda r: r.cursor_id)

    def show_dynamic_tables(self) -> List[DynamicTableInfo]:
        """One row per dynamic table: state, status, lag and last refresh."""
        rows: List[DynamicTableInfo] = []
        for target_id in self.materializer.target_ids():
            spec = self.materializer.get_spec(target_id)
            rows.append(DynamicTableInfo(
                target_id=target_id,
                state=spec.state,
                status=self.materializer.status(target_id),
                target_lag=str(spec.target_lag),
                refresh_mode=spec.refresh_mode,
                effective_strategy=self.materializer.effective_strategy(target_id),
                last_refreshed_at=spec.last_refreshed_at,
                sources=spec.source_ids,
                row_count=self.materializer.row_count(target_id),
            ))
        self.logger.debug("introspection.dynamic_tables", extra=sanitize_extras({"count": len(rows)}))
        return sorted(rows, key=lambda r: r.target_id)
