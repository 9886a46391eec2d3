"""In-memory base tables that record their DML in the change log.

``TableStore`` stands in for the storage layer: it applies INSERT, UPDATE
and DELETE statements to keyed rows and writes the resulting changes to the
``ChangeLogStore`` in the same critical section, so a snapshot of a table
always pairs its rows with the log position they reflect.
"""

import threading
from typing import Any, Callable, Dict, Hashable, Iterable, List, Mapping, Optional, Sequence, Union

from changeflow.changelog.store import ChangeEntry, ChangeLogStore
from changeflow.common.exceptions import ErrorCode, validation_error
from changeflow.constants import ChangeOperation
from changeflow.logging import get_logger
from changeflow.observability.context import sanitize_extras
from changeflow.types.changes import RowPredicate
from changeflow.types.materialization import Relation, SourceSnapshot

logger = get_logger(__name__)

Assignments = Union[Mapping[str, Any], Callable[[Dict[str, Any]], Mapping[str, Any]]]


class _Table:
    def __init__(self, table_id: str, primary_key: Sequence[str]):
        self.table_id = table_id
        self.primary_key = tuple(primary_key)
        self.rows: Relation = {}
        self.next_identity = 1
        self.lock = threading.Lock()

    def identity_of(self, row: Mapping[str, Any]) -> Hashable:
        if not self.primary_key:
            identity = self.next_identity
            self.next_identity += 1
            return identity
        missing = [c for c in self.primary_key if row.get(c) is None]
        if missing:
            raise validation_error(
                f"Primary key column(s) {missing} of '{self.table_id}' must not be null",
                field="primary_key",
                value=missing,
            )
        if len(self.primary_key) == 1:
            return row[self.primary_key[0]]
        return tuple(row[c] for c in self.primary_key)


class TableStore:
    """Keyed in-memory tables whose statements feed the change log.

    Rows are identified by their primary key (a scalar for one column, a
    tuple otherwise) or by a generated surrogate when no key is declared.

    The store also acts as the snapshot provider for full recomputes.

    Example:
        >>> tables = TableStore(log)
        >>> tables.create_table("orders", primary_key="id")
        >>> tables.insert("orders", [{"id": 1, "amount": 100}])
        [1]
        >>> tables.snapshot("orders").position
        1
    """

    def __init__(self, log: ChangeLogStore):
        self.log = log
        self._tables: Dict[str, _Table] = {}
        self._lock = threading.Lock()
        self.logger = logger

    # -- DDL -----------------------------------------------------------------

    def create_table(
        self,
        table_id: str,
        primary_key: Union[str, Sequence[str], None] = None,
        change_tracking: bool = True,
    ) -> None:
        """Create an empty table.

        Args:
            table_id: Table name
            primary_key: Column or columns identifying a row
            change_tracking: Record DML in the change log from the start
        """
        if isinstance(primary_key, str):
            primary_key = (primary_key,)
        with self._lock:
            if table_id in self._tables:
                raise validation_error(
                    f"Table '{table_id}' already exists",
                    field="table_id",
                    value=table_id,
                    error_code=ErrorCode.INVALID_ARGUMENT,
                )
            self._tables[table_id] = _Table(table_id, primary_key or ())
        if change_tracking:
            self.log.enable_tracking(table_id)
        self.logger.info(
            "table.created",
            extra=sanitize_extras({
                "table_id": table_id,
                "primary_key": list(primary_key or ()),
                "change_tracking": change_tracking,
            }),
        )

    def drop_table(self, table_id: str) -> None:
        with self._lock:
            self._get(table_id)
            del self._tables[table_id]
        if self.log.is_tracked(table_id):
            self.log.disable_tracking(table_id)
        self.logger.info("table.dropped", extra=sanitize_extras({"table_id": table_id}))

    def has_table(self, table_id: str) -> bool:
        return table_id in self._tables

    def table_ids(self) -> List[str]:
        return list(self._tables)

    # -- DML -----------------------------------------------------------------

    def insert(
        self,
        table_id: str,
        rows: Iterable[Mapping[str, Any]],
        actor: Optional[str] = None,
    ) -> List[Hashable]:
        """Insert rows as one statement.

        Returns:
            Identities of the inserted rows

        Raises:
            ValidationError: On a duplicate primary key
        """
        table = self._get(table_id)
        with table.lock:
            staged: Dict[Hashable, Dict[str, Any]] = {}
            for row in rows:
                payload = dict(row)
                identity = table.identity_of(payload)
                if identity in table.rows or identity in staged:
                    raise validation_error(
                        f"Duplicate primary key {identity!r} in table '{table_id}'",
                        field="primary_key",
                        value=identity,
                    )
                staged[identity] = payload

            entries = [
                ChangeEntry(ChangeOperation.INSERT, payload, False, identity)
                for identity, payload in staged.items()
            ]
            self._record(table_id, entries, actor)
            table.rows.update(staged)
        return list(staged)

    def update(
        self,
        table_id: str,
        assignments: Assignments,
        where: Optional[RowPredicate] = None,
        actor: Optional[str] = None,
    ) -> int:
        """Update matching rows as one statement.

        Each changed row is logged as an adjacent DELETE/INSERT pair. Rows
        whose image does not change are not logged.

        Args:
            table_id: Table to update
            assignments: Column values, or a function of the old row
                returning them
            where: Row filter; all rows when omitted
            actor: Caller identity

        Returns:
            Number of rows changed
        """
        table = self._get(table_id)
        with table.lock:
            changed: Dict[Hashable, Dict[str, Any]] = {}
            entries: List[ChangeEntry] = []
            for identity, old in table.rows.items():
                if where is not None and not where(old):
                    continue
                values = assignments(dict(old)) if callable(assignments) else assignments
                new = {**old, **values}
                if table.primary_key and any(new.get(c) != old.get(c) for c in table.primary_key):
                    raise validation_error(
                        f"Updating the primary key of '{table_id}' is not supported",
                        field="primary_key",
                        value=identity,
                    )
                if new == old:
                    continue
                changed[identity] = new
                entries.append(ChangeEntry(ChangeOperation.DELETE, old, True, identity))
                entries.append(ChangeEntry(ChangeOperation.INSERT, new, True, identity))

            self._record(table_id, entries, actor)
            table.rows.update(changed)
        return len(changed)

    def delete(
        self,
        table_id: str,
        where: Optional[RowPredicate] = None,
        actor: Optional[str] = None,
    ) -> int:
        """Delete matching rows as one statement. Returns the number deleted."""
        table = self._get(table_id)
        with table.lock:
            doomed = [
                (identity, row) for identity, row in table.rows.items()
                if where is None or where(row)
            ]
            entries = [
                ChangeEntry(ChangeOperation.DELETE, row, False, identity)
                for identity, row in doomed
            ]
            self._record(table_id, entries, actor)
            for identity, _ in doomed:
                del table.rows[identity]
        return len(doomed)

    # -- Reads ---------------------------------------------------------------

    def rows(self, table_id: str) -> List[Dict[str, Any]]:
        table = self._get(table_id)
        with table.lock:
            return [dict(row) for row in table.rows.values()]

    def row_count(self, table_id: str) -> int:
        return len(self._get(table_id).rows)

    def provides(self, source_id: str) -> bool:
        return self.has_table(source_id)

    def snapshot(self, source_id: str) -> SourceSnapshot:
        """Rows of a table together with the log position they reflect."""
        table = self._get(source_id)
        with table.lock:
            position = self.log.head_position(source_id) if self.log.is_tracked(source_id) else 0
            rows = {identity: dict(row) for identity, row in table.rows.items()}
        return SourceSnapshot(source_id=source_id, position=position, rows=rows)

    # -- Internals -----------------------------------------------------------

    def _record(self, table_id: str, entries: List[ChangeEntry], actor: Optional[str]) -> None:
        if entries and self.log.is_tracked(table_id):
            self.log.append_batch(table_id, entries, actor=actor)

    def _get(self, table_id: str) -> _Table:
        table = self._tables.get(table_id)
        if table is None:
            raise validation_error(
                f"Table '{table_id}' does not exist",
                field="table_id",
                value=table_id,
                error_code=ErrorCode.INVALID_ARGUMENT,
            )
        return table
