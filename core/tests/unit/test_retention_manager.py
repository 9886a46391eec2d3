"""Unit tests for retention windows and compaction."""

from datetime import timedelta

import pytest

from changeflow.changelog import InMemoryAuditTrail
from changeflow.common.exceptions import (
    CursorExpiredError,
    ErrorCode,
    InvalidRetentionError,
    RangeCompactedError,
    UntrackedTableError,
)
from changeflow.constants import AuditAction, ChangeOperation, CursorState, Edition
from changeflow.monitoring.metrics import MetricsCollector
from changeflow.retention import RetentionManager
from changeflow.settings import RetentionSettings


INSERT = ChangeOperation.INSERT


@pytest.fixture
def retention(store, cursors, retention_settings):
    store.enable_tracking("T")
    return RetentionManager(store, cursors, settings=retention_settings)


def _fill(store, count, table_id="T"):
    for i in range(count):
        store.append(table_id, INSERT, {"id": i}, row_identity=i)


class TestRetentionWindow:
    def test_default_window_comes_from_settings(self, retention):
        assert retention.get_retention("T").window_duration == timedelta(days=1)

    def test_set_and_clear(self, retention):
        retention.set_retention("T", timedelta(hours=6))
        assert retention.get_retention("T").window_duration == timedelta(hours=6)
        retention.clear_retention("T")
        assert retention.get_retention("T").window_duration == timedelta(days=1)

    def test_negative_window_is_rejected(self, retention):
        with pytest.raises(InvalidRetentionError) as exc_info:
            retention.set_retention("T", timedelta(seconds=-1))
        assert exc_info.value.error_code == ErrorCode.INVALID_RETENTION

    def test_window_above_edition_ceiling_is_rejected_not_clamped(self, retention):
        with pytest.raises(InvalidRetentionError) as exc_info:
            retention.set_retention("T", timedelta(days=2))
        assert exc_info.value.details["edition"] == "standard"
        assert retention.get_retention("T").window_duration == timedelta(days=1)

    def test_enterprise_edition_allows_longer_windows(self, store, cursors):
        store.enable_tracking("T")
        manager = RetentionManager(store, cursors, settings=RetentionSettings(edition=Edition.ENTERPRISE))
        assert manager.set_retention("T", timedelta(days=30)).window_duration == timedelta(days=30)
        with pytest.raises(InvalidRetentionError):
            manager.set_retention("T", timedelta(days=91))

    def test_untracked_table_is_rejected(self, retention):
        with pytest.raises(UntrackedTableError):
            retention.set_retention("unknown", timedelta(hours=1))

    def test_stale_after_adds_extension(self, retention):
        retention.set_retention("T", timedelta(hours=2))
        assert retention.stale_after("T") == timedelta(hours=3)


class TestCompaction:
    """Records go once they are both expired and consumed by every cursor."""

    def test_expired_history_without_cursors_is_removed(self, store, retention, clock):
        retention.set_retention("T", timedelta(hours=1))
        _fill(store, 2)
        clock.advance(hours=2)

        result = retention.compact("T")

        assert result.records_removed == 2
        with pytest.raises(RangeCompactedError):
            store.read_range("T", 0)

    def test_records_inside_window_are_kept(self, store, retention, clock):
        retention.set_retention("T", timedelta(hours=1))
        _fill(store, 2)
        clock.advance(minutes=30)
        _fill(store, 1)
        clock.advance(minutes=45)

        result = retention.compact("T")

        assert result.time_floor == 3
        assert result.records_removed == 2
        assert store.earliest_position("T") == 3

    def test_cursor_protects_unconsumed_history(self, store, cursors, retention, clock):
        retention.set_retention("T", timedelta(hours=1))
        cursor = cursors.create_cursor("T")
        _fill(store, 3)
        clock.advance(minutes=90)

        assert retention.compact("T").records_removed == 0
        assert [r.sequence_position for r in cursors.peek(cursor)] == [1, 2, 3]

        cursors.advance(cursor, to_position=2)
        result = retention.compact("T")

        assert result.cursor_floor == 2
        assert result.records_removed == 1
        assert store.earliest_position("T") == 2
        assert store.get_record("T", 2) is not None
        assert [r.sequence_position for r in cursors.peek(cursor)] == [3]

    def test_idle_cursor_past_extension_goes_stale(self, store, cursors, retention, clock):
        retention.set_retention("T", timedelta(hours=1))
        cursor = cursors.create_cursor("T")
        _fill(store, 2)
        clock.advance(hours=3)

        result = retention.compact("T")

        assert result.stale_cursors == [cursor]
        assert result.records_removed == 2
        assert cursors.get_cursor(cursor).state == CursorState.STALE
        with pytest.raises(CursorExpiredError):
            cursors.peek(cursor)

    def test_idle_cursor_goes_stale_with_default_settings(self, store, cursors, clock):
        store.enable_tracking("T")
        manager = RetentionManager(store, cursors)
        cursor = cursors.create_cursor("T")
        _fill(store, 1)
        clock.advance(days=3)

        result = manager.compact("T")

        assert result.stale_cursors == [cursor]
        assert result.records_removed == 1
        assert cursors.get_cursor(cursor).state == CursorState.STALE

    def test_idle_cursor_within_extension_keeps_protecting(self, store, cursors, retention, clock):
        retention.set_retention("T", timedelta(hours=1))
        cursor = cursors.create_cursor("T")
        _fill(store, 2)
        clock.advance(minutes=90)

        result = retention.compact("T")

        assert result.stale_cursors == []
        assert result.records_removed == 0
        assert not cursors.get_cursor(cursor).is_stale

    def test_compaction_is_audited_and_measured(self, store, cursors, clock):
        store.enable_tracking("T")
        metrics = MetricsCollector()
        manager = RetentionManager(store, cursors, metrics=metrics)
        trail = InMemoryAuditTrail()
        _fill(store, 3)
        store.add_audit_hook(trail)
        manager.set_retention("T", timedelta(0))
        clock.advance(seconds=1)

        manager.compact("T")

        (event,) = trail.events
        assert event.action == AuditAction.COMPACT
        assert (event.from_position, event.to_position, event.record_count) == (1, 3, 3)

    def test_sweep_compacts_every_tracked_table(self, store, retention, clock):
        store.enable_tracking("U")
        retention.set_retention("T", timedelta(hours=1))
        retention.set_retention("U", timedelta(hours=1))
        _fill(store, 2, "T")
        _fill(store, 1, "U")
        clock.advance(hours=2)

        results = {r.table_id: r for r in retention.sweep()}

        assert results["T"].records_removed == 2
        assert results["U"].records_removed == 1
