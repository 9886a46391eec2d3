"""Shared fixtures for changeflow tests."""

from datetime import datetime, timedelta, timezone

import pytest

from changeflow.api import ChangeFlowEngine
from changeflow.changelog import ChangeLogStore
from changeflow.cursors import CursorManager
from changeflow.materialization import IncrementalMaterializer
from changeflow.settings import RefreshSettings, RetentionSettings
from changeflow.settings.main import _Settings
from changeflow.tables import TableStore


class ManualClock:
    """Clock that only moves when a test moves it."""

    def __init__(self, start: datetime = datetime(2024, 1, 1, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def refresh_settings():
    return RefreshSettings(
        max_workers=2,
        max_retries=2,
        retry_delay_seconds=0.0,
        max_retry_delay_seconds=0.0,
        cancellation_check_interval=1,
    )


@pytest.fixture
def retention_settings():
    return RetentionSettings(max_extension=timedelta(hours=1))


@pytest.fixture
def store(clock):
    return ChangeLogStore(clock=clock)


@pytest.fixture
def cursors(store):
    return CursorManager(store)


@pytest.fixture
def tables(store):
    return TableStore(store)


@pytest.fixture
def materializer(store, cursors, tables, refresh_settings):
    return IncrementalMaterializer(
        store,
        cursors,
        tables=tables,
        settings=refresh_settings,
        sleep=lambda _: None,
    )


@pytest.fixture
def engine(clock, refresh_settings, retention_settings):
    settings = _Settings(refresh=refresh_settings, retention=retention_settings)
    with ChangeFlowEngine(settings=settings, clock=clock, sleep=lambda _: None) as engine:
        yield engine
