"""Shared fixtures: both store backends, a controllable clock, an in-process fleet"""

from datetime import datetime, timedelta, timezone

import pytest

from taskfleet.hierarchy import HierarchyPolicy, HealthMonitoringConfig
from taskfleet.queues.manager import TaskQueue
from taskfleet.state.database import DatabaseStore
from taskfleet.state.file_store import FileStore
from taskfleet.workers.fleet import FleetManager
from taskfleet.workers.launcher import NullLauncher
from taskfleet.config import DEFAULT_CONFIG


class FakeClock:
    """Callable clock that only moves when told to"""

    def __init__(self, start=None):
        self.now = start or datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


@pytest.fixture(params=["sqlite", "file"])
def backend(request):
    return request.param


@pytest.fixture
def make_store(backend, tmp_path):
    """Open another handle on the same store, as a second process would"""
    opened = []

    def factory():
        if backend == "sqlite":
            store = DatabaseStore(tmp_path / "state" / "taskfleet.db", busy_timeout_ms=5000)
        else:
            store = FileStore(tmp_path / "state", lock_timeout=5.0, poll_interval=0.01)
        opened.append(store)
        return store

    yield factory

    for store in opened:
        store.close()


@pytest.fixture
def store(make_store):
    return make_store()


@pytest.fixture
def sqlite_store(tmp_path):
    store = DatabaseStore(tmp_path / "state" / "taskfleet.db")
    yield store
    store.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def policy():
    return HierarchyPolicy.from_config(DEFAULT_CONFIG)


@pytest.fixture
def health():
    return HealthMonitoringConfig(
        heartbeat_interval_sec=30,
        unresponsive_threshold_sec=90,
        check_interval_sec=30,
        max_consecutive_failures=3,
    )


@pytest.fixture
def queue(store, policy, clock):
    return TaskQueue(store, policy=policy, clock=clock)


@pytest.fixture
def launcher():
    return NullLauncher()


@pytest.fixture
def alerts():
    return []


@pytest.fixture
def fleet(store, queue, launcher, policy, health, clock, alerts, tmp_path):
    return FleetManager(
        store,
        queue,
        launcher,
        workers_dir=tmp_path / "workers",
        project_root=tmp_path,
        policy=policy,
        health=health,
        clock=clock,
        on_alert=lambda worker, message: alerts.append((worker.id, message)),
    )
