import socket

import pytest
import yaml

from taskfleet.config import CONFIG_FILENAME, load_config, write_default_config, resolve_path
from taskfleet.orchestrator import Supervisor, init_project
from taskfleet.recovery import PID_FILE
from taskfleet.state.records import TaskStatus
from taskfleet.workers.launcher import NullLauncher, SubprocessLauncher, create_launcher


@pytest.fixture
def project(tmp_path):
    supervisor = init_project(tmp_path / "demo", max_slots=2, launcher=NullLauncher())
    yield supervisor
    supervisor.close()


# =============================================================================
# Configuration
# =============================================================================

def test_load_config_defaults(tmp_path):
    config = load_config(tmp_path)

    assert config["paths"]["root"] == str(tmp_path.resolve())
    assert config["store"]["backend"] == "sqlite"
    assert config["health_monitoring"]["unresponsive_threshold_sec"] == 90
    assert resolve_path(config, "state_dir") == tmp_path.resolve() / "state"


def test_config_file_merges_over_defaults(tmp_path):
    (tmp_path / CONFIG_FILENAME).write_text(yaml.safe_dump({
        "health_monitoring": {"unresponsive_threshold_sec": 10},
        "hierarchy": {"max_depth": 5},
    }))

    config = load_config(tmp_path, overrides={"store": {"backend": "file"}})
    assert config["health_monitoring"]["unresponsive_threshold_sec"] == 10
    assert config["health_monitoring"]["check_interval_sec"] == 30
    assert config["hierarchy"]["max_depth"] == 5
    assert config["hierarchy"]["emergency_brake"]["max_total_instances"] == 10
    assert config["store"]["backend"] == "file"


def test_write_default_config_keeps_existing(tmp_path):
    path = write_default_config(tmp_path, {"project": {"name": "first"}})
    write_default_config(tmp_path, {"project": {"name": "second"}})

    assert yaml.safe_load(path.read_text())["project"]["name"] == "first"


def test_create_launcher(tmp_path):
    config = load_config(tmp_path)
    assert isinstance(create_launcher(config), SubprocessLauncher)
    assert isinstance(create_launcher(config, dry_run=True), NullLauncher)


# =============================================================================
# Project lifecycle
# =============================================================================

def test_init_project(project, tmp_path):
    root = tmp_path / "demo"
    assert (root / CONFIG_FILENAME).exists()
    assert (root / "state" / "taskfleet.db").exists()
    assert (root / "workers").is_dir()

    meta = project.store.all_meta()
    assert meta["name"] == "demo"
    assert meta["max_slots"] == "2"
    assert project.store.slot_usage().total == 2
    assert [e.event_type for e in project.events()] == ["project_started"]


def test_init_project_is_idempotent(project, tmp_path):
    again = init_project(tmp_path / "demo", max_slots=3, launcher=NullLauncher())
    try:
        assert again.store.slot_usage().total == 3
        assert again.store.get_meta("max_slots") == "2"
        assert [e.event_type for e in again.events()] == ["project_started"]
    finally:
        again.close()


def test_init_project_file_backend(tmp_path):
    supervisor = init_project(tmp_path / "files", backend="file", launcher=NullLauncher())
    try:
        assert supervisor.store.backend_name == "file"
        assert not (tmp_path / "files" / "state" / "tasks.json").exists()
        supervisor.queue.enqueue("build", ["a"])
        assert (tmp_path / "files" / "state" / "tasks.json").exists()
        assert supervisor.store.slot_usage().total == 0
    finally:
        supervisor.close()


def test_dashboard(project):
    project.queue.enqueue("build", ["a", "b", "c", "d"])
    ceo = project.fleet.provision(None, 0)
    project.fleet.spawn(ceo.id)
    project.queue.claim_next(ceo.id)
    project.queue.complete(1)

    view = project.dashboard()
    assert view.project["name"] == "demo"
    assert view.workers_total == 1
    assert view.workers_by_status == {"working": 1}
    assert view.tasks.total == 4
    assert view.tasks.global_status == "in_progress"
    assert view.slots.used == 1
    assert view.unresponsive == []

    data = view.to_dict()
    assert data["tasks"]["progress_percent"] == 25
    assert data["slots"] == {"used": 1, "total": 2}
    assert data["workers"]["total"] == 1


def test_events_newest_first(project):
    project.queue.enqueue("build", ["a"])
    ceo = project.fleet.provision(None, 0)
    project.queue.claim_next(ceo.id)

    types = [e.event_type for e in project.events()]
    assert types[:3] == ["task_claimed", "worker_provisioned", "task_created"]
    assert [e.event_type for e in project.events(worker_id=ceo.id)] == ["task_claimed", "worker_provisioned"]
    assert len(project.events(limit=2)) == 2


def test_spawn_queued(project):
    ceo = project.fleet.provision(None, 0)
    manager = project.fleet.provision(ceo.id, 1)

    assert project.spawn_queued() == [ceo.id, manager.id]
    assert project.spawn_queued() == []


# =============================================================================
# Recovery & supervision
# =============================================================================

def test_recovery_releases_orphaned_tasks(project):
    project.queue.enqueue("build", ["a", "b", "c"])
    ceo = project.fleet.provision(None, 0)
    project.queue.claim_next("ghost")
    project.queue.claim_next(ceo.id)

    pid_file = resolve_path(project.config, "state_dir") / PID_FILE
    # Beyond the largest pid Linux hands out
    pid_file.write_text(f"4195304:{socket.gethostname()}")

    result = project.recovery.recover()
    assert result.crash_detected
    assert result.orphaned_owners == ["ghost"]
    assert result.tasks_released == 1
    assert project.queue.get(1).status == TaskStatus.PENDING.value
    assert project.queue.get(2).owner == ceo.id

    types = [e.event_type for e in project.events()]
    assert types[0] == "recovery_completed"
    assert "crash_detected" in types


def test_recovery_frees_slots_of_retired_workers(project):
    ceo = project.fleet.provision(None, 0)
    project.fleet.spawn(ceo.id)

    def retire_without_release(worker):
        worker.status = "done"

    project.store.update_worker(ceo.id, retire_without_release)

    result = project.recovery.recover()
    assert not result.crash_detected
    assert result.slots_released == 1
    assert project.store.slot_usage().used == 0


def test_run_stops_without_work(project):
    result = project.run(interval_sec=0.01, install_signals=False)

    assert not result.crash_detected
    assert project.monitor.stopped_reason == "no outstanding work"
    assert not (resolve_path(project.config, "state_dir") / PID_FILE).exists()
    assert project.events()[0].event_type == "project_stopped"


def test_run_with_monitoring_disabled(tmp_path):
    root = tmp_path / "quiet"
    init_project(root, launcher=NullLauncher()).close()
    config = load_config(root, overrides={"health_monitoring": {"enabled": False}})

    supervisor = Supervisor(config, launcher=NullLauncher())
    try:
        supervisor.queue.enqueue("build", ["a"])
        supervisor.fleet.provision(None, 0)
        supervisor.run(spawn=True, install_signals=False)

        assert supervisor.monitor is None
        assert supervisor.fleet.launcher.launched == ["U00001"]
    finally:
        supervisor.close()
