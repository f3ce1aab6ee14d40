import json

import pytest
from click.testing import CliRunner

from taskfleet.cli import main


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def root(tmp_path, runner):
    project = tmp_path / "proj"
    result = runner.invoke(main, ["--root", str(project), "init", "--slots", "2"])
    assert result.exit_code == 0, result.output
    return project


def invoke(runner, root, *args):
    return runner.invoke(main, ["--root", str(root), *args])


def test_init(runner, root):
    assert (root / "taskfleet.yaml").exists()
    result = invoke(runner, root, "init")
    assert result.exit_code == 0
    assert "initialized" in result.output


def test_commands_need_a_project(runner, tmp_path):
    result = invoke(runner, tmp_path / "nowhere", "tasks", "list")
    assert result.exit_code == 1
    assert "Not a taskfleet project" in result.output


def test_task_lifecycle(runner, root, tmp_path):
    payloads = tmp_path / "payloads.txt"
    payloads.write_text("third\n\nfourth\n")

    result = invoke(runner, root, "tasks", "add", "build", "first", "second", "--from-file", str(payloads))
    assert result.exit_code == 0, result.output
    assert "Created 4 task(s)" in result.output

    result = invoke(runner, root, "tasks", "claim", "U00042")
    assert "Claimed task 1" in result.output

    result = invoke(runner, root, "tasks", "complete", "1", "--result", "out/1.txt")
    assert result.exit_code == 0, result.output
    assert "task_completed" in result.output

    result = invoke(runner, root, "tasks", "fail", "2", "bad input")
    assert result.exit_code == 0, result.output

    result = invoke(runner, root, "tasks", "list", "--status", "pending")
    assert result.exit_code == 0
    assert "Tasks" in result.output
    assert "third" in result.output


def test_invalid_transition_exits_nonzero(runner, root):
    invoke(runner, root, "tasks", "add", "build", "only")

    result = invoke(runner, root, "tasks", "complete", "1")
    assert result.exit_code == 1
    assert "cannot move" in result.output


def test_add_needs_payloads(runner, root):
    result = invoke(runner, root, "tasks", "add", "build")
    assert result.exit_code == 1
    assert "No payloads" in result.output


def test_audit_commands(runner, root):
    invoke(runner, root, "tasks", "add", "write", "chapter")
    invoke(runner, root, "tasks", "claim", "U00042")
    invoke(runner, root, "tasks", "complete", "1")

    result = invoke(runner, root, "tasks", "audit", "1", "--verdict", "request")
    assert result.exit_code == 0, result.output
    assert "audit_in_progress" in result.output

    result = invoke(runner, root, "tasks", "audit", "1", "--verdict", "fail", "--reason", "too short")
    assert result.exit_code == 0, result.output
    assert "pending" in result.output
    assert "retries 1" in result.output


def test_workers_and_dashboard(runner, root):
    result = invoke(runner, root, "workers", "provision", "--spawn", "--dry-run")
    assert result.exit_code == 0, result.output
    assert "Provisioned U00001" in result.output

    result = invoke(runner, root, "workers", "provision", "--parent", "U00001", "--layer", "1")
    assert "Provisioned U00002" in result.output

    result = invoke(runner, root, "workers", "provision", "--parent", "U00001", "--layer", "1")
    assert result.exit_code == 1
    assert "Provisioning rejected" in result.output

    result = invoke(runner, root, "workers", "heartbeat", "U00001", "--status", "working", "--stage", "plan")
    assert result.exit_code == 0, result.output

    result = invoke(runner, root, "workers", "list")
    assert result.exit_code == 0
    assert "U00001" in result.output
    assert "U00002" in result.output

    invoke(runner, root, "tasks", "add", "build", "a", "b")
    result = invoke(runner, root, "dashboard", "--json")
    assert result.exit_code == 0, result.output
    data = json.loads(result.stdout[result.stdout.index("{"):])
    assert data["workers"]["total"] == 2
    assert data["tasks"]["pending"] == 2
    assert data["slots"] == {"used": 1, "total": 2}

    result = invoke(runner, root, "dashboard")
    assert result.exit_code == 0
    assert "proj" in result.output

    result = invoke(runner, root, "workers", "finish", "U00002")
    assert "done" in result.output

    result = invoke(runner, root, "events", "--worker", "U00002")
    assert result.exit_code == 0
    assert "worker_done" in result.output


def test_worker_run(runner, root, monkeypatch):
    from taskfleet import cli
    from taskfleet.workers.base import BaseWorker

    monkeypatch.setattr(BaseWorker, "_install_signal_handlers", lambda self: None)
    real_create_worker = cli.create_worker

    def fast_worker(*args, **kwargs):
        worker = real_create_worker(*args, **kwargs)
        worker.config.idle_poll_sec = 0.01
        worker.config.max_idle_polls = 1
        return worker

    monkeypatch.setattr(cli, "create_worker", fast_worker)

    invoke(runner, root, "workers", "provision", "--spawn", "--dry-run")
    invoke(runner, root, "tasks", "add", "build", "a", "b")

    result = invoke(runner, root, "worker", "run", "U00001")
    assert result.exit_code == 0, result.output
    assert "processed 2 task(s)" in result.output

    result = invoke(runner, root, "dashboard", "--json")
    data = json.loads(result.stdout[result.stdout.index("{"):])
    assert data["tasks"]["global_status"] == "completed"


def test_supervise_stops_without_work(runner, root):
    result = invoke(runner, root, "supervise", "--interval", "0.01", "--dry-run")
    assert result.exit_code == 0, result.output
    assert "no outstanding work" in result.output
