"""
Session Launchers
=================

Starting a worker's execution environment is delegated to a
``SessionLauncher``. The fleet manager only cares whether the launch
succeeded; a launcher signals failure by raising ``LaunchError``.
"""

import logging
import os
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from ..errors import LaunchError
from ..state.records import WorkerRecord
from .workspace import WorkerWorkspace

logger = logging.getLogger(__name__)

SESSION_LOG = "session.log"


class SessionLauncher(ABC):
    """Starts the process or session that runs a worker"""

    @abstractmethod
    def launch(self, worker: WorkerRecord, workspace: WorkerWorkspace) -> None:
        """Start the worker; raise ``LaunchError`` on failure"""


class SubprocessLauncher(SessionLauncher):
    """
    Launch each worker as a detached local process.

    ``command`` is an argv template; ``{root}``, ``{worker_id}`` and
    ``{folder_path}`` are substituted per worker.
    """

    def __init__(self, command: list[str], root: "str | Path", env: Optional[dict] = None):
        if not command:
            raise ValueError("launcher command must not be empty")
        self.command = list(command)
        self.root = Path(root)
        self.env = env
        self.processes: dict[str, subprocess.Popen] = {}

    def build_argv(self, worker: WorkerRecord, workspace: WorkerWorkspace) -> list[str]:
        values = {
            "root": str(self.root),
            "worker_id": worker.id,
            "folder_path": str(workspace.path),
        }
        try:
            return [part.format(**values) for part in self.command]
        except (KeyError, IndexError) as e:
            raise LaunchError(f"Bad launcher command template {self.command}: {e}") from e

    def launch(self, worker: WorkerRecord, workspace: WorkerWorkspace) -> None:
        argv = self.build_argv(worker, workspace)

        env = dict(os.environ)
        env.update(self.env or {})
        env["TASKFLEET_WORKER_ID"] = worker.id
        env["TASKFLEET_ROOT"] = str(self.root)

        workspace.path.mkdir(parents=True, exist_ok=True)
        try:
            with open(workspace.path / SESSION_LOG, "ab") as log:
                proc = subprocess.Popen(
                    argv,
                    cwd=str(self.root),
                    env=env,
                    stdin=subprocess.DEVNULL,
                    stdout=log,
                    stderr=subprocess.STDOUT,
                    start_new_session=True,
                )
        except OSError as e:
            raise LaunchError(f"Could not start {worker.id}: {e}") from e

        self.processes[worker.id] = proc
        logger.info("Launched %s as pid %d: %s", worker.id, proc.pid, " ".join(argv))

    def is_running(self, worker_id: str) -> bool:
        proc = self.processes.get(worker_id)
        return proc is not None and proc.poll() is None


class NullLauncher(SessionLauncher):
    """
    Records launch requests without starting anything.

    Used for dry runs, and in tests where ``fail_for`` makes chosen
    workers fail to launch.
    """

    def __init__(self, fail_for: Optional[set] = None):
        self.launched: list[str] = []
        self.fail_for = set(fail_for or ())

    def launch(self, worker: WorkerRecord, workspace: WorkerWorkspace) -> None:
        if worker.id in self.fail_for:
            raise LaunchError(f"Launch of {worker.id} refused")
        self.launched.append(worker.id)
        logger.debug("Recorded launch of %s", worker.id)


def create_launcher(config: dict, dry_run: bool = False) -> SessionLauncher:
    """Create session launcher from config"""
    if dry_run:
        return NullLauncher()
    command = config.get("launcher", {}).get("command")
    root = config.get("paths", {}).get("root", ".")
    return SubprocessLauncher(command, root)
