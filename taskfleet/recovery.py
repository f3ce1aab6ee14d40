"""
Startup Recovery System
=======================

Runs when the supervisor starts.

Recovery process:
1. Detect an unclean previous shutdown through the PID file
2. Release tasks still owned by workers that are retired or unknown
3. Free capacity slots held by retired or unknown workers
4. Write a fresh PID file

Tasks owned by live-looking workers are left alone: the health check loop
decides about those once their heartbeats go stale.
"""

import logging
import os
import socket
from dataclasses import dataclass, field
from pathlib import Path

from .errors import TaskFleetError
from .queues.manager import TaskQueue
from .state.events import EventType
from .state.records import TaskStatus
from .state.store import DurableStore

logger = logging.getLogger(__name__)

PID_FILE = "taskfleet.pid"


@dataclass
class RecoveryResult:
    """Results from recovery process"""
    crash_detected: bool = False
    orphaned_owners: list = field(default_factory=list)
    tasks_released: int = 0
    slots_released: int = 0
    errors: list = field(default_factory=list)


class RecoveryManager:
    """
    Manages supervisor recovery on startup.

    Called during supervisor initialization to:
    1. Detect if the previous shutdown was unclean
    2. Hand orphaned work back to the queue
    """

    def __init__(self, store: DurableStore, queue: TaskQueue, state_dir: "str | Path"):
        self.store = store
        self.queue = queue
        self.state_dir = Path(state_dir)
        self.pid_file = self.state_dir / PID_FILE

    def recover(self) -> RecoveryResult:
        """
        Main recovery entry point.
        Called on every supervisor start.
        """
        result = RecoveryResult()

        result.crash_detected = self._detect_crash()
        if result.crash_detected:
            logger.warning("Previous supervisor shutdown was unclean")
            self.store.append_event(EventType.CRASH_DETECTED, details="Previous shutdown was unclean")

        workers = {worker.id: worker for worker in self.store.list_workers()}

        owners = {
            task.owner
            for task in self.store.list_tasks(status=TaskStatus.PROCESSING.value)
            if task.owner
        }
        for owner in sorted(owners):
            worker = workers.get(owner)
            if worker is not None and not worker.is_retired:
                continue
            try:
                result.tasks_released += self.queue.release(owner)
                result.orphaned_owners.append(owner)
            except TaskFleetError as e:
                result.errors.append(f"Owner {owner}: {e}")

        if self.store.supports_slots:
            for worker in workers.values():
                if worker.is_retired and worker.slot_id is not None:
                    try:
                        self.store.release_slot(worker.slot_id)
                        result.slots_released += 1
                    except TaskFleetError as e:
                        result.errors.append(f"Slot {worker.slot_id}: {e}")

        self.store.append_event(
            EventType.RECOVERY_COMPLETED,
            details=(
                f"released {result.tasks_released} task(s) from "
                f"{len(result.orphaned_owners)} orphaned owner(s), "
                f"{result.slots_released} slot(s)"
            ),
        )
        if result.tasks_released:
            logger.info("Recovery released %d orphaned task(s)", result.tasks_released)

        self._write_pid_file()
        return result

    def _detect_crash(self) -> bool:
        """
        Detect if the previous shutdown was unclean.

        If PID file exists and process is not running, it was a crash.
        """
        if not self.pid_file.exists():
            return False

        try:
            content = self.pid_file.read_text().strip()
            parts = content.split(":")
            pid = int(parts[0])
            hostname = parts[1] if len(parts) > 1 else None
        except (ValueError, OSError):
            # Corrupted PID file, assume crash
            return True

        if hostname and hostname != socket.gethostname():
            # Different machine, ignore
            return False

        if pid != os.getpid() and self._is_process_running(pid):
            # Another supervisor is alive
            return False

        return True

    def _is_process_running(self, pid: int) -> bool:
        """Check if a process with given PID is running"""
        try:
            os.kill(pid, 0)
            return True
        except OSError:
            return False

    def _write_pid_file(self) -> None:
        """Write PID file for crash detection"""
        self.pid_file.parent.mkdir(parents=True, exist_ok=True)
        self.pid_file.write_text(f"{os.getpid()}:{socket.gethostname()}")

    def remove_pid_file(self) -> None:
        """Remove PID file on clean shutdown"""
        try:
            self.pid_file.unlink()
        except FileNotFoundError:
            pass
