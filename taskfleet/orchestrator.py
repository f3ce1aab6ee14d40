"""
Supervisor
==========

The supervising process: wires store, task queue and fleet manager
together, and owns the health check loop.

Responsibilities:
- Project initialization
- Startup recovery
- Health monitoring and bounded auto-restart
- Dashboard aggregation and event queries
"""

import logging
import signal
import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional, Callable

from .config import load_config, resolve_path, write_default_config
from .hierarchy import HierarchyPolicy, HealthMonitoringConfig
from .queues.manager import TaskQueue, TaskStats
from .recovery import RecoveryManager, RecoveryResult
from .state.events import Event, EventType
from .state.records import SlotUsage, utcnow, to_iso
from .state.store import DurableStore, create_store
from .workers.fleet import FleetManager, HealthMonitor, HealthReport, AlertCallback
from .workers.launcher import SessionLauncher, create_launcher

logger = logging.getLogger(__name__)


@dataclass
class Dashboard:
    """One aggregated view of the project"""
    project: dict = field(default_factory=dict)
    workers_total: int = 0
    workers_by_status: dict = field(default_factory=dict)
    tasks: TaskStats = field(default_factory=TaskStats)
    slots: SlotUsage = field(default_factory=SlotUsage)
    unresponsive: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "project": dict(self.project),
            "workers": {
                "total": self.workers_total,
                "by_status": dict(self.workers_by_status),
                "unresponsive": list(self.unresponsive),
            },
            "tasks": self.tasks.to_dict(),
            "slots": {"used": self.slots.used, "total": self.slots.total},
        }


class Supervisor:
    """
    Supervises a project.

    Only one supervisor per project should run the health loop; any number
    of processes may read the dashboard.
    """

    def __init__(
        self,
        config: dict,
        store: Optional[DurableStore] = None,
        launcher: Optional[SessionLauncher] = None,
        on_alert: Optional[AlertCallback] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config = config
        self.store = store or create_store(config)
        self.policy = HierarchyPolicy.from_config(config)
        self.health = HealthMonitoringConfig.from_config(config)

        queue_config = config.get("queues", {})
        self.queue = TaskQueue(
            self.store,
            policy=self.policy,
            max_retries=int(queue_config.get("max_retries", 3)),
            default_limit=int(queue_config.get("default_limit", 50)),
            clock=clock,
        )
        self.fleet = FleetManager(
            self.store,
            self.queue,
            launcher or create_launcher(config),
            workers_dir=resolve_path(config, "workers_dir"),
            project_root=config.get("paths", {}).get("root", "."),
            policy=self.policy,
            health=self.health,
            clock=clock,
            on_alert=on_alert,
        )
        self.recovery = RecoveryManager(self.store, self.queue, resolve_path(config, "state_dir"))
        self.monitor: Optional[HealthMonitor] = None

    # =========================================================================
    # Queries
    # =========================================================================

    def dashboard(self, now: Optional[datetime] = None) -> Dashboard:
        """Aggregate worker, task and slot state"""
        workers = self.fleet.list()
        by_status: dict[str, int] = {}
        for worker in workers:
            by_status[worker.status] = by_status.get(worker.status, 0) + 1

        return Dashboard(
            project=self.store.all_meta(),
            workers_total=len(workers),
            workers_by_status=by_status,
            tasks=self.queue.stats(),
            slots=self.store.slot_usage(),
            unresponsive=self.fleet.unresponsive(now),
        )

    def events(self, worker_id: Optional[str] = None, limit: Optional[int] = 50) -> list[Event]:
        """Events newest first"""
        return self.store.list_events(worker_id=worker_id, limit=limit)

    # =========================================================================
    # Supervision
    # =========================================================================

    def spawn_queued(self) -> list[str]:
        """Try to spawn every queued worker, returning the ones that started"""
        started = []
        for worker in self.fleet.list(status="queued"):
            if self.fleet.spawn(worker.id):
                started.append(worker.id)
        return started

    def tick(self, now: Optional[datetime] = None) -> HealthReport:
        """One health check, outside of the background loop"""
        return self.fleet.check_health(now)

    def run(
        self,
        interval_sec: Optional[float] = None,
        spawn: bool = False,
        install_signals: bool = True,
        on_tick: Optional[Callable[[HealthReport], None]] = None,
    ) -> RecoveryResult:
        """Recover, then run the health loop until it stops itself"""
        logger.info("Supervisor starting for %s", self.config.get("paths", {}).get("root", "."))
        result = self.recovery.recover()
        if result.crash_detected:
            logger.warning(
                "Recovered from unclean shutdown: %d task(s) released", result.tasks_released,
            )

        if spawn:
            started = self.spawn_queued()
            if started:
                logger.info("Spawned %d queued worker(s)", len(started))

        if not self.health.enabled:
            logger.info("Health monitoring disabled")
            self.recovery.remove_pid_file()
            return result

        self.monitor = HealthMonitor(
            self.fleet,
            interval_sec=interval_sec or self.health.check_interval_sec,
            timeout_minutes=self.policy.emergency_brake.timeout_minutes,
            on_tick=on_tick,
        )

        previous = {}
        if install_signals and threading.current_thread() is threading.main_thread():
            for signum in (signal.SIGINT, signal.SIGTERM):
                previous[signum] = signal.signal(signum, self._handle_shutdown)

        try:
            self.monitor.run()
        finally:
            for signum, handler in previous.items():
                if handler is not None:
                    signal.signal(signum, handler)
            self.store.append_event(
                EventType.PROJECT_STOPPED,
                details=f"supervisor stopped: {self.monitor.stopped_reason}",
            )
            self.recovery.remove_pid_file()
        return result

    def stop(self) -> None:
        if self.monitor is not None:
            self.monitor.stop()

    def _handle_shutdown(self, signum, frame):
        """Handle graceful shutdown"""
        logger.info("Received signal %d, shutting down supervisor", signum)
        self.stop()

    def close(self) -> None:
        self.store.close()


def init_project(
    root: "str | Path",
    max_slots: int = 4,
    project_name: Optional[str] = None,
    backend: str = "sqlite",
    launcher: Optional[SessionLauncher] = None,
) -> Supervisor:
    """
    Create a project: config file, store, capacity slots and metadata.

    Running it again on an initialized root keeps the existing config and
    history; only missing slots are added.
    """
    root = Path(root)
    root.mkdir(parents=True, exist_ok=True)
    project_name = project_name or root.resolve().name

    write_default_config(root, {
        "store": {"backend": backend},
        "project": {"name": project_name, "max_slots": max_slots},
    })
    config = load_config(root)
    if config["store"]["backend"] != backend:
        logger.warning(
            "Existing config uses the %s backend, ignoring %s", config["store"]["backend"], backend,
        )

    resolve_path(config, "state_dir").mkdir(parents=True, exist_ok=True)
    resolve_path(config, "workers_dir").mkdir(parents=True, exist_ok=True)

    supervisor = Supervisor(config, launcher=launcher)
    store = supervisor.store

    if store.supports_slots:
        store.init_slots(max_slots)

    if store.get_meta("created_at") is None:
        store.set_meta("name", project_name)
        store.set_meta("created_at", to_iso(utcnow()))
        store.set_meta("max_slots", str(max_slots))
        store.append_event(
            EventType.PROJECT_STARTED,
            details=f"{project_name} ({store.backend_name}, {max_slots} slots)",
        )
        logger.info("Initialized project %s at %s", project_name, root)

    return supervisor


def create_supervisor(config: dict, **kwargs) -> Supervisor:
    """Create supervisor from config"""
    return Supervisor(config, **kwargs)
