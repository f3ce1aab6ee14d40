"""
Worker Fleet Manager
====================

Provisioning, delegation topology, spawning, heartbeats and the health
check loop with bounded auto-recovery.

Liveness model:
- every worker rewrites its heartbeat periodically
- a worker is healthy while its heartbeat is younger than the
  unresponsive threshold and its status is not ``error``
- a worker that wrote its finished sentinel is always healthy
- each unhealthy tick releases the worker's tasks, sets ``error`` and
  bumps an in-memory failure counter
- when the counter reaches ``max_consecutive_failures`` one restart is
  attempted; if that fails the operator is alerted and the worker stays
  in ``error``

The failure counter is deliberately not persisted: a restarted supervisor
assumes every worker healthy until its next tick says otherwise.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional, Callable

from ..config import resolve_path
from ..errors import (
    ContentionError,
    LaunchError,
    ProvisioningRejected,
    WorkerNotFound,
)
from ..hierarchy import HierarchyPolicy, HealthMonitoringConfig
from ..queues.manager import TaskQueue, create_task_queue
from ..state.events import EventType
from ..state.records import WorkerRecord, WorkerStatus, utcnow
from ..state.store import DurableStore, create_store
from .launcher import SessionLauncher, create_launcher
from .workspace import WorkerWorkspace, folder_name_for

logger = logging.getLogger(__name__)

AlertCallback = Callable[[WorkerRecord, str], None]


def format_worker_id(seq: int) -> str:
    return f"U{seq:05d}"


# =============================================================================
# Health reports
# =============================================================================

@dataclass
class WorkerHealth:
    """Assessment of one worker in one tick"""
    worker_id: str
    healthy: bool
    heartbeat_age_sec: Optional[float] = None
    finished: bool = False
    consecutive_failures: int = 0
    reason: Optional[str] = None


@dataclass
class HealthReport:
    """Outcome of one health check tick"""
    checked_at: datetime
    workers: list[WorkerHealth] = field(default_factory=list)
    released: dict = field(default_factory=dict)
    restarted: list[str] = field(default_factory=list)
    alerts: list[str] = field(default_factory=list)
    keep_running: bool = True

    @property
    def healthy(self) -> list[str]:
        return [w.worker_id for w in self.workers if w.healthy]

    @property
    def unhealthy(self) -> list[str]:
        return [w.worker_id for w in self.workers if not w.healthy]


class FleetManager:
    """
    Manages the worker tree.

    The supervising process calls ``check_health``; workers call
    ``heartbeat`` and ``mark_finished`` about themselves.
    """

    def __init__(
        self,
        store: DurableStore,
        queue: TaskQueue,
        launcher: SessionLauncher,
        workers_dir: "str | Path",
        project_root: "str | Path" = ".",
        policy: Optional[HierarchyPolicy] = None,
        health: Optional[HealthMonitoringConfig] = None,
        clock: Callable[[], datetime] = utcnow,
        on_alert: Optional[AlertCallback] = None,
    ):
        self.store = store
        self.queue = queue
        self.launcher = launcher
        self.workers_dir = Path(workers_dir)
        self.project_root = Path(project_root)
        self.policy = policy or HierarchyPolicy()
        self.health = health or HealthMonitoringConfig()
        self.clock = clock
        self.on_alert = on_alert

        # worker_id -> consecutive unhealthy ticks
        self._failures: dict[str, int] = {}

    # =========================================================================
    # Provisioning
    # =========================================================================

    def provision(self, parent_id: Optional[str], layer: int, role: Optional[str] = None) -> WorkerRecord:
        """Register a new queued worker under ``parent_id``"""
        now = self.clock()

        if not self.policy.within_depth(layer):
            self._reject(
                f"layer {layer} exceeds max depth {self.policy.max_depth}",
                layer, parent_id,
            )

        def build(existing: list[WorkerRecord], seq: int) -> WorkerRecord:
            brake = self.policy.emergency_brake
            active = [w for w in existing if not w.is_retired]
            if len(active) >= brake.max_total_instances:
                self._reject(
                    f"emergency brake: {len(active)} active workers "
                    f"(max {brake.max_total_instances})",
                    layer, parent_id,
                )

            if layer == 0:
                if parent_id is not None:
                    self._reject("a root worker has no parent", layer, parent_id)
                if any(w.layer == 0 and not w.is_retired for w in existing):
                    self._reject("a root worker already exists", layer, parent_id)
                sibling_index = 1 + sum(1 for w in existing if w.layer == 0)
            else:
                parent = next((w for w in existing if w.id == parent_id), None)
                if parent is None:
                    self._reject(f"parent {parent_id} does not exist", layer, parent_id)
                if layer != parent.layer + 1:
                    self._reject(
                        f"layer {layer} is not one below parent layer {parent.layer}",
                        layer, parent_id,
                    )
                if not self.policy.can_delegate(parent.layer):
                    self._reject(
                        f"{parent.role} workers on layer {parent.layer} cannot delegate",
                        layer, parent_id,
                    )
                siblings = [w for w in existing if w.parent_id == parent_id]
                limit = self.policy.max_subordinates(parent.layer)
                if sum(1 for w in siblings if not w.is_retired) >= limit:
                    self._reject(
                        f"parent {parent_id} already has {limit} subordinate(s)",
                        layer, parent_id,
                    )
                sibling_index = len(siblings) + 1

            worker_id = format_worker_id(seq)
            worker_role = role or self.policy.role_for(layer)
            folder_name = folder_name_for(worker_role, layer, sibling_index, worker_id)
            return WorkerRecord(
                id=worker_id,
                role=worker_role,
                layer=layer,
                parent_id=parent_id if layer > 0 else None,
                sibling_index=sibling_index,
                folder_name=folder_name,
                folder_path=str(self.workers_dir / folder_name),
                status=WorkerStatus.QUEUED.value,
                last_heartbeat=now,
                created_at=now,
            )

        worker = self.store.allocate_worker(build)

        WorkerWorkspace(worker.folder_path).create(
            worker,
            project_root=str(self.project_root),
            store_backend=self.store.backend_name,
            store_location=self.store.location,
        )
        self.store.append_event(
            EventType.WORKER_PROVISIONED,
            worker_id=worker.id,
            details=f"{worker.role} layer={worker.layer} parent={worker.parent_id or '-'}",
            timestamp=now,
        )
        logger.info("Provisioned %s (%s, layer %d)", worker.id, worker.role, worker.layer)
        return worker

    def _reject(self, reason: str, layer: int, parent_id: Optional[str]) -> None:
        logger.warning("Provisioning rejected: %s", reason)
        raise ProvisioningRejected(reason, layer=layer, parent_id=parent_id)

    # =========================================================================
    # Spawning & lifecycle
    # =========================================================================

    def spawn(self, worker_id: str) -> bool:
        """
        Assign a slot and launch the worker's session.

        Returns False when no slot is free or the launcher fails; the
        worker record is kept either way so it can be retried.
        """
        worker = self._require(worker_id)
        now = self.clock()

        slot_id = None
        if self.store.supports_slots and self.store.slot_usage().total > 0:
            slot_id = self.store.assign_slot(worker.id, now)
            if slot_id is None:
                logger.warning("No free capacity slot for %s, staying %s", worker.id, worker.status)
                return False
            self.store.append_event(
                EventType.SLOT_ASSIGNED, worker_id=worker.id, details=f"slot {slot_id}", timestamp=now,
            )

        try:
            self.launcher.launch(worker, WorkerWorkspace(worker.folder_path))
        except LaunchError as e:
            logger.error("Spawn of %s failed: %s", worker.id, e)

            def record_error(w: WorkerRecord) -> None:
                w.last_error = str(e)

            self.store.update_worker(worker.id, record_error)
            self.store.append_event(
                EventType.WORKER_SPAWN_FAILED, worker_id=worker.id, details=str(e), timestamp=now,
            )
            if slot_id is not None:
                self._release_slot(worker.id, slot_id)
            return False

        def launched(w: WorkerRecord) -> None:
            w.status = WorkerStatus.SLOT_ASSIGNED.value
            w.started_at = now
            # A fresh session gets a full threshold before it must beat
            w.last_heartbeat = now
            if slot_id is not None:
                w.slot_id = slot_id

        self.store.update_worker(worker.id, launched)
        self.store.append_event(EventType.WORKER_SPAWNED, worker_id=worker.id, timestamp=now)
        logger.info("Spawned %s", worker.id)
        return True

    def heartbeat(
        self,
        worker_id: str,
        status: Optional[str] = None,
        current_task_id: Optional[int] = None,
        stage: Optional[str] = None,
        tasks_completed: Optional[int] = None,
        tasks_failed: Optional[int] = None,
    ) -> WorkerRecord:
        """Worker-self liveness report"""
        if status is not None:
            status = WorkerStatus(status).value
        worker = self.store.record_heartbeat(
            worker_id,
            self.clock(),
            status=status,
            current_task_id=current_task_id,
            stage=stage,
            tasks_completed=tasks_completed,
            tasks_failed=tasks_failed,
        )
        WorkerWorkspace(worker.folder_path).write_heartbeat(worker)
        return worker

    def mark_finished(self, worker_id: str, reason: str = "no more work") -> WorkerRecord:
        """Write the finished sentinel and retire the worker as done"""
        worker = self._require(worker_id)
        WorkerWorkspace(worker.folder_path).mark_finished(
            worker.id,
            reason,
            extra={"tasks_completed": worker.tasks_completed, "tasks_failed": worker.tasks_failed},
        )
        return self._retire(worker, WorkerStatus.DONE, EventType.WORKER_DONE, reason)

    def shutdown(self, worker_id: str, reason: str = "shutdown requested") -> WorkerRecord:
        """Retire a worker without the finished sentinel"""
        worker = self._require(worker_id)
        return self._retire(worker, WorkerStatus.SHUTDOWN, EventType.WORKER_SHUTDOWN, reason)

    def _retire(self, worker: WorkerRecord, status: WorkerStatus, event_type: EventType, reason: str) -> WorkerRecord:
        now = self.clock()

        def apply(w: WorkerRecord) -> None:
            w.status = status.value
            w.completed_at = now
            w.current_task_id = None

        retired = self.store.update_worker(worker.id, apply)
        self.queue.release(worker.id)
        if retired.slot_id is not None:
            self._release_slot(worker.id, retired.slot_id)
        self._failures.pop(worker.id, None)
        self.store.append_event(event_type, worker_id=worker.id, details=reason, timestamp=now)
        logger.info("Worker %s is %s: %s", worker.id, status.value, reason)
        return self.store.get_worker(worker.id) or retired

    def _release_slot(self, worker_id: str, slot_id: int) -> None:
        if not self.store.supports_slots:
            return
        self.store.release_slot(slot_id)
        self.store.append_event(
            EventType.SLOT_RELEASED, worker_id=worker_id, details=f"slot {slot_id}", timestamp=self.clock(),
        )

    # =========================================================================
    # Health check
    # =========================================================================

    def assess(self, worker: WorkerRecord, now: datetime) -> WorkerHealth:
        """Liveness verdict for one worker"""
        finished = bool(worker.folder_path) and WorkerWorkspace(worker.folder_path).is_finished()
        age = (now - worker.last_heartbeat).total_seconds() if worker.last_heartbeat else None
        failures = self._failures.get(worker.id, 0)

        if finished:
            return WorkerHealth(worker.id, True, age, finished=True, consecutive_failures=failures)
        if worker.status == WorkerStatus.ERROR.value:
            return WorkerHealth(worker.id, False, age, consecutive_failures=failures, reason="status is error")
        if age is None or age >= self.health.unresponsive_threshold_sec:
            reason = "no heartbeat" if age is None else f"heartbeat {age:.0f}s old"
            return WorkerHealth(worker.id, False, age, consecutive_failures=failures, reason=reason)
        return WorkerHealth(worker.id, True, age, consecutive_failures=failures)

    def check_health(self, now: Optional[datetime] = None) -> HealthReport:
        """One health check tick over every non-retired worker"""
        now = now or self.clock()
        report = HealthReport(checked_at=now)

        for worker in self.store.list_workers():
            if worker.is_retired:
                continue
            try:
                self._check_worker(worker, now, report)
            except ContentionError as e:
                logger.warning("Health check of %s skipped: %s", worker.id, e)

        report.keep_running = self.queue.has_outstanding_work()
        if report.unhealthy:
            logger.warning("Unhealthy workers: %s", ", ".join(report.unhealthy))
        return report

    def _check_worker(self, worker: WorkerRecord, now: datetime, report: HealthReport) -> None:
        verdict = self.assess(worker, now)

        if verdict.healthy:
            self._failures.pop(worker.id, None)
            verdict.consecutive_failures = 0
            report.workers.append(verdict)
            if verdict.finished and worker.status != WorkerStatus.DONE.value:
                # Sentinel written but the worker died before retiring itself
                self._retire(worker, WorkerStatus.DONE, EventType.WORKER_DONE, "finished sentinel found")
            return

        failures = self._failures.get(worker.id, 0) + 1
        self._failures[worker.id] = failures
        verdict.consecutive_failures = failures
        report.workers.append(verdict)

        released = self.queue.release(worker.id)
        if released:
            report.released[worker.id] = released

        def mark_error(w: WorkerRecord) -> None:
            w.status = WorkerStatus.ERROR.value
            w.current_task_id = None
            w.last_error = f"unresponsive: {verdict.reason}"

        errored = self.store.update_worker(worker.id, mark_error)
        if errored.slot_id is not None:
            self._release_slot(worker.id, errored.slot_id)
        self.store.append_event(
            EventType.WORKER_UNRESPONSIVE,
            worker_id=worker.id,
            details=f"{verdict.reason}; failure {failures}; released {released}",
            timestamp=now,
        )

        if failures != self.health.max_consecutive_failures:
            return

        if self.health.auto_restart and self.spawn(worker.id):
            self._failures.pop(worker.id, None)
            verdict.consecutive_failures = 0

            def mark_idle(w: WorkerRecord) -> None:
                w.status = WorkerStatus.IDLE.value

            self.store.update_worker(worker.id, mark_idle)
            self.store.append_event(
                EventType.WORKER_RESTARTED, worker_id=worker.id,
                details=f"after {failures} failed checks", timestamp=now,
            )
            report.restarted.append(worker.id)
            logger.info("Restarted %s after %d failed checks", worker.id, failures)
            return

        message = f"{worker.id} unresponsive for {failures} checks and could not be restarted"
        self._alert(self.store.get_worker(worker.id) or worker, message, now)
        report.alerts.append(worker.id)

    def _alert(self, worker: WorkerRecord, message: str, now: datetime) -> None:
        if not self.health.alert_on_faulty:
            logger.warning(message)
            return
        logger.error(message)
        self.store.append_event(EventType.WORKER_ALERT, worker_id=worker.id, details=message, timestamp=now)
        if self.on_alert is not None:
            self.on_alert(worker, message)

    # =========================================================================
    # Queries
    # =========================================================================

    def get(self, worker_id: str) -> Optional[WorkerRecord]:
        return self.store.get_worker(worker_id)

    def list(self, status: Optional[str] = None, parent_id: Optional[str] = None) -> list[WorkerRecord]:
        return self.store.list_workers(status=status, parent_id=parent_id)

    def children(self, worker_id: str) -> list[WorkerRecord]:
        return self.store.list_workers(parent_id=worker_id)

    def unresponsive(self, now: Optional[datetime] = None) -> list[str]:
        now = now or self.clock()
        return [
            worker.id for worker in self.store.list_workers()
            if not worker.is_retired and not self.assess(worker, now).healthy
        ]

    def consecutive_failures(self, worker_id: str) -> int:
        return self._failures.get(worker_id, 0)

    def workspace(self, worker_id: str) -> WorkerWorkspace:
        return WorkerWorkspace(self._require(worker_id).folder_path)

    def _require(self, worker_id: str) -> WorkerRecord:
        worker = self.store.get_worker(worker_id)
        if worker is None:
            raise WorkerNotFound(worker_id)
        return worker


class HealthMonitor:
    """
    Runs ``FleetManager.check_health`` on a fixed interval.

    Stops when a tick reports no outstanding work, when the emergency
    brake timeout expires, or on ``stop()``.
    """

    def __init__(
        self,
        fleet: FleetManager,
        interval_sec: float = 30,
        timeout_minutes: Optional[float] = None,
        on_tick: Optional[Callable[[HealthReport], None]] = None,
    ):
        self.fleet = fleet
        self.interval_sec = interval_sec
        self.timeout_minutes = timeout_minutes
        self.on_tick = on_tick
        self.ticks = 0
        self.stopped_reason: Optional[str] = None
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        """Run in a background thread"""
        self._thread = threading.Thread(target=self.run, name="health-monitor", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        if self.stopped_reason is None:
            self.stopped_reason = "stopped"
        self._stop.set()

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run(self) -> None:
        """Blocking loop"""
        started = time.monotonic()
        deadline = started + self.timeout_minutes * 60 if self.timeout_minutes else None
        logger.info("Health monitor started (interval %.0fs)", self.interval_sec)

        while not self._stop.is_set():
            try:
                report = self.fleet.check_health()
            except Exception:
                logger.exception("Health check tick failed")
            else:
                self.ticks += 1
                if self.on_tick is not None:
                    self.on_tick(report)
                if not report.keep_running:
                    self.stopped_reason = "no outstanding work"
                    logger.info("No pending or processing tasks left, stopping health monitor")
                    break

            if deadline is not None and time.monotonic() >= deadline:
                self.stopped_reason = "timeout"
                logger.warning("Emergency brake timeout after %.0f minutes", self.timeout_minutes)
                break

            self._stop.wait(self.interval_sec)

        self._stop.set()
        logger.info("Health monitor stopped: %s", self.stopped_reason)


def create_fleet_manager(
    config: dict,
    store: Optional[DurableStore] = None,
    queue: Optional[TaskQueue] = None,
    launcher: Optional[SessionLauncher] = None,
    on_alert: Optional[AlertCallback] = None,
) -> FleetManager:
    """Create fleet manager from config"""
    store = store or create_store(config)
    return FleetManager(
        store,
        queue or create_task_queue(config, store=store),
        launcher or create_launcher(config),
        workers_dir=resolve_path(config, "workers_dir"),
        project_root=config.get("paths", {}).get("root", "."),
        policy=HierarchyPolicy.from_config(config),
        health=HealthMonitoringConfig.from_config(config),
        on_alert=on_alert,
    )
