"""
Base Worker Framework
=====================

The worker side of the fleet: the loop a launched session runs.

Features:
- Background heartbeat emitter
- Claim / process / complete-or-fail loop
- Graceful shutdown on SIGINT/SIGTERM (finishes the current task)
- Finished sentinel once there is nothing left to claim
"""

import logging
import signal
import threading
import traceback
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional, Callable

from ..errors import TaskFleetError, InvalidTransition
from ..hierarchy import HealthMonitoringConfig
from ..queues.manager import TaskQueue
from ..state.records import TaskRecord, WorkerStatus
from .fleet import FleetManager, create_fleet_manager
from .workspace import WorkerWorkspace

logger = logging.getLogger(__name__)


@dataclass
class WorkerConfig:
    """Configuration for a worker process"""
    worker_id: str

    # Claim filter; layer None means the worker's own layer
    task_type: Optional[str] = None
    layer: Optional[int] = None

    heartbeat_interval_sec: float = 30
    idle_poll_sec: float = 2.0

    # Consecutive empty polls with nothing pending before the worker finishes
    max_idle_polls: int = 3
    exit_when_idle: bool = True


@dataclass
class ProcessingResult:
    """Result from processing a task"""
    success: bool
    result_path: Optional[str] = None
    error: Optional[str] = None
    error_traceback: Optional[str] = None
    metrics: dict = field(default_factory=dict)


class HeartbeatEmitter:
    """Periodically reports liveness for one worker from a daemon thread"""

    def __init__(
        self,
        fleet: FleetManager,
        worker_id: str,
        interval_sec: float,
        stage: Optional[Callable[[], Optional[str]]] = None,
    ):
        self.fleet = fleet
        self.worker_id = worker_id
        self.interval_sec = interval_sec
        self.stage = stage
        self.beats = 0
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def beat(self) -> None:
        try:
            self.fleet.heartbeat(self.worker_id, stage=self.stage() if self.stage else None)
            self.beats += 1
        except TaskFleetError as e:
            logger.warning("Heartbeat for %s failed: %s", self.worker_id, e)

    def start(self) -> None:
        self._thread = threading.Thread(
            target=self._run, name=f"heartbeat-{self.worker_id}", daemon=True,
        )
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=self.interval_sec + 1)

    def _run(self) -> None:
        while not self._stop.wait(self.interval_sec):
            self.beat()


class BaseWorker(ABC):
    """
    Base class for workers.

    Subclasses implement:
    - process_task(): Do the actual work
    - initialize() / cleanup(): Optional setup and teardown

    The base class handles:
    - Claiming and completing tasks
    - Heartbeats
    - Graceful shutdown
    """

    def __init__(self, config: WorkerConfig, queue: TaskQueue, fleet: FleetManager):
        self.config = config
        self.queue = queue
        self.fleet = fleet

        self.worker_id = config.worker_id
        self.running = False
        self.current_task: Optional[TaskRecord] = None
        self.processed = 0

        self.record = fleet.get(self.worker_id)
        if self.record is None:
            raise TaskFleetError(f"Worker {self.worker_id} is not provisioned")
        self.workspace = WorkerWorkspace(self.record.folder_path)

        self._wake = threading.Event()
        self.emitter = HeartbeatEmitter(
            fleet, self.worker_id, config.heartbeat_interval_sec, stage=self._stage,
        )

    # =========================================================================
    # Subclass hooks
    # =========================================================================

    def initialize(self) -> None:
        """Called once before the first claim"""

    @abstractmethod
    def process_task(self, task: TaskRecord) -> ProcessingResult:
        """Do the work for one claimed task"""

    def cleanup(self) -> None:
        """Called once when the loop exits"""

    # =========================================================================
    # Main Worker Loop
    # =========================================================================

    def run(self) -> int:
        """Main worker loop; returns the number of tasks processed"""
        logger.info("[%s] Starting worker", self.worker_id)
        self._install_signal_handlers()

        try:
            self.initialize()
            self.running = True
            self.fleet.heartbeat(self.worker_id, status=WorkerStatus.IDLE.value, stage="starting")
            self.emitter.start()

            layer = self.config.layer if self.config.layer is not None else self.record.layer
            idle_polls = 0

            while self.running:
                task = self.queue.claim_next(self.worker_id, task_type=self.config.task_type, layer=layer)

                if task is None:
                    if self.config.exit_when_idle and not self._has_pending(layer):
                        idle_polls += 1
                        if idle_polls >= self.config.max_idle_polls:
                            self.fleet.mark_finished(self.worker_id, "no more work")
                            break
                    self._wake.wait(self.config.idle_poll_sec)
                    continue

                idle_polls = 0
                self._process(task)
        finally:
            self.running = False
            self.emitter.stop()
            self.cleanup()
            logger.info("[%s] Worker stopped after %d task(s)", self.worker_id, self.processed)

        return self.processed

    def stop(self) -> None:
        """Ask the loop to exit after the current task"""
        self.running = False
        self._wake.set()

    def _process(self, task: TaskRecord) -> None:
        self.current_task = task
        try:
            try:
                result = self.process_task(task)
            except Exception as e:
                logger.exception("[%s] Task %d raised", self.worker_id, task.id)
                result = ProcessingResult(
                    success=False, error=str(e), error_traceback=traceback.format_exc(),
                )

            try:
                if result.success:
                    self.queue.complete(task.id, result.result_path, worker_id=self.worker_id)
                    logger.info("[%s] Task %d completed", self.worker_id, task.id)
                else:
                    self.queue.fail(task.id, result.error or "Unknown error", worker_id=self.worker_id)
            except InvalidTransition as e:
                # The task was released from under us while we worked on it
                logger.warning("[%s] Result for task %d discarded: %s", self.worker_id, task.id, e)
            self.processed += 1
        finally:
            self.current_task = None

        self.fleet.heartbeat(self.worker_id, status=WorkerStatus.IDLE.value)

    def _has_pending(self, layer: Optional[int]) -> bool:
        pending = self.queue.list(
            status="pending", task_type=self.config.task_type, layer=layer, limit=1,
        )
        return bool(pending)

    def _stage(self) -> Optional[str]:
        task = self.current_task
        return f"task {task.id}" if task else "idle"

    def _install_signal_handlers(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            return
        signal.signal(signal.SIGINT, self._handle_shutdown)
        signal.signal(signal.SIGTERM, self._handle_shutdown)

    def _handle_shutdown(self, signum, frame):
        """Handle shutdown signals gracefully"""
        logger.info("[%s] Received signal %d, finishing current task", self.worker_id, signum)
        self.stop()


TaskHandler = Callable[[TaskRecord, WorkerWorkspace], ProcessingResult]


class CallableWorker(BaseWorker):
    """Worker whose task processing is a plain function"""

    def __init__(self, config: WorkerConfig, queue: TaskQueue, fleet: FleetManager, handler: TaskHandler):
        super().__init__(config, queue, fleet)
        self.handler = handler

    def process_task(self, task: TaskRecord) -> ProcessingResult:
        return self.handler(task, self.workspace)


def echo_handler(task: TaskRecord, workspace: WorkerWorkspace) -> ProcessingResult:
    """Write the task payload into the worker's output directory"""
    workspace.output_dir.mkdir(parents=True, exist_ok=True)
    path = workspace.output_dir / f"task_{task.id:05d}.txt"
    path.write_text(task.description, encoding="utf-8")
    return ProcessingResult(success=True, result_path=str(path))


def create_worker(
    config: dict,
    worker_id: str,
    handler: TaskHandler = echo_handler,
    task_type: Optional[str] = None,
    fleet: Optional[FleetManager] = None,
) -> CallableWorker:
    """Create a worker process loop from config"""
    fleet = fleet or create_fleet_manager(config)
    health = HealthMonitoringConfig.from_config(config)
    worker_config = WorkerConfig(
        worker_id=worker_id,
        task_type=task_type,
        heartbeat_interval_sec=health.heartbeat_interval_sec,
    )
    return CallableWorker(worker_config, fleet.queue, fleet, handler)
