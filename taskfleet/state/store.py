"""
Durable Store Interface
=======================

Every participant (supervisor and each worker process) coordinates only
through a ``DurableStore``. Two interchangeable backends implement it:

- ``DatabaseStore``: SQLite via SQLAlchemy, one transaction per primitive
- ``FileStore``: JSON documents guarded by advisory lock files

Both provide the same atomicity contract:

- single-record reads and read-modify-writes are atomic
- ``claim_task`` is one conditional update: take the lowest-id pending,
  undecomposed task matching the filter, flip it to processing, return
  it, or return None. Two claimants never both win the same task
- nothing spans two records: "claim a task" and "point the worker at it"
  are separate atomic steps and callers tolerate the gap
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional, Callable, Iterable, TypeVar

from ..errors import UnsupportedOperation
from .events import Event, EventType
from .records import (
    TaskRecord,
    WorkerRecord,
    SlotUsage,
    TaskStatus,
    ACTIVE_TASK_STATUSES,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Metadata key holding the last issued worker sequence number
WORKER_SEQ_KEY = "last_worker_seq"

# (existing workers, next sequence number) -> record to persist
WorkerFactory = Callable[[list[WorkerRecord], int], WorkerRecord]


def status_filter(status: "Optional[str | Iterable[str]]") -> Optional[tuple]:
    """Normalize a status filter argument to a tuple of values"""
    if status is None:
        return None
    if isinstance(status, str):
        return (status,)
    return tuple(s.value if isinstance(s, TaskStatus) else str(s) for s in status)


def matches_claim(task: TaskRecord, task_type: Optional[str], layer: Optional[int]) -> bool:
    """Claim predicate shared by both backends"""
    if task.status != TaskStatus.PENDING.value or task.is_decomposed:
        return False
    if task_type is not None and task.task_type != task_type:
        return False
    if layer is not None and task.layer != layer:
        return False
    return True


def apply_claim(task: TaskRecord, worker_id: str, now: datetime) -> None:
    task.status = TaskStatus.PROCESSING.value
    task.owner = worker_id
    task.started_at = now


def apply_release(task: TaskRecord) -> None:
    task.status = TaskStatus.PENDING.value
    task.owner = None
    task.started_at = None


class DurableStore(ABC):
    """Atomic primitives over tasks, workers, slots, metadata and events"""

    backend_name = "abstract"
    supports_slots = False

    # =========================================================================
    # Tasks
    # =========================================================================

    @abstractmethod
    def insert_tasks(self, tasks: list[TaskRecord]) -> list[TaskRecord]:
        """
        Persist new tasks, assigning ascending ids in list order.

        The ``id`` of the passed records is ignored and overwritten.
        """

    @abstractmethod
    def get_task(self, task_id: int) -> Optional[TaskRecord]:
        ...

    @abstractmethod
    def list_tasks(
        self,
        status: "Optional[str | Iterable[str]]" = None,
        task_type: Optional[str] = None,
        layer: Optional[int] = None,
        owner: Optional[str] = None,
        parent_id: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> list[TaskRecord]:
        """Tasks ordered by id"""

    @abstractmethod
    def claim_task(
        self,
        worker_id: str,
        task_type: Optional[str] = None,
        layer: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Optional[TaskRecord]:
        """Atomically claim the lowest-id matching pending task"""

    @abstractmethod
    def update_task(self, task_id: int, mutate: Callable[[TaskRecord], T]) -> TaskRecord:
        """
        Atomic read-modify-write of one task.

        ``mutate`` edits the record in place. If it raises, nothing is
        written and the exception propagates. Raises ``TaskNotFound``.
        """

    @abstractmethod
    def release_tasks(self, worker_id: str) -> list[TaskRecord]:
        """Revert every active task owned by the worker to pending"""

    @abstractmethod
    def task_counts(self) -> dict[str, int]:
        """Per-status task counts from one consistent snapshot"""

    # =========================================================================
    # Workers
    # =========================================================================

    @abstractmethod
    def allocate_worker(self, factory: WorkerFactory) -> WorkerRecord:
        """
        Atomically issue the next worker sequence number and persist a worker.

        ``factory`` sees the current fleet and the new sequence number; it
        may raise to reject, in which case no record is created and the
        sequence number is not consumed.
        """

    @abstractmethod
    def get_worker(self, worker_id: str) -> Optional[WorkerRecord]:
        ...

    @abstractmethod
    def list_workers(
        self,
        status: "Optional[str | Iterable[str]]" = None,
        parent_id: Optional[str] = None,
    ) -> list[WorkerRecord]:
        """Workers ordered by layer, then id"""

    @abstractmethod
    def update_worker(self, worker_id: str, mutate: Callable[[WorkerRecord], T]) -> WorkerRecord:
        """Atomic read-modify-write of one worker. Raises ``WorkerNotFound``"""

    @abstractmethod
    def record_heartbeat(
        self,
        worker_id: str,
        timestamp: datetime,
        status: Optional[str] = None,
        current_task_id: Optional[int] = None,
        stage: Optional[str] = None,
        tasks_completed: Optional[int] = None,
        tasks_failed: Optional[int] = None,
    ) -> WorkerRecord:
        """Store a worker's self-reported liveness. None means unchanged"""

    # =========================================================================
    # Capacity slots (embedded-database backend only)
    # =========================================================================

    def init_slots(self, count: int) -> None:
        raise UnsupportedOperation(f"{self.backend_name} store does not track capacity slots")

    def assign_slot(self, worker_id: str, now: Optional[datetime] = None) -> Optional[int]:
        raise UnsupportedOperation(f"{self.backend_name} store does not track capacity slots")

    def release_slot(self, slot_id: int) -> Optional[str]:
        raise UnsupportedOperation(f"{self.backend_name} store does not track capacity slots")

    def slot_usage(self) -> SlotUsage:
        return SlotUsage(used=0, total=0)

    # =========================================================================
    # Project metadata
    # =========================================================================

    @abstractmethod
    def set_meta(self, key: str, value: str) -> None:
        ...

    @abstractmethod
    def get_meta(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    def all_meta(self) -> dict[str, str]:
        ...

    # =========================================================================
    # Events
    # =========================================================================

    @abstractmethod
    def append_event(
        self,
        event_type: "str | EventType",
        worker_id: Optional[str] = None,
        task_id: Optional[int] = None,
        details: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> Event:
        ...

    @abstractmethod
    def list_events(self, worker_id: Optional[str] = None, limit: Optional[int] = 50) -> list[Event]:
        """Events newest first"""

    # =========================================================================
    # Helpers shared by callers
    # =========================================================================

    def active_tasks_for(self, worker_id: str) -> list[TaskRecord]:
        return self.list_tasks(status=ACTIVE_TASK_STATUSES, owner=worker_id)

    @property
    @abstractmethod
    def location(self) -> str:
        """Where the store lives, written into every worker's config"""

    def close(self) -> None:
        """Release backend resources"""


def create_store(config: dict) -> DurableStore:
    """Create the configured store backend from config"""
    from ..config import resolve_path
    from .database import DatabaseStore
    from .file_store import FileStore

    store_config = config.get("store", {})
    backend = store_config.get("backend", "sqlite")
    state_dir = resolve_path(config, "state_dir")
    lock_timeout = float(store_config.get("lock_timeout_sec", 5.0))

    if backend == "sqlite":
        return DatabaseStore(state_dir / "taskfleet.db", busy_timeout_ms=int(lock_timeout * 1000))
    if backend == "file":
        return FileStore(
            state_dir,
            lock_timeout=lock_timeout,
            poll_interval=float(store_config.get("lock_poll_interval_sec", 0.1)),
        )
    raise ValueError(f"Unknown store backend: {backend}")
