"""
Record Types
============

Plain dataclasses shared by both store backends. They carry no behaviour
beyond (de)serialization so that the file store and the SQLite store can
hand the exact same objects to the task queue and the fleet manager.

Timestamps are timezone-aware UTC datetimes in memory and ISO-8601
strings on disk.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Any, Dict

from dateutil import parser as date_parser


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return ensure_utc(value).isoformat()


def from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return ensure_utc(date_parser.isoparse(value))


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything we store is UTC"""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# =============================================================================
# Status Enums
# =============================================================================

class TaskStatus(str, Enum):
    """Task state machine values"""
    PENDING = "pending"
    PROCESSING = "processing"
    TASK_COMPLETED = "task_completed"
    AUDIT_IN_PROGRESS = "audit_in_progress"
    AUDIT_PASSED = "audit_passed"
    # Transient: an audit failure is resolved to PENDING or FAILED in the
    # same write, so this value never reaches the store.
    AUDIT_FAILED = "audit_failed"
    FAILED = "failed"


# Statuses a task can be claimed from or owned in
ACTIVE_TASK_STATUSES = (TaskStatus.PENDING.value, TaskStatus.PROCESSING.value)

# Statuses counted as finished work in stats
DONE_TASK_STATUSES = (
    TaskStatus.TASK_COMPLETED.value,
    TaskStatus.AUDIT_IN_PROGRESS.value,
    TaskStatus.AUDIT_PASSED.value,
)


class WorkerStatus(str, Enum):
    """Worker lifecycle values"""
    QUEUED = "queued"
    SLOT_ASSIGNED = "slot_assigned"
    IDLE = "idle"
    WORKING = "working"
    AWAITING_SUBORDINATES = "awaiting_subordinates"
    DONE = "done"
    ERROR = "error"
    SHUTDOWN = "shutdown"


# Retired workers keep their record but are ignored by health checks and
# do not count against the emergency brake.
RETIRED_WORKER_STATUSES = (WorkerStatus.DONE.value, WorkerStatus.SHUTDOWN.value)


# =============================================================================
# Records
# =============================================================================

@dataclass
class TaskRecord:
    """A unit of work in the shared queue"""
    id: int
    task_type: str
    title: str = ""
    description: str = ""
    layer: int = 0
    status: str = TaskStatus.PENDING.value

    owner: Optional[str] = None

    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    retry_count: int = 0
    max_retries: int = 3
    last_error: Optional[str] = None

    result_path: Optional[str] = None
    requires_audit: bool = False
    params: Dict[str, Any] = field(default_factory=dict)

    # Mega-task decomposition
    parent_id: Optional[int] = None
    child_ids: list = field(default_factory=list)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_TASK_STATUSES

    @property
    def is_decomposed(self) -> bool:
        return bool(self.child_ids)

    def to_dict(self) -> dict:
        data = asdict(self)
        for key in ("created_at", "started_at", "completed_at"):
            data[key] = to_iso(data[key])
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "TaskRecord":
        data = dict(data)
        for key in ("created_at", "started_at", "completed_at"):
            data[key] = from_iso(data.get(key))
        data["params"] = data.get("params") or {}
        data["child_ids"] = list(data.get("child_ids") or [])
        return cls(**data)


@dataclass
class WorkerRecord:
    """A provisioned worker and its place in the delegation tree"""
    id: str
    role: str
    layer: int
    parent_id: Optional[str] = None
    sibling_index: int = 1

    folder_name: str = ""
    folder_path: str = ""

    status: str = WorkerStatus.QUEUED.value
    last_heartbeat: Optional[datetime] = None
    stage: Optional[str] = None

    tasks_completed: int = 0
    tasks_failed: int = 0
    current_task_id: Optional[int] = None
    slot_id: Optional[int] = None
    last_error: Optional[str] = None

    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_retired(self) -> bool:
        return self.status in RETIRED_WORKER_STATUSES

    def to_dict(self) -> dict:
        data = asdict(self)
        for key in ("last_heartbeat", "created_at", "started_at", "completed_at"):
            data[key] = to_iso(data[key])
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "WorkerRecord":
        data = dict(data)
        for key in ("last_heartbeat", "created_at", "started_at", "completed_at"):
            data[key] = from_iso(data.get(key))
        return cls(**data)


@dataclass
class SlotRecord:
    """A unit of concurrent worker capacity"""
    slot_id: int
    worker_id: Optional[str] = None
    assigned_at: Optional[datetime] = None


@dataclass
class SlotUsage:
    used: int = 0
    total: int = 0
