"""
State Management Module
=======================

The durable store every participant coordinates through:
1. Record types shared by all backends
2. SQLite database store (transactional, tracks capacity slots)
3. File store (JSON documents under advisory locks)
4. Event log (append-only audit trail)
"""

from .records import (
    TaskRecord,
    TaskStatus,
    WorkerRecord,
    WorkerStatus,
    SlotRecord,
    SlotUsage,
)
from .events import Event, EventLog, EventType
from .store import DurableStore, create_store
from .database import DatabaseStore
from .file_store import FileStore

__all__ = [
    "TaskRecord",
    "TaskStatus",
    "WorkerRecord",
    "WorkerStatus",
    "SlotRecord",
    "SlotUsage",
    "Event",
    "EventLog",
    "EventType",
    "DurableStore",
    "create_store",
    "DatabaseStore",
    "FileStore",
]
