"""
Append-Only Event Log
=====================

Audit trail of everything that happens to tasks and workers, used by the
dashboard and for postmortems. Events are never modified after writing.

The SQLite store keeps events in a table; the file store keeps them in a
JSONL file (one JSON object per line) handled by ``EventLog`` below:
- Appending never needs to parse the existing file
- A partially written line only loses that one event
- Human-readable for debugging
"""

import json
import logging
import os
from dataclasses import dataclass, asdict
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional, Iterator

from .records import utcnow, to_iso, from_iso

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Standard event types"""
    # Project events
    PROJECT_STARTED = "project_started"
    PROJECT_STOPPED = "project_stopped"
    CRASH_DETECTED = "crash_detected"
    RECOVERY_COMPLETED = "recovery_completed"

    # Task events
    TASK_CREATED = "task_created"
    TASK_CLAIMED = "task_claimed"
    TASK_DONE = "task_done"
    TASK_FAILED = "task_failed"
    TASK_RELEASED = "task_released"
    TASK_DECOMPOSED = "task_decomposed"
    AUDIT_REQUESTED = "audit_requested"
    AUDIT_PASSED = "audit_passed"
    AUDIT_FAILED = "audit_failed"

    # Worker events
    WORKER_PROVISIONED = "worker_provisioned"
    WORKER_SPAWNED = "worker_spawned"
    WORKER_SPAWN_FAILED = "worker_spawn_failed"
    WORKER_UNRESPONSIVE = "worker_unresponsive"
    WORKER_RESTARTED = "worker_restarted"
    WORKER_ALERT = "worker_alert"
    WORKER_DONE = "worker_done"
    WORKER_ERROR = "worker_error"
    WORKER_SHUTDOWN = "worker_shutdown"

    # Slot events
    SLOT_ASSIGNED = "slot_assigned"
    SLOT_RELEASED = "slot_released"


@dataclass
class Event:
    """A single event in the log"""
    event_type: str
    timestamp: datetime
    worker_id: Optional[str] = None
    task_id: Optional[int] = None
    details: Optional[str] = None
    id: Optional[int] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["timestamp"] = to_iso(self.timestamp)
        return data


def event_type_value(event_type: "str | EventType") -> str:
    return event_type.value if isinstance(event_type, EventType) else str(event_type)


class EventLog:
    """
    Append-only JSONL event log.

    Each append is a single ``write`` of one line on a file opened in append
    mode followed by fsync, so concurrent writers from different processes
    never interleave inside a line.
    """

    def __init__(self, log_path: "str | Path"):
        self.log_path = Path(log_path)
        self.log_path.parent.mkdir(parents=True, exist_ok=True)

    def append(
        self,
        event_type: "str | EventType",
        worker_id: Optional[str] = None,
        task_id: Optional[int] = None,
        details: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> Event:
        """Append an event to the log"""
        event = Event(
            event_type=event_type_value(event_type),
            timestamp=timestamp or utcnow(),
            worker_id=worker_id,
            task_id=task_id,
            details=details,
        )

        # Drop None values for compactness; the id is positional
        event_dict = {k: v for k, v in event.to_dict().items() if v is not None and k != "id"}

        with open(self.log_path, "a", encoding="utf-8") as f:
            f.write(json.dumps(event_dict, default=str) + "\n")
            f.flush()
            os.fsync(f.fileno())

        return event

    def iterate(self) -> Iterator[Event]:
        """
        Iterate over all events in write order.

        Corrupted lines are skipped with a warning.
        """
        if not self.log_path.exists():
            return

        with open(self.log_path, "r", encoding="utf-8") as f:
            for line_num, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue

                try:
                    data = json.loads(line)
                    data["timestamp"] = from_iso(data["timestamp"])
                    yield Event(id=line_num, **data)
                except (json.JSONDecodeError, TypeError, KeyError, ValueError) as e:
                    logger.warning("Corrupted event at %s:%d: %s", self.log_path, line_num, e)
                    continue

    def find_events(
        self,
        worker_id: Optional[str] = None,
        task_id: Optional[int] = None,
        event_type: "Optional[str | EventType]" = None,
        limit: Optional[int] = 50,
    ) -> list[Event]:
        """Matching events, newest first"""
        event_type_str = event_type_value(event_type) if event_type else None

        results = []
        for event in self.iterate():
            if worker_id and event.worker_id != worker_id:
                continue
            if task_id is not None and event.task_id != task_id:
                continue
            if event_type_str and event.event_type != event_type_str:
                continue
            results.append(event)

        results.reverse()
        if limit is not None:
            results = results[:limit]
        return results
