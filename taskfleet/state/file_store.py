"""
File-Backed Store
=================

One JSON document per entity, every mutation a read-modify-write under an
advisory lock, every write atomic (temp file + fsync + rename). Survives
any participant crashing at any point: a document is either the old
version or the new one, never half written.

Directory structure:
    state/
        ├── tasks.json          # Shared task collection
        ├── tasks.json.lock
        ├── project.json        # Project metadata
        ├── workers/
        │   ├── U00001.json     # One document per worker
        │   └── ...
        ├── heartbeats/
        │   ├── U00001.json     # Rewritten in place by the worker
        │   └── ...
        └── events.jsonl        # Append-only log

Lock order is always fleet -> project, so nested acquisition never
deadlocks. The tasks lock is never held together with any other.
"""

import json
import logging
import os
import threading
from datetime import datetime
from pathlib import Path
from typing import Optional, Callable, Iterable, TypeVar

from ..errors import TaskNotFound, WorkerNotFound
from .events import Event, EventLog, EventType
from .locking import AdvisoryLock, DEFAULT_LOCK_TIMEOUT_SEC, DEFAULT_POLL_INTERVAL_SEC
from .records import TaskRecord, WorkerRecord, utcnow, to_iso, from_iso
from .store import (
    DurableStore,
    WorkerFactory,
    WORKER_SEQ_KEY,
    status_filter,
    matches_claim,
    apply_claim,
    apply_release,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

COLLECTION_VERSION = 1


def read_json(path: Path) -> Optional[dict]:
    """Read a JSON file, returning None if it doesn't exist or is unreadable"""
    if not path.exists():
        return None
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        logger.warning("Failed to read %s: %s", path, e)
        return None


def write_json_atomic(path: Path, data: dict) -> None:
    """
    Atomic write: temp file -> fsync -> rename

    The file is either completely written or not at all.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    temp_path = path.with_name(f"{path.name}.{os.getpid()}.{threading.get_ident()}.tmp")

    with open(temp_path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, default=str, ensure_ascii=False)
        f.flush()
        os.fsync(f.fileno())

    os.replace(temp_path, path)

    # Sync parent directory (not supported everywhere)
    try:
        dir_fd = os.open(path.parent, os.O_RDONLY)
        try:
            os.fsync(dir_fd)
        finally:
            os.close(dir_fd)
    except OSError:
        pass


class FileStore(DurableStore):
    """Durable store over JSON documents and lock files"""

    backend_name = "file"
    supports_slots = False

    def __init__(
        self,
        state_dir: "str | Path",
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT_SEC,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SEC,
    ):
        self.state_dir = Path(state_dir)
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.workers_dir = self.state_dir / "workers"
        self.workers_dir.mkdir(parents=True, exist_ok=True)
        self.heartbeats_dir = self.state_dir / "heartbeats"
        self.heartbeats_dir.mkdir(parents=True, exist_ok=True)

        self.tasks_path = self.state_dir / "tasks.json"
        self.project_path = self.state_dir / "project.json"
        self.event_log = EventLog(self.state_dir / "events.jsonl")

        self.lock_timeout = lock_timeout
        self.poll_interval = poll_interval

    @property
    def location(self) -> str:
        return str(self.state_dir)

    def _lock(self, path: Path) -> AdvisoryLock:
        return AdvisoryLock(
            path.with_name(path.name + ".lock"),
            timeout=self.lock_timeout,
            poll_interval=self.poll_interval,
        )

    # =========================================================================
    # Task collection
    # =========================================================================

    def _load_tasks(self) -> list[TaskRecord]:
        data = read_json(self.tasks_path) or {}
        return [TaskRecord.from_dict(t) for t in data.get("tasks", [])]

    def _save_tasks(self, tasks: list[TaskRecord]) -> None:
        write_json_atomic(self.tasks_path, {
            "version": COLLECTION_VERSION,
            "updated_at": to_iso(utcnow()),
            "tasks": [t.to_dict() for t in tasks],
        })

    def insert_tasks(self, tasks: list[TaskRecord]) -> list[TaskRecord]:
        with self._lock(self.tasks_path):
            existing = self._load_tasks()
            next_id = max((t.id for t in existing), default=0) + 1
            for offset, task in enumerate(tasks):
                task.id = next_id + offset
                if task.created_at is None:
                    task.created_at = utcnow()
            self._save_tasks(existing + list(tasks))
        return list(tasks)

    def get_task(self, task_id: int) -> Optional[TaskRecord]:
        # Whole-document reads are consistent: the file is replaced atomically
        for task in self._load_tasks():
            if task.id == task_id:
                return task
        return None

    def list_tasks(
        self,
        status: "Optional[str | Iterable[str]]" = None,
        task_type: Optional[str] = None,
        layer: Optional[int] = None,
        owner: Optional[str] = None,
        parent_id: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> list[TaskRecord]:
        statuses = status_filter(status)
        results = []
        for task in sorted(self._load_tasks(), key=lambda t: t.id):
            if statuses is not None and task.status not in statuses:
                continue
            if task_type is not None and task.task_type != task_type:
                continue
            if layer is not None and task.layer != layer:
                continue
            if owner is not None and task.owner != owner:
                continue
            if parent_id is not None and task.parent_id != parent_id:
                continue
            results.append(task)
            if limit is not None and len(results) >= limit:
                break
        return results

    def claim_task(
        self,
        worker_id: str,
        task_type: Optional[str] = None,
        layer: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Optional[TaskRecord]:
        with self._lock(self.tasks_path):
            tasks = self._load_tasks()
            candidates = [t for t in tasks if matches_claim(t, task_type, layer)]
            if not candidates:
                return None
            task = min(candidates, key=lambda t: t.id)
            apply_claim(task, worker_id, now or utcnow())
            self._save_tasks(tasks)
        return task

    def update_task(self, task_id: int, mutate: Callable[[TaskRecord], T]) -> TaskRecord:
        with self._lock(self.tasks_path):
            tasks = self._load_tasks()
            task = next((t for t in tasks if t.id == task_id), None)
            if task is None:
                raise TaskNotFound(task_id)
            mutate(task)
            self._save_tasks(tasks)
        return task

    def release_tasks(self, worker_id: str) -> list[TaskRecord]:
        with self._lock(self.tasks_path):
            tasks = self._load_tasks()
            released = [t for t in tasks if t.owner == worker_id and t.is_active]
            if not released:
                return []
            for task in released:
                apply_release(task)
            self._save_tasks(tasks)
        return released

    def task_counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for task in self._load_tasks():
            counts[task.status] = counts.get(task.status, 0) + 1
        return counts

    # =========================================================================
    # Workers
    # =========================================================================

    def _worker_path(self, worker_id: str) -> Path:
        return self.workers_dir / f"{worker_id}.json"

    def _heartbeat_path(self, worker_id: str) -> Path:
        return self.heartbeats_dir / f"{worker_id}.json"

    def _fleet_lock(self) -> AdvisoryLock:
        return self._lock(self.workers_dir / "fleet")

    def _read_worker(self, worker_id: str) -> Optional[WorkerRecord]:
        data = read_json(self._worker_path(worker_id))
        if data is None:
            return None
        worker = WorkerRecord.from_dict(data)

        # The heartbeat document is written more often than the worker doc
        beat = read_json(self._heartbeat_path(worker_id))
        if beat:
            beat_at = from_iso(beat.get("last_heartbeat"))
            if beat_at and (worker.last_heartbeat is None or beat_at > worker.last_heartbeat):
                worker.last_heartbeat = beat_at
                worker.stage = beat.get("stage", worker.stage)
        return worker

    def _write_heartbeat_doc(self, worker: WorkerRecord) -> None:
        write_json_atomic(self._heartbeat_path(worker.id), {
            "worker_id": worker.id,
            "last_heartbeat": to_iso(worker.last_heartbeat),
            "status": worker.status,
            "stage": worker.stage,
            "current_task_id": worker.current_task_id,
        })

    def allocate_worker(self, factory: WorkerFactory) -> WorkerRecord:
        with self._fleet_lock():
            existing = self.list_workers()
            with self._lock(self.project_path):
                meta = read_json(self.project_path) or {}
                last_seq = int(meta.get(WORKER_SEQ_KEY, 0))
                # Never reuse a sequence number, even if meta was lost
                for worker in existing:
                    last_seq = max(last_seq, _worker_seq(worker.id))

                worker = factory(existing, last_seq + 1)

                write_json_atomic(self._worker_path(worker.id), worker.to_dict())
                if worker.last_heartbeat is not None:
                    self._write_heartbeat_doc(worker)
                meta[WORKER_SEQ_KEY] = str(last_seq + 1)
                write_json_atomic(self.project_path, meta)
        return worker

    def get_worker(self, worker_id: str) -> Optional[WorkerRecord]:
        return self._read_worker(worker_id)

    def list_workers(
        self,
        status: "Optional[str | Iterable[str]]" = None,
        parent_id: Optional[str] = None,
    ) -> list[WorkerRecord]:
        statuses = status_filter(status)
        workers = []
        for path in sorted(self.workers_dir.glob("*.json")):
            worker = self._read_worker(path.stem)
            if worker is None:
                continue
            if statuses is not None and worker.status not in statuses:
                continue
            if parent_id is not None and worker.parent_id != parent_id:
                continue
            workers.append(worker)
        return sorted(workers, key=lambda w: (w.layer, w.id))

    def update_worker(self, worker_id: str, mutate: Callable[[WorkerRecord], T]) -> WorkerRecord:
        path = self._worker_path(worker_id)
        with self._lock(path):
            worker = self._read_worker(worker_id)
            if worker is None:
                raise WorkerNotFound(worker_id)
            mutate(worker)
            write_json_atomic(path, worker.to_dict())
        return worker

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
        def apply(worker: WorkerRecord) -> None:
            worker.last_heartbeat = timestamp
            if status is not None:
                worker.status = status
            if current_task_id is not None:
                worker.current_task_id = current_task_id
            if stage is not None:
                worker.stage = stage
            if tasks_completed is not None:
                worker.tasks_completed = tasks_completed
            if tasks_failed is not None:
                worker.tasks_failed = tasks_failed

        worker = self.update_worker(worker_id, apply)
        self._write_heartbeat_doc(worker)
        return worker

    # =========================================================================
    # Project metadata
    # =========================================================================

    def set_meta(self, key: str, value: str) -> None:
        with self._lock(self.project_path):
            meta = read_json(self.project_path) or {}
            meta[key] = str(value)
            write_json_atomic(self.project_path, meta)

    def get_meta(self, key: str) -> Optional[str]:
        return self.all_meta().get(key)

    def all_meta(self) -> dict[str, str]:
        return dict(read_json(self.project_path) or {})

    # =========================================================================
    # Events
    # =========================================================================

    def append_event(
        self,
        event_type: "str | EventType",
        worker_id: Optional[str] = None,
        task_id: Optional[int] = None,
        details: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> Event:
        return self.event_log.append(
            event_type,
            worker_id=worker_id,
            task_id=task_id,
            details=details,
            timestamp=timestamp,
        )

    def list_events(self, worker_id: Optional[str] = None, limit: Optional[int] = 50) -> list[Event]:
        return self.event_log.find_events(worker_id=worker_id, limit=limit)


def _worker_seq(worker_id: str) -> int:
    digits = "".join(ch for ch in worker_id if ch.isdigit())
    return int(digits) if digits else 0
