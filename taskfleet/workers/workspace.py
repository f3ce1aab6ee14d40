"""
Worker Workspaces
=================

Every provisioned worker gets its own directory under ``workers/``:

    workers/{role}_L{layer}_S{sibling}_{worker_id}/
        ├── worker.json      # Identity and config, including the store location
        ├── heartbeat.json   # Rewritten in place on every heartbeat
        ├── output/          # Task results
        └── finished.json    # One-shot sentinel, written when work ran out

The launched session only needs the workspace path: ``worker.json`` tells
it everything else.
"""

import json
import logging
import os
from pathlib import Path
from typing import Optional

from ..state.file_store import read_json, write_json_atomic
from ..state.records import WorkerRecord, utcnow, to_iso

logger = logging.getLogger(__name__)

WORKER_FILE = "worker.json"
HEARTBEAT_FILE = "heartbeat.json"
FINISHED_FILE = "finished.json"
OUTPUT_DIR = "output"


def folder_name_for(role: str, layer: int, sibling_index: int, worker_id: str) -> str:
    return f"{role}_L{layer}_S{sibling_index:02d}_{worker_id}"


class WorkerWorkspace:
    """Filesystem area owned by one worker"""

    def __init__(self, path: "str | Path"):
        self.path = Path(path)

    @property
    def worker_file(self) -> Path:
        return self.path / WORKER_FILE

    @property
    def heartbeat_file(self) -> Path:
        return self.path / HEARTBEAT_FILE

    @property
    def finished_file(self) -> Path:
        return self.path / FINISHED_FILE

    @property
    def output_dir(self) -> Path:
        return self.path / OUTPUT_DIR

    def create(self, worker: WorkerRecord, project_root: str, store_backend: str, store_location: str) -> None:
        """Lay out the directory and write the worker's identity"""
        self.output_dir.mkdir(parents=True, exist_ok=True)
        write_json_atomic(self.worker_file, {
            "worker_id": worker.id,
            "role": worker.role,
            "layer": worker.layer,
            "parent_id": worker.parent_id,
            "sibling_index": worker.sibling_index,
            "project_root": project_root,
            "store": {
                "backend": store_backend,
                "location": store_location,
            },
            "output_dir": str(self.output_dir),
            "created_at": to_iso(worker.created_at),
        })
        self.write_heartbeat(worker)

    def identity(self) -> Optional[dict]:
        return read_json(self.worker_file)

    def write_heartbeat(self, worker: WorkerRecord) -> None:
        write_json_atomic(self.heartbeat_file, {
            "worker_id": worker.id,
            "status": worker.status,
            "last_heartbeat": to_iso(worker.last_heartbeat),
            "stage": worker.stage,
            "current_task_id": worker.current_task_id,
            "tasks_completed": worker.tasks_completed,
            "tasks_failed": worker.tasks_failed,
        })

    # =========================================================================
    # Finished sentinel
    # =========================================================================

    def is_finished(self) -> bool:
        return self.finished_file.exists()

    def finished_info(self) -> Optional[dict]:
        return read_json(self.finished_file)

    def mark_finished(self, worker_id: str, reason: str, extra: Optional[dict] = None) -> bool:
        """
        Write the finished sentinel.

        Returns False if it already exists; the first writer wins.
        """
        self.path.mkdir(parents=True, exist_ok=True)
        payload = {
            "worker_id": worker_id,
            "reason": reason,
            "finished_at": to_iso(utcnow()),
        }
        payload.update(extra or {})

        try:
            fd = os.open(self.finished_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            logger.debug("Finished sentinel already present for %s", worker_id)
            return False

        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        return True
