"""
Task Queue
==========

The shared task queue and its state machine, built on the durable store.

    pending -> processing -> task_completed
                          -> failed
    task_completed -> audit_in_progress -> audit_passed
                                        -> (audit_failed) -> pending | failed
    processing -> pending                  (release only)

Only pending and processing tasks are claimable or ownable. Every
transition is one atomic store update; pointing the owning worker at its
task is a separate second step, so readers tolerate the window where one
has happened and the other has not.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Callable

from ..errors import ContentionError, InvalidTransition, TaskNotFound, WorkerNotFound
from ..hierarchy import HierarchyPolicy
from ..state.events import EventType
from ..state.records import (
    TaskRecord,
    TaskStatus,
    WorkerRecord,
    WorkerStatus,
    ACTIVE_TASK_STATUSES,
    DONE_TASK_STATUSES,
    utcnow,
)
from ..state.store import DurableStore, create_store

logger = logging.getLogger(__name__)

AUDIT_TASK_TYPE = "task-audit"
AUDIT_MAX_RETRIES = 2

# Audit tasks carry at most this much of the audited output inline
AUDIT_CONTENT_LIMIT = 5000

# Subtask statuses that let a decomposed parent settle
SETTLED_TASK_STATUSES = (
    TaskStatus.TASK_COMPLETED.value,
    TaskStatus.AUDIT_PASSED.value,
    TaskStatus.FAILED.value,
)


@dataclass
class TaskStats:
    """Per-status counts from one snapshot"""
    total: int = 0
    pending: int = 0
    processing: int = 0
    done: int = 0
    failed: int = 0
    by_status: dict = field(default_factory=dict)

    @property
    def progress_percent(self) -> int:
        if self.total == 0:
            return 0
        return int(self.done * 100 / self.total + 0.5)

    @property
    def global_status(self) -> str:
        if self.total == 0:
            return "not_started"
        if self.pending == 0 and self.processing == 0:
            return "all_disposed" if self.failed > 0 else "completed"
        if self.processing > 0 or self.done > 0:
            return "in_progress"
        return "not_started"

    @classmethod
    def from_counts(cls, counts: dict) -> "TaskStats":
        return cls(
            total=sum(counts.values()),
            pending=counts.get(TaskStatus.PENDING.value, 0),
            processing=counts.get(TaskStatus.PROCESSING.value, 0),
            done=sum(counts.get(status, 0) for status in DONE_TASK_STATUSES),
            failed=counts.get(TaskStatus.FAILED.value, 0),
            by_status=dict(counts),
        )

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "pending": self.pending,
            "processing": self.processing,
            "done": self.done,
            "failed": self.failed,
            "progress_percent": self.progress_percent,
            "global_status": self.global_status,
            "by_status": dict(self.by_status),
        }


class TaskQueue:
    """
    Task store operations for workers and the supervisor.

    Features:
    - Atomic lowest-id claim, optionally filtered by type and layer
    - Audit loop with bounded retries for quality-gated tasks
    - Mega-task decomposition into subtasks
    - Release of everything a dead worker owned
    """

    def __init__(
        self,
        store: DurableStore,
        policy: Optional[HierarchyPolicy] = None,
        max_retries: int = 3,
        default_limit: int = 50,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.policy = policy or HierarchyPolicy()
        self.max_retries = max_retries
        self.default_limit = default_limit
        self.clock = clock

    # =========================================================================
    # Creation
    # =========================================================================

    def enqueue(
        self,
        task_type: str,
        payloads: list[str],
        layer: int = 0,
        title: Optional[str] = None,
        requires_audit: bool = False,
        params: Optional[dict] = None,
        parent_id: Optional[int] = None,
        max_retries: Optional[int] = None,
    ) -> list[int]:
        """Create one pending task per payload, returning the ids in order"""
        now = self.clock()
        records = [
            TaskRecord(
                id=0,
                task_type=task_type,
                title=title or _title_from(payload),
                description=payload,
                layer=layer,
                created_at=now,
                max_retries=self.max_retries if max_retries is None else max_retries,
                requires_audit=requires_audit,
                params=dict(params or {}),
                parent_id=parent_id,
            )
            for payload in payloads
        ]
        if not records:
            return []

        created = self.store.insert_tasks(records)
        for task in created:
            self.store.append_event(
                EventType.TASK_CREATED,
                task_id=task.id,
                details=f"{task.task_type} layer={task.layer}",
                timestamp=now,
            )
        logger.info("Enqueued %d %s task(s) on layer %d", len(created), task_type, layer)
        return [task.id for task in created]

    # =========================================================================
    # Claiming & completion
    # =========================================================================

    def claim_next(
        self,
        worker_id: str,
        task_type: Optional[str] = None,
        layer: Optional[int] = None,
    ) -> Optional[TaskRecord]:
        """
        Claim the lowest-id pending task.

        Returns None when nothing matches, when the store is contended, or
        when the worker already holds its maximum number of active tasks.
        """
        limit = self.policy.emergency_brake.max_tasks_per_worker
        try:
            if limit and len(self.store.active_tasks_for(worker_id)) >= limit:
                logger.warning("Worker %s already holds %d task(s), not claiming", worker_id, limit)
                return None

            now = self.clock()
            task = self.store.claim_task(worker_id, task_type=task_type, layer=layer, now=now)
        except ContentionError as e:
            logger.info("Claim by %s skipped: %s", worker_id, e)
            return None

        if task is None:
            return None

        self.store.append_event(EventType.TASK_CLAIMED, worker_id=worker_id, task_id=task.id, timestamp=now)
        logger.debug("Task %d claimed by %s", task.id, worker_id)

        def point_at_task(worker: WorkerRecord) -> None:
            worker.current_task_id = task.id
            worker.status = WorkerStatus.WORKING.value

        self._update_owner(worker_id, point_at_task)
        return task

    def complete(
        self,
        task_id: int,
        result_path: Optional[str] = None,
        worker_id: Optional[str] = None,
    ) -> TaskRecord:
        """Mark a processing task as completed"""
        now = self.clock()

        def apply(task: TaskRecord) -> None:
            if task.status != TaskStatus.PROCESSING.value:
                raise InvalidTransition(task.id, task.status, TaskStatus.TASK_COMPLETED.value)
            if worker_id is not None and task.owner != worker_id:
                raise InvalidTransition(
                    task.id, task.status, TaskStatus.TASK_COMPLETED.value,
                    reason=f"owned by {task.owner}, not {worker_id}",
                )
            task.status = TaskStatus.TASK_COMPLETED.value
            task.completed_at = now
            if result_path is not None:
                task.result_path = result_path

        task = self.store.update_task(task_id, apply)
        self.store.append_event(
            EventType.TASK_DONE,
            worker_id=task.owner,
            task_id=task.id,
            details=result_path,
            timestamp=now,
        )

        if task.owner:
            self._update_owner(task.owner, _finish_pointer(task.id, completed=True))

        if task.requires_audit and task.task_type != AUDIT_TASK_TYPE:
            return self.request_audit(task.id)
        self._roll_up(task)
        return task

    def fail(self, task_id: int, error_message: str, worker_id: Optional[str] = None) -> TaskRecord:
        """Move an active task to terminal failed"""
        now = self.clock()

        def apply(task: TaskRecord) -> None:
            if not task.is_active:
                raise InvalidTransition(task.id, task.status, TaskStatus.FAILED.value)
            if worker_id is not None and task.owner not in (None, worker_id):
                raise InvalidTransition(
                    task.id, task.status, TaskStatus.FAILED.value,
                    reason=f"owned by {task.owner}, not {worker_id}",
                )
            task.status = TaskStatus.FAILED.value
            task.last_error = error_message
            task.completed_at = now

        task = self.store.update_task(task_id, apply)
        self.store.append_event(
            EventType.TASK_FAILED,
            worker_id=task.owner,
            task_id=task.id,
            details=error_message,
            timestamp=now,
        )
        logger.warning("Task %d failed: %s", task.id, error_message)

        if task.owner:
            self._update_owner(task.owner, _finish_pointer(task.id, completed=False))
        self._roll_up(task)
        return task

    def release(self, worker_id: str) -> int:
        """Return every active task owned by a worker to pending"""
        released = self.store.release_tasks(worker_id)
        now = self.clock()
        for task in released:
            self.store.append_event(
                EventType.TASK_RELEASED,
                worker_id=worker_id,
                task_id=task.id,
                timestamp=now,
            )
        if released:
            logger.warning(
                "Released %d task(s) from %s: %s",
                len(released), worker_id, ", ".join(str(t.id) for t in released),
            )
        return len(released)

    # =========================================================================
    # Audit loop
    # =========================================================================

    def request_audit(self, task_id: int, output_content: Optional[str] = None) -> TaskRecord:
        """Move a completed task into audit and enqueue its review task"""
        now = self.clock()

        def apply(task: TaskRecord) -> None:
            if task.status != TaskStatus.TASK_COMPLETED.value:
                raise InvalidTransition(task.id, task.status, TaskStatus.AUDIT_IN_PROGRESS.value)
            if task.task_type == AUDIT_TASK_TYPE:
                raise InvalidTransition(
                    task.id, task.status, TaskStatus.AUDIT_IN_PROGRESS.value,
                    reason="audit tasks are not audited",
                )
            task.status = TaskStatus.AUDIT_IN_PROGRESS.value

        task = self.store.update_task(task_id, apply)

        params = {
            "original_task_id": task.id,
            "original_type": task.task_type,
            "original_title": task.title,
            "result_path": task.result_path,
        }
        if output_content is not None:
            params["output_content"] = output_content[:AUDIT_CONTENT_LIMIT]

        audit_ids = self.enqueue(
            AUDIT_TASK_TYPE,
            [f"Review the output of task #{task.id}"],
            layer=task.layer,
            title=f"Audit: {task.title}",
            params=params,
            max_retries=AUDIT_MAX_RETRIES,
        )
        self.store.append_event(
            EventType.AUDIT_REQUESTED,
            task_id=task.id,
            details=f"audit task {audit_ids[0]}",
            timestamp=now,
        )
        logger.info("Created audit task #%d for task #%d", audit_ids[0], task.id)
        return task

    def resolve_audit(self, task_id: int, passed: bool, reason: Optional[str] = None) -> TaskRecord:
        """
        Record an audit verdict.

        ``task_id`` may be the audited task or its ``task-audit`` task. A
        failed audit re-queues the task with ``retry_count + 1``, or fails it
        for good once the count exceeds ``max_retries``. Either way the open
        audit task is closed, and a verdict arriving through an audit task
        that was already closed is rejected.
        """
        verdict = TaskStatus.AUDIT_PASSED if passed else TaskStatus.AUDIT_FAILED
        target = self.store.get_task(task_id)
        if target is None:
            raise TaskNotFound(task_id)
        if target.task_type == AUDIT_TASK_TYPE:
            if not target.is_active:
                raise InvalidTransition(
                    target.id, target.status, verdict.value,
                    reason="this audit round is already resolved",
                )
            task_id = int(target.params.get("original_task_id", 0))

        now = self.clock()

        def apply(task: TaskRecord) -> None:
            if task.status != TaskStatus.AUDIT_IN_PROGRESS.value:
                raise InvalidTransition(task.id, task.status, verdict.value)
            if passed:
                task.status = TaskStatus.AUDIT_PASSED.value
                return
            # audit_failed is resolved in this same write
            task.retry_count += 1
            task.last_error = reason or "audit failed"
            if task.retry_count > task.max_retries:
                task.status = TaskStatus.FAILED.value
            else:
                task.status = TaskStatus.PENDING.value
                task.owner = None
                task.started_at = None
                task.completed_at = None

        task = self.store.update_task(task_id, apply)
        self.store.append_event(
            EventType.AUDIT_PASSED if passed else EventType.AUDIT_FAILED,
            task_id=task.id,
            details=reason,
            timestamp=now,
        )
        if passed:
            logger.info("Audit passed for task #%d", task.id)
        elif task.status == TaskStatus.FAILED.value:
            logger.warning("Task #%d failed audit %d time(s), giving up", task.id, task.retry_count)
        else:
            logger.info("Audit failed for task #%d, re-queued (retry %d)", task.id, task.retry_count)

        for audit in self.open_audits(task.id):
            self._close_audit(audit, verdict.value, now)

        if task.status in SETTLED_TASK_STATUSES:
            self._roll_up(task)
        return task

    def open_audits(self, task_id: int) -> list[TaskRecord]:
        """Unresolved audit tasks reviewing ``task_id``"""
        return [
            audit for audit in self.store.list_tasks(
                status=ACTIVE_TASK_STATUSES, task_type=AUDIT_TASK_TYPE,
            )
            if int(audit.params.get("original_task_id", 0)) == task_id
        ]

    def _close_audit(self, audit: TaskRecord, verdict: str, now: datetime) -> None:
        def apply(task: TaskRecord) -> None:
            if not task.is_active:
                raise InvalidTransition(task.id, task.status, TaskStatus.TASK_COMPLETED.value)
            task.status = TaskStatus.TASK_COMPLETED.value
            task.completed_at = now

        try:
            closed = self.store.update_task(audit.id, apply)
        except InvalidTransition:
            logger.debug("Audit task #%d was closed concurrently", audit.id)
            return

        self.store.append_event(
            EventType.TASK_DONE,
            worker_id=closed.owner,
            task_id=closed.id,
            details=f"{verdict} for task #{closed.params.get('original_task_id')}",
            timestamp=now,
        )
        if closed.owner:
            self._update_owner(closed.owner, _finish_pointer(closed.id, completed=True))

    def ready_for_audit(self) -> list[TaskRecord]:
        """Completed tasks that have not been sent to audit"""
        return [
            task for task in self.store.list_tasks(status=TaskStatus.TASK_COMPLETED.value)
            if task.task_type != AUDIT_TASK_TYPE
        ]

    # =========================================================================
    # Decomposition
    # =========================================================================

    def decompose(
        self,
        parent_id: int,
        payloads: list[str],
        task_type: Optional[str] = None,
    ) -> list[int]:
        """Split a mega-task into subtasks one layer down"""
        parent = self.store.get_task(parent_id)
        if parent is None:
            raise TaskNotFound(parent_id)
        if not parent.is_active or parent.is_decomposed:
            raise InvalidTransition(
                parent.id, parent.status, parent.status,
                reason="only an active, undecomposed task can be split",
            )

        child_ids = self.enqueue(
            task_type or parent.task_type,
            payloads,
            layer=parent.layer + 1,
            requires_audit=parent.requires_audit,
            parent_id=parent.id,
        )

        def link(task: TaskRecord) -> None:
            if task.is_decomposed:
                raise InvalidTransition(task.id, task.status, task.status, reason="already decomposed")
            task.child_ids = list(child_ids)

        self.store.update_task(parent.id, link)
        self.store.append_event(
            EventType.TASK_DECOMPOSED,
            worker_id=parent.owner,
            task_id=parent.id,
            details=",".join(str(i) for i in child_ids),
            timestamp=self.clock(),
        )
        return child_ids

    def subtasks(self, parent_id: int) -> list[TaskRecord]:
        return self.store.list_tasks(parent_id=parent_id)

    def subtasks_complete(self, parent_id: int) -> bool:
        subtasks = self.subtasks(parent_id)
        if not subtasks:
            return False
        return all(task.status in DONE_TASK_STATUSES for task in subtasks)

    def subtask_outputs(self, parent_id: int) -> list[str]:
        return [
            task.result_path for task in self.subtasks(parent_id)
            if task.status in DONE_TASK_STATUSES and task.result_path
        ]

    def _roll_up(self, task: TaskRecord) -> None:
        """Settle a decomposed parent once none of its subtasks can change"""
        if task.parent_id is None:
            return
        children = self.subtasks(task.parent_id)
        if any(child.status not in SETTLED_TASK_STATUSES for child in children):
            return

        failed = [child.id for child in children if child.status == TaskStatus.FAILED.value]
        outputs = [
            child.result_path for child in children
            if child.status in DONE_TASK_STATUSES and child.result_path
        ]
        now = self.clock()

        def apply(parent: TaskRecord) -> None:
            target = TaskStatus.FAILED if failed else TaskStatus.TASK_COMPLETED
            if not parent.is_active:
                raise InvalidTransition(parent.id, parent.status, target.value)
            parent.status = target.value
            parent.completed_at = now
            parent.params = dict(parent.params, subtask_outputs=outputs)
            if failed:
                parent.last_error = "subtask(s) failed: " + ", ".join(str(i) for i in failed)

        try:
            parent = self.store.update_task(task.parent_id, apply)
        except InvalidTransition:
            logger.debug("Parent task #%d was already settled", task.parent_id)
            return

        self.store.append_event(
            EventType.TASK_FAILED if failed else EventType.TASK_DONE,
            worker_id=parent.owner,
            task_id=parent.id,
            details=f"rolled up from {len(children)} subtask(s)",
            timestamp=now,
        )
        logger.info("Task #%d settled as %s from its subtasks", parent.id, parent.status)

        if parent.owner:
            self._update_owner(parent.owner, _finish_pointer(parent.id, completed=not failed))
        if not failed and parent.requires_audit:
            self.request_audit(parent.id)
        else:
            self._roll_up(parent)

    # =========================================================================
    # Queries
    # =========================================================================

    def get(self, task_id: int) -> Optional[TaskRecord]:
        return self.store.get_task(task_id)

    def list(
        self,
        status: Optional[str] = None,
        task_type: Optional[str] = None,
        layer: Optional[int] = None,
        owner: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[TaskRecord]:
        return self.store.list_tasks(
            status=status,
            task_type=task_type,
            layer=layer,
            owner=owner,
            limit=self.default_limit if limit is None else limit,
        )

    def stats(self) -> TaskStats:
        return TaskStats.from_counts(self.store.task_counts())

    def by_status(self) -> dict[str, int]:
        return dict(self.store.task_counts())

    def by_owner(self) -> dict[str, dict[str, int]]:
        """Per-owner, per-status counts of owned tasks"""
        result: dict[str, dict[str, int]] = {}
        for task in self.store.list_tasks():
            if task.owner is None:
                continue
            counts = result.setdefault(task.owner, {})
            counts[task.status] = counts.get(task.status, 0) + 1
        return result

    def has_outstanding_work(self) -> bool:
        stats = self.stats()
        return stats.pending + stats.processing > 0

    # =========================================================================
    # Internals
    # =========================================================================

    def _update_owner(self, worker_id: str, mutate: Callable[[WorkerRecord], None]) -> None:
        """Second step of a transition; the task write already happened"""
        try:
            self.store.update_worker(worker_id, mutate)
        except WorkerNotFound:
            logger.debug("Owner %s is not a registered worker", worker_id)
        except ContentionError as e:
            logger.warning("Could not update owner %s: %s", worker_id, e)


def _finish_pointer(task_id: int, completed: bool) -> Callable[[WorkerRecord], None]:
    def apply(worker: WorkerRecord) -> None:
        if worker.current_task_id == task_id:
            worker.current_task_id = None
        if completed:
            worker.tasks_completed += 1
        else:
            worker.tasks_failed += 1
    return apply


def _title_from(payload: str, width: int = 60) -> str:
    first_line = payload.strip().splitlines()[0] if payload.strip() else ""
    return first_line if len(first_line) <= width else first_line[: width - 3] + "..."


def create_task_queue(config: dict, store: Optional[DurableStore] = None) -> TaskQueue:
    """Create task queue from config"""
    queue_config = config.get("queues", {})
    return TaskQueue(
        store or create_store(config),
        policy=HierarchyPolicy.from_config(config),
        max_retries=int(queue_config.get("max_retries", 3)),
        default_limit=int(queue_config.get("default_limit", 50)),
    )
