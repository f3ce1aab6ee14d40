"""
SQLite State Database
=====================

Transactional embedded-database store. Every primitive is one short
transaction opened with ``BEGIN IMMEDIATE``, so writers serialize on the
database write lock instead of failing on upgrade, and SQLite's
``busy_timeout`` bounds how long anyone waits.

This provides:
- Single-statement atomic claim (UPDATE ... RETURNING)
- Capacity slot tracking
- Indexed queries for the dashboard
"""

import json
import logging
from dataclasses import asdict
from datetime import datetime
from pathlib import Path
from typing import Optional, Callable, Iterable, TypeVar

from sqlalchemy import (
    create_engine,
    Column,
    String,
    Integer,
    Text,
    DateTime,
    Boolean,
    Index,
    event,
    select,
    update,
    func,
)
from sqlalchemy.orm import (
    declarative_base,
    sessionmaker,
    Session,
)

from ..errors import TaskNotFound, WorkerNotFound
from .events import Event, EventType, event_type_value
from .records import (
    TaskRecord,
    WorkerRecord,
    SlotUsage,
    TaskStatus,
    ACTIVE_TASK_STATUSES,
    utcnow,
    ensure_utc,
)
from .store import (
    DurableStore,
    WorkerFactory,
    WORKER_SEQ_KEY,
    status_filter,
    apply_release,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

BUSY_TIMEOUT_MS = 5000

Base = declarative_base()


class TaskRow(Base):
    """Shared task queue"""
    __tablename__ = "tasks"
    __table_args__ = (
        Index("ix_task_status_type_layer", "status", "task_type", "layer"),
        Index("ix_task_owner_status", "owner", "status"),
        # Ids are never reused, even after the highest row is removed by hand
        {"sqlite_autoincrement": True},
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    task_type = Column(String(64), nullable=False)
    title = Column(Text, default="")
    description = Column(Text, default="")
    layer = Column(Integer, default=0)
    status = Column(String(32), default=TaskStatus.PENDING.value, nullable=False)

    owner = Column(String(32))

    created_at = Column(DateTime)
    started_at = Column(DateTime)
    completed_at = Column(DateTime)

    retry_count = Column(Integer, default=0)
    max_retries = Column(Integer, default=3)
    last_error = Column(Text)

    result_path = Column(Text)
    requires_audit = Column(Boolean, default=False)
    params = Column(Text)  # JSON object

    parent_id = Column(Integer, index=True)
    child_ids = Column(Text)  # JSON array
    decomposed = Column(Boolean, default=False, nullable=False)


class WorkerRow(Base):
    """Worker fleet"""
    __tablename__ = "workers"

    id = Column(String(32), primary_key=True)
    role = Column(String(64), nullable=False)
    layer = Column(Integer, nullable=False, index=True)
    parent_id = Column(String(32), index=True)
    sibling_index = Column(Integer, default=1)

    folder_name = Column(Text)
    folder_path = Column(Text)

    status = Column(String(32), nullable=False, index=True)
    last_heartbeat = Column(DateTime)
    stage = Column(Text)

    tasks_completed = Column(Integer, default=0)
    tasks_failed = Column(Integer, default=0)
    current_task_id = Column(Integer)
    slot_id = Column(Integer)
    last_error = Column(Text)

    created_at = Column(DateTime)
    started_at = Column(DateTime)
    completed_at = Column(DateTime)


class SlotRow(Base):
    """Capacity slots"""
    __tablename__ = "slots"

    slot_id = Column(Integer, primary_key=True)
    worker_id = Column(String(32))
    assigned_at = Column(DateTime)


class ProjectMeta(Base):
    """Key/value project metadata"""
    __tablename__ = "project_meta"

    key = Column(String(64), primary_key=True)
    value = Column(Text)


class EventRow(Base):
    """Append-only event log"""
    __tablename__ = "events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    timestamp = Column(DateTime, nullable=False)
    event_type = Column(String(64), nullable=False, index=True)
    worker_id = Column(String(32), index=True)
    task_id = Column(Integer)
    details = Column(Text)


# =============================================================================
# Row <-> record conversion
# =============================================================================

def _columns(row) -> dict:
    return {c.key: getattr(row, c.key) for c in row.__table__.columns}


def _task_from_values(values) -> TaskRecord:
    values = dict(values)
    values.pop("decomposed", None)
    values["params"] = json.loads(values["params"]) if values.get("params") else {}
    values["child_ids"] = json.loads(values["child_ids"]) if values.get("child_ids") else []
    values["requires_audit"] = bool(values.get("requires_audit"))
    for key in ("created_at", "started_at", "completed_at"):
        values[key] = ensure_utc(values.get(key))
    return TaskRecord(**values)


def _task_to_row(task: TaskRecord, row: TaskRow) -> TaskRow:
    for key, value in _task_values(task).items():
        setattr(row, key, value)
    return row


def _task_values(task: TaskRecord) -> dict:
    return {
        "task_type": task.task_type,
        "title": task.title,
        "description": task.description,
        "layer": task.layer,
        "status": task.status,
        "owner": task.owner,
        "created_at": task.created_at,
        "started_at": task.started_at,
        "completed_at": task.completed_at,
        "retry_count": task.retry_count,
        "max_retries": task.max_retries,
        "last_error": task.last_error,
        "result_path": task.result_path,
        "requires_audit": task.requires_audit,
        "params": json.dumps(task.params or {}),
        "parent_id": task.parent_id,
        "child_ids": json.dumps(list(task.child_ids or [])),
        "decomposed": bool(task.child_ids),
    }


def _worker_from_row(row: WorkerRow) -> WorkerRecord:
    values = _columns(row)
    for key in ("last_heartbeat", "created_at", "started_at", "completed_at"):
        values[key] = ensure_utc(values.get(key))
    return WorkerRecord(**values)


def _worker_to_row(worker: WorkerRecord, row: WorkerRow) -> WorkerRow:
    for key, value in asdict(worker).items():
        setattr(row, key, value)
    return row


def _event_from_row(row: EventRow) -> Event:
    return Event(
        id=row.id,
        event_type=row.event_type,
        timestamp=ensure_utc(row.timestamp),
        worker_id=row.worker_id,
        task_id=row.task_id,
        details=row.details,
    )


class DatabaseStore(DurableStore):
    """
    SQLite database store.

    Safe to share between threads and processes: every call opens its own
    session and its own IMMEDIATE transaction.
    """

    backend_name = "sqlite"
    supports_slots = True

    def __init__(self, db_path: "str | Path", busy_timeout_ms: int = BUSY_TIMEOUT_MS):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        db_url = f"sqlite:///{self.db_path}"

        self.engine = create_engine(
            db_url,
            echo=False,
            connect_args={
                "check_same_thread": False,
                "timeout": busy_timeout_ms / 1000.0,
            },
        )

        # Take transaction control away from pysqlite so BEGIN IMMEDIATE sticks
        @event.listens_for(self.engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.close()

        @event.listens_for(self.engine, "begin")
        def begin_immediate(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

        Base.metadata.create_all(self.engine)

        self.Session = sessionmaker(bind=self.engine, expire_on_commit=False)

    @property
    def location(self) -> str:
        return str(self.db_path)

    def get_session(self) -> Session:
        """Get a new database session"""
        return self.Session()

    def close(self) -> None:
        self.engine.dispose()

    # =========================================================================
    # Task Operations
    # =========================================================================

    def insert_tasks(self, tasks: list[TaskRecord]) -> list[TaskRecord]:
        with self.get_session() as session, session.begin():
            rows = []
            for task in tasks:
                if task.created_at is None:
                    task.created_at = utcnow()
                row = _task_to_row(task, TaskRow())
                session.add(row)
                rows.append(row)
            # Flush in list order so ids ascend with the payloads
            session.flush()
            for task, row in zip(tasks, rows):
                task.id = row.id
        return list(tasks)

    def get_task(self, task_id: int) -> Optional[TaskRecord]:
        """Get a task by ID"""
        with self.get_session() as session, session.begin():
            row = session.get(TaskRow, task_id)
            return _task_from_values(_columns(row)) if row else None

    def list_tasks(
        self,
        status: "Optional[str | Iterable[str]]" = None,
        task_type: Optional[str] = None,
        layer: Optional[int] = None,
        owner: Optional[str] = None,
        parent_id: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> list[TaskRecord]:
        query = select(TaskRow)
        statuses = status_filter(status)
        if statuses is not None:
            query = query.where(TaskRow.status.in_(statuses))
        if task_type is not None:
            query = query.where(TaskRow.task_type == task_type)
        if layer is not None:
            query = query.where(TaskRow.layer == layer)
        if owner is not None:
            query = query.where(TaskRow.owner == owner)
        if parent_id is not None:
            query = query.where(TaskRow.parent_id == parent_id)
        query = query.order_by(TaskRow.id)
        if limit is not None:
            query = query.limit(limit)

        with self.get_session() as session, session.begin():
            return [_task_from_values(_columns(row)) for row in session.scalars(query)]

    def claim_task(
        self,
        worker_id: str,
        task_type: Optional[str] = None,
        layer: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Optional[TaskRecord]:
        tasks = TaskRow.__table__
        # Aliased so the subquery is not correlated to the UPDATE target
        pending = tasks.alias("pending")

        candidate = (
            select(pending.c.id)
            .where(pending.c.status == TaskStatus.PENDING.value)
            .where(pending.c.decomposed.is_(False))
        )
        if task_type is not None:
            candidate = candidate.where(pending.c.task_type == task_type)
        if layer is not None:
            candidate = candidate.where(pending.c.layer == layer)
        candidate = candidate.order_by(pending.c.id).limit(1)

        stmt = (
            update(tasks)
            .where(tasks.c.id == candidate.scalar_subquery())
            .where(tasks.c.status == TaskStatus.PENDING.value)
            .values(
                status=TaskStatus.PROCESSING.value,
                owner=worker_id,
                started_at=now or utcnow(),
            )
            .returning(*tasks.c)
        )

        with self.get_session() as session, session.begin():
            row = session.execute(stmt).mappings().first()
            return _task_from_values(row) if row else None

    def update_task(self, task_id: int, mutate: Callable[[TaskRecord], T]) -> TaskRecord:
        with self.get_session() as session, session.begin():
            row = session.get(TaskRow, task_id)
            if row is None:
                raise TaskNotFound(task_id)
            task = _task_from_values(_columns(row))
            mutate(task)
            _task_to_row(task, row)
        return task

    def release_tasks(self, worker_id: str) -> list[TaskRecord]:
        with self.get_session() as session, session.begin():
            rows = session.scalars(
                select(TaskRow)
                .where(TaskRow.owner == worker_id)
                .where(TaskRow.status.in_(ACTIVE_TASK_STATUSES))
                .order_by(TaskRow.id)
            ).all()
            released = []
            for row in rows:
                task = _task_from_values(_columns(row))
                apply_release(task)
                _task_to_row(task, row)
                released.append(task)
        return released

    def task_counts(self) -> dict[str, int]:
        with self.get_session() as session, session.begin():
            rows = session.execute(
                select(TaskRow.status, func.count()).group_by(TaskRow.status)
            ).all()
        return {status: count for status, count in rows}

    # =========================================================================
    # Worker Operations
    # =========================================================================

    def allocate_worker(self, factory: WorkerFactory) -> WorkerRecord:
        with self.get_session() as session, session.begin():
            existing = [
                _worker_from_row(row)
                for row in session.scalars(select(WorkerRow).order_by(WorkerRow.layer, WorkerRow.id))
            ]
            meta = session.get(ProjectMeta, WORKER_SEQ_KEY)
            last_seq = int(meta.value) if meta and meta.value else 0

            worker = factory(existing, last_seq + 1)

            session.add(_worker_to_row(worker, WorkerRow()))
            if meta is None:
                session.add(ProjectMeta(key=WORKER_SEQ_KEY, value=str(last_seq + 1)))
            else:
                meta.value = str(last_seq + 1)
        return worker

    def get_worker(self, worker_id: str) -> Optional[WorkerRecord]:
        """Get a worker by ID"""
        with self.get_session() as session, session.begin():
            row = session.get(WorkerRow, worker_id)
            return _worker_from_row(row) if row else None

    def list_workers(
        self,
        status: "Optional[str | Iterable[str]]" = None,
        parent_id: Optional[str] = None,
    ) -> list[WorkerRecord]:
        query = select(WorkerRow)
        statuses = status_filter(status)
        if statuses is not None:
            query = query.where(WorkerRow.status.in_(statuses))
        if parent_id is not None:
            query = query.where(WorkerRow.parent_id == parent_id)
        query = query.order_by(WorkerRow.layer, WorkerRow.id)

        with self.get_session() as session, session.begin():
            return [_worker_from_row(row) for row in session.scalars(query)]

    def update_worker(self, worker_id: str, mutate: Callable[[WorkerRecord], T]) -> WorkerRecord:
        with self.get_session() as session, session.begin():
            row = session.get(WorkerRow, worker_id)
            if row is None:
                raise WorkerNotFound(worker_id)
            worker = _worker_from_row(row)
            mutate(worker)
            _worker_to_row(worker, row)
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

        return self.update_worker(worker_id, apply)

    # =========================================================================
    # Slot Operations
    # =========================================================================

    def init_slots(self, count: int) -> None:
        """Create slots 1..count; existing slots keep their assignment"""
        with self.get_session() as session, session.begin():
            existing = set(session.scalars(select(SlotRow.slot_id)))
            for slot_id in range(1, count + 1):
                if slot_id not in existing:
                    session.add(SlotRow(slot_id=slot_id))

    def assign_slot(self, worker_id: str, now: Optional[datetime] = None) -> Optional[int]:
        """Give the lowest free slot to a worker, None when all are taken"""
        with self.get_session() as session, session.begin():
            held = session.scalars(select(SlotRow).where(SlotRow.worker_id == worker_id)).first()
            if held is not None:
                return held.slot_id

            slot = session.scalars(
                select(SlotRow).where(SlotRow.worker_id.is_(None)).order_by(SlotRow.slot_id).limit(1)
            ).first()
            if slot is None:
                return None
            slot.worker_id = worker_id
            slot.assigned_at = now or utcnow()

            worker = session.get(WorkerRow, worker_id)
            if worker is not None:
                worker.slot_id = slot.slot_id
            return slot.slot_id

    def release_slot(self, slot_id: int) -> Optional[str]:
        """Free a slot, returning the worker that held it"""
        with self.get_session() as session, session.begin():
            slot = session.get(SlotRow, slot_id)
            if slot is None or slot.worker_id is None:
                return None
            worker_id = slot.worker_id
            slot.worker_id = None
            slot.assigned_at = None

            worker = session.get(WorkerRow, worker_id)
            if worker is not None and worker.slot_id == slot_id:
                worker.slot_id = None
            return worker_id

    def slot_usage(self) -> SlotUsage:
        with self.get_session() as session, session.begin():
            total = session.scalar(select(func.count()).select_from(SlotRow)) or 0
            used = session.scalar(
                select(func.count()).select_from(SlotRow).where(SlotRow.worker_id.is_not(None))
            ) or 0
        return SlotUsage(used=used, total=total)

    # =========================================================================
    # Project Metadata
    # =========================================================================

    def set_meta(self, key: str, value: str) -> None:
        with self.get_session() as session, session.begin():
            row = session.get(ProjectMeta, key)
            if row is None:
                session.add(ProjectMeta(key=key, value=str(value)))
            else:
                row.value = str(value)

    def get_meta(self, key: str) -> Optional[str]:
        with self.get_session() as session, session.begin():
            row = session.get(ProjectMeta, key)
            return row.value if row else None

    def all_meta(self) -> dict[str, str]:
        with self.get_session() as session, session.begin():
            return {row.key: row.value for row in session.scalars(select(ProjectMeta))}

    # =========================================================================
    # Event Log
    # =========================================================================

    def append_event(
        self,
        event_type: "str | EventType",
        worker_id: Optional[str] = None,
        task_id: Optional[int] = None,
        details: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> Event:
        with self.get_session() as session, session.begin():
            row = EventRow(
                event_type=event_type_value(event_type),
                timestamp=timestamp or utcnow(),
                worker_id=worker_id,
                task_id=task_id,
                details=details,
            )
            session.add(row)
            session.flush()
            return _event_from_row(row)

    def list_events(self, worker_id: Optional[str] = None, limit: Optional[int] = 50) -> list[Event]:
        query = select(EventRow)
        if worker_id:
            query = query.where(EventRow.worker_id == worker_id)
        query = query.order_by(EventRow.id.desc())
        if limit is not None:
            query = query.limit(limit)

        with self.get_session() as session, session.begin():
            return [_event_from_row(row) for row in session.scalars(query)]
