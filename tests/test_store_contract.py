"""Behaviour every DurableStore backend must share"""

import threading
from datetime import timedelta

import pytest

from taskfleet.errors import TaskNotFound, WorkerNotFound, ValidationError, UnsupportedOperation
from taskfleet.state.file_store import FileStore
from taskfleet.state.records import TaskRecord, WorkerRecord, TaskStatus, utcnow
from taskfleet.state.store import WORKER_SEQ_KEY


def make_tasks(*specs):
    return [
        TaskRecord(id=0, task_type=task_type, title=f"task {n}", description=f"payload {n}", layer=layer)
        for n, (task_type, layer) in enumerate(specs)
    ]


def new_worker(existing, seq, layer=0, parent_id=None):
    return WorkerRecord(
        id=f"U{seq:05d}",
        role="ceo" if layer == 0 else "manager",
        layer=layer,
        parent_id=parent_id,
        last_heartbeat=utcnow(),
        created_at=utcnow(),
    )


# =============================================================================
# Tasks
# =============================================================================

def test_insert_assigns_ascending_ids(store):
    first = store.insert_tasks(make_tasks(("build", 0), ("build", 0)))
    second = store.insert_tasks(make_tasks(("lint", 1)))

    assert [t.id for t in first] == [1, 2]
    assert [t.id for t in second] == [3]

    task = store.get_task(3)
    assert task.task_type == "lint"
    assert task.layer == 1
    assert task.status == TaskStatus.PENDING.value
    assert task.created_at is not None
    assert store.get_task(99) is None


def test_list_tasks_filters(store):
    store.insert_tasks(make_tasks(("build", 0), ("lint", 0), ("build", 1)))

    assert [t.id for t in store.list_tasks()] == [1, 2, 3]
    assert [t.id for t in store.list_tasks(task_type="build")] == [1, 3]
    assert [t.id for t in store.list_tasks(layer=1)] == [3]
    assert [t.id for t in store.list_tasks(limit=2)] == [1, 2]
    assert [t.id for t in store.list_tasks(status=["pending", "failed"])] == [1, 2, 3]
    assert store.list_tasks(status="processing") == []


def test_claim_takes_lowest_matching_id(store):
    store.insert_tasks(make_tasks(("lint", 0), ("build", 0), ("build", 1), ("build", 0)))
    now = utcnow()

    task = store.claim_task("U00001", task_type="build", layer=0, now=now)
    assert task.id == 2
    assert task.status == TaskStatus.PROCESSING.value
    assert task.owner == "U00001"
    assert task.started_at is not None

    stored = store.get_task(2)
    assert stored.owner == "U00001"
    assert stored.status == TaskStatus.PROCESSING.value

    assert store.claim_task("U00002", task_type="build", layer=0).id == 4
    assert store.claim_task("U00003", task_type="build", layer=0) is None
    assert store.claim_task("U00003").id == 1


def test_claim_skips_decomposed_tasks(store):
    store.insert_tasks(make_tasks(("plan", 0), ("plan", 0)))

    def split(task):
        task.child_ids = [10, 11]

    store.update_task(1, split)
    assert store.claim_task("U00001").id == 2
    assert store.claim_task("U00001") is None


def test_update_task_is_all_or_nothing(store):
    store.insert_tasks(make_tasks(("build", 0)))

    def broken(task):
        task.status = TaskStatus.FAILED.value
        raise ValidationError("rejected")

    with pytest.raises(ValidationError):
        store.update_task(1, broken)
    assert store.get_task(1).status == TaskStatus.PENDING.value

    with pytest.raises(TaskNotFound):
        store.update_task(42, lambda task: None)


def test_release_reverts_only_active_owned_tasks(store):
    store.insert_tasks(make_tasks(("build", 0), ("build", 0), ("build", 0)))
    store.claim_task("U00001")
    store.claim_task("U00001")
    store.claim_task("U00002")

    def finish(task):
        task.status = TaskStatus.TASK_COMPLETED.value

    store.update_task(2, finish)

    released = store.release_tasks("U00001")
    assert [t.id for t in released] == [1]

    task = store.get_task(1)
    assert task.status == TaskStatus.PENDING.value
    assert task.owner is None
    assert task.started_at is None
    assert store.get_task(2).status == TaskStatus.TASK_COMPLETED.value
    assert store.get_task(3).owner == "U00002"
    assert store.release_tasks("U00009") == []


def test_task_counts(store):
    store.insert_tasks(make_tasks(("build", 0), ("build", 0), ("build", 0)))
    store.claim_task("U00001")

    assert store.task_counts() == {"pending": 2, "processing": 1}


def test_params_and_children_survive_round_trip(store):
    task = TaskRecord(id=0, task_type="build", params={"target": "docs", "jobs": 4}, parent_id=7)
    store.insert_tasks([task])

    loaded = store.get_task(1)
    assert loaded.params == {"target": "docs", "jobs": 4}
    assert loaded.parent_id == 7
    assert loaded.child_ids == []
    assert [t.id for t in store.list_tasks(parent_id=7)] == [1]


def test_concurrent_claims_never_share_a_task(make_store):
    setup = make_store()
    setup.insert_tasks(make_tasks(("build", 0)))

    # One handle per thread, as separate processes would have
    handles = [make_store() for _ in range(10)]
    barrier = threading.Barrier(len(handles))
    results = [None] * len(handles)

    def claim(index):
        barrier.wait()
        results[index] = handles[index].claim_task(f"U{index:05d}")

    threads = [threading.Thread(target=claim, args=(i,)) for i in range(len(handles))]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    winners = [r for r in results if r is not None]
    assert len(winners) == 1
    assert setup.get_task(1).owner == winners[0].owner


def test_concurrent_claims_split_a_batch(make_store):
    setup = make_store()
    setup.insert_tasks(make_tasks(*[("build", 0)] * 20))

    handles = [make_store() for _ in range(5)]
    claimed = [[] for _ in handles]

    def drain(index):
        while True:
            task = handles[index].claim_task(f"U{index:05d}")
            if task is None:
                return
            claimed[index].append(task.id)

    threads = [threading.Thread(target=drain, args=(i,)) for i in range(len(handles))]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    all_ids = sorted(i for ids in claimed for i in ids)
    assert all_ids == list(range(1, 21))


# =============================================================================
# Workers
# =============================================================================

def test_allocate_worker_issues_sequence_numbers(store):
    first = store.allocate_worker(new_worker)
    second = store.allocate_worker(lambda existing, seq: new_worker(existing, seq, layer=1, parent_id="U00001"))

    assert first.id == "U00001"
    assert second.id == "U00002"
    assert store.get_meta(WORKER_SEQ_KEY) == "2"
    assert [w.id for w in store.list_workers()] == ["U00001", "U00002"]
    assert [w.id for w in store.list_workers(parent_id="U00001")] == ["U00002"]


def test_rejected_allocation_consumes_nothing(store):
    store.allocate_worker(new_worker)

    def reject(existing, seq):
        assert [w.id for w in existing] == ["U00001"]
        raise ValidationError("no room")

    with pytest.raises(ValidationError):
        store.allocate_worker(reject)

    assert store.allocate_worker(new_worker).id == "U00002"
    assert len(store.list_workers()) == 2


def test_update_worker_and_heartbeat(store):
    store.allocate_worker(new_worker)
    later = utcnow() + timedelta(seconds=30)

    worker = store.record_heartbeat("U00001", later, status="working", current_task_id=3, stage="build")
    assert worker.status == "working"
    assert worker.current_task_id == 3

    loaded = store.get_worker("U00001")
    assert loaded.last_heartbeat == later
    assert loaded.stage == "build"
    assert loaded.status == "working"

    def bump(w):
        w.tasks_completed += 1

    assert store.update_worker("U00001", bump).tasks_completed == 1
    assert [w.id for w in store.list_workers(status="working")] == ["U00001"]

    with pytest.raises(WorkerNotFound):
        store.update_worker("U99999", bump)
    assert store.get_worker("U99999") is None


# =============================================================================
# Metadata & events
# =============================================================================

def test_meta(store):
    assert store.get_meta("name") is None
    store.set_meta("name", "demo")
    store.set_meta("max_slots", 4)

    assert store.get_meta("name") == "demo"
    assert store.all_meta()["max_slots"] == "4"


def test_events_newest_first(store):
    store.append_event("task_created", task_id=1)
    store.append_event("task_claimed", worker_id="U00001", task_id=1)
    store.append_event("task_done", worker_id="U00001", task_id=1, details="out.txt")

    events = store.list_events()
    assert [e.event_type for e in events] == ["task_done", "task_claimed", "task_created"]
    assert events[0].details == "out.txt"

    assert [e.event_type for e in store.list_events(worker_id="U00001")] == ["task_done", "task_claimed"]
    assert [e.event_type for e in store.list_events(limit=1)] == ["task_done"]


# =============================================================================
# Capacity slots
# =============================================================================

def test_slots(sqlite_store):
    store = sqlite_store
    store.init_slots(2)
    store.allocate_worker(new_worker)
    store.allocate_worker(new_worker)
    store.allocate_worker(new_worker)

    assert store.assign_slot("U00001") == 1
    assert store.assign_slot("U00001") == 1
    assert store.assign_slot("U00002") == 2
    assert store.assign_slot("U00003") is None
    assert store.get_worker("U00002").slot_id == 2
    assert store.slot_usage().used == 2

    assert store.release_slot(1) == "U00001"
    assert store.get_worker("U00001").slot_id is None
    assert store.release_slot(1) is None
    assert store.assign_slot("U00003") == 1

    store.init_slots(3)
    usage = store.slot_usage()
    assert (usage.used, usage.total) == (2, 3)


def test_file_store_has_no_slots(tmp_path):
    store = FileStore(tmp_path / "state")

    assert store.slot_usage().total == 0
    with pytest.raises(UnsupportedOperation):
        store.assign_slot("U00001")
