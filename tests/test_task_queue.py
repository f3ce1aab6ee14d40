import pytest

from taskfleet.errors import InvalidTransition, TaskNotFound
from taskfleet.hierarchy import HierarchyPolicy, EmergencyBrake
from taskfleet.queues.manager import TaskQueue, TaskStats, AUDIT_TASK_TYPE, AUDIT_CONTENT_LIMIT
from taskfleet.state.records import TaskStatus


def test_enqueue_creates_pending_tasks(queue, store):
    ids = queue.enqueue("translate", ["first line\nmore", "second"], layer=1)

    assert ids == [1, 2]
    task = queue.get(1)
    assert task.status == TaskStatus.PENDING.value
    assert task.layer == 1
    assert task.title == "first line"
    assert task.description == "first line\nmore"
    assert task.max_retries == 3
    assert queue.enqueue("translate", []) == []
    assert [e.event_type for e in store.list_events()] == ["task_created", "task_created"]


def test_long_titles_are_shortened(queue):
    queue.enqueue("translate", ["x" * 100])
    title = queue.get(1).title
    assert len(title) == 60
    assert title.endswith("...")


def test_claim_complete(queue, clock):
    queue.enqueue("build", ["a", "b"])

    task = queue.claim_next("U00001")
    assert task.id == 1
    assert task.started_at == clock.now

    clock.advance(5)
    done = queue.complete(1, result_path="out/1.txt", worker_id="U00001")
    assert done.status == TaskStatus.TASK_COMPLETED.value
    assert done.result_path == "out/1.txt"
    assert done.completed_at == clock.now


def test_complete_requires_processing_and_owner(queue):
    queue.enqueue("build", ["a"])

    with pytest.raises(InvalidTransition):
        queue.complete(1)

    queue.claim_next("U00001")
    with pytest.raises(InvalidTransition) as excinfo:
        queue.complete(1, worker_id="U00002")
    assert "owned by U00001" in str(excinfo.value)

    before = queue.get(1)
    with pytest.raises(TaskNotFound):
        queue.complete(99)
    assert queue.get(1) == before


def test_fail_is_terminal(queue):
    queue.enqueue("build", ["a", "b"])
    queue.claim_next("U00001")

    failed = queue.fail(1, "compiler crashed")
    assert failed.status == TaskStatus.FAILED.value
    assert failed.last_error == "compiler crashed"

    with pytest.raises(InvalidTransition):
        queue.fail(1, "again")

    # A pending task may fail directly
    assert queue.fail(2, "bad input").status == TaskStatus.FAILED.value


def test_release_returns_tasks_to_pending(queue):
    queue.enqueue("build", ["a", "b", "c"])
    queue.claim_next("U00001")
    queue.claim_next("U00001")

    assert queue.release("U00001") == 2
    assert queue.stats().pending == 3
    assert queue.release("U00001") == 0
    reclaimed = queue.claim_next("U00002")
    assert reclaimed.id == 1
    assert queue.get(1).owner == "U00002"


def test_claim_honours_per_worker_limit(store, clock):
    policy = HierarchyPolicy(emergency_brake=EmergencyBrake(max_tasks_per_worker=2))
    queue = TaskQueue(store, policy=policy, clock=clock)
    queue.enqueue("build", ["a", "b", "c"])

    assert queue.claim_next("U00001").id == 1
    assert queue.claim_next("U00001").id == 2
    assert queue.claim_next("U00001") is None
    assert queue.claim_next("U00002").id == 3


def test_claim_filters(queue):
    queue.enqueue("build", ["a"], layer=0)
    queue.enqueue("build", ["b"], layer=1)
    queue.enqueue("lint", ["c"], layer=1)

    assert queue.claim_next("U00001", task_type="lint").id == 3
    assert queue.claim_next("U00001", layer=1).id == 2
    assert queue.claim_next("U00001", layer=2) is None


# =============================================================================
# Audit loop
# =============================================================================

def test_audit_pass(queue):
    queue.enqueue("write", ["chapter"])
    queue.claim_next("U00001")
    queue.complete(1, result_path="out/1.md")

    task = queue.request_audit(1, output_content="y" * (AUDIT_CONTENT_LIMIT + 10))
    assert task.status == TaskStatus.AUDIT_IN_PROGRESS.value

    audit = queue.list(task_type=AUDIT_TASK_TYPE)[0]
    assert audit.max_retries == 2
    assert audit.params["original_task_id"] == 1
    assert audit.params["original_type"] == "write"
    assert audit.params["result_path"] == "out/1.md"
    assert len(audit.params["output_content"]) == AUDIT_CONTENT_LIMIT
    assert audit.title == "Audit: chapter"

    passed = queue.resolve_audit(1, passed=True)
    assert passed.status == TaskStatus.AUDIT_PASSED.value
    assert queue.stats().done == 1


def test_audit_only_from_completed(queue):
    queue.enqueue("write", ["chapter"])
    with pytest.raises(InvalidTransition):
        queue.request_audit(1)
    with pytest.raises(InvalidTransition):
        queue.resolve_audit(1, passed=True)


def test_failed_audit_requeues_until_retries_run_out(queue):
    queue.enqueue("write", ["chapter"], max_retries=1)

    queue.claim_next("U00001", task_type="write")
    queue.complete(1)
    queue.request_audit(1)
    task = queue.resolve_audit(1, passed=False, reason="too short")
    assert task.status == TaskStatus.PENDING.value
    assert task.retry_count == 1
    assert task.owner is None
    assert task.last_error == "too short"

    queue.claim_next("U00001", task_type="write")
    queue.complete(1)
    queue.request_audit(1)
    task = queue.resolve_audit(1, passed=False)
    assert task.status == TaskStatus.FAILED.value
    assert task.retry_count == 2
    assert task.last_error == "audit failed"


def test_complete_auto_requests_audit(queue):
    queue.enqueue("write", ["chapter"], requires_audit=True)
    queue.claim_next("U00001", task_type="write")

    task = queue.complete(1, result_path="out/1.md")
    assert task.status == TaskStatus.AUDIT_IN_PROGRESS.value
    assert queue.ready_for_audit() == []

    audit = queue.claim_next("U00002", task_type=AUDIT_TASK_TYPE)
    assert audit.params["original_task_id"] == 1

    # Resolving through the audit task also closes the audit task
    resolved = queue.resolve_audit(audit.id, passed=True)
    assert resolved.id == 1
    assert resolved.status == TaskStatus.AUDIT_PASSED.value
    assert queue.get(audit.id).status == TaskStatus.TASK_COMPLETED.value


def test_verdict_on_audited_task_closes_its_audit_task(queue):
    queue.enqueue("write", ["chapter"])
    queue.claim_next("U00001")
    queue.complete(1)
    queue.request_audit(1)
    assert [a.id for a in queue.open_audits(1)] == [2]

    queue.resolve_audit(1, passed=True)
    assert queue.open_audits(1) == []
    assert queue.get(2).status == TaskStatus.TASK_COMPLETED.value
    assert not queue.has_outstanding_work()


def test_verdict_from_closed_audit_task_is_rejected(queue):
    queue.enqueue("write", ["chapter"])
    queue.claim_next("U00001", task_type="write")
    queue.complete(1)
    queue.request_audit(1)
    queue.resolve_audit(1, passed=False)

    queue.claim_next("U00001", task_type="write")
    queue.complete(1)
    queue.request_audit(1)

    # Audit task 2 belonged to the first round
    with pytest.raises(InvalidTransition):
        queue.resolve_audit(2, passed=False)
    task = queue.get(1)
    assert task.status == TaskStatus.AUDIT_IN_PROGRESS.value
    assert task.retry_count == 1
    assert [a.id for a in queue.open_audits(1)] == [3]
    assert queue.claim_next("U00002", task_type=AUDIT_TASK_TYPE).id == 3


def test_ready_for_audit(queue):
    queue.enqueue("write", ["a", "b"])
    queue.claim_next("U00001")
    queue.complete(1)

    assert [t.id for t in queue.ready_for_audit()] == [1]


# =============================================================================
# Decomposition
# =============================================================================

def test_decompose(queue):
    queue.enqueue("plan", ["big job"], layer=0)
    queue.claim_next("U00001")

    child_ids = queue.decompose(1, ["part 1", "part 2"], task_type="build")
    assert child_ids == [2, 3]
    assert queue.get(1).child_ids == [2, 3]

    children = queue.subtasks(1)
    assert [c.layer for c in children] == [1, 1]
    assert [c.task_type for c in children] == ["build", "build"]
    assert not queue.subtasks_complete(1)

    with pytest.raises(InvalidTransition):
        queue.decompose(1, ["part 3"])

    for _ in child_ids:
        task = queue.claim_next("U00002", layer=1)
        queue.complete(task.id, result_path=f"out/{task.id}.txt")

    assert queue.subtasks_complete(1)
    assert queue.subtask_outputs(1) == ["out/2.txt", "out/3.txt"]

    parent = queue.get(1)
    assert parent.status == TaskStatus.TASK_COMPLETED.value
    assert parent.params["subtask_outputs"] == ["out/2.txt", "out/3.txt"]


def test_decomposed_pending_task_is_not_claimable(queue):
    queue.enqueue("plan", ["big job"])
    queue.decompose(1, ["part"])

    task = queue.claim_next("U00001")
    assert task.id == 2
    assert queue.claim_next("U00001") is None


def test_subtasks_complete_without_children(queue):
    queue.enqueue("plan", ["solo"])
    assert not queue.subtasks_complete(1)


def test_failed_subtask_fails_the_parent(queue):
    queue.enqueue("plan", ["big job"])
    queue.claim_next("U00001")
    queue.decompose(1, ["part 1", "part 2"])

    queue.claim_next("U00002")
    queue.fail(2, "broken")
    assert queue.get(1).status == TaskStatus.PROCESSING.value

    queue.claim_next("U00002")
    queue.complete(3, result_path="out/3.txt")

    parent = queue.get(1)
    assert parent.status == TaskStatus.FAILED.value
    assert parent.last_error == "subtask(s) failed: 2"
    assert parent.params["subtask_outputs"] == ["out/3.txt"]


def test_audited_parent_settles_after_subtask_audits(queue):
    queue.enqueue("plan", ["big job"], requires_audit=True)
    queue.claim_next("U00001")
    queue.decompose(1, ["part"])

    child = queue.claim_next("U00002", task_type="plan", layer=1)
    queue.complete(child.id)
    assert queue.get(1).status == TaskStatus.PROCESSING.value

    queue.resolve_audit(child.id, passed=True)
    assert queue.get(1).status == TaskStatus.AUDIT_IN_PROGRESS.value
    assert [a.id for a in queue.open_audits(1)] == [4]


# =============================================================================
# Stats
# =============================================================================

@pytest.mark.parametrize("counts,expected", [
    ({}, "not_started"),
    ({"pending": 3}, "not_started"),
    ({"pending": 2, "processing": 1}, "in_progress"),
    ({"pending": 2, "task_completed": 1}, "in_progress"),
    ({"task_completed": 2, "audit_passed": 1}, "completed"),
    ({"audit_passed": 2, "failed": 1}, "all_disposed"),
])
def test_global_status(counts, expected):
    assert TaskStats.from_counts(counts).global_status == expected


def test_progress_percent_rounds():
    assert TaskStats.from_counts({"task_completed": 1, "pending": 2}).progress_percent == 33
    assert TaskStats.from_counts({"task_completed": 2, "pending": 1}).progress_percent == 67
    assert TaskStats.from_counts({}).progress_percent == 0


def test_stats_and_by_owner(queue):
    queue.enqueue("build", ["a", "b", "c", "d"])
    queue.claim_next("U00001")
    queue.claim_next("U00001")
    queue.claim_next("U00002")
    queue.complete(1)
    queue.fail(3, "boom")

    stats = queue.stats()
    assert (stats.total, stats.pending, stats.processing, stats.done, stats.failed) == (4, 1, 1, 1, 1)
    assert stats.to_dict()["progress_percent"] == 25
    assert queue.by_status() == {"task_completed": 1, "processing": 1, "failed": 1, "pending": 1}
    assert queue.by_owner() == {
        "U00001": {"task_completed": 1, "processing": 1},
        "U00002": {"failed": 1},
    }
    assert queue.has_outstanding_work()
