from __future__ import annotations

import re

import allure
import pytest

from task_dispatch.dispatch.errors import InvalidTransition, TaskNotFound, ValidationError
from task_dispatch.dispatch.models import Task, TaskSpec, TaskStatus
from task_dispatch.dispatch.store import TaskLifecycleStore

pytestmark = [
    allure.epic("Task Dispatch"),
    allure.feature("Task Lifecycle"),
]


def _spec(**overrides) -> TaskSpec:
    data = {
        "type": "feature_implementation",
        "description": "Add export button",
        "requirements": ["csv export"],
    }
    data.update(overrides)
    return TaskSpec.from_mapping(data)


def _assigned(store: TaskLifecycleStore, worker: str = "developer") -> Task:
    task = store.create(_spec(), priority=4)
    return store.admit(task.task_id, worker_id=worker)


def test_create_sets_defaults_and_id_format() -> None:
    store = TaskLifecycleStore()
    task = store.create(_spec(), priority=5)

    assert re.fullmatch(r"TASK-\d{4}-[0-9A-F]{8}", task.task_id)
    assert task.status == TaskStatus.PENDING
    assert task.urgency == "normal"
    assert task.complexity == "medium"
    assert task.estimated_duration == "1 hour"


def test_create_rejects_unknown_type() -> None:
    with pytest.raises(ValidationError, match="Invalid task type"):
        TaskLifecycleStore().create(_spec(type="painting"), priority=4)


def test_spec_from_mapping_requires_fields() -> None:
    with pytest.raises(ValidationError, match="requirements"):
        TaskSpec.from_mapping({"type": "testing", "description": "x", "requirements": []})


def test_full_lifecycle_archives_completed_task() -> None:
    store = TaskLifecycleStore()
    task = _assigned(store)
    assert task.assigned_at is not None

    store.start(task.task_id)
    done = store.complete(task.task_id, {"ok": True})

    assert done.status == TaskStatus.COMPLETED
    assert done.progress == 100
    assert done.completed_at is not None
    assert not store.is_active(task.task_id)
    assert [item.task_id for item in store.completed_tasks()] == [task.task_id]
    assert store.get(task.task_id).result == {"ok": True}


def test_complete_requires_in_progress() -> None:
    store = TaskLifecycleStore()
    task = _assigned(store)

    with pytest.raises(InvalidTransition):
        store.complete(task.task_id)


def test_fail_from_any_non_terminal_state() -> None:
    store = TaskLifecycleStore()
    pending = store.create(_spec(), priority=4)
    assigned = _assigned(store)

    assert store.fail(pending.task_id, "cancelled").status == TaskStatus.FAILED
    failed = store.fail(assigned.task_id, "crashed")
    assert failed.failure_reason == "crashed"
    with pytest.raises(InvalidTransition):
        store.fail(assigned.task_id, "again")
    assert len(store.completed_tasks(include_failed=True)) == 2
    assert store.completed_tasks() == []


def test_progress_starts_task_and_records_checkpoints() -> None:
    store = TaskLifecycleStore()
    task = _assigned(store)

    updated = store.update_progress(task.task_id, 40, "schema drafted")
    updated = store.update_progress(updated.task_id, 150)

    assert updated.status == TaskStatus.IN_PROGRESS
    assert updated.progress == 100
    assert [(c.progress, c.description) for c in updated.checkpoints] == [(40, "schema drafted")]


def test_progress_cannot_decrease() -> None:
    store = TaskLifecycleStore()
    task = _assigned(store)
    store.update_progress(task.task_id, 60)

    with pytest.raises(InvalidTransition, match="decrease progress"):
        store.update_progress(task.task_id, 30)


def test_progress_on_completed_task_is_invalid_transition() -> None:
    store = TaskLifecycleStore()
    task = _assigned(store)
    store.start(task.task_id)
    store.complete(task.task_id)

    with pytest.raises(InvalidTransition):
        store.update_progress(task.task_id, 50)


def test_progress_on_pending_or_unknown_task() -> None:
    store = TaskLifecycleStore()
    pending = store.create(_spec(), priority=4)

    with pytest.raises(InvalidTransition):
        store.update_progress(pending.task_id, 10)
    with pytest.raises(TaskNotFound):
        store.update_progress("TASK-0000-DEADBEEF", 10)


def test_returned_tasks_are_copies() -> None:
    store = TaskLifecycleStore()
    task = _assigned(store)
    task.progress = 99

    assert store.get(task.task_id).progress == 0


def test_completed_tasks_paging_and_archive_limit() -> None:
    store = TaskLifecycleStore(archive_limit=3)
    ids = []
    for _ in range(5):
        task = _assigned(store, worker="analyst")
        store.start(task.task_id)
        store.complete(task.task_id)
        ids.append(task.task_id)

    assert [task.task_id for task in store.completed_tasks(limit=2)] == ids[-2:]
    assert [task.task_id for task in store.completed_tasks("analyst")] == ids[-3:]
    assert store.completed_tasks("developer") == []
    with pytest.raises(TaskNotFound):
        store.get(ids[0])


def test_active_tasks_filter_and_counts() -> None:
    store = TaskLifecycleStore()
    _assigned(store, worker="analyst")
    _assigned(store, worker="developer")
    store.create(_spec(), priority=4)

    assert len(store.active_tasks()) == 3
    assert len(store.active_tasks("analyst")) == 1
    assert store.counts()["assigned"] == 2
    assert store.counts()["pending"] == 1


def test_restore_round_trip_from_record() -> None:
    store = TaskLifecycleStore()
    task = _assigned(store)
    store.update_progress(task.task_id, 25, "started")
    record = store.get(task.task_id).to_record()

    restored_store = TaskLifecycleStore()
    restored_store.restore(Task.from_record(record))
    restored = restored_store.get(task.task_id)

    assert restored.status == TaskStatus.IN_PROGRESS
    assert restored.worker_id == "developer"
    assert restored.checkpoints[0].description == "started"
    with pytest.raises(ValidationError):
        restored_store.restore(Task.from_record(record))
