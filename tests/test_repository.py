from __future__ import annotations

from pathlib import Path

import allure

from task_dispatch.dispatch.models import TaskStatus
from task_dispatch.dispatch.repository import SqlDispatchRepository
from task_dispatch.dispatch.scheduler import ManualRetryScheduler
from task_dispatch.dispatch.services import DispatchCore

pytestmark = [
    allure.epic("Task Dispatch"),
    allure.feature("SQLite Persistence"),
]

TASK = {
    "type": "feature_implementation",
    "description": "Add feature flags",
    "requirements": ["toggle per user"],
}


def _repository(tmp_path: Path) -> SqlDispatchRepository:
    repository = SqlDispatchRepository(tmp_path / "nested" / "dispatch.db")
    repository.init_schema()
    return repository


def test_save_upserts_and_load_returns_record(tmp_path: Path) -> None:
    repository = _repository(tmp_path)
    try:
        record = {
            "task_id": "TASK-2026-AAAA0001",
            "type": "testing",
            "status": "assigned",
            "assigned_to": "analyst",
            "priority": 3,
            "progress": 0,
            "created_at": "2026-01-01T00:00:00+00:00",
        }
        repository.save(record["task_id"], record)
        repository.save(record["task_id"], {**record, "status": "in_progress", "progress": 40})

        loaded = repository.load(record["task_id"])
        assert loaded is not None
        assert loaded["status"] == "in_progress"
        assert loaded["progress"] == 40
        assert repository.load("TASK-missing") is None
        assert len(repository.list_tasks()) == 1
        assert repository.list_tasks(status=TaskStatus.COMPLETED) == []
    finally:
        repository.close()


def test_events_are_appended_and_filtered(tmp_path: Path) -> None:
    repository = _repository(tmp_path)
    try:
        repository.emit("task_assigned", {"task_id": "T1", "worker_id": "analyst"})
        repository.emit("session_started", {"session_id": "S1"})
        repository.emit("task_completed", {"task_id": "T1"})

        events = repository.list_events()
        assert [event.name for event in events] == ["task_assigned", "session_started", "task_completed"]
        assert [event.name for event in repository.list_events(task_id="T1")] == [
            "task_assigned",
            "task_completed",
        ]
        assert [event.name for event in repository.list_events(limit=1)] == ["task_completed"]
        assert events[0].data["worker_id"] == "analyst"
        assert events[0].created_at.tzinfo is not None
    finally:
        repository.close()


def test_core_state_survives_restart(tmp_path: Path) -> None:
    repository = _repository(tmp_path)
    try:
        first = DispatchCore(task_sink=repository, event_sink=repository, scheduler=ManualRetryScheduler())
        active = first.dispatcher.submit(TASK)
        done = first.dispatcher.submit(TASK)
        first.dispatcher.update_progress(active.task_id, 20, "started")
        first.dispatcher.report_completion(done.task_id, {"ok": True})

        second = DispatchCore(task_sink=repository, event_sink=repository, scheduler=ManualRetryScheduler())
        assert second.restore(repository.restorable_records()) == 2

        restored = second.store.get(active.task_id)
        assert restored.status == TaskStatus.IN_PROGRESS
        assert restored.checkpoints[0].description == "started"
        assert second.store.get(done.task_id).result == {"ok": True}
        assert second.registry.get(active.worker_id).load == 1
        assert len(repository.list_events(task_id=done.task_id)) >= 2
    finally:
        repository.close()
