"""Controllers for dispatch CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, is_dataclass
from pathlib import Path
from typing import Any

from task_dispatch.config import Settings
from task_dispatch.dispatch.models import Message, Task, TaskStatus
from task_dispatch.dispatch.repository import SqlDispatchRepository
from task_dispatch.dispatch.services import DispatchCore


@dataclass(slots=True)
class SubmitTaskCommand:
    """CLI input for task submission."""

    db_path: Path | None
    task_type: str
    description: str
    requirements: tuple[str, ...]
    base_priority: str = "normal"
    urgency: str | None = None
    complexity: str | None = None
    estimated_duration: str | None = None
    tags: tuple[str, ...] = ()


@dataclass(slots=True)
class TaskIdCommand:
    """CLI input for commands addressing one task."""

    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class ProgressCommand:
    db_path: Path | None
    task_id: str
    progress: int
    checkpoint: str | None = None


@dataclass(slots=True)
class CompleteCommand:
    db_path: Path | None
    task_id: str
    result_json: str | None = None


@dataclass(slots=True)
class FailCommand:
    db_path: Path | None
    task_id: str
    reason: str


@dataclass(slots=True)
class ListTasksCommand:
    """CLI input for task listing."""

    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class FireTriggerCommand:
    """CLI input for firing a trigger rule."""

    db_path: Path | None
    name: str
    event: str | None


@dataclass(slots=True)
class ListEventsCommand:
    db_path: Path | None
    task_id: str | None
    limit: int


@dataclass(slots=True)
class StatusCommand:
    db_path: Path | None


class DispatchCliController:
    """Runs one command against a core restored from the SQLite database."""

    def submit(self, command: SubmitTaskCommand) -> list[str]:
        with _core(command.db_path) as (core, _):
            result = core.dispatcher.submit(
                {
                    "type": command.task_type,
                    "description": command.description,
                    "requirements": list(command.requirements),
                    "urgency": command.urgency,
                    "complexity": command.complexity,
                    "estimated_duration": command.estimated_duration,
                    "tags": list(command.tags),
                },
                command.base_priority,
            )
        return [
            "Task submitted: "
            f"task_id={result.task_id} worker={result.worker_id} "
            f"priority={result.priority} status={result.status.value}",
        ]

    def start(self, command: TaskIdCommand) -> list[str]:
        with _core(command.db_path) as (core, _):
            task = core.dispatcher.start(command.task_id)
        return [f"Task started: {task.task_id} worker={task.worker_id}"]

    def progress(self, command: ProgressCommand) -> list[str]:
        with _core(command.db_path) as (core, _):
            task = core.dispatcher.update_progress(
                command.task_id,
                command.progress,
                command.checkpoint,
            )
        return [
            f"Task progress: {task.task_id} status={task.status.value} progress={task.progress}%",
        ]

    def complete(self, command: CompleteCommand) -> list[str]:
        result = _parse_result(command.result_json)
        with _core(command.db_path) as (core, _):
            task = core.dispatcher.report_completion(command.task_id, result)
        return [f"Task completed: {task.task_id} worker={task.worker_id} {_duration(task)}"]

    def fail(self, command: FailCommand) -> list[str]:
        with _core(command.db_path) as (core, _):
            task = core.dispatcher.report_failure(command.task_id, command.reason)
        return [f"Task failed: {task.task_id} worker={task.worker_id} reason={task.failure_reason}"]

    def list_tasks(self, command: ListTasksCommand) -> list[str]:
        status_filter = _parse_status(command.status)
        with _core(command.db_path) as (_, repository):
            records = repository.list_tasks(status=status_filter, limit=command.limit)

        lines = [f"Tasks: {len(records)}"]
        for record in records:
            lines.append(
                f"  {record['task_id']} type={record['type']} status={record['status']} "
                f"priority={record['priority']} worker={record.get('assigned_to') or '-'} "
                f"progress={record.get('progress', 0)}%",
            )
        return lines

    def show_task(self, command: TaskIdCommand) -> list[str]:
        with _core(command.db_path) as (core, repository):
            task = core.store.get(command.task_id)
            events = repository.list_events(task_id=command.task_id, limit=100)

        lines = [
            f"Task: {task.task_id}",
            f"Type: {task.task_type.value}",
            f"Status: {task.status.value}",
            f"Priority: {task.priority}",
            f"Worker: {task.worker_id or '-'}",
            f"Progress: {task.progress}%",
            f"Description: {task.description}",
            f"Failure reason: {task.failure_reason or '-'}",
            f"Checkpoints: {len(task.checkpoints)}",
        ]
        for checkpoint in task.checkpoints:
            lines.append(
                f"  {checkpoint.timestamp.isoformat()} {checkpoint.progress}% {checkpoint.description}",
            )
        lines.append(f"Events: {len(events)}")
        for event in events:
            lines.append(f"  {event.created_at.isoformat()} {event.name}")
        return lines

    def workers(self, command: StatusCommand) -> list[str]:
        with _core(command.db_path) as (core, _):
            view = core.registry.query()

        lines = [f"Workers: {len(view)}"]
        for name, worker in view.items():
            performance = worker["performance"]
            lines.append(
                f"  {name} load={worker['load']}/{worker['capacity']} "
                f"available={'yes' if worker['available'] else 'no'} "
                f"success_rate={performance['success_rate']:.2f} "
                f"completion_rate={performance['completion_rate']:.2f} "
                f"specializations={','.join(worker['specializations']) or '-'}",
            )
        return lines

    def fire(self, command: FireTriggerCommand) -> list[str]:
        event = _parse_event(command.event)
        with _core(command.db_path) as (core, _):
            result = core.triggers.fire(command.name, event)

        lines = [
            f"Trigger {result.trigger}: outcome={result.outcome.value} attempt={result.attempt}",
        ]
        if result.error:
            lines.append(f"Error: {result.error}")
        if result.result is not None:
            lines.append(f"Result: {_describe(result.result)}")
        return lines

    def events(self, command: ListEventsCommand) -> list[str]:
        with _core(command.db_path) as (_, repository):
            events = repository.list_events(task_id=command.task_id, limit=command.limit)

        lines = [f"Events: {len(events)}"]
        for event in events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.name} "
                f"{json.dumps(event.data, ensure_ascii=False, sort_keys=True, default=str)}",
            )
        return lines

    def status(self, command: StatusCommand) -> list[str]:
        with _core(command.db_path) as (core, _):
            status = core.system_status()
            health = core.check_health()

        tasks = status["tasks"]
        session = status["session"]
        messaging = status["messaging"]
        lines = [
            f"Health: {health.status}",
            f"Running: {'yes' if status['is_running'] else 'no'}",
            "Tasks: " + " ".join(f"{name}={count}" for name, count in tasks.items()),
            f"Workers: {len(status['workers'])}",
            f"Triggers: {', '.join(status['triggers'])}",
            f"Messages: total={messaging['total_messages']} pending_retries={messaging['pending_retries']}",
            f"Success rate: {session['success_rate']:.2f} "
            f"(success={session['success_count']} errors={session['error_count']})",
        ]
        lines.extend(f"Issue: {issue}" for issue in health.issues)
        return lines


@contextmanager
def _core(db_path: Path | None) -> Iterator[tuple[DispatchCore, SqlDispatchRepository]]:
    settings = Settings.from_env(db_path=db_path)
    repository = SqlDispatchRepository(settings.db_path)
    repository.init_schema()
    try:
        core = DispatchCore.from_settings(settings, task_sink=repository, event_sink=repository)
        try:
            core.restore(repository.restorable_records())
            yield core, repository
        finally:
            core.close()
    finally:
        repository.close()


def _parse_status(value: str | None) -> TaskStatus | None:
    if value is None:
        return None
    try:
        return TaskStatus(value)
    except ValueError as error:
        allowed = ", ".join(status.value for status in TaskStatus)
        raise ValueError(f"Unsupported status {value!r}. Allowed: {allowed}") from error


def _parse_result(raw: str | None) -> dict[str, Any] | None:
    if raw is None:
        return None
    parsed = json.loads(raw)
    if not isinstance(parsed, dict):
        raise ValueError("Task result must be a JSON object.")
    return parsed


def _parse_event(raw: str | None) -> Any:
    """Decode a JSON event, falling back to the raw text."""

    if raw is None:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


def _duration(task: Task) -> str:
    duration = task.duration_seconds()
    return f"duration={duration:.2f}s" if duration is not None else "duration=-"


def _describe(value: Any) -> str:
    if isinstance(value, Task):
        return f"task_id={value.task_id} status={value.status.value}"
    if isinstance(value, Message):
        return f"message_id={value.message_id} status={value.status.value}"
    if is_dataclass(value) and hasattr(value, "task_id"):
        return f"task_id={value.task_id} worker={getattr(value, 'worker_id', '-')}"
    if isinstance(value, list):
        return f"{len(value)} message(s)"
    return json.dumps(value, ensure_ascii=False, sort_keys=True, default=str)
