"""Task lifecycle store: owns task records and their state machine."""

from __future__ import annotations

import copy
import logging
import threading
from collections import OrderedDict
from uuid import uuid4

from task_dispatch.dispatch.errors import InvalidTransition, TaskNotFound, ValidationError
from task_dispatch.dispatch.models import (
    Checkpoint,
    Task,
    TaskSpec,
    TaskStatus,
    TaskType,
)
from task_dispatch.storage.common import utc_now

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 50
DEFAULT_ARCHIVE_LIMIT = 1_000

_TRANSITIONS: dict[str, tuple[frozenset[TaskStatus], TaskStatus]] = {
    "admit": (frozenset({TaskStatus.PENDING}), TaskStatus.ASSIGNED),
    "start": (frozenset({TaskStatus.ASSIGNED}), TaskStatus.IN_PROGRESS),
    "complete": (frozenset({TaskStatus.IN_PROGRESS}), TaskStatus.COMPLETED),
    "fail": (
        frozenset({TaskStatus.PENDING, TaskStatus.ASSIGNED, TaskStatus.IN_PROGRESS}),
        TaskStatus.FAILED,
    ),
}
_PROGRESS_STATUSES = frozenset({TaskStatus.ASSIGNED, TaskStatus.IN_PROGRESS})


class TaskLifecycleStore:
    """In-memory task records split into an active set and a bounded archive.

    Public methods return copies; the store is the only writer of task state.
    """

    def __init__(self, *, archive_limit: int = DEFAULT_ARCHIVE_LIMIT) -> None:
        if archive_limit < 1:
            raise ValueError("archive_limit must be >= 1.")
        self.archive_limit = archive_limit
        self._active: dict[str, Task] = {}
        self._archive: OrderedDict[str, Task] = OrderedDict()
        self._lock = threading.RLock()

    def create(self, spec: TaskSpec, *, priority: int) -> Task:
        """Create a pending task from a validated spec."""

        try:
            task_type = TaskType(spec.type)
        except ValueError as error:
            raise ValidationError(f"Invalid task type: {spec.type!r}") from error
        with self._lock:
            task = Task(
                task_id=self._new_task_id(),
                task_type=task_type,
                description=spec.description,
                requirements=list(spec.requirements),
                priority=priority,
                urgency=spec.urgency or "normal",
                complexity=spec.complexity or "medium",
                estimated_duration=spec.estimated_duration or "1 hour",
                dependencies=list(spec.dependencies),
                tags=list(spec.tags),
            )
            self._active[task.task_id] = task
            return copy.deepcopy(task)

    def admit(self, task_id: str, *, worker_id: str) -> Task:
        """Assign a pending task to a worker."""

        with self._lock:
            task = self._transition(task_id, "admit")
            now = task.updated_at
            task.worker_id = worker_id
            task.assigned_at = now
            return copy.deepcopy(task)

    def start(self, task_id: str) -> Task:
        """Mark an assigned task as picked up by its worker."""

        with self._lock:
            task = self._transition(task_id, "start")
            task.started_at = task.updated_at
            return copy.deepcopy(task)

    def update_progress(self, task_id: str, progress: int, checkpoint: str | None = None) -> Task:
        """Record progress, starting the task if it is still only assigned.

        Progress is clamped to [0, 100] and must not go backwards.
        """

        with self._lock:
            task = self._get_for_update(task_id)
            if task.status not in _PROGRESS_STATUSES:
                raise InvalidTransition(task_id, task.status.value, "update progress")
            value = max(0, min(100, int(progress)))
            if value < task.progress:
                raise InvalidTransition(
                    task_id,
                    task.status.value,
                    f"decrease progress from {task.progress} to {value}",
                )
            now = utc_now()
            if task.status == TaskStatus.ASSIGNED:
                task.status = TaskStatus.IN_PROGRESS
                task.started_at = now
            task.progress = value
            task.updated_at = now
            if checkpoint:
                task.checkpoints.append(
                    Checkpoint(progress=value, description=checkpoint, timestamp=now),
                )
            return copy.deepcopy(task)

    def complete(self, task_id: str, result: dict | None = None) -> Task:
        """Finish a task: progress forced to 100 and the record archived."""

        with self._lock:
            task = self._transition(task_id, "complete")
            task.progress = 100
            task.completed_at = task.updated_at
            task.result = result
            self._archive_task(task)
            return copy.deepcopy(task)

    def fail(self, task_id: str, reason: str) -> Task:
        """Terminate a non-terminal task as failed and archive it."""

        with self._lock:
            task = self._transition(task_id, "fail")
            task.failed_at = task.updated_at
            task.failure_reason = reason
            self._archive_task(task)
            return copy.deepcopy(task)

    def restore(self, task: Task) -> None:
        """Load a previously persisted task into the active set or archive."""

        with self._lock:
            if task.task_id in self._active or task.task_id in self._archive:
                raise ValidationError(f"Task already loaded: {task.task_id}")
            if task.is_terminal:
                self._archive_task(copy.deepcopy(task))
            else:
                self._active[task.task_id] = copy.deepcopy(task)

    def get(self, task_id: str) -> Task:
        """Return an active or archived task."""

        with self._lock:
            task = self._active.get(task_id) or self._archive.get(task_id)
            if task is None:
                raise TaskNotFound(task_id)
            return copy.deepcopy(task)

    def is_active(self, task_id: str) -> bool:
        with self._lock:
            return task_id in self._active

    def active_tasks(self, worker_id: str | None = None) -> list[Task]:
        with self._lock:
            return [
                copy.deepcopy(task)
                for task in self._active.values()
                if worker_id is None or task.worker_id == worker_id
            ]

    def completed_tasks(
        self,
        worker_id: str | None = None,
        limit: int = DEFAULT_PAGE_SIZE,
        *,
        include_failed: bool = False,
    ) -> list[Task]:
        """Return the most recent archived tasks, oldest first."""

        with self._lock:
            tasks = [
                task
                for task in self._archive.values()
                if (worker_id is None or task.worker_id == worker_id)
                and (include_failed or task.status == TaskStatus.COMPLETED)
            ]
            return [copy.deepcopy(task) for task in tasks[-limit:]] if limit > 0 else []

    def counts(self) -> dict[str, int]:
        with self._lock:
            counts = {status.value: 0 for status in TaskStatus}
            for task in (*self._active.values(), *self._archive.values()):
                counts[task.status.value] += 1
            return counts

    def _transition(self, task_id: str, action: str) -> Task:
        allowed_from, status_to = _TRANSITIONS[action]
        task = self._get_for_update(task_id)
        if task.status not in allowed_from:
            raise InvalidTransition(task_id, task.status.value, action)
        logger.debug("Task %s: %s -> %s", task_id, task.status.value, status_to.value)
        task.status = status_to
        task.updated_at = utc_now()
        return task

    def _get_for_update(self, task_id: str) -> Task:
        task = self._active.get(task_id)
        if task is not None:
            return task
        archived = self._archive.get(task_id)
        if archived is not None:
            raise InvalidTransition(task_id, archived.status.value, "modify terminal task")
        raise TaskNotFound(task_id)

    def _archive_task(self, task: Task) -> None:
        self._active.pop(task.task_id, None)
        self._archive[task.task_id] = task
        while len(self._archive) > self.archive_limit:
            self._archive.popitem(last=False)

    def _new_task_id(self) -> str:
        year = utc_now().year
        while True:
            task_id = f"TASK-{year}-{uuid4().hex[:8].upper()}"
            if task_id not in self._active and task_id not in self._archive:
                return task_id
