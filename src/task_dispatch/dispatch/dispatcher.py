"""Dispatcher: validates work, selects a worker and drives task transitions."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Iterable, Mapping
from typing import Any

from task_dispatch.dispatch.errors import (
    InternalInvariantViolation,
    NoAvailableWorker,
    SecurityValidationFailed,
)
from task_dispatch.dispatch.messaging import DISPATCHER_ENDPOINT, MessagingChannel
from task_dispatch.dispatch.metrics import PerformanceMetrics
from task_dispatch.dispatch.models import (
    MessageType,
    PriorityClass,
    SubmitResult,
    Task,
    TaskSpec,
    TaskStatus,
)
from task_dispatch.dispatch.registry import WorkerRegistry
from task_dispatch.dispatch.scoring import priority
from task_dispatch.dispatch.session import SessionTracker
from task_dispatch.dispatch.sinks import (
    EventSink,
    InMemoryTaskSink,
    LoggingEventSink,
    TaskSink,
    safe_emit,
    safe_save,
)
from task_dispatch.dispatch.store import TaskLifecycleStore
from task_dispatch.dispatch.validation import (
    coerce_task_spec,
    infer_task_type,
    validate_task_spec,
    validate_user_request,
)

logger = logging.getLogger(__name__)

RESTORE_OVER_CAPACITY_REASON = "capacity_exceeded_on_restore"


class Dispatcher:
    """Single entry point for every task mutation.

    Selection, reservation and task creation happen under one re-entrant lock
    so concurrent submissions never over-commit a worker. Persistence and
    event emission run after the state change and never roll it back.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        registry: WorkerRegistry,
        store: TaskLifecycleStore,
        channel: MessagingChannel,
        task_sink: TaskSink | None = None,
        event_sink: EventSink | None = None,
        session: SessionTracker | None = None,
        metrics: PerformanceMetrics | None = None,
        endpoint: str = DISPATCHER_ENDPOINT,
    ) -> None:
        self.registry = registry
        self.store = store
        self.channel = channel
        self.task_sink = task_sink or InMemoryTaskSink()
        self.event_sink = event_sink or LoggingEventSink()
        self.session = session
        self.metrics = metrics or PerformanceMetrics()
        self.endpoint = endpoint
        self._lock = threading.RLock()
        self._ensure_endpoints()

    def submit(
        self,
        spec: TaskSpec | Mapping[str, Any],
        base_priority: str | None = "normal",
    ) -> SubmitResult:
        """Validate, score and assign a task to the best available worker.

        Raises:
            ValidationError: missing/invalid fields or task type.
            SecurityValidationFailed: payload mentions sensitive data; no task is created.
            NoAvailableWorker: every worker is unavailable or at capacity.
        """

        started = time.perf_counter()
        task_spec = coerce_task_spec(spec)
        try:
            validate_task_spec(task_spec)
        except SecurityValidationFailed as error:
            self._record_security_violation(task_spec, error)
            raise
        task_priority = priority(task_spec, base_priority)

        with self._lock:
            try:
                worker = self.registry.select(task_spec, task_priority)
            except NoAvailableWorker:
                logger.warning(
                    "No available worker for %s task (priority=%d)",
                    task_spec.type,
                    task_priority,
                )
                raise
            self.registry.reserve(worker.name)
            try:
                created = self.store.create(task_spec, priority=task_priority)
                task = self.store.admit(created.task_id, worker_id=worker.name)
            except Exception:
                self.registry.release(worker.name)
                raise

        elapsed = time.perf_counter() - started
        self.metrics.record("task_assignment", elapsed)
        self._persist(task)
        logger.info(
            "Assigned task %s (%s, priority=%d) to %s",
            task.task_id,
            task.task_type.value,
            task.priority,
            worker.name,
        )
        safe_emit(
            self.event_sink,
            "task_assigned",
            {
                "task_id": task.task_id,
                "worker_id": worker.name,
                "priority": task.priority,
                "type": task.task_type.value,
            },
        )
        self.channel.send(
            self.endpoint,
            worker.name,
            MessageType.ASSIGNMENT,
            {
                "task_id": task.task_id,
                "task_data": task_spec.to_payload(),
                "requirements": list(task_spec.requirements),
                "priority": task.priority,
            },
            priority=priority_label(task.priority),
        )
        return SubmitResult(
            task_id=task.task_id,
            worker_id=worker.name,
            priority=task.priority,
            assignment_seconds=elapsed,
        )

    def submit_request(self, text: str, base_priority: str | None = "normal") -> SubmitResult:
        """Turn a free-text user request into a task and submit it."""

        request = validate_user_request(text)
        task_type = infer_task_type(request)
        spec = TaskSpec(
            type=task_type.value,
            description=request,
            requirements=[request],
            tags=["user_request"],
        )
        return self.submit(spec, base_priority)

    def start(self, task_id: str) -> Task:
        with self._lock:
            task = self.store.start(task_id)
        self._persist(task)
        safe_emit(self.event_sink, "task_started", {"task_id": task_id, "worker_id": task.worker_id})
        return task

    def update_progress(self, task_id: str, progress: int, checkpoint: str | None = None) -> Task:
        with self._lock:
            task = self.store.update_progress(task_id, progress, checkpoint)
        self._persist(task)
        safe_emit(
            self.event_sink,
            "task_progress",
            {"task_id": task_id, "progress": task.progress, "checkpoint": checkpoint},
        )
        return task

    def report_completion(self, task_id: str, result: dict[str, Any] | None = None) -> Task:
        """Complete a task, release its worker and record performance.

        An ``assigned`` task is started implicitly before completing.
        """

        with self._lock:
            if self.store.get(task_id).status == TaskStatus.ASSIGNED:
                self.store.start(task_id)
            task = self.store.complete(task_id, result)
            self._settle_worker(task, succeeded=True)
        self._persist(task)
        if self.session is not None:
            self.session.record_success()
        logger.info("Task %s completed by %s", task_id, task.worker_id)
        safe_emit(
            self.event_sink,
            "task_completed",
            {"task_id": task_id, "worker_id": task.worker_id, "duration_seconds": task.duration_seconds()},
        )
        self._notify_worker(task, MessageType.COMPLETION, {"task_id": task_id, "result": result})
        return task

    def report_failure(self, task_id: str, reason: str) -> Task:
        """Fail a non-terminal task and release its worker."""

        with self._lock:
            task = self.store.fail(task_id, reason)
            self._settle_worker(task, succeeded=False)
        self._persist(task)
        if self.session is not None:
            self.session.record_error(reason)
        logger.warning("Task %s failed on %s: %s", task_id, task.worker_id, reason)
        safe_emit(
            self.event_sink,
            "task_failed",
            {"task_id": task_id, "worker_id": task.worker_id, "reason": reason},
        )
        self._notify_worker(task, MessageType.ERROR, {"task_id": task_id, "reason": reason})
        return task

    def fail_outstanding(self, reason: str) -> list[Task]:
        """Fail every active task; used when a session stops."""

        with self._lock:
            task_ids = [task.task_id for task in self.store.active_tasks()]
            return [self.report_failure(task_id, reason) for task_id in task_ids]

    def restore(self, records: Iterable[Mapping[str, Any]]) -> int:
        """Load persisted task records, re-reserving capacity for active ones.

        Returns:
            Number of records restored.
        """

        restored = 0
        with self._lock:
            for record in records:
                task = Task.from_record(record)
                self.store.restore(task)
                restored += 1
                if task.is_terminal or not task.worker_id:
                    continue
                if task.worker_id not in self.registry:
                    logger.warning(
                        "Restored task %s references unknown worker %s",
                        task.task_id,
                        task.worker_id,
                    )
                    continue
                try:
                    self.registry.reserve(task.worker_id)
                except InternalInvariantViolation:
                    failed = self.store.fail(task.task_id, RESTORE_OVER_CAPACITY_REASON)
                    self._persist(failed)
        if restored:
            logger.info("Restored %d task(s)", restored)
        return restored

    def _settle_worker(self, task: Task, *, succeeded: bool) -> None:
        if not task.worker_id or task.worker_id not in self.registry:
            return
        self.registry.release(task.worker_id)
        self.registry.record_completion(
            task.worker_id,
            task.duration_seconds() or 0.0,
            succeeded=succeeded,
        )

    def _notify_worker(self, task: Task, message_type: MessageType, payload: dict[str, Any]) -> None:
        if not task.worker_id or task.worker_id not in self.channel.endpoint_ids():
            return
        self.channel.send(
            self.endpoint,
            task.worker_id,
            message_type,
            payload,
            priority=priority_label(task.priority),
        )

    def _persist(self, task: Task) -> None:
        safe_save(self.task_sink, task.task_id, task.to_record())

    def _record_security_violation(self, spec: TaskSpec, error: SecurityValidationFailed) -> None:
        details = {"task_type": spec.type, "pattern": error.pattern, "action": "submit"}
        logger.warning("Rejected %s task: sensitive pattern %r", spec.type, error.pattern)
        if self.session is not None:
            self.session.audit("security", details)
        safe_emit(self.event_sink, "security_violation", details)

    def _ensure_endpoints(self) -> None:
        known = set(self.channel.endpoint_ids())
        for endpoint in (self.endpoint, *self.registry.names()):
            if endpoint not in known:
                self.channel.register_endpoint(endpoint)


def priority_label(value: int) -> str:
    """Map a numeric task priority onto a message priority class."""

    if value >= 8:  # noqa: PLR2004
        return PriorityClass.CRITICAL.value
    if value >= 6:  # noqa: PLR2004
        return PriorityClass.HIGH.value
    if value >= 4:  # noqa: PLR2004
        return PriorityClass.NORMAL.value
    return PriorityClass.LOW.value
