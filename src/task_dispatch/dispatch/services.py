"""Composition root wiring the dispatch components together."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from task_dispatch.config import DEFAULT_WORKERS, Settings, WorkerDefinition
from task_dispatch.dispatch.dispatcher import Dispatcher
from task_dispatch.dispatch.messaging import SYSTEM_ENDPOINTS, MessagingChannel
from task_dispatch.dispatch.metrics import PerformanceMetrics
from task_dispatch.dispatch.models import Session
from task_dispatch.dispatch.registry import WorkerRegistry
from task_dispatch.dispatch.scheduler import RetryScheduler, ThreadedRetryScheduler
from task_dispatch.dispatch.session import SessionTracker
from task_dispatch.dispatch.sinks import EventSink, InMemoryTaskSink, LoggingEventSink, TaskSink
from task_dispatch.dispatch.store import TaskLifecycleStore
from task_dispatch.dispatch.triggers import TriggerEngine, builtin_rules
from task_dispatch.storage.common import utc_now

logger = logging.getLogger(__name__)

MIN_HEALTHY_SUCCESS_RATE = 0.8
SESSION_STOPPED_REASON = "session_stopped"


@dataclass(slots=True)
class HealthReport:
    status: str
    issues: list[str]
    checked_at: datetime = field(default_factory=utc_now)


class DispatchCore:
    """Owns one instance of every dispatch component for a process.

    Stopping a session fails the outstanding tasks, applies the scheduler
    shutdown policy and resets worker loads, in that order.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        workers: Iterable[WorkerDefinition] = DEFAULT_WORKERS,
        task_sink: TaskSink | None = None,
        event_sink: EventSink | None = None,
        scheduler: RetryScheduler | None = None,
        symmetric_decay: bool = False,
        max_retries: int = 3,
        retry_base_seconds: float = 1.0,
        audit_size: int = 10,
        history_limit: int = 100,
        flush_on_stop: bool = False,
        builtin_triggers: bool = True,
    ) -> None:
        self.flush_on_stop = flush_on_stop
        self.task_sink = task_sink or InMemoryTaskSink()
        self.event_sink = event_sink or LoggingEventSink()
        self.scheduler = scheduler or ThreadedRetryScheduler()
        self.metrics = PerformanceMetrics()

        self.registry = WorkerRegistry(symmetric_decay=symmetric_decay)
        for worker in workers:
            self.registry.register(
                worker.name,
                capacity=worker.capacity,
                specializations=worker.specializations,
            )
        self.store = TaskLifecycleStore()
        self.session = SessionTracker(
            event_sink=self.event_sink,
            audit_size=audit_size,
            history_limit=history_limit,
        )
        self.channel = MessagingChannel(
            scheduler=self.scheduler,
            event_sink=self.event_sink,
            registry=self.registry,
            metrics=self.metrics,
            max_retries=max_retries,
            retry_base_seconds=retry_base_seconds,
        )
        for endpoint in SYSTEM_ENDPOINTS:
            self.channel.register_endpoint(endpoint)
        self.dispatcher = Dispatcher(
            registry=self.registry,
            store=self.store,
            channel=self.channel,
            task_sink=self.task_sink,
            event_sink=self.event_sink,
            session=self.session,
            metrics=self.metrics,
        )
        self.triggers = TriggerEngine(
            scheduler=self.scheduler,
            session=self.session,
            event_sink=self.event_sink,
            metrics=self.metrics,
            retry_base_seconds=retry_base_seconds,
        )
        if builtin_triggers:
            for rule in builtin_rules(
                dispatcher=self.dispatcher,
                channel=self.channel,
                session=self.session,
            ):
                self.triggers.register(rule)
        self.session.add_stop_hook(self._on_session_stop)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        task_sink: TaskSink | None = None,
        event_sink: EventSink | None = None,
        scheduler: RetryScheduler | None = None,
    ) -> DispatchCore:
        settings.validate()
        return cls(
            workers=settings.workers.workers,
            task_sink=task_sink,
            event_sink=event_sink,
            scheduler=scheduler,
            symmetric_decay=settings.workers.symmetric_decay,
            max_retries=settings.messaging.max_retries,
            retry_base_seconds=settings.messaging.retry_base_seconds,
            audit_size=settings.session.audit_size,
            history_limit=settings.session.history_limit,
            flush_on_stop=settings.session.flush_on_stop,
        )

    def restore(self, records: Iterable[Mapping[str, Any]]) -> int:
        return self.dispatcher.restore(records)

    def start(self) -> Session:
        self.scheduler.open()
        return self.session.start()

    def stop(self) -> Session:
        return self.session.stop()

    def close(self) -> int:
        """Apply the shutdown policy to pending retries without ending tasks."""

        return self.scheduler.shutdown(flush=self.flush_on_stop)

    def system_status(self) -> dict[str, Any]:
        """Aggregated view over session, workers, tasks, messaging and triggers."""

        session_status = self.session.status()
        return {
            "is_running": session_status.is_active,
            "session": {
                "current_session": session_status.current_session,
                "total_sessions": session_status.total_sessions,
                "success_count": session_status.success_count,
                "error_count": session_status.error_count,
                "success_rate": session_status.success_rate,
                "audit": session_status.audit,
            },
            "workers": self.registry.query(),
            "tasks": self.store.counts(),
            "messaging": self.channel.status(),
            "triggers": self.triggers.rules(),
            "performance": {
                operation: stats.to_dict() for operation, stats in self.metrics.report().items()
            },
        }

    def check_health(self) -> HealthReport:
        session_status = self.session.status()
        issues: list[str] = []
        if not session_status.is_active:
            issues.append("No active session")
        workers = self.registry.snapshots()
        if not workers:
            issues.append("No workers registered")
        elif not any(worker.available for worker in workers):
            issues.append("All workers are unavailable")
        attempted = session_status.success_count + session_status.error_count
        if attempted and session_status.success_rate < MIN_HEALTHY_SUCCESS_RATE:
            issues.append(f"Low success rate: {session_status.success_rate:.2f}")
        report = HealthReport(status="healthy" if not issues else "warning", issues=issues)
        if issues:
            logger.warning("Health check found issues: %s", ", ".join(issues))
        return report

    def _on_session_stop(self) -> None:
        failed = self.dispatcher.fail_outstanding(SESSION_STOPPED_REASON)
        if failed:
            logger.info("Failed %d outstanding task(s) on session stop", len(failed))
        handled = self.scheduler.shutdown(flush=self.flush_on_stop)
        if handled:
            logger.info(
                "%s %d pending retry(ies) on session stop",
                "Flushed" if self.flush_on_stop else "Discarded",
                handled,
            )
        self.registry.reset_loads()
