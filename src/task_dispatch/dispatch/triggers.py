"""Trigger engine: named condition/action rules with per-firing retries."""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Mapping
from typing import Any

from task_dispatch.dispatch.dispatcher import Dispatcher
from task_dispatch.dispatch.errors import (
    InvalidTransition,
    NoAvailableWorker,
    TaskNotFound,
    UnknownTrigger,
    ValidationError,
)
from task_dispatch.dispatch.messaging import MONITOR_ENDPOINT, MessagingChannel
from task_dispatch.dispatch.metrics import PerformanceMetrics
from task_dispatch.dispatch.models import (
    MessageType,
    PriorityClass,
    TriggerOutcome,
    TriggerResult,
    TriggerRule,
)
from task_dispatch.dispatch.scheduler import RetryScheduler
from task_dispatch.dispatch.session import SessionTracker
from task_dispatch.dispatch.sinks import EventSink, LoggingEventSink, safe_emit

logger = logging.getLogger(__name__)

DEFAULT_RETRY_BASE_SECONDS = 1.0
PERFORMANCE_ALERT_THRESHOLD = 0.7
RESULT_HISTORY = 100

NON_RETRYABLE_ERRORS: tuple[type[Exception], ...] = (
    ValidationError,
    NoAvailableWorker,
    InvalidTransition,
    TaskNotFound,
)


class TriggerEngine:
    """Registry of trigger rules and their execution.

    Each ``fire`` owns its attempt counter; a failed action is re-run on the
    retry scheduler after ``retry_base_seconds * attempt`` until the rule's
    budget is spent. Validation-type errors are final on the first attempt.
    """

    def __init__(
        self,
        *,
        scheduler: RetryScheduler,
        session: SessionTracker | None = None,
        event_sink: EventSink | None = None,
        metrics: PerformanceMetrics | None = None,
        retry_base_seconds: float = DEFAULT_RETRY_BASE_SECONDS,
    ) -> None:
        self.scheduler = scheduler
        self.session = session
        self.event_sink = event_sink or LoggingEventSink()
        self.metrics = metrics or PerformanceMetrics()
        self.retry_base_seconds = retry_base_seconds
        self._rules: dict[str, TriggerRule] = {}
        self._results: deque[TriggerResult] = deque(maxlen=RESULT_HISTORY)
        self._lock = threading.Lock()

    def register(self, rule: TriggerRule) -> None:
        with self._lock:
            if rule.name in self._rules:
                raise ValidationError(f"Trigger already registered: {rule.name}")
            if rule.max_retries is not None and rule.max_retries < 0:
                raise ValidationError(f"Trigger {rule.name!r} max_retries must be >= 0.")
            self._rules[rule.name] = rule
        logger.debug("Registered trigger %s (%s)", rule.name, rule.priority.value)

    def rules(self) -> dict[str, dict[str, Any]]:
        with self._lock:
            return {
                name: {"priority": rule.priority.value, "max_retries": rule.retry_budget}
                for name, rule in self._rules.items()
            }

    def results(self) -> list[TriggerResult]:
        """Most recent firing results, including scheduled retries."""

        with self._lock:
            return list(self._results)

    def fire(self, name: str, event: Any = None) -> TriggerResult:
        """Evaluate a rule's condition and run its action.

        Raises:
            UnknownTrigger: no rule is registered under ``name``.
        """

        with self._lock:
            rule = self._rules.get(name)
        if rule is None:
            raise UnknownTrigger(name)

        try:
            matched = bool(rule.condition(event))
        except Exception as error:  # noqa: BLE001
            logger.exception("Condition of trigger %s raised", name)
            return self._finish_failure(rule, attempt=0, error=error, elapsed=0.0)
        if not matched:
            logger.debug("Trigger %s condition not met", name)
            return self._remember(TriggerResult(trigger=name, outcome=TriggerOutcome.CONDITION_NOT_MET))
        return self._execute(rule, event, attempt=0)

    def _execute(self, rule: TriggerRule, event: Any, *, attempt: int) -> TriggerResult:
        started = time.perf_counter()
        try:
            result = rule.action(event)
        except Exception as error:  # noqa: BLE001
            elapsed = time.perf_counter() - started
            if isinstance(error, NON_RETRYABLE_ERRORS) or attempt >= rule.retry_budget:
                return self._finish_failure(rule, attempt=attempt, error=error, elapsed=elapsed)
            return self._schedule_retry(rule, event, attempt=attempt, error=error, elapsed=elapsed)

        elapsed = time.perf_counter() - started
        self.metrics.record(f"trigger:{rule.name}", elapsed)
        if self.session is not None:
            self.session.record_trigger()
            if not rule.reports_outcome:
                self.session.record_success()
        safe_emit(
            self.event_sink,
            "trigger_executed",
            {"trigger": rule.name, "attempt": attempt, "execution_seconds": elapsed},
        )
        return self._remember(
            TriggerResult(
                trigger=rule.name,
                outcome=TriggerOutcome.EXECUTED,
                attempt=attempt,
                result=result,
                execution_seconds=elapsed,
            ),
        )

    def _schedule_retry(
        self,
        rule: TriggerRule,
        event: Any,
        *,
        attempt: int,
        error: Exception,
        elapsed: float,
    ) -> TriggerResult:
        next_attempt = attempt + 1
        delay = self.retry_base_seconds * next_attempt
        logger.warning(
            "Trigger %s failed (%s); retry %d/%d in %.1fs",
            rule.name,
            error,
            next_attempt,
            rule.retry_budget,
            delay,
        )
        self.scheduler.schedule(
            delay,
            lambda: self._execute(rule, event, attempt=next_attempt),
            label=f"trigger:{rule.name}:{next_attempt}",
            on_discard=lambda: self._discard(rule, next_attempt),
        )
        return self._remember(
            TriggerResult(
                trigger=rule.name,
                outcome=TriggerOutcome.RETRY_SCHEDULED,
                attempt=attempt,
                error=str(error),
                execution_seconds=elapsed,
            ),
        )

    def _finish_failure(
        self,
        rule: TriggerRule,
        *,
        attempt: int,
        error: Exception,
        elapsed: float,
    ) -> TriggerResult:
        logger.error("Trigger %s failed permanently after %d retries: %s", rule.name, attempt, error)
        if self.session is not None:
            self.session.record_error(str(error))
        safe_emit(
            self.event_sink,
            "trigger_failed",
            {"trigger": rule.name, "attempt": attempt, "error": str(error)},
        )
        return self._remember(
            TriggerResult(
                trigger=rule.name,
                outcome=TriggerOutcome.FAILED,
                attempt=attempt,
                error=str(error),
                execution_seconds=elapsed,
            ),
        )

    def _discard(self, rule: TriggerRule, attempt: int) -> None:
        logger.warning("Discarded retry %d of trigger %s on shutdown", attempt, rule.name)
        safe_emit(self.event_sink, "trigger_retry_discarded", {"trigger": rule.name, "attempt": attempt})
        self._remember(
            TriggerResult(
                trigger=rule.name,
                outcome=TriggerOutcome.FAILED,
                attempt=attempt,
                error="discarded_on_shutdown",
            ),
        )

    def _remember(self, result: TriggerResult) -> TriggerResult:
        with self._lock:
            self._results.append(result)
        return result


def builtin_rules(
    *,
    dispatcher: Dispatcher,
    channel: MessagingChannel,
    session: SessionTracker | None = None,
) -> list[TriggerRule]:
    """Default rules wiring events to dispatcher and channel actions."""

    def user_request(event: Any) -> Any:
        return dispatcher.submit_request(event)

    def task_completion(event: Mapping[str, Any]) -> Any:
        return dispatcher.report_completion(str(event["task_id"]), event.get("result"))

    def agent_status_change(event: Mapping[str, Any]) -> Any:
        agent = str(event["agent"])
        message = channel.send(
            MONITOR_ENDPOINT,
            agent,
            MessageType.STATUS_UPDATE,
            {"agent": agent, "status": str(event["status"])},
        )
        return message.to_record()

    def performance_alert(event: Mapping[str, Any]) -> Any:
        payload = {"alert": "low_performance", **dict(event)}
        if session is not None:
            session.audit("performance", payload)
        return [
            message.to_record()
            for message in channel.broadcast(MONITOR_ENDPOINT, MessageType.PERFORMANCE_REPORT, payload)
        ]

    def security_alert(event: Mapping[str, Any]) -> Any:
        payload = {"alert": "security_violation", **dict(event)}
        if session is not None:
            session.audit("security", payload)
        return [
            message.to_record()
            for message in channel.broadcast(
                MONITOR_ENDPOINT,
                MessageType.SECURITY_ALERT,
                payload,
                priority=PriorityClass.CRITICAL.value,
            )
        ]

    return [
        TriggerRule(
            name="user_request",
            condition=lambda event: isinstance(event, str) and bool(event.strip()),
            action=user_request,
            priority=PriorityClass.HIGH,
            max_retries=3,
        ),
        TriggerRule(
            name="task_completion",
            condition=lambda event: _is_mapping(event)
            and event.get("status") == "completed"
            and bool(event.get("task_id")),
            action=task_completion,
            priority=PriorityClass.NORMAL,
            max_retries=2,
            reports_outcome=True,
        ),
        TriggerRule(
            name="agent_status_change",
            condition=lambda event: _is_mapping(event)
            and bool(event.get("agent"))
            and bool(event.get("status")),
            action=agent_status_change,
            priority=PriorityClass.LOW,
            max_retries=1,
        ),
        TriggerRule(
            name="performance_alert",
            condition=_performance_degraded,
            action=performance_alert,
            priority=PriorityClass.HIGH,
            max_retries=2,
        ),
        TriggerRule(
            name="security_alert",
            condition=lambda event: _is_mapping(event) and bool(event.get("security_violation")),
            action=security_alert,
            priority=PriorityClass.CRITICAL,
            max_retries=1,
        ),
    ]


def _is_mapping(event: Any) -> bool:
    return isinstance(event, Mapping)


def _performance_degraded(event: Any) -> bool:
    if not _is_mapping(event) or event.get("performance_score") is None:
        return False
    return float(event["performance_score"]) < PERFORMANCE_ALERT_THRESHOLD
