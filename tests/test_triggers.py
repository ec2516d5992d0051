from __future__ import annotations

from typing import Any

import allure
import pytest

from task_dispatch.dispatch.errors import UnknownTrigger, ValidationError
from task_dispatch.dispatch.models import (
    MessageType,
    PriorityClass,
    SubmitResult,
    TaskStatus,
    TriggerOutcome,
    TriggerRule,
)
from task_dispatch.dispatch.scheduler import ManualRetryScheduler
from task_dispatch.dispatch.services import DispatchCore
from task_dispatch.dispatch.session import SessionTracker
from task_dispatch.dispatch.sinks import RecordingEventSink
from task_dispatch.dispatch.triggers import TriggerEngine

pytestmark = [
    allure.epic("Task Dispatch"),
    allure.feature("Trigger Rules"),
]


def _engine(scheduler: ManualRetryScheduler, events: RecordingEventSink) -> TriggerEngine:
    return TriggerEngine(scheduler=scheduler, session=SessionTracker(event_sink=events), event_sink=events)


def _always_fail(event: Any) -> Any:
    raise RuntimeError("downstream unavailable")


def test_unregistered_trigger_raises(scheduler, events) -> None:
    engine = _engine(scheduler, events)

    with pytest.raises(UnknownTrigger, match="security_alert"):
        engine.fire("security_alert", {"security_violation": True})


def test_register_rejects_duplicate_names(scheduler, events) -> None:
    engine = _engine(scheduler, events)
    rule = TriggerRule(name="ping", condition=lambda event: True, action=lambda event: "pong")
    engine.register(rule)

    with pytest.raises(ValidationError, match="already registered"):
        engine.register(rule)
    assert engine.rules() == {"ping": {"priority": "normal", "max_retries": 3}}


def test_condition_not_met_is_not_an_error(scheduler, events) -> None:
    engine = _engine(scheduler, events)
    engine.register(TriggerRule(name="never", condition=lambda event: False, action=_always_fail))

    result = engine.fire("never", {})

    assert result.outcome == TriggerOutcome.CONDITION_NOT_MET
    assert engine.session.status().error_count == 0


def test_failing_action_retries_with_linear_backoff_then_fails(scheduler, events) -> None:
    engine = _engine(scheduler, events)
    engine.register(
        TriggerRule(
            name="flaky",
            condition=lambda event: True,
            action=_always_fail,
            priority=PriorityClass.HIGH,
        ),
    )

    first = engine.fire("flaky", {})
    assert first.outcome == TriggerOutcome.RETRY_SCHEDULED
    scheduler.run_all()

    assert [entry.delay_seconds for entry in scheduler.scheduled] == [1.0, 2.0]
    outcomes = [(result.outcome, result.attempt) for result in engine.results()]
    assert outcomes == [
        (TriggerOutcome.RETRY_SCHEDULED, 0),
        (TriggerOutcome.RETRY_SCHEDULED, 1),
        (TriggerOutcome.FAILED, 2),
    ]
    assert engine.session.status().error_count == 1
    assert len(events.by_name("trigger_failed")) == 1


def test_retry_state_is_per_firing(scheduler, events) -> None:
    engine = _engine(scheduler, events)
    attempts: list[str] = []

    def _succeeds_on_retry(event: dict[str, Any]) -> str:
        attempts.append(event["id"])
        if attempts.count(event["id"]) == 1:
            raise RuntimeError("first attempt fails")
        return event["id"]

    engine.register(
        TriggerRule(
            name="once",
            condition=lambda event: True,
            action=_succeeds_on_retry,
            priority=PriorityClass.LOW,
        ),
    )

    engine.fire("once", {"id": "a"})
    engine.fire("once", {"id": "b"})
    scheduler.run_all()

    executed = [result for result in engine.results() if result.success]
    assert sorted(result.result for result in executed) == ["a", "b"]
    assert all(result.attempt == 1 for result in executed)


def test_validation_errors_are_not_retried(scheduler, events) -> None:
    engine = _engine(scheduler, events)

    def _invalid(event: Any) -> Any:
        raise ValidationError("bad input")

    engine.register(TriggerRule(name="strict", condition=lambda event: True, action=_invalid))

    result = engine.fire("strict", None)

    assert result.outcome == TriggerOutcome.FAILED
    assert result.error == "bad input"
    assert scheduler.scheduled == []


def test_pending_trigger_retry_is_discarded_on_shutdown(scheduler, events) -> None:
    engine = _engine(scheduler, events)
    engine.register(TriggerRule(name="flaky", condition=lambda event: True, action=_always_fail))
    engine.fire("flaky", {})

    scheduler.shutdown()

    assert engine.results()[-1].error == "discarded_on_shutdown"
    assert events.by_name("trigger_retry_discarded")[0].data == {"trigger": "flaky", "attempt": 1}


def test_builtin_rule_table(core: DispatchCore) -> None:
    assert core.triggers.rules() == {
        "user_request": {"priority": "high", "max_retries": 3},
        "task_completion": {"priority": "normal", "max_retries": 2},
        "agent_status_change": {"priority": "low", "max_retries": 1},
        "performance_alert": {"priority": "high", "max_retries": 2},
        "security_alert": {"priority": "critical", "max_retries": 1},
    }


def test_user_request_submits_task(core: DispatchCore) -> None:
    core.start()

    result = core.triggers.fire("user_request", "Improve performance of the search page")

    assert result.outcome == TriggerOutcome.EXECUTED
    assert isinstance(result.result, SubmitResult)
    task = core.store.get(result.result.task_id)
    assert task.task_type.value == "performance_optimization"
    assert core.session.status().success_count == 1
    assert core.session.current.triggers_executed == 1


def test_user_request_rejects_script_markup(core: DispatchCore, scheduler) -> None:
    result = core.triggers.fire("user_request", "<script>steal()</script>")

    assert result.outcome == TriggerOutcome.FAILED
    assert scheduler.scheduled == []
    assert core.store.active_tasks() == []
    assert core.triggers.fire("user_request", "   ").outcome == TriggerOutcome.CONDITION_NOT_MET


def test_task_completion_rule_completes_task(core: DispatchCore) -> None:
    submitted = core.dispatcher.submit(
        {"type": "testing", "description": "Add testing for parser", "requirements": ["cases"]},
    )

    result = core.triggers.fire(
        "task_completion",
        {"status": "completed", "task_id": submitted.task_id, "result": {"cases": 12}},
    )

    assert result.outcome == TriggerOutcome.EXECUTED
    assert core.store.get(submitted.task_id).status == TaskStatus.COMPLETED
    assert core.triggers.fire("task_completion", {"status": "failed"}).outcome == (
        TriggerOutcome.CONDITION_NOT_MET
    )


def test_agent_status_change_toggles_availability(core: DispatchCore) -> None:
    core.triggers.fire("agent_status_change", {"agent": "developer", "status": "busy"})
    assert core.registry.get("developer").available is False
    assert core.channel.endpoint_statuses()["developer"]["status"] == "busy"

    result = core.triggers.fire("agent_status_change", {"agent": "developer", "status": "idle"})
    assert result.outcome == TriggerOutcome.EXECUTED
    assert core.registry.get("developer").available is True


def test_performance_alert_broadcasts_report(core: DispatchCore) -> None:
    result = core.triggers.fire("performance_alert", {"performance_score": 0.4, "agent": "analyst"})

    assert result.outcome == TriggerOutcome.EXECUTED
    assert len(result.result) == 4
    reports = [
        message
        for message in core.channel.history()
        if message.message_type == MessageType.PERFORMANCE_REPORT
    ]
    assert {message.receiver for message in reports} == {"dispatcher", "manager", "analyst", "developer"}
    assert core.triggers.fire("performance_alert", {"performance_score": 0.9}).outcome == (
        TriggerOutcome.CONDITION_NOT_MET
    )


def test_security_alert_audits_and_broadcasts_critical(core: DispatchCore) -> None:
    result = core.triggers.fire("security_alert", {"security_violation": True, "source": "api"})

    assert result.outcome == TriggerOutcome.EXECUTED
    alerts = [
        message
        for message in core.channel.history()
        if message.message_type == MessageType.SECURITY_ALERT
    ]
    assert alerts
    assert all(message.priority == "critical" for message in alerts)
    assert core.session.audit_entries()[-1].details["source"] == "api"


def test_completion_trigger_counts_one_success(core: DispatchCore) -> None:
    core.start()
    submitted = core.dispatcher.submit(
        {"type": "testing", "description": "Add testing for lexer", "requirements": ["cases"]},
    )

    core.triggers.fire("task_completion", {"status": "completed", "task_id": submitted.task_id})

    status = core.session.status()
    assert status.success_count == 1
    assert status.error_count == 0
    assert core.session.current.triggers_executed == 1


def test_only_executed_firings_count_as_triggers(core: DispatchCore, scheduler) -> None:
    core.start()

    assert core.triggers.fire("performance_alert", {"performance_score": 0.95}).outcome == (
        TriggerOutcome.CONDITION_NOT_MET
    )
    assert core.triggers.fire("task_completion", {"status": "completed", "task_id": "TASK-x"}).outcome == (
        TriggerOutcome.FAILED
    )

    assert core.session.current.triggers_executed == 0
    assert scheduler.scheduled == []


def test_critical_rules_are_forced_to_a_single_retry(scheduler, events) -> None:
    engine = _engine(scheduler, events)
    engine.register(
        TriggerRule(
            name="security_alert",
            condition=lambda event: True,
            action=_always_fail,
            priority=PriorityClass.HIGH,
            max_retries=5,
        ),
    )
    engine.register(
        TriggerRule(
            name="lockdown",
            condition=lambda event: True,
            action=_always_fail,
            priority=PriorityClass.CRITICAL,
            max_retries=4,
        ),
    )

    assert engine.rules() == {
        "security_alert": {"priority": "high", "max_retries": 1},
        "lockdown": {"priority": "critical", "max_retries": 1},
    }
    engine.fire("security_alert", {})
    scheduler.run_all()
    assert [entry.delay_seconds for entry in scheduler.scheduled] == [1.0]
    assert engine.results()[-1].outcome == TriggerOutcome.FAILED
