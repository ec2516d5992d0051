"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable

import pytest

from task_dispatch.dispatch.scheduler import ManualRetryScheduler, ScheduledRetry
from task_dispatch.dispatch.services import DispatchCore
from task_dispatch.dispatch.sinks import InMemoryTaskSink, RecordingEventSink


class RecordingRetryScheduler(ManualRetryScheduler):
    """Manual scheduler that also keeps every accepted retry for delay assertions."""

    def __init__(self) -> None:
        super().__init__()
        self.scheduled: list[ScheduledRetry] = []

    def schedule(
        self,
        delay_seconds: float,
        callback: Callable[[], None],
        *,
        label: str,
        on_discard: Callable[[], None] | None = None,
    ) -> ScheduledRetry | None:
        entry = super().schedule(delay_seconds, callback, label=label, on_discard=on_discard)
        if entry is not None:
            self.scheduled.append(entry)
        return entry


@pytest.fixture()
def scheduler() -> RecordingRetryScheduler:
    return RecordingRetryScheduler()


@pytest.fixture()
def events() -> RecordingEventSink:
    return RecordingEventSink()


@pytest.fixture()
def task_sink() -> InMemoryTaskSink:
    return InMemoryTaskSink()


@pytest.fixture()
def core(
    scheduler: ManualRetryScheduler,
    events: RecordingEventSink,
    task_sink: InMemoryTaskSink,
) -> DispatchCore:
    """Core with the default worker pool and a manually driven retry clock."""

    return DispatchCore(task_sink=task_sink, event_sink=events, scheduler=scheduler)


@pytest.fixture(autouse=True)
def _clean_dispatch_env(monkeypatch) -> None:
    for name in (
        "TASK_DISPATCH_DB_PATH",
        "TASK_DISPATCH_WORKERS",
        "TASK_DISPATCH_SYMMETRIC_DECAY",
        "TASK_DISPATCH_MESSAGE_MAX_RETRIES",
        "TASK_DISPATCH_RETRY_BASE_SECONDS",
        "TASK_DISPATCH_AUDIT_SIZE",
        "TASK_DISPATCH_SESSION_HISTORY_LIMIT",
        "TASK_DISPATCH_FLUSH_ON_STOP",
    ):
        monkeypatch.delenv(name, raising=False)
