from __future__ import annotations

import gc
import threading
import weakref

import allure
import pytest

from task_dispatch.dispatch.scheduler import ManualRetryScheduler, ThreadedRetryScheduler, _HeapScheduler

pytestmark = [
    allure.epic("Task Dispatch"),
    allure.feature("Retry Scheduling"),
]


def test_manual_scheduler_runs_due_entries_in_order() -> None:
    scheduler = ManualRetryScheduler()
    ran: list[str] = []
    scheduler.schedule(2.0, lambda: ran.append("late"), label="late")
    scheduler.schedule(1.0, lambda: ran.append("early"), label="early")

    assert scheduler.advance(0.5) == 0
    assert scheduler.advance(0.5) == 1
    assert ran == ["early"]
    assert scheduler.run_all() == 1
    assert ran == ["early", "late"]
    assert scheduler.now == 2.0


def test_callbacks_can_schedule_follow_ups() -> None:
    scheduler = ManualRetryScheduler()
    ran: list[float] = []

    def _step() -> None:
        ran.append(scheduler.now)
        if len(ran) < 3:
            scheduler.schedule(1.0, _step, label="step")

    scheduler.schedule(1.0, _step, label="step")
    scheduler.advance(10.0)

    assert ran == [1.0, 2.0, 3.0]


def test_failing_callback_does_not_stop_the_scheduler() -> None:
    scheduler = ManualRetryScheduler()
    ran: list[str] = []

    def _boom() -> None:
        raise RuntimeError("boom")

    scheduler.schedule(1.0, _boom, label="boom")
    scheduler.schedule(1.0, lambda: ran.append("ok"), label="ok")

    assert scheduler.run_all() == 2
    assert ran == ["ok"]


def test_shutdown_discards_by_default_and_rejects_new_entries() -> None:
    scheduler = ManualRetryScheduler()
    ran: list[str] = []
    discarded: list[str] = []
    scheduler.schedule(1.0, lambda: ran.append("a"), label="a", on_discard=lambda: discarded.append("a"))

    assert scheduler.shutdown() == 1
    assert discarded == ["a"]

    entry = scheduler.schedule(1.0, lambda: ran.append("b"), label="b", on_discard=lambda: discarded.append("b"))
    assert entry is None
    assert discarded == ["a", "b"]
    assert ran == []

    scheduler.open()
    assert scheduler.schedule(1.0, lambda: ran.append("c"), label="c") is not None


def test_shutdown_with_flush_runs_pending_once() -> None:
    scheduler = ManualRetryScheduler()
    ran: list[str] = []
    scheduler.schedule(5.0, lambda: ran.append("slow"), label="slow")
    scheduler.schedule(1.0, lambda: ran.append("fast"), label="fast")

    assert scheduler.shutdown(flush=True) == 2
    assert ran == ["fast", "slow"]
    assert scheduler.pending() == 0


def test_threaded_scheduler_runs_callback_after_delay() -> None:
    scheduler = ThreadedRetryScheduler(name="test-retry")
    done = threading.Event()
    try:
        scheduler.schedule(0.05, done.set, label="ping")
        assert done.wait(timeout=5)
    finally:
        scheduler.shutdown()


def test_threaded_scheduler_discards_on_shutdown() -> None:
    scheduler = ThreadedRetryScheduler(name="test-retry")
    ran = threading.Event()
    discarded = threading.Event()
    scheduler.schedule(60.0, ran.set, label="far", on_discard=discarded.set)

    assert scheduler.shutdown() == 1
    assert discarded.is_set()
    assert not ran.is_set()


class _Payload:
    pass


def test_executed_retries_are_not_retained() -> None:
    scheduler = ManualRetryScheduler()
    payloads = [_Payload() for _ in range(100)]
    refs = [weakref.ref(payload) for payload in payloads]
    for index, payload in enumerate(payloads):
        scheduler.schedule(1.0, lambda payload=payload: None, label=f"retry-{index}")
    del payloads, payload

    assert scheduler.run_all() == 100
    gc.collect()

    assert scheduler.pending() == 0
    assert all(ref() is None for ref in refs)


def test_heap_scheduler_requires_a_clock() -> None:
    with pytest.raises(TypeError):
        _HeapScheduler()
