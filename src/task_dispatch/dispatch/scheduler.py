"""Deferred retry scheduling with explicit shutdown policy.

Retries never block the caller that triggered them: they are queued on a delay
heap and executed later, either by a background thread
(:class:`ThreadedRetryScheduler`) or by explicit stepping
(:class:`ManualRetryScheduler`).

Shutdown is deterministic. ``shutdown(flush=False)`` discards every pending
retry and calls its ``on_discard`` hook; ``shutdown(flush=True)`` runs every
pending retry once, in due order, ignoring the remaining delay. Retries
scheduled while the scheduler is closed are discarded immediately.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Protocol

logger = logging.getLogger(__name__)


@dataclass(order=True, slots=True)
class ScheduledRetry:
    """One deferred operation."""

    due_at: float
    sequence: int
    delay_seconds: float = field(compare=False)
    label: str = field(compare=False)
    callback: Callable[[], None] = field(compare=False, repr=False)
    on_discard: Callable[[], None] | None = field(compare=False, default=None, repr=False)


class RetryScheduler(Protocol):
    """Interface used by the messaging channel and the trigger engine."""

    def schedule(
        self,
        delay_seconds: float,
        callback: Callable[[], None],
        *,
        label: str,
        on_discard: Callable[[], None] | None = None,
    ) -> ScheduledRetry | None:
        """Queue ``callback`` to run after ``delay_seconds``."""

    def pending(self) -> int:
        """Number of retries waiting to run."""

    def open(self) -> None:
        """Accept new retries (again)."""

    def shutdown(self, *, flush: bool = False) -> int:
        """Stop accepting retries and flush or discard the pending ones."""


class _HeapScheduler(ABC):
    def __init__(self) -> None:
        self._heap: list[ScheduledRetry] = []
        self._sequence = itertools.count()
        self._lock = threading.Lock()
        self._closed = False

    @abstractmethod
    def _now(self) -> float:
        """Current time on the scheduler clock, in seconds."""

    def schedule(
        self,
        delay_seconds: float,
        callback: Callable[[], None],
        *,
        label: str,
        on_discard: Callable[[], None] | None = None,
    ) -> ScheduledRetry | None:
        """Queue ``callback``; returns ``None`` when the scheduler is closed."""

        with self._lock:
            closed = self._closed
            if not closed:
                entry = ScheduledRetry(
                    due_at=self._now() + max(0.0, delay_seconds),
                    sequence=next(self._sequence),
                    delay_seconds=delay_seconds,
                    label=label,
                    callback=callback,
                    on_discard=on_discard,
                )
                heapq.heappush(self._heap, entry)
        if closed:
            logger.warning("Scheduler closed; discarding retry %s", label)
            if on_discard is not None:
                on_discard()
            return None
        logger.debug("Scheduled retry %s in %.1fs", label, delay_seconds)
        self._wake()
        return entry

    def pending(self) -> int:
        with self._lock:
            return len(self._heap)

    def open(self) -> None:
        with self._lock:
            self._closed = False

    def shutdown(self, *, flush: bool = False) -> int:
        """Close the scheduler and flush or discard pending retries.

        Returns:
            Number of retries that were flushed or discarded.
        """

        with self._lock:
            self._closed = True
            drained = sorted(self._heap)
            self._heap.clear()
        self._stop_worker()
        for entry in drained:
            if flush:
                logger.info("Flushing retry %s on shutdown", entry.label)
                self._run(entry)
            else:
                logger.info("Discarding retry %s on shutdown", entry.label)
                if entry.on_discard is not None:
                    entry.on_discard()
        return len(drained)

    def _pop_due(self, now: float) -> ScheduledRetry | None:
        with self._lock:
            if self._heap and self._heap[0].due_at <= now:
                return heapq.heappop(self._heap)
            return None

    def _run(self, entry: ScheduledRetry) -> None:
        try:
            entry.callback()
        except Exception:  # noqa: BLE001
            logger.exception("Retry %s raised", entry.label)

    def _wake(self) -> None:
        return None

    def _stop_worker(self) -> None:
        return None


class ManualRetryScheduler(_HeapScheduler):
    """Scheduler driven by an explicit virtual clock.

    ``advance`` moves the clock forward and runs every retry that became due,
    including retries scheduled by callbacks while advancing.
    """

    def __init__(self) -> None:
        super().__init__()
        self.now = 0.0

    def _now(self) -> float:
        return self.now

    def advance(self, seconds: float) -> int:
        """Advance the clock and run due retries; returns how many ran."""

        target = self.now + seconds
        executed = 0
        while True:
            with self._lock:
                next_due = self._heap[0].due_at if self._heap else None
            if next_due is None or next_due > target:
                break
            self.now = max(self.now, next_due)
            entry = self._pop_due(self.now)
            if entry is None:
                continue
            self._run(entry)
            executed += 1
        self.now = target
        return executed

    def run_all(self, *, max_steps: int = 10_000) -> int:
        """Run pending retries in due order until none remain."""

        executed = 0
        while executed < max_steps:
            with self._lock:
                if not self._heap:
                    break
                next_due = self._heap[0].due_at
            executed += self.advance(max(0.0, next_due - self.now))
        return executed


class ThreadedRetryScheduler(_HeapScheduler):
    """Scheduler backed by one daemon thread waiting on the delay heap."""

    def __init__(self, *, name: str = "retry-scheduler") -> None:
        super().__init__()
        self.name = name
        self._condition = threading.Condition()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def _now(self) -> float:
        return time.monotonic()

    def open(self) -> None:
        super().open()
        self._stop.clear()

    def _wake(self) -> None:
        self._ensure_thread()
        with self._condition:
            self._condition.notify_all()

    def _ensure_thread(self) -> None:
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._stop.clear()
            self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
            self._thread.start()

    def _loop(self) -> None:
        logger.debug("Retry scheduler thread started")
        while not self._stop.is_set():
            entry = self._pop_due(self._now())
            if entry is not None:
                self._run(entry)
                continue
            with self._condition:
                if self._stop.is_set():
                    break
                with self._lock:
                    timeout = self._heap[0].due_at - self._now() if self._heap else None
                self._condition.wait(timeout=None if timeout is None else max(0.0, timeout))
        logger.debug("Retry scheduler thread stopped")

    def _stop_worker(self) -> None:
        self._stop.set()
        with self._condition:
            self._condition.notify_all()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=5)
        self._thread = None
