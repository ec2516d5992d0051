"""Worker registry: capacity accounting, selection and rolling performance."""

from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from task_dispatch.dispatch.errors import (
    InternalInvariantViolation,
    NoAvailableWorker,
    ValidationError,
)
from task_dispatch.dispatch.models import TaskSpec, WorkerSnapshot
from task_dispatch.dispatch.scoring import fitness

logger = logging.getLogger(__name__)

PERFORMANCE_WINDOW = 10
RATE_DECAY = 0.9
RATE_STEP = 0.1


@dataclass(slots=True)
class _WorkerState:
    name: str
    capacity: int
    specializations: tuple[str, ...]
    load: int = 0
    available: bool = True
    success_rate: float = 0.0
    completion_rate: float = 0.0
    average_duration_seconds: float = 0.0
    durations: deque[float] = field(default_factory=lambda: deque(maxlen=PERFORMANCE_WINDOW))
    completed: int = 0
    failed: int = 0

    def snapshot(self) -> WorkerSnapshot:
        return WorkerSnapshot(
            name=self.name,
            capacity=self.capacity,
            load=self.load,
            specializations=self.specializations,
            available=self.available,
            success_rate=self.success_rate,
            completion_rate=self.completion_rate,
            average_duration_seconds=self.average_duration_seconds,
            recent_durations=tuple(self.durations),
        )


class WorkerRegistry:
    """Tracks workers and guards their load with a lock.

    Workers are kept in registration order, which also breaks fitness ties.
    With ``symmetric_decay`` enabled a failed completion decays the success
    and completion rates instead of leaving them unchanged.
    """

    def __init__(self, *, symmetric_decay: bool = False) -> None:
        self.symmetric_decay = symmetric_decay
        self._workers: dict[str, _WorkerState] = {}
        self._lock = threading.RLock()

    def register(
        self,
        name: str,
        *,
        capacity: int,
        specializations: Iterable[str] = (),
    ) -> WorkerSnapshot:
        """Add a worker; names are unique and capacity must be at least 1."""

        normalized = name.strip()
        if not normalized:
            raise ValidationError("Worker name must be non-empty.")
        if capacity < 1:
            raise ValidationError(f"Worker {normalized!r} capacity must be >= 1, got {capacity}.")
        with self._lock:
            if normalized in self._workers:
                raise ValidationError(f"Worker already registered: {normalized}")
            state = _WorkerState(
                name=normalized,
                capacity=capacity,
                specializations=tuple(specializations),
            )
            self._workers[normalized] = state
            logger.debug("Registered worker %s (capacity=%d)", normalized, capacity)
            return state.snapshot()

    def __contains__(self, name: object) -> bool:
        return name in self._workers

    def names(self) -> list[str]:
        with self._lock:
            return list(self._workers)

    def get(self, name: str) -> WorkerSnapshot:
        with self._lock:
            return self._state(name).snapshot()

    def snapshots(self) -> list[WorkerSnapshot]:
        with self._lock:
            return [state.snapshot() for state in self._workers.values()]

    @staticmethod
    def is_available(worker: WorkerSnapshot) -> bool:
        return worker.available and worker.load < worker.capacity

    def select(self, spec: TaskSpec, task_priority: int) -> WorkerSnapshot:
        """Pick the available worker with the highest fitness.

        Raises:
            NoAvailableWorker: every worker is unavailable or at capacity.
        """

        with self._lock:
            best: WorkerSnapshot | None = None
            best_score = 0.0
            for state in self._workers.values():
                snapshot = state.snapshot()
                if not self.is_available(snapshot):
                    continue
                score = fitness(snapshot, spec, task_priority)
                if best is None or score > best_score:
                    best, best_score = snapshot, score
            if best is None:
                raise NoAvailableWorker(spec.type)
            return best

    def reserve(self, name: str) -> int:
        """Increment load by one and return the new load."""

        with self._lock:
            state = self._state(name)
            if state.load >= state.capacity:
                self._violation(
                    f"reserve on worker {name!r} would exceed capacity "
                    f"(load={state.load}, capacity={state.capacity})",
                )
            state.load += 1
            return state.load

    def release(self, name: str) -> int:
        """Decrement load by one and return the new load."""

        with self._lock:
            state = self._state(name)
            if state.load <= 0:
                self._violation(f"release on worker {name!r} would make load negative")
            state.load -= 1
            return state.load

    def record_completion(self, name: str, duration_seconds: float, *, succeeded: bool) -> None:
        """Update the rolling duration window and rate averages."""

        with self._lock:
            state = self._state(name)
            state.durations.append(max(0.0, duration_seconds))
            state.average_duration_seconds = sum(state.durations) / len(state.durations)
            if succeeded:
                state.completed += 1
                state.completion_rate = state.completion_rate * RATE_DECAY + RATE_STEP
                state.success_rate = state.success_rate * RATE_DECAY + RATE_STEP
                return
            state.failed += 1
            if self.symmetric_decay:
                state.completion_rate *= RATE_DECAY
                state.success_rate *= RATE_DECAY

    def set_availability(self, name: str, available: bool) -> None:
        with self._lock:
            self._state(name).available = available

    def reset_loads(self) -> None:
        """Zero every worker load at the end of a session."""

        with self._lock:
            for state in self._workers.values():
                if state.load:
                    logger.info("Resetting load of worker %s from %d", state.name, state.load)
                state.load = 0

    def query(self) -> dict[str, dict[str, Any]]:
        """Readable load/capacity/performance view keyed by worker name."""

        with self._lock:
            return {
                state.name: {
                    "load": state.load,
                    "capacity": state.capacity,
                    "specializations": list(state.specializations),
                    "available": state.available,
                    "performance": {
                        "success_rate": state.success_rate,
                        "completion_rate": state.completion_rate,
                        "average_duration_seconds": state.average_duration_seconds,
                        "recent_durations": list(state.durations),
                        "completed": state.completed,
                        "failed": state.failed,
                    },
                }
                for state in self._workers.values()
            }

    def _state(self, name: str) -> _WorkerState:
        state = self._workers.get(name)
        if state is None:
            raise ValidationError(f"Unknown worker: {name}")
        return state

    def _violation(self, message: str) -> None:
        logger.error("Internal invariant violation: %s", message)
        raise InternalInvariantViolation(message)
