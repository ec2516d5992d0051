"""Per-operation timing metrics for assignment, delivery and triggers."""

from __future__ import annotations

import threading
from collections import defaultdict, deque
from dataclasses import dataclass

DEFAULT_WINDOW = 500


@dataclass(slots=True)
class OperationStats:
    """Duration summary for one operation name."""

    count: int
    average_seconds: float
    min_seconds: float
    max_seconds: float

    def to_dict(self) -> dict[str, float | int]:
        return {
            "count": self.count,
            "average_seconds": self.average_seconds,
            "min_seconds": self.min_seconds,
            "max_seconds": self.max_seconds,
        }


class PerformanceMetrics:
    """Bounded duration samples keyed by operation."""

    def __init__(self, *, window: int = DEFAULT_WINDOW) -> None:
        self._samples: defaultdict[str, deque[float]] = defaultdict(
            lambda: deque(maxlen=window),
        )
        self._lock = threading.Lock()

    def record(self, operation: str, seconds: float) -> None:
        with self._lock:
            self._samples[operation].append(max(0.0, seconds))

    def report(self) -> dict[str, OperationStats]:
        """Summaries for every operation with at least one sample."""

        with self._lock:
            return {
                operation: OperationStats(
                    count=len(samples),
                    average_seconds=sum(samples) / len(samples),
                    min_seconds=min(samples),
                    max_seconds=max(samples),
                )
                for operation, samples in self._samples.items()
                if samples
            }

    def clear(self) -> None:
        with self._lock:
            self._samples.clear()
