"""Persistence and event sink contracts consumed by the dispatch core."""

from __future__ import annotations

import copy
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from task_dispatch.storage.common import utc_now

logger = logging.getLogger(__name__)


class TaskSink(Protocol):
    """Persists task records; one call writes exactly one record."""

    def save(self, task_id: str, record: dict[str, Any]) -> None:
        """Upsert the record for a task."""

    def load(self, task_id: str) -> dict[str, Any] | None:
        """Return the stored record or ``None`` when absent."""


class EventSink(Protocol):
    """Receives structured observability events."""

    def emit(self, event_name: str, data: dict[str, Any]) -> None:
        """Publish one event."""


class InMemoryTaskSink:
    """Dictionary-backed task sink for tests and ephemeral runs."""

    def __init__(self) -> None:
        self._records: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()

    def save(self, task_id: str, record: dict[str, Any]) -> None:
        with self._lock:
            self._records[task_id] = copy.deepcopy(record)

    def load(self, task_id: str) -> dict[str, Any] | None:
        with self._lock:
            record = self._records.get(task_id)
            return copy.deepcopy(record) if record is not None else None

    def records(self) -> list[dict[str, Any]]:
        with self._lock:
            return [copy.deepcopy(record) for record in self._records.values()]


class LoggingEventSink:
    """Writes events to the module logger at INFO level."""

    def emit(self, event_name: str, data: dict[str, Any]) -> None:
        logger.info("event=%s data=%s", event_name, data)


@dataclass(slots=True)
class RecordedEvent:
    name: str
    data: dict[str, Any]
    created_at: datetime = field(default_factory=utc_now)


class RecordingEventSink:
    """Keeps emitted events in memory, in emission order."""

    def __init__(self) -> None:
        self.events: list[RecordedEvent] = []
        self._lock = threading.Lock()

    def emit(self, event_name: str, data: dict[str, Any]) -> None:
        with self._lock:
            self.events.append(RecordedEvent(name=event_name, data=dict(data)))

    def names(self) -> list[str]:
        with self._lock:
            return [event.name for event in self.events]

    def by_name(self, event_name: str) -> list[RecordedEvent]:
        with self._lock:
            return [event for event in self.events if event.name == event_name]


def safe_emit(sink: EventSink, event_name: str, data: dict[str, Any]) -> None:
    """Emit without letting sink failures escape into the core."""

    try:
        sink.emit(event_name, data)
    except Exception:  # noqa: BLE001
        logger.exception("Event sink failed for %s", event_name)


def safe_save(sink: TaskSink, task_id: str, record: dict[str, Any]) -> bool:
    """Persist a record; failures are logged and never roll back memory state."""

    try:
        sink.save(task_id, record)
    except Exception:  # noqa: BLE001
        logger.exception("Failed to persist task %s", task_id)
        return False
    return True
