"""Session tracking: run boundaries, counters and the audit ring."""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from typing import Any
from uuid import uuid4

from task_dispatch.dispatch.errors import SessionAlreadyActive, SessionNotActive
from task_dispatch.dispatch.models import AuditEntry, Session, SessionStatus, SessionStatusView
from task_dispatch.dispatch.sinks import EventSink, LoggingEventSink, safe_emit
from task_dispatch.storage.common import utc_now

logger = logging.getLogger(__name__)

DEFAULT_AUDIT_SIZE = 10
DEFAULT_HISTORY_LIMIT = 100


class SessionTracker:
    """Owns the current session plus lifetime success/error counters.

    Counters survive across sessions; each session additionally keeps its own
    counters and audit entries. ``stop`` runs the registered shutdown hooks
    before the session is archived.
    """

    def __init__(
        self,
        *,
        event_sink: EventSink | None = None,
        audit_size: int = DEFAULT_AUDIT_SIZE,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
    ) -> None:
        if audit_size < 1:
            raise ValueError("audit_size must be >= 1.")
        self.event_sink = event_sink or LoggingEventSink()
        self.audit_size = audit_size
        self._current: Session | None = None
        self._history: deque[Session] = deque(maxlen=history_limit)
        self._audit: deque[AuditEntry] = deque(maxlen=audit_size)
        self._successes = 0
        self._errors = 0
        self._stop_hooks: list[Callable[[], None]] = []
        self._lock = threading.RLock()

    @property
    def is_active(self) -> bool:
        with self._lock:
            return self._current is not None

    @property
    def current(self) -> Session | None:
        with self._lock:
            return self._current

    def add_stop_hook(self, hook: Callable[[], None]) -> None:
        """Register a callable run by ``stop`` before the session closes."""

        self._stop_hooks.append(hook)

    def start(self) -> Session:
        with self._lock:
            if self._current is not None:
                raise SessionAlreadyActive(self._current.session_id)
            session = Session(
                session_id=f"SESSION-{int(time.time() * 1000)}-{uuid4().hex[:6]}",
                started_at=utc_now(),
                audit=deque(maxlen=self.audit_size),
            )
            self._current = session
        logger.info("Session %s started", session.session_id)
        safe_emit(self.event_sink, "session_started", {"session_id": session.session_id})
        return session

    def stop(self) -> Session:
        """End the active session after running the shutdown hooks."""

        with self._lock:
            session = self._current
            if session is None:
                raise SessionNotActive("No active session to stop.")
        for hook in self._stop_hooks:
            hook()
        with self._lock:
            session.ended_at = utc_now()
            session.status = SessionStatus.STOPPED
            self._history.append(session)
            self._current = None
        logger.info(
            "Session %s stopped: %d triggers, %d successes, %d errors",
            session.session_id,
            session.triggers_executed,
            session.successes,
            session.errors_encountered,
        )
        safe_emit(self.event_sink, "session_stopped", session.to_record())
        return session

    def record_success(self) -> None:
        with self._lock:
            self._successes += 1
            if self._current is not None:
                self._current.successes += 1

    def record_error(self, error: str | None = None) -> None:
        with self._lock:
            self._errors += 1
            if self._current is not None:
                self._current.errors_encountered += 1
        if error:
            logger.debug("Session error recorded: %s", error)

    def record_trigger(self) -> None:
        with self._lock:
            if self._current is not None:
                self._current.triggers_executed += 1

    def audit(self, kind: str, details: dict[str, Any]) -> AuditEntry:
        """Append a security or performance audit entry."""

        entry = AuditEntry(kind=kind, details=dict(details))
        with self._lock:
            self._audit.append(entry)
            if self._current is not None:
                self._current.audit.append(entry)
        return entry

    def audit_entries(self) -> list[AuditEntry]:
        with self._lock:
            return list(self._audit)

    def history(self, limit: int = 10) -> list[Session]:
        with self._lock:
            sessions = list(self._history)
        return sessions[-limit:] if limit > 0 else []

    def status(self) -> SessionStatusView:
        with self._lock:
            total = self._successes + self._errors
            return SessionStatusView(
                is_active=self._current is not None,
                current_session=self._current.to_record() if self._current else None,
                total_sessions=len(self._history),
                success_count=self._successes,
                error_count=self._errors,
                success_rate=self._successes / total if total else 0.0,
                audit=[entry.to_record() for entry in self._audit],
            )
