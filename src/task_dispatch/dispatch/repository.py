"""SQLite persistence for task records and dispatch events."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from sqlmodel import Session, SQLModel, col, select

from task_dispatch.dispatch.models import TERMINAL_TASK_STATUSES, TaskStatus
from task_dispatch.dispatch.sinks import RecordedEvent
from task_dispatch.storage.common import build_sqlite_engine, from_iso, utc_now
from task_dispatch.storage.sqlmodel_models import DispatchEventRow, DispatchTaskRow


class SqlDispatchRepository:
    """Task and event sink facade backed by SQLModel + SQLite."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Create the dispatch tables when missing."""

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        SQLModel.metadata.create_all(
            self.engine,
            tables=[DispatchTaskRow.__table__, DispatchEventRow.__table__],  # type: ignore[attr-defined]
        )

    # -- TaskSink ---------------------------------------------------------------

    def save(self, task_id: str, record: dict[str, Any]) -> None:
        """Upsert one task record."""

        now = utc_now()
        with Session(self.engine) as session:
            row = session.get(DispatchTaskRow, task_id)
            if row is None:
                created = from_iso(record.get("created_at")) or now
                row = DispatchTaskRow(
                    task_id=task_id,
                    task_type=str(record["type"]),
                    status=str(record["status"]),
                    record_json="{}",
                    created_at=_to_db_datetime(created),
                    updated_at=_to_db_datetime(now),
                )
            row.status = str(record["status"])
            row.worker_id = record.get("assigned_to")
            row.priority = int(record.get("priority") or 0)
            row.progress = int(record.get("progress") or 0)
            row.record_json = json.dumps(record, ensure_ascii=False, sort_keys=True, default=str)
            row.updated_at = _to_db_datetime(now)
            session.add(row)
            session.commit()

    def load(self, task_id: str) -> dict[str, Any] | None:
        with Session(self.engine) as session:
            row = session.get(DispatchTaskRow, task_id)
            return _decode(row.record_json) if row is not None else None

    def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        limit: int = 50,
    ) -> list[dict[str, Any]]:
        """List recent task records, newest first, optionally filtered by status."""

        with Session(self.engine) as session:
            statement = select(DispatchTaskRow).order_by(col(DispatchTaskRow.created_at).desc())
            if status is not None:
                statement = statement.where(DispatchTaskRow.status == status.value)
            rows = session.exec(statement.limit(limit)).all()
        return [_decode(row.record_json) for row in rows]

    def restorable_records(self) -> list[dict[str, Any]]:
        """Every stored record in creation order, active tasks last."""

        terminal = {status.value for status in TERMINAL_TASK_STATUSES}
        with Session(self.engine) as session:
            rows = session.exec(
                select(DispatchTaskRow).order_by(col(DispatchTaskRow.created_at).asc()),
            ).all()
        archived = [_decode(row.record_json) for row in rows if row.status in terminal]
        active = [_decode(row.record_json) for row in rows if row.status not in terminal]
        return archived + active

    # -- EventSink --------------------------------------------------------------

    def emit(self, event_name: str, data: dict[str, Any]) -> None:
        task_id = data.get("task_id")
        with Session(self.engine) as session:
            session.add(
                DispatchEventRow(
                    event_name=event_name,
                    task_id=str(task_id) if task_id is not None else None,
                    details_json=json.dumps(data, ensure_ascii=False, sort_keys=True, default=str),
                    created_at=_to_db_datetime(utc_now()),
                ),
            )
            session.commit()

    def list_events(
        self,
        *,
        task_id: str | None = None,
        limit: int = 50,
    ) -> list[RecordedEvent]:
        """Return the most recent events, oldest first."""

        with Session(self.engine) as session:
            statement = select(DispatchEventRow).order_by(col(DispatchEventRow.event_id).desc())
            if task_id is not None:
                statement = statement.where(DispatchEventRow.task_id == task_id)
            rows = session.exec(statement.limit(limit)).all()
        return [
            RecordedEvent(
                name=row.event_name,
                data=_decode(row.details_json),
                created_at=_to_utc_aware_datetime(row.created_at),
            )
            for row in reversed(rows)
        ]


def _decode(raw: str) -> dict[str, Any]:
    parsed = json.loads(raw) if raw else {}
    return parsed if isinstance(parsed, dict) else {}


def _to_db_datetime(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def _to_utc_aware_datetime(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)
