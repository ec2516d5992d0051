"""SQLModel ORM tables for dispatch persistence."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, Index, Text
from sqlmodel import Field, SQLModel


class DispatchTaskRow(SQLModel, table=True):
    __tablename__ = "dispatch_tasks"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_dispatch_tasks_status_worker", "status", "worker_id"),)

    task_id: str = Field(primary_key=True)
    task_type: str = Field(index=True)
    status: str = Field(index=True)
    worker_id: str | None = Field(default=None, index=True)
    priority: int = Field(default=4)
    progress: int = Field(default=0)
    record_json: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class DispatchEventRow(SQLModel, table=True):
    __tablename__ = "dispatch_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_dispatch_events_name_time", "event_name", "created_at"),)

    event_id: int | None = Field(default=None, primary_key=True)
    event_name: str = Field(index=True)
    task_id: str | None = Field(default=None, index=True)
    details_json: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
