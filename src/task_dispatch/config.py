"""Runtime configuration for the dispatch core."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass(frozen=True, slots=True)
class WorkerDefinition:
    """Static description of one worker registered at startup."""

    name: str
    capacity: int
    specializations: tuple[str, ...] = ()


DEFAULT_WORKERS: tuple[WorkerDefinition, ...] = (
    WorkerDefinition(
        name="manager",
        capacity=5,
        specializations=(
            "project_management",
            "workflow_orchestration",
            "resource_allocation",
        ),
    ),
    WorkerDefinition(
        name="analyst",
        capacity=3,
        specializations=(
            "requirements_analysis",
            "task_planning",
            "complexity_assessment",
        ),
    ),
    WorkerDefinition(
        name="developer",
        capacity=2,
        specializations=(
            "frontend_development",
            "component_creation",
            "performance_optimization",
        ),
    ),
)


@dataclass(slots=True)
class WorkerSettings:
    """Worker pool settings."""

    workers: tuple[WorkerDefinition, ...] = DEFAULT_WORKERS
    symmetric_decay: bool = False


@dataclass(slots=True)
class MessagingSettings:
    """Message delivery retry settings."""

    max_retries: int = 3
    retry_base_seconds: float = 1.0


@dataclass(slots=True)
class SessionSettings:
    audit_size: int = 10
    history_limit: int = 100
    flush_on_stop: bool = False


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".task_dispatch.db")
    workers: WorkerSettings = field(default_factory=WorkerSettings)
    messaging: MessagingSettings = field(default_factory=MessagingSettings)
    session: SessionSettings = field(default_factory=SessionSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with defaults for local runs."""

        raw_workers = os.getenv("TASK_DISPATCH_WORKERS", "").strip()
        return cls(
            db_path=db_path or Path(os.getenv("TASK_DISPATCH_DB_PATH", ".task_dispatch.db")),
            workers=WorkerSettings(
                workers=parse_workers(raw_workers) if raw_workers else DEFAULT_WORKERS,
                symmetric_decay=_env_bool("TASK_DISPATCH_SYMMETRIC_DECAY", default=False),
            ),
            messaging=MessagingSettings(
                max_retries=int(os.getenv("TASK_DISPATCH_MESSAGE_MAX_RETRIES", "3")),
                retry_base_seconds=float(
                    os.getenv("TASK_DISPATCH_RETRY_BASE_SECONDS", "1.0"),
                ),
            ),
            session=SessionSettings(
                audit_size=int(os.getenv("TASK_DISPATCH_AUDIT_SIZE", "10")),
                history_limit=int(os.getenv("TASK_DISPATCH_SESSION_HISTORY_LIMIT", "100")),
                flush_on_stop=_env_bool("TASK_DISPATCH_FLUSH_ON_STOP", default=False),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for inconsistent values."""

        if not self.workers.workers:
            raise ValueError("At least one worker must be configured.")
        seen: set[str] = set()
        for worker in self.workers.workers:
            if worker.capacity < 1:
                raise ValueError(
                    f"Worker capacity must be a positive integer: {worker.name!r} -> {worker.capacity}",
                )
            if worker.name in seen:
                raise ValueError(f"Duplicate worker name: {worker.name!r}")
            seen.add(worker.name)
        if self.messaging.max_retries < 0:
            raise ValueError("TASK_DISPATCH_MESSAGE_MAX_RETRIES must be >= 0.")
        if self.messaging.retry_base_seconds < 0:
            raise ValueError("TASK_DISPATCH_RETRY_BASE_SECONDS must be >= 0.")
        if self.session.audit_size < 1:
            raise ValueError("TASK_DISPATCH_AUDIT_SIZE must be > 0.")
        if self.session.history_limit < 1:
            raise ValueError("TASK_DISPATCH_SESSION_HISTORY_LIMIT must be > 0.")


def parse_workers(raw: str) -> tuple[WorkerDefinition, ...]:
    """Parse ``name:capacity:tag1|tag2`` entries separated by commas."""

    workers: list[WorkerDefinition] = []
    for part in raw.split(","):
        token = part.strip()
        if not token:
            continue
        pieces = token.split(":")
        if len(pieces) not in {2, 3}:
            raise ValueError(
                "Invalid TASK_DISPATCH_WORKERS entry: "
                f"{token!r}. Expected format '<name>:<capacity>[:<tag>|<tag>]'.",
            )
        name = pieces[0].strip()
        if not name:
            raise ValueError(f"Invalid TASK_DISPATCH_WORKERS entry: {token!r} (empty name)")
        try:
            capacity = int(pieces[1].strip())
        except ValueError as error:
            raise ValueError(
                f"Invalid TASK_DISPATCH_WORKERS capacity for {name!r}: {pieces[1]!r}",
            ) from error
        tags = tuple(tag.strip() for tag in pieces[2].split("|") if tag.strip()) if len(pieces) == 3 else ()  # noqa: PLR2004
        workers.append(WorkerDefinition(name=name, capacity=capacity, specializations=tags))
    return tuple(workers)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
