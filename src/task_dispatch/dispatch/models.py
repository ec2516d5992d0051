"""Domain models for task dispatch, messaging, triggers and sessions."""

from __future__ import annotations

from collections import deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from task_dispatch.dispatch.errors import ValidationError
from task_dispatch.storage.common import from_iso, to_iso, utc_now


class TaskType(str, Enum):
    """Closed set of task kinds accepted by the dispatcher."""

    COMPONENT_DEVELOPMENT = "component_development"
    BUG_FIX = "bug_fix"
    FEATURE_IMPLEMENTATION = "feature_implementation"
    PERFORMANCE_OPTIMIZATION = "performance_optimization"
    SECURITY_ENHANCEMENT = "security_enhancement"
    TESTING = "testing"
    DOCUMENTATION = "documentation"


class TaskStatus(str, Enum):
    """Task lifecycle states."""

    PENDING = "pending"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_TASK_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED})


class MessageType(str, Enum):
    """Closed set of message kinds exchanged between dispatcher and workers."""

    ASSIGNMENT = "assignment"
    COMPLETION = "completion"
    DATA_REQUEST = "data_request"
    DATA_RESPONSE = "data_response"
    STATUS_UPDATE = "status_update"
    ERROR = "error"
    PERFORMANCE_REPORT = "performance_report"
    SECURITY_ALERT = "security_alert"


class MessageStatus(str, Enum):
    """Delivery states of a message."""

    PENDING = "pending"
    PROCESSING = "processing"
    DELIVERED = "delivered"
    RETRYING = "retrying"
    FAILED = "failed"


class PriorityClass(str, Enum):
    """Priority classes of trigger rules and messages."""

    CRITICAL = "critical"
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"


class TriggerOutcome(str, Enum):
    """Result kinds of one trigger firing."""

    EXECUTED = "executed"
    CONDITION_NOT_MET = "condition_not_met"
    RETRY_SCHEDULED = "retry_scheduled"
    FAILED = "failed"


class SessionStatus(str, Enum):
    ACTIVE = "active"
    STOPPED = "stopped"


@dataclass(slots=True)
class TaskSpec:
    """Input payload for submitting a task."""

    type: str
    description: str
    requirements: list[str]
    urgency: str | None = None
    complexity: str | None = None
    estimated_duration: str | None = None
    dependencies: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> TaskSpec:
        """Build a spec from loosely-typed input, rejecting missing required fields."""

        for name in ("type", "description", "requirements"):
            if not data.get(name):
                raise ValidationError(f"Missing required task field: {name}")
        requirements = data["requirements"]
        if isinstance(requirements, str):
            requirements = [requirements]
        return cls(
            type=str(data["type"]),
            description=str(data["description"]),
            requirements=[str(item) for item in requirements],
            urgency=data.get("urgency"),
            complexity=data.get("complexity"),
            estimated_duration=data.get("estimated_duration"),
            dependencies=list(data.get("dependencies") or []),
            tags=list(data.get("tags") or []),
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "description": self.description,
            "requirements": list(self.requirements),
            "urgency": self.urgency,
            "complexity": self.complexity,
            "estimated_duration": self.estimated_duration,
            "dependencies": list(self.dependencies),
            "tags": list(self.tags),
        }


@dataclass(slots=True)
class Checkpoint:
    """Append-only progress marker attached to a task."""

    progress: int
    description: str
    timestamp: datetime

    def to_record(self) -> dict[str, Any]:
        return {
            "progress": self.progress,
            "description": self.description,
            "timestamp": to_iso(self.timestamp),
        }


@dataclass(slots=True)
class Task:
    """Mutable task record owned by the lifecycle store."""

    task_id: str
    task_type: TaskType
    description: str
    requirements: list[str]
    priority: int
    urgency: str = "normal"
    complexity: str = "medium"
    estimated_duration: str = "1 hour"
    status: TaskStatus = TaskStatus.PENDING
    worker_id: str | None = None
    progress: int = 0
    checkpoints: list[Checkpoint] = field(default_factory=list)
    dependencies: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    result: dict[str, Any] | None = None
    failure_reason: str | None = None
    created_at: datetime = field(default_factory=utc_now)
    assigned_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    failed_at: datetime | None = None
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TASK_STATUSES

    def duration_seconds(self) -> float | None:
        """Seconds between assignment and the terminal timestamp."""

        finished = self.completed_at or self.failed_at
        if self.assigned_at is None or finished is None:
            return None
        return max(0.0, (finished - self.assigned_at).total_seconds())

    def to_record(self) -> dict[str, Any]:
        """Serialize for the persistence sink."""

        return {
            "task_id": self.task_id,
            "type": self.task_type.value,
            "description": self.description,
            "requirements": list(self.requirements),
            "priority": self.priority,
            "urgency": self.urgency,
            "complexity": self.complexity,
            "estimated_duration": self.estimated_duration,
            "status": self.status.value,
            "assigned_to": self.worker_id,
            "progress": self.progress,
            "checkpoints": [checkpoint.to_record() for checkpoint in self.checkpoints],
            "dependencies": list(self.dependencies),
            "tags": list(self.tags),
            "result": self.result,
            "failure_reason": self.failure_reason,
            "created_at": to_iso(self.created_at),
            "assigned_at": to_iso(self.assigned_at),
            "started_at": to_iso(self.started_at),
            "completed_at": to_iso(self.completed_at),
            "failed_at": to_iso(self.failed_at),
            "updated_at": to_iso(self.updated_at),
        }

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> Task:
        """Rebuild a task from a persisted record."""

        return cls(
            task_id=record["task_id"],
            task_type=TaskType(record["type"]),
            description=record["description"],
            requirements=list(record.get("requirements") or []),
            priority=int(record["priority"]),
            urgency=record.get("urgency") or "normal",
            complexity=record.get("complexity") or "medium",
            estimated_duration=record.get("estimated_duration") or "1 hour",
            status=TaskStatus(record["status"]),
            worker_id=record.get("assigned_to"),
            progress=int(record.get("progress") or 0),
            checkpoints=[
                Checkpoint(
                    progress=int(item["progress"]),
                    description=item["description"],
                    timestamp=from_iso(item["timestamp"]) or utc_now(),
                )
                for item in record.get("checkpoints") or []
            ],
            dependencies=list(record.get("dependencies") or []),
            tags=list(record.get("tags") or []),
            result=record.get("result"),
            failure_reason=record.get("failure_reason"),
            created_at=from_iso(record.get("created_at")) or utc_now(),
            assigned_at=from_iso(record.get("assigned_at")),
            started_at=from_iso(record.get("started_at")),
            completed_at=from_iso(record.get("completed_at")),
            failed_at=from_iso(record.get("failed_at")),
            updated_at=from_iso(record.get("updated_at")) or utc_now(),
        )


@dataclass(slots=True)
class SubmitResult:
    """Outcome of a successful task submission."""

    task_id: str
    worker_id: str
    priority: int
    status: TaskStatus = TaskStatus.ASSIGNED
    assignment_seconds: float = 0.0


@dataclass(frozen=True, slots=True)
class WorkerSnapshot:
    """Immutable view of one worker used by the scoring functions."""

    name: str
    capacity: int
    load: int
    specializations: tuple[str, ...]
    available: bool = True
    success_rate: float = 0.0
    completion_rate: float = 0.0
    average_duration_seconds: float = 0.0
    recent_durations: tuple[float, ...] = ()

    @property
    def spare_capacity(self) -> int:
        return self.capacity - self.load


@dataclass(slots=True)
class Message:
    """Task-lifecycle message tracked by the messaging channel."""

    message_id: str
    sender: str
    receiver: str
    message_type: MessageType
    payload: dict[str, Any]
    priority: str = PriorityClass.NORMAL.value
    status: MessageStatus = MessageStatus.PENDING
    retry_count: int = 0
    max_retries: int = 3
    attempts: int = 0
    last_error: str | None = None
    response: dict[str, Any] | None = None
    created_at: datetime = field(default_factory=utc_now)
    delivered_at: datetime | None = None

    def to_record(self) -> dict[str, Any]:
        return {
            "message_id": self.message_id,
            "sender": self.sender,
            "receiver": self.receiver,
            "type": self.message_type.value,
            "priority": self.priority,
            "status": self.status.value,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "created_at": to_iso(self.created_at),
            "delivered_at": to_iso(self.delivered_at),
        }


DEFAULT_TRIGGER_RETRIES: dict[PriorityClass, int] = {
    PriorityClass.CRITICAL: 1,
    PriorityClass.HIGH: 2,
    PriorityClass.NORMAL: 3,
    PriorityClass.LOW: 1,
}

# Rules whose budget is fixed regardless of the configured value.
FORCED_TRIGGER_RETRIES: dict[str, int] = {"security_alert": 1}


@dataclass(frozen=True, slots=True)
class TriggerRule:
    """Named condition -> action binding with its retry budget.

    ``reports_outcome`` marks actions that already record their success or
    error on the session tracker, so the engine does not count them twice.
    """

    name: str
    condition: Callable[[Any], bool]
    action: Callable[[Any], Any]
    priority: PriorityClass = PriorityClass.NORMAL
    max_retries: int | None = None
    reports_outcome: bool = False

    @property
    def retry_budget(self) -> int:
        if self.name in FORCED_TRIGGER_RETRIES:
            return FORCED_TRIGGER_RETRIES[self.name]
        if self.priority == PriorityClass.CRITICAL:
            return DEFAULT_TRIGGER_RETRIES[PriorityClass.CRITICAL]
        if self.max_retries is not None:
            return self.max_retries
        return DEFAULT_TRIGGER_RETRIES[self.priority]


@dataclass(slots=True)
class TriggerResult:
    """Outcome of one trigger firing attempt."""

    trigger: str
    outcome: TriggerOutcome
    attempt: int = 0
    result: Any = None
    error: str | None = None
    execution_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return self.outcome == TriggerOutcome.EXECUTED


@dataclass(slots=True)
class AuditEntry:
    """Security or performance audit record kept in the session ring buffer."""

    kind: str
    details: dict[str, Any]
    timestamp: datetime = field(default_factory=utc_now)

    def to_record(self) -> dict[str, Any]:
        return {"kind": self.kind, "details": dict(self.details), "timestamp": to_iso(self.timestamp)}


@dataclass(slots=True)
class Session:
    """One bounded run of the system."""

    session_id: str
    started_at: datetime
    audit: deque[AuditEntry]
    ended_at: datetime | None = None
    status: SessionStatus = SessionStatus.ACTIVE
    triggers_executed: int = 0
    errors_encountered: int = 0
    successes: int = 0

    def to_record(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "status": self.status.value,
            "started_at": to_iso(self.started_at),
            "ended_at": to_iso(self.ended_at),
            "triggers_executed": self.triggers_executed,
            "errors_encountered": self.errors_encountered,
            "successes": self.successes,
            "audit": [entry.to_record() for entry in self.audit],
        }


@dataclass(slots=True)
class SessionStatusView:
    """Rollup returned by the session tracker."""

    is_active: bool
    current_session: dict[str, Any] | None
    total_sessions: int
    success_count: int
    error_count: int
    success_rate: float
    audit: list[dict[str, Any]]
