"""Typed errors raised by the dispatch core."""

from __future__ import annotations


class DispatchError(RuntimeError):
    """Base class for every error surfaced by the dispatch core."""


class ValidationError(DispatchError):
    """Missing or invalid task fields, message types or trigger input."""


class SecurityValidationFailed(ValidationError):
    """Payload matched a sensitive-data pattern and was rejected."""

    def __init__(self, pattern: str) -> None:
        super().__init__(f"Payload rejected: matches sensitive-data pattern {pattern!r}")
        self.pattern = pattern


class NoAvailableWorker(DispatchError):
    """No registered worker is available with spare capacity."""

    def __init__(self, task_type: str) -> None:
        super().__init__(f"No available worker for task type {task_type!r}")
        self.task_type = task_type


class DeliveryError(DispatchError):
    """Message could not be delivered to its receiver."""


class ReceiverBusy(DeliveryError):
    """Receiver endpoint is marked busy."""

    def __init__(self, receiver: str) -> None:
        super().__init__(f"Receiver is busy: {receiver}")
        self.receiver = receiver


class InvalidTransition(DispatchError):
    """Requested task state change is not allowed by the lifecycle."""

    def __init__(self, task_id: str, status_from: str, action: str) -> None:
        super().__init__(f"Task {task_id}: cannot {action} from status {status_from!r}")
        self.task_id = task_id
        self.status_from = status_from
        self.action = action


class TaskNotFound(DispatchError):
    """Task id is unknown or no longer active."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class UnknownTrigger(DispatchError):
    """No trigger rule is registered under the given name."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Unknown trigger: {name}")
        self.name = name


class SessionAlreadyActive(DispatchError):
    """A session is already running."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session already active: {session_id}")
        self.session_id = session_id


class SessionNotActive(DispatchError):
    """Operation requires an active session."""


class InternalInvariantViolation(DispatchError):
    """Accounting bug detected; the offending operation was aborted."""
