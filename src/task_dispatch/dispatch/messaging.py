"""At-least-once FIFO message channel between dispatcher and workers."""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol
from uuid import uuid4

from task_dispatch.dispatch.errors import ReceiverBusy, ValidationError
from task_dispatch.dispatch.metrics import PerformanceMetrics
from task_dispatch.dispatch.models import Message, MessageStatus, MessageType, PriorityClass
from task_dispatch.dispatch.registry import WorkerRegistry
from task_dispatch.dispatch.scheduler import RetryScheduler
from task_dispatch.dispatch.sinks import EventSink, LoggingEventSink, safe_emit
from task_dispatch.storage.common import utc_now

logger = logging.getLogger(__name__)

DISPATCHER_ENDPOINT = "dispatcher"
MONITOR_ENDPOINT = "system_monitor"
SYSTEM_ENDPOINTS = (DISPATCHER_ENDPOINT, MONITOR_ENDPOINT)

DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_BASE_SECONDS = 1.0
DEFAULT_HISTORY_LIMIT = 1_000
BUSY_STATUS = "busy"
UNAVAILABLE_STATUSES = frozenset({BUSY_STATUS, "offline"})
DISCARDED_ON_SHUTDOWN = "discarded_on_shutdown"


class WorkerExecutor(Protocol):
    """Pluggable receiver-side handler for delivered messages."""

    def handle(self, message: Message) -> dict[str, Any] | None:
        """Process a delivered message; raising makes the delivery fail."""


@dataclass(slots=True)
class Endpoint:
    """Addressable participant of the channel."""

    endpoint_id: str
    status: str = "idle"
    last_activity: datetime | None = None
    message_count: int = 0
    error_count: int = 0
    executor: WorkerExecutor | None = None


@dataclass(slots=True)
class AssignmentContext:
    """Receiver-side record created by an assignment delivery."""

    task_id: str
    assigned_to: str
    assigned_by: str
    task_data: dict[str, Any]
    requirements: list[str]
    status: str = "assigned"
    assigned_at: datetime = field(default_factory=utc_now)
    finished_at: datetime | None = None
    result: dict[str, Any] | None = None
    error: str | None = None


@dataclass(slots=True)
class DataRequest:
    request_id: str
    request_type: str | None
    parameters: dict[str, Any]
    requested_by: str
    requested_at: datetime = field(default_factory=utc_now)


class MessagingChannel:
    """Single FIFO queue with linear-backoff redelivery.

    Messages are delivered in arrival order; priority labels never reorder the
    queue. A failed delivery is re-enqueued after ``retry_base_seconds *
    retry_count`` until ``max_retries`` is exhausted, then marked failed.
    Sending never blocks on a retry.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        scheduler: RetryScheduler,
        event_sink: EventSink | None = None,
        registry: WorkerRegistry | None = None,
        metrics: PerformanceMetrics | None = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_base_seconds: float = DEFAULT_RETRY_BASE_SECONDS,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
    ) -> None:
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0.")
        self.scheduler = scheduler
        self.event_sink = event_sink or LoggingEventSink()
        self.registry = registry
        self.metrics = metrics or PerformanceMetrics()
        self.max_retries = max_retries
        self.retry_base_seconds = retry_base_seconds
        self._endpoints: dict[str, Endpoint] = {}
        self._queue: deque[Message] = deque()
        self._history: deque[Message] = deque(maxlen=history_limit)
        self._assignments: dict[str, AssignmentContext] = {}
        self._data_requests: list[DataRequest] = []
        self._lock = threading.RLock()
        self._draining = False

    # -- endpoints ------------------------------------------------------------

    def register_endpoint(self, endpoint_id: str, executor: WorkerExecutor | None = None) -> None:
        with self._lock:
            if endpoint_id in self._endpoints:
                raise ValidationError(f"Endpoint already registered: {endpoint_id}")
            self._endpoints[endpoint_id] = Endpoint(endpoint_id=endpoint_id, executor=executor)

    def attach_executor(self, endpoint_id: str, executor: WorkerExecutor | None) -> None:
        with self._lock:
            self._endpoint(endpoint_id).executor = executor

    def set_endpoint_status(self, endpoint_id: str, status: str) -> None:
        """Set an endpoint status and mirror it onto worker availability."""

        with self._lock:
            endpoint = self._endpoint(endpoint_id)
            endpoint.status = status
            endpoint.last_activity = utc_now()
        if self.registry is not None and endpoint_id in self.registry:
            self.registry.set_availability(endpoint_id, status not in UNAVAILABLE_STATUSES)

    def endpoint_ids(self) -> list[str]:
        with self._lock:
            return list(self._endpoints)

    def endpoint_statuses(self) -> dict[str, dict[str, Any]]:
        with self._lock:
            return {
                endpoint.endpoint_id: {
                    "status": endpoint.status,
                    "last_activity": endpoint.last_activity,
                    "message_count": endpoint.message_count,
                    "error_count": endpoint.error_count,
                }
                for endpoint in self._endpoints.values()
            }

    # -- sending --------------------------------------------------------------

    def send(  # noqa: PLR0913
        self,
        sender: str,
        receiver: str,
        message_type: MessageType | str,
        payload: dict[str, Any] | None = None,
        *,
        priority: str = PriorityClass.NORMAL.value,
        max_retries: int | None = None,
    ) -> Message:
        """Validate, enqueue and attempt delivery of one message.

        Returns the message with its current status: ``delivered`` on success,
        ``retrying`` when a redelivery is scheduled, ``failed`` when no retry
        budget remains, or ``pending`` when another caller is draining the
        queue.

        Raises:
            ValidationError: unknown sender/receiver, message type or payload shape.
        """

        resolved_type = self._validate(sender, receiver, message_type, payload)
        message = Message(
            message_id=_new_message_id(),
            sender=sender,
            receiver=receiver,
            message_type=resolved_type,
            payload=dict(payload or {}),
            priority=priority,
            max_retries=self.max_retries if max_retries is None else max_retries,
        )
        with self._lock:
            self._history.append(message)
        self._enqueue(message)
        return message

    def broadcast(
        self,
        sender: str,
        message_type: MessageType | str,
        payload: dict[str, Any] | None = None,
        *,
        exclude: Iterable[str] = (),
        priority: str = PriorityClass.NORMAL.value,
    ) -> list[Message]:
        """Send the same message to every endpoint except the sender."""

        skipped = {sender, *exclude}
        return [
            self.send(sender, endpoint_id, message_type, payload, priority=priority)
            for endpoint_id in self.endpoint_ids()
            if endpoint_id not in skipped
        ]

    # -- queries --------------------------------------------------------------

    def history(self, endpoint_id: str | None = None, limit: int = 50) -> list[Message]:
        with self._lock:
            messages = [
                message
                for message in self._history
                if endpoint_id is None or endpoint_id in (message.sender, message.receiver)
            ]
        return messages[-limit:] if limit > 0 else []

    def queued(self) -> list[Message]:
        with self._lock:
            return list(self._queue)

    def assignment(self, task_id: str) -> AssignmentContext | None:
        with self._lock:
            return self._assignments.get(task_id)

    def data_requests(self) -> list[DataRequest]:
        with self._lock:
            return list(self._data_requests)

    def status(self) -> dict[str, Any]:
        with self._lock:
            counts = {status.value: 0 for status in MessageStatus}
            for message in self._history:
                counts[message.status.value] += 1
            return {
                "total_endpoints": len(self._endpoints),
                "active_endpoints": sum(
                    1 for endpoint in self._endpoints.values() if endpoint.status != "idle"
                ),
                "queue_length": len(self._queue),
                "total_messages": len(self._history),
                "status_counts": counts,
                "pending_retries": self.scheduler.pending(),
            }

    # -- delivery -------------------------------------------------------------

    def _enqueue(self, message: Message) -> None:
        with self._lock:
            self._queue.append(message)
            if self._draining:
                return
            self._draining = True
        try:
            while True:
                with self._lock:
                    if not self._queue:
                        # Same lock section as the empty check: a later sender drains itself.
                        self._draining = False
                        return
                    current = self._queue.popleft()
                self._attempt(current)
        except BaseException:
            with self._lock:
                self._draining = False
            raise

    def _attempt(self, message: Message) -> None:
        message.status = MessageStatus.PROCESSING
        message.attempts += 1
        started = time.perf_counter()
        try:
            response = self._deliver(message)
        except Exception as error:  # noqa: BLE001
            self._handle_failure(message, error)
            return
        elapsed = time.perf_counter() - started
        with self._lock:
            message.status = MessageStatus.DELIVERED
            message.delivered_at = utc_now()
            message.response = response
            self._endpoints[message.receiver].message_count += 1
        self.metrics.record("message_delivery", elapsed)
        safe_emit(
            self.event_sink,
            "message_delivered",
            {
                "message_id": message.message_id,
                "type": message.message_type.value,
                "sender": message.sender,
                "receiver": message.receiver,
                "attempts": message.attempts,
            },
        )

    def _deliver(self, message: Message) -> dict[str, Any]:
        with self._lock:
            endpoint = self._endpoint(message.receiver)
            if endpoint.status == BUSY_STATUS and message.message_type != MessageType.STATUS_UPDATE:
                raise ReceiverBusy(message.receiver)
            endpoint.last_activity = utc_now()
            executor = endpoint.executor
        response = self._apply(message)
        if executor is not None:
            executor_response = executor.handle(message)
            if executor_response:
                response = {**response, "executor": executor_response}
        return response

    def _apply(self, message: Message) -> dict[str, Any]:  # noqa: PLR0911
        payload = message.payload
        task_id = payload.get("task_id")
        if message.message_type == MessageType.ASSIGNMENT:
            context = AssignmentContext(
                task_id=str(task_id),
                assigned_to=message.receiver,
                assigned_by=message.sender,
                task_data=dict(payload.get("task_data") or {}),
                requirements=list(payload.get("requirements") or []),
            )
            with self._lock:
                self._assignments[context.task_id] = context
            return {"status": "task_assigned", "task_id": task_id, "assigned_to": message.receiver}
        if message.message_type in {MessageType.COMPLETION, MessageType.ERROR}:
            completed = message.message_type == MessageType.COMPLETION
            with self._lock:
                context = self._assignments.get(str(task_id))
                if context is not None:
                    context.status = "completed" if completed else "failed"
                    context.finished_at = utc_now()
                    context.result = payload.get("result")
                    context.error = payload.get("reason")
            if not completed:
                return {"status": "error_received", "task_id": task_id}
            return {"status": "task_completed", "task_id": task_id}
        if message.message_type == MessageType.DATA_REQUEST:
            request = DataRequest(
                request_id=_new_message_id(),
                request_type=payload.get("request_type"),
                parameters=dict(payload.get("parameters") or {}),
                requested_by=message.sender,
            )
            with self._lock:
                self._data_requests.append(request)
            return {"status": "data_requested", "request_id": request.request_id}
        if message.message_type == MessageType.STATUS_UPDATE:
            subject = str(payload.get("agent") or message.sender)
            new_status = str(payload.get("status") or "idle")
            if subject in self._endpoints:
                self.set_endpoint_status(subject, new_status)
            return {"status": "status_updated", "agent": subject, "new_status": new_status}
        return {"status": "received", "message_id": message.message_id}

    def _handle_failure(self, message: Message, error: Exception) -> None:
        with self._lock:
            message.last_error = str(error)
            endpoint = self._endpoints.get(message.receiver)
            if endpoint is not None:
                endpoint.error_count += 1
            can_retry = message.retry_count < message.max_retries
            if can_retry:
                message.retry_count += 1
                message.status = MessageStatus.RETRYING
            else:
                message.status = MessageStatus.FAILED
        details = {
            "message_id": message.message_id,
            "type": message.message_type.value,
            "receiver": message.receiver,
            "retry_count": message.retry_count,
            "max_retries": message.max_retries,
            "error": str(error),
        }
        if not can_retry:
            logger.error(
                "Message %s to %s failed permanently after %d retries: %s",
                message.message_id,
                message.receiver,
                message.retry_count,
                error,
            )
            safe_emit(self.event_sink, "message_failed", details)
            return

        delay = self.retry_base_seconds * message.retry_count
        logger.warning(
            "Delivery of %s to %s failed (%s); retry %d/%d in %.1fs",
            message.message_id,
            message.receiver,
            error,
            message.retry_count,
            message.max_retries,
            delay,
        )
        safe_emit(self.event_sink, "message_retry", {**details, "delay_seconds": delay})
        self.scheduler.schedule(
            delay,
            lambda: self._enqueue(message),
            label=f"message:{message.message_id}",
            on_discard=lambda: self._discard(message),
        )

    def _discard(self, message: Message) -> None:
        with self._lock:
            message.status = MessageStatus.FAILED
            message.last_error = DISCARDED_ON_SHUTDOWN
        safe_emit(
            self.event_sink,
            "message_discarded",
            {"message_id": message.message_id, "receiver": message.receiver},
        )

    def _validate(
        self,
        sender: str,
        receiver: str,
        message_type: MessageType | str,
        payload: dict[str, Any] | None,
    ) -> MessageType:
        with self._lock:
            if sender not in self._endpoints:
                raise ValidationError(f"Unknown sender: {sender}")
            if receiver not in self._endpoints:
                raise ValidationError(f"Unknown receiver: {receiver}")
        try:
            resolved = MessageType(message_type)
        except ValueError as error:
            raise ValidationError(f"Invalid message type: {message_type!r}") from error
        if payload is not None and not isinstance(payload, dict):
            raise ValidationError("Message payload must be a mapping.")
        return resolved

    def _endpoint(self, endpoint_id: str) -> Endpoint:
        endpoint = self._endpoints.get(endpoint_id)
        if endpoint is None:
            raise ValidationError(f"Unknown endpoint: {endpoint_id}")
        return endpoint


def _new_message_id() -> str:
    return f"MSG-{int(time.time() * 1000)}-{uuid4().hex[:6]}"
