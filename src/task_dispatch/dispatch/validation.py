"""Input validation: required fields, sensitive-data and markup screening."""

from __future__ import annotations

import json
import re
from collections.abc import Mapping
from typing import Any

from task_dispatch.dispatch.errors import SecurityValidationFailed, ValidationError
from task_dispatch.dispatch.models import TaskSpec, TaskType

SENSITIVE_PATTERNS: tuple[str, ...] = ("password", "token", "api_key", "secret", "private_key")
SCRIPT_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"<script", re.IGNORECASE),
    re.compile(r"javascript:", re.IGNORECASE),
    re.compile(r"on\w+\s*=", re.IGNORECASE),
)
MIN_REQUEST_LENGTH = 3
MAX_REQUEST_LENGTH = 10_000


def find_sensitive_pattern(payload: Any) -> str | None:
    """Return the first sensitive pattern found in the serialized payload."""

    serialized = json.dumps(payload, default=str, sort_keys=True).lower()
    for pattern in SENSITIVE_PATTERNS:
        if pattern in serialized:
            return pattern
    return None


def coerce_task_spec(spec: TaskSpec | Mapping[str, Any]) -> TaskSpec:
    if isinstance(spec, TaskSpec):
        return spec
    if not isinstance(spec, Mapping):
        raise ValidationError("Task spec must be a mapping.")
    return TaskSpec.from_mapping(spec)


def validate_task_spec(spec: TaskSpec) -> None:
    """Check required fields and the closed task type set.

    Raises:
        ValidationError: a required field is empty or the type is unknown.
        SecurityValidationFailed: the payload mentions sensitive data.
    """

    if not spec.description or not spec.description.strip():
        raise ValidationError("Missing required task field: description")
    if not spec.requirements:
        raise ValidationError("Missing required task field: requirements")
    try:
        TaskType(spec.type)
    except ValueError as error:
        raise ValidationError(f"Invalid task type: {spec.type!r}") from error
    pattern = find_sensitive_pattern(spec.to_payload())
    if pattern is not None:
        raise SecurityValidationFailed(pattern)


def validate_user_request(text: Any) -> str:
    """Validate free-text user input and return it stripped."""

    if not isinstance(text, str):
        raise ValidationError("User request must be a string.")
    stripped = text.strip()
    if len(stripped) < MIN_REQUEST_LENGTH:
        raise ValidationError(f"User request must be at least {MIN_REQUEST_LENGTH} characters.")
    if len(stripped) > MAX_REQUEST_LENGTH:
        raise ValidationError(f"User request must be at most {MAX_REQUEST_LENGTH} characters.")
    for pattern in SCRIPT_PATTERNS:
        if pattern.search(stripped):
            raise ValidationError("User request contains script markup.")
    return stripped


_TYPE_HINTS: tuple[tuple[tuple[str, ...], TaskType], ...] = (
    (("bug", "fix"), TaskType.BUG_FIX),
    (("security",), TaskType.SECURITY_ENHANCEMENT),
    (("performance", "optimiz"), TaskType.PERFORMANCE_OPTIMIZATION),
    (("test",), TaskType.TESTING),
    (("doc",), TaskType.DOCUMENTATION),
    (("feature",), TaskType.FEATURE_IMPLEMENTATION),
)


def infer_task_type(text: str) -> TaskType:
    """Guess a task type from keywords in free text."""

    lowered = text.lower()
    for hints, task_type in _TYPE_HINTS:
        if any(hint in lowered for hint in hints):
            return task_type
    return TaskType.COMPONENT_DEVELOPMENT
