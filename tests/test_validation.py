from __future__ import annotations

import allure
import pytest

from task_dispatch.dispatch.errors import SecurityValidationFailed, ValidationError
from task_dispatch.dispatch.models import TaskSpec, TaskType
from task_dispatch.dispatch.validation import (
    find_sensitive_pattern,
    infer_task_type,
    validate_task_spec,
    validate_user_request,
)

pytestmark = [
    allure.epic("Task Dispatch"),
    allure.feature("Input Validation"),
]


@pytest.mark.parametrize(
    ("payload", "expected"),
    [
        ({"description": "rotate the API_KEY"}, "api_key"),
        ({"notes": ["contains a Secret"]}, "secret"),
        ({"private_key": "x"}, "private_key"),
        ({"description": "plain text"}, None),
    ],
)
def test_find_sensitive_pattern(payload: dict, expected: str | None) -> None:
    assert find_sensitive_pattern(payload) == expected


def test_validate_task_spec_rejects_sensitive_requirements() -> None:
    spec = TaskSpec(type="testing", description="Add cases", requirements=["use token abc"])

    with pytest.raises(SecurityValidationFailed) as info:
        validate_task_spec(spec)
    assert info.value.pattern == "token"
    assert isinstance(info.value, ValidationError)


def test_validate_task_spec_requires_requirements() -> None:
    with pytest.raises(ValidationError, match="requirements"):
        validate_task_spec(TaskSpec(type="testing", description="Add cases", requirements=[]))


@pytest.mark.parametrize(
    "text",
    ['<a href="javascript:alert(1)">x</a>', '<img onerror = "x">', "<SCRIPT>", "ab", "x" * 10_001, 42],
)
def test_validate_user_request_rejects_bad_input(text: object) -> None:
    with pytest.raises(ValidationError):
        validate_user_request(text)


def test_validate_user_request_strips_text() -> None:
    assert validate_user_request("  add a feature  ") == "add a feature"


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("Fix the broken checkout", TaskType.BUG_FIX),
        ("Harden security headers", TaskType.SECURITY_ENHANCEMENT),
        ("Speed up performance of search", TaskType.PERFORMANCE_OPTIMIZATION),
        ("Add unit tests", TaskType.TESTING),
        ("Update the docs", TaskType.DOCUMENTATION),
        ("New feature for exports", TaskType.FEATURE_IMPLEMENTATION),
        ("Build a header widget", TaskType.COMPONENT_DEVELOPMENT),
    ],
)
def test_infer_task_type(text: str, expected: TaskType) -> None:
    assert infer_task_type(text) == expected
