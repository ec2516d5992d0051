from __future__ import annotations

import allure
import pytest

from task_dispatch.dispatch.models import TaskSpec, TaskType, WorkerSnapshot
from task_dispatch.dispatch.scoring import (
    base_priority_score,
    extract_keywords,
    fitness,
    priority,
    specialization_match,
)

pytestmark = [
    allure.epic("Task Dispatch"),
    allure.feature("Priority & Fitness Scoring"),
]


def _spec(task_type: str, description: str = "Do the work", **kwargs) -> TaskSpec:
    return TaskSpec(type=task_type, description=description, requirements=["r1"], **kwargs)


def test_security_enhancement_with_high_urgency_scores_nine() -> None:
    spec = _spec(TaskType.SECURITY_ENHANCEMENT.value, urgency="high")

    assert priority(spec, "normal") == 9


def test_priority_is_clamped_to_valid_range() -> None:
    lowest = _spec(TaskType.DOCUMENTATION.value)
    highest = _spec(TaskType.SECURITY_ENHANCEMENT.value, urgency="high", complexity="high")

    assert priority(lowest, "minimal") == 1
    assert priority(highest, "critical") == 10


@pytest.mark.parametrize("task_type", [task_type.value for task_type in TaskType])
@pytest.mark.parametrize("base", ["critical", "high", "normal", "low", "minimal", "bogus", None])
@pytest.mark.parametrize("urgency", [None, "low", "medium", "high"])
def test_priority_always_within_bounds(task_type: str, base: str | None, urgency: str | None) -> None:
    value = priority(_spec(task_type, urgency=urgency, complexity="high"), base)

    assert 1 <= value <= 10


def test_unknown_base_label_falls_back_to_normal() -> None:
    assert base_priority_score("whatever") == base_priority_score("normal") == 4
    assert base_priority_score(" HIGH ") == 6


def test_medium_urgency_and_high_complexity_adjustments() -> None:
    spec = _spec(TaskType.BUG_FIX.value, urgency="medium", complexity="high")

    assert priority(spec, "low") == 2 + 2 + 1 + 1


def test_extract_keywords_uses_description_and_type() -> None:
    keywords = extract_keywords("Build a React frontend component", "component_development")

    assert keywords == ["component", "development", "frontend", "react"]


def test_extract_keywords_falls_back_to_generic() -> None:
    assert extract_keywords("Plan the offsite", "unknown") == ["general"]


def test_specialization_match_counts_substring_hits() -> None:
    tags = ("frontend_development", "component_creation")

    assert specialization_match(tags, ["component", "react"]) == 0.5
    assert specialization_match(tags, []) == 0.0


def test_fitness_combines_weighted_terms() -> None:
    worker = WorkerSnapshot(
        name="developer",
        capacity=2,
        load=1,
        specializations=("frontend_development", "component_creation"),
        success_rate=0.5,
        completion_rate=0.4,
    )
    spec = _spec("component_development", "Build a React frontend component")

    # 3 * 0.75 + 2 * 0.5 + 2 * 0.5
    assert fitness(worker, spec, 4) == pytest.approx(4.25)
    assert fitness(worker, spec, 7) == pytest.approx(4.65)
