"""Deterministic priority and worker fitness scoring."""

from __future__ import annotations

from task_dispatch.dispatch.models import TaskSpec, TaskType, WorkerSnapshot

MIN_PRIORITY = 1
MAX_PRIORITY = 10
DEFAULT_BASE_SCORE = 4
URGENT_PRIORITY_THRESHOLD = 7
GENERIC_KEYWORD = "general"

SPECIALIZATION_WEIGHT = 3.0
SPARE_CAPACITY_WEIGHT = 2.0
SUCCESS_RATE_WEIGHT = 2.0

BASE_PRIORITY_SCORES: dict[str, int] = {
    "critical": 8,
    "high": 6,
    "normal": 4,
    "low": 2,
    "minimal": 1,
}

TASK_TYPE_ADJUSTMENTS: dict[TaskType, int] = {
    TaskType.BUG_FIX: 2,
    TaskType.SECURITY_ENHANCEMENT: 3,
    TaskType.PERFORMANCE_OPTIMIZATION: 1,
    TaskType.FEATURE_IMPLEMENTATION: 0,
    TaskType.COMPONENT_DEVELOPMENT: 0,
    TaskType.TESTING: -1,
    TaskType.DOCUMENTATION: -2,
}

URGENCY_ADJUSTMENTS: dict[str, int] = {"high": 2, "medium": 1}
COMPLEXITY_ADJUSTMENTS: dict[str, int] = {"high": 1}

TASK_KEYWORDS: tuple[str, ...] = (
    "component",
    "development",
    "frontend",
    "react",
    "performance",
    "security",
    "bug",
    "fix",
    "feature",
    "testing",
    "documentation",
    "optimization",
    "enhancement",
    "implementation",
)


def base_priority_score(label: str | None) -> int:
    """Map a base priority label to its numeric score (unknown -> normal)."""

    if label is None:
        return DEFAULT_BASE_SCORE
    return BASE_PRIORITY_SCORES.get(label.strip().lower(), DEFAULT_BASE_SCORE)


def priority(spec: TaskSpec, base_priority: str | None = "normal") -> int:
    """Compute the task priority clamped to [1, 10]."""

    score = base_priority_score(base_priority)
    score += TASK_TYPE_ADJUSTMENTS.get(_task_type(spec.type), 0)
    score += URGENCY_ADJUSTMENTS.get(_normalize(spec.urgency), 0)
    score += COMPLEXITY_ADJUSTMENTS.get(_normalize(spec.complexity), 0)
    return max(MIN_PRIORITY, min(MAX_PRIORITY, score))


def extract_keywords(description: str, task_type: str) -> list[str]:
    """Return vocabulary keywords found in the description and type.

    Falls back to a single generic keyword so the match ratio is always defined.
    """

    text = f"{description} {task_type}".lower()
    found = [keyword for keyword in TASK_KEYWORDS if keyword in text]
    return found or [GENERIC_KEYWORD]


def specialization_match(specializations: tuple[str, ...], keywords: list[str]) -> float:
    """Share of keywords contained in at least one specialization tag."""

    if not keywords:
        return 0.0
    matches = sum(
        1 for keyword in keywords if any(keyword in tag for tag in specializations)
    )
    return matches / len(keywords)


def fitness(worker: WorkerSnapshot, spec: TaskSpec, task_priority: int) -> float:
    """Weighted suitability of a worker for a task.

    Combines specialization overlap, spare capacity and the success-rate EMA;
    urgent tasks additionally reward the completion-rate EMA.
    """

    keywords = extract_keywords(spec.description, spec.type)
    score = specialization_match(worker.specializations, keywords) * SPECIALIZATION_WEIGHT
    score += (worker.capacity - worker.load) / worker.capacity * SPARE_CAPACITY_WEIGHT
    score += worker.success_rate * SUCCESS_RATE_WEIGHT
    if task_priority >= URGENT_PRIORITY_THRESHOLD:
        score += worker.completion_rate
    return score


def _task_type(value: str) -> TaskType | None:
    try:
        return TaskType(value)
    except ValueError:
        return None


def _normalize(value: str | None) -> str:
    return value.strip().lower() if value else ""
