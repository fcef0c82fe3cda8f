"""Weighted task ranking.

A task's score sums five weighted axes (priority, type, project importance,
urgency, energy). Tasks that were rescheduled before get a multiplicative
boost of 10% per reschedule, capped at 50%.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from datetime import date

from tasksync.engine.types import DurationMatrix, RankedTask, Task, TaskTag, TaskType, Weights

TYPE_TAG_PREFIX = "type:"
DEFAULT_PROJECT_IMPORTANCE = 2
DEFAULT_DURATION_MINUTES = 60
RESCHEDULE_BOOST_STEP = 0.10
RESCHEDULE_BOOST_CAP = 0.50

PRIORITY_SCORES: dict[str, int] = {
    "high": 4,
    "medium": 3,
    "low": 2,
}

TYPE_SCORES: dict[TaskType, int] = {
    TaskType.FOCUS: 3,
    TaskType.UNKNOWN: 2,
    TaskType.NOISE: 1,
}

# Same table as TYPE_SCORES: energy is modelled through the task type.
ENERGY_SCORES: dict[TaskType, int] = {
    TaskType.FOCUS: 3,
    TaskType.UNKNOWN: 2,
    TaskType.NOISE: 1,
}


@dataclass(frozen=True)
class TaskScore:
    score: float
    base_score: float
    boost: float


def extract_task_type(tags: Iterable[TaskTag]) -> TaskType:
    """Return the type named by the first ``type:`` tag (case-insensitive)."""
    for tag in tags:
        lowered = tag.name.lower()
        if not lowered.startswith(TYPE_TAG_PREFIX):
            continue
        value = lowered[len(TYPE_TAG_PREFIX) :].strip()
        if value == TaskType.FOCUS:
            return TaskType.FOCUS
        if value == TaskType.NOISE:
            return TaskType.NOISE
        return TaskType.UNKNOWN
    return TaskType.UNKNOWN


def calculate_urgency(due_date: date | None, today: date | None = None) -> int:
    """Bucket the days until *due_date* into an urgency score from 1 to 5."""
    if due_date is None:
        return 1
    reference = today or date.today()
    diff_days = (due_date - reference).days
    if diff_days < 0:
        return 5
    if diff_days <= 1:
        return 4
    if diff_days <= 7:
        return 3
    if diff_days <= 14:
        return 2
    return 1


def reschedule_boost(reschedule_count: int) -> float:
    return min(reschedule_count * RESCHEDULE_BOOST_STEP, RESCHEDULE_BOOST_CAP)


def calculate_task_score(
    task: Task,
    weights: Weights,
    reschedule_count: int = 0,
    project_importance: int = DEFAULT_PROJECT_IMPORTANCE,
    today: date | None = None,
) -> TaskScore:
    task_type = extract_task_type(task.tags)

    priority_score = PRIORITY_SCORES.get(task.priority, 2)
    type_score = TYPE_SCORES[task_type]
    energy_score = ENERGY_SCORES[task_type]
    urgency_score = calculate_urgency(task.due_date, today)

    base_score = (
        priority_score * weights.priority
        + type_score * weights.type
        + project_importance * weights.project
        + urgency_score * weights.urgency
        + energy_score * weights.energy
    )
    boost = reschedule_boost(reschedule_count)
    return TaskScore(score=base_score * (1 + boost), base_score=base_score, boost=boost)


def rank_tasks(
    tasks: Sequence[Task],
    weights: Weights,
    reschedule_counts: Mapping[str, int] | None = None,
    project_importance_map: Mapping[str, int] | None = None,
    today: date | None = None,
) -> list[RankedTask]:
    """Score every task and return them highest score first.

    Ties keep their input order (``sorted`` is stable). Estimated durations
    are left at 0 for the caller to fill in with :func:`estimate_duration`.
    """
    counts = reschedule_counts or {}
    importance = project_importance_map or {}

    ranked: list[RankedTask] = []
    for task in tasks:
        project_importance = DEFAULT_PROJECT_IMPORTANCE
        if task.project_uid is not None:
            project_importance = importance.get(task.project_uid, DEFAULT_PROJECT_IMPORTANCE)
        result = calculate_task_score(
            task,
            weights,
            reschedule_count=counts.get(task.uid, 0),
            project_importance=project_importance,
            today=today,
        )
        ranked.append(
            RankedTask(
                task=task,
                score=result.score,
                base_score=result.base_score,
                reschedule_boost=result.boost,
                task_type=extract_task_type(task.tags),
            )
        )
    return sorted(ranked, key=lambda item: item.score, reverse=True)


def estimate_duration(task: Task, task_type: TaskType, matrix: DurationMatrix) -> int:
    """Look up the estimated minutes for *task*; unknown types count as focus."""
    row = matrix.noise if task_type == TaskType.NOISE else matrix.focus
    return getattr(row, task.priority, DEFAULT_DURATION_MINUTES)
