"""Shared types for the scheduling engine.

Plain dataclasses carry per-cycle values between the engine stages
(busy periods, free slots, ranked tasks, placements). Pydantic models carry
values that arrive from outside: tasks fetched from the task manager and the
scheduling settings read from the config store.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

TaskPriority = Literal["low", "medium", "high"]


class TaskType(StrEnum):
    """Task category derived from a ``type:`` tag."""

    FOCUS = "focus"
    NOISE = "noise"
    UNKNOWN = "unknown"


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------


class TaskTag(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str


class Task(BaseModel):
    """A task owned by the external task manager."""

    model_config = ConfigDict(extra="ignore")

    uid: str = Field(min_length=1)
    name: str
    note: str | None = None
    priority: TaskPriority = "medium"
    tags: list[TaskTag] = Field(default_factory=list)
    due_date: date | None = None
    status: str = "not_started"
    project_uid: str | None = None
    project_importance: int | None = None

    @field_validator("due_date", mode="before")
    @classmethod
    def _coerce_due_date(cls, value: Any) -> Any:
        # The task manager sends full ISO timestamps; only the date matters.
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, str):
            normalized = value.strip()
            if not normalized:
                return None
            if len(normalized) > 10:
                if normalized.endswith("Z"):
                    normalized = f"{normalized[:-1]}+00:00"
                return datetime.fromisoformat(normalized).date()
            return normalized
        return value


# ---------------------------------------------------------------------------
# Scheduling settings
# ---------------------------------------------------------------------------


class Weights(BaseModel):
    """Per-axis weights for the task score."""

    priority: float = 0.35
    type: float = 0.20
    project: float = 0.20
    urgency: float = 0.15
    energy: float = 0.10


class DurationRow(BaseModel):
    high: int = Field(default=60, ge=1)
    medium: int = Field(default=60, ge=1)
    low: int = Field(default=60, ge=1)


class DurationMatrix(BaseModel):
    """Estimated task duration in minutes, by task type then priority."""

    focus: DurationRow = Field(default_factory=lambda: DurationRow(high=120, medium=60, low=30))
    noise: DurationRow = Field(default_factory=lambda: DurationRow(high=45, medium=30, low=15))


class BreakRules(BaseModel):
    """Two-bucket break policy.

    Accepts both the stored snake_case keys and the camelCase spelling older
    settings rows were written with.
    """

    model_config = ConfigDict(populate_by_name=True)

    short_duration: int = Field(default=15, ge=1, alias="shortDuration")
    long_duration: int = Field(default=30, ge=1, alias="longDuration")
    threshold_minutes: int = Field(default=60, ge=0, alias="thresholdMinutes")


class PeakHours(BaseModel):
    start: int = Field(default=9, ge=0, le=23)
    end: int = Field(default=12, ge=0, le=24)


class DayWindow(BaseModel):
    """One weekday's allowed scheduling range, in whole hours."""

    enabled: bool = True
    start: int = Field(default=9, ge=0, le=23)
    end: int = Field(default=18, ge=0, le=23)

    @model_validator(mode="after")
    def _validate_range(self) -> DayWindow:
        if self.enabled and self.start >= self.end:
            raise ValueError(
                f"enabled day window must start before it ends (start={self.start}, "
                f"end={self.end})"
            )
        return self


def _weekend_window() -> DayWindow:
    return DayWindow(enabled=False)


class WeeklyWindows(BaseModel):
    monday: DayWindow = Field(default_factory=DayWindow)
    tuesday: DayWindow = Field(default_factory=DayWindow)
    wednesday: DayWindow = Field(default_factory=DayWindow)
    thursday: DayWindow = Field(default_factory=DayWindow)
    friday: DayWindow = Field(default_factory=DayWindow)
    saturday: DayWindow = Field(default_factory=_weekend_window)
    sunday: DayWindow = Field(default_factory=_weekend_window)

    def for_weekday(self, name: str) -> DayWindow:
        return getattr(self, name)


# ---------------------------------------------------------------------------
# Per-cycle engine values
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BusyPeriod:
    start: datetime
    end: datetime


@dataclass(frozen=True)
class FreeSlot:
    start: datetime
    end: datetime
    duration_minutes: int


@dataclass(frozen=True)
class CalendarMapping:
    project_uid: str
    calendar_id: str


@dataclass
class RankedTask:
    task: Task
    score: float
    base_score: float
    reschedule_boost: float
    task_type: TaskType
    estimated_duration_minutes: int = 0


@dataclass(frozen=True)
class PlacementDecision:
    task: Task
    ranked_task: RankedTask
    event_start: datetime
    event_end: datetime
    break_start: datetime
    break_end: datetime
    calendar_id: str
    is_peak_slot: bool
    break_duration_minutes: int
