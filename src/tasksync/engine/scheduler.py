"""Greedy best-fit placement of ranked tasks into free slots.

Tasks are placed highest score first. Each placement reserves the task's
duration plus a trailing break at the start of the chosen slot, then the
slot shrinks to whatever remains after the break (or disappears). There is
no backtracking: a task that fits nowhere is skipped and retried next cycle.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import UTC, datetime, timedelta

from tasksync.engine.slots import whole_minutes
from tasksync.engine.types import (
    BreakRules,
    CalendarMapping,
    FreeSlot,
    PeakHours,
    PlacementDecision,
    RankedTask,
    TaskType,
)

logger = logging.getLogger(__name__)


def get_break_duration(task_minutes: int, rules: BreakRules) -> int:
    if task_minutes < rules.threshold_minutes:
        return rules.short_duration
    return rules.long_duration


def is_peak_slot(slot: FreeSlot, peak_hours: PeakHours) -> bool:
    return peak_hours.start <= slot.start.hour < peak_hours.end


def _shift(value: datetime, minutes: int) -> datetime:
    # Add in absolute time so DST transitions do not stretch the event.
    shifted = value.astimezone(UTC) + timedelta(minutes=minutes)
    return shifted.astimezone(value.tzinfo)


def _best_fit(
    candidates: list[tuple[int, FreeSlot]],
) -> tuple[FreeSlot, int] | None:
    if not candidates:
        return None
    index, slot = min(candidates, key=lambda item: item[1].duration_minutes)
    return slot, index


def find_best_slot(
    ranked_task: RankedTask,
    free_slots: Sequence[FreeSlot],
    peak_hours: PeakHours,
    break_rules: BreakRules | None = None,
) -> tuple[FreeSlot, int] | None:
    """Pick the smallest slot that holds the task plus its break.

    Focus tasks prefer slots starting inside peak hours; when no peak slot is
    large enough they fall back to any slot. Returns ``(slot, index)`` or
    ``None`` when no slot has enough capacity.
    """
    rules = break_rules or BreakRules()
    task_minutes = ranked_task.estimated_duration_minutes
    required = task_minutes + get_break_duration(task_minutes, rules)

    fitting = [
        (index, slot) for index, slot in enumerate(free_slots) if slot.duration_minutes >= required
    ]

    if ranked_task.task_type == TaskType.FOCUS:
        peak = _best_fit([(i, s) for i, s in fitting if is_peak_slot(s, peak_hours)])
        if peak is not None:
            return peak

    return _best_fit(fitting)


def resolve_calendar_id(
    project_uid: str | None,
    calendar_mappings: Sequence[CalendarMapping],
    default_calendar_id: str,
) -> str:
    if project_uid is None:
        return default_calendar_id
    for mapping in calendar_mappings:
        if mapping.project_uid == project_uid:
            return mapping.calendar_id
    return default_calendar_id


def schedule_tasks(
    ranked_tasks: Sequence[RankedTask],
    free_slots: Sequence[FreeSlot],
    calendar_mappings: Sequence[CalendarMapping],
    default_calendar_id: str,
    break_rules: BreakRules,
    peak_hours: PeakHours,
) -> list[PlacementDecision]:
    """Place *ranked_tasks* in order; *free_slots* itself is left untouched."""
    placements: list[PlacementDecision] = []
    remaining = list(free_slots)

    for ranked_task in ranked_tasks:
        best = find_best_slot(ranked_task, remaining, peak_hours, break_rules)
        if best is None:
            logger.debug(
                "No slot fits task %s (%d min)",
                ranked_task.task.uid,
                ranked_task.estimated_duration_minutes,
            )
            continue

        slot, index = best
        task_minutes = ranked_task.estimated_duration_minutes
        break_minutes = get_break_duration(task_minutes, break_rules)

        event_start = slot.start
        event_end = _shift(event_start, task_minutes)
        break_start = event_end
        break_end = _shift(break_start, break_minutes)

        placements.append(
            PlacementDecision(
                task=ranked_task.task,
                ranked_task=ranked_task,
                event_start=event_start,
                event_end=event_end,
                break_start=break_start,
                break_end=break_end,
                calendar_id=resolve_calendar_id(
                    ranked_task.task.project_uid, calendar_mappings, default_calendar_id
                ),
                is_peak_slot=is_peak_slot(slot, peak_hours),
                break_duration_minutes=break_minutes,
            )
        )

        if break_end >= slot.end:
            del remaining[index]
        else:
            remaining[index] = FreeSlot(
                start=break_end,
                end=slot.end,
                duration_minutes=whole_minutes(break_end, slot.end),
            )

    return placements
