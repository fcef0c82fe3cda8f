"""Pure scheduling engine: interval merging, free slots, ranking, placement."""

from tasksync.engine.intervals import MERGE_TOLERANCE, merge_busy_periods
from tasksync.engine.markers import StatusMarker, apply_marker, detect_marker, strip_marker
from tasksync.engine.ranker import (
    calculate_task_score,
    calculate_urgency,
    estimate_duration,
    extract_task_type,
    rank_tasks,
)
from tasksync.engine.scheduler import (
    find_best_slot,
    get_break_duration,
    is_peak_slot,
    schedule_tasks,
)
from tasksync.engine.slots import find_slots, find_slots_for_day

__all__ = [
    "MERGE_TOLERANCE",
    "StatusMarker",
    "apply_marker",
    "calculate_task_score",
    "calculate_urgency",
    "detect_marker",
    "estimate_duration",
    "extract_task_type",
    "find_best_slot",
    "find_slots",
    "find_slots_for_day",
    "get_break_duration",
    "is_peak_slot",
    "merge_busy_periods",
    "rank_tasks",
    "schedule_tasks",
    "strip_marker",
]
