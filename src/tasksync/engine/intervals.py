"""Busy-period merging."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import timedelta

from tasksync.engine.types import BusyPeriod

# Periods closer than this are treated as contiguous (upstream clock skew).
MERGE_TOLERANCE = timedelta(seconds=60)


def merge_busy_periods(periods: Iterable[BusyPeriod]) -> list[BusyPeriod]:
    """Coalesce overlapping or near-adjacent busy periods.

    Returns a start-ascending list of disjoint periods. Two periods merge when
    the next one starts no later than ``MERGE_TOLERANCE`` after the running
    period ends.
    """
    ordered = sorted(periods, key=lambda period: period.start)
    if len(ordered) <= 1:
        return ordered

    merged: list[BusyPeriod] = []
    current = ordered[0]
    for nxt in ordered[1:]:
        if nxt.start <= current.end + MERGE_TOLERANCE:
            if nxt.end > current.end:
                current = BusyPeriod(start=current.start, end=nxt.end)
        else:
            merged.append(current)
            current = nxt
    merged.append(current)
    return merged
