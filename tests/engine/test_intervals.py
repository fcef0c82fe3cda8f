"""Tests for busy-period merging."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from tasksync.engine.intervals import MERGE_TOLERANCE, merge_busy_periods
from tasksync.engine.types import BusyPeriod

pytestmark = pytest.mark.unit

BASE = datetime(2025, 3, 3, 9, 0, tzinfo=UTC)


def _period(start_min: int, end_min: int) -> BusyPeriod:
    return BusyPeriod(
        start=BASE + timedelta(minutes=start_min), end=BASE + timedelta(minutes=end_min)
    )


class TestMergeBusyPeriods:
    def test_empty_input(self):
        assert merge_busy_periods([]) == []

    def test_single_period_is_returned(self):
        assert merge_busy_periods([_period(0, 30)]) == [_period(0, 30)]

    def test_overlapping_periods_merge(self):
        merged = merge_busy_periods([_period(0, 60), _period(30, 90)])
        assert merged == [_period(0, 90)]

    def test_contained_period_does_not_shrink_running_end(self):
        merged = merge_busy_periods([_period(0, 120), _period(30, 60)])
        assert merged == [_period(0, 120)]

    def test_unsorted_input_is_sorted(self):
        merged = merge_busy_periods([_period(120, 150), _period(0, 30)])
        assert merged == [_period(0, 30), _period(120, 150)]

    def test_gap_within_tolerance_merges(self):
        second = BusyPeriod(
            start=BASE + timedelta(minutes=30) + MERGE_TOLERANCE,
            end=BASE + timedelta(minutes=60),
        )
        merged = merge_busy_periods([_period(0, 30), second])
        assert merged == [_period(0, 60)]

    def test_gap_beyond_tolerance_stays_separate(self):
        second = BusyPeriod(
            start=BASE + timedelta(minutes=30) + MERGE_TOLERANCE + timedelta(seconds=1),
            end=BASE + timedelta(minutes=60),
        )
        merged = merge_busy_periods([_period(0, 30), second])
        assert len(merged) == 2

    def test_result_is_disjoint_and_ordered(self):
        merged = merge_busy_periods(
            [
                _period(200, 210),
                _period(0, 10),
                _period(5, 20),
                _period(100, 150),
                _period(140, 160),
            ]
        )
        assert merged == [_period(0, 20), _period(100, 160), _period(200, 210)]
        for earlier, later in zip(merged, merged[1:], strict=False):
            assert later.start > earlier.end + MERGE_TOLERANCE

    def test_input_is_not_mutated(self):
        periods = [_period(60, 90), _period(0, 30)]
        merge_busy_periods(periods)
        assert periods == [_period(60, 90), _period(0, 30)]
