"""Free-slot discovery from weekly windows and busy periods.

Each calendar day is handled independently: the day's window is cut by the
merged busy periods that overlap it, and every remaining gap of at least the
minimum duration becomes a :class:`FreeSlot`. Slots never span two days, even
when adjacent windows touch.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import UTC, date, datetime, time, timedelta, tzinfo

from tasksync.engine.intervals import merge_busy_periods
from tasksync.engine.types import BusyPeriod, DayWindow, FreeSlot, WeeklyWindows

_WEEKDAY_NAMES = (
    "monday",
    "tuesday",
    "wednesday",
    "thursday",
    "friday",
    "saturday",
    "sunday",
)


def weekday_name(day: date) -> str:
    """Return the ``WeeklyWindows`` field name for *day*."""
    return _WEEKDAY_NAMES[day.weekday()]


def whole_minutes(start: datetime, end: datetime) -> int:
    """Floored minutes between two aware datetimes, measured in absolute time."""
    seconds = (end.astimezone(UTC) - start.astimezone(UTC)).total_seconds()
    return int(seconds // 60)


def _as_local_date(value: date | datetime, tz: tzinfo) -> date:
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(tz)
        return value.date()
    return value


def _gap(start: datetime, end: datetime, min_minutes: int, tz: tzinfo) -> FreeSlot | None:
    minutes = whole_minutes(start, end)
    if minutes < min_minutes:
        return None
    return FreeSlot(start=start.astimezone(tz), end=end.astimezone(tz), duration_minutes=minutes)


def find_slots_for_day(
    day: date,
    window: DayWindow,
    busy: Sequence[BusyPeriod],
    min_minutes: int,
    tz: tzinfo = UTC,
) -> list[FreeSlot]:
    """Return the free slots inside *day*'s scheduling window.

    Gaps shorter than *min_minutes* (floored to whole minutes) are dropped.
    """
    if not window.enabled:
        return []

    window_start = datetime.combine(day, time(hour=window.start), tzinfo=tz)
    window_end = datetime.combine(day, time(hour=window.end), tzinfo=tz)

    relevant = [
        period for period in busy if period.end > window_start and period.start < window_end
    ]

    slots: list[FreeSlot] = []
    cursor = window_start
    for period in merge_busy_periods(relevant):
        if period.start > cursor:
            slot = _gap(cursor, period.start, min_minutes, tz)
            if slot is not None:
                slots.append(slot)
        if period.end > cursor:
            cursor = period.end

    if cursor < window_end:
        slot = _gap(cursor, window_end, min_minutes, tz)
        if slot is not None:
            slots.append(slot)
    return slots


def find_slots(
    start_date: date | datetime,
    end_date: date | datetime,
    busy: Sequence[BusyPeriod],
    weekly_windows: WeeklyWindows,
    min_minutes: int,
    tz: tzinfo = UTC,
) -> list[FreeSlot]:
    """Return free slots for every day from *start_date* to *end_date* inclusive.

    Datetime bounds are converted to *tz* before taking their calendar date.
    Slots are returned in chronological day order.
    """
    current = _as_local_date(start_date, tz)
    last = _as_local_date(end_date, tz)

    slots: list[FreeSlot] = []
    while current <= last:
        window = weekly_windows.for_weekday(weekday_name(current))
        slots.extend(find_slots_for_day(current, window, busy, min_minutes, tz))
        current += timedelta(days=1)
    return slots
