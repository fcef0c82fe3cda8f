"""Status markers embedded at the front of task names.

The task manager has no field for scheduling state, so the state is shown as
a leading emoji on the task name. Markers are always stripped before a new one
is applied, so names never accumulate them.
"""

from __future__ import annotations

import re
from enum import StrEnum


class StatusMarker(StrEnum):
    SCHEDULED = "📅"
    PROBLEM = "⚠️"
    PAST_DUE = "❌"


# The problem marker may arrive without its variation selector.
_MARKER_ALTERNATION = "|".join(["📅", "⚠️?", "❌"])
_MARKER_PATTERN = re.compile(rf"^(?:{_MARKER_ALTERNATION})(?:\s+(?:{_MARKER_ALTERNATION}))*\s*")


def strip_marker(name: str) -> str:
    """Remove any leading run of markers and surrounding whitespace."""
    return _MARKER_PATTERN.sub("", name, count=1).strip()


def apply_marker(name: str, marker: StatusMarker) -> str:
    return f"{marker} {strip_marker(name)}"


def detect_marker(name: str) -> StatusMarker | None:
    """Return the marker at the front of *name*; scheduled wins over the others."""
    match = _MARKER_PATTERN.match(name)
    if match is None:
        return None
    found = match.group(0)
    for marker in (StatusMarker.SCHEDULED, StatusMarker.PROBLEM, StatusMarker.PAST_DUE):
        if marker.value[0] in found:
            return marker
    return None


def has_marker(name: str) -> bool:
    return _MARKER_PATTERN.match(name) is not None
