"""Persisted ledger of synced tasks plus calendar routing tables.

One ``synced_tasks`` row exists per task uid once the task has been placed.
Rows are never deleted; they move between statuses as the task is completed
or rescheduled. ``calendar_event_id`` and ``break_event_id`` are always set or
cleared together.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Any

import asyncpg

from tasksync.engine.markers import StatusMarker
from tasksync.engine.types import CalendarMapping, Task

logger = logging.getLogger(__name__)


class SyncStatus(StrEnum):
    PENDING = "pending"
    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    RESCHEDULED = "rescheduled"
    FAILED = "failed"
    CANCELLED = "cancelled"


ACTIVE_STATUSES = (SyncStatus.SCHEDULED, SyncStatus.RESCHEDULED)

_RECORD_COLUMNS = """
    task_uid, clean_name, current_status_marker, calendar_event_id, break_event_id,
    calendar_id, scheduled_start, scheduled_end, status, reschedule_count,
    task_manager_status, last_checked_at
"""


@dataclass
class SyncedTaskRecord:
    task_uid: str
    clean_name: str
    status: SyncStatus
    reschedule_count: int = 0
    current_status_marker: str | None = None
    calendar_event_id: str | None = None
    break_event_id: str | None = None
    calendar_id: str | None = None
    scheduled_start: datetime | None = None
    scheduled_end: datetime | None = None
    task_manager_status: str | None = None
    last_checked_at: datetime | None = None

    @classmethod
    def from_row(cls, row: asyncpg.Record | dict[str, Any]) -> SyncedTaskRecord:
        return cls(
            task_uid=row["task_uid"],
            clean_name=row["clean_name"],
            status=SyncStatus(row["status"]),
            reschedule_count=row["reschedule_count"],
            current_status_marker=row["current_status_marker"],
            calendar_event_id=row["calendar_event_id"],
            break_event_id=row["break_event_id"],
            calendar_id=row["calendar_id"],
            scheduled_start=row["scheduled_start"],
            scheduled_end=row["scheduled_end"],
            task_manager_status=row["task_manager_status"],
            last_checked_at=row["last_checked_at"],
        )


class Ledger:
    """asyncpg-backed access to ``synced_tasks`` and the routing tables."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def get(self, task_uid: str) -> SyncedTaskRecord | None:
        row = await self._pool.fetchrow(
            f"SELECT {_RECORD_COLUMNS} FROM synced_tasks WHERE task_uid = $1",
            task_uid,
        )
        return SyncedTaskRecord.from_row(row) if row is not None else None

    async def list_active(self) -> list[SyncedTaskRecord]:
        rows = await self._pool.fetch(
            f"SELECT {_RECORD_COLUMNS} FROM synced_tasks WHERE status = ANY($1::text[])",
            [str(status) for status in ACTIVE_STATUSES],
        )
        return [SyncedTaskRecord.from_row(row) for row in rows]

    async def reschedule_counts(self, task_uids: list[str]) -> dict[str, int]:
        """Stored reschedule counts for *task_uids*, whatever the row status."""
        if not task_uids:
            return {}
        rows = await self._pool.fetch(
            """
            SELECT task_uid, reschedule_count FROM synced_tasks
            WHERE task_uid = ANY($1::text[])
            """,
            task_uids,
        )
        return {row["task_uid"]: row["reschedule_count"] for row in rows}

    async def list_overdue(self, cutoff: datetime) -> list[SyncedTaskRecord]:
        """Scheduled rows whose placement ended before *cutoff*."""
        rows = await self._pool.fetch(
            f"""
            SELECT {_RECORD_COLUMNS} FROM synced_tasks
            WHERE status = $1 AND scheduled_end < $2
            ORDER BY scheduled_end
            """,
            str(SyncStatus.SCHEDULED),
            cutoff,
        )
        return [SyncedTaskRecord.from_row(row) for row in rows]

    async def record_scheduled(
        self,
        task: Task,
        *,
        calendar_event_id: str,
        break_event_id: str,
        calendar_id: str,
        scheduled_start: datetime,
        scheduled_end: datetime,
        clean_name: str,
        now: datetime,
    ) -> None:
        """Insert or update the row for *task* as freshly scheduled."""
        await self._pool.execute(
            """
            INSERT INTO synced_tasks (
                task_uid, clean_name, current_status_marker, calendar_event_id,
                break_event_id, calendar_id, scheduled_start, scheduled_end, status,
                task_manager_status, last_checked_at, created_at, updated_at
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $11, $11)
            ON CONFLICT (task_uid) DO UPDATE
                SET clean_name = EXCLUDED.clean_name,
                    current_status_marker = EXCLUDED.current_status_marker,
                    calendar_event_id = EXCLUDED.calendar_event_id,
                    break_event_id = EXCLUDED.break_event_id,
                    calendar_id = EXCLUDED.calendar_id,
                    scheduled_start = EXCLUDED.scheduled_start,
                    scheduled_end = EXCLUDED.scheduled_end,
                    status = EXCLUDED.status,
                    task_manager_status = EXCLUDED.task_manager_status,
                    last_checked_at = EXCLUDED.last_checked_at,
                    updated_at = EXCLUDED.updated_at
            """,
            task.uid,
            clean_name,
            str(StatusMarker.SCHEDULED),
            calendar_event_id,
            break_event_id,
            calendar_id,
            scheduled_start,
            scheduled_end,
            str(SyncStatus.SCHEDULED),
            task.status,
            now,
        )

    async def mark_completed(self, task_uid: str, *, now: datetime) -> None:
        await self._pool.execute(
            """
            UPDATE synced_tasks
            SET status = $2, current_status_marker = NULL,
                last_checked_at = $3, updated_at = $3
            WHERE task_uid = $1
            """,
            task_uid,
            str(SyncStatus.COMPLETED),
            now,
        )

    async def mark_rescheduled(
        self, task_uid: str, reschedule_count: int, *, now: datetime
    ) -> None:
        """Flag the row for re-placement and drop its (deleted) event ids."""
        await self._pool.execute(
            """
            UPDATE synced_tasks
            SET status = $2, reschedule_count = $3, current_status_marker = $4,
                calendar_event_id = NULL, break_event_id = NULL,
                last_checked_at = $5, updated_at = $5
            WHERE task_uid = $1
            """,
            task_uid,
            str(SyncStatus.RESCHEDULED),
            reschedule_count,
            str(StatusMarker.PROBLEM),
            now,
        )

    async def calendar_mappings(self) -> list[CalendarMapping]:
        rows = await self._pool.fetch(
            "SELECT project_uid, calendar_id FROM calendar_mappings ORDER BY id"
        )
        return [
            CalendarMapping(project_uid=row["project_uid"], calendar_id=row["calendar_id"])
            for row in rows
        ]

    async def default_calendar_id(self) -> str | None:
        return await self._pool.fetchval(
            "SELECT calendar_id FROM calendar_mappings WHERE is_default ORDER BY id LIMIT 1"
        )

    async def busy_calendar_ids(self) -> list[str]:
        rows = await self._pool.fetch(
            "SELECT calendar_id FROM busy_calendars WHERE enabled ORDER BY id"
        )
        return [row["calendar_id"] for row in rows]

    async def stats(self, *, day_start: datetime) -> dict[str, int]:
        """Counts shown by ``tasksync status``; *day_start* anchors "today"."""
        row = await self._pool.fetchrow(
            """
            SELECT
                count(*) FILTER (
                    WHERE scheduled_start >= $1 AND scheduled_start < $2
                ) AS scheduled_today,
                count(*) FILTER (WHERE status = 'pending') AS pending,
                count(*) FILTER (
                    WHERE reschedule_count > 0 OR status = 'rescheduled'
                ) AS rescheduled,
                count(*) FILTER (WHERE status = 'completed') AS completed
            FROM synced_tasks
            """,
            day_start,
            day_start + timedelta(days=1),
        )
        return {key: int(row[key]) for key in row.keys()}

    async def list_upcoming(self, now: datetime, limit: int = 20) -> list[SyncedTaskRecord]:
        rows = await self._pool.fetch(
            f"""
            SELECT {_RECORD_COLUMNS} FROM synced_tasks
            WHERE status = $1 AND scheduled_start >= $2
            ORDER BY scheduled_start
            LIMIT $3
            """,
            str(SyncStatus.SCHEDULED),
            now,
            limit,
        )
        return [SyncedTaskRecord.from_row(row) for row in rows]
