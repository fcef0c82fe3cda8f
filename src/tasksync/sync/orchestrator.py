"""Reconciliation cycle between the task manager and the calendar.

One call to :meth:`SyncOrchestrator.run_cycle` runs the whole pipeline under
the sync lease:

1. fetch tasks, calendar routing and settings concurrently
2. complete ledger rows whose task reached a terminal status
3. reschedule placements that ended long ago without the task being done
4. rank the tasks that still need a slot and attach duration estimates
5. find free slots over the planning horizon and place tasks into them
6. create the task and break events, record the ledger row, mark the task

A failure while fetching aborts the cycle. Failures while handling a single
ledger row or placement are collected into ``SyncResult.errors`` and the
cycle moves on to the next item. The lease is released on every exit path.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import asdict, dataclass, field
from datetime import datetime, time, timedelta
from enum import StrEnum
from typing import Any

import structlog
from opentelemetry import trace

from tasksync.clients.calendar import (
    BREAK_EVENT_COLOR_ID,
    BREAK_EVENT_ID_PREFIX,
    EventSpec,
    GoogleCalendarClient,
    generate_event_id,
)
from tasksync.clients.tududi import TududiClient, is_terminal_status
from tasksync.engine.markers import StatusMarker, apply_marker, strip_marker
from tasksync.engine.ranker import estimate_duration, rank_tasks
from tasksync.engine.scheduler import schedule_tasks
from tasksync.engine.slots import find_slots
from tasksync.engine.types import BusyPeriod, CalendarMapping, PlacementDecision, Task
from tasksync.settings import SchedulingSettings
from tasksync.sync.ledger import Ledger, SyncedTaskRecord
from tasksync.sync.lease import Clock, LeaseUnavailableError, SyncLease, utc_now

logger = logging.getLogger(__name__)

DEFAULT_CALENDAR_ID = "primary"
BREAK_EVENT_SUMMARY = "Break"
ALREADY_RUNNING_MESSAGE = "Sync already in progress"

SettingsLoader = Callable[[], Awaitable[SchedulingSettings]]


class CycleOutcome(StrEnum):
    COMPLETED = "completed"
    ALREADY_RUNNING = "already_running"
    FAILED = "failed"


@dataclass
class SyncResult:
    success: bool = False
    scheduled_count: int = 0
    rescheduled_count: int = 0
    completed_count: int = 0
    errors: list[str] = field(default_factory=list)
    outcome: CycleOutcome = CycleOutcome.FAILED

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["outcome"] = str(self.outcome)
        return payload


@dataclass
class _CycleInputs:
    tasks: list[Task]
    calendar_mappings: list[CalendarMapping]
    busy_calendar_ids: list[str]
    default_calendar_id: str
    settings: SchedulingSettings


class SyncOrchestrator:
    """Runs reconciliation cycles against injected collaborators."""

    def __init__(
        self,
        *,
        tasks: TududiClient,
        calendar: GoogleCalendarClient,
        ledger: Ledger,
        lease: SyncLease,
        settings_loader: SettingsLoader,
        clock: Clock = utc_now,
    ) -> None:
        self._tasks = tasks
        self._calendar = calendar
        self._ledger = ledger
        self._lease = lease
        self._settings_loader = settings_loader
        self._clock = clock

    async def run_cycle(self) -> SyncResult:
        result = SyncResult()
        cycle_id = uuid.uuid4().hex[:8]
        tracer = trace.get_tracer("tasksync")
        with (
            structlog.contextvars.bound_contextvars(cycle_id=cycle_id),
            tracer.start_as_current_span("tasksync.sync_cycle") as span,
        ):
            span.set_attribute("cycle_id", cycle_id)
            try:
                async with self._lease.held():
                    await self._run_locked(result)
            except LeaseUnavailableError:
                logger.info("Sync already in progress, skipping cycle")
                result.outcome = CycleOutcome.ALREADY_RUNNING
                result.errors.append(ALREADY_RUNNING_MESSAGE)
            except Exception as exc:
                logger.exception("Sync cycle failed")
                result.success = False
                result.outcome = CycleOutcome.FAILED
                result.errors.append(f"Sync cycle failed: {exc}")

            span.set_attribute("outcome", str(result.outcome))
            span.set_attribute("tasks_scheduled", result.scheduled_count)
            span.set_attribute("tasks_rescheduled", result.rescheduled_count)
            span.set_attribute("tasks_completed", result.completed_count)
            span.set_attribute("errors", len(result.errors))
            logger.info(
                "Sync cycle finished: outcome=%s scheduled=%d rescheduled=%d completed=%d "
                "errors=%d",
                result.outcome,
                result.scheduled_count,
                result.rescheduled_count,
                result.completed_count,
                len(result.errors),
            )
        return result

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def _run_locked(self, result: SyncResult) -> None:
        inputs = await self._fetch_inputs()
        settings = inputs.settings
        tasks_by_uid = {task.uid: task for task in inputs.tasks}
        logger.info(
            "Fetched %d tasks, %d calendar mappings, %d busy calendars",
            len(inputs.tasks),
            len(inputs.calendar_mappings),
            len(inputs.busy_calendar_ids),
        )

        active = await self._ledger.list_active()
        # Scheduled and rescheduled rows both keep their task out of placement.
        tracked_uids = {record.task_uid for record in active}
        await self._reconcile_completed(active, tasks_by_uid, result)
        await self._reconcile_overdue(tasks_by_uid, settings, result)

        unscheduled = [
            task
            for task in inputs.tasks
            if task.due_date is not None
            and not is_terminal_status(task.status)
            and task.uid not in tracked_uids
        ]
        logger.info("Unscheduled tasks: %d", len(unscheduled))
        if not unscheduled:
            result.success = True
            result.outcome = CycleOutcome.COMPLETED
            return

        reschedule_counts = await self._ledger.reschedule_counts(
            [task.uid for task in unscheduled]
        )

        now = self._clock()
        tz = settings.tzinfo
        today = now.astimezone(tz).date()
        ranked = rank_tasks(
            unscheduled,
            settings.weights,
            reschedule_counts,
            {
                task.project_uid: task.project_importance
                for task in unscheduled
                if task.project_uid is not None and task.project_importance is not None
            },
            today=today,
        )
        for ranked_task in ranked:
            ranked_task.estimated_duration_minutes = estimate_duration(
                ranked_task.task, ranked_task.task_type, settings.duration_matrix
            )

        last_day = today + timedelta(days=settings.horizon_days)
        # Busy time is fetched through the end of the last planned day.
        horizon_end = datetime.combine(last_day + timedelta(days=1), time(), tzinfo=tz)
        busy = await self._calendar.get_busy(
            inputs.busy_calendar_ids or [DEFAULT_CALENDAR_ID], now, horizon_end
        )
        # Time already elapsed today is not schedulable.
        busy = [*busy, BusyPeriod(start=datetime.combine(today, time(), tzinfo=tz), end=now)]
        free_slots = find_slots(
            today,
            last_day,
            busy,
            settings.scheduling_windows,
            settings.min_slot_minutes,
            tz,
        )
        logger.info("Busy periods: %d, free slots: %d", len(busy), len(free_slots))

        placements = schedule_tasks(
            ranked,
            free_slots,
            inputs.calendar_mappings,
            inputs.default_calendar_id,
            settings.break_rules,
            settings.peak_hours,
        )
        logger.info("Placements: %d of %d ranked tasks", len(placements), len(ranked))

        await self._materialize(placements, reschedule_counts, settings, result)
        result.success = True
        result.outcome = CycleOutcome.COMPLETED

    async def _fetch_inputs(self) -> _CycleInputs:
        tasks, mappings, busy_ids, default_calendar_id, settings = await asyncio.gather(
            self._tasks.list_tasks(),
            self._ledger.calendar_mappings(),
            self._ledger.busy_calendar_ids(),
            self._ledger.default_calendar_id(),
            self._settings_loader(),
        )
        return _CycleInputs(
            tasks=tasks,
            calendar_mappings=mappings,
            busy_calendar_ids=busy_ids,
            default_calendar_id=default_calendar_id or DEFAULT_CALENDAR_ID,
            settings=settings,
        )

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def _delete_events(self, record: SyncedTaskRecord) -> None:
        """Delete the row's task and break events; failures are only logged."""
        if record.calendar_id is None:
            return
        for event_id in (record.calendar_event_id, record.break_event_id):
            if event_id is None:
                continue
            try:
                await self._calendar.delete_event(record.calendar_id, event_id)
            except Exception:
                logger.warning(
                    "Failed to delete event %s for task %s",
                    event_id,
                    record.task_uid,
                    exc_info=True,
                )

    async def _reconcile_completed(
        self,
        active: Sequence[SyncedTaskRecord],
        tasks_by_uid: dict[str, Task],
        result: SyncResult,
    ) -> None:
        for record in active:
            task = tasks_by_uid.get(record.task_uid)
            if task is None or not is_terminal_status(task.status):
                continue
            logger.info("Task %s is %s, cleaning up", record.task_uid, task.status)
            try:
                await self._delete_events(record)
                if record.clean_name and task.name != record.clean_name:
                    await self._tasks.update_task(record.task_uid, name=record.clean_name)
                await self._ledger.mark_completed(record.task_uid, now=self._clock())
            except Exception as exc:
                logger.exception("Failed to complete task %s", record.task_uid)
                result.errors.append(f"Failed to complete task {record.task_uid}: {exc}")
                continue
            result.completed_count += 1

    async def _reconcile_overdue(
        self,
        tasks_by_uid: dict[str, Task],
        settings: SchedulingSettings,
        result: SyncResult,
    ) -> None:
        cutoff = self._clock() - timedelta(hours=settings.reschedule_timeout_hours)
        for record in await self._ledger.list_overdue(cutoff):
            task = tasks_by_uid.get(record.task_uid)
            if task is None or is_terminal_status(task.status):
                continue
            logger.info(
                "Rescheduling task %s (ended %s, reschedule #%d)",
                record.task_uid,
                record.scheduled_end,
                record.reschedule_count + 1,
            )
            try:
                await self._delete_events(record)
                await self._ledger.mark_rescheduled(
                    record.task_uid, record.reschedule_count + 1, now=self._clock()
                )
            except Exception as exc:
                logger.exception("Failed to reschedule task %s", record.task_uid)
                result.errors.append(f"Failed to reschedule task {record.task_uid}: {exc}")
                continue
            result.rescheduled_count += 1

            try:
                await self._tasks.update_task(
                    record.task_uid, name=apply_marker(task.name, StatusMarker.PROBLEM)
                )
            except Exception:
                logger.warning(
                    "Failed to mark task %s as needing a new slot", record.task_uid, exc_info=True
                )

    # ------------------------------------------------------------------
    # Materialization
    # ------------------------------------------------------------------

    async def _materialize(
        self,
        placements: Sequence[PlacementDecision],
        reschedule_counts: dict[str, int],
        settings: SchedulingSettings,
        result: SyncResult,
    ) -> None:
        for placement in placements:
            uid = placement.task.uid
            try:
                await self._place(placement, reschedule_counts.get(uid, 0), settings)
            except Exception as exc:
                logger.exception("Failed to schedule task %s", uid)
                result.errors.append(f"Failed to schedule task {uid}: {exc}")
                continue
            result.scheduled_count += 1
            logger.info(
                "Scheduled task %s at %s on %s",
                uid,
                placement.event_start.isoformat(),
                placement.calendar_id,
            )

    async def _place(
        self, placement: PlacementDecision, attempt: int, settings: SchedulingSettings
    ) -> None:
        task = placement.task
        clean_name = strip_marker(task.name)
        marked_name = apply_marker(clean_name, StatusMarker.SCHEDULED)

        task_event = await self._calendar.create_event(
            placement.calendar_id,
            EventSpec(
                event_id=generate_event_id(task.uid, attempt),
                summary=marked_name,
                description=task.note or None,
                start_at=placement.event_start,
                end_at=placement.event_end,
                timezone=settings.timezone,
            ),
        )
        break_event = await self._calendar.create_event(
            placement.calendar_id,
            EventSpec(
                event_id=generate_event_id(task.uid, attempt, prefix=BREAK_EVENT_ID_PREFIX),
                summary=BREAK_EVENT_SUMMARY,
                description=f"Break after: {clean_name}",
                start_at=placement.break_start,
                end_at=placement.break_end,
                timezone=settings.timezone,
                color_id=BREAK_EVENT_COLOR_ID,
                transparency="transparent",
            ),
        )

        await self._ledger.record_scheduled(
            task,
            calendar_event_id=task_event.id,
            break_event_id=break_event.id,
            calendar_id=placement.calendar_id,
            scheduled_start=placement.event_start,
            scheduled_end=placement.event_end,
            clean_name=clean_name,
            now=self._clock(),
        )
        await self._tasks.update_task(task.uid, name=marked_name)


__all__ = [
    "CycleOutcome",
    "SyncOrchestrator",
    "SyncResult",
]
