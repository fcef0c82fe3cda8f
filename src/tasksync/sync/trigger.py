"""Periodic trigger that runs a sync cycle every ``sync_interval_minutes``.

The cadence is the cron expression ``*/N * * * *`` evaluated with croniter,
so cycles land on wall-clock multiples of the interval. The interval is
re-read before every wait so a settings change applies from the next cycle.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime

from croniter import croniter

from tasksync.sync.lease import Clock, utc_now
from tasksync.sync.orchestrator import SyncResult

logger = logging.getLogger(__name__)


def sync_cron(interval_minutes: int) -> str:
    """Cron expression firing every *interval_minutes* minutes."""
    if not 1 <= interval_minutes <= 59:
        raise ValueError(f"sync interval must be between 1 and 59 minutes, got {interval_minutes}")
    return f"*/{interval_minutes} * * * *"


def next_run_at(cron: str, now: datetime | None = None) -> datetime:
    """Compute the next run time for a cron expression from *now* (UTC)."""
    anchor = (now or datetime.now(UTC)).astimezone(UTC)
    return croniter(cron, anchor).get_next(datetime).replace(tzinfo=UTC)


class PeriodicSync:
    def __init__(
        self,
        run_cycle: Callable[[], Awaitable[SyncResult]],
        interval_loader: Callable[[], Awaitable[int]],
        *,
        clock: Clock = utc_now,
    ) -> None:
        self._run_cycle = run_cycle
        self._interval_loader = interval_loader
        self._clock = clock
        self._interval_minutes = 15
        self.last_sync_at: datetime | None = None
        self.next_sync_at: datetime | None = None
        self.cycles_run = 0

    async def _current_interval(self) -> int:
        try:
            self._interval_minutes = await self._interval_loader()
        except Exception:
            logger.warning(
                "Failed to read sync interval; keeping %d minutes",
                self._interval_minutes,
                exc_info=True,
            )
        return self._interval_minutes

    async def run(self, stop_event: asyncio.Event) -> None:
        """Run cycles on schedule until *stop_event* is set."""
        while not stop_event.is_set():
            interval = await self._current_interval()
            self.next_sync_at = next_run_at(sync_cron(interval), self._clock())
            delay = max(0.0, (self.next_sync_at - self._clock()).total_seconds())
            logger.info("Next sync at %s", self.next_sync_at.isoformat())

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=delay)
                break
            except TimeoutError:
                pass

            result = await self._run_cycle()
            self.cycles_run += 1
            self.last_sync_at = self._clock()
            if result.success:
                logger.info(
                    "Sync completed: scheduled=%d rescheduled=%d completed=%d",
                    result.scheduled_count,
                    result.rescheduled_count,
                    result.completed_count,
                )
            else:
                logger.warning("Sync completed with errors: %s", ", ".join(result.errors))
