"""Single-row lease that keeps sync cycles from overlapping.

The lease is not a fenced distributed lock. A holder that crashes leaves the
row marked in progress; once ``timeout`` has elapsed since ``started_at`` any
caller may reclaim it. Taking the lease is a single conditional write, so two
callers never both win. A holder that outlives the timeout can overlap with
its successor; event ids are deterministic, so that only re-creates events.
"""

from __future__ import annotations

import abc
import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

import asyncpg

logger = logging.getLogger(__name__)

DEFAULT_LEASE_TIMEOUT = timedelta(minutes=10)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(UTC)


class LeaseUnavailableError(RuntimeError):
    """Raised when another cycle holds an unexpired lease."""

    def __init__(self, started_at: datetime | None) -> None:
        self.started_at = started_at
        super().__init__(f"Sync already in progress (started at {started_at})")


@dataclass
class LeaseState:
    in_progress: bool
    started_at: datetime | None = None
    last_completed_at: datetime | None = None


class LeaseRepository(abc.ABC):
    """Storage for the singleton lease row."""

    @abc.abstractmethod
    async def fetch(self) -> LeaseState | None:
        """Return the lease row, or ``None`` when it was never created."""

    @abc.abstractmethod
    async def try_take(self, now: datetime, stale_before: datetime) -> bool:
        """Atomically mark the lease held, started at *now*.

        The take succeeds when the row does not exist yet, is not in progress,
        or was started at or before *stale_before*. Two concurrent callers can
        never both succeed.
        """

    @abc.abstractmethod
    async def mark_released(self, now: datetime) -> None:
        """Clear ``in_progress`` and record *now* as the completion time."""


class PostgresLeaseRepository(LeaseRepository):
    """``sync_lease`` table; the singleton row always has ``id = 1``."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def fetch(self) -> LeaseState | None:
        row = await self._pool.fetchrow(
            "SELECT in_progress, started_at, last_completed_at FROM sync_lease WHERE id = 1"
        )
        if row is None:
            return None
        return LeaseState(
            in_progress=row["in_progress"],
            started_at=row["started_at"],
            last_completed_at=row["last_completed_at"],
        )

    async def try_take(self, now: datetime, stale_before: datetime) -> bool:
        taken = await self._pool.fetchval(
            """
            INSERT INTO sync_lease (id, in_progress, started_at)
            VALUES (1, true, $1)
            ON CONFLICT (id) DO UPDATE
                SET in_progress = true, started_at = EXCLUDED.started_at
                WHERE NOT sync_lease.in_progress
                    OR sync_lease.started_at IS NULL
                    OR sync_lease.started_at <= $2
            RETURNING id
            """,
            now,
            stale_before,
        )
        return taken is not None

    async def mark_released(self, now: datetime) -> None:
        await self._pool.execute(
            "UPDATE sync_lease SET in_progress = false, last_completed_at = $1 WHERE id = 1",
            now,
        )


class SyncLease:
    """Acquire/release logic over a :class:`LeaseRepository` and an injectable clock."""

    def __init__(
        self,
        repository: LeaseRepository,
        *,
        clock: Clock = utc_now,
        timeout: timedelta = DEFAULT_LEASE_TIMEOUT,
    ) -> None:
        self._repository = repository
        self._clock = clock
        self._timeout = timeout

    async def acquire(self) -> bool:
        """Try to take the lease. Returns False while another holder is live.

        A holder whose lease is at least ``timeout`` old is treated as crashed
        and its lease is taken over in the same conditional write.
        """
        state = await self._repository.fetch()
        now = self._clock()
        if not await self._repository.try_take(now, now - self._timeout):
            return False

        if state is not None and state.in_progress:
            logger.warning(
                "Reclaimed abandoned sync lease (started_at=%s, timeout=%s)",
                state.started_at,
                self._timeout,
            )
        return True

    async def release(self) -> None:
        await self._repository.mark_released(self._clock())

    async def state(self) -> LeaseState | None:
        return await self._repository.fetch()

    @asynccontextmanager
    async def held(self) -> AsyncIterator[None]:
        """Hold the lease for the duration of the block.

        Raises:
            LeaseUnavailableError: If a live holder already has it.
        """
        if not await self.acquire():
            state = await self._repository.fetch()
            raise LeaseUnavailableError(state.started_at if state else None)
        try:
            yield
        finally:
            await self.release()
