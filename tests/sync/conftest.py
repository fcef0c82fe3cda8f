"""Fixtures shared by the sync tests: a fake clock and an in-memory lease row."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from tasksync.sync.lease import LeaseRepository, LeaseState, SyncLease

T0 = datetime(2025, 3, 3, 8, 0, tzinfo=UTC)


class FakeClock:
    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now += delta


class InMemoryLeaseRepository(LeaseRepository):
    def __init__(self, state: LeaseState | None = None) -> None:
        self.state = state
        self.releases = 0

    async def fetch(self) -> LeaseState | None:
        # Yield like a database round trip so concurrent callers interleave.
        await asyncio.sleep(0)
        if self.state is None:
            return None
        return LeaseState(
            in_progress=self.state.in_progress,
            started_at=self.state.started_at,
            last_completed_at=self.state.last_completed_at,
        )

    async def try_take(self, now: datetime, stale_before: datetime) -> bool:
        await asyncio.sleep(0)
        if self.state is None:
            self.state = LeaseState(in_progress=True, started_at=now)
            return True
        started_at = self.state.started_at
        if self.state.in_progress and started_at is not None and started_at > stale_before:
            return False
        self.state.in_progress = True
        self.state.started_at = now
        return True

    async def mark_released(self, now: datetime) -> None:
        assert self.state is not None
        self.state.in_progress = False
        self.state.last_completed_at = now
        self.releases += 1


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def lease_repository() -> InMemoryLeaseRepository:
    return InMemoryLeaseRepository()


@pytest.fixture
def lease(lease_repository: InMemoryLeaseRepository, clock: FakeClock) -> SyncLease:
    return SyncLease(lease_repository, clock=clock)
