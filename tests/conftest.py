"""Shared fixtures for the tasksync test suite.

Database-backed tests share one Postgres testcontainer per session. Each use
of :func:`migrated_pool` creates a fresh randomly named database and runs
the Alembic chain against it, so rows never leak between tests.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncIterator, Callable, Iterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import TYPE_CHECKING

import pytest

if TYPE_CHECKING:
    from asyncpg.pool import Pool
    from testcontainers.postgres import PostgresContainer


def _unique_test_db_name() -> str:
    return f"test_{uuid.uuid4().hex[:12]}"


@pytest.fixture(scope="session")
def postgres_container() -> Iterator[PostgresContainer]:
    from testcontainers.postgres import PostgresContainer

    with PostgresContainer("postgres:16") as pg:
        yield pg


@pytest.fixture
def migrated_pool(
    postgres_container: PostgresContainer,
) -> Callable[..., AbstractAsyncContextManager[Pool]]:
    """Create a fresh database at schema head and yield an asyncpg pool for it.

    Tests should use this as:
        async with migrated_pool() as pool:
            ...
    """
    import asyncpg

    from tasksync.db import Database
    from tasksync.migrations import run_migrations

    @asynccontextmanager
    async def _fresh_database(*, max_pool_size: int = 3) -> AsyncIterator[Pool]:
        db = Database(
            db_name=_unique_test_db_name(),
            host=postgres_container.get_container_host_ip(),
            port=int(postgres_container.get_exposed_port(5432)),
            user=postgres_container.username,
            password=postgres_container.password,
            min_pool_size=1,
            max_pool_size=max_pool_size,
        )
        admin = await asyncpg.connect(
            host=db.host, port=db.port, user=db.user, password=db.password, database="postgres"
        )
        try:
            await admin.execute(f'CREATE DATABASE "{db.db_name}"')
        finally:
            await admin.close()
        await run_migrations(db.sqlalchemy_url())
        async with db.connected() as pool:
            yield pool

    return _fresh_database
