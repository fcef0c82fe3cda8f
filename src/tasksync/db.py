"""asyncpg pool for the tasksync ledger database.

tasksync keeps its ledger, sync lease and scheduling settings in one Postgres
database. The schema is owned by the Alembic ``core`` chain (see
:mod:`tasksync.migrations`); the database itself must already exist.

Connection details resolve in this order: ``[database] url`` in
``tasksync.toml``, ``DATABASE_URL``, then the ``POSTGRES_*`` variables.
"""

from __future__ import annotations

import logging
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import parse_qs, quote, unquote, urlparse

import asyncpg

logger = logging.getLogger(__name__)

DEFAULT_DB_NAME = "tasksync"
_URL_SCHEMES = ("postgres", "postgresql")
_SSL_MODES = ("disable", "allow", "prefer", "require", "verify-ca", "verify-full")


def _ssl_mode(value: str | None) -> str | None:
    if value is None or not value.strip():
        return None
    mode = value.strip().lower()
    if mode not in _SSL_MODES:
        raise ValueError(
            f"Unsupported sslmode {value!r}; expected one of {', '.join(_SSL_MODES)}"
        )
    return mode


@dataclass
class Database:
    """Where the ledger database lives, plus the pool once connected."""

    db_name: str = DEFAULT_DB_NAME
    host: str = "localhost"
    port: int = 5432
    user: str = "postgres"
    password: str = "postgres"
    ssl: str | None = None
    min_pool_size: int = 1
    max_pool_size: int = 5
    pool: asyncpg.Pool | None = field(default=None, repr=False, compare=False)

    @classmethod
    def from_url(
        cls, database_url: str, db_name: str | None = None, **pool_kwargs: int
    ) -> Database:
        """Build from a libpq-style URL; an explicit *db_name* wins over its path."""
        parsed = urlparse(database_url)
        if parsed.scheme not in _URL_SCHEMES:
            raise ValueError(
                f"Database URL must use postgresql://, got {parsed.scheme or 'none'}"
            )
        sslmode = parse_qs(parsed.query).get("sslmode", [None])[0]
        return cls(
            db_name=db_name or unquote(parsed.path.lstrip("/")) or DEFAULT_DB_NAME,
            host=parsed.hostname or "localhost",
            port=parsed.port or 5432,
            user=unquote(parsed.username) if parsed.username else "postgres",
            password=unquote(parsed.password) if parsed.password else "postgres",
            ssl=_ssl_mode(sslmode),
            **pool_kwargs,
        )

    @classmethod
    def from_env(cls, db_name: str | None = None, **pool_kwargs: int) -> Database:
        database_url = os.environ.get("DATABASE_URL")
        if database_url:
            return cls.from_url(database_url, db_name, **pool_kwargs)
        return cls(
            db_name=db_name or os.environ.get("POSTGRES_DB") or DEFAULT_DB_NAME,
            host=os.environ.get("POSTGRES_HOST", "localhost"),
            port=int(os.environ.get("POSTGRES_PORT", "5432")),
            user=os.environ.get("POSTGRES_USER", "postgres"),
            password=os.environ.get("POSTGRES_PASSWORD", "postgres"),
            ssl=_ssl_mode(os.environ.get("POSTGRES_SSLMODE")),
            **pool_kwargs,
        )

    def sqlalchemy_url(self) -> str:
        """psycopg URL for the Alembic runner, which does not speak asyncpg."""
        url = (
            f"postgresql+psycopg://{quote(self.user, safe='')}:{quote(self.password, safe='')}"
            f"@{self.host}:{self.port}/{quote(self.db_name, safe='')}"
        )
        if self.ssl is not None:
            url = f"{url}?sslmode={self.ssl}"
        return url

    async def connect(self) -> asyncpg.Pool:
        if self.pool is not None:
            return self.pool
        kwargs: dict[str, Any] = {
            "host": self.host,
            "port": self.port,
            "user": self.user,
            "password": self.password,
            "database": self.db_name,
            "min_size": self.min_pool_size,
            "max_size": self.max_pool_size,
        }
        if self.ssl is not None:
            kwargs["ssl"] = self.ssl
        self.pool = await asyncpg.create_pool(**kwargs)
        logger.info(
            "Connected to ledger database %s at %s:%d (pool %d-%d)",
            self.db_name,
            self.host,
            self.port,
            self.min_pool_size,
            self.max_pool_size,
        )
        return self.pool

    async def close(self) -> None:
        if self.pool is None:
            return
        await self.pool.close()
        self.pool = None
        logger.info("Closed ledger database pool for %s", self.db_name)

    @asynccontextmanager
    async def connected(self) -> AsyncIterator[asyncpg.Pool]:
        """Yield the pool for one command and close it afterwards."""
        pool = await self.connect()
        try:
            yield pool
        finally:
            await self.close()
