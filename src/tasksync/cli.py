"""CLI for tasksync: migrate the ledger, run sync cycles, inspect status."""

from __future__ import annotations

import asyncio
import json
import signal
import sys
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any, NoReturn

import click

from tasksync import __version__
from tasksync.clients.calendar import (
    CalendarCredentialError,
    GoogleCalendarClient,
    GoogleOAuthCredentials,
)
from tasksync.clients.tududi import TududiClient
from tasksync.config import ConfigError, TasksyncConfig, load_config
from tasksync.core.logging import configure_logging
from tasksync.core.telemetry import init_telemetry
from tasksync.db import Database
from tasksync.migrations import run_migrations
from tasksync.settings import load_settings, seed_default_settings
from tasksync.sync.lease import PostgresLeaseRepository, SyncLease, utc_now
from tasksync.sync.ledger import Ledger
from tasksync.sync.orchestrator import SyncOrchestrator, SyncResult
from tasksync.sync.trigger import PeriodicSync


@dataclass
class _SyncSettings:
    database: Database
    tududi_url: str
    tududi_key: str
    google_credentials: GoogleOAuthCredentials


def _fail(message: str) -> NoReturn:
    click.echo(f"Error: {message}", err=True)
    sys.exit(1)


def _resolve_sync_settings(config: TasksyncConfig) -> _SyncSettings:
    """Validate database settings and credentials before anything touches the ledger."""
    database = config.database.build()
    tududi_url, tududi_key = config.tududi.require()
    try:
        credentials = GoogleOAuthCredentials.from_json(config.google.require_credentials_json())
    except CalendarCredentialError as exc:
        raise ConfigError(str(exc)) from exc
    return _SyncSettings(database, tududi_url, tududi_key, credentials)


def _echo_json(payload: dict[str, Any]) -> None:
    click.echo(json.dumps(payload, indent=2, default=str))


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Path to tasksync.toml (defaults to ./tasksync.toml when present)",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None) -> None:
    """tasksync: places open tasks into free calendar time."""
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        _fail(str(exc))
    log_root = Path(config.logging.log_root) if config.logging.log_root else None
    configure_logging(
        level=config.logging.level,
        fmt=config.logging.format,
        log_root=log_root,
        command=ctx.invoked_subcommand,
    )
    ctx.obj = config




def _database(config: TasksyncConfig) -> Database:
    try:
        return config.database.build()
    except ConfigError as exc:
        _fail(str(exc))


@cli.command()
@click.pass_obj
def migrate(config: TasksyncConfig) -> None:
    """Upgrade the ledger schema to head."""
    db = _database(config)
    asyncio.run(run_migrations(db.sqlalchemy_url()))
    click.echo(f"Database {db.db_name} is up to date")


@cli.command("seed-settings")
@click.pass_obj
def seed_settings(config: TasksyncConfig) -> None:
    """Insert default scheduling settings for keys that have no row yet."""
    inserted = asyncio.run(_seed_settings(_database(config)))
    if inserted:
        click.echo(f"Seeded: {', '.join(inserted)}")
    else:
        click.echo("All settings already present")


async def _seed_settings(db: Database) -> list[str]:
    async with db.connected() as pool:
        return await seed_default_settings(pool)


@cli.command()
@click.pass_obj
def sync(config: TasksyncConfig) -> None:
    """Run one sync cycle and print its result as JSON."""
    try:
        sync_settings = _resolve_sync_settings(config)
    except ConfigError as exc:
        _fail(str(exc))
    init_telemetry()
    result = asyncio.run(_sync_once(config, sync_settings))
    _echo_json(result.to_dict())
    if not result.success:
        sys.exit(1)


async def _with_orchestrator(
    config: TasksyncConfig,
    sync_settings: _SyncSettings,
    body: Callable[[SyncOrchestrator, Any], Awaitable[Any]],
) -> Any:
    tasks = TududiClient(sync_settings.tududi_url, sync_settings.tududi_key)
    calendar = GoogleCalendarClient(sync_settings.google_credentials)
    try:
        async with sync_settings.database.connected() as pool:
            orchestrator = SyncOrchestrator(
                tasks=tasks,
                calendar=calendar,
                ledger=Ledger(pool),
                lease=SyncLease(
                    PostgresLeaseRepository(pool),
                    timeout=timedelta(minutes=config.lease_timeout_minutes),
                ),
                settings_loader=lambda: load_settings(pool),
            )
            return await body(orchestrator, pool)
    finally:
        await tasks.shutdown()
        await calendar.shutdown()


async def _sync_once(config: TasksyncConfig, sync_settings: _SyncSettings) -> SyncResult:
    async def body(orchestrator: SyncOrchestrator, pool: Any) -> SyncResult:
        return await orchestrator.run_cycle()

    return await _with_orchestrator(config, sync_settings, body)


@cli.command()
@click.option("--now", "run_now", is_flag=True, help="Run a cycle immediately before waiting")
@click.pass_obj
def serve(config: TasksyncConfig, run_now: bool) -> None:
    """Run sync cycles every sync_interval_minutes until interrupted."""
    try:
        sync_settings = _resolve_sync_settings(config)
    except ConfigError as exc:
        _fail(str(exc))
    init_telemetry()
    asyncio.run(_serve(config, sync_settings, run_now))


async def _serve(config: TasksyncConfig, sync_settings: _SyncSettings, run_now: bool) -> None:
    loop = asyncio.get_running_loop()
    shutdown_event = asyncio.Event()

    def _signal_handler() -> None:
        click.echo("\nShutting down...")
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _signal_handler)

    async def body(orchestrator: SyncOrchestrator, pool: Any) -> None:
        async def interval() -> int:
            return (await load_settings(pool)).sync_interval_minutes

        if run_now:
            await orchestrator.run_cycle()
        await PeriodicSync(orchestrator.run_cycle, interval).run(shutdown_event)

    await _with_orchestrator(config, sync_settings, body)


@cli.command()
@click.option("--limit", default=20, show_default=True, help="Upcoming placements to list")
@click.pass_obj
def status(config: TasksyncConfig, limit: int) -> None:
    """Print lease state, ledger counts and upcoming placements as JSON."""
    _echo_json(asyncio.run(_status(_database(config), limit)))


async def _status(db: Database, limit: int) -> dict[str, Any]:
    async with db.connected() as pool:
        settings = await load_settings(pool)
        now = utc_now()
        day_start = now.astimezone(settings.tzinfo).replace(
            hour=0, minute=0, second=0, microsecond=0
        )
        lease_state = await SyncLease(PostgresLeaseRepository(pool)).state()
        ledger = Ledger(pool)
        upcoming = await ledger.list_upcoming(now, limit)
        return {
            "sync": {
                "in_progress": bool(lease_state and lease_state.in_progress),
                "started_at": lease_state.started_at if lease_state else None,
                "last_completed_at": lease_state.last_completed_at if lease_state else None,
                "interval_minutes": settings.sync_interval_minutes,
            },
            "stats": await ledger.stats(day_start=day_start),
            "upcoming": [
                {
                    "task_uid": record.task_uid,
                    "name": record.clean_name,
                    "calendar_id": record.calendar_id,
                    "start": record.scheduled_start,
                    "end": record.scheduled_end,
                }
                for record in upcoming
            ],
        }
