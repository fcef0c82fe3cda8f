"""Scheduling settings backed by the ``config`` key-value table.

Each top-level setting is one row whose value is JSONB. Missing rows fall
back to the defaults on :class:`SchedulingSettings`; the settings screens (out
of scope here) write the rows, the sync cycle only reads them.
"""

from __future__ import annotations

import json
import logging
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import asyncpg
from pydantic import BaseModel, Field, field_validator

from tasksync.engine.types import BreakRules, DurationMatrix, PeakHours, Weights, WeeklyWindows

logger = logging.getLogger(__name__)


def decode_jsonb(val: Any) -> Any:
    """Decode a JSONB value, handling potential double-encoding.

    asyncpg returns JSONB columns as Python strings when no custom codec is
    registered. Values written by the original settings screens were stored
    as JSON text inside JSONB, which needs a second pass.
    """
    if not isinstance(val, str):
        return val
    val = json.loads(val)
    if isinstance(val, str):
        try:
            val = json.loads(val)
        except (json.JSONDecodeError, ValueError):
            pass
    return val


class SchedulingSettings(BaseModel):
    """Everything the sync cycle reads from the config store."""

    timezone: str = "UTC"
    sync_interval_minutes: int = Field(default=15, ge=1, le=59)
    reschedule_timeout_hours: float = Field(default=12, ge=0)
    scheduling_windows: WeeklyWindows = Field(default_factory=WeeklyWindows)
    peak_hours: PeakHours = Field(default_factory=PeakHours)
    duration_matrix: DurationMatrix = Field(default_factory=DurationMatrix)
    break_rules: BreakRules = Field(default_factory=BreakRules)
    weights: Weights = Field(default_factory=Weights)
    min_slot_minutes: int = Field(default=30, ge=1)
    horizon_days: int = Field(default=7, ge=1)

    @field_validator("timezone")
    @classmethod
    def _validate_timezone(cls, value: str) -> str:
        normalized = value.strip()
        try:
            ZoneInfo(normalized)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown timezone: {value!r}") from exc
        return normalized

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


SETTING_KEYS: tuple[str, ...] = tuple(SchedulingSettings.model_fields)


async def setting_get(pool: asyncpg.Pool, key: str) -> Any | None:
    """Return the decoded value for *key*, or ``None`` if the key does not exist."""
    row = await pool.fetchval("SELECT value FROM config WHERE key = $1", key)
    if row is None:
        return None
    return decode_jsonb(row)


async def setting_set(pool: asyncpg.Pool, key: str, value: Any) -> None:
    """Upsert *key* with a JSON-serialisable *value*."""
    if key not in SETTING_KEYS:
        raise KeyError(f"Unknown setting: {key!r}")
    await pool.execute(
        """
        INSERT INTO config (key, value, updated_at)
        VALUES ($1, $2::jsonb, now())
        ON CONFLICT (key) DO UPDATE
            SET value = EXCLUDED.value,
                updated_at = now()
        """,
        key,
        json.dumps(value),
    )


async def load_settings(pool: asyncpg.Pool) -> SchedulingSettings:
    """Read all settings rows and validate them, using defaults for missing keys."""
    rows = await pool.fetch(
        "SELECT key, value FROM config WHERE key = ANY($1::text[])",
        list(SETTING_KEYS),
    )
    stored = {row["key"]: decode_jsonb(row["value"]) for row in rows}
    return SchedulingSettings.model_validate(stored)


async def seed_default_settings(pool: asyncpg.Pool) -> list[str]:
    """Insert defaults for every setting that has no row yet.

    Returns:
        The keys that were inserted.
    """
    defaults = SchedulingSettings().model_dump(mode="json")
    inserted: list[str] = []
    for key, value in defaults.items():
        status = await pool.execute(
            """
            INSERT INTO config (key, value, updated_at)
            VALUES ($1, $2::jsonb, now())
            ON CONFLICT (key) DO NOTHING
            """,
            key,
            json.dumps(value),
        )
        if status.endswith(" 1"):
            inserted.append(key)
    if inserted:
        logger.info("Seeded default settings: %s", ", ".join(inserted))
    return inserted
