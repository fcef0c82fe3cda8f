"""create_sync_tables

Revision ID: core_001
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""

from __future__ import annotations

from alembic import op

# revision identifiers, used by Alembic.
revision = "core_001"
down_revision = None
branch_labels = ("core",)
depends_on = None


def upgrade() -> None:
    op.execute("""
        CREATE TABLE IF NOT EXISTS config (
            key TEXT PRIMARY KEY,
            value JSONB NOT NULL,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS synced_tasks (
            id BIGSERIAL PRIMARY KEY,
            task_uid TEXT NOT NULL UNIQUE,
            clean_name TEXT NOT NULL,
            current_status_marker TEXT,
            calendar_event_id TEXT,
            break_event_id TEXT,
            calendar_id TEXT,
            scheduled_start TIMESTAMPTZ,
            scheduled_end TIMESTAMPTZ,
            status TEXT NOT NULL DEFAULT 'pending'
                CHECK (status IN (
                    'pending', 'scheduled', 'completed', 'rescheduled', 'failed', 'cancelled'
                )),
            reschedule_count INTEGER NOT NULL DEFAULT 0 CHECK (reschedule_count >= 0),
            task_manager_status TEXT,
            last_checked_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT synced_tasks_event_pair CHECK (
                (calendar_event_id IS NULL) = (break_event_id IS NULL)
            )
        )
    """)

    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_synced_tasks_status_end
        ON synced_tasks (status, scheduled_end)
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS sync_lease (
            id INTEGER PRIMARY KEY CHECK (id = 1),
            in_progress BOOLEAN NOT NULL DEFAULT false,
            started_at TIMESTAMPTZ,
            last_completed_at TIMESTAMPTZ
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS calendar_mappings (
            id BIGSERIAL PRIMARY KEY,
            project_uid TEXT NOT NULL,
            project_name TEXT NOT NULL DEFAULT '',
            calendar_id TEXT NOT NULL,
            calendar_name TEXT NOT NULL DEFAULT '',
            is_default BOOLEAN NOT NULL DEFAULT false,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS busy_calendars (
            id BIGSERIAL PRIMARY KEY,
            calendar_id TEXT NOT NULL UNIQUE,
            calendar_name TEXT NOT NULL DEFAULT '',
            enabled BOOLEAN NOT NULL DEFAULT true,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS busy_calendars")
    op.execute("DROP TABLE IF EXISTS calendar_mappings")
    op.execute("DROP TABLE IF EXISTS sync_lease")
    op.execute("DROP INDEX IF EXISTS idx_synced_tasks_status_end")
    op.execute("DROP TABLE IF EXISTS synced_tasks")
    op.execute("DROP TABLE IF EXISTS config")
