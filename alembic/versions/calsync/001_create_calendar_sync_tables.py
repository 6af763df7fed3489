"""create_calendar_sync_tables

Revision ID: calsync_001
Revises:
Create Date: 2026-01-01 00:00:00.000000

"""

from __future__ import annotations

from alembic import op

# revision identifiers, used by Alembic.
revision = "calsync_001"
down_revision = None
branch_labels = ("calsync",)
depends_on = None


def upgrade() -> None:
    op.execute("CREATE EXTENSION IF NOT EXISTS pgcrypto")

    op.execute("""
        CREATE TABLE IF NOT EXISTS calendar_integrations (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            tenant_id TEXT NOT NULL UNIQUE,
            provider TEXT NOT NULL DEFAULT 'google',
            access_token TEXT NOT NULL,
            refresh_token TEXT NOT NULL,
            token_expires_at TIMESTAMPTZ NOT NULL,
            default_calendar_id TEXT,
            is_active BOOLEAN NOT NULL DEFAULT true,
            last_sync_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS calendar_events (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            tenant_id TEXT NOT NULL,
            external_event_id TEXT NOT NULL,
            integration_id UUID REFERENCES calendar_integrations(id) ON DELETE SET NULL,
            calendar_id TEXT NOT NULL,
            title TEXT NOT NULL,
            description TEXT,
            location TEXT,
            start_time TIMESTAMPTZ NOT NULL,
            end_time TIMESTAMPTZ NOT NULL,
            is_all_day BOOLEAN NOT NULL DEFAULT false,
            timezone TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'confirmed',
            etag TEXT,
            html_link TEXT,
            meet_link TEXT,
            attendees JSONB NOT NULL DEFAULT '[]'::jsonb,
            recurrence_rule TEXT,
            recurring_event_id TEXT,
            last_synced_at TIMESTAMPTZ NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT uq_calendar_events_tenant_external UNIQUE (tenant_id, external_event_id),
            CONSTRAINT ck_calendar_events_window CHECK (end_time >= start_time)
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_calendar_events_tenant_start
        ON calendar_events (tenant_id, start_time)
    """)

    # Appointments belong to the booking side; create a minimal table when it
    # is absent so the engine can run standalone, then add the mirror column.
    op.execute("""
        CREATE TABLE IF NOT EXISTS appointments (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            tenant_id TEXT NOT NULL,
            start_time TIMESTAMPTZ NOT NULL,
            end_time TIMESTAMPTZ NOT NULL,
            status TEXT NOT NULL DEFAULT 'scheduled',
            service_name TEXT,
            client_name TEXT,
            client_phone TEXT,
            notes TEXT,
            location TEXT,
            timezone TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)
    op.execute("ALTER TABLE appointments ADD COLUMN IF NOT EXISTS external_event_id TEXT")
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_appointments_unmirrored
        ON appointments (tenant_id, start_time)
        WHERE external_event_id IS NULL
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS calendar_sync_runs (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            tenant_id TEXT NOT NULL,
            started_at TIMESTAMPTZ NOT NULL,
            finished_at TIMESTAMPTZ NOT NULL,
            status TEXT NOT NULL CHECK (status IN ('done', 'failed', 'skipped')),
            synced_count INTEGER NOT NULL DEFAULT 0,
            deleted_count INTEGER NOT NULL DEFAULT 0,
            pushed_count INTEGER NOT NULL DEFAULT 0,
            push_failures INTEGER NOT NULL DEFAULT 0,
            requires_reconnect BOOLEAN NOT NULL DEFAULT false,
            error TEXT
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_calendar_sync_runs_tenant_started
        ON calendar_sync_runs (tenant_id, started_at DESC)
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS calendar_sync_runs")
    op.execute("DROP INDEX IF EXISTS ix_appointments_unmirrored")
    op.execute("ALTER TABLE appointments DROP COLUMN IF EXISTS external_event_id")
    op.execute("DROP TABLE IF EXISTS calendar_events")
    op.execute("DROP TABLE IF EXISTS calendar_integrations")
