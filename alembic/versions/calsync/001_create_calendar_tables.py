"""create_calendar_tables

Revision ID: calsync_001
Revises:
Create Date: 2026-01-05 00:00:00.000000

"""

from __future__ import annotations

from alembic import op

# revision identifiers, used by Alembic.
revision = "calsync_001"
down_revision = None
branch_labels = ("calsync",)
depends_on = None


def upgrade() -> None:
    op.execute("""
        CREATE TABLE IF NOT EXISTS state (
            key TEXT PRIMARY KEY,
            value JSONB NOT NULL DEFAULT '{}',
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            version INTEGER NOT NULL DEFAULT 1
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS calendar_sources (
            id BIGSERIAL PRIMARY KEY,
            external_id TEXT NOT NULL UNIQUE,
            name TEXT,
            resumption_cursor TEXT,
            last_success_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS calendar_events (
            id BIGSERIAL PRIMARY KEY,
            calendar_id BIGINT NOT NULL REFERENCES calendar_sources (id) ON DELETE CASCADE,
            external_event_id TEXT NOT NULL,
            event_status TEXT,
            event_type TEXT,
            summary TEXT,
            description TEXT,
            location TEXT,
            color_id TEXT,
            transparency TEXT,
            visibility TEXT,
            hangout_link TEXT,
            start_date DATE,
            start_date_time TIMESTAMPTZ,
            start_time_zone TEXT,
            end_date DATE,
            end_date_time TIMESTAMPTZ,
            end_time_zone TEXT,
            event_created_at TIMESTAMPTZ,
            event_updated_at TIMESTAMPTZ,
            category TEXT,
            amount_expected BIGINT,
            amount_paid BIGINT,
            attended BOOLEAN,
            dosage_value DOUBLE PRECISION,
            dosage_unit TEXT,
            treatment_stage TEXT,
            control_included BOOLEAN,
            is_domicilio BOOLEAN,
            last_synced_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT calendar_events_calendar_external_key
                UNIQUE (calendar_id, external_event_id),
            CONSTRAINT calendar_events_start_shape
                CHECK (start_date IS NULL OR start_date_time IS NULL),
            CONSTRAINT calendar_events_end_shape
                CHECK (end_date IS NULL OR end_date_time IS NULL)
        )
    """)

    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_calendar_events_start
        ON calendar_events (calendar_id, start_date_time, start_date)
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS calendar_events")
    op.execute("DROP TABLE IF EXISTS calendar_sources")
    op.execute("DROP TABLE IF EXISTS state")
