"""create_calwatch_tables

Revision ID: calwatch_001
Revises:
Create Date: 2026-10-01 00:00:00.000000

"""

from __future__ import annotations

from alembic import op

# revision identifiers, used by Alembic.
revision = "calwatch_001"
down_revision = None
branch_labels = ("calwatch",)
depends_on = None


def upgrade() -> None:
    op.execute("""
        CREATE TABLE IF NOT EXISTS calwatch_subscriptions (
            account_id TEXT NOT NULL,
            calendar_id TEXT NOT NULL,
            kind TEXT NOT NULL CHECK (kind IN ('reminder', 'invite')),
            target TEXT NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            PRIMARY KEY (account_id, calendar_id, kind, target)
        )
    """)

    # One channel per (account, calendar) is enforced by the lifecycle manager.
    op.execute("""
        CREATE TABLE IF NOT EXISTS calwatch_channels (
            channel_id TEXT PRIMARY KEY,
            account_id TEXT NOT NULL,
            calendar_id TEXT NOT NULL,
            resource_id TEXT NOT NULL,
            expiry TIMESTAMPTZ NOT NULL,
            next_sync_token TEXT NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_calwatch_channels_account_calendar
        ON calwatch_channels (account_id, calendar_id)
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_calwatch_channels_expiry
        ON calwatch_channels (expiry)
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS calwatch_invites (
            account_id TEXT NOT NULL,
            calendar_id TEXT NOT NULL,
            event_id TEXT NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            PRIMARY KEY (account_id, calendar_id, event_id)
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS calwatch_oauth_tokens (
            account_id TEXT PRIMARY KEY,
            refresh_token TEXT NOT NULL,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS calwatch_oauth_tokens")
    op.execute("DROP TABLE IF EXISTS calwatch_invites")
    op.execute("DROP TABLE IF EXISTS calwatch_channels")
    op.execute("DROP TABLE IF EXISTS calwatch_subscriptions")
