"""Initial schema: event log, segments, sessions, settings, rebuild lock

Revision ID: 001_initial
Revises:
Create Date: 2025-12-20

Derived tables (broadcast_segments, broadcast_sessions) are rebuilt from
event_logs by `streamledger rebuild`; event_logs rows are written by the
ingester and never modified apart from their segment/session links.
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "broadcast_sessions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_event_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finalize_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="active"),
        sa.Column("total_tokens", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("followers_gained", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("peak_viewers", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("avg_viewers", sa.Float(), nullable=False, server_default="0"),
        sa.Column("unique_visitors", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("room_subject", sa.Text(), nullable=True),
        sa.Column("rollups_computed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
    )
    op.create_index(
        "ix_broadcast_sessions_started_at", "broadcast_sessions", ["started_at"]
    )
    op.create_index("ix_broadcast_sessions_status", "broadcast_sessions", ["status"])

    op.create_table(
        "broadcast_segments",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("kind", sa.String(8), nullable=False, server_default="explicit"),
        sa.Column(
            "session_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("broadcast_sessions.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("start_event_id", sa.BigInteger(), nullable=True),
        sa.Column("end_event_id", sa.BigInteger(), nullable=True),
        sa.Column("event_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
    )
    op.create_index(
        "ix_broadcast_segments_started_at", "broadcast_segments", ["started_at"]
    )
    op.create_index(
        "ix_broadcast_segments_session_id", "broadcast_segments", ["session_id"]
    )

    op.create_table(
        "event_logs",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("event_type", sa.String(19), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("username", sa.String(255), nullable=True),
        sa.Column(
            "payload",
            postgresql.JSONB,
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column(
            "segment_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("broadcast_segments.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "session_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("broadcast_sessions.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
    )
    op.create_index("ix_event_logs_event_type", "event_logs", ["event_type"])
    op.create_index("ix_event_logs_timestamp", "event_logs", ["timestamp"])
    op.create_index("ix_event_logs_segment_id", "event_logs", ["segment_id"])
    op.create_index("ix_event_logs_session_id", "event_logs", ["session_id"])
    op.create_index(
        "ix_event_logs_type_timestamp", "event_logs", ["event_type", "timestamp"]
    )

    op.create_table(
        "app_settings",
        sa.Column("key", sa.String(100), primary_key=True),
        sa.Column("value", postgresql.JSONB, nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
    )

    op.create_table(
        "rebuild_locks",
        sa.Column("broadcaster", sa.String(255), primary_key=True),
        sa.Column("holder", sa.String(255), nullable=False),
        sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("rebuild_locks")
    op.drop_table("app_settings")
    op.drop_index("ix_event_logs_type_timestamp", table_name="event_logs")
    op.drop_index("ix_event_logs_session_id", table_name="event_logs")
    op.drop_index("ix_event_logs_segment_id", table_name="event_logs")
    op.drop_index("ix_event_logs_timestamp", table_name="event_logs")
    op.drop_index("ix_event_logs_event_type", table_name="event_logs")
    op.drop_table("event_logs")
    op.drop_index("ix_broadcast_segments_session_id", table_name="broadcast_segments")
    op.drop_index("ix_broadcast_segments_started_at", table_name="broadcast_segments")
    op.drop_table("broadcast_segments")
    op.drop_index("ix_broadcast_sessions_status", table_name="broadcast_sessions")
    op.drop_index("ix_broadcast_sessions_started_at", table_name="broadcast_sessions")
    op.drop_table("broadcast_sessions")
