"""delay event ledger and notification job queue

Revision ID: 0001_delay_notifications
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_delay_notifications"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Durable job queue; the (delay_signature, channel) constraint is the enqueue dedupe guard.
    op.create_table(
        "notification_jobs",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("channel", sa.String(), nullable=False),
        sa.Column("delay_signature", sa.String(), nullable=False),
        sa.Column("order_id", sa.String(), nullable=False),
        sa.Column("payload_json", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("state", sa.String(), nullable=False, server_default="pending"),
        sa.Column("attempt", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("lease_token", sa.String(), nullable=True),
        sa.Column("lease_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("delay_signature", "channel", name="uq_notification_jobs_signature_channel"),
    )
    op.create_index("ix_notification_jobs_order_id", "notification_jobs", ["order_id"])
    op.create_index(
        "ix_notification_jobs_claim",
        "notification_jobs",
        ["channel", "state", "next_attempt_at"],
    )
    op.create_index("ix_notification_jobs_lease", "notification_jobs", ["state", "lease_expires_at"])

    # Keep immutable attempt rows so operators can reconstruct every send outcome.
    op.create_table(
        "notification_attempts",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("attempt_no", sa.Integer(), nullable=False),
        sa.Column("outcome", sa.String(), nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("latency_ms", sa.Integer(), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("job_id", "attempt_no", name="uq_notification_attempts_job_attempt"),
    )
    op.create_index("ix_notification_attempts_job_id", "notification_attempts", ["job_id"])

    op.create_table(
        "delay_events",
        sa.Column("signature", sa.String(), primary_key=True),
        sa.Column("order_id", sa.String(), nullable=False),
        sa.Column("tracking_number", sa.String(), nullable=False),
        sa.Column("delay_reason", sa.String(), nullable=False),
        sa.Column("delay_days", sa.Integer(), nullable=False),
        sa.Column("first_seen_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )
    op.create_index("ix_delay_events_order_id", "delay_events", ["order_id"])

    op.create_table(
        "delay_event_notifications",
        sa.Column("signature", sa.String(), primary_key=True),
        sa.Column("channel", sa.String(), primary_key=True),
        sa.Column("notified_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("job_id", sa.String(), nullable=True),
    )


def downgrade() -> None:
    op.drop_table("delay_event_notifications")
    op.drop_index("ix_delay_events_order_id", table_name="delay_events")
    op.drop_table("delay_events")
    op.drop_index("ix_notification_attempts_job_id", table_name="notification_attempts")
    op.drop_table("notification_attempts")
    op.drop_index("ix_notification_jobs_lease", table_name="notification_jobs")
    op.drop_index("ix_notification_jobs_claim", table_name="notification_jobs")
    op.drop_index("ix_notification_jobs_order_id", table_name="notification_jobs")
    op.drop_table("notification_jobs")
