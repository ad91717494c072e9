from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# JSONB on Postgres, plain JSON elsewhere so local test databases share the same models.
JsonColumn = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass


class NotificationJob(Base):
    __tablename__ = "notification_jobs"
    __table_args__ = (
        # One job per delay occurrence per channel, across every lifecycle state.
        UniqueConstraint("delay_signature", "channel", name="uq_notification_jobs_signature_channel"),
        Index("ix_notification_jobs_claim", "channel", "state", "next_attempt_at"),
        Index("ix_notification_jobs_lease", "state", "lease_expires_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    channel: Mapped[str] = mapped_column(String)
    delay_signature: Mapped[str] = mapped_column(String)
    order_id: Mapped[str] = mapped_column(String, index=True)
    payload_json: Mapped[dict[str, Any]] = mapped_column(JsonColumn)
    state: Mapped[str] = mapped_column(String, default="pending")
    # Count of completed send attempts; incremented by ack/nack, never by claim or reclaim.
    attempt: Mapped[int] = mapped_column(Integer, default=0)
    next_attempt_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    lease_token: Mapped[str | None] = mapped_column(String, nullable=True)
    lease_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class NotificationAttempt(Base):
    __tablename__ = "notification_attempts"
    __table_args__ = (
        UniqueConstraint("job_id", "attempt_no", name="uq_notification_attempts_job_attempt"),
    )

    # Immutable per-attempt history for delivery forensics.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    job_id: Mapped[str] = mapped_column(String, index=True)
    attempt_no: Mapped[int] = mapped_column(Integer)
    outcome: Mapped[str] = mapped_column(String)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    latency_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    finished_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class DelayEvent(Base):
    __tablename__ = "delay_events"

    signature: Mapped[str] = mapped_column(String, primary_key=True)
    order_id: Mapped[str] = mapped_column(String, index=True)
    tracking_number: Mapped[str] = mapped_column(String)
    delay_reason: Mapped[str] = mapped_column(String)
    delay_days: Mapped[int] = mapped_column(Integer)
    first_seen_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class DelayEventNotification(Base):
    __tablename__ = "delay_event_notifications"

    # Composite key is the atomic check-and-set for "notified once per channel".
    signature: Mapped[str] = mapped_column(String, primary_key=True)
    channel: Mapped[str] = mapped_column(String, primary_key=True)
    notified_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    job_id: Mapped[str | None] = mapped_column(String, nullable=True)
