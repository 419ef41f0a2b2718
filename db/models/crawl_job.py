"""
db/models/crawl_job.py

Durable crawl job record backing the scheduler queue.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import DateTime, Index, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from db.base import Base, JSONPayload, TimestampMixin


class CrawlJobStatus:
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"

    TERMINAL = frozenset({COMPLETED, FAILED})


class CrawlJob(Base, TimestampMixin):
    __tablename__ = "crawl_jobs"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    status: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default=CrawlJobStatus.PENDING,
    )
    config_payload: Mapped[dict[str, Any]] = mapped_column(
        JSONPayload,
        nullable=False,
        comment="Validated crawler configuration as submitted",
    )
    options: Mapped[dict[str, Any]] = mapped_column(
        JSONPayload,
        nullable=False,
        comment="max_attempts, backoff, retention counts and timeout",
    )
    attempts_made: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    stalled_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    enqueued_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    available_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        comment="Earliest dispatch time; pushed forward by retry backoff",
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    result_payload: Mapped[dict[str, Any] | None] = mapped_column(JSONPayload, nullable=True)
    last_error: Mapped[dict[str, Any] | None] = mapped_column(
        JSONPayload,
        nullable=True,
        comment="{code, message, details} of the most recent failed attempt",
    )
    failed_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    progress: Mapped[dict[str, Any] | None] = mapped_column(JSONPayload, nullable=True)
    lock_token: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        nullable=True,
        comment="Owner of the running attempt; reissued on every claim",
    )
    locked_until: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="Lease expiry; an active job past it is stalled",
    )

    __table_args__ = (
        Index("ix_crawl_jobs_status", "status"),
        Index("ix_crawl_jobs_status_available_at", "status", "available_at"),
        Index("ix_crawl_jobs_completed_at", "completed_at"),
        Index("ix_crawl_jobs_status_locked_until", "status", "locked_until"),
    )
