"""
app/schemas/crawl.py

Request and response schemas for crawl job endpoints.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field


class CrawlErrorResponse(BaseModel):
    """
    Error body for rejected submissions and internal failures.
    """

    error: str
    message: str
    details: dict[str, Any] | None = None


class CrawlJobAcceptedResponse(BaseModel):
    job_id: UUID
    status: str
    message: str
    queue_position: dict[str, int] = Field(default_factory=dict, serialization_alias="queuePosition")


class CrawlJobAttempts(BaseModel):
    total: int = Field(..., ge=0)
    max: int = Field(..., ge=1)


class CrawlJobStatusResponse(BaseModel):
    """
    Current state of one job. `result` is set once the job completed.
    """

    job_id: UUID
    state: str
    result: dict[str, Any] | None = None
    progress: dict[str, Any] | None = None
    attempts: CrawlJobAttempts
    last_error: dict[str, Any] | None = None
    enqueued_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None


class CrawlJobSummaryResponse(BaseModel):
    id: UUID
    timestamp: datetime
    result: dict[str, Any] | None = None
    error: str | None = None


class CrawlJobListResponse(BaseModel):
    completed: list[CrawlJobSummaryResponse] = Field(default_factory=list)
    failed: list[CrawlJobSummaryResponse] = Field(default_factory=list)


class HealthResponse(BaseModel):
    status: str
    scheduler_running: bool
    jobs: dict[str, int] = Field(default_factory=dict)
