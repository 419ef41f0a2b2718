"""
app/api/routers/crawl.py

Crawl job submission and status endpoints.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import JSONResponse

from app import failure_codes
from app.api.dependencies import MalformedBody, get_job_scheduler, read_json_body
from app.crawler.errors import CrawlValidationError
from app.scheduler.job_scheduler import JobNotFoundError, JobScheduler
from app.schemas.crawl import (
    CrawlErrorResponse,
    CrawlJobAcceptedResponse,
    CrawlJobAttempts,
    CrawlJobListResponse,
    CrawlJobStatusResponse,
    CrawlJobSummaryResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/crawl", tags=["crawl"])


def _error_response(
    status_code: int,
    error: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> JSONResponse:
    body = CrawlErrorResponse(error=error, message=message, details=details)
    return JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True))


@router.post(
    "",
    response_model=CrawlJobAcceptedResponse,
    responses={400: {"model": CrawlErrorResponse}, 500: {"model": CrawlErrorResponse}},
)
def create_crawl_job(
    payload: Any = Depends(read_json_body),
    scheduler: JobScheduler = Depends(get_job_scheduler),
) -> CrawlJobAcceptedResponse | JSONResponse:
    """
    Validate a crawler configuration and queue a crawl job.
    """

    if isinstance(payload, MalformedBody):
        return _error_response(
            status.HTTP_400_BAD_REQUEST,
            failure_codes.MISSING_CONFIG,
            "Request body must be a JSON object",
            {"reason": payload.reason},
        )

    try:
        job_id = scheduler.submit(payload)
        job = scheduler.status(job_id)
        counts = scheduler.job_counts()
    except CrawlValidationError as exc:
        return _error_response(status.HTTP_400_BAD_REQUEST, exc.code, exc.message, exc.details)
    except Exception:
        logger.exception("Error creating crawl job")
        return _error_response(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            failure_codes.INTERNAL_ERROR,
            "Failed to create crawl job",
        )

    return CrawlJobAcceptedResponse(
        job_id=job_id,
        status=job.status,
        message="Crawl job queued successfully",
        queue_position=counts,
    )


@router.get(
    "/jobs",
    response_model=CrawlJobListResponse,
    responses={500: {"model": CrawlErrorResponse}},
)
def list_crawl_jobs(
    limit: int = Query(default=10, ge=1, le=200, description="Maximum entries per state"),
    scheduler: JobScheduler = Depends(get_job_scheduler),
) -> CrawlJobListResponse | JSONResponse:
    """
    List the most recent completed and failed crawl jobs.
    """

    try:
        recent = scheduler.list_recent(limit)
    except Exception:
        logger.exception("Error listing crawl jobs")
        return _error_response(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            failure_codes.JOBS_LIST_ERROR,
            "Failed to list crawl jobs",
        )

    return CrawlJobListResponse(
        completed=[
            CrawlJobSummaryResponse(id=item.job_id, timestamp=item.timestamp, result=item.result)
            for item in recent.completed
        ],
        failed=[
            CrawlJobSummaryResponse(id=item.job_id, timestamp=item.timestamp, error=item.error)
            for item in recent.failed
        ],
    )


@router.get(
    "/{job_id}",
    response_model=CrawlJobStatusResponse,
    responses={404: {"model": CrawlErrorResponse}, 500: {"model": CrawlErrorResponse}},
)
def get_crawl_job(
    job_id: str,
    scheduler: JobScheduler = Depends(get_job_scheduler),
) -> CrawlJobStatusResponse | JSONResponse:
    """
    Return the state, attempts and result of one crawl job.
    """

    try:
        parsed_id = uuid.UUID(job_id)
    except ValueError:
        return _error_response(status.HTTP_404_NOT_FOUND, failure_codes.NOT_FOUND, "Job not found")

    try:
        job = scheduler.status(parsed_id)
    except JobNotFoundError:
        return _error_response(status.HTTP_404_NOT_FOUND, failure_codes.NOT_FOUND, "Job not found")
    except Exception:
        logger.exception("Error getting crawl job status job_id=%s", job_id)
        return _error_response(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            failure_codes.INTERNAL_ERROR,
            "Failed to get job status",
        )

    return CrawlJobStatusResponse(
        job_id=job.job_id,
        state=job.status,
        result=job.result,
        progress=job.progress,
        attempts=CrawlJobAttempts(total=job.attempts_made, max=job.max_attempts),
        last_error=job.last_error,
        enqueued_at=job.enqueued_at,
        started_at=job.started_at,
        completed_at=job.completed_at,
    )
