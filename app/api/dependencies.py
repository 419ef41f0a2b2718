"""
app/api/dependencies.py

Shared FastAPI dependencies.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from fastapi import HTTPException, Request, status

from app.scheduler.job_scheduler import JobScheduler


def get_job_scheduler(request: Request) -> JobScheduler:
    """
    Return the scheduler the application lifespan attached to `app.state`.
    """

    scheduler = getattr(request.app.state, "job_scheduler", None)
    if scheduler is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Crawl scheduler is not running.",
        )
    return scheduler


@dataclass(frozen=True)
class MalformedBody:
    reason: str


async def read_json_body(request: Request) -> Any:
    """
    Return the decoded JSON body, None when it is empty, or MalformedBody when
    it does not parse. Decoded values of any shape are left to the caller.
    """

    raw_body = await request.body()
    if not raw_body.strip():
        return None
    try:
        return json.loads(raw_body)
    except ValueError as exc:
        return MalformedBody(reason=str(exc))
