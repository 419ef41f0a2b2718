"""
app/main.py

FastAPI application factory for the crawl job API.

Serve with ``uvicorn app.main:create_app --factory``.
"""

from __future__ import annotations

import logging
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from app.scheduler.job_scheduler import JobScheduler
from app.schemas.crawl import HealthResponse

_DATABASE_URL_VARIABLES = ("CRAWL_DATABASE_URL", "DATABASE_URL", "CLOUD_DATABASE_URL", "LOCAL_DATABASE_URL")

# Each must parse as a positive number of the given type when set.
_NUMERIC_VARIABLES: dict[str, type] = {
    "CRAWL_MAX_CONCURRENT_JOBS": int,
    "CRAWL_MAX_ATTEMPTS": int,
    "CRAWL_PAGE_CONCURRENCY": int,
    "CRAWL_ADMISSION_MAX_STARTS": int,
    "CRAWL_RETAIN_COMPLETED": int,
    "CRAWL_RETAIN_FAILED": int,
    "CRAWL_JOB_TIMEOUT_SECONDS": float,
    "CRAWL_ADMISSION_WINDOW_SECONDS": float,
    "CRAWL_STALLED_INTERVAL_SECONDS": float,
}


def _validate_env() -> None:
    """
    Validate crawl service environment variables at startup.

    Raises RuntimeError listing every missing or invalid variable so the
    operator can fix all problems in one restart cycle.
    """

    from db.config import load_env_files

    load_env_files()

    errors: list[str] = []

    if not any(os.getenv(name, "").strip() for name in _DATABASE_URL_VARIABLES):
        errors.append(
            "No database URL configured. Set one of: " + ", ".join(_DATABASE_URL_VARIABLES) + "."
        )

    for name, kind in _NUMERIC_VARIABLES.items():
        raw_value = os.getenv(name)
        if raw_value is None:
            continue
        try:
            valid = kind(raw_value) > 0
        except ValueError:
            valid = False
        if not valid:
            errors.append(f"{name}='{raw_value}' is not valid. It must be a positive {kind.__name__}.")

    if errors:
        raise RuntimeError(
            "Startup validation failed, missing or invalid environment variables:\n"
            + "\n".join(f"  - {e}" for e in errors)
        )


def _configure_logging() -> None:
    log_level = os.getenv("LOG_LEVEL", "INFO").strip().upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def _verify_database() -> None:
    """
    Confirm the queue database answers and holds every mapped table.

    Does NOT auto-migrate. Raises RuntimeError on either failure.
    """

    from sqlalchemy import inspect as sa_inspect
    from sqlalchemy import text

    import db.models  # noqa: F401 registers crawl_jobs on Base.metadata
    from db.base import Base
    from db.session import get_engine

    log = logging.getLogger(__name__)
    try:
        with get_engine().connect() as connection:
            connection.execute(text("SELECT 1"))
            existing = set(sa_inspect(connection).get_table_names())
    except Exception as exc:
        raise RuntimeError("Crawl queue database unavailable.") from exc
    log.info("Database connectivity confirmed")

    missing = sorted(set(Base.metadata.tables) - existing)
    if missing:
        log.critical(
            "Schema mismatch: table(s) %s are absent from the queue database. "
            "Run 'alembic upgrade head' and restart.",
            ", ".join(missing),
        )
        raise RuntimeError(f"Schema mismatch: missing table(s) {', '.join(missing)}. Run migrations and restart.")
    log.info("Database schema validated")


@asynccontextmanager
async def _lifespan(application: FastAPI) -> AsyncIterator[None]:
    """Start the job scheduler on boot, recovering stalled jobs; shut it down on exit."""
    log = logging.getLogger(__name__)
    scheduler: JobScheduler | None = getattr(application.state, "job_scheduler", None)

    if scheduler is None:
        _verify_database()

        from app.scheduler.job_scheduler import build_job_scheduler

        scheduler = build_job_scheduler()
        application.state.job_scheduler = scheduler

    scheduler.start()
    log.info("Crawl job scheduler started")
    try:
        yield
    finally:
        scheduler.shutdown(wait=True)
        log.info("Crawl job scheduler shut down")


def create_app(*, job_scheduler: JobScheduler | None = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    A caller-supplied scheduler skips environment and database checks.
    """

    if job_scheduler is None:
        _validate_env()
    _configure_logging()

    application = FastAPI(
        title="Catalog Crawler API",
        version="1.0.0",
        lifespan=_lifespan,
    )
    if job_scheduler is not None:
        application.state.job_scheduler = job_scheduler

    from app.api.routers import crawl_router

    application.include_router(crawl_router)

    @application.get("/health", response_model=HealthResponse)
    def healthcheck(request: Request) -> HealthResponse:
        scheduler: JobScheduler | None = getattr(request.app.state, "job_scheduler", None)
        if scheduler is None:
            return HealthResponse(status="starting", scheduler_running=False)
        return HealthResponse(
            status="ok",
            scheduler_running=scheduler.running,
            jobs=scheduler.job_counts(),
        )

    return application
