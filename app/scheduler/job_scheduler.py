"""
app/scheduler/job_scheduler.py

Durable crawl job queue with bounded concurrency, retries and timeouts.

Lifecycle
----------
Every claim issues the attempt a lease: a fresh ``lock_token`` and a
``locked_until`` deadline ``stalled_interval_seconds`` ahead. ``start()``
recovers active jobs whose lease has already expired, then registers a
dispatch tick on an APScheduler ``BackgroundScheduler``. Each tick:

  1. renews the leases of this process's in-flight attempts;
  2. force-fails in-flight jobs past their wall-clock deadline (``TIMEOUT``);
  3. recovers active jobs whose lease expired, whichever process claimed them;
  4. claims due pending jobs, oldest first, while fewer than
     ``max_concurrent_jobs`` are active and the admission window has room.

The active count and the claim share one transaction behind a PostgreSQL
advisory lock, so concurrent schedulers never overshoot the cap.

A claimed job runs on the worker executor. Its outcome is persisted by
whichever of the worker or the timeout watchdog finalizes it first, and only
while the attempt still holds its lease; any other outcome is discarded.

Retry policy
-------------
A failed attempt ``k`` (1-based) is re-enqueued after
``delay_seconds * 2 ** (k - 1)`` while ``k < max_attempts``; otherwise the job
is finalized ``failed``. Both values come from the options persisted with the
job at submit time.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Callable, Iterable, Iterator
from concurrent.futures import Executor, ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from functools import partial
from typing import Any

from apscheduler.schedulers.background import BackgroundScheduler
from sqlalchemy.orm import Session, sessionmaker

from app import failure_codes
from app.config import CrawlSchedulerSettings, get_crawl_scheduler_settings, get_crawl_session_settings
from app.crawler.errors import (
    CrawlCancelledError,
    CrawlExecutionError,
    CrawlJobError,
    CrawlTimeoutError,
    describe_cause,
)
from app.crawler.logging_utils import log_event, short_error
from app.crawler.runner import CrawlJobRunner, build_session_runner
from app.domain.crawl import CrawlerConfig, CrawlJobResult
from app.scheduler.admission import AdmissionWindow
from app.scheduler.events import JobEventListener, LoggingJobEventListener
from app.validators.crawler_config_validator import validate_crawler_config
from db.base import as_utc, utcnow
from db.models.crawl_job import CrawlJob, CrawlJobStatus
from db.repositories.crawl_job_repository import CrawlJobRepository
from db.session import get_session_factory

logger = logging.getLogger(__name__)

_DISPATCH_JOB_ID = "crawl_dispatch"


class JobNotFoundError(LookupError):
    """No job record exists for the requested id."""


@dataclass(frozen=True)
class JobStatusView:
    job_id: uuid.UUID
    status: str
    attempts_made: int
    max_attempts: int
    enqueued_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    result: dict[str, Any] | None
    last_error: dict[str, Any] | None
    progress: dict[str, Any] | None


@dataclass(frozen=True)
class JobSummary:
    job_id: uuid.UUID
    timestamp: datetime
    result: dict[str, Any] | None = None
    error: str | None = None


@dataclass(frozen=True)
class RecentJobs:
    completed: list[JobSummary]
    failed: list[JobSummary]


@dataclass
class _InflightJob:
    job_id: uuid.UUID
    attempt: int
    lock_token: uuid.UUID
    deadline: datetime
    timeout_seconds: float
    cancel_event: threading.Event = field(default_factory=threading.Event)
    progress: dict[str, Any] | None = None
    finalized: bool = False


def backoff_delay(base_delay_seconds: float, attempt: int) -> float:
    """
    Delay before re-dispatch after `attempt` (1-based) failed.
    """

    return base_delay_seconds * (2 ** (max(1, attempt) - 1))


class JobScheduler:
    """
    Owns crawl job records and every transition they go through.
    """

    def __init__(
        self,
        *,
        session_factory: sessionmaker[Session] | Callable[[], Session],
        runner: CrawlJobRunner,
        settings: CrawlSchedulerSettings | None = None,
        executor: Executor | None = None,
        listeners: Iterable[JobEventListener] = (),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._runner = runner
        self._settings = settings or get_crawl_scheduler_settings()
        self._executor = executor
        self._owns_executor = executor is None
        self._listeners: list[JobEventListener] = [LoggingJobEventListener(), *listeners]
        self._clock = clock
        self._admission = AdmissionWindow(
            max_starts=self._settings.admission_max_starts,
            window_seconds=self._settings.admission_window_seconds,
            clock=lambda: self._clock().timestamp(),
        )
        self._lock = threading.Lock()
        self._dispatch_lock = threading.Lock()
        self._inflight: dict[uuid.UUID, _InflightJob] = {}
        self._background: BackgroundScheduler | None = None
        self._shutting_down = False

    @property
    def settings(self) -> CrawlSchedulerSettings:
        return self._settings

    @property
    def running(self) -> bool:
        return self._background is not None and self._background.running

    # ------------------------------------------------------------------
    # Public contract
    # ------------------------------------------------------------------

    def submit(self, config: Any) -> uuid.UUID:
        """
        Validate `config` and enqueue a pending job.

        Raises CrawlValidationError before any record is written.
        """

        validated: CrawlerConfig = validate_crawler_config(config)
        now = self._clock()
        with self._session_scope() as db:
            job = CrawlJobRepository(db).create_job(
                config_payload=validated.to_payload(),
                options=self._settings.job_options(),
                max_attempts=self._settings.max_attempts,
                now=now,
            )
            job_id = job.id
            db.commit()

        log_event(
            logger,
            logging.INFO,
            "job_enqueued",
            job_id=str(job_id),
            start_urls=len(validated.start_urls),
            max_pages=validated.max_pages,
        )
        self._notify(job_id, None, CrawlJobStatus.PENDING)
        return job_id

    def status(self, job_id: uuid.UUID) -> JobStatusView:
        with self._session_scope() as db:
            job = CrawlJobRepository(db).get_job(job_id)
            if job is None:
                raise JobNotFoundError(str(job_id))
            view = _status_view(job)

        with self._lock:
            inflight = self._inflight.get(job_id)
            live_progress = dict(inflight.progress) if inflight and inflight.progress else None
        if live_progress is not None:
            view = replace(view, progress=live_progress)
        return view

    def list_recent(self, limit: int = 10) -> RecentJobs:
        """
        Most recent terminal jobs, newest first, capped by the retention counts.
        """

        limit = max(1, limit)
        with self._session_scope() as db:
            repo = CrawlJobRepository(db)
            completed = repo.list_terminal(
                status=CrawlJobStatus.COMPLETED,
                limit=min(limit, self._settings.retain_completed),
            )
            failed = repo.list_terminal(
                status=CrawlJobStatus.FAILED,
                limit=min(limit, self._settings.retain_failed),
            )
            return RecentJobs(
                completed=[
                    JobSummary(
                        job_id=job.id,
                        timestamp=as_utc(job.completed_at or job.enqueued_at),
                        result=job.result_payload,
                    )
                    for job in completed
                ],
                failed=[
                    JobSummary(
                        job_id=job.id,
                        timestamp=as_utc(job.completed_at or job.enqueued_at),
                        error=job.failed_reason,
                    )
                    for job in failed
                ],
            )

    def job_counts(self) -> dict[str, int]:
        with self._session_scope() as db:
            return CrawlJobRepository(db).count_by_status(now=self._clock())

    def start(self) -> None:
        if self.running:
            return
        self._shutting_down = False
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self._settings.max_concurrent_jobs,
                thread_name_prefix="crawl-worker",
            )
        self.recover_stalled()

        self._background = BackgroundScheduler(timezone="UTC")
        self._background.add_job(
            self.dispatch_once,
            trigger="interval",
            seconds=self._settings.poll_interval_seconds,
            id=_DISPATCH_JOB_ID,
            name="Crawl job dispatch",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._background.start()
        log_event(
            logger,
            logging.INFO,
            "job_scheduler_started",
            max_concurrent_jobs=self._settings.max_concurrent_jobs,
            poll_interval_seconds=self._settings.poll_interval_seconds,
        )

    def shutdown(self, wait: bool = True) -> None:
        """
        Stop dispatching and cancel in-flight sessions.

        Interrupted jobs stay active in storage with their leases expired, so
        the next scheduler to tick recovers them as stalled.
        """

        self._shutting_down = True
        if self._background is not None:
            self._background.shutdown(wait=wait)
            self._background = None

        with self._lock:
            inflight = list(self._inflight.values())
        for job in inflight:
            job.cancel_event.set()

        if self._owns_executor and self._executor is not None:
            self._executor.shutdown(wait=wait)
            self._executor = None

        interrupted = [job.lock_token for job in inflight if not job.finalized]
        if interrupted:
            try:
                with self._session_scope() as db:
                    CrawlJobRepository(db).release_leases(lock_tokens=interrupted, now=self._clock())
                    db.commit()
            except Exception:
                logger.exception("Failed to release leases of %d interrupted crawl jobs", len(interrupted))
        self._runner.close()
        log_event(logger, logging.INFO, "job_scheduler_stopped", interrupted=len(inflight))

    def dispatch_once(self) -> int:
        """
        Run one dispatch tick synchronously. Returns the number of jobs started.
        """

        if self._shutting_down:
            return 0

        with self._dispatch_lock:
            self._renew_leases()
            self._expire_overdue()
            self.recover_stalled()

            started = 0
            while not self._shutting_down:
                if not self._admission.has_capacity():
                    break
                claimed = self._claim_next()
                if claimed is None:
                    break
                self._admission.record_start()
                self._launch(*claimed)
                started += 1
            return started

    def recover_stalled(self) -> int:
        """
        Fail the attempt of every active job whose lease has expired.

        A job stalled more than ``max_stalled_count`` times is finalized
        ``failed`` even when attempts remain. Returns the number recovered.
        """

        now = self._clock()
        with self._lock:
            own = set(self._inflight)
        recovered: list[tuple[uuid.UUID, str]] = []
        with self._session_scope() as db:
            repo = CrawlJobRepository(db)
            for job in repo.list_stalled(now=now):
                if job.id in own:
                    continue
                repo.mark_stalled(job=job)
                error = CrawlJobError(
                    "Job lease expired while it was active",
                    failure_codes.STALLED,
                    {"job_id": str(job.id), "stalled_count": job.stalled_count},
                )
                to_state = self._apply_failure(
                    repo,
                    job,
                    error,
                    progress=job.progress,
                    now=now,
                    final=job.stalled_count > self._settings.max_stalled_count,
                )
                recovered.append((job.id, to_state))
            db.commit()

        for job_id, to_state in recovered:
            log_event(logger, logging.WARNING, "job_stalled_recovered", job_id=str(job_id), to_state=to_state)
            self._notify(job_id, CrawlJobStatus.ACTIVE, to_state)
        return len(recovered)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _claim_next(self) -> tuple[uuid.UUID, uuid.UUID, dict[str, Any], int, float] | None:
        now = self._clock()
        lock_token = uuid.uuid4()
        with self._session_scope() as db:
            repo = CrawlJobRepository(db)
            repo.lock_dispatch()
            if repo.count_active() >= self._settings.max_concurrent_jobs:
                return None
            job = repo.claim_next_due(
                now=now,
                lock_token=lock_token,
                locked_until=now + timedelta(seconds=self._settings.stalled_interval_seconds),
            )
            if job is None:
                return None
            claimed = (
                job.id,
                lock_token,
                dict(job.config_payload),
                job.attempts_made + 1,
                float((job.options or {}).get("timeout_seconds", self._settings.job_timeout_seconds)),
            )
            db.commit()
        return claimed

    def _launch(
        self,
        job_id: uuid.UUID,
        lock_token: uuid.UUID,
        config_payload: dict[str, Any],
        attempt: int,
        timeout_seconds: float,
    ) -> None:
        inflight = _InflightJob(
            job_id=job_id,
            attempt=attempt,
            lock_token=lock_token,
            deadline=self._clock() + timedelta(seconds=timeout_seconds),
            timeout_seconds=timeout_seconds,
        )
        with self._lock:
            self._inflight[job_id] = inflight

        log_event(logger, logging.INFO, "job_started", job_id=str(job_id), attempt=attempt)
        self._notify(job_id, CrawlJobStatus.PENDING, CrawlJobStatus.ACTIVE)

        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self._settings.max_concurrent_jobs,
                thread_name_prefix="crawl-worker",
            )
        self._executor.submit(self._execute, inflight, config_payload)

    def _execute(self, inflight: _InflightJob, config_payload: dict[str, Any]) -> None:
        job_id = str(inflight.job_id)
        try:
            result = self._runner.run(
                job_id=job_id,
                config=CrawlerConfig.from_payload(config_payload),
                cancel_event=inflight.cancel_event,
                progress_callback=partial(self._record_progress, inflight),
            )
        except CrawlCancelledError as exc:
            if self._shutting_down and not inflight.finalized:
                with self._lock:
                    self._inflight.pop(inflight.job_id, None)
                log_event(logger, logging.WARNING, "job_interrupted", job_id=job_id)
                return
            self._finish_failure(
                inflight,
                CrawlExecutionError(
                    str(exc) or "Crawl session was cancelled",
                    {"original_error": describe_cause(exc), "job_id": job_id},
                ),
            )
        except CrawlJobError as exc:
            self._finish_failure(inflight, exc)
        except Exception as exc:
            self._finish_failure(
                inflight,
                CrawlExecutionError(
                    str(exc) or "Unknown crawl error",
                    {"original_error": describe_cause(exc), "job_id": job_id},
                ),
            )
        else:
            self._finish_success(inflight, result)

    def _record_progress(self, inflight: _InflightJob, progress: dict[str, Any]) -> None:
        with self._lock:
            inflight.progress = dict(progress)

    def _renew_leases(self) -> None:
        with self._lock:
            held = [job for job in self._inflight.values() if not job.finalized]
        if not held:
            return

        locked_until = self._clock() + timedelta(seconds=self._settings.stalled_interval_seconds)
        with self._session_scope() as db:
            renewed = CrawlJobRepository(db).renew_leases(
                lock_tokens=[job.lock_token for job in held],
                locked_until=locked_until,
            )
            db.commit()

        for job in held:
            if job.lock_token in renewed or job.finalized:
                continue
            job.cancel_event.set()
            log_event(
                logger,
                logging.WARNING,
                "job_lease_lost",
                job_id=str(job.job_id),
                attempt=job.attempt,
            )

    def _expire_overdue(self) -> None:
        now = self._clock()
        with self._lock:
            overdue = [
                job
                for job in self._inflight.values()
                if not job.finalized and now >= job.deadline
            ]

        for job in overdue:
            job.cancel_event.set()
            log_event(
                logger,
                logging.WARNING,
                "job_timed_out",
                job_id=str(job.job_id),
                attempt=job.attempt,
                timeout_seconds=job.timeout_seconds,
            )
            self._finish_failure(
                job,
                CrawlTimeoutError(
                    f"Job exceeded its {job.timeout_seconds:g}s time limit",
                    {"job_id": str(job.job_id), "timeout_seconds": job.timeout_seconds},
                ),
            )

    # ------------------------------------------------------------------
    # Finalization
    # ------------------------------------------------------------------

    def _claim_finalization(self, inflight: _InflightJob) -> bool:
        with self._lock:
            if inflight.finalized:
                return False
            inflight.finalized = True
            self._inflight.pop(inflight.job_id, None)
            return True

    def _finish_success(self, inflight: _InflightJob, result: CrawlJobResult) -> None:
        if not self._claim_finalization(inflight):
            log_event(logger, logging.INFO, "job_result_discarded", job_id=str(inflight.job_id))
            return

        now = self._clock()
        try:
            with self._session_scope() as db:
                repo = CrawlJobRepository(db)
                job = repo.get_leased_job(inflight.job_id, inflight.lock_token)
                if job is None:
                    log_event(logger, logging.WARNING, "job_lease_lost_on_finish", job_id=str(inflight.job_id))
                    return
                repo.mark_completed(
                    job=job,
                    result_payload=result.to_payload(),
                    progress=inflight.progress,
                    now=now,
                )
                evicted = repo.evict_terminal(
                    status=CrawlJobStatus.COMPLETED,
                    keep=self._settings.retain_completed,
                )
                db.commit()
        except Exception:
            logger.exception("Failed to persist completion of crawl job %s", inflight.job_id)
            return

        log_event(
            logger,
            logging.INFO,
            "job_completed",
            job_id=str(inflight.job_id),
            attempt=inflight.attempt,
            processed_items=result.processed_items,
            evicted=evicted,
        )
        self._notify(inflight.job_id, CrawlJobStatus.ACTIVE, CrawlJobStatus.COMPLETED)

    def _finish_failure(self, inflight: _InflightJob, error: CrawlJobError) -> None:
        if not self._claim_finalization(inflight):
            log_event(
                logger,
                logging.INFO,
                "job_failure_discarded",
                job_id=str(inflight.job_id),
                error_code=error.code,
            )
            return

        now = self._clock()
        try:
            with self._session_scope() as db:
                repo = CrawlJobRepository(db)
                job = repo.get_leased_job(inflight.job_id, inflight.lock_token)
                if job is None:
                    log_event(logger, logging.WARNING, "job_lease_lost_on_finish", job_id=str(inflight.job_id))
                    return
                to_state = self._apply_failure(repo, job, error, progress=inflight.progress, now=now)
                db.commit()
        except Exception:
            logger.exception("Failed to persist failure of crawl job %s", inflight.job_id)
            return

        self._notify(inflight.job_id, CrawlJobStatus.ACTIVE, to_state)

    def _apply_failure(
        self,
        repo: CrawlJobRepository,
        job: CrawlJob,
        error: CrawlJobError,
        *,
        progress: dict[str, Any] | None,
        now: datetime,
        final: bool = False,
    ) -> str:
        attempt = job.attempts_made + 1
        payload = error.to_payload()

        if attempt < job.max_attempts and not final:
            base_delay = float(
                ((job.options or {}).get("backoff") or {}).get(
                    "delay_seconds",
                    self._settings.backoff_delay_seconds,
                )
            )
            delay = backoff_delay(base_delay, attempt)
            repo.requeue_for_retry(
                job=job,
                error=payload,
                available_at=now + timedelta(seconds=delay),
                progress=progress,
            )
            log_event(
                logger,
                logging.WARNING,
                "job_retry_scheduled",
                job_id=str(job.id),
                attempt=attempt,
                max_attempts=job.max_attempts,
                delay_seconds=delay,
                error_code=error.code,
                error=error.message[:500],
            )
            return CrawlJobStatus.PENDING

        repo.mark_failed(job=job, error=payload, progress=progress, now=now)
        evicted = repo.evict_terminal(
            status=CrawlJobStatus.FAILED,
            keep=self._settings.retain_failed,
        )
        log_event(
            logger,
            logging.ERROR,
            "job_failed",
            job_id=str(job.id),
            attempts_made=job.attempts_made,
            error_code=error.code,
            error=error.message[:500],
            evicted=evicted,
        )
        return CrawlJobStatus.FAILED

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @contextmanager
    def _session_scope(self) -> Iterator[Session]:
        session: Session = self._session_factory()
        try:
            yield session
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _notify(self, job_id: uuid.UUID, from_state: str | None, to_state: str) -> None:
        for listener in self._listeners:
            try:
                listener.on_state_change(job_id, from_state, to_state)
            except Exception as exc:
                log_event(
                    logger,
                    logging.WARNING,
                    "job_listener_failed",
                    job_id=str(job_id),
                    listener=type(listener).__name__,
                    error=short_error(exc),
                )


def _status_view(job: CrawlJob) -> JobStatusView:
    return JobStatusView(
        job_id=job.id,
        status=job.status,
        attempts_made=job.attempts_made,
        max_attempts=job.max_attempts,
        enqueued_at=as_utc(job.enqueued_at),
        started_at=as_utc(job.started_at),
        completed_at=as_utc(job.completed_at),
        result=job.result_payload,
        last_error=job.last_error,
        progress=job.progress,
    )


def build_job_scheduler() -> JobScheduler:
    """
    Build a scheduler over the configured database and the static HTML runner.

    Returns a configured but *not yet started* scheduler.
    """

    scheduler_settings = get_crawl_scheduler_settings()
    runner = build_session_runner(
        scheduler_settings=scheduler_settings,
        session_settings=get_crawl_session_settings(),
    )
    return JobScheduler(
        session_factory=get_session_factory(),
        runner=runner,
        settings=scheduler_settings,
    )
