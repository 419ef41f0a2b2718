"""
Repository for crawl job queue persistence, claims and lifecycle transitions.

Callers own the transaction: methods flush but never commit.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import Select, delete, func, or_, select
from sqlalchemy.orm import Session

from db.models.crawl_job import CrawlJob, CrawlJobStatus

# pg_advisory_xact_lock key serializing the concurrency-cap check across processes.
_DISPATCH_LOCK_KEY = 0x63726177


class CrawlJobRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def create_job(
        self,
        *,
        config_payload: dict[str, Any],
        options: dict[str, Any],
        max_attempts: int,
        now: datetime,
    ) -> CrawlJob:
        job = CrawlJob(
            status=CrawlJobStatus.PENDING,
            config_payload=config_payload,
            options=options,
            attempts_made=0,
            max_attempts=max_attempts,
            stalled_count=0,
            enqueued_at=now,
            available_at=now,
        )
        self._session.add(job)
        self._session.flush()
        return job

    def get_job(self, job_id: uuid.UUID) -> CrawlJob | None:
        return self._session.get(CrawlJob, job_id)

    def lock_dispatch(self) -> None:
        """
        Hold the dispatch lock until the current transaction ends.

        No-op outside PostgreSQL; tests run a single process.
        """

        if self._session.get_bind().dialect.name == "postgresql":
            self._session.execute(select(func.pg_advisory_xact_lock(_DISPATCH_LOCK_KEY)))

    def count_active(self) -> int:
        stmt = select(func.count()).select_from(CrawlJob).where(
            CrawlJob.status == CrawlJobStatus.ACTIVE
        )
        return int(self._session.scalar(stmt) or 0)

    def count_by_status(self, *, now: datetime) -> dict[str, int]:
        counts = {
            "pending": 0,
            "delayed": 0,
            "active": 0,
            "completed": 0,
            "failed": 0,
        }
        rows = self._session.execute(
            select(CrawlJob.status, func.count()).group_by(CrawlJob.status)
        ).all()
        for status, total in rows:
            counts[status] = int(total)

        delayed_stmt = select(func.count()).select_from(CrawlJob).where(
            CrawlJob.status == CrawlJobStatus.PENDING,
            CrawlJob.available_at > now,
        )
        delayed = int(self._session.scalar(delayed_stmt) or 0)
        counts["delayed"] = delayed
        counts["pending"] -= delayed
        return counts

    def claim_next_due(
        self,
        *,
        now: datetime,
        lock_token: uuid.UUID,
        locked_until: datetime,
    ) -> CrawlJob | None:
        """
        Move the oldest due pending job to active under a fresh lease and return it.
        """

        stmt: Select[tuple[CrawlJob]] = (
            select(CrawlJob)
            .where(
                CrawlJob.status == CrawlJobStatus.PENDING,
                CrawlJob.available_at <= now,
            )
            .order_by(CrawlJob.enqueued_at.asc(), CrawlJob.id.asc())
            .limit(1)
            .with_for_update(skip_locked=True)
        )
        job = self._session.scalars(stmt).first()
        if job is None:
            return None

        job.status = CrawlJobStatus.ACTIVE
        job.started_at = now
        job.completed_at = None
        job.progress = None
        job.lock_token = lock_token
        job.locked_until = locked_until
        self._session.flush()
        return job

    def get_leased_job(self, job_id: uuid.UUID, lock_token: uuid.UUID) -> CrawlJob | None:
        """
        Return the job only while it is active under `lock_token`, row-locked.
        """

        stmt: Select[tuple[CrawlJob]] = (
            select(CrawlJob)
            .where(
                CrawlJob.id == job_id,
                CrawlJob.status == CrawlJobStatus.ACTIVE,
                CrawlJob.lock_token == lock_token,
            )
            .with_for_update()
        )
        return self._session.scalars(stmt).first()

    def renew_leases(self, *, lock_tokens: list[uuid.UUID], locked_until: datetime) -> set[uuid.UUID]:
        """
        Extend the leases still held under `lock_tokens`. Returns the renewed tokens.
        """

        if not lock_tokens:
            return set()
        stmt: Select[tuple[CrawlJob]] = (
            select(CrawlJob)
            .where(
                CrawlJob.status == CrawlJobStatus.ACTIVE,
                CrawlJob.lock_token.in_(lock_tokens),
            )
            .with_for_update()
        )
        renewed: set[uuid.UUID] = set()
        for job in self._session.scalars(stmt).all():
            job.locked_until = locked_until
            renewed.add(job.lock_token)
        self._session.flush()
        return renewed

    def release_leases(self, *, lock_tokens: list[uuid.UUID], now: datetime) -> int:
        """
        Expire the leases under `lock_tokens` so any scheduler may recover them now.
        """

        renewed = self.renew_leases(lock_tokens=lock_tokens, locked_until=now)
        return len(renewed)

    def list_stalled(self, *, now: datetime) -> list[CrawlJob]:
        """
        Active jobs whose lease has expired, oldest first, skipping rows another
        scheduler is already recovering.
        """

        stmt: Select[tuple[CrawlJob]] = (
            select(CrawlJob)
            .where(
                CrawlJob.status == CrawlJobStatus.ACTIVE,
                or_(CrawlJob.locked_until.is_(None), CrawlJob.locked_until <= now),
            )
            .order_by(CrawlJob.enqueued_at.asc(), CrawlJob.id.asc())
            .with_for_update(skip_locked=True)
        )
        return list(self._session.scalars(stmt).all())

    def list_terminal(self, *, status: str, limit: int) -> list[CrawlJob]:
        stmt: Select[tuple[CrawlJob]] = (
            select(CrawlJob)
            .where(CrawlJob.status == status)
            .order_by(CrawlJob.completed_at.desc(), CrawlJob.enqueued_at.desc())
            .limit(max(1, limit))
        )
        return list(self._session.scalars(stmt).all())

    def mark_completed(
        self,
        *,
        job: CrawlJob,
        result_payload: dict[str, Any],
        progress: dict[str, Any] | None,
        now: datetime,
    ) -> CrawlJob:
        job.status = CrawlJobStatus.COMPLETED
        job.attempts_made += 1
        job.completed_at = now
        job.result_payload = result_payload
        job.progress = progress
        job.failed_reason = None
        _clear_lease(job)
        self._session.flush()
        return job

    def requeue_for_retry(
        self,
        *,
        job: CrawlJob,
        error: dict[str, Any],
        available_at: datetime,
        progress: dict[str, Any] | None,
    ) -> CrawlJob:
        job.status = CrawlJobStatus.PENDING
        job.attempts_made += 1
        job.available_at = available_at
        _clear_lease(job)
        job.last_error = error
        job.failed_reason = str(error.get("message", ""))[:2000]
        job.progress = progress
        self._session.flush()
        return job

    def mark_failed(
        self,
        *,
        job: CrawlJob,
        error: dict[str, Any],
        progress: dict[str, Any] | None,
        now: datetime,
    ) -> CrawlJob:
        job.status = CrawlJobStatus.FAILED
        job.attempts_made += 1
        _clear_lease(job)
        job.completed_at = now
        job.last_error = error
        job.failed_reason = str(error.get("message", ""))[:2000]
        job.progress = progress
        self._session.flush()
        return job

    def mark_stalled(self, *, job: CrawlJob) -> CrawlJob:
        job.stalled_count += 1
        self._session.flush()
        return job

    def evict_terminal(self, *, status: str, keep: int) -> int:
        """
        Delete terminal jobs of `status` beyond the newest `keep`, oldest first.
        """

        stale_ids = list(
            self._session.scalars(
                select(CrawlJob.id)
                .where(CrawlJob.status == status)
                .order_by(CrawlJob.completed_at.desc(), CrawlJob.enqueued_at.desc())
                .offset(max(0, keep))
            ).all()
        )
        if not stale_ids:
            return 0
        self._session.execute(delete(CrawlJob).where(CrawlJob.id.in_(stale_ids)))
        self._session.flush()
        return len(stale_ids)


def _clear_lease(job: CrawlJob) -> None:
    job.lock_token = None
    job.locked_until = None
