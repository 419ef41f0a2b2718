"""
tests/test_job_scheduler.py

Pytest tests for JobScheduler over an in-memory SQLite queue.

Coverage
--------
- submit validates before writing and enqueues a pending job
- A successful attempt completes with the runner's result
- Exponential retry backoff (1s, 2s) and final failure after max attempts
- Concurrency cap on active jobs and the admission window on starts
- Wall-clock timeout fails the attempt and discards the late outcome
- Retention eviction of terminal jobs and list_recent ordering
- Recovery of jobs left active by a dead process
- Attempt leases: renewal on each tick, recovery only after expiry, late
  outcomes of a lost lease discarded, the dispatch lock around the cap check
- State-change listeners, progress reporting and shutdown cancellation
"""

from __future__ import annotations

import threading
import uuid
from collections.abc import Callable
from typing import Any

import pytest
from sqlalchemy.orm import Session, sessionmaker

from app import failure_codes
from app.crawler.errors import CrawlCancelledError, CrawlValidationError
from app.domain.crawl import CrawlerConfig, CrawlJobResult
from app.scheduler.job_scheduler import JobNotFoundError, JobScheduler, backoff_delay
from db.models.crawl_job import CrawlJobStatus
from db.repositories.crawl_job_repository import CrawlJobRepository
from fakes import (
    DeferredExecutor,
    FakeClock,
    InlineExecutor,
    ScriptedRunner,
    crawler_payload,
    scheduler_settings,
)


class RecordingListener:
    def __init__(self) -> None:
        self.events: list[tuple[uuid.UUID, str | None, str]] = []

    def on_state_change(self, job_id: uuid.UUID, from_state: str | None, to_state: str) -> None:
        self.events.append((job_id, from_state, to_state))


def _scheduler(
    session_factory: sessionmaker[Session],
    clock: FakeClock,
    runner: Any | None = None,
    executor: Any | None = None,
    listeners: tuple[Any, ...] = (),
    **settings_overrides: Any,
) -> JobScheduler:
    return JobScheduler(
        session_factory=session_factory,
        runner=runner or ScriptedRunner(),
        settings=scheduler_settings(**settings_overrides),
        executor=executor or InlineExecutor(),
        listeners=listeners,
        clock=clock,
    )


# ---------------------------------------------------------------------------
# Submit and status
# ---------------------------------------------------------------------------


class TestSubmit:
    def test_submit_enqueues_pending_job(self, session_factory, clock) -> None:
        scheduler = _scheduler(session_factory, clock)

        job_id = scheduler.submit(crawler_payload(maxPages=4))
        view = scheduler.status(job_id)

        assert view.status == CrawlJobStatus.PENDING
        assert view.attempts_made == 0
        assert view.max_attempts == 3
        assert view.enqueued_at == clock()
        assert view.started_at is None
        assert view.result is None
        assert scheduler.job_counts()["pending"] == 1

    def test_submit_persists_options(self, session_factory, clock) -> None:
        scheduler = _scheduler(session_factory, clock, backoff_delay_seconds=2.5)

        job_id = scheduler.submit(crawler_payload())

        with session_factory() as db:
            job = CrawlJobRepository(db).get_job(job_id)
            assert job is not None
            assert job.options["attempts"] == 3
            assert job.options["backoff"] == {"type": "exponential", "delay_seconds": 2.5}
            assert CrawlerConfig.from_payload(job.config_payload).start_urls == (
                "https://www.catalog.test/c/shoes",
            )

    def test_invalid_config_writes_nothing(self, session_factory, clock) -> None:
        scheduler = _scheduler(session_factory, clock)

        with pytest.raises(CrawlValidationError) as exc_info:
            scheduler.submit(crawler_payload(startUrls=[]))

        assert exc_info.value.code == failure_codes.INVALID_URLS
        assert sum(scheduler.job_counts().values()) == 0

    def test_unknown_job_raises(self, session_factory, clock) -> None:
        scheduler = _scheduler(session_factory, clock)

        with pytest.raises(JobNotFoundError):
            scheduler.status(uuid.uuid4())


# ---------------------------------------------------------------------------
# Execution and retries
# ---------------------------------------------------------------------------


class TestExecution:
    def test_successful_attempt_completes(self, session_factory, clock) -> None:
        runner = ScriptedRunner()
        scheduler = _scheduler(session_factory, clock, runner=runner)
        job_id = scheduler.submit(crawler_payload())

        started = scheduler.dispatch_once()
        view = scheduler.status(job_id)

        assert started == 1
        assert runner.calls == [str(job_id)]
        assert view.status == CrawlJobStatus.COMPLETED
        assert view.attempts_made == 1
        assert view.result is not None
        assert view.result["crawlId"] == "crawl-1"
        assert view.result["processedItems"] == 1
        assert view.started_at == clock()
        assert view.completed_at == clock()
        assert view.progress == {"products_extracted": 1, "page_count": 1}

    def test_backoff_delay_doubles(self) -> None:
        assert [backoff_delay(1.0, attempt) for attempt in (1, 2, 3)] == [1.0, 2.0, 4.0]

    def test_retry_backoff_then_success(self, session_factory, clock) -> None:
        runner = ScriptedRunner([RuntimeError("boom"), RuntimeError("boom again")])
        scheduler = _scheduler(session_factory, clock, runner=runner)
        job_id = scheduler.submit(crawler_payload())

        assert scheduler.dispatch_once() == 1
        view = scheduler.status(job_id)
        assert view.status == CrawlJobStatus.PENDING
        assert view.attempts_made == 1
        assert view.last_error is not None
        assert view.last_error["code"] == failure_codes.CRAWL_FAILED
        assert scheduler.job_counts()["delayed"] == 1

        assert scheduler.dispatch_once() == 0
        clock.advance(1)
        assert scheduler.dispatch_once() == 1
        assert scheduler.status(job_id).attempts_made == 2

        clock.advance(1)
        assert scheduler.dispatch_once() == 0
        clock.advance(1)
        assert scheduler.dispatch_once() == 1

        view = scheduler.status(job_id)
        assert view.status == CrawlJobStatus.COMPLETED
        assert view.attempts_made == 3
        assert len(runner.calls) == 3

    def test_final_failure_after_max_attempts(self, session_factory, clock) -> None:
        runner = ScriptedRunner([RuntimeError("boom")] * 3)
        scheduler = _scheduler(session_factory, clock, runner=runner)
        job_id = scheduler.submit(crawler_payload())

        for delay in (0, 1, 2):
            clock.advance(delay)
            assert scheduler.dispatch_once() == 1

        view = scheduler.status(job_id)
        assert view.status == CrawlJobStatus.FAILED
        assert view.attempts_made == 3
        assert view.completed_at == clock()
        assert view.last_error is not None
        assert view.last_error["code"] == failure_codes.CRAWL_FAILED
        assert view.last_error["message"] == "boom"
        assert view.last_error["details"]["original_error"] == {"type": "RuntimeError", "message": "boom"}
        assert view.last_error["details"]["job_id"] == str(job_id)

        clock.advance(60)
        assert scheduler.dispatch_once() == 0
        assert len(runner.calls) == 3


# ---------------------------------------------------------------------------
# Concurrency, admission and timeouts
# ---------------------------------------------------------------------------


class TestDispatchLimits:
    def test_concurrency_cap(self, session_factory, clock) -> None:
        executor = DeferredExecutor()
        scheduler = _scheduler(session_factory, clock, executor=executor)
        for _ in range(20):
            scheduler.submit(crawler_payload())

        assert scheduler.dispatch_once() == 5
        assert scheduler.dispatch_once() == 0
        counts = scheduler.job_counts()
        assert counts["active"] == 5
        assert counts["pending"] == 15

        executor.run_all()
        assert scheduler.job_counts()["completed"] == 5
        assert scheduler.dispatch_once() == 5

    def test_admission_window(self, session_factory, clock) -> None:
        scheduler = _scheduler(
            session_factory,
            clock,
            admission_max_starts=2,
            admission_window_seconds=5.0,
        )
        for _ in range(5):
            scheduler.submit(crawler_payload())

        assert scheduler.dispatch_once() == 2
        clock.advance(4)
        assert scheduler.dispatch_once() == 0
        clock.advance(1)
        assert scheduler.dispatch_once() == 2
        assert scheduler.job_counts()["completed"] == 4

    def test_timeout_fails_attempt_and_discards_late_result(self, session_factory, clock) -> None:
        executor = DeferredExecutor()
        runner = ScriptedRunner()
        scheduler = _scheduler(
            session_factory,
            clock,
            runner=runner,
            executor=executor,
            job_timeout_seconds=60,
        )
        job_id = scheduler.submit(crawler_payload())
        assert scheduler.dispatch_once() == 1

        clock.advance(61)
        assert scheduler.dispatch_once() == 0

        view = scheduler.status(job_id)
        assert view.status == CrawlJobStatus.PENDING
        assert view.attempts_made == 1
        assert view.last_error is not None
        assert view.last_error["code"] == failure_codes.TIMEOUT

        executor.run_all()
        assert runner.cancel_events[0].is_set()
        view = scheduler.status(job_id)
        assert view.status == CrawlJobStatus.PENDING
        assert view.result is None


# ---------------------------------------------------------------------------
# Retention and listing
# ---------------------------------------------------------------------------


class TestRetention:
    def test_completed_jobs_beyond_retention_are_evicted(self, session_factory, clock) -> None:
        scheduler = _scheduler(session_factory, clock, retain_completed=2)
        job_ids = []
        for _ in range(3):
            job_ids.append(scheduler.submit(crawler_payload()))
            scheduler.dispatch_once()
            clock.advance(1)

        with pytest.raises(JobNotFoundError):
            scheduler.status(job_ids[0])
        assert scheduler.status(job_ids[2]).status == CrawlJobStatus.COMPLETED
        assert scheduler.job_counts()["completed"] == 2

    def test_list_recent_newest_first(self, session_factory, clock) -> None:
        runner = ScriptedRunner([None, RuntimeError("selector exploded"), None])
        scheduler = _scheduler(session_factory, clock, runner=runner, max_attempts=1)
        job_ids = []
        for _ in range(3):
            job_ids.append(scheduler.submit(crawler_payload()))
            scheduler.dispatch_once()
            clock.advance(1)

        recent = scheduler.list_recent(limit=10)

        assert [summary.job_id for summary in recent.completed] == [job_ids[2], job_ids[0]]
        assert recent.completed[0].result is not None
        assert recent.completed[0].result["crawlId"] == "crawl-3"
        assert [summary.job_id for summary in recent.failed] == [job_ids[1]]
        assert recent.failed[0].error == "selector exploded"
        assert recent.failed[0].result is None

    def test_list_recent_respects_limit(self, session_factory, clock) -> None:
        scheduler = _scheduler(session_factory, clock)
        for _ in range(4):
            scheduler.submit(crawler_payload())
            scheduler.dispatch_once()
            clock.advance(1)

        recent = scheduler.list_recent(limit=2)

        assert len(recent.completed) == 2
        assert recent.failed == []


# ---------------------------------------------------------------------------
# Stalled recovery
# ---------------------------------------------------------------------------


def _orphan_active_job(scheduler: JobScheduler, session_factory: sessionmaker[Session], clock: FakeClock) -> uuid.UUID:
    job_id = scheduler.submit(crawler_payload())
    with session_factory() as db:
        claimed = CrawlJobRepository(db).claim_next_due(
            now=clock(),
            lock_token=uuid.uuid4(),
            locked_until=clock(),
        )
        assert claimed is not None
        db.commit()
    return job_id


class TestStalledRecovery:
    def test_stalled_job_is_retried(self, session_factory, clock) -> None:
        scheduler = _scheduler(session_factory, clock)
        job_id = _orphan_active_job(scheduler, session_factory, clock)

        assert scheduler.recover_stalled() == 1

        view = scheduler.status(job_id)
        assert view.status == CrawlJobStatus.PENDING
        assert view.attempts_made == 1
        assert view.last_error is not None
        assert view.last_error["code"] == failure_codes.STALLED
        with session_factory() as db:
            job = CrawlJobRepository(db).get_job(job_id)
            assert job is not None
            assert job.stalled_count == 1

    def test_stalled_job_on_last_attempt_fails(self, session_factory, clock) -> None:
        scheduler = _scheduler(session_factory, clock, max_attempts=1)
        job_id = _orphan_active_job(scheduler, session_factory, clock)

        scheduler.recover_stalled()

        assert scheduler.status(job_id).status == CrawlJobStatus.FAILED

    def test_start_recovers_and_shutdown_closes_runner(self, session_factory, clock) -> None:
        runner = ScriptedRunner()
        scheduler = _scheduler(session_factory, clock, runner=runner, poll_interval_seconds=3600)
        job_id = _orphan_active_job(scheduler, session_factory, clock)

        scheduler.start()
        try:
            assert scheduler.running
            assert scheduler.status(job_id).status == CrawlJobStatus.PENDING
        finally:
            scheduler.shutdown()

        assert not scheduler.running
        assert runner.closed

    def test_repeatedly_stalled_job_fails_with_attempts_left(self, session_factory, clock) -> None:
        scheduler = _scheduler(session_factory, clock, max_stalled_count=0)
        job_id = _orphan_active_job(scheduler, session_factory, clock)

        assert scheduler.recover_stalled() == 1

        view = scheduler.status(job_id)
        assert view.status == CrawlJobStatus.FAILED
        assert view.attempts_made == 1
        assert view.last_error is not None
        assert view.last_error["code"] == failure_codes.STALLED

    def test_dispatch_tick_recovers_expired_lease(self, session_factory, clock) -> None:
        scheduler = _scheduler(session_factory, clock)
        job_id = _orphan_active_job(scheduler, session_factory, clock)

        assert scheduler.dispatch_once() == 0

        view = scheduler.status(job_id)
        assert view.status == CrawlJobStatus.PENDING
        assert view.last_error is not None
        assert view.last_error["code"] == failure_codes.STALLED


# ---------------------------------------------------------------------------
# Attempt leases shared across schedulers
# ---------------------------------------------------------------------------


class TestLeases:
    def test_live_attempt_is_not_recovered_by_another_scheduler(self, session_factory, clock) -> None:
        owner = _scheduler(session_factory, clock, executor=DeferredExecutor())
        other = _scheduler(session_factory, clock)
        job_id = owner.submit(crawler_payload())
        assert owner.dispatch_once() == 1

        clock.advance(29)

        assert other.recover_stalled() == 0
        view = other.status(job_id)
        assert view.status == CrawlJobStatus.ACTIVE
        assert view.attempts_made == 0

    def test_dispatch_tick_renews_lease(self, session_factory, clock) -> None:
        owner = _scheduler(session_factory, clock, executor=DeferredExecutor())
        other = _scheduler(session_factory, clock)
        job_id = owner.submit(crawler_payload())
        owner.dispatch_once()

        clock.advance(20)
        owner.dispatch_once()
        clock.advance(20)

        assert other.dispatch_once() == 0
        assert other.status(job_id).status == CrawlJobStatus.ACTIVE

    def test_expired_lease_is_recovered_and_late_result_discarded(self, session_factory, clock) -> None:
        executor = DeferredExecutor()
        runner = ScriptedRunner()
        owner = _scheduler(session_factory, clock, runner=runner, executor=executor)
        other = _scheduler(session_factory, clock)
        job_id = owner.submit(crawler_payload())
        owner.dispatch_once()

        clock.advance(31)
        assert other.recover_stalled() == 1

        assert owner.dispatch_once() == 0
        executor.run_all()

        assert runner.cancel_events[0].is_set()
        view = other.status(job_id)
        assert view.status == CrawlJobStatus.PENDING
        assert view.attempts_made == 1
        assert view.result is None
        assert view.last_error is not None
        assert view.last_error["code"] == failure_codes.STALLED

        clock.advance(1)
        assert other.dispatch_once() == 1
        view = other.status(job_id)
        assert view.status == CrawlJobStatus.COMPLETED
        assert view.attempts_made == 2

    def test_shutdown_releases_lease_for_immediate_recovery(self, session_factory, clock) -> None:
        executor = DeferredExecutor()
        runner = ScriptedRunner([CrawlCancelledError("Crawl session was cancelled")])
        owner = _scheduler(session_factory, clock, runner=runner, executor=executor)
        other = _scheduler(session_factory, clock)
        job_id = owner.submit(crawler_payload())
        owner.dispatch_once()

        owner.shutdown()
        executor.run_all()

        assert other.recover_stalled() == 1
        assert other.status(job_id).status == CrawlJobStatus.PENDING

    def test_cap_check_runs_under_dispatch_lock(self, session_factory, clock, monkeypatch) -> None:
        calls: list[str] = []
        lock_dispatch = CrawlJobRepository.lock_dispatch
        count_active = CrawlJobRepository.count_active

        def recording_lock(repo: CrawlJobRepository) -> None:
            calls.append("lock")
            lock_dispatch(repo)

        def recording_count(repo: CrawlJobRepository) -> int:
            calls.append("count")
            return count_active(repo)

        monkeypatch.setattr(CrawlJobRepository, "lock_dispatch", recording_lock)
        monkeypatch.setattr(CrawlJobRepository, "count_active", recording_count)
        scheduler = _scheduler(session_factory, clock)
        scheduler.submit(crawler_payload())

        assert scheduler.dispatch_once() == 1
        assert calls == ["lock", "count", "lock", "count"]


# ---------------------------------------------------------------------------
# Listeners, progress and shutdown
# ---------------------------------------------------------------------------


class StatusReadingRunner(ScriptedRunner):
    """Reads the scheduler's status view while the job is still in flight."""

    def __init__(self) -> None:
        super().__init__()
        self.status_reader: Callable[[uuid.UUID], Any] | None = None
        self.observed: list[Any] = []

    def run(
        self,
        *,
        job_id: str,
        config: CrawlerConfig,
        cancel_event: threading.Event,
        progress_callback: Callable[[dict[str, Any]], None] | None = None,
    ) -> CrawlJobResult:
        assert progress_callback is not None and self.status_reader is not None
        progress_callback({"products_extracted": 7, "page_count": 2})
        self.observed.append(self.status_reader(uuid.UUID(job_id)))
        return super().run(
            job_id=job_id,
            config=config,
            cancel_event=cancel_event,
            progress_callback=progress_callback,
        )


class TestObservability:
    def test_listener_sees_every_transition(self, session_factory, clock) -> None:
        listener = RecordingListener()
        runner = ScriptedRunner([RuntimeError("boom")])
        scheduler = _scheduler(session_factory, clock, runner=runner, listeners=(listener,))
        job_id = scheduler.submit(crawler_payload())

        scheduler.dispatch_once()
        clock.advance(1)
        scheduler.dispatch_once()

        assert [(from_state, to_state) for _, from_state, to_state in listener.events] == [
            (None, "pending"),
            ("pending", "active"),
            ("active", "pending"),
            ("pending", "active"),
            ("active", "completed"),
        ]
        assert {event_job_id for event_job_id, _, _ in listener.events} == {job_id}

    def test_failing_listener_does_not_break_transitions(self, session_factory, clock) -> None:
        class ExplodingListener:
            def on_state_change(self, job_id: uuid.UUID, from_state: str | None, to_state: str) -> None:
                raise RuntimeError("listener down")

        scheduler = _scheduler(session_factory, clock, listeners=(ExplodingListener(),))
        job_id = scheduler.submit(crawler_payload())
        scheduler.dispatch_once()

        assert scheduler.status(job_id).status == CrawlJobStatus.COMPLETED

    def test_live_progress_is_visible_while_active(self, session_factory, clock) -> None:
        runner = StatusReadingRunner()
        scheduler = _scheduler(session_factory, clock, runner=runner)
        runner.status_reader = scheduler.status
        scheduler.submit(crawler_payload())

        scheduler.dispatch_once()

        live = runner.observed[0]
        assert live.status == CrawlJobStatus.ACTIVE
        assert live.progress == {"products_extracted": 7, "page_count": 2}

    def test_shutdown_cancels_in_flight_jobs(self, session_factory, clock) -> None:
        executor = DeferredExecutor()
        runner = ScriptedRunner([CrawlCancelledError("Crawl session was cancelled")])
        scheduler = _scheduler(session_factory, clock, runner=runner, executor=executor)
        job_id = scheduler.submit(crawler_payload())
        scheduler.dispatch_once()

        scheduler.shutdown()
        executor.run_all()

        assert runner.cancel_events[0].is_set()
        assert runner.closed
        assert scheduler.status(job_id).status == CrawlJobStatus.ACTIVE
        assert scheduler.dispatch_once() == 0
