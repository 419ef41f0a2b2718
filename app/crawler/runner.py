"""
Session runner: the scheduler's entry point into one crawl attempt.
"""

from __future__ import annotations

import logging
import threading
from typing import Protocol

from app.config import CrawlSchedulerSettings, CrawlSessionSettings
from app.crawler.drivers.base import PageContextPool
from app.crawler.drivers.static_html import StaticHtmlPageDriver
from app.crawler.errors import (
    CrawlCancelledError,
    CrawlExecutionError,
    CrawlJobError,
    describe_cause,
)
from app.crawler.logging_utils import log_event, short_error
from app.crawler.session import CrawlSession, ProgressCallback
from app.crawler.storage.base import BlobStore
from app.crawler.storage.filesystem import FileSystemBlobStore
from app.domain.crawl import CrawlerConfig, CrawlJobResult

logger = logging.getLogger(__name__)


class CrawlJobRunner(Protocol):
    def run(
        self,
        *,
        job_id: str,
        config: CrawlerConfig,
        cancel_event: threading.Event,
        progress_callback: ProgressCallback | None = None,
    ) -> CrawlJobResult:
        ...

    def close(self) -> None:
        ...


class SessionCrawlJobRunner:
    """
    Runs each attempt in a fresh `CrawlSession` over shared page contexts.
    """

    def __init__(
        self,
        *,
        pool: PageContextPool,
        blob_store: BlobStore,
        settings: CrawlSessionSettings,
    ) -> None:
        self._pool = pool
        self._blob_store = blob_store
        self._settings = settings

    def run(
        self,
        *,
        job_id: str,
        config: CrawlerConfig,
        cancel_event: threading.Event,
        progress_callback: ProgressCallback | None = None,
    ) -> CrawlJobResult:
        session = CrawlSession(
            job_id=job_id,
            config=config,
            pool=self._pool,
            blob_store=self._blob_store,
            settings=self._settings,
            cancel_event=cancel_event,
            progress_callback=progress_callback,
        )
        try:
            return session.run()
        except (CrawlCancelledError, CrawlJobError):
            raise
        except Exception as exc:
            log_event(
                logger,
                logging.ERROR,
                "crawl_session_failed",
                job_id=job_id,
                error=short_error(exc),
            )
            raise CrawlExecutionError(
                str(exc) or "Unknown crawl error",
                {"original_error": describe_cause(exc), "job_id": job_id},
            ) from exc

    def close(self) -> None:
        self._pool.close()


def build_session_runner(
    *,
    scheduler_settings: CrawlSchedulerSettings,
    session_settings: CrawlSessionSettings,
) -> SessionCrawlJobRunner:
    """
    Wire the static HTML driver and the filesystem blob store.

    The pool is sized so every concurrent job can run its full page fan-out.
    """

    pool = PageContextPool(
        driver_factory=lambda: StaticHtmlPageDriver(settings=session_settings),
        size=scheduler_settings.max_concurrent_jobs * session_settings.page_concurrency,
    )
    return SessionCrawlJobRunner(
        pool=pool,
        blob_store=FileSystemBlobStore(session_settings.blob_dir),
        settings=session_settings,
    )
