"""
One crawl job's traversal: dedup set, frontier, page budget and extracted records.

Page operations run on a per-session thread pool and each holds one context
from the shared `PageContextPool`. Shared session state is only touched under
the session lock, and never while a page operation is waiting on the driver.

Failure scope:
  - navigation, selector and click failures abandon one page;
  - missing mandatory product fields abandon one product;
  - blob write failures keep the record without a storage key;
  - anything else ends the session and propagates to the caller.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Callable
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from datetime import datetime
from typing import Any

from app.config import CrawlSessionSettings
from app.crawler.aggregator import ResultAggregator
from app.crawler.classifier import classify, normalize_url
from app.crawler.drivers.base import PageContextPool
from app.crawler.errors import (
    CrawlCancelledError,
    ExtractionFailure,
    PageFailure,
    SelectorTimeoutError,
    StorageFailure,
)
from app.crawler.extraction import ProductExtractor
from app.crawler.frontier import PRIORITY_CONTINUATION, Frontier, FrontierEntry
from app.crawler.logging_utils import log_event, short_error
from app.crawler.pagination import DEFAULT_CONSENT_SELECTORS, PaginationController
from app.crawler.storage.base import BlobStore
from app.domain.crawl import CrawlerConfig, CrawlJobResult, PageKind, ProductRecord
from db.base import utcnow

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[dict[str, Any]], None]

_WAIT_SLICE_SECONDS = 0.5


class CrawlSession:
    """
    Created per job attempt and discarded when `run` returns.
    """

    def __init__(
        self,
        *,
        job_id: str,
        config: CrawlerConfig,
        pool: PageContextPool,
        blob_store: BlobStore,
        settings: CrawlSessionSettings,
        cancel_event: threading.Event | None = None,
        progress_callback: ProgressCallback | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.job_id = job_id
        self.crawl_id = uuid.uuid4().hex
        self.config = config
        self.max_pages = config.max_pages
        self.visited: set[str] = set()
        self.frontier = Frontier()
        self.page_count = 0
        self.exhausted = False
        self.extracted: list[ProductRecord] = []

        self._pool = pool
        self._settings = settings
        self._cancel_event = cancel_event or threading.Event()
        self._progress_callback = progress_callback
        self._clock = clock
        self._lock = threading.Lock()
        self._controllers: dict[str, PaginationController] = {}
        self._aggregator = ResultAggregator()
        self._extractor = ProductExtractor(
            config=config,
            blob_store=blob_store,
            selector_timeout_seconds=settings.selector_timeout_seconds,
            require_ean=settings.require_ean,
            clock=clock,
        )
        if config.consent_selector:
            self._consent_selectors: tuple[str, ...] = (config.consent_selector,)
        else:
            self._consent_selectors = DEFAULT_CONSENT_SELECTORS

    def run(self) -> CrawlJobResult:
        started_at = self._clock()
        log_event(
            logger,
            logging.INFO,
            "crawl_session_started",
            job_id=self.job_id,
            crawl_id=self.crawl_id,
            start_urls=len(self.config.start_urls),
            max_pages=self.max_pages,
        )

        for url in self.config.start_urls:
            self.enqueue(url)

        executor = ThreadPoolExecutor(
            max_workers=max(1, self._settings.page_concurrency),
            thread_name_prefix=f"crawl-{self.job_id[:8]}",
        )
        in_flight: set[Future[None]] = set()
        try:
            while True:
                self._raise_if_cancelled()
                with self._lock:
                    while len(in_flight) < self._settings.page_concurrency:
                        entry = self.frontier.pop()
                        if entry is None:
                            break
                        in_flight.add(executor.submit(self._process_entry, entry))
                if not in_flight:
                    break

                done, in_flight = wait(
                    in_flight,
                    timeout=_WAIT_SLICE_SECONDS,
                    return_when=FIRST_COMPLETED,
                )
                for future in done:
                    future.result()
        except BaseException:
            self._cancel_event.set()
            executor.shutdown(wait=False, cancel_futures=True)
            raise
        executor.shutdown(wait=True)

        completed_at = self._clock()
        with self._lock:
            records = list(self.extracted)
            visited_urls = len(self.visited)
            exhausted = self.exhausted

        result = self._aggregator.build(
            crawl_id=self.crawl_id,
            records=records,
            config=self.config,
            started_at=started_at,
            completed_at=completed_at,
            visited_urls=visited_urls,
            session_exhausted=exhausted,
        )
        log_event(
            logger,
            logging.INFO,
            "crawl_session_completed",
            job_id=self.job_id,
            crawl_id=self.crawl_id,
            processed_items=result.processed_items,
            page_count=self.page_count,
            visited_urls=visited_urls,
        )
        return result

    def enqueue(self, url: str, base_url: str | None = None) -> bool:
        """
        Add a first-visit URL to the frontier. Returns False for duplicates
        and unusable URLs.
        """

        key = normalize_url(url, base_url)
        if key is None:
            return False
        with self._lock:
            if key in self.visited:
                return False
            self.visited.add(key)
            self.frontier.push(FrontierEntry(url=key))
        return True

    def progress(self) -> dict[str, Any]:
        with self._lock:
            snapshot = {
                "page_count": self.page_count,
                "visited_urls": len(self.visited),
                "frontier_size": len(self.frontier),
                "session_exhausted": self.exhausted,
            }
        return {**self._aggregator.progress(), **snapshot}

    def _process_entry(self, entry: FrontierEntry) -> None:
        self._raise_if_cancelled()
        kind = classify(
            entry.url,
            None,
            self.config.listing_patterns,
            self.config.product_patterns,
        )
        if kind is PageKind.LISTING:
            self._process_listing(entry)
        elif kind is PageKind.PRODUCT:
            self._process_product(entry)
        else:
            log_event(logger, logging.DEBUG, "url_ignored", job_id=self.job_id, url=entry.url)
            return
        self._report_progress()

    def _process_listing(self, entry: FrontierEntry) -> None:
        with self._lock:
            if self.page_count >= self.max_pages:
                if not self.exhausted:
                    log_event(
                        logger,
                        logging.INFO,
                        "crawl_session_exhausted",
                        job_id=self.job_id,
                        page_count=self.page_count,
                    )
                self.exhausted = True
                return
            self.page_count += 1
            controller = self._controllers.get(entry.url)
            if controller is None:
                controller = PaginationController(
                    listing_url=entry.url,
                    max_pages=self.max_pages,
                    pagination_selector=self.config.pagination_selector,
                    card_selector=self.config.product_card_selector,
                    selector_timeout_seconds=self._settings.selector_timeout_seconds,
                    consent_selectors=self._consent_selectors,
                )
                self._controllers[entry.url] = controller

        advanced = False
        try:
            with self._pool.acquire(self._cancel_event) as driver:
                controller.restore(driver, entry.page_number)
                if not driver.wait_for_selector(
                    self.config.product_card_selector,
                    self._settings.selector_timeout_seconds,
                ):
                    raise SelectorTimeoutError(f"No product cards on {entry.url}")
                self._raise_if_cancelled()

                base_url = driver.current_url() or entry.url
                card_links = driver.query_links(self.config.product_card_selector)
                product_links = driver.query_links(self.config.product_link_selector)
                discovered = (
                    card_links[: self._settings.card_link_limit]
                    + product_links[: self._settings.product_link_limit]
                )
                self._aggregator.record_listing_page()
                for link in discovered:
                    self.enqueue(link, base_url)

                advanced = controller.advance(driver)
        except PageFailure as exc:
            controller.settle_exhausted()
            self._aggregator.record_page_failure(url=entry.url, page_kind="listing", exc=exc)
            log_event(
                logger,
                logging.WARNING,
                "listing_page_failed",
                job_id=self.job_id,
                url=entry.url,
                page_number=entry.page_number,
                error=short_error(exc),
            )
            return

        log_event(
            logger,
            logging.DEBUG,
            "listing_page_processed",
            job_id=self.job_id,
            url=entry.url,
            page_number=entry.page_number,
            discovered=len(discovered),
        )
        if advanced:
            with self._lock:
                self.frontier.push(
                    FrontierEntry(
                        url=entry.url,
                        page_number=controller.page_number,
                        priority=PRIORITY_CONTINUATION,
                    )
                )

    def _process_product(self, entry: FrontierEntry) -> None:
        try:
            with self._pool.acquire(self._cancel_event) as driver:
                self._extractor.load(driver, entry.url)
                record = self._extractor.extract(driver, entry.url)
                raw_html = driver.content()
        except PageFailure as exc:
            self._aggregator.record_page_failure(url=entry.url, page_kind="product", exc=exc)
            log_event(
                logger,
                logging.WARNING,
                "product_page_failed",
                job_id=self.job_id,
                url=entry.url,
                error=short_error(exc),
            )
            return
        except ExtractionFailure as exc:
            self._aggregator.record_extraction_failure(url=entry.url, exc=exc)
            log_event(
                logger,
                logging.WARNING,
                "product_extraction_failed",
                job_id=self.job_id,
                url=entry.url,
                field=exc.field_name,
            )
            return

        try:
            record = self._extractor.archive(record, raw_html)
        except StorageFailure as exc:
            self._aggregator.record_storage_failure(url=entry.url, exc=exc)
            log_event(
                logger,
                logging.WARNING,
                "product_storage_failed",
                job_id=self.job_id,
                url=entry.url,
                error=short_error(exc),
            )

        with self._lock:
            self.extracted.append(record)
        self._aggregator.record_product()

    def _report_progress(self) -> None:
        if self._progress_callback is None:
            return
        try:
            self._progress_callback(self.progress())
        except Exception as exc:
            log_event(
                logger,
                logging.WARNING,
                "progress_report_failed",
                job_id=self.job_id,
                error=short_error(exc),
            )

    def _raise_if_cancelled(self) -> None:
        if self._cancel_event.is_set():
            raise CrawlCancelledError(f"Crawl session for job {self.job_id} was cancelled")
