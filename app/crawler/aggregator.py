"""
Per-session outcome counters and the job result summary.
"""

from __future__ import annotations

import threading
from collections.abc import Sequence
from datetime import datetime
from typing import Any

from app.crawler.errors import describe_cause
from app.domain.crawl import CrawlerConfig, CrawlJobResult, ProductRecord

SAMPLE_LIMIT = 100


class ResultAggregator:
    """
    Thread-safe accumulator fed by page workers of one session.

    The error list and record sample are capped at `sample_limit` entries; the
    counters are exact.
    """

    def __init__(self, *, sample_limit: int = SAMPLE_LIMIT) -> None:
        self._sample_limit = max(0, sample_limit)
        self._lock = threading.Lock()
        self._listing_pages = 0
        self._product_pages = 0
        self._products_extracted = 0
        self._page_failures = 0
        self._extraction_failures = 0
        self._storage_failures = 0
        self._errors: list[dict[str, Any]] = []

    def record_listing_page(self) -> None:
        with self._lock:
            self._listing_pages += 1

    def record_product(self) -> None:
        with self._lock:
            self._product_pages += 1
            self._products_extracted += 1

    def record_page_failure(self, *, url: str, page_kind: str, exc: BaseException) -> None:
        with self._lock:
            self._page_failures += 1
            self._append_error(url=url, stage=f"{page_kind}_page", exc=exc)

    def record_extraction_failure(self, *, url: str, exc: BaseException) -> None:
        with self._lock:
            self._product_pages += 1
            self._extraction_failures += 1
            self._append_error(url=url, stage="extraction", exc=exc)

    def record_storage_failure(self, *, url: str, exc: BaseException) -> None:
        with self._lock:
            self._storage_failures += 1
            self._append_error(url=url, stage="storage", exc=exc)

    def progress(self) -> dict[str, int]:
        with self._lock:
            return self._counters()

    def build(
        self,
        *,
        crawl_id: str,
        records: Sequence[ProductRecord],
        config: CrawlerConfig,
        started_at: datetime,
        completed_at: datetime,
        visited_urls: int,
        session_exhausted: bool,
    ) -> CrawlJobResult:
        with self._lock:
            metadata: dict[str, Any] = {
                **self._counters(),
                "visited_urls": visited_urls,
                "session_exhausted": session_exhausted,
                "started_at": started_at.isoformat(),
                "completed_at": completed_at.isoformat(),
                "duration_seconds": round((completed_at - started_at).total_seconds(), 3),
                "config": config.to_payload(),
                "records": [record.to_payload() for record in records[: self._sample_limit]],
                "errors": list(self._errors),
            }
        return CrawlJobResult(
            crawl_id=crawl_id,
            processed_items=len(records),
            metadata=metadata,
        )

    def _counters(self) -> dict[str, int]:
        return {
            "listing_pages": self._listing_pages,
            "product_pages": self._product_pages,
            "products_extracted": self._products_extracted,
            "page_failures": self._page_failures,
            "extraction_failures": self._extraction_failures,
            "storage_failures": self._storage_failures,
        }

    def _append_error(self, *, url: str, stage: str, exc: BaseException) -> None:
        if len(self._errors) >= self._sample_limit:
            return
        self._errors.append({"url": url, "stage": stage, **describe_cause(exc)})
