"""
Product detail page extraction.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime

from app.crawler.drivers.base import PageDriver
from app.crawler.errors import ExtractionFailure, SelectorTimeoutError
from app.crawler.storage.base import BlobStore, generate_blob_key
from app.domain.crawl import CrawlerConfig, ProductRecord
from db.base import utcnow

logger = logging.getLogger(__name__)


class ProductExtractor:
    """
    Reads name, price and EAN from a loaded product page, then archives the
    raw page in the blob store.

    Name and price are mandatory. The EAN is mandatory unless `require_ean`
    is False.
    """

    def __init__(
        self,
        *,
        config: CrawlerConfig,
        blob_store: BlobStore,
        selector_timeout_seconds: float,
        require_ean: bool = True,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._config = config
        self._blob_store = blob_store
        self._selector_timeout_seconds = selector_timeout_seconds
        self._require_ean = require_ean
        self._clock = clock

    def load(self, driver: PageDriver, url: str) -> None:
        driver.navigate(url)
        if not driver.wait_for_selector(
            self._config.product_name_selector,
            self._selector_timeout_seconds,
        ):
            raise SelectorTimeoutError(f"Product name did not appear on {url}")

    def extract(self, driver: PageDriver, url: str) -> ProductRecord:
        """
        Build a record from the page `driver` currently holds.

        Stops at the first missing mandatory field with ExtractionFailure.
        """

        name = driver.read_text(self._config.product_name_selector)
        if not name:
            raise ExtractionFailure("name", url)

        price = driver.read_text(self._config.product_price_selector)
        if not price:
            raise ExtractionFailure("price", url)

        ean = driver.read_text_near_label(self._config.ean_label)
        if not ean and self._require_ean:
            raise ExtractionFailure("ean", url)

        return ProductRecord(
            source_url=url,
            name=name,
            price=price,
            ean=ean or None,
            extracted_at=self._clock(),
        )

    def archive(self, record: ProductRecord, raw_html: str) -> ProductRecord:
        """
        Write the raw page and return the record with its storage key.

        Raises StorageFailure; the caller keeps the unarchived record.
        """

        key = self._blob_store.put(
            key=generate_blob_key(record.extracted_at),
            payload=raw_html.encode("utf-8"),
            content_type="text/html; charset=utf-8",
        )
        return replace(record, storage_key=key)
