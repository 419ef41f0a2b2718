"""
tests/test_crawl_session.py

Pytest tests for CrawlSession driving a scripted site through the page pool.

Coverage
--------
- Two listing pages with two products each yield four records
- maxPages caps visited listing pages and exhausts the session
- Duplicate product links are visited once
- Product page failures stay local to the page
- EAN policy: abort by default, optional when disabled
- Blob write failures keep the record without a storage key, including an
  unwritable filesystem root
- Card and product-link fan-out limits
- Cancellation and session-fatal errors propagate
- Progress callback receives counters
"""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Any

import pytest

from app.crawler.drivers.base import PageContextPool
from app.crawler.errors import CrawlCancelledError
from app.crawler.session import CrawlSession
from app.crawler.storage import FileSystemBlobStore
from app.crawler.storage.base import BlobStore
from fakes import (
    LISTING_URL,
    FailingBlobStore,
    FakePage,
    FakePageDriver,
    FakeSite,
    MemoryBlobStore,
    make_config,
    product_page,
    product_url,
    session_settings,
)


def _listing(number: int, products: list[int], *, has_next: bool) -> FakePage:
    page = FakePage(links={".card": [product_url(p) for p in products]})
    if has_next:
        page.clicks[".next"] = f"{LISTING_URL}?page={number + 1}"
    return page


def _listing_key(number: int) -> str:
    return LISTING_URL if number == 1 else f"{LISTING_URL}?page={number}"


def _site(listings: int, products_per_page: int = 2, **product_overrides: FakePage) -> FakeSite:
    pages: dict[str, FakePage] = {}
    product_number = 1
    for number in range(1, listings + 1):
        products = list(range(product_number, product_number + products_per_page))
        product_number += products_per_page
        pages[_listing_key(number)] = _listing(number, products, has_next=number < listings)
        for product in products:
            pages[product_url(product)] = product_page(product)
    for key, page in product_overrides.items():
        pages[product_url(int(key.lstrip("p")))] = page
    return FakeSite(pages)


def _session(
    site: FakeSite,
    *,
    blob_store: BlobStore | None = None,
    cancel_event: threading.Event | None = None,
    progress: list[dict[str, Any]] | None = None,
    settings_overrides: dict[str, Any] | None = None,
    **config_overrides: Any,
) -> CrawlSession:
    settings = session_settings(**(settings_overrides or {}))
    pool = PageContextPool(
        driver_factory=lambda: FakePageDriver(site),
        size=settings.page_concurrency,
    )
    return CrawlSession(
        job_id="job-under-test",
        config=make_config(**config_overrides),
        pool=pool,
        blob_store=blob_store or MemoryBlobStore(),
        settings=settings,
        cancel_event=cancel_event,
        progress_callback=progress.append if progress is not None else None,
    )


# ---------------------------------------------------------------------------
# Traversal
# ---------------------------------------------------------------------------


class TestTraversal:
    def test_two_listing_pages_four_products(self) -> None:
        site = _site(listings=2)
        blob_store = MemoryBlobStore()
        session = _session(site, blob_store=blob_store)

        result = session.run()

        assert result.processed_items == 4
        assert sorted(record.source_url for record in session.extracted) == [
            product_url(number) for number in range(1, 5)
        ]
        assert result.metadata["listing_pages"] == 2
        assert result.metadata["products_extracted"] == 4
        assert session.page_count == 2
        assert len(blob_store.blobs) == 4
        assert all(record.storage_key in blob_store.blobs for record in session.extracted)

    def test_max_pages_caps_listing_visits(self) -> None:
        site = _site(listings=6, products_per_page=1)
        session = _session(site, max_pages=3)

        result = session.run()

        assert session.page_count == 3
        assert result.metadata["listing_pages"] == 3
        assert result.processed_items == 3
        assert site.count(_listing_key(4)) == 0

    def test_session_page_budget_spans_all_listings(self) -> None:
        site = _site(listings=3, products_per_page=1)
        second_listing = "https://www.catalog.test/c/boots"
        site.pages[second_listing] = FakePage(links={".card": [product_url(9)]})
        site.pages[product_url(9)] = product_page(9)
        session = _session(site, max_pages=3, start_urls=(LISTING_URL, second_listing))

        result = session.run()

        assert session.page_count == 3
        assert session.exhausted is True
        assert result.metadata["session_exhausted"] is True

    def test_duplicate_links_are_visited_once(self) -> None:
        site = _site(listings=2, products_per_page=1)
        site.pages[_listing_key(2)].links[".card"].append(product_url(1))
        site.pages[_listing_key(1)].links[".card"].append(f"{product_url(1)}/#details")
        session = _session(site)

        result = session.run()

        assert result.processed_items == 2
        assert site.count(product_url(1)) == 1
        assert product_url(1) in session.visited

    def test_ignored_links_are_not_visited(self) -> None:
        site = _site(listings=1, products_per_page=1)
        site.pages[LISTING_URL].links[".card"].append("https://www.elsewhere.test/p/1")
        session = _session(site)

        result = session.run()

        assert result.processed_items == 1
        assert site.count("https://www.elsewhere.test/p/1") == 0

    def test_fan_out_limits(self) -> None:
        site = _site(listings=1, products_per_page=5)
        site.pages[LISTING_URL].links[".featured a"] = [product_url(number) for number in range(6, 10)]
        for number in range(6, 10):
            site.pages[product_url(number)] = product_page(number)
        session = _session(
            site,
            settings_overrides={"card_link_limit": 3, "product_link_limit": 2},
        )

        result = session.run()

        assert sorted(record.source_url for record in session.extracted) == sorted(
            [product_url(1), product_url(2), product_url(3), product_url(6), product_url(7)]
        )
        assert result.processed_items == 5

    def test_progress_callback_receives_counters(self) -> None:
        progress: list[dict[str, Any]] = []
        session = _session(_site(listings=1), progress=progress)

        session.run()

        assert len(progress) == 3
        assert max(snapshot["products_extracted"] for snapshot in progress) == 2
        assert {"page_count", "frontier_size", "visited_urls"} <= set(progress[-1])


# ---------------------------------------------------------------------------
# Failure isolation
# ---------------------------------------------------------------------------


class TestFailureIsolation:
    def test_broken_product_page_is_skipped(self) -> None:
        broken = product_page(2)
        broken.broken = True
        site = _site(listings=2, p2=broken)
        session = _session(site)

        result = session.run()

        assert result.processed_items == 3
        assert result.metadata["page_failures"] == 1
        assert result.metadata["errors"][0]["url"] == product_url(2)

    def test_broken_listing_page_is_skipped(self) -> None:
        missing_listing = "https://www.catalog.test/c/discontinued"
        session = _session(_site(listings=1), start_urls=(LISTING_URL, missing_listing))

        result = session.run()

        assert result.processed_items == 2
        assert result.metadata["page_failures"] == 1
        assert result.metadata["errors"][0]["stage"] == "listing_page"

    def test_failed_pagination_click_ends_listing(self) -> None:
        site = _site(listings=2)
        site.pages[_listing_key(2)].broken = True
        session = _session(site)

        result = session.run()

        assert result.processed_items == 2
        assert result.metadata["listing_pages"] == 1
        assert result.metadata["page_failures"] == 0

    def test_missing_name_fails_the_product_page(self) -> None:
        nameless = product_page(1)
        nameless.texts.pop("h1")
        site = _site(listings=1, p1=nameless)
        session = _session(site)

        result = session.run()

        assert result.processed_items == 1
        assert result.metadata["page_failures"] == 1
        assert result.metadata["errors"][0]["stage"] == "product_page"

    def test_missing_price_is_an_extraction_failure(self) -> None:
        priceless = product_page(1)
        priceless.texts.pop(".price")
        site = _site(listings=1, p1=priceless)
        session = _session(site)

        result = session.run()

        assert result.processed_items == 1
        assert result.metadata["extraction_failures"] == 1
        assert result.metadata["errors"][0]["stage"] == "extraction"

    def test_missing_ean_aborts_product_by_default(self) -> None:
        site = _site(listings=1, p2=product_page(2, ean=None))
        session = _session(site)

        result = session.run()

        assert [record.source_url for record in session.extracted] == [product_url(1)]
        assert result.metadata["extraction_failures"] == 1

    def test_missing_ean_allowed_when_not_required(self) -> None:
        site = _site(listings=1, p2=product_page(2, ean=None))
        session = _session(site, settings_overrides={"require_ean": False})

        result = session.run()

        assert result.processed_items == 2
        by_url = {record.source_url: record for record in session.extracted}
        assert by_url[product_url(2)].ean is None
        assert by_url[product_url(1)].ean == "4006381333931"

    def test_storage_failure_keeps_record(self) -> None:
        session = _session(_site(listings=1), blob_store=FailingBlobStore())

        result = session.run()

        assert result.processed_items == 2
        assert all(record.storage_key is None for record in session.extracted)
        assert result.metadata["storage_failures"] == 2

    def test_unwritable_blob_root_keeps_records(self, tmp_path: Path) -> None:
        blocker = tmp_path / "blobs"
        blocker.write_text("not a directory")
        session = _session(_site(listings=1), blob_store=FileSystemBlobStore(blocker / "root"))

        result = session.run()

        assert result.processed_items == 2
        assert all(record.storage_key is None for record in session.extracted)
        assert result.metadata["storage_failures"] == 2


# ---------------------------------------------------------------------------
# Session-fatal outcomes
# ---------------------------------------------------------------------------


class TestSessionFatal:
    def test_cancelled_session_raises(self) -> None:
        cancel_event = threading.Event()
        cancel_event.set()
        session = _session(_site(listings=1), cancel_event=cancel_event)

        with pytest.raises(CrawlCancelledError):
            session.run()

    def test_unexpected_driver_error_propagates(self) -> None:
        class ExplodingDriver(FakePageDriver):
            def query_links(self, selector: str) -> list[str]:
                raise RuntimeError("driver crashed")

        site = _site(listings=1)
        settings = session_settings()
        session = CrawlSession(
            job_id="job-under-test",
            config=make_config(),
            pool=PageContextPool(driver_factory=lambda: ExplodingDriver(site), size=2),
            blob_store=MemoryBlobStore(),
            settings=settings,
        )

        with pytest.raises(RuntimeError, match="driver crashed"):
            session.run()
