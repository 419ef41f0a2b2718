"""
app/domain/crawl.py

Domain models for crawl configuration, extracted records and job results.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

DEFAULT_MAX_PAGES = 1000
DEFAULT_EAN_LABEL = "EAN"


class PageKind(str, Enum):
    LISTING = "listing"
    PRODUCT = "product"
    IGNORED = "ignored"


@dataclass(frozen=True)
class CrawlerConfig:
    """
    Immutable crawl configuration supplied at submission.
    """

    start_urls: tuple[str, ...]
    listing_patterns: tuple[str, ...]
    product_patterns: tuple[str, ...]
    product_card_selector: str
    pagination_selector: str
    product_link_selector: str
    product_name_selector: str
    product_price_selector: str
    max_pages: int = DEFAULT_MAX_PAGES
    ean_label: str = DEFAULT_EAN_LABEL
    consent_selector: str | None = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "start_urls": list(self.start_urls),
            "listing_patterns": list(self.listing_patterns),
            "product_patterns": list(self.product_patterns),
            "selectors": {
                "product_card": self.product_card_selector,
                "pagination": self.pagination_selector,
                "product_link": self.product_link_selector,
                "product_name": self.product_name_selector,
                "product_price": self.product_price_selector,
            },
            "max_pages": self.max_pages,
            "ean_label": self.ean_label,
            "consent_selector": self.consent_selector,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "CrawlerConfig":
        """
        Rebuild a config persisted by `to_payload`. Input is trusted.
        """

        selectors = payload["selectors"]
        return cls(
            start_urls=tuple(payload["start_urls"]),
            listing_patterns=tuple(payload["listing_patterns"]),
            product_patterns=tuple(payload["product_patterns"]),
            product_card_selector=selectors["product_card"],
            pagination_selector=selectors["pagination"],
            product_link_selector=selectors["product_link"],
            product_name_selector=selectors["product_name"],
            product_price_selector=selectors["product_price"],
            max_pages=int(payload.get("max_pages", DEFAULT_MAX_PAGES)),
            ean_label=payload.get("ean_label") or DEFAULT_EAN_LABEL,
            consent_selector=payload.get("consent_selector"),
        )


@dataclass(frozen=True)
class ProductRecord:
    """
    One product extracted from a detail page. Price stays raw text.
    """

    source_url: str
    name: str
    price: str
    extracted_at: datetime
    ean: str | None = None
    storage_key: str | None = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "source_url": self.source_url,
            "name": self.name,
            "price": self.price,
            "ean": self.ean,
            "extracted_at": self.extracted_at.isoformat(),
            "storage_key": self.storage_key,
        }


@dataclass(frozen=True)
class CrawlJobResult:
    """
    Return value of one successful crawl attempt.
    """

    crawl_id: str
    processed_items: int
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        return {
            "crawlId": self.crawl_id,
            "processedItems": self.processed_items,
            "metadata": self.metadata,
        }
