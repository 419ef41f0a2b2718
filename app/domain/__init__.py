"""
app/domain package marker.
"""

from app.domain.crawl import CrawlerConfig, CrawlJobResult, PageKind, ProductRecord

__all__ = [
    "CrawlJobResult",
    "CrawlerConfig",
    "PageKind",
    "ProductRecord",
]
