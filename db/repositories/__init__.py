"""
Repository layer exports.
"""

from db.repositories.crawl_job_repository import CrawlJobRepository

__all__ = [
    "CrawlJobRepository",
]
