"""
Model package exports.

Import all SQLAlchemy models here so metadata registration and Alembic
autogeneration work without extra imports.
"""

from db.models.crawl_job import CrawlJob, CrawlJobStatus

__all__ = [
    "CrawlJob",
    "CrawlJobStatus",
]
