"""
app/schemas package marker.
"""

from app.schemas.crawl import (
    CrawlErrorResponse,
    CrawlJobAcceptedResponse,
    CrawlJobAttempts,
    CrawlJobListResponse,
    CrawlJobStatusResponse,
    CrawlJobSummaryResponse,
    HealthResponse,
)

__all__ = [
    "CrawlErrorResponse",
    "CrawlJobAcceptedResponse",
    "CrawlJobAttempts",
    "CrawlJobListResponse",
    "CrawlJobStatusResponse",
    "CrawlJobSummaryResponse",
    "HealthResponse",
]
