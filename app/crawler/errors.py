"""
Error taxonomy for crawl jobs and the pages they visit.

Page- and product-scoped errors stay inside a session. Only `CrawlExecutionError`
and `CrawlTimeoutError` reach the scheduler.
"""

from __future__ import annotations

from typing import Any

from app import failure_codes


class CrawlJobError(Exception):
    """
    Base error carrying a stable code and structured details.
    """

    def __init__(
        self,
        message: str,
        code: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}

    def to_payload(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class CrawlValidationError(CrawlJobError):
    """Raised synchronously on submit; the job never enters the queue."""


class CrawlExecutionError(CrawlJobError):
    """Wraps any uncaught session-level failure."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message, failure_codes.CRAWL_FAILED, details)


class CrawlTimeoutError(CrawlJobError):
    """Job exceeded its wall-clock budget."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message, failure_codes.TIMEOUT, details)


class CrawlCancelledError(Exception):
    """Raised inside a session once its cancel event is set."""


class PageFailure(Exception):
    """Base for failures scoped to one listing or one product page."""


class NavigationError(PageFailure):
    """The driver could not load a URL."""


class SelectorTimeoutError(PageFailure):
    """A selector did not attach within the wait budget."""


class PageActionError(PageFailure):
    """A click or other interaction failed."""


class ExtractionFailure(Exception):
    """A mandatory product field is missing."""

    def __init__(self, field_name: str, url: str) -> None:
        super().__init__(f"Missing {field_name} on {url}")
        self.field_name = field_name
        self.url = url


class StorageFailure(Exception):
    """The blob store rejected a write."""


def describe_cause(exc: BaseException) -> dict[str, Any]:
    return {
        "type": type(exc).__name__,
        "message": str(exc),
    }
