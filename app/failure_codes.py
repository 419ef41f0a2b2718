"""Stable error codes shared by the crawl scheduler, sessions and HTTP surface."""

MISSING_CONFIG = "MISSING_CONFIG"
INVALID_URLS = "INVALID_URLS"
CRAWL_FAILED = "CRAWL_FAILED"
TIMEOUT = "TIMEOUT"
STALLED = "STALLED"
INTERNAL_ERROR = "INTERNAL_ERROR"
JOBS_LIST_ERROR = "JOBS_LIST_ERROR"
NOT_FOUND = "NOT_FOUND"
