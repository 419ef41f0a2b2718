"""
app/config.py

Application-level configuration helpers for the crawl scheduler and sessions.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache

from db.config import load_env_files, project_root


@lru_cache(maxsize=1)
def _load_env_once() -> None:
    """
    Ensure project `.env` files are loaded once before reading app settings.
    """

    load_env_files()


def _get_bool_env(name: str, default: bool) -> bool:
    """
    Read a boolean from environment variables with safe fallback.
    """

    _load_env_once()
    raw_value = os.getenv(name)
    if raw_value is None:
        return default
    return raw_value.strip().lower() in {"1", "true", "yes", "on"}


def _get_int_env(name: str, default: int) -> int:
    """
    Read an integer from environment variables with safe fallback.
    """

    _load_env_once()
    raw_value = os.getenv(name)
    if raw_value is None:
        return default
    try:
        return int(raw_value)
    except ValueError:
        return default


def _get_float_env(name: str, default: float) -> float:
    """
    Read a float from environment variables with safe fallback.
    """

    _load_env_once()
    raw_value = os.getenv(name)
    if raw_value is None:
        return default
    try:
        return float(raw_value)
    except ValueError:
        return default


def _get_str_env(name: str, default: str) -> str:
    """
    Read a string from environment variables with fallback.
    """

    _load_env_once()
    value = os.getenv(name)
    if value is None:
        return default
    stripped = value.strip()
    return stripped if stripped else default


@dataclass(frozen=True)
class CrawlSchedulerSettings:
    """
    Queue, dispatch and retry settings for the job scheduler.
    """

    max_concurrent_jobs: int = 5
    admission_max_starts: int = 5
    admission_window_seconds: float = 5.0
    max_attempts: int = 3
    backoff_delay_seconds: float = 1.0
    job_timeout_seconds: float = 2 * 60 * 60
    retain_completed: int = 100
    retain_failed: int = 200
    poll_interval_seconds: float = 0.5
    stalled_interval_seconds: float = 30.0
    max_stalled_count: int = 3

    def job_options(self) -> dict[str, object]:
        return {
            "attempts": self.max_attempts,
            "backoff": {"type": "exponential", "delay_seconds": self.backoff_delay_seconds},
            "timeout_seconds": self.job_timeout_seconds,
            "remove_on_complete": self.retain_completed,
            "remove_on_fail": self.retain_failed,
        }


@dataclass(frozen=True)
class CrawlSessionSettings:
    """
    Per-session traversal limits and static driver HTTP behavior.
    """

    page_concurrency: int = 10
    selector_timeout_seconds: float = 30.0
    card_link_limit: int = 100
    product_link_limit: int = 2
    require_ean: bool = True
    blob_dir: str = "var/blobs"
    http_timeout_seconds: float = 15.0
    http_max_retries: int = 3
    http_backoff_initial_seconds: float = 0.5
    http_backoff_multiplier: float = 2.0
    user_agent: str = "CatalogCrawler/1.0 (+https://example.com/bot)"


@lru_cache(maxsize=1)
def get_crawl_scheduler_settings() -> CrawlSchedulerSettings:
    """
    Return cached scheduler settings from environment variables.
    """

    return CrawlSchedulerSettings(
        max_concurrent_jobs=max(1, _get_int_env("CRAWL_MAX_CONCURRENT_JOBS", 5)),
        admission_max_starts=max(1, _get_int_env("CRAWL_ADMISSION_MAX_STARTS", 5)),
        admission_window_seconds=max(0.1, _get_float_env("CRAWL_ADMISSION_WINDOW_SECONDS", 5.0)),
        max_attempts=max(1, _get_int_env("CRAWL_MAX_ATTEMPTS", 3)),
        backoff_delay_seconds=max(0.0, _get_float_env("CRAWL_BACKOFF_DELAY_SECONDS", 1.0)),
        job_timeout_seconds=max(1.0, _get_float_env("CRAWL_JOB_TIMEOUT_SECONDS", 7200.0)),
        retain_completed=max(1, _get_int_env("CRAWL_RETAIN_COMPLETED", 100)),
        retain_failed=max(1, _get_int_env("CRAWL_RETAIN_FAILED", 200)),
        poll_interval_seconds=max(0.05, _get_float_env("CRAWL_POLL_INTERVAL_SECONDS", 0.5)),
        stalled_interval_seconds=max(1.0, _get_float_env("CRAWL_STALLED_INTERVAL_SECONDS", 30.0)),
        max_stalled_count=max(0, _get_int_env("CRAWL_MAX_STALLED_COUNT", 3)),
    )


@lru_cache(maxsize=1)
def get_crawl_session_settings() -> CrawlSessionSettings:
    """
    Return cached session settings from environment variables.
    """

    blob_dir = _get_str_env("CRAWL_BLOB_DIR", "var/blobs")
    if not os.path.isabs(blob_dir):
        blob_dir = str(project_root() / blob_dir)

    return CrawlSessionSettings(
        page_concurrency=max(1, _get_int_env("CRAWL_PAGE_CONCURRENCY", 10)),
        selector_timeout_seconds=max(0.0, _get_float_env("CRAWL_SELECTOR_TIMEOUT_SECONDS", 30.0)),
        card_link_limit=max(0, _get_int_env("CRAWL_CARD_LINK_LIMIT", 100)),
        product_link_limit=max(0, _get_int_env("CRAWL_PRODUCT_LINK_LIMIT", 2)),
        require_ean=_get_bool_env("CRAWL_REQUIRE_EAN", True),
        blob_dir=blob_dir,
        http_timeout_seconds=max(1.0, _get_float_env("CRAWL_HTTP_TIMEOUT_SECONDS", 15.0)),
        http_max_retries=max(0, _get_int_env("CRAWL_HTTP_MAX_RETRIES", 3)),
        http_backoff_initial_seconds=max(0.1, _get_float_env("CRAWL_HTTP_BACKOFF_INITIAL_SECONDS", 0.5)),
        http_backoff_multiplier=max(1.0, _get_float_env("CRAWL_HTTP_BACKOFF_MULTIPLIER", 2.0)),
        user_agent=_get_str_env("CRAWL_USER_AGENT", "CatalogCrawler/1.0 (+https://example.com/bot)"),
    )
