"""
db/config.py

Environment-driven settings for the crawl queue database.

The queue claims jobs with ``SELECT ... FOR UPDATE SKIP LOCKED``, so the
runtime database is PostgreSQL. Tests build their own SQLite engine and never
read these settings.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

_CLOUD_LIKE_ENVIRONMENTS = frozenset({"prod", "production", "staging", "cloud"})
_URL_VARIABLES = ("CRAWL_DATABASE_URL", "DATABASE_URL")


def project_root() -> Path:
    return Path(__file__).resolve().parents[1]


def load_env_files() -> None:
    """
    Load KEY=VALUE pairs from `.env` then `.env.local` without overriding the
    process environment.
    """

    for filename in (".env", ".env.local"):
        env_path = project_root() / filename
        if not env_path.is_file():
            continue

        for raw_line in env_path.read_text(encoding="utf-8").splitlines():
            line = raw_line.strip()
            if line.startswith("export "):
                line = line[len("export "):].lstrip()
            if not line or line.startswith("#") or "=" not in line:
                continue

            key, value = (part.strip() for part in line.split("=", 1))
            if key and key not in os.environ:
                os.environ[key] = value.strip('"').strip("'")


def normalize_postgres_url(url: str) -> str:
    """
    Rewrite `postgres://` and bare `postgresql://` URLs to the psycopg 3 driver.
    """

    for prefix in ("postgres://", "postgresql://"):
        if url.startswith(prefix):
            return "postgresql+psycopg://" + url[len(prefix):]
    return url


def resolve_database_url() -> str:
    """
    Resolve the queue database URL.

    Priority:
    1) CRAWL_DATABASE_URL, then DATABASE_URL
    2) CLOUD_DATABASE_URL when ENVIRONMENT is cloud-like
    3) LOCAL_DATABASE_URL
    """

    load_env_files()

    for name in _URL_VARIABLES:
        value = os.getenv(name, "").strip()
        if value:
            return normalize_postgres_url(value)

    environment = os.getenv("ENVIRONMENT", "local").strip().lower()
    cloud_url = os.getenv("CLOUD_DATABASE_URL", "").strip()
    if environment in _CLOUD_LIKE_ENVIRONMENTS and cloud_url:
        return normalize_postgres_url(cloud_url)

    local_url = os.getenv("LOCAL_DATABASE_URL", "").strip()
    if local_url:
        return normalize_postgres_url(local_url)

    raise RuntimeError(
        "No database URL configured for the crawl queue. Set CRAWL_DATABASE_URL or "
        "DATABASE_URL, or configure LOCAL_DATABASE_URL / CLOUD_DATABASE_URL."
    )


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


@dataclass(frozen=True)
class QueueDatabaseSettings:
    url: str
    echo: bool = False
    pool_size: int = 5
    max_overflow: int = 10
    pool_recycle_seconds: int = 1800
    statement_timeout_ms: int = 30_000
    application_name: str = "catalog-crawler"


@lru_cache(maxsize=1)
def get_queue_database_settings() -> QueueDatabaseSettings:
    """
    Return cached queue database settings.

    Raises RuntimeError when no URL is configured or it is not PostgreSQL.
    """

    url = resolve_database_url()
    if not url.startswith("postgresql"):
        raise RuntimeError("The crawl queue requires a PostgreSQL database URL.")

    return QueueDatabaseSettings(
        url=url,
        echo=os.getenv("SQL_ECHO", "").strip().lower() in {"1", "true", "yes", "on"},
        pool_size=max(1, _env_int("DB_POOL_SIZE", 5)),
        max_overflow=max(0, _env_int("DB_MAX_OVERFLOW", 10)),
        pool_recycle_seconds=max(0, _env_int("DB_POOL_RECYCLE", 1800)),
        statement_timeout_ms=max(0, _env_int("DB_STATEMENT_TIMEOUT_MS", 30_000)),
        application_name=os.getenv("DB_APPLICATION_NAME", "catalog-crawler").strip() or "catalog-crawler",
    )
