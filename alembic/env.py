"""
Alembic environment for the crawl queue schema.

Autogenerate only considers tables declared on ``Base.metadata`` so a shared
database's other tables are never proposed for removal.
"""

from __future__ import annotations

import os
from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool

from db.base import Base
from db.config import get_queue_database_settings, load_env_files, normalize_postgres_url
from db.models import CrawlJob  # noqa: F401  registers crawl_jobs on Base.metadata

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def _migration_url() -> str:
    """
    First non-empty of: `-x db_url=...`, ALEMBIC_DATABASE_URL, `sqlalchemy.url`
    in alembic.ini, then the runtime queue database URL.
    """

    load_env_files()

    candidates = (
        context.get_x_argument(as_dictionary=True).get("db_url"),
        os.getenv("ALEMBIC_DATABASE_URL"),
        config.get_main_option("sqlalchemy.url"),
    )
    for candidate in candidates:
        if candidate and candidate.strip():
            url = normalize_postgres_url(candidate.strip())
            break
    else:
        url = get_queue_database_settings().url

    if not url.startswith("postgresql"):
        raise RuntimeError("Crawl queue migrations target PostgreSQL only.")
    return url


def _include_object(object_, name, type_, reflected, compare_to) -> bool:
    if type_ == "table" and reflected and name not in target_metadata.tables:
        return False
    return True


def _configure_options() -> dict[str, object]:
    return {
        "target_metadata": target_metadata,
        "include_object": _include_object,
        "compare_type": True,
        "compare_server_default": True,
    }


def run_migrations_offline() -> None:
    context.configure(
        url=_migration_url(),
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        **_configure_options(),
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    section = config.get_section(config.config_ini_section, {})
    section["sqlalchemy.url"] = _migration_url()

    connectable = engine_from_config(section, prefix="sqlalchemy.", poolclass=pool.NullPool)

    with connectable.connect() as connection:
        context.configure(connection=connection, **_configure_options())

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
