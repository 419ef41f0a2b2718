"""
db/session.py

Engine and session factory for the crawl queue database.

Both are created lazily so importing the scheduler or the API never opens a
connection.
"""

from __future__ import annotations

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from db.config import QueueDatabaseSettings, get_queue_database_settings


def create_queue_engine(settings: QueueDatabaseSettings) -> Engine:
    connect_args: dict[str, str] = {"application_name": settings.application_name}
    if settings.statement_timeout_ms:
        connect_args["options"] = f"-c statement_timeout={settings.statement_timeout_ms}"

    return create_engine(
        settings.url,
        echo=settings.echo,
        pool_pre_ping=True,
        pool_recycle=settings.pool_recycle_seconds,
        pool_size=settings.pool_size,
        max_overflow=settings.max_overflow,
        connect_args=connect_args,
    )


def build_session_factory(engine: Engine) -> sessionmaker[Session]:
    """
    Sessions keep loaded attributes after commit; the scheduler reads job
    fields after its transaction closes.
    """

    return sessionmaker(
        bind=engine,
        class_=Session,
        autoflush=False,
        expire_on_commit=False,
    )


_engine: Engine | None = None
_session_factory: sessionmaker[Session] | None = None


def get_engine() -> Engine:
    """Return the shared engine, creating it on first call."""
    global _engine
    if _engine is None:
        _engine = create_queue_engine(get_queue_database_settings())
    return _engine


def get_session_factory() -> sessionmaker[Session]:
    global _session_factory
    if _session_factory is None:
        _session_factory = build_session_factory(get_engine())
    return _session_factory


def SessionLocal() -> Session:
    """Open a session on the shared queue engine."""
    return get_session_factory()()
