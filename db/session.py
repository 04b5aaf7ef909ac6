"""
db/session.py

SQLAlchemy engine and session factory for the SQL storage backend.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Any

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from db.config import DatabaseSettings, load_database_settings

logger = logging.getLogger(__name__)


def _enable_sqlite_savepoints(engine: Engine) -> None:
    """
    Let SQLAlchemy emit BEGIN itself so ``Session.begin_nested`` works.

    pysqlite opens transactions lazily on its own, which breaks SAVEPOINT
    handling. Taxonomy learning relies on savepoints to survive a lost race.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection: Any, connection_record: Any) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(connection: Any) -> None:
        connection.exec_driver_sql("BEGIN")


def create_db_engine(settings: DatabaseSettings) -> Engine:
    """
    Build the engine for the configured URL.

    PostgreSQL gets a pre-pinged pooled engine. SQLite is accepted for local
    runs and tests; in-memory SQLite shares one connection across threads.
    """

    if settings.is_sqlite:
        options: dict[str, Any] = {"connect_args": {"check_same_thread": False}}
        if make_url(settings.url).database in (None, "", ":memory:"):
            options["poolclass"] = StaticPool
        engine = create_engine(settings.url, echo=settings.echo, **options)
        _enable_sqlite_savepoints(engine)
        return engine

    if not settings.url.startswith("postgresql"):
        raise RuntimeError("Only PostgreSQL and SQLite URLs are supported.")

    return create_engine(
        settings.url,
        echo=settings.echo,
        pool_pre_ping=True,
        pool_recycle=settings.pool_recycle,
        pool_size=settings.pool_size,
        max_overflow=settings.max_overflow,
    )


def build_session_factory(engine: Engine) -> sessionmaker:
    """
    Session factory used for every request-scoped and job-scoped session.

    Stores flush but never commit; callers commit or roll back.
    """

    return sessionmaker(
        bind=engine,
        class_=Session,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
    )


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    """Return the shared engine, creating it on first call."""
    settings = load_database_settings()
    engine = create_db_engine(settings)
    logger.info("Created %s engine for the benchmark database", engine.dialect.name)
    return engine


@lru_cache(maxsize=1)
def _get_session_factory() -> sessionmaker:
    return build_session_factory(get_engine())


def SessionLocal() -> Session:
    """Lazy session factory. Drop-in replacement for a sessionmaker() call."""
    return _get_session_factory()()


def dispose_engine() -> None:
    """Close pooled connections and forget the cached engine and factory."""
    if get_engine.cache_info().currsize:
        get_engine().dispose()
    _get_session_factory.cache_clear()
    get_engine.cache_clear()
