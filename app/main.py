from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from collections.abc import AsyncIterator

from fastapi import FastAPI

STORAGE_BACKENDS = ("memory", "sql")


def _configure_logging() -> None:
    """
    Configure root logging once for the API process.
    """

    log_level = os.getenv("LOG_LEVEL", "INFO").strip().upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def _validate_settings(storage_backend: str) -> None:
    """
    Fail fast on a misconfigured storage backend.

    Raises RuntimeError for an unknown backend name, or for ``sql`` without a
    resolvable database URL.
    """

    if storage_backend not in STORAGE_BACKENDS:
        raise RuntimeError(
            f"BENCHMARK_STORAGE_BACKEND={storage_backend!r} is not valid. "
            f"Allowed values: {list(STORAGE_BACKENDS)}."
        )
    if storage_backend == "sql":
        from db.config import resolve_database_url

        resolve_database_url()


def _check_db() -> None:
    """Open a session and run SELECT 1. Raises RuntimeError if the DB is unreachable."""
    from sqlalchemy import text

    from db.session import SessionLocal

    try:
        db = SessionLocal()
        try:
            db.execute(text("SELECT 1"))
        finally:
            db.close()
    except Exception as exc:
        raise RuntimeError("Database unavailable.") from exc


def _check_schema() -> None:
    """
    Compare Base.metadata table names against the live DB schema.

    Every benchmark table must exist; startup aborts with a pointer to
    ``alembic upgrade head`` otherwise. Does NOT auto-migrate.
    """
    from sqlalchemy import inspect as sa_inspect

    import db.models  # noqa: F401 registers ORM models on Base.metadata
    from db.base import Base
    from db.session import get_engine

    inspector = sa_inspect(get_engine())
    actual: set[str] = set(inspector.get_table_names())
    expected: set[str] = set(Base.metadata.tables.keys())
    missing = expected - actual

    if missing:
        log = logging.getLogger(__name__)
        log.critical(
            "Schema mismatch: %d table(s) defined in ORM metadata are absent from "
            "the database: %s. Run 'alembic upgrade head' and restart.",
            len(missing),
            ", ".join(sorted(missing)),
        )
        raise RuntimeError(
            f"Schema mismatch: {len(missing)} table(s) missing from the database "
            f"({', '.join(sorted(missing))}). Run migrations and restart."
        )


@asynccontextmanager
async def _lifespan(application: FastAPI) -> AsyncIterator[None]:
    """Validate the database when configured, start the job runner on boot; shut it down on exit."""
    from app.config import get_benchmark_settings
    from app.services.job_runner import get_job_runner

    log = logging.getLogger(__name__)
    settings = get_benchmark_settings()
    _validate_settings(settings.storage_backend)
    if settings.storage_backend == "sql":
        _check_db()
        log.info("Database connectivity confirmed")
        _check_schema()
        log.info("Database schema validated")
    else:
        log.info("Using in-memory benchmark stores")

    runner = get_job_runner()
    runner.start()
    log.info("Job runner started with %d workers", settings.job_workers)
    try:
        yield
    finally:
        runner.shutdown(wait=True)
        get_job_runner.cache_clear()
        log.info("Job runner shut down")
        if settings.storage_backend == "sql":
            from db.session import dispose_engine

            dispose_engine()


def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.
    """

    _configure_logging()

    application = FastAPI(
        title="Compensation Benchmark API",
        version="1.0.0",
        lifespan=_lifespan,
    )

    from app.api.routers import benchmark_router

    application.include_router(benchmark_router)

    @application.get("/health")
    def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    return application


app = create_app()
