"""
app/api/dependencies.py

Shared FastAPI dependencies for request validation and storage access.
"""

from __future__ import annotations

from collections.abc import Callable, Generator, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from functools import lru_cache

from fastapi import File, HTTPException, UploadFile, status

from app.config import get_benchmark_settings
from app.repositories.base import MappingStore, RowStore, VariableIndexCache
from app.repositories.memory_store import (
    InMemoryMappingStore,
    InMemorySurveyStore,
    InMemoryVariableIndexCache,
)

CSV_CONTENT_TYPES = {
    "text/csv",
    "application/csv",
    "application/vnd.ms-excel",
}


def get_csv_upload(file: UploadFile = File(...)) -> UploadFile:
    """
    Validate that the uploaded file is a CSV by extension or MIME type.
    """

    filename = (file.filename or "").strip().lower()
    content_type = (file.content_type or "").strip().lower()

    is_csv_filename = filename.endswith(".csv")
    is_csv_content_type = content_type in CSV_CONTENT_TYPES

    if not is_csv_filename and not is_csv_content_type:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Only CSV files are allowed.",
        )

    return file


@dataclass(frozen=True)
class BenchmarkStores:
    """
    Storage collaborators for one request.

    ``commit`` / ``rollback`` are no-ops for the in-memory backend.
    """

    rows: RowStore
    mappings: MappingStore
    variable_index: VariableIndexCache
    commit: Callable[[], None]
    rollback: Callable[[], None]


def _noop() -> None:
    return None


@lru_cache(maxsize=1)
def get_memory_stores() -> BenchmarkStores:
    """
    Process-wide in-memory stores, used when no database backend is configured.
    """

    return BenchmarkStores(
        rows=InMemorySurveyStore(),
        mappings=InMemoryMappingStore(),
        variable_index=InMemoryVariableIndexCache(),
        commit=_noop,
        rollback=_noop,
    )


@contextmanager
def open_benchmark_stores() -> Iterator[BenchmarkStores]:
    """
    Open stores for the configured storage backend.

    ``BENCHMARK_STORAGE_BACKEND=sql`` binds SQLAlchemy stores to a fresh
    session that is closed on exit; anything else uses the shared in-memory
    stores.
    """

    if get_benchmark_settings().storage_backend != "sql":
        yield get_memory_stores()
        return

    from app.repositories.sqlalchemy_store import (
        SqlAlchemyMappingStore,
        SqlAlchemySurveyStore,
        SqlAlchemyVariableIndexCache,
    )
    from db.session import SessionLocal

    db = SessionLocal()
    try:
        yield BenchmarkStores(
            rows=SqlAlchemySurveyStore(db),
            mappings=SqlAlchemyMappingStore(db),
            variable_index=SqlAlchemyVariableIndexCache(db),
            commit=db.commit,
            rollback=db.rollback,
        )
    finally:
        db.close()


def get_benchmark_stores() -> Generator[BenchmarkStores, None, None]:
    """
    FastAPI dependency yielding request-scoped stores.
    """

    with open_benchmark_stores() as stores:
        yield stores
