"""
tests/conftest.py

Shared fixtures: in-memory stores, an in-memory SQLite session and a small
row factory.
"""

from __future__ import annotations

from collections.abc import Iterator
from typing import Any

import pytest
from sqlalchemy.orm import Session

import db.models  # noqa: F401 registers ORM models on Base.metadata
from app.domain.survey import NormalizedRow
from app.repositories.memory_store import (
    InMemoryMappingStore,
    InMemorySurveyStore,
    InMemoryVariableIndexCache,
)
from db.base import Base
from db.config import DatabaseSettings
from db.session import build_session_factory, create_db_engine


def make_row(**overrides: Any) -> NormalizedRow:
    """Build a NormalizedRow with sensible defaults."""
    values: dict[str, Any] = {
        "specialty": "Cardiology",
        "provider_type": "Physician",
        "region": "National",
        "year": 2024,
        "survey_source": "SourceA",
        "variable": "tcc",
        "n_orgs": 10,
        "n_incumbents": 100,
        "p25": 300_000.0,
        "p50": 400_000.0,
        "p75": 500_000.0,
        "p90": 600_000.0,
    }
    values.update(overrides)
    return NormalizedRow(**values)


@pytest.fixture()
def row_store() -> InMemorySurveyStore:
    return InMemorySurveyStore()


@pytest.fixture()
def mapping_store() -> InMemoryMappingStore:
    return InMemoryMappingStore()


@pytest.fixture()
def index_cache() -> InMemoryVariableIndexCache:
    return InMemoryVariableIndexCache()


@pytest.fixture()
def db_session() -> Iterator[Session]:
    """
    In-memory SQLite session from the project's engine factory, which wires
    up SAVEPOINT support for ``begin_nested``.
    """

    engine = create_db_engine(DatabaseSettings(url="sqlite://"))
    Base.metadata.create_all(engine)
    session = build_session_factory(engine)()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(engine)
        engine.dispose()
