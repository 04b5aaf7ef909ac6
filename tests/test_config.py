"""
tests/test_config.py

Environment-driven settings for the app and the SQL backend.
"""

from __future__ import annotations

import os
from collections.abc import Iterator

import pytest
from sqlalchemy import text

from app.config import get_benchmark_settings, get_survey_ingestion_settings
from db.config import (
    DatabaseSettings,
    load_database_settings,
    load_env_files,
    normalize_database_url,
    parse_env_line,
    resolve_database_url,
)
from db.session import build_session_factory, create_db_engine


@pytest.fixture()
def clean_settings() -> Iterator[None]:
    get_benchmark_settings.cache_clear()
    get_survey_ingestion_settings.cache_clear()
    yield
    get_benchmark_settings.cache_clear()
    get_survey_ingestion_settings.cache_clear()


@pytest.fixture()
def no_database_env(monkeypatch) -> None:
    for name in ("BENCHMARK_DATABASE_URL", "DATABASE_URL"):
        monkeypatch.delenv(name, raising=False)


# ---------------------------------------------------------------------------
# .env parsing
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("line", "expected"),
    [
        ("KEY=value", ("KEY", "value")),
        ('  QUOTED = "a b"  ', ("QUOTED", "a b")),
        ("export TOKEN='x=y'", ("TOKEN", "x=y")),
        ("# comment=1", None),
        ("", None),
        ("no_equals_sign", None),
        ("=orphan", None),
    ],
)
def test_parse_env_line(line: str, expected) -> None:
    assert parse_env_line(line) == expected


def test_env_files_never_override_the_process(tmp_path, monkeypatch) -> None:
    (tmp_path / ".env").write_text("BENCH_A=from_env\nBENCH_B=from_env\n", encoding="utf-8")
    (tmp_path / ".env.local").write_text("BENCH_B=from_local\nBENCH_C=from_local\n", encoding="utf-8")
    monkeypatch.setenv("BENCH_A", "from_process")
    monkeypatch.delenv("BENCH_B", raising=False)
    monkeypatch.delenv("BENCH_C", raising=False)

    loaded = load_env_files(tmp_path)

    assert [path.name for path in loaded] == [".env", ".env.local"]
    assert os.environ["BENCH_A"] == "from_process"
    assert os.environ["BENCH_B"] == "from_env"
    assert os.environ["BENCH_C"] == "from_local"


def test_missing_env_files_are_skipped(tmp_path) -> None:
    assert load_env_files(tmp_path) == []


# ---------------------------------------------------------------------------
# Database URL
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("postgres://u:p@h/db", "postgresql+psycopg://u:p@h/db"),
        ("postgresql://u:p@h/db", "postgresql+psycopg://u:p@h/db"),
        ("postgresql+psycopg://u:p@h/db", "postgresql+psycopg://u:p@h/db"),
        (" sqlite:///bench.db ", "sqlite:///bench.db"),
    ],
)
def test_normalize_database_url(raw: str, expected: str) -> None:
    assert normalize_database_url(raw) == expected


def test_benchmark_url_wins_over_database_url(monkeypatch, no_database_env) -> None:
    monkeypatch.setenv("DATABASE_URL", "postgres://other/db")
    monkeypatch.setenv("BENCHMARK_DATABASE_URL", "postgresql://bench/db")

    assert resolve_database_url() == "postgresql+psycopg://bench/db"


def test_missing_url_raises(no_database_env) -> None:
    with pytest.raises(RuntimeError, match="No database URL configured"):
        resolve_database_url()


def test_unsupported_url_raises(monkeypatch, no_database_env) -> None:
    monkeypatch.setenv("DATABASE_URL", "mysql://h/db")

    with pytest.raises(RuntimeError, match="Only PostgreSQL and SQLite"):
        resolve_database_url()


def test_database_settings_from_env(monkeypatch, no_database_env) -> None:
    monkeypatch.setenv("DATABASE_URL", "sqlite:///bench.db")
    monkeypatch.setenv("SQL_ECHO", "yes")
    monkeypatch.setenv("DB_POOL_SIZE", "0")
    monkeypatch.setenv("DB_MAX_OVERFLOW", "many")

    settings = load_database_settings()

    assert settings.is_sqlite
    assert settings.echo is True
    assert settings.pool_size == 1
    assert settings.max_overflow == 10


def test_sqlite_engine_supports_savepoints() -> None:
    engine = create_db_engine(DatabaseSettings(url="sqlite://"))
    session = build_session_factory(engine)()
    try:
        session.execute(text("CREATE TABLE t (v INTEGER)"))
        session.execute(text("INSERT INTO t VALUES (1)"))
        nested = session.begin_nested()
        session.execute(text("INSERT INTO t VALUES (2)"))
        nested.rollback()

        assert session.execute(text("SELECT v FROM t")).scalars().all() == [1]
    finally:
        session.close()
        engine.dispose()


def test_unsupported_engine_url_raises() -> None:
    with pytest.raises(RuntimeError):
        create_db_engine(DatabaseSettings(url="mysql://h/db"))


# ---------------------------------------------------------------------------
# App settings
# ---------------------------------------------------------------------------


def test_benchmark_settings_defaults(monkeypatch, clean_settings) -> None:
    for name in (
        "BENCHMARK_STORAGE_BACKEND",
        "BENCHMARK_BLEND_WEIGHT_EPSILON",
        "BENCHMARK_JOB_WORKERS",
        "BENCHMARK_JOB_RETAIN_FINISHED",
    ):
        monkeypatch.delenv(name, raising=False)

    settings = get_benchmark_settings()

    assert settings.storage_backend == "memory"
    assert settings.blend_weight_epsilon == 0.5
    assert settings.job_workers == 4
    assert settings.job_retain_finished == 100
    assert get_benchmark_settings() is settings


def test_benchmark_settings_overrides_and_fallbacks(monkeypatch, clean_settings) -> None:
    monkeypatch.setenv("BENCHMARK_STORAGE_BACKEND", " SQL ")
    monkeypatch.setenv("BENCHMARK_SPECIALTY_FUZZY_THRESHOLD", "3")
    monkeypatch.setenv("BENCHMARK_JOB_WORKERS", "not-a-number")
    monkeypatch.setenv("BENCHMARK_PRODUCTIVITY_VARIABLE", "   ")
    monkeypatch.setenv("BENCHMARK_JOB_RETAIN_FINISHED", "-3")

    settings = get_benchmark_settings()

    assert settings.storage_backend == "sql"
    assert settings.specialty_fuzzy_threshold == 1.0
    assert settings.job_workers == 4
    assert settings.productivity_variable == "work_rvus"
    assert settings.job_retain_finished == 0


def test_ingestion_settings(monkeypatch, clean_settings) -> None:
    monkeypatch.setenv("CSV_INGEST_BATCH_SIZE", "-5")
    monkeypatch.setenv("CSV_INGEST_SAVE_COLUMN_TEMPLATES", "off")

    settings = get_survey_ingestion_settings()

    assert settings.batch_size == 1
    assert settings.save_column_templates is False
