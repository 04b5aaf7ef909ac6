"""
db/config.py

Environment-driven settings for the SQL storage backend.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
ENV_FILENAMES = (".env", ".env.local")
SUPPORTED_URL_PREFIXES = ("postgresql", "sqlite")


def parse_env_line(raw_line: str) -> tuple[str, str] | None:
    """
    Split one ``KEY=VALUE`` line. Returns None for blanks, comments and junk.
    """

    line = raw_line.strip()
    if not line or line.startswith("#") or "=" not in line:
        return None
    if line.startswith("export "):
        line = line[len("export "):].lstrip()

    key, _, value = line.partition("=")
    key = key.strip()
    if not key:
        return None
    return key, value.strip().strip('"').strip("'")


def load_env_files(root: Path | None = None) -> list[Path]:
    """
    Load ``.env`` then ``.env.local`` into ``os.environ``.

    Variables already set in the process environment are never overwritten,
    and the first file to define a key wins. Returns the files that were read.
    """

    base = root if root is not None else PROJECT_ROOT
    loaded: list[Path] = []
    for filename in ENV_FILENAMES:
        env_path = base / filename
        if not env_path.is_file():
            continue

        for raw_line in env_path.read_text(encoding="utf-8").splitlines():
            parsed = parse_env_line(raw_line)
            if parsed is None:
                continue
            key, value = parsed
            os.environ.setdefault(key, value)
        loaded.append(env_path)
    return loaded


def normalize_database_url(url: str) -> str:
    """
    Rewrite bare postgres URLs to SQLAlchemy's psycopg driver form.
    """

    url = url.strip()
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+psycopg://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+psycopg://", 1)
    return url


def resolve_database_url() -> str:
    """
    Resolve the benchmark database URL.

    Priority:
    1) BENCHMARK_DATABASE_URL
    2) DATABASE_URL
    """

    load_env_files()

    for name in ("BENCHMARK_DATABASE_URL", "DATABASE_URL"):
        raw_url = (os.getenv(name) or "").strip()
        if raw_url:
            url = normalize_database_url(raw_url)
            break
    else:
        raise RuntimeError(
            "No database URL configured. Set BENCHMARK_DATABASE_URL or DATABASE_URL "
            "when BENCHMARK_STORAGE_BACKEND=sql."
        )

    if not url.startswith(SUPPORTED_URL_PREFIXES):
        raise RuntimeError("Only PostgreSQL and SQLite database URLs are supported.")
    return url


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


@dataclass(frozen=True)
class DatabaseSettings:
    """
    Connection settings for the SQL storage backend.

    Pool sizes apply to PostgreSQL only; SQLite engines ignore them.
    """

    url: str
    echo: bool = False
    pool_size: int = 5
    max_overflow: int = 10
    pool_recycle: int = 1800

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith("sqlite")


def load_database_settings() -> DatabaseSettings:
    """
    Build DatabaseSettings from environment variables and optional .env files.
    """

    url = resolve_database_url()
    echo = (os.getenv("SQL_ECHO") or "").strip().lower() in {"1", "true", "yes", "on"}
    return DatabaseSettings(
        url=url,
        echo=echo,
        pool_size=max(1, _env_int("DB_POOL_SIZE", 5)),
        max_overflow=max(0, _env_int("DB_MAX_OVERFLOW", 10)),
        pool_recycle=_env_int("DB_POOL_RECYCLE", 1800),
    )
