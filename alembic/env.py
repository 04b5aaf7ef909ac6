"""
alembic/env.py

Migration environment for the benchmark tables.
"""

from __future__ import annotations

import os
from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool

import db.models  # noqa: F401 registers ORM models on Base.metadata
from db.base import Base
from db.config import SUPPORTED_URL_PREFIXES, load_env_files, normalize_database_url, resolve_database_url

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def _migration_url() -> str:
    """
    Resolve the migration target.

    Priority:
    1) `-x db_url=...` for one-off targets
    2) ALEMBIC_DATABASE_URL
    3) sqlalchemy.url from alembic.ini
    4) BENCHMARK_DATABASE_URL / DATABASE_URL
    """

    load_env_files()

    x_args = context.get_x_argument(as_dictionary=True)
    candidates = (
        x_args.get("db_url") or "",
        os.getenv("ALEMBIC_DATABASE_URL") or "",
        config.get_main_option("sqlalchemy.url") or "",
    )
    for candidate in candidates:
        if candidate.strip():
            url = normalize_database_url(candidate)
            break
    else:
        url = resolve_database_url()

    if not url.startswith(SUPPORTED_URL_PREFIXES):
        raise RuntimeError("Alembic is configured for PostgreSQL and SQLite URLs only.")
    return url


def run_migrations_offline() -> None:
    context.configure(
        url=_migration_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        compare_type=True,
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    configuration = config.get_section(config.config_ini_section, {})
    configuration["sqlalchemy.url"] = _migration_url()

    connectable = engine_from_config(
        configuration,
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            compare_type=True,
            render_as_batch=connection.dialect.name == "sqlite",
        )

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
