"""
db/base.py

Declarative base, column sizes and mixins shared by the benchmark tables.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import JSON, DateTime, String, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")

SURVEY_ID_LENGTH = 64
SOURCE_LENGTH = 120
NAME_LENGTH = 255


class Base(DeclarativeBase):
    """
    Declarative base for survey, taxonomy, template and index tables.
    """


class TimestampMixin:
    """
    Adds created_at and updated_at; updated_at refreshes on every UPDATE.
    """

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=lambda: datetime.now(timezone.utc),
    )


class SurveySourceMixin:
    """
    Survey vendor as declared on upload plus its casefolded lookup key.

    Lookups and unique constraints go through ``survey_source_key`` so
    "MGMA" and "mgma " address the same rows.
    """

    survey_source: Mapped[str] = mapped_column(
        String(SOURCE_LENGTH),
        nullable=False,
        comment="Survey vendor name as declared on upload",
    )
    survey_source_key: Mapped[str] = mapped_column(String(SOURCE_LENGTH), nullable=False)
