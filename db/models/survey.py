"""
db/models/survey.py

One uploaded survey file and its normalized benchmark rows.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy import Float, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from db.base import NAME_LENGTH, SOURCE_LENGTH, SURVEY_ID_LENGTH, Base, JSONType, TimestampMixin


class Survey(Base, TimestampMixin):
    __tablename__ = "surveys"

    id: Mapped[str] = mapped_column(String(SURVEY_ID_LENGTH), primary_key=True)
    name: Mapped[str] = mapped_column(String(NAME_LENGTH), nullable=False)
    survey_source: Mapped[str] = mapped_column(
        String(SOURCE_LENGTH),
        nullable=False,
        comment="Survey vendor, e.g. MGMA, SullivanCotter, Gallagher",
    )
    year: Mapped[int | None] = mapped_column(Integer, nullable=True)
    row_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    content_hash: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
        comment="sha256 over sorted row fingerprints; refreshed on every write",
    )

    __table_args__ = (
        Index("ix_surveys_survey_source", "survey_source"),
        Index("ix_surveys_source_year", "survey_source", "year"),
    )


class NormalizedSurveyRow(Base):
    __tablename__ = "normalized_survey_rows"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    survey_id: Mapped[str] = mapped_column(
        String(SURVEY_ID_LENGTH),
        ForeignKey("surveys.id", ondelete="CASCADE"),
        nullable=False,
    )
    specialty: Mapped[str] = mapped_column(String(NAME_LENGTH), nullable=False)
    provider_type: Mapped[str] = mapped_column(String(SOURCE_LENGTH), nullable=False, default="")
    region: Mapped[str] = mapped_column(String(SOURCE_LENGTH), nullable=False, default="")
    year: Mapped[int | None] = mapped_column(Integer, nullable=True)
    survey_source: Mapped[str] = mapped_column(String(SOURCE_LENGTH), nullable=False)
    variable: Mapped[str] = mapped_column(String(SOURCE_LENGTH), nullable=False)
    n_orgs: Mapped[int | None] = mapped_column(Integer, nullable=True)
    n_incumbents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    p25: Mapped[float | None] = mapped_column(Float, nullable=True)
    p50: Mapped[float | None] = mapped_column(Float, nullable=True)
    p75: Mapped[float | None] = mapped_column(Float, nullable=True)
    p90: Mapped[float | None] = mapped_column(Float, nullable=True)
    organization_id: Mapped[str | None] = mapped_column(String(120), nullable=True)
    value: Mapped[float | None] = mapped_column(Float, nullable=True)
    fingerprint: Mapped[str] = mapped_column(String(64), nullable=False)
    raw_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)

    __table_args__ = (
        Index("ix_normalized_survey_rows_survey_id_id", "survey_id", "id"),
        Index("ix_normalized_survey_rows_survey_fingerprint", "survey_id", "fingerprint"),
        Index("ix_normalized_survey_rows_variable", "survey_id", "variable"),
    )
