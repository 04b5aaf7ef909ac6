"""
db/models/column_template.py

Saved header mappings reused for later uploads from the same survey source.
"""

from __future__ import annotations

from sqlalchemy import Index, Integer, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from db.base import Base, JSONType, SurveySourceMixin, TimestampMixin


class ColumnTemplateRecord(Base, SurveySourceMixin, TimestampMixin):
    __tablename__ = "column_templates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    field_mapping_json: Mapped[dict[str, str]] = mapped_column(
        JSONType,
        nullable=False,
        comment="Canonical field -> source header",
    )

    __table_args__ = (
        UniqueConstraint("survey_source_key", name="uq_column_templates_survey_source_key"),
        Index("ix_column_templates_survey_source", "survey_source"),
    )
