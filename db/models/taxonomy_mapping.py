"""
db/models/taxonomy_mapping.py

Confirmed taxonomy mappings (specialty, provider type, region, variable).

The unique constraint on (entity_kind, survey_source_key, raw_value_key)
makes each learned source spelling resolve to exactly one standardized name
even when two writers race.
"""

from __future__ import annotations

from sqlalchemy import ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from db.base import NAME_LENGTH, Base, SurveySourceMixin, TimestampMixin


class TaxonomyMappingRecord(Base, TimestampMixin):
    __tablename__ = "taxonomy_mappings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entity_kind: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        comment="specialty, provider_type, region, variable",
    )
    standardized_name: Mapped[str] = mapped_column(String(NAME_LENGTH), nullable=False)
    standardized_key: Mapped[str] = mapped_column(
        String(NAME_LENGTH),
        nullable=False,
        comment="casefolded standardized_name used for uniqueness",
    )

    source_entries: Mapped[list["TaxonomySourceEntryRecord"]] = relationship(
        back_populates="mapping",
        order_by="TaxonomySourceEntryRecord.id",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        UniqueConstraint("entity_kind", "standardized_key", name="uq_taxonomy_mappings_kind_name"),
        Index("ix_taxonomy_mappings_entity_kind", "entity_kind"),
    )


class TaxonomySourceEntryRecord(Base, SurveySourceMixin, TimestampMixin):
    __tablename__ = "taxonomy_source_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    mapping_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("taxonomy_mappings.id", ondelete="CASCADE"),
        nullable=False,
    )
    entity_kind: Mapped[str] = mapped_column(String(32), nullable=False)
    raw_value: Mapped[str] = mapped_column(String(NAME_LENGTH), nullable=False)
    raw_value_key: Mapped[str] = mapped_column(String(NAME_LENGTH), nullable=False)

    mapping: Mapped[TaxonomyMappingRecord] = relationship(back_populates="source_entries")

    __table_args__ = (
        UniqueConstraint(
            "entity_kind",
            "survey_source_key",
            "raw_value_key",
            name="uq_taxonomy_source_entries_kind_source_raw",
        ),
        Index("ix_taxonomy_source_entries_mapping_id", "mapping_id"),
    )
