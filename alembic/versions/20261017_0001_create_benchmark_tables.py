"""create survey, taxonomy mapping, column template and variable index tables

Revision ID: 20261017_0001
Revises:
Create Date: 2026-10-17 09:00:00
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "20261017_0001"
down_revision = None
branch_labels = None
depends_on = None

_JSON = sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "surveys",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("survey_source", sa.String(length=120), nullable=False),
        sa.Column("year", sa.Integer(), nullable=True),
        sa.Column("row_count", sa.Integer(), nullable=False),
        sa.Column("content_hash", sa.String(length=64), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_surveys_survey_source", "surveys", ["survey_source"], unique=False)
    op.create_index("ix_surveys_source_year", "surveys", ["survey_source", "year"], unique=False)

    op.create_table(
        "normalized_survey_rows",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("survey_id", sa.String(length=64), nullable=False),
        sa.Column("specialty", sa.String(length=255), nullable=False),
        sa.Column("provider_type", sa.String(length=120), nullable=False),
        sa.Column("region", sa.String(length=120), nullable=False),
        sa.Column("year", sa.Integer(), nullable=True),
        sa.Column("survey_source", sa.String(length=120), nullable=False),
        sa.Column("variable", sa.String(length=120), nullable=False),
        sa.Column("n_orgs", sa.Integer(), nullable=True),
        sa.Column("n_incumbents", sa.Integer(), nullable=True),
        sa.Column("p25", sa.Float(), nullable=True),
        sa.Column("p50", sa.Float(), nullable=True),
        sa.Column("p75", sa.Float(), nullable=True),
        sa.Column("p90", sa.Float(), nullable=True),
        sa.Column("organization_id", sa.String(length=120), nullable=True),
        sa.Column("value", sa.Float(), nullable=True),
        sa.Column("fingerprint", sa.String(length=64), nullable=False),
        sa.Column("raw_json", _JSON, nullable=True),
        sa.ForeignKeyConstraint(["survey_id"], ["surveys.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_normalized_survey_rows_survey_id_id",
        "normalized_survey_rows",
        ["survey_id", "id"],
        unique=False,
    )
    op.create_index(
        "ix_normalized_survey_rows_survey_fingerprint",
        "normalized_survey_rows",
        ["survey_id", "fingerprint"],
        unique=False,
    )
    op.create_index(
        "ix_normalized_survey_rows_variable",
        "normalized_survey_rows",
        ["survey_id", "variable"],
        unique=False,
    )

    op.create_table(
        "taxonomy_mappings",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("entity_kind", sa.String(length=32), nullable=False),
        sa.Column("standardized_name", sa.String(length=255), nullable=False),
        sa.Column("standardized_key", sa.String(length=255), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("entity_kind", "standardized_key", name="uq_taxonomy_mappings_kind_name"),
    )
    op.create_index("ix_taxonomy_mappings_entity_kind", "taxonomy_mappings", ["entity_kind"], unique=False)

    op.create_table(
        "taxonomy_source_entries",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("mapping_id", sa.Integer(), nullable=False),
        sa.Column("entity_kind", sa.String(length=32), nullable=False),
        sa.Column("survey_source", sa.String(length=120), nullable=False),
        sa.Column("raw_value", sa.String(length=255), nullable=False),
        sa.Column("survey_source_key", sa.String(length=120), nullable=False),
        sa.Column("raw_value_key", sa.String(length=255), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["mapping_id"], ["taxonomy_mappings.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "entity_kind",
            "survey_source_key",
            "raw_value_key",
            name="uq_taxonomy_source_entries_kind_source_raw",
        ),
    )
    op.create_index(
        "ix_taxonomy_source_entries_mapping_id",
        "taxonomy_source_entries",
        ["mapping_id"],
        unique=False,
    )

    op.create_table(
        "column_templates",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("survey_source", sa.String(length=120), nullable=False),
        sa.Column("survey_source_key", sa.String(length=120), nullable=False),
        sa.Column("field_mapping_json", _JSON, nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("survey_source_key", name="uq_column_templates_survey_source_key"),
    )
    op.create_index("ix_column_templates_survey_source", "column_templates", ["survey_source"], unique=False)

    op.create_table(
        "variable_index",
        sa.Column("survey_id", sa.String(length=64), nullable=False),
        sa.Column("content_hash", sa.String(length=64), nullable=False),
        sa.Column("variables_json", _JSON, nullable=False),
        sa.Column("scanned_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["survey_id"], ["surveys.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("survey_id"),
    )


def downgrade() -> None:
    op.drop_table("variable_index")
    op.drop_index("ix_column_templates_survey_source", table_name="column_templates")
    op.drop_table("column_templates")
    op.drop_index("ix_taxonomy_source_entries_mapping_id", table_name="taxonomy_source_entries")
    op.drop_table("taxonomy_source_entries")
    op.drop_index("ix_taxonomy_mappings_entity_kind", table_name="taxonomy_mappings")
    op.drop_table("taxonomy_mappings")
    op.drop_index("ix_normalized_survey_rows_variable", table_name="normalized_survey_rows")
    op.drop_index("ix_normalized_survey_rows_survey_fingerprint", table_name="normalized_survey_rows")
    op.drop_index("ix_normalized_survey_rows_survey_id_id", table_name="normalized_survey_rows")
    op.drop_table("normalized_survey_rows")
    op.drop_index("ix_surveys_source_year", table_name="surveys")
    op.drop_index("ix_surveys_survey_source", table_name="surveys")
    op.drop_table("surveys")
