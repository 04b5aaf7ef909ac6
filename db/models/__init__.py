"""
Model package exports.

Import all SQLAlchemy models here so metadata registration and Alembic
autogeneration work without extra imports.
"""

from db.models.column_template import ColumnTemplateRecord
from db.models.survey import NormalizedSurveyRow, Survey
from db.models.taxonomy_mapping import TaxonomyMappingRecord, TaxonomySourceEntryRecord
from db.models.variable_index import VariableIndexRecord

__all__ = [
    "ColumnTemplateRecord",
    "NormalizedSurveyRow",
    "Survey",
    "TaxonomyMappingRecord",
    "TaxonomySourceEntryRecord",
    "VariableIndexRecord",
]
