"""
app/mappers package marker.
"""

from app.mappers.column_resolver import (
    LONG_FORMAT_SCHEMA,
    WIDE_FORMAT_SCHEMA,
    ColumnMappingResolver,
    ColumnResolution,
)
from app.mappers.row_normalizer import SurveyRowNormalizer
from app.mappers.taxonomy_normalizer import TaxonomyNormalizer, TaxonomyResolution, learn_mapping

__all__ = [
    "LONG_FORMAT_SCHEMA",
    "WIDE_FORMAT_SCHEMA",
    "ColumnMappingResolver",
    "ColumnResolution",
    "SurveyRowNormalizer",
    "TaxonomyNormalizer",
    "TaxonomyResolution",
    "learn_mapping",
]
