"""
app/domain package marker.
"""

from app.domain.survey import (
    AggregatedGroup,
    BlendWeight,
    ColumnMapping,
    ColumnTemplate,
    CoverageResult,
    EntityKind,
    IngestionSummary,
    MappingTable,
    NormalizedRow,
    PercentileSet,
    RowValidationError,
    SourceEntry,
    TaxonomyMapping,
    VariableIndexEntry,
)

__all__ = [
    "AggregatedGroup",
    "BlendWeight",
    "ColumnMapping",
    "ColumnTemplate",
    "CoverageResult",
    "EntityKind",
    "IngestionSummary",
    "MappingTable",
    "NormalizedRow",
    "PercentileSet",
    "RowValidationError",
    "SourceEntry",
    "TaxonomyMapping",
    "VariableIndexEntry",
]
