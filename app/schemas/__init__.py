"""
app/schemas package marker.
"""

from app.schemas.benchmark import (
    AggregateResponse,
    BlendResponse,
    ColumnResolveResponse,
    CoverageResponse,
    JobStatusResponse,
    SurveyIngestionSummaryResponse,
    SurveyValidationErrorResponse,
    TaxonomyMappingResponse,
    TaxonomyNormalizeResponse,
    VariableListResponse,
)

__all__ = [
    "AggregateResponse",
    "BlendResponse",
    "ColumnResolveResponse",
    "CoverageResponse",
    "JobStatusResponse",
    "SurveyIngestionSummaryResponse",
    "SurveyValidationErrorResponse",
    "TaxonomyMappingResponse",
    "TaxonomyNormalizeResponse",
    "VariableListResponse",
]
