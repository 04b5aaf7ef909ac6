"""
app/schemas/benchmark.py

Request and response schemas for the benchmark endpoints.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from app.domain.survey import GROUPABLE_FIELDS


# ---------------------------------------------------------------------------
# Column resolution
# ---------------------------------------------------------------------------


class ColumnResolveRequest(BaseModel):
    headers: list[str] = Field(..., min_length=1)
    survey_source: str | None = Field(
        default=None,
        description="When set, the saved column template for this source is applied first.",
    )
    layout: Literal["long", "wide"] = "long"


class ColumnMappingResponse(BaseModel):
    raw_header: str
    canonical_field: str
    required: bool
    auto_matched: bool
    strategy: str


class ColumnResolveResponse(BaseModel):
    mappings: list[ColumnMappingResponse] = Field(default_factory=list)
    unmatched_headers: list[str] = Field(default_factory=list)
    missing_required: list[str] = Field(default_factory=list)
    is_complete: bool
    variables: list[str] = Field(
        default_factory=list,
        description="Variables implied by <metric>_pNN columns (wide layout only).",
    )


class ColumnTemplateRequest(BaseModel):
    headers: list[str] = Field(..., min_length=1, description="Header row of a sample file from the source.")
    field_mapping: dict[str, str] = Field(..., min_length=1, description="Canonical field -> source header.")
    layout: Literal["long", "wide"] = "long"


class ColumnTemplateResponse(BaseModel):
    survey_source: str
    field_mapping: dict[str, str]
    updated_at: datetime | None = None


# ---------------------------------------------------------------------------
# Taxonomy
# ---------------------------------------------------------------------------


class TaxonomyNormalizeRequest(BaseModel):
    kind: str
    survey_source: str
    values: list[str] = Field(..., min_length=1)


class TaxonomyResolutionResponse(BaseModel):
    raw_value: str
    standardized_name: str
    method: str
    confirmed: bool


class TaxonomyNormalizeResponse(BaseModel):
    kind: str
    survey_source: str
    results: list[TaxonomyResolutionResponse] = Field(default_factory=list)


class TaxonomyLearnRequest(BaseModel):
    kind: str
    survey_source: str = Field(..., min_length=1)
    raw_value: str = Field(..., min_length=1)
    standardized_name: str = Field(..., min_length=1)


class TaxonomyMappingResponse(BaseModel):
    kind: str
    standardized_name: str
    source_entries: list[dict[str, str]] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Discovery and aggregation
# ---------------------------------------------------------------------------


class VariableListResponse(BaseModel):
    survey_id: str
    variables: list[str] = Field(default_factory=list)


class AggregateRequest(BaseModel):
    group_key: list[str] = Field(default_factory=lambda: list(GROUPABLE_FIELDS), min_length=1)
    compute_percentiles: bool = True
    include_summary: bool = False


class PercentilePayload(BaseModel):
    p25: float = 0.0
    p50: float = 0.0
    p75: float = 0.0
    p90: float = 0.0


class AggregatedGroupPayload(BaseModel):
    """
    One aggregated group, as returned by aggregation and accepted by blending.
    """

    group_key: dict[str, Any] = Field(..., min_length=1)
    percentiles: PercentilePayload = Field(default_factory=PercentilePayload)
    n_orgs: int = Field(default=0, ge=0)
    n_incumbents: int = Field(default=0, ge=0)
    row_count: int = Field(default=0, ge=0)


class SummaryRowResponse(BaseModel):
    variable: str
    group_count: int
    n_incumbents: int
    n_orgs: int
    simple: PercentilePayload
    weighted: PercentilePayload


class AggregateResponse(BaseModel):
    survey_id: str
    group_key: list[str]
    groups: list[AggregatedGroupPayload] = Field(default_factory=list)
    summary: list[SummaryRowResponse] | None = None


# ---------------------------------------------------------------------------
# Blending
# ---------------------------------------------------------------------------


class BlendWeightPayload(BaseModel):
    specialty: str
    weight: float
    records: int = Field(default=0, ge=0)


class BlendRequest(BaseModel):
    groups: list[AggregatedGroupPayload] = Field(..., min_length=1)
    policy: str = "incumbent-weighted"
    weights: list[BlendWeightPayload] | None = None
    component_key: list[str] = Field(default_factory=lambda: ["specialty"], min_length=1)
    include_confidence: bool = True


class DerivedMetricResponse(BaseModel):
    name: str
    value: float | None = None
    error: str | None = None


class ComponentShareResponse(BaseModel):
    label: str
    weight: float
    n_incumbents: int
    n_orgs: int


class BlendedMetricResponse(BaseModel):
    variable: str
    percentiles: PercentilePayload
    iqr: DerivedMetricResponse
    n_incumbents: int
    n_orgs: int
    components: list[ComponentShareResponse] = Field(default_factory=list)


class BlendResponse(BaseModel):
    policy: str
    component_key: list[str]
    components: list[str]
    metrics: list[BlendedMetricResponse] = Field(default_factory=list)
    effective_rate: dict[str, DerivedMetricResponse] = Field(default_factory=dict)
    total_incumbents: int
    confidence: float | None = None
    warnings: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Coverage
# ---------------------------------------------------------------------------


class CoverageRequest(BaseModel):
    survey_source: str
    values: dict[str, list[str]] = Field(..., min_length=1)


class CoverageResultResponse(BaseModel):
    category: str
    mapped: int = Field(..., ge=0)
    unmapped: int = Field(..., ge=0)
    coverage: float = Field(..., ge=0.0, le=1.0)
    unmapped_values: list[str] = Field(default_factory=list)


class CoverageResponse(BaseModel):
    survey_source: str
    results: list[CoverageResultResponse] = Field(default_factory=list)
    overall_coverage: float = Field(..., ge=0.0, le=1.0)


# ---------------------------------------------------------------------------
# Ingestion
# ---------------------------------------------------------------------------


class SurveyValidationErrorResponse(BaseModel):
    """
    API response model for one row-level validation error.
    """

    row_number: int = Field(..., ge=1)
    message: str
    column: str | None = None
    value: str | None = None


class SurveyIngestionSummaryResponse(BaseModel):
    """
    API response model for survey ingestion summary.
    """

    survey_id: str
    rows_processed: int = Field(..., ge=0)
    rows_failed: int = Field(..., ge=0)
    content_hash: str | None = None
    column_mappings: list[ColumnMappingResponse] = Field(default_factory=list)
    coverage: list[CoverageResultResponse] = Field(default_factory=list)
    validation_errors: list[SurveyValidationErrorResponse] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Background jobs
# ---------------------------------------------------------------------------


class JobStatusResponse(BaseModel):
    job_id: str
    name: str
    status: str
    result: Any = None
    error: str | None = None
