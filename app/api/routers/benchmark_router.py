"""
app/api/routers/benchmark_router.py

HTTP endpoints for column resolution and templates, taxonomy normalization,
variable discovery, aggregation, blending, coverage and survey upload.

Engine errors map onto status codes as follows:

    ValidationError   -> 400 (request bodies failing schema checks are 422)
    NotFoundError     -> 404
    ConflictError     -> 409
"""

from __future__ import annotations

import logging
from typing import Any, NoReturn

from fastapi import APIRouter, Depends, HTTPException, Query, UploadFile, status

from app.api.dependencies import (
    BenchmarkStores,
    get_benchmark_stores,
    get_csv_upload,
    open_benchmark_stores,
)
from app.config import get_benchmark_settings
from app.domain.survey import (
    AggregatedGroup,
    BlendWeight,
    ColumnTemplate,
    CoverageResult,
    FieldSpec,
    PercentileSet,
)
from app.errors import BenchmarkError, ConflictError, NotFoundError, ValidationError
from app.mappers.column_resolver import (
    LONG_FORMAT_SCHEMA,
    WIDE_FORMAT_SCHEMA,
    ColumnMappingResolver,
    ColumnResolution,
)
from app.mappers.row_normalizer import detect_wide_columns
from app.mappers.taxonomy_normalizer import TaxonomyNormalizer, learn_mapping
from app.schemas.benchmark import (
    AggregatedGroupPayload,
    AggregateRequest,
    AggregateResponse,
    BlendedMetricResponse,
    BlendRequest,
    BlendResponse,
    ColumnMappingResponse,
    ColumnResolveRequest,
    ColumnResolveResponse,
    ColumnTemplateRequest,
    ColumnTemplateResponse,
    ComponentShareResponse,
    CoverageRequest,
    CoverageResponse,
    CoverageResultResponse,
    DerivedMetricResponse,
    JobStatusResponse,
    PercentilePayload,
    SummaryRowResponse,
    SurveyIngestionSummaryResponse,
    SurveyValidationErrorResponse,
    TaxonomyLearnRequest,
    TaxonomyMappingResponse,
    TaxonomyNormalizeRequest,
    TaxonomyNormalizeResponse,
    TaxonomyResolutionResponse,
    VariableListResponse,
)
from app.services.aggregation_service import PercentileAggregationService, get_aggregation_service
from app.services.blending_service import BlendingService, get_blending_service
from app.services.coverage_service import MappingCoverageAnalyzer
from app.services.job_runner import BenchmarkJobRunner, CancellationToken, get_job_runner
from app.services.survey_ingestion_service import (
    SurveyIngestionService,
    SurveyPersistenceError,
    get_survey_ingestion_service,
)
from app.services.variable_discovery_service import VariableDiscoveryService, get_variable_discovery_service
from app.validators.mapping_validator import MappingValidator

logger = logging.getLogger(__name__)

router = APIRouter(tags=["benchmark"])


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _raise_http(exc: BenchmarkError) -> NoReturn:
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=exc.to_dict()) from exc
    if isinstance(exc, ConflictError):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=exc.to_dict()) from exc
    if isinstance(exc, ValidationError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.to_dict()) from exc
    raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc


def _get_normalizer() -> TaxonomyNormalizer:
    return TaxonomyNormalizer(specialty_threshold=get_benchmark_settings().specialty_fuzzy_threshold)


def _mapping_responses(resolution: ColumnResolution) -> list[ColumnMappingResponse]:
    return [
        ColumnMappingResponse(
            raw_header=mapping.raw_header,
            canonical_field=mapping.canonical_field,
            required=mapping.required,
            auto_matched=mapping.auto_matched,
            strategy=mapping.strategy,
        )
        for mapping in resolution.mappings
    ]


def _coverage_responses(results: list[CoverageResult] | tuple[CoverageResult, ...]) -> list[CoverageResultResponse]:
    return [
        CoverageResultResponse(
            category=result.category,
            mapped=result.mapped,
            unmapped=result.unmapped,
            coverage=result.coverage,
            unmapped_values=list(result.unmapped_values),
        )
        for result in results
    ]


def _schema_for_layout(headers: list[str], layout: str) -> tuple[tuple[FieldSpec, ...], list[str]]:
    """Pick the field schema; wide layouts drop their <metric>_pNN columns first."""
    if layout != "wide":
        return LONG_FORMAT_SCHEMA, list(headers)
    wide_headers = {
        header for columns in detect_wide_columns(headers).values() for header in columns.values()
    }
    return WIDE_FORMAT_SCHEMA, [header for header in headers if header not in wide_headers]


def _template_response(template: ColumnTemplate) -> ColumnTemplateResponse:
    return ColumnTemplateResponse(
        survey_source=template.survey_source,
        field_mapping=dict(template.field_mapping),
        updated_at=template.updated_at,
    )


def _to_group(payload: AggregatedGroupPayload) -> AggregatedGroup:
    return AggregatedGroup(
        group_key=tuple(payload.group_key.items()),
        percentiles=PercentileSet(**payload.percentiles.model_dump()),
        n_orgs=payload.n_orgs,
        n_incumbents=payload.n_incumbents,
        row_count=payload.row_count,
    )


def _to_payload(group: AggregatedGroup) -> AggregatedGroupPayload:
    return AggregatedGroupPayload(
        group_key=group.key_dict(),
        percentiles=PercentilePayload(**group.percentiles.as_dict()),
        n_orgs=group.n_orgs,
        n_incumbents=group.n_incumbents,
        row_count=group.row_count,
    )


# ---------------------------------------------------------------------------
# Column resolution & taxonomy
# ---------------------------------------------------------------------------


@router.post("/columns/resolve", response_model=ColumnResolveResponse)
def resolve_columns(
    body: ColumnResolveRequest,
    stores: BenchmarkStores = Depends(get_benchmark_stores),
) -> ColumnResolveResponse:
    """
    Propose a header-to-field mapping for review before upload.
    """

    schema, headers = _schema_for_layout(body.headers, body.layout)
    try:
        template = stores.mappings.get_column_template(body.survey_source) if body.survey_source else None
        resolution = ColumnMappingResolver().resolve_columns(headers, schema, template)
    except BenchmarkError as exc:
        _raise_http(exc)

    return ColumnResolveResponse(
        mappings=_mapping_responses(resolution),
        unmatched_headers=list(resolution.unmatched_headers),
        missing_required=list(resolution.missing_required),
        is_complete=resolution.is_complete,
        variables=(
            VariableDiscoveryService.discover_wide_format_variables(body.headers)
            if body.layout == "wide"
            else []
        ),
    )


@router.get("/columns/templates/{survey_source}", response_model=ColumnTemplateResponse)
def get_column_template(
    survey_source: str,
    stores: BenchmarkStores = Depends(get_benchmark_stores),
) -> ColumnTemplateResponse:
    """
    Return the saved column template for a survey source.
    """

    template = stores.mappings.get_column_template(survey_source)
    if template is None:
        _raise_http(NotFoundError(resource="column_template", identifier=survey_source))
    return _template_response(template)


@router.put("/columns/templates/{survey_source}", response_model=ColumnTemplateResponse)
def save_column_template(
    survey_source: str,
    body: ColumnTemplateRequest,
    stores: BenchmarkStores = Depends(get_benchmark_stores),
) -> ColumnTemplateResponse:
    """
    Save a reviewed header mapping so later uploads from the source reuse it.

    The mapping must be complete and valid against ``headers``.
    """

    if not survey_source.strip():
        _raise_http(ValidationError("survey_source must not be blank.", code="missing_survey_source"))

    schema, headers = _schema_for_layout(body.headers, body.layout)
    try:
        MappingValidator(schema=schema).validate(mapping=body.field_mapping, source_headers=headers)
        saved = stores.mappings.save_column_template(
            ColumnTemplate(survey_source=survey_source, field_mapping=dict(body.field_mapping))
        )
        stores.commit()
    except BenchmarkError as exc:
        stores.rollback()
        _raise_http(exc)

    logger.info(
        "Saved column template source=%s fields=%d layout=%s",
        survey_source,
        len(saved.field_mapping),
        body.layout,
    )
    return _template_response(saved)


@router.post("/taxonomy/normalize", response_model=TaxonomyNormalizeResponse)
def normalize_taxonomy(
    body: TaxonomyNormalizeRequest,
    stores: BenchmarkStores = Depends(get_benchmark_stores),
    normalizer: TaxonomyNormalizer = Depends(_get_normalizer),
) -> TaxonomyNormalizeResponse:
    """
    Resolve raw taxonomy values against the current mapping table.
    """

    try:
        table = stores.mappings.get_mapping_table(body.kind)
        resolutions = [
            (value, normalizer.resolve(value, body.kind, body.survey_source, table)) for value in body.values
        ]
    except BenchmarkError as exc:
        _raise_http(exc)

    return TaxonomyNormalizeResponse(
        kind=body.kind,
        survey_source=body.survey_source,
        results=[
            TaxonomyResolutionResponse(
                raw_value=value,
                standardized_name=resolution.value,
                method=resolution.method,
                confirmed=resolution.is_confirmed,
            )
            for value, resolution in resolutions
        ],
    )


@router.post("/taxonomy/learn", response_model=TaxonomyMappingResponse)
def learn_taxonomy(
    body: TaxonomyLearnRequest,
    stores: BenchmarkStores = Depends(get_benchmark_stores),
) -> TaxonomyMappingResponse:
    """
    Record a reviewer-confirmed mapping; conflicting pairs return 409.
    """

    try:
        mapping = learn_mapping(
            stores.mappings,
            kind=body.kind,
            survey_source=body.survey_source,
            raw_value=body.raw_value,
            standardized_name=body.standardized_name,
        )
        stores.commit()
    except BenchmarkError as exc:
        stores.rollback()
        _raise_http(exc)

    return TaxonomyMappingResponse(
        kind=mapping.entity_kind,
        standardized_name=mapping.standardized_name,
        source_entries=[
            {"survey_source": entry.survey_source, "raw_value": entry.raw_value}
            for entry in mapping.source_entries
        ],
    )


# ---------------------------------------------------------------------------
# Discovery & aggregation
# ---------------------------------------------------------------------------


@router.get("/surveys/{survey_id}/variables", response_model=VariableListResponse)
def list_variables(
    survey_id: str,
    stores: BenchmarkStores = Depends(get_benchmark_stores),
) -> VariableListResponse:
    """
    Distinct variables in a survey, served from the variable index when fresh.
    """

    try:
        variables = get_variable_discovery_service().discover_variables(
            survey_id,
            stores.rows,
            cache=stores.variable_index,
        )
        stores.commit()
    except BenchmarkError as exc:
        _raise_http(exc)

    return VariableListResponse(survey_id=survey_id, variables=sorted(variables))


def _discover_variables_job(survey_id: str, *, cancel_token: CancellationToken) -> list[str]:
    with open_benchmark_stores() as stores:
        variables = get_variable_discovery_service().discover_variables(
            survey_id,
            stores.rows,
            cache=stores.variable_index,
            cancel_token=cancel_token,
        )
        stores.commit()
    return sorted(variables)


@router.post(
    "/surveys/{survey_id}/variables/refresh",
    response_model=JobStatusResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
def refresh_variables(
    survey_id: str,
    runner: BenchmarkJobRunner = Depends(get_job_runner),
) -> JobStatusResponse:
    """
    Run variable discovery as a background job.
    """

    handle = runner.submit(_discover_variables_job, survey_id, name="discover_variables")
    return JobStatusResponse(job_id=handle.job_id, name=handle.name, status=handle.status)


@router.get("/jobs/{job_id}", response_model=JobStatusResponse)
def get_job_status(
    job_id: str,
    runner: BenchmarkJobRunner = Depends(get_job_runner),
) -> JobStatusResponse:
    handle = runner.get(job_id)
    if handle is None:
        _raise_http(NotFoundError(resource="job", identifier=job_id))

    result: Any = None
    error: str | None = None
    if handle.done():
        outcome = handle.outcome(timeout=0)
        result = outcome.result
        error = str(outcome.error) if outcome.error is not None else None
    return JobStatusResponse(
        job_id=handle.job_id,
        name=handle.name,
        status=handle.status,
        result=result,
        error=error,
    )


@router.delete("/jobs/{job_id}", response_model=JobStatusResponse)
def cancel_job(
    job_id: str,
    runner: BenchmarkJobRunner = Depends(get_job_runner),
) -> JobStatusResponse:
    handle = runner.get(job_id)
    if handle is None:
        _raise_http(NotFoundError(resource="job", identifier=job_id))
    handle.cancel()
    return JobStatusResponse(job_id=handle.job_id, name=handle.name, status=handle.status)


def _aggregate_response(
    survey_id: str,
    body: AggregateRequest,
    groups: list[AggregatedGroup],
    aggregation_service: PercentileAggregationService,
) -> AggregateResponse:
    summary = None
    if body.include_summary:
        summary = [
            SummaryRowResponse(
                variable=row.variable,
                group_count=row.group_count,
                n_incumbents=row.n_incumbents,
                n_orgs=row.n_orgs,
                simple=PercentilePayload(**row.simple.as_dict()),
                weighted=PercentilePayload(**row.weighted.as_dict()),
            )
            for row in aggregation_service.summarize(groups)
        ]

    return AggregateResponse(
        survey_id=survey_id,
        group_key=list(body.group_key),
        groups=[_to_payload(group) for group in groups],
        summary=summary,
    )


@router.post("/surveys/{survey_id}/aggregate", response_model=AggregateResponse)
def aggregate_survey(
    survey_id: str,
    body: AggregateRequest,
    stores: BenchmarkStores = Depends(get_benchmark_stores),
    aggregation_service: PercentileAggregationService = Depends(get_aggregation_service),
) -> AggregateResponse:
    """
    Group a survey's rows and compute percentiles and counts per group.
    """

    try:
        if not stores.rows.has_survey(survey_id):
            raise NotFoundError(resource="survey", identifier=survey_id)
        groups = aggregation_service.aggregate_batches(
            stores.rows.iter_row_batches(survey_id, get_benchmark_settings().aggregation_batch_size),
            body.group_key,
            body.compute_percentiles,
        )
    except BenchmarkError as exc:
        _raise_http(exc)

    return _aggregate_response(survey_id, body, groups, aggregation_service)


def _aggregate_survey_job(
    survey_id: str,
    body: AggregateRequest,
    *,
    cancel_token: CancellationToken,
) -> dict[str, Any]:
    aggregation_service = get_aggregation_service()
    with open_benchmark_stores() as stores:
        if not stores.rows.has_survey(survey_id):
            raise NotFoundError(resource="survey", identifier=survey_id)
        groups = aggregation_service.aggregate_batches(
            stores.rows.iter_row_batches(survey_id, get_benchmark_settings().aggregation_batch_size),
            body.group_key,
            body.compute_percentiles,
            cancel_token=cancel_token,
        )
    return _aggregate_response(survey_id, body, groups, aggregation_service).model_dump(mode="json")


@router.post(
    "/surveys/{survey_id}/aggregate/jobs",
    response_model=JobStatusResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
def submit_aggregation_job(
    survey_id: str,
    body: AggregateRequest,
    stores: BenchmarkStores = Depends(get_benchmark_stores),
    runner: BenchmarkJobRunner = Depends(get_job_runner),
) -> JobStatusResponse:
    """
    Run aggregation as a background job; poll ``/jobs/{job_id}`` for the result.
    """

    try:
        if not stores.rows.has_survey(survey_id):
            raise NotFoundError(resource="survey", identifier=survey_id)
        PercentileAggregationService.validate_group_key(body.group_key)
    except BenchmarkError as exc:
        _raise_http(exc)

    handle = runner.submit(_aggregate_survey_job, survey_id, body, name="aggregate_survey")
    logger.info("Aggregation job submitted job_id=%s survey_id=%s", handle.job_id, survey_id)
    return JobStatusResponse(job_id=handle.job_id, name=handle.name, status=handle.status)


# ---------------------------------------------------------------------------
# Blending & coverage
# ---------------------------------------------------------------------------


@router.post("/blend", response_model=BlendResponse)
def blend_groups(
    body: BlendRequest,
    blending_service: BlendingService = Depends(get_blending_service),
) -> BlendResponse:
    """
    Blend aggregated groups into one distribution per variable.
    """

    weights = None
    if body.weights is not None:
        weights = [
            BlendWeight(specialty=item.specialty, weight=item.weight, records=item.records)
            for item in body.weights
        ]

    try:
        result = blending_service.blend(
            [_to_group(group) for group in body.groups],
            body.policy,
            weights,
            component_key=body.component_key,
            include_confidence=body.include_confidence,
        )
    except BenchmarkError as exc:
        _raise_http(exc)

    return BlendResponse(
        policy=result.policy,
        component_key=list(result.component_key),
        components=list(result.components),
        metrics=[
            BlendedMetricResponse(
                variable=metric.variable,
                percentiles=PercentilePayload(**metric.percentiles.as_dict()),
                iqr=DerivedMetricResponse(
                    name=metric.iqr.name,
                    value=metric.iqr.value,
                    error=metric.iqr.error,
                ),
                n_incumbents=metric.n_incumbents,
                n_orgs=metric.n_orgs,
                components=[
                    ComponentShareResponse(
                        label=share.label,
                        weight=share.weight,
                        n_incumbents=share.n_incumbents,
                        n_orgs=share.n_orgs,
                    )
                    for share in metric.components
                ],
            )
            for metric in result.metrics.values()
        ],
        effective_rate={
            percentile: DerivedMetricResponse(name=metric.name, value=metric.value, error=metric.error)
            for percentile, metric in result.effective_rate.items()
        },
        total_incumbents=result.total_incumbents,
        confidence=result.confidence,
        warnings=list(result.warnings),
    )


@router.post("/coverage", response_model=CoverageResponse)
def analyze_coverage(
    body: CoverageRequest,
    stores: BenchmarkStores = Depends(get_benchmark_stores),
    normalizer: TaxonomyNormalizer = Depends(_get_normalizer),
) -> CoverageResponse:
    """
    Mapped/unmapped counts for raw values, per entity kind.
    """

    analyzer = MappingCoverageAnalyzer(normalizer=normalizer)
    try:
        results = [
            analyzer.analyze_coverage(
                values,
                kind,
                body.survey_source,
                stores.mappings.get_mapping_table(kind),
            )
            for kind, values in body.values.items()
        ]
    except BenchmarkError as exc:
        _raise_http(exc)

    mapped = sum(result.mapped for result in results)
    total = mapped + sum(result.unmapped for result in results)
    return CoverageResponse(
        survey_source=body.survey_source,
        results=_coverage_responses(results),
        overall_coverage=mapped / total if total else 0.0,
    )


# ---------------------------------------------------------------------------
# Upload
# ---------------------------------------------------------------------------


@router.post("/surveys/upload-csv", response_model=SurveyIngestionSummaryResponse)
def upload_survey_csv(
    file: UploadFile = Depends(get_csv_upload),
    survey_source: str = Query(..., min_length=1, description="Survey vendor name"),
    survey_name: str | None = Query(default=None),
    survey_id: str | None = Query(default=None),
    year: int | None = Query(default=None, ge=1900, le=2100),
    stores: BenchmarkStores = Depends(get_benchmark_stores),
    ingestion_service: SurveyIngestionService = Depends(get_survey_ingestion_service),
) -> SurveyIngestionSummaryResponse:
    """
    Ingest one survey CSV into normalized rows.
    """

    try:
        summary = ingestion_service.ingest_csv(
            stream=file.file,
            survey_source=survey_source,
            row_store=stores.rows,
            mapping_store=stores.mappings,
            survey_name=survey_name,
            survey_id=survey_id,
            year=year,
            commit=stores.commit,
            rollback=stores.rollback,
        )
    except SurveyPersistenceError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Unable to persist valid survey rows.",
        ) from exc
    except BenchmarkError as exc:
        stores.rollback()
        _raise_http(exc)
    finally:
        file.file.close()

    return SurveyIngestionSummaryResponse(
        survey_id=summary.survey_id,
        rows_processed=summary.rows_processed,
        rows_failed=summary.rows_failed,
        content_hash=summary.content_hash,
        column_mappings=[
            ColumnMappingResponse(
                raw_header=mapping.raw_header,
                canonical_field=mapping.canonical_field,
                required=mapping.required,
                auto_matched=mapping.auto_matched,
                strategy=mapping.strategy,
            )
            for mapping in summary.column_mappings
        ],
        coverage=_coverage_responses(summary.coverage),
        validation_errors=[
            SurveyValidationErrorResponse(
                row_number=error.row_number,
                column=error.column,
                message=error.message,
                value=error.value,
            )
            for error in summary.validation_errors
        ],
    )
