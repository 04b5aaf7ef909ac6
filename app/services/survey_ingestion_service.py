"""
app/services/survey_ingestion_service.py

Service layer for survey CSV ingestion.

Pipeline for one upload:

    1. Stream the CSV (UTF-8, comma-delimited) and read the header row.
    2. Detect wide ``<variable>_p25..p90`` column groups.
    3. Resolve headers against the long or wide schema, using the saved
       column template for the survey source when one exists. An unresolved
       required field stops the upload with IncompleteMappingError.
    4. Normalize each row (taxonomy values against one mapping-table
       snapshot), skip invalid rows and persist valid ones in batches.
    5. Report coverage of the observed taxonomy values and save the
       confirmed header mapping as the source's template.
"""

from __future__ import annotations

import csv
import io
import logging
import uuid
from functools import lru_cache
from typing import BinaryIO, Callable

from sqlalchemy.exc import SQLAlchemyError

from app.config import get_benchmark_settings, get_survey_ingestion_settings
from app.domain.survey import EntityKind, IngestionSummary, NormalizedRow, RowValidationError
from app.errors import BenchmarkError, ValidationError
from app.mappers.column_resolver import (
    LONG_FORMAT_SCHEMA,
    STRATEGY_TEMPLATE,
    WIDE_FORMAT_SCHEMA,
    ColumnMappingResolver,
)
from app.mappers.row_normalizer import (
    ObservedValues,
    SurveyRowNormalizer,
    detect_wide_columns,
    expand_wide_row,
)
from app.mappers.taxonomy_normalizer import TaxonomyNormalizer
from app.repositories.base import MappingStore, RowStore
from app.services.coverage_service import MappingCoverageAnalyzer
from app.services.job_runner import CancellationToken, check_cancelled
from app.validators.row_validator import SurveyRowValidator

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class SurveyPersistenceError(BenchmarkError):
    """
    Raised when valid rows cannot be persisted.
    """


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class SurveyIngestionService:
    """
    Coordinates CSV parsing, column mapping, normalization and persistence.
    """

    def __init__(
        self,
        *,
        batch_size: int,
        max_validation_errors: int,
        log_validation_errors: bool,
        save_column_templates: bool = True,
        resolver: ColumnMappingResolver | None = None,
        normalizer: TaxonomyNormalizer | None = None,
        validator: SurveyRowValidator | None = None,
        coverage_analyzer: MappingCoverageAnalyzer | None = None,
    ) -> None:
        self._batch_size = max(1, batch_size)
        self._max_validation_errors = max(1, max_validation_errors)
        self._log_validation_errors = log_validation_errors
        self._save_column_templates = save_column_templates
        self._resolver = resolver or ColumnMappingResolver()
        self._normalizer = normalizer or TaxonomyNormalizer()
        self._validator = validator or SurveyRowValidator()
        self._coverage = coverage_analyzer or MappingCoverageAnalyzer(normalizer=self._normalizer)

    def ingest_csv(
        self,
        *,
        stream: BinaryIO,
        survey_source: str,
        row_store: RowStore,
        mapping_store: MappingStore,
        survey_name: str | None = None,
        survey_id: str | None = None,
        year: int | None = None,
        commit: Callable[[], None] | None = None,
        rollback: Callable[[], None] | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> IngestionSummary:
        """
        Stream one survey file, skip invalid rows, and persist valid rows in batches.

        Args:
            stream:         Binary file object positioned anywhere; it is rewound.
            survey_source:  Declared vendor name; scopes templates and taxonomy lookups.
            row_store:      Destination for normalized rows.
            mapping_store:  Source of taxonomy tables and column templates.
            survey_name:    Display name; defaults to the source and year.
            survey_id:      Explicit identifier; a new one is generated when omitted.
            year:           Default survey year for rows without a year column.
            commit:         Called after each persisted batch (e.g. ``Session.commit``).
            rollback:       Called when persisting a batch fails.
            cancel_token:   Checked once per batch when run as a background job.
        """

        source = (survey_source or "").strip()
        if not source:
            raise ValidationError("survey_source is required.", code="missing_survey_source")

        resolved_id = survey_id or uuid.uuid4().hex
        stream.seek(0)
        text_stream: io.TextIOWrapper | None = None

        rows_processed = 0
        rows_failed = 0
        captured_errors: list[RowValidationError] = []
        batch: list[NormalizedRow] = []
        observed = ObservedValues()

        try:
            text_stream = io.TextIOWrapper(stream, encoding="utf-8-sig", newline="")
            reader = csv.DictReader(text_stream)
            headers = [header for header in (reader.fieldnames or []) if header is not None]
            if not headers:
                raise ValidationError("CSV header row is missing.", code="missing_header")

            wide_columns = detect_wide_columns(headers)
            wide_headers = {header for columns in wide_columns.values() for header in columns.values()}
            schema = WIDE_FORMAT_SCHEMA if wide_columns else LONG_FORMAT_SCHEMA
            candidate_headers = [header for header in headers if header not in wide_headers]

            template = mapping_store.get_column_template(source)
            resolution = self._resolver.resolve_columns(candidate_headers, schema, template)
            self._resolver.require_complete(resolution, schema)

            tables = {kind: mapping_store.get_mapping_table(kind) for kind in EntityKind.ALL}
            row_normalizer = SurveyRowNormalizer(normalizer=self._normalizer, tables=tables)

            row_store.register_survey(
                survey_id=resolved_id,
                name=survey_name or " ".join(item for item in (source, str(year or "")) if item),
                survey_source=source,
                year=year,
            )

            for row_number, raw_row in enumerate(reader, start=2):
                if self._validator.is_completely_empty_row(raw_row):
                    rows_failed += 1
                    self._record_error(
                        captured_errors,
                        RowValidationError(
                            row_number=row_number,
                            column=None,
                            message="Completely empty rows are not allowed.",
                            value=None,
                        ),
                    )
                    continue

                mapped_row = self._resolver.map_row(raw_row=raw_row, resolution=resolution)
                if wide_columns:
                    long_rows = list(expand_wide_row(mapped_row, raw_row, wide_columns))
                else:
                    long_rows = [mapped_row]

                for long_row in long_rows:
                    normalized, row_errors = self._normalize(
                        long_row,
                        raw_row=raw_row,
                        row_number=row_number,
                        survey_source=source,
                        year=year,
                        row_normalizer=row_normalizer,
                        observed=observed,
                        skip_suppressed=bool(wide_columns),
                    )
                    if row_errors:
                        rows_failed += 1
                        for error in row_errors:
                            self._record_error(captured_errors, error)
                        continue
                    if normalized is None:
                        continue

                    batch.append(normalized)
                    if len(batch) >= self._batch_size:
                        check_cancelled(cancel_token)
                        rows_processed += self._persist_batch(
                            row_store=row_store,
                            survey_id=resolved_id,
                            batch=batch,
                            commit=commit,
                            rollback=rollback,
                        )
                        batch.clear()

            check_cancelled(cancel_token)
            if batch:
                rows_processed += self._persist_batch(
                    row_store=row_store,
                    survey_id=resolved_id,
                    batch=batch,
                    commit=commit,
                    rollback=rollback,
                )

        except UnicodeDecodeError as exc:
            raise ValidationError("CSV must be UTF-8 encoded.", code="invalid_encoding") from exc
        except csv.Error as exc:
            raise ValidationError(f"Invalid CSV format: {exc}", code="invalid_csv") from exc
        finally:
            if text_stream is not None:
                try:
                    text_stream.detach()
                except ValueError:
                    pass

        content_hash = row_store.content_hash(resolved_id)
        coverage = self._coverage.analyze_survey(observed.by_kind, source, tables)

        if self._save_column_templates and any(
            mapping.strategy != STRATEGY_TEMPLATE for mapping in resolution.mappings
        ):
            mapping_store.save_column_template(self._resolver.build_template(resolution, source))
            if commit is not None:
                commit()

        logger.info(
            "Survey ingested survey_id=%s source=%r processed=%d failed=%d coverage=%.2f",
            resolved_id,
            source,
            rows_processed,
            rows_failed,
            coverage.overall_coverage,
        )
        return IngestionSummary(
            survey_id=resolved_id,
            rows_processed=rows_processed,
            rows_failed=rows_failed,
            content_hash=content_hash,
            column_mappings=list(resolution.mappings),
            coverage=list(coverage.results),
            validation_errors=captured_errors,
        )

    # ------------------------------------------------------------------
    # Ingestion internals
    # ------------------------------------------------------------------

    def _normalize(
        self,
        mapped_row: dict[str, str | None],
        *,
        raw_row: dict[str, str | None],
        row_number: int,
        survey_source: str,
        year: int | None,
        row_normalizer: SurveyRowNormalizer,
        observed: ObservedValues,
        skip_suppressed: bool,
    ) -> tuple[NormalizedRow | None, list[RowValidationError]]:
        parsed, errors = self._validator.validate_mapped_row(
            mapped_row=mapped_row,
            row_number=row_number,
            survey_source=survey_source,
            default_year=year,
        )
        if errors:
            # Wide files leave most metric groups suppressed for small specialties.
            if skip_suppressed and all(error.column == "p50" for error in errors):
                return None, []
            return None, errors
        if parsed is None:
            return None, [
                RowValidationError(
                    row_number=row_number,
                    column=None,
                    message="Row could not be parsed into canonical shape.",
                    value=None,
                )
            ]
        if skip_suppressed and not parsed.get("p50") and parsed.get("value") is None:
            return None, []

        try:
            normalized = row_normalizer.to_normalized_row(
                parsed,
                survey_source=survey_source,
                raw_row=raw_row,
                observed=observed,
            )
        except ValidationError as exc:
            return None, [RowValidationError(row_number=row_number, column=None, message=exc.message)]
        return normalized, []

    def _persist_batch(
        self,
        *,
        row_store: RowStore,
        survey_id: str,
        batch: list[NormalizedRow],
        commit: Callable[[], None] | None,
        rollback: Callable[[], None] | None,
    ) -> int:
        if not batch:
            return 0
        try:
            inserted = row_store.append_rows(survey_id, list(batch))
            if commit is not None:
                commit()
            return inserted
        except SQLAlchemyError as exc:
            if rollback is not None:
                rollback()
            raise SurveyPersistenceError("Failed to persist valid survey rows.") from exc

    def _record_error(
        self,
        captured_errors: list[RowValidationError],
        error: RowValidationError,
    ) -> None:
        if self._log_validation_errors:
            logger.warning(
                "Survey validation error row=%s column=%s message=%s value=%r",
                error.row_number,
                error.column,
                error.message,
                error.value,
            )

        if len(captured_errors) < self._max_validation_errors:
            captured_errors.append(error)


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


@lru_cache(maxsize=1)
def get_survey_ingestion_service() -> SurveyIngestionService:
    """
    Build and cache the ingestion service with env-driven settings.
    """

    settings = get_survey_ingestion_settings()
    benchmark = get_benchmark_settings()
    return SurveyIngestionService(
        batch_size=settings.batch_size,
        max_validation_errors=settings.max_validation_errors,
        log_validation_errors=settings.log_validation_errors,
        save_column_templates=settings.save_column_templates,
        normalizer=TaxonomyNormalizer(specialty_threshold=benchmark.specialty_fuzzy_threshold),
    )
