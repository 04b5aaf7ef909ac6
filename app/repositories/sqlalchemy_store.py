"""
app/repositories/sqlalchemy_store.py

SQLAlchemy-backed implementations of the storage contracts.

Stores flush but never commit; the caller owns the session lifecycle, as with
the other repositories in this package.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Iterator, Sequence

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from app.domain.survey import (
    ColumnTemplate,
    MappingTable,
    NormalizedRow,
    SourceEntry,
    TaxonomyMapping,
    VariableIndexEntry,
    normalize_lookup_key,
    validate_entity_kind,
)
from app.errors import NotFoundError
from app.mappers.taxonomy_normalizer import check_learnable
from app.repositories.base import combine_fingerprints, row_fingerprint
from db.models.column_template import ColumnTemplateRecord
from db.models.survey import NormalizedSurveyRow, Survey
from db.models.taxonomy_mapping import TaxonomyMappingRecord, TaxonomySourceEntryRecord
from db.models.variable_index import VariableIndexRecord

logger = logging.getLogger(__name__)

_ROW_COLUMNS = (
    NormalizedSurveyRow.specialty,
    NormalizedSurveyRow.provider_type,
    NormalizedSurveyRow.region,
    NormalizedSurveyRow.year,
    NormalizedSurveyRow.survey_source,
    NormalizedSurveyRow.variable,
    NormalizedSurveyRow.n_orgs,
    NormalizedSurveyRow.n_incumbents,
    NormalizedSurveyRow.p25,
    NormalizedSurveyRow.p50,
    NormalizedSurveyRow.p75,
    NormalizedSurveyRow.p90,
    NormalizedSurveyRow.organization_id,
    NormalizedSurveyRow.value,
    NormalizedSurveyRow.raw_json,
)

_FINGERPRINT_BATCH_SIZE = 5000


class SqlAlchemySurveyStore:
    """
    Row store over ``surveys`` and ``normalized_survey_rows``.
    """

    def __init__(self, session: Session) -> None:
        self._session = session

    def register_survey(
        self,
        *,
        survey_id: str,
        name: str,
        survey_source: str,
        year: int | None = None,
    ) -> None:
        if self._session.get(Survey, survey_id) is not None:
            return
        self._session.add(
            Survey(
                id=survey_id,
                name=name,
                survey_source=survey_source,
                year=year,
                row_count=0,
            )
        )
        self._session.flush()

    def has_survey(self, survey_id: str) -> bool:
        return self._session.get(Survey, survey_id) is not None

    def append_rows(self, survey_id: str, rows: Sequence[NormalizedRow]) -> int:
        survey = self._require(survey_id)
        if not rows:
            return 0
        self._session.add_all(
            NormalizedSurveyRow(
                survey_id=survey_id,
                specialty=row.specialty,
                provider_type=row.provider_type,
                region=row.region,
                year=row.year,
                survey_source=row.survey_source,
                variable=row.variable,
                n_orgs=row.n_orgs,
                n_incumbents=row.n_incumbents,
                p25=row.p25,
                p50=row.p50,
                p75=row.p75,
                p90=row.p90,
                organization_id=row.organization_id,
                value=row.value,
                fingerprint=row_fingerprint(row),
                raw_json=dict(row.raw) if row.raw else None,
            )
            for row in rows
        )
        survey.row_count = (survey.row_count or 0) + len(rows)
        survey.content_hash = None
        self._session.flush()
        return len(rows)

    def content_hash(self, survey_id: str) -> str:
        survey = self._require(survey_id)
        if survey.content_hash is not None:
            return survey.content_hash

        stmt = (
            select(NormalizedSurveyRow.fingerprint)
            .where(NormalizedSurveyRow.survey_id == survey_id)
            .order_by(NormalizedSurveyRow.fingerprint)
            .execution_options(yield_per=_FINGERPRINT_BATCH_SIZE)
        )
        survey.content_hash = combine_fingerprints(self._session.scalars(stmt))
        self._session.flush()
        return survey.content_hash

    def iter_row_batches(self, survey_id: str, batch_size: int) -> Iterator[list[NormalizedRow]]:
        self._require(survey_id)
        size = max(1, batch_size)
        stmt = (
            select(*_ROW_COLUMNS)
            .where(NormalizedSurveyRow.survey_id == survey_id)
            .order_by(NormalizedSurveyRow.id)
            .execution_options(yield_per=size)
        )
        result = self._session.execute(stmt)
        for partition in result.partitions(size):
            yield [self._to_domain(record) for record in partition]

    def _require(self, survey_id: str) -> Survey:
        survey = self._session.get(Survey, survey_id)
        if survey is None:
            raise NotFoundError(resource="survey", identifier=survey_id)
        return survey

    @staticmethod
    def _to_domain(record: object) -> NormalizedRow:
        return NormalizedRow(
            specialty=record.specialty,
            provider_type=record.provider_type,
            region=record.region,
            year=record.year,
            survey_source=record.survey_source,
            variable=record.variable,
            n_orgs=record.n_orgs,
            n_incumbents=record.n_incumbents,
            p25=record.p25,
            p50=record.p50,
            p75=record.p75,
            p90=record.p90,
            organization_id=record.organization_id,
            value=record.value,
            raw=dict(record.raw_json or {}),
        )


class SqlAlchemyMappingStore:
    """
    Mapping store over ``taxonomy_mappings`` / ``taxonomy_source_entries``
    and ``column_templates``.

    Each learn runs inside a savepoint. When a concurrent writer inserts the
    same key first, the unique constraint fails, the savepoint rolls back and
    the learn is re-checked against fresh state so the caller observes the
    same ConflictError the in-memory store would raise.
    """

    def __init__(self, session: Session) -> None:
        self._session = session

    def get_mapping_table(self, kind: str) -> MappingTable:
        validate_entity_kind(kind)
        stmt = (
            select(TaxonomyMappingRecord)
            .where(TaxonomyMappingRecord.entity_kind == kind)
            .options(selectinload(TaxonomyMappingRecord.source_entries))
            .order_by(TaxonomyMappingRecord.id)
        )
        records = self._session.execute(stmt).scalars().all()
        return MappingTable(kind, [self._to_domain(record) for record in records])

    def append_mapping_entry(
        self,
        kind: str,
        standardized_name: str,
        entry: SourceEntry,
    ) -> TaxonomyMapping:
        validate_entity_kind(kind)
        table = self.get_mapping_table(kind)
        target = check_learnable(
            table,
            survey_source=entry.survey_source,
            raw_value=entry.raw_value,
            standardized_name=standardized_name,
        )
        if target is not None and any(existing.key == entry.key for existing in target.source_entries):
            return target

        try:
            with self._session.begin_nested():
                record = self._find_record(kind, standardized_name)
                if record is None:
                    record = TaxonomyMappingRecord(
                        entity_kind=kind,
                        standardized_name=standardized_name,
                        standardized_key=normalize_lookup_key(standardized_name),
                    )
                    self._session.add(record)
                    self._session.flush()
                record.source_entries.append(
                    TaxonomySourceEntryRecord(
                        entity_kind=kind,
                        survey_source=entry.survey_source,
                        raw_value=entry.raw_value,
                        survey_source_key=normalize_lookup_key(entry.survey_source),
                        raw_value_key=normalize_lookup_key(entry.raw_value),
                    )
                )
                record.updated_at = datetime.now(timezone.utc)
                self._session.flush()
        except IntegrityError:
            logger.info(
                "Concurrent learn detected kind=%s source=%r raw=%r; re-checking",
                kind,
                entry.survey_source,
                entry.raw_value,
            )
            self._session.expire_all()
            fresh = self.get_mapping_table(kind)
            check_learnable(
                fresh,
                survey_source=entry.survey_source,
                raw_value=entry.raw_value,
                standardized_name=standardized_name,
            )
            mapping = fresh.get(standardized_name)
            if mapping is None:
                raise
            return mapping

        self._session.refresh(record)
        return self._to_domain(record)

    def get_column_template(self, survey_source: str) -> ColumnTemplate | None:
        record = self._find_template(survey_source)
        if record is None:
            return None
        return ColumnTemplate(
            survey_source=record.survey_source,
            field_mapping=dict(record.field_mapping_json),
            updated_at=record.updated_at,
        )

    def save_column_template(self, template: ColumnTemplate) -> ColumnTemplate:
        """
        Insert or update the template keyed by survey source.
        """

        record = self._find_template(template.survey_source)
        if record is None:
            record = ColumnTemplateRecord(
                survey_source=template.survey_source.strip(),
                survey_source_key=normalize_lookup_key(template.survey_source),
                field_mapping_json=dict(template.field_mapping),
            )
            self._session.add(record)
        else:
            record.survey_source = template.survey_source.strip()
            record.field_mapping_json = dict(template.field_mapping)
        self._session.flush()
        return ColumnTemplate(
            survey_source=record.survey_source,
            field_mapping=dict(record.field_mapping_json),
            updated_at=record.updated_at,
        )

    def _find_record(self, kind: str, standardized_name: str) -> TaxonomyMappingRecord | None:
        stmt = select(TaxonomyMappingRecord).where(
            TaxonomyMappingRecord.entity_kind == kind,
            TaxonomyMappingRecord.standardized_key == normalize_lookup_key(standardized_name),
        )
        return self._session.execute(stmt).scalars().first()

    def _find_template(self, survey_source: str) -> ColumnTemplateRecord | None:
        stmt = select(ColumnTemplateRecord).where(
            ColumnTemplateRecord.survey_source_key == normalize_lookup_key(survey_source)
        )
        return self._session.execute(stmt).scalars().first()

    @staticmethod
    def _to_domain(record: TaxonomyMappingRecord) -> TaxonomyMapping:
        return TaxonomyMapping(
            entity_kind=record.entity_kind,
            standardized_name=record.standardized_name,
            source_entries=tuple(
                SourceEntry(survey_source=item.survey_source, raw_value=item.raw_value)
                for item in record.source_entries
            ),
            updated_at=record.updated_at or datetime.now(timezone.utc),
        )


class SqlAlchemyVariableIndexCache:
    """
    Variable index cache persisted in ``variable_index`` (one row per survey).
    """

    def __init__(self, session: Session) -> None:
        self._session = session

    def get(self, survey_id: str, content_hash: str) -> VariableIndexEntry | None:
        record = self._session.get(VariableIndexRecord, survey_id)
        if record is None or record.content_hash != content_hash:
            return None
        return VariableIndexEntry(
            survey_id=record.survey_id,
            variables=frozenset(record.variables_json),
            content_hash=record.content_hash,
            scanned_at=record.scanned_at,
        )

    def put(self, entry: VariableIndexEntry) -> None:
        record = self._session.get(VariableIndexRecord, entry.survey_id)
        if record is None:
            record = VariableIndexRecord(survey_id=entry.survey_id)
            self._session.add(record)
        record.content_hash = entry.content_hash
        record.variables_json = sorted(entry.variables)
        record.scanned_at = entry.scanned_at
        self._session.flush()
