"""
app/repositories/memory_store.py

Thread-safe in-process implementations of the storage contracts.

Used by tests and by local runs that do not configure a database. Each
store instance owns its state; nothing is shared at module level.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterator, Sequence

from app.domain.survey import (
    ColumnTemplate,
    EntityKind,
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


@dataclass
class _SurveyState:
    name: str
    survey_source: str
    year: int | None
    rows: list[NormalizedRow] = field(default_factory=list)
    fingerprints: list[str] = field(default_factory=list)
    content_hash: str | None = None


class InMemorySurveyStore:
    """
    Row store backed by per-survey lists.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._surveys: dict[str, _SurveyState] = {}

    def register_survey(
        self,
        *,
        survey_id: str,
        name: str,
        survey_source: str,
        year: int | None = None,
    ) -> None:
        with self._lock:
            if survey_id not in self._surveys:
                self._surveys[survey_id] = _SurveyState(
                    name=name,
                    survey_source=survey_source,
                    year=year,
                )

    def has_survey(self, survey_id: str) -> bool:
        with self._lock:
            return survey_id in self._surveys

    def append_rows(self, survey_id: str, rows: Sequence[NormalizedRow]) -> int:
        with self._lock:
            state = self._require(survey_id)
            state.rows.extend(rows)
            state.fingerprints.extend(row_fingerprint(row) for row in rows)
            state.content_hash = None
            return len(rows)

    def content_hash(self, survey_id: str) -> str:
        with self._lock:
            state = self._require(survey_id)
            if state.content_hash is None:
                state.content_hash = combine_fingerprints(sorted(state.fingerprints))
            return state.content_hash

    def iter_row_batches(self, survey_id: str, batch_size: int) -> Iterator[list[NormalizedRow]]:
        with self._lock:
            rows = self._require(survey_id).rows
            total = len(rows)
        size = max(1, batch_size)
        for start in range(0, total, size):
            with self._lock:
                batch = rows[start:start + size]
            yield batch

    def _require(self, survey_id: str) -> _SurveyState:
        state = self._surveys.get(survey_id)
        if state is None:
            raise NotFoundError(resource="survey", identifier=survey_id)
        return state


class InMemoryMappingStore:
    """
    Mapping store holding one ordered list of TaxonomyMapping per entity kind.

    ``append_mapping_entry`` checks and writes under one lock, so concurrent
    learns of the same key are serialized and the second writer sees the
    first writer's entry.
    """

    def __init__(self, mappings: Sequence[TaxonomyMapping] = ()) -> None:
        self._lock = threading.Lock()
        self._mappings: dict[str, list[TaxonomyMapping]] = {kind: [] for kind in EntityKind.ALL}
        self._templates: dict[str, ColumnTemplate] = {}
        for mapping in mappings:
            self._mappings[validate_entity_kind(mapping.entity_kind)].append(mapping)
        for kind in EntityKind.ALL:
            MappingTable(kind, self._mappings[kind])

    def get_mapping_table(self, kind: str) -> MappingTable:
        validate_entity_kind(kind)
        with self._lock:
            return MappingTable(kind, tuple(self._mappings[kind]))

    def append_mapping_entry(
        self,
        kind: str,
        standardized_name: str,
        entry: SourceEntry,
    ) -> TaxonomyMapping:
        validate_entity_kind(kind)
        with self._lock:
            mappings = self._mappings[kind]
            table = MappingTable(kind, tuple(mappings))
            target = check_learnable(
                table,
                survey_source=entry.survey_source,
                raw_value=entry.raw_value,
                standardized_name=standardized_name,
            )
            if target is None:
                created = TaxonomyMapping(
                    entity_kind=kind,
                    standardized_name=standardized_name,
                    source_entries=(entry,),
                )
                mappings.append(created)
                return created

            if any(existing.key == entry.key for existing in target.source_entries):
                return target

            updated = target.with_entry(entry)
            index = next(
                position
                for position, mapping in enumerate(mappings)
                if normalize_lookup_key(mapping.standardized_name)
                == normalize_lookup_key(target.standardized_name)
            )
            mappings[index] = updated
            return updated

    def get_column_template(self, survey_source: str) -> ColumnTemplate | None:
        with self._lock:
            return self._templates.get(normalize_lookup_key(survey_source))

    def save_column_template(self, template: ColumnTemplate) -> ColumnTemplate:
        saved = ColumnTemplate(
            survey_source=template.survey_source,
            field_mapping=dict(template.field_mapping),
            updated_at=datetime.now(timezone.utc),
        )
        with self._lock:
            self._templates[normalize_lookup_key(template.survey_source)] = saved
        return saved


class InMemoryVariableIndexCache:
    """
    One cached entry per survey; storing a new hash discards the old entry.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict[str, VariableIndexEntry] = {}

    def get(self, survey_id: str, content_hash: str) -> VariableIndexEntry | None:
        with self._lock:
            entry = self._entries.get(survey_id)
        if entry is None or entry.content_hash != content_hash:
            return None
        return entry

    def put(self, entry: VariableIndexEntry) -> None:
        with self._lock:
            self._entries[entry.survey_id] = entry

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
