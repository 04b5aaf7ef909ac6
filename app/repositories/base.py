"""
app/repositories/base.py

Storage collaborator contracts for the benchmark engine.

The engine never owns persistence. Services receive one of these stores
through their constructor (or a call argument) and read or write only
through the methods below.
"""

from __future__ import annotations

import hashlib
import json
from typing import Iterable, Iterator, Protocol, Sequence

from app.domain.survey import (
    ColumnTemplate,
    MappingTable,
    NormalizedRow,
    SourceEntry,
    TaxonomyMapping,
    VariableIndexEntry,
)

FINGERPRINT_FIELDS: tuple[str, ...] = (
    "specialty",
    "provider_type",
    "region",
    "year",
    "survey_source",
    "variable",
    "n_orgs",
    "n_incumbents",
    "p25",
    "p50",
    "p75",
    "p90",
    "organization_id",
    "value",
)


class RowStore(Protocol):
    """
    Normalized survey rows, readable through a forward-only batched cursor.
    """

    def register_survey(
        self,
        *,
        survey_id: str,
        name: str,
        survey_source: str,
        year: int | None = None,
    ) -> None:
        ...

    def has_survey(self, survey_id: str) -> bool:
        ...

    def append_rows(self, survey_id: str, rows: Sequence[NormalizedRow]) -> int:
        ...

    def content_hash(self, survey_id: str) -> str:
        ...

    def iter_row_batches(self, survey_id: str, batch_size: int) -> Iterator[list[NormalizedRow]]:
        ...


class MappingStore(Protocol):
    """
    Confirmed taxonomy mappings and column templates.

    ``append_mapping_entry`` must be atomic per (entity kind, survey source,
    raw value) key and raise ConflictError when the key already resolves to
    another standardized name.
    """

    def get_mapping_table(self, kind: str) -> MappingTable:
        ...

    def append_mapping_entry(
        self,
        kind: str,
        standardized_name: str,
        entry: SourceEntry,
    ) -> TaxonomyMapping:
        ...

    def get_column_template(self, survey_source: str) -> ColumnTemplate | None:
        ...

    def save_column_template(self, template: ColumnTemplate) -> ColumnTemplate:
        ...


class VariableIndexCache(Protocol):
    """
    Discovered variable sets keyed by (survey_id, content_hash).
    """

    def get(self, survey_id: str, content_hash: str) -> VariableIndexEntry | None:
        ...

    def put(self, entry: VariableIndexEntry) -> None:
        ...


# ---------------------------------------------------------------------------
# Content fingerprints
# ---------------------------------------------------------------------------


def row_fingerprint(row: NormalizedRow) -> str:
    """
    Stable sha256 digest of a row's canonical fields.
    """

    payload = {name: getattr(row, name) for name in FINGERPRINT_FIELDS}
    encoded = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def combine_fingerprints(sorted_fingerprints: Iterable[str]) -> str:
    """
    Fold row fingerprints (already sorted) into one content hash.

    Sorting makes the hash a function of the row multiset, not of insertion
    order, so re-uploading identical data yields the same hash.
    """

    digest = hashlib.sha256()
    count = 0
    for fingerprint in sorted_fingerprints:
        digest.update(fingerprint.encode("ascii"))
        count += 1
    digest.update(f"#{count}".encode("ascii"))
    return digest.hexdigest()
