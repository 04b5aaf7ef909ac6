"""
app/mappers/row_normalizer.py

Converts mapped survey rows into NormalizedRow values.

Long-format files carry one row per (specialty, variable) with explicit
percentile columns. Wide-format files carry one row per specialty and one
``<variable>_p25 .. <variable>_p90`` column group per metric; each group is
expanded into its own long row before validation.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Iterator, Mapping, Sequence

from app.domain.survey import EntityKind, MappingTable, NormalizedRow
from app.mappers.taxonomy_normalizer import TaxonomyNormalizer

logger = logging.getLogger(__name__)

WIDE_COLUMN_RE = re.compile(r"^(?P<base>.+)_p(?P<pct>25|50|75|90)$", re.IGNORECASE)

TAXONOMY_FIELDS: tuple[tuple[str, str], ...] = (
    ("specialty", EntityKind.SPECIALTY),
    ("provider_type", EntityKind.PROVIDER_TYPE),
    ("region", EntityKind.REGION),
    ("variable", EntityKind.VARIABLE),
)


def detect_wide_columns(headers: Sequence[str]) -> dict[str, dict[str, str]]:
    """
    Find ``<base>_p25|p50|p75|p90`` column groups.

    Returns ``{base: {"p25": header, ...}}`` in first-appearance order. Only
    groups that include a p50 column are kept.
    """

    groups: dict[str, dict[str, str]] = {}
    for header in headers:
        match = WIDE_COLUMN_RE.match(header.strip())
        if match is None:
            continue
        groups.setdefault(match.group("base"), {})[f"p{match.group('pct')}"] = header
    return {base: columns for base, columns in groups.items() if "p50" in columns}


def expand_wide_row(
    mapped_row: Mapping[str, str | None],
    raw_row: Mapping[str, str | None],
    wide_columns: Mapping[str, Mapping[str, str]],
) -> Iterator[dict[str, str | None]]:
    """
    Yield one long-format mapped row per wide column group.
    """

    for base, columns in wide_columns.items():
        long_row = dict(mapped_row)
        long_row["variable"] = base
        for percentile, header in columns.items():
            long_row[percentile] = raw_row.get(header)
        yield long_row


@dataclass
class ObservedValues:
    """
    Distinct raw taxonomy values seen during one ingestion run.
    """

    by_kind: dict[str, set[str]] = field(
        default_factory=lambda: {kind: set() for kind in EntityKind.ALL}
    )

    def add(self, kind: str, raw_value: str | None) -> None:
        if raw_value and raw_value.strip():
            self.by_kind[kind].add(raw_value.strip())

    def sorted_values(self, kind: str) -> list[str]:
        return sorted(self.by_kind[kind])


class SurveyRowNormalizer:
    """
    Applies taxonomy normalization to parsed survey rows.

    Parameters
    ----------
    normalizer:
        Taxonomy resolver shared across rows.
    tables:
        Mapping table snapshot per entity kind, taken once per run so every
        row in a file is normalized against the same state.
    """

    def __init__(
        self,
        *,
        normalizer: TaxonomyNormalizer,
        tables: Mapping[str, MappingTable],
    ) -> None:
        self._normalizer = normalizer
        self._tables = dict(tables)

    def to_normalized_row(
        self,
        parsed: Mapping[str, Any],
        *,
        survey_source: str,
        raw_row: Mapping[str, str | None],
        observed: ObservedValues | None = None,
    ) -> NormalizedRow:
        """
        Build a NormalizedRow from validator output.

        Missing provider type and region are normalized from an empty string
        and stay blank rather than defaulting to a guessed value.
        """

        canonical: dict[str, str] = {}
        for column, kind in TAXONOMY_FIELDS:
            raw_value = parsed.get(column)
            if observed is not None:
                observed.add(kind, raw_value)
            canonical[column] = self._normalizer.normalize_value(
                raw_value,
                kind,
                survey_source,
                self._tables.get(kind),
            )

        return NormalizedRow(
            specialty=canonical["specialty"],
            provider_type=canonical["provider_type"],
            region=canonical["region"],
            year=parsed.get("year"),
            survey_source=parsed.get("survey_source") or survey_source,
            variable=canonical["variable"],
            n_orgs=parsed.get("n_orgs"),
            n_incumbents=parsed.get("n_incumbents"),
            p25=parsed.get("p25"),
            p50=parsed.get("p50"),
            p75=parsed.get("p75"),
            p90=parsed.get("p90"),
            organization_id=parsed.get("organization_id"),
            value=parsed.get("value"),
            raw=dict(raw_row),
        )
