"""
app/services/coverage_service.py

Mapping coverage reporting for the human review step.

A distinct raw value counts as mapped only when the taxonomy normalizer
resolves it from a confirmed table entry or because it already is a
standardized name. Heuristic and title-case fallbacks are reported as
unmapped, so coverage measures confidence rather than "produced a string".
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Mapping

from app.domain.survey import CoverageResult, EntityKind, MappingTable, validate_entity_kind
from app.mappers.taxonomy_normalizer import TaxonomyNormalizer

logger = logging.getLogger(__name__)


def coverage_ratio(mapped: int, unmapped: int) -> float:
    """
    ``mapped / (mapped + unmapped)``, or 0.0 when both are 0.
    """

    total = mapped + unmapped
    if total <= 0:
        return 0.0
    return mapped / total


@dataclass(frozen=True)
class CoverageReport:
    """
    Coverage per entity kind plus the pooled figure across kinds.
    """

    survey_source: str
    results: tuple[CoverageResult, ...]

    @property
    def mapped(self) -> int:
        return sum(result.mapped for result in self.results)

    @property
    def unmapped(self) -> int:
        return sum(result.unmapped for result in self.results)

    @property
    def overall_coverage(self) -> float:
        return coverage_ratio(self.mapped, self.unmapped)

    def for_kind(self, kind: str) -> CoverageResult | None:
        return next((result for result in self.results if result.category == kind), None)


class MappingCoverageAnalyzer:
    """
    Pure coverage computation over observed raw values and mapping tables.
    """

    def __init__(self, *, normalizer: TaxonomyNormalizer | None = None) -> None:
        self._normalizer = normalizer or TaxonomyNormalizer()

    def analyze_coverage(
        self,
        raw_values: Iterable[str | None],
        kind: str,
        survey_source: str,
        table: MappingTable | None = None,
    ) -> CoverageResult:
        """
        Coverage for one entity kind.

        Blank values are ignored and duplicates (after trimming) count once.
        """

        validate_entity_kind(kind)
        distinct = sorted({value.strip() for value in raw_values if value and value.strip()})

        mapped = 0
        unmapped_values: list[str] = []
        for value in distinct:
            resolution = self._normalizer.resolve(value, kind, survey_source, table)
            if resolution.is_confirmed:
                mapped += 1
            else:
                unmapped_values.append(value)

        result = CoverageResult(
            category=kind,
            mapped=mapped,
            unmapped=len(unmapped_values),
            coverage=coverage_ratio(mapped, len(unmapped_values)),
            unmapped_values=tuple(unmapped_values),
        )
        logger.debug(
            "Coverage kind=%s source=%r mapped=%d unmapped=%d",
            kind,
            survey_source,
            result.mapped,
            result.unmapped,
        )
        return result

    def analyze_survey(
        self,
        values_by_kind: Mapping[str, Iterable[str | None]],
        survey_source: str,
        tables: Mapping[str, MappingTable],
    ) -> CoverageReport:
        """
        Coverage for every entity kind, in canonical kind order.

        Kinds absent from ``values_by_kind`` report zero coverage.
        """

        results = tuple(
            self.analyze_coverage(
                values_by_kind.get(kind, ()),
                kind,
                survey_source,
                tables.get(kind),
            )
            for kind in EntityKind.ALL
        )
        return CoverageReport(survey_source=survey_source, results=results)
