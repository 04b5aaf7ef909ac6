"""
app/mappers/column_resolver.py

Survey header to canonical field resolution.

Headers are claimed strongest rule first across the whole schema:

    template   - saved header for this survey source (not auto-matched)
    exact      - case-insensitive equality with the canonical name
    substring  - containment in either direction
    synonym    - ordered synonym list per canonical field

Within one rule, canonical fields are visited in declaration order and each
takes the first unclaimed header (in header order) that satisfies the rule.
A header is claimed at most once.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Mapping, Sequence

from app.domain.survey import ColumnMapping, ColumnTemplate, FieldSpec
from app.errors import ValidationError
from app.validators.mapping_validator import MappingValidator

logger = logging.getLogger(__name__)

STRATEGY_TEMPLATE = "template"
STRATEGY_EXACT = "exact"
STRATEGY_SUBSTRING = "substring"
STRATEGY_SYNONYM = "synonym"

MIN_SUBSTRING_LENGTH = 3

LONG_FORMAT_SCHEMA: tuple[FieldSpec, ...] = (
    FieldSpec("specialty", required=True),
    FieldSpec("provider_type", required=False),
    FieldSpec("region", required=False),
    FieldSpec("year", required=False),
    FieldSpec("survey_source", required=False),
    FieldSpec("variable", required=True),
    FieldSpec("n_orgs", required=False),
    FieldSpec("n_incumbents", required=False),
    FieldSpec("p25", required=False),
    FieldSpec("p50", required=True),
    FieldSpec("p75", required=False),
    FieldSpec("p90", required=False),
    FieldSpec("organization_id", required=False),
    FieldSpec("value", required=False),
)

# Wide files carry one <variable>_p25..p90 column group per metric instead of
# variable / percentile columns.
WIDE_FORMAT_SCHEMA: tuple[FieldSpec, ...] = (
    FieldSpec("specialty", required=True),
    FieldSpec("provider_type", required=False),
    FieldSpec("region", required=False),
    FieldSpec("year", required=False),
    FieldSpec("survey_source", required=False),
    FieldSpec("n_orgs", required=False),
    FieldSpec("n_incumbents", required=False),
    FieldSpec("organization_id", required=False),
)

DEFAULT_FIELD_SYNONYMS: dict[str, tuple[str, ...]] = {
    "specialty": ("specialty name", "survey specialty", "specialty description", "spec"),
    "provider_type": ("prov type", "provider category", "job family", "position type"),
    "region": ("geographic region", "geo region", "geography", "area"),
    "year": ("survey year", "data year", "fiscal year", "yr"),
    "survey_source": ("survey", "source", "vendor", "publisher"),
    "variable": ("metric", "measure", "benchmark", "compensation type"),
    "n_orgs": ("group count", "org count", "orgs", "number of organizations", "num orgs", "groups"),
    "n_incumbents": (
        "indv count",
        "individual count",
        "incumbents",
        "incumbent count",
        "provider count",
        "physician count",
        "num incumbents",
    ),
    "p25": ("25th", "25th percentile", "25 percentile", "percentile 25", "q1"),
    "p50": ("50th", "median", "50th percentile", "50 percentile", "percentile 50"),
    "p75": ("75th", "75th percentile", "75 percentile", "percentile 75", "q3"),
    "p90": ("90th", "90th percentile", "90 percentile", "percentile 90"),
    "organization_id": ("organization id", "org id", "group id", "practice id", "organization"),
    "value": ("amount", "observed value", "individual value"),
}

_NON_ALNUM_RE = re.compile(r"[^0-9a-z]+")


def normalize_header(header: str) -> str:
    """
    Normalize a header or field name for comparison.

    Case is folded and runs of non-alphanumeric characters collapse to one
    space, so ``"Provider_Type"`` and ``"provider  type"`` compare equal.
    """

    return _NON_ALNUM_RE.sub(" ", header.strip().lower()).strip()


def _contains_words(haystack: str, needle: str) -> bool:
    return bool(needle) and f" {needle} " in f" {haystack} "


@dataclass(frozen=True)
class ColumnResolution:
    """
    Outcome of one header resolution run.
    """

    mappings: tuple[ColumnMapping, ...]
    unmatched_headers: tuple[str, ...]
    missing_required: tuple[str, ...]
    source_headers: tuple[str, ...]

    @property
    def is_complete(self) -> bool:
        return not self.missing_required

    @property
    def canonical_to_source(self) -> dict[str, str]:
        return {mapping.canonical_field: mapping.raw_header for mapping in self.mappings}

    @property
    def match_strategies(self) -> dict[str, str]:
        return {mapping.canonical_field: mapping.strategy for mapping in self.mappings}


class ColumnMappingResolver:
    """
    Resolves raw survey headers into canonical field mappings.
    """

    def __init__(
        self,
        *,
        synonyms: Mapping[str, Sequence[str]] | None = None,
    ) -> None:
        self._synonyms: dict[str, tuple[str, ...]] = {
            canonical: tuple(normalize_header(item) for item in values if normalize_header(item))
            for canonical, values in (synonyms or DEFAULT_FIELD_SYNONYMS).items()
        }

    def resolve_columns(
        self,
        headers: Sequence[str],
        schema: Sequence[FieldSpec] = LONG_FORMAT_SCHEMA,
        template: ColumnTemplate | None = None,
    ) -> ColumnResolution:
        """
        Resolve headers against ``schema``.

        An incomplete result is returned, not raised; call ``require_complete``
        before normalizing rows.
        """

        source_headers = tuple(header for header in headers if header and header.strip())
        if not source_headers:
            raise ValidationError(
                "Survey headers are empty; cannot resolve column mapping.",
                code="empty_headers",
            )

        specs = tuple(schema)
        spec_by_name = {spec.name: spec for spec in specs}
        normalized = {header: normalize_header(header) for header in source_headers}
        claimed: dict[str, tuple[str, str]] = {}
        used_headers: set[str] = set()

        if template is not None:
            for canonical_field, raw_header in template.field_mapping.items():
                if canonical_field not in spec_by_name:
                    logger.warning(
                        "Ignoring template entry source=%r field=%r: not part of the schema",
                        template.survey_source,
                        canonical_field,
                    )
                    continue
                match = self._find_template_header(raw_header, source_headers, normalized, used_headers)
                if match is None:
                    logger.warning(
                        "Ignoring template entry source=%r field=%r: header %r not present",
                        template.survey_source,
                        canonical_field,
                        raw_header,
                    )
                    continue
                if canonical_field in claimed:
                    continue
                claimed[canonical_field] = (match, STRATEGY_TEMPLATE)
                used_headers.add(match)

        for strategy in (STRATEGY_EXACT, STRATEGY_SUBSTRING, STRATEGY_SYNONYM):
            for spec in specs:
                if spec.name in claimed:
                    continue
                for header in source_headers:
                    if header in used_headers:
                        continue
                    if self._matches(strategy, spec.name, normalized[header]):
                        claimed[spec.name] = (header, strategy)
                        used_headers.add(header)
                        break

        mappings = tuple(
            ColumnMapping(
                raw_header=claimed[spec.name][0],
                canonical_field=spec.name,
                required=spec.required,
                auto_matched=claimed[spec.name][1] != STRATEGY_TEMPLATE,
                strategy=claimed[spec.name][1],
            )
            for spec in specs
            if spec.name in claimed
        )
        missing_required = tuple(spec.name for spec in specs if spec.required and spec.name not in claimed)
        unmatched = tuple(header for header in source_headers if header not in used_headers)

        logger.debug(
            "Resolved %d/%d columns (missing_required=%s unmatched=%d)",
            len(mappings),
            len(specs),
            list(missing_required),
            len(unmatched),
        )
        return ColumnResolution(
            mappings=mappings,
            unmatched_headers=unmatched,
            missing_required=missing_required,
            source_headers=source_headers,
        )

    def require_complete(
        self,
        resolution: ColumnResolution,
        schema: Sequence[FieldSpec] = LONG_FORMAT_SCHEMA,
    ) -> ColumnResolution:
        """
        Raise IncompleteMappingError when a required field is unresolved.
        """

        if resolution.is_complete:
            return resolution
        MappingValidator(schema=schema).validate(
            mapping=resolution.canonical_to_source,
            source_headers=resolution.source_headers,
        )
        return resolution

    def map_row(
        self,
        *,
        raw_row: Mapping[str, str | None],
        resolution: ColumnResolution,
    ) -> dict[str, str | None]:
        """
        Map one raw row into canonical raw field values.
        """

        return {
            mapping.canonical_field: raw_row.get(mapping.raw_header)
            for mapping in resolution.mappings
        }

    @staticmethod
    def build_template(resolution: ColumnResolution, survey_source: str) -> ColumnTemplate:
        """
        Turn a confirmed resolution into a reusable template.
        """

        return ColumnTemplate(
            survey_source=survey_source.strip(),
            field_mapping=dict(resolution.canonical_to_source),
        )

    def _matches(self, strategy: str, canonical_field: str, header_norm: str) -> bool:
        if not header_norm:
            return False
        field_norm = normalize_header(canonical_field)

        if strategy == STRATEGY_EXACT:
            return header_norm == field_norm
        if strategy == STRATEGY_SUBSTRING:
            shorter = min(header_norm, field_norm, key=len)
            if len(shorter) < MIN_SUBSTRING_LENGTH:
                return False
            return field_norm in header_norm or header_norm in field_norm
        return any(
            header_norm == synonym or _contains_words(header_norm, synonym)
            for synonym in self._synonyms.get(canonical_field, ())
        )

    @staticmethod
    def _find_template_header(
        raw_header: str,
        source_headers: Sequence[str],
        normalized: Mapping[str, str],
        used_headers: set[str],
    ) -> str | None:
        target = normalize_header(raw_header)
        for header in source_headers:
            if header not in used_headers and normalized[header] == target:
                return header
        return None
