"""
app/mappers/taxonomy_normalizer.py

Raw taxonomy value to canonical name resolution.

Resolution order for one raw value:

    canonical  - the value already equals a standardized name in the table
    confirmed  - exact (survey_source, raw_value) entry in the table
    heuristic  - keyword rules per entity kind (region, provider type,
                 variable synonyms) or a fuzzy match against the table's
                 standardized names (specialty)
    fallback   - title-cased raw value (snake_case key for variables)

A heuristic or fallback result that itself names a table entry is replaced
by the table's spelling, so resolving a resolved value is a no-op.

Only ``canonical`` and ``confirmed`` count as mapped for coverage. The
normalizer never mutates a MappingTable; new knowledge is appended through
``learn_mapping`` against a MappingStore.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from difflib import SequenceMatcher
from typing import TYPE_CHECKING, Sequence

from app.domain.survey import (
    EntityKind,
    MappingTable,
    SourceEntry,
    TaxonomyMapping,
    normalize_lookup_key,
    validate_entity_kind,
)
from app.errors import ConflictError, ValidationError

if TYPE_CHECKING:
    from app.repositories.base import MappingStore

logger = logging.getLogger(__name__)

METHOD_CANONICAL = "canonical"
METHOD_CONFIRMED = "confirmed"
METHOD_HEURISTIC = "heuristic"
METHOD_FALLBACK = "fallback"

CONFIRMED_METHODS: frozenset[str] = frozenset({METHOD_CANONICAL, METHOD_CONFIRMED})

# Ordered (canonical, keywords) rules. Keywords match whole words or phrases.
REGION_KEYWORD_RULES: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("National", ("national", "all", "all regions", "us", "united states", "nationwide")),
    ("Eastern", ("northeast", "northeastern", "north east", "eastern", "east", "ne")),
    ("Southern", ("southeast", "southeastern", "south east", "southern", "south", "se")),
    ("Midwestern", ("midwest", "midwestern", "north central", "central", "nc")),
    ("Western", ("west", "western", "southwest", "northwest", "pacific", "mountain", "w")),
)

PROVIDER_TYPE_KEYWORD_RULES: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("Nurse Practitioner", ("nurse practitioner", "nurse practitioners", "np", "nps", "arnp")),
    ("Physician Assistant", ("physician assistant", "physician assistants", "pa", "pas", "pa c")),
    ("CRNA", ("crna", "crnas", "nurse anesthetist", "certified registered nurse anesthetist")),
    ("Advanced Practice Provider", ("advanced practice", "advanced practice provider", "app", "apps", "apc")),
    ("Physician", ("physician", "physicians", "md", "do", "phys", "staff physician")),
)

VARIABLE_SYNONYMS: dict[str, str] = {
    # Total cash compensation
    "tcc": "tcc",
    "total_cash_compensation": "tcc",
    "total_compensation": "tcc",
    "total_cash_comp": "tcc",
    "cash_compensation": "tcc",
    "total_comp": "tcc",
    "tcc_excluding_premium": "tcc_excluding_premium",
    "tcc_excluding": "tcc_excluding_premium",
    # Productivity
    "work_rvus": "work_rvus",
    "work_rvu": "work_rvus",
    "wrvu": "work_rvus",
    "wrvus": "work_rvus",
    "work_relative_value_units": "work_rvus",
    # Conversion factor
    "tcc_per_work_rvu": "tcc_per_work_rvu",
    "tcc_per_work_rvus": "tcc_per_work_rvu",
    "tcc_per_wrvu": "tcc_per_work_rvu",
    "conversion_factor": "tcc_per_work_rvu",
    "cf": "tcc_per_work_rvu",
    "cfs": "tcc_per_work_rvu",
    "comp_per_wrvu": "tcc_per_work_rvu",
    "compensation_per_wrvu": "tcc_per_work_rvu",
    "total_cash_compensation_per_work_rvus": "tcc_per_work_rvu",
    "total_cash_compensation_per_work_rvu": "tcc_per_work_rvu",
    "compensation_to_work_rvus": "tcc_per_work_rvu",
    "compensation_to_work_rvu": "tcc_per_work_rvu",
    "compensation_to_wrvu": "tcc_per_work_rvu",
    "comp_to_work_rvus": "tcc_per_work_rvu",
    "comp_to_wrvu": "tcc_per_work_rvu",
    "total_compensation_to_work_rvus": "tcc_per_work_rvu",
    "tcc_to_work_rvu": "tcc_per_work_rvu",
    "compensation_to_work_rvus_ratio": "tcc_per_work_rvu",
    # Base pay
    "base_salary": "base_salary",
    "base_compensation": "base_salary",
    "base_comp": "base_salary",
    "salary": "base_salary",
    "base_pay_hourly_rate": "base_pay_hourly_rate",
    "hourly_rate": "base_pay_hourly_rate",
    "base_pay_hourly": "base_pay_hourly_rate",
    # Other productivity measures
    "asa_units": "asa_units",
    "asa": "asa_units",
    "asa_unit": "asa_units",
    "panel_size": "panel_size",
    "panel": "panel_size",
    "patient_panel": "panel_size",
    "patient_panel_size": "panel_size",
    "total_encounters": "total_encounters",
    "encounters": "total_encounters",
    "patient_encounters": "total_encounters",
    "total_visits": "total_encounters",
    "net_collections": "net_collections",
    "collections": "net_collections",
    "net_collection": "net_collections",
    # Ratios
    "tcc_per_encounter": "tcc_per_encounter",
    "comp_per_encounter": "tcc_per_encounter",
    "compensation_per_encounter": "tcc_per_encounter",
    "tcc_to_net_collections": "tcc_to_net_collections",
    "tcc_to_collections": "tcc_to_net_collections",
    "comp_to_collections": "tcc_to_net_collections",
    "tcc_per_asa_unit": "tcc_per_asa_unit",
    "tcc_per_asa": "tcc_per_asa_unit",
    "comp_per_asa": "tcc_per_asa_unit",
    # Call pay
    "on_call_compensation": "on_call_compensation",
    "oncall_compensation": "on_call_compensation",
    "daily_rate_on_call": "on_call_compensation",
    "daily_rate_on_call_compensation": "on_call_compensation",
    "on_call_rate": "on_call_compensation",
    "on_call": "on_call_compensation",
    "oncall": "on_call_compensation",
}

_ON_CALL_QUALIFIERS: tuple[str, ...] = ("rate", "compensation", "comp", "pay", "daily")
_WORD_SPLIT_RE = re.compile(r"[^0-9a-z]+")
_SNAKE_RE = re.compile(r"[^0-9a-z]+")


@dataclass(frozen=True)
class TaxonomyResolution:
    """
    Canonical value plus the rule that produced it.
    """

    value: str
    method: str

    @property
    def is_confirmed(self) -> bool:
        return self.method in CONFIRMED_METHODS


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------


def _words(value: str) -> tuple[str, ...]:
    return tuple(word for word in _WORD_SPLIT_RE.split(value.casefold()) if word)


def _contains_phrase(words: Sequence[str], phrase: str) -> bool:
    target = _words(phrase)
    if not target:
        return False
    width = len(target)
    return any(tuple(words[index:index + width]) == target for index in range(len(words) - width + 1))


def to_snake_key(value: str) -> str:
    """
    Lower-case snake_case key, e.g. ``"TCC per wRVU"`` -> ``"tcc_per_wrvu"``.
    """

    return _SNAKE_RE.sub("_", value.strip().lower()).strip("_")


def title_case(value: str) -> str:
    return " ".join(value.split()).title()


def match_keyword_rules(
    value: str,
    rules: Sequence[tuple[str, Sequence[str]]],
) -> str | None:
    """
    Return the canonical name of the first rule with a whole-word keyword hit.
    """

    words = _words(value)
    if not words:
        return None
    for canonical, keywords in rules:
        if any(_contains_phrase(words, keyword) for keyword in keywords):
            return canonical
    return None


def map_variable_name(value: str) -> str | None:
    """
    Map a raw variable label to a standard variable key, if one is known.
    """

    key = to_snake_key(value)
    if not key:
        return None
    standard = VARIABLE_SYNONYMS.get(key)
    if standard is not None:
        return standard

    tokens = key.split("_")
    has_on_call = "oncall" in tokens or ("on" in tokens and "call" in tokens)
    if has_on_call and any(qualifier in tokens for qualifier in _ON_CALL_QUALIFIERS):
        return "on_call_compensation"
    return None


def specialty_similarity(left: str, right: str) -> float:
    """
    Similarity score in [0, 1] between two specialty labels.

    Exact (case-insensitive) matches score 1.0; word-level containment scores
    at least 0.9; otherwise the best of character ratio and word overlap.
    """

    left_words = _words(left)
    right_words = _words(right)
    if not left_words or not right_words:
        return 0.0
    if left_words == right_words:
        return 1.0

    left_set, right_set = set(left_words), set(right_words)
    ratio = SequenceMatcher(None, " ".join(left_words), " ".join(right_words)).ratio()
    jaccard = len(left_set & right_set) / len(left_set | right_set)
    score = max(ratio, jaccard)
    if left_set <= right_set or right_set <= left_set:
        score = max(score, 0.9)
    return score


# ---------------------------------------------------------------------------
# Normalizer
# ---------------------------------------------------------------------------


class TaxonomyNormalizer:
    """
    Pure resolver for specialty, provider type, region and variable values.

    Parameters
    ----------
    specialty_threshold:
        Minimum ``specialty_similarity`` score for a fuzzy specialty match
        against the table's standardized names.
    """

    def __init__(self, *, specialty_threshold: float = 0.84) -> None:
        self._specialty_threshold = max(0.0, min(1.0, specialty_threshold))

    def resolve(
        self,
        raw_value: str | None,
        kind: str,
        survey_source: str,
        table: MappingTable | None = None,
    ) -> TaxonomyResolution:
        """
        Resolve one raw value and report which rule produced the result.
        """

        validate_entity_kind(kind)
        if table is not None and table.entity_kind != kind:
            raise ValidationError(
                f"Mapping table for {table.entity_kind!r} cannot resolve {kind!r} values.",
                code="mapping_table_kind_mismatch",
            )

        value = (raw_value or "").strip()
        if not value:
            return TaxonomyResolution(value="", method=METHOD_FALLBACK)

        if table is not None:
            canonical = table.find_standardized(value)
            if canonical is not None:
                return TaxonomyResolution(value=canonical, method=METHOD_CANONICAL)
            confirmed = table.lookup(survey_source, value)
            if confirmed is not None:
                return TaxonomyResolution(value=confirmed, method=METHOD_CONFIRMED)

        heuristic = self._apply_heuristics(value, kind, table)
        if heuristic is not None:
            return TaxonomyResolution(
                value=self._settle(heuristic, survey_source, table),
                method=METHOD_HEURISTIC,
            )

        fallback = to_snake_key(value) if kind == EntityKind.VARIABLE else title_case(value)
        return TaxonomyResolution(
            value=self._settle(fallback, survey_source, table),
            method=METHOD_FALLBACK,
        )

    def normalize_value(
        self,
        raw_value: str | None,
        kind: str,
        survey_source: str,
        table: MappingTable | None = None,
    ) -> str:
        """
        Return the canonical string for ``raw_value``.
        """

        return self.resolve(raw_value, kind, survey_source, table).value

    @staticmethod
    def _settle(candidate: str, survey_source: str, table: MappingTable | None) -> str:
        # A derived value must resolve to itself on the next pass.
        if table is None or not candidate:
            return candidate
        canonical = table.find_standardized(candidate)
        if canonical is not None:
            return canonical
        confirmed = table.lookup(survey_source, candidate)
        return confirmed if confirmed is not None else candidate

    def _apply_heuristics(
        self,
        value: str,
        kind: str,
        table: MappingTable | None,
    ) -> str | None:
        if kind == EntityKind.REGION:
            return match_keyword_rules(value, REGION_KEYWORD_RULES)
        if kind == EntityKind.PROVIDER_TYPE:
            return match_keyword_rules(value, PROVIDER_TYPE_KEYWORD_RULES)
        if kind == EntityKind.VARIABLE:
            return map_variable_name(value)
        return self._match_specialty(value, table)

    def _match_specialty(self, value: str, table: MappingTable | None) -> str | None:
        if table is None or not len(table):
            return None

        best_name: str | None = None
        best_score = 0.0
        for name in table.standardized_names:
            score = specialty_similarity(value, name)
            if score > best_score:
                best_score = score
                best_name = name

        if best_name is not None and best_score >= self._specialty_threshold:
            logger.debug("Specialty fuzzy match value=%r -> %r score=%.3f", value, best_name, best_score)
            return best_name
        return None


# ---------------------------------------------------------------------------
# Learning
# ---------------------------------------------------------------------------


def check_learnable(
    table: MappingTable,
    *,
    survey_source: str,
    raw_value: str,
    standardized_name: str,
) -> TaxonomyMapping | None:
    """
    Validate a learn request against a table snapshot.

    Returns the mapping the entry would be appended to (``None`` when a new
    standardized name would be created). Raises ConflictError when the pair
    already resolves to a different name, and returns the existing mapping
    unchanged for an identical re-learn.
    """

    if not survey_source.strip() or not raw_value.strip() or not standardized_name.strip():
        raise ValidationError(
            "survey_source, raw_value and standardized_name are required to learn a mapping.",
            code="incomplete_learn_request",
        )

    existing_name = table.lookup(survey_source, raw_value)
    if existing_name is None:
        existing_name = table.find_standardized(raw_value)
    if existing_name is not None and normalize_lookup_key(existing_name) != normalize_lookup_key(
        standardized_name
    ):
        raise ConflictError(
            entity_kind=table.entity_kind,
            survey_source=survey_source,
            raw_value=raw_value,
            existing_name=existing_name,
            attempted_name=standardized_name,
        )

    target = table.get(standardized_name)
    if target is None:
        # A new standardized name must not shadow an existing source spelling.
        for mapping in table.mappings:
            for entry in mapping.source_entries:
                if normalize_lookup_key(entry.raw_value) == normalize_lookup_key(standardized_name):
                    raise ConflictError(
                        entity_kind=table.entity_kind,
                        survey_source=entry.survey_source,
                        raw_value=entry.raw_value,
                        existing_name=mapping.standardized_name,
                        attempted_name=standardized_name,
                    )
    return target


def learn_mapping(
    store: "MappingStore",
    *,
    kind: str,
    survey_source: str,
    raw_value: str,
    standardized_name: str,
) -> TaxonomyMapping:
    """
    Append a confirmed ``(survey_source, raw_value) -> standardized_name`` entry.

    Re-learning an identical pair succeeds without changing the table.
    Raises ConflictError (leaving the table untouched) when the pair already
    resolves to another standardized name.
    """

    validate_entity_kind(kind)
    entry = SourceEntry(survey_source=survey_source.strip(), raw_value=raw_value.strip())
    mapping = store.append_mapping_entry(kind, standardized_name.strip(), entry)
    logger.info(
        "Learned %s mapping source=%r raw=%r -> %r",
        kind,
        entry.survey_source,
        entry.raw_value,
        mapping.standardized_name,
    )
    return mapping
