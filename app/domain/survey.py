"""
app/domain/survey.py

Domain models shared by survey normalization, aggregation and blending.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable

from app.errors import ValidationError


class EntityKind:
    SPECIALTY = "specialty"
    PROVIDER_TYPE = "provider_type"
    REGION = "region"
    VARIABLE = "variable"

    ALL: tuple[str, ...] = (SPECIALTY, PROVIDER_TYPE, REGION, VARIABLE)


def validate_entity_kind(kind: str) -> str:
    """
    Return ``kind`` unchanged or raise ValidationError for unknown kinds.
    """

    if kind not in EntityKind.ALL:
        raise ValidationError(
            f"Unknown entity kind {kind!r}.",
            code="invalid_entity_kind",
            context={"allowed": list(EntityKind.ALL)},
        )
    return kind


def normalize_lookup_key(value: str | None) -> str:
    """
    Case-insensitive, whitespace-trimmed comparison key.
    """

    return (value or "").strip().casefold()


GROUPABLE_FIELDS: tuple[str, ...] = (
    "specialty",
    "provider_type",
    "region",
    "year",
    "survey_source",
    "variable",
)

PERCENTILE_FIELDS: tuple[str, ...] = ("p25", "p50", "p75", "p90")


# ---------------------------------------------------------------------------
# Column mapping
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FieldSpec:
    """
    One canonical field expected by a schema, in declaration order.
    """

    name: str
    required: bool = True


@dataclass(frozen=True)
class ColumnMapping:
    """
    Resolved raw header to canonical field pairing.
    """

    raw_header: str
    canonical_field: str
    required: bool
    auto_matched: bool
    strategy: str


@dataclass(frozen=True)
class ColumnTemplate:
    """
    Reusable canonical field to raw header mapping for one survey source.
    """

    survey_source: str
    field_mapping: dict[str, str]
    updated_at: datetime | None = None


# ---------------------------------------------------------------------------
# Taxonomy mapping
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SourceEntry:
    survey_source: str
    raw_value: str

    @property
    def key(self) -> tuple[str, str]:
        return normalize_lookup_key(self.survey_source), normalize_lookup_key(self.raw_value)


@dataclass(frozen=True)
class TaxonomyMapping:
    """
    One standardized name plus every confirmed source spelling of it.
    """

    entity_kind: str
    standardized_name: str
    source_entries: tuple[SourceEntry, ...] = ()
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def with_entry(self, entry: SourceEntry) -> "TaxonomyMapping":
        """
        Return a new mapping with ``entry`` appended.
        """

        return TaxonomyMapping(
            entity_kind=self.entity_kind,
            standardized_name=self.standardized_name,
            source_entries=(*self.source_entries, entry),
            updated_at=datetime.now(timezone.utc),
        )


class MappingTable:
    """
    Read-only snapshot of every TaxonomyMapping for one entity kind.

    Lookups by ``(survey_source, raw_value)`` and by standardized name are
    both case-insensitive and trimmed. Building a table from mappings that
    violate the uniqueness invariants raises ValidationError.
    """

    def __init__(self, entity_kind: str, mappings: Iterable[TaxonomyMapping] = ()) -> None:
        self.entity_kind = validate_entity_kind(entity_kind)
        self._mappings: tuple[TaxonomyMapping, ...] = tuple(mappings)
        self._by_entry: dict[tuple[str, str], str] = {}
        self._by_name: dict[str, TaxonomyMapping] = {}

        for mapping in self._mappings:
            name_key = normalize_lookup_key(mapping.standardized_name)
            if name_key in self._by_name:
                raise ValidationError(
                    f"Standardized name {mapping.standardized_name!r} appears twice "
                    f"in the {entity_kind} mapping table.",
                    code="duplicate_standardized_name",
                )
            self._by_name[name_key] = mapping
            for entry in mapping.source_entries:
                existing = self._by_entry.get(entry.key)
                if existing is not None and existing != mapping.standardized_name:
                    raise ValidationError(
                        f"Source entry {entry.raw_value!r} from {entry.survey_source!r} "
                        f"maps to both {existing!r} and {mapping.standardized_name!r}.",
                        code="ambiguous_source_entry",
                    )
                self._by_entry[entry.key] = mapping.standardized_name

    @classmethod
    def empty(cls, entity_kind: str) -> "MappingTable":
        return cls(entity_kind, ())

    @property
    def mappings(self) -> tuple[TaxonomyMapping, ...]:
        return self._mappings

    @property
    def standardized_names(self) -> tuple[str, ...]:
        return tuple(mapping.standardized_name for mapping in self._mappings)

    def lookup(self, survey_source: str, raw_value: str) -> str | None:
        return self._by_entry.get(
            (normalize_lookup_key(survey_source), normalize_lookup_key(raw_value))
        )

    def find_standardized(self, value: str) -> str | None:
        mapping = self._by_name.get(normalize_lookup_key(value))
        return mapping.standardized_name if mapping is not None else None

    def get(self, standardized_name: str) -> TaxonomyMapping | None:
        return self._by_name.get(normalize_lookup_key(standardized_name))

    def __len__(self) -> int:
        return len(self._mappings)


# ---------------------------------------------------------------------------
# Normalized rows
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class NormalizedRow:
    """
    One survey benchmark row in canonical shape.

    ``value`` holds an individual observation when the source file carries
    one (e.g. a per-provider export); summary surveys only report the
    percentile columns. ``raw`` keeps the original cells for traceability.
    """

    specialty: str
    provider_type: str
    region: str
    year: int | None
    survey_source: str
    variable: str
    n_orgs: int | None = None
    n_incumbents: int | None = None
    p25: float | None = None
    p50: float | None = None
    p75: float | None = None
    p90: float | None = None
    organization_id: str | None = None
    value: float | None = None
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    def __post_init__(self) -> None:
        for name in ("n_orgs", "n_incumbents"):
            count = getattr(self, name)
            if count is not None and count < 0:
                raise ValidationError(
                    f"{name} must be >= 0, got {count}.",
                    code="negative_count",
                    context={"field": name, "value": count},
                )

        percentiles = [getattr(self, name) for name in PERCENTILE_FIELDS]
        if all(item is not None and item != 0 for item in percentiles):
            if any(low > high for low, high in zip(percentiles, percentiles[1:])):
                raise ValidationError(
                    "Percentiles must satisfy p25 <= p50 <= p75 <= p90.",
                    code="percentile_order",
                    context=dict(zip(PERCENTILE_FIELDS, percentiles)),
                )

    def group_value(self, field_name: str) -> Any:
        return getattr(self, field_name)


@dataclass(frozen=True)
class RowValidationError:
    """
    One survey row validation error detail.
    """

    row_number: int
    message: str
    column: str | None = None
    value: str | None = None


# ---------------------------------------------------------------------------
# Aggregation & blending
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PercentileSet:
    p25: float = 0.0
    p50: float = 0.0
    p75: float = 0.0
    p90: float = 0.0

    @property
    def iqr(self) -> float:
        return self.p75 - self.p25

    def get(self, name: str) -> float:
        if name not in PERCENTILE_FIELDS:
            raise KeyError(name)
        return getattr(self, name)

    def as_dict(self) -> dict[str, float]:
        return {name: getattr(self, name) for name in PERCENTILE_FIELDS}


@dataclass(frozen=True)
class AggregatedGroup:
    """
    Percentile statistics and counts for one distinct group key.

    ``group_key`` is an ordered tuple of ``(field, value)`` pairs so groups
    built with different key tuples remain self-describing.
    """

    group_key: tuple[tuple[str, Any], ...]
    percentiles: PercentileSet
    n_orgs: int
    n_incumbents: int
    row_count: int = 0

    def key_value(self, field_name: str, default: Any = None) -> Any:
        for name, value in self.group_key:
            if name == field_name:
                return value
        return default

    def key_dict(self) -> dict[str, Any]:
        return dict(self.group_key)


@dataclass(frozen=True)
class BlendWeight:
    specialty: str
    weight: float
    records: int = 0


# ---------------------------------------------------------------------------
# Coverage, discovery, ingestion
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CoverageResult:
    category: str
    mapped: int
    unmapped: int
    coverage: float
    unmapped_values: tuple[str, ...] = ()


@dataclass(frozen=True)
class VariableIndexEntry:
    """
    Cached discovery result, valid only for the content hash it was built from.
    """

    survey_id: str
    variables: frozenset[str]
    content_hash: str
    scanned_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class IngestionSummary:
    """
    End-of-run survey ingestion summary.
    """

    survey_id: str
    rows_processed: int
    rows_failed: int
    content_hash: str | None = None
    column_mappings: list[ColumnMapping] = field(default_factory=list)
    coverage: list[CoverageResult] = field(default_factory=list)
    validation_errors: list[RowValidationError] = field(default_factory=list)
