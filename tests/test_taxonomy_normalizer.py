"""
tests/test_taxonomy_normalizer.py

Pytest unit tests for TaxonomyNormalizer and mapping learning.

Coverage
--------
- Resolution order: canonical, confirmed, heuristic, fallback
- Keyword rules for regions and provider types
- Variable synonym mapping and snake_case fallback
- Fuzzy specialty matching against the table
- Idempotence across every entity kind
- Learning: new entries, identical re-learn, conflicts
"""

from __future__ import annotations

import pytest

from app.domain.survey import EntityKind, MappingTable, SourceEntry, TaxonomyMapping
from app.errors import ConflictError, ValidationError
from app.mappers.taxonomy_normalizer import (
    METHOD_CANONICAL,
    METHOD_CONFIRMED,
    METHOD_FALLBACK,
    METHOD_HEURISTIC,
    TaxonomyNormalizer,
    check_learnable,
    learn_mapping,
    map_variable_name,
    specialty_similarity,
    to_snake_key,
)
from app.repositories.memory_store import InMemoryMappingStore


@pytest.fixture()
def normalizer() -> TaxonomyNormalizer:
    return TaxonomyNormalizer()


@pytest.fixture()
def specialty_table() -> MappingTable:
    return MappingTable(
        EntityKind.SPECIALTY,
        [
            TaxonomyMapping(
                entity_kind=EntityKind.SPECIALTY,
                standardized_name="Family Medicine",
                source_entries=(SourceEntry(survey_source="SourceX", raw_value="FM"),),
            ),
            TaxonomyMapping(entity_kind=EntityKind.SPECIALTY, standardized_name="Cardiology - Invasive"),
            TaxonomyMapping(entity_kind=EntityKind.SPECIALTY, standardized_name="Dermatology"),
        ],
    )


# ---------------------------------------------------------------------------
# Resolution order
# ---------------------------------------------------------------------------


class TestResolutionOrder:
    def test_standardized_name_resolves_as_canonical(self, normalizer, specialty_table) -> None:
        resolution = normalizer.resolve("  dermatology ", EntityKind.SPECIALTY, "SourceZ", specialty_table)
        assert resolution.value == "Dermatology"
        assert resolution.method == METHOD_CANONICAL
        assert resolution.is_confirmed

    def test_source_entry_resolves_as_confirmed(self, normalizer, specialty_table) -> None:
        resolution = normalizer.resolve("fm", EntityKind.SPECIALTY, "sourcex", specialty_table)
        assert resolution.value == "Family Medicine"
        assert resolution.method == METHOD_CONFIRMED

    def test_source_entry_is_scoped_to_its_source(self, normalizer, specialty_table) -> None:
        resolution = normalizer.resolve("FM", EntityKind.SPECIALTY, "SourceY", specialty_table)
        assert resolution.value == "Fm"
        assert resolution.method == METHOD_FALLBACK
        assert not resolution.is_confirmed

    def test_fuzzy_specialty_match_is_heuristic(self, normalizer, specialty_table) -> None:
        resolution = normalizer.resolve("Invasive Cardiology", EntityKind.SPECIALTY, "SourceY", specialty_table)
        assert resolution.value == "Cardiology - Invasive"
        assert resolution.method == METHOD_HEURISTIC

    def test_unknown_specialty_falls_back_to_title_case(self, normalizer) -> None:
        assert normalizer.normalize_value("  family   medicine ", EntityKind.SPECIALTY, "SourceA") == "Family Medicine"

    def test_blank_value_normalizes_to_empty(self, normalizer) -> None:
        resolution = normalizer.resolve("   ", EntityKind.REGION, "SourceA")
        assert resolution.value == ""
        assert resolution.method == METHOD_FALLBACK

    def test_table_for_another_kind_is_rejected(self, normalizer, specialty_table) -> None:
        with pytest.raises(ValidationError) as ctx:
            normalizer.resolve("East", EntityKind.REGION, "SourceA", specialty_table)
        assert ctx.value.code == "mapping_table_kind_mismatch"

    def test_unknown_kind_is_rejected(self, normalizer) -> None:
        with pytest.raises(ValidationError):
            normalizer.resolve("East", "department", "SourceA")


# ---------------------------------------------------------------------------
# Heuristics
# ---------------------------------------------------------------------------


class TestHeuristics:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("Northeast", "Eastern"),
            ("Southeastern", "Southern"),
            ("Midwest", "Midwestern"),
            ("Pacific", "Western"),
            ("All Regions", "National"),
        ],
    )
    def test_region_keywords(self, normalizer, raw: str, expected: str) -> None:
        resolution = normalizer.resolve(raw, EntityKind.REGION, "SourceA")
        assert resolution.value == expected
        assert resolution.method == METHOD_HEURISTIC

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("NP", "Nurse Practitioner"),
            ("Physician Assistant (PA-C)", "Physician Assistant"),
            ("CRNAs", "CRNA"),
            ("APP", "Advanced Practice Provider"),
            ("Staff Physician", "Physician"),
        ],
    )
    def test_provider_type_keywords(self, normalizer, raw: str, expected: str) -> None:
        assert normalizer.normalize_value(raw, EntityKind.PROVIDER_TYPE, "SourceA") == expected

    def test_keywords_match_whole_words_only(self, normalizer) -> None:
        # "panel" contains "pa" but is not a physician assistant label
        resolution = normalizer.resolve("Panel Lead", EntityKind.PROVIDER_TYPE, "SourceA")
        assert resolution.method == METHOD_FALLBACK
        assert resolution.value == "Panel Lead"

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("Total Cash Compensation", "tcc"),
            ("wRVUs", "work_rvus"),
            ("TCC per wRVU", "tcc_per_work_rvu"),
            ("Daily Rate On-Call Compensation", "on_call_compensation"),
            ("On Call Pay (Weekend)", "on_call_compensation"),
        ],
    )
    def test_variable_synonyms(self, raw: str, expected: str) -> None:
        assert map_variable_name(raw) == expected

    def test_unknown_variable_falls_back_to_snake_key(self, normalizer) -> None:
        resolution = normalizer.resolve("Sign-On Bonus (Avg)", EntityKind.VARIABLE, "SourceA")
        assert resolution.value == "sign_on_bonus_avg"
        assert resolution.method == METHOD_FALLBACK

    def test_snake_key(self) -> None:
        assert to_snake_key("  TCC per wRVU ") == "tcc_per_wrvu"

    def test_specialty_similarity_bounds(self) -> None:
        assert specialty_similarity("Cardiology", "cardiology") == 1.0
        assert specialty_similarity("Cardiology", "") == 0.0
        assert specialty_similarity("Invasive Cardiology", "Cardiology") >= 0.9
        assert 0.0 <= specialty_similarity("Dermatology", "Urology") < 1.0


# ---------------------------------------------------------------------------
# Idempotence
# ---------------------------------------------------------------------------


class TestIdempotence:
    @pytest.mark.parametrize(
        ("kind", "raw"),
        [
            (EntityKind.SPECIALTY, "Invasive Cardiology"),
            (EntityKind.SPECIALTY, "FM"),
            (EntityKind.SPECIALTY, "pediatrics: general"),
            (EntityKind.REGION, "NE"),
            (EntityKind.REGION, "north central"),
            (EntityKind.REGION, "Puerto Rico"),
            (EntityKind.PROVIDER_TYPE, "physician assistants"),
            (EntityKind.PROVIDER_TYPE, "Advanced Practice"),
            (EntityKind.PROVIDER_TYPE, "Scribe"),
            (EntityKind.VARIABLE, "Total Compensation"),
            (EntityKind.VARIABLE, "Median Panel Size"),
        ],
    )
    def test_normalizing_twice_changes_nothing(self, normalizer, specialty_table, kind: str, raw: str) -> None:
        table = specialty_table if kind == EntityKind.SPECIALTY else None
        once = normalizer.normalize_value(raw, kind, "SourceX", table)
        twice = normalizer.normalize_value(once, kind, "SourceX", table)
        assert twice == once

    def test_heuristic_result_takes_the_table_spelling(self, normalizer) -> None:
        table = MappingTable(
            EntityKind.VARIABLE,
            [TaxonomyMapping(entity_kind=EntityKind.VARIABLE, standardized_name="TCC")],
        )

        once = normalizer.resolve("Total Compensation", EntityKind.VARIABLE, "SourceX", table)
        twice = normalizer.resolve(once.value, EntityKind.VARIABLE, "SourceX", table)

        assert once.value == "TCC"
        assert once.method == METHOD_HEURISTIC
        assert twice.value == once.value

    def test_heuristic_result_follows_a_confirmed_entry(self, normalizer) -> None:
        table = MappingTable(
            EntityKind.REGION,
            [
                TaxonomyMapping(
                    entity_kind=EntityKind.REGION,
                    standardized_name="Pacific",
                    source_entries=(SourceEntry(survey_source="SourceX", raw_value="Western"),),
                )
            ],
        )

        once = normalizer.normalize_value("West", EntityKind.REGION, "SourceX", table)
        twice = normalizer.normalize_value(once, EntityKind.REGION, "SourceX", table)

        assert once == "Pacific"
        assert twice == once

    def test_fallback_result_takes_the_table_spelling(self, normalizer) -> None:
        table = MappingTable(
            EntityKind.PROVIDER_TYPE,
            [TaxonomyMapping(entity_kind=EntityKind.PROVIDER_TYPE, standardized_name="SCRIBE LEAD")],
        )

        once = normalizer.resolve("scribe   lead", EntityKind.PROVIDER_TYPE, "SourceX", table)

        assert once.value == "SCRIBE LEAD"
        assert once.method == METHOD_FALLBACK
        assert normalizer.normalize_value(once.value, EntityKind.PROVIDER_TYPE, "SourceX", table) == "SCRIBE LEAD"


# ---------------------------------------------------------------------------
# Learning
# ---------------------------------------------------------------------------


class TestLearning:
    def test_learned_entry_resolves_as_confirmed(self, normalizer) -> None:
        store = InMemoryMappingStore()
        mapping = learn_mapping(
            store,
            kind=EntityKind.PROVIDER_TYPE,
            survey_source="SourceX",
            raw_value="Mid-Level",
            standardized_name="Advanced Practice Provider",
        )

        assert mapping.standardized_name == "Advanced Practice Provider"
        table = store.get_mapping_table(EntityKind.PROVIDER_TYPE)
        resolution = normalizer.resolve("mid-level", EntityKind.PROVIDER_TYPE, "SourceX", table)
        assert resolution.value == "Advanced Practice Provider"
        assert resolution.method == METHOD_CONFIRMED

    def test_identical_relearn_is_a_no_op(self) -> None:
        store = InMemoryMappingStore()
        for _ in range(2):
            learn_mapping(
                store,
                kind=EntityKind.SPECIALTY,
                survey_source="SourceX",
                raw_value="Cards",
                standardized_name="Cardiology",
            )

        table = store.get_mapping_table(EntityKind.SPECIALTY)
        assert len(table) == 1
        assert len(table.get("Cardiology").source_entries) == 1

    def test_conflicting_learn_raises_and_leaves_table_unchanged(self) -> None:
        store = InMemoryMappingStore(
            [
                TaxonomyMapping(
                    entity_kind=EntityKind.PROVIDER_TYPE,
                    standardized_name="APP",
                    source_entries=(SourceEntry(survey_source="sourceX", raw_value="APP"),),
                )
            ]
        )

        with pytest.raises(ConflictError) as ctx:
            learn_mapping(
                store,
                kind=EntityKind.PROVIDER_TYPE,
                survey_source="sourceX",
                raw_value="APP",
                standardized_name="Physician",
            )

        assert ctx.value.existing_name == "APP"
        assert ctx.value.attempted_name == "Physician"
        assert ctx.value.to_dict()["code"] == "mapping_conflict"
        table = store.get_mapping_table(EntityKind.PROVIDER_TYPE)
        assert table.standardized_names == ("APP",)
        assert table.lookup("sourceX", "APP") == "APP"

    def test_same_spelling_from_another_source_may_map_elsewhere(self) -> None:
        store = InMemoryMappingStore(
            [
                TaxonomyMapping(
                    entity_kind=EntityKind.PROVIDER_TYPE,
                    standardized_name="Nurse Practitioner",
                    source_entries=(SourceEntry(survey_source="SourceX", raw_value="Level 2"),),
                )
            ]
        )

        learn_mapping(
            store,
            kind=EntityKind.PROVIDER_TYPE,
            survey_source="SourceY",
            raw_value="Level 2",
            standardized_name="Physician Assistant",
        )

        table = store.get_mapping_table(EntityKind.PROVIDER_TYPE)
        assert table.lookup("SourceX", "Level 2") == "Nurse Practitioner"
        assert table.lookup("SourceY", "Level 2") == "Physician Assistant"

    def test_new_name_may_not_shadow_a_source_spelling(self) -> None:
        table = MappingTable(
            EntityKind.SPECIALTY,
            [
                TaxonomyMapping(
                    entity_kind=EntityKind.SPECIALTY,
                    standardized_name="Family Medicine",
                    source_entries=(SourceEntry(survey_source="SourceX", raw_value="FP"),),
                )
            ],
        )

        with pytest.raises(ConflictError):
            check_learnable(table, survey_source="SourceY", raw_value="Fam Prac", standardized_name="FP")

    def test_blank_learn_request_is_rejected(self) -> None:
        with pytest.raises(ValidationError) as ctx:
            check_learnable(
                MappingTable.empty(EntityKind.REGION),
                survey_source="SourceX",
                raw_value=" ",
                standardized_name="Eastern",
            )
        assert ctx.value.code == "incomplete_learn_request"
