"""
tests/test_row_normalizer.py

Pytest unit tests for wide-format detection and row normalization.
"""

from __future__ import annotations

from app.domain.survey import EntityKind, MappingTable, SourceEntry, TaxonomyMapping
from app.mappers.row_normalizer import (
    ObservedValues,
    SurveyRowNormalizer,
    detect_wide_columns,
    expand_wide_row,
)
from app.mappers.taxonomy_normalizer import TaxonomyNormalizer


def test_detect_wide_columns_keeps_groups_with_a_median() -> None:
    headers = [
        "Specialty",
        "tcc_p25",
        "tcc_p50",
        "tcc_p90",
        "wRVU_P50",
        "bonus_p25",
        "notes_p55",
    ]

    groups = detect_wide_columns(headers)

    assert list(groups) == ["tcc", "wRVU"]
    assert groups["tcc"] == {"p25": "tcc_p25", "p50": "tcc_p50", "p90": "tcc_p90"}
    assert groups["wRVU"] == {"p50": "wRVU_P50"}


def test_detect_wide_columns_on_long_headers() -> None:
    assert detect_wide_columns(["Specialty", "Metric", "Median", "p50"]) == {}


def test_expand_wide_row_yields_one_row_per_group() -> None:
    raw = {"Specialty": "Cardiology", "tcc_p50": "400,000", "tcc_p75": "500,000", "wrvu_p50": "7,900"}
    groups = detect_wide_columns(list(raw))

    rows = list(expand_wide_row({"specialty": "Cardiology"}, raw, groups))

    assert rows == [
        {"specialty": "Cardiology", "variable": "tcc", "p50": "400,000", "p75": "500,000"},
        {"specialty": "Cardiology", "variable": "wrvu", "p50": "7,900"},
    ]


def test_observed_values_ignore_blanks() -> None:
    observed = ObservedValues()
    observed.add(EntityKind.REGION, " East ")
    observed.add(EntityKind.REGION, "")
    observed.add(EntityKind.REGION, None)
    observed.add(EntityKind.REGION, "Central")

    assert observed.sorted_values(EntityKind.REGION) == ["Central", "East"]
    assert observed.by_kind[EntityKind.SPECIALTY] == set()


def test_to_normalized_row_applies_every_taxonomy() -> None:
    tables = {
        EntityKind.SPECIALTY: MappingTable(
            EntityKind.SPECIALTY,
            [
                TaxonomyMapping(
                    entity_kind=EntityKind.SPECIALTY,
                    standardized_name="Cardiology - Invasive",
                    source_entries=(SourceEntry(survey_source="SourceA", raw_value="Cards Inv"),),
                )
            ],
        )
    }
    normalizer = SurveyRowNormalizer(normalizer=TaxonomyNormalizer(), tables=tables)
    observed = ObservedValues()
    parsed = {
        "specialty": "Cards Inv",
        "provider_type": "NP",
        "region": "Northeast",
        "variable": "Total Cash Compensation",
        "year": 2024,
        "survey_source": None,
        "n_orgs": 4,
        "n_incumbents": 30,
        "p25": 300_000.0,
        "p50": 400_000.0,
        "p75": None,
        "p90": None,
    }

    row = normalizer.to_normalized_row(
        parsed,
        survey_source="SourceA",
        raw_row={"Specialty": "Cards Inv"},
        observed=observed,
    )

    assert row.specialty == "Cardiology - Invasive"
    assert row.provider_type == "Nurse Practitioner"
    assert row.region == "Eastern"
    assert row.variable == "tcc"
    assert row.survey_source == "SourceA"
    assert row.raw == {"Specialty": "Cards Inv"}
    assert observed.sorted_values(EntityKind.PROVIDER_TYPE) == ["NP"]


def test_missing_provider_type_stays_blank() -> None:
    normalizer = SurveyRowNormalizer(normalizer=TaxonomyNormalizer(), tables={})

    row = normalizer.to_normalized_row(
        {"specialty": "Dermatology", "variable": "tcc", "p50": 1.0},
        survey_source="SourceA",
        raw_row={},
    )

    assert row.provider_type == ""
    assert row.region == ""
    assert row.year is None
